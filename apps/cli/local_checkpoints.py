"""Checkpoint listing/deletion that works without loading a model.

Checkpoints live under {root}/{model_id}/{fingerprint}/{checkpoint_id}/
(see `kvsnap.engine.checkpoint_store`). Loading one needs an engine to size
the state blob; listing and deleting only touch manifests.
"""

from __future__ import annotations

import json
import shutil
from pathlib import Path
from typing import Any, Iterator

from kvsnap.engine.checkpoint_store import default_store_dir


def _iter_checkpoint_dirs(root: Path) -> Iterator[tuple[str, str, Path]]:
    if not root.exists():
        return
    for model_dir in root.iterdir():
        if not model_dir.is_dir():
            continue
        for fp_dir in model_dir.iterdir():
            if not fp_dir.is_dir():
                continue
            for ckpt_dir in fp_dir.iterdir():
                if not ckpt_dir.is_dir() or ckpt_dir.name.startswith(".tmp-"):
                    continue
                if (ckpt_dir / "manifest.json").is_file():
                    yield model_dir.name, fp_dir.name, ckpt_dir


def list_local_checkpoints(*, root_dir: Path | None = None) -> list[dict[str, Any]]:
    """List all checkpoints across all models/fingerprints, newest first."""
    root = root_dir or default_store_dir()
    out: list[dict[str, Any]] = []

    for model_id, fingerprint, ckpt_dir in _iter_checkpoint_dirs(root):
        try:
            data = json.loads((ckpt_dir / "manifest.json").read_text(encoding="utf-8"))
        except (OSError, ValueError):
            continue
        metadata = data.get("metadata") or {}
        session = data.get("session") or {}
        out.append({
            "checkpoint_id": data.get("checkpoint_id") or ckpt_dir.name,
            "model_id": model_id,
            "fingerprint": fingerprint[:12] + "..." if len(fingerprint) > 12 else fingerprint,
            "created_at": data.get("created_at"),
            "title": metadata.get("title"),
            "n_past": session.get("n_past"),
            "state_size": session.get("state_size"),
            "path": str(ckpt_dir),
        })

    out.sort(key=lambda c: int(c.get("created_at") or 0), reverse=True)
    return out


def delete_local_checkpoint(checkpoint_id: str, *, root_dir: Path | None = None) -> bool:
    """Delete a checkpoint by ID. Returns True if found and deleted."""
    root = root_dir or default_store_dir()
    for _, _, ckpt_dir in _iter_checkpoint_dirs(root):
        if ckpt_dir.name == checkpoint_id:
            shutil.rmtree(ckpt_dir)
            return True
    return False
