"""Named checkpoint persistence.

A **checkpoint** pairs an engine state blob with the token history and
position counter the harness tracks next to it. On disk:

- one checkpoint directory per save
- one `manifest.json`
- one `history.json` (history + n_past)
- one `state.bin` (8-byte length prefix + raw engine state)

Checkpoints are grouped by model id and a compatibility fingerprint, so a
store opened for one engine configuration never lists blobs it cannot load.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import shutil
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from .adapters.base import BaseEngine
from .harness import Checkpoint
from .state_codec import read_state, write_state
from .types import EngineParams

logger = logging.getLogger(__name__)

_CHECKPOINT_ID_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_-]{0,127}$")

SCHEMA = "kvsnap.checkpoint.v1"


class SnapshotCompatibilityError(RuntimeError):
    pass


def default_store_dir() -> Path:
    override = os.environ.get("KVSNAP_CACHE_DIR")
    if override:
        return Path(override)
    xdg_cache = os.environ.get("XDG_CACHE_HOME", os.path.join(os.path.expanduser("~"), ".cache"))
    return Path(xdg_cache) / "kvsnap" / "checkpoints"


def _sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _stable_json_dumps(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, ensure_ascii=False, default=str)


def compute_engine_compatibility(
    *,
    engine: BaseEngine,
    params: EngineParams,
    model_path: str | None = None,
) -> dict[str, Any]:
    """Fingerprint everything that must match for a state blob to restore cleanly."""
    info = dict(engine.model_info)
    info.pop("closed", None)
    info.pop("model_path", None)

    model_sha = None
    if model_path and os.path.isfile(model_path):
        model_sha = _sha256_file(Path(model_path))

    payload = {
        "engine": info,
        "params": params.state_relevant(),
        "state_size": int(engine.state_size()),
        "model_sha256": model_sha,
        "schema": SCHEMA,
    }
    fingerprint = hashlib.sha256(_stable_json_dumps(payload).encode("utf-8")).hexdigest()
    return {"fingerprint": fingerprint, "payload": payload}


@dataclass(frozen=True)
class CheckpointManifest:
    checkpoint_id: str
    created_at: int
    compat: dict[str, Any]
    session: dict[str, Any]
    metadata: dict[str, Any]
    files: dict[str, str]

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "CheckpointManifest":
        return cls(
            checkpoint_id=str(d.get("checkpoint_id") or ""),
            created_at=int(d.get("created_at") or 0),
            compat=dict(d.get("compat") or {}),
            session=dict(d.get("session") or {}),
            metadata=dict(d.get("metadata") or {}),
            files=dict(d.get("files") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": 1,
            "checkpoint_id": self.checkpoint_id,
            "created_at": self.created_at,
            "compat": self.compat,
            "session": self.session,
            "metadata": self.metadata,
            "files": self.files,
        }


class CheckpointStore:
    """Filesystem-backed checkpoint store."""

    def __init__(self, *, root_dir: str | Path | None = None, model_id: str, compat: Mapping[str, Any]) -> None:
        self._root_dir = Path(root_dir) if root_dir is not None else default_store_dir()
        self._model_id = str(model_id)
        self._compat = dict(compat)
        fp = self._compat.get("fingerprint") or "unknown"
        self._model_dir = self._root_dir / self._model_id / str(fp)
        self._model_dir.mkdir(parents=True, exist_ok=True)

    @property
    def model_dir(self) -> Path:
        return self._model_dir

    @property
    def compat(self) -> dict[str, Any]:
        return dict(self._compat)

    def _validate_checkpoint_id(self, checkpoint_id: str) -> None:
        if not checkpoint_id or not _CHECKPOINT_ID_RE.match(checkpoint_id):
            raise ValueError("Invalid checkpoint_id.")

    def list_checkpoints(self) -> list[CheckpointManifest]:
        out: list[CheckpointManifest] = []
        if not self._model_dir.exists():
            return out
        for p in self._model_dir.iterdir():
            if not p.is_dir() or p.name.startswith(".tmp-"):
                continue
            mf = p / "manifest.json"
            if not mf.is_file():
                continue
            try:
                d = json.loads(mf.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                logger.warning("skipping unreadable checkpoint manifest %s: %s", mf, exc)
                continue
            out.append(CheckpointManifest.from_dict(d))
        out.sort(key=lambda m: int(m.created_at), reverse=True)
        return out

    def get_manifest(self, checkpoint_id: str) -> CheckpointManifest:
        self._validate_checkpoint_id(checkpoint_id)
        mf = self._model_dir / checkpoint_id / "manifest.json"
        if not mf.is_file():
            raise FileNotFoundError(checkpoint_id)
        d = json.loads(mf.read_text(encoding="utf-8"))
        return CheckpointManifest.from_dict(d)

    def patch_metadata(
        self,
        checkpoint_id: str,
        *,
        title: str | None = None,
        description: str | None = None,
        tags: list[str] | None = None,
    ) -> CheckpointManifest:
        manifest = self.get_manifest(checkpoint_id)
        meta = dict(manifest.metadata)
        if title is not None:
            meta["title"] = str(title)
        if description is not None:
            meta["description"] = str(description)
        if tags is not None:
            meta["tags"] = [str(t) for t in tags]

        updated = CheckpointManifest(
            checkpoint_id=manifest.checkpoint_id,
            created_at=manifest.created_at,
            compat=manifest.compat,
            session=manifest.session,
            metadata=meta,
            files=manifest.files,
        )

        mf = self._model_dir / checkpoint_id / "manifest.json"
        tmp = mf.with_suffix(".json.tmp")
        tmp.write_text(_stable_json_dumps(updated.to_dict()), encoding="utf-8")
        tmp.replace(mf)
        return updated

    def delete_checkpoint(self, checkpoint_id: str) -> None:
        self._validate_checkpoint_id(checkpoint_id)
        d = self._model_dir / checkpoint_id
        if not d.exists():
            raise FileNotFoundError(checkpoint_id)
        shutil.rmtree(d)

    def create_checkpoint(
        self,
        checkpoint: Checkpoint,
        *,
        title: str | None = None,
        description: str | None = None,
        tags: list[str] | None = None,
    ) -> CheckpointManifest:
        checkpoint_id = uuid.uuid4().hex
        created_at = int(time.time())

        final_dir = self._model_dir / checkpoint_id
        tmp_dir = self._model_dir / f".tmp-{checkpoint_id}-{uuid.uuid4().hex}"
        tmp_dir.mkdir(parents=True, exist_ok=False)

        try:
            (tmp_dir / "history.json").write_text(
                _stable_json_dumps({"history": list(checkpoint.history), "n_past": int(checkpoint.n_past)}),
                encoding="utf-8",
            )
            write_state(checkpoint.state, tmp_dir / "state.bin", header=True)

            manifest = CheckpointManifest(
                checkpoint_id=checkpoint_id,
                created_at=created_at,
                compat=dict(self._compat),
                session={
                    "n_past": int(checkpoint.n_past),
                    "history_len": len(checkpoint.history),
                    "state_size": checkpoint.state.size,
                    "state_sha256": checkpoint.state.sha256(),
                },
                metadata={
                    "title": title,
                    "description": description,
                    "tags": list(tags) if tags is not None else [],
                },
                files={"history": "history.json", "state": "state.bin"},
            )
            (tmp_dir / "manifest.json").write_text(_stable_json_dumps(manifest.to_dict()), encoding="utf-8")

            tmp_dir.rename(final_dir)
        except BaseException:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise
        logger.info("saved checkpoint %s (n_past=%d)", checkpoint_id, checkpoint.n_past)
        return manifest

    def load_checkpoint(self, checkpoint_id: str, *, engine: BaseEngine) -> tuple[CheckpointManifest, Checkpoint]:
        """Read a checkpoint sized for `engine`. Does not restore it."""
        manifest = self.get_manifest(checkpoint_id)
        if (manifest.compat.get("fingerprint") or None) != (self._compat.get("fingerprint") or None):
            raise SnapshotCompatibilityError("Checkpoint fingerprint does not match the loaded engine.")

        d = self._model_dir / checkpoint_id
        history_path = d / manifest.files.get("history", "history.json")
        state_path = d / manifest.files.get("state", "state.bin")
        if not history_path.is_file() or not state_path.is_file():
            raise FileNotFoundError(checkpoint_id)

        history_obj = json.loads(history_path.read_text(encoding="utf-8"))
        history = history_obj.get("history")
        n_past = history_obj.get("n_past")
        if not isinstance(history, list) or not isinstance(n_past, int) or n_past < 0:
            raise ValueError(f"Invalid history payload in checkpoint {checkpoint_id}")

        state = read_state(state_path, expected_size=engine.state_size(), header=True)
        expected_sha = manifest.session.get("state_sha256")
        if expected_sha and state.sha256() != expected_sha:
            raise ValueError(f"State digest mismatch in checkpoint {checkpoint_id}")

        return manifest, Checkpoint(state=state, history=tuple(int(t) for t in history), n_past=n_past)
