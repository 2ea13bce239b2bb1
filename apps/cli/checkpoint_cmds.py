from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

from apps.cli.local_checkpoints import delete_local_checkpoint, list_local_checkpoints
from apps.cli.output import TokenPrinter, fmt_unix_utc, format_table, print_json, status
from kvsnap.engine.checkpoint_store import (
    CheckpointManifest,
    CheckpointStore,
    SnapshotCompatibilityError,
    compute_engine_compatibility,
)
from kvsnap.engine.errors import HARNESS_ERRORS, error_phase
from kvsnap.engine.harness import ContinuationHarness
from kvsnap.engine.registry import engine_factory
from kvsnap.engine.types import EngineParams, SamplingParams


class CheckpointCommandError(RuntimeError):
    pass


def _model_id(model: str) -> str:
    return Path(model).stem or "model"


def _open_store(*, engine: Any, model: str, engine_params: EngineParams, store_dir: str | None) -> CheckpointStore:
    compat = compute_engine_compatibility(engine=engine, params=engine_params, model_path=model)
    return CheckpointStore(
        root_dir=Path(store_dir) if store_dir else None,
        model_id=_model_id(model),
        compat=compat,
    )


def checkpoint_save(
    *,
    model: str,
    prompt: str,
    engine_params: EngineParams,
    sampling: SamplingParams,
    title: str | None = None,
    store_dir: str | None = None,
    json_output: bool = False,
    family: str = "reference",
) -> int:
    """Evaluate `prompt` on a fresh engine and store the resulting checkpoint."""
    if not Path(model).is_file():
        raise CheckpointCommandError(f"error: model file not found: {model}")

    factory = engine_factory(family, model, engine_params)
    harness = ContinuationHarness(factory, sampling=sampling)
    try:
        engine = factory()
    except (OSError, ValueError) as exc:
        raise CheckpointCommandError(f"error: failed to create engine: {exc}") from exc
    try:
        harness.prefill(engine, prompt)
        ckpt = harness.checkpoint(engine)
        store = _open_store(engine=engine, model=model, engine_params=engine_params, store_dir=store_dir)
        manifest = store.create_checkpoint(ckpt, title=title)
    except HARNESS_ERRORS as exc:
        raise CheckpointCommandError(f"error [{error_phase(exc)}]: {exc}") from exc
    except (OSError, ValueError) as exc:
        raise CheckpointCommandError(f"error: failed to save checkpoint: {exc}") from exc
    finally:
        engine.close()

    if json_output:
        print_json(manifest.to_dict())
    else:
        print(manifest.checkpoint_id)
        status("checkpoint", f"saved n_past={ckpt.n_past} state_size={ckpt.state.size}")
    return 0


def checkpoint_resume(
    *,
    checkpoint_id: str,
    model: str,
    n_predict: int,
    engine_params: EngineParams,
    sampling: SamplingParams,
    store_dir: str | None = None,
    family: str = "reference",
) -> int:
    """Restore a stored checkpoint into a fresh engine and continue generating."""
    if not Path(model).is_file():
        raise CheckpointCommandError(f"error: model file not found: {model}")

    factory = engine_factory(family, model, engine_params)
    printer = TokenPrinter()
    harness = ContinuationHarness(factory, sampling=sampling, on_token=printer)
    try:
        engine = factory()
    except (OSError, ValueError) as exc:
        raise CheckpointCommandError(f"error: failed to create engine: {exc}") from exc
    try:
        store = _open_store(engine=engine, model=model, engine_params=engine_params, store_dir=store_dir)
        _, ckpt = store.load_checkpoint(checkpoint_id, engine=engine)
        harness.resume(engine, ckpt, from_disk=False)
        status("checkpoint", f"resumed {checkpoint_id} at n_past={ckpt.n_past}")
        harness.generate(engine, n_predict)
    except FileNotFoundError as exc:
        raise CheckpointCommandError(f"error: checkpoint not found: {checkpoint_id}") from exc
    except SnapshotCompatibilityError as exc:
        raise CheckpointCommandError(
            f"error: checkpoint {checkpoint_id} was saved with a different model or engine configuration"
        ) from exc
    except HARNESS_ERRORS as exc:
        raise CheckpointCommandError(f"error [{error_phase(exc)}]: {exc}") from exc
    except (OSError, ValueError) as exc:
        raise CheckpointCommandError(f"error: failed to resume checkpoint {checkpoint_id}: {exc}") from exc
    finally:
        engine.close()
    printer.end_run()
    return 0


def _scoped_store(*, model: str, engine_params: EngineParams, store_dir: str | None, family: str) -> CheckpointStore:
    """Store view limited to checkpoints that `model` can load with `engine_params`."""
    if not Path(model).is_file():
        raise CheckpointCommandError(f"error: model file not found: {model}")
    try:
        engine = engine_factory(family, model, engine_params)()
    except (OSError, ValueError) as exc:
        raise CheckpointCommandError(f"error: failed to create engine: {exc}") from exc
    try:
        return _open_store(engine=engine, model=model, engine_params=engine_params, store_dir=store_dir)
    finally:
        engine.close()


def _manifest_row(manifest: CheckpointManifest, *, model_id: str) -> dict[str, Any]:
    return {
        "checkpoint_id": manifest.checkpoint_id,
        "model_id": model_id,
        "created_at": manifest.created_at,
        "title": manifest.metadata.get("title"),
        "n_past": manifest.session.get("n_past"),
        "state_size": manifest.session.get("state_size"),
    }


def checkpoint_ls(
    *,
    store_dir: str | None = None,
    json_output: bool = False,
    model: str | None = None,
    engine_params: EngineParams | None = None,
    family: str = "reference",
) -> int:
    """List every stored checkpoint, or only those `model` can load when given."""
    if model:
        store = _scoped_store(
            model=model, engine_params=engine_params or EngineParams(), store_dir=store_dir, family=family
        )
        ckpts = [_manifest_row(m, model_id=_model_id(model)) for m in store.list_checkpoints()]
    else:
        ckpts = list_local_checkpoints(root_dir=Path(store_dir) if store_dir else None)
    if json_output:
        print_json({"checkpoints": ckpts})
        return 0
    if not ckpts:
        print("No checkpoints found")
        return 0

    rows = [
        [
            str(c.get("checkpoint_id") or ""),
            fmt_unix_utc(c.get("created_at")),
            str(c.get("title") or ""),
            str(c.get("n_past") if c.get("n_past") is not None else ""),
            str(c.get("model_id") or ""),
        ]
        for c in ckpts
    ]
    print(format_table(["checkpoint_id", "created_at", "title", "n_past", "model_id"], rows))
    return 0


def checkpoint_edit(
    *,
    checkpoint_id: str,
    model: str,
    engine_params: EngineParams,
    title: str | None = None,
    description: str | None = None,
    tags: list[str] | None = None,
    store_dir: str | None = None,
    json_output: bool = False,
    family: str = "reference",
) -> int:
    if title is None and description is None and tags is None:
        raise CheckpointCommandError("error: nothing to change (use --title, --description or --tag)")
    store = _scoped_store(model=model, engine_params=engine_params, store_dir=store_dir, family=family)
    try:
        manifest = store.patch_metadata(checkpoint_id, title=title, description=description, tags=tags)
    except FileNotFoundError as exc:
        raise CheckpointCommandError(f"error: checkpoint not found: {checkpoint_id}") from exc
    except (OSError, ValueError) as exc:
        raise CheckpointCommandError(f"error: failed to edit checkpoint {checkpoint_id}: {exc}") from exc

    if json_output:
        print_json(manifest.to_dict())
    else:
        status("checkpoint", f"updated {checkpoint_id}")
    return 0


def checkpoint_rm(
    *,
    checkpoint_ids: list[str],
    store_dir: str | None = None,
    model: str | None = None,
    engine_params: EngineParams | None = None,
    family: str = "reference",
) -> int:
    """Delete checkpoints by ID; with `model`, only from that model's compatible set."""
    store = None
    if model:
        store = _scoped_store(
            model=model, engine_params=engine_params or EngineParams(), store_dir=store_dir, family=family
        )

    missing = 0
    for checkpoint_id in checkpoint_ids:
        if store is not None:
            try:
                store.delete_checkpoint(checkpoint_id)
                removed = True
            except (FileNotFoundError, ValueError):
                removed = False
        else:
            removed = delete_local_checkpoint(checkpoint_id, root_dir=Path(store_dir) if store_dir else None)
        if removed:
            print(f"removed {checkpoint_id}")
        else:
            print(f"error: checkpoint not found: {checkpoint_id}", file=sys.stderr)
            missing += 1
    return 1 if missing else 0
