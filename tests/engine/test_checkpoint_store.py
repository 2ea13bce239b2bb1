import json

import pytest


torch = pytest.importorskip("torch", reason="torch not installed")


from kvsnap.engine.checkpoint_store import (
    CheckpointStore,
    SnapshotCompatibilityError,
    compute_engine_compatibility,
    default_store_dir,
)
from kvsnap.engine.harness import ContinuationHarness
from kvsnap.engine.registry import engine_factory
from kvsnap.engine.types import EngineParams


def _prefilled_checkpoint(model_path, params: EngineParams, prompt: str = "hello"):
    factory = engine_factory("reference", model_path, params)
    harness = ContinuationHarness(factory)
    engine = factory()
    harness.prefill(engine, prompt)
    return engine, harness.checkpoint(engine)


def _store(tmp_path, engine, params, model_path) -> CheckpointStore:
    compat = compute_engine_compatibility(engine=engine, params=params, model_path=model_path)
    return CheckpointStore(root_dir=tmp_path / "store", model_id="tiny", compat=compat)


def test_default_store_dir_honors_env(monkeypatch, tmp_path):
    monkeypatch.setenv("KVSNAP_CACHE_DIR", str(tmp_path / "c"))
    assert default_store_dir() == tmp_path / "c"

    monkeypatch.delenv("KVSNAP_CACHE_DIR")
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "xdg"))
    assert default_store_dir() == tmp_path / "xdg" / "kvsnap" / "checkpoints"


def test_fingerprint_tracks_state_relevant_configuration(model_path):
    params = EngineParams(n_ctx=64, n_threads=1)
    engine, _ = _prefilled_checkpoint(model_path, params)
    fp = compute_engine_compatibility(engine=engine, params=params, model_path=model_path)["fingerprint"]

    again, _ = _prefilled_checkpoint(model_path, EngineParams(n_ctx=64, n_threads=2), prompt="other")
    same = compute_engine_compatibility(engine=again, params=EngineParams(n_ctx=64, n_threads=2), model_path=model_path)
    assert same["fingerprint"] == fp

    bigger_params = EngineParams(n_ctx=128, n_threads=1)
    bigger, _ = _prefilled_checkpoint(model_path, bigger_params)
    other = compute_engine_compatibility(engine=bigger, params=bigger_params, model_path=model_path)
    assert other["fingerprint"] != fp


def test_checkpoint_store_roundtrip(model_path, tmp_path):
    params = EngineParams(n_ctx=64, n_threads=1)
    engine, ckpt = _prefilled_checkpoint(model_path, params)
    store = _store(tmp_path, engine, params, model_path)

    manifest = store.create_checkpoint(ckpt, title="t", tags=["a"])
    assert manifest.session["n_past"] == ckpt.n_past
    assert manifest.session["state_size"] == ckpt.state.size
    assert manifest.metadata["title"] == "t"
    assert [m.checkpoint_id for m in store.list_checkpoints()] == [manifest.checkpoint_id]
    assert not list(store.model_dir.glob(".tmp-*"))

    fresh = engine_factory("reference", model_path, params)()
    loaded_manifest, loaded = store.load_checkpoint(manifest.checkpoint_id, engine=fresh)
    assert loaded_manifest.checkpoint_id == manifest.checkpoint_id
    assert loaded == ckpt

    patched = store.patch_metadata(manifest.checkpoint_id, title="renamed", description="d")
    assert patched.metadata["title"] == "renamed"
    assert store.get_manifest(manifest.checkpoint_id).metadata["description"] == "d"

    store.delete_checkpoint(manifest.checkpoint_id)
    assert store.list_checkpoints() == []
    with pytest.raises(FileNotFoundError):
        store.get_manifest(manifest.checkpoint_id)


def test_load_rejects_foreign_fingerprint(model_path, tmp_path):
    params = EngineParams(n_ctx=64, n_threads=1)
    engine, ckpt = _prefilled_checkpoint(model_path, params)
    store = _store(tmp_path, engine, params, model_path)
    manifest = store.create_checkpoint(ckpt)

    mf = store.model_dir / manifest.checkpoint_id / "manifest.json"
    data = json.loads(mf.read_text(encoding="utf-8"))
    data["compat"]["fingerprint"] = "0" * 64
    mf.write_text(json.dumps(data), encoding="utf-8")

    with pytest.raises(SnapshotCompatibilityError):
        store.load_checkpoint(manifest.checkpoint_id, engine=engine)


def test_load_rejects_corrupted_state(model_path, tmp_path):
    params = EngineParams(n_ctx=64, n_threads=1)
    engine, ckpt = _prefilled_checkpoint(model_path, params)
    store = _store(tmp_path, engine, params, model_path)
    manifest = store.create_checkpoint(ckpt)

    state_path = store.model_dir / manifest.checkpoint_id / "state.bin"
    data = bytearray(state_path.read_bytes())
    data[-1] ^= 0xFF
    state_path.write_bytes(bytes(data))

    with pytest.raises(ValueError):
        store.load_checkpoint(manifest.checkpoint_id, engine=engine)


def test_invalid_and_unknown_ids(model_path, tmp_path):
    params = EngineParams(n_ctx=64, n_threads=1)
    engine, _ = _prefilled_checkpoint(model_path, params)
    store = _store(tmp_path, engine, params, model_path)

    with pytest.raises(ValueError):
        store.get_manifest("../escape")
    with pytest.raises(FileNotFoundError):
        store.load_checkpoint("deadbeef", engine=engine)
    with pytest.raises(FileNotFoundError):
        store.delete_checkpoint("deadbeef")
