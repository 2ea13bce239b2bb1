import struct

import pytest


torch = pytest.importorskip("torch", reason="torch not installed")


from kvsnap.engine.adapters.reference import (
    BOS_ID,
    MAX_RNG_STATE,
    ReferenceEngine,
    ReferenceHParams,
    ReferenceModel,
)
from kvsnap.engine.errors import EvaluateError, SizeMismatchError
from kvsnap.engine.registry import engine_factory, get_engine_class, list_engine_families
from kvsnap.engine.state_codec import capture_state
from kvsnap.engine.types import EngineParams


def _engine(model_path, **params) -> ReferenceEngine:
    return ReferenceEngine.from_file(model_path, EngineParams(**{"n_ctx": 64, "n_threads": 1, **params}))


def test_state_size_matches_layout(model_path):
    engine = _engine(model_path)
    hp = ReferenceHParams(n_embd=16, n_head=2, n_layer=1, n_ff=32, n_ctx_train=512)
    kv = hp.n_layer * 64 * hp.n_embd * 2
    assert engine.state_size() == 8 + MAX_RNG_STATE + 8 + 4 * hp.n_vocab + 8 + 2 * kv

    f32 = _engine(model_path, memory_f16=False)
    assert f32.state_size() == engine.state_size() + 2 * kv


def test_tokenizer_is_byte_level_with_bos(model_path):
    engine = _engine(model_path)
    assert engine.tokenize("hi") == [BOS_ID, ord("h"), ord("i")]
    assert engine.tokenize("hi", add_bos=False) == [ord("h"), ord("i")]
    assert engine.detokenize(engine.tokenize("héllo")) == "héllo"
    assert engine.token_to_bytes(BOS_ID) == b""
    with pytest.raises(ValueError):
        engine.token_to_bytes(engine.n_vocab)


def test_incremental_evaluation_matches_batch(model_path):
    tokens = _engine(model_path).tokenize("incremental")

    batch = _engine(model_path, memory_f16=False)
    batch.evaluate(tokens, 0)

    stepwise = _engine(model_path, memory_f16=False)
    for i, t in enumerate(tokens):
        stepwise.evaluate([t], i)

    assert stepwise.n_tokens == batch.n_tokens == len(tokens)
    assert torch.allclose(stepwise.logits(), batch.logits(), rtol=1e-4, atol=1e-4)


def test_evaluate_rejects_bad_requests(model_path):
    engine = _engine(model_path, n_ctx=8)
    with pytest.raises(EvaluateError):
        engine.evaluate([], 0)
    with pytest.raises(EvaluateError):
        engine.evaluate([1], 1)
    with pytest.raises(EvaluateError):
        engine.evaluate([engine.n_vocab], 0)
    with pytest.raises(EvaluateError):
        engine.evaluate(list(range(9)), 0)

    engine.evaluate([1, 2, 3], 0)
    # Rewinding inside the filled cache is allowed.
    engine.evaluate([4], 1)
    assert engine.n_tokens == 2


def test_n_ctx_above_training_context_is_rejected(model_path):
    with pytest.raises(ValueError):
        _engine(model_path, n_ctx=1024)


def test_set_state_validates_headers_before_mutating(model_path):
    engine = _engine(model_path)
    engine.evaluate(engine.tokenize("abc"), 0)
    before = capture_state(engine).data

    bad_logits = bytearray(before)
    logits_hdr = 8 + MAX_RNG_STATE
    struct.pack_into("<Q", bad_logits, logits_hdr, engine.n_vocab + 1)
    with pytest.raises(SizeMismatchError):
        engine.set_state_data(bad_logits)

    bad_rng = bytearray(before)
    struct.pack_into("<Q", bad_rng, 0, MAX_RNG_STATE + 1)
    with pytest.raises(ValueError):
        engine.set_state_data(bad_rng)

    bad_tokens = bytearray(before)
    struct.pack_into("<Q", bad_tokens, logits_hdr + 8 + 4 * engine.n_vocab, 65)
    with pytest.raises(ValueError):
        engine.set_state_data(bad_tokens)

    with pytest.raises(SizeMismatchError):
        engine.set_state_data(before[:-1])

    assert capture_state(engine).data == before


def test_closed_engine_refuses_work(model_path):
    with _engine(model_path) as engine:
        engine.evaluate([BOS_ID], 0)
    assert engine.model_info["closed"] is True
    with pytest.raises(RuntimeError):
        engine.evaluate([1], 1)
    with pytest.raises(RuntimeError):
        engine.logits()
    with pytest.raises(RuntimeError):
        capture_state(engine)


def test_model_file_round_trip_and_validation(tmp_path):
    model = ReferenceModel.random(ReferenceHParams(n_embd=8, n_head=2, n_layer=1, n_ff=8, n_ctx_train=16), seed=3)
    path = tmp_path / "m.pt"
    model.save(path)

    loaded = ReferenceModel.load(path)
    assert loaded.hparams == model.hparams
    for name, t in model.weights.items():
        assert torch.equal(loaded.weights[name], t)

    torch.save({"format": "something-else"}, str(tmp_path / "bad.pt"))
    with pytest.raises(ValueError):
        ReferenceModel.load(tmp_path / "bad.pt")

    with pytest.raises(ValueError):
        ReferenceHParams(n_embd=10, n_head=3).validate()


def test_registry_creates_fresh_engines(model_path):
    assert "reference" in list_engine_families()
    assert get_engine_class("reference") is ReferenceEngine
    with pytest.raises(ValueError):
        get_engine_class("nope")

    create = engine_factory("reference", model_path, EngineParams(n_ctx=32, n_threads=1))
    a, b = create(), create()
    assert a is not b
    assert a.state_size() == b.state_size()
