import io

import pytest


torch = pytest.importorskip("torch", reason="torch not installed")


from kvsnap.engine.adapters.reference import ReferenceEngine
from kvsnap.engine.errors import SizeMismatchError, StateIOError
from kvsnap.engine.history import TokenHistory
from kvsnap.engine.sampling import SamplerAdapter
from kvsnap.engine.state_codec import (
    EngineState,
    capture_state,
    load_state_file,
    read_state,
    restore_state,
    save_state_file,
    write_state,
)
from kvsnap.engine.types import EngineParams, SamplingParams


def _engine(model_path, **params) -> ReferenceEngine:
    return ReferenceEngine.from_file(model_path, EngineParams(**{"n_ctx": 64, "n_threads": 1, **params}))


def _prefilled(model_path, text: str = "hello", **params) -> ReferenceEngine:
    engine = _engine(model_path, **params)
    engine.evaluate(engine.tokenize(text), 0)
    return engine


def test_state_size_depends_on_configuration_only(model_path):
    fresh = _engine(model_path)
    busy = _prefilled(model_path, "a somewhat longer prompt")
    assert capture_state(fresh).size == fresh.state_size()
    assert capture_state(busy).size == fresh.state_size()

    bigger = _engine(model_path, n_ctx=128)
    assert bigger.state_size() > fresh.state_size()
    assert _engine(model_path, memory_f16=False).state_size() > fresh.state_size()


def test_capture_does_not_disturb_generation_state(model_path):
    engine = _prefilled(model_path)
    logits_before = engine.logits()
    rng_before = engine.generator.get_state()

    first = capture_state(engine)
    second = capture_state(engine)

    assert first == second
    assert torch.equal(engine.logits(), logits_before)
    assert torch.equal(engine.generator.get_state(), rng_before)


def test_restore_then_capture_is_idempotent(model_path):
    src = _prefilled(model_path)
    state = capture_state(src)

    dst = _engine(model_path)
    restore_state(dst, state)
    assert capture_state(dst).data == state.data
    assert dst.n_tokens == src.n_tokens
    assert torch.equal(dst.logits(), src.logits())


def test_capture_restore_on_same_engine_does_not_change_generation(model_path):
    prompt = "Once upon a time"
    n_past = len(_engine(model_path).tokenize(prompt))
    sampling = SamplingParams(temperature=1.0, top_k=0, top_p=1.0)

    def generate(engine, n):
        adapter = SamplerAdapter(engine, TokenHistory.window(64), sampling)
        pos, out = n_past, []
        for _ in range(n):
            token, pos = adapter.step(pos)
            out.append(token)
        return out

    untouched = _prefilled(model_path, prompt, seed=11)
    round_tripped = _prefilled(model_path, prompt, seed=11)
    restore_state(round_tripped, capture_state(round_tripped))

    assert generate(round_tripped, 12) == generate(untouched, 12)


def test_restore_rejects_other_context_length_without_touching_engine(model_path):
    state = capture_state(_prefilled(model_path, n_ctx=64))

    target = _prefilled(model_path, "other text", n_ctx=128)
    before = capture_state(target)

    calls = []
    original = target.set_state_data

    def spy(buffer):
        calls.append(len(buffer))
        return original(buffer)

    target.set_state_data = spy
    with pytest.raises(SizeMismatchError) as excinfo:
        restore_state(target, state)

    assert excinfo.value.expected == target.state_size()
    assert excinfo.value.actual == state.size
    assert excinfo.value.phase == "size-validate"
    assert calls == []
    assert capture_state(target).data == before.data


def test_engine_state_repr_hides_payload():
    state = EngineState(bytearray(b"\x01\x02\x03"))
    assert isinstance(state.data, bytes)
    assert len(state) == 3
    assert "size=3" in repr(state)
    assert "\\x01" not in repr(state)


def test_write_then_read_path_with_header(model_path, tmp_path):
    engine = _prefilled(model_path)
    state = capture_state(engine)
    path = tmp_path / "dump_state.bin"

    n = write_state(state, path)
    assert n == state.size + 8
    assert path.stat().st_size == state.size + 8
    assert int.from_bytes(path.read_bytes()[:8], "little") == state.size

    loaded = read_state(path, expected_size=engine.state_size())
    assert loaded == state
    assert not list(tmp_path.glob(".dump_state.bin.tmp-*"))


def test_headerless_stream_round_trip():
    state = EngineState(bytes(range(200)) * 3)
    buf = io.BytesIO()
    assert write_state(state, buf, header=False) == state.size
    buf.seek(0)
    assert read_state(buf, expected_size=state.size, header=False) == state


def test_header_disagreeing_with_engine_size_is_rejected(model_path, tmp_path):
    path = tmp_path / "state.bin"
    save_state_file(_prefilled(model_path, n_ctx=64), path)

    bigger = _engine(model_path, n_ctx=128)
    with pytest.raises(SizeMismatchError):
        read_state(path, expected_size=bigger.state_size())


def test_short_read_never_reaches_restore(model_path, tmp_path):
    engine = _prefilled(model_path)
    path = tmp_path / "state.bin"
    save_state_file(engine, path)
    data = path.read_bytes()
    path.write_bytes(data[: len(data) - 100])

    target = _engine(model_path)

    def fail(buffer):
        raise AssertionError("set_state_data must not be called")

    target.set_state_data = fail
    with pytest.raises(StateIOError) as excinfo:
        load_state_file(target, path)
    assert excinfo.value.phase == "io"


def test_truncated_length_prefix_is_a_short_read():
    with pytest.raises(StateIOError):
        read_state(io.BytesIO(b"\x01\x02"), expected_size=10)


def test_trailing_data_is_rejected():
    payload = (4).to_bytes(8, "little") + b"abcd" + b"x"
    with pytest.raises(StateIOError):
        read_state(io.BytesIO(payload), expected_size=4)


def test_missing_file_is_state_io_error(tmp_path):
    with pytest.raises(StateIOError):
        read_state(tmp_path / "does-not-exist.bin", expected_size=4)


def test_write_into_missing_directory_is_state_io_error(tmp_path):
    with pytest.raises(StateIOError):
        write_state(EngineState(b"abcd"), tmp_path / "missing" / "state.bin")


def test_load_state_file_restores(model_path, tmp_path):
    src = _prefilled(model_path)
    path = tmp_path / "state.bin"
    saved = save_state_file(src, path)

    dst = _engine(model_path)
    loaded = load_state_file(dst, path)
    assert loaded == saved
    assert dst.n_tokens == src.n_tokens
