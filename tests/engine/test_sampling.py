import pytest


torch = pytest.importorskip("torch", reason="torch not installed")


from kvsnap.engine.errors import EvaluateError
from kvsnap.engine.history import TokenHistory
from kvsnap.engine.sampling import (
    SamplerAdapter,
    apply_repetition_penalty,
    build_candidates,
    sample_token,
)
from kvsnap.engine.types import SamplingParams


class _FakeEngine:
    """Serves a fixed logits row and records evaluate() calls."""

    def __init__(self, logits, *, fail_at: int | None = None, seed: int = 0) -> None:
        self._logits = torch.tensor(logits, dtype=torch.float32)
        self.n_vocab = int(self._logits.numel())
        self.calls: list[tuple[list[int], int]] = []
        self._fail_at = fail_at
        self.generator = torch.Generator(device="cpu")
        self.generator.manual_seed(seed)

    def logits(self) -> torch.Tensor:
        return self._logits.clone()

    def evaluate(self, tokens, n_past: int) -> None:
        if self._fail_at is not None and n_past >= self._fail_at:
            raise EvaluateError(f"refusing n_past={n_past}")
        self.calls.append((list(tokens), n_past))


def test_candidates_cover_vocabulary_in_order():
    c = build_candidates(torch.tensor([0.5, -1.0, 2.0]), 3)
    assert len(c) == 3
    assert [cand.id for cand in c] == [0, 1, 2]
    assert [cand.logit for cand in c] == [0.5, -1.0, 2.0]
    assert all(cand.p == 0.0 for cand in c)


def test_candidates_truncate_extra_logits_and_reject_short_ones():
    assert len(build_candidates([1.0, 2.0, 3.0, 4.0], 3)) == 3
    with pytest.raises(ValueError):
        build_candidates([1.0, 2.0], 3)


def test_greedy_picks_argmax_and_lowest_id_on_ties():
    params = SamplingParams(temperature=0.0)
    assert sample_token(build_candidates([0.1, 3.0, 2.0], 3), params) == 1
    assert sample_token(build_candidates([1.0, 5.0, 5.0, 5.0], 4), params) == 1


def test_sampling_fp32_softmax_avoids_nan() -> None:
    # Extreme logits that are likely to overflow in fp16 softmax.
    logits = torch.tensor([10000.0, -10000.0, 0.0], dtype=torch.float16)
    tok = sample_token(build_candidates(logits, 3), SamplingParams(temperature=0.1))
    assert tok in {0, 1, 2}


def test_sampling_fallback_when_all_probs_zero() -> None:
    # All-NaN logits sanitize to -inf everywhere; the sampler falls back to argmax.
    logits = torch.tensor([float("nan")] * 3)
    assert sample_token(build_candidates(logits, 3), SamplingParams(temperature=0.7)) == 0
    assert sample_token(build_candidates(logits, 3), SamplingParams(temperature=0.0)) == 0


def test_top_k_one_and_tight_top_p_are_deterministic():
    cands = build_candidates([0.0, 1.0, 4.0, 3.9], 4)
    g = torch.Generator().manual_seed(1)
    for _ in range(20):
        assert sample_token(cands, SamplingParams(temperature=1.5, top_k=1), generator=g) == 2

    peaked = build_candidates([12.0, 0.0, 0.0], 3)
    for _ in range(20):
        assert sample_token(peaked, SamplingParams(temperature=1.0, top_p=0.5), generator=g) == 0


def test_same_generator_seed_replays_the_same_draws():
    cands = build_candidates(torch.linspace(-1.0, 1.0, 50), 50)
    params = SamplingParams(temperature=1.0)

    def draws(seed: int) -> list[int]:
        g = torch.Generator().manual_seed(seed)
        return [sample_token(cands, params, generator=g) for _ in range(32)]

    assert draws(42) == draws(42)


def test_repetition_penalty_divides_positive_and_multiplies_negative():
    scores = torch.tensor([2.0, -2.0, 1.0])
    out = apply_repetition_penalty(scores, [0, 1, 0], 2.0)
    assert out.tolist() == [1.0, -4.0, 1.0]
    assert scores.tolist() == [2.0, -2.0, 1.0]
    assert apply_repetition_penalty(scores, [0], 1.0) is scores


def test_repetition_penalty_only_looks_at_recent_window():
    cands = build_candidates([3.0, 2.5, 0.0], 3)
    history = TokenHistory([0, 2, 2])
    # Token 0 is outside the last-2 window, so only token 2 is penalized.
    params = SamplingParams(temperature=0.0, repeat_last_n=2, repeat_penalty=2.0)
    assert sample_token(cands, params, history=history) == 0

    params = SamplingParams(temperature=0.0, repeat_last_n=3, repeat_penalty=2.0)
    assert sample_token(cands, params, history=history) == 1


def test_adapter_step_updates_history_then_advances_position():
    engine = _FakeEngine([0.0, 1.0, 0.5])
    history = TokenHistory.window(2)
    adapter = SamplerAdapter(engine, history, SamplingParams())

    token, n_past = adapter.step(5)
    assert (token, n_past) == (1, 6)
    assert history.to_list() == [0, 0, 1]
    assert engine.calls == [([1], 5)]


def test_adapter_feedback_failure_does_not_advance():
    engine = _FakeEngine([0.0, 1.0], fail_at=3)
    adapter = SamplerAdapter(engine, TokenHistory(), SamplingParams())
    assert adapter.feedback(1, 2) == 3
    with pytest.raises(EvaluateError):
        adapter.feedback(1, 3)


def test_sampling_params_validation_and_merge():
    with pytest.raises(ValueError):
        SamplingParams(top_p=0.0).validate()
    with pytest.raises(ValueError):
        SamplingParams(repeat_penalty=0.0).validate()
    with pytest.raises(ValueError):
        SamplingParams().merged({"temp": 0.5})

    merged = SamplingParams().merged({"temperature": "0.8", "top_k": 40})
    assert merged.temperature == 0.8
    assert merged.top_k == 40
    assert not merged.greedy
    assert SamplingParams().greedy
