"""Candidate construction and next-token selection.

One generation step walks::

    LogitsAvailable -> CandidatesBuilt -> TokenSelected -> HistoryUpdated -> EngineAdvanced

`SamplerAdapter.step()` runs exactly one such cycle. Sampling draws from the
engine's own generator, so stochastic policies replay identically after the
engine state (which includes the generator) is restored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterator, Sequence

import torch

from .history import TokenHistory
from .types import SamplingParams

if TYPE_CHECKING:
    from .adapters.base import BaseEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candidate:
    id: int
    logit: float
    p: float = 0.0


@dataclass
class CandidateSet:
    """Per-step candidates covering the whole vocabulary, in vocabulary order."""

    ids: torch.Tensor
    logits: torch.Tensor
    probs: torch.Tensor

    def __len__(self) -> int:
        return int(self.ids.numel())

    def __getitem__(self, index: int) -> Candidate:
        return Candidate(
            id=int(self.ids[index]),
            logit=float(self.logits[index]),
            p=float(self.probs[index]),
        )

    def __iter__(self) -> Iterator[Candidate]:
        for i in range(len(self)):
            yield self[i]


def build_candidates(logits: torch.Tensor | Sequence[float], n_vocab: int) -> CandidateSet:
    """One (id, logit, p=0) entry per vocabulary id; id equals position."""
    if n_vocab <= 0:
        raise ValueError("'n_vocab' must be > 0.")
    flat = torch.as_tensor(logits, dtype=torch.float32).reshape(-1)
    if flat.numel() < n_vocab:
        raise ValueError(f"logits has {flat.numel()} entries, expected at least n_vocab={n_vocab}")
    return CandidateSet(
        ids=torch.arange(n_vocab, dtype=torch.long),
        logits=flat[:n_vocab].clone(),
        probs=torch.zeros(n_vocab, dtype=torch.float32),
    )


def apply_repetition_penalty(scores: torch.Tensor, recent: Sequence[int], penalty: float) -> torch.Tensor:
    """Penalize ids present in `recent` (positive scores divided, others multiplied)."""
    if penalty == 1.0 or not recent:
        return scores
    n = scores.numel()
    ids = sorted({int(t) for t in recent if 0 <= int(t) < n})
    if not ids:
        return scores
    out = scores.clone()
    idx = torch.tensor(ids, dtype=torch.long)
    sel = out[idx]
    out[idx] = torch.where(sel <= 0, sel * penalty, sel / penalty)
    return out


def sample_token(
    candidates: CandidateSet,
    params: SamplingParams,
    *,
    generator: torch.Generator | None = None,
    history: TokenHistory | None = None,
) -> int:
    """Pick one token id in `[0, len(candidates))`."""
    scores = torch.nan_to_num(candidates.logits.float(), nan=float("-inf"))

    if history is not None and params.repeat_last_n > 0:
        scores = apply_repetition_penalty(scores, history.last(params.repeat_last_n), params.repeat_penalty)

    if params.greedy:
        # argmax returns the first maximal index: ties resolve to the lowest id.
        return _checked(int(torch.argmax(scores)), len(candidates))

    scores = scores / float(params.temperature)

    if 0 < params.top_k < scores.numel():
        kth = torch.topk(scores, params.top_k).values[-1]
        scores = scores.masked_fill(scores < kth, float("-inf"))

    if params.top_p < 1.0:
        sorted_scores, sorted_idx = torch.sort(scores, descending=True, stable=True)
        sorted_probs = torch.softmax(sorted_scores, dim=-1)
        # Drop a token once the mass before it already covers top_p; the first always stays.
        drop = (torch.cumsum(sorted_probs, dim=-1) - sorted_probs) > params.top_p
        scores = scores.clone()
        scores[sorted_idx[drop]] = float("-inf")

    probs = torch.softmax(scores, dim=-1)
    if torch.isnan(probs).any() or torch.isinf(probs).any() or (probs < 0).any():
        probs = torch.nan_to_num(probs, nan=0.0, posinf=0.0, neginf=0.0)
        probs = torch.clamp(probs, min=0.0)
        z = probs.sum()
        if z <= 0:
            return _checked(int(torch.argmax(scores)), len(candidates))
        probs = probs / z

    choice = torch.multinomial(probs, 1, generator=generator)
    return _checked(int(choice.item()), len(candidates))


def _checked(token_id: int, n_vocab: int) -> int:
    if token_id < 0 or token_id >= n_vocab:
        raise RuntimeError(f"Sampler produced out-of-range token {token_id} (n_vocab={n_vocab})")
    return token_id


class SamplerAdapter:
    """Bridges engine logits, the sampling policy and the token history.

    The adapter does not own the position counter: callers pass the current
    `n_past` and receive the advanced value back only after the engine step
    succeeded.
    """

    def __init__(
        self,
        engine: BaseEngine,
        history: TokenHistory,
        params: SamplingParams | None = None,
    ) -> None:
        self._engine = engine
        self._history = history
        self._params = params or SamplingParams()
        self._params.validate()

    @property
    def params(self) -> SamplingParams:
        return self._params

    def build_candidates(self) -> CandidateSet:
        return build_candidates(self._engine.logits(), self._engine.n_vocab)

    def select_next(self, candidates: CandidateSet) -> int:
        return sample_token(
            candidates,
            self._params,
            generator=self._engine.generator,
            history=self._history,
        )

    def feedback(self, token_id: int, n_past: int) -> int:
        """Record `token_id` and evaluate it at `n_past`. Returns the new position."""
        self._history.append(token_id)
        self._engine.evaluate([token_id], n_past)
        return n_past + 1

    def step(self, n_past: int) -> tuple[int, int]:
        """Run one full generation step. Returns `(token_id, new_n_past)`."""
        candidates = self.build_candidates()
        token_id = self.select_next(candidates)
        new_n_past = self.feedback(token_id, n_past)
        logger.debug("step: n_past=%d token=%d", n_past, token_id)
        return token_id, new_n_past
