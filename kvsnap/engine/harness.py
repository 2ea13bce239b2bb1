"""Continuation harness: checkpoint, destroy, recreate, restore, continue.

The harness proves that the state blob is sufficient for a clean logical
fork of a generation stream:

1. create engine A, evaluate the prompt;
2. checkpoint (engine state + token history + position) and persist the state;
3. generate `n_predict` tokens on A (S1), then destroy A;
4. create engine B, load the persisted state into it, rewind history and
   position to the checkpoint;
5. generate `n_predict` tokens on B (S2).

S1 and S2 must be identical token for token. The two engines never share
cache memory; the persisted bytes are the only channel between them.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .adapters.base import BaseEngine
from .errors import SizeMismatchError, TokenizeError
from .history import TokenHistory
from .registry import EngineFactory
from .sampling import SamplerAdapter
from .state_codec import EngineState, capture_state, read_state, restore_state, write_state
from .types import SamplingParams

logger = logging.getLogger(__name__)

TokenCallback = Callable[[BaseEngine, int], None]


@dataclass(frozen=True)
class Checkpoint:
    """Everything needed to resume generation exactly."""

    state: EngineState
    history: tuple[int, ...]
    n_past: int


@dataclass(frozen=True)
class ContinuationResult:
    prompt_tokens: tuple[int, ...]
    first: tuple[int, ...]
    second: tuple[int, ...]
    checkpoint: Checkpoint
    state_path: str

    @property
    def matches(self) -> bool:
        return self.first == self.second

    @property
    def first_divergence(self) -> int | None:
        """Index of the first differing token, or None when the runs agree."""
        for i, (a, b) in enumerate(zip(self.first, self.second)):
            if a != b:
                return i
        if len(self.first) != len(self.second):
            return min(len(self.first), len(self.second))
        return None


class ContinuationHarness:
    """Drives generation runs and the snapshot/restore equivalence protocol.

    The harness owns the token history and the position counter (`n_past`);
    engines only own their cache. Not thread-safe.
    """

    def __init__(
        self,
        engine_factory: EngineFactory,
        *,
        sampling: SamplingParams | None = None,
        state_path: str | os.PathLike = "dump_state.bin",
        header: bool = True,
        on_token: TokenCallback | None = None,
    ) -> None:
        self._factory = engine_factory
        self._sampling = sampling or SamplingParams()
        self._sampling.validate()
        self._state_path = Path(state_path)
        self._header = bool(header)
        self._on_token = on_token

        self.history = TokenHistory.window(self._sampling.repeat_last_n)
        self.n_past = 0
        self.last_first_run: tuple[int, ...] | None = None

    @property
    def sampling(self) -> SamplingParams:
        return self._sampling

    @property
    def state_path(self) -> Path:
        return self._state_path

    def reset(self) -> None:
        """Fresh history window and position counter."""
        self.history = TokenHistory.window(self._sampling.repeat_last_n)
        self.n_past = 0

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def prefill(self, engine: BaseEngine, prompt: str) -> list[int]:
        """Tokenize and evaluate `prompt` at the current position."""
        tokens = engine.tokenize(prompt, add_bos=True)
        if len(tokens) < 1:
            raise TokenizeError("failed to tokenize prompt (no tokens)")
        if self.n_past + len(tokens) > engine.n_ctx:
            raise TokenizeError(
                f"prompt is too long: {len(tokens)} tokens at n_past={self.n_past} exceed n_ctx={engine.n_ctx}"
            )

        engine.evaluate(tokens, self.n_past)
        self.history.extend(tokens)
        self.n_past += len(tokens)
        logger.debug("prefill: %d prompt tokens, n_past=%d", len(tokens), self.n_past)
        return tokens

    def checkpoint(self, engine: BaseEngine) -> Checkpoint:
        """Capture engine state together with value copies of history and position."""
        ckpt = Checkpoint(
            state=capture_state(engine),
            history=self.history.snapshot(),
            n_past=int(self.n_past),
        )
        logger.info("checkpoint at n_past=%d (%r)", ckpt.n_past, ckpt.state)
        return ckpt

    def generate(self, engine: BaseEngine, n_predict: int) -> list[int]:
        """Sample and evaluate `n_predict` tokens, one engine step at a time."""
        if n_predict < 0:
            raise ValueError("'n_predict' must be >= 0.")

        sampler = SamplerAdapter(engine, self.history, self._sampling)
        generated: list[int] = []
        for _ in range(n_predict):
            candidates = sampler.build_candidates()
            token_id = sampler.select_next(candidates)
            generated.append(token_id)
            if self._on_token is not None:
                self._on_token(engine, token_id)
            # Position only advances once the engine step succeeded.
            self.n_past = sampler.feedback(token_id, self.n_past)
        return generated

    def persist(self, checkpoint: Checkpoint) -> None:
        write_state(checkpoint.state, self._state_path, header=self._header)

    def resume(self, engine: BaseEngine, checkpoint: Checkpoint, *, from_disk: bool = True) -> None:
        """Restore `checkpoint` into `engine` and rewind history/position.

        With `from_disk=True` the engine state is read back from `state_path`
        (sized by `engine.state_size()`), not taken from memory.
        """
        if from_disk:
            # The recorded size is checked first; a headerless file carries no length of its own.
            expected = int(engine.state_size())
            if checkpoint.state.size != expected:
                raise SizeMismatchError(expected, checkpoint.state.size)
            state = read_state(self._state_path, expected_size=expected, header=self._header)
        else:
            state = checkpoint.state
        restore_state(engine, state)
        self.history.restore(checkpoint.history)
        self.n_past = int(checkpoint.n_past)
        logger.info("resumed at n_past=%d", self.n_past)

    # -------------------------------------------------------------------------
    # Protocols
    # -------------------------------------------------------------------------

    def run(self, prompt: str, n_predict: int) -> ContinuationResult:
        """Run the full checkpoint -> destroy -> recreate -> restore protocol."""
        if n_predict < 0:
            raise ValueError("'n_predict' must be >= 0.")

        self.reset()
        self.last_first_run = None

        engine_a = self._factory()
        try:
            prompt_tokens = self.prefill(engine_a, prompt)
            ckpt = self.checkpoint(engine_a)
            self.persist(ckpt)
            first = self.generate(engine_a, n_predict)
        finally:
            engine_a.close()
        self.last_first_run = tuple(first)

        engine_b = self._factory()
        try:
            self.resume(engine_b, ckpt)
            second = self.generate(engine_b, n_predict)
        finally:
            engine_b.close()

        result = ContinuationResult(
            prompt_tokens=tuple(prompt_tokens),
            first=tuple(first),
            second=tuple(second),
            checkpoint=ckpt,
            state_path=str(self._state_path),
        )
        if not result.matches:
            logger.warning(
                "restored run diverged at index %s: first=%s second=%s",
                result.first_divergence,
                list(result.first),
                list(result.second),
            )
        return result

    def run_baseline(self, prompt: str, n_predict: int) -> tuple[int, ...]:
        """Straight-through generation with no checkpoint, on a fresh engine."""
        self.reset()
        engine = self._factory()
        try:
            self.prefill(engine, prompt)
            return tuple(self.generate(engine, n_predict))
        finally:
            engine.close()
