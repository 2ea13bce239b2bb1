"""Engine and sampling configuration types.

These types are shared by the engine adapters, the sampler and the harness.
They are independent of any CLI layer.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Any


@dataclass(frozen=True)
class EngineParams:
    """Per-instance engine configuration.

    Notes:
    - `n_ctx`, `seed` and `memory_f16` shape the engine state blob (cache
      geometry, cache dtype, initial RNG state). A snapshot only restores into
      an engine created with the same values.
    - `n_threads` only affects compute scheduling, not state layout.
    """

    n_ctx: int = 512
    seed: int = 42
    n_threads: int = 4
    memory_f16: bool = True

    def validate(self) -> None:
        if self.n_ctx <= 0:
            raise ValueError("'n_ctx' must be > 0.")
        if self.seed < 0:
            raise ValueError("'seed' must be >= 0.")
        if self.n_threads <= 0:
            raise ValueError("'n_threads' must be > 0.")

    def merged(self, override: Any | None) -> "EngineParams":
        """Merge a dict override (e.g. parsed CLI flags) on top of these values."""
        if override is None:
            return self
        if isinstance(override, EngineParams):
            override.validate()
            return override
        if not isinstance(override, dict):
            raise ValueError("engine params override must be an object.")

        data = dict(override)
        memory_f16 = self.memory_f16
        if "memory_f16" in data:
            if not isinstance(data["memory_f16"], bool):
                raise ValueError("'memory_f16' must be a boolean.")
            memory_f16 = data["memory_f16"]

        merged = EngineParams(
            n_ctx=self.n_ctx if "n_ctx" not in data else _coerce_int(data["n_ctx"], "n_ctx"),
            seed=self.seed if "seed" not in data else _coerce_int(data["seed"], "seed", min_value=0),
            n_threads=(
                self.n_threads
                if "n_threads" not in data
                else _coerce_int(data["n_threads"], "n_threads")
            ),
            memory_f16=memory_f16,
        )
        merged.validate()
        return merged

    def state_relevant(self) -> dict[str, Any]:
        """The subset of params that must match between snapshot and restore."""
        return {"n_ctx": self.n_ctx, "seed": self.seed, "memory_f16": self.memory_f16}

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SamplingParams:
    """Next-token selection policy.

    `temperature == 0` selects greedily. `top_k == 0` and `top_p == 1.0`
    disable those filters. `repeat_penalty == 1.0` leaves scores untouched;
    the history window (`repeat_last_n`) is still tracked either way.
    """

    temperature: float = 0.0
    top_k: int = 0
    top_p: float = 1.0
    repeat_last_n: int = 64
    repeat_penalty: float = 1.0

    def validate(self) -> None:
        if self.temperature < 0:
            raise ValueError("'temperature' must be >= 0.")
        if self.top_k < 0:
            raise ValueError("'top_k' must be >= 0.")
        if not 0.0 < self.top_p <= 1.0:
            raise ValueError("'top_p' must be in (0, 1].")
        if self.repeat_last_n < 0:
            raise ValueError("'repeat_last_n' must be >= 0.")
        if self.repeat_penalty <= 0:
            raise ValueError("'repeat_penalty' must be > 0.")

    @property
    def greedy(self) -> bool:
        return self.temperature == 0

    def merged(self, override: Any | None) -> "SamplingParams":
        if override is None:
            return self
        if isinstance(override, SamplingParams):
            override.validate()
            return override
        if not isinstance(override, dict):
            raise ValueError("sampling override must be an object.")

        known = {f.name for f in fields(self)}
        unknown = sorted(set(override) - known)
        if unknown:
            raise ValueError(f"Unknown sampling options: {', '.join(unknown)}")

        data = {**asdict(self), **override}
        merged = SamplingParams(
            temperature=_coerce_float(data["temperature"], "temperature"),
            top_k=_coerce_int(data["top_k"], "top_k", min_value=0),
            top_p=_coerce_float(data["top_p"], "top_p"),
            repeat_last_n=_coerce_int(data["repeat_last_n"], "repeat_last_n", min_value=0),
            repeat_penalty=_coerce_float(data["repeat_penalty"], "repeat_penalty"),
        )
        merged.validate()
        return merged


def _coerce_int(value: Any, name: str, *, min_value: int = 1) -> int:
    if isinstance(value, bool):
        raise ValueError(f"'{name}' must be an integer.")
    try:
        out = int(value)
    except Exception as exc:
        raise ValueError(f"'{name}' must be an integer.") from exc
    if out < min_value:
        raise ValueError(f"'{name}' must be >= {min_value}.")
    return out


def _coerce_float(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise ValueError(f"'{name}' must be a number.")
    try:
        return float(value)
    except Exception as exc:
        raise ValueError(f"'{name}' must be a number.") from exc
