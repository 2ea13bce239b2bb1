"""Token history window carried alongside engine state.

The history is not part of the engine's own state blob: the harness snapshots
and restores it next to the blob so sampling policies that look back over
recent tokens (repetition penalty) see the same context after a restore.
"""

from __future__ import annotations

from typing import Iterable, Iterator, Sequence


class TokenHistory:
    """Ordered token ids, oldest first.

    Capacity is a soft bound: `window()` pre-fills the requested number of
    sentinel entries, appends are never truncated.
    """

    __slots__ = ("_tokens",)

    def __init__(self, tokens: Iterable[int] = ()) -> None:
        self._tokens: list[int] = [int(t) for t in tokens]

    @classmethod
    def window(cls, capacity: int, fill: int = 0) -> "TokenHistory":
        """History pre-filled with `capacity` copies of `fill`."""
        if capacity < 0:
            raise ValueError("'capacity' must be >= 0.")
        return cls([int(fill)] * int(capacity))

    def append(self, token_id: int) -> None:
        self._tokens.append(int(token_id))

    def extend(self, token_ids: Iterable[int]) -> None:
        self._tokens.extend(int(t) for t in token_ids)

    def last(self, n: int) -> list[int]:
        """The most recent `n` tokens (fewer if the history is shorter)."""
        if n <= 0:
            return []
        return self._tokens[-n:]

    def snapshot(self) -> tuple[int, ...]:
        """Value copy of the whole history."""
        return tuple(self._tokens)

    def restore(self, tokens: Sequence[int]) -> None:
        """Replace the history with a copy of `tokens`."""
        self._tokens = [int(t) for t in tokens]

    def to_list(self) -> list[int]:
        return list(self._tokens)

    def __len__(self) -> int:
        return len(self._tokens)

    def __iter__(self) -> Iterator[int]:
        return iter(list(self._tokens))

    def __getitem__(self, index):
        return self._tokens[index]

    def __eq__(self, other: object) -> bool:
        if isinstance(other, TokenHistory):
            return self._tokens == other._tokens
        return NotImplemented

    def __repr__(self) -> str:
        tail = self._tokens[-8:]
        return f"TokenHistory(len={len(self._tokens)}, tail={tail})"
