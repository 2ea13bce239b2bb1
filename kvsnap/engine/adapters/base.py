"""Base engine interface (the engine handle contract)."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Sequence

from ..types import EngineParams

if TYPE_CHECKING:
    import torch


class BaseEngine(ABC):
    """
    Abstract base class for generation engines.

    An engine owns model weights plus a mutable working buffer (attention
    cache, logits of the last step, sampling RNG). The snapshot codec treats
    that working buffer as an opaque byte blob whose size depends only on the
    engine configuration.

    Thread Safety:
        Engines are NOT thread-safe. One generation stream owns an engine for
        its whole lifetime.
    """

    family: str = "base"

    @classmethod
    @abstractmethod
    def from_file(cls, model_path: str, params: EngineParams) -> "BaseEngine":
        """
        Create a fresh engine from a model file.

        Args:
            model_path: Path to the model file.
            params: Engine configuration (context length, seed, threads, ...).

        Returns:
            A new engine with an empty cache.
        """
        pass

    # -------------------------------------------------------------------------
    # Geometry
    # -------------------------------------------------------------------------

    @property
    @abstractmethod
    def n_vocab(self) -> int:
        """Vocabulary size (length of the logits vector)."""
        pass

    @property
    @abstractmethod
    def n_ctx(self) -> int:
        """Number of cache cells (maximum evaluated positions)."""
        pass

    @property
    @abstractmethod
    def generator(self) -> "torch.Generator":
        """RNG used for stochastic sampling; part of the state blob."""
        pass

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @abstractmethod
    def state_size(self) -> int:
        """Bytes needed to hold the engine state. Depends on configuration only."""
        pass

    @abstractmethod
    def copy_state_data(self, buffer: bytearray | memoryview) -> int:
        """
        Serialize the current state into `buffer`.

        Args:
            buffer: Writable buffer of at least `state_size()` bytes.

        Returns:
            Number of bytes written (always `state_size()`).
        """
        pass

    @abstractmethod
    def set_state_data(self, buffer: bytes | bytearray | memoryview) -> int:
        """
        Overwrite the working state from `buffer`.

        Implementations validate every embedded header before mutating
        anything, so a rejected buffer leaves the engine unchanged.

        Returns:
            Number of bytes read (always `state_size()`).
        """
        pass

    # -------------------------------------------------------------------------
    # Compute
    # -------------------------------------------------------------------------

    @abstractmethod
    def evaluate(self, tokens: Sequence[int], n_past: int) -> None:
        """
        Run the model on `tokens`, writing their cache entries at
        positions `n_past .. n_past + len(tokens) - 1`.

        Raises:
            EvaluateError: If the step cannot be applied.
        """
        pass

    @abstractmethod
    def logits(self) -> "torch.Tensor":
        """Float32 logits (length `n_vocab`) for the last evaluated token."""
        pass

    # -------------------------------------------------------------------------
    # Tokens
    # -------------------------------------------------------------------------

    @abstractmethod
    def tokenize(self, text: str, add_bos: bool = True) -> list[int]:
        """Encode text into token IDs."""
        pass

    @abstractmethod
    def token_to_bytes(self, token_id: int) -> bytes:
        """Raw bytes of one token (may be a partial UTF-8 sequence)."""
        pass

    def detokenize(self, token_ids: Sequence[int]) -> str:
        """Decode a token sequence, replacing invalid UTF-8."""
        return b"".join(self.token_to_bytes(int(t)) for t in token_ids).decode("utf-8", errors="replace")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    @abstractmethod
    def model_info(self) -> dict[str, Any]:
        """
        Return metadata about the loaded model.

        Returns:
            Dict with keys like 'model_path', 'family', 'n_vocab', 'n_ctx'.
        """
        pass

    def close(self) -> None:
        """
        Release the working buffer.

        Default implementation does nothing; override if cleanup is needed.
        """
        pass

    def __enter__(self) -> "BaseEngine":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
