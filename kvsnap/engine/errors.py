"""Failures raised by the snapshot/restore and generation paths.

Every error carries a ``phase`` tag naming the stage that failed, so callers
can print a one-line diagnostic without inspecting the exception type.
None of these are retried inside kvsnap.
"""

from __future__ import annotations


class TokenizeError(ValueError):
    """The prompt could not be turned into a usable token sequence."""

    phase = "tokenize"


class EvaluateError(RuntimeError):
    """The engine failed to advance its cache by the requested tokens."""

    phase = "evaluate"


class SizeMismatchError(RuntimeError):
    """A state blob does not match the size the target engine requires.

    This signals configuration drift (context length, cache dtype, vocabulary)
    between the engine that produced a snapshot and the one consuming it.
    """

    phase = "size-validate"

    def __init__(self, expected: int, actual: int, *, what: str = "state") -> None:
        self.expected = int(expected)
        self.actual = int(actual)
        super().__init__(f"{what} size mismatch: expected {self.expected} bytes, got {self.actual}")


class StateIOError(OSError):
    """Durable-storage write/read failure, including short reads."""

    phase = "io"


HARNESS_ERRORS = (TokenizeError, EvaluateError, SizeMismatchError, StateIOError)


def error_phase(exc: BaseException) -> str:
    """Phase tag for diagnostics (`"unknown"` for foreign exceptions)."""
    return str(getattr(exc, "phase", "unknown"))
