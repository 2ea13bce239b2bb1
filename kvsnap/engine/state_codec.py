"""Engine state capture, restore and persistence.

An engine's working buffer is carried as an opaque, fixed-length byte blob:

- **capture** asks the engine for its state size, allocates exactly that many
  bytes and lets the engine serialize into them;
- **restore** refuses any blob whose size differs from what the target engine
  requires, then lets the engine overwrite its working state;
- **write/read** move the blob to and from durable storage, optionally behind
  an 8-byte little-endian length prefix. The prefix is validated against the
  size the reading engine reports; it is never trusted on its own.
"""

from __future__ import annotations

import hashlib
import logging
import os
import struct
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Union

from .adapters.base import BaseEngine
from .errors import SizeMismatchError, StateIOError

logger = logging.getLogger(__name__)

_LENGTH_PREFIX = struct.Struct("<Q")

StatePath = Union[str, os.PathLike]


@dataclass(frozen=True)
class EngineState:
    """Immutable snapshot of an engine's working buffer."""

    data: bytes

    def __post_init__(self) -> None:
        if not isinstance(self.data, bytes):
            object.__setattr__(self, "data", bytes(self.data))

    @property
    def size(self) -> int:
        return len(self.data)

    def __len__(self) -> int:
        return len(self.data)

    def sha256(self) -> str:
        return hashlib.sha256(self.data).hexdigest()

    def __repr__(self) -> str:
        return f"EngineState(size={self.size}, sha256={self.sha256()[:12]})"


# =============================================================================
# Capture / Restore
# =============================================================================


def capture_state(engine: BaseEngine) -> EngineState:
    """Serialize `engine`'s current working state. Does not alter generation state."""
    size = int(engine.state_size())
    buf = bytearray(size)
    written = int(engine.copy_state_data(buf))
    if written != size:
        raise SizeMismatchError(size, written)
    state = EngineState(bytes(buf))
    logger.debug("captured engine state: %r", state)
    return state


def restore_state(engine: BaseEngine, state: EngineState) -> None:
    """Overwrite `engine`'s working state with `state`.

    Raises:
        SizeMismatchError: If the engine requires a different state size. The
            engine is left untouched in that case.
    """
    expected = int(engine.state_size())
    if state.size != expected:
        raise SizeMismatchError(expected, state.size)
    read = int(engine.set_state_data(state.data))
    if read != expected:
        raise SizeMismatchError(expected, read)
    logger.debug("restored engine state: %r", state)


# =============================================================================
# Persist / Load
# =============================================================================


def write_state(state: EngineState, destination: StatePath | BinaryIO, *, header: bool = True) -> int:
    """Write `state` to a path (atomically) or an open binary file.

    Returns:
        Number of bytes written, including the length prefix.
    """
    if hasattr(destination, "write"):
        return _write_stream(state, destination, header=header)

    path = Path(destination)
    tmp = path.with_name(f".{path.name}.tmp-{uuid.uuid4().hex}")
    try:
        with tmp.open("wb") as f:
            n = _write_stream(state, f, header=header)
            f.flush()
            os.fsync(f.fileno())
        tmp.replace(path)
    except OSError as exc:
        try:
            tmp.unlink()
        except OSError:
            pass
        if isinstance(exc, StateIOError):
            raise
        raise StateIOError(f"failed to write state to {str(path)!r}: {exc}") from exc
    logger.info("wrote engine state (%d bytes) to %s", state.size, path)
    return n


def _write_stream(state: EngineState, f: BinaryIO, *, header: bool) -> int:
    total = 0
    try:
        if header:
            total += _write_all(f, _LENGTH_PREFIX.pack(state.size))
        total += _write_all(f, state.data)
    except StateIOError:
        raise
    except OSError as exc:
        raise StateIOError(f"failed to write state: {exc}") from exc
    return total


def _write_all(f: BinaryIO, data: bytes) -> int:
    n = f.write(data)
    # Raw (unbuffered) streams may accept fewer bytes than offered.
    if n is not None and n != len(data):
        raise StateIOError(f"short write: {n} of {len(data)} bytes")
    return len(data)


def read_state(source: StatePath | BinaryIO, *, expected_size: int, header: bool = True) -> EngineState:
    """Read a state blob of exactly `expected_size` bytes.

    `expected_size` must come from an engine with the configuration the state
    will be restored into (`engine.state_size()`).

    Raises:
        SizeMismatchError: The length prefix disagrees with `expected_size`.
        StateIOError: The source cannot be read, is truncated, or carries
            trailing data.
    """
    expected_size = int(expected_size)
    if hasattr(source, "read"):
        return _read_stream(source, expected_size=expected_size, header=header)

    path = Path(source)
    try:
        with path.open("rb") as f:
            state = _read_stream(f, expected_size=expected_size, header=header)
    except (StateIOError, SizeMismatchError):
        raise
    except OSError as exc:
        raise StateIOError(f"failed to read state from {str(path)!r}: {exc}") from exc
    logger.info("read engine state (%d bytes) from %s", state.size, path)
    return state


def _read_stream(f: BinaryIO, *, expected_size: int, header: bool) -> EngineState:
    try:
        if header:
            raw = _read_exact(f, _LENGTH_PREFIX.size)
            if len(raw) != _LENGTH_PREFIX.size:
                raise StateIOError(f"short read: length prefix has {len(raw)} of {_LENGTH_PREFIX.size} bytes")
            (declared,) = _LENGTH_PREFIX.unpack(raw)
            if declared != expected_size:
                raise SizeMismatchError(expected_size, declared)

        data = _read_exact(f, expected_size)
        if len(data) != expected_size:
            raise StateIOError(f"short read: got {len(data)} of {expected_size} state bytes")
        if f.read(1):
            raise StateIOError(f"trailing data after {expected_size} state bytes")
    except (StateIOError, SizeMismatchError):
        raise
    except OSError as exc:
        raise StateIOError(f"failed to read state: {exc}") from exc
    return EngineState(data)


def _read_exact(f: BinaryIO, n: int) -> bytes:
    chunks: list[bytes] = []
    remaining = n
    while remaining > 0:
        chunk = f.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


# =============================================================================
# Convenience
# =============================================================================


def save_state_file(engine: BaseEngine, path: StatePath, *, header: bool = True) -> EngineState:
    """Capture `engine` and persist the result to `path`."""
    state = capture_state(engine)
    write_state(state, path, header=header)
    return state


def load_state_file(engine: BaseEngine, path: StatePath, *, header: bool = True) -> EngineState:
    """Read a state file sized for `engine` and restore it.

    Restore is only attempted once the whole blob has been read successfully.
    """
    state = read_state(path, expected_size=engine.state_size(), header=header)
    restore_state(engine, state)
    return state
