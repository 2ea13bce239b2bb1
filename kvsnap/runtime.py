"""Runtime environment checks and thread configuration for kvsnap."""

from __future__ import annotations

import functools
from typing import Any

import torch


@functools.lru_cache(maxsize=1)
def is_cuda_available() -> bool:
    """Check if CUDA is available (reported only; engines always run on CPU)."""
    return torch.cuda.is_available()


@functools.lru_cache(maxsize=1)
def default_num_threads() -> int:
    """Intra-op thread count torch picked at startup."""
    return int(torch.get_num_threads())


def configure_threads(n_threads: int | None) -> int:
    """Apply the engine thread count to torch's intra-op pool.

    Returns the thread count in effect afterwards. `None` or values <= 0 keep
    the current setting.
    """
    if n_threads is not None and int(n_threads) > 0:
        if int(n_threads) != torch.get_num_threads():
            torch.set_num_threads(int(n_threads))
    return int(torch.get_num_threads())


def describe_runtime() -> dict[str, Any]:
    """Small environment report for verbose CLI logging."""
    return {
        "torch": str(torch.__version__),
        "num_threads": int(torch.get_num_threads()),
        "default_num_threads": default_num_threads(),
        "cuda_available": is_cuda_available(),
    }


def check_torch_required() -> None:
    """Raise ImportError if the installed torch lacks APIs the engine relies on."""
    if not hasattr(torch, "frombuffer"):
        raise ImportError(
            "kvsnap requires torch>=1.10 (torch.frombuffer). "
            "Install it with: pip install 'torch>=2.0'"
        )
