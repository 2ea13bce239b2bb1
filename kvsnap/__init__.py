"""
kvsnap - Snapshot and resume the mutable state of a token-generation engine.

This package captures an engine's working buffer (attention cache, last
logits, sampling RNG) as a fixed-size opaque blob, persists it, restores it
into a freshly created engine and continues generation bit-identically.

Quick Start:
    from kvsnap import ContinuationHarness, EngineParams, SamplingParams, engine_factory

    factory = engine_factory("reference", "model.pt", EngineParams(n_ctx=512, seed=42))
    harness = ContinuationHarness(factory, sampling=SamplingParams(), state_path="dump_state.bin")
    result = harness.run("The quick brown fox", n_predict=16)
    assert result.matches

Submodules:
    - kvsnap.engine.state_codec: capture/restore/write/read of engine state
    - kvsnap.engine.harness: checkpoint -> recreate -> resume protocol
    - kvsnap.engine.sampling: candidate sets and next-token selection
    - kvsnap.engine.history: token history window
    - kvsnap.engine.checkpoint_store: named on-disk checkpoints
    - kvsnap.engine.adapters: engine contract + reference torch engine

Environment Variables:
    KVSNAP_CACHE_DIR: Root directory of the checkpoint store
        (default: $XDG_CACHE_HOME/kvsnap/checkpoints)
"""

from kvsnap._version import __version__

from kvsnap.runtime import (
    check_torch_required,
    configure_threads,
    describe_runtime,
    is_cuda_available,
)

from kvsnap.engine.adapters import BaseEngine, ReferenceEngine, ReferenceHParams, ReferenceModel
from kvsnap.engine.checkpoint_store import (
    CheckpointManifest,
    CheckpointStore,
    SnapshotCompatibilityError,
    compute_engine_compatibility,
)
from kvsnap.engine.errors import (
    HARNESS_ERRORS,
    EvaluateError,
    SizeMismatchError,
    StateIOError,
    TokenizeError,
)
from kvsnap.engine.harness import Checkpoint, ContinuationHarness, ContinuationResult
from kvsnap.engine.history import TokenHistory
from kvsnap.engine.registry import engine_factory, get_engine_class, list_engine_families
from kvsnap.engine.sampling import CandidateSet, SamplerAdapter, build_candidates, sample_token
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

__all__ = [
    # Version
    "__version__",
    # Runtime
    "check_torch_required",
    "configure_threads",
    "describe_runtime",
    "is_cuda_available",
    # Engines
    "BaseEngine",
    "ReferenceEngine",
    "ReferenceHParams",
    "ReferenceModel",
    "engine_factory",
    "get_engine_class",
    "list_engine_families",
    # Config
    "EngineParams",
    "SamplingParams",
    # State codec
    "EngineState",
    "capture_state",
    "restore_state",
    "write_state",
    "read_state",
    "save_state_file",
    "load_state_file",
    # Generation
    "TokenHistory",
    "CandidateSet",
    "SamplerAdapter",
    "build_candidates",
    "sample_token",
    "Checkpoint",
    "ContinuationHarness",
    "ContinuationResult",
    # Checkpoint store
    "CheckpointStore",
    "CheckpointManifest",
    "SnapshotCompatibilityError",
    "compute_engine_compatibility",
    # Errors
    "HARNESS_ERRORS",
    "TokenizeError",
    "EvaluateError",
    "SizeMismatchError",
    "StateIOError",
]
