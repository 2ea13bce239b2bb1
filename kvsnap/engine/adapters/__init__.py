# Engine adapters
#
# Each adapter implements the engine handle contract:
#   - Create from a model file + EngineParams
#   - Evaluate token batches at an explicit position
#   - Expose logits, tokenizer and sampling RNG
#   - Capture / restore its working state as a fixed-size byte blob
#
# The snapshot codec and harness only talk to BaseEngine.

from .base import BaseEngine
from .reference import ReferenceEngine, ReferenceHParams, ReferenceModel

__all__ = ["BaseEngine", "ReferenceEngine", "ReferenceHParams", "ReferenceModel"]
