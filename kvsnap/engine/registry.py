"""Engine registry.

Maps engine family names to engine classes and builds the zero-argument
factories the harness uses to destroy and recreate engines.
"""

from typing import Callable, Type

from .adapters.base import BaseEngine
from .adapters.reference import ReferenceEngine
from .types import EngineParams

EngineFactory = Callable[[], BaseEngine]

_ENGINE_REGISTRY: dict[str, Type[BaseEngine]] = {
    ReferenceEngine.family: ReferenceEngine,
}


def get_engine_class(family: str) -> Type[BaseEngine]:
    """
    Get the engine class for the given family.

    Raises:
        ValueError: If the family is not registered.
    """
    try:
        return _ENGINE_REGISTRY[family]
    except KeyError:
        available = ", ".join(_ENGINE_REGISTRY)
        raise ValueError(f"Unknown engine family: {family!r}. Available: {available}") from None


def engine_factory(family: str, model_path: str, params: EngineParams) -> EngineFactory:
    """
    Resolve `family` and validate `params` once, then return a creator.

    Every call of the creator loads `model_path` into a new engine, so two
    engines from the same factory never share cache memory.
    """
    engine_cls = get_engine_class(family)
    params.validate()

    def _create() -> BaseEngine:
        return engine_cls.from_file(model_path, params)

    return _create


def list_engine_families() -> list[str]:
    return sorted(_ENGINE_REGISTRY)
