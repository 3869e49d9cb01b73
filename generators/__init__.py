"""Generator pipeline implementations."""

from generators.base import (
    GENERATOR_REGISTRY,
    BaseGenerator,
    GenerationResult,
    get_generator,
    register_generator,
)
from generators.direct import DirectGenerator
from generators.staged import StagedGenerator

__all__ = [
    "BaseGenerator",
    "GenerationResult",
    "GENERATOR_REGISTRY",
    "register_generator",
    "get_generator",
    "DirectGenerator",
    "StagedGenerator",
]
