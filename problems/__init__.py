"""Problem source registry exports."""

from problems.base import (
    PROBLEM_SOURCE_REGISTRY,
    BaseProblemSource,
    InMemoryProblemSource,
    get_problem_source,
    register_problem_source,
)
from problems.jsonl_source import JsonlProblemSource, problem_from_record

__all__ = [
    "BaseProblemSource",
    "InMemoryProblemSource",
    "JsonlProblemSource",
    "PROBLEM_SOURCE_REGISTRY",
    "get_problem_source",
    "problem_from_record",
    "register_problem_source",
]
