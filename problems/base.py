"""Problem source abstractions."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable

from core.errors import ProblemNotFoundError
from core.models import Problem


class BaseProblemSource(ABC):
    """Read-only lookup of problems by identifier."""

    name: str = "base"

    @abstractmethod
    def get(self, problem_id: str) -> Problem:
        """Return the problem or raise ProblemNotFoundError."""

    @abstractmethod
    def list_ids(self) -> list[str]:
        """All known problem identifiers."""


class InMemoryProblemSource(BaseProblemSource):
    """Problems held in a dict, keyed by ``problem_id``."""

    name = "memory"

    def __init__(self, problems: Iterable[Problem] = ()) -> None:
        self._problems = {problem.problem_id: problem for problem in problems}

    def add(self, problem: Problem) -> None:
        self._problems[problem.problem_id] = problem

    def get(self, problem_id: str) -> Problem:
        try:
            return self._problems[problem_id]
        except KeyError:
            raise ProblemNotFoundError(f"Unknown problem id: {problem_id}") from None

    def list_ids(self) -> list[str]:
        return sorted(self._problems)


PROBLEM_SOURCE_REGISTRY: dict[str, type[BaseProblemSource]] = {"memory": InMemoryProblemSource}


def register_problem_source(name: str):
    """Register a problem source class by name."""

    def decorator(cls: type[BaseProblemSource]) -> type[BaseProblemSource]:
        PROBLEM_SOURCE_REGISTRY[name] = cls
        cls.name = name
        return cls

    return decorator


def get_problem_source(name: str, **kwargs) -> BaseProblemSource:
    """Instantiate a registered problem source."""

    if name not in PROBLEM_SOURCE_REGISTRY:
        available = ", ".join(sorted(PROBLEM_SOURCE_REGISTRY)) or "<none>"
        raise ValueError(f"Unknown problem source {name}. Available: {available}")
    return PROBLEM_SOURCE_REGISTRY[name](**kwargs)
