"""Problem catalog loaded from a JSONL (or JSON list) file."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from core.errors import ProblemNotFoundError
from core.models import Problem
from core.text import strip_html
from problems.base import BaseProblemSource, register_problem_source


def _first(raw: dict[str, Any], keys: tuple[str, ...], default: Any = "") -> Any:
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return default


def _as_text(value: Any) -> str:
    if isinstance(value, (list, dict)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def problem_from_record(raw: dict[str, Any], idx: int = 0) -> Problem:
    """Normalize one catalog row; description HTML is reduced to text."""

    problem_id = str(_first(raw, ("problem_id", "id", "slug", "title_slug"), default=idx))
    parameter_map = raw.get("parameter_map", raw.get("parameters", ""))
    if isinstance(parameter_map, list):
        parameter_map = ", ".join(str(item) for item in parameter_map)
    test_cases = raw.get("test_cases", "")
    return Problem(
        problem_id=problem_id,
        title=str(_first(raw, ("title", "name"), default=problem_id)),
        description=strip_html(_first(raw, ("description", "content_html", "content"))),
        test_cases=test_cases if isinstance(test_cases, str) else _as_text(test_cases),
        parameter_map=str(parameter_map or ""),
        difficulty=str(_first(raw, ("difficulty",), default="Unknown")),
        starter_code=str(_first(raw, ("starter_code", "code", "template"))),
        metadata=dict(raw.get("metadata", {})),
    )


@register_problem_source("jsonl")
class JsonlProblemSource(BaseProblemSource):
    """Reads the whole catalog at construction time."""

    def __init__(self, data_path: str) -> None:
        path = Path(data_path)
        if not path.exists():
            raise FileNotFoundError(f"Problem catalog not found: {data_path}")

        if path.suffix == ".json":
            rows = json.loads(path.read_text(encoding="utf-8"))
            if isinstance(rows, dict):
                rows = rows.get("problems", [])
        else:
            rows = []
            with path.open("r", encoding="utf-8") as file_obj:
                for line in file_obj:
                    line = line.strip()
                    if line:
                        rows.append(json.loads(line))

        self._problems: dict[str, Problem] = {}
        for idx, raw in enumerate(rows):
            problem = problem_from_record(raw, idx)
            self._problems[problem.problem_id] = problem

    def get(self, problem_id: str) -> Problem:
        problem = self._problems.get(problem_id)
        if problem is None:
            raise ProblemNotFoundError(f"Unknown problem id: {problem_id}")
        return problem

    def list_ids(self) -> list[str]:
        return list(self._problems)
