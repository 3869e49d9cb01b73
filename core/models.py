"""Session, attempt, and test-report records shared across the loop."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional

STATUS_IN_PROGRESS = "in_progress"
STATUS_SOLVED = "solved"
STATUS_MAX_ATTEMPTS = "max_attempts_reached"
TERMINAL_STATUSES = frozenset({STATUS_SOLVED, STATUS_MAX_ATTEMPTS})

PERFECT_SCORE = 100.0


def now_iso() -> str:
    return datetime.now().isoformat(timespec="seconds")


@dataclass
class Problem:
    """Read-only problem record supplied by a problem source."""

    problem_id: str
    title: str
    description: str
    test_cases: str
    parameter_map: str
    difficulty: str = "Unknown"
    starter_code: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class TestRecord:
    """One normalized test-case outcome."""

    __test__ = False

    input: str
    expected_output: str
    actual_output: str = ""
    passed: bool = False
    execution_time: float = 0.0
    memory_used: float = 0.0
    status: str = "Unknown"
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "TestRecord":
        return cls(
            input=str(payload.get("input", "")),
            expected_output=str(payload.get("expected_output", "")),
            actual_output=str(payload.get("actual_output", "")),
            passed=bool(payload.get("passed", False)),
            execution_time=float(payload.get("execution_time") or 0.0),
            memory_used=float(payload.get("memory_used") or 0.0),
            status=str(payload.get("status", "Unknown")),
            error=payload.get("error"),
        )


@dataclass
class TestReport:
    """Uniform evaluation result for one candidate program."""

    __test__ = False

    test_results: list[TestRecord] = field(default_factory=list)
    extraction_successful: bool = False

    @property
    def total_tests(self) -> int:
        return len(self.test_results)

    @property
    def passed_tests(self) -> int:
        return sum(1 for record in self.test_results if record.passed)

    @property
    def failed_tests(self) -> int:
        return self.total_tests - self.passed_tests

    @property
    def success_rate(self) -> float:
        """Percentage of passing tests; 0 when there are no tests."""

        if self.total_tests == 0:
            return 0.0
        return self.passed_tests / self.total_tests * 100.0

    @property
    def overall_status(self) -> str:
        return "All Passed" if self.total_tests and self.failed_tests == 0 else "Some Failed"

    def failing_records(self) -> list[TestRecord]:
        return [record for record in self.test_results if not record.passed]

    def error_messages(self) -> list[str]:
        return [record.error for record in self.test_results if record.error]

    def to_dict(self) -> dict[str, Any]:
        return {
            "success_rate": self.success_rate,
            "total_tests": self.total_tests,
            "passed_tests": self.passed_tests,
            "failed_tests": self.failed_tests,
            "overall_status": self.overall_status,
            "extraction_successful": self.extraction_successful,
            "test_results": [record.to_dict() for record in self.test_results],
        }


@dataclass
class Session:
    """One bounded improvement effort for a single problem."""

    session_id: str
    problem_id: str
    attempt_budget: int
    language: str = "python"
    status: str = STATUS_IN_PROGRESS
    best_score: float = 0.0
    attempts_consumed: int = 0
    created_at: str = field(default_factory=now_iso)
    completed_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Session":
        return cls(
            session_id=str(payload["session_id"]),
            problem_id=str(payload["problem_id"]),
            attempt_budget=int(payload["attempt_budget"]),
            language=str(payload.get("language", "python")),
            status=str(payload.get("status", STATUS_IN_PROGRESS)),
            best_score=float(payload.get("best_score", 0.0)),
            attempts_consumed=int(payload.get("attempts_consumed", 0)),
            created_at=str(payload.get("created_at") or now_iso()),
            completed_at=payload.get("completed_at"),
        )


@dataclass(frozen=True)
class Attempt:
    """One generate-evaluate cycle; immutable once written."""

    session_id: str
    attempt_number: int
    code: str
    rationale: str
    language: str
    score: float
    failed_tests: tuple[TestRecord, ...] = ()
    errors: tuple[str, ...] = ()
    raw_output: str = ""
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "attempt_number": self.attempt_number,
            "code": self.code,
            "rationale": self.rationale,
            "language": self.language,
            "score": self.score,
            "failed_tests": [record.to_dict() for record in self.failed_tests],
            "errors": list(self.errors),
            "raw_output": self.raw_output,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Attempt":
        return cls(
            session_id=str(payload["session_id"]),
            attempt_number=int(payload["attempt_number"]),
            code=str(payload.get("code", "")),
            rationale=str(payload.get("rationale", "")),
            language=str(payload.get("language", "python")),
            score=float(payload.get("score", 0.0)),
            failed_tests=tuple(TestRecord.from_dict(item) for item in payload.get("failed_tests", [])),
            errors=tuple(str(item) for item in payload.get("errors", [])),
            raw_output=str(payload.get("raw_output", "")),
            created_at=str(payload.get("created_at") or now_iso()),
        )


@dataclass(frozen=True)
class ImprovementLogEntry:
    """Strict improvement of a session's best score between two attempts."""

    session_id: str
    from_attempt: int
    to_attempt: int
    delta: float
    strategy: str
    changes_made: str
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ImprovementLogEntry":
        return cls(
            session_id=str(payload["session_id"]),
            from_attempt=int(payload["from_attempt"]),
            to_attempt=int(payload["to_attempt"]),
            delta=float(payload["delta"]),
            strategy=str(payload["strategy"]),
            changes_made=str(payload.get("changes_made", "")),
            created_at=str(payload.get("created_at") or now_iso()),
        )


@dataclass
class GenerationResult:
    """One candidate produced by a generator."""

    code: str
    rationale: str
    raw_output: str = ""
    tokens_used: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SolutionSnapshot:
    """Code and outcome of one stored attempt as shown in a report."""

    attempt_number: int = 0
    code: str = ""
    rationale: str = ""
    score: float = 0.0
    failed_tests: list[TestRecord] = field(default_factory=list)

    @classmethod
    def from_attempt(cls, attempt: Optional[Attempt]) -> "SolutionSnapshot":
        if attempt is None:
            return cls()
        return cls(
            attempt_number=attempt.attempt_number,
            code=attempt.code,
            rationale=attempt.rationale,
            score=attempt.score,
            failed_tests=list(attempt.failed_tests),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt_number": self.attempt_number,
            "code": self.code,
            "rationale": self.rationale,
            "score": self.score,
            "failed_tests": [record.to_dict() for record in self.failed_tests],
        }


@dataclass
class SessionReport:
    """Structured final report returned by the orchestrator."""

    session_id: str
    problem_id: str
    status: str
    attempts_consumed: int
    attempt_budget: int
    best_score: float
    latest_solution: SolutionSnapshot
    best_solution: SolutionSnapshot
    improvement_summary: list[str] = field(default_factory=list)
    updates: list[str] = field(default_factory=list)
    tokens_used: int = 0
    total_time_spent: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "problem_id": self.problem_id,
            "status": self.status,
            "attempts_consumed": self.attempts_consumed,
            "attempt_budget": self.attempt_budget,
            "best_score": self.best_score,
            "latest_solution": self.latest_solution.to_dict(),
            "best_solution": self.best_solution.to_dict(),
            "improvement_summary": list(self.improvement_summary),
            "updates": list(self.updates),
            "tokens_used": self.tokens_used,
            "total_time_spent": self.total_time_spent,
        }
