"""Evaluate candidate programs against a problem's test cases."""

from __future__ import annotations

import base64
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from time import monotonic
from typing import Any, Callable, Optional, Union

import httpx
from tqdm import tqdm

from core.code_extractor import extract_code, normalize_language
from core.env_utils import env_bool, env_float, env_int
from core.errors import EvaluationError, EvaluationTimeoutError
from core.models import Problem, TestRecord, TestReport
from core.sandbox_executor import (
    STATUS_TIME_LIMIT,
    ExecutionResult,
    execute_program,
)
from core.test_cases import (
    TestCase,
    build_program,
    function_parameters,
    parse_parameter_map,
    parse_test_cases,
)


class ExecutionBackend(ABC):
    """Runs one complete program and returns a normalized result."""

    @abstractmethod
    def execute(
        self,
        source: str,
        language: str,
        stdin: str = "",
        deadline: Optional[float] = None,
    ) -> ExecutionResult:
        """Execute ``source``; ``deadline`` is a ``time.monotonic()`` cap for the attempt."""


class LocalSandboxBackend(ExecutionBackend):
    """Subprocess execution on this machine with a per-test timeout."""

    def __init__(self, timeout_seconds: float | None = None) -> None:
        self.timeout_seconds = (
            float(timeout_seconds)
            if timeout_seconds
            else env_float(["LOOP_SANDBOX_TIMEOUT_SECONDS", "SANDBOX_TIMEOUT_SECONDS"], default=10.0)
        )

    def execute(
        self,
        source: str,
        language: str,
        stdin: str = "",
        deadline: Optional[float] = None,
    ) -> ExecutionResult:
        timeout = self.timeout_seconds
        if deadline is not None:
            remaining = deadline - monotonic()
            if remaining <= 0:
                raise EvaluationTimeoutError("Evaluation deadline exceeded before execution")
            timeout = max(0.1, min(timeout, remaining))
        return execute_program(source, normalize_language(language), stdin=stdin, timeout=timeout)


class Judge0Backend(ExecutionBackend):
    """Judge0-compatible submit-then-poll execution service client."""

    LANGUAGE_IDS = {
        "python": 71,
        "java": 62,
        "cpp": 54,
        "javascript": 63,
        "c": 50,
        "go": 60,
        "rust": 73,
        "typescript": 74,
    }

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        api_host: str | None = None,
        poll_interval: float | None = None,
        max_polls: int | None = None,
        request_timeout: float | None = None,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.poll_interval = (
            float(poll_interval)
            if poll_interval is not None
            else env_float(["JUDGE0_POLL_INTERVAL_SECONDS"], default=1.0)
        )
        self.max_polls = int(max_polls) if max_polls else env_int(["JUDGE0_MAX_POLLS"], default=30)
        timeout = float(request_timeout) if request_timeout else env_float(["JUDGE0_REQUEST_TIMEOUT_SECONDS"], default=30.0)

        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["X-RapidAPI-Key"] = api_key
            headers["X-Auth-Token"] = api_key
        if api_host:
            headers["X-RapidAPI-Host"] = api_host
        self._client = client or httpx.Client(base_url=self.base_url, headers=headers, timeout=timeout)
        self._sleep = sleep

    def close(self) -> None:
        self._client.close()

    @staticmethod
    def _encode(text: str) -> str:
        return base64.b64encode(text.encode("utf-8")).decode("ascii")

    @staticmethod
    def _decode(value: Any) -> str:
        if not value:
            return ""
        try:
            return base64.b64decode(str(value)).decode("utf-8", "replace")
        except (ValueError, TypeError):
            return str(value)

    def _submit(self, source: str, language_id: int, stdin: str) -> str:
        response = self._client.post(
            "/submissions",
            params={"base64_encoded": "true", "wait": "false", "fields": "*"},
            json={
                "language_id": language_id,
                "source_code": self._encode(source),
                "stdin": self._encode(stdin),
            },
        )
        response.raise_for_status()
        token = response.json().get("token")
        if not token:
            raise EvaluationError("Execution service did not return a submission token")
        return str(token)

    def _fetch(self, token: str) -> dict[str, Any]:
        response = self._client.get(
            f"/submissions/{token}",
            params={"base64_encoded": "true", "fields": "*"},
        )
        response.raise_for_status()
        return response.json()

    def _normalize(self, payload: dict[str, Any]) -> ExecutionResult:
        status = payload.get("status") or {}
        return ExecutionResult(
            status_id=int(status.get("id") or 0),
            status=str(status.get("description") or ""),
            stdout=self._decode(payload.get("stdout")),
            stderr=self._decode(payload.get("stderr")),
            compile_output=self._decode(payload.get("compile_output")),
            time=float(payload.get("time") or 0.0),
            memory=float(payload.get("memory") or 0.0),
        )

    def execute(
        self,
        source: str,
        language: str,
        stdin: str = "",
        deadline: Optional[float] = None,
    ) -> ExecutionResult:
        canonical = normalize_language(language)
        language_id = self.LANGUAGE_IDS.get(canonical, self.LANGUAGE_IDS["python"])
        token = self._submit(source, language_id, stdin)

        for _ in range(self.max_polls):
            if deadline is not None and monotonic() >= deadline:
                raise EvaluationTimeoutError(f"Evaluation deadline exceeded while polling submission {token}")
            self._sleep(self.poll_interval)
            result = self._normalize(self._fetch(token))
            if not result.pending:
                return result

        return ExecutionResult(
            status_id=STATUS_TIME_LIMIT,
            status="Polling Timed Out",
            stderr=f"No result after {self.max_polls} polls of {self.poll_interval:g}s",
        )


@dataclass
class EvaluatorConfig:
    """Attempt-scoped evaluation limits."""

    max_total_wait_seconds: float = 120.0
    show_progress: bool = False

    @classmethod
    def from_env(cls) -> "EvaluatorConfig":
        return cls(
            max_total_wait_seconds=env_float(["LOOP_EVAL_MAX_WAIT_SECONDS", "EVAL_MAX_WAIT_SECONDS"], default=120.0),
            show_progress=env_bool(["LOOP_EVAL_PROGRESS"], default=False),
        )


def outputs_match(actual_stdout: str, expected: Any) -> bool:
    """JSON-equal comparison, falling back to text comparison for non-JSON stdout."""

    actual = actual_stdout.strip()
    expected_json = json.loads(json.dumps(expected, default=str))
    try:
        return json.loads(actual) == expected_json
    except ValueError:
        if isinstance(expected_json, str):
            return actual == expected_json
        return actual in (json.dumps(expected_json), json.dumps(expected_json, separators=(",", ":")), str(expected))


class EvaluatorClient:
    """Pre-clean code, fan test cases out to a backend, and normalize the report."""

    def __init__(
        self,
        backend: ExecutionBackend,
        config: EvaluatorConfig | None = None,
        problem_source=None,
    ) -> None:
        self.backend = backend
        self.config = config or EvaluatorConfig()
        self.problem_source = problem_source

    def _resolve_problem(self, problem: Union[Problem, str]) -> Problem:
        if isinstance(problem, Problem):
            return problem
        if self.problem_source is None:
            raise EvaluationError(f"No problem source configured to resolve problem {problem!r}")
        return self.problem_source.get(str(problem))

    @staticmethod
    def _render_input(case: TestCase, parameters: list[str]) -> str:
        if parameters and len(parameters) == len(case.inputs):
            return ", ".join(
                f"{name} = {json.dumps(value, ensure_ascii=False, default=str)}"
                for name, value in zip(parameters, case.inputs)
            )
        return case.input_text()

    def _to_record(self, case: TestCase, parameters: list[str], result: ExecutionResult) -> TestRecord:
        actual = result.stdout.strip()
        passed = result.accepted and outputs_match(actual, case.expected)
        return TestRecord(
            input=self._render_input(case, parameters),
            expected_output=case.expected_text(),
            actual_output=actual,
            passed=passed,
            execution_time=float(result.time),
            memory_used=float(result.memory),
            status=result.status,
            error=result.error_text,
        )

    def evaluate(self, problem: Union[Problem, str], code: str, language: str) -> TestReport:
        """Run every test case of ``problem`` against ``code``.

        Raises EvaluationTimeoutError when the attempt-wide wait cap is hit;
        per-test backend failures become failing records instead.
        """

        resolved = self._resolve_problem(problem)
        clean_code = extract_code(code, language)
        cases = parse_test_cases(resolved.test_cases)
        parameters = function_parameters(parse_parameter_map(resolved.parameter_map))
        deadline = monotonic() + float(self.config.max_total_wait_seconds)

        records: list[TestRecord] = []
        progress = tqdm(
            cases,
            desc=f"eval:{resolved.problem_id}",
            disable=not self.config.show_progress,
            leave=False,
        )
        for case in progress:
            if monotonic() >= deadline:
                raise EvaluationTimeoutError(
                    f"Evaluation exceeded {self.config.max_total_wait_seconds:g}s "
                    f"after {len(records)}/{len(cases)} test(s)"
                )
            try:
                source, stdin = build_program(clean_code, case, language)
                result = self.backend.execute(source, language, stdin=stdin, deadline=deadline)
            except EvaluationTimeoutError:
                raise
            except Exception as exc:
                print(f"[Eval] test case failed to execute for problem {resolved.problem_id}: {exc}")
                records.append(
                    TestRecord(
                        input=self._render_input(case, parameters),
                        expected_output=case.expected_text(),
                        status="Error",
                        error=str(exc),
                    )
                )
                continue
            records.append(self._to_record(case, parameters, result))

        return TestReport(test_results=records, extraction_successful=clean_code != code)
