from __future__ import annotations

import json
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

from core.attempt_store import InMemoryAttemptStore, JsonAttemptStore
from core.context_builder import FIRST_ATTEMPT_CONTEXT
from core.errors import GenerationError, InputError, ProblemNotFoundError, SessionBusyError, StoreError
from core.models import (
    STATUS_MAX_ATTEMPTS,
    STATUS_SOLVED,
    Attempt,
    GenerationResult,
    Problem,
    Session,
    TestRecord,
    TestReport,
)
from core.orchestrator import OrchestratorConfig, SessionOrchestrator, SessionRequest
from core.streaming import CHUNK_CODE, CHUNK_COMPLETE, CHUNK_REASONING, CodeChannelFilter, TaggedChunk, TaggedStream
from problems.base import InMemoryProblemSource

PROBLEM = Problem(
    problem_id="two-sum",
    title="Two Sum",
    description="Find two indices.",
    test_cases="([2,7,11,15], 9, [0,1])",
    parameter_map="nums, target, output",
)
OTHER = Problem(
    problem_id="add",
    title="Add",
    description="Add two numbers.",
    test_cases="(1, 2, 3)",
    parameter_map="a, b, output",
)


def _report(score: float) -> TestReport:
    """Ten-test report whose success rate equals ``score``."""

    passed = int(round(score / 10))
    records = [
        TestRecord(
            input=f"case {idx}",
            expected_output="1",
            actual_output="1" if idx < passed else "0",
            passed=idx < passed,
            status="Accepted",
        )
        for idx in range(10)
    ]
    return TestReport(test_results=records)


class _ScriptedGenerator:
    def __init__(self, failures: dict[int, Exception] | None = None) -> None:
        self.failures = failures or {}
        self.calls: list[dict] = []
        self.on_generate = None

    def generate(self, problem, language, context, ordinal):
        self.calls.append({"problem_id": problem.problem_id, "context": context, "ordinal": ordinal})
        if self.on_generate is not None:
            self.on_generate(ordinal)
        if ordinal in self.failures:
            raise self.failures[ordinal]
        return GenerationResult(
            code=f"def solve():\n    return {ordinal}",
            rationale=f"attempt {ordinal}",
            raw_output=f"```python\ndef solve():\n    return {ordinal}\n```",
            tokens_used=10,
        )

    def stream(self, problem, language, context, ordinal):
        self.calls.append({"problem_id": problem.problem_id, "context": context, "ordinal": ordinal})
        chunks = [
            TaggedChunk(CHUNK_REASONING, "thinking\n"),
            TaggedChunk(CHUNK_CODE, f"def solve():\n    return {ordinal}\n"),
        ]
        if ordinal not in self.failures:
            chunks.append(TaggedChunk(CHUNK_COMPLETE, ""))
        stream = TaggedStream(iter(chunks))
        stream.metadata["tokens_used"] = 7
        return stream


class _ScriptedEvaluator:
    def __init__(self, scores: list[float]) -> None:
        self.scores = list(scores)
        self.calls: list[str] = []

    def evaluate(self, problem, code, language):
        self.calls.append(code)
        return _report(self.scores.pop(0))


FENCED_WITH_NOTES = (
    "```python\n"
    "class Solution:\n"
    "    def f(self):\n"
    "        return 1\n"
    "```\n"
    "- uses a dict (O(1) lookups)\n"
)


class _FencedStreamGenerator(_ScriptedGenerator):
    """Streams a fenced reply through the line filter, keeping the raw text in metadata."""

    def stream(self, problem, language, context, ordinal):
        self.calls.append({"problem_id": problem.problem_id, "context": context, "ordinal": ordinal})
        channel = CodeChannelFilter()
        chunks = channel.feed(FENCED_WITH_NOTES) + channel.flush() + [TaggedChunk(CHUNK_COMPLETE, "")]
        stream = TaggedStream(iter(chunks))
        stream.metadata["raw_output"] = FENCED_WITH_NOTES
        return stream


class _FlakyStore(InMemoryAttemptStore):
    def __init__(self, failing_appends: int = 1) -> None:
        super().__init__()
        self.failing_appends = failing_appends

    def append_attempt(self, attempt: Attempt) -> Attempt:
        if self.failing_appends > 0:
            self.failing_appends -= 1
            raise StoreError("disk full")
        return super().append_attempt(attempt)


class SessionOrchestratorTests(unittest.TestCase):
    def _orchestrator(self, scores, store=None, generator=None, **config_kwargs):
        self.generator = generator or _ScriptedGenerator()
        self.evaluator = _ScriptedEvaluator(scores)
        self.store = store or InMemoryAttemptStore()
        config = OrchestratorConfig(verbose=False, retry_backoff_seconds=0.0, **config_kwargs)
        return SessionOrchestrator(
            InMemoryProblemSource([PROBLEM, OTHER]),
            self.generator,
            self.evaluator,
            self.store,
            config,
        )

    def test_solved_on_third_attempt(self) -> None:
        orchestrator = self._orchestrator([40, 40, 100])
        report = orchestrator.run("two-sum", attempt_budget=3)

        self.assertEqual(report.status, STATUS_SOLVED)
        self.assertEqual(report.attempts_consumed, 3)
        self.assertEqual(report.best_score, 100.0)
        self.assertEqual(report.best_solution.attempt_number, 3)
        self.assertEqual(report.latest_solution.code, "def solve():\n    return 3")

        entries = self.store.list_improvements(report.session_id)
        self.assertEqual(len(entries), 1)
        self.assertEqual((entries[0].from_attempt, entries[0].to_attempt), (2, 3))
        self.assertEqual(entries[0].delta, 60.0)
        self.assertEqual(entries[0].strategy, "problem_solved")
        self.assertIsNotNone(self.store.get_session(report.session_id).completed_at)

    def test_budget_exhausted_without_improvement(self) -> None:
        orchestrator = self._orchestrator([60, 60])
        report = orchestrator.run("two-sum", attempt_budget=2)

        self.assertEqual(report.status, STATUS_MAX_ATTEMPTS)
        self.assertEqual(report.attempts_consumed, 2)
        self.assertEqual(report.best_score, 60.0)
        self.assertEqual(report.best_solution.attempt_number, 1)
        self.assertEqual(self.store.list_improvements(report.session_id), [])
        self.assertEqual(len(report.latest_solution.failed_tests), 4)

    def test_best_score_is_best_so_far(self) -> None:
        orchestrator = self._orchestrator([50, 30, 70])
        report = orchestrator.run("two-sum", attempt_budget=3)

        self.assertEqual(report.best_score, 70.0)
        entries = self.store.list_improvements(report.session_id)
        self.assertEqual(len(entries), 1)
        self.assertEqual((entries[0].from_attempt, entries[0].to_attempt), (2, 3))
        self.assertEqual(entries[0].delta, 20.0)
        self.assertEqual(entries[0].strategy, "significant_bug_fix")

    def test_terminal_session_is_not_touched(self) -> None:
        orchestrator = self._orchestrator([100])
        first = orchestrator.run("two-sum", attempt_budget=3)
        calls_before = len(self.generator.calls)

        again = orchestrator.run("two-sum", attempt_budget=3, session_id=first.session_id)

        self.assertEqual(again.status, STATUS_SOLVED)
        self.assertEqual(again.attempts_consumed, 1)
        self.assertEqual(len(self.generator.calls), calls_before)
        self.assertEqual(len(self.store.list_attempts(first.session_id)), 1)
        self.assertEqual(again.best_solution.code, first.best_solution.code)
        self.assertIn("already solved", again.updates[0])

    def test_generation_failure_consumes_an_ordinal(self) -> None:
        generator = _ScriptedGenerator(failures={1: GenerationError("upstream 500")})
        orchestrator = self._orchestrator([100], generator=generator)
        report = orchestrator.run("two-sum", attempt_budget=3)

        attempts = self.store.list_attempts(report.session_id)
        self.assertEqual([item.attempt_number for item in attempts], [1, 2])
        self.assertEqual(attempts[0].score, 0.0)
        self.assertIn("upstream 500", attempts[0].errors[0])
        self.assertEqual(report.status, STATUS_SOLVED)
        entries = self.store.list_improvements(report.session_id)
        self.assertEqual((entries[0].from_attempt, entries[0].to_attempt, entries[0].delta), (1, 2, 100.0))

    def test_later_attempts_receive_prior_context(self) -> None:
        orchestrator = self._orchestrator([20, 100])
        orchestrator.run("two-sum", attempt_budget=2)

        self.assertEqual(self.generator.calls[0]["context"], FIRST_ATTEMPT_CONTEXT)
        self.assertIn("ATTEMPT #1:", self.generator.calls[1]["context"])
        self.assertIn("def solve():\n    return 1", self.generator.calls[1]["context"])
        self.assertIn("IMPROVEMENT STRATEGY FOR ATTEMPT #2", self.generator.calls[1]["context"])

    def test_resume_continues_from_next_ordinal(self) -> None:
        orchestrator = self._orchestrator([20, 40, 100])
        first = orchestrator.run("two-sum", attempt_budget=1)
        self.assertEqual(first.status, STATUS_MAX_ATTEMPTS)

        session = self.store.get_session(first.session_id)
        session.status = "in_progress"
        session.attempt_budget = 3
        session.completed_at = None
        self.store.update_session(session)

        resumed = orchestrator.run("two-sum", session_id=first.session_id)
        self.assertEqual([call["ordinal"] for call in self.generator.calls], [1, 2, 3])
        self.assertEqual(resumed.status, STATUS_SOLVED)

    def test_attempt_write_failure_does_not_stop_the_loop(self) -> None:
        store = _FlakyStore(failing_appends=1)
        orchestrator = self._orchestrator([40, 100, 100], store=store)
        report = orchestrator.run("two-sum", attempt_budget=3)

        self.assertEqual(report.status, STATUS_SOLVED)
        self.assertEqual(report.attempts_consumed, 2)
        self.assertEqual(len(self.generator.calls), 2)
        self.assertEqual(report.best_score, 100.0)
        self.assertEqual(report.best_solution.attempt_number, 2)
        self.assertIn("Attempt 1: not persisted (disk full)", report.updates)
        self.assertEqual(store.get_session(report.session_id).status, STATUS_SOLVED)

    def test_resumed_session_with_stored_perfect_attempt_is_solved(self) -> None:
        for budget in (3, 1):
            with self.subTest(budget=budget):
                orchestrator = self._orchestrator([40, 40, 40])
                self.store.create_session(Session(session_id="crashed", problem_id="two-sum", attempt_budget=budget))
                self.store.append_attempt(
                    Attempt(
                        session_id="crashed",
                        attempt_number=1,
                        code="def solve():\n    return 1",
                        rationale="attempt 1",
                        language="python",
                        score=100.0,
                    )
                )

                report = orchestrator.run("two-sum", session_id="crashed")

                self.assertEqual(report.status, STATUS_SOLVED)
                self.assertEqual(report.attempts_consumed, 1)
                self.assertEqual(report.best_score, 100.0)
                self.assertEqual(report.best_solution.attempt_number, 1)
                self.assertEqual(self.generator.calls, [])
                stored = self.store.get_session("crashed")
                self.assertEqual(stored.status, STATUS_SOLVED)
                self.assertIsNotNone(stored.completed_at)

    def test_stored_problem_wins_on_mismatch(self) -> None:
        orchestrator = self._orchestrator([20, 100])
        first = orchestrator.run("two-sum", attempt_budget=1)
        session = self.store.get_session(first.session_id)
        session.status = "in_progress"
        session.attempt_budget = 2
        self.store.update_session(session)

        orchestrator.run("add", session_id=first.session_id)
        self.assertEqual(self.generator.calls[-1]["problem_id"], "two-sum")

    def test_input_errors_consume_nothing(self) -> None:
        orchestrator = self._orchestrator([])

        with self.assertRaises(InputError):
            orchestrator.run("two-sum", attempt_budget=0)
        with self.assertRaises(InputError):
            orchestrator.run("", attempt_budget=2)
        with self.assertRaises(InputError):
            orchestrator.run("two-sum", language="cobol", attempt_budget=2)
        with self.assertRaises(ProblemNotFoundError):
            orchestrator.run("missing", attempt_budget=2, session_id="s-missing")

        self.assertIsNone(self.store.get_session("s-missing"))
        self.assertEqual(self.generator.calls, [])

    def test_second_run_on_in_flight_session_is_rejected(self) -> None:
        orchestrator = self._orchestrator([100])
        rejected = []

        def reenter(_ordinal):
            try:
                orchestrator.run("two-sum", attempt_budget=3, session_id="shared")
            except SessionBusyError as exc:
                rejected.append(str(exc))

        self.generator.on_generate = reenter
        report = orchestrator.run("two-sum", attempt_budget=3, session_id="shared")

        self.assertEqual(len(rejected), 1)
        self.assertEqual(report.attempts_consumed, 1)
        self.assertEqual(len(self.store.list_attempts("shared")), 1)

    def test_streaming_mode_forwards_chunks(self) -> None:
        orchestrator = self._orchestrator([100], stream_generation=True)
        seen = []
        report = orchestrator.run("two-sum", attempt_budget=2, listener=lambda chunk: seen.append(chunk.kind))

        self.assertEqual(seen, [CHUNK_REASONING, CHUNK_CODE, CHUNK_COMPLETE])
        self.assertEqual(report.status, STATUS_SOLVED)
        self.assertEqual(report.tokens_used, 7)
        attempt = self.store.list_attempts(report.session_id)[0]
        self.assertEqual(attempt.code, "def solve():\n    return 1")
        self.assertEqual(attempt.rationale, "thinking")

    def test_streamed_code_is_extracted_from_raw_reply(self) -> None:
        orchestrator = self._orchestrator([100], generator=_FencedStreamGenerator(), stream_generation=True)
        streamed_code = []
        report = orchestrator.run(
            "two-sum",
            attempt_budget=1,
            listener=lambda chunk: streamed_code.append(chunk.content) if chunk.kind == CHUNK_CODE else None,
        )

        clean = "class Solution:\n    def f(self):\n        return 1"
        self.assertIn("- uses a dict (O(1) lookups)", "".join(streamed_code))
        self.assertEqual(self.evaluator.calls, [clean])
        attempt = self.store.list_attempts(report.session_id)[0]
        self.assertEqual(attempt.code, clean)
        self.assertEqual(attempt.raw_output, FENCED_WITH_NOTES)

    def test_stream_without_completion_is_a_failed_attempt(self) -> None:
        generator = _ScriptedGenerator(failures={1: GenerationError("unused")})
        orchestrator = self._orchestrator([100], generator=generator, stream_generation=True)
        report = orchestrator.run("two-sum", attempt_budget=2)

        attempts = self.store.list_attempts(report.session_id)
        self.assertEqual(attempts[0].score, 0.0)
        self.assertIn("without a completion marker", attempts[0].errors[0])
        self.assertEqual(len(self.evaluator.calls), 1)
        self.assertEqual(report.status, STATUS_SOLVED)

    def test_trace_log_records_session_events(self) -> None:
        with TemporaryDirectory() as tmp:
            orchestrator = self._orchestrator([40, 100], store=JsonAttemptStore(tmp))
            orchestrator.run("two-sum", attempt_budget=2)

            trace_path = Path(tmp) / "_logs" / "session_trace.jsonl"
            events = [json.loads(line)["event"] for line in trace_path.read_text(encoding="utf-8").splitlines()]

        self.assertEqual(events, ["session_start", "attempt_end", "attempt_end", "improvement", "session_end"])

    def test_batch_keeps_request_order_and_isolates_failures(self) -> None:
        orchestrator = self._orchestrator([100, 100])
        results = orchestrator.run_batch(
            [
                SessionRequest(problem_id="two-sum", attempt_budget=1),
                SessionRequest(problem_id="missing", attempt_budget=1),
                SessionRequest(problem_id="add", attempt_budget=1),
            ],
            workers=1,
        )

        self.assertEqual([item["problem_id"] for item in results], ["two-sum", "missing", "add"])
        self.assertEqual(results[0]["report"]["status"], STATUS_SOLVED)
        self.assertIsNone(results[1]["report"])
        self.assertIn("ProblemNotFoundError", results[1]["error"])
        self.assertEqual(results[2]["report"]["problem_id"], "add")


if __name__ == "__main__":
    unittest.main()
