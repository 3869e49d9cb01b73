from __future__ import annotations

import threading
import unittest
from tempfile import TemporaryDirectory

from core.attempt_store import InMemoryAttemptStore, JsonAttemptStore
from core.errors import StoreError
from core.models import STATUS_SOLVED, Attempt, ImprovementLogEntry, Session, TestRecord


def _attempt(number: int, score: float, session_id: str = "s1") -> Attempt:
    return Attempt(
        session_id=session_id,
        attempt_number=number,
        code=f"def f():\n    return {number}",
        rationale=f"attempt {number}",
        language="python",
        score=score,
        failed_tests=(TestRecord(input="[1]", expected_output="2", actual_output="1", status="Accepted"),),
        errors=("boom",) if score == 0 else (),
        raw_output=f"```python\ndef f():\n    return {number}\n```",
    )


class _StoreContract:
    """Behavior shared by every store implementation."""

    def make_store(self):
        raise NotImplementedError

    def setUp(self) -> None:
        self.store = self.make_store()
        self.store.create_session(Session(session_id="s1", problem_id="two-sum", attempt_budget=3))

    def test_session_round_trip(self) -> None:
        session = self.store.get_session("s1")
        self.assertEqual(session.problem_id, "two-sum")
        self.assertEqual(session.attempts_consumed, 0)
        self.assertIsNone(self.store.get_session("missing"))

        session.status = STATUS_SOLVED
        session.best_score = 100.0
        self.store.update_session(session)
        self.assertEqual(self.store.get_session("s1").status, STATUS_SOLVED)

    def test_duplicate_session_is_rejected(self) -> None:
        with self.assertRaises(StoreError):
            self.store.create_session(Session(session_id="s1", problem_id="other", attempt_budget=1))

    def test_ordinals_must_be_gapless(self) -> None:
        self.store.append_attempt(_attempt(1, 40.0))
        with self.assertRaises(StoreError):
            self.store.append_attempt(_attempt(3, 50.0))
        with self.assertRaises(StoreError):
            self.store.append_attempt(_attempt(1, 50.0))
        self.store.append_attempt(_attempt(2, 50.0))

        self.assertEqual([item.attempt_number for item in self.store.list_attempts("s1")], [1, 2])

    def test_attempt_fields_survive_storage(self) -> None:
        original = _attempt(1, 0.0)
        self.store.append_attempt(original)
        stored = self.store.list_attempts("s1")[0]

        self.assertEqual(stored.code, original.code)
        self.assertEqual(stored.failed_tests, original.failed_tests)
        self.assertEqual(stored.errors, ("boom",))
        self.assertEqual(stored.raw_output, original.raw_output)

    def test_latest_and_best_attempt(self) -> None:
        self.assertIsNone(self.store.latest_attempt("s1"))
        self.store.append_attempt(_attempt(1, 60.0))
        self.store.append_attempt(_attempt(2, 60.0))
        self.store.append_attempt(_attempt(3, 20.0))

        self.assertEqual(self.store.latest_attempt("s1").attempt_number, 3)
        self.assertEqual(self.store.best_attempt("s1").attempt_number, 1)

    def test_unknown_session_rejects_appends(self) -> None:
        with self.assertRaises(StoreError):
            self.store.append_attempt(_attempt(1, 10.0, session_id="nope"))

    def test_improvement_entries_in_write_order(self) -> None:
        first = ImprovementLogEntry("s1", 1, 2, 20.0, "significant_bug_fix", "from 40% to 60%")
        second = ImprovementLogEntry("s1", 2, 3, 40.0, "problem_solved", "from 60% to 100%")
        self.store.append_improvement(first)
        self.store.append_improvement(second)

        entries = self.store.list_improvements("s1")
        self.assertEqual([(item.from_attempt, item.to_attempt) for item in entries], [(1, 2), (2, 3)])
        self.assertEqual(entries[1].strategy, "problem_solved")

    def test_concurrent_appends_of_same_ordinal(self) -> None:
        outcomes = []
        barrier = threading.Barrier(8)

        def worker(idx: int) -> None:
            barrier.wait()
            try:
                self.store.append_attempt(_attempt(1, float(idx)))
                outcomes.append("ok")
            except StoreError:
                outcomes.append("rejected")

        threads = [threading.Thread(target=worker, args=(idx,)) for idx in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(outcomes.count("ok"), 1)
        self.assertEqual(len(self.store.list_attempts("s1")), 1)


class JsonAttemptStoreTests(_StoreContract, unittest.TestCase):
    def make_store(self):
        self._tmp = TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        return JsonAttemptStore(self._tmp.name)

    def test_history_is_durable_across_instances(self) -> None:
        self.store.append_attempt(_attempt(1, 40.0))
        self.store.append_improvement(ImprovementLogEntry("s1", 1, 2, 10.0, "minor_improvement", "x"))

        reopened = JsonAttemptStore(self._tmp.name)
        self.assertEqual(reopened.get_session("s1").problem_id, "two-sum")
        self.assertEqual(reopened.list_attempts("s1")[0].score, 40.0)
        self.assertEqual(len(reopened.list_improvements("s1")), 1)
        with self.assertRaises(StoreError):
            reopened.append_attempt(_attempt(1, 50.0))

    def test_path_like_session_ids_are_rejected(self) -> None:
        with self.assertRaises(StoreError):
            self.store.get_session("../escape")


class InMemoryAttemptStoreTests(_StoreContract, unittest.TestCase):
    def make_store(self):
        return InMemoryAttemptStore()


if __name__ == "__main__":
    unittest.main()
