import unittest

from core.context_builder import FIRST_ATTEMPT_CONTEXT, build_context
from core.improvement import (
    STRATEGY_MAJOR_ALGORITHM_FIX,
    STRATEGY_MINOR_IMPROVEMENT,
    STRATEGY_NO_IMPROVEMENT,
    STRATEGY_PROBLEM_SOLVED,
    STRATEGY_SIGNIFICANT_BUG_FIX,
    classify_improvement,
    describe_improvement,
    format_rate,
)
from core.models import Attempt, TestRecord


def _attempt(number: int, score: float, code: str, status: str = "Accepted", error: str | None = None) -> Attempt:
    failed = (
        TestRecord(
            input="nums = [3, 2, 4], target = 6",
            expected_output="[1, 2]",
            actual_output="[0, 0]",
            status=status,
            error=error,
        ),
    )
    return Attempt(
        session_id="s1",
        attempt_number=number,
        code=code,
        rationale="",
        language="python",
        score=score,
        failed_tests=failed,
        errors=(error,) if error else (),
    )


class ContextBuilderTests(unittest.TestCase):
    def test_first_attempt_gets_neutral_instruction(self) -> None:
        self.assertEqual(build_context([], 1), FIRST_ATTEMPT_CONTEXT)

    def test_digest_lists_attempts_in_ordinal_order(self) -> None:
        first = _attempt(1, 33.3, "def first():\n    return 1")
        second = _attempt(2, 66.7, "def second():\n    return 2")

        context = build_context([second, first], 3)

        self.assertIn("=== PREVIOUS ATTEMPTS ANALYSIS ===", context)
        self.assertLess(context.index("ATTEMPT #1:"), context.index("ATTEMPT #2:"))
        self.assertIn("Success Rate: 33.3%", context)
        self.assertIn("Input nums = [3, 2, 4], target = 6 -> Expected: [1, 2], Got: [0, 0]", context)
        self.assertIn("def first():\n    return 1", context)
        self.assertIn("def second():\n    return 2", context)
        self.assertIn("=== IMPROVEMENT STRATEGY FOR ATTEMPT #3 ===", context)

    def test_context_is_deterministic(self) -> None:
        attempts = [_attempt(1, 0.0, "x = 1", error="NameError: y")]
        self.assertEqual(build_context(attempts, 2), build_context(list(attempts), 2))

    def test_error_strings_are_included(self) -> None:
        context = build_context([_attempt(1, 0.0, "x = 1", error="NameError: name 'y' is not defined")], 2)
        self.assertIn("Error: NameError: name 'y' is not defined", context)
        self.assertIn('Errors: ["NameError: name \'y\' is not defined"]', context)

    def test_long_code_is_never_truncated(self) -> None:
        code = "\n".join(f"value_{idx} = {idx}" for idx in range(2000))
        context = build_context([_attempt(1, 10.0, code)], 2)
        self.assertIn(code, context)

    def test_timeouts_are_called_out(self) -> None:
        slow = _attempt(1, 50.0, "x = 1", status="Time Limit Exceeded")
        context = build_context([slow], 2)
        self.assertIn("Attempt(s) 1 hit time limits", context)

        fine = _attempt(1, 50.0, "x = 1")
        self.assertNotIn("hit time limits", build_context([fine], 2))


class ImprovementClassifierTests(unittest.TestCase):
    def test_thresholds(self) -> None:
        self.assertEqual(classify_improvement(60, 100), STRATEGY_PROBLEM_SOLVED)
        self.assertEqual(classify_improvement(5, 100), STRATEGY_PROBLEM_SOLVED)
        self.assertEqual(classify_improvement(50, 80), STRATEGY_MAJOR_ALGORITHM_FIX)
        self.assertEqual(classify_improvement(20, 40), STRATEGY_SIGNIFICANT_BUG_FIX)
        self.assertEqual(classify_improvement(19.9, 40), STRATEGY_MINOR_IMPROVEMENT)
        self.assertEqual(classify_improvement(0.1, 40), STRATEGY_MINOR_IMPROVEMENT)
        self.assertEqual(classify_improvement(0, 40), STRATEGY_NO_IMPROVEMENT)
        self.assertEqual(classify_improvement(-10, 30), STRATEGY_NO_IMPROVEMENT)

    def test_narrative(self) -> None:
        self.assertEqual(
            describe_improvement(40, 100),
            "Success rate improved from 40% to 100% (+60.0%)",
        )
        self.assertEqual(format_rate(66.66666), "66.7")
        self.assertEqual(format_rate(50.0), "50")


if __name__ == "__main__":
    unittest.main()
