"""Compress a session's attempt history into the next generation prompt."""

from __future__ import annotations

import json
from typing import Iterable

from core.improvement import format_rate
from core.models import Attempt

FIRST_ATTEMPT_CONTEXT = (
    "This is your first attempt at solving this problem. "
    "Focus on correctness first, then optimization."
)

_TIMEOUT_MARKERS = ("time limit", "timed out", "timeout")


def _attempt_timed_out(attempt: Attempt) -> bool:
    texts = [record.status for record in attempt.failed_tests]
    texts.extend(record.error or "" for record in attempt.failed_tests)
    texts.extend(attempt.errors)
    lowered = " ".join(texts).lower()
    return any(marker in lowered for marker in _TIMEOUT_MARKERS)


def _format_attempt(attempt: Attempt) -> list[str]:
    lines = [
        f"ATTEMPT #{attempt.attempt_number}:",
        f"Success Rate: {format_rate(attempt.score)}%",
    ]
    if attempt.failed_tests:
        lines.append("Failed Test Cases:")
        for idx, record in enumerate(attempt.failed_tests, start=1):
            lines.append(
                f"  Test {idx}: Input {record.input} -> Expected: {record.expected_output}, "
                f"Got: {record.actual_output}"
            )
            if record.error:
                lines.append(f"  Error: {record.error}")
    if attempt.errors:
        lines.append(f"Errors: {json.dumps(list(attempt.errors), ensure_ascii=False)}")
    lines.append("Code that failed:")
    lines.append("```")
    lines.append(attempt.code)
    lines.append("```")
    lines.append("")
    return lines


def build_context(prior_attempts: Iterable[Attempt], next_ordinal: int) -> str:
    """Render every prior attempt, oldest first, followed by the strategy directive.

    Output depends only on the attempts and ``next_ordinal``; nothing is
    sampled and nothing is dropped.
    """

    attempts = sorted(prior_attempts, key=lambda item: item.attempt_number)
    if not attempts:
        return FIRST_ATTEMPT_CONTEXT

    lines = [
        "",
        "=== PREVIOUS ATTEMPTS ANALYSIS ===",
        f"You have made {len(attempts)} previous attempt(s). Learn from these failures:",
        "",
    ]
    for attempt in attempts:
        lines.extend(_format_attempt(attempt))

    lines.append(f"=== IMPROVEMENT STRATEGY FOR ATTEMPT #{next_ordinal} ===")
    lines.append(
        "Based on the failures above, identify the root cause and fix it. "
        "Common issues: edge cases, algorithm complexity, implementation bugs, type errors."
    )
    lines.append("")
    lines.append("FOCUS AREAS FOR THIS ATTEMPT:")
    lines.append("- If the same error pattern repeats, try a completely different approach")
    lines.append("- Pay special attention to edge cases that failed multiple times")
    lines.append("- Consider time/space complexity if previous solutions timed out")
    timed_out = [str(attempt.attempt_number) for attempt in attempts if _attempt_timed_out(attempt)]
    if timed_out:
        lines.append(
            f"- Attempt(s) {', '.join(timed_out)} hit time limits: a lower-complexity algorithm is required"
        )
    lines.append("Generate a BETTER solution that addresses these specific failures.")
    lines.append("")
    return "\n".join(lines)
