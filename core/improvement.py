"""Improvement classification for session narratives."""

from __future__ import annotations

from core.models import PERFECT_SCORE

STRATEGY_PROBLEM_SOLVED = "problem_solved"
STRATEGY_MAJOR_ALGORITHM_FIX = "major_algorithm_fix"
STRATEGY_SIGNIFICANT_BUG_FIX = "significant_bug_fix"
STRATEGY_MINOR_IMPROVEMENT = "minor_improvement"
STRATEGY_NO_IMPROVEMENT = "no_improvement"


def classify_improvement(delta: float, new_score: float) -> str:
    """Tag a score change; used for narrative only, never for control flow."""

    if float(new_score) == PERFECT_SCORE:
        return STRATEGY_PROBLEM_SOLVED
    if delta >= 50:
        return STRATEGY_MAJOR_ALGORITHM_FIX
    if delta >= 20:
        return STRATEGY_SIGNIFICANT_BUG_FIX
    if delta > 0:
        return STRATEGY_MINOR_IMPROVEMENT
    return STRATEGY_NO_IMPROVEMENT


def format_rate(value: float) -> str:
    """Render a percentage without a trailing ``.0`` for whole numbers."""

    rounded = round(float(value), 1)
    if rounded == int(rounded):
        return str(int(rounded))
    return f"{rounded:.1f}"


def describe_improvement(old_score: float, new_score: float) -> str:
    delta = float(new_score) - float(old_score)
    return (
        f"Success rate improved from {format_rate(old_score)}% to {format_rate(new_score)}% "
        f"(+{delta:.1f}%)"
    )
