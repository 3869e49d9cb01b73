"""Process-wide LLM token usage accounting."""

from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock
from typing import Any


@dataclass
class TokenTracker:
    """Thread-safe token counters keyed by model and generation stage."""

    usage: dict[str, dict[str, int]] = field(default_factory=dict)
    _lock: Lock = field(default_factory=Lock)

    def record(self, model: str, prompt_tokens: int, completion_tokens: int, stage: str = "direct") -> int:
        """Record one API call and return the tokens it consumed."""

        total = int(prompt_tokens) + int(completion_tokens)
        key = f"{model}/{stage}"
        with self._lock:
            entry = self.usage.setdefault(
                key,
                {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0, "calls": 0},
            )
            entry["prompt_tokens"] += int(prompt_tokens)
            entry["completion_tokens"] += int(completion_tokens)
            entry["total_tokens"] += total
            entry["calls"] += 1
        return total

    def summary(self) -> dict[str, Any]:
        with self._lock:
            total = sum(entry["total_tokens"] for entry in self.usage.values())
            calls = sum(entry["calls"] for entry in self.usage.values())
            return {
                "per_model_stage": {key: dict(value) for key, value in self.usage.items()},
                "total_tokens": total,
                "calls": calls,
            }

    def reset(self) -> None:
        with self._lock:
            self.usage.clear()


TRACKER = TokenTracker()
