"""Generator interfaces, prompt assembly and the shared LLM call path."""

from __future__ import annotations

import re
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Iterator, Optional

from core.env_utils import env_float, env_int
from core.errors import GenerationError
from core.models import GenerationResult, Problem
from core.streaming import TaggedStream, iter_completion_deltas
from core.test_cases import parse_test_cases
from core.text import strip_html
from core.token_tracker import TRACKER

_FENCED_BLOCK_RE = re.compile(r"```[^\n]*\n.*?(?:\n```|\Z)", re.DOTALL)


class CallBudget:
    """Per-attempt LLM call counter and token total."""

    def __init__(self, limit: int) -> None:
        self.limit = max(1, int(limit))
        self.calls = 0
        self.tokens_used = 0
        self._lock = threading.Lock()

    def consume(self) -> None:
        with self._lock:
            self.calls += 1
            if self.calls > self.limit:
                raise GenerationError(f"LLM call budget exceeded ({self.limit} per attempt).")

    def add_tokens(self, tokens: int) -> None:
        with self._lock:
            self.tokens_used += int(tokens)


def format_examples(test_cases: Any, limit: int = 2) -> str:
    """Render the first ``limit`` test cases as prompt examples."""

    cases = parse_test_cases(test_cases)[:limit]
    if not cases:
        return "Examples will be provided in test cases."
    blocks = []
    for idx, case in enumerate(cases, start=1):
        inputs = ", ".join(repr(value) for value in case.inputs)
        blocks.append(f"Example {idx}:\nInput: {inputs}\nOutput: {case.expected!r}")
    return "\n\n".join(blocks)


def describe_problem(problem: Problem, language: str) -> str:
    return (
        f"Problem: {problem.title}\n"
        f"Difficulty: {problem.difficulty}\n"
        "\n"
        "Description:\n"
        f"{strip_html(problem.description)}\n"
        "\n"
        "Examples:\n"
        f"{format_examples(problem.test_cases)}\n"
        "\n"
        "Starting Code Template:\n"
        f"```{language}\n"
        f"{problem.starter_code}\n"
        "```\n"
    )


def extract_explanation(raw_output: str) -> str:
    """Everything in a reply except its fenced code blocks."""

    explanation = _FENCED_BLOCK_RE.sub("", str(raw_output or ""))
    explanation = re.sub(r"\n\s*\n\s*\n", "\n\n", explanation).strip()
    return explanation or "No explanation provided"


class BaseGenerator(ABC):
    """Produces candidate code for a problem given prior-attempt context."""

    name: str = "base"
    max_llm_calls_per_attempt: int = 8

    def __init__(self, llm_client, model_name: str = "gpt-4o-mini") -> None:
        self.llm = llm_client
        self.model = model_name
        self.api_timeout_seconds = env_float(
            ["GENERATOR_API_TIMEOUT_SECONDS", "OPENAI_API_TIMEOUT_SECONDS", "OPENAI_API_TIMEOUT", "API_TIMEOUT_SECONDS"],
            default=90.0,
        )
        self.max_completion_tokens = env_int(
            ["GENERATOR_MAX_TOKENS", "OPENAI_MAX_TOKENS", "MAX_TOKENS"],
            default=8000,
        )
        self.max_retries = env_int(["GENERATOR_MAX_RETRIES"], default=2)
        self.max_llm_calls_per_attempt = env_int(
            ["GENERATOR_MAX_CALLS_PER_ATTEMPT"],
            default=self.max_llm_calls_per_attempt,
        )

    def new_budget(self) -> CallBudget:
        return CallBudget(self.max_llm_calls_per_attempt)

    def _record_usage(self, usage: Any, stage: str, budget: CallBudget) -> int:
        if usage is None:
            return 0
        if isinstance(usage, dict):
            prompt_tokens = int(usage.get("prompt_tokens", 0) or 0)
            completion_tokens = int(usage.get("completion_tokens", 0) or 0)
        else:
            prompt_tokens = int(getattr(usage, "prompt_tokens", 0) or 0)
            completion_tokens = int(getattr(usage, "completion_tokens", 0) or 0)
        tokens = TRACKER.record(self.model, prompt_tokens, completion_tokens, stage=stage)
        budget.add_tokens(tokens)
        return tokens

    def _call_llm(
        self,
        messages: list[dict[str, str]],
        temperature: float,
        stage: str,
        budget: CallBudget,
    ) -> str:
        """Single chat completion with call-budget guard, retries and token accounting."""

        budget.consume()
        last_exc: Exception | None = None
        for attempt in range(max(1, self.max_retries)):
            try:
                response = self.llm.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    temperature=temperature,
                    max_tokens=self.max_completion_tokens,
                    timeout=self.api_timeout_seconds,
                )
            except Exception as exc:
                last_exc = exc
                print(f"[Generator:{self.name}] {stage} call failed (try {attempt + 1}/{self.max_retries}): {exc}")
                if attempt < self.max_retries - 1:
                    time.sleep(1.0 + attempt)
                continue
            self._record_usage(getattr(response, "usage", None), stage, budget)
            try:
                return (response.choices[0].message.content or "").strip()
            except (AttributeError, IndexError, TypeError) as exc:
                raise GenerationError(f"Malformed {stage} completion: {exc}") from exc
        raise GenerationError(f"{stage} call failed after {self.max_retries} attempts: {last_exc}") from last_exc

    def _open_stream(
        self,
        messages: list[dict[str, str]],
        temperature: float,
        budget: CallBudget,
    ) -> Any:
        budget.consume()
        try:
            return self.llm.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=self.max_completion_tokens,
                timeout=self.api_timeout_seconds,
                stream=True,
            )
        except Exception as exc:
            raise GenerationError(f"Failed to open generation stream: {exc}") from exc

    def _stream_deltas(
        self,
        response: Any,
        stage: str,
        budget: CallBudget,
        stream: TaggedStream,
    ) -> Iterator[str]:
        usage: dict[str, int] = {}
        yield from iter_completion_deltas(response, usage)
        stream.metadata["tokens_used"] = stream.metadata.get("tokens_used", 0) + self._record_usage(
            usage or None, stage, budget
        )

    @abstractmethod
    def generate(self, problem: Problem, language: str, context: str, ordinal: int) -> GenerationResult:
        """Produce one candidate; raises GenerationError when any LLM call fails."""

    @abstractmethod
    def stream(self, problem: Problem, language: str, context: str, ordinal: int) -> TaggedStream:
        """Same as ``generate`` but as an incremental tagged chunk stream."""


GENERATOR_REGISTRY: dict[str, type[BaseGenerator]] = {}


def register_generator(name: str):
    """Register a generator class by name."""

    def decorator(cls: type[BaseGenerator]) -> type[BaseGenerator]:
        GENERATOR_REGISTRY[name] = cls
        cls.name = name
        return cls

    return decorator


def get_generator(name: str, llm_client, model_name: Optional[str] = None, **kwargs) -> BaseGenerator:
    """Instantiate a registered generator implementation."""

    if name not in GENERATOR_REGISTRY:
        available = ", ".join(sorted(GENERATOR_REGISTRY)) or "<none>"
        raise ValueError(f"Unknown generator {name}. Available: {available}")
    if model_name:
        kwargs["model_name"] = model_name
    return GENERATOR_REGISTRY[name](llm_client, **kwargs)
