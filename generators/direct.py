"""Single-call generator."""

from __future__ import annotations

from core.code_extractor import extract_code
from core.env_utils import env_float
from core.models import Problem
from core.streaming import CHUNK_COMPLETE, CodeChannelFilter, TaggedChunk, TaggedStream
from generators.base import BaseGenerator, GenerationResult, describe_problem, extract_explanation, register_generator


def direct_system_prompt(language: str) -> str:
    return (
        "You are a coding assistant. Generate ONLY executable code with no explanations.\n"
        "\n"
        f"CRITICAL: Your response must contain ONLY the complete {language} solution code, nothing else.\n"
        "No markdown, no explanations, no comments except brief inline ones.\n"
        "Keep the function or class signature from the starting code template."
    )


def direct_user_prompt(problem: Problem, language: str, context: str, ordinal: int) -> str:
    prompt = describe_problem(problem, language)
    if context and ordinal > 1:
        prompt += f"\n{context}\n"
    else:
        prompt += "\nPlease provide a complete, efficient solution that passes all test cases.\n"
    return prompt


@register_generator("direct")
class DirectGenerator(BaseGenerator):
    """One chat completion per attempt; extraction isolates the code."""

    max_llm_calls_per_attempt = 2

    def __init__(self, llm_client, model_name: str = "gpt-4o-mini", temperature: float | None = None) -> None:
        super().__init__(llm_client, model_name)
        self.temperature = (
            float(temperature)
            if temperature is not None
            else env_float(["DIRECT_TEMPERATURE", "GENERATOR_TEMPERATURE"], default=0.1, allow_zero=True)
        )

    def _messages(self, problem: Problem, language: str, context: str, ordinal: int) -> list[dict[str, str]]:
        return [
            {"role": "system", "content": direct_system_prompt(language)},
            {"role": "user", "content": direct_user_prompt(problem, language, context, ordinal)},
        ]

    def generate(self, problem: Problem, language: str, context: str, ordinal: int) -> GenerationResult:
        budget = self.new_budget()
        raw_output = self._call_llm(
            self._messages(problem, language, context, ordinal),
            temperature=self.temperature,
            stage="direct",
            budget=budget,
        )
        return GenerationResult(
            code=extract_code(raw_output, language),
            rationale=extract_explanation(raw_output),
            raw_output=raw_output,
            tokens_used=budget.tokens_used,
            metadata={"llm_calls": budget.calls},
        )

    def stream(self, problem: Problem, language: str, context: str, ordinal: int) -> TaggedStream:
        budget = self.new_budget()
        messages = self._messages(problem, language, context, ordinal)
        upstream: dict[str, object] = {}

        def produce():
            response = self._open_stream(messages, self.temperature, budget)
            upstream["response"] = response
            channel = CodeChannelFilter()
            raw_parts: list[str] = []
            for delta in self._stream_deltas(response, "direct", budget, stream):
                raw_parts.append(delta)
                yield from channel.feed(delta)
            yield from channel.flush()
            stream.metadata["raw_output"] = "".join(raw_parts)
            yield TaggedChunk(CHUNK_COMPLETE, "")

        def close_upstream() -> None:
            close = getattr(upstream.get("response"), "close", None)
            if callable(close):
                close()

        stream = TaggedStream(produce(), on_close=close_upstream)
        return stream
