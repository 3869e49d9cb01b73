"""Four-stage analyzer -> planner -> implementer -> reviewer generator."""

from __future__ import annotations

from typing import Optional

from core.code_extractor import extract_code
from core.env_utils import env_float
from core.models import Problem
from core.streaming import CHUNK_CODE, CHUNK_COMPLETE, CHUNK_REASONING, TaggedChunk, TaggedStream
from core.text import strip_html
from generators.base import BaseGenerator, CallBudget, GenerationResult, register_generator

ROLE_ANALYZER = "analyzer"
ROLE_PLANNER = "planner"
ROLE_IMPLEMENTER = "implementer"
ROLE_REVIEWER = "reviewer"
STAGE_ORDER = (ROLE_ANALYZER, ROLE_PLANNER, ROLE_IMPLEMENTER, ROLE_REVIEWER)

STAGE_HEADINGS = {
    ROLE_ANALYZER: "ANALYZER",
    ROLE_PLANNER: "PLANNER",
    ROLE_IMPLEMENTER: "IMPLEMENTER",
    ROLE_REVIEWER: "REVIEWER",
}

_SYSTEM_BASE = "You are a specialized agent in a multi-stage reasoning system for coding problems."

ROLE_SYSTEM_PROMPTS = {
    ROLE_ANALYZER: (
        f"{_SYSTEM_BASE} Your role is ANALYZER: you excel at problem analysis and pattern recognition. "
        "Be thorough and methodical."
    ),
    ROLE_PLANNER: (
        f"{_SYSTEM_BASE} Your role is PLANNER: you excel at algorithmic strategy and solution design. "
        "Be systematic and clear."
    ),
    ROLE_IMPLEMENTER: (
        f"{_SYSTEM_BASE} Your role is IMPLEMENTER: you excel at clean, efficient code implementation. "
        "Output ONLY executable code with minimal comments."
    ),
    ROLE_REVIEWER: (
        f"{_SYSTEM_BASE} Your role is REVIEWER: you excel at code review and quality assurance. "
        "Be critical but constructive."
    ),
}

ROLE_INSTRUCTIONS = {
    ROLE_ANALYZER: (
        "As the ANALYZER, your job is to:\n"
        "1. Identify the core problem type (array, string, graph, etc.)\n"
        "2. Determine key constraints and edge cases\n"
        "3. Identify optimal time/space complexity targets\n"
        "4. Highlight potential pitfalls\n"
        "\n"
        "Provide a structured analysis in 2-3 paragraphs."
    ),
    ROLE_PLANNER: (
        "As the PLANNER, your job is to:\n"
        "1. Choose the best algorithmic approach based on the analysis\n"
        "2. Break down the solution into clear steps\n"
        "3. Plan the data structures needed\n"
        "4. Consider alternative approaches\n"
        "\n"
        "Provide a step-by-step solution plan."
    ),
    ROLE_IMPLEMENTER: (
        "As the IMPLEMENTER, your job is to:\n"
        "1. Implement the planned solution in clean, efficient code\n"
        "2. Handle all edge cases identified\n"
        "3. Follow the provided code template structure\n"
        "4. Ensure optimal complexity\n"
        "\n"
        "Generate ONLY the complete {language} solution code, properly formatted."
    ),
    ROLE_REVIEWER: (
        "As the REVIEWER, your job is to:\n"
        "1. Check the code for correctness and efficiency\n"
        "2. Identify potential bugs or edge case issues\n"
        "3. Suggest optimizations if any\n"
        "4. Verify it matches the problem requirements\n"
        "\n"
        "Provide a brief review with any concerns or confirmations."
    ),
}


def stage_prompt(
    role: str,
    problem: Problem,
    language: str,
    context: str,
    ordinal: int,
    previous_output: Optional[str] = None,
) -> str:
    parts = [
        f"Problem: {problem.title}",
        f"Difficulty: {problem.difficulty}",
        f"Language: {language}",
        f"Attempt: {ordinal}",
        "",
        f"Description: {strip_html(problem.description)}",
        "",
    ]
    if problem.starter_code and role == ROLE_IMPLEMENTER:
        parts.extend(["Starting Code Template:", f"```{language}", problem.starter_code, "```", ""])
    if context:
        parts.extend(["Previous Attempt Context:", context, ""])
    if previous_output:
        parts.extend(["Previous Stage Output:", previous_output, ""])
    parts.append(ROLE_INSTRUCTIONS[role].format(language=language))
    return "\n".join(parts)


def join_stage_outputs(outputs: dict[str, str]) -> str:
    return "\n\n".join(f"{STAGE_HEADINGS[role]}:\n{outputs[role]}" for role in STAGE_ORDER if role in outputs)


@register_generator("staged")
class StagedGenerator(BaseGenerator):
    """Role-scoped stage chain; only the implementer output is extracted as code."""

    max_llm_calls_per_attempt = 4

    def __init__(
        self,
        llm_client,
        model_name: str = "gpt-4o-mini",
        reasoning_temperature: float | None = None,
        implementer_temperature: float | None = None,
    ) -> None:
        super().__init__(llm_client, model_name)
        reasoning = (
            float(reasoning_temperature)
            if reasoning_temperature is not None
            else env_float(["STAGED_REASONING_TEMPERATURE"], default=0.3, allow_zero=True)
        )
        implementer = (
            float(implementer_temperature)
            if implementer_temperature is not None
            else env_float(["STAGED_IMPLEMENTER_TEMPERATURE"], default=0.1, allow_zero=True)
        )
        self.temperatures = {
            ROLE_ANALYZER: reasoning,
            ROLE_PLANNER: reasoning,
            ROLE_IMPLEMENTER: implementer,
            ROLE_REVIEWER: reasoning,
        }

    def _run_stage(
        self,
        role: str,
        problem: Problem,
        language: str,
        context: str,
        ordinal: int,
        budget: CallBudget,
        previous_output: Optional[str] = None,
    ) -> str:
        messages = [
            {"role": "system", "content": ROLE_SYSTEM_PROMPTS[role]},
            {"role": "user", "content": stage_prompt(role, problem, language, context, ordinal, previous_output)},
        ]
        return self._call_llm(messages, temperature=self.temperatures[role], stage=role, budget=budget)

    def _stages(self, problem: Problem, language: str, context: str, ordinal: int, budget: CallBudget):
        """Yield ``(role, output)`` pairs in stage order."""

        analysis = self._run_stage(ROLE_ANALYZER, problem, language, context, ordinal, budget)
        yield ROLE_ANALYZER, analysis
        plan = self._run_stage(ROLE_PLANNER, problem, language, context, ordinal, budget, analysis)
        yield ROLE_PLANNER, plan
        implementation = self._run_stage(
            ROLE_IMPLEMENTER, problem, language, context, ordinal, budget, f"{analysis}\n{plan}"
        )
        yield ROLE_IMPLEMENTER, implementation
        code = extract_code(implementation, language)
        review = self._run_stage(ROLE_REVIEWER, problem, language, context, ordinal, budget, code)
        yield ROLE_REVIEWER, review

    def generate(self, problem: Problem, language: str, context: str, ordinal: int) -> GenerationResult:
        budget = self.new_budget()
        outputs = dict(self._stages(problem, language, context, ordinal, budget))
        implementation = outputs[ROLE_IMPLEMENTER]
        return GenerationResult(
            code=extract_code(implementation, language),
            rationale=join_stage_outputs(outputs),
            raw_output=implementation,
            tokens_used=budget.tokens_used,
            metadata={"llm_calls": budget.calls, "stages": list(outputs)},
        )

    def stream(self, problem: Problem, language: str, context: str, ordinal: int) -> TaggedStream:
        budget = self.new_budget()

        def produce():
            for role, output in self._stages(problem, language, context, ordinal, budget):
                yield TaggedChunk(CHUNK_REASONING, f"**{STAGE_HEADINGS[role]}**:\n")
                yield TaggedChunk(CHUNK_REASONING, f"{output}\n\n")
                if role == ROLE_IMPLEMENTER:
                    stream.metadata["raw_output"] = output
                    yield TaggedChunk(CHUNK_CODE, extract_code(output, language))
            stream.metadata["tokens_used"] = budget.tokens_used
            yield TaggedChunk(CHUNK_COMPLETE, "")

        stream = TaggedStream(produce())
        return stream
