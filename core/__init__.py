"""Core improvement-loop runtime exports."""

from core.attempt_store import AttemptStore, InMemoryAttemptStore, JsonAttemptStore
from core.code_extractor import extract_code, looks_like_code
from core.context_builder import build_context
from core.errors import (
    EvaluationError,
    EvaluationTimeoutError,
    GenerationError,
    InputError,
    LoopError,
    ProblemNotFoundError,
    SessionBusyError,
    StoreError,
)
from core.evaluator_client import EvaluatorClient, EvaluatorConfig, ExecutionBackend, Judge0Backend, LocalSandboxBackend
from core.improvement import classify_improvement, describe_improvement
from core.models import Attempt, GenerationResult, ImprovementLogEntry, Problem, Session, SessionReport, TestRecord, TestReport
from core.orchestrator import OrchestratorConfig, SessionOrchestrator, SessionRequest
from core.streaming import TaggedChunk, TaggedStream
from core.token_tracker import TRACKER, TokenTracker

__all__ = [
    "AttemptStore",
    "InMemoryAttemptStore",
    "JsonAttemptStore",
    "extract_code",
    "looks_like_code",
    "build_context",
    "LoopError",
    "InputError",
    "ProblemNotFoundError",
    "GenerationError",
    "EvaluationError",
    "EvaluationTimeoutError",
    "StoreError",
    "SessionBusyError",
    "EvaluatorClient",
    "EvaluatorConfig",
    "ExecutionBackend",
    "Judge0Backend",
    "LocalSandboxBackend",
    "classify_improvement",
    "describe_improvement",
    "Attempt",
    "GenerationResult",
    "ImprovementLogEntry",
    "Problem",
    "Session",
    "SessionReport",
    "TestRecord",
    "TestReport",
    "OrchestratorConfig",
    "SessionOrchestrator",
    "SessionRequest",
    "TaggedChunk",
    "TaggedStream",
    "TokenTracker",
    "TRACKER",
]
