"""Bounded generate -> evaluate -> improve session loop."""

from __future__ import annotations

import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from time import monotonic
from typing import Any, Callable, Optional

from tqdm import tqdm

from core.attempt_store import AttemptStore, new_session_id
from core.code_extractor import LANGUAGE_ALIASES, extract_code, normalize_language
from core.context_builder import build_context
from core.env_utils import env_bool, env_float, env_int
from core.errors import GenerationError, InputError, SessionBusyError, StoreError
from core.improvement import classify_improvement, describe_improvement, format_rate
from core.models import (
    PERFECT_SCORE,
    STATUS_IN_PROGRESS,
    STATUS_MAX_ATTEMPTS,
    STATUS_SOLVED,
    Attempt,
    GenerationResult,
    ImprovementLogEntry,
    Problem,
    Session,
    SessionReport,
    SolutionSnapshot,
    now_iso,
)
from core.streaming import TaggedChunk


def get_timestamp() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


@dataclass
class OrchestratorConfig:
    """Loop-level settings; environment values override the defaults in ``from_env``."""

    default_attempt_budget: int = 5
    stream_generation: bool = False
    session_update_retries: int = 3
    retry_backoff_seconds: float = 0.5
    trace_dir: Optional[str] = None
    verbose: bool = True

    @classmethod
    def from_env(cls) -> "OrchestratorConfig":
        return cls(
            default_attempt_budget=env_int(["LOOP_ATTEMPT_BUDGET", "MAX_ATTEMPTS"], default=5),
            stream_generation=env_bool(["LOOP_STREAM_GENERATION"], default=False),
            session_update_retries=env_int(["LOOP_SESSION_UPDATE_RETRIES"], default=3),
            retry_backoff_seconds=env_float(["LOOP_RETRY_BACKOFF_SECONDS"], default=0.5, allow_zero=True),
        )


@dataclass
class SessionRequest:
    """One entry of a batch run."""

    problem_id: str
    language: str = "python"
    attempt_budget: Optional[int] = None
    session_id: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "SessionRequest":
        budget = payload.get("attempt_budget", payload.get("max_attempts"))
        return cls(
            problem_id=str(payload.get("problem_id", "")),
            language=str(payload.get("language", "python")),
            attempt_budget=int(budget) if budget is not None else None,
            session_id=payload.get("session_id"),
        )


class SessionOrchestrator:
    """Drives one bounded improvement session per ``run`` call.

    The orchestrator is the only component that changes session status.
    Each attempt is appended to the store before the session counters move,
    so a crash between the two is reconciled from the stored attempts on
    the next resume. Attempt writes are best-effort: a failed write is
    logged and the ordinal is still spent.
    """

    def __init__(
        self,
        problem_source,
        generator,
        evaluator,
        store: AttemptStore,
        config: OrchestratorConfig | None = None,
    ) -> None:
        self.problem_source = problem_source
        self.generator = generator
        self.evaluator = evaluator
        self.store = store
        self.config = config or OrchestratorConfig()

        logs_dir: Optional[Path] = None
        if self.config.trace_dir:
            logs_dir = Path(self.config.trace_dir)
        elif getattr(store, "dir", None) is not None:
            logs_dir = Path(store.dir) / "_logs"
        self.trace_path = logs_dir / "session_trace.jsonl" if logs_dir is not None else None
        self._log_lock = threading.Lock()
        self._in_flight: set[str] = set()
        self._in_flight_lock = threading.Lock()

    def _log(self, session_id: str, message: str) -> None:
        if self.config.verbose:
            print(f"[{get_timestamp()}] [Session {session_id}] {message}")

    def _append_jsonl(self, payload: dict[str, Any]) -> None:
        if self.trace_path is None:
            return
        payload = {"timestamp": now_iso(), **payload}
        with self._log_lock:
            self.trace_path.parent.mkdir(parents=True, exist_ok=True)
            with self.trace_path.open("a", encoding="utf-8") as file_obj:
                file_obj.write(json.dumps(payload, ensure_ascii=False) + "\n")

    def _claim(self, session_id: str) -> None:
        with self._in_flight_lock:
            if session_id in self._in_flight:
                raise SessionBusyError(f"Session {session_id} already has an attempt in flight")
            self._in_flight.add(session_id)

    def _release(self, session_id: str) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(session_id)

    @staticmethod
    def _validate(problem_id: str, language: str, attempt_budget: int) -> str:
        if not str(problem_id or "").strip():
            raise InputError("problem_id must be a non-empty string")
        if int(attempt_budget) < 1:
            raise InputError(f"attempt_budget must be >= 1, got {attempt_budget}")
        canonical = normalize_language(language)
        if canonical not in LANGUAGE_ALIASES:
            supported = ", ".join(sorted(LANGUAGE_ALIASES))
            raise InputError(f"Unsupported language '{language}'. Supported: {supported}")
        return canonical

    def _save_session(self, session: Session) -> None:
        retries = max(1, int(self.config.session_update_retries))
        for attempt in range(retries):
            try:
                self.store.update_session(session)
                return
            except StoreError as exc:
                if attempt >= retries - 1:
                    raise
                self._log(session.session_id, f"session update failed (try {attempt + 1}/{retries}): {exc}")
                time.sleep(float(self.config.retry_backoff_seconds) * (attempt + 1))

    def _resolve_session(
        self,
        problem_id: str,
        language: str,
        attempt_budget: int,
        session_id: Optional[str],
    ) -> tuple[Session, Problem, bool]:
        stored = self.store.get_session(session_id) if session_id else None
        if stored is not None:
            if stored.problem_id != problem_id:
                print(
                    f"[Warn] session {stored.session_id} belongs to problem {stored.problem_id}; "
                    f"ignoring requested problem {problem_id}"
                )
            return stored, self.problem_source.get(stored.problem_id), False

        problem = self.problem_source.get(problem_id)
        session = Session(
            session_id=session_id or new_session_id(),
            problem_id=problem.problem_id,
            attempt_budget=int(attempt_budget),
            language=language,
        )
        self.store.create_session(session)
        return session, problem, True

    def _generate(
        self,
        problem: Problem,
        language: str,
        context: str,
        ordinal: int,
        listener: Optional[Callable[[TaggedChunk], None]],
    ) -> GenerationResult:
        if not self.config.stream_generation:
            return self.generator.generate(problem, language, context, ordinal)

        stream = self.generator.stream(problem, language, context, ordinal)
        try:
            outcome = stream.collect(listener)
        finally:
            stream.abort()
        if outcome.error:
            raise GenerationError(f"Generation stream failed: {outcome.error}")
        if not outcome.completed:
            raise GenerationError("Generation stream ended without a completion marker")
        streamed_raw = outcome.metadata.get("raw_output")
        raw_output = str(streamed_raw or outcome.code)
        return GenerationResult(
            code=extract_code(str(streamed_raw) if streamed_raw else outcome.code, language),
            rationale=outcome.reasoning.strip(),
            raw_output=raw_output,
            tokens_used=int(outcome.metadata.get("tokens_used", 0) or 0),
        )

    def _build_report(
        self,
        session: Session,
        attempts: list[Attempt],
        updates: list[str],
        tokens_used: int,
        started: float,
    ) -> SessionReport:
        latest = attempts[-1] if attempts else None
        best = max(attempts, key=lambda attempt: attempt.score) if attempts else None
        improvements = self.store.list_improvements(session.session_id)
        return SessionReport(
            session_id=session.session_id,
            problem_id=session.problem_id,
            status=session.status,
            attempts_consumed=session.attempts_consumed,
            attempt_budget=session.attempt_budget,
            best_score=session.best_score,
            latest_solution=SolutionSnapshot.from_attempt(latest),
            best_solution=SolutionSnapshot.from_attempt(best),
            improvement_summary=[
                f"Attempt {entry.from_attempt} -> {entry.to_attempt} [{entry.strategy}]: {entry.changes_made}"
                for entry in improvements
            ],
            updates=updates,
            tokens_used=tokens_used,
            total_time_spent=round(monotonic() - started, 3),
        )

    def run(
        self,
        problem_id: str,
        language: str = "python",
        attempt_budget: Optional[int] = None,
        session_id: Optional[str] = None,
        listener: Optional[Callable[[TaggedChunk], None]] = None,
    ) -> SessionReport:
        """Resume or create a session and iterate until solved or out of budget."""

        started = monotonic()
        budget = int(attempt_budget if attempt_budget is not None else self.config.default_attempt_budget)
        canonical = self._validate(problem_id, language, budget)

        claimed: Optional[str] = session_id
        if claimed:
            self._claim(claimed)
        try:
            session, problem, created = self._resolve_session(problem_id, canonical, budget, session_id)
            if not claimed:
                claimed = session.session_id
                self._claim(claimed)
            return self._run_session(session, problem, created, listener, started)
        finally:
            if claimed:
                self._release(claimed)

    def _run_session(
        self,
        session: Session,
        problem: Problem,
        created: bool,
        listener: Optional[Callable[[TaggedChunk], None]],
        started: float,
    ) -> SessionReport:
        sid = session.session_id
        updates: list[str] = []
        tokens_used = 0

        if session.is_terminal:
            self._log(sid, f"already {session.status}; no new attempts")
            updates.append(f"Session already {session.status} with best score {format_rate(session.best_score)}%")
            self._append_jsonl({"event": "session_short_circuit", "session_id": sid, "status": session.status})
            return self._build_report(session, self.store.list_attempts(sid), updates, tokens_used, started)

        attempts = self.store.list_attempts(sid)
        if len(attempts) > session.attempts_consumed:
            self._log(sid, f"reconciling attempts_consumed {session.attempts_consumed} -> {len(attempts)}")
            session.attempts_consumed = len(attempts)
        if attempts:
            session.best_score = max([session.best_score] + [attempt.score for attempt in attempts])
        if session.best_score >= PERFECT_SCORE:
            # A stored perfect attempt means the session was solved before an interrupted status write.
            session.status = STATUS_SOLVED
            session.completed_at = session.completed_at or now_iso()
            self._save_session(session)
            self._log(sid, "stored attempt already scored 100%; marking solved")
            updates.append(f"Session already {session.status} with best score {format_rate(session.best_score)}%")
            self._append_jsonl({"event": "session_short_circuit", "session_id": sid, "status": session.status})
            return self._build_report(session, attempts, updates, tokens_used, started)

        self._append_jsonl(
            {
                "event": "session_start",
                "session_id": sid,
                "problem_id": session.problem_id,
                "language": session.language,
                "attempt_budget": session.attempt_budget,
                "attempts_consumed": session.attempts_consumed,
                "created": created,
            }
        )
        updates.append(
            f"{'Started' if created else 'Resumed'} session for {problem.title} "
            f"({session.attempts_consumed}/{session.attempt_budget} attempts used)"
        )

        while session.attempts_consumed < session.attempt_budget:
            ordinal = session.attempts_consumed + 1
            self._log(sid, f"attempt {ordinal}/{session.attempt_budget} best={format_rate(session.best_score)}%")
            updates.append(f"Attempt {ordinal}: generating solution")
            context = build_context(attempts, ordinal)

            code = ""
            raw_output = ""
            rationale = ""
            try:
                generation = self._generate(problem, session.language, context, ordinal, listener)
                tokens_used += int(generation.tokens_used)
                code, raw_output, rationale = generation.code, generation.raw_output, generation.rationale
                report = self.evaluator.evaluate(problem, generation.code, session.language)
                attempt = Attempt(
                    session_id=sid,
                    attempt_number=ordinal,
                    code=code,
                    rationale=rationale,
                    language=session.language,
                    score=float(report.success_rate),
                    failed_tests=tuple(report.failing_records()),
                    errors=tuple(report.error_messages()),
                    raw_output=raw_output,
                )
                updates.append(
                    f"Attempt {ordinal}: {report.passed_tests}/{report.total_tests} tests passed "
                    f"({format_rate(attempt.score)}%)"
                )
                self._append_jsonl(
                    {
                        "event": "attempt_end",
                        "session_id": sid,
                        "attempt": ordinal,
                        "score": attempt.score,
                        "passed_tests": report.passed_tests,
                        "total_tests": report.total_tests,
                        "extraction_successful": report.extraction_successful,
                        "tokens_used": int(generation.tokens_used),
                    }
                )
            except Exception as exc:
                error = f"{exc.__class__.__name__}: {exc}"
                self._log(sid, f"attempt {ordinal} failed: {error}")
                attempt = Attempt(
                    session_id=sid,
                    attempt_number=ordinal,
                    code=code,
                    rationale=rationale,
                    language=session.language,
                    score=0.0,
                    errors=(error,),
                    raw_output=raw_output,
                )
                updates.append(f"Attempt {ordinal}: failed with {error}")
                self._append_jsonl({"event": "attempt_failed", "session_id": sid, "attempt": ordinal, "error": error})

            try:
                self.store.append_attempt(attempt)
            except StoreError as exc:
                self._log(sid, f"attempt {ordinal} write failed: {exc}")
                updates.append(f"Attempt {ordinal}: not persisted ({exc})")
                self._append_jsonl(
                    {"event": "attempt_write_failed", "session_id": sid, "attempt": ordinal, "error": str(exc)}
                )
            attempts.append(attempt)

            previous_best = session.best_score
            if attempt.score > previous_best:
                session.best_score = attempt.score
                if ordinal > 1:
                    delta = attempt.score - previous_best
                    entry = ImprovementLogEntry(
                        session_id=sid,
                        from_attempt=ordinal - 1,
                        to_attempt=ordinal,
                        delta=delta,
                        strategy=classify_improvement(delta, attempt.score),
                        changes_made=describe_improvement(previous_best, attempt.score),
                    )
                    try:
                        self.store.append_improvement(entry)
                    except StoreError as exc:
                        self._log(sid, f"improvement log write failed: {exc}")
                    updates.append(f"Attempt {ordinal}: {entry.changes_made}")
                    self._append_jsonl({"event": "improvement", **entry.to_dict()})

            session.attempts_consumed = ordinal
            if attempt.score >= PERFECT_SCORE:
                session.status = STATUS_SOLVED
                session.completed_at = now_iso()
            self._save_session(session)
            if session.status == STATUS_SOLVED:
                updates.append(f"Solved on attempt {ordinal}")
                break

        if session.status == STATUS_IN_PROGRESS:
            session.status = STATUS_MAX_ATTEMPTS
            session.completed_at = now_iso()
            self._save_session(session)
            updates.append(
                f"Attempt budget of {session.attempt_budget} exhausted; best score {format_rate(session.best_score)}%"
            )

        self._log(
            sid,
            f"finished status={session.status} attempts={session.attempts_consumed} "
            f"best={format_rate(session.best_score)}%",
        )
        self._append_jsonl(
            {
                "event": "session_end",
                "session_id": sid,
                "status": session.status,
                "attempts_consumed": session.attempts_consumed,
                "best_score": session.best_score,
                "tokens_used": tokens_used,
            }
        )
        return self._build_report(session, attempts, updates, tokens_used, started)

    def run_batch(self, requests: list[SessionRequest], workers: int = 1) -> list[dict[str, Any]]:
        """Run independent sessions, optionally in parallel; results keep request order."""

        def process(request: SessionRequest) -> dict[str, Any]:
            try:
                report = self.run(
                    request.problem_id,
                    language=request.language,
                    attempt_budget=request.attempt_budget,
                    session_id=request.session_id,
                )
                return {"problem_id": request.problem_id, "report": report.to_dict(), "error": None}
            except Exception as exc:
                print(f"[Batch] problem {request.problem_id} failed: {exc}")
                return {"problem_id": request.problem_id, "report": None, "error": f"{exc.__class__.__name__}: {exc}"}

        results: list[Optional[dict[str, Any]]] = [None] * len(requests)
        if workers <= 1:
            for idx, request in enumerate(tqdm(requests, desc="sessions")):
                results[idx] = process(request)
        else:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = {executor.submit(process, request): idx for idx, request in enumerate(requests)}
                for future in tqdm(as_completed(futures), total=len(futures), desc="sessions"):
                    results[futures[future]] = future.result()
        return [item for item in results if item is not None]
