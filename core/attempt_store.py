"""Durable session, attempt and improvement-log storage."""

from __future__ import annotations

import json
import threading
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from core.errors import StoreError
from core.models import Attempt, ImprovementLogEntry, Session


def new_session_id() -> str:
    return uuid.uuid4().hex[:12]


class AttemptStore(ABC):
    """Append-only attempt history plus mutable session status."""

    @abstractmethod
    def create_session(self, session: Session) -> Session:
        """Persist a new session; raises StoreError if the id exists."""

    @abstractmethod
    def get_session(self, session_id: str) -> Optional[Session]:
        """Return the stored session or None."""

    @abstractmethod
    def update_session(self, session: Session) -> None:
        """Overwrite status fields of an existing session."""

    @abstractmethod
    def append_attempt(self, attempt: Attempt) -> Attempt:
        """Append the next attempt; its ordinal must be last + 1."""

    @abstractmethod
    def list_attempts(self, session_id: str) -> list[Attempt]:
        """All attempts in ascending ordinal order."""

    @abstractmethod
    def append_improvement(self, entry: ImprovementLogEntry) -> None:
        """Append one improvement log entry."""

    @abstractmethod
    def list_improvements(self, session_id: str) -> list[ImprovementLogEntry]:
        """All improvement entries in write order."""

    def latest_attempt(self, session_id: str) -> Optional[Attempt]:
        attempts = self.list_attempts(session_id)
        return attempts[-1] if attempts else None

    def best_attempt(self, session_id: str) -> Optional[Attempt]:
        """Highest score; the earliest ordinal wins ties."""

        best: Optional[Attempt] = None
        for attempt in self.list_attempts(session_id):
            if best is None or attempt.score > best.score:
                best = attempt
        return best


class JsonAttemptStore(AttemptStore):
    """One directory per session holding JSON records.

    Layout::

        <store_dir>/<session_id>/session.json
        <store_dir>/<session_id>/attempt_001.json
        <store_dir>/<session_id>/improvements.jsonl
    """

    def __init__(self, store_dir: str = "sessions") -> None:
        self.dir = Path(store_dir)
        self.dir.mkdir(parents=True, exist_ok=True)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, session_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[session_id] = lock
            return lock

    def _session_dir(self, session_id: str) -> Path:
        if not session_id or "/" in session_id or "\\" in session_id or session_id.startswith("."):
            raise StoreError(f"Invalid session id: {session_id!r}")
        return self.dir / session_id

    @staticmethod
    def _write_json(path: Path, payload: dict) -> None:
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp_path.replace(path)

    def create_session(self, session: Session) -> Session:
        session_dir = self._session_dir(session.session_id)
        with self._lock_for(session.session_id):
            meta_path = session_dir / "session.json"
            if meta_path.exists():
                raise StoreError(f"Session already exists: {session.session_id}")
            session_dir.mkdir(parents=True, exist_ok=True)
            self._write_json(meta_path, session.to_dict())
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        meta_path = self._session_dir(session_id) / "session.json"
        if not meta_path.exists():
            return None
        try:
            return Session.from_dict(json.loads(meta_path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise StoreError(f"Corrupt session record {meta_path}: {exc}") from exc

    def update_session(self, session: Session) -> None:
        meta_path = self._session_dir(session.session_id) / "session.json"
        with self._lock_for(session.session_id):
            if not meta_path.exists():
                raise StoreError(f"Unknown session: {session.session_id}")
            self._write_json(meta_path, session.to_dict())

    def _attempt_paths(self, session_id: str) -> list[Path]:
        return sorted(self._session_dir(session_id).glob("attempt_*.json"))

    def append_attempt(self, attempt: Attempt) -> Attempt:
        session_dir = self._session_dir(attempt.session_id)
        with self._lock_for(attempt.session_id):
            if not (session_dir / "session.json").exists():
                raise StoreError(f"Unknown session: {attempt.session_id}")
            expected = len(self._attempt_paths(attempt.session_id)) + 1
            if attempt.attempt_number != expected:
                raise StoreError(
                    f"Attempt ordinal {attempt.attempt_number} rejected for session "
                    f"{attempt.session_id}; next ordinal is {expected}"
                )
            path = session_dir / f"attempt_{attempt.attempt_number:03d}.json"
            self._write_json(path, attempt.to_dict())
        return attempt

    def list_attempts(self, session_id: str) -> list[Attempt]:
        attempts: list[Attempt] = []
        for path in self._attempt_paths(session_id):
            try:
                attempts.append(Attempt.from_dict(json.loads(path.read_text(encoding="utf-8"))))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
                raise StoreError(f"Corrupt attempt record {path}: {exc}") from exc
        attempts.sort(key=lambda item: item.attempt_number)
        return attempts

    def append_improvement(self, entry: ImprovementLogEntry) -> None:
        session_dir = self._session_dir(entry.session_id)
        with self._lock_for(entry.session_id):
            if not (session_dir / "session.json").exists():
                raise StoreError(f"Unknown session: {entry.session_id}")
            with (session_dir / "improvements.jsonl").open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")

    def list_improvements(self, session_id: str) -> list[ImprovementLogEntry]:
        path = self._session_dir(session_id) / "improvements.jsonl"
        if not path.exists():
            return []
        entries: list[ImprovementLogEntry] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                entries.append(ImprovementLogEntry.from_dict(json.loads(line)))
            except json.JSONDecodeError:
                continue
        return entries


class InMemoryAttemptStore(AttemptStore):
    """Process-local store with the same ordinal rules, used in tests and dry runs."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._attempts: dict[str, list[Attempt]] = {}
        self._improvements: dict[str, list[ImprovementLogEntry]] = {}
        self._lock = threading.Lock()

    def create_session(self, session: Session) -> Session:
        with self._lock:
            if session.session_id in self._sessions:
                raise StoreError(f"Session already exists: {session.session_id}")
            self._sessions[session.session_id] = Session.from_dict(session.to_dict())
            self._attempts[session.session_id] = []
            self._improvements[session.session_id] = []
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._lock:
            stored = self._sessions.get(session_id)
            return Session.from_dict(stored.to_dict()) if stored else None

    def update_session(self, session: Session) -> None:
        with self._lock:
            if session.session_id not in self._sessions:
                raise StoreError(f"Unknown session: {session.session_id}")
            self._sessions[session.session_id] = Session.from_dict(session.to_dict())

    def append_attempt(self, attempt: Attempt) -> Attempt:
        with self._lock:
            if attempt.session_id not in self._sessions:
                raise StoreError(f"Unknown session: {attempt.session_id}")
            attempts = self._attempts[attempt.session_id]
            expected = len(attempts) + 1
            if attempt.attempt_number != expected:
                raise StoreError(
                    f"Attempt ordinal {attempt.attempt_number} rejected for session "
                    f"{attempt.session_id}; next ordinal is {expected}"
                )
            attempts.append(attempt)
        return attempt

    def list_attempts(self, session_id: str) -> list[Attempt]:
        with self._lock:
            return list(self._attempts.get(session_id, []))

    def append_improvement(self, entry: ImprovementLogEntry) -> None:
        with self._lock:
            if entry.session_id not in self._sessions:
                raise StoreError(f"Unknown session: {entry.session_id}")
            self._improvements[entry.session_id].append(entry)

    def list_improvements(self, session_id: str) -> list[ImprovementLogEntry]:
        with self._lock:
            return list(self._improvements.get(session_id, []))
