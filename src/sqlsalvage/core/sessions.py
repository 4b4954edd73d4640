# src/sqlsalvage/core/sessions.py
"""In-memory registry of recovery sessions.

Sessions live only as long as the process; finished ones are evicted after
a TTL. The store is created with the application and injected, never global.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlsalvage.contracts import (
    NotFoundError,
    ProgressEvent,
    RecoveryMode,
    RecoveryOptions,
    RecoveryOutcome,
    SessionState,
)
from sqlsalvage.core.clock import DEFAULT_CLOCK, Clock
from sqlsalvage.core.logging import get_logger

logger = get_logger(__name__)


def new_session_id() -> str:
    return uuid.uuid4().hex


@dataclass
class RecoverySession:
    """Mutable record of one recovery run."""

    session_id: str
    mode: RecoveryMode
    options: RecoveryOptions
    created_at: float
    state: SessionState = SessionState.PENDING
    last_event: ProgressEvent | None = None
    outcome: RecoveryOutcome | None = None
    error_detail: str | None = None
    finished_at: float | None = None
    task: asyncio.Task[Any] | None = field(default=None, repr=False)

    def observe(self, event: ProgressEvent) -> None:
        self.last_event = event

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "sessionId": self.session_id,
            "mode": self.mode.value,
            "state": self.state.value,
        }
        if self.last_event is not None:
            data["lastEvent"] = self.last_event.to_dict()
        if self.error_detail is not None:
            data["error"] = self.error_detail
        return data


class SessionStore:
    """Session records keyed by id. Accessed from the event loop thread only."""

    def __init__(self, *, ttl_sec: float = 300.0, clock: Clock = DEFAULT_CLOCK) -> None:
        self._ttl_sec = ttl_sec
        self._clock = clock
        self._sessions: dict[str, RecoverySession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def create(
        self,
        mode: RecoveryMode,
        options: RecoveryOptions | None = None,
        *,
        session_id: str | None = None,
    ) -> RecoverySession:
        """Register a new session, replacing a finished one with the same id.

        A client-supplied id that is still running is rejected so two uploads
        never share one progress stream.

        Raises:
            ValueError: The id belongs to a session that has not finished.
        """
        self.evict_expired()
        sid = session_id or new_session_id()
        existing = self._sessions.get(sid)
        if existing is not None and not existing.state.is_finished:
            raise ValueError(f"Session {sid} is already running")
        session = RecoverySession(
            session_id=sid,
            mode=mode,
            options=options or RecoveryOptions(),
            created_at=self._clock.monotonic(),
        )
        self._sessions[sid] = session
        return session

    def get(self, session_id: str) -> RecoverySession:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise NotFoundError(f"Unknown session: {session_id}") from None

    def running(self) -> list[RecoverySession]:
        return [s for s in self._sessions.values() if not s.state.is_finished]

    def finish(
        self,
        session_id: str,
        state: SessionState,
        *,
        outcome: RecoveryOutcome | None = None,
        error_detail: str | None = None,
    ) -> RecoverySession:
        if not state.is_finished:
            raise ValueError(f"{state.value} is not a finished state")
        session = self.get(session_id)
        session.state = state
        session.outcome = outcome
        session.error_detail = error_detail
        session.finished_at = self._clock.monotonic()
        session.task = None
        logger.info("Session finished", session_id=session_id, state=state.value)
        return session

    def cancel(self, session_id: str) -> bool:
        """Request cancellation of a running session's task.

        Returns False when the session has already finished.
        """
        session = self.get(session_id)
        if session.state.is_finished or session.task is None or session.task.done():
            return False
        session.task.cancel()
        logger.info("Session cancellation requested", session_id=session_id)
        return True

    def evict_expired(self, ttl_sec: float | None = None) -> int:
        """Drop finished sessions older than the TTL; returns how many."""
        ttl = self._ttl_sec if ttl_sec is None else ttl_sec
        now = self._clock.monotonic()
        expired = [
            sid
            for sid, s in self._sessions.items()
            if s.state.is_finished and s.finished_at is not None and now - s.finished_at >= ttl
        ]
        for sid in expired:
            del self._sessions[sid]
        if expired:
            logger.debug("Evicted finished sessions", count=len(expired))
        return len(expired)
