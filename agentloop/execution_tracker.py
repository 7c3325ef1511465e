"""Per-session execution event store with explicit eviction."""

import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from agentloop.exceptions import SessionNotFoundError
from agentloop.logging import get_logger

log = get_logger(__name__)


class EventType(str, Enum):
    AGENT_START = "agent_start"
    AGENT_END = "agent_end"
    TOOL_CALL = "tool_call"
    ERROR = "error"


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass
class ExecutionEvent:
    """One recorded event in a session's timeline."""

    session_id: str
    event_type: EventType
    agent_name: str
    status: ExecutionStatus
    input: Any = None
    output: Any = None
    error: str | None = None
    started_at: datetime = field(default_factory=_now)
    ended_at: datetime | None = None
    duration_ms: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def finish(self, ended_at: datetime | None = None) -> None:
        self.ended_at = ended_at or _now()
        self.duration_ms = int((self.ended_at - self.started_at).total_seconds() * 1000)


@dataclass
class _SessionRecord:
    events: list[ExecutionEvent] = field(default_factory=list)
    active: ExecutionEvent | None = None
    last_activity: datetime = field(default_factory=_now)


EventListener = Callable[[ExecutionEvent], None]


class ExecutionTracker:
    """Owned store of execution events keyed by session id.

    Nothing is dropped implicitly except when `max_sessions` is exceeded,
    in which case the least recently active finished session goes first.
    """

    def __init__(self, max_sessions: int | None = 200):
        self.max_sessions = max_sessions
        self._sessions: dict[str, _SessionRecord] = {}
        self._listeners: list[EventListener] = []

    def _record(self, session_id: str, event: ExecutionEvent) -> ExecutionEvent:
        record = self._sessions.setdefault(session_id, _SessionRecord())
        record.events.append(event)
        record.last_activity = _now()
        self._notify(event)
        self._enforce_cap()
        return event

    def _notify(self, event: ExecutionEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                log.warning("Execution listener failed", event=event.event_type.value, error=str(e))

    def _enforce_cap(self) -> None:
        if self.max_sessions is None:
            return
        while len(self._sessions) > self.max_sessions:
            inactive = [
                (record.last_activity, session_id)
                for session_id, record in self._sessions.items()
                if record.active is None
            ]
            if not inactive:
                return
            _, oldest = min(inactive)
            self.evict(oldest)

    def start(self, session_id: str, agent_name: str, input: Any = None) -> ExecutionEvent:
        """Record the start of an agent run."""
        event = ExecutionEvent(
            session_id=session_id,
            event_type=EventType.AGENT_START,
            agent_name=agent_name,
            status=ExecutionStatus.RUNNING,
            input=input,
        )
        self._sessions.setdefault(session_id, _SessionRecord()).active = event
        log.info("Agent started", session_id=session_id, agent=agent_name)
        return self._record(session_id, event)

    def end(
        self,
        session_id: str,
        agent_name: str,
        output: Any = None,
        status: ExecutionStatus = ExecutionStatus.SUCCESS,
    ) -> ExecutionEvent:
        """Record the end of an agent run; duration is measured from its start."""
        record = self._sessions.get(session_id)
        started = record.active if record else None
        event = ExecutionEvent(
            session_id=session_id,
            event_type=EventType.AGENT_END,
            agent_name=agent_name,
            status=status,
            output=output,
            started_at=started.started_at if started else _now(),
        )
        event.finish()
        if record is not None:
            record.active = None
        log.info(
            "Agent ended",
            session_id=session_id,
            agent=agent_name,
            status=status.value,
            duration_ms=event.duration_ms,
        )
        return self._record(session_id, event)

    def record_error(self, session_id: str, agent_name: str, error: str) -> ExecutionEvent:
        event = ExecutionEvent(
            session_id=session_id,
            event_type=EventType.ERROR,
            agent_name=agent_name,
            status=ExecutionStatus.FAILED,
            error=error,
        )
        event.finish(event.started_at)
        record = self._sessions.get(session_id)
        if record is not None:
            record.active = None
        log.error("Agent error", session_id=session_id, agent=agent_name, error=error)
        return self._record(session_id, event)

    def record_tool_call(
        self,
        session_id: str,
        agent_name: str,
        tool_name: str,
        input: Any = None,
        output: Any = None,
        success: bool = True,
        error: str | None = None,
        duration_ms: int = 0,
    ) -> ExecutionEvent:
        ended_at = _now()
        event = ExecutionEvent(
            session_id=session_id,
            event_type=EventType.TOOL_CALL,
            agent_name=agent_name,
            status=ExecutionStatus.SUCCESS if success else ExecutionStatus.FAILED,
            input=input,
            output=output,
            error=error,
            started_at=ended_at - timedelta(milliseconds=duration_ms),
            metadata={"tool_name": tool_name},
        )
        event.finish(ended_at)
        log.debug("Tool call recorded", session_id=session_id, tool=tool_name, success=success)
        return self._record(session_id, event)

    def events(self, session_id: str) -> list[ExecutionEvent]:
        """Events recorded for a session, oldest first.

        Raises:
            SessionNotFoundError: the session was never recorded or was evicted
        """
        record = self._sessions.get(session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        return list(record.events)

    def has_session(self, session_id: str) -> bool:
        return session_id in self._sessions

    def active(self, session_id: str) -> ExecutionEvent | None:
        record = self._sessions.get(session_id)
        return record.active if record else None

    def active_sessions(self) -> dict[str, ExecutionEvent]:
        return {
            session_id: record.active
            for session_id, record in self._sessions.items()
            if record.active is not None
        }

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def evict(self, session_id: str) -> bool:
        """Drop everything recorded for a session. Returns False if unknown."""
        removed = self._sessions.pop(session_id, None)
        if removed is not None:
            log.info("Session evicted", session_id=session_id, events=len(removed.events))
        return removed is not None

    def evict_finished(self, older_than: timedelta | float | None = None) -> int:
        """Evict sessions with no active run.

        Args:
            older_than: Only evict sessions idle for at least this long
                (timedelta or seconds)

        Returns:
            Number of sessions evicted
        """
        if isinstance(older_than, (int, float)):
            older_than = timedelta(seconds=older_than)
        cutoff = _now() - older_than if older_than is not None else None
        victims = [
            session_id
            for session_id, record in self._sessions.items()
            if record.active is None and (cutoff is None or record.last_activity <= cutoff)
        ]
        for session_id in victims:
            self.evict(session_id)
        return len(victims)

    def __len__(self) -> int:
        return len(self._sessions)
