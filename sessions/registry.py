"""Session registry: session identifier -> live transport connection.

One registry exists per transport kind. Insert, lookup and removal are
serialized by a single lock, so a lookup never sees a half-inserted or
just-removed entry. Insert and remove return explicit lifecycle events.
"""

import asyncio
import enum
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from errors import NoSessionError, SessionConflictError

logger = logging.getLogger(__name__)


class TransportKind(str, enum.Enum):
    EVENT_STREAM = "event-stream"
    STREAMABLE_HTTP = "streamable-http"


class SessionState(str, enum.Enum):
    OPENED = "opened"
    CLOSED = "closed"


@dataclass
class SessionRecord:
    session_id: str
    kind: TransportKind
    connection: Any
    opened_at: float = field(default_factory=time.time)
    closed: bool = False


@dataclass(frozen=True)
class SessionEvent:
    """A session state transition reported by the registry."""

    kind: TransportKind
    session_id: str
    state: SessionState


def new_session_id() -> str:
    return uuid.uuid4().hex


class SessionRegistry:
    """Concurrency-safe map of live sessions for one transport kind."""

    def __init__(self, kind: TransportKind):
        self.kind = kind
        self._lock = asyncio.Lock()
        self._sessions: dict[str, SessionRecord] = {}

    async def insert(self, session_id: str, connection: Any) -> SessionEvent:
        async with self._lock:
            if session_id in self._sessions:
                raise SessionConflictError(f"{self.kind.value} session {session_id} is already live")
            self._sessions[session_id] = SessionRecord(session_id, self.kind, connection)
        logger.info(f"[SESSION] Opened {self.kind.value} session {session_id}")
        return SessionEvent(self.kind, session_id, SessionState.OPENED)

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        if not session_id:
            return None
        async with self._lock:
            record = self._sessions.get(session_id)
        if record is None or record.closed:
            return None
        return record

    async def require(self, session_id: str) -> SessionRecord:
        """Like get(), but an unknown identifier is a NoSessionError."""
        record = await self.get(session_id)
        if record is None:
            raise NoSessionError(f"No {self.kind.value} transport found for sessionId {session_id!r}")
        return record

    async def remove(self, session_id: str) -> Optional[SessionEvent]:
        """Remove a session. Only the first call for an identifier reports an event."""
        async with self._lock:
            record = self._sessions.pop(session_id, None)
            if record is None:
                return None
            record.closed = True
        logger.info(f"[SESSION] Closed {self.kind.value} session {session_id}")
        return SessionEvent(self.kind, session_id, SessionState.CLOSED)

    async def close_all(self) -> list[SessionEvent]:
        """Remove every session, e.g. at shutdown."""
        events = []
        for session_id in self.session_ids():
            event = await self.remove(session_id)
            if event is not None:
                events.append(event)
        return events

    def session_ids(self) -> list[str]:
        return list(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
