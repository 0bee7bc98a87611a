"""
Live protocol sessions.

Sessions only exist in memory: a restart drops them and agents reconnect.
Every frame for a session goes through its outbox queue, and the stream
response is the only consumer of that queue, so command replies and
keepalive pings never interleave on the wire.
"""

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ..logging_conf import get_logger

logger = get_logger(__name__)

PING_FRAME = ": ping\n\n"

# Frames buffered for a stream that is not reading
OUTBOX_LIMIT = 256


class SessionState(str, Enum):
    OPENED = "opened"
    INITIALIZED = "initialized"
    ACTIVE = "active"
    CLOSED = "closed"


def format_event(event: str, data) -> str:
    """Encode one server-sent event frame."""
    payload = data if isinstance(data, str) else json.dumps(data, separators=(",", ":"))
    lines = "".join(f"data: {line}\n" for line in payload.splitlines() or [""])
    return f"event: {event}\n{lines}\n"


@dataclass
class ProtocolSession:
    """One connected agent, scoped to one subscriber."""
    session_id: str
    subscriber_id: int
    state: SessionState = SessionState.OPENED
    outbox: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=OUTBOX_LIMIT))
    keepalive_task: Optional[asyncio.Task] = None

    @property
    def is_closed(self) -> bool:
        return self.state == SessionState.CLOSED

    def send_event(self, event: str, data) -> None:
        self._put(format_event(event, data))

    def send_ping(self) -> None:
        self._put(PING_FRAME)

    def _put(self, frame: str) -> None:
        if self.is_closed:
            return
        try:
            self.outbox.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning(
                "session_outbox_full",
                session_id=self.session_id,
                subscriber_id=self.subscriber_id,
                limit=self.outbox.maxsize,
            )
            self.close()

    async def next_frame(self) -> Optional[str]:
        """Next frame to write, or None once the session is closed."""
        return await self.outbox.get()

    def start_keepalive(self, interval: float) -> None:
        async def tick():
            while not self.is_closed:
                await asyncio.sleep(interval)
                self.send_ping()

        self.keepalive_task = asyncio.create_task(tick())

    def close(self) -> None:
        if self.is_closed:
            return
        self.state = SessionState.CLOSED
        if self.keepalive_task is not None:
            self.keepalive_task.cancel()
        # Wake the stream so it can finish, making room if the backlog is full
        while self.outbox.full():
            self.outbox.get_nowait()
        self.outbox.put_nowait(None)


class SessionRegistry:
    """
    Table of live sessions keyed by session id.

    All mutations happen on the event loop thread and never await, so the
    table needs no lock: inserts on open and removals on close are atomic
    with respect to command handling.
    """

    def __init__(self):
        self._sessions: dict[str, ProtocolSession] = {}

    def open(self, subscriber_id: int) -> ProtocolSession:
        session = ProtocolSession(session_id=str(uuid.uuid4()), subscriber_id=subscriber_id)
        self._sessions[session.session_id] = session
        logger.info("session_opened", session_id=session.session_id, subscriber_id=subscriber_id)
        return session

    def get(self, session_id: Optional[str]) -> Optional[ProtocolSession]:
        if not session_id:
            return None
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is not None:
            session.close()
            logger.info("session_closed", session_id=session_id, subscriber_id=session.subscriber_id)

    def close_all(self) -> None:
        for session_id in list(self._sessions):
            self.remove(session_id)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions
