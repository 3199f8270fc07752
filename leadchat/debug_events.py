"""Live trace of a chat session for the admin debug WebSocket.

A ConversationSession with a ChatTrace attached records one ChatEvent per
step of a turn: the visitor's message, each reply fragment, the merged
lead after extraction, latched gates, state transitions, and store or call
outcomes.  Every event carries the session's state, message count and
lead id at the moment it happened, so an admin can follow a lead being
built without reading the transcript.

Subscribers each get a bounded asyncio.Queue.  The trace keeps the most
recent events for the session snapshot and is closed when the session is
closed or evicted.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from enum import Enum
from typing import Optional, TypedDict

log = logging.getLogger("leadchat.debug_events")

SUBSCRIBER_QUEUE_SIZE = 200
EVENT_LOG_LIMIT = 500


class ChatEventType(str, Enum):
    USER_MESSAGE = "user_message"
    REPLY = "reply"
    REPLY_ERROR = "reply_error"
    EXTRACTION = "extraction"
    LATCH = "latch"
    TRANSITION = "transition"
    STORE_ERROR = "store_error"
    CALL = "call"
    CLOSED = "closed"


class ChatEvent(TypedDict):
    type: str
    timestamp: float
    session_id: str
    state: str
    message_count: int
    lead_id: Optional[str]
    data: dict


class ChatTrace:
    """Event fan-out and bounded event log for one chat session."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self._subscribers: list[asyncio.Queue[ChatEvent]] = []
        self._event_log: deque[ChatEvent] = deque(maxlen=EVENT_LOG_LIMIT)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def event_log(self) -> list[ChatEvent]:
        return list(self._event_log)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue[ChatEvent]:
        q: asyncio.Queue[ChatEvent] = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        self._subscribers.append(q)
        log.info("Trace subscriber added for session %s (total: %d)",
                 self.session_id, len(self._subscribers))
        return q

    def unsubscribe(self, q: asyncio.Queue[ChatEvent]) -> None:
        if q in self._subscribers:
            self._subscribers.remove(q)

    def record(
        self,
        event_type: ChatEventType,
        *,
        state: str,
        message_count: int,
        lead_id: Optional[str] = None,
        data: Optional[dict] = None,
    ) -> ChatEvent:
        """Log an event and push it to every subscriber."""
        event: ChatEvent = {
            "type": ChatEventType(event_type).value,
            "timestamp": time.time(),
            "session_id": self.session_id,
            "state": state,
            "message_count": message_count,
            "lead_id": lead_id,
            "data": data or {},
        }
        if self._closed:
            log.debug("Dropping %s event for closed session %s", event["type"], self.session_id)
            return event
        self._event_log.append(event)
        self._push(event)
        return event

    def close(self, reason: str) -> None:
        """Send a final ``closed`` event and detach every subscriber."""
        if self._closed:
            return
        last = self._event_log[-1] if self._event_log else None
        event: ChatEvent = {
            "type": ChatEventType.CLOSED.value,
            "timestamp": time.time(),
            "session_id": self.session_id,
            "state": last["state"] if last else "",
            "message_count": last["message_count"] if last else 0,
            "lead_id": last["lead_id"] if last else None,
            "data": {"reason": reason},
        }
        self._push(event)
        self._closed = True
        self._subscribers.clear()

    def _push(self, event: ChatEvent) -> None:
        for q in self._subscribers:
            if q.full():
                # Slow subscriber: drop its oldest event
                q.get_nowait()
            q.put_nowait(event)


# ── Trace registry ───────────────────────────────────────────────────

_traces: dict[str, ChatTrace] = {}


def get_trace(session_id: str) -> ChatTrace:
    """Get or create the trace for a session."""
    trace = _traces.get(session_id)
    if trace is None:
        trace = _traces[session_id] = ChatTrace(session_id)
    return trace


def close_trace(session_id: str, reason: str = "closed") -> None:
    """Close and forget a session's trace."""
    trace = _traces.pop(session_id, None)
    if trace is not None:
        trace.close(reason)
        log.info("Trace closed for session %s (%s)", session_id, reason)


def trace_count() -> int:
    return len(_traces)
