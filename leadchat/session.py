"""Per-visitor chat session: drives Roy's conversation state machine.

Each chat widget that opens gets a ConversationSession that:
  1. Holds the transcript and the running message count
  2. Creates the lead in the LeadStore on the first visitor message
  3. Asks the ReplyGenerator for Roy's reply fragments
  4. Re-extracts the LeadRecord, keeping fields the visitor confirmed
     through the lead form or a call request, then scores and persists it
  5. Latches the call prompt, lead form and completion flags
  6. Places the outbound call when the visitor asks for one

States run ``idle → active → limit_reached``.  Both parties' messages
count towards the limit; fallback and call status messages do not.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Sequence

from pydantic import BaseModel

from leadchat.call_providers.base import CallTrigger
from leadchat.config import settings
from leadchat.debug_events import ChatEventType, ChatTrace, close_trace
from leadchat.errors import (
    LeadStoreError,
    LeadValidationError,
    MalformedMessageError,
    SessionStateError,
)
from leadchat.export import transcript_text
from leadchat.extraction import Extractor
from leadchat.models.lead import LeadFormSubmission, LeadRecord, LeadStatus
from leadchat.models.message import Message
from leadchat.reply import ReplyGenerator
from leadchat.scoring import score
from leadchat.store.base import LeadStore
from listings.catalog import load_catalog
from listings.matcher import match
from listings.schema import Listing

log = logging.getLogger("leadchat.session")

WELCOME_MESSAGE = (
    "Hey there! Are you excited to embark on your search for a new home? "
    "I am Roy, I will be your local real estate expert. How can i help you today?"
)
FALLBACK_MESSAGE = "I am having trouble connecting right now. Could you try again in a moment?"
CALL_CONFIRMATION = (
    "Perfect! I am calling you now at {phone}. Please answer your phone - I will be "
    "calling you within the next minute to discuss your options and show you some "
    "amazing listings!"
)
CALL_FAILURE = (
    "I am having trouble initiating the call right now. Please try again in a moment, "
    "or feel free to call me directly!"
)

TYPING_DELAY_PER_CHAR = 0.015
TYPING_DELAY_MAX = 2.0
FRAGMENT_GAP = 0.5


def redact_pii(value: Optional[str]) -> str:
    """Mask PII for logging: show first 3 and last 2 chars only."""
    if not value or len(value) <= 5:
        return "***"
    return value[:3] + "***" + value[-2:]


class SessionState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    LIMIT_REACHED = "limit_reached"


class TurnResult(BaseModel):
    """What one send_message call did, plus a snapshot of the session."""

    accepted: bool
    reason: str = ""  # "busy" | "limit_reached" when not accepted
    replies: list[Message] = []
    lead: LeadRecord
    score: int
    message_count: int
    state: SessionState
    call_prompt_shown: bool
    lead_form_shown: bool
    completed: bool
    listings: list[Listing] = []


# ── Session registry ─────────────────────────────────────────────

_active_sessions: dict[str, "ConversationSession"] = {}


def register_session(session: "ConversationSession") -> str:
    """Register a session and return its unique ID."""
    session_id = secrets.token_urlsafe(18)
    session._session_id = session_id
    session._started_at = time.time()
    session._last_active = session._started_at
    _active_sessions[session_id] = session
    log.info("Session registered: %s", session_id)
    return session_id


def unregister_session(session_id: str, reason: str = "closed") -> None:
    """Remove a session from the registry and close its trace."""
    _active_sessions.pop(session_id, None)
    close_trace(session_id, reason)
    log.info("Session unregistered: %s (%s)", session_id, reason)


def get_active_sessions() -> dict[str, "ConversationSession"]:
    """Return all active sessions."""
    return _active_sessions


def get_session(session_id: str) -> "ConversationSession | None":
    """Look up a session by ID."""
    return _active_sessions.get(session_id)


def evict_idle_sessions(
    idle_timeout: float,
    finished_idle_timeout: float,
    max_sessions: int,
    now: Optional[float] = None,
) -> list[str]:
    """Drop sessions whose visitor has gone away.

    A session is evicted once it has been idle for ``idle_timeout``
    seconds, or ``finished_idle_timeout`` once it has hit the message
    limit.  If more than ``max_sessions - 1`` remain, the least recently
    active ones go too so the next registration fits.  Sessions mid-turn
    are never evicted.
    """
    now = time.time() if now is None else now
    evicted: list[str] = []
    for session_id, session in list(_active_sessions.items()):
        if session.busy:
            continue
        timeout = (
            finished_idle_timeout
            if session.state == SessionState.LIMIT_REACHED
            else idle_timeout
        )
        if now - session.last_active > timeout:
            unregister_session(session_id, reason="idle")
            evicted.append(session_id)

    overflow = len(_active_sessions) - max(max_sessions - 1, 0)
    if overflow > 0:
        oldest = sorted(
            (s for s in _active_sessions.values() if not s.busy),
            key=lambda s: s.last_active,
        )[:overflow]
        for session in oldest:
            unregister_session(session.session_id, reason="capacity")
            evicted.append(session.session_id)

    if evicted:
        log.info("Evicted %d chat session(s); %d remain", len(evicted), len(_active_sessions))
    return evicted


class ConversationSession:
    """One visitor's chat with Roy.

    Typical lifecycle::

        session = ConversationSession(reply_generator=gen, lead_store=store)
        session.open()                       # welcome message, count = 1

        result = await session.send_message("Hi, I'm Alice")
        # → result.replies holds Roy's fragments, result.lead the record

        if result.call_prompt_shown:
            await session.request_call("604-555-1234")
    """

    def __init__(
        self,
        reply_generator: ReplyGenerator,
        lead_store: LeadStore,
        call_trigger: Optional[CallTrigger] = None,
        extractor: Optional[Extractor] = None,
        catalog: Optional[Sequence[Listing]] = None,
        max_messages: Optional[int] = None,
        call_prompt_threshold: Optional[int] = None,
        lead_form_min_messages: Optional[int] = None,
        pacing: Optional[bool] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._reply_generator = reply_generator
        self._lead_store = lead_store
        self._call_trigger = call_trigger
        self._extractor = extractor or Extractor.from_settings(settings)
        self._catalog = tuple(catalog) if catalog is not None else load_catalog(settings.listings_path)
        self._max_messages = max_messages or settings.max_messages
        self._call_prompt_threshold = call_prompt_threshold or settings.call_prompt_threshold
        self._lead_form_min_messages = lead_form_min_messages or settings.lead_form_min_messages
        self._pacing = settings.reply_pacing if pacing is None else pacing
        self._sleep = sleep

        # Registry metadata (set by register_session)
        self._session_id: str = ""
        self._started_at: float = 0.0
        self._last_active: float = time.time()

        self._state = SessionState.IDLE
        self._transcript: list[Message] = []
        self._message_count = 0
        self._record = LeadRecord()
        self._lead_id: Optional[str] = None
        self._notes = ""
        self._busy = False
        # Fields the visitor set through the lead form or a call request.
        # Transcript extraction never overwrites these.
        self._confirmed: set[str] = set()

        # One-way latches
        self._call_prompt_shown = False
        self._lead_form_shown = False
        self._completed = False

        self._trace: ChatTrace | None = None

    # ── Read-only views ───────────────────────────────────────

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def transcript(self) -> tuple[Message, ...]:
        return tuple(self._transcript)

    @property
    def message_count(self) -> int:
        return self._message_count

    @property
    def lead(self) -> LeadRecord:
        return self._record

    @property
    def lead_id(self) -> Optional[str]:
        return self._lead_id

    @property
    def score(self) -> int:
        return score(self._record)

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def call_prompt_shown(self) -> bool:
        return self._call_prompt_shown

    @property
    def lead_form_shown(self) -> bool:
        return self._lead_form_shown

    @property
    def completed(self) -> bool:
        return self._completed

    @property
    def last_active(self) -> float:
        return self._last_active

    @property
    def confirmed_fields(self) -> frozenset[str]:
        return frozenset(self._confirmed)

    def _touch(self) -> None:
        self._last_active = time.time()

    # ── Debug support ─────────────────────────────────────────

    def attach_trace(self, trace: ChatTrace) -> None:
        self._trace = trace

    def _trace_event(self, event_type: ChatEventType, data: Optional[dict] = None) -> None:
        if self._trace:
            self._trace.record(
                event_type,
                state=self._state.value,
                message_count=self._message_count,
                lead_id=self._lead_id,
                data=data,
            )

    def _latch(self, flag: str) -> None:
        attr = f"_{flag}"
        if not getattr(self, attr):
            setattr(self, attr, True)
            log.info("Session %s latched %s at count %d", self._session_id, flag, self._message_count)
            self._trace_event(ChatEventType.LATCH, {"flag": flag})

    def _set_state(self, new_state: SessionState) -> None:
        if new_state == self._state:
            return
        old = self._state
        self._state = new_state
        log.info("Session %s: %s → %s", self._session_id, old.value, new_state.value)
        self._trace_event(ChatEventType.TRANSITION, {"from": old.value, "to": new_state.value})

    # ── Serialisation ─────────────────────────────────────────

    def conversation_summary(self) -> str:
        """Transcript as "User: ..." / "Roy: ..." lines, for the store and the call agent."""
        return "\n".join(f"{m.speaker}: {m.content}" for m in self._transcript)

    def transcript_text(self) -> str:
        """Transcript as the visitor downloads it."""
        return transcript_text(self._transcript)

    def suggested_listings(self, max_results: int = 3) -> list[Listing]:
        return match(self._record, self._catalog, max_results=max_results)

    def to_dict(self, detail: bool = False) -> dict[str, Any]:
        """Serialize session state for the API.

        With detail=False: summary suitable for listing.
        With detail=True: adds the transcript, suggestions and debug event log.
        """
        d: dict[str, Any] = {
            "session_id": self._session_id,
            "started_at": self._started_at,
            "last_active": self._last_active,
            "state": self._state.value,
            "message_count": self._message_count,
            "lead_id": self._lead_id,
            "lead": self._record.model_dump(mode="json"),
            "confirmed_fields": sorted(self._confirmed),
            "score": self.score,
            "busy": self._busy,
            "call_prompt_shown": self._call_prompt_shown,
            "lead_form_shown": self._lead_form_shown,
            "completed": self._completed,
        }
        if detail:
            d["messages"] = [m.model_dump(mode="json") for m in self._transcript]
            d["listings"] = [l.model_dump(mode="json") for l in self.suggested_listings()]
            if self._trace:
                d["event_log"] = self._trace.event_log
        return d

    def _result(self, accepted: bool, reason: str = "", replies: Sequence[Message] = ()) -> TurnResult:
        return TurnResult(
            accepted=accepted,
            reason=reason,
            replies=list(replies),
            lead=self._record,
            score=self.score,
            message_count=self._message_count,
            state=self._state,
            call_prompt_shown=self._call_prompt_shown,
            lead_form_shown=self._lead_form_shown,
            completed=self._completed,
            listings=self.suggested_listings(),
        )

    # ── Lifecycle ─────────────────────────────────────────────

    def open(self) -> Message:
        """Start the chat with Roy's welcome message."""
        if self._state != SessionState.IDLE:
            raise SessionStateError(f"Session already opened (state={self._state.value})")
        welcome = Message.assistant(WELCOME_MESSAGE)
        self._transcript.append(welcome)
        self._message_count = 1
        self._touch()
        self._set_state(SessionState.ACTIVE)
        return welcome

    async def send_message(self, text: str) -> TurnResult:
        """Handle one visitor message.

        A send while another is in flight, or once the message limit is
        hit, is rejected without touching the transcript.
        """
        if not isinstance(text, str) or not text.strip():
            raise MalformedMessageError("Message must be a non-empty string")
        if self._state == SessionState.IDLE:
            raise SessionStateError("Session is not open")
        if self._busy:
            return self._result(False, reason="busy")
        if self._message_count >= self._max_messages:
            self._latch("call_prompt_shown")
            self._latch("completed")
            self._set_state(SessionState.LIMIT_REACHED)
            return self._result(False, reason="limit_reached")

        self._busy = True
        self._touch()
        try:
            self._transcript.append(Message.user(text))
            self._message_count += 1
            self._trace_event(ChatEventType.USER_MESSAGE, {"text": text})

            if self._lead_id is None:
                await self._create_lead()

            replies = await self._generate_replies()
            self._refresh_record()
            await self._persist_record()
            self._evaluate_gates()
            return self._result(True, replies=replies)
        finally:
            self._busy = False

    # ── Turn steps ────────────────────────────────────────────

    async def _create_lead(self) -> None:
        try:
            self._lead_id = await self._lead_store.create(
                {"status": LeadStatus.NEW, "lead_score": 0, "phone_call_made": False}
            )
        except Exception as exc:
            # Later updates need the id, so this turn cannot go ahead.
            self._transcript.pop()
            self._message_count -= 1
            log.exception("Lead creation failed for session %s", self._session_id)
            self._trace_event(ChatEventType.STORE_ERROR, {"operation": "create", "error": str(exc)})
            if isinstance(exc, LeadStoreError):
                raise
            raise LeadStoreError(f"Could not create lead: {exc}") from exc
        log.info("Session %s created lead %s", self._session_id, self._lead_id)

    async def _generate_replies(self) -> list[Message]:
        try:
            fragments = await self._reply_generator.generate(
                self.transcript, self._record, self._message_count
            )
            fragments = [f for f in fragments if isinstance(f, str) and f.strip()]
            if not fragments:
                raise ValueError("reply generator returned no text")
        except Exception as exc:
            log.warning("Reply generation failed for session %s: %s", self._session_id, exc)
            self._trace_event(ChatEventType.REPLY_ERROR, {"error": str(exc)})
            fallback = Message.assistant(FALLBACK_MESSAGE)
            self._transcript.append(fallback)
            return [fallback]

        appended: list[Message] = []
        for i, fragment in enumerate(fragments):
            if self._pacing:
                await self._sleep(min(len(fragment) * TYPING_DELAY_PER_CHAR, TYPING_DELAY_MAX))
            reply = Message.assistant(fragment)
            self._transcript.append(reply)
            self._message_count += 1
            appended.append(reply)
            self._trace_event(ChatEventType.REPLY, {"text": fragment})
            if self._pacing and i < len(fragments) - 1:
                await self._sleep(FRAGMENT_GAP)
        return appended

    def _refresh_record(self) -> None:
        extracted = self._extractor.extract(self.transcript).without(self._confirmed)
        self._record = self._record.merge(extracted)
        self._trace_event(ChatEventType.EXTRACTION, {
            "fields": self._record.known_fields(),
            "missing": self._record.missing_fields(),
            "score": self.score,
        })
        log.info(
            "Session %s lead: fields=%s score=%d email=%s phone=%s",
            self._session_id,
            sorted(self._record.known_fields()),
            self.score,
            redact_pii(self._record.email),
            redact_pii(self._record.phone),
        )

    async def _persist_record(self) -> None:
        fields = self._record.to_store_fields()
        fields["lead_score"] = self.score
        fields["conversation_summary"] = self.conversation_summary()
        try:
            await self._lead_store.update(self._lead_id, fields)
        except Exception as exc:
            # Incidental update: the visitor's turn still succeeds.
            log.exception("Lead update failed for %s", self._lead_id)
            self._trace_event(ChatEventType.STORE_ERROR, {"operation": "update", "error": str(exc)})

    def _evaluate_gates(self) -> None:
        if self._message_count >= self._call_prompt_threshold:
            self._latch("call_prompt_shown")
            self._latch("completed")
        if self._message_count >= self._max_messages:
            self._set_state(SessionState.LIMIT_REACHED)
        if (
            self._record.has_sufficient_fields()
            and self._message_count >= self._lead_form_min_messages
        ):
            self._latch("lead_form_shown")

    # ── Visitor actions ───────────────────────────────────────

    async def request_call(self, phone_number: str) -> Message:
        """Persist the number, ask the call provider to ring it, confirm in chat."""
        if not isinstance(phone_number, str) or not phone_number.strip():
            raise LeadValidationError(["phone"], "A phone number is required to place a call.")
        if self._state == SessionState.IDLE:
            raise SessionStateError("Session is not open")

        self._touch()
        phone = phone_number.strip()
        self._record = self._record.merge(LeadRecord(phone=phone))
        self._confirmed.add("phone")
        fields = {
            "phone": phone,
            "status": LeadStatus.CONTACTED,
            "phone_call_made": True,
            "lead_score": self.score,
        }
        try:
            if self._lead_id is None:
                self._lead_id = await self._lead_store.create(fields)
            else:
                await self._lead_store.update(self._lead_id, fields)
        except Exception as exc:
            log.exception("Could not record call request for lead %s", self._lead_id)
            self._trace_event(ChatEventType.STORE_ERROR, {"operation": "call", "error": str(exc)})

        ok = False
        call_id = None
        if self._call_trigger is None:
            log.warning("No call provider configured; cannot call %s", redact_pii(phone))
        else:
            try:
                result = await self._call_trigger.initiate(phone, self.conversation_summary())
                ok, call_id = result.ok, result.call_id
                if not ok:
                    log.warning("Call provider declined call to %s: %s",
                                redact_pii(phone), result.error)
            except Exception:
                log.exception("Call to %s failed", redact_pii(phone))
        self._trace_event(ChatEventType.CALL, {"ok": ok, "call_id": call_id})

        reply = Message.assistant(CALL_CONFIRMATION.format(phone=phone) if ok else CALL_FAILURE)
        self._transcript.append(reply)
        self._latch("completed")
        return reply

    async def submit_lead_form(self, form: LeadFormSubmission) -> LeadRecord:
        """Apply the visitor's confirm/correct form and persist it.

        Nothing changes unless the form is complete and the store accepts it.
        """
        missing = form.missing_required()
        if missing:
            raise LeadValidationError(missing)
        if self._state == SessionState.IDLE:
            raise SessionStateError("Session is not open")

        self._touch()
        submitted = form.to_record()
        record = self._record.merge(submitted)
        notes = form.notes.strip() or self._notes
        fields = record.to_store_fields()
        fields["lead_score"] = score(record)
        fields["conversation_summary"] = self.conversation_summary()
        if notes:
            fields["notes"] = notes

        try:
            if self._lead_id is None:
                self._lead_id = await self._lead_store.create(fields)
            else:
                await self._lead_store.update(self._lead_id, fields)
        except Exception as exc:
            # The visitor is waiting on a confirmation, so surface this one.
            log.exception("Lead form could not be saved for lead %s", self._lead_id)
            self._trace_event(ChatEventType.STORE_ERROR, {"operation": "lead_form", "error": str(exc)})
            if isinstance(exc, LeadStoreError):
                raise
            raise LeadStoreError(f"Could not save lead form: {exc}") from exc

        self._record = record
        self._notes = notes
        # Amenities accumulate, so only scalar fields are pinned.
        self._confirmed.update(f for f in submitted.known_fields() if f != "amenities")
        log.info("Lead form saved for lead %s (email=%s)", self._lead_id, redact_pii(record.email))
        self._trace_event(ChatEventType.EXTRACTION, {
            "source": "lead_form",
            "fields": record.known_fields(),
            "missing": record.missing_fields(),
            "score": self.score,
        })
        return record
