"""Tests for ConversationSession, the per-visitor chat state machine."""

import asyncio
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from conftest import FakeCallTrigger, FakeReplyGenerator, FlakyLeadStore, make_session
from leadchat.call_providers.base import CallResult
from leadchat.debug_events import ChatTrace, get_trace
from leadchat.errors import (
    CallTriggerError,
    LeadStoreError,
    LeadValidationError,
    MalformedMessageError,
    ReplyGenerationError,
    SessionStateError,
)
from leadchat.models.lead import LeadFormSubmission, LeadStatus, RentOrBuy
from leadchat.models.message import Role
from leadchat.session import (
    CALL_CONFIRMATION,
    CALL_FAILURE,
    FALLBACK_MESSAGE,
    FRAGMENT_GAP,
    WELCOME_MESSAGE,
    SessionState,
    evict_idle_sessions,
    get_active_sessions,
    get_session,
    register_session,
    unregister_session,
)

QUALIFYING_MESSAGE = "Hi, I'm Alice, alice@example.com, I want to rent in burnaby, budget $2000"


class BlockingReplyGenerator(FakeReplyGenerator):
    """Holds the first reply until ``release`` is set."""

    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def generate(self, transcript, known, message_count):
        self.started.set()
        await self.release.wait()
        return await super().generate(transcript, known, message_count)


# ── Opening ─────────────────────────────────────────────────────────


class TestOpen:
    def test_initial_state(self):
        session = make_session()
        assert session.state == SessionState.IDLE
        assert session.message_count == 0
        assert session.transcript == ()
        assert session.lead.is_empty
        assert session.lead_id is None

    def test_open_posts_welcome(self):
        session = make_session()
        welcome = session.open()
        assert welcome.role == Role.ASSISTANT
        assert welcome.content == WELCOME_MESSAGE
        assert session.transcript == (welcome,)
        assert session.message_count == 1
        assert session.state == SessionState.ACTIVE

    def test_open_twice_rejected(self, session):
        with pytest.raises(SessionStateError):
            session.open()

    def test_welcome_does_not_become_the_name(self, session):
        # Roy introduces himself; only the visitor's messages are read.
        assert session.lead.name is None


# ── Sending messages ────────────────────────────────────────────────


class TestSendMessage:
    async def test_send_before_open(self):
        session = make_session()
        with pytest.raises(SessionStateError):
            await session.send_message("hello")

    @pytest.mark.parametrize("text", ["", "   ", None, 42])
    async def test_malformed(self, session, text):
        with pytest.raises(MalformedMessageError):
            await session.send_message(text)
        assert session.message_count == 1

    async def test_accepted_turn(self, session, reply_generator, lead_store):
        result = await session.send_message("Hi, I'm Alice")

        assert result.accepted is True
        assert [m.content for m in result.replies] == ["Got it!"]
        assert result.message_count == 3
        assert result.lead.name == "Alice"
        assert result.score == 1
        assert result.state == SessionState.ACTIVE

        assert [m.role for m in session.transcript] == [Role.ASSISTANT, Role.USER, Role.ASSISTANT]
        assert session.lead_id is not None
        assert len(lead_store) == 1

    async def test_generator_sees_transcript_and_record(self, session, reply_generator):
        await session.send_message("my name is Alice")
        await session.send_message("I want to rent")

        transcript, known, count = reply_generator.calls[-1]
        assert transcript[-1].content == "I want to rent"
        assert known.name == "Alice"
        assert count == 4

    async def test_lead_created_once(self, session, lead_store):
        await session.send_message("hello")
        lead_id = session.lead_id
        await session.send_message("again")
        assert session.lead_id == lead_id
        assert len(lead_store) == 1

    async def test_record_persisted_each_turn(self, session, lead_store):
        await session.send_message("I'm Alice, alice@example.com")
        lead_id, fields = lead_store.updates[-1]
        assert lead_id == session.lead_id
        assert fields["name"] == "Alice"
        assert fields["email"] == "alice@example.com"
        assert fields["lead_score"] == 2
        assert fields["conversation_summary"].startswith("Roy: Hey there!")
        assert "User: I'm Alice, alice@example.com" in fields["conversation_summary"]

        stored = await lead_store.get(lead_id)
        assert stored.name == "Alice"
        assert stored.lead_score == 2

    async def test_multi_fragment_reply(self):
        session = make_session(FakeReplyGenerator(["One.", "  ", "Two.", "Three."]))
        session.open()
        result = await session.send_message("hello")
        assert [m.content for m in result.replies] == ["One.", "Two.", "Three."]
        assert session.message_count == 5

    async def test_fields_accumulate_across_turns(self, session):
        await session.send_message("I'm Bob")
        result = await session.send_message("bob@x.com rent downtown asap")
        lead = result.lead
        assert lead.name == "Bob"
        assert lead.email == "bob@x.com"
        assert lead.rent_or_buy == RentOrBuy.RENT
        assert lead.area == "downtown"
        assert result.score == 6


# ── Failure handling ────────────────────────────────────────────────


class TestFailures:
    @pytest.mark.parametrize("error", [
        ReplyGenerationError("model down"),
        RuntimeError("boom"),
    ])
    async def test_reply_failure_uses_fallback(self, error):
        session = make_session(FakeReplyGenerator(error=error))
        session.open()
        result = await session.send_message("hello")

        assert result.accepted is True
        assert [m.content for m in result.replies] == [FALLBACK_MESSAGE]
        assert session.transcript[-1].content == FALLBACK_MESSAGE
        # Fallback is not counted
        assert session.message_count == 2

    async def test_empty_reply_uses_fallback(self):
        session = make_session(FakeReplyGenerator([]))
        session.open()
        result = await session.send_message("hello")
        assert [m.content for m in result.replies] == [FALLBACK_MESSAGE]

    async def test_lead_create_failure_rolls_back(self):
        store = FlakyLeadStore(fail_create=True)
        session = make_session(lead_store=store)
        session.open()

        with pytest.raises(LeadStoreError):
            await session.send_message("hello")

        assert session.message_count == 1
        assert len(session.transcript) == 1
        assert session.lead_id is None
        assert session.busy is False

        store.fail_create = False
        result = await session.send_message("hello")
        assert result.accepted is True
        assert session.lead_id is not None

    async def test_lead_update_failure_does_not_fail_turn(self):
        store = FlakyLeadStore(fail_update=True)
        session = make_session(lead_store=store)
        session.open()

        result = await session.send_message("I'm Alice")

        assert result.accepted is True
        assert result.lead.name == "Alice"
        assert len(store.updates) == 1


# ── Concurrency ─────────────────────────────────────────────────────


class TestBusy:
    async def test_send_while_in_flight_is_rejected(self):
        generator = BlockingReplyGenerator()
        session = make_session(generator)
        session.open()

        first = asyncio.create_task(session.send_message("one"))
        await generator.started.wait()
        assert session.busy is True

        second = await session.send_message("two")
        assert second.accepted is False
        assert second.reason == "busy"

        generator.release.set()
        result = await first
        assert result.accepted is True
        assert session.busy is False
        assert session.message_count == 3
        assert [m.content for m in session.transcript if m.role == Role.USER] == ["one"]

    async def test_sessions_are_independent(self):
        store = FlakyLeadStore()
        alice = make_session(lead_store=store)
        bob = make_session(lead_store=store)
        alice.open()
        bob.open()

        await alice.send_message("I'm Alice")
        await bob.send_message("I'm Bob")

        assert alice.lead.name == "Alice"
        assert bob.lead.name == "Bob"
        assert alice.lead_id != bob.lead_id
        assert len(store) == 2


# ── Gates and limits ────────────────────────────────────────────────


class TestGates:
    async def test_call_prompt_latches_at_threshold(self, session):
        for _ in range(14):
            result = await session.send_message("ok")
        assert result.message_count == 29
        assert result.call_prompt_shown is False

        result = await session.send_message("ok")
        assert result.message_count == 31
        assert result.call_prompt_shown is True
        assert result.completed is True
        assert result.state == SessionState.ACTIVE

        # Latched: messaging continues below the limit
        result = await session.send_message("still here")
        assert result.accepted is True
        assert result.call_prompt_shown is True

    async def test_message_limit(self, session):
        outcomes = [await session.send_message("ok") for _ in range(25)]
        accepted = [r for r in outcomes if r.accepted]

        assert len(accepted) == 20
        assert session.state == SessionState.LIMIT_REACHED
        assert outcomes[-1].reason == "limit_reached"
        assert outcomes[-1].call_prompt_shown is True
        assert outcomes[-1].completed is True
        user_messages = [m for m in session.transcript if m.role == Role.USER]
        assert len(user_messages) == 20

    async def test_limit_rejection_leaves_transcript(self):
        session = make_session(max_messages=3, call_prompt_threshold=3)
        session.open()
        await session.send_message("one")
        before = session.transcript

        result = await session.send_message("two")
        assert result.accepted is False
        assert result.reason == "limit_reached"
        assert session.transcript == before

    async def test_lead_form_needs_fields_and_messages(self, session):
        result = await session.send_message(QUALIFYING_MESSAGE)
        assert result.lead.has_sufficient_fields()
        assert result.lead_form_shown is False

        for _ in range(5):
            result = await session.send_message("ok")
        assert result.message_count == 13
        assert result.lead_form_shown is False

        result = await session.send_message("ok")
        assert result.message_count == 15
        assert result.lead_form_shown is True

    async def test_lead_form_not_shown_without_fields(self, session):
        for _ in range(8):
            result = await session.send_message("ok")
        assert result.message_count >= 15
        assert result.lead_form_shown is False

    async def test_suggested_listings_follow_record(self, session):
        result = await session.send_message(QUALIFYING_MESSAGE)
        assert [l.id for l in result.listings] == [8]


# ── Reply pacing ────────────────────────────────────────────────────


class TestPacing:
    async def test_delays_between_fragments(self):
        delays = []

        async def fake_sleep(seconds):
            delays.append(seconds)

        session = make_session(
            FakeReplyGenerator(["Hi there!", "x" * 200]), pacing=True, sleep=fake_sleep
        )
        session.open()
        await session.send_message("hello")

        assert delays == pytest.approx([0.135, FRAGMENT_GAP, 2.0])

    async def test_no_delays_when_disabled(self):
        delays = []

        async def fake_sleep(seconds):
            delays.append(seconds)

        session = make_session(FakeReplyGenerator(["a", "b"]), pacing=False, sleep=fake_sleep)
        session.open()
        await session.send_message("hello")
        assert delays == []


# ── Outbound call ───────────────────────────────────────────────────


class TestRequestCall:
    async def test_successful_call(self, session, call_trigger, lead_store):
        await session.send_message("I'm Alice")
        count = session.message_count

        reply = await session.request_call(" 604-555-1234 ")

        assert reply.content == CALL_CONFIRMATION.format(phone="604-555-1234")
        assert session.transcript[-1] == reply
        assert session.message_count == count
        assert session.completed is True
        assert session.lead.phone == "604-555-1234"

        phone, summary = call_trigger.calls[0]
        assert phone == "604-555-1234"
        assert summary.startswith("Roy: Hey there!")
        assert "User: I'm Alice" in summary

        stored = await lead_store.get(session.lead_id)
        assert stored.phone == "604-555-1234"
        assert stored.status == LeadStatus.CONTACTED
        assert stored.phone_call_made is True

    async def test_called_number_survives_later_turns(self, session, lead_store):
        await session.send_message("my old number is 604-555-0000")
        assert session.lead.phone == "604-555-0000"

        await session.request_call("778-111-2222")
        await session.send_message("great, talk soon")

        assert session.lead.phone == "778-111-2222"
        assert "phone" in session.confirmed_fields
        stored = await lead_store.get(session.lead_id)
        assert stored.phone == "778-111-2222"

    async def test_call_before_any_message_creates_lead(self, session, lead_store):
        await session.request_call("604-555-1234")
        assert session.lead_id is not None
        assert len(lead_store) == 1

    @pytest.mark.parametrize("trigger", [
        FakeCallTrigger(result=CallResult(ok=False, error="status 400: bad number")),
        FakeCallTrigger(error=CallTriggerError("unreachable")),
    ])
    async def test_failed_call(self, trigger):
        session = make_session(call_trigger=trigger)
        session.open()
        reply = await session.request_call("604-555-1234")
        assert reply.content == CALL_FAILURE
        assert session.completed is True

    async def test_no_call_provider(self):
        session = make_session(call_trigger=None)
        session.open()
        reply = await session.request_call("604-555-1234")
        assert reply.content == CALL_FAILURE

    async def test_store_failure_still_places_call(self, call_trigger):
        session = make_session(
            lead_store=FlakyLeadStore(fail_create=True), call_trigger=call_trigger
        )
        session.open()
        reply = await session.request_call("604-555-1234")
        assert reply.content.startswith("Perfect!")
        assert len(call_trigger.calls) == 1

    @pytest.mark.parametrize("phone", ["", "   ", None])
    async def test_phone_required(self, session, call_trigger, phone):
        with pytest.raises(LeadValidationError) as exc_info:
            await session.request_call(phone)
        assert exc_info.value.missing == ["phone"]
        assert call_trigger.calls == []

    async def test_call_before_open(self):
        session = make_session(call_trigger=FakeCallTrigger())
        with pytest.raises(SessionStateError):
            await session.request_call("604-555-1234")


# ── Lead form ───────────────────────────────────────────────────────


class TestLeadForm:
    async def test_incomplete_form_rejected(self, session):
        with pytest.raises(LeadValidationError) as exc_info:
            await session.submit_lead_form(LeadFormSubmission(name="Alice", email=" "))
        assert exc_info.value.missing == ["email", "rent_or_buy"]
        assert session.lead.is_empty
        assert session.lead_id is None

    async def test_form_overrides_extracted_fields(self, session, lead_store):
        await session.send_message(QUALIFYING_MESSAGE)

        record = await session.submit_lead_form(LeadFormSubmission(
            name="Alicia",
            email="alicia@example.com",
            rent_or_buy="rent",
            notes="Evenings are best",
        ))

        assert record.name == "Alicia"
        assert record.email == "alicia@example.com"
        assert record.area == "burnaby"
        assert session.lead == record

        stored = await lead_store.get(session.lead_id)
        assert stored.name == "Alicia"
        assert stored.notes == "Evenings are best"

    async def test_corrections_survive_later_turns(self, session, lead_store):
        await session.send_message("I'm relocating, email sam@x.com, want to rent in burnaby")
        assert session.lead.name == "Relocating"

        await session.submit_lead_form(LeadFormSubmission(
            name="Sarah", email="sam@x.com", rent_or_buy="rent",
        ))
        await session.send_message("thanks! my name is Sam by the way, I might buy")

        assert session.lead.name == "Sarah"
        assert session.lead.rent_or_buy == RentOrBuy.RENT
        stored = await lead_store.get(session.lead_id)
        assert stored.name == "Sarah"
        assert stored.rent_or_buy == RentOrBuy.RENT

    async def test_unconfirmed_fields_keep_updating(self, session):
        await session.submit_lead_form(LeadFormSubmission(
            name="Sarah", email="sam@x.com", rent_or_buy="rent",
        ))
        await session.send_message("somewhere in richmond, asap")

        assert session.lead.area == "richmond"
        assert session.confirmed_fields == {"name", "email", "rent_or_buy"}

    async def test_form_without_prior_lead_creates_one(self, session, lead_store):
        await session.submit_lead_form(LeadFormSubmission(
            name="Alice", email="alice@example.com", rent_or_buy="buy",
        ))
        assert session.lead_id is not None
        stored = await lead_store.get(session.lead_id)
        assert stored.rent_or_buy == RentOrBuy.BUY

    async def test_store_failure_leaves_session_untouched(self, session, lead_store):
        await session.send_message("I'm Alice")
        before = session.lead
        lead_store.fail_update = True

        with pytest.raises(LeadStoreError):
            await session.submit_lead_form(LeadFormSubmission(
                name="Alicia", email="alicia@example.com", rent_or_buy="rent",
            ))
        assert session.lead == before

    async def test_form_before_open(self):
        session = make_session()
        with pytest.raises(SessionStateError):
            await session.submit_lead_form(LeadFormSubmission(
                name="Alice", email="alice@example.com", rent_or_buy="rent",
            ))


# ── Events, registry, serialisation ─────────────────────────────────


class TestObservability:
    async def test_turn_events(self, session):
        trace = ChatTrace("test")
        session.attach_trace(trace)

        await session.send_message("I'm Alice")

        types = [e["type"] for e in trace.event_log]
        assert types == ["user_message", "reply", "extraction"]
        extraction = trace.event_log[-1]
        assert extraction["state"] == "active"
        assert extraction["message_count"] == 3
        assert extraction["lead_id"] == session.lead_id
        assert extraction["data"]["fields"] == {"name": "Alice"}
        assert "email" in extraction["data"]["missing"]

    async def test_latch_and_transition_events(self):
        session = make_session(max_messages=3, call_prompt_threshold=3)
        trace = ChatTrace("test")
        session.attach_trace(trace)
        session.open()
        await session.send_message("hello")

        types = [e["type"] for e in trace.event_log]
        assert types[0] == "transition"
        assert types.count("latch") == 2
        assert types[-1] == "transition"
        assert trace.event_log[-1]["data"] == {"from": "active", "to": "limit_reached"}

    async def test_store_error_event(self):
        session = make_session(lead_store=FlakyLeadStore(fail_update=True))
        trace = ChatTrace("test")
        session.attach_trace(trace)
        session.open()
        await session.send_message("hello")

        errors = [e for e in trace.event_log if e["type"] == "store_error"]
        assert errors[0]["data"]["operation"] == "update"

    def test_registry(self):
        session = make_session()
        session_id = register_session(session)
        try:
            assert session.session_id == session_id
            assert get_session(session_id) is session
        finally:
            unregister_session(session_id)
        assert get_session(session_id) is None

    async def test_to_dict(self, session):
        await session.send_message(QUALIFYING_MESSAGE)

        summary = session.to_dict()
        assert summary["state"] == "active"
        assert summary["message_count"] == 3
        assert summary["lead"]["name"] == "Alice"
        assert summary["lead"]["rent_or_buy"] == "rent"
        assert "messages" not in summary

        detail = session.to_dict(detail=True)
        assert [m["role"] for m in detail["messages"]] == ["assistant", "user", "assistant"]
        assert [l["id"] for l in detail["listings"]] == [8]

    async def test_transcript_text(self, session):
        await session.send_message("hello")
        assert session.transcript_text() == (
            f"Roy: {WELCOME_MESSAGE}\n\nYou: hello\n\nRoy: Got it!"
        )


# ── Idle eviction ───────────────────────────────────────────────────


@pytest.fixture
def registry(monkeypatch):
    sessions = {}
    monkeypatch.setattr("leadchat.session._active_sessions", sessions)
    return sessions


def opened(now):
    session = make_session()
    register_session(session)
    session.open()
    session._last_active = now
    return session


class TestEviction:
    def test_idle_sessions_evicted(self, registry):
        stale = opened(now=1000.0)
        fresh = opened(now=2500.0)

        evicted = evict_idle_sessions(1800, 300, 100, now=3000.0)

        assert evicted == [stale.session_id]
        assert get_session(stale.session_id) is None
        assert get_session(fresh.session_id) is fresh

    async def test_finished_sessions_evicted_sooner(self, registry):
        session = make_session(max_messages=3, call_prompt_threshold=3)
        register_session(session)
        session.open()
        await session.send_message("hello")
        assert session.state == SessionState.LIMIT_REACHED
        chatting = opened(now=session.last_active)

        evicted = evict_idle_sessions(1800, 300, 100, now=session.last_active + 301)

        assert evicted == [session.session_id]
        assert get_session(chatting.session_id) is chatting

    def test_capacity_drops_least_recently_active(self, registry):
        oldest = opened(now=100.0)
        middle = opened(now=200.0)
        newest = opened(now=300.0)

        evicted = evict_idle_sessions(1800, 300, 2, now=400.0)

        assert set(evicted) == {oldest.session_id, middle.session_id}
        assert list(get_active_sessions()) == [newest.session_id]

    async def test_busy_session_kept(self, registry):
        generator = BlockingReplyGenerator()
        session = make_session(generator)
        register_session(session)
        session.open()
        session._last_active = 0.0

        task = asyncio.create_task(session.send_message("hello"))
        await generator.started.wait()
        assert evict_idle_sessions(1800, 300, 100, now=10_000.0) == []

        generator.release.set()
        await task
        assert get_session(session.session_id) is session

    async def test_activity_resets_idle_clock(self, registry):
        session = opened(now=0.0)
        await session.send_message("hello")
        assert session.last_active > 0.0

    def test_eviction_closes_trace(self, registry):
        session = opened(now=0.0)
        trace = get_trace(session.session_id)
        session.attach_trace(trace)
        queue = trace.subscribe()

        evict_idle_sessions(1800, 300, 100, now=5000.0)

        assert trace.closed
        event = queue.get_nowait()
        assert event["type"] == "closed"
        assert event["data"] == {"reason": "idle"}
