"""Shared fakes for the chat session's collaborators."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from leadchat.call_providers.base import CallResult, CallTrigger
from leadchat.errors import LeadStoreError
from leadchat.extraction import Extractor
from leadchat.reply import ReplyGenerator
from leadchat.session import ConversationSession
from leadchat.store.memory import MemoryLeadStore
from listings.catalog import load_catalog


class FakeReplyGenerator(ReplyGenerator):
    """Returns canned fragments, or raises ``error`` when set."""

    def __init__(self, replies=None, error=None):
        self.replies = list(replies) if replies is not None else ["Got it!"]
        self.error = error
        self.calls = []

    async def generate(self, transcript, known, message_count):
        self.calls.append((list(transcript), known, message_count))
        if self.error is not None:
            raise self.error
        return list(self.replies)


class FlakyLeadStore(MemoryLeadStore):
    """MemoryLeadStore whose create/update can be told to fail."""

    def __init__(self, fail_create=False, fail_update=False):
        super().__init__()
        self.fail_create = fail_create
        self.fail_update = fail_update
        self.updates = []

    async def create(self, fields):
        if self.fail_create:
            raise LeadStoreError("insert failed")
        return await super().create(fields)

    async def update(self, lead_id, fields):
        self.updates.append((lead_id, dict(fields)))
        if self.fail_update:
            raise LeadStoreError("update failed")
        await super().update(lead_id, fields)


class FakeCallTrigger(CallTrigger):
    def __init__(self, result=None, error=None):
        self.result = result or CallResult(ok=True, call_id="conv_123")
        self.error = error
        self.calls = []

    async def initiate(self, phone_number, summary):
        self.calls.append((phone_number, summary))
        if self.error is not None:
            raise self.error
        return self.result


def make_session(
    reply_generator=None,
    lead_store=None,
    call_trigger=None,
    **overrides,
) -> ConversationSession:
    options = dict(
        extractor=Extractor(include_assistant=False),
        catalog=load_catalog(),
        max_messages=40,
        call_prompt_threshold=30,
        lead_form_min_messages=15,
        pacing=False,
    )
    options.update(overrides)
    return ConversationSession(
        reply_generator=reply_generator or FakeReplyGenerator(),
        lead_store=lead_store if lead_store is not None else FlakyLeadStore(),
        call_trigger=call_trigger,
        **options,
    )


@pytest.fixture
def reply_generator():
    return FakeReplyGenerator()


@pytest.fixture
def lead_store():
    return FlakyLeadStore()


@pytest.fixture
def call_trigger():
    return FakeCallTrigger()


@pytest.fixture
def session(reply_generator, lead_store, call_trigger):
    s = make_session(reply_generator, lead_store, call_trigger)
    s.open()
    return s
