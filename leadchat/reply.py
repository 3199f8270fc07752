"""Reply generation for Roy.

ReplyGenerator is the seam the chat session talks to.  The production
implementation asks Claude for a reply with a freshly rendered system
prompt, then splits long answers into up to three chat-sized fragments.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from typing import Optional, Sequence

import anthropic

from leadchat.errors import ReplyGenerationError
from leadchat.models.lead import LeadRecord
from leadchat.models.message import Message, Role
from leadchat.prompts import render_system_prompt
from listings.matcher import match
from listings.schema import Listing

log = logging.getLogger("leadchat.reply")

SINGLE_MESSAGE_MAX = 150
FRAGMENT_MAX = 200
MAX_FRAGMENTS = 3

_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")


def break_up_response(text: str) -> list[str]:
    """Split a reply into sentence-grouped fragments.

    Replies under 150 characters stay whole.  Longer ones are grouped
    sentence by sentence into fragments of about 200 characters (a single
    long sentence is never cut), and the leading fragments are folded
    together until at most three remain.
    """
    text = text.strip()
    if len(text) < SINGLE_MESSAGE_MAX:
        return [text] if text else []

    chunks: list[str] = []
    current = ""
    for sentence in _SENTENCE_END.split(text):
        if current and len(current) + len(sentence) > FRAGMENT_MAX:
            chunks.append(current.strip())
            current = sentence
        else:
            current = f"{current} {sentence}" if current else sentence
    if current.strip():
        chunks.append(current.strip())

    while len(chunks) > MAX_FRAGMENTS:
        chunks[0:2] = [f"{chunks[0]} {chunks[1]}"]
    return chunks


class ReplyGenerator(ABC):
    """Produces Roy's next reply."""

    @abstractmethod
    async def generate(
        self,
        transcript: Sequence[Message],
        known: LeadRecord,
        message_count: int,
    ) -> list[str]:
        """Return one or more reply fragments, in order.  Never empty.

        Raises:
            ReplyGenerationError: the backend failed or produced no text.
        """


class ClaudeReplyGenerator(ReplyGenerator):
    """ReplyGenerator backed by the Anthropic Messages API."""

    def __init__(
        self,
        api_key: str = "",
        model: str = "claude-3-5-sonnet-20241022",
        max_tokens: int = 1000,
        catalog: Sequence[Listing] = (),
        max_messages: int = 40,
        call_prompt_threshold: int = 30,
        client: Optional[anthropic.AsyncAnthropic] = None,
    ) -> None:
        if client is None:
            if not api_key:
                raise ValueError("An Anthropic API key is required.")
            client = anthropic.AsyncAnthropic(api_key=api_key)
        self._client = client
        self._model = model
        self._max_tokens = max_tokens
        self._catalog = tuple(catalog)
        self._max_messages = max_messages
        self._call_prompt_threshold = call_prompt_threshold

    @staticmethod
    def _to_api_messages(transcript: Sequence[Message]) -> tuple[str, list[dict]]:
        """Convert the transcript to alternating API turns.

        The API wants the first turn from the user, so Roy's opening lines
        are returned separately for the system prompt.  Consecutive
        fragments from the same speaker are joined into one turn.
        """
        messages = list(transcript)
        opening: list[str] = []
        while messages and messages[0].role == Role.ASSISTANT:
            opening.append(messages.pop(0).content)

        turns: list[dict] = []
        for message in messages:
            if turns and turns[-1]["role"] == message.role.value:
                turns[-1]["content"] += "\n\n" + message.content
            else:
                turns.append({"role": message.role.value, "content": message.content})
        return " ".join(opening), turns

    async def generate(
        self,
        transcript: Sequence[Message],
        known: LeadRecord,
        message_count: int,
    ) -> list[str]:
        opening, turns = self._to_api_messages(transcript)
        if not turns:
            raise ReplyGenerationError("Nothing from the visitor to reply to")

        system_prompt = render_system_prompt(
            known,
            message_count,
            self._catalog,
            suggestions=match(known, self._catalog),
            max_messages=self._max_messages,
            call_prompt_threshold=self._call_prompt_threshold,
            opening=opening,
        )

        log.info("LLM call: model=%s turns=%d count=%d", self._model, len(turns), message_count)
        try:
            response = await self._client.messages.create(
                model=self._model,
                max_tokens=self._max_tokens,
                system=system_prompt,
                messages=turns,
            )
        except anthropic.APIError as exc:
            raise ReplyGenerationError(f"Claude request failed: {exc}") from exc

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        fragments = break_up_response(text)
        if not fragments:
            raise ReplyGenerationError("Claude returned an empty reply")
        log.info("LLM response: %d chars in %d fragment(s)", len(text), len(fragments))
        return fragments
