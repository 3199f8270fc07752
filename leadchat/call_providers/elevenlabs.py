"""ElevenLabs Conversational AI call provider.

Posts the visitor's number and the chat summary to the ElevenLabs
conversation endpoint so the configured voice agent phones the lead.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from leadchat.errors import CallTriggerError

from .base import CallResult, CallTrigger

log = logging.getLogger("leadchat.call_providers.elevenlabs")

DEFAULT_URL = "https://api.elevenlabs.io/v1/convai/conversation"

CALL_CONTEXT_TEMPLATE = (
    "You are Roy, a friendly real estate agent in Vancouver. Here's the "
    "conversation history with this lead: {summary}.\n\n"
    "Continue the conversation naturally, focusing on:\n"
    "1. Understanding their specific needs and preferences\n"
    "2. Discussing available properties that match their criteria\n"
    "3. Scheduling a viewing or meeting\n"
    "4. Building rapport and trust\n\n"
    "Be conversational, helpful, and professional. Reference the chat "
    "conversation naturally."
)


class ElevenLabsCallTrigger(CallTrigger):
    """CallTrigger backed by the ElevenLabs conversational AI API."""

    def __init__(
        self,
        api_key: str,
        agent_id: str,
        url: str = DEFAULT_URL,
        timeout: float = 15,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not api_key or not agent_id:
            raise ValueError("ElevenLabs API key and agent id must both be provided.")
        self._api_key = api_key
        self._agent_id = agent_id
        self._url = url
        self._timeout = timeout
        self._transport = transport

    async def initiate(self, phone_number: str, summary: str) -> CallResult:
        payload = {
            "agent_id": self._agent_id,
            "phone_number": phone_number,
            "context": CALL_CONTEXT_TEMPLATE.format(summary=summary),
        }
        headers = {"xi-api-key": self._api_key, "Content-Type": "application/json"}

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(self._url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise CallTriggerError(f"ElevenLabs unreachable: {exc}") from exc

        if resp.is_error:
            log.warning("ElevenLabs rejected call (status %d): %s",
                        resp.status_code, resp.text[:200])
            return CallResult(
                ok=False,
                error=f"status {resp.status_code}: {resp.text[:200]}",
            )

        try:
            call_id = resp.json().get("conversation_id")
        except ValueError:
            call_id = None
        log.info("ElevenLabs call initiated: %s", call_id)
        return CallResult(ok=True, call_id=call_id)
