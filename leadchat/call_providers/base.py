"""Abstract base class for outbound call providers.

Any voice vendor (ElevenLabs, Twilio, ...) implements this ABC.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass
class CallResult:
    """Outcome of an outbound call request."""

    ok: bool
    call_id: Optional[str] = None
    error: str = ""


class CallTrigger(ABC):
    """Abstract outbound call backend."""

    @abstractmethod
    async def initiate(self, phone_number: str, summary: str) -> CallResult:
        """Ask the provider to call ``phone_number``.

        Args:
            phone_number: Number as the visitor typed it.
            summary: Transcript summary ("User: ..." / "Roy: ..." lines)
                handed to the voice agent as context.

        Returns:
            CallResult with ``ok=False`` and an ``error`` when the
            provider declined the request.

        Raises:
            CallTriggerError: the provider could not be reached.
        """
