"""Exception hierarchy for the lead-chat service.

Every error raised on purpose by this package derives from LeadChatError,
so the HTTP layer can map families of failures to status codes:

  MalformedMessageError  → 400  (contract violation at the boundary)
  LeadValidationError    → 422  (explicit form / call request incomplete)
  SessionStateError      → 409  (operation not valid in the current state)
  LeadNotFoundError      → 404
  SessionNotFoundError   → 404
  LeadStoreError         → 502  (persistence collaborator failed)
"""

from __future__ import annotations


class LeadChatError(Exception):
    """Base class for all lead-chat errors."""


class SessionStateError(LeadChatError):
    """Operation is not allowed in the session's current state."""


class SessionNotFoundError(LeadChatError):
    """No open chat session has the given identifier."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class MalformedMessageError(LeadChatError, ValueError):
    """A chat message was not a non-empty string."""


class LeadValidationError(LeadChatError):
    """An explicit submission is missing required fields."""

    def __init__(self, missing: list[str], message: str = "") -> None:
        self.missing = list(missing)
        super().__init__(message or f"Missing required fields: {', '.join(self.missing)}")


class LeadStoreError(LeadChatError):
    """The lead store could not complete a request."""


class LeadNotFoundError(LeadStoreError):
    """No lead exists with the given identifier."""

    def __init__(self, lead_id: str) -> None:
        self.lead_id = lead_id
        super().__init__(f"Lead not found: {lead_id}")


class ReplyGenerationError(LeadChatError):
    """The reply generator failed or returned nothing usable."""


class CallTriggerError(LeadChatError):
    """The outbound call provider rejected or failed a call request."""
