"""Abstract base class for lead stores.

Defines the persistence interface the chat session and the admin API use.
Any backend (in-memory, Supabase, ...) implements this ABC.  Writes are
last-write-wins; there is no versioning.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from leadchat.models.lead import LeadStatus, StoredLead
from leadchat.scoring import score_tier

# Columns a caller may write.  id and created_at are owned by the store.
WRITABLE_FIELDS = frozenset({
    "name",
    "email",
    "phone",
    "rent_or_buy",
    "area",
    "amenities",
    "budget_range",
    "urgency",
    "lead_score",
    "status",
    "phone_call_made",
    "conversation_summary",
    "notes",
})


@dataclass
class LeadFilter:
    """Admin-side filter over stored leads.  Unset criteria match everything."""

    status: Optional[LeadStatus] = None
    tier: Optional[str] = None  # high | medium | low
    search: str = ""  # case-insensitive substring of name, email or area

    def matches(self, lead: StoredLead) -> bool:
        if self.status is not None and lead.status != self.status:
            return False
        if self.tier and score_tier(lead.lead_score) != self.tier:
            return False
        if self.search:
            needle = self.search.lower()
            haystacks = (lead.name, lead.email, lead.area)
            if not any(h and needle in h.lower() for h in haystacks):
                return False
        return True


class LeadStore(ABC):
    """Abstract lead persistence backend.

    Subclasses raise LeadStoreError when the backend fails and
    LeadNotFoundError when an id does not exist.
    """

    @abstractmethod
    async def create(self, fields: dict[str, Any]) -> str:
        """Insert a new lead and return its id.

        Args:
            fields: Initial column values; missing columns take defaults
                (status ``new``, score 0, no call made).
        """

    @abstractmethod
    async def update(self, lead_id: str, fields: dict[str, Any]) -> None:
        """Overwrite the given columns of an existing lead.

        Columns absent from ``fields`` keep their stored value.
        ``updated_at`` is refreshed on every update.
        """

    @abstractmethod
    async def delete(self, lead_id: str) -> None:
        """Remove a lead permanently."""

    @abstractmethod
    async def list(self, filter: Optional[LeadFilter] = None) -> list[StoredLead]:
        """Return leads matching ``filter``, newest first."""

    @abstractmethod
    async def get(self, lead_id: str) -> StoredLead:
        """Return a single lead by id."""
