"""Pydantic models for lead data gathered during a chat.

LeadRecord is the partial structured record the extraction engine derives
from a transcript.  Every field starts as None ("unknown"); blank strings
and empty amenity sets are normalised to None so that "unset" and "empty"
never get confused downstream.

StoredLead is the persisted row: the LeadRecord fields plus bookkeeping
(status, score, timestamps, summary, notes, call flag).
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Iterable, Optional

from pydantic import BaseModel, Field, field_validator


class RentOrBuy(str, Enum):
    RENT = "rent"
    BUY = "buy"


class Urgency(str, Enum):
    ASAP = "asap"
    IMMEDIATE = "immediate"
    URGENT = "urgent"
    SOON = "soon"
    WITHIN_A_MONTH = "within_a_month"
    WITHIN_THREE_MONTHS = "within_3_months"
    FLEXIBLE = "flexible"
    NO_RUSH = "no_rush"
    OTHER = "other"


class LeadStatus(str, Enum):
    NEW = "new"
    CONTACTED = "contacted"
    CONVERTED = "converted"
    LOST = "lost"


# Order matters: the reply prompt lists missing fields in this order.
LEAD_FIELDS = (
    "name",
    "email",
    "phone",
    "rent_or_buy",
    "area",
    "amenities",
    "budget_range",
    "urgency",
)

SUFFICIENT_FIELDS = ("name", "email", "rent_or_buy", "area", "budget_range")


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    if isinstance(value, (set, frozenset, list, tuple)) and not value:
        return None
    return value


def _is_set(value: Any) -> bool:
    return _blank_to_none(value) is not None


class LeadRecord(BaseModel):
    """Structured lead information accumulated over a conversation."""

    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    rent_or_buy: Optional[RentOrBuy] = None
    area: Optional[str] = None
    amenities: Optional[set[str]] = None
    budget_range: Optional[str] = None
    urgency: Optional[Urgency] = None

    @field_validator("*", mode="before")
    @classmethod
    def _normalise_blank(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("amenities", mode="before")
    @classmethod
    def _clean_amenities(cls, value: Any) -> Any:
        if value is None:
            return None
        cleaned = {str(a).strip() for a in value if str(a).strip()}
        return cleaned or None

    # ── Queries ──────────────────────────────────────────────

    def is_set(self, field: str) -> bool:
        return _is_set(getattr(self, field))

    @property
    def is_empty(self) -> bool:
        return not any(self.is_set(f) for f in LEAD_FIELDS)

    def known_fields(self) -> dict[str, Any]:
        """Set fields only, with enums and sets flattened for display."""
        known: dict[str, Any] = {}
        for field in LEAD_FIELDS:
            value = getattr(self, field)
            if not _is_set(value):
                continue
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, set):
                value = sorted(value)
            known[field] = value
        return known

    def missing_fields(self) -> list[str]:
        return [f for f in LEAD_FIELDS if not self.is_set(f)]

    def has_sufficient_fields(self) -> bool:
        """True when enough is known to offer the lead-collection form."""
        return all(self.is_set(f) for f in SUFFICIENT_FIELDS)

    # ── Accumulation ─────────────────────────────────────────

    def merge(self, other: "LeadRecord") -> "LeadRecord":
        """Return a new record with ``other``'s set fields layered on top.

        Fields are only ever added or overwritten with non-empty values,
        never cleared.  Amenities accumulate as a union.
        """
        data = self.model_dump()
        for field in LEAD_FIELDS:
            value = getattr(other, field)
            if not _is_set(value):
                continue
            if field == "amenities":
                data[field] = set(data[field] or ()) | set(value)
            else:
                data[field] = value
        return LeadRecord(**data)

    def without(self, fields: Iterable[str]) -> "LeadRecord":
        """Return a copy with ``fields`` unset."""
        return self.model_copy(update={f: None for f in fields})

    def to_store_fields(self) -> dict[str, Any]:
        """Fields to persist.  Unset fields are omitted so updates never clear."""
        return self.known_fields()


class StoredLead(BaseModel):
    """A lead row as held by a LeadStore."""

    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    rent_or_buy: Optional[RentOrBuy] = None
    area: Optional[str] = None
    amenities: list[str] = Field(default_factory=list)
    budget_range: Optional[str] = None
    urgency: Optional[str] = None
    lead_score: int = 0
    status: LeadStatus = LeadStatus.NEW
    phone_call_made: bool = False
    conversation_summary: str = ""
    notes: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator(
        "name", "email", "phone", "rent_or_buy", "area", "budget_range", "urgency",
        mode="before",
    )
    @classmethod
    def _normalise_blank(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("amenities", mode="before")
    @classmethod
    def _amenities_list(cls, value: Any) -> Any:
        if not value:
            return []
        return sorted({str(a).strip() for a in value if str(a).strip()})

    @field_validator("conversation_summary", "notes", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return value or ""

    @property
    def record(self) -> LeadRecord:
        """The LeadRecord view of this row."""
        urgency: Optional[Urgency] = None
        if self.urgency:
            try:
                urgency = Urgency(self.urgency)
            except ValueError:
                urgency = Urgency.OTHER
        return LeadRecord(
            name=self.name,
            email=self.email,
            phone=self.phone,
            rent_or_buy=self.rent_or_buy,
            area=self.area,
            amenities=set(self.amenities) or None,
            budget_range=self.budget_range,
            urgency=urgency,
        )


class LeadFormSubmission(BaseModel):
    """Explicit confirm/correct form submitted by the visitor.

    Fields are optional at the model level so that an incomplete form can
    be rejected with a LeadValidationError listing what is missing,
    without touching session state.
    """

    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    rent_or_buy: Optional[RentOrBuy] = None
    area: Optional[str] = None
    budget_range: Optional[str] = None
    urgency: Optional[Urgency] = None
    amenities: list[str] = Field(default_factory=list)
    notes: str = ""

    REQUIRED: ClassVar[tuple[str, ...]] = ("name", "email", "rent_or_buy")

    @field_validator(
        "name", "email", "phone", "rent_or_buy", "area", "budget_range", "urgency",
        mode="before",
    )
    @classmethod
    def _normalise_blank(cls, value: Any) -> Any:
        return _blank_to_none(value)

    def missing_required(self) -> list[str]:
        return [f for f in self.REQUIRED if not _is_set(getattr(self, f))]

    def to_record(self) -> LeadRecord:
        return LeadRecord(
            name=self.name,
            email=self.email,
            phone=self.phone,
            rent_or_buy=self.rent_or_buy,
            area=self.area,
            amenities=set(self.amenities) or None,
            budget_range=self.budget_range,
            urgency=self.urgency,
        )
