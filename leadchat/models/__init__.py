"""Data models for the lead-chat layer."""

from .lead import (
    LeadFormSubmission,
    LeadRecord,
    LeadStatus,
    RentOrBuy,
    StoredLead,
    Urgency,
)
from .message import Message, Role

__all__ = [
    "LeadFormSubmission",
    "LeadRecord",
    "LeadStatus",
    "Message",
    "RentOrBuy",
    "Role",
    "StoredLead",
    "Urgency",
]
