"""CSV and text renderings for downloads.

CSV output uses the csv module's RFC 4180 dialect: comma separated, CRLF
line endings, fields quoted when they contain a comma, quote or newline.
"""

from __future__ import annotations

import csv
import io
from datetime import date
from typing import Iterable, Sequence

from leadchat.models.lead import LeadStatus, StoredLead
from leadchat.models.message import Message, Role
from leadchat.scoring import score_tier
from listings.schema import Listing

LEAD_CSV_COLUMNS = (
    "name",
    "email",
    "phone",
    "rentOrBuy",
    "area",
    "budgetRange",
    "urgency",
    "score",
    "status",
    "callMade",
    "createdAt",
    "updatedAt",
)

LISTING_CSV_COLUMNS = (
    "title",
    "price",
    "location",
    "bedrooms",
    "bathrooms",
    "type",
    "amenities",
    "url",
)


def _write_csv(header: Sequence[str], rows: Iterable[Sequence]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\r\n")
    writer.writerow(header)
    writer.writerows(rows)
    return buf.getvalue()


def leads_to_csv(leads: Iterable[StoredLead]) -> str:
    return _write_csv(
        LEAD_CSV_COLUMNS,
        (
            (
                lead.name or "",
                lead.email or "",
                lead.phone or "",
                lead.rent_or_buy.value if lead.rent_or_buy else "",
                lead.area or "",
                lead.budget_range or "",
                lead.urgency or "",
                lead.lead_score,
                lead.status.value,
                "Yes" if lead.phone_call_made else "No",
                lead.created_at.isoformat(),
                lead.updated_at.isoformat(),
            )
            for lead in leads
        ),
    )


def listings_to_csv(listings: Iterable[Listing]) -> str:
    return _write_csv(
        LISTING_CSV_COLUMNS,
        (
            (
                listing.title,
                listing.price,
                listing.location,
                listing.bedrooms,
                listing.bathrooms,
                listing.property_type,
                ", ".join(listing.amenities),
                listing.url,
            )
            for listing in listings
        ),
    )


def transcript_text(messages: Iterable[Message]) -> str:
    """Chat as plain text: "You: ..." / "Roy: ..." separated by blank lines."""
    return "\n\n".join(
        f"{'You' if m.role == Role.USER else 'Roy'}: {m.content}" for m in messages
    )


def export_filename(prefix: str, ext: str, today: date | None = None) -> str:
    """e.g. ``leads-2025-01-31.csv``."""
    return f"{prefix}-{(today or date.today()).isoformat()}.{ext}"


def lead_stats(leads: Iterable[StoredLead]) -> dict[str, int]:
    """Counts shown on the admin overview."""
    stats = {"total": 0, "calls_made": 0, "high": 0, "medium": 0, "low": 0}
    stats.update({status.value: 0 for status in LeadStatus})
    for lead in leads:
        stats["total"] += 1
        stats[lead.status.value] += 1
        stats[score_tier(lead.lead_score)] += 1
        if lead.phone_call_made:
            stats["calls_made"] += 1
    return stats
