import csv
import io
import os
import sys
from datetime import date, datetime, timezone

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from leadchat.export import (
    LEAD_CSV_COLUMNS,
    LISTING_CSV_COLUMNS,
    export_filename,
    lead_stats,
    leads_to_csv,
    listings_to_csv,
    transcript_text,
)
from leadchat.models.lead import StoredLead
from leadchat.models.message import Message
from listings.catalog import load_catalog

CREATED = datetime(2025, 1, 31, 10, 0, tzinfo=timezone.utc)


def lead(**overrides):
    data = dict(id="a", created_at=CREATED, updated_at=CREATED)
    data.update(overrides)
    return StoredLead(**data)


def parse(text):
    return list(csv.reader(io.StringIO(text)))


class TestLeadsCsv:
    def test_header_only(self):
        assert leads_to_csv([]) == ",".join(LEAD_CSV_COLUMNS) + "\r\n"

    def test_row(self):
        text = leads_to_csv([lead(
            name="Alice",
            email="alice@example.com",
            rent_or_buy="rent",
            area="burnaby",
            budget_range="$2,000",
            urgency="asap",
            lead_score=7,
            status="contacted",
            phone_call_made=True,
        )])

        header, row = parse(text)
        assert header == list(LEAD_CSV_COLUMNS)
        assert row == [
            "Alice", "alice@example.com", "", "rent", "burnaby", "$2,000", "asap",
            "7", "contacted", "Yes", "2025-01-31T10:00:00+00:00", "2025-01-31T10:00:00+00:00",
        ]

    def test_quoting(self):
        text = leads_to_csv([lead(name='Smith, "Jo"', area="West End\nVancouver")])
        assert '"Smith, ""Jo"""' in text
        row = parse(text)[1]
        assert row[0] == 'Smith, "Jo"'
        assert row[4] == "West End\nVancouver"
        assert row[9] == "No"


class TestListingsCsv:
    def test_catalog(self):
        rows = parse(listings_to_csv(load_catalog()))
        assert rows[0] == list(LISTING_CSV_COLUMNS)
        assert len(rows) == 11
        assert rows[5][:6] == ["Ocean View Beach House (3 Beds+2 Baths) for Rent in White Rock-Pet Ok!",
                               "$3,300", "South Surrey/White Rock", "3", "2", "house"]
        assert rows[5][6] == "ocean view, pet friendly, beach access"


class TestTranscriptText:
    def test_speakers(self):
        messages = [Message.assistant("Welcome!"), Message.user("hi"), Message.assistant("Hello")]
        assert transcript_text(messages) == "Roy: Welcome!\n\nYou: hi\n\nRoy: Hello"

    def test_empty(self):
        assert transcript_text([]) == ""


class TestHelpers:
    def test_export_filename(self):
        assert export_filename("leads", "csv", today=date(2025, 1, 31)) == "leads-2025-01-31.csv"

    def test_lead_stats(self):
        stats = lead_stats([
            lead(id="a", lead_score=9, phone_call_made=True, status="contacted"),
            lead(id="b", lead_score=5),
            lead(id="c", lead_score=1, status="lost"),
        ])
        assert stats == {
            "total": 3,
            "calls_made": 1,
            "high": 1,
            "medium": 1,
            "low": 1,
            "new": 1,
            "contacted": 1,
            "converted": 0,
            "lost": 1,
        }
