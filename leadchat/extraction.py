"""Pattern-based lead extraction from a chat transcript.

Every rule runs independently over the lower-cased, space-joined text of
the transcript.  Within a rule the first matching alternative wins; a rule
that finds nothing leaves its field unset.  Extraction never raises for a
well-formed transcript.

Rent/buy and urgency are the two recency-sensitive fields: when a
``recent_window`` is configured they read only the last N messages, while
everything else still reads the whole conversation.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, Optional, Sequence

from leadchat.models.lead import LeadRecord, RentOrBuy, Urgency
from leadchat.models.message import Message, Role

log = logging.getLogger("leadchat.extraction")


DEFAULT_CITIES = (
    "vancouver",
    "burnaby",
    "richmond",
    "surrey",
    "coquitlam",
    "new westminster",
    "white rock",
    "delta",
    "langley",
    "maple ridge",
    "port coquitlam",
    "port moody",
    "north vancouver",
    "west vancouver",
)

DEFAULT_NEIGHBORHOODS = (
    "downtown",
    "westside",
    "eastside",
    "kitsilano",
    "point grey",
    "dunbar",
    "kerrisdale",
    "shaughnessy",
    "fairview",
    "mount pleasant",
    "strathcona",
    "chinatown",
    "gastown",
    "yaletown",
    "coal harbour",
    "west end",
    "english bay",
)

DEFAULT_AMENITIES = (
    "school",
    "park",
    "restaurant",
    "gym",
    "parking",
    "transit",
    "shopping",
    "grocery",
    "beach",
    "ocean view",
    "mountain view",
    "balcony",
    "laundry",
    "dishwasher",
    "air conditioning",
    "pet",
    "furnished",
    "utilities",
    "wifi",
    "internet",
)

# Ordered: the first keyword present wins.
URGENCY_KEYWORDS: tuple[tuple[str, Urgency], ...] = (
    ("asap", Urgency.ASAP),
    ("immediate", Urgency.IMMEDIATE),
    ("urgent", Urgency.URGENT),
    ("soon", Urgency.SOON),
    ("within a month", Urgency.WITHIN_A_MONTH),
    ("within 3 months", Urgency.WITHIN_THREE_MONTHS),
    ("flexible", Urgency.FLEXIBLE),
    ("no rush", Urgency.NO_RUSH),
    ("not in a hurry", Urgency.NO_RUSH),
)

_NAME_PATTERNS = tuple(
    re.compile(p)
    for p in (
        r"\bmy name is ([a-z]+)\b",
        r"\bi am ([a-z]+)\b",
        r"\bi'm ([a-z]+)\b",
        r"\bcall me ([a-z]+)\b",
        r"\bthis is ([a-z]+)\b",
        r"\b([a-z]+) is my name\b",
    )
)

# Words that follow "i am" / "i'm" / "this is" far more often than a name does.
_NAME_STOP_WORDS = frozenset({
    "a", "an", "the", "not", "just", "so", "very", "really", "also", "still",
    "here", "there", "in", "on", "at", "from", "with", "about", "for", "to",
    "looking", "interested", "trying", "moving", "planning", "searching",
    "hoping", "thinking", "going", "wondering", "ready", "currently",
    "renting", "buying", "selling", "new", "only", "good", "great", "fine",
    "ok", "okay", "sure", "excited", "happy", "glad", "perfect",
    "awesome", "what", "it", "that", "all", "your", "my", "we", "me",
})

# Word-start only, so "currently" is not a rental.
_RENT_RE = re.compile(r"\brent")
_BUY_RE = re.compile(r"\bbuy")

_EMAIL_RE = re.compile(r"[\w.+-]+@[\w.-]+\.\w+")

_PHONE_RE = re.compile(
    r"(?<![\w+])(?:\+?\d{1,3}[\s.-]?)?\(?\d{3}\)?[\s.-]?\d{3}[\s.-]?\d{4}(?!\d)"
)

_AREA_PREPOSITIONS = ("in", "to", "around", "near")
_AREA_GENERIC_SUFFIXES = ("area", "neighborhood", "district")
_LEADING_ARTICLE_RE = re.compile(r"^(?:the|a|an)\s+")

_AMOUNT = r"(\d{1,3}(?:,\d{3})+|\d+(?:\.\d+)?)\s?([km])?\b"

_BUDGET_RANGE_RE = re.compile(
    r"\$\s?" + _AMOUNT + r"\s*(?:-|–|to)\s*\$?\s?" + _AMOUNT
)
_BUDGET_SINGLE_RES = tuple(
    re.compile(p)
    for p in (
        r"\$?\s?" + _AMOUNT + r"\s*(?:per month|a month|/month|/mo\b|monthly)",
        r"\bbudget[^$\d]{0,30}\$?\s?" + _AMOUNT,
        r"\bup to\s*\$?\s?" + _AMOUNT,
        r"\$\s?" + _AMOUNT,
        r"\b" + _AMOUNT + r"\s*(?:dollars|bucks)\b",
    )
)

_SCALE = {"k": 1_000, "m": 1_000_000}


def _alternation(names: Iterable[str]) -> str:
    # Longest first so "north vancouver" wins over "vancouver".
    ordered = sorted({n.strip().lower() for n in names if n.strip()}, key=len, reverse=True)
    return "|".join(re.escape(n) for n in ordered)


def _parse_amount(digits: str, suffix: Optional[str]) -> float:
    value = float(digits.replace(",", ""))
    if suffix:
        value *= _SCALE[suffix]
    return value


def _format_amount(value: float) -> str:
    return f"${int(value):,}"


def normalize_budget(low: float, high: Optional[float] = None) -> str:
    """Render a parsed budget as a purchase price or a monthly rent.

    Values above 1000 are read as purchase prices ("$500,000",
    "$500,000-$750,000"); anything smaller is treated as monthly rent
    ("$900/month", "$800-$950/month").
    """
    text = _format_amount(low)
    if high is not None:
        text += "-" + _format_amount(high)
    if low > 1000:
        return text
    return text + "/month"


class Extractor:
    """Configurable extraction pass.

    ``cities`` and ``neighborhoods`` drive the area rule, ``amenities`` the
    amenity rule.  ``recent_window`` limits rent/buy and urgency to the last
    N messages (``None`` or 0 reads the full transcript).  With
    ``include_assistant=False`` only the visitor's own messages are read.
    """

    def __init__(
        self,
        cities: Optional[Iterable[str]] = None,
        neighborhoods: Optional[Iterable[str]] = None,
        amenities: Optional[Iterable[str]] = None,
        recent_window: Optional[int] = None,
        include_assistant: bool = True,
    ) -> None:
        self.cities = tuple(cities) if cities is not None else DEFAULT_CITIES
        self.neighborhoods = (
            tuple(neighborhoods) if neighborhoods is not None else DEFAULT_NEIGHBORHOODS
        )
        self.amenities = tuple(a.lower() for a in amenities) if amenities is not None else DEFAULT_AMENITIES
        if recent_window is not None and recent_window < 0:
            raise ValueError("recent_window must be >= 0")
        self.recent_window = recent_window or None
        self.include_assistant = include_assistant

        prepositions = "|".join(_AREA_PREPOSITIONS)
        suffixes = _alternation(_AREA_GENERIC_SUFFIXES + self.cities)
        self._area_re = re.compile(
            rf"\b(?:{prepositions})\s+"
            rf"((?:(?!(?:{prepositions})\b)[a-z]+\s+){{0,3}}?)"
            rf"({suffixes})\b"
        )
        hoods = _alternation(self.neighborhoods)
        self._neighborhood_re = re.compile(rf"\b({hoods})\b") if hoods else None

    @classmethod
    def from_settings(cls, settings) -> "Extractor":
        return cls(
            cities=settings.area_cities or None,
            neighborhoods=settings.area_neighborhoods or None,
            recent_window=settings.extraction_window or None,
            include_assistant=settings.extract_assistant_messages,
        )

    # ── Entry point ──────────────────────────────────────────

    def extract(self, transcript: Sequence[Message]) -> LeadRecord:
        messages = self._check_transcript(transcript)
        if not self.include_assistant:
            messages = [m for m in messages if m.role == Role.USER]

        text = _join(messages)
        recent = _join(messages[-self.recent_window:]) if self.recent_window else text

        record = LeadRecord(
            name=self.extract_name(text),
            email=self.extract_email(text),
            phone=self.extract_phone(text),
            rent_or_buy=self.extract_rent_or_buy(recent),
            area=self.extract_area(text),
            amenities=self.extract_amenities(text),
            budget_range=self.extract_budget(text),
            urgency=self.extract_urgency(recent),
        )
        log.debug("Extracted fields: %s", sorted(record.known_fields()))
        return record

    @staticmethod
    def _check_transcript(transcript: Sequence[Message]) -> list[Message]:
        if isinstance(transcript, (str, bytes)) or not isinstance(transcript, (list, tuple)):
            raise TypeError(
                f"transcript must be a list of Message, got {type(transcript).__name__}"
            )
        for item in transcript:
            if not isinstance(item, Message):
                raise TypeError(
                    f"transcript items must be Message, got {type(item).__name__}"
                )
        return list(transcript)

    # ── Field rules ──────────────────────────────────────────

    def extract_name(self, text: str) -> Optional[str]:
        for pattern in _NAME_PATTERNS:
            for match in pattern.finditer(text):
                candidate = match.group(1)
                if candidate in _NAME_STOP_WORDS:
                    continue
                return candidate[0].upper() + candidate[1:]
        return None

    def extract_email(self, text: str) -> Optional[str]:
        match = _EMAIL_RE.search(text)
        return match.group(0) if match else None

    def extract_phone(self, text: str) -> Optional[str]:
        match = _PHONE_RE.search(text)
        return match.group(0).strip() if match else None

    def extract_rent_or_buy(self, text: str) -> Optional[RentOrBuy]:
        has_rent = _RENT_RE.search(text) is not None
        has_buy = _BUY_RE.search(text) is not None
        if has_rent and not has_buy:
            return RentOrBuy.RENT
        if has_buy and not has_rent:
            return RentOrBuy.BUY
        return None

    def extract_area(self, text: str) -> Optional[str]:
        for match in self._area_re.finditer(text):
            words = _LEADING_ARTICLE_RE.sub("", match.group(1).strip())
            suffix = match.group(2)
            if suffix in _AREA_GENERIC_SUFFIXES:
                if words:
                    return words
                continue
            return f"{words} {suffix}".strip()
        if self._neighborhood_re is not None:
            match = self._neighborhood_re.search(text)
            if match:
                return match.group(1)
        return None

    def extract_amenities(self, text: str) -> Optional[set[str]]:
        found = {a for a in self.amenities if a in text}
        return found or None

    def extract_budget(self, text: str) -> Optional[str]:
        match = _BUDGET_RANGE_RE.search(text)
        if match:
            low = _parse_amount(match.group(1), match.group(2))
            high = _parse_amount(match.group(3), match.group(4))
            return normalize_budget(low, high)
        for pattern in _BUDGET_SINGLE_RES:
            match = pattern.search(text)
            if match:
                return normalize_budget(_parse_amount(match.group(1), match.group(2)))
        return None

    def extract_urgency(self, text: str) -> Optional[Urgency]:
        for keyword, urgency in URGENCY_KEYWORDS:
            if keyword in text:
                return urgency
        return None


def _join(messages: Sequence[Message]) -> str:
    return " ".join(m.content for m in messages).lower()


_default_extractor = Extractor()


def extract(
    transcript: Sequence[Message],
    *,
    recent_window: Optional[int] = None,
    include_assistant: bool = True,
) -> LeadRecord:
    """Extract a partial LeadRecord from ``transcript`` with the default lists."""
    if recent_window is None and include_assistant:
        return _default_extractor.extract(transcript)
    return Extractor(
        recent_window=recent_window, include_assistant=include_assistant
    ).extract(transcript)
