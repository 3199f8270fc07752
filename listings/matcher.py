"""Filter the rental catalog against what a lead has told us.

Only rentals are matched.  Filters apply in sequence, each only when the
lead has the corresponding field: area, budget ceiling, amenities.  The
catalog's order is preserved.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Iterable

from listings.schema import Listing

if TYPE_CHECKING:
    from leadchat.models.lead import LeadRecord

_FIRST_DIGITS = re.compile(r"\$?(\d+)")


def budget_ceiling(budget_range: str) -> int | None:
    """First digit run of the budget, read as thousands.

    "$2,000-$3,000" gives 2000 and "$2000-$3000/month" gives 2,000,000.
    The heuristic is not unit-aware.
    """
    match = _FIRST_DIGITS.search(budget_range)
    if not match:
        return None
    return int(match.group(1)) * 1000


def match(
    record: "LeadRecord",
    catalog: Iterable[Listing],
    max_results: int = 3,
) -> list[Listing]:
    rent_or_buy = record.rent_or_buy.value if record.rent_or_buy is not None else None
    if rent_or_buy != "rent":
        return []

    results = list(catalog)

    if record.area:
        area = record.area.lower()
        results = [
            l for l in results
            if area in l.location.lower() or area in l.title.lower()
        ]

    if record.budget_range:
        ceiling = budget_ceiling(record.budget_range)
        if ceiling is not None:
            results = [l for l in results if l.price_value <= ceiling]

    if record.amenities:
        wanted = [a.lower() for a in record.amenities]
        results = [
            l for l in results
            if any(w in have.lower() for w in wanted for have in l.amenities)
        ]

    return results[: max(max_results, 0)]
