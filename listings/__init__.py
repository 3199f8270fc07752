"""Static rental catalog and lead-to-listing matching."""

from .catalog import load_catalog
from .matcher import match
from .schema import Listing

__all__ = ["Listing", "load_catalog", "match"]
