"""Load the static rental catalog Roy knows about.

Usage:
    # Print the packaged catalog
    python -m listings.catalog

    # Print a different catalog file
    python -m listings.catalog --data path/to/listings.json
"""

import argparse
import json
import logging
from functools import lru_cache
from pathlib import Path

from listings.schema import Listing

log = logging.getLogger("listings.catalog")

DEFAULT_CATALOG_PATH = Path(__file__).parent / "sample_data" / "vancouver_rentals.json"


def load_catalog(data_path: str | Path | None = None) -> tuple[Listing, ...]:
    """Load listings from a JSON file, the packaged catalog by default.

    The returned tuple keeps file order; the matcher relies on it.
    """
    if not data_path:
        return _default_catalog()
    return _read_catalog(Path(data_path))


@lru_cache(maxsize=1)
def _default_catalog() -> tuple[Listing, ...]:
    return _read_catalog(DEFAULT_CATALOG_PATH)


def _read_catalog(data_path: Path) -> tuple[Listing, ...]:
    with open(data_path) as f:
        raw = json.load(f)

    listings = tuple(Listing(**item) for item in raw)
    log.info("Loaded %d listings from %s", len(listings), data_path)
    return listings


def main() -> None:
    parser = argparse.ArgumentParser(description="Print the rental catalog")
    parser.add_argument(
        "--data",
        type=str,
        default=None,
        help="Path to listings JSON (default: packaged Vancouver rentals)",
    )
    args = parser.parse_args()

    for listing in load_catalog(args.data):
        print(listing.to_summary_line())


if __name__ == "__main__":
    main()
