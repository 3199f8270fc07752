"""Pydantic model for rental listings with prompt-friendly text generation."""

import re

from pydantic import BaseModel, ConfigDict, Field

_NON_DIGITS = re.compile(r"[^\d]")


class Listing(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: int
    title: str
    price: str  # currency string as advertised, e.g. "$1,700"
    location: str
    bedrooms: int
    bathrooms: int
    property_type: str = Field(default="", alias="type")
    amenities: list[str] = []
    url: str = ""

    @property
    def price_value(self) -> int:
        """Advertised price as an integer, 0 when it carries no digits."""
        digits = _NON_DIGITS.sub("", self.price.split(".")[0])
        return int(digits) if digits else 0

    def to_summary_line(self) -> str:
        """One line per listing for the reply prompt's knowledge base."""
        parts = [
            self.title,
            self.price,
            self.location,
            f"{self.bedrooms} bed, {self.bathrooms} bath",
        ]
        if self.amenities:
            parts.append(f"Amenities: {', '.join(self.amenities)}")
        return " | ".join(parts)
