"""
Cost estimation from service categories and urgency.

Uses the first detected category (or the hourly rate) to look up a fixed
price range, applies the urgency multiplier and rounds to whole currency
units. Bounds are never negative and ``min <= max``.
"""
import math
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from dispatch_ai.core.config import BusinessProfile
from dispatch_ai.services.ai.schema import CostRange
from dispatch_ai.services.triage.classification import DEFAULT_CATEGORY

URGENCY_MULTIPLIERS: Mapping[str, float] = MappingProxyType({
    "low": 1.0,
    "normal": 1.0,
    "high": 1.15,
    "emergency": 1.3,
})

EMERGENCY_SUFFIX = {"nl": " (spoed)", "en": " (emergency)"}


class PriceEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    min: float = Field(..., ge=0)
    max: float = Field(..., ge=0)
    description: Dict[str, str]

    @model_validator(mode="after")
    def check_bounds(self) -> "PriceEntry":
        if self.min > self.max:
            raise ValueError("price entry min must not exceed max")
        return self

    def describe(self, language: str) -> str:
        return self.description.get(language) or self.description["nl"]


# Dutch market prices incl. VAT.
DEFAULT_PRICE_TABLE: Mapping[str, PriceEntry] = MappingProxyType({
    "leak_repair": PriceEntry(min=85, max=150, description={"nl": "Lekkage reparatie", "en": "Leak repair"}),
    "tap_replacement": PriceEntry(min=75, max=85, description={"nl": "Kraan vervangen", "en": "Tap replacement"}),
    "drain_unclog": PriceEntry(min=109, max=109, description={"nl": "Afvoer ontstoppen", "en": "Drain unclogging"}),
    "toilet_install": PriceEntry(min=175, max=175, description={"nl": "Toilet installeren", "en": "Toilet installation"}),
    "boiler_service": PriceEntry(min=125, max=175, description={"nl": "Ketel onderhoud", "en": "Boiler service"}),
    "kitchen_plumbing": PriceEntry(min=75, max=200, description={"nl": "Keuken loodgieterwerk", "en": "Kitchen plumbing"}),
    "radiator_install": PriceEntry(min=249, max=249, description={"nl": "Radiator plaatsen", "en": "Radiator installation"}),
    "shower_install": PriceEntry(min=275, max=275, description={"nl": "Douchecabine plaatsen", "en": "Shower cabin installation"}),
    DEFAULT_CATEGORY: PriceEntry(min=75, max=98, description={"nl": "Uurtarief (standaard/spoed)", "en": "Hourly rate (standard/emergency)"}),
})


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _apply_multiplier(value: float, multiplier: float) -> int:
    """Scaled and rounded bound; a surcharge always adds at least one unit."""
    scaled = _round_half_up(value * multiplier)
    if multiplier > 1.0 and value > 0:
        scaled = max(scaled, _round_half_up(value) + 1)
    return scaled


def build_price_table(profile: BusinessProfile) -> Mapping[str, PriceEntry]:
    """Default table with the hourly rate taken from the business profile."""
    table = dict(DEFAULT_PRICE_TABLE)
    table[DEFAULT_CATEGORY] = PriceEntry(
        min=profile.standard_rate,
        max=profile.emergency_rate,
        description=DEFAULT_PRICE_TABLE[DEFAULT_CATEGORY].description,
    )
    return MappingProxyType(table)


def estimate_cost(
    categories: List[str],
    urgency: str,
    language: str = "nl",
    price_table: Optional[Mapping[str, PriceEntry]] = None,
    currency: str = "EUR",
) -> CostRange:
    """
    Price range for the first category at the given urgency.

    Unknown categories and an empty list use the hourly rate.
    """
    table = price_table if price_table is not None else DEFAULT_PRICE_TABLE
    category = categories[0] if categories else DEFAULT_CATEGORY
    entry = table.get(category) or table[DEFAULT_CATEGORY]
    multiplier = URGENCY_MULTIPLIERS.get(urgency, 1.0)

    description = entry.describe(language)
    if urgency == "emergency":
        description += EMERGENCY_SUFFIX.get(language, EMERGENCY_SUFFIX["en"])

    low = max(0, _apply_multiplier(entry.min, multiplier))
    high = max(low, _apply_multiplier(entry.max, multiplier))
    return CostRange(min=low, max=high, currency=currency, description=description)
