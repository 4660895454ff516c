"""
Quote pricing rules.

Quotes are built from business rules, not taken verbatim from the model:
- base unit cost of $150, scaled by an event-type multiplier
  (job sites are cheaper, weddings and special events cost more)
- the quoted unit rate always carries at least the $50 minimum margin over
  that cost; a lower proposed rate is raised and the rationale says so
- delivery and fuel surcharge are kept inside their allowed ranges
- sales tax comes from the state table (state given, or derived from the
  ZIP prefix), defaulting to 7% when the region is unknown

All money is `Decimal`, rounded to cents.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
import re
from typing import Any, Dict, List, Mapping, Optional, Tuple

import structlog

logger = structlog.get_logger(__name__)

CENTS = Decimal("0.01")

BASE_UNIT_COST = Decimal("150")
MINIMUM_MARGIN = Decimal("50")
DEFAULT_TAX_RATE = Decimal("7.0")

DELIVERY_RANGE = (Decimal("50"), Decimal("150"))
DEFAULT_DELIVERY = Decimal("100")
FUEL_SURCHARGE_RANGE = (Decimal("10"), Decimal("25"))
DEFAULT_FUEL_SURCHARGE = Decimal("15")

# Keyword -> multiplier on the base unit cost. First match wins.
EVENT_MULTIPLIERS: Tuple[Tuple[Tuple[str, ...], Decimal], ...] = (
    (("construction", "job site", "jobsite", "remodel", "renovation", "work site"), Decimal("0.9")),
    (("wedding", "special event", "party", "festival", "concert", "reception", "gala"), Decimal("1.2")),
)

# Percent sales tax by state.
STATE_TAX_RATES: Dict[str, Decimal] = {
    "AL": Decimal("4.0"), "AK": Decimal("0.0"), "AZ": Decimal("5.6"), "AR": Decimal("6.5"),
    "CA": Decimal("7.25"), "CO": Decimal("2.9"), "CT": Decimal("6.35"), "DE": Decimal("0.0"),
    "FL": Decimal("6.0"), "GA": Decimal("4.0"), "HI": Decimal("4.0"), "ID": Decimal("6.0"),
    "IL": Decimal("6.25"), "IN": Decimal("7.0"), "IA": Decimal("6.0"), "KS": Decimal("6.5"),
    "KY": Decimal("6.0"), "LA": Decimal("4.45"), "ME": Decimal("5.5"), "MD": Decimal("6.0"),
    "MA": Decimal("6.25"), "MI": Decimal("6.0"), "MN": Decimal("6.875"), "MS": Decimal("7.0"),
    "MO": Decimal("4.225"), "MT": Decimal("0.0"), "NE": Decimal("5.5"), "NV": Decimal("6.85"),
    "NH": Decimal("0.0"), "NJ": Decimal("6.625"), "NM": Decimal("5.125"), "NY": Decimal("8.0"),
    "NC": Decimal("4.75"), "ND": Decimal("5.0"), "OH": Decimal("5.75"), "OK": Decimal("4.5"),
    "OR": Decimal("0.0"), "PA": Decimal("6.0"), "RI": Decimal("7.0"), "SC": Decimal("6.0"),
    "SD": Decimal("4.5"), "TN": Decimal("7.0"), "TX": Decimal("8.25"), "UT": Decimal("6.1"),
    "VT": Decimal("6.0"), "VA": Decimal("5.3"), "WA": Decimal("6.5"), "WV": Decimal("6.0"),
    "WI": Decimal("5.0"), "WY": Decimal("4.0"),
}

STATE_NAMES: Dict[str, str] = {
    "alabama": "AL", "alaska": "AK", "arizona": "AZ", "arkansas": "AR", "california": "CA",
    "colorado": "CO", "connecticut": "CT", "delaware": "DE", "florida": "FL", "georgia": "GA",
    "hawaii": "HI", "idaho": "ID", "illinois": "IL", "indiana": "IN", "iowa": "IA",
    "kansas": "KS", "kentucky": "KY", "louisiana": "LA", "maine": "ME", "maryland": "MD",
    "massachusetts": "MA", "michigan": "MI", "minnesota": "MN", "mississippi": "MS",
    "missouri": "MO", "montana": "MT", "nebraska": "NE", "nevada": "NV", "new hampshire": "NH",
    "new jersey": "NJ", "new mexico": "NM", "new york": "NY", "north carolina": "NC",
    "north dakota": "ND", "ohio": "OH", "oklahoma": "OK", "oregon": "OR", "pennsylvania": "PA",
    "rhode island": "RI", "south carolina": "SC", "south dakota": "SD", "tennessee": "TN",
    "texas": "TX", "utah": "UT", "vermont": "VT", "virginia": "VA", "washington": "WA",
    "west virginia": "WV", "wisconsin": "WI", "wyoming": "WY",
}

# Inclusive 3-digit ZIP prefix ranges -> state.
ZIP_PREFIX_RANGES: Tuple[Tuple[int, int, str], ...] = (
    (5, 5, "NY"), (10, 27, "MA"), (28, 29, "RI"), (30, 38, "NH"), (39, 49, "ME"),
    (50, 54, "VT"), (55, 55, "MA"), (56, 59, "VT"), (60, 69, "CT"), (70, 89, "NJ"),
    (100, 149, "NY"), (150, 196, "PA"), (197, 199, "DE"), (206, 219, "MD"),
    (220, 246, "VA"), (247, 268, "WV"), (270, 289, "NC"), (290, 299, "SC"),
    (300, 319, "GA"), (320, 349, "FL"), (350, 369, "AL"), (370, 385, "TN"),
    (386, 397, "MS"), (398, 399, "GA"), (400, 427, "KY"), (430, 459, "OH"),
    (460, 479, "IN"), (480, 499, "MI"), (500, 528, "IA"), (530, 549, "WI"),
    (550, 567, "MN"), (570, 577, "SD"), (580, 588, "ND"), (590, 599, "MT"),
    (600, 629, "IL"), (630, 658, "MO"), (660, 679, "KS"), (680, 693, "NE"),
    (700, 714, "LA"), (716, 729, "AR"), (730, 749, "OK"), (750, 799, "TX"),
    (800, 816, "CO"), (820, 831, "WY"), (832, 838, "ID"), (840, 847, "UT"),
    (850, 865, "AZ"), (870, 884, "NM"), (885, 885, "TX"), (889, 898, "NV"),
    (900, 961, "CA"), (967, 968, "HI"), (970, 979, "OR"), (980, 994, "WA"),
    (995, 999, "AK"),
)

_ZIP_RE = re.compile(r"\b(\d{5})(?:-\d{4})?\b")


def to_money(value: Any) -> Optional[Decimal]:
    """Parse a number-ish value ("$1,250.5", 99, 12.3) into cents, or None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        amount = value
    else:
        text = str(value).replace("$", "").replace(",", "").strip()
        if not text:
            return None
        try:
            amount = Decimal(text)
        except InvalidOperation:
            return None
    if not amount.is_finite():
        return None
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def _clamp(value: Decimal, bounds: Tuple[Decimal, Decimal]) -> Decimal:
    low, high = bounds
    return max(low, min(high, value))


def _fmt(amount: Decimal) -> str:
    return f"${amount:,.2f}"


@dataclass
class UnitLine:
    quantity: int
    price_per_unit: Decimal
    total: Decimal


@dataclass
class PriceQuote:
    """Itemized quote. Totals are always recomputed from the line items."""
    units: UnitLine
    delivery: Decimal
    fuel_surcharge: Decimal
    subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    margin: Decimal
    grand_total: Decimal
    estimated_unit_cost: Optional[Decimal] = None
    region: Optional[str] = None
    rationale: str = ""
    notes: List[str] = field(default_factory=list)

    @property
    def unit_rate(self) -> Decimal:
        return self.units.price_per_unit

    def to_dict(self) -> Dict[str, Any]:
        """Wire shape (`pricingBreakdown`)."""
        return {
            "units": {
                "quantity": self.units.quantity,
                "pricePerUnit": float(self.units.price_per_unit),
                "total": float(self.units.total),
            },
            "delivery": float(self.delivery),
            "fuelSurcharge": float(self.fuel_surcharge),
            "subtotal": float(self.subtotal),
            "taxRate": float(self.tax_rate),
            "taxAmount": float(self.tax_amount),
            "margin": float(self.margin),
            "grandTotal": float(self.grand_total),
            "estimatedUnitCost": float(self.estimated_unit_cost) if self.estimated_unit_cost is not None else None,
            "region": self.region,
            "rationale": self.rationale,
            "notes": list(self.notes),
        }


class PricingTable:
    """Read-only pricing rules shared by all sessions."""

    def __init__(
        self,
        base_unit_cost: Decimal = BASE_UNIT_COST,
        minimum_margin: Decimal = MINIMUM_MARGIN,
        default_tax_rate: Decimal = DEFAULT_TAX_RATE,
        tax_rates: Optional[Mapping[str, Decimal]] = None,
        event_multipliers: Tuple[Tuple[Tuple[str, ...], Decimal], ...] = EVENT_MULTIPLIERS,
    ):
        self.base_unit_cost = base_unit_cost
        self.minimum_margin = minimum_margin
        self.default_tax_rate = default_tax_rate
        self.tax_rates = dict(tax_rates if tax_rates is not None else STATE_TAX_RATES)
        self.event_multipliers = event_multipliers

    def multiplier_for(self, event_type: Optional[str]) -> Decimal:
        text = " ".join((event_type or "").lower().replace("-", " ").split())
        if text:
            for keywords, multiplier in self.event_multipliers:
                if any(k in text for k in keywords):
                    return multiplier
        return Decimal("1")

    def estimated_unit_cost(self, event_type: Optional[str]) -> Decimal:
        return (self.base_unit_cost * self.multiplier_for(event_type)).quantize(CENTS, rounding=ROUND_HALF_UP)

    def minimum_unit_rate(self, event_type: Optional[str]) -> Decimal:
        return self.estimated_unit_cost(event_type) + self.minimum_margin

    @staticmethod
    def state_for_zip(zip_code: Optional[str]) -> Optional[str]:
        match = _ZIP_RE.search(str(zip_code or ""))
        if not match:
            return None
        prefix = int(match.group(1)[:3])
        for low, high, state in ZIP_PREFIX_RANGES:
            if low <= prefix <= high:
                return state
        return None

    def resolve_state(self, location: Any) -> Optional[str]:
        """
        Find the state for a location.

        Accepts a mapping with `state`/`zip` keys, or free text containing a
        state code, state name, or ZIP code. An explicit state wins over ZIP.
        """
        if location is None:
            return None

        if isinstance(location, Mapping):
            state = self._normalize_state(location.get("state"))
            if state:
                return state
            zip_state = self.state_for_zip(location.get("zip") or location.get("zipCode"))
            if zip_state:
                return zip_state
            return self._state_from_text(" ".join(str(v) for v in location.values() if v))

        return self._state_from_text(str(location))

    def _normalize_state(self, value: Any) -> Optional[str]:
        if not isinstance(value, str) or not value.strip():
            return None
        text = value.strip()
        if text.upper() in self.tax_rates:
            return text.upper()
        return STATE_NAMES.get(" ".join(text.lower().split()))

    def _state_from_text(self, text: str) -> Optional[str]:
        if not text:
            return None
        zip_state = self.state_for_zip(text)
        if zip_state:
            return zip_state
        lowered = " ".join(text.lower().split())
        for name in sorted(STATE_NAMES, key=len, reverse=True):
            if re.search(rf"\b{re.escape(name)}\b", lowered):
                return STATE_NAMES[name]
        for token in re.findall(r"\b[A-Z]{2}\b", text):
            if token in self.tax_rates:
                return token
        return None

    def tax_rate_for(self, location: Any) -> Tuple[Decimal, Optional[str]]:
        """Tax percent for a location plus the resolved state (None if unknown)."""
        state = self.resolve_state(location)
        if state is None or state not in self.tax_rates:
            return self.default_tax_rate, None
        return self.tax_rates[state], state

    def build_quote(
        self,
        quantity: int,
        *,
        event_type: Optional[str] = None,
        location: Any = None,
        price_per_unit: Any = None,
        delivery: Any = None,
        fuel_surcharge: Any = None,
        rationale: str = "",
    ) -> PriceQuote:
        """
        Build a quote from proposed numbers, correcting them to the rules.

        The tax rate always comes from the table. Totals are recomputed, so a
        caller's arithmetic never reaches the operator.
        """
        if quantity < 1:
            raise ValueError("quantity must be at least 1")

        notes: List[str] = []
        cost = self.estimated_unit_cost(event_type)
        floor_rate = cost + self.minimum_margin

        rate = to_money(price_per_unit)
        if rate is None:
            rate = floor_rate
            notes.append(f"Unit rate set to {_fmt(rate)} ({_fmt(cost)} cost + {_fmt(self.minimum_margin)} margin)")
        elif rate < floor_rate:
            proposed = rate
            rate = floor_rate
            adjustment = (
                f"Unit rate raised from {_fmt(proposed)} to {_fmt(rate)} to keep the "
                f"{_fmt(self.minimum_margin)} minimum margin over the {_fmt(cost)} unit cost."
            )
            notes.append(adjustment)
            rationale = f"{rationale.strip()} {adjustment}".strip() if rationale else adjustment
            logger.info("Quote unit rate corrected", proposed=str(proposed), corrected=str(rate), cost=str(cost))

        delivery_amount = to_money(delivery)
        if delivery_amount is None:
            delivery_amount = DEFAULT_DELIVERY
        elif _clamp(delivery_amount, DELIVERY_RANGE) != delivery_amount:
            clamped = _clamp(delivery_amount, DELIVERY_RANGE)
            notes.append(f"Delivery adjusted from {_fmt(delivery_amount)} to {_fmt(clamped)}")
            delivery_amount = clamped

        fuel_amount = to_money(fuel_surcharge)
        if fuel_amount is None:
            fuel_amount = DEFAULT_FUEL_SURCHARGE
        elif _clamp(fuel_amount, FUEL_SURCHARGE_RANGE) != fuel_amount:
            clamped = _clamp(fuel_amount, FUEL_SURCHARGE_RANGE)
            notes.append(f"Fuel surcharge adjusted from {_fmt(fuel_amount)} to {_fmt(clamped)}")
            fuel_amount = clamped

        tax_rate, state = self.tax_rate_for(location)
        if state is None:
            notes.append(f"Region unknown; estimated tax at {tax_rate}%")

        units_total = (rate * quantity).quantize(CENTS, rounding=ROUND_HALF_UP)
        subtotal = units_total + delivery_amount + fuel_amount
        tax_amount = (subtotal * tax_rate / Decimal("100")).quantize(CENTS, rounding=ROUND_HALF_UP)

        return PriceQuote(
            units=UnitLine(quantity=quantity, price_per_unit=rate, total=units_total),
            delivery=delivery_amount,
            fuel_surcharge=fuel_amount,
            subtotal=subtotal,
            tax_rate=tax_rate,
            tax_amount=tax_amount,
            margin=self.minimum_margin,
            grand_total=subtotal + tax_amount,
            estimated_unit_cost=cost,
            region=state,
            rationale=rationale,
            notes=notes,
        )
