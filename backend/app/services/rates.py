"""Rate calculator: price, ETA and billable weight for a booking.

Pure functions: no I/O, no randomness, same answer for the same input.

Parcel:
  volumetric = L x W x H / 5000           (cm -> kg, only when all dims set)
  billable   = max(actual, volumetric)
  standard   = 10 + 4.0/kg, ETA "2–5 business days"
  express    = 18 + 6.0/kg, ETA "24–72 hours"
  price      = max(9, ceil(base + billable x per_kg))

Freight (per-pallet dims and weight, multiplied by pallet count):
  air   divisor 6000, 150 + 2.2/kg, ETA "2–7 days door-to-door"
  sea   divisor 5000,  90 + 1.0/kg, ETA "12–35 days port-to-door"
  road  divisor 5000, 120 + 1.4/kg, ETA "2–10 days door-to-door"
  price = max(25, ceil(base + billable x per_kg))
"""

import math
from dataclasses import dataclass

from app.schemas.shipment import FreightDetail, ParcelDetail

CURRENCY = "EUR"

PARCEL_DIVISOR = 5000
PARCEL_MIN_PRICE = 9
PARCEL_RATES = {
    # level: (base, per_kg, eta)
    "standard": (10, 4.0, "2–5 business days"),
    "express": (18, 6.0, "24–72 hours"),
}

FREIGHT_MIN_PRICE = 25
FREIGHT_RATES = {
    # mode: (divisor, base, per_kg, eta)
    "air": (6000, 150, 2.2, "2–7 days door-to-door"),
    "sea": (5000, 90, 1.0, "12–35 days port-to-door"),
    "road": (5000, 120, 1.4, "2–10 days door-to-door"),
}


@dataclass(frozen=True)
class Quote:
    currency: str
    price: int
    eta: str
    billable: float


def _volumetric(length: float, width: float, height: float, divisor: int) -> float:
    if not (length and width and height):
        return 0.0
    return (length * width * height) / divisor


def _price(base: float, billable: float, per_kg: float, minimum: int) -> int:
    # Round away float noise (200 * 2.2 == 440.00000000000006) before ceil
    raw = round(base + billable * per_kg, 6)
    return max(minimum, math.ceil(raw))


def is_express(service_level: str | None) -> bool:
    return (service_level or "").strip().lower() == "express"


def quote_parcel(parcel: ParcelDetail, service_level: str | None = "standard") -> Quote:
    """Quote a parcel.  Only the literal level "express" gets express rates."""
    volumetric = _volumetric(parcel.length, parcel.width, parcel.height, PARCEL_DIVISOR)
    billable = max(parcel.weight or 0.0, volumetric)

    base, per_kg, eta = PARCEL_RATES["express" if is_express(service_level) else "standard"]
    return Quote(
        currency=CURRENCY,
        price=_price(base, billable, per_kg, PARCEL_MIN_PRICE),
        eta=eta,
        billable=billable,
    )


def quote_freight(freight: FreightDetail) -> Quote:
    """Quote a freight booking.  Unknown modes are priced as road."""
    pallets = freight.pallets or 1
    mode = (freight.mode or "air").lower()
    divisor, base, per_kg, eta = FREIGHT_RATES.get(mode, FREIGHT_RATES["road"])

    actual = (freight.weight or 0.0) * pallets
    volumetric_per_pallet = _volumetric(freight.length, freight.width, freight.height, divisor)
    billable = max(actual, volumetric_per_pallet * pallets)

    return Quote(
        currency=CURRENCY,
        price=_price(base, billable, per_kg, FREIGHT_MIN_PRICE),
        eta=eta,
        billable=billable,
    )


def quote(
    service_type: str,
    detail: ParcelDetail | FreightDetail,
    service_level: str | None = None,
) -> Quote:
    """Dispatch to the parcel or freight calculator.

    The caller has already checked that ``detail`` matches ``service_type``.
    """
    if service_type == "freight":
        return quote_freight(detail)
    return quote_parcel(detail, service_level or getattr(detail, "level", None) or "standard")
