"""Six tier price table lookups and appointment total aggregation. No I/O."""

from decimal import Decimal, InvalidOperation

from ..models import PET_SIZES
from .errors import ValidationError

ZERO = Decimal("0.00")
FALLBACK_TIER = "medium"

# Loose labels seen on pet records mapped onto the six tiers
_SIZE_ALIASES = {
    "extra small": "xs",
    "extra-small": "xs",
    "x-small": "xs",
    "sm": "small",
    "s": "small",
    "med": "medium",
    "m": "medium",
    "l": "large",
    "lg": "large",
    "extra large": "xl",
    "extra-large": "xl",
    "x-large": "xl",
    "xx-large": "xxl",
}


def to_decimal(value):
    """Coerce stored numerics to a 2dp Decimal; junk becomes 0. Not for request input."""
    if value is None or value == "":
        return ZERO
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return ZERO


def parse_amount(name, value):
    """
    Strict parse of a money amount taken from a request. None or "" means the
    field was not given and returns None; anything that is not a finite number
    raises ValidationError.
    """
    if value is None or value == "":
        return None
    amount = None
    if not isinstance(value, bool):
        try:
            amount = Decimal(str(value).strip()).quantize(Decimal("0.01"))
        except (InvalidOperation, ValueError):
            amount = None
    if amount is None or not amount.is_finite():
        raise ValidationError(
            f"{name} must be a number",
            code="INVALID_PRICE",
            errors=[{"field": name, "message": f"Invalid amount: {value!r}"}],
        )
    return amount


def normalize_size(pet_size):
    """Case-insensitive tier name, or None when the label is unknown."""
    if not pet_size:
        return None
    label = str(pet_size).strip().lower()
    label = _SIZE_ALIASES.get(label, label)
    return label if label in PET_SIZES else None


def price_for_size(service, pet_size):
    """
    Price of `service` for a pet of `pet_size`.

    Falls back to the medium tier when the size's price is absent, zero or
    negative (or the size is unknown). Returns Decimal 0 when no valid price
    exists at all; callers must treat 0 as "cannot be priced".
    """
    tier = normalize_size(pet_size) or FALLBACK_TIER
    price = to_decimal(getattr(service, f"price_{tier}", None))
    if price > 0:
        return price

    fallback = to_decimal(getattr(service, f"price_{FALLBACK_TIER}", None))
    if fallback > 0:
        return fallback
    return ZERO


def compute_total(base_price, matted_coat_fee=ZERO, additional_prices=(), discount=ZERO):
    """total = base + matted coat fee + sum(add-on prices) - discount"""
    total = to_decimal(base_price) + to_decimal(matted_coat_fee)
    for price in additional_prices:
        total += to_decimal(price)
    return (total - to_decimal(discount)).quantize(Decimal("0.01"))


def appointment_total(appointment):
    """Recompute an appointment's total from its stored price components."""
    return compute_total(
        appointment.base_price,
        appointment.matted_coat_fee,
        [line.price for line in appointment.additional_services],
        appointment.discount_amount,
    )
