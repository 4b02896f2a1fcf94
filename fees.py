# fees.py
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Union

from errors import InvalidPrice

PROTOCOL_FEE_BPS = 500  # 5%
BPS_DENOMINATOR = 10_000
TOKEN_DECIMALS = 6

_PRICE_RE = re.compile(r"\$?\s*([\d.]+)")


@dataclass(frozen=True)
class FeeSplit:
    total: int
    miner_share: int
    treasury_share: int


def split_payment(price_units: int, fee_bps: int = PROTOCOL_FEE_BPS) -> FeeSplit:
    """Split a price (smallest token units) between miner and treasury.

    The treasury share is floored first and the miner gets the remainder, so
    the two shares always add back up to the price.
    """
    if isinstance(price_units, bool) or not isinstance(price_units, int):
        raise InvalidPrice(f"Price must be an integer amount of smallest units, got {price_units!r}")
    if price_units <= 0:
        raise InvalidPrice()
    if not 0 <= fee_bps <= BPS_DENOMINATOR:
        raise ValueError(f"fee_bps out of range: {fee_bps}")

    treasury_share = price_units * fee_bps // BPS_DENOMINATOR
    return FeeSplit(
        total=price_units,
        miner_share=price_units - treasury_share,
        treasury_share=treasury_share,
    )


def to_units(amount: Union[str, int, float, Decimal], decimals: int = TOKEN_DECIMALS) -> int:
    """Convert a human token amount (``0.59``) into smallest units (``590000``)."""
    try:
        # str() first so floats like 0.59 are read as written, not as binary
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise InvalidPrice(f"Not a number: {amount!r}")
    if not value.is_finite() or value <= 0:
        raise InvalidPrice(f"Price must be positive and finite, got {amount!r}")

    scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise InvalidPrice(f"Price {amount!r} has more than {decimals} decimal places")
    return int(scaled)


def from_units(units: int, decimals: int = TOKEN_DECIMALS) -> Decimal:
    return Decimal(units).scaleb(-decimals)


def parse_price(display: str, decimals: int = TOKEN_DECIMALS) -> int:
    """Parse a display string like ``"$0.59/hr"`` into smallest units."""
    if not display:
        raise InvalidPrice("Missing price")
    m = _PRICE_RE.search(display)
    if not m:
        raise InvalidPrice(f"Unrecognised price {display!r}")
    return to_units(m.group(1), decimals)


def format_price(units: int, decimals: int = TOKEN_DECIMALS) -> str:
    amount = from_units(units, decimals).normalize()
    # at least cents, like "$0.59/hr" or "$2.40/hr"
    if amount.as_tuple().exponent > -2:
        amount = amount.quantize(Decimal("0.01"))
    return f"${amount}/hr"
