"""Amount conversions between ledger, bridge minting and vault units.

The bridge only mints whole lots. A lot is expressed in UBA (underlying base
amount), i.e. base units at the bridge's minting decimals. Requested amounts are
rounded DOWN to a lot multiple; the remainder is reported as ``shortfall`` and
never leaves the user's ledger wallet.
"""

import logging
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Union

from core.errors import InvalidAmount

logger = logging.getLogger(__name__)

LEDGER_DECIMALS = 6  # XRP drops
DEFAULT_MINTING_DECIMALS = 6
DEFAULT_LOT_SIZE_UBA = 10_000_000  # 10 XRP

_AMOUNT_RE = re.compile(r"^\d+(\.\d+)?$")

AmountLike = Union[str, Decimal, int]


@dataclass(frozen=True)
class LotRounding:
    """Result of normalizing a requested amount to whole lots."""
    requested_amount: Decimal
    rounded_amount: Decimal
    lots: int
    needs_rounding: bool
    shortfall: Decimal  # requested - rounded, always >= 0
    decimals: int

    def formatted(self) -> str:
        return format_amount(self.rounded_amount, self.decimals)


def parse_amount(value: AmountLike) -> Decimal:
    """Parse a user-supplied amount into a positive Decimal.

    Args:
        value: Decimal string ("23.4567"), Decimal or int

    Returns:
        Parsed amount

    Raises:
        InvalidAmount: If the value is non-numeric, not finite, or <= 0
    """
    if isinstance(value, str):
        trimmed = value.strip()
        # Plain decimal notation only: no signs, commas or exponents
        if not _AMOUNT_RE.match(trimmed):
            raise InvalidAmount(f"Invalid amount format: {value!r}")
        amount = Decimal(trimmed)
    elif isinstance(value, bool):
        raise InvalidAmount(f"Invalid amount: {value!r}")
    elif isinstance(value, (Decimal, int)):
        try:
            amount = Decimal(value)
        except InvalidOperation:
            raise InvalidAmount(f"Invalid amount: {value!r}")
    else:
        raise InvalidAmount(f"Unsupported amount type: {type(value).__name__}")

    if not amount.is_finite():
        raise InvalidAmount(f"Amount must be finite: {value!r}")
    if amount <= 0:
        raise InvalidAmount("Amount must be greater than 0")
    return amount


def to_base_units(amount: Decimal, decimals: int) -> int:
    """Convert a decimal amount to integer base units, truncating sub-unit dust."""
    scaled = (amount * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN)
    return int(scaled)


def from_base_units(base_units: int, decimals: int) -> Decimal:
    """Convert integer base units to a decimal amount."""
    quantum = Decimal(1).scaleb(-decimals)
    return (Decimal(base_units) / (Decimal(10) ** decimals)).quantize(quantum)


def convert_decimals(base_units: int, from_decimals: int, to_decimals: int) -> int:
    """Re-express base units at another decimal precision, rounding down."""
    if to_decimals >= from_decimals:
        return base_units * 10 ** (to_decimals - from_decimals)
    return base_units // 10 ** (from_decimals - to_decimals)


def format_amount(amount: Decimal, decimals: int) -> str:
    """Fixed-point string with exactly ``decimals`` places."""
    quantum = Decimal(1).scaleb(-decimals)
    return str(amount.quantize(quantum, rounding=ROUND_DOWN))


def normalize(
    requested_amount: AmountLike,
    lot_size_uba: int = DEFAULT_LOT_SIZE_UBA,
    minting_decimals: int = DEFAULT_MINTING_DECIMALS,
) -> LotRounding:
    """Round a requested amount down to whole bridge lots.

    Pure and idempotent: normalizing ``rounded_amount`` again yields the same
    ``rounded_amount`` and ``lots`` with no further rounding.

    Args:
        requested_amount: Amount in ledger units
        lot_size_uba: Lot size in base units at ``minting_decimals``
        minting_decimals: Decimal precision used by the bridge for minting

    Returns:
        LotRounding result

    Raises:
        InvalidAmount: If the amount is invalid or smaller than one lot
    """
    if lot_size_uba < 1:
        raise InvalidAmount(f"Lot size must be positive, got {lot_size_uba}")
    if minting_decimals < 0:
        raise InvalidAmount(f"Minting decimals must be >= 0, got {minting_decimals}")

    requested = parse_amount(requested_amount)
    requested_uba = to_base_units(requested, minting_decimals)
    lots = requested_uba // lot_size_uba

    if lots < 1:
        lot = from_base_units(lot_size_uba, minting_decimals)
        raise InvalidAmount(
            f"Amount too small. Minimum is {lot} (1 lot)."
        )

    rounded = from_base_units(lots * lot_size_uba, minting_decimals)
    shortfall = requested - rounded

    return LotRounding(
        requested_amount=requested,
        rounded_amount=rounded,
        lots=lots,
        needs_rounding=shortfall > 0,
        shortfall=shortfall,
        decimals=minting_decimals,
    )
