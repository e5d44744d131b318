"""
Chain data validation utilities.
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Union

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
_TX_HASH_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")


class ChainValidator:
    """Validator for EVM-style chain data."""

    @staticmethod
    def is_valid_address(address: str) -> bool:
        """Check that a string is a 0x-prefixed 20-byte hex address."""
        return bool(address) and bool(_ADDRESS_RE.match(address))

    @staticmethod
    def is_valid_tx_hash(tx_hash: str) -> bool:
        """Check that a string is a 0x-prefixed 32-byte hex hash."""
        return bool(tx_hash) and bool(_TX_HASH_RE.match(tx_hash))

    @staticmethod
    def same_address(left: str, right: str) -> bool:
        """Addresses compare case-insensitively (checksum casing is cosmetic)."""
        return (left or "").lower() == (right or "").lower()


def to_decimal(value: Union[str, int, float, Decimal]) -> Decimal:
    """
    Convert an amount to Decimal without going through binary floats.

    Floats are converted through their shortest repr, so 494.9 stays 494.9.
    """
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"Invalid decimal amount: {value!r}") from e


def from_base_units(raw: Union[str, int], decimals: int) -> Decimal:
    """
    Convert an integer-scaled on-chain amount to a token Decimal.

    Uses integer division and remainder, never floats.
    """
    value = int(raw, 16) if isinstance(raw, str) and raw.startswith("0x") else int(raw)
    divisor = 10 ** decimals
    whole, fractional = divmod(value, divisor)
    if decimals == 0:
        return Decimal(whole)
    return Decimal(f"{whole}.{str(fractional).zfill(decimals)}")
