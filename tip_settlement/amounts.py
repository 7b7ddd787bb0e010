"""
Amount normalization

Members type amounts freely ("10,5", "10.5 RLUSD", "1.000.5"). This module turns
that text into a validated decimal once, at the boundary, and converts it to
integer base units exactly once for every on-chain comparison.
"""

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Union

from .errors import InvalidAmountError


_NON_NUMERIC = re.compile(r"[^0-9.]")


@dataclass(frozen=True)
class TokenAmount:
    """Decimal amount held as integer mantissa + fixed scale"""
    mantissa: int
    scale: int

    @classmethod
    def from_decimal(cls, value: Decimal) -> "TokenAmount":
        sign, digits, exponent = value.normalize().as_tuple()
        mantissa = int(''.join(str(d) for d in digits) or '0')
        if sign:
            mantissa = -mantissa
        if exponent >= 0:
            return cls(mantissa * (10 ** exponent), 0)
        return cls(mantissa, -exponent)

    @property
    def value(self) -> Decimal:
        return Decimal(self.mantissa).scaleb(-self.scale)

    def to_base_units(self, decimals: int) -> int:
        """
        Convert to integer base units

        Args:
            decimals: Token decimal precision

        Returns:
            Integer amount in the token's smallest denomination

        Raises:
            InvalidAmountError: If the amount has more fractional digits than the token supports
        """
        if self.scale > decimals:
            raise InvalidAmountError(
                f"Too many decimal places (max {decimals}).",
                details=f"scale {self.scale} exceeds token decimals {decimals}",
            )
        return self.mantissa * (10 ** (decimals - self.scale))

    def __str__(self) -> str:
        return canonical_string(self.value)


def canonical_string(value: Decimal) -> str:
    """Plain decimal string without exponent or trailing zeros"""
    text = format(value.normalize(), 'f')
    if '.' in text:
        text = text.rstrip('0').rstrip('.')
    return text or '0'


def normalize_amount(raw: Union[str, int, float, Decimal]) -> TokenAmount:
    """
    Normalize loosely formatted amount text

    Rules:
    1. Comma decimal separator becomes a dot
    2. Every character other than digits and dots is dropped
    3. Extra dots are collapsed so only the first one stays the decimal point

    Args:
        raw: Amount as typed by the member (or a number)

    Returns:
        TokenAmount

    Raises:
        InvalidAmountError: If nothing numeric and positive remains
    """
    if raw is None:
        raise InvalidAmountError(details="amount is None")

    if isinstance(raw, Decimal):
        text = format(raw, 'f')
    elif isinstance(raw, (int, float)) and not isinstance(raw, bool):
        text = format(Decimal(repr(raw)), 'f')
    else:
        text = str(raw)

    text = text.strip()
    if text.startswith('-'):
        raise InvalidAmountError(
            "Amount must be greater than 0.",
            details=f"negative amount {raw!r}",
        )

    text = text.replace(',', '.')
    text = _NON_NUMERIC.sub('', text)

    parts = text.split('.')
    if len(parts) > 2:
        text = parts[0] + '.' + ''.join(parts[1:])

    if not text or text == '.':
        raise InvalidAmountError(details=f"nothing numeric in {raw!r}")

    try:
        value = Decimal(text)
    except InvalidOperation:
        raise InvalidAmountError(details=f"cannot parse {raw!r} (cleaned: {text!r})")

    if not value.is_finite() or value <= 0:
        raise InvalidAmountError(
            "Amount must be greater than 0.",
            details=f"non-positive amount {text!r}",
        )

    return TokenAmount.from_decimal(value)


def format_units(base_units: int, decimals: int) -> str:
    """Human-readable string for an integer base-unit amount"""
    return canonical_string(Decimal(base_units).scaleb(-decimals))


def parse_units(amount: Union[str, Decimal], decimals: int) -> int:
    """Base units for a trusted decimal string (config values)"""
    return TokenAmount.from_decimal(Decimal(str(amount))).to_base_units(decimals)
