"""
Tiered Fee Calculator

Single source of truth for the tip fee table. Both the display quote and the
settlement path call compute_fee(); nothing is cached.

Tiers (lower bound inclusive, upper bound exclusive):
    [1, 5)    -> 10%
    [5, 10)   -> 8%
    [10, 25)  -> 6%
    [25, 50)  -> 4%
    [50, 100) -> 2%
    >= 100    -> 1%
"""

from dataclasses import dataclass
from decimal import Decimal, localcontext
from typing import Dict, List, Optional, Tuple, Union

from .amounts import TokenAmount, canonical_string, normalize_amount


MINIMUM_AMOUNT = Decimal('1')
MINIMUM_AMOUNT_MESSAGE = "The minimum amount is 1"

# (lower bound, fee percentage), ascending
FEE_TIERS: Tuple[Tuple[Decimal, int], ...] = (
    (Decimal('1'), 10),
    (Decimal('5'), 8),
    (Decimal('10'), 6),
    (Decimal('25'), 4),
    (Decimal('50'), 2),
    (Decimal('100'), 1),
)


@dataclass(frozen=True)
class FeeQuote:
    """Fee breakdown for a requested amount"""
    requested_amount: Decimal
    fee_percentage: int
    fee_amount: Decimal
    net_amount: Decimal
    error_reason: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.error_reason is None

    def to_dict(self) -> Dict:
        return {
            'requested_amount': canonical_string(self.requested_amount),
            'fee_percentage': self.fee_percentage,
            'fee_amount': canonical_string(self.fee_amount),
            'net_amount': canonical_string(self.net_amount),
            'error_reason': self.error_reason,
        }


def fee_percentage_for(amount: Decimal) -> Optional[int]:
    """Tier percentage for an amount, None below the minimum"""
    percentage = None
    for lower_bound, tier_percentage in FEE_TIERS:
        if amount >= lower_bound:
            percentage = tier_percentage
        else:
            break
    return percentage


def compute_fee(amount: Union[Decimal, TokenAmount, int, str]) -> FeeQuote:
    """
    Compute the fee quote for a requested amount

    Args:
        amount: Requested amount (Decimal, TokenAmount or plain number)

    Returns:
        FeeQuote; amounts below the minimum carry error_reason and zero fee
    """
    if isinstance(amount, TokenAmount):
        value = amount.value
    else:
        value = Decimal(str(amount))

    percentage = fee_percentage_for(value)
    if percentage is None:
        return FeeQuote(
            requested_amount=value,
            fee_percentage=0,
            fee_amount=Decimal('0'),
            net_amount=Decimal('0'),
            error_reason=MINIMUM_AMOUNT_MESSAGE,
        )

    # Exact for any input size: a percentage shifts at most a few digits
    with localcontext() as ctx:
        ctx.prec = max(ctx.prec, len(value.as_tuple().digits) + 6)
        fee_amount = value * percentage / Decimal(100)
        net_amount = value - fee_amount

    return FeeQuote(
        requested_amount=value,
        fee_percentage=percentage,
        fee_amount=fee_amount,
        net_amount=net_amount,
    )


def estimate_fee(raw_amount) -> FeeQuote:
    """
    Normalize member input and quote it

    Raises:
        InvalidAmountError: If the text is not a usable number
    """
    return compute_fee(normalize_amount(raw_amount))


def get_fee_tiers() -> List[Dict]:
    """Fee table for display"""
    tiers = []
    for index, (lower_bound, percentage) in enumerate(FEE_TIERS):
        upper_bound = FEE_TIERS[index + 1][0] if index + 1 < len(FEE_TIERS) else None
        tiers.append({
            'min': lower_bound,
            'max_exclusive': upper_bound,
            'percentage': percentage,
        })
    return tiers


__all__ = [
    'FEE_TIERS',
    'MINIMUM_AMOUNT',
    'FeeQuote',
    'compute_fee',
    'estimate_fee',
    'fee_percentage_for',
    'get_fee_tiers',
]
