"""
Commission Service - platform commission split for bounty payouts
Integer basis-point arithmetic only: commission is floored, the remainder
goes to the researcher, so nothing is lost to rounding.
"""

import logging
from typing import NamedTuple, Optional

from config import Config
from utils.exceptions import ValidationError
from utils.money import Money

logger = logging.getLogger(__name__)

BASIS_POINTS = 10000


class CommissionSplit(NamedTuple):
    """Result of splitting a gross bounty amount"""

    commission: int
    payout: int


class CommissionService:
    """Commission calculator"""

    @staticmethod
    def calculate_commission(amount: int, rate_bps: Optional[int] = None) -> CommissionSplit:
        """
        Split `amount` (minor units) into (commission, payout).

        commission = floor(amount * rate / 10000); payout = amount - commission
        """
        if rate_bps is None:
            rate_bps = Config.COMMISSION_RATE_BPS

        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError("Amount must be an integer number of minor units")
        if amount < 0:
            raise ValidationError("Amount cannot be negative")
        if isinstance(rate_bps, bool) or not isinstance(rate_bps, int) or not 0 <= rate_bps <= BASIS_POINTS:
            raise ValidationError(f"Commission rate must be between 0 and {BASIS_POINTS} basis points")

        commission = (amount * rate_bps) // BASIS_POINTS
        return CommissionSplit(commission=commission, payout=amount - commission)

    @classmethod
    def split_money(cls, gross: Money, rate_bps: Optional[int] = None) -> tuple:
        """Same split on a Money value; both halves keep the gross currency"""
        split = cls.calculate_commission(gross.amount_minor, rate_bps)
        return Money(split.commission, gross.currency), Money(split.payout, gross.currency)


calculate_commission = CommissionService.calculate_commission
