"""
Fraud / Risk Guard
Heuristic checks consulted synchronously before payouts, crypto withdrawals
and deposit intents. The guard only reads history and rate counters; it
never moves money.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config import Config
from middleware.rate_limiter import RateLimiter, rate_limiter as default_rate_limiter
from models import Payout, PayoutStatus, CryptoWithdrawal, CryptoWithdrawalStatus, utcnow
from utils.exceptions import RateLimitExceeded, WithdrawalBlocked

logger = logging.getLogger(__name__)

RULE_RATE_LIMIT = "rate_limit"
RULE_VELOCITY = "velocity"
RULE_LARGE_AMOUNT = "large_amount"
RULE_FREQUENCY = "frequency"
RULE_DAILY_CAP = "daily_cap"

# Withdrawals that never left the platform do not count toward limits
INACTIVE_WITHDRAWAL_STATUSES = (
    CryptoWithdrawalStatus.REJECTED.value,
    CryptoWithdrawalStatus.CANCELLED.value,
    CryptoWithdrawalStatus.FAILED.value,
)


@dataclass
class FraudCheckResult:
    """Outcome of a guard check"""
    blocked: bool = False
    reason: Optional[str] = None
    requires_review: bool = False
    rule: Optional[str] = None

    def raise_if_blocked(self) -> "FraudCheckResult":
        if not self.blocked:
            return self
        if self.rule == RULE_RATE_LIMIT:
            raise RateLimitExceeded(self.reason)
        raise WithdrawalBlocked(self.reason)


ALLOWED = FraudCheckResult()


class FraudGuard:
    """Velocity, amount threshold, daily cap and rate limit checks"""

    def __init__(self, limiter: Optional[RateLimiter] = None):
        self.limiter = limiter or default_rate_limiter

    def check_rate_limit(self, actor_id: int, action: str, ip_address: Optional[str] = None) -> FraudCheckResult:
        limited, reset_seconds = self.limiter.check(actor_id, action, ip_address=ip_address)
        if limited:
            return FraudCheckResult(
                blocked=True,
                reason=f"Rate limit exceeded, retry in {reset_seconds} seconds",
                rule=RULE_RATE_LIMIT,
            )
        return ALLOWED

    def check_payment_intent(self, company_id: int) -> FraudCheckResult:
        return self.check_rate_limit(company_id, "payment_intent")

    def check_payout_request(
        self,
        session: Session,
        user_id: int,
        amount: int,
        ip_address: Optional[str] = None,
    ) -> FraudCheckResult:
        """
        Large payouts are flagged for review, repeated large payouts are
        blocked, and the request counts against the payout rate limit.
        """
        since = utcnow() - timedelta(hours=24)
        recent_large = session.execute(
            select(func.count(Payout.id)).where(
                Payout.user_id == user_id,
                Payout.amount > Config.LARGE_PAYOUT_AMOUNT,
                Payout.created_at >= since,
                Payout.status != PayoutStatus.CANCELLED.value,
            )
        ).scalar() or 0

        if recent_large > Config.MAX_LARGE_PAYOUTS_PER_DAY:
            logger.warning(f"🚨 FRAUD_VELOCITY: user={user_id} large_payouts_24h={recent_large}")
            return FraudCheckResult(
                blocked=True,
                reason="Multiple large payouts in 24 hours",
                rule=RULE_VELOCITY,
            )

        rate_result = self.check_rate_limit(user_id, "payout_request", ip_address)
        if rate_result.blocked:
            return rate_result

        if amount > Config.PAYOUT_REVIEW_THRESHOLD:
            logger.info(f"🔍 FRAUD_REVIEW: user={user_id} payout amount={amount} above review threshold")
            return FraudCheckResult(
                reason="Large payout amount requires manual review",
                requires_review=True,
                rule=RULE_LARGE_AMOUNT,
            )

        return ALLOWED

    def check_crypto_withdrawal(self, session: Session, user_id: int, amount: int) -> FraudCheckResult:
        """
        Frequency cap, single-amount threshold and trailing 24h cumulative cap.

        Callers hold the user's wallet row lock while checking and inserting,
        so concurrent requests see each other's withdrawals.
        """
        since = utcnow() - timedelta(hours=24)
        count, total = session.execute(
            select(func.count(CryptoWithdrawal.id), func.coalesce(func.sum(CryptoWithdrawal.amount), 0)).where(
                CryptoWithdrawal.user_id == user_id,
                CryptoWithdrawal.created_at >= since,
                CryptoWithdrawal.status.notin_(INACTIVE_WITHDRAWAL_STATUSES),
            )
        ).one()

        if count >= Config.WITHDRAWAL_MAX_PER_DAY:
            logger.warning(f"🚨 FRAUD_FREQUENCY: user={user_id} withdrawals_24h={count}")
            return FraudCheckResult(
                blocked=True,
                reason="Too many withdrawal attempts in 24 hours",
                rule=RULE_FREQUENCY,
            )

        if amount > Config.WITHDRAWAL_REVIEW_THRESHOLD:
            logger.warning(f"🚨 FRAUD_LARGE_WITHDRAWAL: user={user_id} amount={amount}")
            return FraudCheckResult(
                blocked=True,
                reason="Large withdrawal amount requires manual review",
                rule=RULE_LARGE_AMOUNT,
            )

        if int(total) + amount > Config.WITHDRAWAL_DAILY_LIMIT:
            logger.warning(f"🚨 FRAUD_DAILY_CAP: user={user_id} total_24h={total} requested={amount}")
            return FraudCheckResult(
                blocked=True,
                reason="Daily withdrawal limit exceeded",
                rule=RULE_DAILY_CAP,
            )

        return ALLOWED


fraud_guard = FraudGuard()
