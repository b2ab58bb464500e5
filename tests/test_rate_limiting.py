"""
Rate limiter and fraud guard tests
"""

import pytest

from middleware.rate_limiter import RateLimiter, get_rate_limit_config
from services.fraud_guard import FraudCheckResult, FraudGuard, RULE_DAILY_CAP, RULE_RATE_LIMIT
from utils.exceptions import RateLimitExceeded, WithdrawalBlocked


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestRateLimiter:
    """Sliding window counters"""

    def test_limits_after_max_requests(self):
        clock = FakeClock()
        limiter = RateLimiter(clock=clock)

        for _ in range(3):
            assert limiter.is_rate_limited(1, "payout_request", 3, 60) == (False, None)

        limited, reset = limiter.is_rate_limited(1, "payout_request", 3, 60)
        assert limited is True
        assert reset == 60

    def test_window_slides(self):
        clock = FakeClock()
        limiter = RateLimiter(clock=clock)
        limiter.is_rate_limited(1, "a", 2, 60)
        clock.advance(30)
        limiter.is_rate_limited(1, "a", 2, 60)

        assert limiter.is_rate_limited(1, "a", 2, 60)[0] is True

        clock.advance(31)
        assert limiter.is_rate_limited(1, "a", 2, 60) == (False, None)

    def test_rejected_requests_do_not_count(self):
        """A limited request must not extend its own lockout"""
        clock = FakeClock()
        limiter = RateLimiter(clock=clock)
        limiter.is_rate_limited(1, "a", 1, 60)
        for _ in range(5):
            clock.advance(10)
            limiter.is_rate_limited(1, "a", 1, 60)

        clock.advance(11)
        assert limiter.is_rate_limited(1, "a", 1, 60)[0] is False

    def test_keys_are_per_actor_action_and_ip(self):
        limiter = RateLimiter(clock=FakeClock())
        limiter.is_rate_limited(1, "a", 1, 60, ip_address="10.0.0.1")

        assert limiter.is_rate_limited(1, "a", 1, 60, ip_address="10.0.0.1")[0] is True
        assert limiter.is_rate_limited(1, "a", 1, 60, ip_address="10.0.0.2")[0] is False
        assert limiter.is_rate_limited(2, "a", 1, 60, ip_address="10.0.0.1")[0] is False
        assert limiter.is_rate_limited(1, "b", 1, 60, ip_address="10.0.0.1")[0] is False

    def test_idle_counters_are_forgotten(self):
        clock = FakeClock()
        limiter = RateLimiter(clock=clock)
        limiter.is_rate_limited(7, "a", 1, 60)
        limiter.is_rate_limited(8, "b", 5, 3600)

        clock.advance(400)
        assert limiter.is_rate_limited(9, "c", 1, 60)[0] is False

        # 7/a left its 60s window; 8/b is still inside its hour
        assert set(limiter._requests) == {(8, "", "b"), (9, "", "c")}
        assert limiter.is_rate_limited(7, "a", 1, 60)[0] is False

    def test_expired_timestamps_are_pruned(self):
        clock = FakeClock()
        limiter = RateLimiter(clock=clock)
        limiter.is_rate_limited(7, "a", 1, 60)

        clock.advance(61)
        limiter.is_rate_limited(7, "a", 1, 60)

        assert limiter._requests[(7, "", "a")] == [clock.now]

    def test_configured_limits(self):
        assert get_rate_limit_config("payment_intent") == {"max_requests": 10, "window_seconds": 3600}
        assert get_rate_limit_config("payout_request")["max_requests"] == 5
        assert get_rate_limit_config("something_else") == {"max_requests": 30, "window_seconds": 60}


class TestFraudGuard:
    """FraudGuard decisions that need no ledger history"""

    def test_payment_intent_rate_limit(self):
        guard = FraudGuard(RateLimiter(clock=FakeClock()))
        for _ in range(10):
            assert guard.check_payment_intent(1).blocked is False

        result = guard.check_payment_intent(1)
        assert result.blocked is True
        assert result.rule == RULE_RATE_LIMIT
        with pytest.raises(RateLimitExceeded):
            result.raise_if_blocked()

    def test_payout_review_threshold(self, db, researcher):
        guard = FraudGuard(RateLimiter(clock=FakeClock()))

        assert guard.check_payout_request(db, researcher.id, 100000).requires_review is False

        flagged = guard.check_payout_request(db, researcher.id, 100001)
        assert flagged.blocked is False
        assert flagged.requires_review is True
        assert flagged.reason == "Large payout amount requires manual review"

    def test_payout_request_rate_limit(self, db, researcher):
        guard = FraudGuard(RateLimiter(clock=FakeClock()))
        for _ in range(5):
            guard.check_payout_request(db, researcher.id, 1000, "10.0.0.1")

        with pytest.raises(RateLimitExceeded):
            guard.check_payout_request(db, researcher.id, 1000, "10.0.0.1").raise_if_blocked()

    def test_non_rate_rules_raise_withdrawal_blocked(self):
        result = FraudCheckResult(blocked=True, reason="Daily withdrawal limit exceeded", rule=RULE_DAILY_CAP)
        with pytest.raises(WithdrawalBlocked) as exc_info:
            result.raise_if_blocked()
        assert exc_info.value.status_code == 403
        assert exc_info.value.to_dict() == {
            "error": "WithdrawalBlocked",
            "message": "Withdrawal blocked: Daily withdrawal limit exceeded",
        }

    def test_allowed_result_passes_through(self):
        result = FraudCheckResult()
        assert result.raise_if_blocked() is result
