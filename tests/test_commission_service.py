"""
Commission split and Money value type tests
"""

import pytest

from services.commission_service import CommissionService, calculate_commission
from utils.exceptions import ValidationError
from utils.money import Money, Currency


class TestCommissionSplit:
    """Integer basis-point split between platform and researcher"""

    def test_default_rate_is_fifteen_percent(self):
        """$1,000.00 at the default 1500 bps leaves $850.00 for the researcher"""
        split = calculate_commission(100000)
        assert split.commission == 15000
        assert split.payout == 85000

    def test_commission_is_floored(self):
        """Fractional cents of commission go to the researcher"""
        split = CommissionService.calculate_commission(333, 1500)
        assert split.commission == 49
        assert split.payout == 284

    def test_split_always_sums_to_gross(self):
        for amount in (1, 7, 99, 101, 12345, 999999):
            for rate in (0, 1, 1500, 3333, 10000):
                split = CommissionService.calculate_commission(amount, rate)
                assert split.commission + split.payout == amount
                assert split.commission >= 0 and split.payout >= 0

    def test_zero_rate_and_full_rate(self):
        assert CommissionService.calculate_commission(5000, 0) == (0, 5000)
        assert CommissionService.calculate_commission(5000, 10000) == (5000, 0)

    def test_rejects_out_of_range_rate(self):
        with pytest.raises(ValidationError):
            CommissionService.calculate_commission(5000, 10001)
        with pytest.raises(ValidationError):
            CommissionService.calculate_commission(5000, -1)

    def test_rejects_non_integer_amounts(self):
        """Float dollars must never reach the commission math"""
        with pytest.raises(ValidationError):
            CommissionService.calculate_commission(10.5, 1500)
        with pytest.raises(ValidationError):
            CommissionService.calculate_commission(True, 1500)

    def test_rejects_negative_amount(self):
        with pytest.raises(ValidationError):
            CommissionService.calculate_commission(-100, 1500)

    def test_split_money_keeps_currency(self):
        commission, payout = CommissionService.split_money(Money.of(10000, "EUR"), 1000)
        assert commission == Money(1000, Currency.EUR)
        assert payout == Money(9000, Currency.EUR)


class TestMoney:
    """Money value type"""

    def test_rejects_float_amount(self):
        with pytest.raises(ValidationError):
            Money(10.0)

    def test_currency_mismatch_is_refused(self):
        with pytest.raises(ValidationError):
            Money.of(100, "USD") + Money.of(100, "EUR")

    def test_unknown_currency(self):
        with pytest.raises(ValidationError):
            Money.of(100, "XYZ")

    def test_from_major_truncates_sub_cent_digits(self):
        assert Money.from_major("12.349").amount_minor == 1234

    def test_format(self):
        assert Money.of(123456).format() == "$1,234.56"
        assert Money.of(2500, "USDT").format() == "25.00 USDT"

    def test_require_positive(self):
        assert Money.of(1).require_positive() == Money.of(1)
        with pytest.raises(ValidationError):
            Money.of(0).require_positive()

    def test_crypto_currencies(self):
        assert Currency.parse("usdt").is_crypto
        assert not Currency.USD.is_crypto
