"""
Money value type
All settlement amounts are integer minor units tagged with their currency,
so cents and dollars can never be mixed silently.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from enum import Enum
from typing import Union

from utils.exceptions import ValidationError


class Currency(Enum):
    """Supported settlement currencies"""
    USD = "USD"
    EUR = "EUR"
    GBP = "GBP"
    USDT = "USDT"
    USDC = "USDC"
    BTC = "BTC"
    ETH = "ETH"
    BNB = "BNB"
    TRX = "TRX"

    @classmethod
    def parse(cls, value: Union[str, "Currency"]) -> "Currency":
        if isinstance(value, Currency):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValidationError(f"Unsupported currency: {value}")

    @property
    def is_crypto(self) -> bool:
        return self in CRYPTO_CURRENCIES

    @property
    def is_usd_stablecoin(self) -> bool:
        return self in USD_STABLECOINS


CRYPTO_CURRENCIES = {Currency.USDT, Currency.USDC, Currency.BTC, Currency.ETH, Currency.BNB, Currency.TRX}

# Settled 1:1 against the USD wallet; volatile coins need a rate and are refused
USD_STABLECOINS = {Currency.USDT, Currency.USDC}

# Minor units per major unit. Crypto amounts are carried as USD-pegged cents.
MINOR_UNITS = 100


@dataclass(frozen=True)
class Money:
    amount_minor: int
    currency: Currency = Currency.USD

    def __post_init__(self):
        # bool is an int subclass; reject it along with floats and Decimals
        if isinstance(self.amount_minor, bool) or not isinstance(self.amount_minor, int):
            raise ValidationError(f"Amount must be an integer number of minor units, got {self.amount_minor!r}")
        if not isinstance(self.currency, Currency):
            object.__setattr__(self, "currency", Currency.parse(self.currency))

    @classmethod
    def of(cls, amount_minor: int, currency: Union[str, Currency] = Currency.USD) -> "Money":
        return cls(amount_minor, Currency.parse(currency))

    @classmethod
    def from_major(cls, amount: Union[str, int, Decimal], currency: Union[str, Currency] = Currency.USD) -> "Money":
        """Build from a major-unit amount ("12.34" dollars); sub-cent digits are truncated"""
        minor = (Decimal(str(amount)) * MINOR_UNITS).to_integral_value(rounding=ROUND_DOWN)
        return cls(int(minor), Currency.parse(currency))

    def to_major(self) -> Decimal:
        return (Decimal(self.amount_minor) / MINOR_UNITS).quantize(Decimal("0.01"))

    def _check_same_currency(self, other: "Money") -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Cannot combine Money with {type(other).__name__}")
        if other.currency != self.currency:
            raise ValidationError(
                f"Currency mismatch: {self.currency.value} vs {other.currency.value}"
            )

    def __add__(self, other: "Money") -> "Money":
        self._check_same_currency(other)
        return Money(self.amount_minor + other.amount_minor, self.currency)

    def __sub__(self, other: "Money") -> "Money":
        self._check_same_currency(other)
        return Money(self.amount_minor - other.amount_minor, self.currency)

    def __neg__(self) -> "Money":
        return Money(-self.amount_minor, self.currency)

    def __lt__(self, other: "Money") -> bool:
        self._check_same_currency(other)
        return self.amount_minor < other.amount_minor

    def __le__(self, other: "Money") -> bool:
        self._check_same_currency(other)
        return self.amount_minor <= other.amount_minor

    def require_positive(self, field: str = "amount") -> "Money":
        if self.amount_minor <= 0:
            raise ValidationError(f"{field} must be a positive amount")
        return self

    def format(self) -> str:
        if self.currency == Currency.USD:
            return f"${self.to_major():,.2f}"
        return f"{self.to_major():,.2f} {self.currency.value}"

    def __str__(self) -> str:
        return self.format()
