"""Configuration management for the BountyVault settlement service"""

import os
import logging
from typing import Dict, Any, List

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _int_env(name: str, default: int) -> int:
    """Read an integer setting, falling back to the default on bad input"""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ CONFIG: {name}={raw!r} is not an integer, using default {default}")
        return default


class Config:
    """Application configuration"""

    # Environment detection
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./bountyvault.db")
    DB_POOL_SIZE = _int_env("DB_POOL_SIZE", 7)
    DB_MAX_OVERFLOW = _int_env("DB_MAX_OVERFLOW", 15)

    # Frontend (hosted checkout return/cancel URLs)
    FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5000")

    # ------------------------------------------------------------------
    # Commission and escrow
    # ------------------------------------------------------------------
    # Basis points: 10000 = 100%
    COMMISSION_RATE_BPS = _int_env("COMMISSION_RATE_BPS", 1500)
    ESCROW_EXPIRY_DAYS = _int_env("ESCROW_EXPIRY_DAYS", 30)
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "USD").upper()

    # ------------------------------------------------------------------
    # Rate limits: (max_requests, window_seconds)
    # ------------------------------------------------------------------
    PAYMENT_INTENT_RATE_LIMIT = _int_env("PAYMENT_INTENT_RATE_LIMIT", 10)
    PAYMENT_INTENT_RATE_WINDOW_SECONDS = _int_env("PAYMENT_INTENT_RATE_WINDOW_SECONDS", 60 * 60)
    PAYOUT_REQUEST_RATE_LIMIT = _int_env("PAYOUT_REQUEST_RATE_LIMIT", 5)
    PAYOUT_REQUEST_RATE_WINDOW_SECONDS = _int_env("PAYOUT_REQUEST_RATE_WINDOW_SECONDS", 60 * 60)

    # ------------------------------------------------------------------
    # Fraud / risk thresholds (minor units, cents)
    # ------------------------------------------------------------------
    PAYOUT_REVIEW_THRESHOLD = _int_env("PAYOUT_REVIEW_THRESHOLD", 100_000)  # $1,000
    LARGE_PAYOUT_AMOUNT = _int_env("LARGE_PAYOUT_AMOUNT", 50_000)  # $500
    MAX_LARGE_PAYOUTS_PER_DAY = _int_env("MAX_LARGE_PAYOUTS_PER_DAY", 3)
    WITHDRAWAL_MAX_PER_DAY = _int_env("WITHDRAWAL_MAX_PER_DAY", 5)
    WITHDRAWAL_REVIEW_THRESHOLD = _int_env("WITHDRAWAL_REVIEW_THRESHOLD", 500_000)  # $5,000
    WITHDRAWAL_DAILY_LIMIT = _int_env("WITHDRAWAL_DAILY_LIMIT", 1_000_000)  # $10,000

    # ------------------------------------------------------------------
    # Fiat payment provider (Stripe REST API)
    # ------------------------------------------------------------------
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    STRIPE_BASE_URL = os.getenv("STRIPE_BASE_URL", "https://api.stripe.com/v1")
    STRIPE_WEBHOOK_TOLERANCE_SECONDS = _int_env("STRIPE_WEBHOOK_TOLERANCE_SECONDS", 300)

    # ------------------------------------------------------------------
    # Crypto-pay provider (Binance Pay hosted checkout)
    # ------------------------------------------------------------------
    BINANCE_PAY_API_KEY = os.getenv("BINANCE_PAY_API_KEY", "")
    BINANCE_PAY_SECRET_KEY = os.getenv("BINANCE_PAY_SECRET_KEY", "")
    BINANCE_PAY_BASE_URL = os.getenv("BINANCE_PAY_BASE_URL", "https://bpay.binanceapi.com")
    BINANCE_PAY_ORDER_TTL_MINUTES = _int_env("BINANCE_PAY_ORDER_TTL_MINUTES", 30)

    # ------------------------------------------------------------------
    # Payout rails
    # ------------------------------------------------------------------
    PAYPAL_CLIENT_ID = os.getenv("PAYPAL_CLIENT_ID")
    PAYPAL_CLIENT_SECRET = os.getenv("PAYPAL_CLIENT_SECRET")
    PAYPAL_BASE_URL = os.getenv("PAYPAL_BASE_URL", "https://api-m.sandbox.paypal.com")

    BANK_TRANSFER_API_KEY = os.getenv("BANK_TRANSFER_API_KEY")
    BANK_TRANSFER_BASE_URL = os.getenv("BANK_TRANSFER_BASE_URL", "https://sandboxapi.fincra.com")
    BANK_TRANSFER_BUSINESS_ID = os.getenv("BANK_TRANSFER_BUSINESS_ID")

    CRYPTO_PAYOUT_API_KEY = os.getenv("CRYPTO_PAYOUT_API_KEY")
    CRYPTO_PAYOUT_BASE_URL = os.getenv("CRYPTO_PAYOUT_BASE_URL", "https://bpay.binanceapi.com")

    PROVIDER_TIMEOUT_SECONDS = _int_env("PROVIDER_TIMEOUT_SECONDS", 30)

    # ------------------------------------------------------------------
    # Security
    # ------------------------------------------------------------------
    # Fernet key (urlsafe base64, 32 bytes) used for wallet addresses at rest
    WALLET_ENCRYPTION_KEY = os.getenv("WALLET_ENCRYPTION_KEY")
    # Separate key for the deterministic address fingerprint (duplicate detection)
    WALLET_FINGERPRINT_KEY = os.getenv("WALLET_FINGERPRINT_KEY")

    ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@bountyvault.local")
    # pbkdf2_sha256$<iterations>$<salt>$<hex>, see services.admin_auth_service.hash_password
    ADMIN_PASSWORD_HASH = os.getenv("ADMIN_PASSWORD_HASH")
    ADMIN_SESSION_TTL_SECONDS = _int_env("ADMIN_SESSION_TTL_SECONDS", 8 * 60 * 60)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------
    NOTIFICATION_WEBHOOK_URL = os.getenv("NOTIFICATION_WEBHOOK_URL")

    @classmethod
    def rate_limits(cls) -> Dict[str, Dict[str, int]]:
        """Rate limit configuration per action type"""
        return {
            "payment_intent": {
                "max_requests": cls.PAYMENT_INTENT_RATE_LIMIT,
                "window_seconds": cls.PAYMENT_INTENT_RATE_WINDOW_SECONDS,
            },
            "payout_request": {
                "max_requests": cls.PAYOUT_REQUEST_RATE_LIMIT,
                "window_seconds": cls.PAYOUT_REQUEST_RATE_WINDOW_SECONDS,
            },
        }

    @classmethod
    def validate(cls) -> List[str]:
        """Return the list of missing settings that matter in production"""
        missing = []
        required = {
            "STRIPE_SECRET_KEY": cls.STRIPE_SECRET_KEY,
            "STRIPE_WEBHOOK_SECRET": cls.STRIPE_WEBHOOK_SECRET,
            "BINANCE_PAY_API_KEY": cls.BINANCE_PAY_API_KEY,
            "BINANCE_PAY_SECRET_KEY": cls.BINANCE_PAY_SECRET_KEY,
            "WALLET_ENCRYPTION_KEY": cls.WALLET_ENCRYPTION_KEY,
            "WALLET_FINGERPRINT_KEY": cls.WALLET_FINGERPRINT_KEY,
            "ADMIN_PASSWORD_HASH": cls.ADMIN_PASSWORD_HASH,
        }
        for name, value in required.items():
            if not value:
                missing.append(name)

        if missing:
            if cls.IS_PRODUCTION:
                logger.error(f"❌ CONFIG: Missing production settings: {', '.join(missing)}")
            else:
                logger.warning(f"⚠️ CONFIG: Not configured (development): {', '.join(missing)}")
        return missing

    @classmethod
    def log_environment_config(cls) -> Dict[str, Any]:
        """Log current environment configuration for debugging"""
        summary = {
            "environment": cls.ENVIRONMENT,
            "database": cls.DATABASE_URL.split("://", 1)[0],
            "commission_rate_bps": cls.COMMISSION_RATE_BPS,
            "escrow_expiry_days": cls.ESCROW_EXPIRY_DAYS,
            "stripe_configured": bool(cls.STRIPE_SECRET_KEY),
            "binance_pay_configured": bool(cls.BINANCE_PAY_SECRET_KEY),
        }
        logger.info(f"🔧 Settlement Environment Configuration: {summary}")
        return summary
