"""
Shared fixtures for the settlement test suite.

Every test runs against a fresh in-memory SQLite schema. Provider clients,
payout rails and the notifier are replaced with AsyncMock doubles so no test
touches the network.
"""

import os

from cryptography.fernet import Fernet

# Configuration is read at import time; pin it before any project import
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "test"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["BINANCE_PAY_API_KEY"] = "binance-test-key"
os.environ["BINANCE_PAY_SECRET_KEY"] = "binance-test-secret"
os.environ["ADMIN_EMAIL"] = "admin@bountyvault.test"
os.environ.setdefault("WALLET_ENCRYPTION_KEY", Fernet.generate_key().decode("utf-8"))
os.environ.setdefault("WALLET_FINGERPRINT_KEY", "test-wallet-fingerprint")

import logging
from unittest.mock import AsyncMock

import pytest

from database import SessionLocal, engine
from middleware.rate_limiter import RateLimiter
from models import (
    Base, User, UserType, Program, Submission, PaymentMethod, PaymentMethodType, Wallet,
)
from services.binance_pay_service import BinancePayService
from services.crypto_settlement_service import CryptoSettlementService
from services.fraud_guard import FraudGuard
from services.payment_service import PaymentService
from services.payout_rails import PayoutResult
from services.stripe_service import StripeService

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')



# ============================================================================
# DATABASE
# ============================================================================

@pytest.fixture
def db():
    """Fresh schema and session per test"""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        Base.metadata.drop_all(bind=engine)


# ============================================================================
# MARKETPLACE FACTORIES
# ============================================================================

@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(user_type: UserType = UserType.RESEARCHER, email=None, is_active=True) -> User:
        counter["n"] += 1
        user = User(
            username=f"{user_type.value}_{counter['n']}",
            email=email or f"{user_type.value}{counter['n']}@example.com",
            user_type=user_type.value,
            company_name="Acme Security" if user_type == UserType.COMPANY else None,
            is_active=is_active,
        )
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def company(make_user):
    return make_user(UserType.COMPANY)


@pytest.fixture
def researcher(make_user):
    return make_user(UserType.RESEARCHER)


@pytest.fixture
def admin(make_user):
    return make_user(UserType.ADMIN, email="admin@bountyvault.test")


@pytest.fixture
def program(db, company):
    program = Program(name="Acme Web", company_id=company.id)
    db.add(program)
    db.commit()
    return program


@pytest.fixture
def make_submission(db, program, researcher):
    def _make(user=None) -> Submission:
        submission = Submission(
            title="Stored XSS in profile page",
            user_id=(user or researcher).id,
            program_id=program.id,
            status="accepted",
        )
        db.add(submission)
        db.commit()
        return submission

    return _make


@pytest.fixture
def submission(make_submission):
    return make_submission()


@pytest.fixture
def payment_methods(db):
    """One active method per rail, keyed by type"""
    methods = {
        PaymentMethodType.DIGITAL_WALLET.value: PaymentMethod(name="PayPal", type=PaymentMethodType.DIGITAL_WALLET.value),
        PaymentMethodType.BANK_TRANSFER.value: PaymentMethod(name="Bank Transfer", type=PaymentMethodType.BANK_TRANSFER.value),
        PaymentMethodType.CRYPTO.value: PaymentMethod(name="USDT", type=PaymentMethodType.CRYPTO.value),
        PaymentMethodType.PLATFORM_BALANCE.value: PaymentMethod(name="Platform Balance", type=PaymentMethodType.PLATFORM_BALANCE.value),
    }
    db.add_all(methods.values())
    db.commit()
    return methods


@pytest.fixture
def fund_wallet(db):
    """Set an owner's USD balance directly"""
    def _fund(owner_id: int, balance: int, currency: str = "USD") -> Wallet:
        wallet = db.query(Wallet).filter_by(owner_id=owner_id, currency=currency).first()
        if wallet is None:
            wallet = Wallet(owner_id=owner_id, currency=currency, balance=0, total_paid=0, version=1)
            db.add(wallet)
        wallet.balance = balance
        db.commit()
        return wallet

    return _fund


# ============================================================================
# SERVICE DOUBLES
# ============================================================================

@pytest.fixture
def mock_stripe():
    stripe = AsyncMock(spec=StripeService)
    stripe.create_payment_intent.return_value = {
        "id": "pi_test_123",
        "client_secret": "pi_test_123_secret_abc",
        "status": "requires_payment_method",
    }
    stripe.retrieve_payment_intent.return_value = {
        "id": "pi_test_123",
        "status": "succeeded",
        "amount": 50000,
        "amount_received": 50000,
    }
    # Signature checks run for real against the test secret
    stripe.verify_webhook_signature.side_effect = StripeService.verify_webhook_signature
    return stripe


@pytest.fixture
def mock_binance():
    real = BinancePayService()
    binance = AsyncMock(spec=BinancePayService)
    binance.create_order.return_value = {
        "prepayId": "29383937493038367292",
        "checkoutUrl": "https://pay.binance.com/checkout/abc",
        "qrcodeLink": "https://public.bnbstatic.com/qr/abc.jpg",
        "deeplink": "bnc://app.binance.com/payment/secpay?tempToken=abc",
        "expireTime": 1700000000000,
    }
    binance.verify_webhook_signature.side_effect = real.verify_webhook_signature
    return binance


@pytest.fixture
def mock_rail():
    rail = AsyncMock()
    rail.send.return_value = PayoutResult(success=True, external_transaction_id="EXT-001")
    rail.validate_details = lambda details: None
    return rail


@pytest.fixture
def rails(mock_rail):
    return {
        PaymentMethodType.DIGITAL_WALLET.value: mock_rail,
        PaymentMethodType.BANK_TRANSFER.value: mock_rail,
        PaymentMethodType.CRYPTO.value: mock_rail,
    }


@pytest.fixture
def mock_notifier():
    notifier = AsyncMock()
    notifier.send_payout_completed.return_value = True
    notifier.send_withdrawal_status.return_value = True
    notifier.send_crypto_payment_status.return_value = True
    return notifier


@pytest.fixture
def guard():
    """Fraud guard with its own rate-limit counters"""
    return FraudGuard(RateLimiter())


@pytest.fixture
def payment_service(mock_stripe, rails, mock_notifier, guard):
    return PaymentService(stripe=mock_stripe, rails=rails, notifier=mock_notifier, guard=guard)


@pytest.fixture
def crypto_service(db, mock_binance, mock_notifier, guard):
    CryptoSettlementService.seed_default_networks(db)
    return CryptoSettlementService(binance=mock_binance, notifier=mock_notifier, guard=guard)
