"""
BountyVault Settlement - Database Schema
========================================

Ledger store for the bounty settlement pipeline:
- Company and researcher wallets (integer minor units, optimistic versions)
- Fiat payment intents and crypto hosted-checkout intents
- Escrow accounts with platform commission split
- Researcher payouts through digital wallet, bank transfer, crypto or platform balance
- Crypto wallets, withdrawals and admin approvals
- Payment disputes, webhook event ledger and audit trail

Programs, submissions and users are read-only collaborators here; their CRUD
lives in the marketplace application.
"""

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Column, Integer, BigInteger, String, DateTime, Boolean, Text, JSON,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, func
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything stored here is UTC"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class UserType(Enum):
    RESEARCHER = "researcher"
    COMPANY = "company"
    ADMIN = "admin"


class PaymentIntentStatus(Enum):
    """Fiat deposit lifecycle: pending -> succeeded | failed | canceled"""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class EscrowStatus(Enum):
    """Escrow lifecycle states"""
    PENDING = "pending"
    HELD = "held"
    RELEASED = "released"
    REFUNDABLE = "refundable"  # released, but every payout failed
    REFUNDED = "refunded"


class PayoutStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PaymentMethodType(Enum):
    """Payout rail selected by the researcher's payment method"""
    DIGITAL_WALLET = "digital_wallet"
    BANK_TRANSFER = "bank_transfer"
    CRYPTO = "crypto"
    PLATFORM_BALANCE = "platform_balance"


class TransactionType(Enum):
    """Types of wallet ledger entries"""
    DEPOSIT = "deposit"
    ESCROW_HOLD = "escrow_hold"
    ESCROW_REFUND = "escrow_refund"
    PAYOUT_CREDIT = "payout_credit"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    CRYPTO_PAYMENT_PENDING = "crypto_payment_pending"
    CRYPTO_PAYMENT_APPROVED = "crypto_payment_approved"
    CRYPTO_WITHDRAWAL_REQUEST = "crypto_withdrawal_request"
    CRYPTO_WITHDRAWAL_APPROVED = "crypto_withdrawal_approved"
    CRYPTO_WITHDRAWAL_REVERSAL = "crypto_withdrawal_reversal"


class TransactionStatus(Enum):
    PENDING = "pending"
    PENDING_APPROVAL = "pending_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WalletVerificationStatus(Enum):
    """Proof-of-control state machine for registered crypto wallets"""
    UNVERIFIED = "unverified"
    CHALLENGE_SENT = "challenge_sent"
    VERIFIED = "verified"
    FAILED = "failed"


class CryptoWithdrawalStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CryptoPaymentStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ApprovalStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class DisputeStatus(Enum):
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"
    REJECTED = "rejected"


class DisputeType(Enum):
    PAYMENT_AMOUNT = "payment_amount"
    PAYMENT_NOT_RECEIVED = "payment_not_received"
    BOUNTY_ELIGIBILITY = "bounty_eligibility"
    SEVERITY_ASSESSMENT = "severity_assessment"
    OTHER = "other"


def _in_values(column: str, enum_cls) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


# ============================================================================
# MARKETPLACE COLLABORATORS (read-only here)
# ============================================================================

class User(Base):
    """Researcher, company or admin account"""
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(100), unique=True, nullable=False)
    email = Column(String(255), nullable=True)
    user_type = Column(String(20), default=UserType.RESEARCHER.value, nullable=False)
    company_name = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    wallets = relationship("Wallet", back_populates="owner")

    __table_args__ = (
        CheckConstraint(_in_values('user_type', UserType), name='ck_user_type_valid'),
    )

    def __repr__(self):
        return f"<User(id={self.id}, username={self.username}, type={self.user_type})>"


class Program(Base):
    """Vulnerability-disclosure program owned by a company"""
    __tablename__ = 'programs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    company_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    company = relationship("User", foreign_keys=[company_id])


class Submission(Base):
    """Researcher finding submitted to a program"""
    __tablename__ = 'submissions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    program_id = Column(Integer, ForeignKey('programs.id'), nullable=False, index=True)
    reward = Column(BigInteger, nullable=True)
    status = Column(String(20), default="pending", nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    researcher = relationship("User", foreign_keys=[user_id])
    program = relationship("Program")


# ============================================================================
# WALLET LEDGER
# ============================================================================

class Wallet(Base):
    """Per-owner balance in minor units; mutated only through atomic deltas"""
    __tablename__ = 'wallets'

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    currency = Column(String(10), default="USD", nullable=False)

    balance = Column(BigInteger, default=0, nullable=False)
    total_paid = Column(BigInteger, default=0, nullable=False)  # lifetime outbound (company) or received (researcher)
    version = Column(Integer, default=1, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    owner = relationship("User", back_populates="wallets")

    __table_args__ = (
        UniqueConstraint('owner_id', 'currency', name='uq_wallet_owner_currency'),
        CheckConstraint('balance >= 0', name='ck_wallet_balance_non_negative'),
        CheckConstraint('total_paid >= 0', name='ck_wallet_total_paid_non_negative'),
    )

    def __repr__(self):
        return f"<Wallet(owner_id={self.owner_id}, balance={self.balance}, currency={self.currency})>"


class Transaction(Base):
    """Wallet ledger entry; signed amount, positive credits the wallet"""
    __tablename__ = 'transactions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(String(36), unique=True, nullable=False, index=True)
    wallet_id = Column(Integer, ForeignKey('wallets.id'), nullable=False, index=True)
    owner_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)

    transaction_type = Column(String(40), nullable=False)
    amount = Column(BigInteger, nullable=False)
    currency = Column(String(10), default="USD", nullable=False)
    status = Column(String(20), default=TransactionStatus.COMPLETED.value, nullable=False)

    # Provider transaction id (or other natural key); a key credits at most once
    idempotency_key = Column(String(255), unique=True, nullable=True)
    reference_type = Column(String(40), nullable=True)
    reference_id = Column(String(64), nullable=True)

    description = Column(Text, nullable=True)
    extra_data = Column(JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    wallet = relationship("Wallet")

    __table_args__ = (
        CheckConstraint(_in_values('transaction_type', TransactionType), name='ck_transaction_type_valid'),
        CheckConstraint(_in_values('status', TransactionStatus), name='ck_transaction_status_valid'),
        Index('ix_transactions_owner_type', 'owner_id', 'transaction_type'),
        Index('ix_transactions_reference', 'reference_type', 'reference_id'),
    )


# ============================================================================
# FIAT SETTLEMENT
# ============================================================================

class PaymentIntent(Base):
    """Attempted company deposit tracked by the fiat payment provider"""
    __tablename__ = 'payment_intents'

    id = Column(Integer, primary_key=True, autoincrement=True)
    company_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    provider = Column(String(20), default="stripe", nullable=False)
    provider_intent_id = Column(String(255), unique=True, nullable=False)

    amount = Column(BigInteger, nullable=False)
    amount_received = Column(BigInteger, nullable=True)
    currency = Column(String(10), default="USD", nullable=False)
    purpose = Column(String(50), default="wallet_topup", nullable=False)
    status = Column(String(20), default=PaymentIntentStatus.PENDING.value, nullable=False)
    failure_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_payment_intent_amount_positive'),
        CheckConstraint(_in_values('status', PaymentIntentStatus), name='ck_payment_intent_status_valid'),
        Index('ix_payment_intents_company_created', 'company_id', 'created_at'),
    )


class EscrowAccount(Base):
    """Bounty funds held between company approval and researcher payout"""
    __tablename__ = 'escrow_accounts'

    id = Column(Integer, primary_key=True, autoincrement=True)
    submission_id = Column(Integer, ForeignKey('submissions.id'), unique=True, nullable=False)
    company_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    researcher_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)

    amount = Column(BigInteger, nullable=False)
    platform_commission = Column(BigInteger, nullable=False)
    researcher_payout = Column(BigInteger, nullable=False)
    commission_rate_bps = Column(Integer, nullable=False)
    currency = Column(String(10), default="USD", nullable=False)

    status = Column(String(20), default=EscrowStatus.PENDING.value, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    released_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, default=1, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    payouts = relationship("Payout", back_populates="escrow_account", order_by="Payout.id")

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_escrow_amount_positive'),
        CheckConstraint('amount = platform_commission + researcher_payout', name='ck_escrow_split_exact'),
        CheckConstraint(_in_values('status', EscrowStatus), name='ck_escrow_status_valid'),
    )

    def __repr__(self):
        return f"<EscrowAccount(submission_id={self.submission_id}, amount={self.amount}, status={self.status})>"


class PaymentMethod(Base):
    """Payout method catalogue (PayPal, wire transfer, USDT, platform balance...)"""
    __tablename__ = 'payment_methods'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    type = Column(String(30), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint(_in_values('type', PaymentMethodType), name='ck_payment_method_type_valid'),
    )


class Payout(Base):
    """Transfer of a released escrow to the researcher"""
    __tablename__ = 'payouts'

    id = Column(Integer, primary_key=True, autoincrement=True)
    payout_id = Column(String(36), unique=True, nullable=False, index=True)
    escrow_account_id = Column(Integer, ForeignKey('escrow_accounts.id'), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    submission_id = Column(Integer, ForeignKey('submissions.id'), nullable=False)

    amount = Column(BigInteger, nullable=False)
    currency = Column(String(10), default="USD", nullable=False)
    payment_method_id = Column(Integer, ForeignKey('payment_methods.id'), nullable=False)
    payment_method_details = Column(JSONType, nullable=True)

    status = Column(String(20), default=PayoutStatus.PENDING.value, nullable=False)
    requires_review = Column(Boolean, default=False, nullable=False)
    review_reason = Column(Text, nullable=True)
    reviewed_by = Column(Integer, nullable=True)
    external_transaction_id = Column(String(255), nullable=True)
    failure_reason = Column(Text, nullable=True)
    retry_of_id = Column(Integer, ForeignKey('payouts.id'), nullable=True)

    scheduled_for = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    escrow_account = relationship("EscrowAccount", back_populates="payouts")
    payment_method = relationship("PaymentMethod")

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_payout_amount_positive'),
        CheckConstraint(_in_values('status', PayoutStatus), name='ck_payout_status_valid'),
        Index('ix_payouts_user_created', 'user_id', 'created_at'),
    )

    def __repr__(self):
        return f"<Payout(payout_id={self.payout_id}, amount={self.amount}, status={self.status})>"


class Commission(Base):
    """Audit record of platform commission charged per submission"""
    __tablename__ = 'commissions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    submission_id = Column(Integer, ForeignKey('submissions.id'), nullable=False, index=True)
    escrow_account_id = Column(Integer, ForeignKey('escrow_accounts.id'), nullable=False)
    total_amount = Column(BigInteger, nullable=False)
    commission_rate = Column(Integer, nullable=False)  # basis points
    commission_amount = Column(BigInteger, nullable=False)
    currency = Column(String(10), default="USD", nullable=False)
    is_reversed = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint('commission_rate >= 0 AND commission_rate <= 10000', name='ck_commission_rate_range'),
    )


# ============================================================================
# CRYPTO SETTLEMENT
# ============================================================================

class CryptoNetwork(Base):
    """Supported withdrawal network with its limits (minor units)"""
    __tablename__ = 'crypto_networks'

    id = Column(Integer, primary_key=True, autoincrement=True)
    network = Column(String(30), unique=True, nullable=False)
    display_name = Column(String(100), nullable=False)
    currency = Column(String(10), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    min_withdrawal = Column(BigInteger, default=0, nullable=False)
    max_withdrawal = Column(BigInteger, nullable=True)
    network_fee = Column(BigInteger, default=0, nullable=False)
    confirmations_required = Column(Integer, default=1, nullable=False)
    processing_time_minutes = Column(Integer, nullable=True)
    explorer_url = Column(String(255), nullable=True)


class CryptoWallet(Base):
    """Researcher or company registered crypto address (encrypted at rest)"""
    __tablename__ = 'crypto_wallets'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    wallet_type = Column(String(30), nullable=False)
    wallet_address = Column(Text, nullable=False)  # Fernet ciphertext
    address_fingerprint = Column(String(64), unique=True, nullable=False)  # keyed hash for duplicate checks
    network = Column(String(30), nullable=False)
    is_verified = Column(Boolean, default=False, nullable=False)
    verification_status = Column(String(20), default=WalletVerificationStatus.UNVERIFIED.value, nullable=False)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(_in_values('verification_status', WalletVerificationStatus), name='ck_crypto_wallet_verification_valid'),
    )


class CryptoWithdrawal(Base):
    """Researcher withdrawal request; balance moves only on admin approval"""
    __tablename__ = 'crypto_withdrawals'

    id = Column(Integer, primary_key=True, autoincrement=True)
    withdrawal_id = Column(String(36), unique=True, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    wallet_id = Column(Integer, ForeignKey('wallets.id'), nullable=False)

    amount = Column(BigInteger, nullable=False)
    currency = Column(String(10), nullable=False)
    wallet_address = Column(Text, nullable=False)  # Fernet ciphertext
    network = Column(String(30), nullable=False)
    network_fee = Column(BigInteger, default=0, nullable=False)
    provider = Column(String(30), default="binance_pay", nullable=False)

    status = Column(String(20), default=CryptoWithdrawalStatus.PENDING.value, nullable=False)
    admin_notes = Column(Text, nullable=True)
    reviewed_by = Column(Integer, nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    transaction_hash = Column(String(255), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_crypto_withdrawal_amount_positive'),
        CheckConstraint(_in_values('status', CryptoWithdrawalStatus), name='ck_crypto_withdrawal_status_valid'),
        Index('ix_crypto_withdrawals_user_created', 'user_id', 'created_at'),
    )


class CryptoPaymentIntent(Base):
    """Company crypto deposit through the hosted-checkout provider"""
    __tablename__ = 'crypto_payment_intents'

    id = Column(Integer, primary_key=True, autoincrement=True)
    company_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)
    currency = Column(String(10), default="USDT", nullable=False)
    purpose = Column(String(50), default="bounty_payment", nullable=False)
    provider = Column(String(30), default="binance_pay", nullable=False)

    merchant_order_id = Column(String(64), unique=True, nullable=False)
    provider_order_id = Column(String(255), nullable=True, index=True)
    transaction_id = Column(String(255), nullable=True)
    status = Column(String(20), default=CryptoPaymentStatus.PENDING.value, nullable=False)
    checkout_data = Column(JSONType, nullable=True)

    expires_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_crypto_payment_amount_positive'),
        CheckConstraint(_in_values('status', CryptoPaymentStatus), name='ck_crypto_payment_status_valid'),
    )


class CryptoTransaction(Base):
    """On-chain / provider-side crypto movement record"""
    __tablename__ = 'crypto_transactions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=True, index=True)
    company_id = Column(Integer, ForeignKey('users.id'), nullable=True, index=True)
    transaction_type = Column(String(30), nullable=False)  # payment_in, withdrawal_out
    amount = Column(BigInteger, nullable=False)
    currency = Column(String(10), nullable=False)
    transaction_hash = Column(String(255), unique=True, nullable=True)
    status = Column(String(20), default="confirmed", nullable=False)
    related_payment_intent_id = Column(Integer, ForeignKey('crypto_payment_intents.id'), nullable=True)
    related_withdrawal_id = Column(Integer, ForeignKey('crypto_withdrawals.id'), nullable=True)
    extra_data = Column(JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class CryptoPaymentApproval(Base):
    """Completed crypto deposit awaiting manual reconciliation by an admin"""
    __tablename__ = 'crypto_payment_approvals'

    id = Column(Integer, primary_key=True, autoincrement=True)
    crypto_payment_intent_id = Column(Integer, ForeignKey('crypto_payment_intents.id'), unique=True, nullable=False)
    company_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)
    currency = Column(String(10), nullable=False)
    payment_memo = Column(String(255), nullable=True)
    status = Column(String(20), default=ApprovalStatus.PENDING.value, nullable=False)
    admin_id = Column(Integer, nullable=True)
    admin_notes = Column(Text, nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(_in_values('status', ApprovalStatus), name='ck_crypto_approval_status_valid'),
    )


# ============================================================================
# DISPUTES, WEBHOOKS AND AUDIT
# ============================================================================

class PaymentDispute(Base):
    """Disagreement about a settlement outcome; never moves money itself"""
    __tablename__ = 'payment_disputes'

    id = Column(Integer, primary_key=True, autoincrement=True)
    submission_id = Column(Integer, ForeignKey('submissions.id'), nullable=False, index=True)
    disputed_by = Column(Integer, ForeignKey('users.id'), nullable=False)
    dispute_type = Column(String(40), nullable=False)
    description = Column(Text, nullable=False)
    status = Column(String(20), default=DisputeStatus.OPEN.value, nullable=False)
    resolution = Column(Text, nullable=True)
    resolved_by = Column(Integer, nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(_in_values('status', DisputeStatus), name='ck_dispute_status_valid'),
        Index('ix_payment_disputes_status', 'status'),
    )

    def __repr__(self):
        return f"<PaymentDispute(submission_id={self.submission_id}, status={self.status})>"


class WebhookEventLedger(Base):
    """Provider webhook events already applied; (provider, event_id) is the idempotency key"""
    __tablename__ = 'webhook_event_ledger'

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_provider = Column(String(50), nullable=False)
    event_id = Column(String(255), nullable=False)
    event_type = Column(String(80), nullable=False)
    reference_id = Column(String(255), nullable=True, index=True)
    status = Column(String(20), default="processing", nullable=False)
    processing_result = Column(JSONType, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint('event_provider', 'event_id', name='uq_webhook_event_provider_id'),
    )


class AuditLog(Base):
    """Audit trail for money-moving and admin actions"""
    __tablename__ = 'audit_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(60), nullable=False, index=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(64), nullable=False)
    user_id = Column(Integer, nullable=True, index=True)
    admin_id = Column(Integer, nullable=True, index=True)
    previous_state = Column(JSONType, nullable=True)
    new_state = Column(JSONType, nullable=True)
    description = Column(Text, nullable=True)
    ip_address = Column(String(45), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index('ix_audit_entity_id', 'entity_type', 'entity_id'),
    )
