"""
Crypto Settlement Service
Company deposits through Binance Pay hosted checkout and researcher crypto
withdrawals, both gated by admin review:

- A successful checkout is recorded and queued as a CryptoPaymentApproval;
  the company wallet is credited only when an admin approves it.
- A withdrawal request is recorded as pending with a pending_approval ledger
  row; the researcher's balance is debited only on admin approval.
"""

import json
import logging
import time
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from models import (
    CryptoNetwork, CryptoWallet, CryptoWithdrawal, CryptoWithdrawalStatus, CryptoPaymentIntent,
    CryptoPaymentStatus, CryptoTransaction, CryptoPaymentApproval, ApprovalStatus, Transaction,
    TransactionType, TransactionStatus, UserType, Wallet, WalletVerificationStatus, utcnow,
)
from services.binance_pay_service import BinancePayService
from services.fraud_guard import FraudGuard, fraud_guard as default_fraud_guard
from services.marketplace_lookup import require_user
from services.notification_service import NotificationService, notification_service as default_notifier
from services.wallet_service import WalletService
from services.webhook_idempotency_service import (
    WebhookIdempotencyService, WebhookEventInfo, WebhookProvider,
)
from utils.address_validation import canonical_network, validate_address
from utils.atomic_transactions import atomic_transaction, lock_row
from utils.encryption import get_wallet_encryption, mask_address
from utils.exceptions import (
    SettlementError, ValidationError, NotFound, NotAuthorized, InsufficientBalance,
    DuplicateWallet, InvalidStateTransition, InvalidSignature,
)
from utils.financial_audit_logger import financial_audit_logger, FinancialEventType, EntityType
from utils.money import Money, Currency
from utils.optimistic_locking import OptimisticLockManager

logger = logging.getLogger(__name__)

MERCHANT_ORDER_PREFIX = "BountyVault"

DEFAULT_NETWORKS = [
    {
        "network": "bitcoin", "display_name": "Bitcoin", "currency": "BTC",
        "min_withdrawal": 1000, "max_withdrawal": 1000000, "network_fee": 500,
        "confirmations_required": 1, "processing_time_minutes": 30,
        "explorer_url": "https://blockstream.info/tx/",
    },
    {
        "network": "ethereum", "display_name": "Ethereum", "currency": "ETH",
        "min_withdrawal": 2000, "max_withdrawal": 1000000, "network_fee": 1000,
        "confirmations_required": 12, "processing_time_minutes": 15,
        "explorer_url": "https://etherscan.io/tx/",
    },
    {
        "network": "bsc", "display_name": "Binance Smart Chain", "currency": "BNB",
        "min_withdrawal": 500, "max_withdrawal": 1000000, "network_fee": 100,
        "confirmations_required": 15, "processing_time_minutes": 5,
        "explorer_url": "https://bscscan.com/tx/",
    },
    {
        "network": "tron", "display_name": "Tron", "currency": "TRX",
        "min_withdrawal": 500, "max_withdrawal": 1000000, "network_fee": 50,
        "confirmations_required": 20, "processing_time_minutes": 3,
        "explorer_url": "https://tronscan.org/#/transaction/",
    },
    {
        "network": "polygon", "display_name": "Polygon", "currency": "MATIC",
        "min_withdrawal": 500, "max_withdrawal": 1000000, "network_fee": 25,
        "confirmations_required": 100, "processing_time_minutes": 2,
        "explorer_url": "https://polygonscan.com/tx/",
    },
]

# Proof-of-control state machine; verification is currently auto-passed
VERIFICATION_TRANSITIONS = {
    WalletVerificationStatus.UNVERIFIED.value: {WalletVerificationStatus.CHALLENGE_SENT.value},
    WalletVerificationStatus.CHALLENGE_SENT.value: {
        WalletVerificationStatus.VERIFIED.value,
        WalletVerificationStatus.FAILED.value,
    },
    WalletVerificationStatus.FAILED.value: {WalletVerificationStatus.CHALLENGE_SENT.value},
}

# target status -> statuses it may be reached from
WITHDRAWAL_TRANSITIONS = {
    CryptoWithdrawalStatus.APPROVED.value: {CryptoWithdrawalStatus.PENDING.value},
    CryptoWithdrawalStatus.REJECTED.value: {CryptoWithdrawalStatus.PENDING.value},
    CryptoWithdrawalStatus.CANCELLED.value: {CryptoWithdrawalStatus.PENDING.value},
    CryptoWithdrawalStatus.PROCESSING.value: {CryptoWithdrawalStatus.APPROVED.value},
    CryptoWithdrawalStatus.COMPLETED.value: {
        CryptoWithdrawalStatus.APPROVED.value,
        CryptoWithdrawalStatus.PROCESSING.value,
    },
    CryptoWithdrawalStatus.FAILED.value: {
        CryptoWithdrawalStatus.APPROVED.value,
        CryptoWithdrawalStatus.PROCESSING.value,
    },
}

# Binance Pay native webhook statuses mapped onto the order statuses handled here
BIZ_STATUS_MAP = {
    "PAY_SUCCESS": "SUCCESS",
    "PAY_CLOSED": "EXPIRED",
    "PAY_FAILED": "FAILED",
}


def advance_verification(wallet: CryptoWallet, to_status: WalletVerificationStatus) -> None:
    allowed = VERIFICATION_TRANSITIONS.get(wallet.verification_status, set())
    if to_status.value not in allowed:
        raise InvalidStateTransition(
            f"Wallet verification cannot move from {wallet.verification_status} to {to_status.value}"
        )
    wallet.verification_status = to_status.value
    if to_status == WalletVerificationStatus.VERIFIED:
        wallet.is_verified = True
        wallet.verified_at = utcnow()


def parse_binance_webhook(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalize either the merchant-callback shape
    {merchantOrderId, status, transactionId} or Binance's native
    {bizId, bizStatus, data: "<json>"} envelope.
    """
    if "bizStatus" in payload:
        data = payload.get("data") or {}
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except ValueError:
                raise ValidationError("Malformed webhook payload")
        return {
            "event_id": str(payload.get("bizIdStr") or payload.get("bizId") or ""),
            "merchant_order_id": data.get("merchantTradeNo"),
            "status": BIZ_STATUS_MAP.get(payload["bizStatus"], payload["bizStatus"]),
            "transaction_id": data.get("transactionId"),
        }

    status = payload.get("status")
    merchant_order_id = payload.get("merchantOrderId")
    transaction_id = payload.get("transactionId")
    return {
        "event_id": transaction_id or f"{merchant_order_id}:{status}",
        "merchant_order_id": merchant_order_id,
        "status": status,
        "transaction_id": transaction_id,
    }


class CryptoSettlementService:
    """Crypto deposit, wallet registry and withdrawal workflows"""

    def __init__(
        self,
        binance: Optional[BinancePayService] = None,
        notifier: Optional[NotificationService] = None,
        guard: Optional[FraudGuard] = None,
    ):
        self._binance = binance
        self.notifier = notifier or default_notifier
        self.guard = guard or default_fraud_guard

    @property
    def binance(self) -> BinancePayService:
        if self._binance is None:
            self._binance = BinancePayService()
        return self._binance

    # ------------------------------------------------------------------
    # Networks
    # ------------------------------------------------------------------

    @staticmethod
    def seed_default_networks(session: Session) -> int:
        """Insert the default network settings that are missing; returns how many were added"""
        added = 0
        with atomic_transaction(session):
            existing = set(session.execute(select(CryptoNetwork.network)).scalars())
            for settings in DEFAULT_NETWORKS:
                if settings["network"] in existing:
                    continue
                session.add(CryptoNetwork(**settings))
                added += 1
        if added:
            logger.info(f"🌐 CRYPTO_NETWORKS_SEEDED: {added} network(s) initialized")
        return added

    @staticmethod
    def list_networks(session: Session, active_only: bool = True) -> List[CryptoNetwork]:
        stmt = select(CryptoNetwork).order_by(CryptoNetwork.id)
        if active_only:
            stmt = stmt.where(CryptoNetwork.is_active.is_(True))
        return list(session.execute(stmt).scalars())

    @staticmethod
    def get_network(session: Session, network: str) -> CryptoNetwork:
        settings = session.execute(
            select(CryptoNetwork).where(CryptoNetwork.network == canonical_network(network))
        ).scalars().first()
        if settings is None or not settings.is_active:
            raise ValidationError(f"Unsupported network: {network}")
        return settings

    # ------------------------------------------------------------------
    # Company deposits
    # ------------------------------------------------------------------

    async def create_provider_order(
        self,
        session: Session,
        company_id: int,
        amount: int,
        currency: str = "USDT",
        purpose: str = "bounty_payment",
    ) -> Dict[str, Any]:
        """Open a hosted checkout order and persist it as a pending intent"""
        money = Money.of(amount, currency).require_positive()
        if not money.currency.is_usd_stablecoin:
            raise ValidationError(f"{money.currency.value} deposits are not supported; pay in USDT or USDC")
        require_user(session, company_id, UserType.COMPANY)

        merchant_order_id = f"{MERCHANT_ORDER_PREFIX}_{company_id}_{int(time.time() * 1000)}"
        checkout = await self.binance.create_order(
            merchant_order_id,
            money.amount_minor,
            money.currency.value,
            f"BountyVault {purpose} - Company {company_id}",
            f"{Config.FRONTEND_URL}/payment/success",
            f"{Config.FRONTEND_URL}/payment/cancel",
        )

        with atomic_transaction(session):
            intent = CryptoPaymentIntent(
                company_id=company_id,
                amount=money.amount_minor,
                currency=money.currency.value,
                purpose=purpose,
                provider="binance_pay",
                merchant_order_id=merchant_order_id,
                provider_order_id=checkout.get("prepayId"),
                status=CryptoPaymentStatus.PENDING.value,
                checkout_data={
                    "checkout_url": checkout.get("checkoutUrl"),
                    "qrcode_link": checkout.get("qrcodeLink"),
                    "deeplink": checkout.get("deeplink"),
                    "expire_time": checkout.get("expireTime"),
                },
                expires_at=utcnow() + timedelta(minutes=Config.BINANCE_PAY_ORDER_TTL_MINUTES),
            )
            session.add(intent)
            session.flush()

        logger.info(f"🪙 CRYPTO_ORDER_CREATED: {merchant_order_id} company={company_id} amount={money}")
        return {"payment_intent": intent, "checkout": checkout}

    def handle_provider_webhook(
        self,
        session: Session,
        body: str,
        timestamp: Optional[str],
        nonce: Optional[str],
        signature: Optional[str],
    ) -> Dict[str, Any]:
        """
        Verify and apply a checkout callback. SUCCESS records the deposit for
        admin approval without crediting; FAILED/EXPIRED fail the intent.
        """
        if not self.binance.verify_webhook_signature(body, timestamp, nonce, signature):
            logger.warning("🔒 BINANCE_WEBHOOK_REJECTED: invalid signature")
            raise InvalidSignature()

        try:
            event = parse_binance_webhook(json.loads(body))
        except ValueError:
            raise ValidationError("Malformed webhook payload")
        if not event["merchant_order_id"] or not event["status"] or not event["event_id"]:
            raise ValidationError("Malformed webhook payload")

        info = WebhookEventInfo(
            provider=WebhookProvider.BINANCE_PAY,
            event_id=event["event_id"],
            event_type=event["status"],
            reference_id=event["merchant_order_id"],
        )

        try:
            with atomic_transaction(session):
                claim = WebhookIdempotencyService.claim_event(session, info)
                if claim.is_duplicate:
                    return {"status": "duplicate", "previous_status": claim.previous_status}

                if event["status"] == "SUCCESS":
                    result = self._record_successful_payment(session, event)
                elif event["status"] in ("FAILED", "EXPIRED"):
                    result = self._record_failed_payment(session, event)
                else:
                    logger.info(f"ℹ️ BINANCE_EVENT_IGNORED: status={event['status']}")
                    result = {"status": "ignored", "reason": f"unhandled status {event['status']}"}

                WebhookIdempotencyService.mark_completed(claim.ledger_entry, result)
                return result
        except IntegrityError:
            logger.info(f"🔁 BINANCE_WEBHOOK_DUPLICATE: {info.event_id} claimed concurrently")
            return {"status": "duplicate"}
        except SettlementError as e:
            WebhookIdempotencyService.record_failure(session, info, e.reason)
            raise

    def _record_successful_payment(self, session: Session, event: Dict[str, Any]) -> Dict[str, Any]:
        intent = lock_row(session, CryptoPaymentIntent, CryptoPaymentIntent.merchant_order_id == event["merchant_order_id"])
        if intent is None:
            raise NotFound("Payment intent not found")
        if intent.status == CryptoPaymentStatus.COMPLETED.value:
            return {"status": "already_completed", "merchant_order_id": intent.merchant_order_id}

        transaction_id = event["transaction_id"] or intent.merchant_order_id
        OptimisticLockManager(session).transition_status(
            CryptoPaymentIntent,
            intent.id,
            [CryptoPaymentStatus.PENDING.value, CryptoPaymentStatus.FAILED.value],
            CryptoPaymentStatus.COMPLETED.value,
            extra={"transaction_id": transaction_id, "completed_at": utcnow()},
        )

        amount = Money.of(intent.amount, intent.currency)
        company_wallet = WalletService.get_or_create_wallet(session, intent.company_id, Config.DEFAULT_CURRENCY)
        WalletService.record_transaction(
            session,
            company_wallet,
            TransactionType.CRYPTO_PAYMENT_PENDING,
            0,
            status=TransactionStatus.PENDING_APPROVAL,
            reference_type="crypto_payment",
            reference_id=intent.merchant_order_id,
            description=(
                f"Crypto payment received via Binance Pay: {transaction_id} - "
                f"Amount: {amount.format()} - Pending admin approval"
            ),
        )
        session.add(CryptoTransaction(
            company_id=intent.company_id,
            transaction_type="payment_in",
            amount=intent.amount,
            currency=intent.currency,
            transaction_hash=transaction_id,
            status="confirmed",
            related_payment_intent_id=intent.id,
            extra_data={"note": "Awaiting admin approval before wallet credit"},
        ))
        approval = CryptoPaymentApproval(
            crypto_payment_intent_id=intent.id,
            company_id=intent.company_id,
            amount=intent.amount,
            currency=intent.currency,
            payment_memo=transaction_id,
            status=ApprovalStatus.PENDING.value,
        )
        session.add(approval)
        session.flush()

        financial_audit_logger.log_financial_event(
            session,
            FinancialEventType.CRYPTO_PAYMENT_RECEIVED,
            EntityType.CRYPTO_PAYMENT,
            intent.merchant_order_id,
            user_id=intent.company_id,
            new_state={"status": CryptoPaymentStatus.COMPLETED.value, "amount": intent.amount, "approval_id": approval.id},
        )
        logger.info(
            f"🪙 CRYPTO_PAYMENT_RECEIVED: {intent.merchant_order_id} tx={transaction_id} "
            f"amount={amount} queued for approval {approval.id}"
        )
        return {"status": "completed", "merchant_order_id": intent.merchant_order_id, "approval_id": approval.id}

    def _record_failed_payment(self, session: Session, event: Dict[str, Any]) -> Dict[str, Any]:
        intent = lock_row(session, CryptoPaymentIntent, CryptoPaymentIntent.merchant_order_id == event["merchant_order_id"])
        if intent is None:
            return {"status": "ignored", "reason": "unknown merchant order"}
        if intent.status != CryptoPaymentStatus.PENDING.value:
            return {"status": "ignored", "reason": f"intent already {intent.status}"}

        OptimisticLockManager(session).transition_status(
            CryptoPaymentIntent,
            intent.id,
            [CryptoPaymentStatus.PENDING.value],
            CryptoPaymentStatus.FAILED.value,
            extra={"completed_at": utcnow()},
        )
        logger.warning(f"❌ CRYPTO_PAYMENT_FAILED: {intent.merchant_order_id} status={event['status']}")
        return {"status": "failed", "merchant_order_id": intent.merchant_order_id, "reason": event["status"]}

    async def approve_crypto_payment(
        self,
        session: Session,
        approval_id: int,
        admin_id: int,
        notes: Optional[str] = None,
    ) -> CryptoPaymentApproval:
        """Credit the company wallet for a received deposit; repeat approvals are no-ops"""
        with atomic_transaction(session):
            approval = lock_row(session, CryptoPaymentApproval, CryptoPaymentApproval.id == approval_id)
            if approval is None:
                raise NotFound("Crypto payment approval not found")
            if approval.status == ApprovalStatus.APPROVED.value:
                logger.info(f"🔁 CRYPTO_PAYMENT_ALREADY_APPROVED: approval={approval_id}")
                return approval
            if approval.status != ApprovalStatus.PENDING.value:
                raise InvalidStateTransition(f"Crypto payment approval is {approval.status}")

            intent = session.get(CryptoPaymentIntent, approval.crypto_payment_intent_id)
            if not Currency.parse(approval.currency).is_usd_stablecoin:
                raise ValidationError(f"Cannot credit a {approval.currency} deposit to a {Config.DEFAULT_CURRENCY} wallet")
            credit = Money.of(approval.amount, Config.DEFAULT_CURRENCY)
            OptimisticLockManager(session).transition_status(
                CryptoPaymentApproval,
                approval.id,
                [ApprovalStatus.PENDING.value],
                ApprovalStatus.APPROVED.value,
                extra={"admin_id": admin_id, "admin_notes": notes, "reviewed_at": utcnow()},
            )
            WalletService.move(
                session,
                approval.company_id,
                credit,
                TransactionType.CRYPTO_PAYMENT_APPROVED,
                idempotency_key=f"crypto_payment:{intent.merchant_order_id}",
                reference_type="crypto_payment",
                reference_id=intent.merchant_order_id,
                description=f"Crypto deposit approved ({approval.amount / 100:.2f} {approval.currency})",
            )
            financial_audit_logger.log_financial_event(
                session,
                FinancialEventType.CRYPTO_PAYMENT_APPROVED,
                EntityType.CRYPTO_PAYMENT,
                intent.merchant_order_id,
                user_id=approval.company_id,
                admin_id=admin_id,
                previous_state={"status": ApprovalStatus.PENDING.value},
                new_state={"status": ApprovalStatus.APPROVED.value, "credited": credit.amount_minor},
                description=notes,
            )

        logger.info(f"✅ CRYPTO_PAYMENT_APPROVED: approval={approval_id} company={approval.company_id} credited={credit}")
        await self.notifier.send_crypto_payment_status(approval.company_id, approval.id, "approved", credit)
        return approval

    async def reject_crypto_payment(
        self,
        session: Session,
        approval_id: int,
        admin_id: int,
        notes: Optional[str] = None,
    ) -> CryptoPaymentApproval:
        with atomic_transaction(session):
            approval = lock_row(session, CryptoPaymentApproval, CryptoPaymentApproval.id == approval_id)
            if approval is None:
                raise NotFound("Crypto payment approval not found")
            if approval.status == ApprovalStatus.REJECTED.value:
                return approval
            if approval.status != ApprovalStatus.PENDING.value:
                raise InvalidStateTransition(f"Crypto payment approval is {approval.status}")

            OptimisticLockManager(session).transition_status(
                CryptoPaymentApproval,
                approval.id,
                [ApprovalStatus.PENDING.value],
                ApprovalStatus.REJECTED.value,
                extra={"admin_id": admin_id, "admin_notes": notes, "reviewed_at": utcnow()},
            )
            financial_audit_logger.log_financial_event(
                session,
                FinancialEventType.CRYPTO_PAYMENT_REJECTED,
                EntityType.CRYPTO_PAYMENT,
                approval.crypto_payment_intent_id,
                user_id=approval.company_id,
                admin_id=admin_id,
                previous_state={"status": ApprovalStatus.PENDING.value},
                new_state={"status": ApprovalStatus.REJECTED.value},
                description=notes,
            )

        logger.info(f"🚫 CRYPTO_PAYMENT_REJECTED: approval={approval_id} by admin {admin_id}")
        await self.notifier.send_crypto_payment_status(
            approval.company_id, approval.id, "rejected", Money.of(approval.amount, Config.DEFAULT_CURRENCY)
        )
        return approval

    @staticmethod
    def list_payment_approvals(session: Session, status: Optional[str] = None, limit: int = 100) -> List[CryptoPaymentApproval]:
        stmt = select(CryptoPaymentApproval).order_by(CryptoPaymentApproval.created_at.desc()).limit(limit)
        if status:
            stmt = stmt.where(CryptoPaymentApproval.status == status)
        return list(session.execute(stmt).scalars())

    # ------------------------------------------------------------------
    # Researcher wallets
    # ------------------------------------------------------------------

    @staticmethod
    def add_user_wallet(session: Session, user_id: int, wallet_type: str, wallet_address: str, network: str) -> CryptoWallet:
        """
        Register a payout address. The address is unique platform-wide
        (keyed fingerprint) and stored encrypted.
        """
        require_user(session, user_id)
        network_name = canonical_network(network)
        if not network_name:
            raise ValidationError("Network is required")
        address = validate_address(wallet_address, network_name)

        encryption = get_wallet_encryption()
        fingerprint = encryption.fingerprint(address)
        if session.execute(
            select(CryptoWallet.id).where(CryptoWallet.address_fingerprint == fingerprint)
        ).scalar() is not None:
            logger.warning(f"⚠️ DUPLICATE_WALLET: {mask_address(address)} already registered")
            raise DuplicateWallet()

        try:
            with atomic_transaction(session):
                wallet = CryptoWallet(
                    user_id=user_id,
                    wallet_type=wallet_type or "external",
                    wallet_address=encryption.encrypt(address),
                    address_fingerprint=fingerprint,
                    network=network_name,
                    is_verified=False,
                    verification_status=WalletVerificationStatus.UNVERIFIED.value,
                )
                session.add(wallet)
                session.flush()

                # TODO: replace the auto-pass with a signed-message challenge before trusting addresses
                advance_verification(wallet, WalletVerificationStatus.CHALLENGE_SENT)
                advance_verification(wallet, WalletVerificationStatus.VERIFIED)

                financial_audit_logger.log_financial_event(
                    session,
                    FinancialEventType.CRYPTO_WALLET_ADDED,
                    EntityType.CRYPTO_WALLET,
                    wallet.id,
                    user_id=user_id,
                    new_state={"network": network_name, "address": mask_address(address)},
                )
        except IntegrityError:
            raise DuplicateWallet()

        logger.info(f"👛 CRYPTO_WALLET_ADDED: user={user_id} network={network_name} address={mask_address(address)}")
        return wallet

    @staticmethod
    def list_user_wallets(session: Session, user_id: int) -> List[Dict[str, Any]]:
        encryption = get_wallet_encryption()
        wallets = session.execute(
            select(CryptoWallet).where(CryptoWallet.user_id == user_id).order_by(CryptoWallet.id)
        ).scalars()
        return [
            {
                "id": wallet.id,
                "wallet_type": wallet.wallet_type,
                "wallet_address": encryption.decrypt_masked(wallet.wallet_address),
                "network": wallet.network,
                "is_verified": wallet.is_verified,
                "verification_status": wallet.verification_status,
                "created_at": wallet.created_at.isoformat() if wallet.created_at else None,
            }
            for wallet in wallets
        ]

    # ------------------------------------------------------------------
    # Withdrawals
    # ------------------------------------------------------------------

    def create_crypto_withdrawal(
        self,
        session: Session,
        user_id: int,
        amount: int,
        wallet_address: str,
        network: str,
        currency: str = "USDT",
    ) -> CryptoWithdrawal:
        """
        Record a withdrawal request for admin approval. Nothing is debited
        here; the request is mirrored by a pending_approval ledger row.
        """
        money = Money.of(amount, Config.DEFAULT_CURRENCY).require_positive()
        asset = Currency.parse(currency)
        if not asset.is_usd_stablecoin:
            raise ValidationError(f"{asset.value} withdrawals are not supported; withdraw in USDT or USDC")
        require_user(session, user_id)
        settings = self.get_network(session, network)

        if money.amount_minor < settings.min_withdrawal:
            raise ValidationError(f"Minimum withdrawal on {settings.display_name} is {Money.of(settings.min_withdrawal).format()}")
        if settings.max_withdrawal is not None and money.amount_minor > settings.max_withdrawal:
            raise ValidationError(f"Maximum withdrawal on {settings.display_name} is {Money.of(settings.max_withdrawal).format()}")

        with atomic_transaction(session):
            # Serializes this user's withdrawal requests while the guard counts them
            wallet = lock_row(
                session, Wallet, Wallet.owner_id == user_id, Wallet.currency == Config.DEFAULT_CURRENCY
            )
            if wallet is None or wallet.balance < money.amount_minor:
                logger.warning(
                    f"⚠️ WITHDRAWAL_INSUFFICIENT_BALANCE: user={user_id} "
                    f"balance={wallet.balance if wallet else 0} requested={money.amount_minor}"
                )
                raise InsufficientBalance()

            address = validate_address(wallet_address, settings.network)
            self.guard.check_crypto_withdrawal(session, user_id, money.amount_minor).raise_if_blocked()

            withdrawal = CryptoWithdrawal(
                withdrawal_id=str(uuid.uuid4()),
                user_id=user_id,
                wallet_id=wallet.id,
                amount=money.amount_minor,
                currency=asset.value,
                wallet_address=get_wallet_encryption().encrypt(address),
                network=settings.network,
                network_fee=settings.network_fee,
                provider="binance_pay",
                status=CryptoWithdrawalStatus.PENDING.value,
            )
            session.add(withdrawal)
            session.flush()

            WalletService.record_transaction(
                session,
                wallet,
                TransactionType.CRYPTO_WITHDRAWAL_REQUEST,
                -money.amount_minor,
                status=TransactionStatus.PENDING_APPROVAL,
                reference_type="crypto_withdrawal",
                reference_id=withdrawal.withdrawal_id,
                description=f"Crypto withdrawal request to {mask_address(address)} - Pending approval",
            )
            financial_audit_logger.log_financial_event(
                session,
                FinancialEventType.CRYPTO_WITHDRAWAL_REQUESTED,
                EntityType.CRYPTO_WITHDRAWAL,
                withdrawal.withdrawal_id,
                user_id=user_id,
                new_state={
                    "amount": money.amount_minor,
                    "network": settings.network,
                    "address": mask_address(address),
                    "status": CryptoWithdrawalStatus.PENDING.value,
                },
            )

        logger.info(
            f"🏧 CRYPTO_WITHDRAWAL_REQUESTED: {withdrawal.withdrawal_id} user={user_id} "
            f"amount={money} network={settings.network} to={mask_address(address)}"
        )
        return withdrawal

    @staticmethod
    def _request_entry(session: Session, withdrawal: CryptoWithdrawal) -> Optional[Transaction]:
        return session.execute(
            select(Transaction).where(
                Transaction.reference_type == "crypto_withdrawal",
                Transaction.reference_id == withdrawal.withdrawal_id,
                Transaction.transaction_type == TransactionType.CRYPTO_WITHDRAWAL_REQUEST.value,
            )
        ).scalars().first()

    async def update_withdrawal_status(
        self,
        session: Session,
        withdrawal_id: int,
        new_status: str,
        admin_id: Optional[int] = None,
        notes: Optional[str] = None,
        transaction_hash: Optional[str] = None,
        actor_id: Optional[int] = None,
    ) -> CryptoWithdrawal:
        """
        Admin review and completion of a withdrawal, or owner cancellation.

        pending → approved debits the wallet; approved/processing → failed
        credits it back; rejected and cancelled never touched it.
        """
        if new_status not in WITHDRAWAL_TRANSITIONS:
            raise ValidationError(f"Unknown withdrawal status: {new_status}")

        with atomic_transaction(session):
            withdrawal = lock_row(session, CryptoWithdrawal, CryptoWithdrawal.id == withdrawal_id)
            if withdrawal is None:
                raise NotFound("Withdrawal not found")

            if new_status == CryptoWithdrawalStatus.CANCELLED.value:
                if actor_id is None or actor_id != withdrawal.user_id:
                    raise NotAuthorized("Only the requester can cancel a withdrawal")
            elif admin_id is None:
                raise NotAuthorized("Withdrawal review requires an administrator")

            previous_status = withdrawal.status
            if previous_status not in WITHDRAWAL_TRANSITIONS[new_status]:
                raise InvalidStateTransition(f"Withdrawal cannot move from {previous_status} to {new_status}")
            if new_status == CryptoWithdrawalStatus.COMPLETED.value and not (transaction_hash or withdrawal.transaction_hash):
                raise ValidationError("Transaction hash is required to complete a withdrawal")

            extra: Dict[str, Any] = {}
            if admin_id is not None:
                extra.update(reviewed_by=admin_id, reviewed_at=utcnow())
            if notes:
                extra["admin_notes"] = notes
            if transaction_hash:
                extra["transaction_hash"] = transaction_hash
            if new_status == CryptoWithdrawalStatus.COMPLETED.value:
                extra["completed_at"] = utcnow()

            OptimisticLockManager(session).transition_status(
                CryptoWithdrawal, withdrawal.id, [previous_status], new_status, extra=extra
            )
            self._apply_withdrawal_ledger(session, withdrawal, previous_status, new_status)

            financial_audit_logger.log_financial_event(
                session,
                FinancialEventType.CRYPTO_WITHDRAWAL_STATUS_CHANGED,
                EntityType.CRYPTO_WITHDRAWAL,
                withdrawal.withdrawal_id,
                user_id=withdrawal.user_id,
                admin_id=admin_id,
                previous_state={"status": previous_status},
                new_state={"status": new_status, "transaction_hash": transaction_hash},
                description=notes,
            )

        logger.info(
            f"🏧 CRYPTO_WITHDRAWAL_STATUS: {withdrawal.withdrawal_id} {previous_status} → {new_status} "
            f"admin={admin_id}"
        )
        if new_status in (
            CryptoWithdrawalStatus.REJECTED.value,
            CryptoWithdrawalStatus.COMPLETED.value,
            CryptoWithdrawalStatus.FAILED.value,
        ):
            await self.notifier.send_withdrawal_status(withdrawal.user_id, withdrawal.withdrawal_id, new_status, notes)
        return withdrawal

    def _apply_withdrawal_ledger(self, session: Session, withdrawal: CryptoWithdrawal, previous_status: str, new_status: str) -> None:
        entry = self._request_entry(session, withdrawal)

        if new_status == CryptoWithdrawalStatus.APPROVED.value:
            # Fails with InsufficientBalance if the funds were spent since the request
            WalletService.apply_delta(session, withdrawal.wallet_id, -withdrawal.amount)
            if entry is not None:
                entry.status = TransactionStatus.COMPLETED.value
                entry.transaction_type = TransactionType.CRYPTO_WITHDRAWAL_APPROVED.value
            return

        if new_status in (CryptoWithdrawalStatus.REJECTED.value, CryptoWithdrawalStatus.CANCELLED.value):
            if entry is not None:
                entry.status = TransactionStatus.CANCELLED.value
            return

        if new_status == CryptoWithdrawalStatus.FAILED.value:
            WalletService.move(
                session,
                withdrawal.user_id,
                Money.of(withdrawal.amount, Config.DEFAULT_CURRENCY),
                TransactionType.CRYPTO_WITHDRAWAL_REVERSAL,
                idempotency_key=f"crypto_withdrawal_reversal:{withdrawal.withdrawal_id}",
                reference_type="crypto_withdrawal",
                reference_id=withdrawal.withdrawal_id,
                description="Crypto withdrawal failed - funds returned",
            )
            return

        if new_status == CryptoWithdrawalStatus.COMPLETED.value:
            session.add(CryptoTransaction(
                user_id=withdrawal.user_id,
                transaction_type="withdrawal_out",
                amount=withdrawal.amount,
                currency=withdrawal.currency,
                transaction_hash=withdrawal.transaction_hash,
                status="confirmed",
                related_withdrawal_id=withdrawal.id,
                extra_data={"network": withdrawal.network, "network_fee": withdrawal.network_fee},
            ))

    @staticmethod
    def list_withdrawals(
        session: Session,
        user_id: Optional[int] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> List[CryptoWithdrawal]:
        stmt = select(CryptoWithdrawal).order_by(CryptoWithdrawal.created_at.desc(), CryptoWithdrawal.id.desc()).limit(limit)
        if user_id is not None:
            stmt = stmt.where(CryptoWithdrawal.user_id == user_id)
        if status:
            stmt = stmt.where(CryptoWithdrawal.status == status)
        return list(session.execute(stmt).scalars())

    @staticmethod
    def list_payment_intents(
        session: Session,
        company_id: int,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> List[CryptoPaymentIntent]:
        stmt = (
            select(CryptoPaymentIntent)
            .where(CryptoPaymentIntent.company_id == company_id)
            .order_by(CryptoPaymentIntent.created_at.desc(), CryptoPaymentIntent.id.desc())
            .limit(limit)
        )
        if status:
            stmt = stmt.where(CryptoPaymentIntent.status == status)
        return list(session.execute(stmt).scalars())

    @staticmethod
    def list_crypto_transactions(session: Session, user_id: int, limit: int = 50) -> List[CryptoTransaction]:
        """Deposits a company paid in and withdrawals a user took out"""
        return list(session.execute(
            select(CryptoTransaction)
            .where(or_(CryptoTransaction.user_id == user_id, CryptoTransaction.company_id == user_id))
            .order_by(CryptoTransaction.created_at.desc(), CryptoTransaction.id.desc())
            .limit(limit)
        ).scalars())

    @staticmethod
    def get_crypto_statistics(session: Session) -> Dict[str, int]:
        payments_count, payments_volume = session.execute(
            select(func.count(CryptoPaymentIntent.id), func.coalesce(func.sum(CryptoPaymentIntent.amount), 0))
            .where(CryptoPaymentIntent.status == CryptoPaymentStatus.COMPLETED.value)
        ).one()
        withdrawals_count, withdrawals_volume = session.execute(
            select(func.count(CryptoWithdrawal.id), func.coalesce(func.sum(CryptoWithdrawal.amount), 0))
            .where(CryptoWithdrawal.status == CryptoWithdrawalStatus.COMPLETED.value)
        ).one()
        pending = session.execute(
            select(func.count(CryptoWithdrawal.id)).where(CryptoWithdrawal.status == CryptoWithdrawalStatus.PENDING.value)
        ).scalar() or 0
        return {
            "total_crypto_payments": int(payments_count),
            "total_crypto_withdrawals": int(withdrawals_count),
            "pending_withdrawals": int(pending),
            "total_volume": int(payments_volume) + int(withdrawals_volume),
        }


crypto_settlement_service = CryptoSettlementService()
