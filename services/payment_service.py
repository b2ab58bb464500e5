"""
Fiat Settlement Service
Deposits into company wallets, bounty escrow with platform commission, and
researcher payouts through the configured payout rails.

Money moves only inside atomic_transaction blocks; network calls to the
payment provider and payout rails happen between committed steps so no row
lock is held across a provider round-trip.
"""

import json
import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, List, NamedTuple, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from models import (
    PaymentIntent, PaymentIntentStatus, EscrowAccount, EscrowStatus, Payout, PayoutStatus,
    PaymentMethod, PaymentMethodType, Commission, Transaction, TransactionType, User, UserType, Wallet,
    utcnow,
)
from services.commission_service import CommissionService
from services.fraud_guard import FraudGuard, fraud_guard as default_fraud_guard
from services.marketplace_lookup import require_user, require_submission, submission_company_id
from services.notification_service import NotificationService, notification_service as default_notifier
from services.payout_rails import PayoutRail, PayoutResult, get_rail
from services.stripe_service import StripeService
from services.wallet_service import WalletService
from services.webhook_idempotency_service import (
    WebhookIdempotencyService, WebhookEventInfo, WebhookProvider,
)
from utils.atomic_transactions import atomic_transaction, lock_row
from utils.exceptions import (
    SettlementError, ValidationError, NotFound, NotAuthorized, InsufficientBalance,
    PaymentNotCompleted, EscrowNotFound, EscrowNotHeld, InvalidStateTransition,
    InvalidSignature, ProviderError,
)
from utils.financial_audit_logger import financial_audit_logger, FinancialEventType, EntityType
from utils.money import Money
from utils.optimistic_locking import OptimisticLockManager

logger = logging.getLogger(__name__)

# Payouts in these states still own the escrow's funds
LIVE_PAYOUT_STATUSES = (
    PayoutStatus.PENDING.value,
    PayoutStatus.PROCESSING.value,
    PayoutStatus.COMPLETED.value,
)

# Payout method catalogue installed on first start
DEFAULT_PAYMENT_METHODS = (
    {"name": "PayPal", "type": PaymentMethodType.DIGITAL_WALLET.value},
    {"name": "Bank Transfer", "type": PaymentMethodType.BANK_TRANSFER.value},
    {"name": "USDT", "type": PaymentMethodType.CRYPTO.value},
    {"name": "Platform Balance", "type": PaymentMethodType.PLATFORM_BALANCE.value},
)


class PaymentIntentHandle(NamedTuple):
    """Persisted intent plus the secret the client confirms it with"""
    intent: PaymentIntent
    client_secret: Optional[str]


class CompanyWallet(NamedTuple):
    wallet: Wallet
    company: User


class PaymentService:
    """Fiat deposit, escrow and payout orchestration"""

    def __init__(
        self,
        stripe: Optional[StripeService] = None,
        rails: Optional[Dict[str, PayoutRail]] = None,
        notifier: Optional[NotificationService] = None,
        guard: Optional[FraudGuard] = None,
    ):
        self._stripe = stripe
        self.rails = rails
        self.notifier = notifier or default_notifier
        self.guard = guard or default_fraud_guard

    @property
    def stripe(self) -> StripeService:
        if self._stripe is None:
            self._stripe = StripeService()
        return self._stripe

    # ------------------------------------------------------------------
    # Deposits
    # ------------------------------------------------------------------

    async def create_payment_intent(
        self,
        session: Session,
        company_id: int,
        amount: int,
        currency: str = "USD",
        purpose: str = "wallet_topup",
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntentHandle:
        """
        Open a deposit with the payment provider and persist it as pending.

        Raises RateLimitExceeded after 10 intents per company per hour.
        """
        money = Money.of(amount, currency).require_positive()
        require_user(session, company_id, UserType.COMPANY)
        self.guard.check_payment_intent(company_id).raise_if_blocked()

        provider_intent = await self.stripe.create_payment_intent(
            money.amount_minor,
            money.currency.value,
            metadata={"company_id": company_id, "purpose": purpose},
            idempotency_key=idempotency_key,
        )

        with atomic_transaction(session):
            intent = PaymentIntent(
                company_id=company_id,
                provider="stripe",
                provider_intent_id=provider_intent["id"],
                amount=money.amount_minor,
                currency=money.currency.value,
                purpose=purpose,
                status=PaymentIntentStatus.PENDING.value,
            )
            session.add(intent)
            session.flush()
            financial_audit_logger.log_financial_event(
                session,
                FinancialEventType.PAYMENT_INTENT_CREATED,
                EntityType.PAYMENT_INTENT,
                intent.provider_intent_id,
                user_id=company_id,
                new_state={"amount": money.amount_minor, "currency": money.currency.value, "purpose": purpose},
            )

        logger.info(f"💳 PAYMENT_INTENT_CREATED: {intent.provider_intent_id} company={company_id} amount={money}")
        return PaymentIntentHandle(intent=intent, client_secret=provider_intent.get("client_secret"))

    async def confirm_payment(self, session: Session, provider_intent_id: str, company_id: Optional[int] = None) -> PaymentIntent:
        """Pull the provider-side status and credit the company wallet once"""
        intent = self._get_intent(session, provider_intent_id)
        if company_id is not None and intent.company_id != company_id:
            raise NotAuthorized("Payment intent belongs to another company")

        provider_intent = await self.stripe.retrieve_payment_intent(provider_intent_id)
        if provider_intent.get("status") != "succeeded":
            logger.info(
                f"⏳ PAYMENT_NOT_COMPLETED: {provider_intent_id} provider status={provider_intent.get('status')}"
            )
            raise PaymentNotCompleted()

        try:
            with atomic_transaction(session):
                return self._apply_succeeded_intent(session, provider_intent)
        except IntegrityError:
            # A concurrent confirmation inserted the same idempotency key first
            logger.info(f"🔁 PAYMENT_ALREADY_CREDITED: {provider_intent_id} (concurrent confirmation)")
            return self._get_intent(session, provider_intent_id)

    def _get_intent(self, session: Session, provider_intent_id: str) -> PaymentIntent:
        intent = session.execute(
            select(PaymentIntent).where(PaymentIntent.provider_intent_id == provider_intent_id)
        ).scalars().first()
        if intent is None:
            raise NotFound("Payment intent not found")
        return intent

    def _apply_succeeded_intent(self, session: Session, provider_intent: Dict[str, Any]) -> PaymentIntent:
        """Transition to succeeded and credit; caller owns the transaction"""
        provider_intent_id = provider_intent["id"]
        intent = lock_row(session, PaymentIntent, PaymentIntent.provider_intent_id == provider_intent_id)
        if intent is None:
            raise NotFound("Payment intent not found")

        if intent.status == PaymentIntentStatus.SUCCEEDED.value:
            logger.info(f"🔁 PAYMENT_ALREADY_CONFIRMED: {provider_intent_id}")
            return intent
        if intent.status == PaymentIntentStatus.CANCELED.value:
            raise InvalidStateTransition("Payment intent was canceled")
        if intent.status == PaymentIntentStatus.FAILED.value:
            # The provider captured funds after an earlier failed attempt
            logger.warning(f"⚠️ PAYMENT_SUCCEEDED_AFTER_FAILURE: {provider_intent_id}")

        amount_received = int(provider_intent.get("amount_received") or provider_intent.get("amount") or intent.amount)
        credit = Money.of(amount_received, intent.currency).require_positive("amount_received")
        idempotency_key = f"stripe:{provider_intent_id}"

        OptimisticLockManager(session).transition_status(
            PaymentIntent,
            intent.id,
            [PaymentIntentStatus.PENDING.value, PaymentIntentStatus.FAILED.value],
            PaymentIntentStatus.SUCCEEDED.value,
            extra={"amount_received": amount_received, "confirmed_at": utcnow(), "failure_reason": None},
        )

        if WalletService.find_by_idempotency_key(session, idempotency_key) is not None:
            logger.info(f"🔁 PAYMENT_ALREADY_CREDITED: {provider_intent_id}")
        else:
            WalletService.move(
                session,
                intent.company_id,
                credit,
                TransactionType.DEPOSIT,
                idempotency_key=idempotency_key,
                reference_type="payment_intent",
                reference_id=provider_intent_id,
                description=f"Deposit via Stripe ({intent.purpose})",
            )

        financial_audit_logger.log_financial_event(
            session,
            FinancialEventType.PAYMENT_CONFIRMED,
            EntityType.PAYMENT_INTENT,
            provider_intent_id,
            user_id=intent.company_id,
            previous_state={"status": PaymentIntentStatus.PENDING.value},
            new_state={"status": PaymentIntentStatus.SUCCEEDED.value, "amount_received": amount_received},
        )
        logger.info(f"✅ PAYMENT_CONFIRMED: {provider_intent_id} company={intent.company_id} credited={credit}")
        return intent

    def _apply_failed_intent(self, session: Session, provider_intent: Dict[str, Any], status: PaymentIntentStatus) -> Dict[str, Any]:
        provider_intent_id = provider_intent["id"]
        intent = lock_row(session, PaymentIntent, PaymentIntent.provider_intent_id == provider_intent_id)
        if intent is None:
            return {"status": "ignored", "reason": "unknown payment intent"}
        if intent.status != PaymentIntentStatus.PENDING.value:
            logger.info(f"ℹ️ PAYMENT_STATUS_UNCHANGED: {provider_intent_id} already {intent.status}")
            return {"status": "ignored", "reason": f"intent already {intent.status}"}

        error = provider_intent.get("last_payment_error") or {}
        reason = error.get("message") or provider_intent.get("cancellation_reason") or status.value
        OptimisticLockManager(session).transition_status(
            PaymentIntent,
            intent.id,
            [PaymentIntentStatus.PENDING.value],
            status.value,
            extra={"failure_reason": reason},
        )
        financial_audit_logger.log_financial_event(
            session,
            FinancialEventType.PAYMENT_FAILED,
            EntityType.PAYMENT_INTENT,
            provider_intent_id,
            user_id=intent.company_id,
            previous_state={"status": PaymentIntentStatus.PENDING.value},
            new_state={"status": status.value, "failure_reason": reason},
        )
        logger.warning(f"❌ PAYMENT_{status.value.upper()}: {provider_intent_id} reason={reason}")
        return {"status": status.value, "payment_intent": provider_intent_id}

    def handle_provider_webhook(self, session: Session, payload: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        """
        Apply a signed Stripe event. The event claim and the ledger mutation
        share one transaction, so a redelivered event is a no-op.
        """
        if not self.stripe.verify_webhook_signature(payload, signature_header):
            logger.warning("🔒 STRIPE_WEBHOOK_REJECTED: invalid signature")
            raise InvalidSignature()

        try:
            event = json.loads(payload)
        except ValueError:
            raise ValidationError("Malformed webhook payload")

        event_type = event.get("type", "")
        provider_intent = (event.get("data") or {}).get("object") or {}
        if not event.get("id") or not provider_intent.get("id"):
            raise ValidationError("Malformed webhook payload")

        info = WebhookEventInfo(
            provider=WebhookProvider.STRIPE,
            event_id=event["id"],
            event_type=event_type,
            reference_id=provider_intent["id"],
        )

        try:
            with atomic_transaction(session):
                claim = WebhookIdempotencyService.claim_event(session, info)
                if claim.is_duplicate:
                    return {"status": "duplicate", "previous_status": claim.previous_status}

                if event_type == "payment_intent.succeeded":
                    try:
                        intent = self._apply_succeeded_intent(session, provider_intent)
                        result = {"status": intent.status, "payment_intent": provider_intent["id"]}
                    except NotFound:
                        result = {"status": "ignored", "reason": "unknown payment intent"}
                elif event_type == "payment_intent.payment_failed":
                    result = self._apply_failed_intent(session, provider_intent, PaymentIntentStatus.FAILED)
                elif event_type == "payment_intent.canceled":
                    result = self._apply_failed_intent(session, provider_intent, PaymentIntentStatus.CANCELED)
                else:
                    logger.info(f"ℹ️ STRIPE_EVENT_IGNORED: {event_type}")
                    result = {"status": "ignored", "reason": f"unhandled event type {event_type}"}

                WebhookIdempotencyService.mark_completed(claim.ledger_entry, result)
                return result
        except IntegrityError:
            logger.info(f"🔁 STRIPE_WEBHOOK_DUPLICATE: {info.event_id} claimed concurrently")
            return {"status": "duplicate"}
        except SettlementError as e:
            WebhookIdempotencyService.record_failure(session, info, e.reason)
            raise

    # ------------------------------------------------------------------
    # Escrow
    # ------------------------------------------------------------------

    def create_escrow_for_bounty(
        self,
        session: Session,
        submission_id: int,
        bounty_amount: int,
        company_id: int,
        currency: str = "USD",
        rate_bps: Optional[int] = None,
    ) -> EscrowAccount:
        """
        Debit the company wallet into a held escrow. Debit, escrow row,
        commission record and ledger entry commit together or not at all.
        """
        gross = Money.of(bounty_amount, currency).require_positive("bounty_amount")
        rate = Config.COMMISSION_RATE_BPS if rate_bps is None else rate_bps
        commission, payout = CommissionService.split_money(gross, rate)
        if payout.amount_minor <= 0:
            raise ValidationError("Bounty amount leaves nothing for the researcher after commission")

        submission = require_submission(session, submission_id)
        if submission_company_id(session, submission) != company_id:
            raise NotAuthorized("Submission does not belong to this company's program")

        with atomic_transaction(session):
            existing = session.execute(
                select(EscrowAccount.id).where(EscrowAccount.submission_id == submission_id)
            ).scalar()
            if existing is not None:
                raise InvalidStateTransition("Escrow already exists for this submission")

            wallet = WalletService.get_wallet(session, company_id, gross.currency.value)
            if wallet is None or wallet.balance < gross.amount_minor:
                logger.warning(
                    f"⚠️ ESCROW_INSUFFICIENT_BALANCE: company={company_id} "
                    f"balance={wallet.balance if wallet else 0} required={gross.amount_minor}"
                )
                raise InsufficientBalance()

            now = utcnow()
            escrow = EscrowAccount(
                submission_id=submission_id,
                company_id=company_id,
                researcher_id=submission.user_id,
                amount=gross.amount_minor,
                platform_commission=commission.amount_minor,
                researcher_payout=payout.amount_minor,
                commission_rate_bps=rate,
                currency=gross.currency.value,
                status=EscrowStatus.HELD.value,
                expires_at=now + timedelta(days=Config.ESCROW_EXPIRY_DAYS),
            )
            session.add(escrow)
            session.flush()

            WalletService.move(
                session,
                company_id,
                -gross,
                TransactionType.ESCROW_HOLD,
                paid_out=gross.amount_minor,
                reference_type="escrow",
                reference_id=escrow.id,
                description=f"Bounty escrow for submission {submission_id}",
            )

            session.add(Commission(
                submission_id=submission_id,
                escrow_account_id=escrow.id,
                total_amount=gross.amount_minor,
                commission_rate=rate,
                commission_amount=commission.amount_minor,
                currency=gross.currency.value,
            ))

            financial_audit_logger.log_financial_event(
                session,
                FinancialEventType.ESCROW_CREATED,
                EntityType.ESCROW,
                escrow.id,
                user_id=company_id,
                new_state={
                    "submission_id": submission_id,
                    "amount": gross.amount_minor,
                    "platform_commission": commission.amount_minor,
                    "researcher_payout": payout.amount_minor,
                },
            )

        logger.info(
            f"🔒 ESCROW_CREATED: submission={submission_id} amount={gross} "
            f"commission={commission} payout={payout}"
        )
        return escrow

    @staticmethod
    def get_escrow(session: Session, submission_id: int) -> EscrowAccount:
        escrow = session.execute(
            select(EscrowAccount).where(EscrowAccount.submission_id == submission_id)
        ).scalars().first()
        if escrow is None:
            raise EscrowNotFound()
        return escrow

    def _validate_payment_method(self, session: Session, payment_method_id: int, details: Optional[Dict[str, Any]]) -> PaymentMethod:
        method = session.get(PaymentMethod, payment_method_id)
        if method is None or not method.is_active:
            raise ValidationError("Payment method not available")
        if method.type != PaymentMethodType.PLATFORM_BALANCE.value:
            get_rail(method.type, self.rails).validate_details(details)
        return method

    async def release_escrow_and_payout(
        self,
        session: Session,
        submission_id: int,
        payment_method_id: int,
        payment_details: Optional[Dict[str, Any]] = None,
        requires_review: bool = False,
        review_reason: Optional[str] = None,
    ) -> Payout:
        """
        held → released plus one pending payout for the researcher's share.
        Payouts flagged for review stop here; others are dispatched at once.
        """
        self._validate_payment_method(session, payment_method_id, payment_details)

        with atomic_transaction(session):
            escrow = lock_row(session, EscrowAccount, EscrowAccount.submission_id == submission_id)
            if escrow is None:
                raise EscrowNotFound()
            if escrow.status != EscrowStatus.HELD.value:
                raise EscrowNotHeld()

            OptimisticLockManager(session).versioned_update(
                EscrowAccount,
                escrow.id,
                {"status": EscrowStatus.RELEASED.value, "released_at": utcnow()},
                escrow.version,
            )

            payout = Payout(
                payout_id=str(uuid.uuid4()),
                escrow_account_id=escrow.id,
                user_id=escrow.researcher_id,
                submission_id=submission_id,
                amount=escrow.researcher_payout,
                currency=escrow.currency,
                payment_method_id=payment_method_id,
                payment_method_details=payment_details,
                status=PayoutStatus.PENDING.value,
                requires_review=requires_review,
                review_reason=review_reason,
            )
            session.add(payout)
            session.flush()

            financial_audit_logger.log_financial_event(
                session,
                FinancialEventType.ESCROW_RELEASED,
                EntityType.ESCROW,
                escrow.id,
                user_id=escrow.researcher_id,
                previous_state={"status": EscrowStatus.HELD.value},
                new_state={"status": EscrowStatus.RELEASED.value, "payout_id": payout.payout_id},
            )
            financial_audit_logger.log_financial_event(
                session,
                FinancialEventType.PAYOUT_CREATED,
                EntityType.PAYOUT,
                payout.payout_id,
                user_id=escrow.researcher_id,
                new_state={"amount": payout.amount, "requires_review": requires_review},
                description=review_reason,
            )

        logger.info(
            f"🔓 ESCROW_RELEASED: submission={submission_id} payout={payout.payout_id} "
            f"amount={payout.amount} review={requires_review}"
        )

        if requires_review:
            logger.info(f"🔍 PAYOUT_HELD_FOR_REVIEW: {payout.payout_id} ({review_reason})")
            return payout
        return await self.process_payout(session, payout.id)

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------

    async def process_payout(self, session: Session, payout_id: int) -> Payout:
        """
        pending → processing → completed | failed.

        Provider errors and timeouts end in `failed` with a reason; the
        payout is returned either way and never raised to the caller.
        """
        with atomic_transaction(session):
            payout = lock_row(session, Payout, Payout.id == payout_id)
            if payout is None:
                raise NotFound("Payout not found")
            if payout.requires_review and payout.reviewed_by is None:
                raise InvalidStateTransition("Payout is awaiting manual review")

            OptimisticLockManager(session).transition_status(
                Payout,
                payout.id,
                [PayoutStatus.PENDING.value],
                PayoutStatus.PROCESSING.value,
                extra={"processed_at": utcnow()},
            )

        method = payout.payment_method
        amount = Money.of(payout.amount, payout.currency)
        logger.info(f"💸 PAYOUT_PROCESSING: {payout.payout_id} via {method.type} amount={amount}")

        if method.type == PaymentMethodType.PLATFORM_BALANCE.value:
            return await self._complete_to_platform_balance(session, payout, amount, method)

        result = await self._send_via_rail(payout, method)
        return await self._finish_payout(session, payout, amount, method, result)

    async def _send_via_rail(self, payout: Payout, method: PaymentMethod) -> PayoutResult:
        try:
            rail = get_rail(method.type, self.rails)
            return await rail.send(payout.payout_id, payout.amount, payout.currency, payout.payment_method_details or {})
        except ProviderError as e:
            logger.error(f"❌ PAYOUT_PROVIDER_ERROR: {payout.payout_id} {e.provider}: {e.detail}")
            return PayoutResult(success=False, failure_reason=e.reason)
        except ValidationError as e:
            return PayoutResult(success=False, failure_reason=e.reason)
        except Exception as e:
            logger.exception(f"❌ PAYOUT_UNEXPECTED_ERROR: {payout.payout_id}: {e}")
            return PayoutResult(success=False, failure_reason="Unexpected payout error")

    async def _complete_to_platform_balance(self, session: Session, payout: Payout, amount: Money, method: PaymentMethod) -> Payout:
        with atomic_transaction(session):
            entry = WalletService.move(
                session,
                payout.user_id,
                amount,
                TransactionType.PAYOUT_CREDIT,
                paid_out=amount.amount_minor,
                idempotency_key=f"payout:{payout.payout_id}",
                reference_type="payout",
                reference_id=payout.payout_id,
                description=f"Bounty payout for submission {payout.submission_id}",
            )
            self._mark_completed(session, payout, entry.transaction_id)

        logger.info(f"✅ PAYOUT_COMPLETED: {payout.payout_id} credited to platform balance of user {payout.user_id}")
        await self.notifier.send_payout_completed(payout.user_id, amount, method.name, payout.payout_id)
        return payout

    def _mark_completed(self, session: Session, payout: Payout, external_transaction_id: Optional[str]) -> None:
        OptimisticLockManager(session).transition_status(
            Payout,
            payout.id,
            [PayoutStatus.PROCESSING.value],
            PayoutStatus.COMPLETED.value,
            extra={"external_transaction_id": external_transaction_id, "completed_at": utcnow()},
        )
        financial_audit_logger.log_financial_event(
            session,
            FinancialEventType.PAYOUT_COMPLETED,
            EntityType.PAYOUT,
            payout.payout_id,
            user_id=payout.user_id,
            previous_state={"status": PayoutStatus.PROCESSING.value},
            new_state={"status": PayoutStatus.COMPLETED.value, "external_transaction_id": external_transaction_id},
        )

    async def _finish_payout(self, session: Session, payout: Payout, amount: Money, method: PaymentMethod, result: PayoutResult) -> Payout:
        with atomic_transaction(session):
            if result.success:
                self._mark_completed(session, payout, result.external_transaction_id)
                wallet = WalletService.get_or_create_wallet(session, payout.user_id, payout.currency)
                WalletService.apply_delta(session, wallet.id, 0, paid_out=payout.amount)
            else:
                reason = result.failure_reason or "Payout failed"
                OptimisticLockManager(session).transition_status(
                    Payout,
                    payout.id,
                    [PayoutStatus.PROCESSING.value],
                    PayoutStatus.FAILED.value,
                    extra={"failure_reason": reason},
                )
                financial_audit_logger.log_financial_event(
                    session,
                    FinancialEventType.PAYOUT_FAILED,
                    EntityType.PAYOUT,
                    payout.payout_id,
                    user_id=payout.user_id,
                    previous_state={"status": PayoutStatus.PROCESSING.value},
                    new_state={"status": PayoutStatus.FAILED.value, "failure_reason": reason},
                )

        if result.success:
            logger.info(f"✅ PAYOUT_COMPLETED: {payout.payout_id} external={result.external_transaction_id}")
            await self.notifier.send_payout_completed(payout.user_id, amount, method.name, payout.payout_id)
        else:
            logger.warning(f"❌ PAYOUT_FAILED: {payout.payout_id} reason={payout.failure_reason}")
        return payout

    async def request_payout(
        self,
        session: Session,
        researcher_id: int,
        submission_id: int,
        payment_method_id: int,
        payment_details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
    ) -> Payout:
        """Researcher-initiated release, gated by ownership and the fraud guard"""
        submission = require_submission(session, submission_id)
        if submission.user_id != researcher_id:
            raise NotAuthorized("Only the submission's researcher can request this payout")

        escrow = self.get_escrow(session, submission_id)
        if escrow.status != EscrowStatus.HELD.value:
            raise EscrowNotHeld()

        check = self.guard.check_payout_request(session, researcher_id, escrow.researcher_payout, ip_address)
        check.raise_if_blocked()

        return await self.release_escrow_and_payout(
            session,
            submission_id,
            payment_method_id,
            payment_details,
            requires_review=check.requires_review,
            review_reason=check.reason if check.requires_review else None,
        )

    async def approve_payout_review(self, session: Session, payout_id: int, admin_id: int) -> Payout:
        with atomic_transaction(session):
            payout = lock_row(session, Payout, Payout.id == payout_id)
            if payout is None:
                raise NotFound("Payout not found")
            if (
                payout.status != PayoutStatus.PENDING.value
                or not payout.requires_review
                or payout.reviewed_by is not None
            ):
                raise InvalidStateTransition("Payout is not awaiting review")

            payout.reviewed_by = admin_id
            financial_audit_logger.log_financial_event(
                session,
                FinancialEventType.PAYOUT_REVIEW_APPROVED,
                EntityType.PAYOUT,
                payout.payout_id,
                user_id=payout.user_id,
                admin_id=admin_id,
                description=payout.review_reason,
            )

        logger.info(f"👮 PAYOUT_REVIEW_APPROVED: {payout.payout_id} by admin {admin_id}")
        return await self.process_payout(session, payout.id)

    @staticmethod
    def _live_payout_count(session: Session, escrow_id: int) -> int:
        return len(session.execute(
            select(Payout.id).where(
                Payout.escrow_account_id == escrow_id,
                Payout.status.in_(LIVE_PAYOUT_STATUSES),
            )
        ).scalars().all())

    def _failed_payout_with_released_escrow(self, session: Session, payout_id: int) -> tuple:
        payout = lock_row(session, Payout, Payout.id == payout_id)
        if payout is None:
            raise NotFound("Payout not found")
        if payout.status != PayoutStatus.FAILED.value:
            raise InvalidStateTransition("Only failed payouts can be recovered")

        escrow = lock_row(session, EscrowAccount, EscrowAccount.id == payout.escrow_account_id)
        if escrow is None:
            raise EscrowNotFound()
        if escrow.status != EscrowStatus.RELEASED.value:
            raise InvalidStateTransition(f"Escrow is {escrow.status}, not awaiting payout")
        if self._live_payout_count(session, escrow.id):
            raise InvalidStateTransition("Escrow already has an active or completed payout")
        return payout, escrow

    async def retry_payout(self, session: Session, payout_id: int, admin_id: int) -> Payout:
        """Re-issue a failed payout as a new payout row for the same escrow"""
        with atomic_transaction(session):
            original, escrow = self._failed_payout_with_released_escrow(session, payout_id)
            retry = Payout(
                payout_id=str(uuid.uuid4()),
                escrow_account_id=escrow.id,
                user_id=original.user_id,
                submission_id=original.submission_id,
                amount=original.amount,
                currency=original.currency,
                payment_method_id=original.payment_method_id,
                payment_method_details=original.payment_method_details,
                status=PayoutStatus.PENDING.value,
                reviewed_by=admin_id,
                retry_of_id=original.id,
            )
            session.add(retry)
            session.flush()
            financial_audit_logger.log_financial_event(
                session,
                FinancialEventType.PAYOUT_RETRIED,
                EntityType.PAYOUT,
                retry.payout_id,
                user_id=retry.user_id,
                admin_id=admin_id,
                previous_state={"payout_id": original.payout_id, "failure_reason": original.failure_reason},
                new_state={"status": PayoutStatus.PENDING.value},
            )

        logger.info(f"🔄 PAYOUT_RETRY: {original.payout_id} → {retry.payout_id} by admin {admin_id}")
        return await self.process_payout(session, retry.id)

    def mark_escrow_refundable(self, session: Session, payout_id: int, admin_id: Optional[int] = None) -> EscrowAccount:
        """Failed payout with no live successor: flag its escrow for refund"""
        with atomic_transaction(session):
            payout, escrow = self._failed_payout_with_released_escrow(session, payout_id)
            OptimisticLockManager(session).versioned_update(
                EscrowAccount,
                escrow.id,
                {"status": EscrowStatus.REFUNDABLE.value},
                escrow.version,
            )
            financial_audit_logger.log_financial_event(
                session,
                FinancialEventType.ESCROW_MARKED_REFUNDABLE,
                EntityType.ESCROW,
                escrow.id,
                user_id=escrow.company_id,
                admin_id=admin_id,
                previous_state={"status": EscrowStatus.RELEASED.value},
                new_state={"status": EscrowStatus.REFUNDABLE.value, "failed_payout_id": payout.payout_id},
            )

        logger.info(f"↩️ ESCROW_REFUNDABLE: escrow={escrow.id} after failed payout {payout.payout_id}")
        return escrow

    def refund_escrow(self, session: Session, escrow_id: int, admin_id: int, reason: Optional[str] = None) -> EscrowAccount:
        """Return a held or refundable escrow's full amount to the company wallet"""
        with atomic_transaction(session):
            escrow = lock_row(session, EscrowAccount, EscrowAccount.id == escrow_id)
            if escrow is None:
                raise EscrowNotFound()
            previous_status = escrow.status
            if previous_status not in (EscrowStatus.HELD.value, EscrowStatus.REFUNDABLE.value):
                raise InvalidStateTransition(f"Escrow in {previous_status} status cannot be refunded")
            if self._live_payout_count(session, escrow.id):
                raise InvalidStateTransition("Escrow already has an active or completed payout")

            OptimisticLockManager(session).versioned_update(
                EscrowAccount,
                escrow.id,
                {"status": EscrowStatus.REFUNDED.value, "refunded_at": utcnow()},
                escrow.version,
            )
            refund = Money.of(escrow.amount, escrow.currency)
            WalletService.move(
                session,
                escrow.company_id,
                refund,
                TransactionType.ESCROW_REFUND,
                paid_out=-escrow.amount,
                idempotency_key=f"escrow_refund:{escrow.id}",
                reference_type="escrow",
                reference_id=escrow.id,
                description=reason or f"Escrow refund for submission {escrow.submission_id}",
            )
            session.execute(
                update(Commission)
                .where(Commission.escrow_account_id == escrow.id)
                .values(is_reversed=True)
                .execution_options(synchronize_session=False)
            )
            financial_audit_logger.log_financial_event(
                session,
                FinancialEventType.ESCROW_REFUNDED,
                EntityType.ESCROW,
                escrow.id,
                user_id=escrow.company_id,
                admin_id=admin_id,
                previous_state={"status": previous_status},
                new_state={"status": EscrowStatus.REFUNDED.value, "amount": escrow.amount},
                description=reason,
            )

        logger.info(f"↩️ ESCROW_REFUNDED: escrow={escrow.id} company={escrow.company_id} amount={refund}")
        return escrow

    # ------------------------------------------------------------------
    # Wallet administration and listings
    # ------------------------------------------------------------------

    def adjust_company_balance(
        self,
        session: Session,
        company_id: int,
        amount: int,
        note: str,
        admin_id: int,
        currency: str = "USD",
    ) -> Transaction:
        """Manual admin credit (positive) or debit (negative)"""
        delta = Money.of(amount, currency)
        if delta.amount_minor == 0:
            raise ValidationError("Adjustment amount cannot be zero")
        if not note or not note.strip():
            raise ValidationError("An adjustment note is required")
        require_user(session, company_id, UserType.COMPANY)

        with atomic_transaction(session):
            before = WalletService.get_or_create_wallet(session, company_id, delta.currency.value).balance
            entry = WalletService.move(
                session,
                company_id,
                delta,
                TransactionType.ADMIN_ADJUSTMENT,
                reference_type="admin",
                reference_id=admin_id,
                description=note.strip(),
            )
            financial_audit_logger.log_financial_event(
                session,
                FinancialEventType.BALANCE_ADJUSTMENT,
                EntityType.WALLET,
                entry.wallet_id,
                user_id=company_id,
                admin_id=admin_id,
                previous_state={"balance": before},
                new_state={"balance": before + delta.amount_minor},
                description=note.strip(),
            )

        logger.info(f"🛠️ BALANCE_ADJUSTED: company={company_id} delta={delta} by admin {admin_id}")
        return entry

    @staticmethod
    def get_wallet(session: Session, owner_id: int, currency: str = "USD") -> Wallet:
        with atomic_transaction(session):
            return WalletService.get_or_create_wallet(session, owner_id, currency)

    @staticmethod
    def list_transactions(session: Session, owner_id: int, limit: int = 50) -> List[Transaction]:
        return WalletService.list_transactions(session, owner_id, limit)

    @staticmethod
    def list_payouts(session: Session, user_id: int, limit: int = 50) -> List[Payout]:
        return list(session.execute(
            select(Payout)
            .where(Payout.user_id == user_id)
            .order_by(Payout.created_at.desc(), Payout.id.desc())
            .limit(limit)
        ).scalars())

    @staticmethod
    def list_company_wallets(session: Session, limit: int = 100) -> List[CompanyWallet]:
        """Every company wallet with its owner, largest balance first"""
        rows = session.execute(
            select(Wallet, User)
            .join(User, User.id == Wallet.owner_id)
            .where(User.user_type == UserType.COMPANY.value)
            .order_by(Wallet.balance.desc(), Wallet.id)
            .limit(limit)
        ).all()
        return [CompanyWallet(wallet, company) for wallet, company in rows]

    @staticmethod
    def seed_default_payment_methods(session: Session) -> int:
        """Install the default payout methods when the catalogue is empty"""
        with atomic_transaction(session):
            if session.execute(select(PaymentMethod.id).limit(1)).first() is not None:
                return 0
            for settings in DEFAULT_PAYMENT_METHODS:
                session.add(PaymentMethod(**settings))
        logger.info(f"💳 PAYMENT_METHODS_SEEDED: {len(DEFAULT_PAYMENT_METHODS)} method(s) initialized")
        return len(DEFAULT_PAYMENT_METHODS)

    @staticmethod
    def list_payment_methods(session: Session) -> List[PaymentMethod]:
        return list(session.execute(
            select(PaymentMethod).where(PaymentMethod.is_active.is_(True)).order_by(PaymentMethod.id)
        ).scalars())


payment_service = PaymentService()
