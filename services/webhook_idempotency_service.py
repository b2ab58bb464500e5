"""
Webhook Idempotency Service
Provider events are claimed in the webhook event ledger inside the same
database transaction that applies their ledger mutation. A redelivered
event finds its completed ledger row and becomes a no-op.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import WebhookEventLedger, utcnow

logger = logging.getLogger(__name__)


class WebhookProvider(Enum):
    """Supported webhook providers"""
    STRIPE = "stripe"
    BINANCE_PAY = "binance_pay"


class WebhookEventStatus(Enum):
    """Webhook event processing status"""
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class WebhookEventInfo:
    """Information about a webhook event for processing"""
    provider: WebhookProvider
    event_id: str
    event_type: str
    reference_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class IdempotencyResult:
    """Result of idempotency check"""
    is_duplicate: bool
    ledger_entry: Optional[WebhookEventLedger] = None
    previous_status: Optional[str] = None
    previous_result: Optional[Dict[str, Any]] = None


class WebhookIdempotencyService:
    """Claim/complete provider events in the webhook event ledger"""

    @staticmethod
    def find_event(session: Session, provider: WebhookProvider, event_id: str) -> Optional[WebhookEventLedger]:
        return session.execute(
            select(WebhookEventLedger).where(
                WebhookEventLedger.event_provider == provider.value,
                WebhookEventLedger.event_id == event_id,
            )
        ).scalars().first()

    @classmethod
    def claim_event(cls, session: Session, webhook_info: WebhookEventInfo) -> IdempotencyResult:
        """
        Claim an event for processing within the caller's transaction.

        The unique (provider, event_id) constraint makes a concurrent claim of
        the same event fail at flush/commit, rolling back its mutation too.
        """
        existing = cls.find_event(session, webhook_info.provider, webhook_info.event_id)

        if existing is not None:
            if existing.status == WebhookEventStatus.FAILED.value:
                logger.info(
                    f"🔄 WEBHOOK_RETRY_ALLOWED: {webhook_info.provider.value} "
                    f"event {webhook_info.event_id} previously failed"
                )
                existing.status = WebhookEventStatus.PROCESSING.value
                existing.error_message = None
                return IdempotencyResult(is_duplicate=False, ledger_entry=existing)

            logger.info(
                f"🔍 WEBHOOK_IDEMPOTENCY: Duplicate detected - "
                f"Provider: {webhook_info.provider.value}, Event ID: {webhook_info.event_id}, "
                f"Previous Status: {existing.status}"
            )
            return IdempotencyResult(
                is_duplicate=True,
                ledger_entry=existing,
                previous_status=existing.status,
                previous_result=existing.processing_result,
            )

        entry = WebhookEventLedger(
            event_provider=webhook_info.provider.value,
            event_id=webhook_info.event_id,
            event_type=webhook_info.event_type,
            reference_id=webhook_info.reference_id,
            status=WebhookEventStatus.PROCESSING.value,
        )
        session.add(entry)
        session.flush()

        logger.info(
            f"✅ WEBHOOK_IDEMPOTENCY: New event - "
            f"Provider: {webhook_info.provider.value}, Event ID: {webhook_info.event_id}"
        )
        return IdempotencyResult(is_duplicate=False, ledger_entry=entry)

    @staticmethod
    def mark_completed(entry: WebhookEventLedger, result: Optional[Dict[str, Any]] = None) -> None:
        entry.status = WebhookEventStatus.COMPLETED.value
        entry.processing_result = result
        entry.completed_at = utcnow()

    @staticmethod
    def record_failure(session: Session, webhook_info: WebhookEventInfo, error_message: str) -> None:
        """Record a failed event in its own transaction so redelivery may retry it"""
        entry = WebhookIdempotencyService.find_event(session, webhook_info.provider, webhook_info.event_id)
        if entry is None:
            entry = WebhookEventLedger(
                event_provider=webhook_info.provider.value,
                event_id=webhook_info.event_id,
                event_type=webhook_info.event_type,
                reference_id=webhook_info.reference_id,
            )
            session.add(entry)
        entry.status = WebhookEventStatus.FAILED.value
        entry.error_message = error_message[:1000]
        entry.completed_at = utcnow()
        session.commit()
        logger.warning(
            f"⚠️ WEBHOOK_FAILED_RECORDED: {webhook_info.provider.value} event {webhook_info.event_id}: {error_message}"
        )

    @staticmethod
    def get_webhook_event_history(session: Session, provider: Optional[WebhookProvider] = None, limit: int = 100) -> List[WebhookEventLedger]:
        stmt = select(WebhookEventLedger).order_by(WebhookEventLedger.created_at.desc()).limit(limit)
        if provider is not None:
            stmt = stmt.where(WebhookEventLedger.event_provider == provider.value)
        return list(session.execute(stmt).scalars())
