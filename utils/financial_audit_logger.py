"""
Financial Audit Logger
Writes audit rows for money-moving and admin actions inside the caller's
database transaction, so the audit trail commits or rolls back with the
change it describes.
"""

import logging
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from models import AuditLog

logger = logging.getLogger(__name__)


class FinancialEventType(Enum):
    """Types of financial events for audit tracking"""

    # Deposit events
    PAYMENT_INTENT_CREATED = "payment_intent_created"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_FAILED = "payment_failed"

    # Escrow events
    ESCROW_CREATED = "escrow_created"
    ESCROW_RELEASED = "escrow_released"
    ESCROW_MARKED_REFUNDABLE = "escrow_marked_refundable"
    ESCROW_REFUNDED = "escrow_refunded"

    # Payout events
    PAYOUT_CREATED = "payout_created"
    PAYOUT_REVIEW_APPROVED = "payout_review_approved"
    PAYOUT_COMPLETED = "payout_completed"
    PAYOUT_FAILED = "payout_failed"
    PAYOUT_RETRIED = "payout_retried"

    # Wallet events
    BALANCE_ADJUSTMENT = "balance_adjustment"

    # Crypto events
    CRYPTO_WALLET_ADDED = "crypto_wallet_added"
    CRYPTO_PAYMENT_RECEIVED = "crypto_payment_received"
    CRYPTO_PAYMENT_APPROVED = "crypto_payment_approved"
    CRYPTO_PAYMENT_REJECTED = "crypto_payment_rejected"
    CRYPTO_WITHDRAWAL_REQUESTED = "crypto_withdrawal_requested"
    CRYPTO_WITHDRAWAL_STATUS_CHANGED = "crypto_withdrawal_status_changed"

    # Dispute events
    DISPUTE_OPENED = "dispute_opened"
    DISPUTE_STATUS_CHANGED = "dispute_status_changed"


class EntityType(Enum):
    """Entity types for financial tracking"""
    WALLET = "wallet"
    PAYMENT_INTENT = "payment_intent"
    ESCROW = "escrow"
    PAYOUT = "payout"
    CRYPTO_WALLET = "crypto_wallet"
    CRYPTO_PAYMENT = "crypto_payment"
    CRYPTO_WITHDRAWAL = "crypto_withdrawal"
    DISPUTE = "dispute"


SENSITIVE_FIELDS = {
    'password', 'secret', 'token', 'private', 'credential', 'account_number',
    'iban', 'swift', 'card_number', 'cvv', 'pin', 'otp', 'mnemonic', 'seed',
    'wallet_address', 'client_secret'
}


def sanitize_event_data(data: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Redact sensitive keys before they reach the audit table"""
    if data is None:
        return None

    sanitized = {}
    for key, value in data.items():
        key_str = str(key)
        if any(sensitive in key_str.lower() for sensitive in SENSITIVE_FIELDS):
            sanitized[key_str] = '[REDACTED]'
        elif isinstance(value, dict):
            sanitized[key_str] = sanitize_event_data(value)
        elif isinstance(value, (str, int, float, bool)) or value is None:
            sanitized[key_str] = value
        else:
            sanitized[key_str] = str(value)
    return sanitized


class FinancialAuditLogger:
    """Audit trail writer bound to the caller's session"""

    @staticmethod
    def log_financial_event(
        session: Session,
        event_type: FinancialEventType,
        entity_type: EntityType,
        entity_id: Any,
        user_id: Optional[int] = None,
        admin_id: Optional[int] = None,
        previous_state: Optional[Dict[str, Any]] = None,
        new_state: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AuditLog:
        """
        Add an audit row to `session`. The caller's atomic block commits it.

        Args:
            session: Session carrying the money movement being audited
            event_type: Type of financial event
            entity_type: Type of entity being tracked
            entity_id: ID of the entity
            user_id: Affected user
            admin_id: Acting admin, for privileged actions
            previous_state / new_state: PII-safe snapshots
        """
        entry = AuditLog(
            event_type=event_type.value,
            entity_type=entity_type.value,
            entity_id=str(entity_id),
            user_id=user_id,
            admin_id=admin_id,
            previous_state=sanitize_event_data(previous_state),
            new_state=sanitize_event_data(new_state),
            description=description,
            ip_address=ip_address,
        )
        session.add(entry)

        logger.info(
            f"📝 AUDIT: {event_type.value} {entity_type.value}={entity_id} "
            f"user={user_id} admin={admin_id}"
        )
        return entry


financial_audit_logger = FinancialAuditLogger()
