"""
Dispute Resolution Service
Payment disputes raised by a submission's researcher or the program-owning
company. Resolution is a terminal status change only; any escrow or payout
reversal is a separate operator action.
"""

import logging
from typing import List, NamedTuple, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import PaymentDispute, DisputeStatus, DisputeType, utcnow
from services.marketplace_lookup import require_user, require_submission, submission_company_id
from utils.atomic_transactions import atomic_transaction, lock_row
from utils.exceptions import ValidationError, NotFound, NotAuthorized, InvalidStateTransition
from utils.financial_audit_logger import financial_audit_logger, FinancialEventType, EntityType
from utils.optimistic_locking import OptimisticLockManager

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (DisputeStatus.RESOLVED.value, DisputeStatus.REJECTED.value)
OPEN_STATUSES = (DisputeStatus.OPEN.value, DisputeStatus.UNDER_REVIEW.value)


class ResolutionResult(NamedTuple):
    """Result of a dispute resolution operation"""

    dispute: PaymentDispute
    status: str
    changed: bool


class DisputeResolutionService:
    """Service for dispute lifecycle operations"""

    @staticmethod
    def create_dispute(
        session: Session,
        submission_id: int,
        disputed_by: int,
        dispute_type: str,
        description: str,
    ) -> PaymentDispute:
        """Open a dispute; only the submission's researcher or owning company may do so"""
        try:
            kind = DisputeType(dispute_type)
        except ValueError:
            raise ValidationError(f"Unknown dispute type: {dispute_type}")
        if not description or not description.strip():
            raise ValidationError("A dispute description is required")

        require_user(session, disputed_by)
        submission = require_submission(session, submission_id)
        if disputed_by not in (submission.user_id, submission_company_id(session, submission)):
            logger.warning(f"🚫 DISPUTE_NOT_AUTHORIZED: user={disputed_by} submission={submission_id}")
            raise NotAuthorized("Only the researcher or the program owner can dispute this submission")

        with atomic_transaction(session):
            dispute = PaymentDispute(
                submission_id=submission_id,
                disputed_by=disputed_by,
                dispute_type=kind.value,
                description=description.strip(),
                status=DisputeStatus.OPEN.value,
            )
            session.add(dispute)
            session.flush()
            financial_audit_logger.log_financial_event(
                session,
                FinancialEventType.DISPUTE_OPENED,
                EntityType.DISPUTE,
                dispute.id,
                user_id=disputed_by,
                new_state={"status": DisputeStatus.OPEN.value, "type": kind.value, "submission_id": submission_id},
            )

        logger.info(f"⚖️ DISPUTE_OPENED: {dispute.id} submission={submission_id} by user {disputed_by} ({kind.value})")
        return dispute

    @staticmethod
    def start_review(session: Session, dispute_id: int, admin_id: int) -> PaymentDispute:
        with atomic_transaction(session):
            dispute = lock_row(session, PaymentDispute, PaymentDispute.id == dispute_id)
            if dispute is None:
                raise NotFound("Dispute not found")
            if dispute.status == DisputeStatus.UNDER_REVIEW.value:
                return dispute

            OptimisticLockManager(session).transition_status(
                PaymentDispute,
                dispute.id,
                [DisputeStatus.OPEN.value],
                DisputeStatus.UNDER_REVIEW.value,
            )
            financial_audit_logger.log_financial_event(
                session,
                FinancialEventType.DISPUTE_STATUS_CHANGED,
                EntityType.DISPUTE,
                dispute.id,
                admin_id=admin_id,
                previous_state={"status": DisputeStatus.OPEN.value},
                new_state={"status": DisputeStatus.UNDER_REVIEW.value},
            )

        logger.info(f"🔎 DISPUTE_UNDER_REVIEW: {dispute_id} by admin {admin_id}")
        return dispute

    @staticmethod
    def resolve_dispute(
        session: Session,
        dispute_id: int,
        status: str,
        resolution: str,
        resolved_by: int,
    ) -> ResolutionResult:
        """
        Move a dispute to resolved or rejected. Repeating the same terminal
        status is a no-op; switching terminal status is refused.
        """
        if status not in TERMINAL_STATUSES:
            raise ValidationError("Dispute status must be resolved or rejected")

        with atomic_transaction(session):
            dispute = lock_row(session, PaymentDispute, PaymentDispute.id == dispute_id)
            if dispute is None:
                raise NotFound("Dispute not found")

            if dispute.status == status:
                logger.info(f"🔁 DISPUTE_ALREADY_{status.upper()}: {dispute_id}")
                return ResolutionResult(dispute=dispute, status=status, changed=False)
            if dispute.status in TERMINAL_STATUSES:
                raise InvalidStateTransition(f"Dispute is already {dispute.status}")

            previous_status = dispute.status
            OptimisticLockManager(session).transition_status(
                PaymentDispute,
                dispute.id,
                OPEN_STATUSES,
                status,
                extra={"resolution": resolution, "resolved_by": resolved_by, "resolved_at": utcnow()},
            )
            financial_audit_logger.log_financial_event(
                session,
                FinancialEventType.DISPUTE_STATUS_CHANGED,
                EntityType.DISPUTE,
                dispute.id,
                admin_id=resolved_by,
                previous_state={"status": previous_status},
                new_state={"status": status},
                description=resolution,
            )

        logger.info(f"⚖️ DISPUTE_{status.upper()}: {dispute_id} by {resolved_by}")
        return ResolutionResult(dispute=dispute, status=status, changed=True)

    @staticmethod
    def list_disputes(
        session: Session,
        user_id: Optional[int] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> List[PaymentDispute]:
        stmt = select(PaymentDispute).order_by(PaymentDispute.created_at.desc(), PaymentDispute.id.desc()).limit(limit)
        if user_id is not None:
            stmt = stmt.where(PaymentDispute.disputed_by == user_id)
        if status:
            stmt = stmt.where(PaymentDispute.status == status)
        return list(session.execute(stmt).scalars())
