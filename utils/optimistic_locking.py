"""
Optimistic Locking Infrastructure
Version-based and status-based compare-and-set updates so two concurrent
requests against the same escrow, payout or withdrawal row cannot interleave.
"""

import logging
from typing import Any, Dict, Iterable, Optional, Type

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import Base, utcnow
from utils.exceptions import InvalidStateTransition

logger = logging.getLogger(__name__)


class OptimisticLockingError(InvalidStateTransition):
    """Raised when optimistic locking fails due to version conflict"""
    default_reason = "Record was modified concurrently, please retry"


class OptimisticLockManager:
    """
    Manager for optimistic locking operations
    Handles version-based updates and guarded status transitions
    """

    def __init__(self, session: Session):
        self.session = session

    def _stamp(self, model_class: Type[Base], values: Dict[str, Any]) -> Dict[str, Any]:
        if hasattr(model_class, "updated_at") and "updated_at" not in values:
            values["updated_at"] = utcnow()
        return values

    def versioned_update(
        self,
        model_class: Type[Base],
        entity_id: Any,
        updates: Dict[str, Any],
        current_version: int
    ) -> int:
        """
        Perform version-controlled update

        Returns:
            int: the new version

        Raises:
            OptimisticLockingError: If version conflict detected
        """
        values = self._stamp(model_class, {**updates, "version": current_version + 1})
        stmt = update(model_class).where(
            model_class.id == entity_id,
            model_class.version == current_version
        ).values(values).execution_options(synchronize_session="fetch")

        try:
            result = self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error(f"❌ Database error during versioned update: {e}")
            raise

        if result.rowcount == 0:
            logger.warning(
                f"🔒 Optimistic lock conflict: {model_class.__name__} id={entity_id} "
                f"expected_version={current_version}"
            )
            raise OptimisticLockingError(
                f"Version conflict for {model_class.__name__} id={entity_id}"
            )

        logger.debug(
            f"✅ Versioned update successful: {model_class.__name__} id={entity_id} "
            f"v{current_version} → v{current_version + 1}"
        )
        return current_version + 1

    def transition_status(
        self,
        model_class: Type[Base],
        entity_id: Any,
        from_statuses: Iterable[str],
        to_status: str,
        extra: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Move a row to `to_status` only if it is currently in one of
        `from_statuses`. A concurrent writer that got there first makes the
        UPDATE match zero rows, which raises InvalidStateTransition.
        """
        allowed = list(from_statuses)
        values = self._stamp(model_class, {**(extra or {}), "status": to_status})
        stmt = update(model_class).where(
            model_class.id == entity_id,
            model_class.status.in_(allowed)
        ).values(values).execution_options(synchronize_session="fetch")

        result = self.session.execute(stmt)
        if result.rowcount == 0:
            logger.warning(
                f"🔒 STATUS_CONFLICT: {model_class.__name__} id={entity_id} "
                f"not in {allowed}, refusing → {to_status}"
            )
            raise InvalidStateTransition(
                f"{model_class.__name__} cannot move to {to_status} from its current status"
            )
