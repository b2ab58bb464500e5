"""Atomic transaction utilities for ledger mutations and admin actions"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import Base

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=Base)

_DEPTH_ATTR = "_atomic_transaction_depth"


@contextmanager
def atomic_transaction(session: Session) -> Generator[Session, None, None]:
    """
    Run a unit of work that commits or rolls back as a whole.

    Nesting-aware: when a caller already opened an atomic block on the same
    session, only the outermost block commits. Any exception rolls back the
    whole unit, so a wallet debit never survives without the rows written
    alongside it.
    """
    depth = getattr(session, _DEPTH_ATTR, 0)
    setattr(session, _DEPTH_ATTR, depth + 1)
    try:
        yield session
        if depth == 0:
            session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"❌ TRANSACTION_ROLLED_BACK (depth {depth + 1}): {type(e).__name__}: {e}")
        raise
    finally:
        setattr(session, _DEPTH_ATTR, depth)


def lock_row(session: Session, model_class: Type[M], *criteria) -> Optional[M]:
    """SELECT ... FOR UPDATE a single row (no-op lock on SQLite), refreshing any cached instance"""
    stmt = select(model_class).where(*criteria).with_for_update().execution_options(populate_existing=True)
    return session.execute(stmt).scalars().first()
