"""
Wallet Service
Atomic balance deltas and the wallet transaction ledger. Balances are never
read-modified-written: every change is a single conditional UPDATE that
refuses to take a balance below zero.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from models import Wallet, Transaction, TransactionType, TransactionStatus
from utils.exceptions import InsufficientBalance, NotFound
from utils.money import Money

logger = logging.getLogger(__name__)


class WalletService:
    """Wallet balance operations; callers own the transaction boundary"""

    @staticmethod
    def get_wallet(session: Session, owner_id: int, currency: str = "USD") -> Optional[Wallet]:
        return session.execute(
            select(Wallet).where(Wallet.owner_id == owner_id, Wallet.currency == currency)
        ).scalars().first()

    @classmethod
    def get_or_create_wallet(cls, session: Session, owner_id: int, currency: str = "USD") -> Wallet:
        wallet = cls.get_wallet(session, owner_id, currency)
        if wallet is None:
            wallet = Wallet(owner_id=owner_id, currency=currency, balance=0, total_paid=0, version=1)
            session.add(wallet)
            session.flush()
            logger.info(f"💼 WALLET_CREATED: owner={owner_id} currency={currency}")
        return wallet

    @staticmethod
    def apply_delta(session: Session, wallet_id: int, delta: int, paid_out: int = 0) -> Wallet:
        """
        balance = balance + delta, guarded by balance + delta >= 0.

        `paid_out` is added to total_paid in the same statement.
        Raises InsufficientBalance when the guard rejects the update.
        """
        stmt = (
            update(Wallet)
            .where(Wallet.id == wallet_id, Wallet.balance + delta >= 0)
            .values(
                balance=Wallet.balance + delta,
                total_paid=Wallet.total_paid + paid_out,
                version=Wallet.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        result = session.execute(stmt)

        if result.rowcount == 0:
            exists = session.execute(select(Wallet.id).where(Wallet.id == wallet_id)).scalar()
            if exists is None:
                raise NotFound("Wallet not found")
            logger.warning(f"⚠️ INSUFFICIENT_BALANCE: wallet={wallet_id} delta={delta}")
            raise InsufficientBalance()

        wallet = session.get(Wallet, wallet_id)
        session.refresh(wallet)
        logger.debug(f"💰 WALLET_DELTA: wallet={wallet_id} delta={delta} balance={wallet.balance}")
        return wallet

    @staticmethod
    def record_transaction(
        session: Session,
        wallet: Wallet,
        transaction_type: TransactionType,
        amount: int,
        status: TransactionStatus = TransactionStatus.COMPLETED,
        idempotency_key: Optional[str] = None,
        reference_type: Optional[str] = None,
        reference_id: Optional[Any] = None,
        description: Optional[str] = None,
        extra_data: Optional[Dict[str, Any]] = None,
    ) -> Transaction:
        entry = Transaction(
            transaction_id=str(uuid.uuid4()),
            wallet_id=wallet.id,
            owner_id=wallet.owner_id,
            transaction_type=transaction_type.value,
            amount=amount,
            currency=wallet.currency,
            status=status.value,
            idempotency_key=idempotency_key,
            reference_type=reference_type,
            reference_id=str(reference_id) if reference_id is not None else None,
            description=description,
            extra_data=extra_data,
        )
        session.add(entry)
        return entry

    @classmethod
    def move(
        cls,
        session: Session,
        owner_id: int,
        amount: Money,
        transaction_type: TransactionType,
        paid_out: int = 0,
        **entry_fields,
    ) -> Transaction:
        """Apply a signed Money delta to the owner's wallet and append the ledger row"""
        wallet = cls.get_or_create_wallet(session, owner_id, amount.currency.value)
        wallet = cls.apply_delta(session, wallet.id, amount.amount_minor, paid_out=paid_out)
        entry = cls.record_transaction(session, wallet, transaction_type, amount.amount_minor, **entry_fields)
        session.flush()
        return entry

    @staticmethod
    def find_by_idempotency_key(session: Session, key: str) -> Optional[Transaction]:
        return session.execute(
            select(Transaction).where(Transaction.idempotency_key == key)
        ).scalars().first()

    @staticmethod
    def list_transactions(session: Session, owner_id: int, limit: int = 50) -> List[Transaction]:
        return list(session.execute(
            select(Transaction)
            .where(Transaction.owner_id == owner_id)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(limit)
        ).scalars())
