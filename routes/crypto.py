"""Crypto settlement routes: hosted-checkout deposits, payout wallets and withdrawals"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from database import get_db
from routes.common import (
    get_current_user_id, get_crypto_service, read_json, int_field, str_field,
    serialize_crypto_intent, serialize_crypto_transaction, serialize_withdrawal, serialize_network,
)
from services.crypto_settlement_service import CryptoSettlementService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/crypto", tags=["crypto"])


@router.post("/payment-intent")
async def create_crypto_payment_intent(
    request: Request,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    service: CryptoSettlementService = Depends(get_crypto_service),
):
    body = await read_json(request)
    result = await service.create_provider_order(
        db,
        user_id,
        int_field(body, "amount"),
        currency=str_field(body, "currency", required=False, default="USDT"),
        purpose=str_field(body, "purpose", required=False, default="bounty_payment"),
    )
    return {
        "success": True,
        "payment_intent": serialize_crypto_intent(result["payment_intent"]),
        "checkout": result["checkout"],
    }


@router.get("/payments")
async def list_payment_intents(
    status: Optional[str] = None,
    limit: int = 50,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    service: CryptoSettlementService = Depends(get_crypto_service),
):
    intents = service.list_payment_intents(db, user_id, status=status, limit=min(max(limit, 1), 200))
    return {"payments": [serialize_crypto_intent(intent) for intent in intents]}


@router.get("/transactions")
async def list_crypto_transactions(
    limit: int = 50,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    service: CryptoSettlementService = Depends(get_crypto_service),
):
    entries = service.list_crypto_transactions(db, user_id, limit=min(max(limit, 1), 200))
    return {"transactions": [serialize_crypto_transaction(entry) for entry in entries]}


@router.get("/wallets")
async def list_wallets(
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    service: CryptoSettlementService = Depends(get_crypto_service),
):
    return {"wallets": service.list_user_wallets(db, user_id)}


@router.post("/wallets")
async def add_wallet(
    request: Request,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    service: CryptoSettlementService = Depends(get_crypto_service),
):
    body = await read_json(request)
    wallet = service.add_user_wallet(
        db,
        user_id,
        str_field(body, "wallet_type", required=False, default="external"),
        str_field(body, "wallet_address"),
        str_field(body, "network"),
    )
    wallets = {w["id"]: w for w in service.list_user_wallets(db, user_id)}
    return {"success": True, "wallet": wallets.get(wallet.id)}


@router.get("/withdrawals")
async def list_withdrawals(
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    service: CryptoSettlementService = Depends(get_crypto_service),
):
    return {"withdrawals": [serialize_withdrawal(w) for w in service.list_withdrawals(db, user_id=user_id)]}


@router.post("/withdrawals")
async def create_withdrawal(
    request: Request,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    service: CryptoSettlementService = Depends(get_crypto_service),
):
    """Request a withdrawal; it waits for admin approval before any debit"""
    body = await read_json(request)
    withdrawal = service.create_crypto_withdrawal(
        db,
        user_id,
        int_field(body, "amount"),
        str_field(body, "wallet_address"),
        str_field(body, "network"),
        currency=str_field(body, "currency", required=False, default="USDT"),
    )
    return {"success": True, "withdrawal": serialize_withdrawal(withdrawal)}


@router.post("/withdrawals/{withdrawal_id}/cancel")
async def cancel_withdrawal(
    withdrawal_id: int,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    service: CryptoSettlementService = Depends(get_crypto_service),
):
    withdrawal = await service.update_withdrawal_status(db, withdrawal_id, "cancelled", actor_id=user_id)
    return {"success": True, "withdrawal": serialize_withdrawal(withdrawal)}


@router.get("/networks")
async def list_networks(
    db: Session = Depends(get_db),
    service: CryptoSettlementService = Depends(get_crypto_service),
):
    return {"networks": [serialize_network(n) for n in service.list_networks(db)]}
