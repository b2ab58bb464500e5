"""
Fiat settlement routes: deposits, escrow, payouts and wallet views
Amounts are integer cents on the wire.
"""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from database import get_db
from routes.common import (
    get_current_user_id, get_payment_service, read_json, int_field, str_field,
    serialize_payment_intent, serialize_escrow, serialize_payout, serialize_payment_method,
    serialize_wallet, serialize_transaction,
)
from services.payment_service import PaymentService
from services.webhook_security_service import WebhookSecurityService
from utils.exceptions import NotAuthorized, ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["settlement"])


@router.post("/payments/intents")
async def create_payment_intent(
    request: Request,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
):
    """Open a fiat deposit into the caller's company wallet"""
    body = await read_json(request)
    handle = await service.create_payment_intent(
        db,
        user_id,
        int_field(body, "amount"),
        currency=str_field(body, "currency", required=False, default="USD"),
        purpose=str_field(body, "purpose", required=False, default="wallet_topup"),
        idempotency_key=request.headers.get("Idempotency-Key"),
    )
    return {
        "success": True,
        "payment_intent": serialize_payment_intent(handle.intent),
        "client_secret": handle.client_secret,
    }


@router.post("/payments/intents/{provider_intent_id}/confirm")
async def confirm_payment(
    provider_intent_id: str,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
):
    intent = await service.confirm_payment(db, provider_intent_id, company_id=user_id)
    return {"success": True, "payment_intent": serialize_payment_intent(intent)}


@router.post("/escrow")
async def create_escrow(
    request: Request,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
):
    """Fund a bounty from the caller's company wallet"""
    body = await read_json(request)
    escrow = service.create_escrow_for_bounty(
        db,
        int_field(body, "submission_id"),
        int_field(body, "amount"),
        user_id,
        currency=str_field(body, "currency", required=False, default="USD"),
    )
    return {"success": True, "escrow": serialize_escrow(escrow)}


@router.get("/escrow/{submission_id}")
async def get_escrow(
    submission_id: int,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
):
    escrow = service.get_escrow(db, submission_id)
    if user_id not in (escrow.company_id, escrow.researcher_id):
        raise NotAuthorized("Not a party to this escrow")
    return {"escrow": serialize_escrow(escrow)}


@router.post("/payouts/request")
async def request_payout(
    request: Request,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
):
    """Researcher asks for the escrowed bounty on one of their submissions"""
    body = await read_json(request)
    details = body.get("payment_details") or {}
    if not isinstance(details, dict):
        raise ValidationError("payment_details must be an object")

    payout = await service.request_payout(
        db,
        user_id,
        int_field(body, "submission_id"),
        int_field(body, "payment_method_id"),
        details,
        ip_address=WebhookSecurityService.get_client_ip(request),
    )
    return {"success": payout.status != "failed", "payout": serialize_payout(payout)}


@router.get("/payouts")
async def list_payouts(
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
):
    return {"payouts": [serialize_payout(p) for p in service.list_payouts(db, user_id)]}


@router.get("/payment-methods")
async def list_payment_methods(
    db: Session = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
):
    return {"payment_methods": [serialize_payment_method(m) for m in service.list_payment_methods(db)]}


@router.get("/wallet")
async def get_wallet(
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
):
    wallet = service.get_wallet(db, user_id)
    return {"wallet": serialize_wallet(wallet)}


@router.get("/wallet/transactions")
async def list_transactions(
    limit: int = 50,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
):
    entries = service.list_transactions(db, user_id, limit=min(max(limit, 1), 200))
    return {"transactions": [serialize_transaction(t) for t in entries]}
