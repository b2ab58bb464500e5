"""
Admin routes
Login issues a bearer session; every other route requires it. Admin
actions are attributed to the admin user resolved at login.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from database import get_db
from routes.common import (
    bearer_token, get_admin_auth, require_admin, get_payment_service, get_crypto_service,
    read_json, int_field, str_field, serialize_webhook_event,
    serialize_withdrawal, serialize_approval, serialize_payout, serialize_escrow, serialize_transaction,
    serialize_company_wallet,
)
from services.admin_auth_service import AdminAuthService
from services.crypto_settlement_service import CryptoSettlementService
from services.payment_service import PaymentService
from services.webhook_idempotency_service import WebhookIdempotencyService, WebhookProvider
from utils.exceptions import ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.post("/login")
async def admin_login(
    request: Request,
    db: Session = Depends(get_db),
    auth: AdminAuthService = Depends(get_admin_auth),
):
    body = await read_json(request)
    token = auth.login(db, str_field(body, "email"), str_field(body, "password"))
    return {"success": True, "token": token}


@router.post("/logout")
async def admin_logout(
    token: Optional[str] = Depends(bearer_token),
    auth: AdminAuthService = Depends(get_admin_auth),
):
    return {"success": auth.logout(token)}


# ---------------------------------------------------------------------------
# Crypto withdrawals and deposit approvals
# ---------------------------------------------------------------------------

@router.get("/crypto/withdrawals")
async def list_withdrawals(
    status: Optional[str] = None,
    limit: int = 50,
    admin: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    service: CryptoSettlementService = Depends(get_crypto_service),
):
    withdrawals = service.list_withdrawals(db, status=status, limit=min(max(limit, 1), 200))
    return {"withdrawals": [serialize_withdrawal(w) for w in withdrawals]}


@router.patch("/crypto/withdrawals/{withdrawal_id}/status")
async def update_withdrawal_status(
    withdrawal_id: int,
    request: Request,
    admin: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    service: CryptoSettlementService = Depends(get_crypto_service),
):
    body = await read_json(request)
    withdrawal = await service.update_withdrawal_status(
        db,
        withdrawal_id,
        str_field(body, "status"),
        admin_id=admin["admin_id"],
        notes=str_field(body, "admin_notes", required=False),
        transaction_hash=str_field(body, "transaction_hash", required=False),
    )
    return {"success": True, "withdrawal": serialize_withdrawal(withdrawal)}


@router.get("/crypto-payment-approvals")
async def list_payment_approvals(
    status: Optional[str] = None,
    admin: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    service: CryptoSettlementService = Depends(get_crypto_service),
):
    return {"approvals": [serialize_approval(a) for a in service.list_payment_approvals(db, status=status)]}


@router.post("/crypto-payment-approvals/{approval_id}/approve")
async def approve_crypto_payment(
    approval_id: int,
    request: Request,
    admin: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    service: CryptoSettlementService = Depends(get_crypto_service),
):
    body = await read_json(request)
    approval = await service.approve_crypto_payment(
        db, approval_id, admin["admin_id"], notes=str_field(body, "admin_notes", required=False)
    )
    return {"success": True, "approval": serialize_approval(approval)}


@router.post("/crypto-payment-approvals/{approval_id}/reject")
async def reject_crypto_payment(
    approval_id: int,
    request: Request,
    admin: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    service: CryptoSettlementService = Depends(get_crypto_service),
):
    body = await read_json(request)
    approval = await service.reject_crypto_payment(
        db, approval_id, admin["admin_id"], notes=str_field(body, "admin_notes", required=False)
    )
    return {"success": True, "approval": serialize_approval(approval)}


@router.get("/crypto/stats")
async def crypto_statistics(
    admin: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    service: CryptoSettlementService = Depends(get_crypto_service),
):
    return service.get_crypto_statistics(db)


# ---------------------------------------------------------------------------
# Payouts, escrow and company wallets
# ---------------------------------------------------------------------------

@router.post("/payouts/{payout_id}/approve")
async def approve_payout(
    payout_id: int,
    admin: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
):
    """Clear a payout held for fraud review and dispatch it"""
    payout = await service.approve_payout_review(db, payout_id, admin["admin_id"])
    return {"success": payout.status != "failed", "payout": serialize_payout(payout)}


@router.post("/payouts/{payout_id}/retry")
async def retry_payout(
    payout_id: int,
    admin: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
):
    payout = await service.retry_payout(db, payout_id, admin["admin_id"])
    return {"success": payout.status != "failed", "payout": serialize_payout(payout)}


@router.post("/payouts/{payout_id}/mark-refundable")
async def mark_refundable(
    payout_id: int,
    admin: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
):
    escrow = service.mark_escrow_refundable(db, payout_id, admin_id=admin["admin_id"])
    return {"success": True, "escrow": serialize_escrow(escrow)}


@router.post("/escrow/{escrow_id}/refund")
async def refund_escrow(
    escrow_id: int,
    request: Request,
    admin: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
):
    body = await read_json(request)
    escrow = service.refund_escrow(db, escrow_id, admin["admin_id"], reason=str_field(body, "reason", required=False))
    return {"success": True, "escrow": serialize_escrow(escrow)}


@router.get("/company-wallets")
async def list_company_wallets(
    limit: int = 100,
    admin: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
):
    rows = service.list_company_wallets(db, limit=min(max(limit, 1), 500))
    return {"wallets": [serialize_company_wallet(row) for row in rows]}


@router.post("/company-wallet/update")
async def update_company_wallet(
    request: Request,
    admin: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
):
    """Manual credit (positive amount) or debit (negative amount)"""
    body = await read_json(request)
    entry = service.adjust_company_balance(
        db,
        int_field(body, "company_id"),
        int_field(body, "amount"),
        str_field(body, "note"),
        admin["admin_id"],
        currency=str_field(body, "currency", required=False, default="USD"),
    )
    return {"success": True, "transaction": serialize_transaction(entry)}


@router.get("/webhooks/events")
async def webhook_event_history(
    provider: Optional[str] = None,
    limit: int = 100,
    admin: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    provider_filter = None
    if provider:
        try:
            provider_filter = WebhookProvider(provider)
        except ValueError:
            raise ValidationError(f"Unknown webhook provider: {provider}")

    events = WebhookIdempotencyService.get_webhook_event_history(db, provider_filter, min(max(limit, 1), 500))
    return {"events": [serialize_webhook_event(e) for e in events]}
