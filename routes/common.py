"""
Shared route plumbing: caller identity, admin sessions, service providers,
JSON body parsing and response serialization.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import Depends, Header, Request

from caching.simple_cache import SessionStore
from models import (
    Wallet, Transaction, PaymentIntent, EscrowAccount, Payout, PaymentMethod, CryptoNetwork,
    CryptoWithdrawal, CryptoPaymentIntent, CryptoPaymentApproval, CryptoTransaction, PaymentDispute,
    WebhookEventLedger, as_utc,
)
from services.admin_auth_service import AdminAuthService
from services.crypto_settlement_service import CryptoSettlementService, crypto_settlement_service
from services.payment_service import CompanyWallet, PaymentService, payment_service
from utils.encryption import get_wallet_encryption
from utils.exceptions import NotAuthorized, ValidationError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> int:
    """Caller id forwarded by the marketplace gateway after authentication"""
    if not x_user_id:
        raise NotAuthorized("Authentication required")
    try:
        return int(x_user_id)
    except ValueError:
        raise NotAuthorized("Authentication required")


def get_payment_service() -> PaymentService:
    return payment_service


def get_crypto_service() -> CryptoSettlementService:
    return crypto_settlement_service


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.session_store


def get_admin_auth(store: SessionStore = Depends(get_session_store)) -> AdminAuthService:
    return AdminAuthService(store)


def bearer_token(authorization: Optional[str] = Header(None)) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


def require_admin(
    token: Optional[str] = Depends(bearer_token),
    auth: AdminAuthService = Depends(get_admin_auth),
) -> Dict[str, Any]:
    return auth.authenticate(token)


# ---------------------------------------------------------------------------
# Body parsing
# ---------------------------------------------------------------------------

async def read_json(request: Request) -> Dict[str, Any]:
    if not (await request.body()).strip():
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def int_field(body: Dict[str, Any], name: str, required: bool = True, default: Optional[int] = None) -> Optional[int]:
    """Integer field; amounts are integer minor units, so floats and strings are refused"""
    value = body.get(name)
    if value is None:
        if required:
            raise ValidationError(f"{name} is required")
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer")
    return value


def str_field(body: Dict[str, Any], name: str, required: bool = True, default: Optional[str] = None) -> Optional[str]:
    value = body.get(name)
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{name} is required")
        return default
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    return value.strip()


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def _ts(value) -> Optional[str]:
    return as_utc(value).isoformat() if value is not None else None


def serialize_wallet(wallet: Wallet) -> Dict[str, Any]:
    return {
        "id": wallet.id,
        "owner_id": wallet.owner_id,
        "currency": wallet.currency,
        "balance": wallet.balance,
        "total_paid": wallet.total_paid,
    }


def serialize_transaction(entry: Transaction) -> Dict[str, Any]:
    return {
        "transaction_id": entry.transaction_id,
        "type": entry.transaction_type,
        "amount": entry.amount,
        "currency": entry.currency,
        "status": entry.status,
        "description": entry.description,
        "reference_type": entry.reference_type,
        "reference_id": entry.reference_id,
        "created_at": _ts(entry.created_at),
    }


def serialize_payment_intent(intent: PaymentIntent) -> Dict[str, Any]:
    return {
        "id": intent.id,
        "provider_intent_id": intent.provider_intent_id,
        "company_id": intent.company_id,
        "amount": intent.amount,
        "amount_received": intent.amount_received,
        "currency": intent.currency,
        "purpose": intent.purpose,
        "status": intent.status,
        "failure_reason": intent.failure_reason,
        "confirmed_at": _ts(intent.confirmed_at),
    }


def serialize_escrow(escrow: EscrowAccount) -> Dict[str, Any]:
    return {
        "id": escrow.id,
        "submission_id": escrow.submission_id,
        "company_id": escrow.company_id,
        "researcher_id": escrow.researcher_id,
        "amount": escrow.amount,
        "platform_commission": escrow.platform_commission,
        "researcher_payout": escrow.researcher_payout,
        "commission_rate_bps": escrow.commission_rate_bps,
        "currency": escrow.currency,
        "status": escrow.status,
        "expires_at": _ts(escrow.expires_at),
        "released_at": _ts(escrow.released_at),
        "refunded_at": _ts(escrow.refunded_at),
    }


def serialize_payout(payout: Payout) -> Dict[str, Any]:
    return {
        "id": payout.id,
        "payout_id": payout.payout_id,
        "submission_id": payout.submission_id,
        "user_id": payout.user_id,
        "amount": payout.amount,
        "currency": payout.currency,
        "payment_method_id": payout.payment_method_id,
        "status": payout.status,
        "requires_review": payout.requires_review,
        "review_reason": payout.review_reason,
        "external_transaction_id": payout.external_transaction_id,
        "failure_reason": payout.failure_reason,
        "retry_of_id": payout.retry_of_id,
        "completed_at": _ts(payout.completed_at),
        "created_at": _ts(payout.created_at),
    }


def serialize_payment_method(method: PaymentMethod) -> Dict[str, Any]:
    return {"id": method.id, "name": method.name, "type": method.type}


def serialize_network(network: CryptoNetwork) -> Dict[str, Any]:
    return {
        "network": network.network,
        "display_name": network.display_name,
        "currency": network.currency,
        "min_withdrawal": network.min_withdrawal,
        "max_withdrawal": network.max_withdrawal,
        "network_fee": network.network_fee,
        "confirmations_required": network.confirmations_required,
        "processing_time_minutes": network.processing_time_minutes,
    }


def serialize_withdrawal(withdrawal: CryptoWithdrawal) -> Dict[str, Any]:
    return {
        "id": withdrawal.id,
        "withdrawal_id": withdrawal.withdrawal_id,
        "user_id": withdrawal.user_id,
        "amount": withdrawal.amount,
        "currency": withdrawal.currency,
        "wallet_address": get_wallet_encryption().decrypt_masked(withdrawal.wallet_address),
        "network": withdrawal.network,
        "network_fee": withdrawal.network_fee,
        "status": withdrawal.status,
        "admin_notes": withdrawal.admin_notes,
        "transaction_hash": withdrawal.transaction_hash,
        "created_at": _ts(withdrawal.created_at),
        "completed_at": _ts(withdrawal.completed_at),
    }


def serialize_crypto_intent(intent: CryptoPaymentIntent) -> Dict[str, Any]:
    return {
        "id": intent.id,
        "merchant_order_id": intent.merchant_order_id,
        "provider_order_id": intent.provider_order_id,
        "company_id": intent.company_id,
        "amount": intent.amount,
        "currency": intent.currency,
        "status": intent.status,
        "checkout": intent.checkout_data,
        "expires_at": _ts(intent.expires_at),
    }


def serialize_crypto_transaction(entry: CryptoTransaction) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "type": entry.transaction_type,
        "amount": entry.amount,
        "currency": entry.currency,
        "transaction_hash": entry.transaction_hash,
        "status": entry.status,
        "payment_intent_id": entry.related_payment_intent_id,
        "withdrawal_id": entry.related_withdrawal_id,
        "created_at": _ts(entry.created_at),
    }


def serialize_company_wallet(row: CompanyWallet) -> Dict[str, Any]:
    summary = serialize_wallet(row.wallet)
    summary["company_name"] = row.company.company_name or row.company.username
    return summary


def serialize_approval(approval: CryptoPaymentApproval) -> Dict[str, Any]:
    return {
        "id": approval.id,
        "crypto_payment_intent_id": approval.crypto_payment_intent_id,
        "company_id": approval.company_id,
        "amount": approval.amount,
        "currency": approval.currency,
        "payment_memo": approval.payment_memo,
        "status": approval.status,
        "admin_notes": approval.admin_notes,
        "reviewed_at": _ts(approval.reviewed_at),
    }


def serialize_dispute(dispute: PaymentDispute) -> Dict[str, Any]:
    return {
        "id": dispute.id,
        "submission_id": dispute.submission_id,
        "disputed_by": dispute.disputed_by,
        "dispute_type": dispute.dispute_type,
        "description": dispute.description,
        "status": dispute.status,
        "resolution": dispute.resolution,
        "resolved_by": dispute.resolved_by,
        "resolved_at": _ts(dispute.resolved_at),
        "created_at": _ts(dispute.created_at),
    }


def serialize_webhook_event(entry: WebhookEventLedger) -> Dict[str, Any]:
    return {
        "provider": entry.event_provider,
        "event_id": entry.event_id,
        "event_type": entry.event_type,
        "reference_id": entry.reference_id,
        "status": entry.status,
        "error_message": entry.error_message,
        "created_at": _ts(entry.created_at),
        "completed_at": _ts(entry.completed_at),
    }
