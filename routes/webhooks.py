"""
Provider webhook intake
The raw body is read once and handed to the settlement services unparsed,
since both providers sign the exact bytes they sent.
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from database import get_db
from routes.common import get_payment_service, get_crypto_service
from services.crypto_settlement_service import CryptoSettlementService
from services.payment_service import PaymentService
from services.webhook_security_service import WebhookSecurityService
from utils.exceptions import SettlementError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _rejected(provider: str, check: dict, client_ip: str) -> JSONResponse:
    WebhookSecurityService.log_webhook_security_event(provider, "preflight", False, check["security_info"], client_ip)
    return JSONResponse(content={"status": "rejected", "error": check["error"]}, status_code=401)


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
):
    raw_body = await request.body()
    client_ip = WebhookSecurityService.get_client_ip(request)

    check = WebhookSecurityService.validate_stripe_webhook(request, raw_body)
    if not check["valid"]:
        return _rejected("stripe", check, client_ip)

    try:
        result = service.handle_provider_webhook(db, raw_body, request.headers.get("Stripe-Signature"))
    except SettlementError as e:
        WebhookSecurityService.log_webhook_security_event("stripe", "event", False, {"error": e.reason}, client_ip)
        raise

    WebhookSecurityService.log_webhook_security_event("stripe", "event", True, result, client_ip)
    return {"received": True, **result}


@router.post("/binance-pay")
async def binance_pay_webhook(
    request: Request,
    db: Session = Depends(get_db),
    service: CryptoSettlementService = Depends(get_crypto_service),
):
    raw_body = await request.body()
    client_ip = WebhookSecurityService.get_client_ip(request)

    check = WebhookSecurityService.validate_binance_pay_webhook(request, raw_body)
    if not check["valid"]:
        return _rejected("binance_pay", check, client_ip)

    try:
        result = service.handle_provider_webhook(
            db,
            raw_body.decode("utf-8", errors="replace"),
            request.headers.get("BinancePay-Timestamp"),
            request.headers.get("BinancePay-Nonce"),
            request.headers.get("BinancePay-Signature"),
        )
    except SettlementError as e:
        WebhookSecurityService.log_webhook_security_event("binance_pay", "event", False, {"error": e.reason}, client_ip)
        raise

    WebhookSecurityService.log_webhook_security_event("binance_pay", "event", True, result, client_ip)
    # Binance Pay expects this acknowledgement shape
    return {"returnCode": "SUCCESS", "returnMessage": None, **result}
