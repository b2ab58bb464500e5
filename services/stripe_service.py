"""Stripe Payment Intents API client - fiat deposits into company wallets"""

import asyncio
import hashlib
import hmac
import logging
import time
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from utils.exceptions import ProviderError, ProviderTimeout

logger = logging.getLogger(__name__)


class StripeAPIError(ProviderError):
    """Custom exception for Stripe API errors"""

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail, provider="stripe")


class StripeService:
    """Thin async client for the Stripe REST API"""

    def __init__(self, secret_key: Optional[str] = None, base_url: Optional[str] = None):
        self.secret_key = secret_key or Config.STRIPE_SECRET_KEY
        self.base_url = (base_url or Config.STRIPE_BASE_URL).rstrip("/")

        if not self.secret_key:
            logger.warning("Stripe API key not configured - deposits will not function")

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/x-www-form-urlencoded",
        }

    async def _request(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        headers = self._get_headers()
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        timeout = aiohttp.ClientTimeout(total=Config.PROVIDER_TIMEOUT_SECONDS)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(
                    method,
                    f"{self.base_url}{path}",
                    headers=headers,
                    data=data,
                ) as response:
                    payload = await response.json(content_type=None)
                    if response.status >= 400:
                        message = (payload or {}).get("error", {}).get("message", "unknown error")
                        logger.error(f"Stripe API error: HTTP {response.status}: {message}")
                        raise StripeAPIError(f"HTTP {response.status}: {message}")
                    return payload
        except aiohttp.ClientError as e:
            logger.error(f"Network error connecting to Stripe: {e}")
            raise StripeAPIError(f"Network error: {e}")
        except asyncio.TimeoutError:
            logger.error(f"Stripe request timed out: {method} {path}")
            raise ProviderTimeout("Timeout", provider="stripe")

    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a payment intent; returns Stripe's object (id, client_secret, status)"""
        data = {
            "amount": str(amount),
            "currency": currency.lower(),
            "automatic_payment_methods[enabled]": "true",
        }
        for key, value in (metadata or {}).items():
            data[f"metadata[{key}]"] = str(value)

        intent = await self._request("POST", "/payment_intents", data=data, idempotency_key=idempotency_key)
        logger.info(f"💳 STRIPE_INTENT_CREATED: {intent.get('id')} amount={amount} {currency}")
        return intent

    async def retrieve_payment_intent(self, intent_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/payment_intents/{intent_id}")

    def is_available(self) -> bool:
        return bool(self.secret_key)

    @staticmethod
    def verify_webhook_signature(
        payload: bytes,
        signature_header: Optional[str],
        secret: Optional[str] = None,
        tolerance_seconds: Optional[int] = None,
        now: Optional[float] = None,
    ) -> bool:
        """
        Verify a `Stripe-Signature` header (t=<ts>,v1=<hmac-sha256 of "ts.payload">).
        Comparison is constant-time; stale timestamps are rejected.
        """
        secret = secret or Config.STRIPE_WEBHOOK_SECRET
        if not secret or not signature_header:
            logger.warning("🔒 STRIPE_WEBHOOK: missing secret or signature header")
            return False

        timestamp = None
        signatures = []
        for part in signature_header.split(","):
            key, _, value = part.strip().partition("=")
            if key == "t":
                timestamp = value
            elif key == "v1":
                signatures.append(value)

        if not timestamp or not signatures:
            return False

        try:
            ts = int(timestamp)
        except ValueError:
            return False

        tolerance = tolerance_seconds if tolerance_seconds is not None else Config.STRIPE_WEBHOOK_TOLERANCE_SECONDS
        current = now if now is not None else time.time()
        if tolerance and abs(current - ts) > tolerance:
            logger.warning(f"🔒 STRIPE_WEBHOOK: timestamp outside tolerance ({timestamp})")
            return False

        signed_payload = f"{timestamp}.".encode("utf-8") + payload
        expected = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()
        return any(hmac.compare_digest(expected, candidate) for candidate in signatures)
