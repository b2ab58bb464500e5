"""Binance Pay hosted-checkout API client - company crypto deposits"""

import asyncio
import hashlib
import hmac
import json
import logging
import secrets
import string
import time
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from utils.exceptions import ProviderError, ProviderTimeout

logger = logging.getLogger(__name__)

NONCE_ALPHABET = string.ascii_letters + string.digits


class BinancePayAPIError(ProviderError):
    """Custom exception for Binance Pay API errors"""

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail, provider="binance_pay")


def build_signature_payload(timestamp: str, nonce: str, body: str) -> str:
    return f"{timestamp}\n{nonce}\n{body}\n"


def sign_payload(secret_key: str, timestamp: str, nonce: str, body: str) -> str:
    """HMAC-SHA512 over "timestamp\\nnonce\\nbody\\n", uppercase hex"""
    return hmac.new(
        secret_key.encode("utf-8"),
        build_signature_payload(timestamp, nonce, body).encode("utf-8"),
        hashlib.sha512,
    ).hexdigest().upper()


def generate_nonce(length: int = 32) -> str:
    return "".join(secrets.choice(NONCE_ALPHABET) for _ in range(length))


class BinancePayService:
    """Service for creating Binance Pay orders and checking webhook signatures"""

    def __init__(self, api_key: Optional[str] = None, secret_key: Optional[str] = None, base_url: Optional[str] = None):
        self.api_key = api_key if api_key is not None else Config.BINANCE_PAY_API_KEY
        self.secret_key = secret_key if secret_key is not None else Config.BINANCE_PAY_SECRET_KEY
        self.base_url = (base_url or Config.BINANCE_PAY_BASE_URL).rstrip("/")

        if not self.api_key or not self.secret_key:
            logger.warning("Binance Pay credentials not configured - crypto deposits will not function")

    def _get_headers(self, body: str, timestamp: Optional[str] = None, nonce: Optional[str] = None) -> Dict[str, str]:
        timestamp = timestamp or str(int(time.time() * 1000))
        nonce = nonce or generate_nonce()
        return {
            "Content-Type": "application/json",
            "BinancePay-Timestamp": timestamp,
            "BinancePay-Nonce": nonce,
            "BinancePay-Certificate-SN": self.api_key,
            "BinancePay-Signature": sign_payload(self.secret_key, timestamp, nonce, body),
        }

    async def create_order(
        self,
        merchant_order_id: str,
        amount: int,
        currency: str,
        description: str,
        return_url: str,
        cancel_url: str,
    ) -> Dict[str, Any]:
        """
        Create a hosted-checkout order. `amount` is in minor units and is
        sent to the provider as a major-unit decimal string.

        Returns the provider's `data` object (prepayId, checkoutUrl,
        qrcodeLink, expireTime...).
        """
        order = {
            "env": {"terminalType": "WEB"},
            "merchantTradeNo": merchant_order_id,
            "orderAmount": f"{amount // 100}.{amount % 100:02d}",
            "currency": currency,
            "description": description,
            "goodsDetails": [{
                "goodsType": "02",
                "goodsCategory": "Z000",
                "referenceGoodsId": merchant_order_id,
                "goodsName": description[:256],
            }],
            "returnUrl": return_url,
            "cancelUrl": cancel_url,
            "orderExpireTime": int(time.time() * 1000) + Config.BINANCE_PAY_ORDER_TTL_MINUTES * 60 * 1000,
        }
        body = json.dumps(order, separators=(",", ":"))

        timeout = aiohttp.ClientTimeout(total=Config.PROVIDER_TIMEOUT_SECONDS)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(
                    f"{self.base_url}/binancepay/openapi/v3/order",
                    headers=self._get_headers(body),
                    data=body,
                ) as response:
                    payload = await response.json(content_type=None)
                    if response.status != 200 or (payload or {}).get("status") != "SUCCESS":
                        error_text = (payload or {}).get("errorMessage", f"HTTP {response.status}")
                        logger.error(f"Binance Pay order creation failed: {error_text}")
                        raise BinancePayAPIError(f"Order creation failed: {error_text}")

                    data = payload.get("data", {})
                    logger.info(f"🪙 BINANCE_ORDER_CREATED: {merchant_order_id} prepayId={data.get('prepayId')}")
                    return data
        except aiohttp.ClientError as e:
            logger.error(f"Network error connecting to Binance Pay: {e}")
            raise BinancePayAPIError(f"Network error: {e}")
        except asyncio.TimeoutError:
            logger.error(f"Binance Pay order creation timed out: {merchant_order_id}")
            raise ProviderTimeout("Timeout", provider="binance_pay")

    def verify_webhook_signature(
        self,
        body: str,
        timestamp: Optional[str],
        nonce: Optional[str],
        signature: Optional[str],
    ) -> bool:
        """Constant-time check of a webhook signature over the raw body"""
        if not self.secret_key or not timestamp or not nonce or not signature:
            return False
        expected = sign_payload(self.secret_key, timestamp, nonce, body)
        return hmac.compare_digest(expected, signature.strip().upper())

    def is_available(self) -> bool:
        return bool(self.api_key and self.secret_key)
