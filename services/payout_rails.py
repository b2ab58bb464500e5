"""
Payout Rails
External transfer integrations selected by the payout's payment-method type.
Each rail answers with a PayoutResult for provider-side declines and raises
ProviderError (or ProviderTimeout) when the provider cannot be reached.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from models import PaymentMethodType
from services.binance_pay_service import generate_nonce, sign_payload
from utils.exceptions import ProviderError, ProviderTimeout, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class PayoutResult:
    """Provider answer for a single transfer"""
    success: bool
    external_transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None


class PayoutRail:
    """Base class for payout integrations"""

    name = "rail"
    required_fields: tuple = ()

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=Config.PROVIDER_TIMEOUT_SECONDS)

    async def _post(self, url: str, headers: Dict[str, str], **kwargs) -> tuple:
        """POST and return (status, json body); transport failures become ProviderError"""
        try:
            async with aiohttp.ClientSession(timeout=self._timeout()) as session:
                async with session.post(url, headers=headers, **kwargs) as response:
                    body = await response.json(content_type=None)
                    if response.status >= 500:
                        logger.error(f"{self.name} payout error: HTTP {response.status}: {body}")
                        raise ProviderError(f"HTTP {response.status}", provider=self.name)
                    return response.status, body or {}
        except aiohttp.ClientError as e:
            logger.error(f"Network error connecting to {self.name}: {e}")
            raise ProviderError(f"Network error: {e}", provider=self.name)
        except asyncio.TimeoutError:
            logger.error(f"{self.name} payout timed out")
            raise ProviderTimeout("Timeout", provider=self.name)

    def validate_details(self, details: Optional[Dict[str, Any]]) -> None:
        missing = [f for f in self.required_fields if not (details or {}).get(f)]
        if missing:
            raise ValidationError(f"Missing payment details: {', '.join(missing)}")

    async def send(self, payout_id: str, amount: int, currency: str, details: Dict[str, Any]) -> PayoutResult:
        raise NotImplementedError


class DigitalWalletRail(PayoutRail):
    """PayPal Payouts API"""

    name = "paypal"
    required_fields = ("email",)

    async def _access_token(self) -> str:
        auth = aiohttp.BasicAuth(Config.PAYPAL_CLIENT_ID or "", Config.PAYPAL_CLIENT_SECRET or "")
        try:
            async with aiohttp.ClientSession(timeout=self._timeout()) as session:
                async with session.post(
                    f"{Config.PAYPAL_BASE_URL}/v1/oauth2/token",
                    data={"grant_type": "client_credentials"},
                    auth=auth,
                ) as response:
                    body = await response.json(content_type=None)
                    if response.status != 200 or "access_token" not in (body or {}):
                        raise ProviderError(f"OAuth failed: HTTP {response.status}", provider=self.name)
                    return body["access_token"]
        except aiohttp.ClientError as e:
            raise ProviderError(f"Network error: {e}", provider=self.name)
        except asyncio.TimeoutError:
            raise ProviderTimeout("Timeout", provider=self.name)

    async def send(self, payout_id: str, amount: int, currency: str, details: Dict[str, Any]) -> PayoutResult:
        self.validate_details(details)
        token = await self._access_token()
        payload = {
            "sender_batch_header": {
                "sender_batch_id": payout_id,
                "email_subject": "You have a bounty payout",
            },
            "items": [{
                "recipient_type": "EMAIL",
                "receiver": details["email"],
                "amount": {"value": f"{amount // 100}.{amount % 100:02d}", "currency": currency},
                "sender_item_id": payout_id,
            }],
        }
        status, body = await self._post(
            f"{Config.PAYPAL_BASE_URL}/v1/payments/payouts",
            headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            json=payload,
        )
        if status in (200, 201):
            batch_id = body.get("batch_header", {}).get("payout_batch_id")
            return PayoutResult(success=True, external_transaction_id=batch_id)
        return PayoutResult(success=False, failure_reason=body.get("message") or f"PayPal declined the payout (HTTP {status})")


class BankTransferRail(PayoutRail):
    """Bank transfer disbursement API (Fincra-style)"""

    name = "bank_transfer"
    required_fields = ("account_number", "bank_code", "account_name")

    async def send(self, payout_id: str, amount: int, currency: str, details: Dict[str, Any]) -> PayoutResult:
        self.validate_details(details)
        payload = {
            "business": Config.BANK_TRANSFER_BUSINESS_ID,
            "sourceCurrency": currency,
            "destinationCurrency": currency,
            "amount": f"{amount // 100}.{amount % 100:02d}",
            "description": "Bounty payout",
            "customerReference": payout_id,
            "beneficiary": {
                "accountHolderName": details["account_name"],
                "accountNumber": details["account_number"],
                "bankCode": details["bank_code"],
                "type": "individual",
            },
            "paymentDestination": "bank_account",
        }
        status, body = await self._post(
            f"{Config.BANK_TRANSFER_BASE_URL}/disbursements/payouts",
            headers={"api-key": Config.BANK_TRANSFER_API_KEY or "", "Content-Type": "application/json"},
            json=payload,
        )
        if status in (200, 201) and body.get("success", True):
            reference = body.get("data", {}).get("reference") or f"WIRE_{payout_id}"
            return PayoutResult(success=True, external_transaction_id=reference)
        return PayoutResult(success=False, failure_reason=body.get("message") or f"Bank transfer rejected (HTTP {status})")


class CryptoPayoutRail(PayoutRail):
    """Binance Pay transfer to an on-chain address"""

    name = "crypto"
    required_fields = ("address", "network")

    async def send(self, payout_id: str, amount: int, currency: str, details: Dict[str, Any]) -> PayoutResult:
        self.validate_details(details)
        body = json.dumps({
            "requestId": payout_id,
            "batchName": "bounty_payout",
            "currency": details.get("currency", "USDT"),
            "totalAmount": f"{amount // 100}.{amount % 100:02d}",
            "totalNumber": 1,
            "transferDetailList": [{
                "merchantSendId": payout_id,
                "receiveType": "ADDRESS",
                "receiver": details["address"],
                "network": details["network"],
                "transferAmount": f"{amount // 100}.{amount % 100:02d}",
            }],
        }, separators=(",", ":"))
        timestamp = str(int(time.time() * 1000))
        nonce = generate_nonce()
        headers = {
            "Content-Type": "application/json",
            "BinancePay-Timestamp": timestamp,
            "BinancePay-Nonce": nonce,
            "BinancePay-Certificate-SN": Config.CRYPTO_PAYOUT_API_KEY or "",
            "BinancePay-Signature": sign_payload(Config.BINANCE_PAY_SECRET_KEY, timestamp, nonce, body),
        }
        status, response = await self._post(
            f"{Config.CRYPTO_PAYOUT_BASE_URL}/binancepay/openapi/payout/transfer",
            headers=headers,
            data=body,
        )
        if status == 200 and response.get("status") == "SUCCESS":
            return PayoutResult(success=True, external_transaction_id=response.get("data", {}).get("requestId", payout_id))
        return PayoutResult(success=False, failure_reason=response.get("errorMessage") or "Crypto transfer rejected")


DEFAULT_RAILS = {
    PaymentMethodType.DIGITAL_WALLET.value: DigitalWalletRail(),
    PaymentMethodType.BANK_TRANSFER.value: BankTransferRail(),
    PaymentMethodType.CRYPTO.value: CryptoPayoutRail(),
}


def get_rail(method_type: str, rails: Optional[Dict[str, PayoutRail]] = None) -> PayoutRail:
    rail = (rails if rails is not None else DEFAULT_RAILS).get(method_type)
    if rail is None:
        raise ValidationError(f"Unsupported payment method: {method_type}")
    return rail
