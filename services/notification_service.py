"""
Settlement Notification Service
Fire-and-forget delivery of settlement messages (payout completed, withdrawal
rejected...) to the marketplace's notification webhook. Delivery failures are
logged and never propagate into the settlement operation.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from utils.money import Money

logger = logging.getLogger(__name__)


class NotificationService:
    """Posts settlement events to the notification collaborator"""

    def __init__(self, webhook_url: Optional[str] = None):
        self.webhook_url = webhook_url if webhook_url is not None else Config.NOTIFICATION_WEBHOOK_URL

    async def _deliver(self, user_id: int, event: str, message: str, data: Dict[str, Any]) -> bool:
        if not self.webhook_url:
            logger.info(f"📭 NOTIFICATION_SKIPPED: {event} for user {user_id} (no delivery endpoint configured)")
            return False

        payload = {"user_id": user_id, "event": event, "message": message, "data": data}
        timeout = aiohttp.ClientTimeout(total=10)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(self.webhook_url, json=payload) as response:
                if response.status >= 400:
                    logger.warning(f"⚠️ NOTIFICATION_REJECTED: {event} for user {user_id}: HTTP {response.status}")
                    return False
        logger.info(f"📨 NOTIFICATION_SENT: {event} for user {user_id}")
        return True

    async def notify(self, user_id: int, event: str, message: str, data: Optional[Dict[str, Any]] = None) -> bool:
        """Deliver a notification; any failure is logged and reported as False"""
        try:
            return await self._deliver(user_id, event, message, data or {})
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"⚠️ NOTIFICATION_FAILED: {event} for user {user_id}: {e}")
            return False
        except Exception as e:
            logger.error(f"❌ NOTIFICATION_ERROR: {event} for user {user_id}: {e}")
            return False

    async def send_payout_completed(self, user_id: int, amount: Money, method_name: str, payout_id: str) -> bool:
        return await self.notify(
            user_id,
            "payout_completed",
            f"Your bounty payment of {amount.format()} has been processed successfully via {method_name}.",
            {"payout_id": payout_id, "amount": amount.amount_minor, "currency": amount.currency.value},
        )

    async def send_withdrawal_status(self, user_id: int, withdrawal_id: str, status: str, notes: Optional[str] = None) -> bool:
        message = f"Your crypto withdrawal {withdrawal_id} is now {status}."
        if notes:
            message += f" Note: {notes}"
        return await self.notify(
            user_id,
            f"withdrawal_{status}",
            message,
            {"withdrawal_id": withdrawal_id, "status": status},
        )

    async def send_crypto_payment_status(self, company_id: int, approval_id: int, status: str, amount: Money) -> bool:
        return await self.notify(
            company_id,
            f"crypto_payment_{status}",
            f"Your crypto deposit of {amount.format()} was {status} by an administrator.",
            {"approval_id": approval_id, "amount": amount.amount_minor},
        )


notification_service = NotificationService()
