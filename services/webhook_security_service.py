"""
Webhook Security Service - request preflight for provider callbacks
Header presence, content type and payload size checks run before the
settlement services verify the provider signature over the raw body.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import Request

logger = logging.getLogger(__name__)


class WebhookSecurityService:
    """Centralized webhook request validation"""

    MAX_PAYLOAD_BYTES = 1024 * 1024  # 1MB

    @classmethod
    def _preflight(cls, request: Request, body: bytes, required_headers: tuple) -> Dict[str, Any]:
        missing = [name for name in required_headers if not request.headers.get(name)]
        if missing:
            return {
                "valid": False,
                "error": "Missing signature headers",
                "security_info": {"missing_headers": missing},
            }

        content_type = request.headers.get("Content-Type", "")
        if "application/json" not in content_type:
            return {
                "valid": False,
                "error": "Invalid content type",
                "security_info": {"invalid_content_type": content_type},
            }

        if len(body) > cls.MAX_PAYLOAD_BYTES:
            return {
                "valid": False,
                "error": "Payload too large",
                "security_info": {"payload_size": len(body)},
            }

        return {"valid": True, "security_info": {"payload_size": len(body), "content_type": content_type}}

    @classmethod
    def validate_stripe_webhook(cls, request: Request, body: bytes) -> Dict[str, Any]:
        """
        Validate a Stripe callback request shape
        Returns: {'valid': bool, 'error': str, 'security_info': dict}
        """
        return cls._preflight(request, body, ("Stripe-Signature",))

    @classmethod
    def validate_binance_pay_webhook(cls, request: Request, body: bytes) -> Dict[str, Any]:
        return cls._preflight(
            request,
            body,
            ("BinancePay-Timestamp", "BinancePay-Nonce", "BinancePay-Signature"),
        )

    @classmethod
    def log_webhook_security_event(
        cls,
        provider: str,
        event_type: str,
        success: bool,
        details: Dict[str, Any],
        request_ip: Optional[str] = None,
    ) -> None:
        """Log webhook security events for audit trail"""
        if success:
            logger.info(f"🔐 WEBHOOK_SECURITY: {provider} {event_type} - SUCCESS from {request_ip}")
        else:
            logger.warning(f"🚨 WEBHOOK_SECURITY: {provider} {event_type} - FAILED from {request_ip}: {details}")

    @classmethod
    def get_client_ip(cls, request: Request) -> str:
        """Extract client IP address with proxy support"""
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            # First hop is the original client
            return forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip

        return getattr(request.client, "host", None) or "unknown"
