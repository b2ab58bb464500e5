"""
Admin Authentication Service
Credential check against the configured admin account and session issue
through an injected SessionStore.
"""

import hashlib
import hmac
import logging
import secrets
from typing import Any, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from caching.simple_cache import SessionStore
from config import Config
from models import User, UserType
from utils.exceptions import NotAuthorized, ValidationError

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 260_000


def hash_password(password: str, salt: Optional[str] = None, iterations: int = PBKDF2_ITERATIONS) -> str:
    """Encode a password as pbkdf2_sha256$<iterations>$<salt>$<hex digest> for ADMIN_PASSWORD_HASH"""
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), iterations)
    return f"pbkdf2_sha256${iterations}${salt}${digest.hex()}"


def verify_password(password: str, encoded: str) -> bool:
    try:
        algorithm, iterations, salt, expected = encoded.split("$")
        rounds = int(iterations)
    except ValueError:
        logger.error("❌ ADMIN_PASSWORD_HASH is malformed")
        return False
    if algorithm != "pbkdf2_sha256":
        return False
    return hmac.compare_digest(hash_password(password, salt, rounds), f"{algorithm}${rounds}${salt}${expected}")


class AdminAuthService:
    """Admin authentication service"""

    def __init__(self, store: SessionStore, email: Optional[str] = None, password_hash: Optional[str] = None):
        self.store = store
        self.email = (email or Config.ADMIN_EMAIL or "").lower()
        self.password_hash = password_hash if password_hash is not None else Config.ADMIN_PASSWORD_HASH

    def login(self, session: Session, email: str, password: str) -> str:
        """Return a session token for valid admin credentials"""
        if not email or not password:
            raise ValidationError("Email and password are required")
        if not self.password_hash:
            logger.error("❌ ADMIN_LOGIN_DISABLED: ADMIN_PASSWORD_HASH is not configured")
            raise NotAuthorized("Admin login is not configured")

        email_ok = hmac.compare_digest(email.strip().lower(), self.email)
        password_ok = verify_password(password, self.password_hash)
        if not (email_ok and password_ok):
            logger.warning(f"🚫 ADMIN_LOGIN_FAILED: {email}")
            raise NotAuthorized("Invalid admin credentials")

        admin_user = session.execute(
            select(User).where(func.lower(User.email) == self.email, User.user_type == UserType.ADMIN.value)
        ).scalars().first()
        if admin_user is None:
            logger.error(f"❌ ADMIN_NOT_PROVISIONED: no admin user with email {self.email}")
            raise NotAuthorized("Admin account is not provisioned")
        token = self.store.create({"email": self.email, "admin_id": admin_user.id})
        logger.info(f"🔑 ADMIN_LOGIN: {self.email}")
        return token

    def logout(self, token: Optional[str]) -> bool:
        revoked = self.store.revoke(token)
        if revoked:
            logger.info("🔒 ADMIN_LOGOUT: session revoked")
        return revoked

    def authenticate(self, token: Optional[str]) -> Dict[str, Any]:
        admin = self.store.get(token)
        if admin is None:
            raise NotAuthorized("Admin session required")
        return admin
