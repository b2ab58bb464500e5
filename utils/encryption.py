"""
Wallet Address Protection
Encrypts crypto wallet addresses at rest, derives a keyed fingerprint for
platform-wide duplicate detection, and masks addresses for display and logs.
"""

import hashlib
import hmac
import logging
import os
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from config import Config

logger = logging.getLogger(__name__)


def mask_address(address: Optional[str]) -> str:
    """addr[0:6] + '...' + addr[-4:]; short values are returned unchanged"""
    if not address:
        return ""
    if len(address) <= 10:
        return address
    return f"{address[:6]}...{address[-4:]}"


def normalize_address(address: str) -> str:
    """Canonical form used for fingerprints; hex and bech32 are case-insensitive"""
    address = address.strip()
    lowered = address.lower()
    if lowered.startswith(("0x", "bc1")):
        return lowered
    return address


class WalletEncryption:
    """Symmetric encrypt/decrypt for wallet addresses (Fernet)"""

    def __init__(self, key: Optional[str] = None, fingerprint_key: Optional[str] = None):
        encryption_key = self._get_or_create_encryption_key(key)
        self.fernet = Fernet(encryption_key)
        self.fingerprint_key = self._get_fingerprint_key(fingerprint_key, encryption_key)

    @staticmethod
    def _get_fingerprint_key(fingerprint_key: Optional[str], encryption_key: bytes) -> bytes:
        fingerprint_key = fingerprint_key or Config.WALLET_FINGERPRINT_KEY or os.environ.get("WALLET_FINGERPRINT_KEY")
        if fingerprint_key:
            return fingerprint_key.encode("utf-8")

        if Config.IS_PRODUCTION:
            raise RuntimeError("WALLET_FINGERPRINT_KEY must be set in production")

        # Stable for as long as the encryption key is
        logger.warning("⚠️ WALLET_FINGERPRINT_KEY not set - deriving a development key from the encryption key")
        return hmac.new(encryption_key, b"wallet-fingerprint", hashlib.sha256).digest()

    def _get_or_create_encryption_key(self, key: Optional[str]) -> bytes:
        key = key or Config.WALLET_ENCRYPTION_KEY or os.environ.get("WALLET_ENCRYPTION_KEY")
        if key:
            return key.encode("utf-8") if isinstance(key, str) else key

        if Config.IS_PRODUCTION:
            raise RuntimeError("WALLET_ENCRYPTION_KEY must be set in production")

        logger.warning("⚠️ Generating new wallet encryption key - existing encrypted addresses will not decrypt")
        generated = Fernet.generate_key()
        os.environ["WALLET_ENCRYPTION_KEY"] = generated.decode("utf-8")
        return generated

    def encrypt(self, address: str) -> str:
        if not address:
            raise ValueError("Cannot encrypt an empty address")
        return self.fernet.encrypt(address.encode("utf-8")).decode("utf-8")

    def decrypt(self, token: str) -> str:
        try:
            return self.fernet.decrypt(token.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            logger.error("❌ WALLET_DECRYPT_FAILED: token rejected (wrong key or corrupted data)")
            raise

    def fingerprint(self, address: str) -> str:
        """Deterministic keyed hash; Fernet ciphertext is randomized so it cannot be compared"""
        return hmac.new(
            self.fingerprint_key,
            normalize_address(address).encode("utf-8"),
            hashlib.sha256
        ).hexdigest()

    def decrypt_masked(self, token: str) -> str:
        return mask_address(self.decrypt(token))


_wallet_encryption: Optional[WalletEncryption] = None


def get_wallet_encryption() -> WalletEncryption:
    """Process-wide encryptor, built on first use"""
    global _wallet_encryption
    if _wallet_encryption is None:
        _wallet_encryption = WalletEncryption()
    return _wallet_encryption
