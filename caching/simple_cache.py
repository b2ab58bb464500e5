"""
In-memory TTL cache and the admin session store kept in it
"""

import logging
import secrets
import threading
import time
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class SimpleCache:
    """Thread-safe in-memory cache; entries expire after their TTL"""

    def __init__(self, default_ttl: int = 300, clock=time.time):
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self.default_ttl = default_ttl
        self.stats = {"hits": 0, "misses": 0, "evictions": 0}

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                value, expires_at = entry
                if expires_at > self._clock():
                    self.stats["hits"] += 1
                    return value
                del self._entries[key]
                self.stats["evictions"] += 1

            self.stats["misses"] += 1
            return default

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + (self.default_ttl if ttl is None else ttl))

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def cleanup_expired(self) -> int:
        """Drop expired entries; returns how many were removed"""
        with self._lock:
            now = self._clock()
            expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
            self.stats["evictions"] += len(expired)
            return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, "size": len(self._entries)}


class SessionStore:
    """
    Admin bearer sessions. Routes receive the store as a dependency so tests
    can swap in their own instance.
    """

    KEY_PREFIX = "admin_session:"

    def __init__(self, cache: Optional[SimpleCache] = None, ttl_seconds: int = 8 * 60 * 60):
        self.ttl_seconds = ttl_seconds
        self._cache = cache or SimpleCache(default_ttl=ttl_seconds)

    def create(self, admin: Dict[str, Any]) -> str:
        # Logged-out or abandoned sessions would otherwise accumulate
        self._cache.cleanup_expired()
        token = secrets.token_urlsafe(32)
        self._cache.set(self.KEY_PREFIX + token, admin, self.ttl_seconds)
        logger.info(f"🔐 ADMIN_SESSION_CREATED: {admin.get('email')}")
        return token

    def get(self, token: Optional[str]) -> Optional[Dict[str, Any]]:
        if not token:
            return None
        return self._cache.get(self.KEY_PREFIX + token)

    def revoke(self, token: Optional[str]) -> bool:
        if not token:
            return False
        revoked = self._cache.delete(self.KEY_PREFIX + token)
        if revoked:
            logger.info("🔓 ADMIN_SESSION_REVOKED")
        return revoked
