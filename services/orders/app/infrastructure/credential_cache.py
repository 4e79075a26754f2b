"""Process-wide cache for third-party access tokens.

Tokens are kept in an in-process ``TLRUCache`` keyed by provider, each entry
expiring ``skew`` seconds before the provider's own expiry. When
``REDIS_URL`` is configured the token is also shared through Redis so that
all workers reuse one credential; Redis being down only costs an extra
authentication round-trip.

Refreshing twice is harmless: the second token simply overwrites the first.
The lock only keeps concurrent requests from all refreshing at once.
"""

import json
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import redis
from cachetools import TLRUCache

from shared.core import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class AccessToken:
    value: str
    expires_at: float  # epoch seconds


class CredentialCache:
    def __init__(
        self,
        redis_url: Optional[str] = None,
        skew: float = 60,
        timer: Callable[[], float] = time.time,
    ):
        self.skew = skew
        self.timer = timer
        self._local = TLRUCache(maxsize=16, ttu=self._expires, timer=timer)
        self._lock = threading.Lock()
        self._redis: Optional[redis.Redis] = None
        if redis_url:
            try:
                self._redis = redis.from_url(redis_url, decode_responses=True, socket_connect_timeout=1)
                self._redis.ping()
            except Exception as e:
                logger.warning(f"Credential cache falling back to in-process storage: {e}")
                self._redis = None

    def _expires(self, key, token: AccessToken, now: float) -> float:
        return token.expires_at - self.skew

    def _redis_key(self, key: str) -> str:
        return f"credentials:{key}"

    def get(self, key: str) -> Optional[AccessToken]:
        token = self._local.get(key)
        if token is not None:
            return token
        if self._redis is not None:
            try:
                raw = self._redis.get(self._redis_key(key))
            except redis.RedisError as e:
                logger.warning(f"Credential cache read failed: {e}")
                raw = None
            if raw:
                data = json.loads(raw)
                token = AccessToken(value=data["value"], expires_at=float(data["expires_at"]))
                if token.expires_at - self.skew > self.timer():
                    self._local[key] = token
                    return token
        return None

    def set(self, key: str, token: AccessToken) -> None:
        ttl = int(token.expires_at - self.skew - self.timer())
        if ttl <= 0:
            return
        self._local[key] = token
        if self._redis is not None:
            try:
                self._redis.setex(
                    self._redis_key(key), ttl,
                    json.dumps({"value": token.value, "expires_at": token.expires_at}),
                )
            except redis.RedisError as e:
                logger.warning(f"Credential cache write failed: {e}")

    def invalidate(self, key: str) -> None:
        self._local.pop(key, None)
        if self._redis is not None:
            try:
                self._redis.delete(self._redis_key(key))
            except redis.RedisError as e:
                logger.warning(f"Credential cache delete failed: {e}")

    def get_or_refresh(self, key: str, refresh: Callable[[], AccessToken]) -> AccessToken:
        token = self.get(key)
        if token is not None:
            return token
        with self._lock:
            token = self.get(key)
            if token is not None:
                return token
            token = refresh()
            self.set(key, token)
            return token

    def status(self, key: str) -> dict:
        token = self.get(key)
        return {
            "cached": token is not None,
            "expires_in_seconds": round(token.expires_at - self.timer()) if token else None,
            "shared": self._redis is not None,
        }


_credential_cache: Optional[CredentialCache] = None


def get_credential_cache() -> CredentialCache:
    """Return the process-wide cache, creating it from settings on first use."""
    global _credential_cache
    if _credential_cache is None:
        from app.core_settings import get_settings

        settings = get_settings()
        _credential_cache = CredentialCache(
            redis_url=settings.REDIS_URL,
            skew=settings.GATEWAY_TOKEN_REFRESH_SKEW_SECONDS,
        )
    return _credential_cache
