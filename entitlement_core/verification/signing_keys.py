"""
TTL-refreshed cache of provider signing keys (JWKS).

Read-heavy: every App Store notification without an x5c chain looks up its
signing key here. Writes happen only on TTL expiry or a forced refresh for
an unknown key id.

Concurrency:
- Cold start: callers block on the lock until the first fetch completes.
- Warm but expired: one caller wins a non-blocking lock attempt and
  refreshes; everyone else keeps serving the current (stale) key set.
- Forced refreshes are rate limited so a stream of bogus key ids cannot
  hammer the provider.
- A failed fetch keeps the previous key set.
"""

import logging
import time
from threading import Lock
from typing import Callable, Dict, Optional

import httpx
import jwt
from jwt.exceptions import PyJWKSetError

from entitlement_core.entitlements.errors import (
    ProviderUnavailableError,
    UnknownKeyIdError,
)

logger = logging.getLogger(__name__)


def fetch_jwks(url: str, timeout: float = 10.0) -> dict:
    """Download a JWKS document."""
    with httpx.Client(timeout=httpx.Timeout(timeout, connect=5.0)) as client:
        response = client.get(url)
        response.raise_for_status()
        return response.json()


class SigningKeyCache:
    """
    Key-id -> public key map, refreshed from a JWKS endpoint.

    Usage:
        cache = SigningKeyCache("https://provider.example/keys.json")
        key = cache.get_key(kid)  # jwt.PyJWK
    """

    # Minimum seconds between refreshes forced by unknown key ids
    MIN_FORCED_REFRESH_INTERVAL = 60

    def __init__(
        self,
        jwks_url: str,
        ttl_seconds: int = 3600,
        fetcher: Optional[Callable[[], dict]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.jwks_url = jwks_url
        self.ttl_seconds = ttl_seconds
        self._fetcher = fetcher or (lambda: fetch_jwks(jwks_url))
        self._clock = clock

        self._keys: Optional[Dict[str, jwt.PyJWK]] = None
        self._fetched_at: float = 0.0
        self._last_forced_refresh: Optional[float] = None
        self._refresh_lock = Lock()

    @property
    def key_ids(self) -> list:
        return sorted(self._keys or {})

    def _is_expired(self) -> bool:
        return self._clock() - self._fetched_at >= self.ttl_seconds

    def _refresh(self) -> bool:
        """Fetch and swap the key set. Caller holds the lock."""
        try:
            key_set = jwt.PyJWKSet.from_dict(self._fetcher())
        except (httpx.HTTPError, PyJWKSetError, ValueError) as e:
            logger.error(
                "Failed to refresh signing keys",
                extra={"jwks_url": self.jwks_url, "error": str(e)},
            )
            return False

        self._keys = {k.key_id: k for k in key_set.keys if k.key_id}
        self._fetched_at = self._clock()
        logger.info(
            "Refreshed signing keys",
            extra={"jwks_url": self.jwks_url, "key_count": len(self._keys)},
        )
        return True

    def _current_keys(self) -> Dict[str, jwt.PyJWK]:
        if self._keys is None:
            with self._refresh_lock:
                if self._keys is None:
                    self._refresh()
            if self._keys is None:
                raise ProviderUnavailableError("Signing keys are unavailable")
            return self._keys

        if self._is_expired() and self._refresh_lock.acquire(blocking=False):
            try:
                if self._is_expired():
                    self._refresh()
            finally:
                self._refresh_lock.release()

        return self._keys

    def _force_refresh(self) -> bool:
        now = self._clock()
        if (
            self._last_forced_refresh is not None
            and now - self._last_forced_refresh < self.MIN_FORCED_REFRESH_INTERVAL
        ):
            return False
        if not self._refresh_lock.acquire(blocking=False):
            return False
        try:
            self._last_forced_refresh = now
            return self._refresh()
        finally:
            self._refresh_lock.release()

    def get_key(self, kid: str) -> jwt.PyJWK:
        """
        Resolve a signing key by key id.

        Raises:
            UnknownKeyIdError: kid absent even after a forced refresh
            ProviderUnavailableError: No key set could ever be loaded
        """
        keys = self._current_keys()
        if kid in keys:
            return keys[kid]

        if self._force_refresh() and kid in self._keys:
            return self._keys[kid]

        logger.warning("Unknown signing key id", extra={"kid": kid, "jwks_url": self.jwks_url})
        raise UnknownKeyIdError(kid)
