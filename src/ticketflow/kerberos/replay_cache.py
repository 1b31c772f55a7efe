"""
ticketflow Authenticator Replay Cache

Replay prevention for the TGS and Service exchanges.

An authenticator is identified by (subject_id, address, issued_at). Each
identifier is accepted once; entries are kept for twice the retention
window and pruned when the cache grows past its limit.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Dict

import attrs
import structlog

from ticketflow.core.types import Clock, utc_now
from ticketflow.kerberos.tickets import Ticket

logger = structlog.get_logger()


# =============================================================================
# AUTHENTICATOR KEY
# =============================================================================


@attrs.define(frozen=True, slots=True)
class AuthenticatorKey:
    """Cache key of one decrypted authenticator."""

    subject_id: str
    address: str
    issued_at: str

    @classmethod
    def from_ticket(cls, authenticator: Ticket) -> AuthenticatorKey:
        return cls(
            subject_id=authenticator.subject_id or "",
            address=authenticator.address or "",
            issued_at=authenticator.issued_at or "",
        )


# =============================================================================
# AUTHENTICATOR CACHE
# =============================================================================


@attrs.define
class AuthenticatorCache:
    """
    Replay attack prevention cache.

    Thread-safe: role servers validate concurrent requests against one cache.

    Example:
        cache = AuthenticatorCache()

        if cache.check_and_add(authenticator):
            # First time seeing this authenticator
            ...
        else:
            raise ReplayDetected()
    """

    window: timedelta = timedelta(minutes=5)
    max_entries: int = 10000
    clock: Clock = utc_now

    _cache: Dict[AuthenticatorKey, datetime] = attrs.Factory(dict)
    _lock: threading.RLock = attrs.Factory(threading.RLock)
    _logger: structlog.BoundLogger = attrs.Factory(lambda: structlog.get_logger())

    def check_and_add(self, authenticator: Ticket) -> bool:
        """
        Record an authenticator.

        Returns:
            True if the authenticator is fresh (not seen before)
            False if it was already seen (replay)
        """
        key = AuthenticatorKey.from_ticket(authenticator)
        now = self.clock()

        with self._lock:
            if key in self._cache:
                self._logger.warning(
                    "replay_detected",
                    subject=key.subject_id,
                    issued_at=key.issued_at,
                )
                return False

            self._cache[key] = now

            if len(self._cache) > self.max_entries:
                self._cleanup_expired_locked(now)

            self._logger.debug(
                "authenticator_cached",
                subject=key.subject_id,
                cache_size=len(self._cache),
            )
            return True

    def is_replay(self, authenticator: Ticket) -> bool:
        """Check without recording."""
        with self._lock:
            return AuthenticatorKey.from_ticket(authenticator) in self._cache

    def cleanup_expired(self) -> int:
        """
        Remove entries older than twice the window.

        Returns:
            Number of entries removed
        """
        with self._lock:
            return self._cleanup_expired_locked(self.clock())

    def _cleanup_expired_locked(self, now: datetime) -> int:
        """Internal cleanup (must hold lock)."""
        threshold = now - self.window * 2
        expired = [key for key, added in self._cache.items() if added < threshold]

        for key in expired:
            del self._cache[key]

        if expired:
            self._logger.debug(
                "cache_cleanup",
                removed=len(expired),
                remaining=len(self._cache),
            )
        return len(expired)

    def clear(self) -> int:
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
            return count

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._cache)

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "size": len(self._cache),
                "max_entries": self.max_entries,
                "window_seconds": int(self.window.total_seconds()),
            }
