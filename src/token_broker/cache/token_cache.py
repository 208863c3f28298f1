"""In-memory, thread-safe token cache with single-flight acquisition.

Entries are grouped by partition (client, tenant, account, authority) and,
inside a partition, by scope set. A lookup hits when any unexpired entry of
the partition was granted every requested scope.

``get_or_acquire`` guarantees at most one in-flight acquisition per cache
slot: the first caller for a slot runs the supplier, later callers for the
same slot wait and receive the same token or the same exception.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from ..models.account import Account
from ..models.token import (
    DEFAULT_CLOCK_SKEW,
    CachedToken,
    CachePartition,
    TokenCacheKey,
)
from ..utils.date_utils import utc_now
from ..utils.retry import CancellationToken

logger = logging.getLogger(__name__)

# How often a waiting follower re-checks its own cancellation
FOLLOWER_POLL_SECONDS = 0.05


class _InFlight:
    """Result slot for one in-flight acquisition."""

    def __init__(self) -> None:
        self._done = threading.Event()
        self._token: Optional[CachedToken] = None
        self._error: Optional[BaseException] = None

    def resolve(self, token: CachedToken) -> None:
        self._token = token
        self._done.set()

    def fail(self, error: BaseException) -> None:
        self._error = error
        self._done.set()

    def result(self, cancellation: Optional[CancellationToken] = None) -> CachedToken:
        """
        Wait for the leader's outcome.

        Raises:
            AcquisitionCancelledError: The follower's own token was cancelled
                first; the leader keeps running
        """
        if cancellation is None:
            self._done.wait()
        else:
            while not self._done.wait(FOLLOWER_POLL_SECONDS):
                cancellation.raise_if_cancelled()
        if self._error is not None:
            # Each follower gets a fresh traceback on the shared error
            raise self._error.with_traceback(None)
        return self._token


class TokenCache:
    """Keyed store of issued tokens, safe for concurrent callers."""

    def __init__(
        self,
        skew: timedelta = DEFAULT_CLOCK_SKEW,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize an empty cache.

        Args:
            skew: Margin before ``expires_at`` from which tokens count as expired
            clock: Source of the current UTC time
        """
        self.skew = skew
        self.clock = clock
        self._entries: dict[CachePartition, dict[frozenset[str], CachedToken]] = {}
        self._inflight: dict[TokenCacheKey, _InFlight] = {}
        self._lock = threading.Lock()

    def lookup(self, key: TokenCacheKey) -> Optional[CachedToken]:
        """
        Find an unexpired token covering the key's scopes.

        Returns:
            Cached token, or None on a miss
        """
        with self._lock:
            return self._lookup_locked(key)

    def _lookup_locked(self, key: TokenCacheKey) -> Optional[CachedToken]:
        slots = self._entries.get(key.partition)
        if not slots:
            return None
        now = self.clock()
        exact = slots.get(key.scopes)
        candidates = ([exact] if exact else []) + [t for t in slots.values() if t is not exact]
        for token in candidates:
            if not token.is_expired(now, self.skew) and token.covers(key.scopes):
                return token
        return None

    def store(self, key: TokenCacheKey, token: CachedToken) -> TokenCacheKey:
        """
        Upsert a token, replacing whatever occupied the slot.

        A key without an account is re-keyed to the account the token was
        issued to, so user tokens never land in the app-only partition.

        Returns:
            The key the token was stored under
        """
        if key.account_id is None and token.account is not None:
            key = key.with_account(token.account.home_account_id)
        with self._lock:
            self._entries.setdefault(key.partition, {})[key.scopes] = token
        logger.debug(f"Cached token for {sorted(key.scopes)} (expires {token.expires_at.isoformat()})")
        self._changed()
        return key

    def invalidate(self, key: TokenCacheKey) -> bool:
        """
        Remove the entry in the key's slot.

        Returns:
            True if an entry was removed
        """
        with self._lock:
            removed = self._invalidate_locked(key)
        if removed:
            self._changed()
        return removed

    def _invalidate_locked(self, key: TokenCacheKey) -> bool:
        slots = self._entries.get(key.partition)
        if not slots or key.scopes not in slots:
            return False
        del slots[key.scopes]
        if not slots:
            del self._entries[key.partition]
        return True

    def get_or_acquire(
        self,
        key: TokenCacheKey,
        supplier: Callable[[], CachedToken],
        force_refresh: bool = False,
        cancellation: Optional[CancellationToken] = None,
    ) -> CachedToken:
        """
        Return a cached token or acquire one, one acquisition per slot at a time.

        Args:
            key: Cache slot
            supplier: Performs the token exchange; called at most once per
                concurrent group of callers for the same slot
            force_refresh: Skip the cache lookup and replace the slot's entry
            cancellation: Lets a caller waiting on another caller's
                acquisition give up without affecting it

        Returns:
            Cached or freshly acquired token

        Raises:
            Whatever the supplier raised; nothing is stored in that case.
            AcquisitionCancelledError: The cancellation fired while waiting
                on another caller's acquisition.
        """
        with self._lock:
            if not force_refresh:
                cached = self._lookup_locked(key)
                if cached is not None:
                    return cached
            flight = self._inflight.get(key)
            leader = flight is None
            if leader:
                flight = _InFlight()
                self._inflight[key] = flight
                if force_refresh:
                    self._invalidate_locked(key)

        if not leader:
            logger.debug(f"Joining in-flight acquisition for {sorted(key.scopes)}")
            return flight.result(cancellation)

        try:
            token = supplier()
            self.store(key, token)
        except BaseException as e:
            with self._lock:
                self._inflight.pop(key, None)
            flight.fail(e)
            raise

        with self._lock:
            self._inflight.pop(key, None)
        flight.resolve(token)
        return token

    def find_refresh_token(self, partition: CachePartition) -> Optional[str]:
        """Most recently issued refresh token in a partition, expired or not."""
        with self._lock:
            slots = self._entries.get(partition, {})
            holders = [t for t in slots.values() if t.refresh_token]
        if not holders:
            return None
        return max(holders, key=lambda t: t.expires_at).refresh_token

    def accounts(self) -> list[Account]:
        """Distinct accounts that hold cached tokens."""
        with self._lock:
            tokens = [t for slots in self._entries.values() for t in slots.values()]
        seen: dict[str, Account] = {}
        for token in tokens:
            if token.account is not None:
                seen.setdefault(token.account.home_account_id, token.account)
        return list(seen.values())

    def remove_account(self, account: Account) -> int:
        """
        Drop every partition belonging to an account.

        Returns:
            Number of tokens removed
        """
        removed = 0
        with self._lock:
            for partition in list(self._entries):
                slots = self._entries[partition]
                owned = partition.account_id == account.home_account_id or any(
                    t.account is not None and t.account.home_account_id == account.home_account_id
                    for t in slots.values()
                )
                if owned:
                    removed += len(slots)
                    del self._entries[partition]
        if removed:
            logger.info(f"Removed {removed} cached token(s) for {account.username or account.home_account_id}")
            self._changed()
        return removed

    def clear(self) -> None:
        """Drop every cached token."""
        with self._lock:
            self._entries.clear()
        logger.info("Token cache cleared")
        self._changed()

    def snapshot(self) -> list[tuple[TokenCacheKey, CachedToken]]:
        """Copy of all entries, for persistence."""
        with self._lock:
            return [
                (
                    TokenCacheKey(
                        client_id=partition.client_id,
                        tenant_id=partition.tenant_id,
                        account_id=partition.account_id,
                        scopes=scopes,
                        authority=partition.authority,
                    ),
                    token,
                )
                for partition, slots in self._entries.items()
                for scopes, token in slots.items()
            ]

    def restore(self, entries: Iterable[tuple[TokenCacheKey, CachedToken]]) -> None:
        """Replace the cache contents without triggering change hooks."""
        with self._lock:
            self._entries.clear()
            for key, token in entries:
                self._entries.setdefault(key.partition, {})[key.scopes] = token

    def __len__(self) -> int:
        with self._lock:
            return sum(len(slots) for slots in self._entries.values())

    def _changed(self) -> None:
        """Hook invoked after each mutation; persistent caches override it."""
