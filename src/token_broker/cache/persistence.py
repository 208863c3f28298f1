"""Durable token cache backed by msal-extensions persistence."""

import json
import logging
import sys
import threading
from datetime import timedelta
from pathlib import Path
from typing import Optional

from msal_extensions import (
    FilePersistence,
    KeychainPersistence,
    LibsecretPersistence,
)
from msal_extensions.persistence import BasePersistence, PersistenceNotFound
from pydantic import ValidationError

from ..models.token import DEFAULT_CLOCK_SKEW, CachedToken, TokenCacheKey
from ..utils.exceptions import TokenCacheError
from .token_cache import TokenCache

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


def build_persistence(
    cache_location: Path,
    cache_name: str = "token_broker_cache",
    encrypted: bool = True,
) -> BasePersistence:
    """
    Pick a platform persistence for the cache file.

    Args:
        cache_location: Directory for cache storage
        cache_name: Name of the cache file
        encrypted: Whether to use the OS secret store where available

    Returns:
        msal-extensions persistence instance

    Raises:
        TokenCacheError: If the cache directory cannot be created
    """
    try:
        cache_location.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise TokenCacheError(f"Failed to create cache directory {cache_location}: {e}") from e

    if not encrypted:
        return FilePersistence(str(cache_location / f"{cache_name}.json"))

    location = str(cache_location / f"{cache_name}.bin")
    if sys.platform == "darwin":
        return KeychainPersistence(location, "token_broker", cache_name)
    if sys.platform.startswith("linux"):
        try:
            return LibsecretPersistence(
                location,
                schema_name="token_broker",
                attributes={"app": cache_name},
            )
        except Exception as e:
            # No secret service (headless/CI); the file stays owner-only
            logger.warning(f"Libsecret unavailable ({e}), using plain file persistence")
    return FilePersistence(location)


class PersistentTokenCache(TokenCache):
    """
    TokenCache that mirrors every mutation to a persistence layer.

    The whole cache is saved as one JSON snapshot after each store,
    invalidate, removal or clear, and restored when constructed. Client
    credential material is never part of the snapshot. A failed write is
    logged and the in-memory entries keep serving; ``save`` called directly
    raises TokenCacheError.
    """

    def __init__(
        self,
        persistence: BasePersistence,
        skew: timedelta = DEFAULT_CLOCK_SKEW,
        **kwargs,
    ):
        super().__init__(skew=skew, **kwargs)
        self.persistence = persistence
        self._save_lock = threading.Lock()
        self.load()

    def load(self) -> None:
        """Restore entries from the persistence layer, if any were saved."""
        try:
            raw = self.persistence.load()
        except PersistenceNotFound:
            logger.debug("No persisted token cache found")
            return
        except Exception as e:
            raise TokenCacheError(f"Failed to read token cache: {e}") from e
        if not raw:
            return

        try:
            data = json.loads(raw)
            entries = [
                (
                    TokenCacheKey.model_validate(item["key"]),
                    CachedToken.model_validate(item["token"]),
                )
                for item in data.get("entries", [])
            ]
        except (ValueError, KeyError, TypeError, ValidationError) as e:
            # A corrupt cache is discarded rather than blocking acquisition
            logger.warning(f"Ignoring unreadable token cache: {e}")
            return

        self.restore(entries)
        logger.info(f"Loaded {len(entries)} cached token(s) from {self.persistence.get_location()}")

    def save(self) -> None:
        """Write the current entries to the persistence layer."""
        with self._save_lock:
            payload = {
                "version": SNAPSHOT_VERSION,
                "entries": [
                    {
                        "key": key.model_dump(mode="json"),
                        "token": token.model_dump(mode="json"),
                    }
                    for key, token in self.snapshot()
                ],
            }
            try:
                self.persistence.save(json.dumps(payload))
            except Exception as e:
                raise TokenCacheError(f"Failed to write token cache: {e}") from e

    def _changed(self) -> None:
        # The in-memory entry stays authoritative; disk catches up on the next write
        try:
            self.save()
        except TokenCacheError as e:
            logger.warning(f"Token cache not persisted: {e}")


def open_persistent_cache(
    cache_location: Path,
    encrypted: bool = True,
    skew: Optional[timedelta] = None,
) -> PersistentTokenCache:
    """Build a persistent cache at the given location."""
    persistence = build_persistence(cache_location, encrypted=encrypted)
    return PersistentTokenCache(persistence, skew=skew or DEFAULT_CLOCK_SKEW)
