"""Refresh token redemption and silent acquisition."""

import logging
from typing import Optional

from ..auth.authority import AuthorityEndpoints
from ..cache.token_cache import TokenCache
from ..models.client import ClientApplication
from ..models.request import AcquisitionRequest, GrantType
from ..models.token import CachedToken, TokenCacheKey
from ..utils.exceptions import (
    CacheMissError,
    InteractionRequiredError,
    InvalidGrantError,
)
from .base import TokenFlow

logger = logging.getLogger(__name__)


class RefreshTokenFlow(TokenFlow):
    """Redeems a refresh token for a new access token."""

    grant_type = GrantType.REFRESH_TOKEN
    idempotent = True

    def grant_fields(
        self,
        request: AcquisitionRequest,
        client: ClientApplication,
    ) -> dict[str, str]:
        return {"grant_type": "refresh_token"}

    def execute(
        self,
        request: AcquisitionRequest,
        client: ClientApplication,
        endpoints: AuthorityEndpoints,
        extra_fields: Optional[dict[str, str]] = None,
    ) -> CachedToken:
        """Redeem the refresh token, keeping it if the authority rotates none in."""
        refresh_token = (extra_fields or {}).get("refresh_token") or request.refresh_token
        token = super().execute(
            request, client, endpoints, extra_fields={"refresh_token": refresh_token}
        )
        if token.refresh_token is None:
            token = token.model_copy(update={"refresh_token": refresh_token})
        return token


class SilentFlow(RefreshTokenFlow):
    """
    Acquisition that never prompts: cache first, then the account's refresh token.

    The cache lookup itself happens in the broker's single-flight call; this
    flow runs only on a miss.
    """

    grant_type = GrantType.SILENT

    def __init__(self, *args, cache: Optional[TokenCache] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.cache = cache

    def acquire(
        self,
        request: AcquisitionRequest,
        client: ClientApplication,
        endpoints: AuthorityEndpoints,
        key: TokenCacheKey,
    ) -> CachedToken:
        """
        Refresh silently for the key's account.

        Raises:
            InteractionRequiredError: No refresh token is held, or the
                authority rejected the one held
        """
        try:
            refresh_token = self._require_refresh_token(key)
        except CacheMissError as e:
            raise InteractionRequiredError(
                "no_tokens_found",
                "No cached token or refresh token for the account",
                correlation_id=request.correlation_id,
            ) from e

        try:
            return self.execute(
                request, client, endpoints, extra_fields={"refresh_token": refresh_token}
            )
        except InvalidGrantError as e:
            logger.info(
                f"Refresh token rejected ({e.code}), interaction required "
                f"[correlation_id={e.correlation_id}]"
            )
            raise InteractionRequiredError(
                e.code,
                e.description,
                correlation_id=e.correlation_id,
                error_codes=e.error_codes,
                suberror=e.suberror,
            ) from e

    def _require_refresh_token(self, key: TokenCacheKey) -> str:
        if self.cache is None:
            raise CacheMissError("Silent acquisition has no cache")
        refresh_token = self.cache.find_refresh_token(key.partition)
        if refresh_token is None:
            raise CacheMissError("No refresh token cached for account")
        return refresh_token
