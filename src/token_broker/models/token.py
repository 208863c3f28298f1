"""Cached token and cache key models."""

from datetime import datetime, timedelta
from typing import Iterable, NamedTuple, Optional

from pydantic import BaseModel, Field, field_validator

from ..utils.date_utils import ensure_utc, utc_now
from .account import Account

DEFAULT_CLOCK_SKEW = timedelta(minutes=5)

# OIDC scopes that authorities do not echo back in the granted scope list
RESERVED_SCOPES = frozenset({"openid", "profile", "offline_access"})


def normalize_scopes(scopes: Iterable[str]) -> frozenset[str]:
    """Lower-case, strip and de-duplicate scopes for order-free comparison."""
    if isinstance(scopes, str):
        scopes = scopes.split()
    return frozenset(s.strip().lower() for s in scopes if s and s.strip())


class CachePartition(NamedTuple):
    """A cache key without its scopes: one client, tenant, account and authority."""

    client_id: str
    tenant_id: str
    account_id: Optional[str]
    authority: str


class TokenCacheKey(BaseModel):
    """Identifies one cache slot."""

    client_id: str
    tenant_id: str
    account_id: Optional[str] = None
    scopes: frozenset[str]
    authority: str

    model_config = {"frozen": True}

    @field_validator("scopes", mode="before")
    @classmethod
    def _normalize_scopes(cls, value: Iterable[str]) -> frozenset[str]:
        return normalize_scopes(value)

    @field_validator("authority", "tenant_id")
    @classmethod
    def _lower(cls, value: str) -> str:
        return value.rstrip("/").lower()

    @property
    def partition(self) -> CachePartition:
        return CachePartition(
            self.client_id, self.tenant_id, self.account_id, self.authority
        )

    @property
    def comparable_scopes(self) -> frozenset[str]:
        return self.scopes - RESERVED_SCOPES

    def with_account(self, account_id: Optional[str]) -> "TokenCacheKey":
        return self.model_copy(update={"account_id": account_id})


class CachedToken(BaseModel):
    """Token issued by the authority, replaced as a whole on refresh."""

    access_token: str = Field(repr=False)
    token_type: str = "Bearer"
    expires_at: datetime
    granted_scopes: frozenset[str]
    refresh_token: Optional[str] = Field(default=None, repr=False)
    id_token: Optional[str] = Field(default=None, repr=False)
    account: Optional[Account] = None

    model_config = {"frozen": True}

    @field_validator("granted_scopes", mode="before")
    @classmethod
    def _normalize_granted(cls, value: Iterable[str]) -> frozenset[str]:
        return normalize_scopes(value)

    @field_validator("expires_at")
    @classmethod
    def _utc_expiry(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def is_expired(
        self,
        now: Optional[datetime] = None,
        skew: timedelta = DEFAULT_CLOCK_SKEW,
    ) -> bool:
        """A token is expired from ``expires_at - skew`` onwards."""
        now = ensure_utc(now) if now else utc_now()
        return now >= self.expires_at - skew

    def covers(self, scopes: Iterable[str]) -> bool:
        """True if the granted scopes include every requested scope."""
        requested = normalize_scopes(scopes) - RESERVED_SCOPES
        return requested <= self.granted_scopes

    @property
    def expires_in(self) -> int:
        return max(int((self.expires_at - utc_now()).total_seconds()), 0)
