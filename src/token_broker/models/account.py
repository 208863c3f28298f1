"""Account identity model."""

from typing import Any, Optional

from pydantic import BaseModel


class Account(BaseModel):
    """The user a cached token was issued to."""

    tenant_id: str
    username: Optional[str] = None  # UPN or preferred_username
    home_account_id: str

    model_config = {"frozen": True}

    @classmethod
    def from_id_token_claims(
        cls, claims: dict[str, Any], fallback_tenant: Optional[str] = None
    ) -> Optional["Account"]:
        """
        Build an account from decoded ID token claims.

        Args:
            claims: Decoded (unverified) ID token payload
            fallback_tenant: Tenant used when the token carries no ``tid``

        Returns:
            Account, or None if the claims identify no subject
        """
        object_id = claims.get("oid") or claims.get("sub")
        tenant_id = claims.get("tid") or fallback_tenant
        if not object_id or not tenant_id:
            return None
        return cls(
            tenant_id=tenant_id,
            username=claims.get("preferred_username")
            or claims.get("upn")
            or claims.get("email"),
            home_account_id=f"{object_id}.{tenant_id}",
        )
