"""Acquisition request model.

A request is a tagged union on ``grant_type``: each grant accepts a fixed set
of grant-specific inputs and requires some of them. Combinations that mix
inputs of different grants are rejected when the request is built.
"""

import uuid
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

from ..auth.credentials import CredentialMaterial
from ..utils.exceptions import InvalidRequestError
from ..utils.retry import CancellationToken
from .account import Account
from .device_code import DeviceCodeChallenge

JWT_BEARER_ASSERTION_TYPE = "urn:ietf:params:oauth:grant-type:jwt-bearer"


class GrantType(str, Enum):
    """Supported token acquisition flows."""

    CLIENT_CREDENTIALS = "client_credentials"
    ON_BEHALF_OF = "on_behalf_of"
    AUTHORIZATION_CODE = "authorization_code"
    USERNAME_PASSWORD = "username_password"
    DEVICE_CODE = "device_code"
    REFRESH_TOKEN = "refresh_token"
    SILENT = "silent"


# Grant-specific inputs each grant accepts
_ALLOWED_FIELDS: dict[GrantType, frozenset[str]] = {
    GrantType.CLIENT_CREDENTIALS: frozenset(),
    GrantType.ON_BEHALF_OF: frozenset({"user_assertion", "user_assertion_type"}),
    GrantType.AUTHORIZATION_CODE: frozenset(
        {"authorization_code", "redirect_uri", "code_verifier"}
    ),
    GrantType.USERNAME_PASSWORD: frozenset({"username", "password"}),
    GrantType.DEVICE_CODE: frozenset({"device_code_callback"}),
    GrantType.REFRESH_TOKEN: frozenset({"refresh_token", "account"}),
    GrantType.SILENT: frozenset({"account", "login_hint"}),
}

_REQUIRED_FIELDS: dict[GrantType, frozenset[str]] = {
    GrantType.ON_BEHALF_OF: frozenset({"user_assertion"}),
    GrantType.AUTHORIZATION_CODE: frozenset({"authorization_code"}),
    GrantType.USERNAME_PASSWORD: frozenset({"username", "password"}),
    GrantType.REFRESH_TOKEN: frozenset({"refresh_token"}),
}

_GRANT_SPECIFIC_FIELDS = frozenset().union(*_ALLOWED_FIELDS.values())

# Public-client flows never present client credential material
PUBLIC_CLIENT_GRANTS = frozenset({GrantType.USERNAME_PASSWORD, GrantType.DEVICE_CODE})


class AcquisitionRequest(BaseModel):
    """One call's worth of token acquisition inputs. Never persisted."""

    scopes: tuple[str, ...]
    grant_type: GrantType

    # Per-request credential overriding the client's configured one
    credential: Optional[CredentialMaterial] = None

    account: Optional[Account] = None
    user_assertion: Optional[str] = Field(default=None, repr=False)
    user_assertion_type: Optional[str] = None
    authorization_code: Optional[str] = Field(default=None, repr=False)
    redirect_uri: Optional[str] = None
    code_verifier: Optional[str] = Field(default=None, repr=False)
    username: Optional[str] = None
    password: Optional[SecretStr] = None
    refresh_token: Optional[str] = Field(default=None, repr=False)
    device_code_callback: Optional[Callable[[DeviceCodeChallenge], Any]] = None

    force_refresh: bool = False
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: Optional[str] = None
    authority: Optional[str] = None
    login_hint: Optional[str] = None
    claims: Optional[str] = None
    extra_query_parameters: dict[str, str] = Field(default_factory=dict)
    timeout: Optional[float] = None
    cancellation: CancellationToken = Field(default_factory=CancellationToken)

    model_config = {"frozen": True, "arbitrary_types_allowed": True}

    @field_validator("scopes", mode="before")
    @classmethod
    def _dedupe_scopes(cls, value: Any) -> tuple[str, ...]:
        if isinstance(value, str):
            value = value.split()
        seen: dict[str, str] = {}
        for scope in value or ():
            scope = scope.strip()
            if scope and scope.lower() not in seen:
                seen[scope.lower()] = scope
        return tuple(seen.values())

    @model_validator(mode="after")
    def _check_grant_inputs(self) -> "AcquisitionRequest":
        if not self.scopes:
            raise InvalidRequestError(
                "At least one scope is required", self.correlation_id
            )

        allowed = _ALLOWED_FIELDS[self.grant_type]
        present = {
            name for name in _GRANT_SPECIFIC_FIELDS if getattr(self, name) is not None
        }
        foreign = present - allowed
        if foreign:
            raise InvalidRequestError(
                f"{self.grant_type.value} request cannot carry: {', '.join(sorted(foreign))}",
                self.correlation_id,
            )

        missing = {
            name for name in _REQUIRED_FIELDS.get(self.grant_type, ()) if getattr(self, name) is None
        }
        if missing:
            raise InvalidRequestError(
                f"{self.grant_type.value} request requires: {', '.join(sorted(missing))}",
                self.correlation_id,
            )

        if self.grant_type == GrantType.SILENT and self.account is None and not self.login_hint:
            raise InvalidRequestError(
                "silent request requires an account or a login_hint", self.correlation_id
            )

        if self.credential is not None and self.grant_type in PUBLIC_CLIENT_GRANTS:
            raise InvalidRequestError(
                f"{self.grant_type.value} is a public client flow and cannot present client credentials",
                self.correlation_id,
            )
        return self

    @property
    def assertion_type(self) -> str:
        return self.user_assertion_type or JWT_BEARER_ASSERTION_TYPE
