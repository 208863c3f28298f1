"""Shared token-endpoint exchange for all grant flows."""

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional
from urllib.parse import urlencode

import jwt

from ..auth.authority import AuthorityEndpoints
from ..auth.credentials import CredentialMaterial
from ..models.account import Account
from ..models.client import ClientApplication
from ..models.request import AcquisitionRequest, GrantType
from ..models.token import RESERVED_SCOPES, CachedToken
from ..transport.http import HttpResponse, Transport
from ..utils.date_utils import expiry_from_seconds, utc_now
from ..utils.exceptions import (
    InvalidRequestError,
    TransportError,
    classify_oauth_error,
)
from ..utils.retry import RetryPolicy, Sleeper, interruptible_sleep, with_retry

logger = logging.getLogger(__name__)

CLIENT_INFO_HEADERS = {
    "x-client-sku": "token_broker",
}


def decode_id_token(id_token: str) -> dict[str, Any]:
    """Read ID token claims without verifying the signature (already TLS-trusted)."""
    try:
        return jwt.decode(id_token, options={"verify_signature": False})
    except jwt.PyJWTError as e:
        logger.warning(f"Ignoring undecodable id_token: {e}")
        return {}


class TokenFlow(ABC):
    """
    One OAuth2 grant as a single request/response exchange.

    Subclasses provide the grant-specific form fields. The base class adds
    client identification and authentication, posts the form, classifies
    errors and parses the token response. Exchanges marked ``idempotent``
    retry TransportError with bounded backoff; others fail on the first one.
    """

    grant_type: GrantType
    idempotent: bool = False
    requires_credential: bool = False
    public_client_only: bool = False
    include_reserved_scopes: bool = True
    # Error codes that are part of normal protocol progress, logged at DEBUG
    quiet_errors: frozenset[str] = frozenset()

    def __init__(
        self,
        transport: Transport,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: Optional[float] = None,
        sleep: Sleeper = interruptible_sleep,
    ):
        self.transport = transport
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self.sleep = sleep

    @abstractmethod
    def grant_fields(
        self,
        request: AcquisitionRequest,
        client: ClientApplication,
    ) -> dict[str, str]:
        """Grant-specific form fields (``grant_type`` plus inputs)."""

    def execute(
        self,
        request: AcquisitionRequest,
        client: ClientApplication,
        endpoints: AuthorityEndpoints,
        extra_fields: Optional[dict[str, str]] = None,
    ) -> CachedToken:
        """
        Perform the exchange.

        Args:
            request: Validated acquisition request
            client: Application registration
            endpoints: Resolved authority endpoints
            extra_fields: Form fields supplied by the caller rather than the request

        Returns:
            Token built from the authority's response

        Raises:
            AuthenticationError: The authority rejected the request
            TransportError: The exchange failed at the network layer
            InvalidRequestError: The client cannot perform this grant
        """
        credential = self.credential_for(request, client)
        form = {
            "client_id": client.client_id,
            "scope": self.scope_string(request),
            **self.grant_fields(request, client),
            **(extra_fields or {}),
        }
        if request.claims:
            form["claims"] = request.claims
        if credential is not None:
            form.update(credential.client_auth_fields(client.client_id, endpoints.token_endpoint))

        logger.info(
            f"Requesting token via {self.grant_type.value} from {endpoints.authority} "
            f"[correlation_id={request.correlation_id}]"
        )
        payload = self.post(endpoints.token_endpoint, form, request)
        return self.parse_token_response(payload, request, endpoints)

    def credential_for(
        self,
        request: AcquisitionRequest,
        client: ClientApplication,
    ) -> Optional[CredentialMaterial]:
        credential = request.credential or client.credential
        if self.public_client_only and credential is not None:
            raise InvalidRequestError(
                f"{self.grant_type.value} is only available to public clients",
                request.correlation_id,
            )
        if self.requires_credential and credential is None:
            raise InvalidRequestError(
                f"{self.grant_type.value} requires client credential material",
                request.correlation_id,
            )
        return credential

    def scope_string(self, request: AcquisitionRequest) -> str:
        scopes = list(request.scopes)
        if self.include_reserved_scopes:
            present = {s.lower() for s in scopes}
            scopes += [s for s in sorted(RESERVED_SCOPES) if s not in present]
        return " ".join(scopes)

    def post(
        self,
        url: str,
        form: dict[str, str],
        request: AcquisitionRequest,
        allow_retry: Optional[bool] = None,
    ) -> dict[str, Any]:
        """
        POST a form and return the success body.

        Raises:
            AuthenticationError: For an OAuth2 error body
        """
        url = self._with_query(url, request.extra_query_parameters)
        headers = {
            **CLIENT_INFO_HEADERS,
            "client-request-id": request.correlation_id,
            "return-client-request-id": "true",
        }

        def send() -> HttpResponse:
            request.cancellation.raise_if_cancelled(request.correlation_id)
            return self.transport.post_form(
                url, form, headers=headers, timeout=request.timeout or self.timeout
            )

        retry = self.idempotent if allow_retry is None else allow_retry
        if retry:
            response = with_retry(
                send,
                self.retry_policy,
                cancellation=request.cancellation,
                sleep=self.sleep,
                correlation_id=request.correlation_id,
            )
        else:
            response = send()

        if "error" in response.body:
            error = classify_oauth_error(response.body, request.correlation_id)
            log = logger.debug if error.code in self.quiet_errors else logger.warning
            log(
                f"{self.grant_type.value} rejected: {error.code} "
                f"[correlation_id={error.correlation_id}]"
            )
            raise error
        return response.body

    @staticmethod
    def _with_query(url: str, params: dict[str, str]) -> str:
        if not params:
            return url
        separator = "&" if "?" in url else "?"
        return f"{url}{separator}{urlencode(params)}"

    def parse_token_response(
        self,
        payload: dict[str, Any],
        request: AcquisitionRequest,
        endpoints: AuthorityEndpoints,
    ) -> CachedToken:
        """Build a CachedToken from a successful token response."""
        if "access_token" not in payload:
            raise TransportError(
                "Token response carried no access_token", request.correlation_id
            )
        issued_at = utc_now()
        id_token = payload.get("id_token")
        account = self.account_from_response(payload, request, endpoints)
        granted = payload.get("scope") or request.scopes
        return CachedToken(
            access_token=payload["access_token"],
            token_type=payload.get("token_type", "Bearer"),
            expires_at=expiry_from_seconds(payload.get("expires_in"), issued_at),
            granted_scopes=granted,
            refresh_token=payload.get("refresh_token"),
            id_token=id_token,
            account=account,
        )

    def account_from_response(
        self,
        payload: dict[str, Any],
        request: AcquisitionRequest,
        endpoints: AuthorityEndpoints,
    ) -> Optional[Account]:
        id_token = payload.get("id_token")
        if id_token:
            account = Account.from_id_token_claims(
                decode_id_token(id_token), fallback_tenant=endpoints.tenant
            )
            if account is not None:
                return account
        return request.account
