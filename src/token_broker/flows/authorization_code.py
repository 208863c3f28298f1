"""Authorization code grant, with PKCE authorization URL construction."""

import base64
import hashlib
import secrets
from dataclasses import dataclass
from typing import Iterable, Optional
from urllib.parse import urlencode

from ..auth.authority import AuthorityEndpoints
from ..models.client import ClientApplication
from ..models.request import AcquisitionRequest, GrantType
from ..models.token import RESERVED_SCOPES
from ..utils.exceptions import InvalidRequestError
from .base import TokenFlow


@dataclass(frozen=True)
class AuthorizationUrl:
    """Where to send the user, plus what to keep for the code exchange."""

    url: str
    state: str
    code_verifier: str


def generate_pkce_pair() -> tuple[str, str]:
    """Return a (code_verifier, S256 code_challenge) pair."""
    verifier = secrets.token_urlsafe(64)[:128]
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


class AuthorizationCodeFlow(TokenFlow):
    """
    Redeems a one-time code obtained from a prior browser redirect.

    Codes are single use; the authority answers a second redemption with
    ``invalid_grant``, surfaced as InvalidGrantError.
    """

    grant_type = GrantType.AUTHORIZATION_CODE

    def grant_fields(
        self,
        request: AcquisitionRequest,
        client: ClientApplication,
    ) -> dict[str, str]:
        redirect_uri = request.redirect_uri or client.redirect_uri
        if not redirect_uri:
            raise InvalidRequestError(
                "Authorization code redemption requires a redirect_uri",
                request.correlation_id,
            )
        fields = {
            "grant_type": "authorization_code",
            "code": request.authorization_code,
            "redirect_uri": redirect_uri,
        }
        if request.code_verifier:
            fields["code_verifier"] = request.code_verifier
        return fields

    @staticmethod
    def build_authorization_url(
        client: ClientApplication,
        endpoints: AuthorityEndpoints,
        scopes: Iterable[str],
        redirect_uri: Optional[str] = None,
        state: Optional[str] = None,
        login_hint: Optional[str] = None,
        prompt: Optional[str] = None,
        extra_query_parameters: Optional[dict[str, str]] = None,
    ) -> AuthorizationUrl:
        """
        Build the authorize URL the caller opens in a browser.

        Returns:
            URL, the state to verify on redirect, and the PKCE verifier to
            pass back as ``code_verifier`` when redeeming the code
        """
        redirect_uri = redirect_uri or client.redirect_uri
        if not redirect_uri:
            raise InvalidRequestError("Authorization URL requires a redirect_uri")
        scopes = list(scopes)
        present = {s.lower() for s in scopes}
        scopes += [s for s in sorted(RESERVED_SCOPES) if s not in present]

        state = state or secrets.token_urlsafe(16)
        verifier, challenge = generate_pkce_pair()
        params = {
            "client_id": client.client_id,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "scope": " ".join(scopes),
            "state": state,
            "code_challenge": challenge,
            "code_challenge_method": "S256",
            "response_mode": "query",
        }
        if login_hint:
            params["login_hint"] = login_hint
        if prompt:
            params["prompt"] = prompt
        params.update(extra_query_parameters or {})
        return AuthorizationUrl(
            url=f"{endpoints.authorize_endpoint}?{urlencode(params)}",
            state=state,
            code_verifier=verifier,
        )
