"""Custom exceptions for the token broker."""

from typing import Optional, Sequence


class TokenBrokerError(Exception):
    """Base exception for token broker errors."""

    def __init__(self, message: str, correlation_id: Optional[str] = None):
        super().__init__(message)
        self.correlation_id = correlation_id


class InvalidCredentialError(TokenBrokerError):
    """Raised when client credential material is unusable."""


class UnresolvableAuthorityError(TokenBrokerError):
    """Raised when no token-issuing authority can be resolved."""


class InvalidRequestError(TokenBrokerError):
    """Raised when an acquisition request mixes incompatible inputs."""


class ConfigurationError(TokenBrokerError):
    """Raised when configuration is invalid."""


class TokenCacheError(TokenBrokerError):
    """Raised when token cache persistence fails."""


class CacheMissError(TokenBrokerError):
    """Internal signal that no usable cached token exists."""


class AcquisitionCancelledError(TokenBrokerError):
    """Raised when the caller cancels an in-flight acquisition."""


class TransportError(TokenBrokerError):
    """Raised on network failures, timeouts and unparseable server errors."""

    def __init__(
        self,
        message: str,
        correlation_id: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, correlation_id)
        self.status_code = status_code


class AuthenticationError(TokenBrokerError):
    """Raised when the authority rejects a token request."""

    def __init__(
        self,
        code: str,
        description: str = "",
        correlation_id: Optional[str] = None,
        error_codes: Sequence[int] = (),
        suberror: Optional[str] = None,
    ):
        message = f"{code}: {description}" if description else code
        super().__init__(message, correlation_id)
        self.code = code
        self.description = description
        self.error_codes = tuple(error_codes)
        self.suberror = suberror


class InvalidGrantError(AuthenticationError):
    """The grant (code, refresh token, assertion) was invalid or already used."""


class InteractionRequiredError(AuthenticationError):
    """The user has to interact (consent, MFA, sign-in) before a token is issued."""


class AccessDeniedError(AuthenticationError):
    """The user or authority declined the request."""


class InvalidClientError(AuthenticationError):
    """The authority rejected the client's identity or credential."""


# AADSTS codes that mean a user must step through an interactive prompt.
INTERACTION_REQUIRED_CODES = frozenset(
    {50072, 50074, 50076, 50079, 50158, 65001, 50125, 50078}
)
INTERACTION_REQUIRED_ERRORS = frozenset(
    {"interaction_required", "consent_required", "login_required"}
)
INTERACTION_SUBERRORS = frozenset(
    {"basic_action", "additional_action", "message_only", "consent_required",
     "user_password_expired"}
)


def classify_oauth_error(
    payload: dict,
    correlation_id: Optional[str] = None,
) -> AuthenticationError:
    """
    Map an OAuth2 error response body onto the exception hierarchy.

    Args:
        payload: Decoded JSON error body
        correlation_id: Correlation id of the request, used when the
            authority does not echo one back

    Returns:
        The most specific AuthenticationError subclass for the payload
    """
    code = str(payload.get("error") or "unknown_error")
    description = str(payload.get("error_description") or "")
    error_codes = [int(c) for c in payload.get("error_codes") or [] if str(c).isdigit()]
    suberror = payload.get("suberror")
    correlation_id = payload.get("correlation_id") or correlation_id

    if code in INTERACTION_REQUIRED_ERRORS:
        cls = InteractionRequiredError
    elif code == "invalid_grant" and (
        suberror in INTERACTION_SUBERRORS
        or INTERACTION_REQUIRED_CODES.intersection(error_codes)
    ):
        cls = InteractionRequiredError
    elif code == "invalid_grant":
        cls = InvalidGrantError
    elif code in ("access_denied", "authorization_declined"):
        cls = AccessDeniedError
    elif code in ("invalid_client", "unauthorized_client"):
        cls = InvalidClientError
    else:
        cls = AuthenticationError

    return cls(
        code,
        description,
        correlation_id=correlation_id,
        error_codes=error_codes,
        suberror=suberror,
    )
