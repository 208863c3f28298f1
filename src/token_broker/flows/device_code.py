"""Device authorization grant (RFC 8628)."""

import logging
import time
from typing import Callable, Optional

from ..auth.authority import AuthorityEndpoints
from ..models.client import ClientApplication
from ..models.device_code import DeviceCodeChallenge
from ..models.request import AcquisitionRequest, GrantType
from ..models.token import CachedToken
from ..utils.exceptions import AcquisitionCancelledError, AuthenticationError, TransportError
from .base import TokenFlow

logger = logging.getLogger(__name__)

DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"

# RFC 8628 section 3.5: add 5 seconds to the interval on slow_down
SLOW_DOWN_INCREMENT = 5

_PENDING = "authorization_pending"
_SLOW_DOWN = "slow_down"
_EXPIRED = frozenset({"expired_token", "code_expired"})


class DeviceCodeFlow(TokenFlow):
    """
    Initiates a device code challenge, then polls until the user finishes.

    Polls are spaced at least ``interval`` seconds apart, counted from the
    initiation or the previous poll, failed polls included. ``slow_down``
    and HTTP 429 each grow the interval. Polling stops at the ``expires_in``
    deadline with ``AuthenticationError(expired_token)``.
    """

    grant_type = GrantType.DEVICE_CODE
    public_client_only = True
    quiet_errors = frozenset({_PENDING, _SLOW_DOWN})

    def __init__(self, *args, clock: Callable[[], float] = time.monotonic, **kwargs):
        super().__init__(*args, **kwargs)
        self.clock = clock

    def grant_fields(
        self,
        request: AcquisitionRequest,
        client: ClientApplication,
    ) -> dict[str, str]:
        return {"grant_type": DEVICE_CODE_GRANT}

    def initiate(
        self,
        request: AcquisitionRequest,
        client: ClientApplication,
        endpoints: AuthorityEndpoints,
    ) -> DeviceCodeChallenge:
        """Request a device code and user code from the authority."""
        self.credential_for(request, client)
        payload = self.post(
            endpoints.device_code_endpoint,
            {"client_id": client.client_id, "scope": self.scope_string(request)},
            request,
            allow_retry=True,
        )
        try:
            challenge = DeviceCodeChallenge.from_response(payload)
        except (KeyError, ValueError) as e:
            raise AuthenticationError(
                "invalid_response",
                f"Malformed device code response: {e}",
                correlation_id=request.correlation_id,
            ) from e
        logger.info(
            f"Device code issued, expires in {challenge.expires_in}s "
            f"[correlation_id={request.correlation_id}]"
        )
        return challenge

    def poll(
        self,
        request: AcquisitionRequest,
        client: ClientApplication,
        endpoints: AuthorityEndpoints,
        challenge: DeviceCodeChallenge,
        started: Optional[float] = None,
    ) -> CachedToken:
        """
        Poll the token endpoint until the user completes sign-in.

        Args:
            started: Clock reading at initiation (defaults to now)

        Raises:
            AuthenticationError: ``expired_token`` at the deadline, or the
                authority's error (AccessDeniedError when declined)
            AcquisitionCancelledError: The request's cancellation fired
        """
        started = self.clock() if started is None else started
        deadline = started + challenge.expires_in
        interval = challenge.interval
        last_poll = started
        form = {
            "grant_type": DEVICE_CODE_GRANT,
            "client_id": client.client_id,
            "device_code": challenge.device_code,
        }

        while True:
            next_poll = last_poll + interval
            if next_poll > deadline:
                self._wait(deadline - self.clock(), request)
                raise self._expired(request)
            self._wait(next_poll - self.clock(), request)

            try:
                payload = self.post(endpoints.token_endpoint, form, request, allow_retry=False)
            except TransportError as e:
                # The next poll still waits a full interval
                last_poll = self.clock()
                if e.status_code == 429:
                    interval += SLOW_DOWN_INCREMENT
                logger.warning(
                    f"Device code poll failed ({e}), next poll in {interval}s "
                    f"[correlation_id={request.correlation_id}]"
                )
                continue
            except AuthenticationError as e:
                last_poll = self.clock()
                if e.code == _PENDING:
                    continue
                if e.code == _SLOW_DOWN:
                    interval += SLOW_DOWN_INCREMENT
                    logger.debug(f"Authority asked to slow down, polling every {interval}s")
                    continue
                if e.code in _EXPIRED:
                    raise self._expired(request) from e
                raise

            logger.info(f"Device code sign-in completed [correlation_id={request.correlation_id}]")
            return self.parse_token_response(payload, request, endpoints)

    def execute(
        self,
        request: AcquisitionRequest,
        client: ClientApplication,
        endpoints: AuthorityEndpoints,
        extra_fields: Optional[dict[str, str]] = None,
    ) -> CachedToken:
        """Initiate, hand the challenge to the caller's display surface, then poll."""
        started = self.clock()
        challenge = self.initiate(request, client, endpoints)
        if request.device_code_callback is not None:
            request.device_code_callback(challenge)
        else:
            logger.warning(challenge.message)
        return self.poll(request, client, endpoints, challenge, started=started)

    def _wait(self, seconds: float, request: AcquisitionRequest) -> None:
        if seconds > 0 and self.sleep(seconds, request.cancellation):
            raise AcquisitionCancelledError(
                "Device code polling was cancelled", request.correlation_id
            )
        request.cancellation.raise_if_cancelled(request.correlation_id)

    @staticmethod
    def _expired(request: AcquisitionRequest) -> AuthenticationError:
        return AuthenticationError(
            "expired_token",
            "The device code expired before the user completed sign-in",
            correlation_id=request.correlation_id,
        )
