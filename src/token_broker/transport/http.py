"""HTTP transport to OAuth2 endpoints."""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import requests

from ..utils.exceptions import TransportError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


@dataclass
class HttpResponse:
    """Decoded response from an OAuth2 endpoint."""

    status_code: int
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)


class Transport(Protocol):
    """Posts form-encoded requests to OAuth2 endpoints."""

    def post_form(
        self,
        url: str,
        data: dict[str, str],
        headers: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> HttpResponse:
        """
        POST an ``application/x-www-form-urlencoded`` body.

        Returns:
            The decoded response, including OAuth2 error responses

        Raises:
            TransportError: On connection failures, timeouts, and server
                errors that carry no OAuth2 error body
        """
        ...


class RequestsTransport:
    """Transport backed by a pooled requests session."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
        verify: bool = True,
    ):
        self.session = session or requests.Session()
        self.timeout = timeout
        self.verify = verify

    def post_form(
        self,
        url: str,
        data: dict[str, str],
        headers: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> HttpResponse:
        correlation_id = (headers or {}).get("client-request-id")
        try:
            resp = self.session.post(
                url,
                data=data,
                headers={"Accept": "application/json", **(headers or {})},
                timeout=timeout or self.timeout,
                verify=self.verify,
            )
        except requests.Timeout as e:
            raise TransportError(f"Timed out calling {url}: {e}", correlation_id) from e
        except requests.RequestException as e:
            raise TransportError(f"Request to {url} failed: {e}", correlation_id) from e

        try:
            body = resp.json()
        except ValueError:
            body = None

        if not isinstance(body, dict) or (resp.status_code >= 400 and "error" not in body):
            if resp.status_code >= 500 or resp.status_code == 429:
                raise TransportError(
                    f"{url} returned HTTP {resp.status_code}",
                    correlation_id,
                    status_code=resp.status_code,
                )
            body = {
                "error": "invalid_response",
                "error_description": f"{url} returned HTTP {resp.status_code} without a JSON body",
            }

        logger.debug(f"POST {url} -> {resp.status_code}")
        return HttpResponse(
            status_code=resp.status_code,
            body=body,
            headers=dict(resp.headers),
        )

    def close(self) -> None:
        self.session.close()
