"""Shared fixtures: a scripted transport, a fake clock and test certificates."""

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

import jwt
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

from token_broker.auth.credentials import ClientSecret
from token_broker.broker import TokenBroker
from token_broker.cache.token_cache import TokenCache
from token_broker.models.client import ClientApplication
from token_broker.transport.http import HttpResponse

CONTOSO = "https://login.microsoftonline.com/contoso"
ORGANIZATIONS = "https://login.microsoftonline.com/organizations"
CONTOSO_TOKEN_URL = f"{CONTOSO}/oauth2/v2.0/token"
ORGANIZATIONS_TOKEN_URL = f"{ORGANIZATIONS}/oauth2/v2.0/token"
ORGANIZATIONS_DEVICE_URL = f"{ORGANIZATIONS}/oauth2/v2.0/devicecode"


class FakeTransport:
    """
    Transport that replays queued responses and records every POST.

    Responses are consumed in order; an entry may be restricted to URLs
    containing a substring. An exception entry is raised instead of returned.
    """

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self._queue: list[tuple[Optional[str], Union[HttpResponse, BaseException]]] = []
        self._lock = threading.Lock()
        # Set by tests that need to hold an exchange open
        self.gate: Optional[threading.Event] = None
        self.entered = threading.Event()

    def respond(self, body: dict, status: int = 200, url_contains: Optional[str] = None) -> None:
        self._queue.append((url_contains, HttpResponse(status_code=status, body=body)))

    def fail(self, error: BaseException, url_contains: Optional[str] = None) -> None:
        self._queue.append((url_contains, error))

    def post_form(self, url, data, headers=None, timeout=None) -> HttpResponse:
        with self._lock:
            self.calls.append(
                {"url": url, "data": dict(data), "headers": dict(headers or {}), "timeout": timeout}
            )
            for index, (match, entry) in enumerate(self._queue):
                if match is None or match in url:
                    del self._queue[index]
                    break
            else:
                raise AssertionError(f"Unexpected POST to {url}")
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        if isinstance(entry, BaseException):
            raise entry
        return entry

    @property
    def pending(self) -> int:
        return len(self._queue)


class FakeClock:
    """Monotonic clock advanced by a fake interruptible sleep."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds, cancellation) -> bool:
        self.sleeps.append(seconds)
        self.now += seconds
        return cancellation.is_cancelled


def token_body(access_token: str = "at-1", expires_in: int = 3600, **extra) -> dict[str, Any]:
    return {"access_token": access_token, "token_type": "Bearer", "expires_in": expires_in, **extra}


def make_id_token(
    oid: str = "oid-1",
    tid: str = "tenant-1",
    username: str = "alice@contoso.com",
) -> str:
    claims = {"oid": oid, "sub": f"sub-{oid}", "tid": tid, "preferred_username": username}
    return jwt.encode(claims, "test-signing-key-that-is-long-enough!", algorithm="HS256")


def self_signed_certificate(key, common_name: str = "token-broker-test") -> x509.Certificate:
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .sign(key, hashes.SHA256())
    )


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def no_sleep():
    """Sleeper that records requested delays and returns immediately."""
    delays: list[float] = []

    def sleep(seconds, cancellation) -> bool:
        delays.append(seconds)
        return cancellation.is_cancelled

    sleep.delays = delays
    return sleep


@pytest.fixture
def confidential_client() -> ClientApplication:
    return ClientApplication(
        client_id="daemon-app",
        credential=ClientSecret("s3cret-value"),
        authority=CONTOSO,
    )


@pytest.fixture
def public_client() -> ClientApplication:
    return ClientApplication(
        client_id="public-app",
        authority=ORGANIZATIONS,
        redirect_uri="http://localhost:8400",
    )


@pytest.fixture
def cache() -> TokenCache:
    return TokenCache()


@pytest.fixture
def make_broker(transport, cache, no_sleep, clock):
    """Factory building brokers over the fake transport."""
    brokers: list[TokenBroker] = []

    def build(client: ClientApplication, **kwargs) -> TokenBroker:
        options = {"cache": cache, "transport": transport, "sleep": no_sleep, **kwargs}
        broker = TokenBroker(client, **options)
        brokers.append(broker)
        return broker

    yield build
    for broker in brokers:
        broker.close()


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def rsa_certificate(rsa_key) -> x509.Certificate:
    return self_signed_certificate(rsa_key)


@pytest.fixture(scope="session")
def ec_key():
    return ec.generate_private_key(ec.SECP256R1())
