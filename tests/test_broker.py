import threading
import time

import pytest

from conftest import (
    CONTOSO_TOKEN_URL,
    ORGANIZATIONS_TOKEN_URL,
    make_id_token,
    token_body,
)
from token_broker.models.account import Account
from token_broker.models.request import AcquisitionRequest, GrantType
from token_broker.utils.exceptions import (
    AcquisitionCancelledError,
    InteractionRequiredError,
    InvalidClientError,
    InvalidRequestError,
    TransportError,
)

GRAPH_DEFAULT = "https://graph.microsoft.com/.default"


def _app_request(**kwargs):
    return AcquisitionRequest(
        scopes=[GRAPH_DEFAULT], grant_type=GrantType.CLIENT_CREDENTIALS, **kwargs
    )


def _password_request(**kwargs):
    return AcquisitionRequest(
        scopes=["User.Read"],
        grant_type=GrantType.USERNAME_PASSWORD,
        username="alice@contoso.com",
        password="hunter2",
        **kwargs,
    )


@pytest.fixture
def daemon(make_broker, confidential_client):
    return make_broker(confidential_client)


@pytest.fixture
def public(make_broker, public_client):
    return make_broker(public_client)


def test_client_credentials_cache_hit(daemon, transport):
    transport.respond(token_body("app-at"))

    first = daemon.acquire_token(_app_request())
    second = daemon.acquire_token(_app_request())

    assert first.access_token == second.access_token == "app-at"
    assert len(transport.calls) == 1
    assert transport.calls[0]["url"] == CONTOSO_TOKEN_URL


def test_token_inside_skew_is_reacquired(daemon, transport):
    transport.respond(token_body("short-lived", expires_in=120))
    transport.respond(token_body("renewed"))

    daemon.acquire_token(_app_request())
    token = daemon.acquire_token(_app_request())

    assert token.access_token == "renewed"
    assert len(transport.calls) == 2


def test_force_refresh_bypasses_cache(daemon, transport):
    transport.respond(token_body("first"))
    transport.respond(token_body("second"))

    daemon.acquire_token(_app_request())
    token = daemon.acquire_token(_app_request(force_refresh=True))

    assert token.access_token == "second"
    assert daemon.acquire_token(_app_request()).access_token == "second"
    assert len(transport.calls) == 2


def test_concurrent_requests_share_one_exchange(daemon, transport):
    transport.respond(token_body("shared"))
    transport.gate = threading.Event()
    results = []

    def worker():
        results.append(daemon.acquire_token(_app_request()))

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for thread in threads:
        thread.start()
    transport.entered.wait(5)
    time.sleep(0.1)
    transport.gate.set()
    for thread in threads:
        thread.join(5)

    assert len(transport.calls) == 1
    assert [t.access_token for t in results] == ["shared"] * 6


def test_cancelled_request_stores_nothing(daemon, transport, cache):
    request = _app_request()
    request.cancellation.cancel()

    with pytest.raises(AcquisitionCancelledError):
        daemon.acquire_token(request)

    assert transport.calls == []
    assert len(cache) == 0


def test_cancel_during_exchange_discards_result(daemon, transport, cache):
    request = _app_request()
    transport.respond(token_body("late"))
    transport.gate = threading.Event()
    outcome = {}

    def worker():
        try:
            outcome["token"] = daemon.acquire_token(request)
        except AcquisitionCancelledError as e:
            outcome["error"] = e

    thread = threading.Thread(target=worker)
    thread.start()
    transport.entered.wait(5)
    request.cancellation.cancel()
    transport.gate.set()
    thread.join(5)

    assert "error" in outcome
    assert len(cache) == 0


def test_cancelled_waiter_leaves_shared_exchange_running(daemon, transport, cache):
    transport.respond(token_body("shared"))
    transport.gate = threading.Event()
    waiter_request = _app_request()
    outcome = {}

    def lead():
        outcome["leader"] = daemon.acquire_token(_app_request())

    def wait():
        try:
            outcome["waiter"] = daemon.acquire_token(waiter_request)
        except AcquisitionCancelledError as e:
            outcome["waiter"] = e

    leader = threading.Thread(target=lead)
    leader.start()
    transport.entered.wait(5)
    waiter = threading.Thread(target=wait)
    waiter.start()
    time.sleep(0.1)
    waiter_request.cancellation.cancel()
    waiter.join(2)

    assert isinstance(outcome["waiter"], AcquisitionCancelledError)
    transport.gate.set()
    leader.join(5)
    assert outcome["leader"].access_token == "shared"
    assert len(transport.calls) == 1
    assert len(cache) == 1


def test_retry_only_for_idempotent_exchanges(make_broker, confidential_client, public_client, transport, no_sleep):
    transport.fail(TransportError("timed out"))
    transport.respond(token_body("after-retry"))
    assert make_broker(confidential_client).acquire_token(_app_request()).access_token == "after-retry"
    assert len(transport.calls) == 2

    transport.fail(TransportError("timed out"))
    with pytest.raises(TransportError):
        make_broker(public_client).acquire_token(_password_request())
    assert len(transport.calls) == 3
    assert no_sleep.delays == [0.5]


def test_on_behalf_of_cached_per_assertion(daemon, transport):
    transport.respond(token_body("for-alice"))
    transport.respond(token_body("for-bob"))

    def obo(assertion):
        return daemon.acquire_token(
            AcquisitionRequest(
                scopes=["api://downstream/.default"],
                grant_type=GrantType.ON_BEHALF_OF,
                user_assertion=assertion,
            )
        )

    assert obo("alice.jwt").access_token == "for-alice"
    assert obo("bob.jwt").access_token == "for-bob"
    assert obo("alice.jwt").access_token == "for-alice"
    assert len(transport.calls) == 2


def test_silent_without_cached_tokens_requires_interaction(public, transport):
    account = Account(tenant_id="tenant-1", username="alice@contoso.com", home_account_id="oid-1.tenant-1")

    with pytest.raises(InteractionRequiredError) as excinfo:
        public.acquire_token(
            AcquisitionRequest(scopes=["User.Read"], grant_type=GrantType.SILENT, account=account)
        )

    assert excinfo.value.code == "no_tokens_found"
    assert transport.calls == []


def test_silent_returns_cached_user_token(public, transport):
    transport.respond(token_body("user-at", id_token=make_id_token(), refresh_token="rt-1"))
    token = public.acquire_token(_password_request())

    silent = public.acquire_token(
        AcquisitionRequest(scopes=["user.read"], grant_type=GrantType.SILENT, account=token.account)
    )

    assert silent.access_token == "user-at"
    assert len(transport.calls) == 1


def test_silent_refreshes_expired_token(public, transport):
    transport.respond(
        token_body("expiring", expires_in=60, id_token=make_id_token(), refresh_token="rt-1")
    )
    transport.respond(token_body("refreshed", refresh_token="rt-2"))
    first = public.acquire_token(_password_request())

    token = public.acquire_token(
        AcquisitionRequest(scopes=["User.Read"], grant_type=GrantType.SILENT, account=first.account)
    )

    refresh = transport.calls[1]
    assert refresh["url"] == ORGANIZATIONS_TOKEN_URL
    assert refresh["data"]["grant_type"] == "refresh_token"
    assert refresh["data"]["refresh_token"] == "rt-1"
    assert token.access_token == "refreshed"
    assert token.account == first.account
    assert token.refresh_token == "rt-2"


def test_silent_rejected_refresh_token_requires_interaction(public, transport):
    transport.respond(
        token_body("expiring", expires_in=60, id_token=make_id_token(), refresh_token="rt-revoked")
    )
    transport.respond(
        {"error": "invalid_grant", "error_description": "AADSTS700082: expired", "error_codes": [700082]},
        status=400,
    )
    first = public.acquire_token(_password_request())

    with pytest.raises(InteractionRequiredError) as excinfo:
        public.acquire_token(
            AcquisitionRequest(scopes=["User.Read"], grant_type=GrantType.SILENT, account=first.account)
        )

    assert excinfo.value.code == "invalid_grant"


def test_silent_by_login_hint(public, transport):
    transport.respond(token_body("user-at", id_token=make_id_token()))
    public.acquire_token(_password_request())

    token = public.acquire_token(
        AcquisitionRequest(
            scopes=["User.Read"], grant_type=GrantType.SILENT, login_hint="ALICE@contoso.com"
        )
    )

    assert token.access_token == "user-at"

    with pytest.raises(InteractionRequiredError):
        public.acquire_token(
            AcquisitionRequest(scopes=["User.Read"], grant_type=GrantType.SILENT, login_hint="bob@contoso.com")
        )


def test_fallback_chain_moves_past_interaction_required(public, transport):
    transport.respond(token_body("from-password", id_token=make_id_token()))
    chain = [
        AcquisitionRequest(scopes=["User.Read"], grant_type=GrantType.SILENT, login_hint="alice@contoso.com"),
        _password_request(),
    ]

    token = public.acquire_token_with_fallback(chain)

    assert token.access_token == "from-password"
    assert len(transport.calls) == 1


def test_fallback_chain_stops_on_other_errors(daemon, transport):
    transport.respond({"error": "invalid_client", "error_description": "AADSTS7000215"}, status=401)

    with pytest.raises(InvalidClientError):
        daemon.acquire_token_with_fallback(
            [_app_request(), _app_request(force_refresh=True)]
        )

    assert len(transport.calls) == 1


def test_fallback_chain_exhausted(public):
    account = Account(tenant_id="t", home_account_id="oid.t")
    chain = [
        AcquisitionRequest(scopes=["User.Read"], grant_type=GrantType.SILENT, account=account),
        AcquisitionRequest(scopes=["User.Read"], grant_type=GrantType.SILENT, login_hint="nobody@x"),
    ]

    with pytest.raises(InteractionRequiredError) as excinfo:
        public.acquire_token_with_fallback(chain)
    assert excinfo.value.code == "no_account"

    with pytest.raises(InvalidRequestError):
        public.acquire_token_with_fallback([])


def test_tenant_override(daemon, transport):
    transport.respond(token_body("fabrikam-at"))

    daemon.acquire_token(_app_request(tenant_id="fabrikam"))

    assert transport.calls[0]["url"] == "https://login.microsoftonline.com/fabrikam/oauth2/v2.0/token"


def test_authority_override(daemon, transport):
    transport.respond(token_body())

    daemon.acquire_token(_app_request(authority="https://login.microsoftonline.us/gov"))

    assert transport.calls[0]["url"] == "https://login.microsoftonline.us/gov/oauth2/v2.0/token"


def test_tokens_partitioned_by_tenant(daemon, transport):
    transport.respond(token_body("contoso-at"))
    transport.respond(token_body("fabrikam-at"))

    assert daemon.acquire_token(_app_request()).access_token == "contoso-at"
    assert daemon.acquire_token(_app_request(tenant_id="fabrikam")).access_token == "fabrikam-at"
    assert daemon.acquire_token(_app_request()).access_token == "contoso-at"
    assert len(transport.calls) == 2


def test_accounts_remove_and_clear(public, transport, cache):
    transport.respond(token_body("alice-at", id_token=make_id_token()))
    transport.respond(
        token_body("bob-at", id_token=make_id_token(oid="oid-2", username="bob@contoso.com"))
    )
    public.acquire_token(_password_request())
    public.acquire_token(
        AcquisitionRequest(
            scopes=["User.Read"],
            grant_type=GrantType.USERNAME_PASSWORD,
            username="bob@contoso.com",
            password="pw",
        )
    )

    assert {a.username for a in public.get_accounts()} == {"alice@contoso.com", "bob@contoso.com"}
    (bob,) = public.get_accounts(username="BOB@contoso.com")

    assert public.remove_account(bob) == 1
    assert [a.username for a in public.get_accounts()] == ["alice@contoso.com"]

    public.clear_cache()
    assert public.get_accounts() == []
    assert len(cache) == 0


def test_build_authorization_url(public):
    auth_url = public.build_authorization_url(["User.Read"], tenant_id="contoso")

    assert auth_url.url.startswith("https://login.microsoftonline.com/contoso/oauth2/v2.0/authorize?")
    assert "redirect_uri=http%3A%2F%2Flocalhost%3A8400" in auth_url.url
    assert auth_url.code_verifier
