"""Token broker: the public entry point for token acquisition."""

import hashlib
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence
from urllib.parse import urlsplit

from .auth.authority import AuthorityEndpoints, AuthorityResolver
from .cache.token_cache import TokenCache
from .flows.authorization_code import AuthorizationCodeFlow, AuthorizationUrl
from .flows.base import TokenFlow
from .flows.client_credentials import ClientCredentialsFlow
from .flows.device_code import DeviceCodeFlow
from .flows.on_behalf_of import OnBehalfOfFlow
from .flows.refresh import RefreshTokenFlow, SilentFlow
from .flows.username_password import UsernamePasswordFlow
from .models.account import Account
from .models.client import ClientApplication
from .models.device_code import DeviceCodeChallenge
from .models.request import AcquisitionRequest, GrantType
from .models.token import CachedToken, TokenCacheKey
from .transport.http import RequestsTransport, Transport
from .utils.exceptions import InteractionRequiredError, InvalidRequestError
from .utils.retry import RetryPolicy, Sleeper, interruptible_sleep

logger = logging.getLogger(__name__)

# Grants whose cache slot is known before the exchange
_CACHEABLE_GRANTS = frozenset(
    {
        GrantType.CLIENT_CREDENTIALS,
        GrantType.ON_BEHALF_OF,
        GrantType.SILENT,
        GrantType.REFRESH_TOKEN,
    }
)


def _assertion_partition(user_assertion: str) -> str:
    """OBO tokens are partitioned by a hash of the inbound assertion."""
    return "obo." + hashlib.sha256(user_assertion.encode("utf-8")).hexdigest()


@dataclass
class DeviceCodeSession:
    """A device code acquisition running in the background."""

    request: AcquisitionRequest
    future: "Future[CachedToken]"
    _challenge_future: "Future[DeviceCodeChallenge]"

    def challenge(self, timeout: Optional[float] = None) -> DeviceCodeChallenge:
        """Block until the user code is available."""
        return self._challenge_future.result(timeout)

    def result(self, timeout: Optional[float] = None) -> CachedToken:
        """Block until sign-in completes, fails or is cancelled."""
        return self.future.result(timeout)

    def cancel(self) -> None:
        """Stop polling; nothing is cached for a cancelled session."""
        self.request.cancellation.cancel()


class TokenBroker:
    """
    Acquires tokens for one client application.

    Algorithm for ``acquire_token``:
        1. Compute the cache key from the request.
        2. Unless ``force_refresh``, return an unexpired cached token that
           covers the requested scopes.
        3. Otherwise run the flow selected by ``grant_type``.
        4. Store the result and return it.

    Concurrent requests for the same cache slot share one exchange.
    Interaction-required errors are surfaced, never retried; falling back to
    another flow is the caller's choice (see ``acquire_token_with_fallback``).
    """

    def __init__(
        self,
        client: ClientApplication,
        cache: Optional[TokenCache] = None,
        transport: Optional[Transport] = None,
        resolver: Optional[AuthorityResolver] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: Optional[float] = None,
        sleep: Sleeper = interruptible_sleep,
        clock: Optional[Callable[[], float]] = None,
        max_background_workers: int = 4,
    ):
        """
        Initialize a broker.

        Args:
            client: Application registration (credential, default authority)
            cache: Token cache (a fresh in-memory cache by default)
            transport: HTTP transport (requests-backed by default)
            resolver: Authority resolver (defaults to the client's authority)
            retry_policy: Backoff for idempotent exchanges
            timeout: Per-call network timeout in seconds
            sleep: Interruptible sleep used for backoff and polling
            clock: Monotonic clock for device code polling
            max_background_workers: Threads available for device code sessions
        """
        self.client = client
        self.cache = cache if cache is not None else TokenCache()
        self.transport = transport or RequestsTransport()
        self.resolver = resolver or AuthorityResolver(default_authority=client.authority)
        self._executor = ThreadPoolExecutor(
            max_workers=max_background_workers, thread_name_prefix="token-broker"
        )

        flow_args = dict(retry_policy=retry_policy, timeout=timeout, sleep=sleep)
        device_kwargs = dict(flow_args)
        if clock is not None:
            device_kwargs["clock"] = clock
        self._flows: dict[GrantType, TokenFlow] = {
            GrantType.CLIENT_CREDENTIALS: ClientCredentialsFlow(self.transport, **flow_args),
            GrantType.ON_BEHALF_OF: OnBehalfOfFlow(self.transport, **flow_args),
            GrantType.AUTHORIZATION_CODE: AuthorizationCodeFlow(self.transport, **flow_args),
            GrantType.USERNAME_PASSWORD: UsernamePasswordFlow(self.transport, **flow_args),
            GrantType.DEVICE_CODE: DeviceCodeFlow(self.transport, **device_kwargs),
            GrantType.REFRESH_TOKEN: RefreshTokenFlow(self.transport, **flow_args),
            GrantType.SILENT: SilentFlow(self.transport, cache=self.cache, **flow_args),
        }

    def resolve_endpoints(
        self,
        authority: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> AuthorityEndpoints:
        """
        Resolve endpoints for the client, with optional per-request overrides.

        Args:
            authority: Explicit authority replacing the client's
            tenant_id: Tenant replacing the client's, on the client's cloud host
        """
        if authority:
            return self.resolver.resolve(authority_uri=authority)
        endpoints = self.resolver.resolve(
            authority_uri=self.client.authority,
            cloud_instance=self.client.cloud_instance,
            tenant_id=self.client.tenant_id,
        )
        if tenant_id and tenant_id.lower() != endpoints.tenant.lower():
            host = urlsplit(endpoints.authority).netloc
            endpoints = self.resolver.resolve(authority_uri=f"https://{host}/{tenant_id}")
        return endpoints

    def cache_key(
        self,
        request: AcquisitionRequest,
        endpoints: AuthorityEndpoints,
    ) -> TokenCacheKey:
        """Compute the cache slot for a request."""
        account_id = None
        if request.grant_type == GrantType.ON_BEHALF_OF:
            account_id = _assertion_partition(request.user_assertion)
        elif request.account is not None:
            account_id = request.account.home_account_id
        return TokenCacheKey(
            client_id=self.client.client_id,
            tenant_id=endpoints.tenant,
            account_id=account_id,
            scopes=request.scopes,
            authority=endpoints.authority,
        )

    def acquire_token(self, request: AcquisitionRequest) -> CachedToken:
        """
        Return a token for the request, from cache when possible.

        Raises:
            InteractionRequiredError: The user must interact; pick another flow
            AuthenticationError: The authority rejected the request
            TransportError: The network failed after any permitted retries
            AcquisitionCancelledError: The request was cancelled
            InvalidRequestError: The request cannot be served by this client
        """
        if request.grant_type == GrantType.SILENT and request.account is None:
            request = self._account_from_hint(request)
        endpoints = self.resolve_endpoints(request.authority, request.tenant_id)
        key = self.cache_key(request, endpoints)
        flow = self._flows[request.grant_type]

        if request.grant_type not in _CACHEABLE_GRANTS:
            # The account is unknown until the exchange completes
            token = flow.execute(request, self.client, endpoints)
            request.cancellation.raise_if_cancelled(request.correlation_id)
            self.cache.store(key, token)
            return token

        if request.grant_type == GrantType.SILENT:
            supplier = lambda: flow.acquire(request, self.client, endpoints, key)
        else:
            supplier = lambda: flow.execute(request, self.client, endpoints)

        def exchange() -> CachedToken:
            token = supplier()
            request.cancellation.raise_if_cancelled(request.correlation_id)
            return token

        try:
            token = self.cache.get_or_acquire(
                key,
                exchange,
                force_refresh=request.force_refresh,
                cancellation=request.cancellation,
            )
        except InteractionRequiredError as e:
            logger.info(
                f"Interaction required for {request.grant_type.value}: {e.code} "
                f"[correlation_id={e.correlation_id}]"
            )
            raise
        return token

    def _account_from_hint(self, request: AcquisitionRequest) -> AcquisitionRequest:
        matches = self.get_accounts(request.login_hint)
        if not matches:
            raise InteractionRequiredError(
                "no_account",
                f"No cached account matches {request.login_hint}",
                correlation_id=request.correlation_id,
            )
        return request.model_copy(update={"account": matches[0]})

    def acquire_token_with_fallback(
        self, requests: Sequence[AcquisitionRequest]
    ) -> CachedToken:
        """
        Try requests in order until one succeeds.

        Only InteractionRequiredError moves on to the next request; any
        other error stops the chain and is raised.

        Raises:
            InvalidRequestError: The chain is empty
            InteractionRequiredError: Every request required interaction
        """
        if not requests:
            raise InvalidRequestError("Fallback chain is empty")
        last_error: Optional[InteractionRequiredError] = None
        for request in requests:
            try:
                return self.acquire_token(request)
            except InteractionRequiredError as e:
                logger.info(f"{request.grant_type.value} needs interaction, trying next flow")
                last_error = e
        raise last_error

    def start_device_code(self, request: AcquisitionRequest) -> DeviceCodeSession:
        """
        Run a device code acquisition in the background.

        The returned session exposes the challenge as soon as the authority
        issues it, the eventual token, and cancellation.
        """
        if request.grant_type != GrantType.DEVICE_CODE:
            raise InvalidRequestError(
                "start_device_code needs a device_code request", request.correlation_id
            )
        challenge_future: "Future[DeviceCodeChallenge]" = Future()
        caller_callback = request.device_code_callback

        def on_challenge(challenge: DeviceCodeChallenge) -> None:
            challenge_future.set_result(challenge)
            if caller_callback is not None:
                caller_callback(challenge)

        background = request.model_copy(update={"device_code_callback": on_challenge})

        def run() -> CachedToken:
            try:
                return self.acquire_token(background)
            except Exception as e:
                if not challenge_future.done():
                    challenge_future.set_exception(e)
                raise

        future = self._executor.submit(run)
        return DeviceCodeSession(background, future, challenge_future)

    def build_authorization_url(
        self,
        scopes: Iterable[str],
        redirect_uri: Optional[str] = None,
        state: Optional[str] = None,
        login_hint: Optional[str] = None,
        prompt: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> AuthorizationUrl:
        """Build the browser URL that precedes an authorization code exchange."""
        endpoints = self.resolve_endpoints(tenant_id=tenant_id)
        return AuthorizationCodeFlow.build_authorization_url(
            self.client,
            endpoints,
            scopes,
            redirect_uri=redirect_uri,
            state=state,
            login_hint=login_hint,
            prompt=prompt,
        )

    def get_accounts(self, username: Optional[str] = None) -> list[Account]:
        """Accounts with cached tokens, optionally filtered by username."""
        accounts = self.cache.accounts()
        if username:
            accounts = [a for a in accounts if (a.username or "").lower() == username.lower()]
        return accounts

    def remove_account(self, account: Account) -> int:
        return self.cache.remove_account(account)

    def clear_cache(self) -> None:
        self.cache.clear()

    def close(self) -> None:
        """Stop background workers and release the HTTP session."""
        self._executor.shutdown(wait=False, cancel_futures=True)
        close = getattr(self.transport, "close", None)
        if close is not None:
            close()

    def __enter__(self) -> "TokenBroker":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
