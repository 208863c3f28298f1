"""CLI entry point for the token broker."""

import argparse
import getpass
import sys

# Initialize SSL truststore early, before any HTTPS imports
from .utils.ssl_utils import init_ssl
init_ssl()

from .broker import TokenBroker
from .cache.persistence import open_persistent_cache
from .cache.token_cache import TokenCache
from .config import load_client, load_settings
from .models.device_code import DeviceCodeChallenge
from .models.request import AcquisitionRequest, GrantType
from .transport.http import RequestsTransport
from .utils.exceptions import TokenBrokerError
from .utils.logging import setup_logging


def _show_device_code(challenge: DeviceCodeChallenge) -> None:
    print("\n" + "=" * 70)
    print("AUTHENTICATION REQUIRED")
    print("=" * 70)
    print(f"\n{challenge.message}\n")
    print(f"URL:  {challenge.verification_uri}")
    print(f"Code: {challenge.user_code}")
    print("\n" + "=" * 70 + "\n")


def _build_request(args: argparse.Namespace) -> AcquisitionRequest:
    """Translate command-line arguments into an acquisition request."""
    grant = GrantType(args.grant)
    fields = {
        "scopes": args.scope,
        "grant_type": grant,
        "force_refresh": args.force_refresh,
        "tenant_id": args.tenant,
    }
    if grant == GrantType.ON_BEHALF_OF:
        fields["user_assertion"] = args.user_assertion
    elif grant == GrantType.AUTHORIZATION_CODE:
        fields["authorization_code"] = args.code
        fields["redirect_uri"] = args.redirect_uri
        fields["code_verifier"] = args.code_verifier
    elif grant == GrantType.USERNAME_PASSWORD:
        fields["username"] = args.username
        fields["password"] = getpass.getpass(f"Password for {args.username}: ") if args.username else None
    elif grant == GrantType.DEVICE_CODE:
        fields["device_code_callback"] = _show_device_code
    elif grant == GrantType.SILENT:
        fields["login_hint"] = args.username
    return AcquisitionRequest(**fields)


def main() -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Token Broker - Acquire and cache OAuth2 access tokens"
    )
    parser.add_argument(
        "--client",
        type=str,
        help="Client name from clients.yaml (default: the registry default, else BROKER_* settings)",
    )
    parser.add_argument(
        "--scope",
        nargs="+",
        default=[],
        help="Scope(s) to request, e.g. https://graph.microsoft.com/.default",
    )
    parser.add_argument(
        "--grant",
        choices=[g.value for g in GrantType],
        default=GrantType.CLIENT_CREDENTIALS.value,
        help="Acquisition flow (default: client_credentials)",
    )
    parser.add_argument(
        "--tenant",
        type=str,
        default=None,
        help="Tenant overriding the client's configured tenant",
    )
    parser.add_argument(
        "--user-assertion",
        type=str,
        help="Inbound user token for on_behalf_of",
    )
    parser.add_argument(
        "--code",
        type=str,
        help="Authorization code for authorization_code",
    )
    parser.add_argument(
        "--redirect-uri",
        type=str,
        help="Redirect URI the authorization code was issued to",
    )
    parser.add_argument(
        "--code-verifier",
        type=str,
        help="PKCE verifier matching the authorization URL",
    )
    parser.add_argument(
        "--username",
        type=str,
        help="Username for username_password, or account hint for silent",
    )
    parser.add_argument(
        "--authorization-url",
        action="store_true",
        help="Print an authorization URL (with PKCE verifier) and exit",
    )
    parser.add_argument(
        "--force-refresh",
        action="store_true",
        help="Bypass the cache and acquire a new token",
    )
    parser.add_argument(
        "--list-accounts",
        action="store_true",
        help="List accounts with cached tokens",
    )
    parser.add_argument(
        "--clear-cache",
        action="store_true",
        help="Clear the token cache",
    )
    parser.add_argument(
        "--print-token",
        action="store_true",
        help="Print the raw access token",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Verbose output",
    )

    args = parser.parse_args()

    settings = load_settings()

    # Setup logging
    log_level = "DEBUG" if args.verbose else settings.log_level
    logger = setup_logging(level=log_level, log_file=settings.log_file)

    try:
        client = load_client(args.client, settings).to_client_application()

        if settings.token_cache_persist:
            cache = open_persistent_cache(
                settings.token_cache_path,
                encrypted=settings.token_cache_encrypted,
                skew=settings.clock_skew,
            )
        else:
            cache = TokenCache(skew=settings.clock_skew)

        with TokenBroker(
            client,
            cache=cache,
            transport=RequestsTransport(timeout=settings.http_timeout),
            retry_policy=settings.retry_policy,
            timeout=settings.http_timeout,
        ) as broker:
            # Handle clear cache
            if args.clear_cache:
                broker.clear_cache()
                return 0

            if args.list_accounts:
                accounts = broker.get_accounts()
                print(f"Found {len(accounts)} account(s):")
                for account in accounts:
                    print(f"  - {account.username or '(no username)'} ({account.home_account_id})")
                return 0

            if not args.scope:
                logger.error("At least one --scope is required")
                return 1

            if args.authorization_url:
                auth_url = broker.build_authorization_url(
                    args.scope,
                    redirect_uri=args.redirect_uri,
                    login_hint=args.username,
                    tenant_id=args.tenant,
                )
                print(f"Open this URL in a browser:\n\n{auth_url.url}\n")
                print(f"State:         {auth_url.state}")
                print(f"Code verifier: {auth_url.code_verifier}")
                return 0

            token = broker.acquire_token(_build_request(args))

        print(f"Token type: {token.token_type}")
        print(f"Expires:    {token.expires_at.isoformat()} ({token.expires_in}s)")
        print(f"Scopes:     {' '.join(sorted(token.granted_scopes))}")
        if token.account:
            print(f"Account:    {token.account.username or token.account.home_account_id}")
        if args.print_token:
            print(f"\n{token.access_token}")
        return 0

    except TokenBrokerError as e:
        logger.error(f"Error: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 1


if __name__ == "__main__":
    sys.exit(main())
