#!/usr/bin/env python3
"""Interactive setup helper for Token Broker configuration."""

import sys
from pathlib import Path


def main():
    print("\n" + "=" * 70)
    print("🔑 Token Broker - Configuration Setup")
    print("=" * 70 + "\n")

    env_file = Path(".env")

    if env_file.exists():
        response = input("⚠️  .env file already exists. Overwrite? (y/N): ")
        if response.lower() != 'y':
            print("Setup cancelled.")
            return

    print("Let's configure your application registration.\n")
    print("You'll need to register an app in Azure Portal first:")
    print("https://portal.azure.com/#view/Microsoft_AAD_IAM/ActiveDirectoryMenuBlade/~/RegisteredApps")
    print()

    # Client registration
    print("─" * 70)
    print("Application Registration")
    print("─" * 70)

    tenant_id = input("\nTenant ID or domain (Enter for 'common'): ").strip()
    client_id = input("Client ID (from Azure Portal): ").strip()
    cloud_instance = input("Cloud instance (Enter for AzurePublic): ").strip()

    if tenant_id:
        authority = ""
    else:
        authority = input("Authority URL (optional, press Enter to skip): ").strip()

    # Client credential
    print("\n" + "─" * 70)
    print("Client Credential (confidential clients only)")
    print("─" * 70)
    print("\n  1. None (public client: device code, username/password)")
    print("  2. Client secret")
    print("  3. Certificate (.pfx/.p12 or .pem)")
    choice = input("\nChoose [1-3] (default 1): ").strip() or "1"

    client_secret = ""
    certificate_path = ""
    certificate_password = ""
    send_x5c = "false"
    if choice == "2":
        client_secret = input("Client Secret: ").strip()
    elif choice == "3":
        certificate_path = input("Certificate path: ").strip()
        certificate_password = input("Certificate password (optional, press Enter to skip): ").strip()
        if input("Send certificate chain (x5c) for SN/I auth? (y/N): ").lower() == 'y':
            send_x5c = "true"

    redirect_uri = input("\nRedirect URI (optional, for authorization code): ").strip()

    # Generate .env file
    env_content = f"""# Application Registration
BROKER_CLIENT_ID={client_id}
BROKER_TENANT_ID={tenant_id}
BROKER_AUTHORITY={authority}
BROKER_CLOUD_INSTANCE={cloud_instance}
BROKER_REDIRECT_URI={redirect_uri}

# Client Credential
BROKER_CLIENT_SECRET={client_secret}
BROKER_CERTIFICATE_PATH={certificate_path}
BROKER_CERTIFICATE_PASSWORD={certificate_password}
BROKER_SEND_X5C={send_x5c}

# Network
BROKER_HTTP_TIMEOUT=30
BROKER_RETRY_ATTEMPTS=3

# Token Cache Configuration
BROKER_CLOCK_SKEW_SECONDS=300
TOKEN_CACHE_PERSIST=false
TOKEN_CACHE_PATH=.token_cache
TOKEN_CACHE_ENCRYPTED=true

# Logging Configuration
LOG_LEVEL=INFO
LOG_FILE=token_broker.log
"""

    with open(".env", "w") as f:
        f.write(env_content)

    print("\n" + "=" * 70)
    print("✅ Configuration saved to .env")
    print("=" * 70)

    print("\n📋 Next steps:")
    if choice == "1":
        print("1. Enable 'Allow public client flows' on the app registration")
        print("2. Run: token-broker --grant device_code --scope User.Read")
    else:
        print("1. Grant application permissions and admin consent to the app")
        print("2. Run: token-broker --scope https://graph.microsoft.com/.default")
    print()


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print("\n\nSetup cancelled.")
        sys.exit(0)
