"""Configuration management for the token broker."""

from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .auth.credentials import (
    ClientCertificate,
    ClientSecret,
    CredentialMaterial,
    PreSignedAssertion,
)
from .models.client import ClientApplication
from .utils.exceptions import ConfigurationError
from .utils.retry import RetryPolicy


class ClientConfig(BaseSettings):
    """One application registration, from BROKER_* environment variables."""

    client_id: Optional[str] = Field(None, validation_alias="BROKER_CLIENT_ID")
    tenant_id: Optional[str] = Field(None, validation_alias="BROKER_TENANT_ID")
    authority: Optional[str] = Field(None, validation_alias="BROKER_AUTHORITY")
    cloud_instance: Optional[str] = Field(None, validation_alias="BROKER_CLOUD_INSTANCE")
    redirect_uri: Optional[str] = Field(None, validation_alias="BROKER_REDIRECT_URI")

    # Credential material: at most one of secret, certificate or assertion
    client_secret: Optional[str] = Field(None, validation_alias="BROKER_CLIENT_SECRET", repr=False)
    certificate_path: Optional[Path] = Field(None, validation_alias="BROKER_CERTIFICATE_PATH")
    certificate_password: Optional[str] = Field(
        None, validation_alias="BROKER_CERTIFICATE_PASSWORD", repr=False
    )
    client_assertion: Optional[str] = Field(
        None, validation_alias="BROKER_CLIENT_ASSERTION", repr=False
    )
    send_x5c: bool = Field(default=False, validation_alias="BROKER_SEND_X5C")

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        env_parse_none_str="",  # Treat empty string as None
    )

    def build_credential(self) -> Optional[CredentialMaterial]:
        """
        Build the credential material this configuration describes.

        Returns:
            Credential, or None for a public client

        Raises:
            ConfigurationError: If more than one kind of credential is set
            InvalidCredentialError: If the credential itself is unusable
        """
        configured = [
            name
            for name, value in (
                ("client_secret", self.client_secret),
                ("certificate_path", self.certificate_path),
                ("client_assertion", self.client_assertion),
            )
            if value
        ]
        if len(configured) > 1:
            raise ConfigurationError(
                f"Configure only one client credential, got: {', '.join(configured)}"
            )

        if self.client_secret:
            return ClientSecret(self.client_secret)
        if self.certificate_path:
            return ClientCertificate.from_file(
                self.certificate_path,
                passphrase=self.certificate_password,
                send_certificate_chain=self.send_x5c,
            )
        if self.client_assertion:
            return PreSignedAssertion(self.client_assertion)
        return None

    def to_client_application(self) -> ClientApplication:
        """
        Build the ClientApplication the broker is constructed with.

        Raises:
            ConfigurationError: If no client id is configured
        """
        if not self.client_id:
            raise ConfigurationError("Client id is required (BROKER_CLIENT_ID)")
        return ClientApplication(
            client_id=self.client_id,
            credential=self.build_credential(),
            authority=self.authority,
            cloud_instance=self.cloud_instance,
            tenant_id=self.tenant_id,
            redirect_uri=self.redirect_uri,
        )


class BrokerSettings(BaseSettings):
    """Broker-wide settings."""

    # Network
    http_timeout: float = Field(default=30.0, validation_alias="BROKER_HTTP_TIMEOUT")
    retry_attempts: int = Field(default=3, validation_alias="BROKER_RETRY_ATTEMPTS")
    retry_initial_delay: float = Field(default=0.5, validation_alias="BROKER_RETRY_INITIAL_DELAY")
    retry_max_delay: float = Field(default=8.0, validation_alias="BROKER_RETRY_MAX_DELAY")

    # Token cache
    clock_skew_seconds: int = Field(default=300, validation_alias="BROKER_CLOCK_SKEW_SECONDS")
    token_cache_persist: bool = Field(default=False, validation_alias="TOKEN_CACHE_PERSIST")
    token_cache_path: Path = Field(
        default=Path(".token_cache"), validation_alias="TOKEN_CACHE_PATH"
    )
    token_cache_encrypted: bool = Field(
        default=True, validation_alias="TOKEN_CACHE_ENCRYPTED"
    )

    # Logging
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_file: Optional[Path] = Field(default=None, validation_alias="LOG_FILE")

    # Client registry
    clients_file: Path = Field(default=Path("clients.yaml"), validation_alias="BROKER_CLIENTS_FILE")

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        env_parse_none_str="",
    )

    @property
    def clock_skew(self) -> timedelta:
        return timedelta(seconds=self.clock_skew_seconds)

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=max(self.retry_attempts, 1),
            initial_delay=self.retry_initial_delay,
            max_delay=self.retry_max_delay,
        )


# Keys a clients.yaml entry may carry, mapped onto ClientConfig fields
_REGISTRY_KEYS = {
    "client_id",
    "tenant_id",
    "authority",
    "cloud_instance",
    "redirect_uri",
    "client_secret",
    "certificate_path",
    "certificate_password",
    "client_assertion",
    "send_x5c",
}


class ClientRegistry:
    """
    Named client registrations loaded from YAML.

    Example ``clients.yaml``::

        clients:
          daemon:
            client_id: 11111111-2222-3333-4444-555555555555
            tenant_id: contoso.onmicrosoft.com
            certificate_path: certs/daemon.pfx
          cli:
            client_id: 66666666-7777-8888-9999-000000000000
            authority: https://login.microsoftonline.com/organizations
        default: cli
    """

    def __init__(self, config_path: Path = Path("clients.yaml")):
        self.clients: dict[str, ClientConfig] = {}
        self.default: Optional[str] = None

        if config_path.exists():
            try:
                with open(config_path) as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

            for name, client_data in (data.get("clients") or {}).items():
                self.add(name, client_data or {})
            self.default = data.get("default")

    def add(self, name: str, data: dict[str, Any]) -> ClientConfig:
        """Register a client under a name, replacing any existing one."""
        unknown = set(data) - _REGISTRY_KEYS
        if unknown:
            raise ConfigurationError(
                f"Client '{name}' has unknown keys: {', '.join(sorted(unknown))}"
            )
        # Use model_construct to bypass environment variable loading
        values = dict(data)
        if values.get("certificate_path"):
            values["certificate_path"] = Path(values["certificate_path"])
        client = ClientConfig.model_construct(**values)
        self.clients[name] = client
        return client

    def get(self, name: Optional[str] = None) -> ClientConfig:
        """
        Look up a client by name, or the default client.

        Raises:
            ConfigurationError: If the name is unknown or nothing is registered
        """
        name = name or self.default
        if name is None:
            if len(self.clients) == 1:
                return next(iter(self.clients.values()))
            raise ConfigurationError("No client name given and no default client configured")
        if name not in self.clients:
            raise ConfigurationError(f"Unknown client: {name}")
        return self.clients[name]

    def remove(self, name: str) -> bool:
        if self.default == name:
            self.default = None
        return self.clients.pop(name, None) is not None

    @property
    def has_config(self) -> bool:
        return len(self.clients) > 0


def load_settings(env_file: Optional[Path] = None) -> BrokerSettings:
    """
    Load broker settings, reading a .env file into the environment first.

    Args:
        env_file: .env file to load (defaults to ./.env)
    """
    load_dotenv(env_file)
    return BrokerSettings()


def load_client(
    name: Optional[str] = None,
    settings: Optional[BrokerSettings] = None,
) -> ClientConfig:
    """
    Resolve the client to use: a named registry entry, else the environment.

    Args:
        name: Client name in the registry
        settings: Settings pointing at the registry file

    Raises:
        ConfigurationError: If a name is given that the registry lacks
    """
    settings = settings or BrokerSettings()
    registry = ClientRegistry(settings.clients_file)
    if name or registry.has_config:
        return registry.get(name)
    return ClientConfig()
