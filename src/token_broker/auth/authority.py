"""Authority resolution: tenant and cloud instance to token endpoints."""

import logging
import re
import threading
from enum import Enum
from typing import Optional, Union
from urllib.parse import urlsplit

from pydantic import BaseModel

from ..utils.exceptions import UnresolvableAuthorityError

logger = logging.getLogger(__name__)

DEFAULT_TENANT = "common"

_TENANT_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class CloudInstance(str, Enum):
    """National cloud login hosts."""

    AZURE_PUBLIC = "login.microsoftonline.com"
    AZURE_CHINA = "login.chinacloudapi.cn"
    AZURE_GERMANY = "login.microsoftonline.de"
    AZURE_US_GOVERNMENT = "login.microsoftonline.us"

    @classmethod
    def parse(cls, value: Union[str, "CloudInstance"]) -> "CloudInstance":
        """Accept an enum member, its name (``AzureChina``, ``AZURE_CHINA``) or its host."""
        if isinstance(value, cls):
            return value
        normalized = value.replace("_", "").replace("-", "").lower()
        for member in cls:
            if normalized in (member.name.replace("_", "").lower(), member.value):
                return member
        raise UnresolvableAuthorityError(f"Unknown cloud instance: {value}")


class AuthorityConfig(BaseModel):
    """Inputs describing one authority."""

    cloud_instance_host: str
    tenant: str
    custom_authority_uri: Optional[str] = None

    model_config = {"frozen": True}

    @property
    def authority(self) -> str:
        if self.custom_authority_uri:
            return self.custom_authority_uri.rstrip("/")
        return f"https://{self.cloud_instance_host}/{self.tenant}"


class AuthorityEndpoints(BaseModel):
    """Concrete endpoints of a resolved authority."""

    authority: str
    tenant: str
    token_endpoint: str
    authorize_endpoint: str
    device_code_endpoint: str
    issuer: str

    model_config = {"frozen": True}


def _validate_tenant(tenant: str) -> str:
    if not _TENANT_PATTERN.match(tenant):
        raise UnresolvableAuthorityError(f"Malformed tenant: {tenant!r}")
    return tenant


def _parse_authority_uri(uri: str) -> AuthorityConfig:
    parts = urlsplit(uri.strip())
    if parts.scheme != "https":
        raise UnresolvableAuthorityError(f"Authority must use https: {uri}")
    if not parts.hostname:
        raise UnresolvableAuthorityError(f"Authority has no host: {uri}")
    if parts.query or parts.fragment:
        raise UnresolvableAuthorityError(
            f"Authority must not carry a query or fragment: {uri}"
        )
    segments = [s for s in parts.path.split("/") if s]
    if not segments:
        raise UnresolvableAuthorityError(f"Authority has no tenant segment: {uri}")

    # B2C authorities look like /tfp/<tenant>/<policy>; ADFS uses /adfs
    if segments[0].lower() == "tfp" and len(segments) >= 3:
        tenant = segments[1]
    else:
        tenant = segments[0]
    _validate_tenant(tenant)

    return AuthorityConfig(
        cloud_instance_host=parts.netloc.lower(),
        tenant=tenant,
        custom_authority_uri=f"https://{parts.netloc.lower()}/{'/'.join(segments)}",
    )


def build_endpoints(config: AuthorityConfig) -> AuthorityEndpoints:
    """Derive the endpoint set for an authority."""
    authority = config.authority
    if config.tenant.lower() == "adfs":
        return AuthorityEndpoints(
            authority=authority,
            tenant=config.tenant,
            token_endpoint=f"{authority}/oauth2/token",
            authorize_endpoint=f"{authority}/oauth2/authorize",
            device_code_endpoint=f"{authority}/oauth2/devicecode",
            issuer=authority,
        )
    return AuthorityEndpoints(
        authority=authority,
        tenant=config.tenant,
        token_endpoint=f"{authority}/oauth2/v2.0/token",
        authorize_endpoint=f"{authority}/oauth2/v2.0/authorize",
        device_code_endpoint=f"{authority}/oauth2/v2.0/devicecode",
        issuer=f"{authority}/v2.0",
    )


class AuthorityResolver:
    """
    Resolves authority inputs to endpoints, memoizing by authority string.

    Resolution order:
        1. An explicit authority URI wins outright.
        2. Otherwise a cloud instance and/or tenant id (tenant defaults to
           ``common``, cloud to the Azure public cloud).
        3. Otherwise the default authority of the client configuration.
    """

    def __init__(self, default_authority: Optional[str] = None):
        self.default_authority = default_authority
        self._resolved: dict[str, AuthorityEndpoints] = {}
        self._lock = threading.Lock()

    def resolve(
        self,
        authority_uri: Optional[str] = None,
        cloud_instance: Optional[Union[str, CloudInstance]] = None,
        tenant_id: Optional[str] = None,
    ) -> AuthorityEndpoints:
        """
        Resolve inputs to a concrete endpoint set.

        Args:
            authority_uri: Explicit authority, e.g. https://login.microsoftonline.com/contoso
            cloud_instance: Cloud to use when no explicit authority is given
            tenant_id: Tenant to use when no explicit authority is given

        Returns:
            Resolved endpoints

        Raises:
            UnresolvableAuthorityError: On malformed or conflicting inputs,
                or when nothing resolves and no default exists
        """
        config = self._authority_config(authority_uri, cloud_instance, tenant_id)
        key = config.authority.lower()

        with self._lock:
            endpoints = self._resolved.get(key)
            if endpoints is None:
                endpoints = build_endpoints(config)
                self._resolved[key] = endpoints
                logger.debug(f"Resolved authority {endpoints.authority}")
            return endpoints

    def _authority_config(
        self,
        authority_uri: Optional[str],
        cloud_instance: Optional[Union[str, CloudInstance]],
        tenant_id: Optional[str],
    ) -> AuthorityConfig:
        if authority_uri:
            config = _parse_authority_uri(authority_uri)
            if cloud_instance is not None:
                host = CloudInstance.parse(cloud_instance).value
                if host != config.cloud_instance_host:
                    raise UnresolvableAuthorityError(
                        f"Authority {authority_uri} conflicts with cloud instance {host}"
                    )
            return config

        if cloud_instance is not None or tenant_id:
            cloud = CloudInstance.parse(cloud_instance or CloudInstance.AZURE_PUBLIC)
            tenant = _validate_tenant(tenant_id or DEFAULT_TENANT)
            return AuthorityConfig(cloud_instance_host=cloud.value, tenant=tenant)

        if self.default_authority:
            return _parse_authority_uri(self.default_authority)

        raise UnresolvableAuthorityError(
            "No authority, cloud instance or tenant given and no default authority configured"
        )
