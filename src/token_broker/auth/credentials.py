"""Client credential material: secrets, certificates and assertions."""

import base64
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Union

import jwt
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import pkcs12

from ..utils.exceptions import InvalidCredentialError

logger = logging.getLogger(__name__)

CLIENT_ASSERTION_TYPE_JWT = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"

ASSERTION_LIFETIME_SECONDS = 600


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


class CredentialMaterial(ABC):
    """A confidential client's proof of identity."""

    @abstractmethod
    def client_auth_fields(self, client_id: str, audience: str) -> dict[str, str]:
        """
        Produce the form fields that authenticate the client.

        Args:
            client_id: Application (client) id
            audience: Token endpoint the fields are presented to

        Returns:
            Form fields to merge into the token request body
        """


@dataclass(frozen=True)
class ClientSecret(CredentialMaterial):
    """Shared secret registered for the application."""

    secret: str = field(repr=False)

    def __post_init__(self) -> None:
        if not self.secret:
            raise InvalidCredentialError("Client secret must not be empty")

    def client_auth_fields(self, client_id: str, audience: str) -> dict[str, str]:
        return {"client_secret": self.secret}


@dataclass(frozen=True)
class PreSignedAssertion(CredentialMaterial):
    """
    A client assertion signed elsewhere (e.g. a federated workload identity).

    ``assertion`` may be a string or a zero-argument callable returning a
    fresh assertion each time, for assertions that expire.
    """

    assertion: Union[str, Callable[[], str]] = field(repr=False)

    def __post_init__(self) -> None:
        if isinstance(self.assertion, str) and not self.assertion.strip():
            raise InvalidCredentialError("Client assertion must not be empty")

    def client_auth_fields(self, client_id: str, audience: str) -> dict[str, str]:
        value = self.assertion() if callable(self.assertion) else self.assertion
        if not value or not value.strip():
            raise InvalidCredentialError("Client assertion provider returned an empty assertion")
        return {
            "client_assertion_type": CLIENT_ASSERTION_TYPE_JWT,
            "client_assertion": value,
        }


@dataclass(frozen=True)
class ClientCertificate(CredentialMaterial):
    """
    Certificate credential that signs a JWT client assertion per request.

    The assertion header carries the SHA-1 thumbprint (``x5t``) and, when
    ``send_certificate_chain`` is set, the certificate chain (``x5c``) for
    subject-name/issuer authentication.
    """

    private_key: Optional[Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey]] = field(repr=False)
    certificate: x509.Certificate
    chain: tuple[x509.Certificate, ...] = ()
    send_certificate_chain: bool = False

    def __post_init__(self) -> None:
        if self.private_key is None:
            raise InvalidCredentialError(
                f"Certificate {self.thumbprint} has no private key"
            )
        if not isinstance(self.private_key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
            raise InvalidCredentialError(
                f"Unsupported private key type {type(self.private_key).__name__}"
            )
        public_numbers = self.certificate.public_key().public_numbers()
        if public_numbers != self.private_key.public_key().public_numbers():
            raise InvalidCredentialError(
                f"Private key does not match certificate {self.thumbprint}"
            )

    @classmethod
    def from_pem(
        cls,
        private_key_pem: bytes,
        certificate_pem: bytes,
        passphrase: Optional[bytes] = None,
        send_certificate_chain: bool = False,
    ) -> "ClientCertificate":
        """Load a key and a PEM bundle whose first certificate is the leaf."""
        try:
            key = serialization.load_pem_private_key(private_key_pem, passphrase)
            certificates = x509.load_pem_x509_certificates(certificate_pem)
        except (ValueError, TypeError) as e:
            raise InvalidCredentialError(f"Failed to load PEM certificate: {e}") from e
        if not certificates:
            raise InvalidCredentialError("PEM bundle contains no certificate")
        return cls(
            private_key=key,
            certificate=certificates[0],
            chain=tuple(certificates[1:]),
            send_certificate_chain=send_certificate_chain,
        )

    @classmethod
    def from_pfx_file(
        cls,
        path: Path,
        passphrase: Optional[str] = None,
        send_certificate_chain: bool = False,
    ) -> "ClientCertificate":
        """Load a PKCS#12 (.pfx/.p12) file."""
        try:
            data = Path(path).read_bytes()
            key, certificate, additional = pkcs12.load_key_and_certificates(
                data, passphrase.encode("utf-8") if passphrase else None
            )
        except (OSError, ValueError) as e:
            raise InvalidCredentialError(f"Failed to load certificate {path}: {e}") from e
        if certificate is None:
            raise InvalidCredentialError(f"{path} contains no certificate")
        return cls(
            private_key=key,
            certificate=certificate,
            chain=tuple(additional or ()),
            send_certificate_chain=send_certificate_chain,
        )

    @classmethod
    def from_file(
        cls,
        path: Path,
        passphrase: Optional[str] = None,
        send_certificate_chain: bool = False,
    ) -> "ClientCertificate":
        """Load a .pfx/.p12 file, or a .pem holding both key and certificate."""
        path = Path(path)
        if path.suffix.lower() in (".pfx", ".p12"):
            return cls.from_pfx_file(path, passphrase, send_certificate_chain)
        try:
            pem = path.read_bytes()
        except OSError as e:
            raise InvalidCredentialError(f"Failed to read certificate {path}: {e}") from e
        return cls.from_pem(
            pem,
            pem,
            passphrase.encode("utf-8") if passphrase else None,
            send_certificate_chain,
        )

    @property
    def thumbprint(self) -> str:
        """Hex SHA-1 thumbprint, as shown in the app registration."""
        return self.certificate.fingerprint(hashes.SHA1()).hex().upper()

    @property
    def _algorithm(self) -> str:
        return "ES256" if isinstance(self.private_key, ec.EllipticCurvePrivateKey) else "RS256"

    def create_assertion(
        self,
        client_id: str,
        audience: str,
        now: Optional[float] = None,
    ) -> str:
        """
        Sign a client assertion JWT.

        Args:
            client_id: Issuer and subject of the assertion
            audience: Token endpoint URL
            now: Epoch seconds to issue at (defaults to current time)

        Returns:
            Compact-serialized signed JWT
        """
        issued_at = int(now if now is not None else time.time())
        claims = {
            "aud": audience,
            "iss": client_id,
            "sub": client_id,
            "jti": str(uuid.uuid4()),
            "nbf": issued_at,
            "iat": issued_at,
            "exp": issued_at + ASSERTION_LIFETIME_SECONDS,
        }
        headers = {
            "x5t": _b64url(self.certificate.fingerprint(hashes.SHA1())),
        }
        if self.send_certificate_chain:
            headers["x5c"] = [
                base64.b64encode(cert.public_bytes(serialization.Encoding.DER)).decode("ascii")
                for cert in (self.certificate, *self.chain)
            ]
        return jwt.encode(claims, self.private_key, algorithm=self._algorithm, headers=headers)

    def client_auth_fields(self, client_id: str, audience: str) -> dict[str, str]:
        return {
            "client_assertion_type": CLIENT_ASSERTION_TYPE_JWT,
            "client_assertion": self.create_assertion(client_id, audience),
        }
