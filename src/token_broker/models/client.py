"""Client application registration model."""

from dataclasses import dataclass
from typing import Optional

from ..auth.credentials import CredentialMaterial


@dataclass(frozen=True)
class ClientApplication:
    """
    An application registration as the broker sees it.

    ``credential`` is None for public clients. Authority inputs here are the
    client's defaults; a request may override tenant or authority.
    """

    client_id: str
    credential: Optional[CredentialMaterial] = None
    authority: Optional[str] = None
    cloud_instance: Optional[str] = None
    tenant_id: Optional[str] = None
    redirect_uri: Optional[str] = None

    @property
    def is_confidential(self) -> bool:
        return self.credential is not None
