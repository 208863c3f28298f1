"""Resource owner password credentials grant (legacy, public clients only)."""

from ..models.client import ClientApplication
from ..models.request import AcquisitionRequest, GrantType
from .base import TokenFlow


class UsernamePasswordFlow(TokenFlow):
    grant_type = GrantType.USERNAME_PASSWORD
    public_client_only = True

    def grant_fields(
        self,
        request: AcquisitionRequest,
        client: ClientApplication,
    ) -> dict[str, str]:
        return {
            "grant_type": "password",
            "username": request.username,
            "password": request.password.get_secret_value(),
        }
