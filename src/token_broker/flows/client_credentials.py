"""Client credentials grant (app-only tokens)."""

from ..models.client import ClientApplication
from ..models.request import AcquisitionRequest, GrantType
from ..models.token import RESERVED_SCOPES
from ..utils.exceptions import InvalidRequestError
from .base import TokenFlow


class ClientCredentialsFlow(TokenFlow):
    """The client authenticates as itself; there is no user context."""

    grant_type = GrantType.CLIENT_CREDENTIALS
    idempotent = True
    requires_credential = True
    include_reserved_scopes = False

    def grant_fields(
        self,
        request: AcquisitionRequest,
        client: ClientApplication,
    ) -> dict[str, str]:
        user_scopes = {s.lower() for s in request.scopes} & RESERVED_SCOPES
        if user_scopes:
            raise InvalidRequestError(
                f"Client credentials tokens carry no user, cannot request {', '.join(sorted(user_scopes))}",
                request.correlation_id,
            )
        return {"grant_type": "client_credentials"}
