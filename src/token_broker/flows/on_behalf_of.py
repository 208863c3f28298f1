"""On-behalf-of grant: trade a user's inbound token for a downstream one."""

from ..models.client import ClientApplication
from ..models.request import AcquisitionRequest, GrantType
from .base import TokenFlow


class OnBehalfOfFlow(TokenFlow):
    """
    A middle-tier service exchanges the assertion it received from a caller.

    The assertion type becomes the ``grant_type``; it defaults to the JWT
    bearer URN.
    """

    grant_type = GrantType.ON_BEHALF_OF
    requires_credential = True

    def grant_fields(
        self,
        request: AcquisitionRequest,
        client: ClientApplication,
    ) -> dict[str, str]:
        return {
            "grant_type": request.assertion_type,
            "assertion": request.user_assertion,
            "requested_token_use": "on_behalf_of",
        }
