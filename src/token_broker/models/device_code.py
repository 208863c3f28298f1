"""Device code challenge shown to the user."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..utils.date_utils import utc_now

DEFAULT_POLL_INTERVAL = 5


class DeviceCodeChallenge(BaseModel):
    """Initial device authorization response."""

    device_code: str = Field(repr=False)
    user_code: str
    verification_uri: str
    expires_in: int
    interval: int = DEFAULT_POLL_INTERVAL
    message: Optional[str] = None
    issued_at: datetime = Field(default_factory=utc_now)

    model_config = {"frozen": True}

    @classmethod
    def from_response(cls, payload: dict[str, Any]) -> "DeviceCodeChallenge":
        # Older AAD endpoints send verification_url instead of verification_uri
        verification_uri = payload.get("verification_uri") or payload.get(
            "verification_url"
        )
        interval = payload.get("interval")
        return cls(
            device_code=payload["device_code"],
            user_code=payload["user_code"],
            verification_uri=verification_uri,
            expires_in=int(payload["expires_in"]),
            interval=int(interval) if interval else DEFAULT_POLL_INTERVAL,
            message=payload.get("message")
            or f"To sign in, open {verification_uri} and enter the code {payload['user_code']}",
        )
