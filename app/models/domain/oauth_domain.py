# models/domain/oauth_domain.py
"""
OAuth token as read from the oauth_tokens table.
Issuance and refresh rotation are owned by the auth service; we only read.
"""

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel


class OAuthToken(BaseModel):
    """Upstream Google credential for one user."""

    user_id: str
    provider: Literal["google"] = "google"
    access_token: str
    scope: str = ""
    expires_at: datetime | None = None
    updated_at: datetime | None = None

    def is_expired(self) -> bool:
        if not self.expires_at:
            return False
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        return datetime.now(UTC) >= expires_at
