"""
Token Service: hands out a usable Gmail access token for a user.
Reads the credential the auth service keeps in oauth_tokens.
"""

from app.db.helpers import DatabaseError, fetch_one, with_db_retry
from app.infrastructure.observability.logging import get_logger
from app.models.domain.oauth_domain import OAuthToken

logger = get_logger(__name__)


class TokenServiceError(Exception):
    """Custom exception for token service operations."""

    def __init__(self, message: str, user_id: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.user_id = user_id
        self.recoverable = recoverable


class TokenService:
    """Lookup of upstream OAuth credentials by user id."""

    @with_db_retry(max_retries=2, base_delay=0.1)
    async def get_tokens(self, user_id: str, provider: str = "google") -> OAuthToken | None:
        row = await fetch_one(
            """
            SELECT user_id, provider, access_token, scope, expires_at, updated_at
            FROM oauth_tokens
            WHERE user_id = %s AND provider = %s
            """,
            (user_id, provider),
        )
        if not row:
            return None
        return OAuthToken(
            user_id=str(row["user_id"]),
            provider=row["provider"],
            access_token=row["access_token"],
            scope=row.get("scope") or "",
            expires_at=row.get("expires_at"),
            updated_at=row.get("updated_at"),
        )

    async def get_valid_access_token(self, user_id: str) -> str:
        """
        Access token for Gmail calls.

        Raises:
            TokenServiceError: No credential, or it has expired
        """
        try:
            token = await self.get_tokens(user_id)
        except DatabaseError as e:
            logger.error("Failed to load OAuth tokens", user_id=user_id, error=str(e))
            raise TokenServiceError(f"Token lookup failed: {e}", user_id=user_id) from e

        if token is None:
            raise TokenServiceError("Gmail not connected", user_id=user_id, recoverable=False)

        if token.is_expired():
            logger.warning("Gmail access token expired", user_id=user_id)
            raise TokenServiceError("Gmail access token expired", user_id=user_id)

        return token.access_token


# Singleton instance for application use
token_service = TokenService()
