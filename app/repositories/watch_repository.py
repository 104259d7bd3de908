"""
Persistence for Gmail push watch state (gmail_watch_state).
"""

from dataclasses import dataclass
from datetime import datetime

from app.db.helpers import execute_query, fetch_all, fetch_one
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class WatchState:
    user_id: str
    email_address: str | None
    history_id: str | None
    watch_expiration: datetime | None


class WatchStateRepository:
    """Raw SQL helpers over gmail_watch_state."""

    @classmethod
    def _row_to_state(cls, row: dict | None) -> WatchState | None:
        if not row:
            return None
        return WatchState(
            user_id=str(row["user_id"]),
            email_address=row.get("email_address"),
            history_id=row.get("history_id"),
            watch_expiration=row.get("watch_expiration"),
        )

    @classmethod
    async def get(cls, user_id: str) -> WatchState | None:
        row = await fetch_one(
            """
            SELECT user_id, email_address, history_id, watch_expiration
            FROM gmail_watch_state WHERE user_id = %s
            """,
            (user_id,),
        )
        return cls._row_to_state(row)

    @classmethod
    async def save_watch(
        cls,
        user_id: str,
        email_address: str | None,
        history_id: str | None,
        watch_expiration: datetime | None,
    ) -> None:
        await execute_query(
            """
            INSERT INTO gmail_watch_state (user_id, email_address, history_id, watch_expiration, updated_at)
            VALUES (%s, %s, %s, %s, NOW())
            ON CONFLICT (user_id)
            DO UPDATE SET
                email_address = COALESCE(EXCLUDED.email_address, gmail_watch_state.email_address),
                history_id = EXCLUDED.history_id,
                watch_expiration = EXCLUDED.watch_expiration,
                updated_at = NOW()
            """,
            (user_id, email_address, history_id, watch_expiration),
        )

    @classmethod
    async def save_history_id(cls, user_id: str, history_id: str | None) -> None:
        await execute_query(
            """
            INSERT INTO gmail_watch_state (user_id, history_id, updated_at)
            VALUES (%s, %s, NOW())
            ON CONFLICT (user_id)
            DO UPDATE SET history_id = EXCLUDED.history_id, updated_at = NOW()
            """,
            (user_id, history_id),
        )

    @classmethod
    async def clear_watch(cls, user_id: str) -> None:
        await execute_query(
            """
            UPDATE gmail_watch_state
            SET watch_expiration = NULL, history_id = NULL, updated_at = NOW()
            WHERE user_id = %s
            """,
            (user_id,),
        )

    @classmethod
    async def list_expiring(cls, before: datetime) -> list[WatchState]:
        rows = await fetch_all(
            """
            SELECT user_id, email_address, history_id, watch_expiration
            FROM gmail_watch_state
            WHERE watch_expiration IS NOT NULL AND watch_expiration <= %s
            ORDER BY watch_expiration ASC
            """,
            (before,),
        )
        return [cls._row_to_state(row) for row in rows]
