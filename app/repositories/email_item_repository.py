"""
Persistence for cached board items (email_items).

Ordering everywhere on the board is received_at DESC NULLS LAST, id DESC;
id is a BIGSERIAL so it doubles as cache-insertion order.
"""

from datetime import datetime

from app.db.helpers import execute_query, fetch_all, fetch_one, fetch_val
from app.infrastructure.observability.logging import get_logger
from app.models.domain.kanban_domain import SNOOZED_STATUS, CachedItem, MessageSnapshot

logger = get_logger(__name__)


class EmailItemRepository:
    """Raw SQL helpers over email_items."""

    # Items that belong to a column: its own rows plus rows snoozed out of it
    COLUMN_PREDICATE = """
        user_id = %s
        AND (status = %s OR (status = 'SNOOZED' AND original_status = %s))
    """

    @classmethod
    def _column_filter(
        cls, user_id: str, column_id: str, cursor: datetime | None
    ) -> tuple[str, tuple]:
        where = cls.COLUMN_PREDICATE
        params: tuple = (user_id, column_id, column_id)
        if cursor is not None:
            where += " AND received_at < %s"
            params += (cursor,)
        return where, params

    @classmethod
    async def insert_if_absent(cls, user_id: str, snapshot: MessageSnapshot, status: str) -> bool:
        """
        Cache a message the first time it is seen.

        Returns True only when a row was actually inserted; a concurrent or
        repeated insert of the same (user_id, message_id) is a no-op.
        """
        query = """
            INSERT INTO email_items (
                user_id, message_id, mailbox_id, thread_id, sender_name, sender_email,
                subject, snippet, received_at, has_attachments, is_unread, status
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id, message_id) DO NOTHING
        """
        inserted = await execute_query(
            query,
            (
                user_id,
                snapshot.message_id,
                snapshot.mailbox_id,
                snapshot.thread_id,
                snapshot.sender_name,
                snapshot.sender_email,
                snapshot.subject,
                snapshot.snippet,
                snapshot.received_at,
                snapshot.has_attachments,
                snapshot.is_unread,
                status,
            ),
        )
        return inserted > 0

    @classmethod
    async def get(cls, user_id: str, message_id: str) -> CachedItem | None:
        row = await fetch_one(
            "SELECT * FROM email_items WHERE user_id = %s AND message_id = %s",
            (user_id, message_id),
        )
        return CachedItem.from_row(row) if row else None

    @classmethod
    async def get_many(cls, user_id: str, message_ids: list[str]) -> dict[str, CachedItem]:
        if not message_ids:
            return {}
        rows = await fetch_all(
            "SELECT * FROM email_items WHERE user_id = %s AND message_id = ANY(%s)",
            (user_id, list(message_ids)),
        )
        return {row["message_id"]: CachedItem.from_row(row) for row in rows}

    @classmethod
    async def list_column_page(
        cls, user_id: str, column_id: str, cursor: datetime | None, limit: int
    ) -> list[CachedItem]:
        """Newest-first rows strictly older than cursor, snoozed rows included."""
        where, params = cls._column_filter(user_id, column_id, cursor)
        query = f"""
            SELECT * FROM email_items
            WHERE {where}
            ORDER BY received_at DESC NULLS LAST, id DESC
            LIMIT %s
        """
        rows = await fetch_all(query, params + (limit,))
        return [CachedItem.from_row(row) for row in rows]

    @classmethod
    async def count_column(cls, user_id: str, column_id: str, cursor: datetime | None = None) -> int:
        where, params = cls._column_filter(user_id, column_id, cursor)
        return int(await fetch_val(f"SELECT COUNT(*) FROM email_items WHERE {where}", params) or 0)

    @classmethod
    async def count_status(cls, user_id: str, status: str) -> int:
        count = await fetch_val(
            "SELECT COUNT(*) FROM email_items WHERE user_id = %s AND status = %s",
            (user_id, status),
        )
        return int(count or 0)

    @classmethod
    async def oldest_received_at(cls, user_id: str, column_id: str) -> datetime | None:
        where, params = cls._column_filter(user_id, column_id, None)
        return await fetch_val(f"SELECT MIN(received_at) FROM email_items WHERE {where}", params)

    @classmethod
    async def update_status(cls, user_id: str, message_id: str, status: str) -> CachedItem | None:
        """Move an item to a column and clear any snooze."""
        row = await fetch_one(
            """
            UPDATE email_items
            SET status = %s, original_status = NULL, snooze_until = NULL, updated_at = NOW()
            WHERE user_id = %s AND message_id = %s
            RETURNING *
            """,
            (status, user_id, message_id),
        )
        return CachedItem.from_row(row) if row else None

    @classmethod
    async def move_if_status(
        cls, user_id: str, message_id: str, expected_status: str, new_status: str
    ) -> bool:
        updated = await execute_query(
            """
            UPDATE email_items
            SET status = %s, updated_at = NOW()
            WHERE user_id = %s AND message_id = %s AND status = %s
            """,
            (new_status, user_id, message_id, expected_status),
        )
        return updated > 0

    @classmethod
    async def snooze(
        cls, user_id: str, message_id: str, until: datetime, original_status: str
    ) -> CachedItem | None:
        row = await fetch_one(
            """
            UPDATE email_items
            SET status = %s, original_status = %s, snooze_until = %s, updated_at = NOW()
            WHERE user_id = %s AND message_id = %s
            RETURNING *
            """,
            (SNOOZED_STATUS, original_status, until, user_id, message_id),
        )
        return CachedItem.from_row(row) if row else None

    @classmethod
    async def wake_if_due(cls, user_id: str, message_id: str, now: datetime) -> CachedItem | None:
        """
        Restore a due snoozed item to its original column.

        Conditional on still being snoozed and due, so two concurrent wakers
        cannot both apply it. Returns the restored row or None.
        """
        row = await fetch_one(
            """
            UPDATE email_items
            SET status = original_status,
                original_status = NULL,
                snooze_until = NULL,
                updated_at = NOW()
            WHERE user_id = %s AND message_id = %s
              AND status = 'SNOOZED'
              AND snooze_until IS NOT NULL
              AND snooze_until <= %s
              AND original_status IS NOT NULL
            RETURNING *
            """,
            (user_id, message_id, now),
        )
        return CachedItem.from_row(row) if row else None

    @classmethod
    async def wake_expired_batch(cls, now: datetime, limit: int) -> list[CachedItem]:
        rows = await fetch_all(
            """
            UPDATE email_items
            SET status = original_status,
                original_status = NULL,
                snooze_until = NULL,
                updated_at = NOW()
            WHERE id IN (
                SELECT id FROM email_items
                WHERE status = 'SNOOZED'
                  AND snooze_until IS NOT NULL
                  AND snooze_until <= %s
                  AND original_status IS NOT NULL
                ORDER BY snooze_until ASC
                LIMIT %s
                FOR UPDATE SKIP LOCKED
            )
            RETURNING *
            """,
            (now, limit),
        )
        return [CachedItem.from_row(row) for row in rows]

    @classmethod
    async def set_unread(cls, user_id: str, message_id: str, is_unread: bool) -> bool:
        updated = await execute_query(
            """
            UPDATE email_items SET is_unread = %s, updated_at = NOW()
            WHERE user_id = %s AND message_id = %s
            """,
            (is_unread, user_id, message_id),
        )
        return updated > 0

    @classmethod
    async def save_summary(cls, user_id: str, message_id: str, summary: str) -> None:
        await execute_query(
            """
            UPDATE email_items
            SET summary = %s, last_summarized_at = NOW(), updated_at = NOW()
            WHERE user_id = %s AND message_id = %s
            """,
            (summary, user_id, message_id),
        )

    @classmethod
    async def mark_embedded(cls, user_id: str, message_id: str) -> None:
        await execute_query(
            """
            UPDATE email_items
            SET has_embedding = TRUE, embedding_generated_at = NOW()
            WHERE user_id = %s AND message_id = %s
            """,
            (user_id, message_id),
        )

    @classmethod
    async def delete(cls, user_id: str, message_id: str) -> bool:
        deleted = await execute_query(
            "DELETE FROM email_items WHERE user_id = %s AND message_id = %s",
            (user_id, message_id),
        )
        return deleted > 0

    @classmethod
    async def recent_items(cls, user_id: str, limit: int) -> list[CachedItem]:
        """Most recently cached items, the window fuzzy search scans."""
        rows = await fetch_all(
            """
            SELECT * FROM email_items
            WHERE user_id = %s
            ORDER BY created_at DESC, id DESC
            LIMIT %s
            """,
            (user_id, limit),
        )
        return [CachedItem.from_row(row) for row in rows]

    @classmethod
    async def items_missing_embeddings(cls, limit: int) -> list[CachedItem]:
        rows = await fetch_all(
            """
            SELECT * FROM email_items
            WHERE has_embedding = FALSE
            ORDER BY created_at DESC
            LIMIT %s
            """,
            (limit,),
        )
        return [CachedItem.from_row(row) for row in rows]
