"""
Persistence for per-user column configuration (user_settings.kanban_columns).
"""

import json

from app.db.helpers import execute_query, execute_transaction, fetch_one
from app.infrastructure.observability.logging import get_logger
from app.models.domain.kanban_domain import ColumnConfig

logger = get_logger(__name__)

UPSERT_COLUMNS_QUERY = """
    INSERT INTO user_settings (user_id, kanban_columns, updated_at)
    VALUES (%s, %s::jsonb, NOW())
    ON CONFLICT (user_id)
    DO UPDATE SET kanban_columns = EXCLUDED.kanban_columns, updated_at = NOW()
"""

MIGRATE_ITEMS_QUERY = """
    UPDATE email_items
    SET status = CASE WHEN status = 'SNOOZED' THEN status ELSE %s END,
        original_status = CASE WHEN status = 'SNOOZED' THEN %s ELSE original_status END,
        updated_at = NOW()
    WHERE user_id = %s
      AND (status = ANY(%s) OR (status = 'SNOOZED' AND original_status = ANY(%s)))
"""


def _encode(columns: list[ColumnConfig]) -> str:
    return json.dumps([column.to_dict() for column in columns])


class ColumnRepository:
    """Raw SQL helpers over user_settings."""

    @classmethod
    async def get_columns(cls, user_id: str) -> list[ColumnConfig] | None:
        """Stored columns in order, or None when the user has no settings row."""
        row = await fetch_one(
            "SELECT kanban_columns FROM user_settings WHERE user_id = %s", (user_id,)
        )
        if not row:
            return None
        raw = row.get("kanban_columns") or []
        if isinstance(raw, str):
            raw = json.loads(raw)
        columns = [ColumnConfig.from_dict(entry) for entry in raw]
        return sorted(columns, key=lambda c: c.order)

    @classmethod
    async def save_columns(cls, user_id: str, columns: list[ColumnConfig]) -> None:
        await execute_query(UPSERT_COLUMNS_QUERY, (user_id, _encode(columns)))

    @classmethod
    async def replace_columns(
        cls,
        user_id: str,
        columns: list[ColumnConfig],
        removed_ids: list[str],
        migrate_to: str | None,
    ) -> None:
        """Save the new column set and re-home removed columns' items atomically."""
        statements = [(UPSERT_COLUMNS_QUERY, (user_id, _encode(columns)))]
        if removed_ids and migrate_to:
            statements.append(
                (
                    MIGRATE_ITEMS_QUERY,
                    (migrate_to, migrate_to, user_id, list(removed_ids), list(removed_ids)),
                )
            )
        await execute_transaction(statements)
