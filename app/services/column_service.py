"""
Column configuration: read with defaults, validated wholesale replacement,
item migration for deleted columns and background label syncs.
"""

from typing import Any

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.kanban_domain import (
    INBOX_STATUS,
    SNOOZED_STATUS,
    ColumnConfig,
    default_columns,
)
from app.repositories.column_repository import ColumnRepository
from app.repositories.email_item_repository import EmailItemRepository
from app.services import background_tasks
from app.services.google_gmail_service import GoogleGmailError, google_gmail_service
from app.services.kanban_errors import ColumnConflictError, InvalidInputError
from app.services.label_service import label_service, list_params_for_label
from app.services.message_ingest_service import message_ingest_service
from app.services.token_service import TokenServiceError, token_service

logger = get_logger(__name__)


def _coerce_column(raw: Any) -> ColumnConfig:
    if isinstance(raw, ColumnConfig):
        return ColumnConfig(raw.id, raw.name, raw.order, raw.gmail_label)
    if isinstance(raw, dict):
        return ColumnConfig.from_dict(raw)
    raise InvalidInputError("Each column must be an object")


def normalize_columns(columns: list[Any]) -> list[ColumnConfig]:
    """
    Validate a proposed column set and renumber order to 0..n-1.

    Raises:
        InvalidInputError: empty list, blank id or name, duplicate ids,
            or a column id that collides with the snooze status
        ColumnConflictError: duplicate names or duplicate non-empty labels
            (both compared case-insensitively)
    """
    if not columns:
        raise InvalidInputError("Columns must be a non-empty list")

    parsed: list[ColumnConfig] = []
    for raw in columns:
        column = _coerce_column(raw)
        column.id = (column.id or "").strip()
        column.name = (column.name or "").strip()
        if column.gmail_label is not None:
            column.gmail_label = column.gmail_label.strip()
        if not column.id:
            raise InvalidInputError("Column id is required")
        if not column.name:
            raise InvalidInputError(f"Column name is required for column {column.id}")
        if column.id == SNOOZED_STATUS:
            raise InvalidInputError(f"Column id {SNOOZED_STATUS} is reserved")
        parsed.append(column)

    seen_ids: set[str] = set()
    seen_names: set[str] = set()
    seen_labels: set[str] = set()
    for column in parsed:
        if column.id in seen_ids:
            raise InvalidInputError(f"Duplicate column id: {column.id}")
        seen_ids.add(column.id)

        name_key = column.name.lower()
        if name_key in seen_names:
            raise ColumnConflictError(f"Duplicate column name: {column.name}")
        seen_names.add(name_key)

        if column.gmail_label:
            label_key = column.gmail_label.lower()
            if label_key in seen_labels:
                raise ColumnConflictError(f"Duplicate Gmail label: {column.gmail_label}")
            seen_labels.add(label_key)

    # sorted() is stable, so equal orders keep the caller's sequence
    ordered = sorted(parsed, key=lambda c: c.order)
    for index, column in enumerate(ordered):
        column.order = index
    return ordered


def pick_migration_target(columns: list[ColumnConfig]) -> ColumnConfig | None:
    """Column bound to INBOX, else the first labeled column, else None."""
    labeled = [column for column in columns if column.has_label]
    for column in labeled:
        if column.gmail_label.upper() == "INBOX":
            return column
    return labeled[0] if labeled else None


class ColumnService:
    def __init__(
        self, repository=None, items=None, ingest=None, labels=None, tokens=None, gmail=None
    ):
        self.repository = repository or ColumnRepository
        self.items = items or EmailItemRepository
        self.ingest = ingest or message_ingest_service
        self.labels = labels or label_service
        self.tokens = tokens or token_service
        self.gmail = gmail or google_gmail_service

    async def get_columns(self, user_id: str) -> list[ColumnConfig]:
        """Stored columns, creating the default set on first access."""
        columns = await self.repository.get_columns(user_id)
        if columns:
            return columns

        columns = default_columns()
        await self.repository.save_columns(user_id, columns)
        logger.info("Default columns created", user_id=user_id)
        return columns

    async def replace_columns(self, user_id: str, columns: list[Any]) -> list[ColumnConfig]:
        """
        Replace the whole column set.

        Validation failures leave the stored set untouched. Items in deleted
        columns move to pick_migration_target() or stay orphaned. Columns
        whose label is new or changed get a bounded background sync.
        """
        new_columns = normalize_columns(columns)
        old_columns = await self.get_columns(user_id)

        new_ids = {column.id for column in new_columns}
        removed_ids = [column.id for column in old_columns if column.id not in new_ids]
        target = pick_migration_target(new_columns) if removed_ids else None

        await self.repository.replace_columns(
            user_id, new_columns, removed_ids, target.id if target else None
        )

        if removed_ids:
            if target:
                logger.info(
                    "Migrated items from deleted columns",
                    user_id=user_id,
                    removed_columns=removed_ids,
                    column_id=target.id,
                )
            else:
                logger.warning(
                    "No labeled column to migrate into, items left orphaned",
                    user_id=user_id,
                    removed_columns=removed_ids,
                )

        old_labels = {column.id: column.gmail_label or "" for column in old_columns}
        for column in new_columns:
            new_label = column.gmail_label or ""
            if not new_label or new_label == old_labels.get(column.id, ""):
                continue
            if column.id == INBOX_STATUS:
                continue
            logger.info(
                "Column label changed, syncing in background",
                user_id=user_id,
                column_id=column.id,
                gmail_label=new_label,
            )
            background_tasks.spawn(
                self.sync_label_to_column(user_id, column.id, new_label),
                name=f"label-sync:{user_id}:{column.id}",
            )

        return new_columns

    async def sync_label_to_column(
        self, user_id: str, column_id: str, gmail_label: str, max_results: int | None = None
    ) -> dict:
        """
        Pull one bounded page of a label into a column.

        Cached items still in INBOX move to the column; items the user
        already placed elsewhere are left alone. New messages are inserted
        with the column as their status.
        """
        max_results = max_results or settings.LABEL_SYNC_BATCH_SIZE
        if not gmail_label or not gmail_label.strip():
            return {"synced": 0, "message": "No Gmail label specified"}

        try:
            access_token = await self.tokens.get_valid_access_token(user_id)
            label_id = await self.labels.resolve_label_id(user_id, access_token, gmail_label)
            if not label_id:
                logger.warning(
                    "Gmail label not found, skipping column sync",
                    user_id=user_id,
                    column_id=column_id,
                    gmail_label=gmail_label,
                )
                return {"synced": 0, "message": f'Label "{gmail_label}" not found in Gmail'}

            label_ids, query = list_params_for_label(label_id)
            page = await self.gmail.list_messages(
                access_token, max_results=max_results, label_ids=label_ids, query=query
            )
        except (TokenServiceError, GoogleGmailError) as e:
            logger.error(
                "Failed to sync Gmail label to column",
                user_id=user_id,
                column_id=column_id,
                gmail_label=gmail_label,
                error=str(e),
            )
            return {"synced": 0, "message": "Failed to sync from Gmail"}

        existing = await self.items.get_many(user_id, page.message_ids)
        synced = 0
        if column_id != INBOX_STATUS:
            for message_id, item in existing.items():
                if item.status == INBOX_STATUS and await self.items.move_if_status(
                    user_id, message_id, INBOX_STATUS, column_id
                ):
                    synced += 1

        new_ids = [message_id for message_id in page.message_ids if message_id not in existing]
        synced += await self.ingest.ingest_many(user_id, access_token, new_ids, column_id, label_id)

        logger.info(
            "Synced Gmail label to column",
            user_id=user_id,
            column_id=column_id,
            gmail_label=gmail_label,
            synced=synced,
        )
        return {"synced": synced, "message": f"Synced {synced} emails from {gmail_label}"}


column_service = ColumnService()
