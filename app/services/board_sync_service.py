"""
Board pagination with on-demand Gmail pulls.

Every column pages independently: a local cursor over received_at, plus the
Gmail page token and an exhausted flag for the column's label. All three
travel in one opaque token (see page_token.py). Columns are loaded
concurrently; a column whose Gmail pull fails is served from the cache
alone for that page.

Cursors only ever move to older timestamps. A message inserted after a
cursor was issued, with a received_at older than that cursor, can be
missed for the rest of that scroll session. The cursor is a bare timestamp,
so items sharing the received_at of the last row on a full page are skipped
for that scroll too. Both are accepted: the items appear on the next fresh
load.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.kanban_domain import (
    BoardPage,
    CachedItem,
    ColumnConfig,
    ColumnPull,
    PageState,
)
from app.repositories.email_item_repository import EmailItemRepository
from app.services.column_service import column_service
from app.services.google_gmail_service import GoogleGmailError
from app.services.label_service import label_service
from app.services.message_ingest_service import message_ingest_service
from app.services.page_token import decode_page_token, encode_page_token
from app.services.token_service import TokenServiceError, token_service

logger = get_logger(__name__)


@dataclass(slots=True)
class ColumnResult:
    column_id: str
    items: list[CachedItem] = field(default_factory=list)
    cursor: str | None = None
    remote_exhausted: bool = True
    remote_page_token: str | None = None
    has_more: bool = False
    total: int = 0


class _AccessTokenLoader:
    """Fetches the user's Gmail token at most once per page, and only if a column needs it."""

    def __init__(self, tokens, user_id: str):
        self._tokens = tokens
        self._user_id = user_id
        self._lock = asyncio.Lock()
        self._token: str | None = None
        self._error: TokenServiceError | None = None

    async def get(self) -> str:
        async with self._lock:
            if self._error is not None:
                raise self._error
            if self._token is None:
                try:
                    self._token = await self._tokens.get_valid_access_token(self._user_id)
                except TokenServiceError as e:
                    self._error = e
                    raise
            return self._token


def _parse_cursor(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        logger.warning("Ignoring unparsable column cursor", cursor=value)
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def clamp_page_size(page_size: int | None) -> int:
    if not page_size or page_size < 1:
        return settings.KANBAN_DEFAULT_PAGE_SIZE
    return min(page_size, settings.KANBAN_MAX_PAGE_SIZE)


class BoardSyncService:
    def __init__(self, items=None, columns=None, ingest=None, labels=None, tokens=None, clock=None):
        self.items = items or EmailItemRepository
        self.columns = columns or column_service
        self.ingest = ingest or message_ingest_service
        self.labels = labels or label_service
        self.tokens = tokens or token_service
        self.clock = clock or (lambda: datetime.now(UTC))

    async def get_board_page(
        self, user_id: str, page_token: str | None = None, page_size: int | None = None
    ) -> BoardPage:
        """
        One page of every column.

        An unusable page_token restarts the board. The returned token is
        None once no column has anything left locally or remotely.
        """
        page_size = clamp_page_size(page_size)
        columns = await self.columns.get_columns(user_id)
        state = decode_page_token(page_token) or PageState()
        access = _AccessTokenLoader(self.tokens, user_id)

        results = await asyncio.gather(
            *(self._load_column(user_id, column, state, page_size, access) for column in columns)
        )

        has_more = any(result.has_more for result in results)
        next_token = None
        if has_more:
            next_token = encode_page_token(
                PageState(
                    cursor={r.column_id: r.cursor for r in results},
                    remote_exhausted={r.column_id: r.remote_exhausted for r in results},
                    remote_page_token={r.column_id: r.remote_page_token for r in results},
                )
            )

        logger.info(
            "Board page served",
            user_id=user_id,
            page_size=page_size,
            columns=len(columns),
            items=sum(len(r.items) for r in results),
            has_more=has_more,
            continued=page_token is not None,
        )

        return BoardPage(
            columns={r.column_id: r.items for r in results},
            totals={r.column_id: r.total for r in results},
            column_configs=columns,
            page_size=page_size,
            has_more=has_more,
            next_page_token=next_token,
        )

    async def _load_column(
        self,
        user_id: str,
        column: ColumnConfig,
        state: PageState,
        page_size: int,
        access: _AccessTokenLoader,
    ) -> ColumnResult:
        cursor_value = state.cursor.get(column.id)
        cursor = _parse_cursor(cursor_value)
        if cursor is None:
            cursor_value = None

        # Unlabeled columns have nothing remote to exhaust
        exhausted = state.remote_exhausted.get(column.id, False) if column.has_label else True
        remote_token = state.remote_page_token.get(column.id) if column.has_label else None

        available = await self.items.count_column(user_id, column.id, cursor)
        if available < page_size and column.has_label and not exhausted:
            pull = await self._pull_remote(user_id, column, page_size, remote_token, access)
            if pull is not None:
                remote_token = pull.next_page_token
                exhausted = not pull.has_more

        rows = await self.items.list_column_page(user_id, column.id, cursor, page_size)
        visible = await self._resolve_snoozed(user_id, column.id, rows)

        oldest = next((row.received_at for row in reversed(rows) if row.received_at), None)
        next_cursor = oldest.isoformat() if oldest else cursor_value
        # A full batch only signals more when the cursor can actually move past it
        full_batch = len(rows) >= page_size and oldest is not None

        return ColumnResult(
            column_id=column.id,
            items=visible,
            cursor=next_cursor,
            remote_exhausted=exhausted,
            remote_page_token=remote_token,
            has_more=full_batch or (column.has_label and not exhausted),
            total=await self.items.count_status(user_id, column.id),
        )

    async def _pull_remote(
        self,
        user_id: str,
        column: ColumnConfig,
        page_size: int,
        remote_token: str | None,
        access: _AccessTokenLoader,
    ) -> ColumnPull | None:
        """Fetch one Gmail page for the column. None means "serve local only this time"."""
        try:
            access_token = await access.get()
            label_id = await self.labels.resolve_label_id(user_id, access_token, column.gmail_label)
            if not label_id:
                logger.warning(
                    "Column label not found in Gmail, treating remote as exhausted",
                    user_id=user_id,
                    column_id=column.id,
                    gmail_label=column.gmail_label,
                )
                return ColumnPull()

            older_than = None
            if remote_token is None:
                older_than = await self.items.oldest_received_at(user_id, column.id)

            return await self.ingest.pull_label_page(
                user_id,
                access_token,
                label_id,
                column.id,
                max_results=page_size,
                page_token=remote_token,
                older_than=older_than,
            )
        except (TokenServiceError, GoogleGmailError) as e:
            logger.warning(
                "Remote pull failed, serving column from cache",
                user_id=user_id,
                column_id=column.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

    async def _resolve_snoozed(
        self, user_id: str, column_id: str, rows: list[CachedItem]
    ) -> list[CachedItem]:
        """Hide snoozed rows that aren't due; wake and return the due ones."""
        now = self.clock()
        visible: list[CachedItem] = []
        for row in rows:
            if not row.is_snoozed:
                visible.append(row)
                continue
            if row.snooze_until is None or row.snooze_until > now:
                continue
            woken = await self.items.wake_if_due(user_id, row.message_id, now)
            if woken is not None and woken.status == column_id:
                logger.info("Snoozed item woke on board load", user_id=user_id, message_id=row.message_id)
                visible.append(woken)
        return visible


board_sync_service = BoardSyncService()
