"""
Gmail push sync: watch registration and folding mailbox history into the cache.

Gmail delivers a historyId through Pub/Sub; sync_from_history lists every
change since the last stored id and applies them one by one. A bad change
is counted and logged, never fatal to the batch.
"""

from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.gmail_domain import HistoryChange
from app.models.domain.kanban_domain import ARCHIVE_LABEL, CachedItem, ColumnConfig
from app.repositories.email_item_repository import EmailItemRepository
from app.repositories.watch_repository import WatchStateRepository
from app.services.column_service import column_service
from app.services.google_gmail_service import GoogleGmailError, google_gmail_service
from app.services.label_service import label_service
from app.services.message_ingest_service import message_ingest_service, snapshot_from_message
from app.services.token_service import TokenServiceError, token_service
from app.services.vector_index_service import vector_index_service

logger = get_logger(__name__)

DELETION_LABELS = frozenset({"TRASH", "SPAM"})
WATCH_RENEWAL_WINDOW = timedelta(hours=24)


@dataclass(slots=True)
class PushSyncResult:
    added: int = 0
    deleted: int = 0
    updated: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class ColumnLabelMap:
    """Gmail label id -> column id for the user's labeled columns."""

    def __init__(self, columns: list[ColumnConfig], label_to_column: dict[str, str]):
        self.columns = columns
        self.label_to_column = label_to_column

    @property
    def archive_column(self) -> ColumnConfig | None:
        return next((c for c in self.columns if c.gmail_label == ARCHIVE_LABEL), None)

    @property
    def inbox_column(self) -> str | None:
        return self.label_to_column.get("INBOX")

    def column_for(self, label_id: str) -> str | None:
        return self.label_to_column.get(label_id) or self.label_to_column.get(label_id.upper())

    def target_for(self, label_ids: list[str]) -> str | None:
        """Column for a message's labels. Workflow labels beat INBOX."""
        for label_id in label_ids:
            if label_id.upper() == "INBOX":
                continue
            column_id = self.column_for(label_id)
            if column_id:
                return column_id
        if "INBOX" in label_ids:
            return self.inbox_column
        return None


class PushSyncService:
    def __init__(
        self,
        items=None,
        watches=None,
        columns=None,
        labels=None,
        tokens=None,
        gmail=None,
        ingest=None,
        index=None,
    ):
        self.items = items or EmailItemRepository
        self.watches = watches or WatchStateRepository
        self.columns = columns or column_service
        self.labels = labels or label_service
        self.tokens = tokens or token_service
        self.gmail = gmail or google_gmail_service
        self.ingest = ingest or message_ingest_service
        self.index = index or vector_index_service

    async def build_label_map(self, user_id: str, access_token: str) -> ColumnLabelMap:
        columns = await self.columns.get_columns(user_id)
        mapping: dict[str, str] = {}
        for column in columns:
            if not column.has_label:
                continue
            label = column.gmail_label.strip()
            resolved = await self.labels.resolve_label_id(user_id, access_token, label)
            mapping[resolved or label] = column.id
            mapping.setdefault(label.upper(), column.id)
        return ColumnLabelMap(columns, mapping)

    async def apply_remote_changes(self, user_id: str, changes: list[HistoryChange]) -> PushSyncResult:
        """Fold remote mailbox changes into the cache."""
        result = PushSyncResult()
        if not changes:
            return result

        try:
            access_token = await self.tokens.get_valid_access_token(user_id)
            label_map = await self.build_label_map(user_id, access_token)
        except (TokenServiceError, GoogleGmailError) as e:
            logger.error("Push sync could not start", user_id=user_id, error=str(e))
            result.errors = len(changes)
            return result

        for change in changes:
            try:
                if change.kind == "messageAdded":
                    await self._message_added(user_id, access_token, change.message_id, label_map, result)
                elif change.kind == "messageDeleted":
                    await self._delete(user_id, change.message_id, result)
                elif change.kind in ("labelAdded", "labelRemoved"):
                    await self._label_change(user_id, access_token, change, label_map, result)
                else:
                    logger.warning("Unknown history change", user_id=user_id, kind=change.kind)
            except Exception as e:
                result.errors += 1
                logger.error(
                    "Failed to apply remote change",
                    user_id=user_id,
                    kind=change.kind,
                    message_id=change.message_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        logger.info("Push sync applied", user_id=user_id, changes=len(changes), **result.to_dict())
        return result

    async def _message_added(
        self,
        user_id: str,
        access_token: str,
        message_id: str,
        label_map: ColumnLabelMap,
        result: PushSyncResult,
    ) -> None:
        if await self.items.get(user_id, message_id) is not None:
            return

        try:
            message = await self.gmail.get_message(access_token, message_id, format="full")
        except GoogleGmailError as e:
            logger.warning("Added message not fetchable, skipping", message_id=message_id, error=str(e))
            return

        column_id = label_map.target_for(message.label_ids)
        if column_id is None:
            return

        snapshot = snapshot_from_message(message, "INBOX")
        if await self.ingest.insert_snapshot(user_id, snapshot, column_id):
            result.added += 1

    async def _delete(self, user_id: str, message_id: str, result: PushSyncResult) -> None:
        if await self.items.delete(user_id, message_id):
            result.deleted += 1
        await self.index.delete_embedding(user_id, message_id)

    async def _label_change(
        self,
        user_id: str,
        access_token: str,
        change: HistoryChange,
        label_map: ColumnLabelMap,
        result: PushSyncResult,
    ) -> None:
        added = change.kind == "labelAdded"
        labels = change.label_ids
        existing = await self.items.get(user_id, change.message_id)

        if added and DELETION_LABELS.intersection(labels):
            if existing is not None:
                await self._delete(user_id, change.message_id, result)
            return

        if "UNREAD" in labels and existing is not None:
            await self.items.set_unread(user_id, change.message_id, added)
            result.updated += 1
            return

        if not added and "INBOX" in labels:
            archive = label_map.archive_column
            if archive is not None and existing is not None:
                await self.items.update_status(user_id, change.message_id, archive.id)
                result.updated += 1
            return

        if added:
            for label_id in labels:
                column_id = label_map.column_for(label_id)
                if not column_id:
                    continue
                if existing is None:
                    await self._message_added(
                        user_id, access_token, change.message_id, label_map, result
                    )
                else:
                    await self.items.update_status(user_id, change.message_id, column_id)
                    result.updated += 1
                return

        if existing is not None:
            await self._reconcile(user_id, access_token, existing, label_map, result)

    async def _reconcile(
        self,
        user_id: str,
        access_token: str,
        existing: CachedItem,
        label_map: ColumnLabelMap,
        result: PushSyncResult,
    ) -> None:
        """Re-read labels from Gmail and patch unread and status if they drifted."""
        try:
            message = await self.gmail.get_message(access_token, existing.message_id, format="metadata")
        except GoogleGmailError as e:
            logger.warning("Reconcile fetch failed", message_id=existing.message_id, error=str(e))
            return

        is_unread = message.is_unread()
        # Snoozed items keep their status until they wake
        new_status = existing.status
        if not existing.is_snoozed:
            new_status = label_map.target_for(message.label_ids) or existing.status

        changed = False
        if is_unread != existing.is_unread:
            await self.items.set_unread(user_id, existing.message_id, is_unread)
            changed = True
        if new_status != existing.status:
            await self.items.update_status(user_id, existing.message_id, new_status)
            changed = True
        if changed:
            result.updated += 1

    async def sync_from_history(self, user_id: str, history_id: str) -> PushSyncResult:
        """
        Apply everything since the stored historyId, then store the new one.

        The first notification for a user only records its id. A 404 from
        history.list means the stored id expired; it is replaced and the
        gap is left to board loads.
        """
        state = await self.watches.get(user_id)
        if state is None or not state.history_id:
            await self.watches.save_history_id(user_id, history_id)
            logger.info("Stored initial history id", user_id=user_id, history_id=history_id)
            return PushSyncResult()

        access_token = await self.tokens.get_valid_access_token(user_id)
        changes: list[HistoryChange] = []
        latest = history_id
        page_token = None
        try:
            while True:
                page = await self.gmail.list_history(access_token, state.history_id, page_token)
                changes.extend(page.changes)
                latest = page.history_id or latest
                page_token = page.next_page_token
                if not page_token:
                    break
        except GoogleGmailError as e:
            if e.status_code == 404:
                logger.warning(
                    "Stored history id expired, resetting",
                    user_id=user_id,
                    stale_history_id=state.history_id,
                    history_id=history_id,
                )
                await self.watches.save_history_id(user_id, history_id)
                return PushSyncResult()
            raise

        result = await self.apply_remote_changes(user_id, changes)
        await self.watches.save_history_id(user_id, latest)
        return result

    async def start_watch(self, user_id: str) -> dict:
        """Register Gmail push notifications for the user's INBOX."""
        if not settings.GMAIL_PUBSUB_TOPIC:
            raise ValueError("GMAIL_PUBSUB_TOPIC is not configured")

        access_token = await self.tokens.get_valid_access_token(user_id)
        response = await self.gmail.watch(access_token, settings.GMAIL_PUBSUB_TOPIC, ["INBOX"])
        profile = await self.gmail.get_profile(access_token)

        expiration = None
        if response.get("expiration"):
            expiration = datetime.fromtimestamp(int(response["expiration"]) / 1000, tz=UTC)

        await self.watches.save_watch(
            user_id, profile.get("emailAddress"), response.get("historyId"), expiration
        )
        logger.info(
            "Gmail watch started",
            user_id=user_id,
            history_id=response.get("historyId"),
            expires_at=expiration.isoformat() if expiration else None,
        )
        return {"historyId": response.get("historyId"), "expiration": expiration}

    async def stop_watch(self, user_id: str) -> None:
        access_token = await self.tokens.get_valid_access_token(user_id)
        await self.gmail.stop_watch(access_token)
        await self.watches.clear_watch(user_id)
        logger.info("Gmail watch stopped", user_id=user_id)

    async def renew_expiring_watches(self) -> dict:
        """Re-register watches that lapse within a day."""
        expiring = await self.watches.list_expiring(datetime.now(UTC) + WATCH_RENEWAL_WINDOW)
        renewed = failed = 0
        for state in expiring:
            try:
                await self.start_watch(state.user_id)
                renewed += 1
            except (TokenServiceError, GoogleGmailError, ValueError) as e:
                failed += 1
                logger.error("Watch renewal failed", user_id=state.user_id, error=str(e))
        return {"checked": len(expiring), "renewed": renewed, "failed": failed}


push_sync_service = PushSyncService()
