"""
Item mutations: column moves with Gmail label sync, snooze and wake, summaries.

Local writes commit first. The Gmail label change that follows a move is
best effort; a failure there is logged and the board stays ahead of Gmail
until the next reconciliation.
"""

from datetime import UTC, datetime, timedelta

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.gmail_domain import VIRTUAL_LABEL_QUERIES
from app.models.domain.kanban_domain import ARCHIVE_LABEL, INBOX_STATUS, CachedItem
from app.repositories.email_item_repository import EmailItemRepository
from app.services.column_service import column_service
from app.services.embedding_service import embedding_service
from app.services.google_gmail_service import GoogleGmailError, google_gmail_service
from app.services.kanban_errors import InvalidInputError, ItemNotFoundError, UpstreamFailureError
from app.services.label_service import label_service
from app.services.openai_service import OpenAIServiceError, openai_service
from app.services.token_service import TokenServiceError, token_service

logger = get_logger(__name__)


def parse_snooze_until(value: str) -> datetime:
    """ISO-8601 timestamp, naive values taken as UTC."""
    if not value or not value.strip():
        raise InvalidInputError("Invalid snooze datetime")
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as e:
        raise InvalidInputError("Invalid snooze datetime") from e
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def plan_label_change(target_label_id: str, workflow_label_ids: set[str]) -> tuple[list[str], list[str]]:
    """
    (add, remove) label ids for moving a message into a column.

    Every other workflow label comes off. The archive target adds nothing
    and also removes INBOX. Virtual labels are never sent to Gmail.
    """
    add = [target_label_id] if target_label_id else []
    remove = sorted(label for label in workflow_label_ids if label != target_label_id)
    if target_label_id == ARCHIVE_LABEL and "INBOX" not in remove:
        remove.append("INBOX")

    add = [label for label in add if label not in VIRTUAL_LABEL_QUERIES]
    remove = [label for label in remove if label not in VIRTUAL_LABEL_QUERIES]
    return add, remove


class StatusService:
    def __init__(
        self, items=None, columns=None, labels=None, tokens=None, gmail=None, ai=None, embeddings=None
    ):
        self.items = items or EmailItemRepository
        self.columns = columns or column_service
        self.labels = labels or label_service
        self.tokens = tokens or token_service
        self.gmail = gmail or google_gmail_service
        self.ai = ai or openai_service
        self.embeddings = embeddings or embedding_service

    async def move_to_column(
        self, user_id: str, message_id: str, column_id: str, gmail_label: str | None = None
    ) -> CachedItem:
        """
        Move an item to a column, then mirror the move onto Gmail labels.

        gmail_label None skips Gmail entirely; "" archives.

        Raises:
            ItemNotFoundError: no such cached item or column
        """
        columns = await self.columns.get_columns(user_id)
        if not any(column.id == column_id for column in columns):
            raise ItemNotFoundError(f"Column not found: {column_id}")

        updated = await self.items.update_status(user_id, message_id, column_id)
        if updated is None:
            raise ItemNotFoundError("Email item not found")

        logger.info("Item moved", user_id=user_id, message_id=message_id, column_id=column_id)

        if gmail_label is not None:
            await self._sync_labels(user_id, message_id, gmail_label, columns)
        return updated

    async def _sync_labels(self, user_id: str, message_id: str, gmail_label: str, columns) -> None:
        try:
            access_token = await self.tokens.get_valid_access_token(user_id)

            target = gmail_label.strip()
            if target:
                resolved = await self.labels.resolve_label_id(user_id, access_token, target)
                if not resolved:
                    logger.warning(
                        "Gmail label not found, using as-is", user_id=user_id, gmail_label=target
                    )
                target = resolved or target

            workflow: set[str] = set()
            for column in columns:
                if not column.has_label:
                    continue
                label = column.gmail_label.strip()
                workflow.add(await self.labels.resolve_label_id(user_id, access_token, label) or label)

            add, remove = plan_label_change(target, workflow)
            if not add and not remove:
                return
            await self.gmail.modify_message(
                access_token, message_id, add_label_ids=add, remove_label_ids=remove
            )
            logger.info(
                "Gmail labels synced",
                user_id=user_id,
                message_id=message_id,
                added=add,
                removed=remove,
            )
        except (TokenServiceError, GoogleGmailError) as e:
            logger.error(
                "Failed to sync Gmail labels after move",
                user_id=user_id,
                message_id=message_id,
                error=str(e),
            )

    async def snooze(self, user_id: str, message_id: str, until: str) -> CachedItem:
        """
        Hide an item until `until`. Re-snoozing keeps the first original column.

        Raises:
            InvalidInputError: unparsable datetime
            ItemNotFoundError: no such cached item
        """
        snooze_until = parse_snooze_until(until)
        item = await self.items.get(user_id, message_id)
        if item is None:
            raise ItemNotFoundError("Email item not found")

        original = item.original_status if item.is_snoozed else item.status
        updated = await self.items.snooze(user_id, message_id, snooze_until, original or INBOX_STATUS)
        if updated is None:
            raise ItemNotFoundError("Email item not found")

        logger.info(
            "Item snoozed",
            user_id=user_id,
            message_id=message_id,
            original_status=updated.original_status,
            snooze_until=snooze_until.isoformat(),
        )
        return updated

    async def summarize(self, user_id: str, message_id: str) -> dict:
        """
        AI summary of an item, reused for SUMMARY_CACHE_HOURS.

        Raises:
            ItemNotFoundError: no such cached item
            UpstreamFailureError: Gmail or OpenAI failed
        """
        item = await self.items.get(user_id, message_id)
        if item is None:
            raise ItemNotFoundError("Email item not found")

        if item.summary and item.last_summarized_at:
            age = datetime.now(UTC) - item.last_summarized_at
            if age < timedelta(hours=settings.SUMMARY_CACHE_HOURS):
                return {"summary": item.summary, "cached": True}

        try:
            access_token = await self.tokens.get_valid_access_token(user_id)
            message = await self.gmail.get_message(access_token, message_id, format="full")
            body = message.extract_text()
            fallback = message.snippet or item.subject or "No content"
            result = await self.ai.summarize_email(
                subject=item.subject,
                from_email=item.sender_email,
                from_name=item.sender_name,
                body_html=body.get("html"),
                body_text=(body.get("text") or "").strip() or fallback,
            )
        except (TokenServiceError, GoogleGmailError, OpenAIServiceError) as e:
            logger.error("Summarization failed", user_id=user_id, message_id=message_id, error=str(e))
            raise UpstreamFailureError("Failed to summarize email") from e

        await self.items.save_summary(user_id, message_id, result.summary)
        # The summary feeds the embedding text
        self.embeddings.schedule(user_id, message_id)

        logger.info("Item summarized", user_id=user_id, message_id=message_id, model=result.model)
        return {"summary": result.summary, "cached": False}

    async def wake_expired_snoozed(self, batch_size: int | None = None) -> int:
        """Restore every due snoozed item across all users. Returns how many woke."""
        batch_size = batch_size or settings.SNOOZE_WAKE_BATCH_SIZE
        woken = 0
        while True:
            batch = await self.items.wake_expired_batch(datetime.now(UTC), batch_size)
            woken += len(batch)
            if len(batch) < batch_size:
                break
        if woken:
            logger.info("Woke snoozed items", count=woken)
        return woken


status_service = StatusService()
