"""
Pulls Gmail messages into the item cache.

Shared by the on-demand board pull, the post-save label sync and push
history folding. Inserts are idempotent on (user_id, message_id); each real
insert schedules an embedding.
"""

import asyncio
from datetime import datetime

from app.infrastructure.observability.logging import get_logger
from app.models.domain.gmail_domain import GmailMessage
from app.models.domain.kanban_domain import ColumnPull, MessageSnapshot
from app.repositories.email_item_repository import EmailItemRepository
from app.services.embedding_service import embedding_service
from app.services.google_gmail_service import GoogleGmailError, google_gmail_service
from app.services.label_service import list_params_for_label

logger = get_logger(__name__)

# Parallel message detail fetches per pull
DETAIL_FETCH_CONCURRENCY = 8


def snapshot_from_message(message: GmailMessage, mailbox_id: str | None) -> MessageSnapshot:
    return MessageSnapshot(
        message_id=message.id,
        thread_id=message.thread_id,
        mailbox_id=mailbox_id,
        sender_name=message.sender["name"],
        sender_email=message.sender["email"],
        subject=message.subject,
        snippet=message.snippet_or_subject(),
        received_at=message.get_received_datetime(),
        has_attachments=message.has_attachments(),
        is_unread=message.is_unread(),
    )


def before_query(oldest: datetime) -> str:
    """
    Gmail search clause for messages strictly older than `oldest`.

    Epoch seconds rather than before:YYYY/MM/DD so messages earlier on the
    same day are not skipped.
    """
    return f"before:{int(oldest.timestamp())}"


class MessageIngestService:
    def __init__(self, gmail=None, items=None, embeddings=None):
        self.gmail = gmail or google_gmail_service
        self.items = items or EmailItemRepository
        self.embeddings = embeddings or embedding_service

    async def fetch_snapshot(
        self, access_token: str, message_id: str, mailbox_id: str | None
    ) -> MessageSnapshot | None:
        """Message detail as a snapshot, or None if Gmail no longer has it."""
        try:
            message = await self.gmail.get_message(access_token, message_id, format="full")
        except GoogleGmailError as e:
            logger.warning("Skipping message detail fetch", message_id=message_id, error=str(e))
            return None
        return snapshot_from_message(message, mailbox_id)

    async def insert_snapshot(self, user_id: str, snapshot: MessageSnapshot, status: str) -> bool:
        inserted = await self.items.insert_if_absent(user_id, snapshot, status)
        if inserted:
            self.embeddings.schedule(user_id, snapshot.message_id)
        else:
            logger.debug(
                "Message already cached, insert skipped",
                user_id=user_id,
                message_id=snapshot.message_id,
            )
        return inserted

    async def ingest_message(
        self, user_id: str, access_token: str, message_id: str, status: str, mailbox_id: str | None
    ) -> bool:
        snapshot = await self.fetch_snapshot(access_token, message_id, mailbox_id)
        if snapshot is None:
            return False
        return await self.insert_snapshot(user_id, snapshot, status)

    async def ingest_many(
        self,
        user_id: str,
        access_token: str,
        message_ids: list[str],
        status: str,
        mailbox_id: str | None,
    ) -> int:
        """Fetch and insert messages not cached yet. Returns the number inserted."""
        existing = await self.items.get_many(user_id, message_ids)
        new_ids = [message_id for message_id in message_ids if message_id not in existing]
        if not new_ids:
            return 0

        semaphore = asyncio.Semaphore(DETAIL_FETCH_CONCURRENCY)

        async def fetch(message_id: str) -> MessageSnapshot | None:
            async with semaphore:
                return await self.fetch_snapshot(access_token, message_id, mailbox_id)

        snapshots = await asyncio.gather(*(fetch(message_id) for message_id in new_ids))

        inserted = 0
        for snapshot in snapshots:
            if snapshot is not None and await self.insert_snapshot(user_id, snapshot, status):
                inserted += 1
        return inserted

    async def pull_label_page(
        self,
        user_id: str,
        access_token: str,
        label_id: str,
        status: str,
        max_results: int,
        page_token: str | None = None,
        older_than: datetime | None = None,
    ) -> ColumnPull:
        """
        Fetch one remote page of a label into a column.

        `older_than` is only applied on the first page (no page_token); it
        keeps a fresh scroll from re-listing mail we already have.

        Raises:
            GoogleGmailError: listing the label failed
        """
        label_ids, query = list_params_for_label(label_id)
        if page_token is None and older_than is not None:
            clause = before_query(older_than)
            query = f"{query} {clause}" if query else clause

        page = await self.gmail.list_messages(
            access_token,
            max_results=max_results,
            label_ids=label_ids,
            query=query,
            page_token=page_token,
        )
        synced = await self.ingest_many(user_id, access_token, page.message_ids, status, label_id)

        logger.info(
            "Pulled Gmail label page",
            user_id=user_id,
            label_id=label_id,
            column_id=status,
            listed=len(page.message_ids),
            synced=synced,
            has_more=bool(page.next_page_token),
        )
        return ColumnPull(
            synced=synced,
            has_more=bool(page.next_page_token),
            next_page_token=page.next_page_token,
        )


message_ingest_service = MessageIngestService()
