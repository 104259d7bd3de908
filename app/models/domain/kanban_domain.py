# app/models/domain/kanban_domain.py
"""
Kanban Domain Models
Board items, column configuration and the results the sync, search and
mutation services hand back to the routes.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

INBOX_STATUS = "INBOX"
# Reserved status for hidden items, never a user column id
SNOOZED_STATUS = "SNOOZED"
ARCHIVE_LABEL = ""


@dataclass(slots=True)
class ColumnConfig:
    """
    One board column.

    gmail_label semantics: a label name/id binds the column to Gmail, ""
    means moving here archives, None means the column is local only.
    """

    id: str
    name: str
    order: int
    gmail_label: str | None = None

    @property
    def has_label(self) -> bool:
        return bool(self.gmail_label)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "order": self.order, "gmailLabel": self.gmail_label}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ColumnConfig":
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            order=int(data.get("order", 0) or 0),
            gmail_label=data.get("gmailLabel", data.get("gmail_label")),
        )


def default_columns() -> list[ColumnConfig]:
    return [
        ColumnConfig(id="INBOX", name="Inbox", order=0, gmail_label="INBOX"),
        ColumnConfig(id="TODO", name="To Do", order=1, gmail_label=""),
        ColumnConfig(id="DONE", name="Done", order=2, gmail_label=""),
    ]


@dataclass(slots=True)
class MessageSnapshot:
    """Remote fields copied into the cache when a message is first seen."""

    message_id: str
    thread_id: str | None
    mailbox_id: str | None
    sender_name: str
    sender_email: str
    subject: str
    snippet: str
    received_at: datetime | None
    has_attachments: bool
    is_unread: bool


@dataclass(slots=True)
class CachedItem:
    """A row of email_items."""

    user_id: str
    message_id: str
    status: str
    id: int | None = None
    provider: str = "gmail"
    mailbox_id: str | None = None
    thread_id: str | None = None
    sender_name: str | None = None
    sender_email: str | None = None
    subject: str | None = None
    snippet: str | None = None
    received_at: datetime | None = None
    has_attachments: bool = False
    is_unread: bool = False
    original_status: str | None = None
    snooze_until: datetime | None = None
    summary: str | None = None
    last_summarized_at: datetime | None = None
    has_embedding: bool = False
    embedding_generated_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_snoozed(self) -> bool:
        return self.status == SNOOZED_STATUS

    def to_dict(self) -> dict[str, Any]:
        """Board card shape returned to clients."""
        return {
            "id": self.id,
            "messageId": self.message_id,
            "threadId": self.thread_id,
            "mailboxId": self.mailbox_id,
            "subject": self.subject,
            "senderName": self.sender_name,
            "senderEmail": self.sender_email,
            "snippet": self.snippet,
            "summary": self.summary,
            "status": self.status,
            "originalStatus": self.original_status,
            "snoozeUntil": _iso(self.snooze_until),
            "receivedAt": _iso(self.received_at),
            "hasAttachments": self.has_attachments,
            "isUnread": self.is_unread,
            "lastSummarizedAt": _iso(self.last_summarized_at),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "CachedItem":
        return cls(
            id=row.get("id"),
            user_id=str(row["user_id"]),
            provider=row.get("provider") or "gmail",
            message_id=row["message_id"],
            mailbox_id=row.get("mailbox_id"),
            thread_id=row.get("thread_id"),
            sender_name=row.get("sender_name"),
            sender_email=row.get("sender_email"),
            subject=row.get("subject"),
            snippet=row.get("snippet"),
            received_at=row.get("received_at"),
            has_attachments=bool(row.get("has_attachments")),
            is_unread=bool(row.get("is_unread")),
            status=row["status"],
            original_status=row.get("original_status"),
            snooze_until=row.get("snooze_until"),
            summary=row.get("summary"),
            last_summarized_at=row.get("last_summarized_at"),
            has_embedding=bool(row.get("has_embedding")),
            embedding_generated_at=row.get("embedding_generated_at"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass(slots=True)
class PageState:
    """Per-column continuation carried inside the opaque page token."""

    cursor: dict[str, str | None] = field(default_factory=dict)
    remote_exhausted: dict[str, bool] = field(default_factory=dict)
    remote_page_token: dict[str, str | None] = field(default_factory=dict)


@dataclass(slots=True)
class ColumnPull:
    """Outcome of one remote fetch for a column."""

    synced: int = 0
    has_more: bool = False
    next_page_token: str | None = None


@dataclass(slots=True)
class BoardPage:
    columns: dict[str, list[CachedItem]]
    totals: dict[str, int]
    column_configs: list[ColumnConfig]
    page_size: int
    has_more: bool
    next_page_token: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "data": {col: [item.to_dict() for item in items] for col, items in self.columns.items()},
            "meta": {
                "pageSize": self.page_size,
                "nextPageToken": self.next_page_token,
                "hasMore": self.has_more,
                "total": self.totals,
            },
            "columns": [column.to_dict() for column in self.column_configs],
        }


@dataclass(slots=True)
class SearchHit:
    """A cached item plus a relevance score. Direction depends on the search kind."""

    item: CachedItem
    score: float
    source: str  # "fuzzy" or "semantic"

    def to_dict(self) -> dict[str, Any]:
        data = self.item.to_dict()
        data["score"] = round(self.score, 4)
        data["source"] = self.source
        return data


@dataclass(slots=True)
class Suggestion:
    type: str  # "contact", "subject" or "keyword"
    text: str
    value: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "text": self.text, "value": self.value}
