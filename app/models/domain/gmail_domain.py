# app/models/domain/gmail_domain.py
"""
Gmail Domain Models
Parsed views over raw Gmail API payloads used by the sync engine.
"""

import base64
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime

# Nested multipart payloads deeper than this are ignored
MAX_PART_DEPTH = 20

SYSTEM_LABEL_IDS = frozenset(
    {
        "INBOX",
        "UNREAD",
        "STARRED",
        "IMPORTANT",
        "SENT",
        "DRAFT",
        "TRASH",
        "SPAM",
        "CATEGORY_PERSONAL",
        "CATEGORY_SOCIAL",
        "CATEGORY_PROMOTIONS",
        "CATEGORY_UPDATES",
        "CATEGORY_FORUMS",
    }
)

# Labels that only exist as search queries, never as label ids
VIRTUAL_LABEL_QUERIES = {
    "SNOOZED": "is:snoozed",
    "SCHEDULED": "is:scheduled",
    "ALL_MAIL": "in:all",
}

INBOX_QUERY = "in:inbox category:primary"

_QUOTED_ADDRESS = re.compile(r'"([^"]+)"\s*<(.+@.+)>')
_NAMED_ADDRESS = re.compile(r"(.+?)\s*<(.+@.+)>")
_BARE_ADDRESS = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_HTML_BLOCKS = re.compile(r"<(style|script)[\s\S]*?</\1>", re.IGNORECASE)
_HTML_TAGS = re.compile(r"</?[^>]+(>|$)")
_WHITESPACE = re.compile(r"\s+")


def parse_address(raw: str | None) -> dict[str, str]:
    """
    Split a From header into display name and email.

    Handles `"Name" <a@b.c>`, `Name <a@b.c>` and bare `a.b@c.d`
    (name derived from the local part). Anything else is used for both.
    """
    if not raw or not raw.strip():
        return {"name": "Unknown", "email": ""}

    trimmed = raw.strip()

    match = _QUOTED_ADDRESS.search(trimmed) or _NAMED_ADDRESS.search(trimmed)
    if match:
        return {"name": match.group(1).strip().strip('"'), "email": match.group(2).strip()}

    if _BARE_ADDRESS.match(trimmed):
        local_part = trimmed.split("@")[0]
        name = re.sub(r"[._-]", " ", local_part).strip()
        return {"name": name or "Unknown", "email": trimmed}

    return {"name": trimmed, "email": trimmed}


def strip_html(html: str) -> str:
    """Drop style/script blocks and tags, collapse whitespace."""
    text = _HTML_BLOCKS.sub(" ", html)
    text = _HTML_TAGS.sub(" ", text)
    return _WHITESPACE.sub(" ", text).strip()


def decode_base64url(data: str) -> str:
    """Decode Gmail's URL-safe base64 body data."""
    try:
        padded = data + "=" * (-len(data) % 4)
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="ignore")
    except (ValueError, TypeError):
        return ""


def _iter_parts(payload: dict | None):
    """Depth-first walk over a MIME part tree, bounded by MAX_PART_DEPTH."""
    if not payload:
        return
    stack = [(payload, 0)]
    while stack:
        part, depth = stack.pop()
        yield part
        if depth >= MAX_PART_DEPTH:
            continue
        children = part.get("parts") or []
        # Reverse so the walk keeps document order
        for child in reversed(children):
            stack.append((child, depth + 1))


def _header_value(headers: list[dict] | None, name: str) -> str:
    name = name.lower()
    for header in headers or []:
        if (header.get("name") or "").lower() == name:
            return header.get("value") or ""
    return ""


class GmailMessage:
    """Domain model for a Gmail message fetched with format=full or metadata."""

    def __init__(self, data: dict):
        self.id = data.get("id")
        self.thread_id = data.get("threadId")
        self.label_ids = data.get("labelIds", []) or []
        self.snippet = data.get("snippet", "") or ""
        self.history_id = data.get("historyId")
        self.internal_date = data.get("internalDate")
        self.payload = data.get("payload", {}) or {}
        self.raw_data = data

        self._parse_headers()

    def _parse_headers(self):
        headers = self.payload.get("headers", [])
        self.headers = {h["name"].lower(): h["value"] for h in headers if "name" in h}

        self.subject = self.headers.get("subject") or "(No subject)"
        self.sender = parse_address(self.headers.get("from", ""))
        self.date = self.headers.get("date", "")

    def is_unread(self) -> bool:
        return "UNREAD" in self.label_ids

    def has_attachments(self) -> bool:
        """
        True when any part is a real attachment.

        A part counts when it has a filename and attachmentId and its
        content-disposition is not inline (signature images and the like).
        """
        for part in _iter_parts(self.payload):
            filename = (part.get("filename") or "").strip()
            if not filename or not (part.get("body") or {}).get("attachmentId"):
                continue
            disposition = _header_value(part.get("headers"), "content-disposition").lower()
            if not disposition.startswith("inline"):
                return True
        return False

    def extract_text(self) -> dict[str, str]:
        """
        First readable body part, in document order.

        Returns {"html": ..., "text": ...}; html bodies also carry a
        tag-stripped text version. Empty dict when nothing is readable.
        """
        for part in _iter_parts(self.payload):
            mime_type = part.get("mimeType")
            data = (part.get("body") or {}).get("data")
            if not data:
                continue
            if mime_type == "text/html":
                html = decode_base64url(data)
                return {"html": html, "text": strip_html(html)}
            if mime_type == "text/plain":
                return {"text": decode_base64url(data)}
        return {}

    def get_received_datetime(self) -> datetime | None:
        """Received time from internalDate (epoch milliseconds)."""
        if self.internal_date:
            try:
                return datetime.fromtimestamp(int(self.internal_date) / 1000, tz=UTC)
            except (ValueError, OSError, OverflowError):
                return None
        return None

    def snippet_or_subject(self) -> str:
        return self.snippet or self.subject


class GmailLabel:
    """Domain model for Gmail labels."""

    def __init__(self, data: dict):
        self.id = data.get("id")
        self.name = data.get("name", "")
        self.type = data.get("type", "user")  # "system" or "user"
        self.color = data.get("color")
        self.raw_data = data

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "type": self.type, "color": self.color}


@dataclass(slots=True)
class MessagePage:
    """One page of messages.list: ids only, details are fetched separately."""

    message_ids: list[str] = field(default_factory=list)
    next_page_token: str | None = None


@dataclass(slots=True)
class HistoryChange:
    """
    A single remote mailbox change folded out of history.list.

    kind is one of messageAdded, messageDeleted, labelAdded, labelRemoved.
    """

    kind: str
    message_id: str
    label_ids: list[str] = field(default_factory=list)
    thread_id: str | None = None


@dataclass(slots=True)
class HistoryPage:
    changes: list[HistoryChange] = field(default_factory=list)
    history_id: str | None = None
    next_page_token: str | None = None


def parse_history_records(records: list[dict]) -> list[HistoryChange]:
    """Flatten history.list records into ordered HistoryChange entries."""
    changes: list[HistoryChange] = []
    for record in records or []:
        for entry in record.get("messagesAdded", []) or []:
            message = entry.get("message") or {}
            if message.get("id"):
                changes.append(
                    HistoryChange(
                        kind="messageAdded",
                        message_id=message["id"],
                        label_ids=message.get("labelIds", []) or [],
                        thread_id=message.get("threadId"),
                    )
                )
        for entry in record.get("messagesDeleted", []) or []:
            message = entry.get("message") or {}
            if message.get("id"):
                changes.append(HistoryChange(kind="messageDeleted", message_id=message["id"]))
        for key, kind in (("labelsAdded", "labelAdded"), ("labelsRemoved", "labelRemoved")):
            for entry in record.get(key, []) or []:
                message = entry.get("message") or {}
                if message.get("id"):
                    changes.append(
                        HistoryChange(
                            kind=kind,
                            message_id=message["id"],
                            label_ids=entry.get("labelIds", []) or [],
                        )
                    )
    return changes
