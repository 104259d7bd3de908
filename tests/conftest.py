from dataclasses import replace
from datetime import UTC, datetime, timedelta

import pytest

from app.auth.verify import auth_dependency
from app.models.domain.gmail_domain import GmailLabel, GmailMessage, MessagePage
from app.models.domain.kanban_domain import SNOOZED_STATUS, CachedItem, ColumnConfig
from app.services.google_gmail_service import GoogleGmailError
from app.services.openai_service import SummaryResult
from app.services.token_service import TokenServiceError
from app.services.vector_index_service import VectorMatch

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": "user-123"}

    return _override


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app):
        app.dependency_overrides[auth_dependency] = auth_override

    return _apply


class FakeRedis:
    def __init__(self):
        self.store: dict[str, str] = {}

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        self.store[key] = value
        return True

    async def get(self, key: str) -> str | None:
        return self.store.get(key)

    async def delete(self, key: str) -> bool:
        return self.store.pop(key, None) is not None


@pytest.fixture
def fake_redis():
    return FakeRedis()


def make_gmail_message(
    message_id: str,
    subject: str = "Hello",
    sender: str = "Alice <alice@example.com>",
    received_at: datetime | None = None,
    label_ids: list[str] | None = None,
    snippet: str = "",
) -> dict:
    data = {
        "id": message_id,
        "threadId": f"t-{message_id}",
        "labelIds": label_ids if label_ids is not None else ["INBOX"],
        "snippet": snippet,
        "payload": {
            "headers": [
                {"name": "Subject", "value": subject},
                {"name": "From", "value": sender},
            ]
        },
    }
    if received_at is not None:
        data["internalDate"] = str(int(received_at.timestamp() * 1000))
    return data


class FakeItemStore:
    """In-memory stand-in for EmailItemRepository with the same semantics."""

    def __init__(self):
        self.rows: dict[tuple[str, str], CachedItem] = {}
        self._next_id = 1

    def add(self, user_id: str, message_id: str, status: str, received_at=None, **fields) -> CachedItem:
        item = CachedItem(
            user_id=user_id,
            message_id=message_id,
            status=status,
            id=self._next_id,
            received_at=received_at,
            created_at=BASE_TIME + timedelta(seconds=self._next_id),
            **fields,
        )
        self._next_id += 1
        self.rows[(user_id, message_id)] = item
        return item

    def _in_column(self, item: CachedItem, user_id: str, column_id: str, cursor) -> bool:
        if item.user_id != user_id:
            return False
        if not (item.status == column_id or (item.is_snoozed and item.original_status == column_id)):
            return False
        if cursor is not None:
            return item.received_at is not None and item.received_at < cursor
        return True

    @staticmethod
    def _order(item: CachedItem):
        received = item.received_at.timestamp() if item.received_at else float("-inf")
        return (item.received_at is not None, received, item.id)

    async def insert_if_absent(self, user_id, snapshot, status) -> bool:
        if (user_id, snapshot.message_id) in self.rows:
            return False
        self.add(
            user_id,
            snapshot.message_id,
            status,
            received_at=snapshot.received_at,
            mailbox_id=snapshot.mailbox_id,
            thread_id=snapshot.thread_id,
            sender_name=snapshot.sender_name,
            sender_email=snapshot.sender_email,
            subject=snapshot.subject,
            snippet=snapshot.snippet,
            has_attachments=snapshot.has_attachments,
            is_unread=snapshot.is_unread,
        )
        return True

    async def get(self, user_id, message_id):
        return self.rows.get((user_id, message_id))

    async def get_many(self, user_id, message_ids):
        return {m: self.rows[(user_id, m)] for m in message_ids if (user_id, m) in self.rows}

    async def list_column_page(self, user_id, column_id, cursor, limit):
        matching = [i for i in self.rows.values() if self._in_column(i, user_id, column_id, cursor)]
        return sorted(matching, key=self._order, reverse=True)[:limit]

    async def count_column(self, user_id, column_id, cursor=None):
        return sum(1 for i in self.rows.values() if self._in_column(i, user_id, column_id, cursor))

    async def count_status(self, user_id, status):
        return sum(1 for i in self.rows.values() if i.user_id == user_id and i.status == status)

    async def oldest_received_at(self, user_id, column_id):
        dates = [
            i.received_at
            for i in self.rows.values()
            if self._in_column(i, user_id, column_id, None) and i.received_at
        ]
        return min(dates) if dates else None

    async def update_status(self, user_id, message_id, status):
        item = self.rows.get((user_id, message_id))
        if item is None:
            return None
        item.status = status
        item.original_status = None
        item.snooze_until = None
        return replace(item)

    async def move_if_status(self, user_id, message_id, expected_status, new_status):
        item = self.rows.get((user_id, message_id))
        if item is None or item.status != expected_status:
            return False
        item.status = new_status
        return True

    async def snooze(self, user_id, message_id, until, original_status):
        item = self.rows.get((user_id, message_id))
        if item is None:
            return None
        item.status = SNOOZED_STATUS
        item.original_status = original_status
        item.snooze_until = until
        return replace(item)

    def _wake(self, item: CachedItem) -> CachedItem:
        item.status = item.original_status
        item.original_status = None
        item.snooze_until = None
        return replace(item)

    def _is_due(self, item: CachedItem, now) -> bool:
        return (
            item.is_snoozed
            and item.snooze_until is not None
            and item.snooze_until <= now
            and item.original_status is not None
        )

    async def wake_if_due(self, user_id, message_id, now):
        item = self.rows.get((user_id, message_id))
        if item is None or not self._is_due(item, now):
            return None
        return self._wake(item)

    async def wake_expired_batch(self, now, limit):
        due = sorted((i for i in self.rows.values() if self._is_due(i, now)), key=lambda i: i.snooze_until)
        return [self._wake(item) for item in due[:limit]]

    async def set_unread(self, user_id, message_id, is_unread):
        item = self.rows.get((user_id, message_id))
        if item is None:
            return False
        item.is_unread = is_unread
        return True

    async def save_summary(self, user_id, message_id, summary):
        item = self.rows[(user_id, message_id)]
        item.summary = summary
        item.last_summarized_at = datetime.now(UTC)

    async def mark_embedded(self, user_id, message_id):
        self.rows[(user_id, message_id)].has_embedding = True

    async def delete(self, user_id, message_id):
        return self.rows.pop((user_id, message_id), None) is not None

    async def recent_items(self, user_id, limit):
        mine = [i for i in self.rows.values() if i.user_id == user_id]
        return sorted(mine, key=lambda i: (i.created_at, i.id), reverse=True)[:limit]

    async def items_missing_embeddings(self, limit):
        return [i for i in self.rows.values() if not i.has_embedding][:limit]


class FakeColumns:
    def __init__(self, columns: list[ColumnConfig]):
        self.columns = columns

    async def get_columns(self, user_id):
        return list(self.columns)


class FakeTokens:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = 0

    async def get_valid_access_token(self, user_id):
        self.calls += 1
        if self.fail:
            raise TokenServiceError("No Google OAuth token found", user_id=user_id)
        return "access-token"


class FakeLabels:
    """Resolves names through a fixed catalog; ids and system labels pass through."""

    def __init__(self, catalog: dict[str, str] | None = None):
        self.catalog = {name.lower(): label_id for name, label_id in (catalog or {}).items()}

    async def resolve_label_id(self, user_id, access_token, label):
        label = label.strip()
        if not label:
            return None
        if label.isupper() or label.startswith("Label_"):
            return label
        return self.catalog.get(label.lower())


class FakeGmail:
    """
    Scripted Gmail gateway.

    `pages` maps a page token (None for the first page) to a MessagePage;
    unknown tokens list nothing. Calls are recorded for assertions.
    `fail_listing` makes every messages.list call raise; `fail_labels` only
    the calls listing one of those label ids.
    """

    def __init__(self):
        self.messages: dict[str, dict] = {}
        self.pages: dict[str | None, MessagePage] = {}
        self.list_calls: list[dict] = []
        self.modify_calls: list[dict] = []
        self.fail_listing = False
        self.fail_labels: set[str] = set()
        self.fail_modify = False
        self.history_pages: list = []
        self.history_error: GoogleGmailError | None = None
        self.labels: list[dict] = []
        self.watch_calls: list[dict] = []

    def add_message(self, data: dict) -> None:
        self.messages[data["id"]] = data

    def script_page(self, message_ids, next_page_token=None, page_token=None):
        self.pages[page_token] = MessagePage(message_ids=list(message_ids), next_page_token=next_page_token)

    async def list_messages(self, access_token, max_results=50, label_ids=None, query=None, page_token=None):
        self.list_calls.append(
            {"max_results": max_results, "label_ids": label_ids, "query": query, "page_token": page_token}
        )
        if self.fail_listing or self.fail_labels.intersection(label_ids or ()):
            raise GoogleGmailError("Gmail API request failed", status_code=503)
        page = self.pages.get(page_token)
        if page is None:
            return MessagePage(message_ids=[], next_page_token=None)
        return MessagePage(message_ids=page.message_ids[:max_results], next_page_token=page.next_page_token)

    async def get_message(self, access_token, message_id, format="full"):
        if message_id not in self.messages:
            raise GoogleGmailError("Message not found", error_code="not_found", status_code=404)
        return GmailMessage(self.messages[message_id])

    async def modify_message(self, access_token, message_id, add_label_ids=None, remove_label_ids=None):
        self.modify_calls.append(
            {"message_id": message_id, "add": add_label_ids or [], "remove": remove_label_ids or []}
        )
        if self.fail_modify:
            raise GoogleGmailError("Gmail API request failed", status_code=500)

    async def get_labels(self, access_token):
        return [GmailLabel(label) for label in self.labels]

    async def list_history(self, access_token, start_history_id, page_token=None):
        if self.history_error is not None:
            raise self.history_error
        index = int(page_token) if page_token else 0
        return self.history_pages[index]

    async def watch(self, access_token, topic_name, label_ids=None):
        self.watch_calls.append({"topic": topic_name, "label_ids": label_ids})
        return {"historyId": "5000", "expiration": "1714600000000"}

    async def get_profile(self, access_token):
        return {"emailAddress": "me@example.com", "historyId": "5000"}

    async def stop_watch(self, access_token):
        self.watch_calls.append({"stop": True})


class FakeEmbeddings:
    def __init__(self):
        self.scheduled: list[tuple[str, str]] = []

    def schedule(self, user_id, message_id):
        self.scheduled.append((user_id, message_id))


class FakeIndex:
    """Vector index whose results depend on the requested threshold."""

    def __init__(self, by_threshold: dict[float, list[VectorMatch]] | None = None, error=None):
        self.by_threshold = by_threshold or {}
        self.error = error
        self.search_calls: list[float] = []
        self.deleted: list[tuple[str, str]] = []

    async def search_similar(self, user_id, vector, k=20, min_score=0.5):
        self.search_calls.append(min_score)
        if self.error is not None:
            raise self.error
        return list(self.by_threshold.get(min_score, []))[:k]

    async def delete_embedding(self, user_id, message_id):
        self.deleted.append((user_id, message_id))
        return True


class FakeAI:
    def __init__(self, error=None):
        self.error = error
        self.summaries: list[dict] = []

    async def generate_query_embedding(self, query):
        if self.error is not None:
            raise self.error
        return [0.1, 0.2, 0.3]

    async def summarize_email(self, **kwargs):
        self.summaries.append(kwargs)
        return SummaryResult(summary="- short summary", model="test-model")


@pytest.fixture
def items():
    return FakeItemStore()


@pytest.fixture
def gmail():
    return FakeGmail()


@pytest.fixture
def embeddings():
    return FakeEmbeddings()
