from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from app.models.domain.kanban_domain import SNOOZED_STATUS, ColumnConfig
from app.services import background_tasks
from app.services.board_sync_service import BoardSyncService, clamp_page_size
from app.services.embedding_service import EmbeddingService
from app.services.message_ingest_service import MessageIngestService
from app.services.openai_service import OpenAIServiceError
from app.services.page_token import decode_page_token
from tests.conftest import (
    BASE_TIME,
    FakeColumns,
    FakeIndex,
    FakeLabels,
    FakeTokens,
    make_gmail_message,
)

USER = "user-1"
NOW = BASE_TIME + timedelta(days=1)


def build_service(items, gmail, embeddings, columns, tokens=None, labels=None):
    ingest = MessageIngestService(gmail=gmail, items=items, embeddings=embeddings)
    return BoardSyncService(
        items=items,
        columns=FakeColumns(columns),
        ingest=ingest,
        labels=labels or FakeLabels(),
        tokens=tokens or FakeTokens(),
        clock=lambda: NOW,
    )


def at(hours: int):
    return BASE_TIME - timedelta(hours=hours)


@pytest.mark.asyncio
async def test_first_page_pulls_from_gmail_when_cache_is_empty(items, gmail, embeddings):
    columns = [ColumnConfig("INBOX", "Inbox", 0, "INBOX")]
    gmail.add_message(make_gmail_message("m1", received_at=at(1)))
    gmail.add_message(make_gmail_message("m2", received_at=at(2)))
    gmail.script_page(["m2", "m1"], next_page_token="next-1")
    service = build_service(items, gmail, embeddings, columns)

    page = await service.get_board_page(USER, None, 2)

    assert [item.message_id for item in page.columns["INBOX"]] == ["m1", "m2"]
    assert page.has_more is True
    assert page.totals == {"INBOX": 2}
    assert gmail.list_calls[0]["query"] == "in:inbox category:primary"
    assert gmail.list_calls[0]["max_results"] == 2
    assert sorted(embeddings.scheduled) == [(USER, "m1"), (USER, "m2")]

    state = decode_page_token(page.next_page_token)
    assert state.cursor["INBOX"] == at(2).isoformat()
    assert state.remote_page_token["INBOX"] == "next-1"
    assert state.remote_exhausted["INBOX"] is False


@pytest.mark.asyncio
async def test_following_page_uses_remote_token_and_ends(items, gmail, embeddings):
    columns = [ColumnConfig("INBOX", "Inbox", 0, "INBOX")]
    for message_id, hours in (("m1", 1), ("m2", 2), ("m3", 3)):
        gmail.add_message(make_gmail_message(message_id, received_at=at(hours)))
    gmail.script_page(["m1", "m2"], next_page_token="next-1")
    gmail.script_page(["m3"], page_token="next-1")
    service = build_service(items, gmail, embeddings, columns)

    first = await service.get_board_page(USER, None, 2)
    second = await service.get_board_page(USER, first.next_page_token, 2)

    assert [item.message_id for item in second.columns["INBOX"]] == ["m3"]
    assert gmail.list_calls[1]["page_token"] == "next-1"
    # No before: hint when continuing a Gmail page
    assert gmail.list_calls[1]["query"] == "in:inbox category:primary"
    assert second.has_more is False
    assert second.next_page_token is None


@pytest.mark.asyncio
async def test_fresh_scroll_with_cached_items_asks_gmail_for_older_mail(items, gmail, embeddings):
    columns = [ColumnConfig("INBOX", "Inbox", 0, "INBOX")]
    items.add(USER, "cached", "INBOX", received_at=at(5))
    service = build_service(items, gmail, embeddings, columns)

    await service.get_board_page(USER, None, 2)

    expected = f"in:inbox category:primary before:{int(at(5).timestamp())}"
    assert gmail.list_calls[0]["query"] == expected


@pytest.mark.asyncio
async def test_cursor_only_moves_to_older_items(items, gmail, embeddings):
    columns = [ColumnConfig("TODO", "To Do", 0, None)]
    for index in range(5):
        items.add(USER, f"m{index}", "TODO", received_at=at(index))
    service = build_service(items, gmail, embeddings, columns)

    seen: list[str] = []
    cursors = []
    token = None
    for _ in range(10):
        page = await service.get_board_page(USER, token, 2)
        seen.extend(item.message_id for item in page.columns["TODO"])
        if page.next_page_token is None:
            break
        token = page.next_page_token
        cursors.append(decode_page_token(token).cursor["TODO"])

    assert seen == ["m0", "m1", "m2", "m3", "m4"]
    assert cursors == sorted(cursors, reverse=True)
    assert gmail.list_calls == []


@pytest.mark.asyncio
async def test_items_tied_with_a_page_boundary_wait_for_a_fresh_load(items, gmail, embeddings):
    columns = [ColumnConfig("TODO", "To Do", 0, None)]
    items.add(USER, "a", "TODO", received_at=at(1))
    items.add(USER, "b", "TODO", received_at=at(2))
    items.add(USER, "c", "TODO", received_at=at(2))
    service = build_service(items, gmail, embeddings, columns)

    first = await service.get_board_page(USER, None, 2)
    second = await service.get_board_page(USER, first.next_page_token, 2)
    fresh = await service.get_board_page(USER, None, 10)

    assert [i.message_id for i in first.columns["TODO"]] == ["a", "c"]
    assert second.columns["TODO"] == []
    assert {i.message_id for i in fresh.columns["TODO"]} == {"a", "b", "c"}


@pytest.mark.asyncio
async def test_gmail_failure_serves_cached_items(items, gmail, embeddings):
    columns = [ColumnConfig("INBOX", "Inbox", 0, "INBOX")]
    items.add(USER, "cached", "INBOX", received_at=at(1))
    gmail.fail_listing = True
    service = build_service(items, gmail, embeddings, columns)

    page = await service.get_board_page(USER, None, 5)

    assert [item.message_id for item in page.columns["INBOX"]] == ["cached"]
    # Remote state is untouched so the next page retries Gmail
    state = decode_page_token(page.next_page_token)
    assert state.remote_exhausted["INBOX"] is False
    assert page.has_more is True


@pytest.mark.asyncio
async def test_one_failing_column_does_not_hold_back_the_others(items, gmail, embeddings):
    columns = [
        ColumnConfig("INBOX", "Inbox", 0, "INBOX"),
        ColumnConfig("WAITING", "Waiting", 1, "Label_9"),
    ]
    items.add(USER, "waiting", "WAITING", received_at=at(3))
    gmail.add_message(make_gmail_message("m1", received_at=at(1)))
    gmail.add_message(make_gmail_message("m2", received_at=at(2)))
    gmail.script_page(["m1"], next_page_token="next-1")
    gmail.script_page(["m2"], page_token="next-1")
    gmail.fail_labels = {"Label_9"}
    service = build_service(items, gmail, embeddings, columns)

    first = await service.get_board_page(USER, None, 2)

    assert [i.message_id for i in first.columns["INBOX"]] == ["m1"]
    assert [i.message_id for i in first.columns["WAITING"]] == ["waiting"]
    state = decode_page_token(first.next_page_token)
    assert state.remote_page_token == {"INBOX": "next-1", "WAITING": None}
    assert state.remote_exhausted == {"INBOX": False, "WAITING": False}

    second = await service.get_board_page(USER, first.next_page_token, 2)

    assert [i.message_id for i in second.columns["INBOX"]] == ["m2"]
    state = decode_page_token(second.next_page_token)
    assert state.remote_exhausted == {"INBOX": True, "WAITING": False}
    # The failing label is retried on every page
    assert [c["label_ids"] for c in gmail.list_calls].count(["Label_9"]) == 2


class FailingAI:
    async def generate_email_embedding(self, **kwargs):
        raise OpenAIServiceError("rate limited")


@pytest.mark.asyncio
async def test_embedding_failure_never_fails_the_page(items, gmail, monkeypatch):
    columns = [ColumnConfig("INBOX", "Inbox", 0, "INBOX")]
    gmail.add_message(make_gmail_message("m1", received_at=at(1)))
    gmail.script_page(["m1"])
    task_logger = MagicMock()
    monkeypatch.setattr(background_tasks, "logger", task_logger)
    embeddings = EmbeddingService(items=items, ai=FailingAI(), index=FakeIndex())
    service = build_service(items, gmail, embeddings, columns)

    page = await service.get_board_page(USER, None, 5)
    await background_tasks.drain(timeout=1)

    assert [i.message_id for i in page.columns["INBOX"]] == ["m1"]
    assert background_tasks.pending_count() == 0
    assert items.rows[(USER, "m1")].has_embedding is False
    task_logger.error.assert_called_once()
    message = task_logger.error.call_args.args[0]
    fields = task_logger.error.call_args.kwargs
    assert message == "Background task failed"
    assert fields["task"] == f"embed:{USER}:m1"
    assert fields["error_type"] == "OpenAIServiceError"


@pytest.mark.asyncio
async def test_token_failure_serves_every_column_locally(items, gmail, embeddings):
    columns = [
        ColumnConfig("INBOX", "Inbox", 0, "INBOX"),
        ColumnConfig("TODO", "To Do", 1, "Label_7"),
    ]
    items.add(USER, "a", "INBOX", received_at=at(1))
    items.add(USER, "b", "TODO", received_at=at(2))
    tokens = FakeTokens(fail=True)
    service = build_service(items, gmail, embeddings, columns, tokens=tokens)

    page = await service.get_board_page(USER, None, 5)

    assert [i.message_id for i in page.columns["INBOX"]] == ["a"]
    assert [i.message_id for i in page.columns["TODO"]] == ["b"]
    assert gmail.list_calls == []
    # Loaded once and the failure shared across columns
    assert tokens.calls == 1


@pytest.mark.asyncio
async def test_unknown_label_marks_column_exhausted(items, gmail, embeddings):
    columns = [ColumnConfig("PROJ", "Projects", 0, "Projects")]
    service = build_service(items, gmail, embeddings, columns, labels=FakeLabels())

    page = await service.get_board_page(USER, None, 5)

    assert page.columns["PROJ"] == []
    assert page.has_more is False
    assert gmail.list_calls == []


@pytest.mark.asyncio
async def test_snoozed_items_hidden_until_due_then_restored(items, gmail, embeddings):
    columns = [ColumnConfig("TODO", "To Do", 0, None)]
    items.add(USER, "visible", "TODO", received_at=at(1))
    items.add(
        USER,
        "later",
        SNOOZED_STATUS,
        received_at=at(2),
        original_status="TODO",
        snooze_until=NOW + timedelta(hours=1),
    )
    items.add(
        USER,
        "due",
        SNOOZED_STATUS,
        received_at=at(3),
        original_status="TODO",
        snooze_until=NOW - timedelta(minutes=1),
    )
    service = build_service(items, gmail, embeddings, columns)

    page = await service.get_board_page(USER, None, 10)

    returned = {item.message_id: item for item in page.columns["TODO"]}
    assert set(returned) == {"visible", "due"}
    assert returned["due"].status == "TODO"
    assert returned["due"].snooze_until is None
    assert returned["due"].original_status is None
    assert items.rows[(USER, "later")].status == SNOOZED_STATUS
    assert page.totals["TODO"] == 2


@pytest.mark.asyncio
async def test_malformed_token_restarts_the_board(items, gmail, embeddings):
    columns = [ColumnConfig("TODO", "To Do", 0, None)]
    items.add(USER, "m1", "TODO", received_at=at(1))
    service = build_service(items, gmail, embeddings, columns)

    page = await service.get_board_page(USER, "garbage", 5)

    assert [item.message_id for item in page.columns["TODO"]] == ["m1"]


def test_page_size_is_clamped():
    assert clamp_page_size(None) == 50
    assert clamp_page_size(0) == 50
    assert clamp_page_size(7) == 7
    assert clamp_page_size(10_000) == 100
