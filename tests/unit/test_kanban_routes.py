"""
Route-level tests: request parsing, camelCase output and error mapping.
Services are replaced with AsyncMocks.
"""

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.models.domain.kanban_domain import BoardPage, CachedItem, ColumnConfig, SearchHit
from app.routes import kanban
from app.services.kanban_errors import ColumnConflictError, ItemNotFoundError, UpstreamFailureError


@pytest.fixture
def client(apply_auth_override):
    apply_auth_override(app)
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_board_requires_auth():
    response = TestClient(app).get("/kanban/board")

    assert response.status_code in (401, 403)


def test_board_page_is_camel_cased(client, monkeypatch):
    service = AsyncMock()
    service.get_board_page.return_value = BoardPage(
        columns={"INBOX": [CachedItem("user-123", "m1", "INBOX", id=1, subject="Hi")]},
        totals={"INBOX": 1},
        column_configs=[ColumnConfig("INBOX", "Inbox", 0, "INBOX")],
        page_size=10,
        has_more=True,
        next_page_token="abc",
    )
    monkeypatch.setattr(kanban, "board_sync_service", service)

    response = client.get("/kanban/board", params={"pageToken": "prev", "pageSize": 10})

    assert response.status_code == 200
    body = response.json()
    assert body["data"]["INBOX"][0]["messageId"] == "m1"
    assert body["meta"] == {"pageSize": 10, "nextPageToken": "abc", "hasMore": True, "total": {"INBOX": 1}}
    assert body["columns"][0]["gmailLabel"] == "INBOX"
    service.get_board_page.assert_awaited_once_with("user-123", "prev", 10)


def test_status_update_passes_label_through(client, monkeypatch):
    service = AsyncMock()
    service.move_to_column.return_value = CachedItem("user-123", "m1", "DONE")
    monkeypatch.setattr(kanban, "status_service", service)

    response = client.patch("/kanban/items/m1/status", json={"status": "DONE", "gmailLabel": ""})

    assert response.status_code == 200
    assert response.json()["status"] == "DONE"
    service.move_to_column.assert_awaited_once_with("user-123", "m1", "DONE", "")


def test_status_update_without_label_skips_gmail(client, monkeypatch):
    service = AsyncMock()
    service.move_to_column.return_value = CachedItem("user-123", "m1", "TODO")
    monkeypatch.setattr(kanban, "status_service", service)

    client.patch("/kanban/items/m1/status", json={"status": "TODO"})

    service.move_to_column.assert_awaited_once_with("user-123", "m1", "TODO", None)


@pytest.mark.parametrize(
    "error, status_code",
    [
        (ItemNotFoundError(), 404),
        (UpstreamFailureError("Failed to summarize email"), 502),
    ],
)
def test_summarize_errors_map_to_http(client, monkeypatch, error, status_code):
    service = AsyncMock()
    service.summarize.side_effect = error
    monkeypatch.setattr(kanban, "status_service", service)

    response = client.post("/kanban/items/m1/summarize")

    assert response.status_code == status_code
    assert response.json()["detail"] == error.message


def test_column_conflict_is_409(client, monkeypatch):
    service = AsyncMock()
    service.replace_columns.side_effect = ColumnConflictError("Duplicate column name: Todo")
    monkeypatch.setattr(kanban, "column_service", service)

    response = client.put(
        "/kanban/columns",
        json={"columns": [{"id": "A", "name": "Todo", "order": 0}, {"id": "B", "name": "todo", "order": 1}]},
    )

    assert response.status_code == 409
    sent = service.replace_columns.await_args.args[1]
    assert sent[0] == {"id": "A", "name": "Todo", "order": 0, "gmailLabel": None}


def test_search_returns_scored_cards(client, monkeypatch):
    service = AsyncMock()
    service.search.return_value = [
        SearchHit(item=CachedItem("user-123", "m1", "INBOX"), score=0.8123456, source="semantic")
    ]
    monkeypatch.setattr(kanban, "search_service", service)

    response = client.get("/kanban/search", params={"q": "invoice"})

    body = response.json()
    assert body["count"] == 1
    assert body["results"][0]["score"] == 0.8123
    assert body["results"][0]["source"] == "semantic"
