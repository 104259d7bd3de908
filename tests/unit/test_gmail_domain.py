import base64
from datetime import UTC, datetime

import pytest

from app.models.domain.gmail_domain import GmailMessage, parse_address, parse_history_records


def encode(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


@pytest.mark.parametrize(
    "raw, expected",
    [
        ('"Smith, Bob" <bob@example.com>', {"name": "Smith, Bob", "email": "bob@example.com"}),
        ("Alice <alice@example.com>", {"name": "Alice", "email": "alice@example.com"}),
        ("john.doe@example.com", {"name": "john doe", "email": "john.doe@example.com"}),
        ("", {"name": "Unknown", "email": ""}),
        ("undisclosed-recipients", {"name": "undisclosed-recipients", "email": "undisclosed-recipients"}),
    ],
)
def test_parse_address(raw, expected):
    assert parse_address(raw) == expected


def test_inline_parts_are_not_attachments():
    inline = {
        "mimeType": "image/png",
        "filename": "logo.png",
        "body": {"attachmentId": "att-1"},
        "headers": [{"name": "Content-Disposition", "value": "inline; filename=logo.png"}],
    }
    attached = {
        "mimeType": "application/pdf",
        "filename": "invoice.pdf",
        "body": {"attachmentId": "att-2"},
        "headers": [{"name": "Content-Disposition", "value": "attachment; filename=invoice.pdf"}],
    }

    only_inline = GmailMessage({"id": "m1", "payload": {"parts": [inline]}})
    with_pdf = GmailMessage({"id": "m2", "payload": {"parts": [inline, attached]}})

    assert only_inline.has_attachments() is False
    assert with_pdf.has_attachments() is True


def test_extract_text_takes_first_readable_part_in_order():
    message = GmailMessage(
        {
            "id": "m1",
            "payload": {
                "mimeType": "multipart/alternative",
                "parts": [
                    {"mimeType": "text/plain", "body": {"data": encode("Plain body")}},
                    {"mimeType": "text/html", "body": {"data": encode("<p>Html body</p>")}},
                ],
            },
        }
    )

    assert message.extract_text() == {"text": "Plain body"}


def test_extract_text_strips_html():
    html = "<style>p { color: red }</style><p>Hi <b>there</b></p>"
    message = GmailMessage(
        {"id": "m1", "payload": {"mimeType": "text/html", "body": {"data": encode(html)}}}
    )

    body = message.extract_text()

    assert body["html"] == html
    assert body["text"] == "Hi there"


def test_headers_and_received_time():
    message = GmailMessage(
        {
            "id": "m1",
            "internalDate": "1714564800000",
            "labelIds": ["INBOX", "UNREAD"],
            "payload": {"headers": [{"name": "From", "value": "Bob <bob@example.com>"}]},
        }
    )

    assert message.subject == "(No subject)"
    assert message.sender["email"] == "bob@example.com"
    assert message.is_unread() is True
    assert message.get_received_datetime() == datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def test_history_records_flatten_in_record_order():
    records = [
        {
            "id": "101",
            "messagesAdded": [{"message": {"id": "m1", "threadId": "t1", "labelIds": ["INBOX"]}}],
            "labelsAdded": [{"message": {"id": "m2"}, "labelIds": ["Label_1"]}],
        },
        {
            "id": "102",
            "messagesDeleted": [{"message": {"id": "m3"}}],
            "labelsRemoved": [{"message": {"id": "m2"}, "labelIds": ["INBOX"]}],
        },
    ]

    changes = parse_history_records(records)

    assert [(c.kind, c.message_id, c.label_ids) for c in changes] == [
        ("messageAdded", "m1", ["INBOX"]),
        ("labelAdded", "m2", ["Label_1"]),
        ("messageDeleted", "m3", []),
        ("labelRemoved", "m2", ["INBOX"]),
    ]
    assert changes[0].thread_id == "t1"
