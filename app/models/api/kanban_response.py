"""
Kanban API response models.
Used by routes for output formatting.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CardResponse(_CamelModel):
    """One cached email as a board card."""

    id: int | None = Field(None, description="Internal row id")
    message_id: str = Field(..., description="Gmail message id")
    thread_id: str | None = Field(None, description="Gmail thread id")
    mailbox_id: str | None = Field(None, description="Label the message was pulled from")
    subject: str | None = None
    sender_name: str | None = None
    sender_email: str | None = None
    snippet: str | None = None
    summary: str | None = Field(None, description="AI summary, if generated")
    status: str = Field(..., description="Column id the card sits in")
    original_status: str | None = Field(None, description="Column to restore after a snooze")
    snooze_until: str | None = None
    received_at: str | None = None
    has_attachments: bool = False
    is_unread: bool = False
    last_summarized_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    score: float | None = Field(None, description="Search relevance, search results only")
    source: str | None = Field(None, description='"fuzzy" or "semantic", search results only')


class ColumnResponse(_CamelModel):
    id: str
    name: str
    order: int
    gmail_label: str | None = None


class BoardMetaResponse(_CamelModel):
    page_size: int = Field(..., description="Cards requested per column")
    next_page_token: str | None = Field(None, description="Opaque token for the next page")
    has_more: bool = Field(..., description="Whether any column may have more cards")
    total: dict[str, int] = Field(..., description="Card count per column")


class BoardResponse(BaseModel):
    data: dict[str, list[CardResponse]] = Field(..., description="Cards per column id")
    meta: BoardMetaResponse
    columns: list[ColumnResponse]


class ColumnsResponse(BaseModel):
    columns: list[ColumnResponse]


class SummaryResponse(BaseModel):
    summary: str = Field(..., description="Bullet point summary")
    cached: bool = Field(..., description="Whether a recent summary was reused")


class LabelResponse(BaseModel):
    id: str
    name: str
    type: str = Field(..., description="system, user or virtual")


class LabelsResponse(BaseModel):
    labels: list[LabelResponse]


class LabelValidationResponse(_CamelModel):
    valid: bool
    message: str
    hint: str | None = None
    actual_name: str | None = None
    suggestions: list[str] | None = None


class SearchResponse(BaseModel):
    query: str
    count: int
    results: list[CardResponse]


class SuggestionResponse(BaseModel):
    type: str = Field(..., description="contact, subject or keyword")
    text: str = Field(..., description="Display text")
    value: str = Field(..., description="Value to search for")


class SuggestionsResponse(BaseModel):
    suggestions: list[SuggestionResponse]


def card_from_dict(data: dict[str, Any]) -> CardResponse:
    return CardResponse.model_validate(data)
