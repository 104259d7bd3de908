"""
Kanban API request models.
Used by routes for input validation. Field names follow the board's
camelCase wire format; snake_case names are accepted too.
"""

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UpdateStatusRequest(_CamelModel):
    """Move a card to a column."""

    status: str = Field(..., min_length=1, description="Target column id")
    gmail_label: str | None = Field(
        default=None,
        description='Gmail label to apply. Omit to skip Gmail, "" to archive',
    )


class SnoozeRequest(_CamelModel):
    until: str = Field(..., description="ISO-8601 time the card should come back")


class ColumnInput(_CamelModel):
    id: str = Field(..., description="Column id, also the status of its cards")
    name: str = Field(..., description="Display name")
    order: int = Field(default=0, description="Position; renumbered to 0..n-1 on save")
    gmail_label: str | None = Field(
        default=None, description='Bound Gmail label, "" for an archive column, null for none'
    )


class UpdateColumnsRequest(_CamelModel):
    columns: list[ColumnInput] = Field(..., description="The complete new column set")
