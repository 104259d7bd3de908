"""
Kanban API Routes
Board pages, card moves, snooze and summaries, column configuration,
Gmail label lookup and search.
"""

from fastapi import APIRouter, Depends, HTTPException, Query

from app.auth.verify import current_user_id
from app.infrastructure.observability.logging import get_logger
from app.models.api.kanban_request import SnoozeRequest, UpdateColumnsRequest, UpdateStatusRequest
from app.models.api.kanban_response import (
    BoardResponse,
    CardResponse,
    ColumnResponse,
    ColumnsResponse,
    LabelsResponse,
    LabelValidationResponse,
    SearchResponse,
    SuggestionsResponse,
    SummaryResponse,
    card_from_dict,
)
from app.services.board_sync_service import board_sync_service
from app.services.column_service import column_service
from app.services.kanban_errors import KanbanError
from app.services.label_service import label_service
from app.services.search_service import search_service
from app.services.status_service import status_service

logger = get_logger(__name__)

router = APIRouter(prefix="/kanban", tags=["kanban"])


def _http_error(error: KanbanError) -> HTTPException:
    return HTTPException(status_code=error.status_code, detail=error.message)


@router.get("/board", response_model=BoardResponse)
async def get_board(
    user_id: str = Depends(current_user_id),
    page_token: str | None = Query(default=None, alias="pageToken", description="Token from meta"),
    page_size: int | None = Query(default=None, alias="pageSize", ge=1, description="Cards per column"),
):
    """One page of every column, pulling from Gmail where the cache runs short."""
    page = await board_sync_service.get_board_page(user_id, page_token, page_size)
    return page.to_dict()


@router.patch("/items/{message_id}/status", response_model=CardResponse)
async def update_item_status(
    message_id: str,
    request: UpdateStatusRequest,
    user_id: str = Depends(current_user_id),
):
    try:
        item = await status_service.move_to_column(
            user_id, message_id, request.status, request.gmail_label
        )
    except KanbanError as e:
        raise _http_error(e) from e
    return card_from_dict(item.to_dict())


@router.post("/items/{message_id}/snooze", response_model=CardResponse)
async def snooze_item(
    message_id: str,
    request: SnoozeRequest,
    user_id: str = Depends(current_user_id),
):
    try:
        item = await status_service.snooze(user_id, message_id, request.until)
    except KanbanError as e:
        raise _http_error(e) from e
    return card_from_dict(item.to_dict())


@router.post("/items/{message_id}/summarize", response_model=SummaryResponse)
async def summarize_item(message_id: str, user_id: str = Depends(current_user_id)):
    try:
        result = await status_service.summarize(user_id, message_id)
    except KanbanError as e:
        raise _http_error(e) from e
    return SummaryResponse(**result)


@router.get("/columns", response_model=ColumnsResponse)
async def get_columns(user_id: str = Depends(current_user_id)):
    columns = await column_service.get_columns(user_id)
    return ColumnsResponse(columns=[ColumnResponse.model_validate(c.to_dict()) for c in columns])


@router.put("/columns", response_model=ColumnsResponse)
async def update_columns(request: UpdateColumnsRequest, user_id: str = Depends(current_user_id)):
    """Replace the column set. Cards in deleted columns are migrated."""
    try:
        columns = await column_service.replace_columns(
            user_id, [column.model_dump(by_alias=True) for column in request.columns]
        )
    except KanbanError as e:
        logger.info("Column update rejected", user_id=user_id, error=e.message)
        raise _http_error(e) from e
    return ColumnsResponse(columns=[ColumnResponse.model_validate(c.to_dict()) for c in columns])


@router.get("/labels", response_model=LabelsResponse)
async def get_labels(user_id: str = Depends(current_user_id)):
    try:
        labels = await label_service.get_available_labels(user_id)
    except KanbanError as e:
        raise _http_error(e) from e
    return LabelsResponse(labels=labels)


@router.get("/labels/validate", response_model=LabelValidationResponse)
async def validate_label(
    user_id: str = Depends(current_user_id),
    name: str = Query(default="", description="Label name to check"),
):
    return LabelValidationResponse.model_validate(await label_service.validate_label(user_id, name))


def _search_response(query: str, hits) -> SearchResponse:
    return SearchResponse(
        query=query,
        count=len(hits),
        results=[card_from_dict(hit.to_dict()) for hit in hits],
    )


@router.get("/search", response_model=SearchResponse)
async def search(
    user_id: str = Depends(current_user_id),
    q: str = Query(..., description="Search text"),
    limit: int = Query(default=20, ge=1, le=100),
):
    """Semantic and fuzzy results merged into one ranking."""
    return _search_response(q, await search_service.search(user_id, q, limit))


@router.get("/search/semantic", response_model=SearchResponse)
async def search_semantic(
    user_id: str = Depends(current_user_id),
    q: str = Query(..., description="Search text"),
    limit: int = Query(default=20, ge=1, le=100),
):
    try:
        hits = await search_service.search_semantic(user_id, q, limit)
    except KanbanError as e:
        raise _http_error(e) from e
    return _search_response(q, hits)


@router.get("/search/suggestions", response_model=SuggestionsResponse)
async def search_suggestions(
    user_id: str = Depends(current_user_id),
    q: str = Query(..., description="Partial search text"),
    limit: int = Query(default=5, ge=1, le=20),
):
    suggestions = await search_service.get_suggestions(user_id, q, limit)
    return SuggestionsResponse(suggestions=[s.to_dict() for s in suggestions])
