"""
Google Gmail API Service.
Low-level REST client for the calls the board sync needs: list, get,
modify, labels, history and watch. Returns domain models from gmail_domain.
"""

import asyncio
import json
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from app.infrastructure.observability.logging import get_logger
from app.models.domain.gmail_domain import (
    GmailLabel,
    GmailMessage,
    HistoryPage,
    MessagePage,
    parse_history_records,
)

logger = get_logger(__name__)

GMAIL_API_BASE_URL = "https://gmail.googleapis.com/gmail/v1"
GMAIL_USER_ID = "me"

REQUEST_TIMEOUT = 30  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 2


class GoogleGmailError(Exception):
    """Custom exception for Google Gmail API errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        response_data: dict | None = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.status_code = status_code
        self.response_data = response_data or {}


class GoogleGmailService:
    """
    Pure API client: HTTP, auth headers, error mapping and retries.

    requests is blocking, so every call is pushed to a worker thread with
    asyncio.to_thread. That lets per-column pulls overlap under gather.
    """

    def __init__(self):
        self._session = self._create_session()

    def _create_session(self) -> requests.Session:
        session = requests.Session()

        retry_strategy = Retry(
            total=MAX_RETRIES,
            backoff_factor=BACKOFF_FACTOR,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET", "POST"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("https://", adapter)
        return session

    def _get_auth_headers(self, access_token: str) -> dict:
        return {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _handle_api_response(self, response: requests.Response, operation: str) -> dict:
        """
        Parse a Gmail API response or raise GoogleGmailError.

        Raises:
            GoogleGmailError: If the response is an error or unparsable
        """
        if response.ok:
            try:
                return response.json() if response.text else {}
            except ValueError as e:
                logger.error("Failed to parse Gmail API response", operation=operation, error=str(e))
                raise GoogleGmailError(f"Invalid response format: {e}") from e

        try:
            error_data = response.json() if response.text else {}
        except ValueError:
            logger.error(
                "Gmail API call failed with non-JSON response",
                operation=operation,
                status_code=response.status_code,
                response_text=response.text[:200] if response.text else "",
            )
            raise GoogleGmailError(
                f"Gmail API error (HTTP {response.status_code})",
                status_code=response.status_code,
            ) from None

        error_info = error_data.get("error", {}) if isinstance(error_data, dict) else {}
        error_code = str(error_info.get("code", response.status_code))
        error_message = error_info.get("message", "Unknown Gmail API error")

        logger.error(
            "Gmail API call failed",
            operation=operation,
            status_code=response.status_code,
            error_code=error_code,
            error_message=error_message,
        )
        raise GoogleGmailError(
            self._map_gmail_error(error_code, error_message),
            error_code=error_code,
            status_code=response.status_code,
            response_data=error_data,
        )

    def _map_gmail_error(self, error_code: str, error_message: str) -> str:
        error_mappings = {
            "403": "Gmail access denied. Please check permissions.",
            "404": "Gmail resource not found.",
            "400": "Invalid Gmail request format.",
            "401": "Gmail authorization expired. Please reconnect.",
            "429": "Too many Gmail requests. Please try again later.",
            "500": "Gmail service temporarily unavailable.",
        }
        return error_mappings.get(error_code, f"Gmail error: {error_message}")

    async def _request(
        self,
        method: str,
        path: str,
        access_token: str,
        operation: str,
        params: dict | None = None,
        body: dict | None = None,
    ) -> dict:
        url = f"{GMAIL_API_BASE_URL}/users/{GMAIL_USER_ID}/{path}"
        headers = self._get_auth_headers(access_token)
        data = json.dumps(body) if body is not None else None

        try:
            response = await asyncio.to_thread(
                self._session.request,
                method,
                url,
                headers=headers,
                params=params,
                data=data,
                timeout=REQUEST_TIMEOUT,
            )
        except requests.RequestException as e:
            logger.error("Gmail API transport error", operation=operation, error=str(e))
            raise GoogleGmailError(f"Gmail request failed: {e}") from e

        return self._handle_api_response(response, operation)

    async def list_messages(
        self,
        access_token: str,
        max_results: int = 50,
        label_ids: list[str] | None = None,
        query: str | None = None,
        page_token: str | None = None,
    ) -> MessagePage:
        """
        List message ids for a label or query.

        Args:
            access_token: Valid OAuth access token
            max_results: Page size (Gmail caps this at 500)
            label_ids: Label ids to filter by
            query: Gmail search query, e.g. "in:inbox before:2024/01/31"
            page_token: Continuation from a previous call

        Returns:
            MessagePage with ids and the next page token (None when exhausted)
        """
        params: dict[str, Any] = {"maxResults": min(max_results, 500)}
        if label_ids:
            params["labelIds"] = label_ids
        if query:
            params["q"] = query
        if page_token:
            params["pageToken"] = page_token

        logger.debug(
            "Listing Gmail messages",
            max_results=max_results,
            label_ids=label_ids,
            query=query,
            has_page_token=bool(page_token),
        )

        data = await self._request("GET", "messages", access_token, "list_messages", params=params)
        return MessagePage(
            message_ids=[m["id"] for m in data.get("messages", []) if m.get("id")],
            next_page_token=data.get("nextPageToken"),
        )

    async def get_message(
        self, access_token: str, message_id: str, format: str = "full"
    ) -> GmailMessage:
        """Fetch a message by id ("full", "metadata" or "minimal")."""
        data = await self._request(
            "GET",
            f"messages/{message_id}",
            access_token,
            "get_message",
            params={"format": format},
        )
        return GmailMessage(data)

    async def modify_message(
        self,
        access_token: str,
        message_id: str,
        add_label_ids: list[str] | None = None,
        remove_label_ids: list[str] | None = None,
    ) -> GmailMessage:
        """
        Add and remove labels in one call.

        Raises:
            GoogleGmailError: If modifying message fails
        """
        body = {}
        if add_label_ids:
            body["addLabelIds"] = add_label_ids
        if remove_label_ids:
            body["removeLabelIds"] = remove_label_ids

        logger.info(
            "Modifying Gmail message",
            message_id=message_id,
            add_labels=add_label_ids,
            remove_labels=remove_label_ids,
        )

        data = await self._request(
            "POST", f"messages/{message_id}/modify", access_token, "modify_message", body=body
        )
        return GmailMessage(data)

    async def get_labels(self, access_token: str) -> list[GmailLabel]:
        data = await self._request("GET", "labels", access_token, "get_labels")
        return [GmailLabel(label_data) for label_data in data.get("labels", [])]

    async def list_history(
        self, access_token: str, start_history_id: str, page_token: str | None = None
    ) -> HistoryPage:
        """
        One page of history.list since start_history_id.

        A 404 here means the start id is too old; callers reset their state.
        """
        params: dict[str, Any] = {"startHistoryId": start_history_id}
        if page_token:
            params["pageToken"] = page_token

        data = await self._request("GET", "history", access_token, "list_history", params=params)
        return HistoryPage(
            changes=parse_history_records(data.get("history", [])),
            history_id=data.get("historyId"),
            next_page_token=data.get("nextPageToken"),
        )

    async def watch(
        self, access_token: str, topic_name: str, label_ids: list[str] | None = None
    ) -> dict:
        """Register push notifications. Returns {"historyId", "expiration"}."""
        body = {"topicName": topic_name, "labelIds": label_ids or ["INBOX"]}
        return await self._request("POST", "watch", access_token, "watch", body=body)

    async def stop_watch(self, access_token: str) -> None:
        await self._request("POST", "stop", access_token, "stop_watch")

    async def get_profile(self, access_token: str) -> dict:
        return await self._request("GET", "profile", access_token, "get_profile")


# Singleton instance for application use
google_gmail_service = GoogleGmailService()
