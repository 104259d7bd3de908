"""
Gmail label catalog: cached listing, name -> id resolution and validation.

The catalog is cached per user in Redis for a few minutes; a Redis miss or
outage simply means one more labels.list call.
"""

import json

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.gmail_domain import (
    INBOX_QUERY,
    SYSTEM_LABEL_IDS,
    VIRTUAL_LABEL_QUERIES,
    GmailLabel,
)
from app.services.google_gmail_service import GoogleGmailError, google_gmail_service
from app.services.kanban_errors import UpstreamFailureError
from app.services.redis_client import fast_redis
from app.services.token_service import TokenServiceError, token_service

logger = get_logger(__name__)

# Sidebar order; listed even when labels.list omits them
DISPLAY_SYSTEM_LABELS = (
    "INBOX",
    "STARRED",
    "SENT",
    "DRAFT",
    "IMPORTANT",
    "SPAM",
    "TRASH",
    "UNREAD",
    "CATEGORY_SOCIAL",
    "CATEGORY_PROMOTIONS",
    "CATEGORY_UPDATES",
)

VIRTUAL_LABEL_NAMES = {"SNOOZED": "Snoozed", "SCHEDULED": "Scheduled", "ALL_MAIL": "All Mail"}


def list_params_for_label(label_id: str) -> tuple[list[str] | None, str | None]:
    """
    (label_ids, query) for messages.list on a column's label.

    INBOX maps to the primary category only; virtual labels are queries.
    """
    if label_id == "INBOX":
        return None, INBOX_QUERY
    if label_id in VIRTUAL_LABEL_QUERIES:
        return None, VIRTUAL_LABEL_QUERIES[label_id]
    return [label_id], None


def is_passthrough_label(label: str) -> bool:
    """System, virtual and raw user label ids need no catalog lookup."""
    return label in SYSTEM_LABEL_IDS or label in VIRTUAL_LABEL_QUERIES or label.startswith("Label_")


class LabelService:
    def __init__(self, gmail=None, cache=None, tokens=None):
        self.gmail = gmail or google_gmail_service
        self.cache = cache or fast_redis
        self.tokens = tokens or token_service

    @staticmethod
    def _cache_key(user_id: str) -> str:
        return f"gmail:labels:{user_id}"

    async def get_catalog(self, user_id: str, access_token: str) -> list[GmailLabel]:
        """Live Gmail labels for the user, cached briefly."""
        cached = await self.cache.get(self._cache_key(user_id))
        if cached:
            try:
                return [GmailLabel(entry) for entry in json.loads(cached)]
            except ValueError:
                logger.warning("Discarding unreadable label cache", user_id=user_id)

        labels = await self.gmail.get_labels(access_token)
        await self.cache.set_with_ttl(
            self._cache_key(user_id),
            json.dumps([label.raw_data for label in labels]),
            settings.LABEL_CATALOG_CACHE_TTL_SECONDS,
        )
        return labels

    async def resolve_label_id(self, user_id: str, access_token: str, label: str) -> str | None:
        """
        Map a column's label (name or id) to a Gmail label id.

        Returns None when a user label name is not in the catalog.
        """
        label = label.strip()
        if not label:
            return None
        if is_passthrough_label(label):
            return label

        lowered = label.lower()
        for entry in await self.get_catalog(user_id, access_token):
            if entry.name and entry.name.lower() == lowered:
                return entry.id
            if entry.id == label:
                return entry.id
        return None

    async def get_available_labels(self, user_id: str) -> list[dict]:
        """
        Labels a column can bind to: live labels, any missing system
        labels, then the virtual query labels. System labels sort first.
        """
        try:
            access_token = await self.tokens.get_valid_access_token(user_id)
            live = await self.get_catalog(user_id, access_token)
        except (TokenServiceError, GoogleGmailError) as e:
            logger.error("Failed to fetch Gmail labels", user_id=user_id, error=str(e))
            raise UpstreamFailureError("Failed to fetch Gmail labels") from e

        labels = [
            {"id": entry.id, "name": entry.name, "type": entry.type or "user"}
            for entry in live
            if entry.id and entry.name
        ]
        existing = {entry["name"].upper() for entry in labels}
        for system_id in DISPLAY_SYSTEM_LABELS:
            if system_id not in existing:
                labels.append({"id": system_id, "name": system_id, "type": "system"})
        for virtual_id, name in VIRTUAL_LABEL_NAMES.items():
            labels.append({"id": virtual_id, "name": name, "type": "virtual"})

        return sorted(labels, key=lambda entry: (entry["type"] != "system", entry["name"].lower()))

    async def validate_label(self, user_id: str, label_name: str) -> dict:
        trimmed = (label_name or "").strip()
        if not trimmed:
            return {"valid": True, "message": "Empty label (Archive column - removes INBOX)"}

        if trimmed in SYSTEM_LABEL_IDS:
            return {"valid": True, "message": f"System label: {trimmed}"}
        if trimmed in VIRTUAL_LABEL_QUERIES:
            return {"valid": True, "message": f"Virtual label: {trimmed} (uses Gmail search query)"}

        try:
            labels = await self.get_available_labels(user_id)
        except UpstreamFailureError:
            return {
                "valid": False,
                "message": "Failed to validate label",
                "hint": "The label will be used as-is.",
            }

        lowered = trimmed.lower()
        for entry in labels:
            if entry["name"].lower() == lowered:
                return {
                    "valid": True,
                    "message": f"Label exists: {entry['name']}",
                    "actualName": entry["name"],
                }

        similar = [entry["name"] for entry in labels if lowered in entry["name"].lower()][:3]
        result = {
            "valid": False,
            "message": f'Label "{trimmed}" not found in Gmail',
            "hint": "The label will be used as-is. Create it in Gmail first for best results.",
        }
        if similar:
            result["suggestions"] = similar
        return result


label_service = LabelService()
