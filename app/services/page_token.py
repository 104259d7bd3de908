"""
Opaque board continuation token.

base64(JSON {"v": 1, "cursor": {...}, "remoteExhausted": {...},
"remotePageToken": {...}}). Anything that fails to decode, or carries a
different version, is treated as "no token" and the board restarts.
"""

import base64
import binascii
import json

from app.infrastructure.observability.logging import get_logger
from app.models.domain.kanban_domain import PageState

logger = get_logger(__name__)

TOKEN_VERSION = 1


def encode_page_token(state: PageState) -> str:
    payload = {
        "v": TOKEN_VERSION,
        "cursor": state.cursor,
        "remoteExhausted": state.remote_exhausted,
        "remotePageToken": state.remote_page_token,
    }
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True)
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def decode_page_token(token: str | None) -> PageState | None:
    """Inverse of encode_page_token. Returns None for absent or unusable tokens."""
    if not token:
        return None

    try:
        raw = base64.b64decode(token.encode("ascii"), validate=True)
        payload = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as e:
        logger.warning("Ignoring malformed page token", error=str(e))
        return None

    if not isinstance(payload, dict) or payload.get("v") != TOKEN_VERSION:
        logger.warning("Ignoring page token with unknown version")
        return None

    cursor = payload.get("cursor") or {}
    exhausted = payload.get("remoteExhausted") or {}
    page_tokens = payload.get("remotePageToken") or {}
    if not all(isinstance(part, dict) for part in (cursor, exhausted, page_tokens)):
        logger.warning("Ignoring page token with malformed maps")
        return None

    return PageState(
        cursor={str(k): (str(v) if v is not None else None) for k, v in cursor.items()},
        remote_exhausted={str(k): bool(v) for k, v in exhausted.items()},
        remote_page_token={str(k): (str(v) if v is not None else None) for k, v in page_tokens.items()},
    )
