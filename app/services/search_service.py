"""
Search over the item cache: fuzzy, semantic, merged, and typeahead suggestions.

Fuzzy scores are distances (lower is better); semantic scores are cosine
similarities (higher is better). The merged search maps fuzzy-only hits into
a middle band of the semantic scale so both can share one ranking.
"""

import re
from collections import Counter

from rapidfuzz import fuzz

from app.config import settings
from app.db.helpers import DatabaseError
from app.infrastructure.observability.logging import get_logger
from app.models.domain.kanban_domain import CachedItem, SearchHit, Suggestion
from app.repositories.email_item_repository import EmailItemRepository
from app.services.kanban_errors import UpstreamFailureError
from app.services.openai_service import OpenAIServiceError, openai_service
from app.services.vector_index_service import vector_index_service

logger = get_logger(__name__)

# (attribute, weight) in descending importance
FUZZY_FIELDS = (
    ("subject", 0.6),
    ("sender_name", 0.5),
    ("sender_email", 0.5),
    ("snippet", 0.3),
    ("summary", 0.2),
)
# A field matches when its distance is at most this
FUZZY_MATCH_THRESHOLD = 0.45
MIN_FIELD_DISTANCE = 0.001
MIN_QUERY_CHARS = 2

# Band that fuzzy-only hits occupy on the 0..1 semantic scale
FUZZY_BAND_HIGH = 0.70
FUZZY_BAND_LOW = 0.35

SUGGESTION_SOURCE_LIMIT = 50
MAX_CONTACT_SUGGESTIONS = 2
MAX_SUBJECT_SUGGESTIONS = 2
SUBJECT_DISPLAY_CHARS = 50


def fuzzy_score(item: CachedItem, query: str) -> float | None:
    """
    Weighted distance of an item from a lowercased query, or None if no field matches.

    Each matching field contributes distance ** (weight / total matched
    weight), so the result is a weighted geometric mean in (0, 1].
    """
    matched: list[tuple[float, float]] = []
    for attribute, weight in FUZZY_FIELDS:
        value = getattr(item, attribute)
        if not value:
            continue
        distance = 1 - fuzz.partial_ratio(query, value.lower()) / 100
        if distance <= FUZZY_MATCH_THRESHOLD:
            matched.append((distance, weight))

    if not matched:
        return None

    total_weight = sum(weight for _, weight in matched)
    score = 1.0
    for distance, weight in matched:
        score *= max(distance, MIN_FIELD_DISTANCE) ** (weight / total_weight)
    return score


def fuzzy_to_semantic_scale(score: float) -> float:
    """Map a fuzzy distance onto the similarity scale, clamped to the middle band."""
    converted = FUZZY_BAND_HIGH - score * (FUZZY_BAND_HIGH - FUZZY_BAND_LOW)
    return min(FUZZY_BAND_HIGH, max(FUZZY_BAND_LOW, converted))


def merge_results(semantic: list[SearchHit], fuzzy: list[SearchHit], limit: int) -> list[SearchHit]:
    """
    Union of both result sets, one entry per message, best first.

    Semantic hits win duplicates. sorted() is stable and semantic hits go in
    first, so they also win ties.
    """
    seen = {hit.item.message_id for hit in semantic}
    combined = list(semantic)
    for hit in fuzzy:
        if hit.item.message_id in seen:
            continue
        seen.add(hit.item.message_id)
        combined.append(SearchHit(item=hit.item, score=fuzzy_to_semantic_scale(hit.score), source="fuzzy"))
    return sorted(combined, key=lambda hit: hit.score, reverse=True)[:limit]


def _display_subject(subject: str) -> str:
    if len(subject) > SUBJECT_DISPLAY_CHARS:
        return subject[:SUBJECT_DISPLAY_CHARS] + "..."
    return subject


def contact_suggestions(items: list[CachedItem], query: str) -> list[Suggestion]:
    """Known senders, prefix matches ahead of substring matches."""
    contacts: dict[str, str] = {}
    for item in items:
        email = (item.sender_email or "").lower()
        if email and email not in contacts:
            contacts[email] = item.sender_name or email

    prefix: list[Suggestion] = []
    partial: list[Suggestion] = []
    for email, name in contacts.items():
        suggestion = Suggestion(type="contact", text=name, value=email)
        lowered = name.lower()
        if lowered.startswith(query) or email.startswith(query):
            prefix.append(suggestion)
        elif query in lowered or query in email:
            partial.append(suggestion)
    return (prefix + partial)[:MAX_CONTACT_SUGGESTIONS]


def subject_suggestions(matching: list[CachedItem], query: str) -> list[Suggestion]:
    seen: set[str] = set()
    suggestions: list[Suggestion] = []
    for item in matching:
        subject = item.subject
        if not subject or query not in subject.lower() or subject.lower() in seen:
            continue
        seen.add(subject.lower())
        suggestions.append(Suggestion(type="subject", text=_display_subject(subject), value=subject))
        if len(suggestions) >= MAX_SUBJECT_SUGGESTIONS:
            break
    return suggestions


def keyword_suggestions(matching: list[CachedItem], query: str, slots: int) -> list[Suggestion]:
    """Words containing the query, prefix matches first, then by frequency."""
    pattern = re.compile(rf"\b([\w-]*{re.escape(query)}[\w-]*)\b", re.IGNORECASE)
    counts: Counter[str] = Counter()
    for item in matching:
        text = f"{item.subject or ''} {item.snippet or ''}"
        for match in pattern.findall(text):
            word = match.lower()
            if len(word) >= 3 and word != query:
                counts[word] += 1

    # Counter preserves first-seen order, and sorted() keeps it for equal keys
    ranked = sorted(
        counts.items(),
        key=lambda entry: (-(2 if entry[0].startswith(query) else 0), -entry[1]),
    )
    return [Suggestion(type="keyword", text=word, value=word) for word, _ in ranked[:slots]]


class SearchService:
    def __init__(self, items=None, ai=None, index=None):
        self.items = items or EmailItemRepository
        self.ai = ai or openai_service
        self.index = index or vector_index_service

    async def search_fuzzy(self, user_id: str, text: str, limit: int = 20) -> list[SearchHit]:
        """Typo-tolerant match over the most recent cached items, best (lowest) score first."""
        query = (text or "").strip().lower()
        if len(query) < MIN_QUERY_CHARS:
            return []

        window = await self.items.recent_items(user_id, settings.SEARCH_WINDOW_SIZE)
        hits = []
        for item in window:
            score = fuzzy_score(item, query)
            if score is not None:
                hits.append(SearchHit(item=item, score=score, source="fuzzy"))

        hits.sort(key=lambda hit: hit.score)
        return hits[:limit]

    async def search_semantic(self, user_id: str, text: str, limit: int = 20) -> list[SearchHit]:
        """
        Vector search, retried once at a lower threshold when nothing clears the first.

        Hits are re-read from the cache; vectors whose item is gone are dropped.

        Raises:
            UpstreamFailureError: embedding or vector lookup failed
        """
        query = (text or "").strip()
        if not query:
            return []

        try:
            vector = await self.ai.generate_query_embedding(query)
            k = limit * 2
            matches = await self.index.search_similar(
                user_id, vector, k=k, min_score=settings.SEMANTIC_PRIMARY_THRESHOLD
            )
            if not matches:
                logger.info(
                    "No semantic matches at primary threshold, retrying lower",
                    user_id=user_id,
                    threshold=settings.SEMANTIC_FALLBACK_THRESHOLD,
                )
                matches = await self.index.search_similar(
                    user_id, vector, k=k, min_score=settings.SEMANTIC_FALLBACK_THRESHOLD
                )
        except (OpenAIServiceError, DatabaseError) as e:
            logger.error("Semantic search failed", user_id=user_id, error=str(e))
            raise UpstreamFailureError("Semantic search is unavailable") from e

        cached = await self.items.get_many(user_id, [match.message_id for match in matches])
        hits = []
        for match in matches:
            item = cached.get(match.message_id)
            if item is None:
                continue
            hits.append(SearchHit(item=item, score=min(1.0, max(0.0, match.score)), source="semantic"))
        return hits[:limit]

    async def search(self, user_id: str, text: str, limit: int = 20) -> list[SearchHit]:
        """Semantic plus fuzzy, merged into one descending ranking. Falls back to fuzzy alone."""
        fuzzy = await self.search_fuzzy(user_id, text, limit)
        try:
            semantic = await self.search_semantic(user_id, text, limit)
        except (UpstreamFailureError, DatabaseError) as e:
            logger.warning(
                "Falling back to fuzzy search",
                user_id=user_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return fuzzy

        merged = merge_results(semantic, fuzzy, limit)
        logger.info(
            "Combined search",
            user_id=user_id,
            semantic=len(semantic),
            fuzzy=len(fuzzy),
            returned=len(merged),
        )
        return merged

    async def get_suggestions(self, user_id: str, partial: str, limit: int = 5) -> list[Suggestion]:
        """Typeahead: contacts, then subjects, then keywords, at most `limit` in all."""
        query = (partial or "").strip().lower()
        if len(query) < MIN_QUERY_CHARS:
            return []

        window = await self.items.recent_items(user_id, settings.SEARCH_WINDOW_SIZE)
        matching = [
            item
            for item in window
            if query in (item.subject or "").lower() or query in (item.snippet or "").lower()
        ][:SUGGESTION_SOURCE_LIMIT]

        contacts = contact_suggestions(window, query)
        subjects = subject_suggestions(matching, query)
        slots = max(1, limit - len(contacts) - len(subjects))
        keywords = keyword_suggestions(matching, query, slots)

        return (contacts + subjects + keywords)[:limit]


search_service = SearchService()
