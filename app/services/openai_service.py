# app/services/openai_service.py
"""
OpenAI Service for email summaries and embeddings.
Summaries use chat completions; vectors use the embeddings endpoint.
"""

import asyncio
import re
import unicodedata
from dataclasses import dataclass

import openai
from openai import AsyncOpenAI

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.gmail_domain import strip_html

logger = get_logger(__name__)

MAX_INPUT_CHARS = 8000
MAX_RETRIES = 3
EMPTY_SUMMARY = "No content to summarize."
SHORT_QUERY_CHARS = 50

SUMMARY_SYSTEM_PROMPT = (
    "You are an expert email summarizer. Create a concise, professional summary of the "
    "email content. Focus on the main points, key information, and context. "
    "Use 2-4 bullet points for clarity. Keep it brief and informative."
)

_EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_URL_PATTERN = re.compile(r"https?://\S+")
_NOISE_PATTERN = re.compile(r"[^\w\s.,!?;:'-]")
_REPLY_PREFIX = re.compile(r"^(re:|fwd?:|fw:)\s*", re.IGNORECASE)


class OpenAIServiceError(Exception):
    """Base exception for OpenAI service errors."""

    def __init__(self, message: str, recoverable: bool = True):
        super().__init__(message)
        self.recoverable = recoverable


@dataclass(slots=True)
class SummaryResult:
    summary: str
    model: str


def normalize_text(text: str) -> str:
    """Lowercased, address/URL-free text with single-char tokens dropped."""
    if not text:
        return ""
    text = unicodedata.normalize("NFKC", text)
    text = _EMAIL_PATTERN.sub("", text)
    text = _URL_PATTERN.sub("", text)
    text = _NOISE_PATTERN.sub(" ", text)
    words = [word for word in text.split() if len(word) > 1]
    return " ".join(words).strip().lower()


class OpenAIService:
    """
    Thin async wrapper over the OpenAI client.

    The client is created on first use so importing this module never needs
    an API key.
    """

    def __init__(self, client: AsyncOpenAI | None = None):
        self.client = client

    def _initialize_client(self) -> AsyncOpenAI:
        if self.client is not None:
            return self.client

        if not settings.OPENAI_API_KEY:
            raise OpenAIServiceError("OPENAI_API_KEY not configured in settings", recoverable=False)

        try:
            self.client = AsyncOpenAI(
                api_key=settings.OPENAI_API_KEY,
                timeout=settings.OPENAI_TIMEOUT_SECONDS,
            )
        except Exception as e:
            logger.error("Failed to initialize OpenAI client", error=str(e))
            raise OpenAIServiceError(f"OpenAI client initialization failed: {e}") from e

        logger.info(
            "OpenAI client initialized",
            summary_model=settings.OPENAI_MODEL_SUMMARY,
            embedding_model=settings.OPENAI_EMBEDDING_MODEL,
        )
        return self.client

    async def _with_retry(self, operation: str, call):
        """Run an OpenAI call, retrying rate limits, timeouts and 5xx errors."""
        last_error = None

        for attempt in range(MAX_RETRIES):
            try:
                return await call()

            except openai.RateLimitError as e:
                last_error = e
                wait_time = min(2**attempt, 30)
                logger.warning(
                    "OpenAI rate limit hit, retrying",
                    operation=operation,
                    attempt=attempt + 1,
                    wait_time=wait_time,
                )
                if attempt < MAX_RETRIES - 1:
                    await asyncio.sleep(wait_time)

            except openai.APITimeoutError as e:
                last_error = e
                logger.warning("OpenAI API timeout, retrying", operation=operation, attempt=attempt + 1)

            except openai.APIStatusError as e:
                last_error = e
                if 400 <= e.status_code < 500:
                    logger.error("OpenAI client error (not retrying)", operation=operation, error=str(e))
                    break
                logger.warning(
                    "OpenAI API error, retrying", operation=operation, attempt=attempt + 1, error=str(e)
                )

            except openai.APIError as e:
                last_error = e
                logger.warning(
                    "OpenAI API error, retrying", operation=operation, attempt=attempt + 1, error=str(e)
                )

        logger.error(
            "OpenAI API call failed after all retries",
            operation=operation,
            final_error=str(last_error),
        )
        raise OpenAIServiceError(f"OpenAI {operation} failed: {last_error}") from last_error

    async def summarize_email(
        self,
        subject: str | None = None,
        from_email: str | None = None,
        from_name: str | None = None,
        body_html: str | None = None,
        body_text: str | None = None,
    ) -> SummaryResult:
        """
        Summarize an email body into a few bullet points.

        Plain text wins over HTML. Bodies are capped at 8000 characters and an
        empty body short-circuits without calling the API.
        """
        model = settings.OPENAI_MODEL_SUMMARY
        raw_text = (body_text or "").strip() or (strip_html(body_html) if body_html else "")
        safe_text = raw_text[:MAX_INPUT_CHARS]

        if not safe_text:
            return SummaryResult(summary=EMPTY_SUMMARY, model=model)

        client = self._initialize_client()
        user_message = "\n".join(
            [
                f"From: {from_name or ''} <{from_email or ''}>",
                f"Subject: {subject or ''}",
                f"Body: {safe_text}",
            ]
        )

        response = await self._with_retry(
            "summarize",
            lambda: client.chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                    {"role": "user", "content": user_message},
                ],
                temperature=0.2,
            ),
        )

        content = response.choices[0].message.content if response.choices else None
        summary = (content or "").strip() or "Summary unavailable."
        return SummaryResult(summary=summary, model=model)

    async def generate_embedding(self, text: str) -> list[float]:
        """Embed normalized text. Raises OpenAIServiceError on empty input."""
        if not text or not text.strip():
            raise OpenAIServiceError("Text cannot be empty for embedding generation", recoverable=False)

        truncated = normalize_text(text)[:MAX_INPUT_CHARS]
        if not truncated:
            raise OpenAIServiceError("Text is empty after normalization", recoverable=False)

        client = self._initialize_client()
        response = await self._with_retry(
            "embedding",
            lambda: client.embeddings.create(
                model=settings.OPENAI_EMBEDDING_MODEL,
                input=truncated,
            ),
        )
        return list(response.data[0].embedding)

    async def generate_email_embedding(
        self,
        subject: str | None = None,
        from_name: str | None = None,
        snippet: str | None = None,
        summary: str | None = None,
    ) -> list[float]:
        """
        Embed an email as a structured document.

        Sender, then the subject twice (as Subject and Topic), then summary,
        then the snippet. Falls back to plain concatenation.
        """
        parts: list[str] = []

        if from_name:
            parts.append(f"From: {from_name}")

        if subject:
            clean_subject = _REPLY_PREFIX.sub("", subject).strip()
            if clean_subject:
                parts.append(f"Subject: {clean_subject}")
                parts.append(f"Topic: {clean_subject}")

        if summary and summary != EMPTY_SUMMARY:
            parts.append(f"Summary: {summary}")

        if snippet:
            clean_snippet = normalize_text(snippet)
            if len(clean_snippet) > 20:
                parts.append(f"Content: {clean_snippet}")

        text = ". ".join(parts).strip()
        if not text:
            text = " ".join(p for p in (subject, from_name, snippet, summary) if p)

        return await self.generate_embedding(text)

    async def generate_query_embedding(self, query: str) -> list[float]:
        """Embed a search query; short queries are wrapped in search-intent text."""
        if not query or not query.strip():
            raise OpenAIServiceError("Query cannot be empty", recoverable=False)

        normalized = query.strip().lower()
        enriched = normalized
        if len(normalized) < SHORT_QUERY_CHARS:
            enriched = (
                f"Email search query: {normalized}. "
                f"Looking for emails about: {normalized}. Topic: {normalized}"
            )
        return await self.generate_embedding(enriched)


# Singleton instance for application use
openai_service = OpenAIService()
