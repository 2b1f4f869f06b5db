# mail_indexer/services/openai_service.py
"""
OpenAI Service for message summarization and embeddings.
Handles text cleaning, dense embeddings, map-reduce summarization, note
rollup summaries and attachment analysis (image, PDF, generic).
"""

import asyncio
import base64
import io
import re
from collections.abc import Awaitable, Callable
from typing import Any

import openai
from bs4 import BeautifulSoup
from openai import AsyncOpenAI
from pypdf import PdfReader

from mail_indexer.config import settings
from mail_indexer.features.ingestion.domain.models import DayNote, SparseValues
from mail_indexer.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SparseEncoder = Callable[[str, str], Awaitable[SparseValues]]

TEXT_LIKE_CONTENT_TYPES = (
    "text/",
    "application/json",
    "application/xml",
    "application/csv",
    "application/x-yaml",
)


class OpenAIServiceError(Exception):
    """Base exception for OpenAI service errors."""

    def __init__(self, message: str, api_error: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.api_error = api_error
        self.recoverable = recoverable


def clean_text(html_or_text: str | None) -> str:
    """Strip markup from an email body and collapse whitespace."""
    if not html_or_text:
        return ""

    soup = BeautifulSoup(html_or_text, "html.parser")
    for tag in soup(["script", "style", "head"]):
        tag.decompose()

    text = soup.get_text(separator=" ")
    return re.sub(r"\s+", " ", text).strip()


def format_note_line(note: DayNote) -> str:
    sender = f"{note.from_} → " if note.from_ else ""
    return f"- [{note.date_iso}] {sender}{', '.join(note.to)} :: {note.subject} :: {note.excerpt}"


def chunk_with_overlap(text: str, size: int, overlap: int) -> list[str]:
    """Split text into windows of `size` chars, each starting `overlap` chars before the previous end."""
    chunks = []
    start = 0
    while start < len(text):
        end = min(len(text), start + size)
        chunks.append(text[start:end])
        if end >= len(text):
            break
        next_start = end - overlap
        start = next_start if next_start > start else end
    return chunks


class OpenAIService:
    """
    Text service backed by OpenAI.

    Dense embeddings and all summaries come from OpenAI; sparse embeddings
    are delegated to the injected sparse encoder (Pinecone inference).
    """

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        sparse_encoder: SparseEncoder | None = None,
    ):
        self.client = client
        self.sparse_encoder = sparse_encoder

    def _get_client(self) -> AsyncOpenAI:
        if self.client is None:
            if not settings.OPENAI_API_KEY:
                raise OpenAIServiceError("OPENAI_API_KEY not configured in settings", recoverable=False)

            self.client = AsyncOpenAI(
                api_key=settings.OPENAI_API_KEY,
                timeout=settings.OPENAI_TIMEOUT_SECONDS,
            )
            logger.info(
                "OpenAI client initialized",
                text_model=settings.OPENAI_TEXT_MODEL,
                embed_model=settings.OPENAI_EMBED_MODEL,
            )
        return self.client

    # =================================================================
    # EMBEDDINGS
    # =================================================================

    async def embed_text(self, text: str) -> list[float]:
        trimmed = text[: settings.OPENAI_EMBED_MAX_CHARS]

        async def call() -> list[float]:
            response = await self._get_client().embeddings.create(
                model=settings.OPENAI_EMBED_MODEL,
                input=trimmed,
            )
            if not response.data or not response.data[0].embedding:
                raise OpenAIServiceError("Empty embedding response from OpenAI")
            return list(response.data[0].embedding)

        return await self._call_openai_with_retry(call, operation="embed_text")

    async def embed_sparse(self, text: str, input_type: str = "passage") -> SparseValues:
        """Sparse embedding; empty when no encoder is configured or the text is blank."""
        if self.sparse_encoder is None or not text.strip():
            return SparseValues(indices=[], values=[])
        return await self.sparse_encoder(text, input_type)

    # =================================================================
    # SUMMARIZATION
    # =================================================================

    async def summarize_text(self, text: str, hint: str | None = None) -> str:
        prompt = f"{hint}\n\n{text}" if hint else text
        return await self._complete([{"role": "user", "content": prompt}], operation="summarize_text")

    async def summarize_long_text(self, text: str, hint: str | None = None) -> str:
        """
        Summarize arbitrary-length text.

        Text up to RAW_CHUNK_CHARS is summarized directly; longer text is
        split into overlapping chunks, each chunk summarized (map) and the
        partials merged and deduplicated (reduce). The result is capped at
        FINAL_SUMMARY_MAX_CHARS.
        """
        cap = settings.FINAL_SUMMARY_MAX_CHARS

        def map_prompt(chunk: str) -> str:
            lines = [
                "Summarize the following into tight bullets, one idea per line; "
                "include dates, actors, and actions when present.",
                "After bullets, include one short executive paragraph and up to 8 concise tags.",
            ]
            if hint:
                lines.append(f"Hint: {hint}")
            lines.extend(["", chunk])
            return "\n".join(lines)

        if len(text) <= settings.RAW_CHUNK_CHARS:
            summary = await self.summarize_text(map_prompt(text))
            return summary[:cap]

        chunks = chunk_with_overlap(text, settings.RAW_CHUNK_CHARS, settings.CHUNK_OVERLAP_CHARS)
        logger.debug("Map-reduce summarization", chunks=len(chunks), text_length=len(text))

        partials = []
        for chunk in chunks:
            partials.append(await self.summarize_text(map_prompt(chunk), "Chunk summary"))

        final = await self.summarize_text(
            "\n\n".join(partials),
            "Combine and deduplicate the chunk summaries into bullets + a short paragraph + tags.",
        )
        return final[:cap]

    async def summarize_notes(self, notes: list[DayNote], hint: str | None = None) -> str:
        """Summarize a set of day notes, chunking at SUMMARY_NOTES_PER_CHUNK."""
        lines = [format_note_line(note) for note in notes]
        per_chunk = max(1, settings.SUMMARY_NOTES_PER_CHUNK)

        def make_prompt(chunk_lines: list[str]) -> str:
            parts = [
                "Summarize these email snippets into:",
                "1) 3-7 bullet points (actionable).",
                "2) 1 short executive paragraph.",
                "3) Up to 8 searchable tags.",
            ]
            if hint:
                parts.append(f"Hint: {hint}")
            parts.append("")
            parts.extend(chunk_lines)
            return "\n".join(parts)

        if len(lines) <= per_chunk:
            return await self.summarize_text(make_prompt(lines))

        partials = []
        for i in range(0, len(lines), per_chunk):
            partials.append(await self.summarize_text(make_prompt(lines[i : i + per_chunk]), "Chunk summary"))

        return await self.summarize_text(
            "\n\n".join(partials),
            "Combine and deduplicate the following chunk summaries into the same output "
            "format (bullets, paragraph, tags).",
        )

    # =================================================================
    # ATTACHMENT ANALYSIS
    # =================================================================

    async def analyze_attachment(
        self, content: bytes, content_type: str | None, filename: str
    ) -> str:
        """Dispatch to the analyzer for the attachment's content type."""
        mime = (content_type or "").lower()
        if mime.startswith("image/"):
            return await self.analyze_image(content, mime, filename)
        if mime == "application/pdf":
            return await self.analyze_pdf(content, filename)
        return await self.analyze_generic(content, mime, filename)

    async def analyze_image(self, content: bytes, mime: str, filename: str) -> str:
        data_url = f"data:{mime};base64,{base64.b64encode(content).decode('ascii')}"
        messages = [
            {
                "role": "user",
                "content": [
                    {
                        "type": "text",
                        "text": f'Summarize file "{filename}". Extract key topics, action items, and tags.',
                    },
                    {"type": "image_url", "image_url": {"url": data_url}},
                ],
            }
        ]
        return await self._complete(messages, operation="analyze_image")

    async def analyze_pdf(self, content: bytes, filename: str) -> str:
        text = await asyncio.to_thread(_extract_pdf_text, content)
        if not text:
            return f"No extractable text found in {filename}."

        hint = (
            f'You are analyzing PDF "{filename}". Provide a concise summary, key topics, '
            "action items, and tags."
        )
        max_chars = settings.PDF_SUMMARY_CHARS
        if len(text) <= max_chars:
            return await self.summarize_text(text, hint)

        partials = []
        for i in range(0, len(text), max_chars):
            partials.append(
                await self.summarize_text(text[i : i + max_chars], f"Chunk summary for {filename}")
            )
        return await self.summarize_text(
            "\n\n".join(partials),
            f"Synthesize final summary for {filename}. Merge, deduplicate, and format as "
            "bullets, paragraph, and tags.",
        )

    async def analyze_generic(self, content: bytes, mime: str, filename: str) -> str:
        if mime.startswith(TEXT_LIKE_CONTENT_TYPES) or mime == "text/html":
            decoded = content.decode("utf-8", errors="replace")
            text = clean_text(decoded) if "html" in mime else decoded.strip()
            if text:
                return await self.summarize_long_text(
                    text, f'Attachment "{filename}" ({mime or "unknown type"})'
                )

        return (
            f'Attachment "{filename}" of type {mime or "unknown"}, {len(content)} bytes. '
            "No text content extracted."
        )

    # =================================================================
    # OPENAI CALLS
    # =================================================================

    async def _complete(self, messages: list[dict[str, Any]], operation: str) -> str:
        async def call() -> str:
            response = await self._get_client().chat.completions.create(
                model=settings.OPENAI_TEXT_MODEL,
                messages=messages,
            )
            if not response.choices or response.choices[0].message.content is None:
                raise OpenAIServiceError("Empty response from OpenAI API")
            return response.choices[0].message.content.strip()

        return await self._call_openai_with_retry(call, operation=operation)

    async def _call_openai_with_retry(self, call: Callable[[], Awaitable[Any]], operation: str) -> Any:
        """Call OpenAI with retry logic for transient failures."""

        last_error = None
        max_retries = max(1, settings.OPENAI_MAX_RETRIES)

        for attempt in range(max_retries):
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
                    error=str(e),
                )

                if attempt < max_retries - 1:
                    await asyncio.sleep(wait_time)

            except openai.APITimeoutError as e:
                last_error = e
                logger.warning(
                    "OpenAI API timeout, retrying",
                    operation=operation,
                    attempt=attempt + 1,
                    error=str(e),
                )

            except openai.APIStatusError as e:
                last_error = e
                # Don't retry on client errors (4xx)
                if 400 <= e.status_code < 500:
                    logger.error(
                        "OpenAI client error (not retrying)", operation=operation, error=str(e)
                    )
                    raise OpenAIServiceError(
                        f"OpenAI {operation} rejected: {e}", api_error=str(e), recoverable=False
                    ) from e

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
            max_retries=max_retries,
            final_error=str(last_error),
        )

        raise OpenAIServiceError(
            f"OpenAI {operation} failed after {max_retries} attempts",
            api_error=str(last_error),
            recoverable=True,
        ) from last_error


def _extract_pdf_text(content: bytes) -> str:
    reader = PdfReader(io.BytesIO(content))
    pages = []
    for page in reader.pages:
        pages.append(page.extract_text() or "")
    return re.sub(r"\s+", " ", " ".join(pages)).strip()
