"""Content pipeline: runs one background task against its link or note.

Stages:
- link_metadata / refresh_link_content: fetch page, extract metadata (and
  full content on refresh), persist
- link_embeddings: one embedding from title + description, no chunks
- note_embeddings / refresh_note_content: chunk, embed each chunk, store the
  normalized mean as the note's embedding

Every stage replaces what was stored before. Failures are raised as
TaskError subclasses so the dispatcher knows whether to retry.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from typing import TYPE_CHECKING, Any

from linkvault.core.chunking import Chunk, chunk_id, chunk_text
from linkvault.core.content_extractor import count_words, extract_full_content, extract_link_metadata
from linkvault.core.content_fetcher import (
    EXTRACTION_TIMEOUT,
    METADATA_TIMEOUT,
    ContentFetcher,
    FetchResult,
)
from linkvault.core.embedding_providers import EmbeddingError, EmbeddingProvider, EmbeddingResult
from linkvault.core.embeddings import average_embeddings
from linkvault.core.errors import (
    ConfigurationError,
    ContentTooShortError,
    EntityNotFoundError,
    TaskError,
    TransientError,
    ValidationError,
)
from linkvault.core.task_queue import (
    EmbeddingPayload,
    EmbeddingResultSummary,
    LinkContentPayload,
    MetadataResult,
    Task,
    TaskType,
)

if TYPE_CHECKING:
    from linkvault.core.storage import DB

logger = logging.getLogger(__name__)

MIN_LINK_TEXT_LENGTH = 10
MIN_NOTE_TEXT_LENGTH = 50
NOTE_MIN_CHUNK_SIZE = 50


def _raise_for_fetch(url: str, result: FetchResult) -> None:
    message = f"Failed to fetch {url}: {result.error_message}"
    if result.retriable:
        raise TransientError(message)
    raise TaskError(message, retriable=False)


class ContentPipeline:
    """Runs pipeline stages for tasks. One instance can serve many tasks."""

    def __init__(
        self,
        db: DB,
        provider: EmbeddingProvider,
        fetcher: ContentFetcher | None = None,
    ) -> None:
        self.db = db
        self.provider = provider
        self.fetcher = fetcher or ContentFetcher()

    async def close(self) -> None:
        await self.fetcher.close()

    async def run(self, task: Task) -> dict[str, Any]:
        """Run the stage for ``task`` and return its result as a dict."""
        payload = task.typed_payload()

        if task.task_type in (TaskType.LINK_METADATA, TaskType.REFRESH_LINK_CONTENT):
            assert isinstance(payload, LinkContentPayload)
            result = await self.refresh_link(
                task, payload, full_content=task.task_type == TaskType.REFRESH_LINK_CONTENT
            )
        elif task.task_type == TaskType.LINK_EMBEDDINGS:
            result = await self.embed_link(task)
        elif task.task_type in (TaskType.NOTE_EMBEDDINGS, TaskType.REFRESH_NOTE_CONTENT):
            assert isinstance(payload, EmbeddingPayload)
            result = await self.embed_note(task, payload)
        else:
            raise ValidationError(f"Unknown task type: {task.task_type}")
        return result.to_dict()

    # ==================== Links ====================

    async def refresh_link(self, task: Task, payload: LinkContentPayload, full_content: bool) -> MetadataResult:
        link = self.db.get_link(task.entity_id)
        if link is None:
            raise EntityNotFoundError("link", task.entity_id)

        url = payload.url or link.url
        timeout = EXTRACTION_TIMEOUT if full_content else METADATA_TIMEOUT
        logger.info(f"Fetching {'content' if full_content else 'metadata'} for link {link.id}: {url}")

        fetched = await self.fetcher.fetch(url, timeout=timeout)
        if not fetched.success:
            _raise_for_fetch(url, fetched)
        page_url = fetched.final_url or url

        # BeautifulSoup parsing is CPU-bound
        loop = asyncio.get_running_loop()
        metadata = await loop.run_in_executor(None, extract_link_metadata, fetched.html, page_url)

        if not full_content:
            self.db.save_link_metadata(link.id, metadata.to_dict())
            return MetadataResult(
                success=True,
                has_title=bool(metadata.title),
                has_description=bool(metadata.description),
            )

        extracted = await loop.run_in_executor(None, extract_full_content, fetched.html, page_url)
        self.db.save_link_content(
            link.id,
            metadata=metadata.to_dict(),
            full_content=extracted.full_text,
            content_type=extracted.content_type,
            author=extracted.author,
            published_date=extracted.published_date,
            word_count=extracted.word_count,
        )
        return MetadataResult(
            success=True,
            has_title=bool(metadata.title),
            has_description=bool(metadata.description),
            content_type=extracted.content_type,
            word_count=extracted.word_count,
        )

    async def embed_link(self, task: Task) -> EmbeddingResultSummary:
        link = self.db.get_link(task.entity_id)
        if link is None:
            raise EntityNotFoundError("link", task.entity_id)

        title = link.name or link.metadata.get("title") or ""
        description = link.metadata.get("description") or link.description or ""
        text = " ".join(part for part in (title, description) if part).strip()
        if len(text) < MIN_LINK_TEXT_LENGTH:
            raise ContentTooShortError(
                f"Link metadata too short for embeddings (length: {len(text)}). "
                "Title or description is required."
            )

        (result,) = await self._embed([text])
        self.db.save_embedding("link", link.id, result.embedding, result.provider, result.model)
        chunks_saved = self._replace_chunks(link.owner_id, "link", link.id, [], result.model)

        return EmbeddingResultSummary(
            success=True,
            chunks_count=0,
            embedding_dimensions=len(result.embedding),
            provider=result.provider,
            model=result.model,
            chunks_saved=chunks_saved,
        )

    # ==================== Notes ====================

    async def embed_note(self, task: Task, payload: EmbeddingPayload) -> EmbeddingResultSummary:
        note = self.db.get_note(task.entity_id)
        if note is None:
            raise EntityNotFoundError("note", task.entity_id)

        text = f"{note.title}\n\n{note.content}"
        if len(text) < MIN_NOTE_TEXT_LENGTH:
            raise ContentTooShortError(
                f"Note content too short for embeddings (length: {len(text)}, minimum {MIN_NOTE_TEXT_LENGTH})"
            )

        chunks = chunk_text(
            text,
            chunk_size=payload.chunk_size,
            chunk_overlap=payload.chunk_overlap,
            min_chunk_size=NOTE_MIN_CHUNK_SIZE,
            split_by="sentence",
        )
        if not chunks:
            logger.info(f"Note {note.id} too short to chunk, using full text")
            chunks = [Chunk(id=chunk_id(text, 0), text=text, index=0, start_char=0, end_char=len(text))]
        else:
            logger.info(f"Chunked note {note.id} into {len(chunks)} chunk(s) ({len(text)} chars)")

        results = await self._embed([c.text for c in chunks])
        vectors = [r.embedding for r in results]
        aggregate = vectors[0] if len(vectors) == 1 else average_embeddings(vectors)
        provider, model = results[0].provider, results[0].model

        # The aggregate is committed on its own; chunk rows are secondary
        self.db.save_embedding("note", note.id, aggregate, provider, model, word_count=count_words(note.content))
        chunks_saved = self._replace_chunks(note.owner_id, "note", note.id, list(zip(chunks, vectors)), model)

        return EmbeddingResultSummary(
            success=True,
            chunks_count=len(chunks),
            embedding_dimensions=len(aggregate),
            provider=provider,
            model=model,
            chunks_saved=chunks_saved,
        )

    # ==================== Helpers ====================

    async def _embed(self, texts: list[str]) -> list[EmbeddingResult]:
        try:
            results = await self.provider.embed(texts)
        except EmbeddingError as e:
            if e.retriable:
                raise TransientError(f"Embedding failed: {e}") from e
            raise ConfigurationError(f"Embedding failed: {e}") from e

        if len(results) != len(texts):
            raise TransientError(f"Embedding provider returned {len(results)} of {len(texts)} embeddings")
        if len({r.model for r in results}) > 1:
            raise TransientError("Embedding provider mixed models within one request")
        return results

    def _replace_chunks(
        self,
        owner_id: str,
        parent_type: str,
        parent_id: str,
        chunks: list[tuple[Chunk, list[float] | None]],
        model: str,
    ) -> bool:
        try:
            self.db.replace_chunks(owner_id, parent_type, parent_id, chunks, model=model)
        except sqlite3.Error:
            logger.exception(f"Saving chunks for {parent_type} {parent_id} failed; keeping aggregate embedding")
            return False
        return True
