"""
Rollup summaries over the day note ledger.

Day and thread summaries are refreshed incrementally from what a page
touched; week and month summaries are recomputed from every known day in
the bucket so they always reflect the union of all notes, whichever page
appended them. All summary vectors of one call go out in one dense and one
sparse upsert.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from mail_indexer.features.ingestion.domain.calendar_keys import (
    month_key_from_day_key,
    week_key_from_day_key,
)
from mail_indexer.features.ingestion.domain.models import (
    DayNote,
    SparseRecord,
    SummaryKind,
    VectorRecord,
)
from mail_indexer.features.ingestion.repository.blob_repository import (
    BlobRepository,
    blob_repository,
)
from mail_indexer.features.ingestion.repository.day_note_repository import (
    DayNoteRepository,
    day_note_repository,
)
from mail_indexer.infrastructure.observability.logging import get_logger
from mail_indexer.services.openai_service import OpenAIService
from mail_indexer.services.pinecone_client import PineconeIndexClient

logger = get_logger(__name__)


def build_sparse_record(
    record_id: str, metadata: dict[str, Any], text: str, sparse_values
) -> SparseRecord:
    """Sparse record, falling back to raw text when the sparse embedding is empty."""
    if sparse_values is not None and not sparse_values.is_empty():
        return SparseRecord(id=record_id, metadata=metadata, sparse_values=sparse_values)
    return SparseRecord(id=record_id, metadata=metadata, text=text)


@dataclass(slots=True)
class RollupBatch:
    dense: list[VectorRecord] = field(default_factory=list)
    sparse: list[SparseRecord] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.dense)


class RollupService:
    def __init__(
        self,
        text_service: OpenAIService,
        vector_index: PineconeIndexClient,
        ledger: DayNoteRepository | None = None,
        blobs: BlobRepository | None = None,
    ):
        self.text_service = text_service
        self.vector_index = vector_index
        self.ledger = ledger or day_note_repository
        self.blobs = blobs or blob_repository

    async def apply_page(
        self,
        grant_id: str,
        touched_days: set[str],
        thread_notes: dict[str, list[DayNote]],
    ) -> int:
        """
        Refresh every rollup a page touched.

        Args:
            touched_days: day keys that received notes this page
            thread_notes: thread id -> notes appended this page

        Returns:
            Number of summary vectors upserted
        """
        batch = RollupBatch()

        for day_key in sorted(touched_days):
            await self._add_day(batch, grant_id, day_key)

        for thread_id, notes in thread_notes.items():
            await self._add_thread(batch, grant_id, thread_id, notes)

        for week_key in sorted({week_key_from_day_key(dk) for dk in touched_days}):
            await self._add_week(batch, grant_id, week_key)

        for month_key in sorted({month_key_from_day_key(dk) for dk in touched_days}):
            await self._add_month(batch, grant_id, month_key)

        await self._upsert(grant_id, batch)
        return len(batch)

    async def rebuild_week(self, grant_id: str, week_key: str) -> int:
        """Recompute one week summary and its per-thread summaries from the ledger."""
        batch = RollupBatch()
        await self._add_week(batch, grant_id, week_key)
        await self._upsert(grant_id, batch)

        logger.info("Week rollup rebuilt", grant_id=grant_id, week_key=week_key, vectors=len(batch))
        return len(batch)

    # =================================================================
    # BUCKETS
    # =================================================================

    async def _add_day(self, batch: RollupBatch, grant_id: str, day_key: str) -> None:
        notes = await self.ledger.load(grant_id, day_key)
        if not notes:
            return

        summary = await self.text_service.summarize_notes(notes)
        await self._add_summary(
            batch,
            grant_id,
            kind="day",
            blob_key=day_key,
            record_id=f"summary:day:{day_key}",
            summary=summary,
            metadata={
                "type": "thread_day",
                "bucket": day_key,
                "day_key": day_key,
                "summary_scope": "day",
            },
        )

    async def _add_thread(
        self, batch: RollupBatch, grant_id: str, thread_id: str, notes: list[DayNote]
    ) -> None:
        if not notes:
            return

        summary = await self.text_service.summarize_notes(notes, f"Thread rollup for {thread_id}")
        await self._add_summary(
            batch,
            grant_id,
            kind="thread",
            blob_key=thread_id,
            record_id=f"summary:thread:{thread_id}",
            summary=summary,
            metadata={
                "type": "thread",
                "thread_id": thread_id,
                "summary_scope": "thread",
            },
        )

    async def _add_week(self, batch: RollupBatch, grant_id: str, week_key: str) -> None:
        day_keys = await self.ledger.list_day_keys_for_week(grant_id, week_key)
        notes = await self.ledger.load_many(grant_id, day_keys)
        if not notes:
            return

        summary = await self.text_service.summarize_notes(notes, f"Weekly rollup for {week_key}")
        await self._add_summary(
            batch,
            grant_id,
            kind="week",
            blob_key=week_key,
            record_id=f"summary:week:{week_key}",
            summary=summary,
            metadata={
                "type": "summary_week",
                "bucket": week_key,
                "week_key": week_key,
                "summary_scope": "week",
            },
        )

        by_thread: dict[str, list[DayNote]] = defaultdict(list)
        for note in notes:
            if note.thread_id:
                by_thread[note.thread_id].append(note)

        for thread_id, thread_notes in by_thread.items():
            thread_summary = await self.text_service.summarize_notes(
                thread_notes, f"Weekly thread rollup for {week_key} (thread {thread_id})"
            )
            await self._add_summary(
                batch,
                grant_id,
                kind="thread",
                blob_key=f"{thread_id}@{week_key}",
                record_id=f"summary:thread_week:{thread_id}:{week_key}",
                summary=thread_summary,
                metadata={
                    "type": "thread_week",
                    "bucket": week_key,
                    "week_key": week_key,
                    "thread_id": thread_id,
                    "summary_scope": "thread_week",
                },
            )

    async def _add_month(self, batch: RollupBatch, grant_id: str, month_key: str) -> None:
        day_keys = await self.ledger.list_day_keys_for_month(grant_id, month_key)
        notes = await self.ledger.load_many(grant_id, day_keys)
        if not notes:
            return

        summary = await self.text_service.summarize_notes(notes, f"Monthly rollup for {month_key}")
        await self._add_summary(
            batch,
            grant_id,
            kind="month",
            blob_key=month_key,
            record_id=f"summary:month:{month_key}",
            summary=summary,
            metadata={
                "type": "thread_month",
                "bucket": month_key,
                "month_key": month_key,
                "summary_scope": "month",
            },
        )

    # =================================================================
    # HELPERS
    # =================================================================

    async def _add_summary(
        self,
        batch: RollupBatch,
        grant_id: str,
        kind: SummaryKind,
        blob_key: str,
        record_id: str,
        summary: str,
        metadata: dict[str, Any],
    ) -> None:
        if not summary.strip():
            logger.warning("Empty rollup summary, skipping", grant_id=grant_id, record_id=record_id)
            return

        await self.blobs.save_summary(grant_id, kind, blob_key, summary)

        full_metadata = {**metadata, "grant_id": grant_id, "summary_text": summary}
        embedding = await self.text_service.embed_text(summary)
        sparse_values = await self.text_service.embed_sparse(summary, "passage")

        batch.dense.append(VectorRecord(id=record_id, values=embedding, metadata=full_metadata))
        batch.sparse.append(build_sparse_record(record_id, full_metadata, summary, sparse_values))

    async def _upsert(self, grant_id: str, batch: RollupBatch) -> None:
        if not batch.dense:
            return

        await self.vector_index.upsert_dense(grant_id, batch.dense)
        await self.vector_index.upsert_sparse(grant_id, batch.sparse)
        await self.vector_index.flush_metrics()

        logger.info(
            "Rollup summaries upserted",
            grant_id=grant_id,
            dense=len(batch.dense),
            sparse=len(batch.sparse),
        )
