"""
Ingestion worker - processes one page of a grant's mailbox per job.

Per page:
    1. Fetch up to page_size messages since the job's epoch / page token
    2. Per message (bounded concurrency): clean + persist text, analyze
       attachments, summarize, embed, build msg:/file: records, append a
       day note
    3. One dense + one sparse upsert for the page, then rollups for every
       touched day, thread, week and month
    4. Enqueue the continuation, or advance the checkpoint and complete the job

Transient provider failures are retried on a fixed backoff ladder, auth
failures and anything unexpected mark the job as error.
"""

import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from mail_indexer.config import settings
from mail_indexer.features.ingestion.domain.calendar_keys import day_key, month_key, week_key
from mail_indexer.features.ingestion.domain.models import (
    DayNote,
    IngestionJobMessage,
    InvalidJobPayloadError,
    Message,
    SparseRecord,
    VectorRecord,
    first_emails,
)
from mail_indexer.features.ingestion.repository.blob_repository import (
    BlobRepository,
    blob_repository,
)
from mail_indexer.features.ingestion.repository.checkpoint_repository import (
    CheckpointRepository,
    checkpoint_repository,
)
from mail_indexer.features.ingestion.repository.day_note_repository import (
    DayNoteRepository,
    day_note_repository,
)
from mail_indexer.features.ingestion.repository.job_repository import (
    JobRepository,
    job_repository,
)
from mail_indexer.features.ingestion.services.job_queue import JobQueue
from mail_indexer.features.ingestion.services.rollup_service import (
    RollupService,
    build_sparse_record,
)
from mail_indexer.infrastructure.observability.logging import get_logger, log_page_metric
from mail_indexer.services.email_provider_client import EmailProviderClient, EmailProviderError
from mail_indexer.services.openai_service import OpenAIService, clean_text
from mail_indexer.services.pinecone_client import PineconeIndexClient

logger = get_logger(__name__)

EXCERPT_CHARS = 240


class PageOutcome(str, Enum):
    CONTINUED = "continued"
    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    ABANDONED = "abandoned"
    AUTH_FAILED = "auth_failed"
    FAILED = "failed"
    REJECTED = "rejected"


@dataclass(slots=True)
class MessageResult:
    """Everything one message contributes to its page."""

    epoch: int
    dense: list[VectorRecord] = field(default_factory=list)
    sparse: list[SparseRecord] = field(default_factory=list)
    day_key: str | None = None
    note: DayNote | None = None


def _iso(epoch: int) -> str:
    return datetime.fromtimestamp(epoch, UTC).isoformat().replace("+00:00", "Z")


def auth_error_message(grant_id: str, status_code: int | None) -> str:
    status = status_code if status_code is not None else "missing API key"
    return (
        f"Provider unauthorized ({status}). "
        f"Verify NYLAS_KEY_{grant_id} or NYLAS_API_KEY for grant {grant_id}."
    )


class IngestionWorker:
    def __init__(
        self,
        queue: JobQueue,
        provider: EmailProviderClient,
        text_service: OpenAIService,
        vector_index: PineconeIndexClient,
        rollups: RollupService,
        checkpoints: CheckpointRepository | None = None,
        ledger: DayNoteRepository | None = None,
        jobs: JobRepository | None = None,
        blobs: BlobRepository | None = None,
        config: dict[str, Any] | None = None,
    ):
        self.queue = queue
        self.provider = provider
        self.text_service = text_service
        self.vector_index = vector_index
        self.rollups = rollups
        self.checkpoints = checkpoints or checkpoint_repository
        self.ledger = ledger or day_note_repository
        self.jobs = jobs or job_repository
        self.blobs = blobs or blob_repository

        self.config = config or settings.get_ingestion_config()
        self.page_size: int = self.config["page_size"]
        self.backoff_seconds: list[int] = list(self.config["backoff_seconds"])
        self.continuation_delay: float = self.config["continuation_delay_seconds"]
        self.message_concurrency: int = self.config["message_concurrency"]

    async def handle(self, raw: str | bytes | dict) -> PageOutcome:
        """Entry point for a raw queue payload."""
        try:
            job = IngestionJobMessage.parse_payload(raw)
        except InvalidJobPayloadError as e:
            logger.error("Rejected malformed ingestion job", error=str(e), payload_preview=e.raw_preview)
            return PageOutcome.REJECTED

        return await self.process_page(job)

    async def process_page(self, job: IngestionJobMessage) -> PageOutcome:
        log = logger.bind(corr=job.corr, grant_id=job.grant_id, job_id=job.job_id)
        started = time.monotonic()
        log.info("Ingestion page started", processed=job.processed, max=job.max)

        try:
            page = await self.provider.list_messages(
                job.grant_id,
                job.since_epoch,
                page_token=job.page_token,
                limit=self.page_size,
            )
            log.info("Ingestion page fetched", messages=len(page.messages), next=page.next_cursor or "-")

            results = await self._process_messages(job.grant_id, page.messages)

            dense: list[VectorRecord] = []
            sparse: list[SparseRecord] = []
            touched_days: set[str] = set()
            thread_notes: dict[str, list[DayNote]] = defaultdict(list)
            max_epoch_seen = job.max_epoch_seen

            for result in results:
                dense.extend(result.dense)
                sparse.extend(result.sparse)
                max_epoch_seen = max(max_epoch_seen, result.epoch)
                if result.note is not None and result.day_key:
                    touched_days.add(result.day_key)
                    if result.note.thread_id:
                        thread_notes[result.note.thread_id].append(result.note)

            if dense:
                await self.vector_index.upsert_dense(job.grant_id, dense)
                await self.vector_index.upsert_sparse(job.grant_id, sparse)
                await self.vector_index.flush_metrics()
                log.info("Page vectors upserted", dense=len(dense), sparse=len(sparse))
            else:
                log.info("No page vectors to upsert")

            summary_vectors = await self.rollups.apply_page(job.grant_id, touched_days, dict(thread_notes))

        except EmailProviderError as e:
            return await self._handle_provider_error(job, e)
        except Exception as e:
            log.error(
                "Ingestion page failed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            await self.jobs.update_best_effort(
                job.job_id, status="error", message=f"Ingestion failed: {e}"
            )
            return PageOutcome.FAILED

        processed = job.processed + len(page.messages)
        page_vectors = len(dense) + summary_vectors
        record = await self.jobs.record_page(job.job_id, processed, page_vectors, max_epoch_seen)

        log_page_metric(
            job.grant_id,
            messages=len(page.messages),
            vectors=page_vectors,
            took_ms=(time.monotonic() - started) * 1000,
            next_cursor=page.next_cursor,
        )

        if page.next_cursor and processed < job.max:
            next_job = job.model_copy(
                update={
                    "page_token": page.next_cursor,
                    "processed": processed,
                    "attempt": 0,
                    "max_epoch_seen": max_epoch_seen,
                }
            )
            await self.queue.enqueue(next_job, delay_seconds=self.continuation_delay)
            log.info("Continuation enqueued", next_corr=next_job.corr, processed=processed, max=job.max)
            return PageOutcome.CONTINUED

        if max_epoch_seen > 0:
            await self.checkpoints.set(job.grant_id, max_epoch_seen)

        indexed_vectors = record.indexed_vectors if record else page_vectors
        last_sync = _iso(max_epoch_seen) if max_epoch_seen > 0 else datetime.now(UTC).isoformat()
        await self.jobs.update_best_effort(
            job.job_id,
            status="complete",
            processed=processed,
            indexed_vectors=indexed_vectors,
            last_sync_timestamp=last_sync,
            message=f"Completed: {processed} messages, {indexed_vectors} vectors",
        )
        log.info(
            "Ingestion job complete",
            processed=processed,
            max=job.max,
            reason="max_reached" if page.next_cursor else "no_more_pages",
            checkpoint=max_epoch_seen,
        )
        return PageOutcome.COMPLETED

    # =================================================================
    # FAILURES
    # =================================================================

    async def _handle_provider_error(
        self, job: IngestionJobMessage, error: EmailProviderError
    ) -> PageOutcome:
        log = logger.bind(corr=job.corr, grant_id=job.grant_id, job_id=job.job_id)

        if error.is_auth_error:
            message = auth_error_message(job.grant_id, error.status_code)
            log.error("Provider rejected credentials", status_code=error.status_code, error=str(error))
            await self.jobs.update_best_effort(job.job_id, status="error", message=message)
            return PageOutcome.AUTH_FAILED

        if error.is_transient:
            if job.attempt >= len(self.backoff_seconds):
                log.error(
                    "Transient provider errors exhausted retries, abandoning job",
                    attempt=job.attempt,
                    status_code=error.status_code,
                )
                return PageOutcome.ABANDONED

            delay = self.backoff_seconds[min(job.attempt, len(self.backoff_seconds) - 1)]
            retry_job = job.model_copy(update={"attempt": job.attempt + 1})
            await self.queue.enqueue(retry_job, delay_seconds=delay)
            log.warning(
                "Transient provider error, retry scheduled",
                status_code=error.status_code,
                attempt=job.attempt,
                delay_seconds=delay,
            )
            return PageOutcome.RETRY_SCHEDULED

        log.error("Provider request failed", status_code=error.status_code, error=str(error))
        await self.jobs.update_best_effort(
            job.job_id, status="error", message=f"Ingestion failed: {error}"
        )
        return PageOutcome.FAILED

    # =================================================================
    # PER MESSAGE
    # =================================================================

    async def _process_messages(self, grant_id: str, messages: list[Message]) -> list[MessageResult]:
        semaphore = asyncio.Semaphore(max(1, self.message_concurrency))

        async def run(message: Message) -> MessageResult:
            async with semaphore:
                return await self._process_message(grant_id, message)

        outcomes = await asyncio.gather(*(run(m) for m in messages), return_exceptions=True)

        results = []
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
            results.append(outcome)
        return results

    async def _process_message(self, grant_id: str, message: Message) -> MessageResult:
        epoch = message.date or int(time.time())
        date_iso = _iso(epoch)
        dk = day_key(epoch)
        result = MessageResult(epoch=epoch)

        text = clean_text(message.body)
        if text:
            await self.blobs.save_clean_text(grant_id, message.id, text)

        analyses, attachment_types, attachment_count = await self._process_attachments(
            grant_id, message, date_iso, epoch, result
        )

        combined = text
        if analyses:
            combined = f"{text}\n\n" + "\n".join(analyses) if text else "\n".join(analyses)
        if not combined.strip():
            combined = message.subject.strip()
        if not combined:
            logger.info("Message has no content, skipping", grant_id=grant_id, message_id=message.id)
            return result

        summary = await self.text_service.summarize_long_text(
            combined, f"Message summary for subject: {message.subject or '(no subject)'}"
        )
        excerpt = summary[:EXCERPT_CHARS]

        metadata: dict[str, Any] = {
            "type": "message",
            "grant_id": grant_id,
            "thread_id": message.thread_id or "",
            "subject": message.subject,
            "from": message.from_email,
            "from_domain": message.from_domain,
            "to": first_emails(message.to, 3),
            "cc": first_emails(message.cc, 5),
            "bcc": first_emails(message.bcc, 5),
            "participants": message.participants(),
            "date_created": date_iso,
            "date": epoch,
            "day_key": dk,
            "week_key": week_key(epoch),
            "month_key": month_key(epoch),
            "snippet": excerpt,
            "has_attachments": bool(message.attachments),
            "attachment_count": attachment_count,
            "attachment_types": sorted(attachment_types),
            "unread": message.unread,
            "starred": message.starred,
            "labels": message.labels,
        }
        if message.size is not None:
            metadata["size"] = message.size
        if message.folder:
            metadata["folder"] = message.folder

        record_id = f"msg:{message.id}"
        embedding = await self.text_service.embed_text(summary)
        sparse_values = await self.text_service.embed_sparse(summary, "passage")
        result.dense.append(VectorRecord(id=record_id, values=embedding, metadata=metadata))
        result.sparse.append(build_sparse_record(record_id, metadata, summary, sparse_values))

        note = DayNote(
            messageId=message.id,
            date_iso=date_iso,
            excerpt=excerpt,
            subject=message.subject,
            to=first_emails(message.to, 5),
            thread_id=message.thread_id,
            from_=message.from_email,
        )
        await self.ledger.append(grant_id, dk, note)
        result.note = note
        result.day_key = dk
        return result

    async def _process_attachments(
        self,
        grant_id: str,
        message: Message,
        date_iso: str,
        epoch: int,
        result: MessageResult,
    ) -> tuple[list[str], set[str], int]:
        analyses: list[str] = []
        attachment_types: set[str] = set()
        count = 0

        for attachment in message.attachments:
            try:
                download = await self.provider.download_attachment(grant_id, message.id, attachment.id)
                content_type = download.content_type or attachment.content_type
                filename = download.filename or attachment.filename or attachment.id

                await self.blobs.save_attachment(
                    grant_id, message.id, filename, download.content, content_type
                )
                analysis = await self.text_service.analyze_attachment(
                    download.content, content_type, filename
                )

                if analysis:
                    analyses.append(f'Attachment "{filename}": {analysis}')
                    record_id = f"file:{message.id}:{attachment.id}"
                    metadata = {
                        "type": "attachment_file",
                        "grant_id": grant_id,
                        "message_id": message.id,
                        "thread_id": message.thread_id or "",
                        "filename": filename,
                        "content_type": content_type or "",
                        "date_created": date_iso,
                        "date": epoch,
                    }
                    embedding = await self.text_service.embed_text(analysis)
                    sparse_values = await self.text_service.embed_sparse(analysis, "passage")
                    result.dense.append(VectorRecord(id=record_id, values=embedding, metadata=metadata))
                    result.sparse.append(build_sparse_record(record_id, metadata, analysis, sparse_values))

                count += 1
                if content_type:
                    attachment_types.add(content_type.lower())

            except Exception as e:
                logger.warning(
                    "Attachment processing failed, skipping",
                    grant_id=grant_id,
                    message_id=message.id,
                    attachment_id=attachment.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        return analyses, attachment_types, count
