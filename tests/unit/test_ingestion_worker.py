import json

import pytest

from mail_indexer.features.ingestion.domain.models import (
    AttachmentDownload,
    IngestionJobMessage,
    MessagePage,
    SparseValues,
)
from mail_indexer.features.ingestion.services.ingestion_worker import PageOutcome, auth_error_message
from mail_indexer.services.email_provider_client import EmailProviderError

BASE_EPOCH = 1_735_732_800  # 2025-01-01T12:00:00Z


def _job(job_id: str | None = None, **overrides) -> IngestionJobMessage:
    fields = {"grant_id": "g1", "since_epoch": 1_700_000_000, "max": 100, "job_id": job_id}
    fields.update(overrides)
    return IngestionJobMessage(**fields)


def _messages(message_factory, prefix: str, count: int, start_epoch: int = BASE_EPOCH):
    return [message_factory(f"{prefix}{i}", date=start_epoch + i * 60) for i in range(count)]


# =================================================================
# PAGINATION
# =================================================================


@pytest.mark.asyncio
async def test_two_page_backfill_continues_then_completes(ingestion_env, message_factory):
    env = ingestion_env
    env.provider.pages = {
        "start": MessagePage(_messages(message_factory, "a", 5), next_cursor="p2"),
        "p2": MessagePage(_messages(message_factory, "b", 2, BASE_EPOCH + 3600)),
    }
    record = await env.jobs.create("g1", "backfill", total=100)

    first = await env.worker.process_page(_job(record.job_id))

    assert first == PageOutcome.CONTINUED
    assert len(env.queue.enqueued) == 1
    continuation, delay = env.queue.enqueued[0]
    assert delay == 0.2
    assert continuation.page_token == "p2"
    assert continuation.processed == 5
    assert continuation.attempt == 0
    assert continuation.since_epoch == 1_700_000_000
    assert continuation.max_epoch_seen == BASE_EPOCH + 4 * 60
    assert await env.checkpoints.get("g1") == 0

    second = await env.worker.process_page(continuation)

    assert second == PageOutcome.COMPLETED
    assert len(env.queue.enqueued) == 1
    assert await env.checkpoints.get("g1") == BASE_EPOCH + 3600 + 60

    job = await env.jobs.get(record.job_id)
    assert job.status == "complete"
    assert job.processed == 7
    assert job.message.startswith("Completed: 7 messages")
    assert job.last_sync_timestamp == "2025-01-01T13:01:00Z"


@pytest.mark.asyncio
async def test_stops_when_max_reached_even_with_cursor(ingestion_env, message_factory):
    env = ingestion_env
    env.provider.pages = {"start": MessagePage(_messages(message_factory, "a", 5), next_cursor="p2")}

    outcome = await env.worker.process_page(_job(max=5))

    assert outcome == PageOutcome.COMPLETED
    assert env.queue.enqueued == []
    assert await env.checkpoints.get("g1") == BASE_EPOCH + 4 * 60


@pytest.mark.asyncio
async def test_requests_page_with_configured_size_and_token(ingestion_env):
    env = ingestion_env

    await env.worker.process_page(_job(page_token="tok-9", processed=40))

    assert env.provider.calls == [
        {"grant_id": "g1", "since_epoch": 1_700_000_000, "page_token": "tok-9", "limit": 200}
    ]


@pytest.mark.asyncio
async def test_empty_page_completes_without_moving_checkpoint(ingestion_env):
    env = ingestion_env
    await env.checkpoints.set("g1", 1_600_000_000)
    record = await env.jobs.create("g1", "delta", total=10)

    outcome = await env.worker.process_page(_job(record.job_id))

    assert outcome == PageOutcome.COMPLETED
    assert await env.checkpoints.get("g1") == 1_600_000_000
    assert env.vector_index.dense_calls == []
    assert (await env.jobs.get(record.job_id)).status == "complete"


@pytest.mark.asyncio
async def test_checkpoint_carries_max_from_earlier_pages(ingestion_env, message_factory):
    env = ingestion_env
    env.provider.pages = {"p3": MessagePage([message_factory("old", date=BASE_EPOCH - 86400)])}

    await env.worker.process_page(_job(page_token="p3", max_epoch_seen=BASE_EPOCH + 999))

    assert await env.checkpoints.get("g1") == BASE_EPOCH + 999


# =================================================================
# FAILURES
# =================================================================


@pytest.mark.asyncio
async def test_transient_errors_follow_backoff_ladder_then_abandon(ingestion_env):
    env = ingestion_env
    env.provider.errors["start"] = EmailProviderError("busy", status_code=429)
    record = await env.jobs.create("g1", "backfill", total=100)

    job = _job(record.job_id)
    delays = []
    for _ in range(6):
        assert await env.worker.process_page(job) == PageOutcome.RETRY_SCHEDULED
        job, delay = env.queue.enqueued[-1]
        delays.append(delay)

    assert delays == [10, 20, 40, 80, 160, 300]
    assert job.attempt == 6

    assert await env.worker.process_page(job) == PageOutcome.ABANDONED
    assert len(env.queue.enqueued) == 6
    assert (await env.jobs.get(record.job_id)).status == "queued"


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [502, 503, 504])
async def test_gateway_errors_are_retried(ingestion_env, status_code):
    env = ingestion_env
    env.provider.errors["p2"] = EmailProviderError("gateway", status_code=status_code)

    outcome = await env.worker.process_page(_job(page_token="p2", processed=10, attempt=2))

    assert outcome == PageOutcome.RETRY_SCHEDULED
    retry, delay = env.queue.enqueued[0]
    assert delay == 40
    assert retry.attempt == 3
    assert retry.page_token == "p2"
    assert retry.processed == 10


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [401, 403])
async def test_auth_failure_marks_job_error(ingestion_env, status_code):
    env = ingestion_env
    env.provider.errors["start"] = EmailProviderError("denied", status_code=status_code)
    record = await env.jobs.create("g1", "delta", total=10)

    outcome = await env.worker.process_page(_job(record.job_id))

    assert outcome == PageOutcome.AUTH_FAILED
    assert env.queue.enqueued == []
    job = await env.jobs.get(record.job_id)
    assert job.status == "error"
    assert job.message == auth_error_message("g1", status_code)
    assert "NYLAS_KEY_g1" in job.message


@pytest.mark.asyncio
async def test_missing_credentials_is_an_auth_failure(ingestion_env):
    env = ingestion_env
    env.provider.errors["start"] = EmailProviderError("no key", missing_credentials=True)
    record = await env.jobs.create("g1", "delta", total=10)

    assert await env.worker.process_page(_job(record.job_id)) == PageOutcome.AUTH_FAILED
    job = await env.jobs.get(record.job_id)
    assert job.message.startswith("Provider unauthorized (missing API key)")


@pytest.mark.asyncio
async def test_unexpected_error_marks_job_error_without_retry(ingestion_env):
    env = ingestion_env
    env.provider.errors["start"] = RuntimeError("boom")
    record = await env.jobs.create("g1", "delta", total=10)

    outcome = await env.worker.process_page(_job(record.job_id))

    assert outcome == PageOutcome.FAILED
    assert env.queue.enqueued == []
    job = await env.jobs.get(record.job_id)
    assert job.status == "error"
    assert job.message == "Ingestion failed: boom"


@pytest.mark.asyncio
async def test_non_transient_provider_error_is_not_retried(ingestion_env):
    env = ingestion_env
    env.provider.errors["start"] = EmailProviderError("bad request", status_code=400)

    assert await env.worker.process_page(_job()) == PageOutcome.FAILED
    assert env.queue.enqueued == []


@pytest.mark.asyncio
async def test_malformed_payload_is_rejected_without_side_effects(ingestion_env):
    env = ingestion_env

    outcome = await env.worker.handle(json.dumps({"sinceEpoch": 0, "max": 10}))

    assert outcome == PageOutcome.REJECTED
    assert env.provider.calls == []
    assert env.queue.enqueued == []
    assert env.redis.store == {}


@pytest.mark.asyncio
async def test_handle_accepts_wire_payload(ingestion_env):
    env = ingestion_env

    outcome = await env.worker.handle(_job().to_payload())

    assert outcome == PageOutcome.COMPLETED
    assert len(env.provider.calls) == 1


@pytest.mark.asyncio
async def test_terminal_job_is_not_resurrected(ingestion_env, message_factory):
    env = ingestion_env
    env.provider.pages = {"start": MessagePage([message_factory("m1")])}
    record = await env.jobs.create("g1", "delta", total=10)
    await env.jobs.update(record.job_id, status="error", message="cancelled")

    await env.worker.process_page(_job(record.job_id))

    job = await env.jobs.get(record.job_id)
    assert job.status == "error"
    assert job.message == "cancelled"
    assert job.processed == 0


# =================================================================
# MESSAGES
# =================================================================


@pytest.mark.asyncio
async def test_message_record_metadata(ingestion_env, message_factory):
    env = ingestion_env
    env.provider.pages = {"start": MessagePage([message_factory("m1")])}

    await env.worker.process_page(_job())

    page_records = env.vector_index.dense_calls[0][1]
    assert [r.id for r in page_records] == ["msg:m1"]
    meta = page_records[0].metadata
    assert meta["type"] == "message"
    assert meta["grant_id"] == "g1"
    assert meta["thread_id"] == "t-1"
    assert meta["subject"] == "Launch update"
    assert meta["from"] == "Alice@Example.com"
    assert meta["from_domain"] == "example.com"
    assert meta["to"] == ["bob@example.com", "carol@example.com"]
    assert meta["participants"] == [
        "alice@example.com",
        "bob@example.com",
        "carol@example.com",
        "dave@example.com",
    ]
    assert meta["date"] == BASE_EPOCH
    assert meta["date_created"] == "2025-01-01T12:00:00Z"
    assert meta["day_key"] == "2025-01-01"
    assert meta["week_key"] == "2025-W01"
    assert meta["month_key"] == "2025-01"
    assert meta["has_attachments"] is False
    assert meta["labels"] == ["inbox"]
    assert meta["folder"] == "inbox"
    assert meta["size"] == 2048
    assert meta["snippet"].startswith("summary: Hello team")

    blob = env.data_dir / "grants" / "g1" / "messages" / "m1.txt"
    assert blob.read_text().startswith("Hello team")


@pytest.mark.asyncio
async def test_day_note_appended_per_message(ingestion_env, message_factory):
    env = ingestion_env
    env.provider.pages = {"start": MessagePage([message_factory("m1"), message_factory("m2", thread_id=None)])}

    await env.worker.process_page(_job())

    notes = await env.ledger.load("g1", "2025-01-01")
    assert sorted(n.messageId for n in notes) == ["m1", "m2"]
    note = next(n for n in notes if n.messageId == "m1")
    assert note.from_ == "Alice@Example.com"
    assert note.subject == "Launch update"
    assert note.thread_id == "t-1"


@pytest.mark.asyncio
async def test_empty_body_falls_back_to_subject(ingestion_env, message_factory):
    env = ingestion_env
    env.provider.pages = {"start": MessagePage([message_factory("m1", body="")])}

    await env.worker.process_page(_job())

    assert env.text_service.summary_inputs == ["Launch update"]
    assert env.vector_index.dense_ids()[0] == "msg:m1"


@pytest.mark.asyncio
async def test_message_without_content_is_skipped(ingestion_env, message_factory):
    env = ingestion_env
    env.provider.pages = {
        "start": MessagePage([message_factory("empty", body="<p> </p>", subject="")])
    }
    record = await env.jobs.create("g1", "backfill", total=10)

    outcome = await env.worker.process_page(_job(record.job_id))

    assert outcome == PageOutcome.COMPLETED
    assert env.vector_index.dense_calls == []
    assert await env.ledger.load("g1", "2025-01-01") == []
    assert (await env.jobs.get(record.job_id)).processed == 1


@pytest.mark.asyncio
async def test_sparse_record_falls_back_to_text(ingestion_env, message_factory):
    env = ingestion_env
    env.provider.pages = {"start": MessagePage([message_factory("m1")])}

    await env.worker.process_page(_job())

    sparse = env.vector_index.sparse_calls[0][1][0]
    assert sparse.id == "msg:m1"
    assert sparse.sparse_values is None
    assert sparse.text.startswith("summary: ")


@pytest.mark.asyncio
async def test_sparse_record_uses_sparse_values_when_available(ingestion_env, message_factory):
    env = ingestion_env
    env.text_service.sparse = SparseValues(indices=[3, 17], values=[0.4, 0.9])
    env.provider.pages = {"start": MessagePage([message_factory("m1")])}

    await env.worker.process_page(_job())

    sparse = env.vector_index.sparse_calls[0][1][0]
    assert sparse.sparse_values.indices == [3, 17]
    assert sparse.text is None


@pytest.mark.asyncio
async def test_reprocessing_a_page_reuses_record_ids(ingestion_env, message_factory):
    env = ingestion_env
    env.provider.pages = {"start": MessagePage([message_factory("m1"), message_factory("m2")])}

    await env.worker.process_page(_job())
    first_ids = sorted(r.id for r in env.vector_index.dense_calls[0][1])
    env.vector_index.dense_calls.clear()

    await env.worker.process_page(_job())
    second_ids = sorted(r.id for r in env.vector_index.dense_calls[0][1])

    assert first_ids == second_ids == ["msg:m1", "msg:m2"]
    notes = await env.ledger.load("g1", "2025-01-01")
    assert sorted(n.messageId for n in notes) == ["m1", "m2"]


# =================================================================
# ATTACHMENTS
# =================================================================


@pytest.mark.asyncio
async def test_attachments_produce_file_records_and_failures_are_skipped(ingestion_env, message_factory):
    env = ingestion_env
    message = message_factory(
        "m1",
        attachments=[
            {"id": "a1", "filename": "missing.pdf", "content_type": "application/pdf"},
            {"id": "a2", "filename": "notes.txt", "content_type": "text/plain"},
            {"id": "a3", "filename": "broken.png", "content_type": "image/png"},
        ],
    )
    env.provider.pages = {"start": MessagePage([message])}
    env.provider.attachments["a2"] = AttachmentDownload(b"agenda", "text/plain", "notes.txt")
    env.provider.attachments["a3"] = AttachmentDownload(b"\x89PNG", "image/png", "broken.png")
    env.text_service.failing_attachments.add("broken.png")

    outcome = await env.worker.process_page(_job())

    assert outcome == PageOutcome.COMPLETED
    page_records = {r.id: r for r in env.vector_index.dense_calls[0][1]}
    assert set(page_records) == {"msg:m1", "file:m1:a2"}

    file_meta = page_records["file:m1:a2"].metadata
    assert file_meta["type"] == "attachment_file"
    assert file_meta["message_id"] == "m1"
    assert file_meta["filename"] == "notes.txt"
    assert file_meta["content_type"] == "text/plain"

    msg_meta = page_records["msg:m1"].metadata
    assert msg_meta["has_attachments"] is True
    assert msg_meta["attachment_count"] == 1
    assert msg_meta["attachment_types"] == ["text/plain"]

    assert 'Attachment "notes.txt": analysis of notes.txt' in env.text_service.summary_inputs[0]
    saved = env.data_dir / "grants" / "g1" / "attachments" / "m1" / "notes.txt"
    assert saved.read_bytes() == b"agenda"


# =================================================================
# ROLLUPS
# =================================================================


@pytest.mark.asyncio
async def test_page_refreshes_rollups_in_separate_batch(ingestion_env, message_factory):
    env = ingestion_env
    env.provider.pages = {"start": MessagePage([message_factory("m1"), message_factory("m2")])}
    record = await env.jobs.create("g1", "backfill", total=10)

    await env.worker.process_page(_job(record.job_id))

    assert len(env.vector_index.dense_calls) == 2
    rollup_ids = {r.id for r in env.vector_index.dense_calls[1][1]}
    assert rollup_ids == {
        "summary:day:2025-01-01",
        "summary:thread:t-1",
        "summary:week:2025-W01",
        "summary:thread_week:t-1:2025-W01",
        "summary:month:2025-01",
    }
    assert (await env.jobs.get(record.job_id)).indexed_vectors == 7
