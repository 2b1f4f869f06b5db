from __future__ import annotations

from types import SimpleNamespace

import pytest

from mail_indexer.features.ingestion.domain.models import (
    AttachmentDownload,
    Message,
    MessagePage,
    SparseValues,
)
from mail_indexer.features.ingestion.repository.blob_repository import BlobRepository
from mail_indexer.features.ingestion.repository.checkpoint_repository import CheckpointRepository
from mail_indexer.features.ingestion.repository.day_note_repository import DayNoteRepository
from mail_indexer.features.ingestion.repository.job_repository import JobRepository
from mail_indexer.features.ingestion.services.ingestion_worker import IngestionWorker
from mail_indexer.features.ingestion.services.rollup_service import RollupService
from mail_indexer.services.email_provider_client import EmailProviderError

TEST_INGESTION_CONFIG = {
    "page_size": 200,
    "backoff_seconds": [10, 20, 40, 80, 160, 300],
    "continuation_delay_seconds": 0.2,
    "message_concurrency": 4,
}


class FakeRedis:
    """In-memory stand-in for FastRedisClient."""

    def __init__(self, key_prefix: str = "mail_indexer"):
        self.key_prefix = key_prefix
        self.store: dict[str, str] = {}
        self.lists: dict[str, list[str]] = {}
        self.sets: dict[str, set[str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}

    def key(self, *parts: str) -> str:
        return ":".join([self.key_prefix, *[str(part) for part in parts]])

    async def get(self, key: str) -> str | None:
        return self.store.get(key)

    async def set(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        self.store[key] = value
        return True

    async def set_if_absent(self, key: str, value: str, ttl_s: int) -> bool:
        if key in self.store:
            return False
        self.store[key] = value
        return True

    async def delete(self, key: str) -> bool:
        return self.store.pop(key, None) is not None

    async def expire_if_value(self, key: str, value: str, ttl_s: int) -> bool:
        return self.store.get(key) == value

    async def delete_if_value(self, key: str, value: str) -> bool:
        if self.store.get(key) != value:
            return False
        del self.store[key]
        return True

    async def push_to_list(self, key: str, value: str, left: bool = False) -> int:
        items = self.lists.setdefault(key, [])
        if left:
            items.insert(0, value)
        else:
            items.append(value)
        return len(items)

    async def list_range(self, key: str, start: int = 0, end: int = -1) -> list[str]:
        items = self.lists.get(key, [])
        return items[start:] if end == -1 else items[start : end + 1]

    async def add_to_set(self, key: str, *members: str) -> int:
        target = self.sets.setdefault(key, set())
        before = len(target)
        target.update(members)
        return len(target) - before

    async def set_members(self, key: str) -> set[str]:
        return set(self.sets.get(key, set()))

    async def sorted_set_add(self, key: str, member: str, score: float) -> int:
        target = self.zsets.setdefault(key, {})
        added = 0 if member in target else 1
        target[member] = score
        return added

    async def sorted_set_update(self, key: str, member: str, score: float) -> bool:
        target = self.zsets.get(key, {})
        if member not in target:
            return False
        target[member] = score
        return True

    async def sorted_set_due(self, key: str, max_score: float, limit: int = 50) -> list[str]:
        items = sorted(self.zsets.get(key, {}).items(), key=lambda item: item[1])
        return [member for member, score in items if score <= max_score][:limit]

    async def sorted_set_remove(self, key: str, member: str) -> bool:
        return self.zsets.get(key, {}).pop(member, None) is not None

    async def move_between_sorted_sets(
        self, source_key: str, destination_key: str, member: str, score: float
    ) -> bool:
        if member not in self.zsets.get(source_key, {}):
            return False
        del self.zsets[source_key][member]
        self.zsets.setdefault(destination_key, {})[member] = score
        return True


class InMemoryQueue:
    def __init__(self):
        self.enqueued: list[tuple] = []

    async def enqueue(self, message, delay_seconds: float = 0) -> None:
        self.enqueued.append((message, delay_seconds))


def make_message(
    message_id: str,
    date: int | None = 1_735_732_800,
    thread_id: str | None = "t-1",
    body: str = "<p>Hello <b>team</b>, the launch moved to Friday.</p>",
    subject: str = "Launch update",
    attachments: list[dict] | None = None,
    **extra,
) -> Message:
    payload = {
        "id": message_id,
        "thread_id": thread_id,
        "subject": subject,
        "from": [{"email": "Alice@Example.com", "name": "Alice"}],
        "to": [{"email": "bob@example.com"}, {"email": "carol@example.com"}],
        "cc": [{"email": "dave@example.com"}],
        "date": date,
        "body": body,
        "attachments": attachments or [],
        "labels": [{"name": "INBOX"}],
        "folder": {"name": "Inbox"},
        "unread": True,
        "size": 2048,
    }
    payload.update(extra)
    return Message.from_provider(payload)


class FakeProvider:
    """Serves pages keyed by page token ("start" for the first page)."""

    def __init__(self, pages: dict[str, MessagePage] | None = None):
        self.pages = pages or {}
        self.errors: dict[str, Exception] = {}
        self.attachments: dict[str, AttachmentDownload | Exception] = {}
        self.calls: list[dict] = []

    async def list_messages(self, grant_id, since_epoch, page_token=None, limit=200) -> MessagePage:
        key = page_token or "start"
        self.calls.append(
            {"grant_id": grant_id, "since_epoch": since_epoch, "page_token": page_token, "limit": limit}
        )
        if key in self.errors:
            raise self.errors[key]
        return self.pages.get(key, MessagePage(messages=[]))

    async def download_attachment(self, grant_id, message_id, attachment_id) -> AttachmentDownload:
        result = self.attachments.get(attachment_id)
        if result is None:
            raise EmailProviderError("attachment not found", status_code=404)
        if isinstance(result, Exception):
            raise result
        return result

    async def close(self) -> None:
        return None


class FakeTextService:
    def __init__(self):
        self.note_calls: list[tuple[list, str | None]] = []
        self.summary_inputs: list[str] = []
        self.sparse = SparseValues(indices=[], values=[])
        self.failing_attachments: set[str] = set()

    async def summarize_long_text(self, text: str, hint: str | None = None) -> str:
        self.summary_inputs.append(text)
        return f"summary: {text[:60]}"

    async def summarize_notes(self, notes, hint: str | None = None) -> str:
        self.note_calls.append((list(notes), hint))
        return f"rollup of {len(notes)} notes ({hint or 'day'})"

    async def embed_text(self, text: str) -> list[float]:
        return [float(len(text)), 1.0, 0.5]

    async def embed_sparse(self, text: str, input_type: str = "passage") -> SparseValues:
        return self.sparse

    async def analyze_attachment(self, content: bytes, content_type: str | None, filename: str) -> str:
        if filename in self.failing_attachments:
            raise RuntimeError(f"cannot analyze {filename}")
        return f"analysis of {filename}"


class FakeVectorIndex:
    def __init__(self):
        self.dense_calls: list[tuple[str, list]] = []
        self.sparse_calls: list[tuple[str, list]] = []
        self.flushes = 0

    async def upsert_dense(self, namespace, records) -> None:
        self.dense_calls.append((namespace, list(records)))

    async def upsert_sparse(self, namespace, records) -> None:
        self.sparse_calls.append((namespace, list(records)))

    async def flush_metrics(self) -> bool:
        self.flushes += 1
        return True

    def dense_ids(self) -> list[str]:
        return [record.id for _, records in self.dense_calls for record in records]


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def ingestion_env(fake_redis, tmp_path):
    """Worker wired to in-memory collaborators."""
    queue = InMemoryQueue()
    provider = FakeProvider()
    text_service = FakeTextService()
    vector_index = FakeVectorIndex()
    checkpoints = CheckpointRepository(fake_redis)
    ledger = DayNoteRepository(fake_redis)
    jobs = JobRepository(fake_redis)
    blobs = BlobRepository(tmp_path)
    rollups = RollupService(text_service, vector_index, ledger=ledger, blobs=blobs)
    worker = IngestionWorker(
        queue=queue,
        provider=provider,
        text_service=text_service,
        vector_index=vector_index,
        rollups=rollups,
        checkpoints=checkpoints,
        ledger=ledger,
        jobs=jobs,
        blobs=blobs,
        config=dict(TEST_INGESTION_CONFIG),
    )
    return SimpleNamespace(
        redis=fake_redis,
        queue=queue,
        provider=provider,
        text_service=text_service,
        vector_index=vector_index,
        checkpoints=checkpoints,
        ledger=ledger,
        jobs=jobs,
        blobs=blobs,
        rollups=rollups,
        worker=worker,
        data_dir=tmp_path,
    )


@pytest.fixture
def message_factory():
    return make_message
