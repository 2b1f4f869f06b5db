# mail_indexer/services/pinecone_client.py
"""
Pinecone vector index client.

Dense and sparse records live in separate indexes; the namespace of every
call is the grant id. The Pinecone SDK is synchronous, so calls run in a
worker thread. With PINECONE_DISABLE set the client only records session
metrics and logs what it would have written.
"""

import asyncio
import json
from collections import Counter, deque
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pinecone import Pinecone

from mail_indexer.config import settings
from mail_indexer.features.ingestion.domain.models import SparseRecord, SparseValues, VectorRecord
from mail_indexer.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MAX_QUERY_TOP_K = 200
RECENT_IDS_LIMIT = 100


class VectorIndexError(Exception):
    """Raised when a dense upsert or query fails."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class ModalityMetrics:
    """Upsert counters for one index (dense or sparse)."""

    def __init__(self, index_name: str):
        self.index_name = index_name
        self.batches = 0
        self.records = 0
        self.by_type: Counter[str] = Counter()
        self.by_namespace: Counter[str] = Counter()
        self.recent: deque[dict[str, Any]] = deque(maxlen=RECENT_IDS_LIMIT)
        self.last_updated: str | None = None

    def record_batch(self, namespace: str, items: list[tuple[str, dict[str, Any]]]) -> None:
        now = datetime.now(UTC).isoformat()
        self.batches += 1
        self.records += len(items)
        self.by_namespace[namespace] += len(items)
        for record_id, metadata in items:
            record_type = str(metadata.get("type") or "")
            if record_type:
                self.by_type[record_type] += 1
            self.recent.append({"id": record_id, "ns": namespace, "type": record_type, "t": now})
        self.last_updated = now

    def to_dict(self) -> dict[str, Any]:
        return {
            "indexName": self.index_name,
            "batches": self.batches,
            "records": self.records,
            "byType": dict(self.by_type),
            "byNamespace": dict(self.by_namespace),
            "recent": list(self.recent),
            "lastUpdated": self.last_updated,
        }


class IndexSessionMetrics:
    """Process-lifetime upsert metrics, persisted on flush."""

    def __init__(self, dense_index: str, sparse_index: str, data_dir: str | None = None):
        self.started_at = datetime.now(UTC).isoformat()
        self.dense = ModalityMetrics(dense_index)
        self.sparse = ModalityMetrics(sparse_index)
        self.metrics_file = Path(data_dir or settings.DATA_DIR) / "metrics" / "index-session.json"
        self.last_persisted_at: str | None = None
        self._dirty = False

    def record(self, modality: str, namespace: str, items: list[tuple[str, dict[str, Any]]]) -> None:
        target = self.dense if modality == "dense" else self.sparse
        target.record_batch(namespace, items)
        self._dirty = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "startedAt": self.started_at,
            "updatedAt": datetime.now(UTC).isoformat(),
            "dense": self.dense.to_dict(),
            "sparse": self.sparse.to_dict(),
        }

    def _write(self, snapshot: dict[str, Any]) -> None:
        self.metrics_file.parent.mkdir(parents=True, exist_ok=True)
        self.metrics_file.write_text(json.dumps(snapshot, indent=2), encoding="utf-8")

    async def flush(self, force: bool = False) -> bool:
        """Persist the snapshot when anything changed since the last flush."""
        if not self._dirty and not force:
            return False

        snapshot = self.to_dict()
        try:
            await asyncio.to_thread(self._write, snapshot)
        except OSError as e:
            logger.warning("Index metrics persist failed", path=str(self.metrics_file), error=str(e))
            return False

        self.last_persisted_at = snapshot["updatedAt"]
        self._dirty = False
        return True


def _type_summary(records: list[tuple[str, dict[str, Any]]]) -> str:
    counts = Counter(str(metadata.get("type") or "") for _, metadata in records)
    counts.pop("", None)
    return ", ".join(f"{t}:{c}" for t, c in counts.most_common(5))


class PineconeIndexClient:
    """
    Per-grant namespaced dense + sparse upserts and hybrid query.

    Dense failures raise VectorIndexError; sparse failures are logged and the
    page continues dense-only.
    """

    def __init__(
        self,
        api_key: str | None = None,
        dense_index_name: str | None = None,
        sparse_index_name: str | None = None,
        disabled: bool | None = None,
        client: Any | None = None,
    ):
        self.api_key = api_key or settings.PINECONE_API_KEY
        self.dense_index_name = dense_index_name if dense_index_name is not None else settings.PINECONE_DENSE_INDEX_NAME
        self.sparse_index_name = (
            sparse_index_name if sparse_index_name is not None else settings.PINECONE_SPARSE_INDEX_NAME
        )
        self.disabled = settings.PINECONE_DISABLE if disabled is None else disabled
        self.metrics = IndexSessionMetrics(self.dense_index_name, self.sparse_index_name)
        self._client = client
        self._dense_index = None
        self._sparse_index = None

    def _get_client(self) -> Pinecone:
        if self._client is None:
            if not self.api_key:
                raise VectorIndexError("PINECONE_API_KEY not configured", recoverable=False)
            self._client = Pinecone(api_key=self.api_key)
        return self._client

    def _get_dense_index(self):
        if self._dense_index is None:
            if not self.dense_index_name:
                raise VectorIndexError("PINECONE_DENSE_INDEX_NAME not configured", recoverable=False)
            self._dense_index = self._get_client().Index(self.dense_index_name)
        return self._dense_index

    def _get_sparse_index(self):
        if not self.sparse_index_name:
            return None
        if self._sparse_index is None:
            self._sparse_index = self._get_client().Index(self.sparse_index_name)
        return self._sparse_index

    # =================================================================
    # UPSERTS
    # =================================================================

    async def upsert_dense(self, namespace: str, records: list[VectorRecord]) -> None:
        if not records:
            return

        summary = [(r.id, r.metadata) for r in records]

        if self.disabled:
            self.metrics.record("dense", namespace, summary)
            logger.info(
                "Pinecone disabled, skipped dense upsert",
                namespace=namespace,
                batch=len(records),
                top_types=_type_summary(summary),
            )
            return

        vectors = [{"id": r.id, "values": r.values, "metadata": r.metadata} for r in records]
        try:
            index = self._get_dense_index()
            await asyncio.to_thread(index.upsert, vectors=vectors, namespace=namespace)
        except VectorIndexError:
            raise
        except Exception as e:
            logger.error(
                "Pinecone dense upsert failed",
                namespace=namespace,
                batch=len(records),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise VectorIndexError(f"Dense upsert failed: {e}", operation="upsert_dense") from e

        self.metrics.record("dense", namespace, summary)
        logger.info(
            "Pinecone dense upsert",
            namespace=namespace,
            batch=len(records),
            top_types=_type_summary(summary),
            sample_ids=[r.id for r in records[:5]],
        )

    async def upsert_sparse(self, namespace: str, records: list[SparseRecord]) -> None:
        """Upsert sparse records; text-only records go through integrated inference."""
        if not records or not self.sparse_index_name:
            return

        summary = [(r.id, r.metadata) for r in records]

        if self.disabled:
            self.metrics.record("sparse", namespace, summary)
            logger.info(
                "Pinecone disabled, skipped sparse upsert",
                namespace=namespace,
                batch=len(records),
                top_types=_type_summary(summary),
            )
            return

        vectors = []
        text_records = []
        for record in records:
            if record.sparse_values is not None and not record.sparse_values.is_empty():
                vectors.append(
                    {
                        "id": record.id,
                        "sparse_values": {
                            "indices": record.sparse_values.indices,
                            "values": record.sparse_values.values,
                        },
                        "metadata": record.metadata,
                    }
                )
            elif record.text:
                text_records.append({"_id": record.id, "text": record.text, **record.metadata})

        try:
            index = self._get_sparse_index()
            if vectors:
                await asyncio.to_thread(index.upsert, vectors=vectors, namespace=namespace)
            if text_records:
                await asyncio.to_thread(index.upsert_records, namespace, text_records)
        except Exception as e:
            logger.warning(
                "Pinecone sparse upsert failed, continuing dense only",
                namespace=namespace,
                batch=len(records),
                error=str(e),
                error_type=type(e).__name__,
            )
            return

        self.metrics.record("sparse", namespace, summary)
        logger.info(
            "Pinecone sparse upsert",
            namespace=namespace,
            batch=len(records),
            text_fallback=len(text_records),
            top_types=_type_summary(summary),
        )

    async def flush_metrics(self) -> bool:
        return await self.metrics.flush()

    # =================================================================
    # SPARSE EMBEDDINGS + QUERY
    # =================================================================

    async def generate_sparse_embedding(self, text: str, input_type: str = "passage") -> SparseValues:
        """
        Sparse embedding via Pinecone inference.

        Returns an empty embedding on failure or when disabled so callers
        fall back to a text record.
        """
        trimmed = (text or "").strip()
        if not trimmed or self.disabled:
            return SparseValues(indices=[], values=[])

        try:
            client = self._get_client()
            response = await asyncio.to_thread(
                client.inference.embed,
                model=settings.PINECONE_SPARSE_MODEL,
                inputs=[trimmed],
                parameters={"input_type": input_type, "truncate": "END"},
            )
            entry = response.data[0] if response.data else None
            indices = _field(entry, "sparse_indices") or []
            values = _field(entry, "sparse_values") or []
            return SparseValues(indices=list(indices), values=list(values))
        except Exception as e:
            logger.warning(
                "Sparse embedding generation failed, returning empty embedding",
                error=str(e),
                error_type=type(e).__name__,
            )
            return SparseValues(indices=[], values=[])

    async def hybrid_query(
        self,
        namespace: str,
        dense_vector: list[float] | None = None,
        sparse_vector: SparseValues | None = None,
        filter: dict[str, Any] | None = None,
        top_k_dense: int = 10,
        top_k_sparse: int = 10,
    ) -> dict[str, list[dict[str, Any]]]:
        """
        Query both indexes and return the raw match lists.

        Returns:
            {"dense": [...], "sparse": [...]} with id/score/metadata per match
        """
        dense_matches: list[dict[str, Any]] = []
        sparse_matches: list[dict[str, Any]] = []

        if self.disabled:
            return {"dense": dense_matches, "sparse": sparse_matches}

        if dense_vector:
            try:
                index = self._get_dense_index()
                response = await asyncio.to_thread(
                    index.query,
                    vector=dense_vector,
                    top_k=min(max(top_k_dense, 1), MAX_QUERY_TOP_K),
                    include_metadata=True,
                    filter=filter,
                    namespace=namespace,
                )
            except VectorIndexError:
                raise
            except Exception as e:
                logger.error("Pinecone dense query failed", namespace=namespace, error=str(e))
                raise VectorIndexError(f"Dense query failed: {e}", operation="hybrid_query") from e
            dense_matches = _matches(response, "dense")

        if sparse_vector is not None and not sparse_vector.is_empty():
            index = self._get_sparse_index()
            if index is not None:
                try:
                    response = await asyncio.to_thread(
                        index.query,
                        sparse_vector={"indices": sparse_vector.indices, "values": sparse_vector.values},
                        top_k=min(max(top_k_sparse, 1), MAX_QUERY_TOP_K),
                        include_metadata=True,
                        filter=filter,
                        namespace=namespace,
                    )
                    sparse_matches = _matches(response, "sparse")
                except Exception as e:
                    logger.warning(
                        "Pinecone sparse query failed, continuing with dense results",
                        namespace=namespace,
                        error=str(e),
                    )

        return {"dense": dense_matches, "sparse": sparse_matches}


def _field(entry: Any, name: str) -> Any:
    if entry is None:
        return None
    if isinstance(entry, dict):
        return entry.get(name)
    return getattr(entry, name, None)


def _matches(response: Any, source: str) -> list[dict[str, Any]]:
    matches = _field(response, "matches") or []
    return [
        {
            "id": _field(match, "id"),
            "score": _field(match, "score") or 0.0,
            "metadata": _field(match, "metadata") or {},
            "source": source,
        }
        for match in matches
    ]
