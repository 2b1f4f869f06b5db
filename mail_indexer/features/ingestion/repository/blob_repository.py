"""
Filesystem blobs under DATA_DIR/grants/<grant>/: cleaned message text, raw
attachments with their content-type metadata, and rollup summary text.
Writes overwrite by id so reprocessing a message is idempotent.
"""

import asyncio
import hashlib
import json
import re
from pathlib import Path

from mail_indexer.config import settings
from mail_indexer.features.ingestion.domain.models import SummaryKind

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._@-]+")


def safe_filename(name: str, fallback: str = "file") -> str:
    """
    Reduce a provider-supplied name to a single safe path component.

    Names that had to be altered get a short hash of the original, so ids
    that clean to the same text ("a/b" and "a_b") still map to separate files.
    """
    raw = name or ""
    cleaned = _UNSAFE_NAME_CHARS.sub("_", raw).strip("._")[:200]
    if cleaned == raw:
        return cleaned or fallback

    digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()[:8]
    stem, dot, suffix = cleaned.rpartition(".")
    if dot and stem:
        return f"{stem}-{digest}.{suffix}"
    return f"{cleaned or fallback}-{digest}"


class BlobRepository:
    def __init__(self, data_dir: str | Path | None = None):
        self.data_dir = Path(data_dir or settings.DATA_DIR)

    def _grant_dir(self, grant_id: str) -> Path:
        return self.data_dir / "grants" / safe_filename(grant_id, "grant")

    @staticmethod
    def _write_text(path: Path, text: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")

    @staticmethod
    def _write_bytes(path: Path, content: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)

    async def save_clean_text(self, grant_id: str, message_id: str, text: str) -> Path:
        path = self._grant_dir(grant_id) / "messages" / f"{safe_filename(message_id, 'message')}.txt"
        await asyncio.to_thread(self._write_text, path, text)
        return path

    async def save_attachment(
        self,
        grant_id: str,
        message_id: str,
        filename: str,
        content: bytes,
        content_type: str | None = None,
    ) -> Path:
        directory = self._grant_dir(grant_id) / "attachments" / safe_filename(message_id, "message")
        name = safe_filename(filename)
        path = directory / name
        await asyncio.to_thread(self._write_bytes, path, content)

        if content_type:
            meta = json.dumps({"contentType": content_type, "filename": filename}, indent=2)
            await asyncio.to_thread(self._write_text, directory / f"{name}.meta.json", meta)
        return path

    async def save_summary(self, grant_id: str, kind: SummaryKind, key: str, summary: str) -> Path:
        path = self._grant_dir(grant_id) / "summaries" / kind / f"{safe_filename(key, 'summary')}.txt"
        await asyncio.to_thread(self._write_text, path, summary)
        return path


blob_repository = BlobRepository()
