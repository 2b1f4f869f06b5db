"""
Domain subpackage for mailbox ingestion.
"""

from .models import (
    AttachmentDownload,
    AttachmentRef,
    DayNote,
    EmailAddress,
    IngestionJob,
    IngestionJobMessage,
    InvalidJobPayloadError,
    Message,
    MessagePage,
    SparseRecord,
    SparseValues,
    VectorRecord,
)

__all__ = [
    "AttachmentDownload",
    "AttachmentRef",
    "DayNote",
    "EmailAddress",
    "IngestionJob",
    "IngestionJobMessage",
    "InvalidJobPayloadError",
    "Message",
    "MessagePage",
    "SparseRecord",
    "SparseValues",
    "VectorRecord",
]
