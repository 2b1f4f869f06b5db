"""
Domain models for the mailbox ingestion feature.

Provider payloads are parsed into small dataclasses here; the queue payload
is a pydantic model so malformed jobs are rejected at the ingress boundary
before the worker touches any store.
"""

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

JobType = Literal["backfill", "delta"]
JobStatus = Literal["queued", "running", "complete", "error"]
SummaryKind = Literal["day", "week", "month", "thread"]

TERMINAL_JOB_STATUSES = frozenset({"complete", "error"})


class InvalidJobPayloadError(Exception):
    """Raised when a queue payload cannot be parsed into an IngestionJobMessage."""

    def __init__(self, message: str, raw_preview: str = ""):
        super().__init__(message)
        self.raw_preview = raw_preview


# =================================================================
# QUEUE PAYLOAD
# =================================================================


class IngestionJobMessage(BaseModel):
    """One page of work for one grant, as carried on the ingestion queue."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    grant_id: str = Field(alias="grantId", min_length=1)
    since_epoch: int = Field(alias="sinceEpoch", ge=0)
    max: int = Field(gt=0)
    page_token: str | None = Field(default=None, alias="pageToken")
    processed: int = Field(default=0, ge=0)
    attempt: int = Field(default=0, ge=0)
    job_id: str | None = Field(default=None, alias="jobId")
    type: JobType = "backfill"
    max_epoch_seen: int = Field(default=0, alias="maxEpochSeen", ge=0)

    @classmethod
    def parse_payload(cls, raw: str | bytes | dict) -> "IngestionJobMessage":
        try:
            if isinstance(raw, dict):
                return cls.model_validate(raw)
            return cls.model_validate_json(raw)
        except ValidationError as e:
            preview = raw if isinstance(raw, str) else str(raw)
            raise InvalidJobPayloadError(
                f"Malformed ingestion job payload: {e.error_count()} error(s)",
                raw_preview=preview[:200],
            ) from e

    def to_payload(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @property
    def corr(self) -> str:
        """Correlation id used in every log line for this page."""
        return f"{self.grant_id}:{self.page_token or 'start'}:a{self.attempt}"


# =================================================================
# PROVIDER MESSAGES
# =================================================================


@dataclass(slots=True)
class EmailAddress:
    email: str
    name: str | None = None


@dataclass(slots=True)
class AttachmentRef:
    id: str
    filename: str | None = None
    content_type: str | None = None


@dataclass(slots=True)
class AttachmentDownload:
    content: bytes
    content_type: str | None
    filename: str | None


@dataclass(slots=True)
class Message:
    """A provider message. Immutable once fetched; derived artifacts are keyed by id."""

    id: str
    thread_id: str | None
    subject: str
    from_: list[EmailAddress]
    to: list[EmailAddress]
    cc: list[EmailAddress]
    bcc: list[EmailAddress]
    date: int | None
    body: str
    attachments: list[AttachmentRef]
    labels: list[str]
    folder: str | None
    unread: bool = False
    starred: bool = False
    size: int | None = None

    @classmethod
    def from_provider(cls, data: dict[str, Any]) -> "Message":
        """Build from a Nylas v3 message object."""

        def addresses(value: Any) -> list[EmailAddress]:
            if not isinstance(value, list):
                return []
            parsed = []
            for item in value:
                if isinstance(item, dict) and item.get("email"):
                    parsed.append(EmailAddress(email=item["email"], name=item.get("name")))
            return parsed

        attachments = []
        for item in data.get("attachments") or []:
            if not isinstance(item, dict):
                continue
            attachment_id = item.get("id") or item.get("attachment_id") or ""
            if attachment_id:
                attachments.append(
                    AttachmentRef(
                        id=attachment_id,
                        filename=item.get("filename"),
                        content_type=item.get("content_type"),
                    )
                )

        labels = []
        for label in data.get("labels") or []:
            name = label.get("name") if isinstance(label, dict) else label
            if name:
                labels.append(str(name).lower())

        folder = data.get("folder")
        folder_name = folder.get("name") if isinstance(folder, dict) else folder

        date_value = data.get("date")
        size = data.get("size")

        return cls(
            id=str(data["id"]),
            thread_id=data.get("thread_id") or None,
            subject=data.get("subject") or "",
            from_=addresses(data.get("from")),
            to=addresses(data.get("to")),
            cc=addresses(data.get("cc")),
            bcc=addresses(data.get("bcc")),
            date=int(date_value) if isinstance(date_value, (int, float)) else None,
            body=data.get("body") or "",
            attachments=attachments,
            labels=labels,
            folder=str(folder_name).lower() if folder_name else None,
            unread=bool(data.get("unread")),
            starred=bool(data.get("starred")),
            size=size if isinstance(size, int) else None,
        )

    @property
    def from_email(self) -> str:
        return self.from_[0].email if self.from_ else ""

    @property
    def from_domain(self) -> str:
        email = self.from_email
        return email.split("@", 1)[1].strip("> ").lower() if "@" in email else ""

    def participants(self) -> list[str]:
        """Unique lower-cased addresses across from/to/cc/bcc, in first-seen order."""
        seen: dict[str, None] = {}
        for group in (self.from_, self.to, self.cc, self.bcc):
            for address in group:
                email = address.email.strip().lower()
                if email:
                    seen.setdefault(email, None)
        return list(seen)


def first_emails(addresses: list[EmailAddress], limit: int) -> list[str]:
    return [address.email for address in addresses if address.email][:limit]


@dataclass(slots=True)
class MessagePage:
    messages: list[Message]
    next_cursor: str | None = None


# =================================================================
# LEDGER + INDEX RECORDS
# =================================================================


@dataclass(slots=True)
class DayNote:
    """Lightweight per-message note; the ground truth for every rollup."""

    messageId: str
    date_iso: str
    excerpt: str
    subject: str = ""
    to: list[str] = field(default_factory=list)
    thread_id: str | None = None
    # "from" is a keyword, so the attribute carries a trailing underscore
    from_: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["from"] = data.pop("from_")
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DayNote":
        return cls(
            messageId=str(data.get("messageId", "")),
            date_iso=data.get("date_iso", ""),
            excerpt=data.get("excerpt", ""),
            subject=data.get("subject") or "",
            to=list(data.get("to") or []),
            thread_id=data.get("thread_id") or None,
            from_=data.get("from") or "",
        )


@dataclass(slots=True)
class SparseValues:
    indices: list[int]
    values: list[float]

    def is_empty(self) -> bool:
        return not self.indices or not self.values


@dataclass(slots=True)
class VectorRecord:
    id: str
    values: list[float]
    metadata: dict[str, Any]


@dataclass(slots=True)
class SparseRecord:
    """Sparse record; carries raw text when no sparse embedding was produced."""

    id: str
    metadata: dict[str, Any]
    sparse_values: SparseValues | None = None
    text: str | None = None


# =================================================================
# JOB RECORD
# =================================================================


@dataclass(slots=True)
class IngestionJob:
    """Progress record for one backfill/delta run, used for progress reporting."""

    job_id: str
    grant_id: str
    type: JobType
    status: JobStatus
    processed: int
    total: int
    indexed_vectors: int = 0
    max_epoch_seen: int = 0
    last_sync_timestamp: str | None = None
    message: str | None = None
    created_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    updated_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    @property
    def percent(self) -> int | None:
        if self.total <= 0:
            return None
        return min(100, round(self.processed / self.total * 100))

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "grantId": self.grant_id,
            "type": self.type,
            "status": self.status,
            "processed": self.processed,
            "total": self.total,
            "indexedVectors": self.indexed_vectors,
            "maxEpochSeen": self.max_epoch_seen,
            "lastSyncTimestamp": self.last_sync_timestamp,
            "message": self.message,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IngestionJob":
        return cls(
            job_id=str(data["jobId"]),
            grant_id=str(data["grantId"]),
            type=data.get("type", "backfill"),
            status=data.get("status", "queued"),
            processed=int(data.get("processed") or 0),
            total=int(data.get("total") or 0),
            indexed_vectors=int(data.get("indexedVectors") or 0),
            max_epoch_seen=int(data.get("maxEpochSeen") or 0),
            last_sync_timestamp=data.get("lastSyncTimestamp"),
            message=data.get("message"),
            created_at=data.get("createdAt") or datetime.now(UTC).isoformat(),
            updated_at=data.get("updatedAt") or datetime.now(UTC).isoformat(),
        )
