"""
Nylas v3 email provider client.
Handles paginated message listing and attachment download for a grant.
Pure API client - parsing into domain models happens via Message.from_provider.
"""

import os

import httpx

from mail_indexer.config import settings
from mail_indexer.features.ingestion.domain.models import (
    AttachmentDownload,
    Message,
    MessagePage,
)
from mail_indexer.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

GRANT_KEY_ENV_PREFIX = "NYLAS_KEY_"
MAX_PAGE_SIZE = 200

MESSAGE_FIELDS = [
    "id",
    "thread_id",
    "subject",
    "from",
    "to",
    "cc",
    "bcc",
    "date",
    "unread",
    "starred",
    "size",
    "labels",
    "folder",
    "attachments",
    "body",
]

TRANSIENT_STATUS_CODES = {429, 502, 503, 504}
AUTH_STATUS_CODES = {401, 403}


class EmailProviderError(Exception):
    """Raised for any failed provider call. status_code drives the retry policy."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        operation: str | None = None,
        missing_credentials: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.operation = operation
        self.missing_credentials = missing_credentials

    @property
    def is_transient(self) -> bool:
        return self.status_code in TRANSIENT_STATUS_CODES

    @property
    def is_auth_error(self) -> bool:
        return self.missing_credentials or self.status_code in AUTH_STATUS_CODES

    @property
    def recoverable(self) -> bool:
        return self.is_transient


def _grant_keys_from_env() -> dict[str, str]:
    keys = {
        name[len(GRANT_KEY_ENV_PREFIX) :]: value
        for name, value in os.environ.items()
        if name.startswith(GRANT_KEY_ENV_PREFIX) and value
    }
    if settings.NYLAS_GRANT_ID and settings.NYLAS_API_KEY:
        keys.setdefault(settings.NYLAS_GRANT_ID, settings.NYLAS_API_KEY)
    return keys


def resolve_api_key(grant_id: str) -> str:
    """
    Resolve the API key for a grant.

    Lookup order: NYLAS_KEY_<grant> env var, then the default NYLAS_API_KEY.

    Raises:
        EmailProviderError: no key is configured (treated as an auth failure)
    """
    if not grant_id:
        raise EmailProviderError("Grant ID is required", missing_credentials=True)

    api_key = _grant_keys_from_env().get(grant_id)
    if api_key:
        return api_key

    if settings.NYLAS_API_KEY:
        logger.debug("No grant-specific API key, using default", grant_id=grant_id)
        return settings.NYLAS_API_KEY

    raise EmailProviderError(
        f"No API key configured for grant: {grant_id}",
        operation="resolve_api_key",
        missing_credentials=True,
    )


def list_registered_grants() -> list[str]:
    """Grant ids that have credentials configured through the environment."""
    return sorted(_grant_keys_from_env())


class EmailProviderClient:
    """
    Async Nylas client.

    A single httpx.AsyncClient is shared across calls; pass one in from tests
    (e.g. with httpx.MockTransport) to avoid network access.
    """

    def __init__(self, base_url: str | None = None, http_client: httpx.AsyncClient | None = None):
        self.base_url = (base_url or settings.NYLAS_BASE).rstrip("/")
        self._client = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.NYLAS_TIMEOUT_SECONDS)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _get(
        self,
        grant_id: str,
        path: str,
        params: dict[str, str],
        operation: str,
        accept: str | None = "application/json, application/gzip",
    ) -> httpx.Response:
        api_key = resolve_api_key(grant_id)
        headers = {"Authorization": f"Bearer {api_key}"}
        if accept:
            headers["Accept"] = accept

        try:
            response = await self._get_client().get(
                f"{self.base_url}{path}", params=params, headers=headers
            )
        except httpx.TimeoutException as e:
            logger.warning(
                "Nylas request timed out", operation=operation, grant_id=grant_id, error=str(e)
            )
            raise EmailProviderError(
                f"Nylas {operation} timed out", status_code=504, operation=operation
            ) from e
        except httpx.RequestError as e:
            logger.error(
                "Nylas request failed",
                operation=operation,
                grant_id=grant_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise EmailProviderError(f"Nylas {operation} request failed: {e}", operation=operation) from e

        if response.is_success:
            return response

        status = response.status_code
        if status in TRANSIENT_STATUS_CODES:
            message = f"Nylas transient error: {status}"
        else:
            message = f"Nylas API error {status}: {response.text[:500]}"

        logger.warning(
            f"Nylas {operation} failed",
            grant_id=grant_id,
            status_code=status,
        )
        raise EmailProviderError(message, status_code=status, operation=operation)

    async def list_messages(
        self,
        grant_id: str,
        since_epoch: int,
        page_token: str | None = None,
        limit: int = MAX_PAGE_SIZE,
    ) -> MessagePage:
        """
        Fetch one page of messages received after since_epoch.

        Returns:
            MessagePage with parsed messages and the provider's next cursor, if any
        """
        params = {
            "limit": str(min(limit, MAX_PAGE_SIZE)),
            "select": ",".join(MESSAGE_FIELDS),
            "received_after": str(int(since_epoch)),
        }
        if page_token:
            params["page_token"] = page_token

        response = await self._get(
            grant_id, f"/grants/{grant_id}/messages", params, operation="list_messages"
        )

        try:
            payload = response.json()
        except ValueError as e:
            raise EmailProviderError(
                f"Invalid list_messages response: {e}", operation="list_messages"
            ) from e

        raw_messages = payload.get("data") if isinstance(payload, dict) else None
        messages = []
        for item in raw_messages if isinstance(raw_messages, list) else []:
            if isinstance(item, dict) and item.get("id"):
                messages.append(Message.from_provider(item))

        next_cursor = None
        if isinstance(payload, dict):
            next_cursor = payload.get("next_cursor") or payload.get("next") or None

        logger.debug(
            "Nylas page fetched",
            grant_id=grant_id,
            count=len(messages),
            has_next=bool(next_cursor),
        )
        return MessagePage(messages=messages, next_cursor=next_cursor)

    async def download_attachment(
        self, grant_id: str, message_id: str, attachment_id: str
    ) -> AttachmentDownload:
        """Fetch attachment metadata then its raw bytes."""
        params = {"message_id": message_id}
        path = f"/grants/{grant_id}/attachments/{attachment_id}"

        meta_response = await self._get(grant_id, path, params, operation="attachment_metadata")
        try:
            meta = meta_response.json().get("data") or {}
        except (ValueError, AttributeError):
            meta = {}

        download_response = await self._get(
            grant_id, f"{path}/download", params, operation="attachment_download", accept=None
        )

        return AttachmentDownload(
            content=download_response.content,
            content_type=meta.get("content_type"),
            filename=meta.get("filename"),
        )
