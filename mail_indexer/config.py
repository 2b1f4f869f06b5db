from pathlib import Path
from urllib.parse import urlparse

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Redis settings (REDIS_URL wins; otherwise derived from Upstash REST settings)
    REDIS_URL: str | None = None
    UPSTASH_REDIS_REST_URL: str | None = None
    UPSTASH_REDIS_REST_TOKEN: str | None = None
    REDIS_KEY_PREFIX: str = "mail_indexer"

    # Nylas settings
    NYLAS_BASE: str = "https://api.us.nylas.com/v3"
    NYLAS_API_KEY: str | None = None
    NYLAS_GRANT_ID: str | None = None
    NYLAS_TIMEOUT_SECONDS: float = 60.0

    # OpenAI settings
    OPENAI_API_KEY: str | None = None
    OPENAI_EMBED_MODEL: str = "text-embedding-3-small"
    OPENAI_TEXT_MODEL: str = "gpt-5-mini"
    OPENAI_EMBED_MAX_CHARS: int = 12000
    OPENAI_TIMEOUT_SECONDS: float = 60.0
    OPENAI_MAX_RETRIES: int = 3

    # Summarization sizing
    RAW_CHUNK_CHARS: int = 15000
    CHUNK_OVERLAP_CHARS: int = 1500
    FINAL_SUMMARY_MAX_CHARS: int = 8000
    SUMMARY_NOTES_PER_CHUNK: int = 50
    PDF_SUMMARY_CHARS: int = 16000

    # Pinecone settings
    PINECONE_API_KEY: str | None = None
    PINECONE_DENSE_INDEX_NAME: str = ""
    PINECONE_SPARSE_INDEX_NAME: str = ""
    PINECONE_SPARSE_MODEL: str = "pinecone-sparse-english-v0"
    PINECONE_DISABLE: bool = False

    # Local blob storage (clean text, attachments, summaries, metrics)
    DATA_DIR: str = str(Path.cwd() / ".data")

    # =================================================================
    # INGESTION SETTINGS
    # =================================================================
    INGESTION_PAGE_SIZE: int = 200
    INGESTION_BACKOFF_SECONDS: list[int] = [10, 20, 40, 80, 160, 300]
    INGESTION_CONTINUATION_DELAY_SECONDS: float = 0.2
    INGESTION_MESSAGE_CONCURRENCY: int = 4
    INGESTION_QUEUE_NAME: str = "nylas-backfill"
    QUEUE_VISIBILITY_TIMEOUT_SECONDS: int = 900
    WORKER_POLL_INTERVAL_SECONDS: float = 1.0
    WORKER_MAX_CONCURRENT_TENANTS: int = 8

    # Sync scheduling
    BACKFILL_DEFAULT_MONTHS: int = 12
    BACKFILL_MAX: int = 10000
    DELTA_DEFAULT_MONTHS: int = 1
    DELTA_MAX: int = 10000
    DELTA_TIMER_ENABLED: bool = True
    DELTA_TIMER_INTERVAL_MINUTES: int = 60

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def redis_url(self) -> str:
        """
        Resolve the Redis connection URL.

        Upstash REST hosts are converted to the native TLS protocol, e.g.
        https://redis-12345.upstash.io -> rediss://default:<token>@redis-12345.upstash.io:6379
        """
        if self.REDIS_URL:
            return self.REDIS_URL
        if not self.UPSTASH_REDIS_REST_URL:
            return "redis://localhost:6379/0"

        rest_url = self.UPSTASH_REDIS_REST_URL.strip()
        host = urlparse(rest_url).hostname or urlparse(f"https://{rest_url}").hostname
        if not host:
            raise ValueError("UPSTASH_REDIS_REST_URL does not include a valid hostname")
        return f"rediss://default:{self.UPSTASH_REDIS_REST_TOKEN or ''}@{host}:6379"

    def get_ingestion_config(self) -> dict:
        """
        Get ingestion worker configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "page_size": min(self.INGESTION_PAGE_SIZE, 200),
            "backoff_seconds": list(self.INGESTION_BACKOFF_SECONDS),
            "continuation_delay_seconds": self.INGESTION_CONTINUATION_DELAY_SECONDS,
            "message_concurrency": max(1, self.INGESTION_MESSAGE_CONCURRENCY),
        }

        if self.environment == "development":
            # Keep local runs gentle on the provider and OpenAI quotas
            config["message_concurrency"] = min(config["message_concurrency"], 2)

        return config


settings = Settings()
