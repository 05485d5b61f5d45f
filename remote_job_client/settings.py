"""
Environment-driven settings for the client.

Usage:
    from remote_job_client.settings import get_settings

    settings = get_settings()
    client = RemoteJobClient(
        settings.base_url,
        settings.api_key,
        retry_config=settings.to_retry_config(),
        polling_config=settings.to_polling_config(),
    )

Every field can be set with a REMOTE_JOB_ prefixed variable, e.g.
REMOTE_JOB_BASE_URL or REMOTE_JOB_MAX_RETRIES, or from a .env file.
"""
import sys
from functools import lru_cache

from loguru import logger
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from remote_job_client.models import ChunkingConfig, PollingConfig, RetryConfig


class ClientSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="REMOTE_JOB_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    base_url: str = Field(default="http://localhost:5000")
    api_key: str = Field(default="")
    log_level: str = Field(default="INFO")

    # Retry
    max_retries: int = Field(default=7)
    base_delay: float = Field(default=1.0)
    max_delay: float = Field(default=32.0)
    base_timeout: float = Field(default=45.0)
    max_timeout: float = Field(default=120.0)
    timeout_multiplier_on_timeout: float = Field(default=1.5)

    # Polling
    max_elapsed: float = Field(default=20 * 60.0)
    max_consecutive_errors: int = Field(default=5)

    # Chunking
    chunk_size: int = Field(default=8000)
    threshold_to_chunk: int = Field(default=10000)

    def to_retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            base_timeout=self.base_timeout,
            max_timeout=self.max_timeout,
            timeout_multiplier_on_timeout=self.timeout_multiplier_on_timeout,
        )

    def to_polling_config(self) -> PollingConfig:
        return PollingConfig(
            max_elapsed=self.max_elapsed,
            max_consecutive_errors=self.max_consecutive_errors,
        )

    def to_chunking_config(self) -> ChunkingConfig:
        return ChunkingConfig(chunk_size=self.chunk_size, threshold_to_chunk=self.threshold_to_chunk)


@lru_cache()
def get_settings() -> ClientSettings:
    return ClientSettings()


def configure_logging(level: str = "INFO") -> None:
    """Replace loguru's default sink with a stderr sink at `level`"""
    logger.remove()
    logger.add(sys.stderr, level=level.upper())
