import json
import re
from functools import lru_cache
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

TransportPolicy = Literal["retry-push", "push-then-poll"]

DEFAULT_STREAM_PATH = "/api/stream/metrics"
DEFAULT_POLL_PATH = "/api/metrics/live"

_ABSOLUTE_URL = re.compile(r"^https?://", re.IGNORECASE)


def resolve_url(path: str, base_url: str = "") -> str:
    """Absolute http(s) URLs are used verbatim; anything else is prefixed with ``base_url``."""
    if _ABSOLUTE_URL.match(path):
        return path
    return f"{(base_url or '').rstrip('/')}{path}"


def _parse_origins(value: Any) -> List[str]:
    """Parse allowed_origins from various formats: JSON array, comma-separated, or single value."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if stripped == "":
            return []
        # Try JSON array first
        try:
            parsed = json.loads(stripped)
            if isinstance(parsed, list):
                return parsed
        except json.JSONDecodeError:
            pass
        if "," in stripped:
            return [part.strip() for part in stripped.split(",") if part.strip()]
        return [stripped]
    return []


class LiveMetricsConfig(BaseModel):
    """Connection policy for one live metrics client.

    ``transport`` selects exactly one reconnection policy: ``retry-push`` keeps
    retrying the stream every ``retry_delay_ms`` (falling back to polling once
    ``max_push_retries`` is exhausted, if set); ``push-then-poll`` switches to
    polling on the first stream failure.
    """

    stream_url: str
    poll_url: str
    transport: TransportPolicy = "push-then-poll"
    retry_delay_ms: int = Field(default=5000, gt=0)
    poll_interval_ms: int = Field(default=5000, gt=0)
    max_push_retries: Optional[int] = Field(default=None, ge=0)
    request_timeout_seconds: float = Field(default=10.0, gt=0)
    stream_read_timeout_seconds: float = Field(default=60.0, gt=0)


class Settings(BaseSettings):
    api_base_url: str = ""
    stream_path: str = DEFAULT_STREAM_PATH
    poll_path: str = DEFAULT_POLL_PATH
    transport: TransportPolicy = "push-then-poll"
    retry_delay_ms: int = 5000
    poll_interval_ms: int = 5000
    max_push_retries: Optional[int] = None
    request_timeout_seconds: float = 10.0
    stream_read_timeout_seconds: float = 60.0
    # Use str type to prevent pydantic-settings from attempting JSON parsing before validator
    allowed_origins: str = ""
    log_level: str = "INFO"
    log_file: str = "logs/livemetrics.log"
    log_max_bytes: int = 1_048_576
    log_backup_count: int = 3

    model_config = SettingsConfigDict(env_file=".env", env_prefix="LIVEMETRICS_", case_sensitive=False)

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_allowed_origins(cls, value) -> str:
        if value is None:
            return ""
        return str(value)

    def get_allowed_origins(self) -> List[str]:
        return _parse_origins(self.allowed_origins)

    def live_metrics_config(self) -> LiveMetricsConfig:
        return LiveMetricsConfig(
            stream_url=resolve_url(self.stream_path, self.api_base_url),
            poll_url=resolve_url(self.poll_path, self.api_base_url),
            transport=self.transport,
            retry_delay_ms=self.retry_delay_ms,
            poll_interval_ms=self.poll_interval_ms,
            max_push_retries=self.max_push_retries,
            request_timeout_seconds=self.request_timeout_seconds,
            stream_read_timeout_seconds=self.stream_read_timeout_seconds,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
