from __future__ import annotations

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings

DEFAULT_GENERATION_BASE_URL = "https://prod.api.market/api/v1/magicapi/wan-text-to-image"
DEFAULT_UPLOAD_BASE_URL = "https://api.magicapi.dev/api/v1/magicapi/image-upload"
LEDGER_KEY = "video-history"


class PollSchedule(BaseModel):
    """Interval policy knobs, in seconds."""

    early_interval: float = Field(default=15.0, gt=0)
    mid_interval: float = Field(default=10.0, gt=0)
    late_interval: float = Field(default=4.0, gt=0)
    mid_progress: int = Field(default=60, ge=0, le=100)
    late_progress: int = Field(default=90, ge=0, le=100)
    error_base: float = Field(default=5.0, gt=0)
    error_cap: float = Field(default=60.0, gt=0)

    @model_validator(mode="after")
    def _check_monotonic(self) -> "PollSchedule":
        if not self.early_interval >= self.mid_interval >= self.late_interval:
            raise ValueError("Poll intervals must not grow with progress (early >= mid >= late)")
        if self.mid_progress > self.late_progress:
            raise ValueError("mid_progress must not exceed late_progress")
        if self.error_base > self.error_cap:
            raise ValueError("error_base must not exceed error_cap")
        return self


class ClientSettings(BaseSettings):
    """Client configuration, overridable through ``VIDEO_*`` environment variables.

    Nested schedule fields use a double underscore, e.g.
    ``VIDEO_SCHEDULE__LATE_INTERVAL=2``.
    """

    generation_base_url: str = DEFAULT_GENERATION_BASE_URL
    upload_base_url: str = DEFAULT_UPLOAD_BASE_URL
    api_key_header: str = "x-magicapi-key"
    request_timeout: float = Field(default=30.0, gt=0)
    warmup_delay: float = Field(default=45.0, ge=0)
    poll_timeout: float = Field(default=15 * 60.0, gt=0)
    sweep_interval: float = Field(default=10.0, gt=0)
    ledger_key: str = LEDGER_KEY
    schedule: PollSchedule = Field(default_factory=PollSchedule)

    model_config = {"env_prefix": "VIDEO_", "env_nested_delimiter": "__"}


__all__ = ["ClientSettings", "PollSchedule", "LEDGER_KEY"]
