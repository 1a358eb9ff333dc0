from __future__ import annotations

from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel, Field, model_validator

from ..errors import ProtocolError


class JobStatus(str, Enum):
    queued = "QUEUED"
    running = "RUNNING"
    succeeded = "SUCCEEDED"
    failed = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.succeeded, JobStatus.failed)


# Provider vocabulary is not documented consistently; confirm against the live API.
STATUS_SYNONYMS: Mapping[str, JobStatus] = {
    "QUEUED": JobStatus.queued,
    "IN_QUEUE": JobStatus.queued,
    "PENDING": JobStatus.queued,
    "STARTING": JobStatus.queued,
    "RUNNING": JobStatus.running,
    "IN_PROGRESS": JobStatus.running,
    "PROCESSING": JobStatus.running,
    "SUCCEEDED": JobStatus.succeeded,
    "COMPLETED": JobStatus.succeeded,
    "SUCCESS": JobStatus.succeeded,
    "FAILED": JobStatus.failed,
    "ERROR": JobStatus.failed,
    "CANCELLED": JobStatus.failed,
    "TIMED_OUT": JobStatus.failed,
}

DEFAULT_FAILURE_REASON = "unknown error"


def normalize_status(raw: Any) -> JobStatus:
    """Map a provider status string onto the canonical four values."""
    if isinstance(raw, JobStatus):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        raise ProtocolError(f"Missing or invalid job status: {raw!r}")
    key = raw.strip().upper().replace("-", "_").replace(" ", "_")
    try:
        return STATUS_SYNONYMS[key]
    except KeyError:
        raise ProtocolError(f"Unrecognized job status: {raw!r}") from None


class JobResult(BaseModel):
    url: str
    raw: dict[str, Any] = Field(default_factory=dict)


class JobSnapshot(BaseModel):
    id: str | None = None
    status: JobStatus = JobStatus.queued
    progress: int | None = Field(default=None, ge=0, le=100)
    result: JobResult | None = None
    failure_reason: str | None = None

    @model_validator(mode="after")
    def _drop_fields_for_other_statuses(self) -> "JobSnapshot":
        if self.status is not JobStatus.succeeded:
            self.result = None
        if self.status is not JobStatus.failed:
            self.failure_reason = None
        return self

    @property
    def result_url(self) -> str | None:
        return self.result.url if self.result else None


__all__ = [
    "JobStatus",
    "JobResult",
    "JobSnapshot",
    "STATUS_SYNONYMS",
    "DEFAULT_FAILURE_REASON",
    "normalize_status",
]
