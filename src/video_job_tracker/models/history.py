from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel, Field, computed_field, field_validator

from .job import JobResult, JobSnapshot, JobStatus


class DisplayStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    succeeded = "succeeded"
    failed = "failed"

    @property
    def rank(self) -> int:
        return _DISPLAY_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self.rank == 2


_DISPLAY_RANK = {
    DisplayStatus.pending: 0,
    DisplayStatus.processing: 1,
    DisplayStatus.succeeded: 2,
    DisplayStatus.failed: 2,
}

DISPLAY_FOR_JOB: Mapping[JobStatus, DisplayStatus] = {
    JobStatus.queued: DisplayStatus.pending,
    JobStatus.running: DisplayStatus.processing,
    JobStatus.succeeded: DisplayStatus.succeeded,
    JobStatus.failed: DisplayStatus.failed,
}

JOB_FOR_DISPLAY: Mapping[DisplayStatus, JobStatus] = {v: k for k, v in DISPLAY_FOR_JOB.items()}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HistoryEntry(BaseModel):
    entry_id: str
    created_at: datetime = Field(default_factory=_utcnow)
    prompt: str
    source_image_url: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    job: JobSnapshot = Field(default_factory=JobSnapshot)
    message: str | None = None

    @field_validator("created_at")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        # Ledgers written elsewhere may carry naive timestamps; read them as UTC.
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def display_status(self) -> DisplayStatus:
        return DISPLAY_FOR_JOB[self.job.status]

    @property
    def job_id(self) -> str | None:
        return self.job.id


class EntryUpdate(BaseModel):
    """Partial update applied to an entry's embedded job snapshot.

    ``display_status`` is accepted for callers that only speak the UI
    vocabulary; it is translated to the matching job status. When both are
    given, ``status`` wins.
    """

    job_id: str | None = None
    status: JobStatus | None = None
    display_status: DisplayStatus | None = None
    progress: int | None = Field(default=None, ge=0, le=100)
    result: JobResult | None = None
    failure_reason: str | None = None
    message: str | None = None

    def target_status(self) -> JobStatus | None:
        if self.status is not None:
            return self.status
        if self.display_status is not None:
            return JOB_FOR_DISPLAY[self.display_status]
        return None


__all__ = [
    "DisplayStatus",
    "HistoryEntry",
    "EntryUpdate",
    "DISPLAY_FOR_JOB",
    "JOB_FOR_DISPLAY",
]
