from __future__ import annotations

import logging

from .errors import VideoJobError
from .history import HistoryReconciler
from .models.history import EntryUpdate, HistoryEntry
from .models.job import JobStatus
from .models.request import VideoGenerationRequest
from .transport import VideoApiTransport

logger = logging.getLogger(__name__)


class VideoGenerationService:
    """Submits generation requests and hands them to the reconciler.

    Flow: record a pending entry, submit the job, attach the provider job id
    to the entry, then let the reconciler drive a poller to a terminal state.
    """

    def __init__(self, *, transport: VideoApiTransport, reconciler: HistoryReconciler) -> None:
        self.transport = transport
        self.reconciler = reconciler

    async def upload_image(
        self, data: bytes, *, filename: str, content_type: str = "application/octet-stream"
    ) -> str:
        if not content_type.startswith("image/"):
            raise ValueError("Please select a valid image file")
        return await self.transport.upload_asset(data, filename=filename, content_type=content_type)

    async def generate(self, request: VideoGenerationRequest) -> str:
        """Start a generation and return its history entry id.

        Submission failures are fatal: the entry is marked failed and the
        error is re-raised.
        """
        entry_id = self.reconciler.record(request)

        try:
            job_id = await self.transport.submit_job(request)
        except VideoJobError as exc:
            message = f"Video generation failed: {exc}"
            logger.error(
                "Job submission failed",
                extra={"entry_id": entry_id, "error": str(exc)},
            )
            self.reconciler.merge(
                entry_id,
                EntryUpdate(status=JobStatus.failed, failure_reason=str(exc), message=message),
            )
            raise

        self.reconciler.merge(entry_id, EntryUpdate(job_id=job_id))
        self.reconciler.track(entry_id)
        return entry_id

    async def generate_and_wait(self, request: VideoGenerationRequest) -> HistoryEntry | None:
        entry_id = await self.generate(request)
        await self.reconciler.wait(entry_id)
        return self.reconciler.get(entry_id)


__all__ = ["VideoGenerationService"]
