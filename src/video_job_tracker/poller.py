from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Protocol

from .config import ClientSettings, PollSchedule
from .errors import (
    JobFailedError,
    ProtocolError,
    RemoteError,
    TimedOutError,
    TransportError,
    VideoJobError,
)
from .logging_config import set_job_id
from .models.job import DEFAULT_FAILURE_REASON, JobSnapshot, JobStatus

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]
StatusCallback = Callable[[JobStatus], None]
Sleep = Callable[[float], Awaitable[None]]
Clock = Callable[[], float]

DEFAULT_SCHEDULE = PollSchedule()


class StatusSource(Protocol):
    async def fetch_status(self, job_id: str, *, timeout: float | None = None) -> JobSnapshot:
        ...


class PollState(str, Enum):
    submitted = "SUBMITTED"
    polling = "POLLING"
    succeeded = "SUCCEEDED"
    failed = "FAILED"
    timed_out = "TIMED_OUT"
    errored = "ERRORED"
    cancelled = "CANCELLED"

    @property
    def is_final(self) -> bool:
        return self not in (PollState.submitted, PollState.polling)


def poll_interval(
    progress: int, consecutive_errors: int, schedule: PollSchedule = DEFAULT_SCHEDULE
) -> float:
    """Seconds to wait before the next status call.

    With no outstanding errors the wait shrinks as progress approaches 100.
    After failed calls it grows with the error count up to ``error_cap``.
    """
    if consecutive_errors > 0:
        backoff = schedule.error_base * (2 ** min(consecutive_errors - 1, 16))
        return min(backoff, schedule.error_cap)
    if progress >= schedule.late_progress:
        return schedule.late_interval
    if progress >= schedule.mid_progress:
        return schedule.mid_interval
    return schedule.early_interval


@dataclass
class PollerState:
    job_id: str
    started_at: float
    phase: PollState = PollState.submitted
    last_progress: int = 0
    last_status: JobStatus | None = None
    consecutive_errors: int = 0
    polls: int = 0
    alive: bool = True


@dataclass(frozen=True)
class PollOutcome:
    state: PollState
    job: JobSnapshot | None = None
    error: VideoJobError | None = None

    @property
    def ok(self) -> bool:
        return self.state is PollState.succeeded

    @property
    def message(self) -> str | None:
        """Human-readable text for a terminal failure, ``None`` otherwise."""
        if self.error is None:
            return None
        return str(self.error)

    def unwrap(self) -> JobSnapshot:
        if self.ok and self.job is not None:
            return self.job
        if self.error is not None:
            raise self.error
        raise VideoJobError(f"Poller ended in state {self.state.value}")


class JobPoller:
    """Drives one submitted job to a terminal outcome.

    The poller waits out a warm-up delay, then alternates status calls with
    waits chosen by :func:`poll_interval`. Transport and remote failures are
    absorbed with backoff until the overall budget runs out, at which point
    the run ends as ``TIMED_OUT``. ``cancel()`` may be called at any time;
    afterwards no callback fires and the result of any in-flight call is
    discarded.
    """

    def __init__(
        self,
        source: StatusSource,
        job_id: str,
        *,
        settings: ClientSettings | None = None,
        on_progress: ProgressCallback | None = None,
        on_status_change: StatusCallback | None = None,
        elapsed: float = 0.0,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize a poller for an already-submitted job.

        Args:
            source: Anything with ``fetch_status`` (normally the transport)
            job_id: Provider-assigned job ID
            settings: Warm-up, budget and interval policy
            on_progress: Called with each new progress maximum
            on_status_change: Called when the normalized status changes
            elapsed: Seconds already spent since submission (re-attached jobs)
            clock: Monotonic clock in seconds
            sleep: Coroutine used for every wait
        """
        if not job_id:
            raise ValueError("job_id is required")

        self.settings = settings or ClientSettings()
        self._source = source
        self._on_progress = on_progress
        self._on_status_change = on_status_change
        self._clock = clock
        self._sleep = sleep
        self._elapsed = max(elapsed, 0.0)
        self.state = PollerState(job_id=job_id, started_at=clock() - self._elapsed)
        self._outcome: PollOutcome | None = None

    @property
    def job_id(self) -> str:
        return self.state.job_id

    @property
    def alive(self) -> bool:
        return self.state.alive

    @property
    def outcome(self) -> PollOutcome | None:
        return self._outcome

    @property
    def deadline(self) -> float:
        return self.state.started_at + self.settings.poll_timeout

    def cancel(self) -> None:
        if self.state.alive:
            logger.info("Poller cancelled", extra={"job_id": self.job_id, "polls": self.state.polls})
        self.state.alive = False

    def next_interval(self) -> float:
        return poll_interval(
            self.state.last_progress, self.state.consecutive_errors, self.settings.schedule
        )

    async def run(self) -> PollOutcome:
        if self.state.phase is not PollState.submitted:
            raise RuntimeError(f"Poller for {self.job_id} has already been started")

        set_job_id(self.job_id)
        outcome = await self._drive()
        self._outcome = outcome
        self.state.phase = outcome.state

        if outcome.state is not PollState.cancelled:
            logger.info(
                "Poller finished",
                extra={
                    "job_id": self.job_id,
                    "state": outcome.state.value,
                    "polls": self.state.polls,
                    "error": outcome.message,
                },
            )
        return outcome

    async def _drive(self) -> PollOutcome:
        warmup = max(self.settings.warmup_delay - self._elapsed, 0.0)
        if warmup > 0:
            await self._sleep(warmup)
        if not self.state.alive:
            return PollOutcome(PollState.cancelled)

        self.state.phase = PollState.polling

        while True:
            outcome = await self._poll_once()
            if outcome is not None:
                return outcome

            remaining = self.deadline - self._clock()
            if remaining <= 0:
                return self._timed_out()

            await self._sleep(min(self.next_interval(), remaining))
            if not self.state.alive:
                return PollOutcome(PollState.cancelled)
            if self._clock() >= self.deadline:
                return self._timed_out()

    async def _poll_once(self) -> PollOutcome | None:
        self.state.polls += 1
        timeout = self.settings.request_timeout
        remaining = self.deadline - self._clock()
        if remaining > 0:
            timeout = min(timeout, remaining)
        try:
            snapshot = await self._source.fetch_status(self.job_id, timeout=timeout)
        except (TransportError, RemoteError) as exc:
            if not self.state.alive:
                return PollOutcome(PollState.cancelled)
            self.state.consecutive_errors += 1
            logger.warning(
                "Status call failed, backing off",
                extra={
                    "job_id": self.job_id,
                    "consecutive_errors": self.state.consecutive_errors,
                    "error": str(exc),
                },
            )
            return None
        except ProtocolError as exc:
            if not self.state.alive:
                return PollOutcome(PollState.cancelled)
            return PollOutcome(PollState.errored, error=exc)

        if not self.state.alive:
            return PollOutcome(PollState.cancelled)

        self.state.consecutive_errors = 0
        return self._observe(snapshot)

    def _observe(self, snapshot: JobSnapshot) -> PollOutcome | None:
        if snapshot.status is JobStatus.succeeded and not snapshot.result_url:
            return PollOutcome(
                PollState.errored,
                error=ProtocolError("Provider reported success without a result URL"),
            )

        if snapshot.status is not self.state.last_status:
            self.state.last_status = snapshot.status
            self._emit(self._on_status_change, snapshot.status)

        if snapshot.progress is not None and snapshot.progress > self.state.last_progress:
            self.state.last_progress = snapshot.progress
            self._emit(self._on_progress, snapshot.progress)

        if snapshot.status is JobStatus.succeeded:
            job = snapshot.model_copy(update={"id": self.job_id, "progress": 100})
            return PollOutcome(PollState.succeeded, job=job)

        if snapshot.status is JobStatus.failed:
            reason = snapshot.failure_reason or DEFAULT_FAILURE_REASON
            job = snapshot.model_copy(
                update={"id": self.job_id, "progress": self.state.last_progress, "failure_reason": reason}
            )
            return PollOutcome(PollState.failed, job=job, error=JobFailedError(reason))

        return None

    def _timed_out(self) -> PollOutcome:
        minutes = self.settings.poll_timeout / 60
        return PollOutcome(
            PollState.timed_out,
            error=TimedOutError(
                f"Video generation timed out after {minutes:g} minutes; "
                "the job may still be running on the provider"
            ),
        )

    def _emit(self, callback: Callable | None, value: object) -> None:
        if callback is None or not self.state.alive:
            return
        try:
            callback(value)
        except Exception:
            logger.exception("Poller callback raised", extra={"job_id": self.job_id})


__all__ = [
    "JobPoller",
    "PollOutcome",
    "PollState",
    "PollerState",
    "StatusSource",
    "poll_interval",
]
