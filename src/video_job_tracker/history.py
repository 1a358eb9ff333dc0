from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping

from pydantic import ValidationError

from .config import ClientSettings
from .errors import VideoJobError
from .ledger_store import LedgerStore
from .models.history import DISPLAY_FOR_JOB, DisplayStatus, EntryUpdate, HistoryEntry
from .models.job import DEFAULT_FAILURE_REASON, JobSnapshot, JobStatus
from .models.request import VideoGenerationRequest
from .poller import JobPoller, PollOutcome, PollState, StatusSource

logger = logging.getLogger(__name__)

PollerFactory = Callable[..., JobPoller]

UNRECOVERABLE_MESSAGE = "Job ID was never recorded; the generation cannot be recovered"


@dataclass
class _ActivePoll:
    poller: JobPoller
    task: "asyncio.Task[PollOutcome | None] | None" = None


def apply_update(entry: HistoryEntry, update: EntryUpdate) -> HistoryEntry:
    """Return ``entry`` with ``update`` applied, or ``entry`` itself if rejected.

    Display status only moves forward along
    ``pending -> processing -> {succeeded, failed}``. Terminal entries are
    immutable, so a late lower-precedence update can never overwrite them.
    """
    current = entry.job
    if current.status.is_terminal:
        return entry

    changes: Dict[str, Any] = {}
    target = update.target_status()
    if target is not None:
        if DISPLAY_FOR_JOB[target].rank < entry.display_status.rank:
            return entry
        if target is JobStatus.succeeded and not _result_url(update, current):
            logger.warning(
                "Ignoring success update without a result url",
                extra={"entry_id": entry.entry_id, "job_id": current.id},
            )
            return entry
        if target is not current.status:
            changes["status"] = target

    if update.job_id:
        if current.id is None:
            changes["id"] = update.job_id
        elif current.id != update.job_id:
            logger.warning(
                "Ignoring job id change on history entry",
                extra={"entry_id": entry.entry_id, "job_id": current.id, "new_job_id": update.job_id},
            )

    if update.progress is not None and update.progress > (current.progress or 0):
        changes["progress"] = update.progress

    status = changes.get("status", current.status)
    if status is JobStatus.succeeded and update.result is not None:
        changes["result"] = update.result
    if status is JobStatus.failed:
        changes["failure_reason"] = update.failure_reason or DEFAULT_FAILURE_REASON

    entry_changes: Dict[str, Any] = {}
    if changes:
        entry_changes["job"] = current.model_copy(update=changes)
    if update.message is not None:
        entry_changes["message"] = update.message
    if not entry_changes:
        return entry
    return entry.model_copy(update=entry_changes)


def _result_url(update: EntryUpdate, current: JobSnapshot) -> str | None:
    result = update.result or current.result
    return result.url if result and result.url else None


def update_for_outcome(outcome: PollOutcome) -> EntryUpdate:
    if outcome.state is PollState.succeeded and outcome.job is not None:
        return EntryUpdate(status=JobStatus.succeeded, progress=100, result=outcome.job.result)
    return EntryUpdate(
        status=JobStatus.failed,
        failure_reason=(outcome.job.failure_reason if outcome.job else None) or outcome.message,
        message=outcome.message,
    )


class HistoryReconciler:
    """Durable ledger of generation requests and the pollers driving them.

    Every mutation is written through to the injected store under a single
    key. At most one poller is live per entry; ``track`` refuses to start a
    second one.
    """

    def __init__(
        self,
        store: LedgerStore,
        *,
        source: StatusSource | None = None,
        settings: ClientSettings | None = None,
        poller_factory: PollerFactory | None = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the reconciler and load the persisted ledger.

        Args:
            store: Persistence surface for the ledger
            source: Status source handed to default pollers (normally the transport)
            settings: Client settings (ledger key, sweep interval, poll policy)
            poller_factory: Override for poller construction
            sleep: Coroutine used by default pollers and the sweep loop
            now: Wall clock used to age re-attached jobs
        """
        self.settings = settings or ClientSettings()
        self._store = store
        self._key = self.settings.ledger_key
        self._source = source
        self._poller_factory = poller_factory or self._default_poller
        self._sleep = sleep
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._active: Dict[str, _ActivePoll] = {}
        self._sweep_task: asyncio.Task[None] | None = None
        self._writing = False
        self._entries: List[HistoryEntry] = self._parse(store.get(self._key))
        self._unsubscribe = store.subscribe(self._on_store_change)

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def entries(self) -> List[HistoryEntry]:
        """Entries ordered newest first."""
        return sorted(self._entries, key=lambda entry: entry.created_at, reverse=True)

    def get(self, entry_id: str) -> HistoryEntry | None:
        for entry in self._entries:
            if entry.entry_id == entry_id:
                return entry
        return None

    def record(self, request: VideoGenerationRequest, *, job_id: str | None = None) -> str:
        entry = HistoryEntry(
            entry_id=self._generate_id(),
            created_at=self._now(),
            prompt=request.prompt,
            source_image_url=request.source_image_url,
            parameters=request.parameters(),
            job=JobSnapshot(id=job_id),
        )
        self._entries.insert(0, entry)
        self._persist()

        logger.info("Recorded history entry", extra={"entry_id": entry.entry_id})
        return entry.entry_id

    def merge(
        self, entry_id: str, update: EntryUpdate | Mapping[str, Any]
    ) -> HistoryEntry | None:
        if not isinstance(update, EntryUpdate):
            update = EntryUpdate.model_validate(update)

        for index, entry in enumerate(self._entries):
            if entry.entry_id != entry_id:
                continue
            merged = apply_update(entry, update)
            if merged is entry:
                return entry
            self._entries[index] = merged
            self._persist()
            if merged.display_status is not entry.display_status:
                logger.info(
                    "History entry status changed",
                    extra={
                        "entry_id": entry_id,
                        "job_id": merged.job_id,
                        "from_status": entry.display_status.value,
                        "to_status": merged.display_status.value,
                    },
                )
            return merged

        logger.debug("Merge for unknown history entry", extra={"entry_id": entry_id})
        return None

    def remove(self, entry_id: str) -> bool:
        self._detach(entry_id)
        remaining = [entry for entry in self._entries if entry.entry_id != entry_id]
        if len(remaining) == len(self._entries):
            return False
        self._entries = remaining
        self._persist()
        return True

    def clear(self) -> None:
        for entry_id in list(self._active):
            self._detach(entry_id)
        self._entries = []
        self._persist()

    # ------------------------------------------------------------------
    # Pollers
    # ------------------------------------------------------------------

    def is_tracking(self, entry_id: str) -> bool:
        return entry_id in self._active

    def track(self, entry_id: str) -> bool:
        """Start a poller for ``entry_id`` unless one is already live.

        Must be called from inside a running event loop.
        """
        entry = self.get(entry_id)
        if entry is None or entry.display_status.is_terminal or not entry.job_id:
            return False
        if entry_id in self._active:
            return False

        elapsed = max((self._now() - entry.created_at).total_seconds(), 0.0)
        active = _ActivePoll(poller=None)  # type: ignore[arg-type]

        def on_progress(progress: int) -> None:
            if self._active.get(entry_id) is active:
                self.merge(entry_id, EntryUpdate(progress=progress))

        def on_status_change(status: JobStatus) -> None:
            if status.is_terminal or self._active.get(entry_id) is not active:
                return
            self.merge(entry_id, EntryUpdate(status=status))

        active.poller = self._poller_factory(
            entry.job_id,
            on_progress=on_progress,
            on_status_change=on_status_change,
            elapsed=elapsed,
        )
        self._active[entry_id] = active
        active.task = asyncio.get_running_loop().create_task(self._drive(entry_id, active))

        logger.info(
            "Attached poller",
            extra={"entry_id": entry_id, "job_id": entry.job_id, "elapsed": round(elapsed, 1)},
        )
        return True

    async def wait(self, entry_id: str) -> PollOutcome | None:
        """Wait for the live poller of ``entry_id``, if any, to finish."""
        active = self._active.get(entry_id)
        if active is None or active.task is None:
            return None
        try:
            return await asyncio.shield(active.task)
        except asyncio.CancelledError:
            if active.task.cancelled():
                return None
            raise

    def reconcile_on_load(self) -> List[str]:
        """Re-attach pollers to every in-flight entry.

        Entries without a job id can never be polled and are marked failed.
        Returns the entry ids a poller was attached to.
        """
        attached: List[str] = []
        for entry in list(self._entries):
            if entry.display_status.is_terminal:
                continue
            if not entry.job_id:
                self.merge(
                    entry.entry_id,
                    EntryUpdate(
                        status=JobStatus.failed,
                        failure_reason=UNRECOVERABLE_MESSAGE,
                        message=UNRECOVERABLE_MESSAGE,
                    ),
                )
                continue
            if self.track(entry.entry_id):
                attached.append(entry.entry_id)

        logger.info("Reconciled history on load", extra={"attached": len(attached)})
        return attached

    def sweep(self) -> List[str]:
        """Attach pollers to in-flight entries that have none."""
        attached = []
        for entry in list(self._entries):
            if entry.display_status in (DisplayStatus.pending, DisplayStatus.processing):
                if self.track(entry.entry_id):
                    attached.append(entry.entry_id)
        if attached:
            logger.info("Sweep attached pollers", extra={"attached": len(attached)})
        return attached

    def start_sweeps(self, interval: float | None = None) -> None:
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        period = interval if interval is not None else self.settings.sweep_interval
        self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop(period))

    def stop_sweeps(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            self._sweep_task = None

    def shutdown(self) -> None:
        """Stop sweeps and detach every poller. The ledger is left as is."""
        self.stop_sweeps()
        for entry_id in list(self._active):
            self._detach(entry_id)
        self._unsubscribe()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _default_poller(self, job_id: str, **kwargs: Any) -> JobPoller:
        if self._source is None:
            raise RuntimeError("HistoryReconciler needs a status source to start pollers")
        return JobPoller(self._source, job_id, settings=self.settings, sleep=self._sleep, **kwargs)

    async def _drive(self, entry_id: str, active: _ActivePoll) -> PollOutcome | None:
        poller = active.poller
        try:
            try:
                outcome = await poller.run()
            except Exception as exc:
                logger.exception(
                    "Poller crashed", extra={"entry_id": entry_id, "job_id": poller.job_id}
                )
                outcome = PollOutcome(
                    PollState.errored, error=VideoJobError(f"Unexpected polling error: {exc}")
                )

            if not poller.alive or outcome.state is PollState.cancelled:
                return None
            if self._active.get(entry_id) is active:
                self.merge(entry_id, update_for_outcome(outcome))
            return outcome
        finally:
            if self._active.get(entry_id) is active:
                del self._active[entry_id]

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await self._sleep(interval)
            try:
                self.sweep()
            except Exception:
                logger.exception("History sweep failed")

    def _detach(self, entry_id: str) -> None:
        active = self._active.pop(entry_id, None)
        if active is None:
            return
        active.poller.cancel()
        if active.task is not None:
            active.task.cancel()
        logger.info("Detached poller", extra={"entry_id": entry_id, "job_id": active.poller.job_id})

    def _persist(self) -> None:
        self._writing = True
        try:
            self._store.set(self._key, [entry.model_dump(mode="json") for entry in self._entries])
        finally:
            self._writing = False

    def _on_store_change(self, key: str, value: Any) -> None:
        if key != self._key or self._writing:
            return
        self._entries = self._parse(value)
        known = {entry.entry_id for entry in self._entries}
        for entry_id in list(self._active):
            if entry_id not in known:
                self._detach(entry_id)

    def _parse(self, raw: Any) -> List[HistoryEntry]:
        entries: List[HistoryEntry] = []
        for item in raw or []:
            try:
                entries.append(HistoryEntry.model_validate(item))
            except ValidationError as exc:
                logger.warning("Skipping unreadable history entry", extra={"error": str(exc)})
        return entries

    def _generate_id(self) -> str:
        ts = int(time.time() * 1000)
        suffix = uuid.uuid4().hex[:7]
        return f"history-{ts}-{suffix}"


__all__ = ["HistoryReconciler", "apply_update", "update_for_outcome", "UNRECOVERABLE_MESSAGE"]
