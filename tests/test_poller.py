import asyncio

import pytest

from fakes import BlockingSource, FakeClock, ScriptedSource, settle, snapshot
from video_job_tracker.config import ClientSettings
from video_job_tracker.errors import (
    JobFailedError,
    ProtocolError,
    RemoteError,
    TimedOutError,
    TransportError,
)
from video_job_tracker.models.job import JobStatus
from video_job_tracker.poller import JobPoller, PollState


def make_poller(source, clock, settings=None, **kwargs):
    statuses, progress = [], []
    poller = JobPoller(
        source,
        "job-1",
        settings=settings or ClientSettings(),
        on_progress=progress.append,
        on_status_change=statuses.append,
        clock=clock,
        sleep=clock.sleep,
        **kwargs,
    )
    return poller, statuses, progress


@pytest.mark.asyncio
async def test_emits_one_callback_per_distinct_status_and_progress():
    clock = FakeClock()
    source = ScriptedSource(
        [
            snapshot(JobStatus.queued),
            snapshot(JobStatus.running, progress=40),
            snapshot(JobStatus.running, progress=40),
            snapshot(JobStatus.succeeded, url="https://cdn.example.com/x.mp4"),
        ]
    )
    poller, statuses, progress = make_poller(source, clock)

    outcome = await poller.run()

    assert outcome.state is PollState.succeeded
    assert outcome.unwrap().result_url == "https://cdn.example.com/x.mp4"
    assert statuses == [JobStatus.queued, JobStatus.running, JobStatus.succeeded]
    assert progress == [40]
    assert source.calls == 4


@pytest.mark.asyncio
async def test_progress_reported_to_caller_never_decreases():
    clock = FakeClock()
    source = ScriptedSource(
        [
            snapshot(JobStatus.running, progress=10),
            snapshot(JobStatus.running, progress=55),
            snapshot(JobStatus.running, progress=30),
            snapshot(JobStatus.running, progress=None),
            snapshot(JobStatus.running, progress=55),
            snapshot(JobStatus.running, progress=92),
            snapshot(JobStatus.succeeded, url="https://cdn.example.com/v.mp4"),
        ]
    )
    poller, _, progress = make_poller(source, clock)

    await poller.run()

    assert progress == [10, 55, 92]
    assert poller.state.last_progress == 92


@pytest.mark.asyncio
async def test_success_without_result_url_is_a_protocol_error():
    clock = FakeClock()
    source = ScriptedSource([snapshot(JobStatus.running, progress=20), snapshot(JobStatus.succeeded)])
    poller, statuses, _ = make_poller(source, clock)

    outcome = await poller.run()

    assert outcome.state is PollState.errored
    assert isinstance(outcome.error, ProtocolError)
    assert JobStatus.succeeded not in statuses
    with pytest.raises(ProtocolError):
        outcome.unwrap()


@pytest.mark.asyncio
async def test_provider_failure_defaults_reason():
    clock = FakeClock()
    source = ScriptedSource([snapshot(JobStatus.failed)])
    poller, statuses, _ = make_poller(source, clock)

    outcome = await poller.run()

    assert outcome.state is PollState.failed
    assert isinstance(outcome.error, JobFailedError)
    assert outcome.error.reason == "unknown error"
    assert outcome.job.failure_reason == "unknown error"
    assert outcome.message == "Video generation failed: unknown error"
    assert statuses == [JobStatus.failed]


@pytest.mark.asyncio
async def test_persistent_errors_end_in_timeout_not_generic_failure():
    clock = FakeClock()
    settings = ClientSettings()
    source = ScriptedSource([TransportError("connection reset")])
    poller, statuses, progress = make_poller(source, clock, settings)

    outcome = await poller.run()

    assert outcome.state is PollState.timed_out
    assert isinstance(outcome.error, TimedOutError)
    assert clock.now == pytest.approx(settings.poll_timeout)
    assert max(clock.sleeps[1:]) <= settings.schedule.error_cap
    assert statuses == [] and progress == []
    assert source.calls > 5


@pytest.mark.asyncio
async def test_error_backoff_grows_then_resets_after_success():
    clock = FakeClock()
    source = ScriptedSource(
        [
            TransportError("timeout"),
            RemoteError(503, {"error": "busy"}),
            snapshot(JobStatus.running, progress=10),
            snapshot(JobStatus.succeeded, url="https://cdn.example.com/v.mp4"),
        ]
    )
    poller, _, _ = make_poller(source, clock)

    outcome = await poller.run()

    assert outcome.ok
    assert clock.sleeps == [45.0, 5.0, 10.0, 15.0]
    assert poller.state.consecutive_errors == 0


@pytest.mark.asyncio
async def test_first_status_call_waits_for_warmup():
    clock = FakeClock()
    source = ScriptedSource([snapshot(JobStatus.succeeded, url="https://cdn.example.com/v.mp4")])
    calls_at_sleep = []

    async def sleep(seconds):
        calls_at_sleep.append(source.calls)
        await clock.sleep(seconds)

    poller = JobPoller(source, "job-1", clock=clock, sleep=sleep)
    await poller.run()

    assert calls_at_sleep == [0]
    assert clock.sleeps == [45.0]


@pytest.mark.asyncio
async def test_reattached_poller_skips_spent_warmup_and_keeps_budget():
    clock = FakeClock(start=1000.0)
    source = ScriptedSource([TransportError("down")])
    poller, _, _ = make_poller(source, clock, elapsed=600.0)

    outcome = await poller.run()

    assert outcome.state is PollState.timed_out
    assert clock.sleeps[0] != 45.0
    assert clock.now == pytest.approx(1000.0 + 300.0)


@pytest.mark.asyncio
async def test_status_calls_are_capped_at_the_remaining_budget():
    clock = FakeClock()
    source = ScriptedSource([snapshot(JobStatus.running)])
    settings = ClientSettings(warmup_delay=0, poll_timeout=100, request_timeout=30)
    poller, _, _ = make_poller(source, clock, settings=settings, elapsed=75.0)

    outcome = await poller.run()

    assert outcome.state is PollState.timed_out
    assert source.timeouts == [25.0, 10.0]
    assert clock.now == pytest.approx(25.0)


@pytest.mark.asyncio
async def test_protocol_error_from_source_is_fatal():
    clock = FakeClock()
    source = ScriptedSource([ProtocolError("Unrecognized job status: 'WEIRD'")])
    poller, _, _ = make_poller(source, clock)

    outcome = await poller.run()

    assert outcome.state is PollState.errored
    assert source.calls == 1


@pytest.mark.asyncio
async def test_cancel_discards_in_flight_result():
    clock = FakeClock()
    source = BlockingSource(snapshot(JobStatus.running, progress=50))
    poller, statuses, progress = make_poller(source, clock, ClientSettings(warmup_delay=0))

    task = asyncio.create_task(poller.run())
    await settle()
    assert source.calls == 1

    poller.cancel()
    source.release.set()
    outcome = await task

    assert outcome.state is PollState.cancelled
    assert statuses == [] and progress == []
    assert source.calls == 1
    assert not poller.alive


@pytest.mark.asyncio
async def test_cancel_during_wait_stops_further_requests():
    clock = FakeClock()
    source = ScriptedSource([snapshot(JobStatus.running, progress=5)])
    poller = None

    async def sleep(seconds):
        await clock.sleep(seconds)
        if source.calls:
            poller.cancel()

    poller = JobPoller(source, "job-1", clock=clock, sleep=sleep)
    outcome = await poller.run()

    assert outcome.state is PollState.cancelled
    assert source.calls == 1


@pytest.mark.asyncio
async def test_poller_runs_only_once():
    clock = FakeClock()
    source = ScriptedSource([snapshot(JobStatus.succeeded, url="https://cdn.example.com/v.mp4")])
    poller, _, _ = make_poller(source, clock)
    await poller.run()

    with pytest.raises(RuntimeError):
        await poller.run()


def test_job_id_is_required():
    with pytest.raises(ValueError):
        JobPoller(ScriptedSource([None]), "")
