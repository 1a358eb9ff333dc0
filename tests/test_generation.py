import httpx
import pytest

from fakes import no_wait
from video_job_tracker.config import ClientSettings
from video_job_tracker.errors import RemoteError
from video_job_tracker.generation import VideoGenerationService
from video_job_tracker.history import HistoryReconciler
from video_job_tracker.ledger_store import InMemoryLedgerStore
from video_job_tracker.models.history import DisplayStatus
from video_job_tracker.models.request import VideoGenerationRequest
from video_job_tracker.transport import VideoApiTransport

SETTINGS = ClientSettings(warmup_delay=0)


def build_service(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    transport = VideoApiTransport(api_key="secret-key", settings=SETTINGS, client=client)
    reconciler = HistoryReconciler(
        InMemoryLedgerStore(), source=transport, settings=SETTINGS, sleep=no_wait
    )
    return VideoGenerationService(transport=transport, reconciler=reconciler)


def make_request():
    return VideoGenerationRequest(
        prompt="Waves crashing on a cliff", source_image_url="https://img.example.com/cliff.png"
    )


@pytest.mark.asyncio
async def test_generate_and_wait_records_result():
    statuses = iter(
        [
            {"status": "IN_QUEUE"},
            {"status": "IN_PROGRESS", "progress": 65},
            {"status": "COMPLETED", "output": {"output": ["https://cdn.example.com/cliff.mp4"]}},
        ]
    )

    def handler(request):
        if request.url.path.endswith("/image-to-video/run"):
            return httpx.Response(200, json={"id": "job-77"})
        return httpx.Response(200, json=next(statuses))

    service = build_service(handler)
    entry = await service.generate_and_wait(make_request())

    assert entry.job_id == "job-77"
    assert entry.display_status is DisplayStatus.succeeded
    assert entry.job.result.url == "https://cdn.example.com/cliff.mp4"
    assert entry.job.result.raw["status"] == "COMPLETED"


@pytest.mark.asyncio
async def test_submission_failure_marks_entry_failed():
    def handler(request):
        return httpx.Response(401, json={"error": "invalid key"})

    service = build_service(handler)

    with pytest.raises(RemoteError):
        await service.generate(make_request())

    (entry,) = service.reconciler.entries()
    assert entry.display_status is DisplayStatus.failed
    assert entry.message == "Video generation failed: invalid key"
    assert not service.reconciler.is_tracking(entry.entry_id)


@pytest.mark.asyncio
async def test_upload_rejects_non_images():
    service = build_service(lambda request: httpx.Response(200, json={"url": "unused"}))

    with pytest.raises(ValueError):
        await service.upload_image(b"%PDF", filename="doc.pdf", content_type="application/pdf")


@pytest.mark.asyncio
async def test_upload_returns_asset_url():
    service = build_service(lambda request: httpx.Response(200, json={"url": "https://img.example.com/1.png"}))

    url = await service.upload_image(b"\x89PNG", filename="a.png", content_type="image/png")

    assert url == "https://img.example.com/1.png"
