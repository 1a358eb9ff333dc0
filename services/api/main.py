from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from video_job_tracker.config import ClientSettings
from video_job_tracker.errors import RemoteError, TransportError, VideoJobError
from video_job_tracker.firestore_ledger_store import FirestoreLedgerStore
from video_job_tracker.generation import VideoGenerationService
from video_job_tracker.history import HistoryReconciler
from video_job_tracker.ledger_store import InMemoryLedgerStore
from video_job_tracker.logging_config import setup_logging
from video_job_tracker.models.history import DisplayStatus, HistoryEntry
from video_job_tracker.models.request import VideoGenerationRequest
from video_job_tracker.transport import VideoApiTransport, describe_submit


class GenerateVideoResponse(BaseModel):
    entry_id: str
    job_id: str | None
    status: DisplayStatus


class UploadResponse(BaseModel):
    url: str


class RequestPreview(BaseModel):
    method: str
    url: str
    headers: dict[str, str]
    payload: dict[str, Any]
    curl: str


# Environment configuration
ENVIRONMENT = os.getenv("ENVIRONMENT", "dev")
PROJECT_ID = os.getenv("PROJECT_ID")
MAGICAPI_KEY = os.getenv("MAGICAPI_KEY", "")

# Setup logging
setup_logging(environment=ENVIRONMENT, project_id=PROJECT_ID)

settings = ClientSettings()

# Use Firestore in production, in-memory for dev
if ENVIRONMENT == "dev":
    ledger_store = InMemoryLedgerStore()
else:
    ledger_store = FirestoreLedgerStore(project_id=PROJECT_ID)

transport = VideoApiTransport(api_key=MAGICAPI_KEY, settings=settings) if MAGICAPI_KEY else None
reconciler = HistoryReconciler(ledger_store, source=transport, settings=settings)


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    if transport is not None:
        reconciler.reconcile_on_load()
        reconciler.start_sweeps()
    yield
    reconciler.shutdown()
    if transport is not None:
        await transport.aclose()


app = FastAPI(title="Image-to-Video Job Tracker API", version="0.1.0", lifespan=lifespan)


def _service() -> VideoGenerationService:
    if transport is None:
        raise HTTPException(status_code=503, detail="MAGICAPI_KEY is not configured")
    return VideoGenerationService(transport=transport, reconciler=reconciler)


def _error_status(exc: VideoJobError) -> int:
    if isinstance(exc, RemoteError):
        if exc.is_auth_error():
            # Provider rejected the configured key.
            return 503
        if exc.is_client_error():
            return exc.status_code
        if exc.is_server_error():
            return 502
    if isinstance(exc, TransportError):
        return 504
    return 502


@app.post("/v1/uploads", response_model=UploadResponse)
async def upload_image(file: UploadFile = File(...)) -> UploadResponse:
    service = _service()
    data = await file.read()
    try:
        url = await service.upload_image(
            data,
            filename=file.filename or "image",
            content_type=file.content_type or "application/octet-stream",
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except VideoJobError as exc:
        raise HTTPException(status_code=_error_status(exc), detail=f"Upload failed: {exc}")
    return UploadResponse(url=url)


@app.post("/v1/videos:preview", response_model=RequestPreview)
async def preview_video_request(request: VideoGenerationRequest) -> RequestPreview:
    return RequestPreview(**describe_submit(request, settings))


@app.post("/v1/videos:generate", response_model=GenerateVideoResponse)
async def generate_video(request: VideoGenerationRequest) -> GenerateVideoResponse:
    service = _service()
    try:
        entry_id = await service.generate(request)
    except VideoJobError as exc:
        raise HTTPException(
            status_code=_error_status(exc), detail=f"Video generation failed: {exc}"
        )

    entry = reconciler.get(entry_id)
    if entry is None:
        raise HTTPException(status_code=409, detail="History entry was removed")
    return GenerateVideoResponse(entry_id=entry_id, job_id=entry.job_id, status=entry.display_status)


@app.get("/v1/history", response_model=list[HistoryEntry])
async def list_history() -> list[HistoryEntry]:
    return reconciler.entries()


@app.get("/v1/history/{entry_id}", response_model=HistoryEntry)
async def get_history_entry(entry_id: str) -> HistoryEntry:
    entry = reconciler.get(entry_id)
    if not entry:
        raise HTTPException(status_code=404, detail="History entry not found")
    return entry


@app.delete("/v1/history/{entry_id}")
async def remove_history_entry(entry_id: str) -> JSONResponse:
    if not reconciler.remove(entry_id):
        raise HTTPException(status_code=404, detail="History entry not found")
    return JSONResponse({"status": "removed", "entry_id": entry_id})


@app.delete("/v1/history")
async def clear_history() -> JSONResponse:
    reconciler.clear()
    return JSONResponse({"status": "cleared"})


@app.get("/health")
async def healthcheck() -> JSONResponse:
    return JSONResponse({"status": "ok", "tracking": transport is not None})
