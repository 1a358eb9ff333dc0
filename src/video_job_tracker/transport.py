from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Mapping

import httpx

from .config import ClientSettings
from .errors import ProtocolError, RemoteError, TransportError
from .models.job import DEFAULT_FAILURE_REASON, JobResult, JobSnapshot, JobStatus, normalize_status
from .models.request import VideoGenerationRequest

logger = logging.getLogger(__name__)

API_KEY_PLACEHOLDER = "YOUR_API_KEY"


class VideoApiTransport:
    """Single-shot HTTP calls against the image-to-video provider.

    Each method performs exactly one request. Failures are classified into
    ``TransportError`` (network/timeout), ``RemoteError`` (non-2xx) and
    ``ProtocolError`` (2xx with an unusable body); nothing is retried here.
    """

    def __init__(
        self,
        *,
        api_key: str,
        settings: ClientSettings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            api_key: Opaque provider credential, sent verbatim in a header
            settings: Base URLs, header name and default timeout
            client: Optional pre-built ``httpx.AsyncClient`` (tests inject a mock transport)
        """
        if not api_key or not api_key.strip():
            raise ValueError("API key is required")

        self.settings = settings or ClientSettings()
        self._headers = {self.settings.api_key_header: api_key}
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None

    async def __aenter__(self) -> "VideoApiTransport":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def submit_job(
        self, request: VideoGenerationRequest, *, timeout: float | None = None
    ) -> str:
        """Create a generation job.

        Args:
            request: Normalized submission parameters
            timeout: Per-call timeout in seconds

        Returns:
            Provider-assigned job ID
        """
        url = submit_url(self.settings)
        data = await self._request("POST", url, timeout=timeout, json=request.to_payload())

        job_id = data.get("id")
        if not isinstance(job_id, str) or not job_id:
            raise ProtocolError(f"Job creation response has no id: {data!r}")

        logger.info(
            "Submitted video generation job",
            extra={"job_id": job_id, "frames": request.frames, "resolution": request.resolution},
        )
        return job_id

    async def fetch_status(self, job_id: str, *, timeout: float | None = None) -> JobSnapshot:
        """Fetch and normalize the current status of a job."""
        url = f"{self._generation_base}/image-to-video/status/{job_id}"
        data = await self._request("GET", url, timeout=timeout)
        return parse_status_payload(job_id, data)

    async def upload_asset(
        self,
        data: bytes,
        *,
        filename: str = "image.png",
        content_type: str = "application/octet-stream",
        timeout: float | None = None,
    ) -> str:
        """Upload a source image and return its public URL."""
        url = f"{self.settings.upload_base_url.rstrip('/')}/upload"
        body = await self._request(
            "POST",
            url,
            timeout=timeout,
            files={"filename": (filename, data, content_type)},
        )

        asset_url = body.get("url")
        if not isinstance(asset_url, str) or not asset_url:
            raise ProtocolError(f"Upload response has no url: {body!r}")

        logger.info("Uploaded source asset", extra={"asset_filename": filename, "size": len(data)})
        return asset_url

    @property
    def _generation_base(self) -> str:
        return self.settings.generation_base_url.rstrip("/")

    async def _request(
        self, method: str, url: str, *, timeout: float | None, **kwargs: Any
    ) -> dict[str, Any]:
        limit = timeout if timeout is not None else self.settings.request_timeout

        try:
            response = await asyncio.wait_for(
                self._client.request(method, url, headers=self._headers, timeout=limit, **kwargs),
                timeout=limit,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise TransportError("Request timeout") from exc
        except httpx.RequestError as exc:
            raise TransportError(str(exc) or "Network request failed") from exc

        body = _decode_body(response)

        if not response.is_success:
            message = None
            if isinstance(body, Mapping) and isinstance(body.get("error"), str):
                message = body["error"]
            logger.warning(
                "Provider returned an error response",
                extra={"url": url, "status_code": response.status_code},
            )
            raise RemoteError(response.status_code, body, message)

        if not isinstance(body, dict):
            raise ProtocolError(f"Expected a JSON object from {url}, got {type(body).__name__}")
        return body


def submit_url(settings: ClientSettings) -> str:
    return f"{settings.generation_base_url.rstrip('/')}/image-to-video/run"


def describe_submit(
    request: VideoGenerationRequest, settings: ClientSettings | None = None
) -> dict[str, Any]:
    """Describe the exact submit call for ``request`` without sending it.

    The credential is replaced by ``API_KEY_PLACEHOLDER`` so the result is
    safe to show or copy. The ``curl`` entry reproduces the call from a shell.
    """
    settings = settings or ClientSettings()
    url = submit_url(settings)
    headers = {
        "accept": "application/json",
        settings.api_key_header: API_KEY_PLACEHOLDER,
        "Content-Type": "application/json",
    }
    payload = request.to_payload()
    lines = ["curl -X 'POST'", f"'{url}'"]
    lines += [f"-H '{name}: {value}'" for name, value in headers.items()]
    lines.append(f"-d '{json.dumps(payload, indent=2)}'")
    return {
        "method": "POST",
        "url": url,
        "headers": headers,
        "payload": payload,
        "curl": " \\\n  ".join(lines),
    }


def _decode_body(response: httpx.Response) -> Any:
    content_type = response.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


def parse_status_payload(job_id: str, data: Mapping[str, Any]) -> JobSnapshot:
    """Normalize a provider status response into a ``JobSnapshot``.

    The result URL may arrive as ``output.video_url`` or as the first element
    of ``output.output``; both mean the job produced one artifact. A
    success-like status without either is returned with no result and left
    for the poller to reject.
    """
    status = normalize_status(data.get("status"))
    progress = _coerce_progress(data.get("progress"))

    result = None
    if status is JobStatus.succeeded:
        url = extract_result_url(data.get("output"))
        if url:
            result = JobResult(url=url, raw=dict(data))

    failure_reason = None
    if status is JobStatus.failed:
        error = data.get("error")
        failure_reason = str(error) if error else DEFAULT_FAILURE_REASON

    return JobSnapshot(
        id=job_id,
        status=status,
        progress=progress,
        result=result,
        failure_reason=failure_reason,
    )


def extract_result_url(output: Any) -> str | None:
    if not isinstance(output, Mapping):
        return None

    direct = output.get("video_url")
    if isinstance(direct, str) and direct.strip():
        return direct

    nested = output.get("output")
    if isinstance(nested, (list, tuple)) and nested:
        first = nested[0]
        if isinstance(first, str) and first.strip():
            return first
    return None


def _coerce_progress(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number:  # NaN
        return None
    return int(min(max(number, 0.0), 100.0))


__all__ = [
    "VideoApiTransport",
    "API_KEY_PLACEHOLDER",
    "describe_submit",
    "submit_url",
    "parse_status_payload",
    "extract_result_url",
]
