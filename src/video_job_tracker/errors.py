from __future__ import annotations

from typing import Any


class VideoJobError(Exception):
    """Base class for every error raised by the video job client."""


class TransportError(VideoJobError):
    """Network failure or timeout. The poller retries these; transport never does."""


class RemoteError(VideoJobError):
    """Non-2xx response from the provider."""

    def __init__(self, status_code: int, body: Any = None, message: str | None = None) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(message or f"Request failed with status {status_code}")

    def is_client_error(self) -> bool:
        return 400 <= self.status_code < 500

    def is_server_error(self) -> bool:
        return self.status_code >= 500

    def is_auth_error(self) -> bool:
        return self.status_code in (401, 403)


class ProtocolError(VideoJobError):
    """A 2xx response whose shape breaks the provider contract."""


class TimedOutError(VideoJobError):
    """Overall polling budget exhausted; the job may still be running remotely."""


class JobFailedError(VideoJobError):
    """The provider reported the job as failed."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Video generation failed: {reason}")


__all__ = [
    "VideoJobError",
    "TransportError",
    "RemoteError",
    "ProtocolError",
    "TimedOutError",
    "JobFailedError",
]
