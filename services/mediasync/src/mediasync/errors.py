"""Error taxonomy and retry policy for the media sync layer."""

from __future__ import annotations

from typing import Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from common.config import settings


class MediaSyncError(RuntimeError):
    """Base class for all media sync failures."""


class ConfigurationError(MediaSyncError):
    """Missing or inconsistent configuration."""


class TransientFetchError(MediaSyncError):
    """Network failure or 5xx response; safe to retry."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MissingObjectError(MediaSyncError):
    """The backend reported the object (or batch) as not found."""


class JobTimeoutError(MediaSyncError):
    """A job stayed non-terminal past the polling ceiling."""

    def __init__(self, job_id: str, timeout_seconds: float) -> None:
        minutes = timeout_seconds / 60
        super().__init__(f"Job {job_id} timed out after {minutes:g} minutes")
        self.job_id = job_id
        self.timeout_seconds = timeout_seconds


def retry_policy(
    attempts: Optional[int] = None,
    max_wait: Optional[float] = None,
    min_wait: float = 1.0,
) -> AsyncRetrying:
    """Exponential backoff for transient fetch errors only.

    Usage::

        async for attempt in retry_policy():
            with attempt:
                result = await service.call()
    """

    return AsyncRetrying(
        stop=stop_after_attempt(attempts or settings.fetch_retry_attempts),
        wait=wait_exponential(
            multiplier=min_wait,
            max=max_wait if max_wait is not None else settings.fetch_retry_max_wait,
        ),
        retry=retry_if_exception_type(TransientFetchError),
        reraise=True,
    )


__all__ = [
    "ConfigurationError",
    "JobTimeoutError",
    "MediaSyncError",
    "MissingObjectError",
    "TransientFetchError",
    "retry_policy",
]
