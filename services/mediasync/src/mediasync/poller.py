"""Async poll loop over the job status service."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from common.config import settings
from common.logging import get_logger

from .clients import JobStatusService
from .errors import JobTimeoutError, MediaSyncError, retry_policy
from .invalidation import InvalidationBus
from .jobs import (
    CompletionOutcome,
    CompletionTracker,
    JobCompletion,
    JobMergeResult,
    JobRecord,
    JobStatus,
    merge_jobs,
)

LOGGER = get_logger(__name__)


@dataclass
class JobsResult:
    jobs: List[JobRecord]
    is_polling: bool
    error: Optional[BaseException] = None


class JobPoller:
    """Keeps a merged, newest-first view of the jobs in one scope.

    The loop polls every ``active_interval`` seconds while any job is
    non-terminal and every ``idle_interval`` seconds otherwise. Creating a job
    (:meth:`track_job` or :meth:`notify_job_created`) wakes it immediately.
    A job that stays non-terminal for ``timeout_seconds`` after it was first
    seen is failed locally with a timeout message.
    """

    def __init__(
        self,
        service: JobStatusService,
        scope: str,
        bus: Optional[InvalidationBus] = None,
        *,
        active_interval: Optional[float] = None,
        idle_interval: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
        retry_attempts: Optional[int] = None,
        retry_wait: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        on_completion: Optional[Callable[[JobCompletion], None]] = None,
    ) -> None:
        self._service = service
        self._scope = scope
        self._bus = bus
        self._active_interval = active_interval or settings.job_poll_active_interval
        self._idle_interval = idle_interval or settings.job_poll_idle_interval
        self._timeout = timeout_seconds or settings.job_poll_timeout_seconds
        self._retry_attempts = retry_attempts
        self._retry_wait = retry_wait
        self._clock = clock
        self._on_completion = on_completion

        self.jobs: List[JobRecord] = []
        self.completions: List[JobCompletion] = []
        self.last_error: Optional[BaseException] = None

        self._tracker = CompletionTracker()
        self._deleted: Set[str] = set()
        self._first_seen: Dict[str, float] = {}
        self._wake = asyncio.Event()
        self._running = False
        self._stopped = False
        self._polled_once = False

    @property
    def has_active_jobs(self) -> bool:
        return any(not job.is_terminal for job in self.jobs)

    @property
    def is_polling(self) -> bool:
        """True while the loop runs at the active cadence."""

        return self._running and self.has_active_jobs

    @property
    def interval(self) -> float:
        return self._active_interval if self.has_active_jobs else self._idle_interval

    def query(self) -> JobsResult:
        return JobsResult(jobs=self.jobs, is_polling=self.is_polling, error=self.last_error)

    async def poll_once(self) -> Optional[JobMergeResult]:
        """Fetch and merge one job list. Returns ``None`` when the fetch failed."""

        try:
            async for attempt in retry_policy(self._retry_attempts, min_wait=self._retry_wait):
                with attempt:
                    payloads = await self._service.list_jobs(self._scope)
        except MediaSyncError as exc:
            # Keep the last known jobs on screen.
            self.last_error = exc
            LOGGER.warning("Job poll failed", scope=self._scope, error=str(exc))
            self._expire_overdue()
            return None

        self.last_error = None
        result = merge_jobs(self.jobs, payloads, deleted=self._deleted)
        if result.changed:
            self.jobs = result.jobs
            for transition in result.transitions:
                LOGGER.info(
                    "Job status changed",
                    job_id=transition.job_id,
                    previous=transition.previous.value if transition.previous else None,
                    status=transition.current.value,
                )
                if transition.current is JobStatus.FAILED:
                    failed = next((job for job in self.jobs if job.job_id == transition.job_id), None)
                    LOGGER.warning(
                        "Job failed",
                        job_id=transition.job_id,
                        error=failed.error if failed else None,
                    )

        completions = self._tracker.observe(result.transitions, self.jobs, seed=not self._polled_once)
        self._polled_once = True
        self._expire_overdue()
        for completion in completions:
            self._complete(completion)
        return result

    def _complete(self, completion: JobCompletion) -> None:
        job = completion.job
        log = LOGGER.warning if completion.outcome is not CompletionOutcome.SUCCEEDED else LOGGER.info
        log(
            "Job completed",
            job_id=job.job_id,
            job_type=job.job_type,
            outcome=completion.outcome.value,
            failed_items=len(completion.failed_items),
            scopes=[str(scope) for scope in completion.scopes],
        )
        self.completions.append(completion)
        if self._bus is not None:
            for scope in completion.scopes:
                self._bus.invalidate(scope)
        if self._on_completion is not None:
            self._on_completion(completion)

    def _expire_overdue(self) -> None:
        now = self._clock()
        updated: List[JobRecord] = []
        expired = False
        for job in self.jobs:
            if job.is_terminal:
                self._first_seen.pop(job.job_id, None)
                updated.append(job)
                continue
            first_seen = self._first_seen.setdefault(job.job_id, now)
            if now - first_seen < self._timeout:
                updated.append(job)
                continue
            error = JobTimeoutError(job.job_id, self._timeout)
            LOGGER.warning("Job polling timed out", job_id=job.job_id, timeout_seconds=self._timeout)
            self._first_seen.pop(job.job_id, None)
            updated.append(
                job.model_copy(update={"status": JobStatus.FAILED, "error": str(error), "timed_out": True})
            )
            expired = True
        if expired:
            self.jobs = updated

    def track_job(self, job_id: str, job_type: Optional[str] = None, **optimistic: Any) -> JobRecord:
        """Show a job the client just started, before the backend lists it."""

        for job in self.jobs:
            if job.job_id == job_id:
                return job
        record = JobRecord(
            job_id=job_id,
            job_type=job_type,
            status=JobStatus.QUEUED,
            created_at=datetime.now(timezone.utc).isoformat(),
            optimistic=dict(optimistic),
        )
        self.jobs = [record, *self.jobs]
        self.notify_job_created()
        return record

    def notify_job_created(self) -> None:
        self._wake.set()

    async def delete_job(self, job_id: str) -> bool:
        ok = await self._service.delete_job(job_id)
        if ok:
            self._deleted.add(job_id)
            self._first_seen.pop(job_id, None)
            self._tracker.forget(job_id)
            self.jobs = [job for job in self.jobs if job.job_id != job_id]
            LOGGER.info("Job deleted", job_id=job_id)
        return ok

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        finally:
            self._wake.clear()

    async def run(self, *, stop_when_idle: bool = False) -> None:
        """Poll until :meth:`stop` (or, with ``stop_when_idle``, until every job is terminal)."""

        self._running = True
        self._stopped = False
        LOGGER.info("Job poller started", scope=self._scope)
        try:
            while not self._stopped:
                await self.poll_once()
                if stop_when_idle and self.last_error is None and not self.has_active_jobs:
                    break
                await self._sleep(self.interval)
        finally:
            self._running = False
            LOGGER.info("Job poller stopped", scope=self._scope)

    def stop(self) -> None:
        self._stopped = True
        self._wake.set()


__all__ = ["JobPoller", "JobsResult"]
