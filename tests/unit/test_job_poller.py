import asyncio
from unittest.mock import AsyncMock

import pytest

from mediasync.errors import TransientFetchError
from mediasync.invalidation import CacheScope, InvalidationBus
from mediasync.jobs import CompletionOutcome, JobStatus
from mediasync.poller import JobPoller


class DummyJobs:
    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls = 0
        self.deleted = []

    async def list_jobs(self, scope, *, status=None):  # noqa: D401
        self.calls += 1
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response

    async def delete_job(self, job_id):  # noqa: D401
        self.deleted.append(job_id)
        return True


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _job(job_id="job-1", status="running", **extra):
    data = {"jobId": job_id, "jobType": "pose-generation", "status": status, "createdAt": "2024-01-01T00:00:00Z"}
    data.update(extra)
    return data


def _poller(service, **kwargs):
    kwargs.setdefault("active_interval", 0.01)
    kwargs.setdefault("idle_interval", 0.05)
    kwargs.setdefault("timeout_seconds", 1200)
    kwargs.setdefault("retry_attempts", 2)
    kwargs.setdefault("retry_wait", 0)
    return JobPoller(service, "screenplay-1", **kwargs)


@pytest.mark.asyncio
async def test_completion_invalidates_scope_once():
    bus = InvalidationBus()
    seen = []
    bus.subscribe(seen.append)
    done = _job(status="completed", inputs={"characterId": "char-1"})
    service = DummyJobs([[_job()], [done], [done]])
    poller = _poller(service, bus=bus)

    await poller.poll_once()
    await poller.poll_once()
    await poller.poll_once()

    assert seen == [CacheScope("character", "char-1")]
    assert [c.outcome for c in poller.completions] == [CompletionOutcome.SUCCEEDED]


@pytest.mark.asyncio
async def test_jobs_already_completed_on_first_poll_do_not_fire():
    bus = InvalidationBus()
    seen = []
    bus.subscribe(seen.append)
    poller = _poller(DummyJobs([[_job(status="completed")]]), bus=bus)

    await poller.poll_once()

    assert seen == []
    assert poller.jobs[0].status is JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_tracked_job_completing_before_first_listing_fires():
    callback = []
    poller = _poller(DummyJobs([[_job(status="completed")]]), on_completion=callback.append)
    poller.track_job("job-1", "pose-generation", label="Generating")

    await poller.poll_once()

    assert [c.job.job_id for c in callback] == ["job-1"]
    assert poller.jobs[0].optimistic == {"label": "Generating"}


@pytest.mark.asyncio
async def test_failed_poll_keeps_jobs_and_reports_error():
    service = DummyJobs([[_job()], TransientFetchError("down", status_code=502)])
    poller = _poller(service)
    await poller.poll_once()
    jobs = poller.jobs

    assert await poller.poll_once() is None

    result = poller.query()
    assert result.jobs is jobs
    assert isinstance(result.error, TransientFetchError)
    assert service.calls == 3


@pytest.mark.asyncio
async def test_unchanged_poll_keeps_list_identity():
    poller = _poller(DummyJobs([[_job(progress=30)]]))
    await poller.poll_once()
    jobs = poller.jobs

    await poller.poll_once()

    assert poller.jobs is jobs


@pytest.mark.asyncio
async def test_job_times_out_and_stays_failed():
    clock = FakeClock()
    poller = _poller(DummyJobs([[_job()]]), clock=clock, timeout_seconds=1200)
    await poller.poll_once()

    clock.now = 1200
    await poller.poll_once()
    job = poller.jobs[0]
    assert job.status is JobStatus.FAILED
    assert job.timed_out
    assert job.error == "Job job-1 timed out after 20 minutes"

    await poller.poll_once()
    assert poller.jobs[0].status is JobStatus.FAILED


@pytest.mark.asyncio
async def test_interval_follows_activity():
    poller = _poller(DummyJobs([[_job()], [_job(status="failed", error="boom")]]))
    await poller.poll_once()
    assert poller.interval == 0.01

    await poller.poll_once()
    assert poller.interval == 0.05
    assert poller.jobs[0].error == "boom"


@pytest.mark.asyncio
async def test_run_stops_when_idle():
    service = DummyJobs([[_job()], [_job(status="completed")]])
    poller = _poller(service)

    await asyncio.wait_for(poller.run(stop_when_idle=True), timeout=2)

    assert service.calls == 2
    assert not poller.is_polling


@pytest.mark.asyncio
async def test_new_job_wakes_idle_loop():
    service = DummyJobs([[]])
    poller = _poller(service, idle_interval=30)
    task = asyncio.ensure_future(poller.run())
    await asyncio.sleep(0.01)
    assert service.calls == 1

    service.responses = [[_job()]]
    poller.notify_job_created()
    await asyncio.sleep(0.01)
    assert service.calls >= 2
    assert poller.is_polling

    poller.stop()
    await asyncio.wait_for(task, timeout=1)


@pytest.mark.asyncio
async def test_delete_removes_job_and_blocks_resurrection():
    service = DummyJobs([[_job("job-1"), _job("job-2")]])
    poller = _poller(service)
    await poller.poll_once()

    assert await poller.delete_job("job-1") is True
    await poller.poll_once()

    assert service.deleted == ["job-1"]
    assert [job.job_id for job in poller.jobs] == ["job-2"]


@pytest.mark.asyncio
async def test_delete_failure_propagates():
    service = DummyJobs([[_job()]])
    service.delete_job = AsyncMock(side_effect=TransientFetchError("down"))
    poller = _poller(service)
    await poller.poll_once()

    with pytest.raises(TransientFetchError):
        await poller.delete_job("job-1")
    assert [job.job_id for job in poller.jobs] == ["job-1"]
