import pytest

from mediasync.invalidation import CacheScope
from mediasync.jobs import (
    CompletionOutcome,
    CompletionTracker,
    JobRecord,
    JobStatus,
    build_completion,
    invalidation_scopes,
    merge_jobs,
    parse_job,
)


def _job(job_id="job-1", status="running", progress=10, created="2024-01-01T00:00:00Z", **extra):
    data = {"jobId": job_id, "jobType": "pose-generation", "status": status, "progress": progress, "createdAt": created}
    data.update(extra)
    return data


def test_unchanged_poll_keeps_collection_by_reference():
    first = merge_jobs([], [_job(results={"images": ["a"]}), _job("job-2", created="2024-01-02T00:00:00Z")])
    second = merge_jobs(first.jobs, [_job(results={"images": ["a"]}), _job("job-2", created="2024-01-02T00:00:00Z")])

    assert not second.changed
    assert second.transitions == []
    assert all(after is before for after, before in zip(second.jobs, first.jobs))


def test_changed_job_keeps_unaffected_field_objects():
    first = merge_jobs([], [_job(inputs={"characterId": "char-1"}, progress=10)])
    second = merge_jobs(first.jobs, [_job(inputs={"characterId": "char-1"}, progress=50)])

    (before,), (after,) = first.jobs, second.jobs
    assert after is not before
    assert after.progress == 50
    assert after.inputs is before.inputs


@pytest.mark.parametrize("late_status", ["running", "queued", "failed", "completed"])
def test_terminal_status_never_changes(late_status):
    state = merge_jobs([], [_job(status="completed", progress=100)]).jobs
    state = merge_jobs(state, [_job(status=late_status, progress=5)]).jobs

    assert state[0].status is JobStatus.COMPLETED


def test_status_never_regresses_and_progress_never_decreases():
    state = merge_jobs([], [_job(status="running", progress=60)]).jobs
    result = merge_jobs(state, [_job(status="queued", progress=40)])

    assert result.jobs[0].status is JobStatus.RUNNING
    assert result.jobs[0].progress == 60
    assert not result.changed


def test_awaiting_input_can_resume():
    state = merge_jobs([], [_job(status="awaiting_input")]).jobs
    result = merge_jobs(state, [_job(status="running", progress=20)])
    assert result.jobs[0].status is JobStatus.RUNNING


def test_merge_order_does_not_matter_for_terminal_state():
    running, done = _job(status="running", progress=50), _job(status="completed", progress=100)

    a = merge_jobs(merge_jobs([], [running]).jobs, [done]).jobs
    b = merge_jobs(merge_jobs([], [done]).jobs, [running]).jobs

    assert a[0].status is b[0].status is JobStatus.COMPLETED


def test_jobs_missing_from_response_are_kept_and_sorted_newest_first():
    state = merge_jobs([], [_job("old", created="2024-01-01T00:00:00Z")]).jobs
    result = merge_jobs(state, [_job("new", created="2024-02-01T00:00:00Z")])

    assert [job.job_id for job in result.jobs] == ["new", "old"]


def test_deleted_ids_are_not_resurrected():
    result = merge_jobs([], [_job("gone"), _job("kept")], deleted={"gone"})
    assert [job.job_id for job in result.jobs] == ["kept"]


def test_invalid_records_are_skipped():
    result = merge_jobs([], [{"status": "running"}, _job(status="exploded"), _job("ok")])
    assert [job.job_id for job in result.jobs] == ["ok"]


def test_parse_job_accepts_alternate_keys_and_normalizes_values():
    job = parse_job(
        {
            "id": "job-9",
            "type": "image-generation",
            "status": "processing",
            "progress": 140,
            "createdAt": 1700000000000,
            "error": {"message": "quota"},
        }
    )
    assert job.job_id == "job-9"
    assert job.job_type == "image-generation"
    assert job.status is JobStatus.RUNNING
    assert job.progress == 100
    assert job.created_at.startswith("2023-11-14")
    assert job.error == "quota"


def test_optimistic_fields_survive_merge_and_stay_off_the_wire():
    local = JobRecord(job_id="job-1", status=JobStatus.QUEUED, optimistic={"label": "Generating poses"})
    result = merge_jobs([local], [_job(status="running", optimistic={"label": "server"})])

    assert result.jobs[0].optimistic == {"label": "Generating poses"}
    assert "optimistic" not in result.jobs[0].dump_wire()
    assert result.jobs[0].dump_wire()["jobId"] == "job-1"


def test_safety_failures_require_user_choice():
    job = parse_job(
        _job(
            status="completed",
            inputs={"characterId": "char-1", "characterName": "Mara"},
            results={
                "failedPoses": [
                    {"poseId": "p1", "poseName": "Kneeling", "error": "blocked", "errorCode": "SAFETY_ERROR_USER_CHOICE"},
                    {"poseId": "p2", "error": "timeout"},
                ]
            },
        )
    )
    completion = build_completion(job)

    assert completion.outcome is CompletionOutcome.USER_CHOICE_REQUIRED
    assert [(item.id, item.name) for item in completion.failed_items] == [("p1", "Kneeling"), ("p2", "p2")]
    assert completion.entity_id == "char-1"
    assert completion.entity_name == "Mara"
    assert completion.job.status is JobStatus.COMPLETED


def test_partial_failure_and_success_outcomes():
    partial = parse_job(_job(status="completed", results={"failedAngles": [{"angle": "left", "error": "timeout"}]}))
    clean = parse_job(_job(status="completed", results={"images": []}))

    assert build_completion(partial).outcome is CompletionOutcome.PARTIAL_FAILURE
    assert build_completion(clean).outcome is CompletionOutcome.SUCCEEDED


def test_invalidation_scope_routing():
    pose = parse_job(_job(inputs={"characterId": "char-1"}))
    pose_without_id = parse_job(_job())
    location_image = parse_job(_job(jobType="image-generation", metadata={"inputs": {"locationId": "loc-1"}}))
    generic = parse_job(_job(jobType="image-generation"))
    reading = parse_job(_job(jobType="screenplay-reading"))

    assert invalidation_scopes(pose) == (CacheScope("character", "char-1"),)
    assert invalidation_scopes(pose_without_id) == (CacheScope("character"),)
    assert invalidation_scopes(location_image) == (CacheScope("location", "loc-1"),)
    assert invalidation_scopes(generic) == (CacheScope("location"), CacheScope("asset"))
    assert invalidation_scopes(reading) == (CacheScope("scene"),)


def test_completion_fires_once_per_job():
    tracker = CompletionTracker()
    state = merge_jobs([], [_job(status="running")])
    assert tracker.observe(state.transitions, state.jobs) == []

    done = merge_jobs(state.jobs, [_job(status="completed", progress=100)])
    completions = tracker.observe(done.transitions, done.jobs)
    assert [c.job.job_id for c in completions] == ["job-1"]

    again = merge_jobs(done.jobs, [_job(status="completed", progress=100)])
    assert tracker.observe(again.transitions, again.jobs) == []
    assert tracker.observe(done.transitions, done.jobs) == []


def test_seeded_completions_do_not_fire():
    tracker = CompletionTracker()
    initial = merge_jobs([], [_job(status="completed")])

    assert tracker.observe(initial.transitions, initial.jobs, seed=True) == []
    assert tracker.is_processed("job-1")
