"""Job records, merge-by-identity and one-shot completion handling.

Job records are owned by the backend. This module never replaces the local
collection with a poll response; it merges each incoming record into the
record with the same ``jobId``:

* a terminal status (``completed``/``failed``) never changes again,
* status never moves backwards (``running`` cannot return to ``queued``),
* ``progress`` never decreases while the job is active,
* fields that did not change keep their existing objects, and a record with
  no changes is kept as-is, so an unchanged poll yields an identical list,
* ids the user deleted are ignored.

After the merge the collection is sorted newest ``createdAt`` first.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Collection, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

from pydantic import Field, ValidationError, field_validator

from common.logging import get_logger
from common.schemas import SyncModel

from .invalidation import CacheScope
from .models import EntityType

LOGGER = get_logger(__name__)

SAFETY_ERROR_CODE = "SAFETY_ERROR_USER_CHOICE"
FAILED_ITEM_FIELDS = ("failedPoses", "failedAngles")

# Never taken from a poll response.
CLIENT_ONLY_FIELDS = frozenset({"optimistic", "timed_out"})

_STATUS_ALIASES = {
    "pending": "queued",
    "processing": "running",
    "in_progress": "running",
    "in-progress": "running",
    "paused": "awaiting_input",
    "awaiting-input": "awaiting_input",
    "succeeded": "completed",
    "success": "completed",
    "error": "failed",
    "cancelled": "failed",
    "canceled": "failed",
}


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    AWAITING_INPUT = "awaiting_input"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def parse(cls, value: Any) -> "JobStatus":
        if isinstance(value, cls):
            return value
        text = str(value or "queued").strip().lower()
        return cls(_STATUS_ALIASES.get(text, text))

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def rank(self) -> int:
        # awaiting_input shares running's rank: a paused job may resume.
        return _STATUS_RANK[self]


_STATUS_RANK = {
    JobStatus.QUEUED: 0,
    JobStatus.RUNNING: 1,
    JobStatus.AWAITING_INPUT: 1,
    JobStatus.COMPLETED: 2,
    JobStatus.FAILED: 2,
}


class JobRecord(SyncModel):
    job_id: str
    job_type: Optional[str] = None
    status: JobStatus = JobStatus.QUEUED
    progress: float = 0.0
    results: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    inputs: Optional[Dict[str, Any]] = None
    credits_used: Optional[float] = None
    optimistic: Dict[str, Any] = Field(default_factory=dict, exclude=True)
    timed_out: bool = Field(default=False, exclude=True)

    @field_validator("status", mode="before")
    @classmethod
    def _parse_status(cls, value: Any) -> JobStatus:
        return JobStatus.parse(value)

    @field_validator("progress", mode="before")
    @classmethod
    def _clamp_progress(cls, value: Any) -> float:
        if value is None:
            return 0.0
        return min(100.0, max(0.0, float(value)))

    @field_validator("error", mode="before")
    @classmethod
    def _error_message(cls, value: Any) -> Optional[str]:
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, Mapping):
            return str(value.get("message") or value.get("error") or value)
        return str(value)

    @field_validator("created_at", "completed_at", mode="before")
    @classmethod
    def _timestamp(cls, value: Any) -> Optional[str]:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return value
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat()

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


JobPayload = Union[JobRecord, Mapping[str, Any]]


@dataclass(frozen=True)
class JobTransition:
    job_id: str
    previous: Optional[JobStatus]
    current: JobStatus


@dataclass
class JobMergeResult:
    jobs: List[JobRecord]
    transitions: List[JobTransition] = field(default_factory=list)
    changed: bool = False


def parse_job(payload: JobPayload) -> JobRecord:
    """Validate one backend job record. Raises ``pydantic.ValidationError``."""

    if isinstance(payload, JobRecord):
        return payload
    data = dict(payload)
    if "jobId" not in data and "job_id" not in data and "id" in data:
        data["jobId"] = data.pop("id")
    if "jobType" not in data and "job_type" not in data and "type" in data:
        data["jobType"] = data.pop("type")
    for name in ("optimistic", "timedOut", "timed_out"):
        data.pop(name, None)
    return JobRecord.model_validate(data)


def merge_record(existing: JobRecord, incoming: JobRecord) -> JobRecord:
    """Fold the fields ``incoming`` carries into ``existing``.

    Returns ``existing`` itself when nothing changes.
    """

    updates: Dict[str, Any] = {}
    for name in incoming.model_fields_set:
        if name not in JobRecord.model_fields or name in CLIENT_ONLY_FIELDS or name == "job_id":
            continue
        value = getattr(incoming, name)
        if value != getattr(existing, name):
            updates[name] = value

    if "status" in updates:
        if existing.is_terminal or updates["status"].rank < existing.status.rank:
            LOGGER.debug(
                "Ignoring job status regression",
                job_id=existing.job_id,
                current=existing.status.value,
                incoming=updates["status"].value,
            )
            del updates["status"]

    status = updates.get("status", existing.status)
    if "progress" in updates and (
        existing.is_terminal or (not status.is_terminal and updates["progress"] < existing.progress)
    ):
        del updates["progress"]

    if not updates:
        return existing
    return existing.model_copy(update=updates)


def _created_key(job: JobRecord) -> str:
    return job.created_at or ""


def merge_jobs(
    existing: Sequence[JobRecord],
    incoming: Iterable[JobPayload],
    *,
    deleted: Collection[str] = (),
) -> JobMergeResult:
    """Merge a poll response into the current collection by ``jobId``.

    Jobs missing from the response are kept. Invalid records are skipped.
    The merge is idempotent: applying the same response twice changes nothing
    the second time, and the order responses arrive in does not matter for
    terminal state.
    """

    by_id: Dict[str, JobRecord] = {job.job_id: job for job in existing}
    transitions: List[JobTransition] = []
    changed = False

    for payload in incoming:
        try:
            record = parse_job(payload)
        except ValidationError as exc:
            LOGGER.debug("Skipping invalid job record", error=str(exc))
            continue
        if record.job_id in deleted:
            continue

        current = by_id.get(record.job_id)
        if current is None:
            by_id[record.job_id] = record
            transitions.append(JobTransition(record.job_id, None, record.status))
            changed = True
            continue

        merged = merge_record(current, record)
        if merged is current:
            continue
        by_id[record.job_id] = merged
        changed = True
        if merged.status is not current.status:
            transitions.append(JobTransition(record.job_id, current.status, merged.status))

    jobs = sorted(by_id.values(), key=_created_key, reverse=True)
    if not changed and [job.job_id for job in jobs] == [job.job_id for job in existing]:
        return JobMergeResult(jobs=list(existing))
    return JobMergeResult(jobs=jobs, transitions=transitions, changed=True)


class CompletionOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    PARTIAL_FAILURE = "partial_failure"
    USER_CHOICE_REQUIRED = "user_choice_required"


@dataclass(frozen=True)
class FailedItem:
    id: str
    name: str
    error: str
    error_code: Optional[str] = None

    @property
    def is_policy_restricted(self) -> bool:
        return self.error_code == SAFETY_ERROR_CODE


@dataclass(frozen=True)
class JobCompletion:
    job: JobRecord
    outcome: CompletionOutcome
    failed_items: Tuple[FailedItem, ...] = ()
    entity_id: Optional[str] = None
    entity_name: Optional[str] = None
    scopes: Tuple[CacheScope, ...] = ()


def job_input(job: JobRecord, key: str) -> Any:
    """Look ``key`` up in ``inputs``, then ``metadata``, then ``metadata.inputs``."""

    metadata = job.metadata or {}
    nested = metadata.get("inputs")
    for source in (job.inputs, metadata, nested):
        if isinstance(source, Mapping) and source.get(key):
            return source[key]
    return None


def failed_items(job: JobRecord) -> List[FailedItem]:
    results = job.results or {}
    items: List[FailedItem] = []
    for name in FAILED_ITEM_FIELDS:
        entries = results.get(name)
        if not isinstance(entries, list):
            continue
        for entry in entries:
            if not isinstance(entry, Mapping):
                continue
            item_id = entry.get("poseId") or entry.get("angleId") or entry.get("id") or entry.get("angle") or ""
            items.append(
                FailedItem(
                    id=str(item_id),
                    name=str(entry.get("poseName") or entry.get("name") or entry.get("angle") or item_id),
                    error=str(entry.get("error") or entry.get("message") or "Unknown error"),
                    error_code=entry.get("errorCode"),
                )
            )
    return items


_ENTITY_ID_INPUTS = (
    (EntityType.CHARACTER, "characterId", "characterName"),
    (EntityType.LOCATION, "locationId", "locationName"),
    (EntityType.ASSET, "assetId", "assetName"),
)

# Job types whose results always land under fixed entity types.
_JOB_TYPE_ENTITIES: Dict[str, Tuple[EntityType, ...]] = {
    "pose-generation": (EntityType.CHARACTER,),
    "screenplay-reading": (EntityType.SCENE,),
    "complete-scene": (EntityType.SCENE,),
}


def invalidation_scopes(job: JobRecord) -> Tuple[CacheScope, ...]:
    """Cache scopes a completed job may have added objects to."""

    found: List[CacheScope] = []
    for entity_type, id_key, _ in _ENTITY_ID_INPUTS:
        value = job_input(job, id_key)
        if value:
            found.append(CacheScope(entity_type, str(value)))

    routed = _JOB_TYPE_ENTITIES.get(job.job_type or "")
    if routed is None:
        if found:
            return tuple(found)
        return (CacheScope(EntityType.LOCATION), CacheScope(EntityType.ASSET))

    scopes = [scope for scope in found if scope.entity_type in {t.value for t in routed}]
    covered = {scope.entity_type for scope in scopes}
    scopes.extend(CacheScope(entity_type) for entity_type in routed if entity_type.value not in covered)
    return tuple(scopes)


def _owning_entity(job: JobRecord) -> Tuple[Optional[str], Optional[str]]:
    for _, id_key, name_key in _ENTITY_ID_INPUTS:
        entity_id = job_input(job, id_key)
        if entity_id:
            name = job_input(job, name_key)
            return str(entity_id), str(name) if name else None
    return None, None


def build_completion(job: JobRecord) -> JobCompletion:
    items = failed_items(job)
    if any(item.is_policy_restricted for item in items):
        outcome = CompletionOutcome.USER_CHOICE_REQUIRED
    elif items:
        outcome = CompletionOutcome.PARTIAL_FAILURE
    else:
        outcome = CompletionOutcome.SUCCEEDED
    entity_id, entity_name = _owning_entity(job)
    return JobCompletion(
        job=job,
        outcome=outcome,
        failed_items=tuple(items),
        entity_id=entity_id,
        entity_name=entity_name,
        scopes=invalidation_scopes(job),
    )


class CompletionTracker:
    """Turns ``* -> completed`` transitions into completions, once per job."""

    def __init__(self) -> None:
        self._processed: Set[str] = set()

    def is_processed(self, job_id: str) -> bool:
        return job_id in self._processed

    def observe(
        self,
        transitions: Iterable[JobTransition],
        jobs: Sequence[JobRecord],
        *,
        seed: bool = False,
    ) -> List[JobCompletion]:
        """Completions for newly completed jobs.

        With ``seed`` set, jobs first seen already completed are recorded as
        processed without producing a completion; they finished before this
        tracker was watching.
        """

        by_id = {job.job_id: job for job in jobs}
        completions: List[JobCompletion] = []
        for transition in transitions:
            if transition.current is not JobStatus.COMPLETED or transition.job_id in self._processed:
                continue
            self._processed.add(transition.job_id)
            if seed and transition.previous is None:
                continue
            job = by_id.get(transition.job_id)
            if job is not None:
                completions.append(build_completion(job))
        return completions

    def forget(self, job_id: str) -> None:
        self._processed.discard(job_id)


__all__ = [
    "CompletionOutcome",
    "CompletionTracker",
    "FailedItem",
    "JobCompletion",
    "JobMergeResult",
    "JobRecord",
    "JobStatus",
    "JobTransition",
    "build_completion",
    "failed_items",
    "invalidation_scopes",
    "job_input",
    "merge_jobs",
    "merge_record",
    "parse_job",
]
