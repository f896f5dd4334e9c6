"""Asset reference synchronization layer.

Reconciles a flat listing of remote media objects into per-entity reference
collections and scene trees, resolves display URLs, and tracks generation
jobs whose completion invalidates those views.
"""

from .binder import EntityBinder, bind_references
from .classifier import classify, classify_all
from .errors import (
    ConfigurationError,
    JobTimeoutError,
    MediaSyncError,
    MissingObjectError,
    TransientFetchError,
)
from .invalidation import CacheScope, InvalidationBus
from .jobs import CompletionOutcome, JobRecord, JobStatus, merge_jobs
from .models import Category, ClassifiedReference, EntityType, QueryResult, RemoteObject
from .poller import JobPoller, JobsResult
from .scenes import Scene, Shot, Variation, reconstruct
from .store import MediaStore, SceneTreeResult
from .urls import MISSING_URL, UrlResolutionCache

__all__ = [
    "CacheScope",
    "Category",
    "ClassifiedReference",
    "CompletionOutcome",
    "ConfigurationError",
    "EntityBinder",
    "EntityType",
    "InvalidationBus",
    "JobPoller",
    "JobRecord",
    "JobStatus",
    "JobTimeoutError",
    "JobsResult",
    "MISSING_URL",
    "MediaStore",
    "MediaSyncError",
    "MissingObjectError",
    "QueryResult",
    "RemoteObject",
    "Scene",
    "SceneTreeResult",
    "Shot",
    "TransientFetchError",
    "UrlResolutionCache",
    "Variation",
    "bind_references",
    "classify",
    "classify_all",
    "merge_jobs",
    "reconstruct",
]
