import pytest

from helpers import DummyListing, payload
from mediasync.errors import TransientFetchError
from mediasync.invalidation import InvalidationBus
from mediasync.models import Category
from mediasync.poller import JobPoller
from mediasync.store import MediaStore
from mediasync.urls import UrlResolutionCache


class DummyJobs:
    def __init__(self):
        self.jobs = []

    async def list_jobs(self, scope, *, status=None):  # noqa: D401
        return list(self.jobs)

    async def delete_job(self, job_id):  # noqa: D401
        return True


def _store(listing, **kwargs):
    urls = UrlResolutionCache(mode="proxy", proxy_base="https://app.example")
    return MediaStore(listing, "sp-1", urls, retry_attempts=2, retry_wait=0, **kwargs)


@pytest.mark.asyncio
async def test_creation_image_replaced_by_generated_pose_end_to_end():
    listing = DummyListing({"character": []})
    bus = InvalidationBus()
    store = _store(listing, bus=bus)
    jobs = DummyJobs()
    poller = JobPoller(jobs, "sp-1", bus, retry_attempts=1, retry_wait=0)

    assert (await store.references("character", ["char-1"])).data == {"char-1": ()}

    # Upload one creation-tagged image.
    listing.objects["character"].append(
        payload("media/base.png", "character", "char-1", uploadMethod="character-creation")
    )
    store.invalidate("character", "char-1")
    collection = (await store.references("character", ["char-1"])).data["char-1"]
    assert [(ref.storage_key, ref.category) for ref in collection] == [("media/base.png", Category.CREATION_ASSET)]

    # A pose-generation job runs, writes one production image, then completes.
    jobs.jobs = [{"jobId": "job-1", "jobType": "pose-generation", "status": "running", "inputs": {"characterId": "char-1"}}]
    await poller.poll_once()
    listing.objects["character"].append(
        payload("media/pose.png", "character", "char-1", source="pose-generation", poseId="p1")
    )
    jobs.jobs = [{**jobs.jobs[0], "status": "completed", "progress": 100}]
    await poller.poll_once()

    collection = (await store.references("character", ["char-1"])).data["char-1"]
    assert [ref.storage_key for ref in collection] == ["media/pose.png"]

    headshots = (await store.headshots(["char-1"])).data["char-1"]
    assert [h.pose_id for h in headshots] == ["p1"]


@pytest.mark.asyncio
async def test_listing_is_cached_until_invalidated():
    listing = DummyListing({"character": [payload("a.png", "character", "char-1", angle="front")] * 3})
    store = _store(listing)

    first = await store.references("character", ["char-1"])
    calls = len(listing.calls)
    second = await store.references("character", ["char-1"])

    assert calls == 2  # three objects over two pages
    assert len(listing.calls) == calls
    assert second.data is first.data

    store.invalidate("character")
    third = await store.references("character", ["char-1"])
    assert len(listing.calls) == calls * 2
    assert third.data is first.data


@pytest.mark.asyncio
async def test_failed_refresh_serves_last_known_data_with_error():
    listing = DummyListing({"location": [payload("l.png", "location", "loc-1", angle="wide")]})
    store = _store(listing)
    first = await store.location_references("loc-1")

    listing.failures = [TransientFetchError("down"), TransientFetchError("down")]
    store.invalidate("location")
    result = await store.location_references("loc-1")

    assert isinstance(result.error, TransientFetchError)
    assert result.data == first.data
    assert store.is_stale("location")


@pytest.mark.asyncio
async def test_snapshot_reports_loading_until_fetched():
    listing = DummyListing({"character": [payload("a.png", "character", "char-1", angle="front")]})
    store = _store(listing)

    before = store.snapshot("character", ["char-1"])
    assert before.is_loading
    assert before.data == {"char-1": ()}

    await store.references("character", ["char-1"])
    after = store.snapshot("character", ["char-1"])
    assert not after.is_loading
    assert [ref.storage_key for ref in after.data["char-1"]] == ["a.png"]


@pytest.mark.asyncio
async def test_scene_tree_refetch_picks_up_new_objects():
    frame = {"sceneId": "s1", "sceneNumber": 1, "shotNumber": 1, "isFirstFrame": True, "timestamp": "1"}
    listing = DummyListing({"scene": [payload("f1.png", "scene", **frame)]})
    store = _store(listing)

    result = await store.scene_tree()
    assert [v.timestamp for v in result.scenes[0].shots[0].variations] == ["1"]

    listing.objects["scene"].append(payload("f2.png", "scene", **{**frame, "timestamp": "2"}))
    refreshed = await result.refetch()

    assert [v.timestamp for v in refreshed.scenes[0].shots[0].variations] == ["2", "1"]


@pytest.mark.asyncio
async def test_prop_references_and_display_urls():
    listing = DummyListing(
        {
            "asset": [
                {**payload("media/lamp.png", "asset", "prop-1", uploadMethod="asset-creation"), "thumbnailKey": "thumbnails/lamp.png"},
            ]
        }
    )
    store = _store(listing)

    props = (await store.prop_references(["prop-1"])).data
    assert props["prop-1"].images[0].thumbnail_key == "thumbnails/lamp.png"

    refs = (await store.references("asset", ["prop-1"])).data["prop-1"]
    urls = (await store.display_urls(refs)).data
    assert urls == {"thumbnails/lamp.png": "https://app.example/api/media/file?key=thumbnails%2Flamp.png"}
