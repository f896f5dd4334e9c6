from helpers import make_object
from mediasync.binder import EntityBinder, bind_references
from mediasync.classifier import classify_all
from mediasync.models import Category


def _refs(*objects):
    return classify_all(objects)


def test_production_reference_hides_creation_reference():
    production = make_object("media/pose.png", source="pose-generation", poseId="p1")
    creation = make_object("media/base.png", uploadMethod="character-creation")

    collections = bind_references(_refs(production, creation), ["char-1"], "character")
    assert [ref.storage_key for ref in collections["char-1"]] == ["media/pose.png"]

    collections = bind_references(_refs(creation), ["char-1"], "character")
    assert [ref.storage_key for ref in collections["char-1"]] == ["media/base.png"]
    assert collections["char-1"][0].category is Category.CREATION_ASSET


def test_archived_and_clothing_references_never_bound():
    refs = _refs(
        make_object("media/old.png", archived=True, angle="front"),
        make_object("media/flagged.png", isArchived=True, angle="side"),
        make_object("media/coat.png", isClothingReference=True),
        make_object("media/ok.png", angle="back"),
    )
    collections = bind_references(refs, ["char-1"])
    assert [ref.storage_key for ref in collections["char-1"]] == ["media/ok.png"]


def test_every_requested_entity_gets_an_entry_and_order_is_kept():
    refs = _refs(
        make_object("media/b.png", angle="b"),
        make_object("media/a.png", angle="a"),
        make_object("media/x.png", entity_id="char-2", angle="x"),
    )
    collections = bind_references(refs, ["char-1", "char-3"])
    assert [ref.storage_key for ref in collections["char-1"]] == ["media/b.png", "media/a.png"]
    assert collections["char-3"] == ()
    assert "char-2" not in collections


def test_entity_type_filter():
    refs = _refs(
        make_object("media/c.png", angle="front"),
        make_object("media/l.png", entity_type="location", angle="wide"),
    )
    collections = bind_references(refs, ["char-1"], "location")
    assert [ref.storage_key for ref in collections["char-1"]] == ["media/l.png"]


def test_binder_is_referentially_stable_for_unchanged_inputs():
    binder = EntityBinder()
    refs = _refs(make_object("media/a.png", angle="front"), make_object("media/b.png", angle="side"))

    first = binder.bind(refs, ["char-1", "char-2"], "character")
    second = binder.bind(list(refs), ["char-2", "char-1", "char-1"], "character")

    assert second is first


def test_binder_invalidation_rebinds():
    binder = EntityBinder()
    before = _refs(make_object("media/a.png", angle="front"))
    after = _refs(make_object("media/b.png", angle="front"))

    first = binder.bind(before, ["char-1"], "character")
    # Same count, different objects: only an explicit invalidation notices.
    assert binder.bind(after, ["char-1"], "character") is first

    binder.invalidate("character")
    rebound = binder.bind(after, ["char-1"], "character")
    assert rebound is not first
    assert rebound["char-1"][0].storage_key == "media/b.png"
