"""End-to-end tests for SiftEngine: ingest, judgments, duplicates and restarts."""

import json

import pytest

from helpers import buffer_from_image, checkerboard, flat, gradient, make_features
from snapsift.domain import CaptureMetadata, PixelBuffer, Tag
from snapsift.engine import SiftEngine
from snapsift.settings import EngineConfig
from snapsift.store import FileStore, MemoryStore
from snapsift.thresholds import Thresholds


def test_ingest_creates_unrated_item():
    engine = SiftEngine()
    item = engine.ingest("a", buffer_from_image(gradient()))
    assert item.tags == {Tag.UNRATED}
    assert item.rated is False
    assert item.exact_hash
    assert engine.get_item("a") is item
    assert engine.get_training_state().unrated_remaining == 1


def test_byte_identical_images_are_mutual_duplicates():
    engine = SiftEngine()
    data = buffer_from_image(checkerboard(32, cell=4))
    a = engine.ingest("A", data)
    b = engine.ingest("B", PixelBuffer.decode(data.data))
    assert Tag.DUPLICATE in a.predicted_tags
    assert Tag.DUPLICATE in b.predicted_tags
    assert engine.find_related("A") == {"B"}
    assert engine.find_related("B") == {"A"}
    assert a.related_ids == {"B"} and b.related_ids == {"A"}


def test_screenshot_hint_flows_through_pipeline():
    engine = SiftEngine()
    item = engine.ingest("s", buffer_from_image(flat(90, 60)), CaptureMetadata(is_screenshot=True))
    assert Tag.SCREENSHOT in item.predicted_tags


def test_missing_pixels_never_group():
    engine = SiftEngine()
    a = engine.ingest("a", None)
    b = engine.ingest("b", None)
    assert a.exact_hash != b.exact_hash
    assert engine.find_related("a") == frozenset()
    assert not b.predicted_tags


def test_screenshot_flag_survives_missing_pixels():
    engine = SiftEngine()
    item = engine.ingest("s", None, CaptureMetadata(is_screenshot=True))
    assert item.predicted_tags == {Tag.SCREENSHOT}


def test_confirm_records_correct_feedback():
    engine = SiftEngine()
    engine.ingest("a", buffer_from_image(gradient()))
    entry = engine.confirm("a")
    assert entry.is_correct is True
    assert entry.actual == entry.predicted
    item = engine.get_item("a")
    assert item.rated and Tag.UNRATED not in item.tags
    assert engine.get_training_state().rated_ids == {"a"}


def test_correction_records_incorrect_feedback():
    engine = SiftEngine()
    engine.ingest("a", buffer_from_image(gradient()))
    entry = engine.correct("a", {Tag.DOCUMENT})
    assert entry.is_correct is False
    assert engine.get_item("a").tags == {Tag.DOCUMENT}


def test_unknown_item_judgments_are_ignored():
    engine = SiftEngine()
    assert engine.confirm("ghost") is None
    assert engine.correct("ghost", {Tag.BLURRY}) is None
    assert engine.declare_unique("ghost") == set()


def test_rejecting_duplicate_cleans_partner_tags():
    engine = SiftEngine()
    data = buffer_from_image(checkerboard(32, cell=4))
    engine.ingest("A", data)
    engine.ingest("B", data)
    engine.correct("B", set())
    assert engine.find_related("A") == frozenset()
    assert Tag.DUPLICATE not in engine.get_item("A").predicted_tags
    assert engine.duplicate_groups() == []


def test_declare_unique_clears_stale_tags():
    engine = SiftEngine()
    data = buffer_from_image(checkerboard(32, cell=4))
    for item_id in ("A", "B", "C"):
        engine.ingest(item_id, data)
    cleared = engine.declare_unique("A")
    assert cleared == set()
    assert Tag.DUPLICATE not in engine.get_item("A").predicted_tags
    # B and C are still related to each other
    assert engine.find_related("B") == {"C"}
    assert Tag.DUPLICATE in engine.get_item("B").predicted_tags


def test_feedback_moves_thresholds():
    engine = SiftEngine()
    for i in range(5):
        engine.record_feedback(f"p{i}", set(), {Tag.BLURRY}, False, make_features())
    assert engine.get_thresholds().blur > 0.2
    assert engine.get_thresholds().revision == 1


def test_reclassify_pending_uses_new_thresholds():
    """A flat 64x64 image scores ~0.3 on quality: low quality at 0.5, fine at 0.1."""
    engine = SiftEngine()
    item = engine.ingest("flat", buffer_from_image(flat(64, 64)))
    assert Tag.LOW_QUALITY in item.predicted_tags
    engine.learner.import_thresholds({"values": {"low_quality": 0.1}})
    assert engine.reclassify_pending() == 1
    assert Tag.LOW_QUALITY not in engine.get_item("flat").predicted_tags
    assert Tag.BLURRY in engine.get_item("flat").predicted_tags


def test_batch_ingest_matches_sequential_order():
    engine = SiftEngine(config=EngineConfig(max_workers=2))
    data = buffer_from_image(checkerboard(32, cell=4))
    items = engine.ingest_batch([("x", data, None), ("y", data, None), ("z", buffer_from_image(gradient()), None)])
    assert [i.id for i in items] == ["x", "y", "z"]
    assert engine.find_related("x") == {"y"}
    assert engine.get_training_state().offset == 3


def test_state_restored_after_restart(tmp_path):
    store = FileStore(str(tmp_path))
    engine = SiftEngine(store)
    data = buffer_from_image(checkerboard(32, cell=4))
    engine.ingest("A", data)
    engine.ingest("B", data)
    engine.correct("B", {Tag.DUPLICATE, Tag.BLURRY})
    for i in range(5):
        engine.record_feedback(f"p{i}", set(), {Tag.BLURRY}, False)

    restarted = SiftEngine(FileStore(str(tmp_path)))
    assert restarted.get_thresholds() == engine.get_thresholds()
    assert restarted.find_related("A") == {"B"}
    assert restarted.get_training_state().rated_ids == {"B"}
    assert len(restarted.learner) == 6

    # re-ingesting a rated item restores its confirmed tags
    item = restarted.ingest("B", data)
    assert item.rated
    assert item.tags == {Tag.DUPLICATE, Tag.BLURRY}


def test_corrupt_store_starts_fresh():
    engine = SiftEngine(MemoryStore({"snapsift.state.v1": b"{broken"}))
    assert engine.get_thresholds().revision == 0
    assert engine.items() == []


@pytest.mark.parametrize(
    "thresholds",
    [{"values": [0.1, 0.2]}, {"revision": "abc", "values": {}}],
)
def test_malformed_thresholds_section_starts_with_defaults(thresholds):
    blob = json.dumps({"schema": "snapsift.state", "version": 1, "thresholds": thresholds, "ratedIds": ["a"]})
    engine = SiftEngine(MemoryStore({"snapsift.state.v1": blob.encode("utf-8")}))
    assert engine.get_thresholds() == Thresholds.defaults()
    assert engine.get_training_state().rated_ids == {"a"}


def test_finalize_and_reset_training():
    engine = SiftEngine()
    engine.ingest("a", buffer_from_image(gradient()))
    engine.ingest("b", buffer_from_image(checkerboard(32, cell=4)))
    engine.confirm("a")
    engine.get_item("a").tags.add(Tag.UNRATED)
    assert engine.finalize_training() == 1
    assert Tag.UNRATED not in engine.get_item("a").tags

    engine.reset_training()
    assert engine.get_training_state().rated_count == 0
    assert all(item.tags == {Tag.UNRATED} for item in engine.items())
    assert engine.metrics().total_feedback == 0


def test_refill_callback_from_engine():
    calls = []
    engine = SiftEngine(config=EngineConfig(refill_watermark=1, batch_size=7), on_refill=lambda o, n: calls.append((o, n)))
    engine.ingest("a", buffer_from_image(gradient()))
    engine.ingest("b", buffer_from_image(checkerboard(32, cell=4)))
    engine.confirm("a")
    assert calls == [(2, 7)]


def test_export_import_training_data():
    engine = SiftEngine()
    for i in range(5):
        engine.record_feedback(f"p{i}", set(), {Tag.BLURRY}, False)
    exported = engine.export_training_data()

    other = SiftEngine()
    other.import_training_data(exported)
    assert other.metrics().total_feedback == 5
    assert other.get_thresholds().blur == engine.get_thresholds().blur


def test_timing_stats_exposed():
    engine = SiftEngine()
    engine.ingest("a", buffer_from_image(gradient()))
    assert "extract_features" in engine.timing_stats()
