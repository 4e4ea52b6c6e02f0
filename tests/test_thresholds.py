"""Tests for threshold specs, bounds and the persisted threshold form."""

import pytest

from snapsift.thresholds import DEFAULT_SPECS, ThresholdDimension, Thresholds, ThresholdSpec, build_specs

BLUR = DEFAULT_SPECS[ThresholdDimension.BLUR]
DUP = DEFAULT_SPECS[ThresholdDimension.DUPLICATE]


def test_defaults_match_specs():
    t = Thresholds.defaults()
    assert (t.blur, t.screenshot, t.low_quality, t.duplicate, t.near_duplicate) == (0.2, 0.5, 0.5, 0.95, 0.8)
    assert t == Thresholds()
    assert t.revision == 0


def test_multiplicative_step_directions():
    assert BLUR.step(0.2, catch_more=True) == pytest.approx(0.23)
    assert BLUR.step(0.6, catch_more=False) == pytest.approx(0.51)


def test_step_is_clamped():
    assert BLUR.step(0.79, catch_more=True) == pytest.approx(0.8)
    assert BLUR.step(0.011, catch_more=False) == pytest.approx(0.01)


def test_duplicate_lowers_to_catch_more():
    assert DUP.step(0.95, catch_more=True) == pytest.approx(0.93)
    assert DUP.step(0.95, catch_more=False) == pytest.approx(0.96)


def test_inconsistent_spec_rejected():
    with pytest.raises(ValueError):
        ThresholdSpec(ThresholdDimension.BLUR, 0.9, 0.1, 0.5, +1, 0.1, 0.1)
    with pytest.raises(ValueError):
        ThresholdSpec(ThresholdDimension.BLUR, 0.3, 0.1, 0.5, 0, 0.1, 0.1)


def test_from_dict_clamps_out_of_bounds_values():
    restored = Thresholds.from_dict({"revision": 4, "values": {"blur": 5.0, "duplicate": 0.1}})
    assert restored.blur == BLUR.maximum
    assert restored.duplicate == DUP.minimum
    assert restored.screenshot == 0.5
    assert restored.revision == 4


def test_from_dict_tolerates_garbage():
    restored = Thresholds.from_dict({"values": {"blur": "sharp?"}})
    assert restored.blur == BLUR.default


@pytest.mark.parametrize(
    "data",
    [
        {"values": [0.1, 0.2]},
        {"values": "blur=0.3"},
        {"revision": "abc", "values": {}},
        {"revision": [1], "values": {"blur": 0.3}},
        ["not", "a", "dict"],
    ],
)
def test_from_dict_malformed_sections_fall_back(data):
    """Malformed sections from an old or damaged record must never raise."""
    restored = Thresholds.from_dict(data)
    assert restored.revision == 0
    assert restored.screenshot == 0.5


def test_from_dict_keeps_readable_values_when_revision_is_broken():
    restored = Thresholds.from_dict({"revision": "abc", "values": {"blur": 0.3}})
    assert restored.blur == 0.3
    assert restored.revision == 0


def test_from_dict_rejects_non_finite_values():
    restored = Thresholds.from_dict({"values": {"blur": float("nan"), "duplicate": float("inf")}})
    assert restored.blur == BLUR.default
    assert restored.duplicate == DUP.default


def test_to_dict_carries_bounds():
    data = Thresholds().to_dict()
    assert data["bounds"]["blur"] == [0.01, 0.8]
    assert data["values"]["near_duplicate"] == 0.8
    assert Thresholds.from_dict(data) == Thresholds()


def test_build_specs_applies_overrides():
    specs = build_specs({"blur": {"maximum": 0.6, "min_samples": 2}, "bogus": {"x": 1}})
    assert specs[ThresholdDimension.BLUR].maximum == 0.6
    assert specs[ThresholdDimension.BLUR].min_samples == 2
    assert specs[ThresholdDimension.SCREENSHOT] is DEFAULT_SPECS[ThresholdDimension.SCREENSHOT]


def test_dimension_tags():
    assert ThresholdDimension.BLUR.tag.value == "blurry"
    assert ThresholdDimension.LOW_QUALITY.tag.value == "lowQuality"
