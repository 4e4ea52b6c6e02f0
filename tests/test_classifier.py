"""Tests for rule precedence, confidences and purity of classify()."""

import pytest

from helpers import make_features
from snapsift import classifier
from snapsift.classifier import blur_confidence, classify, compute_quality_score
from snapsift.domain import AspectRatioClass, Tag
from snapsift.thresholds import Thresholds

DEFAULTS = Thresholds()


def test_good_photo_gets_no_tags():
    result = classify(make_features(), DEFAULTS)
    assert result.tags == frozenset()
    # blur confidence is always reported
    assert Tag.BLURRY in result.confidence


def test_screen_ratio_is_screenshot_and_suppresses_text_heavy_and_low_quality():
    features = make_features(
        width=1920,
        height=1080,
        aspect_ratio_class=AspectRatioClass.SCREEN_16_9,
        text_density=0.45,
        text_pattern_detected=True,
        blur_score=0.1,
        noise_level=0.9,
    )
    result = classify(features, DEFAULTS)
    assert Tag.SCREENSHOT in result.tags
    assert Tag.TEXT_HEAVY not in result.tags
    assert Tag.LOW_QUALITY not in result.tags
    assert Tag.DOCUMENT not in result.tags
    # blur is independent of the screenshot rule
    assert Tag.BLURRY in result.tags


def test_os_flag_alone_marks_screenshot_with_full_confidence():
    result = classify(make_features(is_screenshot_hint=True), DEFAULTS)
    assert Tag.SCREENSHOT in result.tags
    assert result.confidence[Tag.SCREENSHOT] == 1.0


def test_text_density_above_threshold_marks_screenshot():
    result = classify(make_features(text_density=0.6), DEFAULTS)
    assert Tag.SCREENSHOT in result.tags


def test_document_suppresses_text_heavy():
    features = make_features(
        width=2480,
        height=3508,
        aspect_ratio_class=AspectRatioClass.PAPER_A4,
        blur_score=0.9,
        text_pattern_detected=True,
        text_density=0.45,
    )
    result = classify(features, DEFAULTS)
    assert Tag.DOCUMENT in result.tags
    assert Tag.TEXT_HEAVY not in result.tags
    assert 0.0 <= result.confidence[Tag.DOCUMENT] <= 1.0


def test_text_heavy_needs_pattern_and_density():
    thresholds = Thresholds(screenshot=0.9)
    with_pattern = classify(make_features(text_pattern_detected=True, text_density=0.7), thresholds)
    without = classify(make_features(text_pattern_detected=False, text_density=0.7), thresholds)
    assert Tag.TEXT_HEAVY in with_pattern.tags
    assert Tag.TEXT_HEAVY not in without.tags


def test_blurry_below_threshold():
    result = classify(make_features(blur_score=0.05), DEFAULTS)
    assert Tag.BLURRY in result.tags
    assert result.confidence[Tag.BLURRY] == pytest.approx(min(1.0, 0.5 + 0.15 * 2))


@pytest.mark.parametrize("score", [0.0, 0.1, 0.19, 0.2, 0.3, 0.9])
def test_blur_confidence_is_bounded(score):
    assert 0.0 <= blur_confidence(score, 0.2) <= 1.0


def test_low_light_requires_detail():
    dark_sharp = classify(make_features(brightness=0.1, blur_score=0.6), DEFAULTS)
    dark_flat = classify(make_features(brightness=0.1, blur_score=0.1), DEFAULTS)
    assert Tag.LOW_LIGHT in dark_sharp.tags
    assert Tag.LOW_LIGHT not in dark_flat.tags


def test_low_quality_from_composite_score():
    poor = make_features(width=320, height=240, blur_score=0.3, noise_level=0.8)
    assert compute_quality_score(poor) < DEFAULTS.low_quality
    assert Tag.LOW_QUALITY in classify(poor, DEFAULTS).tags


def test_quality_score_weights():
    features = make_features(width=4000, height=3000, blur_score=1.0, noise_level=0.0)
    assert compute_quality_score(features) == pytest.approx(1.0)


def test_similarity_maps_to_duplicate_tags():
    f = make_features()
    assert classify(f, DEFAULTS, similarity=1.0).tags >= {Tag.DUPLICATE}
    near = classify(f, DEFAULTS, similarity=0.9).tags
    assert Tag.NEAR_DUPLICATE in near and Tag.DUPLICATE not in near
    assert not classify(f, DEFAULTS, similarity=0.5).tags & {Tag.DUPLICATE, Tag.NEAR_DUPLICATE}


def test_existing_duplicate_tags_kept_without_similarity():
    result = classify(make_features(), DEFAULTS, existing_tags={Tag.NEAR_DUPLICATE, Tag.BLURRY})
    assert Tag.NEAR_DUPLICATE in result.tags
    # non-duplicate existing tags are recomputed, not copied
    assert Tag.BLURRY not in result.tags


def test_unavailable_features_get_no_content_tags():
    """Neutral stand-in values never trip the pixel rules."""
    features = make_features(
        available=False, blur_score=0.0, brightness=0.0, width=0, height=0, text_density=0.0, perceptual_hash=None
    )
    assert classify(features, DEFAULTS).tags == frozenset()


def test_unavailable_features_keep_screenshot_flag():
    features = make_features(
        available=False, width=0, height=0, text_density=0.0, perceptual_hash=None, is_screenshot_hint=True
    )
    result = classify(features, DEFAULTS)
    assert result.tags == {Tag.SCREENSHOT}
    assert result.confidence[Tag.SCREENSHOT] == 1.0


def test_unavailable_features_use_external_text_density():
    features = make_features(
        available=False,
        width=0,
        height=0,
        aspect_ratio_class=AspectRatioClass.OTHER,
        text_density=0.9,
        text_pattern_detected=True,
        perceptual_hash=None,
    )
    assert classify(features, DEFAULTS).tags == {Tag.SCREENSHOT}


def test_every_tag_has_exactly_one_rule():
    covered = [tag for tag, _ in classifier._RULES]
    assert len(covered) == len(set(covered))
    assert set(covered) == set(Tag) - {Tag.UNRATED}


def test_rule_coverage_check_raises_on_gap():
    with pytest.raises(RuntimeError):
        classifier._check_rule_coverage(classifier._RULES[:-1])
    with pytest.raises(RuntimeError):
        classifier._check_rule_coverage(classifier._RULES + classifier._RULES[:1])


def test_classify_is_pure():
    features = make_features(blur_score=0.1, brightness=0.2)
    assert classify(features, DEFAULTS) == classify(features, DEFAULTS)


def test_thresholds_change_outcome():
    features = make_features(blur_score=0.3)
    assert Tag.BLURRY not in classify(features, Thresholds(blur=0.2)).tags
    assert Tag.BLURRY in classify(features, Thresholds(blur=0.4)).tags
