"""Rule-based tagging of a FeatureSet against a Thresholds snapshot.

Rules run in a fixed precedence order. A rule may look at the tags fired by
earlier rules (to suppress itself) but never changes them. classify() is pure:
same features, same thresholds and same existing tags give the same result.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from .constants import (
    DOCUMENT_MIN_SHARPNESS,
    LOW_LIGHT_MAX_BRIGHTNESS,
    LOW_LIGHT_MIN_SHARPNESS,
    QUALITY_WEIGHTS,
    REFERENCE_MEGAPIXELS,
    TEXT_HEAVY_MIN_DENSITY,
)
from .domain import PAPER_RATIOS, SCREEN_RATIOS, ClassificationResult, FeatureSet, Tag
from .thresholds import Thresholds

# (fired, confidence); confidence may be recorded even when the rule does not fire
Verdict = tuple[bool, float | None]

SCREEN_RATIO_CONFIDENCE = 0.6


def _clamp01(value: float) -> float:
    return min(1.0, max(0.0, value))


@dataclass
class _Context:
    features: FeatureSet
    thresholds: Thresholds
    existing: frozenset[Tag]
    similarity: float | None
    fired: set[Tag] = field(default_factory=set)


def compute_quality_score(features: FeatureSet) -> float:
    """Weighted blend of resolution, sharpness and inverse noise, in [0,1]."""
    megapixels = features.width * features.height / 1_000_000.0
    resolution = _clamp01(megapixels / REFERENCE_MEGAPIXELS)
    score = (
        QUALITY_WEIGHTS["resolution"] * resolution
        + QUALITY_WEIGHTS["sharpness"] * features.blur_score
        + QUALITY_WEIGHTS["noise"] * (1.0 - features.noise_level)
    )
    return _clamp01(score)


def blur_confidence(blur_score: float, threshold: float) -> float:
    """Confidence grows with distance below the threshold and fades above it."""
    distance = abs(threshold - blur_score)
    if blur_score < threshold:
        return min(1.0, 0.5 + distance * 2.0)
    return max(0.0, 0.5 - distance * 2.0)


def _screenshot(ctx: _Context) -> Verdict:
    f, t = ctx.features, ctx.thresholds.screenshot
    if f.is_screenshot_hint:
        return True, 1.0
    by_ratio = f.aspect_ratio_class in SCREEN_RATIOS
    by_density = f.text_density > t
    if not (by_ratio or by_density):
        return False, None
    confidence = SCREEN_RATIO_CONFIDENCE if by_ratio else 0.0
    if by_density:
        excess = (f.text_density - t) / max(1e-6, 1.0 - t)
        confidence = max(confidence, 0.5 + 0.5 * excess)
    return True, _clamp01(confidence)


def _document(ctx: _Context) -> Verdict:
    f = ctx.features
    if Tag.SCREENSHOT in ctx.fired:
        return False, None
    if f.aspect_ratio_class in PAPER_RATIOS and f.blur_score > DOCUMENT_MIN_SHARPNESS and f.text_pattern_detected:
        return True, _clamp01(0.3 + 0.7 * f.text_density)
    return False, None


def _text_heavy(ctx: _Context) -> Verdict:
    f = ctx.features
    if ctx.fired & {Tag.SCREENSHOT, Tag.DOCUMENT}:
        return False, None
    if f.text_pattern_detected and f.text_density > TEXT_HEAVY_MIN_DENSITY:
        return True, _clamp01(0.5 + 0.5 * f.text_density)
    return False, None


def _blurry(ctx: _Context) -> Verdict:
    f, t = ctx.features, ctx.thresholds.blur
    return f.blur_score < t, blur_confidence(f.blur_score, t)


def _low_light(ctx: _Context) -> Verdict:
    f = ctx.features
    if f.brightness < LOW_LIGHT_MAX_BRIGHTNESS and f.blur_score > LOW_LIGHT_MIN_SHARPNESS:
        return True, _clamp01((LOW_LIGHT_MAX_BRIGHTNESS - f.brightness) * 2.0 + f.blur_score)
    return False, None


def _low_quality(ctx: _Context) -> Verdict:
    f, t = ctx.features, ctx.thresholds
    if Tag.SCREENSHOT in ctx.fired or f.text_density >= t.screenshot:
        return False, None
    quality = compute_quality_score(f)
    if quality < t.low_quality:
        return True, _clamp01(0.5 + 2.0 * (t.low_quality - quality))
    return False, None


def _duplicate(ctx: _Context) -> Verdict:
    if ctx.similarity is None:
        return (True, 1.0) if Tag.DUPLICATE in ctx.existing else (False, None)
    if ctx.similarity >= ctx.thresholds.duplicate:
        return True, _clamp01(ctx.similarity)
    return False, None


def _near_duplicate(ctx: _Context) -> Verdict:
    if Tag.DUPLICATE in ctx.fired:
        return False, None
    if ctx.similarity is None:
        return (True, 1.0) if Tag.NEAR_DUPLICATE in ctx.existing else (False, None)
    if ctx.similarity >= ctx.thresholds.near_duplicate:
        return True, _clamp01(ctx.similarity)
    return False, None


_RULES: tuple[tuple[Tag, Callable[[_Context], Verdict]], ...] = (
    (Tag.SCREENSHOT, _screenshot),
    (Tag.DOCUMENT, _document),
    (Tag.TEXT_HEAVY, _text_heavy),
    (Tag.BLURRY, _blurry),
    (Tag.LOW_LIGHT, _low_light),
    (Tag.LOW_QUALITY, _low_quality),
    (Tag.DUPLICATE, _duplicate),
    (Tag.NEAR_DUPLICATE, _near_duplicate),
)

# Rules that read measured pixels; skipped for items without pixel data.
# Screenshot reads the capture metadata, duplicates read the resolver similarity.
_PIXEL_RULES = frozenset({Tag.DOCUMENT, Tag.TEXT_HEAVY, Tag.BLURRY, Tag.LOW_LIGHT, Tag.LOW_QUALITY})


def _check_rule_coverage(rules):
    covered = [tag for tag, _ in rules]
    if len(covered) != len(set(covered)):
        raise RuntimeError(f"a tag has more than one rule: {covered}")
    missing = set(Tag) - {Tag.UNRATED} - set(covered)
    if missing:
        raise RuntimeError(f"tags without a rule: {sorted(t.value for t in missing)}")


_check_rule_coverage(_RULES)


def classify(
    features: FeatureSet,
    thresholds: Thresholds,
    existing_tags: Iterable[Tag] | None = None,
    similarity: float | None = None,
) -> ClassificationResult:
    """Tag one item.

    Args:
        features: extracted features
        thresholds: snapshot to classify against (read once, never re-fetched)
        existing_tags: confirmed or previously resolved tags; duplicate tags in
            here are kept when no similarity is supplied
        similarity: best duplicate similarity from the resolver, if known
    """
    ctx = _Context(
        features=features,
        thresholds=thresholds,
        existing=frozenset(existing_tags or ()),
        similarity=similarity,
    )
    confidence: dict[Tag, float] = {}
    for tag, rule in _RULES:
        if not features.available and tag in _PIXEL_RULES:
            continue
        fired, score = rule(ctx)
        if score is not None:
            confidence[tag] = score
        if fired:
            ctx.fired.add(tag)
    logging.debug(f"[classifier] {features.exact_hash[:12]} -> {sorted(t.value for t in ctx.fired)}")
    return ClassificationResult(tags=frozenset(ctx.fired), confidence=confidence)
