"""Adaptive decision thresholds and the bounds they must stay in.

Each dimension is described by a ThresholdSpec: default value, allowed range,
which direction "catches more" items, and how far a single adaptation step
moves it. Thresholds is the immutable snapshot that the classifier reads.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from enum import Enum

from .domain import Tag
from .errors import BoundsViolationInternal


class ThresholdDimension(str, Enum):
    BLUR = "blur"
    SCREENSHOT = "screenshot"
    LOW_QUALITY = "low_quality"
    DUPLICATE = "duplicate"
    NEAR_DUPLICATE = "near_duplicate"

    @property
    def tag(self) -> Tag:
        return _DIMENSION_TAGS[self]


_DIMENSION_TAGS = {
    ThresholdDimension.BLUR: Tag.BLURRY,
    ThresholdDimension.SCREENSHOT: Tag.SCREENSHOT,
    ThresholdDimension.LOW_QUALITY: Tag.LOW_QUALITY,
    ThresholdDimension.DUPLICATE: Tag.DUPLICATE,
    ThresholdDimension.NEAR_DUPLICATE: Tag.NEAR_DUPLICATE,
}


@dataclass(frozen=True)
class ThresholdSpec:
    """How one threshold may move.

    catch_more is +1 when raising the value makes the rule fire on more items
    (blur: score < t) and -1 when lowering it does (similarity >= t).
    In multiplicative mode a step scales the value by (1 ± step).
    """

    dimension: ThresholdDimension
    default: float
    minimum: float
    maximum: float
    catch_more: int
    catch_more_step: float
    catch_fewer_step: float
    multiplicative: bool = False
    min_samples: int = 3
    acceptable_accuracy: float = 0.8

    def __post_init__(self):
        if not self.minimum <= self.default <= self.maximum:
            raise ValueError(
                f"{self.dimension.value}: default {self.default} outside [{self.minimum}, {self.maximum}]"
            )
        if self.catch_more not in (1, -1):
            raise ValueError(f"{self.dimension.value}: catch_more must be +1 or -1, got {self.catch_more}")
        if self.catch_more_step <= 0 or self.catch_fewer_step <= 0:
            raise ValueError(f"{self.dimension.value}: steps must be positive")
        if self.min_samples < 1:
            raise ValueError(f"{self.dimension.value}: min_samples must be >= 1")

    def clamp(self, value: float) -> float:
        return min(self.maximum, max(self.minimum, value))

    def step(self, value: float, catch_more: bool) -> float:
        """Move value one step towards catching more (or fewer) items, clamped."""
        direction = self.catch_more if catch_more else -self.catch_more
        amount = self.catch_more_step if catch_more else self.catch_fewer_step
        if self.multiplicative:
            moved = value * (1.0 + direction * amount)
        else:
            moved = value + direction * amount
        return self.clamp(moved)

    def with_overrides(self, overrides: dict) -> ThresholdSpec:
        known = {k: v for k, v in overrides.items() if k in _SPEC_FIELDS}
        unknown = set(overrides) - set(known)
        if unknown:
            logging.warning(f"[thresholds] Ignoring unknown overrides for {self.dimension.value}: {sorted(unknown)}")
        return replace(self, **known)


_SPEC_FIELDS = {
    "default",
    "minimum",
    "maximum",
    "catch_more_step",
    "catch_fewer_step",
    "multiplicative",
    "min_samples",
    "acceptable_accuracy",
}


DEFAULT_SPECS: dict[ThresholdDimension, ThresholdSpec] = {
    ThresholdDimension.BLUR: ThresholdSpec(
        ThresholdDimension.BLUR, 0.20, 0.01, 0.80, +1, 0.15, 0.15,
        multiplicative=True, min_samples=5, acceptable_accuracy=0.80,
    ),
    ThresholdDimension.SCREENSHOT: ThresholdSpec(
        ThresholdDimension.SCREENSHOT, 0.50, 0.30, 0.90, -1, 0.05, 0.05,
        min_samples=3, acceptable_accuracy=0.85,
    ),
    ThresholdDimension.LOW_QUALITY: ThresholdSpec(
        ThresholdDimension.LOW_QUALITY, 0.50, 0.10, 0.70, +1, 0.05, 0.05,
        min_samples=4, acceptable_accuracy=0.75,
    ),
    ThresholdDimension.DUPLICATE: ThresholdSpec(
        ThresholdDimension.DUPLICATE, 0.95, 0.85, 0.99, -1, 0.02, 0.01,
        min_samples=3, acceptable_accuracy=0.90,
    ),
    ThresholdDimension.NEAR_DUPLICATE: ThresholdSpec(
        ThresholdDimension.NEAR_DUPLICATE, 0.80, 0.70, 0.95, -1, 0.02, 0.02,
        min_samples=3, acceptable_accuracy=0.85,
    ),
}


def build_specs(overrides: dict | None = None) -> dict[ThresholdDimension, ThresholdSpec]:
    """DEFAULT_SPECS with per-dimension field overrides applied (keys are dimension values)."""
    specs = dict(DEFAULT_SPECS)
    for name, fields in (overrides or {}).items():
        try:
            dim = ThresholdDimension(name)
        except ValueError:
            logging.warning(f"[thresholds] Ignoring overrides for unknown dimension {name!r}")
            continue
        specs[dim] = specs[dim].with_overrides(fields or {})
    return specs


@dataclass(frozen=True)
class Thresholds:
    blur: float = DEFAULT_SPECS[ThresholdDimension.BLUR].default
    screenshot: float = DEFAULT_SPECS[ThresholdDimension.SCREENSHOT].default
    low_quality: float = DEFAULT_SPECS[ThresholdDimension.LOW_QUALITY].default
    duplicate: float = DEFAULT_SPECS[ThresholdDimension.DUPLICATE].default
    near_duplicate: float = DEFAULT_SPECS[ThresholdDimension.NEAR_DUPLICATE].default
    revision: int = 0

    @classmethod
    def defaults(cls, specs: dict[ThresholdDimension, ThresholdSpec] | None = None) -> Thresholds:
        specs = specs or DEFAULT_SPECS
        return cls(**{dim.value: specs[dim].default for dim in ThresholdDimension})

    def get(self, dim: ThresholdDimension) -> float:
        return getattr(self, dim.value)

    def with_values(self, values: dict[ThresholdDimension, float], revision: int | None = None) -> Thresholds:
        changes = {dim.value: v for dim, v in values.items()}
        if revision is not None:
            changes["revision"] = revision
        return replace(self, **changes)

    def values(self) -> dict[ThresholdDimension, float]:
        return {dim: self.get(dim) for dim in ThresholdDimension}

    def to_dict(self, specs: dict[ThresholdDimension, ThresholdSpec] | None = None) -> dict:
        specs = specs or DEFAULT_SPECS
        return {
            "revision": self.revision,
            "values": {dim.value: self.get(dim) for dim in ThresholdDimension},
            "bounds": {dim.value: [specs[dim].minimum, specs[dim].maximum] for dim in ThresholdDimension},
        }

    @classmethod
    def from_dict(cls, data: dict, specs: dict[ThresholdDimension, ThresholdSpec] | None = None) -> Thresholds:
        """Rebuild from a persisted dict.

        Missing values fall back to defaults; values outside the current bounds
        are clamped, so a tightened configuration never yields an out-of-range
        snapshot.
        """
        specs = specs or DEFAULT_SPECS
        if not isinstance(data, dict):
            logging.warning(f"[thresholds] Ignoring malformed thresholds section: {type(data).__name__}")
            data = {}
        raw = data.get("values", {})
        if not isinstance(raw, dict):
            logging.warning(f"[thresholds] Ignoring malformed threshold values: {type(raw).__name__}")
            raw = {}
        values = {}
        for dim in ThresholdDimension:
            spec = specs[dim]
            try:
                value = float(raw.get(dim.value, spec.default))
                if not math.isfinite(value):
                    raise ValueError(value)
            except (TypeError, ValueError):
                logging.warning(f"[thresholds] Unreadable value for {dim.value}: {raw.get(dim.value)!r}")
                value = spec.default
            values[dim.value] = check_bounds(spec, value)
        try:
            revision = max(0, int(data.get("revision") or 0))
        except (TypeError, ValueError):
            logging.warning(f"[thresholds] Unreadable revision {data.get('revision')!r}, using 0")
            revision = 0
        return cls(revision=revision, **values)


def check_bounds(spec: ThresholdSpec, value: float) -> float:
    """Clamp value into the dimension's range, logging when it had escaped."""
    try:
        if not spec.minimum <= value <= spec.maximum:
            raise BoundsViolationInternal(spec.dimension.value, value, spec.minimum, spec.maximum)
    except BoundsViolationInternal as e:
        logging.warning(f"[thresholds] Clamping threshold: {e}")
        return spec.clamp(value)
    return value
