from __future__ import annotations

import io
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

import numpy as np
from PIL import Image


class Tag(str, Enum):
    """Closed set of photo tags. Values are the persisted wire names."""

    DUPLICATE = "duplicate"
    BLURRY = "blurry"
    LOW_QUALITY = "lowQuality"
    SCREENSHOT = "screenshot"
    UNRATED = "unrated"
    TEXT_HEAVY = "textHeavy"
    LOW_LIGHT = "lowLight"
    NEAR_DUPLICATE = "nearDuplicate"
    DOCUMENT = "document"


DUPLICATE_TAGS = frozenset({Tag.DUPLICATE, Tag.NEAR_DUPLICATE})


def parse_tags(names: Iterable[str]) -> frozenset[Tag]:
    """Convert persisted tag names to Tags, dropping names we no longer know."""
    tags = set()
    for name in names:
        try:
            tags.add(Tag(name))
        except ValueError:
            logging.debug(f"[domain] Dropping unknown tag name: {name!r}")
    return frozenset(tags)


def tag_names(tags: Iterable[Tag]) -> list[str]:
    return sorted(t.value for t in tags)


class AspectRatioClass(str, Enum):
    SCREEN_16_9 = "screen_16_9"
    SCREEN_19_5_9 = "screen_19_5_9"
    SCREEN_2_1 = "screen_2_1"
    CAMERA_4_3 = "camera_4_3"
    CAMERA_3_2 = "camera_3_2"
    PAPER_A4 = "paper_a4"
    PAPER_LETTER = "paper_letter"
    SQUARE = "square"
    OTHER = "other"


# Long side / short side for each class (OTHER has no ratio)
ASPECT_RATIOS: dict[AspectRatioClass, float] = {
    AspectRatioClass.SCREEN_16_9: 16.0 / 9.0,
    AspectRatioClass.SCREEN_19_5_9: 19.5 / 9.0,
    AspectRatioClass.SCREEN_2_1: 2.0,
    AspectRatioClass.CAMERA_4_3: 4.0 / 3.0,
    AspectRatioClass.CAMERA_3_2: 3.0 / 2.0,
    AspectRatioClass.PAPER_A4: 2**0.5,
    AspectRatioClass.PAPER_LETTER: 11.0 / 8.5,
    AspectRatioClass.SQUARE: 1.0,
}

SCREEN_RATIOS = frozenset(
    {AspectRatioClass.SCREEN_16_9, AspectRatioClass.SCREEN_19_5_9, AspectRatioClass.SCREEN_2_1}
)
PAPER_RATIOS = frozenset({AspectRatioClass.PAPER_A4, AspectRatioClass.PAPER_LETTER})


@dataclass(frozen=True)
class CaptureMetadata:
    """Capture details supplied by the asset provider alongside the pixels."""

    creation_date: datetime | None = None
    source: str | None = None
    is_screenshot: bool = False  # OS-provided hint
    text_density: float | None = None  # from an external text detector, if any


@dataclass(frozen=True, eq=False)
class PixelBuffer:
    """Decoded pixels (uint8, HxW or HxWxC) plus the encoded bytes they came from."""

    pixels: np.ndarray
    data: bytes | None = None

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1]) if self.pixels.ndim >= 2 else 0

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0]) if self.pixels.ndim >= 2 else 0

    @classmethod
    def from_image(cls, img: Image.Image, data: bytes | None = None) -> PixelBuffer:
        if img.mode not in ("L", "RGB"):
            img = img.convert("RGB")
        return cls(pixels=np.asarray(img, dtype=np.uint8), data=data)

    @classmethod
    def decode(cls, data: bytes) -> PixelBuffer | None:
        """Decode encoded image bytes with Pillow; None when the bytes are unusable."""
        try:
            with Image.open(io.BytesIO(data)) as img:
                img.load()
                return cls.from_image(img, data=data)
        except Exception as e:
            logging.warning(f"[domain] Could not decode {len(data) if data else 0} bytes: {e}")
            return None


@dataclass(frozen=True)
class FeatureSnapshot:
    """Subset of features kept with a feedback entry."""

    width: int
    height: int
    blur_score: float
    brightness: float
    text_density: float
    aspect_ratio_class: AspectRatioClass = AspectRatioClass.OTHER
    is_screenshot: bool = False

    def to_dict(self) -> dict:
        return {
            "width": self.width,
            "height": self.height,
            "blurScore": self.blur_score,
            "brightness": self.brightness,
            "textDensity": self.text_density,
            "aspectRatioClass": self.aspect_ratio_class.value,
            "isScreenshot": self.is_screenshot,
        }

    @classmethod
    def from_dict(cls, data: dict) -> FeatureSnapshot:
        try:
            ratio = AspectRatioClass(data.get("aspectRatioClass", AspectRatioClass.OTHER.value))
        except ValueError:
            ratio = AspectRatioClass.OTHER
        return cls(
            width=int(data.get("width", 0)),
            height=int(data.get("height", 0)),
            blur_score=float(data.get("blurScore", 1.0)),
            brightness=float(data.get("brightness", 0.5)),
            text_density=float(data.get("textDensity", 0.0)),
            aspect_ratio_class=ratio,
            is_screenshot=bool(data.get("isScreenshot", False)),
        )


@dataclass(frozen=True)
class FeatureSet:
    """Everything the classifier and duplicate resolver need to know about one image."""

    width: int
    height: int
    blur_score: float  # 0..1, higher = sharper
    brightness: float  # 0..1 mean luma
    aspect_ratio_class: AspectRatioClass
    text_density: float  # 0..1 estimated text coverage
    text_pattern_detected: bool
    noise_level: float  # 0..1
    exact_hash: str
    perceptual_hash: int | None  # 64-bit average hash, None when unavailable
    is_screenshot_hint: bool = False
    available: bool = True

    def snapshot(self) -> FeatureSnapshot:
        return FeatureSnapshot(
            width=self.width,
            height=self.height,
            blur_score=self.blur_score,
            brightness=self.brightness,
            text_density=self.text_density,
            aspect_ratio_class=self.aspect_ratio_class,
            is_screenshot=self.is_screenshot_hint,
        )


@dataclass(frozen=True)
class FeedbackEntry:
    """One user judgment of a prediction. Immutable once recorded."""

    id: str
    photo_id: str
    timestamp: datetime
    predicted: frozenset[Tag]
    actual: frozenset[Tag]
    is_correct: bool
    features: FeatureSnapshot

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "photoId": self.photo_id,
            "timestamp": self.timestamp.isoformat(),
            "predictedTags": tag_names(self.predicted),
            "actualTags": tag_names(self.actual),
            "isCorrect": self.is_correct,
            "metadata": self.features.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> FeedbackEntry:
        return cls(
            id=str(data["id"]),
            photo_id=str(data["photoId"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            predicted=parse_tags(data.get("predictedTags", [])),
            actual=parse_tags(data.get("actualTags", [])),
            is_correct=bool(data.get("isCorrect", False)),
            features=FeatureSnapshot.from_dict(data.get("metadata", {})),
        )


@dataclass(frozen=True)
class ClassificationResult:
    tags: frozenset[Tag]
    confidence: dict[Tag, float] = field(default_factory=dict)


@dataclass
class PhotoItem:
    id: str
    width: int = 0
    height: int = 0
    creation_date: datetime | None = None
    source: str | None = None
    text_density: float = 0.0
    exact_hash: str = ""
    perceptual_hash: int | None = None
    tags: set[Tag] = field(default_factory=lambda: {Tag.UNRATED})  # confirmed
    predicted_tags: set[Tag] = field(default_factory=set)
    tag_confidence: dict[Tag, float] = field(default_factory=dict)
    related_ids: set[str] = field(default_factory=set)
    rated: bool = False
    features: FeatureSet | None = None

    @classmethod
    def from_features(cls, item_id: str, features: FeatureSet, metadata: CaptureMetadata | None = None) -> PhotoItem:
        metadata = metadata or CaptureMetadata()
        return cls(
            id=item_id,
            width=features.width,
            height=features.height,
            creation_date=metadata.creation_date,
            source=metadata.source,
            text_density=features.text_density,
            exact_hash=features.exact_hash,
            perceptual_hash=features.perceptual_hash,
            features=features,
        )

    def mark_rated(self, confirmed: Iterable[Tag]):
        """Record a human judgment; the unrated sentinel never survives rating."""
        self.tags = set(confirmed) - {Tag.UNRATED}
        self.rated = True


@dataclass(frozen=True)
class TrainingSessionState:
    offset: int
    rated_ids: frozenset[str]
    confidence: float
    is_complete: bool
    rated_count: int
    unrated_remaining: int
    needs_refill: bool
