"""Feature extraction (SRP).
Provides: extract_features, batch_extract_features, unavailable_features and the
individual measurements (blur, brightness, aspect ratio, text density, noise,
exact and perceptual hashes).

All functions are pure with respect to their inputs; batch extraction may run
them across a thread pool with no shared mutable state.
"""

from __future__ import annotations

import hashlib
import logging
import math
import os
import uuid
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor

import imagehash
import numpy as np
from PIL import Image

from .constants import (
    ASPECT_TOLERANCE,
    BLUR_NORMALIZATION,
    BRIGHTNESS_GRID,
    MAX_ANALYSIS_PIXELS,
    MAX_WORKERS,
    NEUTRAL_BLUR_SCORE,
    NEUTRAL_BRIGHTNESS,
    NOISE_NORMALIZATION,
    PERCEPTUAL_HASH_SIZE,
    TEXT_EDGE_DELTA,
    TEXT_PATTERN_MIN_RATIO,
    TEXT_SAMPLE_GRID,
    UNAVAILABLE_HASH_PREFIX,
)
from .domain import ASPECT_RATIOS, AspectRatioClass, CaptureMetadata, FeatureSet, PixelBuffer
from .errors import DecodeUnavailable
from .timing import time_operation

ExtractionJob = tuple[PixelBuffer | None, CaptureMetadata | None]


def _clamp01(value: float) -> float:
    return float(min(1.0, max(0.0, value)))


def _analysis_image(buffer: PixelBuffer) -> Image.Image:
    """Pillow image of the buffer, downsampled to at most MAX_ANALYSIS_PIXELS."""
    img = Image.fromarray(np.ascontiguousarray(buffer.pixels))
    if img.mode not in ("L", "RGB"):
        img = img.convert("RGB")
    w, h = img.size
    if w * h > MAX_ANALYSIS_PIXELS:
        scale = math.sqrt(MAX_ANALYSIS_PIXELS / float(w * h))
        size = (max(1, int(w * scale)), max(1, int(h * scale)))
        img = img.resize(size, Image.Resampling.LANCZOS)
        logging.debug(f"[features] Downsampled {w}x{h} -> {size[0]}x{size[1]}")
    return img


def _gray(img: Image.Image) -> np.ndarray:
    return np.asarray(img.convert("L"), dtype=np.float32)


def compute_blur_score(gray: np.ndarray) -> float:
    """Sharpness in [0,1]: mean absolute 4-neighbour Laplacian, normalized.

    Higher means sharper. Images too small to have interior pixels are
    reported as sharp.
    """
    if gray.ndim != 2 or gray.shape[0] < 3 or gray.shape[1] < 3:
        return NEUTRAL_BLUR_SCORE
    lap = (
        4.0 * gray[1:-1, 1:-1]
        - gray[:-2, 1:-1]
        - gray[2:, 1:-1]
        - gray[1:-1, :-2]
        - gray[1:-1, 2:]
    )
    return _clamp01(float(np.mean(np.abs(lap))) / BLUR_NORMALIZATION)


def compute_brightness(gray: np.ndarray) -> float:
    """Mean luma in [0,1] over a coarse sampling grid."""
    if gray.size == 0:
        return NEUTRAL_BRIGHTNESS
    h, w = gray.shape
    sy = max(1, h // BRIGHTNESS_GRID)
    sx = max(1, w // BRIGHTNESS_GRID)
    return _clamp01(float(gray[::sy, ::sx].mean()) / 255.0)


def classify_aspect_ratio(width: int, height: int) -> AspectRatioClass:
    """Closest known ratio within ASPECT_TOLERANCE, orientation independent."""
    if width <= 0 or height <= 0:
        return AspectRatioClass.OTHER
    ratio = width / height
    best, best_diff = AspectRatioClass.OTHER, ASPECT_TOLERANCE
    for cls, target in ASPECT_RATIOS.items():
        diff = min(abs(ratio - target), abs(1.0 / ratio - target))
        if diff < best_diff:
            best, best_diff = cls, diff
    return best


def estimate_text_density(gray: np.ndarray) -> tuple[float, bool]:
    """Fraction of high-frequency horizontal samples in the centre window.

    Returns (density, pattern_detected).
    """
    if gray.ndim != 2 or gray.shape[1] < 3 or gray.shape[0] < 1:
        return 0.0, False
    h, w = gray.shape
    # centre half of the frame, widened to the full frame for tiny images
    y0, y1 = (h // 4, h - h // 4) if h >= 8 else (0, h)
    x0, x1 = (w // 4, w - w // 4) if w >= 8 else (0, w)
    x0, x1 = max(x0, 1), min(x1, w - 1)
    if y1 <= y0 or x1 <= x0:
        return 0.0, False
    rows = np.unique(np.linspace(y0, y1 - 1, TEXT_SAMPLE_GRID).astype(int))
    cols = np.unique(np.linspace(x0, x1 - 1, TEXT_SAMPLE_GRID).astype(int))
    norm = gray[rows] / 255.0
    centre = norm[:, cols]
    change = np.abs(norm[:, cols - 1] - centre) + np.abs(centre - norm[:, cols + 1])
    density = float(np.mean(change > TEXT_EDGE_DELTA))
    return density, density > TEXT_PATTERN_MIN_RATIO


def estimate_noise_level(gray: np.ndarray) -> float:
    """Immerkær fast noise estimate, normalized to [0,1]."""
    if gray.ndim != 2 or gray.shape[0] < 3 or gray.shape[1] < 3:
        return 0.0
    g = gray
    conv = (
        g[:-2, :-2] - 2 * g[:-2, 1:-1] + g[:-2, 2:]
        - 2 * g[1:-1, :-2] + 4 * g[1:-1, 1:-1] - 2 * g[1:-1, 2:]
        + g[2:, :-2] - 2 * g[2:, 1:-1] + g[2:, 2:]
    )
    sigma = math.sqrt(math.pi / 2.0) * float(np.mean(np.abs(conv))) / 6.0
    return _clamp01(sigma / NOISE_NORMALIZATION)


def compute_exact_hash(buffer: PixelBuffer) -> str:
    """SHA-256 of the encoded bytes, or of shape + raw pixels when there are none."""
    h = hashlib.sha256()
    if buffer.data:
        h.update(buffer.data)
    else:
        h.update(repr(buffer.pixels.shape).encode("ascii"))
        h.update(np.ascontiguousarray(buffer.pixels).tobytes())
    return h.hexdigest()


def compute_perceptual_hash(img: Image.Image) -> int:
    """64-bit average hash; the first grid cell is the most significant bit."""
    return int(str(imagehash.average_hash(img, hash_size=PERCEPTUAL_HASH_SIZE)), 16)


def unavailable_features(metadata: CaptureMetadata | None = None) -> FeatureSet:
    """Neutral features for items without pixel data.

    The exact hash is random so such items never group as duplicates.
    """
    metadata = metadata or CaptureMetadata()
    density = metadata.text_density if metadata.text_density is not None else 0.0
    return FeatureSet(
        width=0,
        height=0,
        blur_score=NEUTRAL_BLUR_SCORE,
        brightness=NEUTRAL_BRIGHTNESS,
        aspect_ratio_class=AspectRatioClass.OTHER,
        text_density=_clamp01(density),
        text_pattern_detected=False,
        noise_level=0.0,
        exact_hash=f"{UNAVAILABLE_HASH_PREFIX}{uuid.uuid4().hex}",
        perceptual_hash=None,
        is_screenshot_hint=metadata.is_screenshot,
        available=False,
    )


def _extract(buffer: PixelBuffer | None, metadata: CaptureMetadata) -> FeatureSet:
    if buffer is None or buffer.pixels.size == 0 or buffer.pixels.ndim < 2:
        raise DecodeUnavailable("no pixel data")
    img = _analysis_image(buffer)
    gray = _gray(img)
    density, pattern = estimate_text_density(gray)
    if metadata.text_density is not None:
        density = _clamp01(metadata.text_density)
    return FeatureSet(
        width=buffer.width,
        height=buffer.height,
        blur_score=compute_blur_score(gray),
        brightness=compute_brightness(gray),
        aspect_ratio_class=classify_aspect_ratio(buffer.width, buffer.height),
        text_density=density,
        text_pattern_detected=pattern,
        noise_level=estimate_noise_level(gray),
        exact_hash=compute_exact_hash(buffer),
        perceptual_hash=compute_perceptual_hash(img),
        is_screenshot_hint=metadata.is_screenshot,
    )


def extract_features(buffer: PixelBuffer | None, metadata: CaptureMetadata | None = None) -> FeatureSet:
    """Compute the FeatureSet for one image. Never raises."""
    metadata = metadata or CaptureMetadata()
    with time_operation("extract_features"):
        try:
            return _extract(buffer, metadata)
        except DecodeUnavailable as e:
            logging.warning(f"[features] Pixel data unavailable ({e}); using neutral features")
        except Exception as e:
            logging.warning(f"[features] Extraction failed, using neutral features: {e}", exc_info=True)
    return unavailable_features(metadata)


def batch_extract_features(jobs: Sequence[ExtractionJob], max_workers: int | None = None) -> list[FeatureSet]:
    """Extract features for many images over a bounded thread pool.

    Results are returned in input order.
    """
    if not jobs:
        return []
    workers = max_workers or min(MAX_WORKERS, os.cpu_count() or 1)
    workers = max(1, min(workers, len(jobs)))
    logging.info(f"[features] Extracting features for {len(jobs)} images with {workers} workers")
    with ThreadPoolExecutor(max_workers=workers) as executor:
        return list(executor.map(lambda job: extract_features(job[0], job[1]), jobs))
