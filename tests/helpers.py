"""Image and feedback builders shared by the test modules."""

import io
from datetime import datetime, timezone

import numpy as np
from PIL import Image, ImageFilter

from snapsift.domain import AspectRatioClass, FeatureSet, FeatureSnapshot, FeedbackEntry, PixelBuffer


def png_bytes(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def buffer_from_image(img: Image.Image, encode: bool = True) -> PixelBuffer:
    """PixelBuffer the way a decoder collaborator would hand it over."""
    return PixelBuffer.from_image(img, data=png_bytes(img) if encode else None)


def checkerboard(size=64, cell=1) -> Image.Image:
    y, x = np.indices((size, size))
    arr = ((((x // cell) + (y // cell)) % 2) * 255).astype(np.uint8)
    return Image.fromarray(arr).convert("RGB")


def gradient(width=64, height=64) -> Image.Image:
    ramp = np.linspace(0, 255, width).astype(np.uint8)
    arr = np.tile(ramp, (height, 1))
    return Image.fromarray(arr).convert("RGB")


def vertical_stripes(width=64, height=64) -> Image.Image:
    arr = np.zeros((height, width), dtype=np.uint8)
    arr[:, ::2] = 255
    return Image.fromarray(arr).convert("RGB")


def flat(width=64, height=64, value=128) -> Image.Image:
    return Image.new("RGB", (width, height), (value, value, value))


def blurred(img: Image.Image, radius=2) -> Image.Image:
    return img.filter(ImageFilter.GaussianBlur(radius))


def make_features(**overrides) -> FeatureSet:
    """A sharp, bright, mid-resolution camera photo unless overridden."""
    values = dict(
        width=4000,
        height=3000,
        blur_score=0.9,
        brightness=0.6,
        aspect_ratio_class=AspectRatioClass.CAMERA_4_3,
        text_density=0.05,
        text_pattern_detected=False,
        noise_level=0.1,
        exact_hash="a" * 64,
        perceptual_hash=0x0F0F0F0F0F0F0F0F,
        is_screenshot_hint=False,
        available=True,
    )
    values.update(overrides)
    return FeatureSet(**values)


def make_entry(predicted, actual, is_correct=None, photo_id="p", entry_id=None, timestamp=None) -> FeedbackEntry:
    predicted, actual = frozenset(predicted), frozenset(actual)
    make_entry.counter += 1
    return FeedbackEntry(
        id=entry_id or f"e{make_entry.counter}",
        photo_id=photo_id,
        timestamp=timestamp or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc),
        predicted=predicted,
        actual=actual,
        is_correct=(predicted == actual) if is_correct is None else is_correct,
        features=FeatureSnapshot(100, 100, 0.5, 0.5, 0.1),
    )


make_entry.counter = 0
