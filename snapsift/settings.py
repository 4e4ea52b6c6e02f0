import json
import logging
import os
from dataclasses import dataclass, field

from .constants import (
    BATCH_SIZE,
    COMPLETION_ACCURACY_BOUND,
    COMPLETION_MIN_SAMPLES,
    FEEDBACK_RETENTION,
    LEARNING_WINDOW,
    MAX_WORKERS,
    REFILL_WATERMARK,
    STATE_KEY,
)
from .thresholds import ThresholdDimension, ThresholdSpec, build_specs

CONFIG_PATH = os.environ.get("SNAPSIFT_CONFIG", os.path.expanduser("~/.snapsift_config.json"))

DEFAULT_SETTINGS = {
    "feedback_retention": FEEDBACK_RETENTION,
    "learning_window": LEARNING_WINDOW,
    "completion_accuracy_bound": COMPLETION_ACCURACY_BOUND,
    "completion_min_samples": COMPLETION_MIN_SAMPLES,
    "refill_watermark": REFILL_WATERMARK,
    "batch_size": BATCH_SIZE,
    "max_workers": MAX_WORKERS,
    "state_key": STATE_KEY,
    # per-dimension ThresholdSpec overrides, e.g. {"blur": {"maximum": 0.6}}
    "thresholds": {},
}


def load_settings(path=None):
    """Load settings from config file, merged over DEFAULT_SETTINGS"""
    path = path or CONFIG_PATH
    settings = DEFAULT_SETTINGS.copy()
    try:
        if os.path.exists(path):
            with open(path) as f:
                saved_settings = json.load(f)
            if not isinstance(saved_settings, dict):
                raise ValueError(f"expected a JSON object, got {type(saved_settings).__name__}")
            settings.update(saved_settings)
    except Exception as e:
        logging.warning(f"[settings] Could not load settings from {path}: {e}")
    return settings


def get_setting(key, default=None, path=None):
    """Utility function to get a single setting value"""
    return load_settings(path).get(key, default)


def set_setting(key, value, path=None):
    """Utility function to set a single setting value"""
    path = path or CONFIG_PATH
    try:
        settings = {}
        if os.path.exists(path):
            with open(path) as f:
                settings = json.load(f)
        settings[key] = value
        with open(path, "w") as f:
            json.dump(settings, f, indent=2)
    except Exception as e:
        logging.error(f"[settings] Could not save setting {key}: {e}")


@dataclass(frozen=True)
class EngineConfig:
    feedback_retention: int = FEEDBACK_RETENTION
    learning_window: int = LEARNING_WINDOW
    completion_accuracy_bound: float = COMPLETION_ACCURACY_BOUND
    completion_min_samples: int = COMPLETION_MIN_SAMPLES
    refill_watermark: int = REFILL_WATERMARK
    batch_size: int = BATCH_SIZE
    max_workers: int = MAX_WORKERS
    state_key: str = STATE_KEY
    specs: dict[ThresholdDimension, ThresholdSpec] = field(default_factory=build_specs)

    @classmethod
    def from_settings(cls, settings: dict | None = None) -> "EngineConfig":
        """Typed config from a settings dict (missing keys use DEFAULT_SETTINGS)."""
        s = DEFAULT_SETTINGS.copy()
        s.update(settings or {})
        return cls(
            feedback_retention=int(s["feedback_retention"]),
            learning_window=int(s["learning_window"]),
            completion_accuracy_bound=float(s["completion_accuracy_bound"]),
            completion_min_samples=int(s["completion_min_samples"]),
            refill_watermark=int(s["refill_watermark"]),
            batch_size=int(s["batch_size"]),
            max_workers=int(s["max_workers"]),
            state_key=str(s["state_key"]),
            specs=build_specs(s.get("thresholds") or {}),
        )

    @classmethod
    def load(cls, path=None) -> "EngineConfig":
        return cls.from_settings(load_settings(path))
