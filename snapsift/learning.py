"""Feedback log and threshold adaptation.

Every recorded judgment is appended to a bounded log, then thresholds are
recomputed over the most recent window and persisted. Adaptation is a small
per-dimension rule: if a dimension's recent accuracy is below its acceptable
bound, step its threshold towards whichever error (false positives or false
negatives) dominates, then clamp it to its bounds.

Readers get the whole Thresholds snapshot from a single attribute, which is
only ever replaced, never mutated.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone

from .constants import CHANGE_LOG_SIZE, FEEDBACK_RETENTION, LEARNING_WINDOW, RECENT_ACCURACY_WINDOW
from .domain import FeatureSet, FeatureSnapshot, FeedbackEntry, Tag
from .locking import exclusive
from .store import RecordStore
from .thresholds import DEFAULT_SPECS, ThresholdDimension, Thresholds, ThresholdSpec, check_bounds
from .timing import timed

EXPORT_VERSION = "1.0"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _accuracy(entries: Sequence[FeedbackEntry]) -> float:
    if not entries:
        return 0.0
    return sum(1 for e in entries if e.is_correct) / len(entries)


@dataclass(frozen=True)
class ThresholdChange:
    dimension: ThresholdDimension
    old_value: float
    new_value: float
    reason: str  # "false_negatives", "false_positives" or "capped"
    samples: int = 0
    accuracy: float = 0.0
    false_positives: int = 0
    false_negatives: int = 0
    revision: int = 0
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class ThresholdSnapshot:
    revision: int
    timestamp: datetime
    values: dict[str, float]

    def to_dict(self) -> dict:
        return {"revision": self.revision, "timestamp": self.timestamp.isoformat(), "values": dict(self.values)}

    @classmethod
    def from_dict(cls, data: dict) -> ThresholdSnapshot:
        return cls(
            revision=int(data.get("revision", 0)),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            values={str(k): float(v) for k, v in data.get("values", {}).items()},
        )


@dataclass(frozen=True)
class TrainingMetrics:
    total_feedback: int
    correct_predictions: int
    accuracy: float
    last_updated: datetime

    @classmethod
    def from_feedback(cls, feedback: Sequence[FeedbackEntry]) -> TrainingMetrics:
        return cls(
            total_feedback=len(feedback),
            correct_predictions=sum(1 for e in feedback if e.is_correct),
            accuracy=_accuracy(feedback),
            last_updated=_utcnow(),
        )

    def to_dict(self) -> dict:
        return {
            "totalFeedback": self.total_feedback,
            "correctPredictions": self.correct_predictions,
            "accuracy": self.accuracy,
            "lastUpdated": self.last_updated.isoformat(),
        }


@dataclass(frozen=True)
class LearningAnalytics:
    total_feedback: int
    correct_predictions: int
    overall_accuracy: float
    recent_accuracy: float
    improvement_trend: float  # > 0 improving, < 0 declining
    last_updated: datetime

    @classmethod
    def from_feedback(cls, feedback: Sequence[FeedbackEntry]) -> LearningAnalytics:
        recent = list(feedback)[-RECENT_ACCURACY_WINDOW:]
        half = RECENT_ACCURACY_WINDOW // 2
        trend = 0.0
        if len(recent) >= half:
            trend = _accuracy(recent[-half:]) - _accuracy(recent[:half])
        return cls(
            total_feedback=len(feedback),
            correct_predictions=sum(1 for e in feedback if e.is_correct),
            overall_accuracy=_accuracy(feedback),
            recent_accuracy=_accuracy(recent),
            improvement_trend=trend,
            last_updated=_utcnow(),
        )


@dataclass(frozen=True)
class TagAccuracy:
    tag: Tag
    accuracy: float
    total_predictions: int
    false_positives: int
    false_negatives: int

    @property
    def true_positives(self) -> int:
        return self.total_predictions - self.false_positives - self.false_negatives

    @property
    def precision(self) -> float:
        tp = self.true_positives
        return tp / (tp + self.false_positives) if tp + self.false_positives > 0 else 0.0

    @property
    def recall(self) -> float:
        tp = self.true_positives
        return tp / (tp + self.false_negatives) if tp + self.false_negatives > 0 else 0.0


@dataclass(frozen=True)
class AccuracyDataPoint:
    date: date
    accuracy: float
    count: int


def _error_counts(entries: Sequence[FeedbackEntry], tag: Tag) -> tuple[int, int]:
    fp = sum(1 for e in entries if tag in e.predicted and tag not in e.actual)
    fn = sum(1 for e in entries if tag not in e.predicted and tag in e.actual)
    return fp, fn


def adapt_thresholds(
    current: Thresholds,
    window: Sequence[FeedbackEntry],
    specs: dict[ThresholdDimension, ThresholdSpec] = DEFAULT_SPECS,
) -> tuple[Thresholds, list[ThresholdChange]]:
    """One adaptation pass over a feedback window. Pure.

    Returns the new snapshot (revision bumped only if a value moved) and the
    list of moves made.
    """
    values = current.values()
    moves: list[tuple[ThresholdDimension, float, float, str, int, float, int, int]] = []
    for dim in ThresholdDimension:
        spec = specs[dim]
        tag = dim.tag
        relevant = [e for e in window if tag in e.predicted or tag in e.actual]
        if len(relevant) < spec.min_samples:
            continue
        accuracy = _accuracy(relevant)
        if accuracy >= spec.acceptable_accuracy:
            continue
        fp, fn = _error_counts(relevant, tag)
        if fp == fn:
            continue
        reason = "false_negatives" if fn > fp else "false_positives"
        old = values[dim]
        new = check_bounds(spec, spec.step(old, catch_more=fn > fp))
        if new != old:
            values[dim] = new
            moves.append((dim, old, new, reason, len(relevant), accuracy, fp, fn))

    # near-duplicate must never demand more similarity than duplicate
    near, dup = ThresholdDimension.NEAR_DUPLICATE, ThresholdDimension.DUPLICATE
    if values[near] > values[dup]:
        old = values[near]
        values[near] = specs[near].clamp(values[dup])
        if values[near] != old:
            moves.append((near, old, values[near], "capped", 0, 0.0, 0, 0))

    if not moves:
        return current, []
    revision = current.revision + 1
    changes = [
        ThresholdChange(
            dimension=dim,
            old_value=old,
            new_value=new,
            reason=reason,
            samples=samples,
            accuracy=accuracy,
            false_positives=fp,
            false_negatives=fn,
            revision=revision,
        )
        for dim, old, new, reason, samples, accuracy, fp, fn in moves
    ]
    return current.with_values(values, revision=revision), changes


class ThresholdLearner:
    """Owns the feedback log and the live Thresholds snapshot."""

    def __init__(
        self,
        record_store: RecordStore | None = None,
        specs: dict[ThresholdDimension, ThresholdSpec] | None = None,
        retention: int = FEEDBACK_RETENTION,
        window: int = LEARNING_WINDOW,
        history_size: int = CHANGE_LOG_SIZE,
    ):
        self.specs = specs or DEFAULT_SPECS
        self.record_store = record_store
        self.window = window
        self._lock = threading.RLock()
        self._feedback: deque[FeedbackEntry] = deque(maxlen=retention)
        self._thresholds = Thresholds.defaults(self.specs)
        self._last_recomputed_id: str | None = None
        self.changes: deque[ThresholdChange] = deque(maxlen=history_size)
        self._history: deque[ThresholdSnapshot] = deque(maxlen=history_size)
        if record_store is not None:
            self._restore()

    # ---------------- Snapshot access -----------------
    @property
    def thresholds(self) -> Thresholds:
        return self._thresholds

    def feedback(self) -> list[FeedbackEntry]:
        with exclusive(self._lock, "learning"):
            return list(self._feedback)

    def history(self) -> list[ThresholdSnapshot]:
        with exclusive(self._lock, "learning"):
            return list(self._history)

    def counts(self) -> tuple[int, int]:
        """(correct, total) over the retained feedback log."""
        with exclusive(self._lock, "learning"):
            return sum(1 for e in self._feedback if e.is_correct), len(self._feedback)

    def __len__(self) -> int:
        return len(self._feedback)

    # ---------------- Recording -----------------
    def record_feedback(
        self,
        photo_id: str,
        predicted: Iterable[Tag],
        actual: Iterable[Tag],
        is_correct: bool,
        features: FeatureSet | FeatureSnapshot | None = None,
        timestamp: datetime | None = None,
    ) -> FeedbackEntry:
        if isinstance(features, FeatureSet):
            features = features.snapshot()
        entry = FeedbackEntry(
            id=str(uuid.uuid4()),
            photo_id=photo_id,
            timestamp=timestamp or _utcnow(),
            predicted=frozenset(predicted) - {Tag.UNRATED},
            actual=frozenset(actual) - {Tag.UNRATED},
            is_correct=bool(is_correct),
            features=features or FeatureSnapshot(0, 0, 1.0, 0.5, 0.0),
        )
        return self.ingest(entry)

    def ingest(self, entry: FeedbackEntry) -> FeedbackEntry:
        """Append a pre-built entry, recompute and persist."""
        with exclusive(self._lock, "learning"):
            self._feedback.append(entry)
            logging.debug(
                f"[learning] Feedback for {entry.photo_id}: {'correct' if entry.is_correct else 'incorrect'} "
                f"({len(self._feedback)} entries)"
            )
            self.recompute()
            self._persist()
        return entry

    @timed("recompute_thresholds")
    def recompute(self) -> Thresholds:
        """Adapt thresholds over the recent window.

        Idempotent: does nothing unless feedback arrived since the last run.
        """
        with exclusive(self._lock, "learning"):
            if not self._feedback:
                return self._thresholds
            newest = self._feedback[-1].id
            if newest == self._last_recomputed_id:
                return self._thresholds
            window = list(self._feedback)[-self.window:]
            updated, changes = adapt_thresholds(self._thresholds, window, self.specs)
            self._last_recomputed_id = newest
            if changes:
                self._publish(updated, changes)
            return self._thresholds

    def _publish(self, updated: Thresholds, changes: Sequence[ThresholdChange] = ()):
        # single reference swap; readers holding the old snapshot keep a consistent view
        self._thresholds = updated
        for change in changes:
            self.changes.append(change)
            logging.info(
                f"[learning] {change.dimension.value}: {change.old_value:.4f} -> {change.new_value:.4f} "
                f"({change.reason}, accuracy={change.accuracy:.2f}, n={change.samples}, "
                f"fp={change.false_positives}, fn={change.false_negatives})"
            )
        self._history.append(
            ThresholdSnapshot(
                revision=updated.revision,
                timestamp=_utcnow(),
                values={dim.value: v for dim, v in updated.values().items()},
            )
        )

    # ---------------- Persistence -----------------
    def _persist(self):
        if self.record_store is None:
            return
        self.record_store.update(
            thresholds=self._thresholds.to_dict(self.specs),
            feedbackLog=[e.to_dict() for e in self._feedback],
            thresholdHistory=[s.to_dict() for s in self._history],
        )

    def _restore(self):
        record = self.record_store.load()
        if record.thresholds:
            self._thresholds = Thresholds.from_dict(record.thresholds, self.specs)
        for raw in record.feedbackLog:
            try:
                self._feedback.append(FeedbackEntry.from_dict(raw))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logging.warning(f"[learning] Skipping unreadable feedback entry: {e}")
        for raw in record.thresholdHistory:
            try:
                self._history.append(ThresholdSnapshot.from_dict(raw))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logging.debug(f"[learning] Skipping unreadable history entry: {e}")
        # restored thresholds already reflect the restored log
        self._last_recomputed_id = self._feedback[-1].id if self._feedback else None
        logging.info(
            f"[learning] Restored {len(self._feedback)} feedback entries, thresholds revision {self._thresholds.revision}"
        )

    # ---------------- Analytics -----------------
    def metrics(self) -> TrainingMetrics:
        return TrainingMetrics.from_feedback(self.feedback())

    def analytics(self) -> LearningAnalytics:
        return LearningAnalytics.from_feedback(self.feedback())

    def tag_accuracy(self) -> list[TagAccuracy]:
        """Per-tag accuracy over every entry where the tag was predicted or confirmed."""
        feedback = self.feedback()
        result = []
        for tag in Tag:
            if tag == Tag.UNRATED:
                continue
            relevant = [e for e in feedback if tag in e.predicted or tag in e.actual]
            if not relevant:
                continue
            fp, fn = _error_counts(relevant, tag)
            result.append(
                TagAccuracy(
                    tag=tag,
                    accuracy=_accuracy(relevant),
                    total_predictions=len(relevant),
                    false_positives=fp,
                    false_negatives=fn,
                )
            )
        return result

    def accuracy_by_tag(self) -> dict[Tag, float]:
        return {t.tag: t.accuracy for t in self.tag_accuracy()}

    def accuracy_trend(self, days: int = 7, now: datetime | None = None) -> list[AccuracyDataPoint]:
        """Daily accuracy (UTC days) for the last `days` days, today included."""
        today = (now or _utcnow()).astimezone(timezone.utc).date()
        by_day: dict[date, list[FeedbackEntry]] = {}
        for entry in self.feedback():
            ts = entry.timestamp if entry.timestamp.tzinfo else entry.timestamp.replace(tzinfo=timezone.utc)
            by_day.setdefault(ts.astimezone(timezone.utc).date(), []).append(entry)
        points = []
        for offset in range(days - 1, -1, -1):
            day = today - timedelta(days=offset)
            entries = by_day.get(day, [])
            points.append(AccuracyDataPoint(date=day, accuracy=_accuracy(entries), count=len(entries)))
        return points

    # ---------------- Import / export / reset -----------------
    def export_training_data(self) -> dict:
        feedback = self.feedback()
        return {
            "version": EXPORT_VERSION,
            "exportDate": _utcnow().isoformat(),
            "feedback": [e.to_dict() for e in feedback],
            "classificationRules": self._thresholds.to_dict(self.specs),
            "trainingMetrics": TrainingMetrics.from_feedback(feedback).to_dict(),
        }

    def import_feedback(self, entries: Iterable[FeedbackEntry | dict]):
        """Replace the feedback log, then recompute and persist."""
        parsed = []
        for raw in entries:
            if isinstance(raw, FeedbackEntry):
                parsed.append(raw)
                continue
            try:
                parsed.append(FeedbackEntry.from_dict(raw))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logging.warning(f"[learning] Skipping unreadable imported entry: {e}")
        with exclusive(self._lock, "learning"):
            self._feedback.clear()
            self._feedback.extend(parsed)
            self._last_recomputed_id = None
            self.recompute()
            self._persist()
        logging.info(f"[learning] Imported {len(parsed)} feedback entries")

    def import_thresholds(self, thresholds: Thresholds | dict):
        """Adopt externally supplied thresholds (clamped to bounds) and persist."""
        data = thresholds.to_dict(self.specs) if isinstance(thresholds, Thresholds) else thresholds
        imported = Thresholds.from_dict(data, self.specs)
        with exclusive(self._lock, "learning"):
            self._publish(imported.with_values({}, revision=self._thresholds.revision + 1))
            self._persist()
        logging.info("[learning] Imported thresholds")

    def reset(self):
        """Clear all feedback and restore default thresholds."""
        with exclusive(self._lock, "learning"):
            self._feedback.clear()
            self.changes.clear()
            self._history.clear()
            self._last_recomputed_id = None
            self._thresholds = Thresholds.defaults(self.specs).with_values({}, revision=self._thresholds.revision + 1)
            self._persist()
        logging.info(
            f"[learning] Reset thresholds to defaults: blur={self._thresholds.blur}, "
            f"screenshot={self._thresholds.screenshot}, quality={self._thresholds.low_quality}"
        )
