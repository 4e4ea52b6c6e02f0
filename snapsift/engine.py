"""SiftEngine: the library surface tying extraction, classification, duplicate
resolution, learning and the training session together.

No public method raises for recoverable conditions (missing pixels, corrupt
store, lock contention); those are logged and degraded inside the components.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Sequence

from . import timing
from .classifier import classify
from .domain import (
    DUPLICATE_TAGS,
    CaptureMetadata,
    ClassificationResult,
    FeatureSet,
    FeedbackEntry,
    PhotoItem,
    PixelBuffer,
    Tag,
    TrainingSessionState,
)
from .duplicates import DuplicateResolution, DuplicateResolver
from .features import batch_extract_features, extract_features
from .learning import AccuracyDataPoint, LearningAnalytics, TagAccuracy, ThresholdLearner, TrainingMetrics
from .session import RefillCallback, TrainingSession
from .settings import EngineConfig
from .store import KeyValueStore, RecordStore
from .thresholds import Thresholds

IngestJob = tuple[str, PixelBuffer | None, CaptureMetadata | None]


class SiftEngine:
    def __init__(
        self,
        store: KeyValueStore | None = None,
        config: EngineConfig | None = None,
        on_refill: RefillCallback | None = None,
    ):
        self.config = config or EngineConfig()
        self.records = RecordStore(store, key=self.config.state_key)
        self.learner = ThresholdLearner(
            self.records,
            specs=self.config.specs,
            retention=self.config.feedback_retention,
            window=self.config.learning_window,
        )
        self.resolver = DuplicateResolver()
        self.session = TrainingSession(
            self.learner,
            self.records,
            completion_accuracy_bound=self.config.completion_accuracy_bound,
            completion_min_samples=self.config.completion_min_samples,
            refill_watermark=self.config.refill_watermark,
            batch_size=self.config.batch_size,
            on_refill=on_refill,
        )
        self._items: dict[str, PhotoItem] = {}
        self._lock = threading.RLock()
        record = self.records.load()
        self.resolver.load_index(record.hashIndex)
        self.resolver.load_relations(record.relations)
        logging.info(
            f"[engine] Ready: {len(self.resolver)} indexed items, {len(self.learner)} feedback entries, "
            f"thresholds revision {self.learner.thresholds.revision}"
        )

    # ---------------- Core operations -----------------
    def extract_features(self, buffer: PixelBuffer | None, metadata: CaptureMetadata | None = None) -> FeatureSet:
        return extract_features(buffer, metadata)

    def classify(
        self,
        features: FeatureSet,
        thresholds: Thresholds | None = None,
        existing_tags: Iterable[Tag] | None = None,
        similarity: float | None = None,
    ) -> ClassificationResult:
        return classify(features, thresholds or self.get_thresholds(), existing_tags, similarity)

    def resolve_duplicates(self, item_id: str, features: FeatureSet) -> DuplicateResolution:
        resolution = self.resolver.resolve(item_id, features, self.get_thresholds())
        self._apply_partner_tags(item_id, resolution)
        self._persist_graph()
        return resolution

    def record_feedback(
        self,
        photo_id: str,
        predicted: Iterable[Tag],
        actual: Iterable[Tag],
        correct: bool,
        features: FeatureSet | None = None,
    ) -> FeedbackEntry:
        return self.learner.record_feedback(photo_id, predicted, actual, correct, features)

    def get_thresholds(self) -> Thresholds:
        return self.learner.thresholds

    def get_training_state(self) -> TrainingSessionState:
        return self.session.state()

    def find_related(self, item_id: str) -> frozenset[str]:
        return self.resolver.find_related(item_id)

    # ---------------- Pipeline -----------------
    def ingest(self, item_id: str, buffer: PixelBuffer | None, metadata: CaptureMetadata | None = None) -> PhotoItem:
        """Extract, resolve duplicates and classify one item, then queue it for rating."""
        features = extract_features(buffer, metadata)
        item = self._admit(item_id, features, metadata)
        self.session.add_items([item_id])
        self._persist_graph()
        return item

    def ingest_batch(self, jobs: Sequence[IngestJob]) -> list[PhotoItem]:
        """Parallel extraction, then sequential resolution in input order."""
        with timing.time_operation("ingest_batch"):
            features = batch_extract_features([(buffer, meta) for _, buffer, meta in jobs], self.config.max_workers)
            items = [self._admit(item_id, f, meta) for (item_id, _, meta), f in zip(jobs, features)]
        self.session.add_items(item_id for item_id, _, _ in jobs)
        self._persist_graph()
        logging.info(f"[engine] Ingested batch of {len(items)} items")
        return items

    def _admit(self, item_id: str, features: FeatureSet, metadata: CaptureMetadata | None) -> PhotoItem:
        thresholds = self.get_thresholds()
        resolution = self.resolver.resolve(item_id, features, thresholds)
        result = classify(features, thresholds, similarity=resolution.similarity)
        with self._lock:
            item = PhotoItem.from_features(item_id, features, metadata)
            item.predicted_tags = set(result.tags | resolution.tags)
            item.tag_confidence = dict(result.confidence)
            item.related_ids = set(resolution.related_ids)
            previous = self._items.get(item_id)
            if previous is not None and previous.rated:
                item.mark_rated(previous.tags)
            elif self.session.is_rated(item_id):
                self._restore_rating(item)
            self._items[item_id] = item
            self._apply_partner_tags(item_id, resolution)
        logging.debug(f"[engine] {item_id}: predicted {sorted(t.value for t in item.predicted_tags)}")
        return item

    def _restore_rating(self, item: PhotoItem):
        for entry in reversed(self.learner.feedback()):
            if entry.photo_id == item.id:
                item.mark_rated(entry.actual)
                return
        item.mark_rated(item.predicted_tags)

    def _apply_partner_tags(self, item_id: str, resolution: DuplicateResolution):
        with self._lock:
            for partner_id, tag in resolution.partner_tags.items():
                partner = self._items.get(partner_id)
                if partner is None:
                    continue
                partner.predicted_tags.add(tag)
                partner.related_ids.add(item_id)
                partner.tag_confidence[tag] = self.resolver.similarity_between(item_id, partner_id)

    # ---------------- User judgments -----------------
    def confirm(self, item_id: str) -> FeedbackEntry | None:
        """The user agrees with the prediction."""
        item = self.get_item(item_id)
        if item is None:
            logging.warning(f"[engine] confirm: unknown item {item_id}")
            return None
        predicted = set(item.predicted_tags) - {Tag.UNRATED}
        entry = self.learner.record_feedback(item_id, predicted, predicted, True, item.features)
        with self._lock:
            item.mark_rated(predicted)
        self.session.mark_rated(item_id)
        return entry

    def correct(self, item_id: str, tags: Iterable[Tag]) -> FeedbackEntry | None:
        """The user supplies the true tags for an item."""
        item = self.get_item(item_id)
        if item is None:
            logging.warning(f"[engine] correct: unknown item {item_id}")
            return None
        actual = set(tags) - {Tag.UNRATED}
        predicted = set(item.predicted_tags) - {Tag.UNRATED}
        entry = self.learner.record_feedback(item_id, predicted, actual, actual == predicted, item.features)
        with self._lock:
            item.mark_rated(actual)
        self.session.mark_rated(item_id)
        if predicted & DUPLICATE_TAGS and not actual & DUPLICATE_TAGS:
            self._detach(item_id)
        return entry

    def declare_unique(self, item_id: str) -> set[str]:
        """Remove all duplicate relationships of an item. Returns ids whose stale tags were cleared."""
        if self.get_item(item_id) is None and item_id not in self.resolver:
            logging.warning(f"[engine] declare_unique: unknown item {item_id}")
            return set()
        return self._detach(item_id)

    def _detach(self, item_id: str) -> set[str]:
        neighbours = self.resolver.detach(item_id)
        with self._lock:
            item = self._items.get(item_id)
            if item is not None:
                item.related_ids.clear()
                item.predicted_tags -= DUPLICATE_TAGS
                item.tags -= DUPLICATE_TAGS
                for tag in DUPLICATE_TAGS:
                    item.tag_confidence.pop(tag, None)
            for n in neighbours:
                partner = self._items.get(n)
                if partner is not None:
                    partner.related_ids.discard(item_id)
        cleared = self.cleanup_stale_tags()
        self._persist_graph()
        return cleared

    def cleanup_stale_tags(self) -> set[str]:
        """Strip duplicate tags from items that no longer relate to anything."""
        with self._lock:
            tag_map = {i: item.tags | item.predicted_tags for i, item in self._items.items()}
            stale = self.resolver.stale_tagged(tag_map)
            for item_id in stale:
                item = self._items[item_id]
                item.predicted_tags -= DUPLICATE_TAGS
                item.tags -= DUPLICATE_TAGS
                item.related_ids.clear()
                for tag in DUPLICATE_TAGS:
                    item.tag_confidence.pop(tag, None)
        if stale:
            logging.info(f"[engine] Cleared stale duplicate tags from {len(stale)} items")
        return stale

    # ---------------- Session maintenance -----------------
    def reclassify_pending(self) -> int:
        """Re-tag unrated items against the current thresholds. Returns how many changed."""
        thresholds = self.get_thresholds()
        changed = 0
        with self._lock:
            for item in self._items.values():
                if item.rated or item.features is None:
                    continue
                result = classify(item.features, thresholds, existing_tags=item.predicted_tags & DUPLICATE_TAGS)
                if set(result.tags) != item.predicted_tags:
                    changed += 1
                item.predicted_tags = set(result.tags)
                for tag, score in result.confidence.items():
                    item.tag_confidence[tag] = score
        if changed:
            logging.info(f"[engine] Reclassified {changed} pending items (thresholds revision {thresholds.revision})")
        return changed

    def finalize_training(self) -> int:
        """Drop the unrated sentinel from every rated item. Returns how many were touched."""
        touched = 0
        with self._lock:
            for item in self._items.values():
                if (item.rated or self.session.is_rated(item.id)) and Tag.UNRATED in item.tags:
                    item.tags.discard(Tag.UNRATED)
                    item.rated = True
                    touched += 1
        logging.info(f"[engine] Finalized training session ({touched} items updated)")
        return touched

    def reset_training(self):
        """Forget all feedback and ratings; thresholds return to defaults."""
        self.learner.reset()
        self.session.reset()
        with self._lock:
            for item in self._items.values():
                item.tags = {Tag.UNRATED}
                item.rated = False
        logging.info("[engine] Training reset")

    # ---------------- Accessors -----------------
    def items(self) -> list[PhotoItem]:
        with self._lock:
            return list(self._items.values())

    def get_item(self, item_id: str) -> PhotoItem | None:
        with self._lock:
            return self._items.get(item_id)

    def duplicate_groups(self) -> list[list[str]]:
        return self.resolver.groups()

    def metrics(self) -> TrainingMetrics:
        return self.learner.metrics()

    def analytics(self) -> LearningAnalytics:
        return self.learner.analytics()

    def tag_accuracy(self) -> list[TagAccuracy]:
        return self.learner.tag_accuracy()

    def accuracy_trend(self, days: int = 7) -> list[AccuracyDataPoint]:
        return self.learner.accuracy_trend(days)

    def export_training_data(self) -> dict:
        return self.learner.export_training_data()

    def import_training_data(self, data: dict):
        """Load an export produced by export_training_data."""
        if not isinstance(data, dict):
            logging.warning(f"[engine] Ignoring training data import of type {type(data).__name__}")
            return
        self.learner.import_feedback(data.get("feedback", []))
        if data.get("classificationRules"):
            self.learner.import_thresholds(data["classificationRules"])

    def timing_stats(self) -> dict[str, dict]:
        return timing.get_stats()

    def _persist_graph(self):
        self.records.update(hashIndex=self.resolver.export_index(), relations=self.resolver.export_relations())
