"""Training session: rated-id bookkeeping, completion gate and refill signalling."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable

from .constants import BATCH_SIZE, COMPLETION_ACCURACY_BOUND, COMPLETION_MIN_SAMPLES, REFILL_WATERMARK
from .domain import TrainingSessionState
from .learning import ThresholdLearner
from .store import RecordStore

RefillCallback = Callable[[int, int], None]


class TrainingSession:
    """Tracks which items the user has rated and when training may stop.

    Training is complete only when the learner's overall accuracy reaches
    completion_accuracy_bound AND at least completion_min_samples items were
    rated. When the unrated queue drops to refill_watermark, on_refill(offset,
    batch_size) is called once so the caller can load the next batch.
    """

    def __init__(
        self,
        learner: ThresholdLearner,
        record_store: RecordStore | None = None,
        completion_accuracy_bound: float = COMPLETION_ACCURACY_BOUND,
        completion_min_samples: int = COMPLETION_MIN_SAMPLES,
        refill_watermark: int = REFILL_WATERMARK,
        batch_size: int = BATCH_SIZE,
        on_refill: RefillCallback | None = None,
    ):
        self.learner = learner
        self.record_store = record_store
        self.completion_accuracy_bound = completion_accuracy_bound
        self.completion_min_samples = completion_min_samples
        self.refill_watermark = refill_watermark
        self.batch_size = batch_size
        self.on_refill = on_refill
        self._lock = threading.Lock()
        self._persist_lock = threading.Lock()
        self._queue: list[str] = []
        self._rated: set[str] = set()
        self._offset = 0
        self._refill_pending = False
        if record_store is not None:
            record = record_store.load()
            self._rated = {str(i) for i in record.ratedIds}
            self._offset = max(0, int(record.sessionOffset))
            logging.debug(f"[session] Restored {len(self._rated)} rated ids, offset {self._offset}")

    @property
    def offset(self) -> int:
        with self._lock:
            return self._offset

    @property
    def rated_count(self) -> int:
        with self._lock:
            return len(self._rated)

    @property
    def confidence(self) -> float:
        correct, total = self.learner.counts()
        return correct / total if total else 0.0

    @property
    def is_complete(self) -> bool:
        return self.confidence >= self.completion_accuracy_bound and self.rated_count >= self.completion_min_samples

    @property
    def unrated_remaining(self) -> int:
        with self._lock:
            return self._unrated_locked()

    def _unrated_locked(self) -> int:
        return sum(1 for i in self._queue if i not in self._rated)

    def is_rated(self, item_id: str) -> bool:
        with self._lock:
            return item_id in self._rated

    def add_items(self, item_ids: Iterable[str]) -> int:
        """Enqueue a freshly loaded batch; returns how many ids were new."""
        with self._lock:
            known = set(self._queue)
            fresh = [i for i in item_ids if i not in known]
            self._queue.extend(fresh)
            self._offset += len(fresh)
            self._refill_pending = False
            offset = self._offset
        self._persist()
        logging.debug(f"[session] Added {len(fresh)} items (offset {offset})")
        return len(fresh)

    def mark_rated(self, item_id: str):
        with self._lock:
            self._rated.add(item_id)
        self._persist()
        if self.is_complete:
            logging.info(f"[session] Training complete: confidence {self.confidence:.2f} over {self.rated_count} ratings")
        self.check_refill()

    def needs_refill(self) -> bool:
        return self.unrated_remaining <= self.refill_watermark

    def check_refill(self) -> bool:
        """Signal the loader if the queue is low. Fires once per low-water crossing."""
        if not self.needs_refill():
            return False
        with self._lock:
            if self._refill_pending:
                return False
            self._refill_pending = True
            offset = self._offset
        logging.info(f"[session] {self.unrated_remaining} unrated left, requesting {self.batch_size} more at {offset}")
        if self.on_refill is not None:
            try:
                self.on_refill(offset, self.batch_size)
            except Exception as e:
                logging.warning(f"[session] Refill callback failed: {e}")
        return True

    def state(self) -> TrainingSessionState:
        with self._lock:
            offset = self._offset
            rated = frozenset(self._rated)
            unrated = self._unrated_locked()
        confidence = self.confidence
        return TrainingSessionState(
            offset=offset,
            rated_ids=rated,
            confidence=confidence,
            is_complete=confidence >= self.completion_accuracy_bound and len(rated) >= self.completion_min_samples,
            rated_count=len(rated),
            unrated_remaining=unrated,
            needs_refill=unrated <= self.refill_watermark,
        )

    def reset(self):
        with self._lock:
            self._queue.clear()
            self._rated.clear()
            self._offset = 0
            self._refill_pending = False
        self._persist()
        logging.info("[session] Training session reset")

    def _persist(self):
        if self.record_store is None:
            return
        # writes land in snapshot order
        with self._persist_lock:
            with self._lock:
                rated = sorted(self._rated)
                offset = self._offset
            self.record_store.update(ratedIds=rated, sessionOffset=offset)
