"""Exact and near-duplicate resolution over an append-only hash index.

Relationships are kept in an undirected networkx graph, so linking X to Y is a
single edge insert and "related to X" also finds items that were matched while
processing a later item Y.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

import networkx as nx

from .constants import PERCEPTUAL_HASH_BITS
from .domain import DUPLICATE_TAGS, FeatureSet, Tag
from .locking import exclusive
from .thresholds import Thresholds


@dataclass(frozen=True)
class HashRecord:
    exact_hash: str
    perceptual_hash: int | None


@dataclass(frozen=True)
class DuplicateResolution:
    item_id: str
    tags: frozenset[Tag]
    related_ids: frozenset[str]
    best_match: str | None = None
    similarity: float | None = None
    partner_tags: dict[str, Tag] = field(default_factory=dict)


def hamming_distance(a: int, b: int) -> int:
    return (a ^ b).bit_count()


def similarity(a: int | None, b: int | None) -> float:
    """1 - hamming/64; 0.0 when either hash is missing."""
    if a is None or b is None:
        return 0.0
    return 1.0 - hamming_distance(a, b) / PERCEPTUAL_HASH_BITS


def duplicate_tag(sim: float, thresholds: Thresholds) -> Tag | None:
    if sim >= thresholds.duplicate:
        return Tag.DUPLICATE
    if sim >= thresholds.near_duplicate:
        return Tag.NEAR_DUPLICATE
    return None


def _best(candidates: Mapping[str, float]) -> tuple[str, float] | None:
    """Highest similarity, ties broken by smallest id."""
    if not candidates:
        return None
    best_id = min(candidates, key=lambda k: (-candidates[k], k))
    return best_id, candidates[best_id]


class DuplicateResolver:
    """Hash index plus relationship graph.

    The index is append-only: registering an id twice keeps the first record.
    Every mutation of the index or graph happens inside one critical section.
    """

    def __init__(self):
        self._index: dict[str, HashRecord] = {}
        self._by_exact: dict[str, set[str]] = {}
        self._graph = nx.Graph()
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._index)

    def __contains__(self, item_id: str) -> bool:
        return item_id in self._index

    def _register(self, item_id: str, record: HashRecord):
        if item_id in self._index:
            if self._index[item_id] != record:
                logging.debug(f"[duplicates] {item_id} already indexed, keeping first record")
            return
        self._index[item_id] = record
        self._by_exact.setdefault(record.exact_hash, set()).add(item_id)
        self._graph.add_node(item_id)

    def register(self, item_id: str, exact_hash: str, perceptual_hash: int | None):
        with exclusive(self._lock, "duplicates"):
            self._register(item_id, HashRecord(exact_hash, perceptual_hash))

    def resolve(self, item_id: str, features: FeatureSet, thresholds: Thresholds) -> DuplicateResolution:
        """Match a new item against the index, link it and register it.

        Every exact-hash match is linked at similarity 1.0. The best perceptual
        candidate above the near-duplicate threshold is linked too.
        """
        with exclusive(self._lock, "duplicates"):
            exact = {
                other: 1.0
                for other in self._by_exact.get(features.exact_hash, ())
                if other != item_id
            }
            perceptual: dict[str, float] = {}
            if features.perceptual_hash is not None:
                for other, record in self._index.items():
                    if other == item_id or other in exact:
                        continue
                    sim = similarity(features.perceptual_hash, record.perceptual_hash)
                    if sim > thresholds.near_duplicate:
                        perceptual[other] = sim

            linked = dict(exact)
            best_perceptual = _best(perceptual)
            if best_perceptual is not None:
                linked[best_perceptual[0]] = best_perceptual[1]

            self._register(item_id, HashRecord(features.exact_hash, features.perceptual_hash))
            partner_tags: dict[str, Tag] = {}
            for other, sim in linked.items():
                tag = duplicate_tag(sim, thresholds)
                if tag is None:
                    continue
                self._graph.add_edge(item_id, other)
                partner_tags[other] = tag

            best = _best({k: linked[k] for k in partner_tags})
            tags = frozenset()
            if best is not None:
                tags = frozenset({duplicate_tag(best[1], thresholds)})
                logging.info(
                    f"[duplicates] {item_id} matches {best[0]} (similarity={best[1]:.3f}, links={len(partner_tags)})"
                )
            related = frozenset(self._graph.neighbors(item_id))

        return DuplicateResolution(
            item_id=item_id,
            tags=tags,
            related_ids=related,
            best_match=best[0] if best else None,
            similarity=best[1] if best else None,
            partner_tags=partner_tags,
        )

    def similarity_between(self, a: str, b: str) -> float:
        with exclusive(self._lock, "duplicates"):
            ra, rb = self._index.get(a), self._index.get(b)
        if ra is None or rb is None:
            return 0.0
        if ra.exact_hash == rb.exact_hash:
            return 1.0
        return similarity(ra.perceptual_hash, rb.perceptual_hash)

    def find_related(self, item_id: str) -> frozenset[str]:
        with exclusive(self._lock, "duplicates"):
            if item_id not in self._graph:
                return frozenset()
            return frozenset(self._graph.neighbors(item_id))

    def link(self, a: str, b: str):
        if a == b:
            return
        with exclusive(self._lock, "duplicates"):
            self._graph.add_edge(a, b)

    def unlink(self, a: str, b: str) -> bool:
        with exclusive(self._lock, "duplicates"):
            if not self._graph.has_edge(a, b):
                return False
            self._graph.remove_edge(a, b)
            return True

    def detach(self, item_id: str) -> frozenset[str]:
        """Remove every relationship of item_id; returns its former neighbours."""
        with exclusive(self._lock, "duplicates"):
            if item_id not in self._graph:
                return frozenset()
            neighbours = frozenset(self._graph.neighbors(item_id))
            self._graph.remove_edges_from([(item_id, n) for n in neighbours])
        if neighbours:
            logging.info(f"[duplicates] Detached {item_id} from {len(neighbours)} related items")
        return neighbours

    def stale_tagged(self, tag_map: Mapping[str, Iterable[Tag]]) -> set[str]:
        """Ids carrying a duplicate tag but no longer related to anything."""
        with exclusive(self._lock, "duplicates"):
            return {
                item_id
                for item_id, tags in tag_map.items()
                if DUPLICATE_TAGS & set(tags)
                and (item_id not in self._graph or self._graph.degree(item_id) == 0)
            }

    def groups(self) -> list[list[str]]:
        """Connected components with more than one member, each sorted."""
        with exclusive(self._lock, "duplicates"):
            components = [sorted(c) for c in nx.connected_components(self._graph) if len(c) > 1]
        return sorted(components)

    # ---------------- Persistence -----------------
    def export_index(self) -> dict[str, list]:
        with exclusive(self._lock, "duplicates"):
            return {
                item_id: [rec.exact_hash, None if rec.perceptual_hash is None else f"{rec.perceptual_hash:016x}"]
                for item_id, rec in self._index.items()
            }

    def export_relations(self) -> list[list[str]]:
        with exclusive(self._lock, "duplicates"):
            return sorted(sorted(edge) for edge in self._graph.edges())

    def load_index(self, data: Mapping[str, list]):
        loaded = 0
        with exclusive(self._lock, "duplicates"):
            for item_id, entry in (data or {}).items():
                try:
                    exact, phash = entry[0], entry[1]
                    record = HashRecord(str(exact), None if phash is None else int(phash, 16))
                except (TypeError, ValueError, IndexError) as e:
                    logging.warning(f"[duplicates] Skipping unreadable index entry for {item_id}: {e}")
                    continue
                self._register(item_id, record)
                loaded += 1
        logging.debug(f"[duplicates] Loaded {loaded} index entries")

    def load_relations(self, pairs: Iterable[list[str]]):
        with exclusive(self._lock, "duplicates"):
            for pair in pairs or ():
                if not isinstance(pair, (list, tuple)) or len(pair) != 2 or pair[0] == pair[1]:
                    logging.warning(f"[duplicates] Skipping malformed relation: {pair!r}")
                    continue
                self._graph.add_edge(str(pair[0]), str(pair[1]))
