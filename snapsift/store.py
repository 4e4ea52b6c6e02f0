"""Persistence: key/value store protocol and the versioned state record.

The core owns the record layout; the store only sees opaque bytes under one key.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Protocol

from .constants import RECORD_SCHEMA, RECORD_VERSION, STATE_KEY
from .errors import PersistenceCorrupt
from .locking import exclusive


class KeyValueStore(Protocol):
    def get(self, key: str) -> bytes | None: ...

    def set(self, key: str, value: bytes) -> None: ...


class MemoryStore:
    """Dict-backed store, mostly for tests and embedding."""

    def __init__(self, initial: dict[str, bytes] | None = None):
        self._data: dict[str, bytes] = dict(initial or {})

    def get(self, key: str) -> bytes | None:
        return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        self._data[key] = value


class FileStore:
    """One file per key inside a directory; writes are atomic (temp file + rename)."""

    def __init__(self, directory: str):
        self.directory = os.path.abspath(os.path.expanduser(directory))

    def _path(self, key: str) -> str:
        safe = "".join(c if c.isalnum() or c in "._-" else "_" for c in key)
        return os.path.join(self.directory, f"{safe}.json")

    def get(self, key: str) -> bytes | None:
        path = self._path(key)
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            return None

    def set(self, key: str, value: bytes) -> None:
        os.makedirs(self.directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(value)
            os.replace(tmp, self._path(key))
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        logging.debug(f"[store] Wrote {len(value)} bytes to {self._path(key)}")


@dataclass
class StateRecord:
    """Everything the core persists, as plain JSON-ready values."""

    thresholds: dict = field(default_factory=dict)
    feedbackLog: list = field(default_factory=list)
    ratedIds: list = field(default_factory=list)
    sessionOffset: int = 0
    hashIndex: dict = field(default_factory=dict)
    relations: list = field(default_factory=list)
    thresholdHistory: list = field(default_factory=list)

    def encode(self) -> bytes:
        payload = {"schema": RECORD_SCHEMA, "version": RECORD_VERSION}
        payload.update(asdict(self))
        return json.dumps(payload, separators=(",", ":")).encode("utf-8")

    @classmethod
    def decode(cls, raw: bytes) -> StateRecord:
        """Parse a stored record; missing fields take their defaults.

        Raises:
            PersistenceCorrupt: bytes are not a JSON object of this schema
        """
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise PersistenceCorrupt(f"unparseable state record: {e}") from e
        if not isinstance(data, dict):
            raise PersistenceCorrupt(f"state record is {type(data).__name__}, expected object")
        schema = data.get("schema", RECORD_SCHEMA)
        if schema != RECORD_SCHEMA:
            raise PersistenceCorrupt(f"unexpected schema {schema!r}")
        version = data.get("version", RECORD_VERSION)
        if isinstance(version, int) and version > RECORD_VERSION:
            logging.warning(f"[store] Record version {version} is newer than {RECORD_VERSION}; reading best-effort")
        record = cls()
        for f in fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            expected = type(getattr(record, f.name))
            if not isinstance(value, expected) or isinstance(value, bool):
                logging.warning(f"[store] Ignoring field {f.name}: expected {expected.__name__}")
                continue
            setattr(record, f.name, value)
        return record


class RecordStore:
    """Load/update the single state record under one key.

    Sections are merged into the last known record, so each component writes
    only what it owns. Store write failures are logged and swallowed.
    """

    def __init__(self, store: KeyValueStore | None = None, key: str = STATE_KEY):
        self.store = store if store is not None else MemoryStore()
        self.key = key
        self._record: StateRecord | None = None
        self._lock = threading.RLock()

    def load(self) -> StateRecord:
        with exclusive(self._lock, "store"):
            if self._record is None:
                self._record = self._read()
            return StateRecord(**asdict(self._record))

    def _read(self) -> StateRecord:
        try:
            raw = self.store.get(self.key)
        except Exception as e:
            logging.warning(f"[store] Could not read {self.key}: {e}; using defaults")
            return StateRecord()
        if raw is None:
            logging.debug(f"[store] No record under {self.key}; starting fresh")
            return StateRecord()
        try:
            record = StateRecord.decode(raw)
        except PersistenceCorrupt as e:
            logging.warning(f"[store] {e}; resetting to defaults")
            return StateRecord()
        logging.info(
            f"[store] Loaded {self.key}: {len(record.feedbackLog)} feedback, "
            f"{len(record.hashIndex)} hashes, {len(record.ratedIds)} rated"
        )
        return record

    def update(self, **sections: Any) -> bool:
        """Replace the given top-level sections and write the record. Returns success."""
        unknown = set(sections) - {f.name for f in fields(StateRecord)}
        if unknown:
            raise TypeError(f"unknown record sections: {sorted(unknown)}")
        with exclusive(self._lock, "store"):
            if self._record is None:
                self._record = self._read()
            for name, value in sections.items():
                setattr(self._record, name, value)
            try:
                self.store.set(self.key, self._record.encode())
            except Exception as e:
                logging.warning(f"[store] Failed saving {self.key}: {e}")
                return False
        return True
