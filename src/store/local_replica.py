"""Synchronous, file-backed key-value replica of rules, one key per category.

Layout under the replica directory::

    delta_rules_unified.json            # array of rule records
    recent_delta_rules_unified.json     # last-N saved rules, newest first

Every read-modify-write on a category goes through ``transaction`` which
holds that category's lock for the whole cycle.
"""
from __future__ import annotations

import json
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

import structlog

from config.loader import get_local_store_dir, get_max_recent_rules
from models.shared import RECENT_KEY_PREFIX, STORAGE_KEYS, RuleCategoryType
from utils.error_handler import LocalStoreFailure

logger = structlog.get_logger(__name__)

Record = dict[str, Any]


class LocalReplicaStore:
    """Per-category rule arrays persisted as JSON files."""

    def __init__(self, directory: Optional[Path] = None, max_recent: Optional[int] = None) -> None:
        self._dir = Path(directory) if directory is not None else get_local_store_dir()
        self._max_recent = max_recent if max_recent is not None else get_max_recent_rules()
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @property
    def directory(self) -> Path:
        return self._dir

    @staticmethod
    def rules_key(category: RuleCategoryType) -> str:
        return STORAGE_KEYS[category]

    @staticmethod
    def recent_key(category: RuleCategoryType) -> str:
        return f"{RECENT_KEY_PREFIX}{STORAGE_KEYS[category]}"

    # -- raw key access -----------------------------------------------------

    def _lock_for(self, key: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    def _path(self, key: str) -> Path:
        return self._dir / f"{key}.json"

    def read(self, key: str) -> list[Record]:
        """Records stored under key. Missing or corrupt content reads as empty."""
        path = self._path(key)
        if not path.exists():
            return []
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise LocalStoreFailure(f"Cannot read {path}: {e}") from e
        try:
            data = json.loads(text) if text.strip() else []
        except json.JSONDecodeError as e:
            logger.warning("replica_read_corrupt", key=key, error=str(e))
            return []
        if not isinstance(data, list):
            logger.warning("replica_read_unexpected_shape", key=key, shape=type(data).__name__)
            return []
        return [r for r in data if isinstance(r, dict)]

    def write(self, key: str, records: list[Record]) -> None:
        """Replace the records under key (atomic rename)."""
        path = self._path(key)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(records, indent=2, default=str), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            raise LocalStoreFailure(f"Cannot write {path}: {e}") from e

    @contextmanager
    def transaction(self, key: str) -> Iterator[list[Record]]:
        """Hold the key's lock, yield its records for in-place mutation, then persist.

        Nothing is written if the body raises.
        """
        with self._lock_for(key):
            records = self.read(key)
            yield records
            self.write(key, records)

    # -- category helpers ---------------------------------------------------

    def load(self, category: RuleCategoryType) -> list[Record]:
        with self._lock_for(self.rules_key(category)):
            return self.read(self.rules_key(category))

    def append(self, category: RuleCategoryType, record: Record) -> None:
        with self.transaction(self.rules_key(category)) as records:
            records.append(record)
        logger.debug("replica_appended", category=category.value, rule_id=record.get("id"))

    def load_recent(self, category: RuleCategoryType) -> list[Record]:
        with self._lock_for(self.recent_key(category)):
            return self.read(self.recent_key(category))

    def push_recent(self, category: RuleCategoryType, record: Record) -> None:
        """Put record at the head of the recent ring buffer, dropping older copies."""
        with self.transaction(self.recent_key(category)) as recent:
            rule_id = record.get("id")
            remaining = [r for r in recent if r.get("id") != rule_id]
            recent[:] = [record, *remaining][: self._max_recent]
