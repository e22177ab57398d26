"""kaiproof.store

Key -> JSON-string stores injected into the passkey registry and the
verification cache.

Both stores are plain string maps. A value that cannot be read back (missing
file, truncated JSON, wrong type) is reported as absent; it never raises to
the caller, so a damaged store costs a recomputation or a new passkey prompt
and nothing else.
"""

from __future__ import annotations

import json
import logging
import os
import pathlib
import tempfile
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Dict, Iterator, List, Optional, Union

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════════════════
# STORE INTERFACE
# ════════════════════════════════════════════════════════════════════════════


class KeyValueStore(ABC):
    """Abstract string store."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored string, or None when absent or unreadable."""
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        pass

    @abstractmethod
    def keys(self, prefix: str = "") -> List[str]:
        pass

    def get_json(self, key: str) -> Optional[Any]:
        raw = self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("store entry %s is not valid JSON; treating as absent", key)
            return None

    def set_json(self, key: str, value: Any) -> None:
        self.set(key, json.dumps(value, separators=(",", ":"), sort_keys=True))

    def clear(self, prefix: str = "") -> int:
        removed = 0
        for key in self.keys(prefix):
            if self.delete(key):
                removed += 1
        return removed

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())


# ════════════════════════════════════════════════════════════════════════════
# IN-MEMORY STORE
# ════════════════════════════════════════════════════════════════════════════


class MemoryStore(KeyValueStore):
    """
    In-memory store with least-recently-used eviction.

    Example:
        store = MemoryStore(max_entries=2)
        store.set("a", "1")
        store.set("b", "2")
        store.get("a")          # marks "a" as recently used
        store.set("c", "3")     # evicts "b"
    """

    def __init__(self, max_entries: Optional[int] = None):
        self._max_entries = max_entries
        self._data: "OrderedDict[str, str]" = OrderedDict()
        self._lock = threading.RLock()
        self.evictions = 0

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            if key not in self._data:
                return None
            self._data.move_to_end(key)
            return self._data[key]

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError("store values must be strings")
        with self._lock:
            if key in self._data:
                self._data[key] = value
                self._data.move_to_end(key)
                return
            while self._max_entries is not None and len(self._data) >= self._max_entries:
                self._data.popitem(last=False)
                self.evictions += 1
            self._data[key] = value

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return [k for k in self._data if k.startswith(prefix)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


# ════════════════════════════════════════════════════════════════════════════
# JSON FILE STORE
# ════════════════════════════════════════════════════════════════════════════


class JsonFileStore(KeyValueStore):
    """
    Store backed by a single JSON object on disk.

    Writes go to a temporary file in the same directory followed by
    ``os.replace`` so readers never see a half-written file. A file that
    cannot be parsed is treated as empty and replaced on the next write.
    """

    def __init__(self, path: Union[str, pathlib.Path]):
        self.path = pathlib.Path(path)
        self._lock = threading.RLock()

    def _load(self) -> Dict[str, str]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as ex:
            logger.warning("cannot read store %s: %s", self.path, ex)
            return {}
        try:
            data = json.loads(text)
        except ValueError:
            logger.warning("store %s is corrupt; treating as empty", self.path)
            return {}
        if not isinstance(data, dict):
            logger.warning("store %s is not a JSON object; treating as empty", self.path)
            return {}
        return {k: v for k, v in data.items() if isinstance(k, str) and isinstance(v, str)}

    def _save(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=self.path.name + ".", suffix=".tmp", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, sort_keys=True, indent=2)
                f.write("\n")
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError("store values must be strings")
        with self._lock:
            data = self._load()
            data[key] = value
            self._save(data)

    def delete(self, key: str) -> bool:
        with self._lock:
            data = self._load()
            if key not in data:
                return False
            del data[key]
            self._save(data)
            return True

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._load() if k.startswith(prefix))
