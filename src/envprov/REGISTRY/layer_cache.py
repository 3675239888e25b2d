# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Step layer cache.
Maps step cache keys to the backend layer they produced. Entries are
write-once: the first writer for a key wins and later writers get the
stored entry back, so concurrent builds can share one store without locks.
"""

import fcntl
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class CacheEntry:
    """A cached step result."""
    key: str
    layer_id: str
    state: Dict[str, Any]
    created_at: str

    def __post_init__(self):
        if not isinstance(self.layer_id, str) or not isinstance(self.state, dict):
            raise TypeError("layer_id must be a string and state a mapping")
        # Raises ValueError for a malformed timestamp
        self._created()

    def _created(self) -> datetime:
        created = datetime.fromisoformat(self.created_at.replace("Z", "+00:00"))
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return created

    @property
    def age(self) -> timedelta:
        return datetime.now(timezone.utc) - self._created()


class LayerStore(ABC):
    """
    Content-addressed store of step results.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the entry for key, or None on a miss."""

    @abstractmethod
    def put(self, key: str, layer_id: str, state: Dict[str, Any]) -> CacheEntry:
        """
        Store an entry unless one exists.

        Returns:
            The entry now stored under key, which is the existing one if
            another writer got there first.
        """

    @abstractmethod
    def remove(self, key: str) -> bool:
        """Remove an entry. Returns True if it existed."""

    @abstractmethod
    def entries(self) -> List[CacheEntry]:
        """List every readable entry."""

    def prune(self, max_age_days: Optional[int] = None) -> int:
        """
        Remove entries older than max_age_days (all entries if None).

        Returns:
            Number of removed entries.
        """
        removed = 0
        cutoff = timedelta(days=max_age_days) if max_age_days is not None else None
        for entry in self.entries():
            if cutoff is None or entry.age > cutoff:
                if self.remove(entry.key):
                    removed += 1
        return removed


class MemoryLayerStore(LayerStore):
    """Process-local store."""

    def __init__(self):
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(key)

    def put(self, key: str, layer_id: str, state: Dict[str, Any]) -> CacheEntry:
        with self._lock:
            if key not in self._entries:
                self._entries[key] = CacheEntry(key=key, layer_id=layer_id, state=dict(state), created_at=_utcnow())
            return self._entries[key]

    def remove(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def entries(self) -> List[CacheEntry]:
        with self._lock:
            return list(self._entries.values())


class FileLayerStore(LayerStore):
    """
    Store backed by one JSON file per key.

    Files are published with a hard link from a private temporary file, so
    a reader sees either nothing or a complete entry and a second writer
    fails to link and adopts the first writer's entry.
    """

    def __init__(self, cache_dir: Optional[str] = None):
        """
        Initialize the store.

        Args:
            cache_dir: Directory for cache storage. Defaults to ~/.envprov/cache
        """
        if cache_dir:
            self.cache_dir = Path(cache_dir)
        else:
            self.cache_dir = Path.home() / ".envprov" / "cache"
        self.layers_dir = self.cache_dir / "layers"
        self.layers_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.layers_dir / key[:2] / f"{key}.json"

    def _read(self, path: Path) -> Optional[CacheEntry]:
        try:
            with open(path, 'r') as f:
                data = json.load(f)
            return CacheEntry(**data)
        except FileNotFoundError:
            return None
        except (ValueError, TypeError, AttributeError, OSError) as e:
            logger.warning("Ignoring unreadable cache entry %s: %s", path, e)
            return None

    def get(self, key: str) -> Optional[CacheEntry]:
        return self._read(self._path(key))

    def put(self, key: str, layer_id: str, state: Dict[str, Any]) -> CacheEntry:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        entry = CacheEntry(key=key, layer_id=layer_id, state=dict(state), created_at=_utcnow())

        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".", suffix=".partial")
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(asdict(entry), f, indent=2)
            try:
                os.link(tmp, path)
            except FileExistsError:
                existing = self._read(path)
                if existing is not None:
                    logger.debug("Cache entry %s already written by another build", key[:12])
                    return existing
                # Unreadable entry left behind by a crashed writer. Only one
                # writer may replace it; the others adopt the replacement.
                with self._locked(path):
                    existing = self._read(path)
                    if existing is not None:
                        return existing
                    logger.warning("Replacing unreadable cache entry %s", path)
                    os.replace(tmp, path)
                    tmp = None
        finally:
            if tmp is not None and os.path.exists(tmp):
                os.unlink(tmp)
        return entry

    @contextmanager
    def _locked(self, path: Path):
        with open(path.parent / ".lock", "a") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def remove(self, key: str) -> bool:
        path = self._path(key)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False

    def prune(self, max_age_days: Optional[int] = None) -> int:
        removed = super().prune(max_age_days)
        if max_age_days is None:
            # Unreadable entries are not listed but go too
            for path in self.layers_dir.glob("*/*.json"):
                path.unlink(missing_ok=True)
                removed += 1
        return removed

    def entries(self) -> List[CacheEntry]:
        found = []
        for path in sorted(self.layers_dir.glob("*/*.json")):
            entry = self._read(path)
            if entry is not None:
                found.append(entry)
        return found
