# gate_server/database.py
"""
Database Management - File-based descriptor cache and person directory
"""
import json
import logging
import re
import shutil
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional
from urllib.parse import quote, unquote

from pydantic import ValidationError

from .errors import CacheError
from .models import AccessCategory, CacheEntry, PersonRecord

logger = logging.getLogger(__name__)


def _atomic_write_json(path: Path, data, indent: Optional[int] = None):
    """Write to a temp file, then rename over the target (prevents corruption)"""
    temp_file = path.with_suffix('.tmp')
    try:
        with open(temp_file, 'w') as f:
            json.dump(data, f, indent=indent)
        temp_file.replace(path)
    except Exception:
        if temp_file.exists():
            temp_file.unlink()
        raise


class DescriptorCache:
    """Key/value store with TTL for descriptor arrays.

    One JSON file per key. Values are replaced as a whole, never patched, so
    a reader sees either the previous or the new payload.
    """

    SUFFIX = ".json"

    def __init__(self, directory: Path, default_ttl: float, clock: Callable[[], float] = time.time):
        self.directory = Path(directory)
        self.default_ttl = default_ttl
        self._clock = clock
        self._lock = threading.Lock()
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        # quote() encodes character by character, so key prefixes stay file name prefixes
        return self.directory / (quote(key, safe="") + self.SUFFIX)

    def _read_entry(self, path: Path) -> CacheEntry:
        try:
            with open(path, 'r') as f:
                raw = json.load(f)
            return CacheEntry(**raw)
        except (OSError, ValueError, TypeError, ValidationError) as e:
            raise CacheError(f"Unreadable cache entry {path.name}: {e}") from e

    def _evict(self, path: Path):
        try:
            path.unlink()
        except FileNotFoundError:
            pass

    def get(self, key: str, max_age: Optional[float] = None):
        """Return the payload for key, or None if absent, expired or corrupt"""
        path = self._path(key)
        with self._lock:
            if not path.exists():
                return None
            try:
                entry = self._read_entry(path)
            except CacheError as e:
                logger.warning("%s - evicting", e)
                self._evict(path)
                return None

            if entry.key != key:
                logger.warning("Cache entry %s holds key %r - evicting", path.name, entry.key)
                self._evict(path)
                return None

            if max_age is None:
                max_age = entry.ttl if entry.ttl is not None else self.default_ttl
            age = self._clock() - entry.timestamp
            if age > max_age:
                logger.debug("Cache entry %s expired (age %.1fs > %.1fs)", key, age, max_age)
                self._evict(path)
                return None
            return entry.data

    def put(self, key: str, data, ttl: Optional[float] = None):
        """Store data under key, replacing any previous entry"""
        entry = CacheEntry(key=key, data=data, timestamp=self._clock(), ttl=ttl)
        with self._lock:
            _atomic_write_json(self._path(key), entry.model_dump())

    def invalidate(self, key_or_prefix: str, prefix: bool = False) -> int:
        """Remove one entry, or every entry whose key starts with key_or_prefix"""
        with self._lock:
            if not prefix:
                path = self._path(key_or_prefix)
                if path.exists():
                    self._evict(path)
                    return 1
                return 0

            encoded = quote(key_or_prefix, safe="")
            removed = 0
            for path in self.directory.glob(f"*{self.SUFFIX}"):
                if path.name.startswith(encoded):
                    self._evict(path)
                    removed += 1
            logger.info("Invalidated %d cache entries with prefix %r", removed, key_or_prefix)
            return removed

    def clear(self) -> int:
        return self.invalidate("", prefix=True)

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(unquote(p.name[:-len(self.SUFFIX)]) for p in self.directory.glob(f"*{self.SUFFIX}"))


class PersonDirectory:
    """Enrolled people (names, categories, units, enrollment folders)"""

    def __init__(self, people_file: Path, labels_dir: Path):
        self.people_file = Path(people_file)
        self.labels_dir = Path(labels_dir)
        self.people: Dict[str, PersonRecord] = {}
        self._lock = threading.Lock()
        self.load()

    def load(self):
        """Load people from JSON file"""
        with self._lock:
            if self.people_file.exists():
                with open(self.people_file, 'r') as f:
                    data = json.load(f)
                self.people = {}
                for person_id, person_data in data.get('people', {}).items():
                    person_data.pop('person_id', None)
                    self.people[person_id] = PersonRecord(**person_data, person_id=person_id)
                logger.info("Loaded %d people", len(self.people))
            else:
                self.people = {}
                logger.info("Created new person directory")

    def save(self):
        """Save people to JSON file (thread-safe, atomic write)"""
        with self._lock:
            data = {'people': {pid: p.model_dump(mode='json') for pid, p in self.people.items()}}
            self.people_file.parent.mkdir(parents=True, exist_ok=True)
            _atomic_write_json(self.people_file, data, indent=2)

    def create_person(self, name: str, category: AccessCategory = AccessCategory.RESIDENT, unit: str = "") -> PersonRecord:
        """Create new person entry with its own enrollment folder"""
        base_id = re.sub(r'[^a-z0-9_]+', '_', name.strip().lower()).strip('_') or "person"

        # Ensure unique ID
        person_id = base_id
        counter = 1
        while person_id in self.people:
            person_id = f"{base_id}_{counter}"
            counter += 1

        person = PersonRecord(
            person_id=person_id,
            name=name.strip(),
            category=category,
            unit=unit,
            folder=person_id,
            created_at=datetime.now(timezone.utc)
        )
        (self.labels_dir / person.folder).mkdir(parents=True, exist_ok=True)

        self.people[person_id] = person
        self.save()
        return person

    def get(self, person_id: str) -> Optional[PersonRecord]:
        return self.people.get(person_id)

    def get_all(self) -> List[PersonRecord]:
        return list(self.people.values())

    def folder_path(self, person: PersonRecord) -> Path:
        return self.labels_dir / person.folder

    def delete(self, person_id: str) -> bool:
        """Delete person and their reference images"""
        person = self.people.get(person_id)
        if person is None:
            return False

        folder = self.folder_path(person)
        if folder.exists():
            shutil.rmtree(folder)

        del self.people[person_id]
        self.save()
        return True
