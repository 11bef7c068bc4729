"""Durable JSON record storage with atomic writes and per-id locking."""
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from convoy_control.core.constants import ID_NUMBER_WIDTH, TEMP_SUFFIX
from convoy_control.services.exceptions import PersistenceError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def write_text_atomic(path: Path, content: str) -> None:
    """Write a file so readers see either the old or the new content.

    The content goes to ``<path>.tmp`` first and is then renamed onto the
    target. If anything fails before the rename, the temp file is removed and
    the previous target (if any) is left untouched.

    Args:
        path: Target file
        content: Full file content

    Raises:
        PersistenceError: If the write or rename fails
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(path.name + TEMP_SUFFIX)
    try:
        with open(temp_path, 'w', encoding='utf-8') as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except OSError as e:
        try:
            temp_path.unlink(missing_ok=True)
        except OSError:
            logger.warning(f"Could not remove temp file {temp_path}")
        raise PersistenceError(f"Failed to write {path}: {e}") from e


def write_json_atomic(path: Path, data: Any) -> None:
    """Serialize JSON-compatible data and write it atomically."""
    write_text_atomic(path, json.dumps(data, indent=2))


def read_json(path: Path) -> Optional[Any]:
    """Load JSON from disk.

    Returns:
        Parsed data, or None if the file does not exist

    Raises:
        PersistenceError: If the file exists but cannot be read or parsed
    """
    if not path.exists():
        return None
    try:
        with open(path, encoding='utf-8') as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise PersistenceError(f"Failed to read {path}: {e}") from e


class LockRegistry:
    """Lazily created mutual-exclusion lock per entity id."""

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def get(self, entity_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(entity_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[entity_id] = lock
            return lock

    def clear(self) -> None:
        with self._guard:
            self._locks.clear()


class IdAllocator:
    """Hands out sequential ids such as ``task-007`` under a dedicated lock."""

    def __init__(self, prefix: str, start: int = 0, width: int = ID_NUMBER_WIDTH):
        self.prefix = prefix
        self.width = width
        self._counter = start
        self._lock = threading.Lock()

    @property
    def current(self) -> int:
        return self._counter

    def next_id(self) -> str:
        with self._lock:
            self._counter += 1
            number = self._counter
        return f"{self.prefix}-{number:0{self.width}d}"


class JsonRecordStore(Generic[ModelT]):
    """One JSON file per entity, keyed by id, with an in-process cache.

    The cache is only refreshed by reads and writes made through this
    instance, so two processes sharing a directory are not supported.
    """

    def __init__(self, directory: Path, model: Type[ModelT], prefix: str,
                 id_getter: Optional[Callable[[ModelT], str]] = None):
        """Initialize the record store.

        Args:
            directory: Directory holding ``<prefix>-NNN.json`` files
            model: Pydantic model class for the records
            prefix: Id prefix, also used to recover the id counter
            id_getter: How to read the id from a record (defaults to ``.id``)
        """
        self.directory = directory
        self.model = model
        self.prefix = prefix
        self._id_getter = id_getter or (lambda record: record.id)
        self._cache: Dict[str, ModelT] = {}
        self._cache_lock = threading.Lock()
        self.directory.mkdir(parents=True, exist_ok=True)

    def path_for(self, record_id: str) -> Path:
        """Get the file path for a record id."""
        return self.directory / f"{record_id}.json"

    def _parse(self, data: Any, source: Path) -> ModelT:
        try:
            return self.model.model_validate(data)
        except ValidationError as e:
            raise PersistenceError(f"Invalid record in {source}: {e}") from e

    def load(self, record_id: str) -> Optional[ModelT]:
        """Read a record from disk, bypassing and then refreshing the cache.

        Args:
            record_id: The record id

        Returns:
            The record, or None if missing or unreadable
        """
        if not record_id:
            return None
        path = self.path_for(record_id)
        try:
            data = read_json(path)
            if data is None:
                return None
            record = self._parse(data, path)
        except PersistenceError as e:
            logger.warning(f"Could not load {record_id}: {e}")
            return None

        with self._cache_lock:
            self._cache[record_id] = record
        return record.model_copy(deep=True)

    def get(self, record_id: str) -> Optional[ModelT]:
        """Get a record, serving from the cache when possible."""
        if not record_id:
            return None
        with self._cache_lock:
            cached = self._cache.get(record_id)
        if cached is not None:
            return cached.model_copy(deep=True)
        return self.load(record_id)

    def exists(self, record_id: str) -> bool:
        return bool(record_id) and self.path_for(record_id).exists()

    def save(self, record: ModelT) -> None:
        """Persist a record atomically and update the cache.

        Raises:
            PersistenceError: If the write fails; the cache keeps the old copy
        """
        record_id = self._id_getter(record)
        write_text_atomic(self.path_for(record_id), record.model_dump_json(indent=2))
        with self._cache_lock:
            self._cache[record_id] = record.model_copy(deep=True)

    def list_all(self) -> List[ModelT]:
        """Load every record in the directory, skipping unreadable files."""
        records = []
        for path in sorted(self.directory.glob(f"{self.prefix}-*.json")):
            record = self.load(path.stem)
            if record is not None:
                records.append(record)
        return records

    def highest_sequence(self) -> int:
        """Find the largest numeric id suffix present on disk."""
        highest = 0
        marker = f"{self.prefix}-"
        for path in self.directory.glob(f"{marker}*.json"):
            suffix = path.stem[len(marker):]
            if suffix.isdigit():
                highest = max(highest, int(suffix))
        return highest

    def create_allocator(self) -> IdAllocator:
        """Build an id allocator that continues after the highest stored id."""
        return IdAllocator(self.prefix, start=self.highest_sequence())

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()
