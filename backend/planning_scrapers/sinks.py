"""
Downstream collaborators: where records go after a run.

Persistence, search indexing and caching live outside this package. The
coordinator only needs two narrow contracts:

- RecordSink.write(source_id, records)
- CacheInvalidator.invalidate(tags)
"""
import json
import logging
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Protocol

from .models import Record

logger = logging.getLogger(__name__)


class RecordSink(Protocol):
    def write(self, source_id: str, records: List[Record]) -> int: ...


class CacheInvalidator(Protocol):
    def invalidate(self, tags: Iterable[str]) -> None: ...


class JsonlRecordSink:
    """Appends one JSON object per record to a file."""

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = threading.Lock()

    def write(self, source_id: str, records: List[Record]) -> int:
        if not records:
            return 0
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock, open(self.path, "a", encoding="utf-8") as f:
            for record in records:
                f.write(json.dumps(record.to_dict(), default=str) + "\n")
        logger.info(f"Wrote {len(records)} {source_id} record(s) to {self.path}")
        return len(records)


class MemoryRecordSink:
    """Keeps records in memory, keyed by source."""

    def __init__(self):
        self.records: Dict[str, List[Record]] = {}
        self._lock = threading.Lock()

    def write(self, source_id: str, records: List[Record]) -> int:
        with self._lock:
            self.records.setdefault(source_id, []).extend(records)
        return len(records)

    def all_records(self) -> List[Record]:
        with self._lock:
            return [r for records in self.records.values() for r in records]


class NullCacheInvalidator:
    """Logs invalidation requests; used when no cache is wired up."""

    def __init__(self):
        self.invalidated: List[str] = []

    def invalidate(self, tags: Iterable[str]) -> None:
        tags = list(tags)
        self.invalidated.extend(tags)
        logger.info(f"Cache invalidation requested for tags: {', '.join(tags)}")
