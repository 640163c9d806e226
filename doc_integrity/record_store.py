"""
Holder-side record storage

Records are keyed by a string (by default the kind value, one record per
kind as on the holder's device). Every save goes through ``refresh`` so a
stored record always carries a fingerprint computed from its current fields.
"""

import json
import os
import threading
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Union

import structlog

from .documents import DocumentRecord


logger = structlog.get_logger(__name__)


class RecordStore(Protocol):
    def get(self, key: str) -> Optional[DocumentRecord]:
        ...

    def set(self, key: str, record: DocumentRecord) -> DocumentRecord:
        ...

    def remove(self, key: str) -> bool:
        ...


class InMemoryRecordStore:
    """Dict-backed store (tests, single session)"""

    def __init__(self):
        self._records: Dict[str, Dict] = {}

    def get(self, key: str) -> Optional[DocumentRecord]:
        data = self._records.get(key)
        return DocumentRecord.from_dict(data) if data else None

    def set(self, key: str, record: DocumentRecord) -> DocumentRecord:
        record.refresh()
        self._records[key] = record.to_dict()
        return record

    def put(self, record: DocumentRecord) -> DocumentRecord:
        return self.set(record.kind.value, record)

    def remove(self, key: str) -> bool:
        return self._records.pop(key, None) is not None

    def keys(self) -> List[str]:
        return sorted(self._records)


class JsonFileRecordStore(InMemoryRecordStore):
    """
    Store persisted as one JSON file

    The file is rewritten through a temporary file and ``os.replace`` so a
    crash never leaves half a document behind.
    """

    def __init__(self, path: Union[str, Path]):
        super().__init__()
        self.path = Path(path)
        self._lock = threading.Lock()
        if self.path.exists():
            with open(self.path, "r", encoding="utf-8") as f:
                self._records = json.load(f)
            logger.debug("record_store_loaded", path=str(self.path), records=len(self._records))

    def set(self, key: str, record: DocumentRecord) -> DocumentRecord:
        with self._lock:
            record = super().set(key, record)
            self._flush()
        return record

    def remove(self, key: str) -> bool:
        with self._lock:
            removed = super().remove(key)
            if removed:
                self._flush()
        return removed

    def _flush(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(self._records, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, self.path)
