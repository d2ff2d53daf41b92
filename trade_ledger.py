# trade_ledger.py

import json
import os
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Union

from config.logging_config import get_logger

RecordFilter = Union[None, Dict[str, Any], Callable[[Dict[str, Any]], bool]]


class Ledger(ABC):
    """Append-only store for opportunity and execution records."""

    @abstractmethod
    def append(self, record: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def query(self, filter: RecordFilter = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Matching records, newest first."""

    @abstractmethod
    def purge_older_than(self, seconds: float) -> int:
        """Drops records older than ``seconds``; returns how many were removed."""


def _matches(record: Dict[str, Any], filter: RecordFilter) -> bool:
    if filter is None:
        return True
    if callable(filter):
        return bool(filter(record))
    return all(record.get(key) == value for key, value in filter.items())


class JsonLinesLedger(Ledger):
    """
    One JSON document per line. Every record gets a ``recorded_at`` epoch
    timestamp on append, which is what retention purges look at.
    """

    def __init__(self, filename: str, clock: Callable[[], float] = time.time):
        self.filename = filename
        self.clock = clock
        self.logger = get_logger(__name__)
        self._lock = threading.Lock()
        directory = os.path.dirname(os.path.abspath(filename))
        os.makedirs(directory, exist_ok=True)

    def append(self, record: Dict[str, Any]) -> None:
        entry = dict(record)
        entry.setdefault('recorded_at', self.clock())
        line = json.dumps(entry, default=str)
        with self._lock:
            with open(self.filename, 'a', encoding='utf-8') as f:
                f.write(line + "\n")

    def _read_all(self) -> List[Dict[str, Any]]:
        records = []
        try:
            with open(self.filename, 'r', encoding='utf-8') as f:
                for line_no, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        records.append(json.loads(line))
                    except json.JSONDecodeError:
                        self.logger.warning(f"Skipping corrupt record at {self.filename}:{line_no}")
        except FileNotFoundError:
            return []
        return records

    def query(self, filter: RecordFilter = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        with self._lock:
            records = self._read_all()
        matched = [r for r in reversed(records) if _matches(r, filter)]
        return matched[:limit] if limit is not None else matched

    def purge_older_than(self, seconds: float) -> int:
        cutoff = self.clock() - seconds
        with self._lock:
            records = self._read_all()
            kept = [r for r in records if float(r.get('recorded_at', 0)) >= cutoff]
            removed = len(records) - len(kept)
            if removed:
                tmp_name = self.filename + ".tmp"
                with open(tmp_name, 'w', encoding='utf-8') as f:
                    for record in kept:
                        f.write(json.dumps(record, default=str) + "\n")
                os.replace(tmp_name, self.filename)
        if removed:
            self.logger.info(f"Purged {removed} records older than {seconds / 3600:.1f}h from {self.filename}")
        return removed

    def count(self) -> int:
        with self._lock:
            return len(self._read_all())
