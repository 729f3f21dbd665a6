from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Deque, Dict, List


@dataclass(frozen=True)
class WindowEntry:
    origin_id: str
    severity: float
    observed_at: datetime


@dataclass(frozen=True)
class WindowStats:
    count: int
    max_severity: float
    severities: List[float]


class _Partition:
    __slots__ = ("lock", "entries", "retired")

    def __init__(self, max_entries: int) -> None:
        self.lock = threading.Lock()
        self.entries: Deque[WindowEntry] = deque(maxlen=max_entries)
        # set once purged; writers that raced the purge pick a fresh partition
        self.retired = False


class SignalWindowStore:
    """
    Short-lived per-subject signal history for escalation.

    - One partition per subject key, each with its own lock
    - Bounded in size (max_entries per subject) and in time (window)
    - Entries older than the window are evicted lazily, on the next
      record/lookup for that subject
    - A re-queued signal replaces the entry of its origin instead of
      counting twice

    The registry lock guards partition creation and removal; record and
    lookup never hold it while touching a partition.
    """

    def __init__(self, window_seconds: float, max_entries: int = 32) -> None:
        self.window = timedelta(seconds=window_seconds)
        self.max_entries = max_entries
        self._registry_lock = threading.Lock()
        self._partitions: Dict[str, _Partition] = {}

    def _partition(self, subject: str) -> _Partition:
        with self._registry_lock:
            part = self._partitions.get(subject)
            if part is None:
                part = _Partition(self.max_entries)
                self._partitions[subject] = part
            return part

    def _evict(self, part: _Partition, now: datetime) -> None:
        cutoff = now - self.window
        while part.entries and part.entries[0].observed_at < cutoff:
            part.entries.popleft()

    @staticmethod
    def _stats(part: _Partition) -> WindowStats:
        severities = [e.severity for e in part.entries]
        return WindowStats(
            count=len(severities),
            max_severity=max(severities, default=0.0),
            severities=severities,
        )

    def record(self, subject: str, entry: WindowEntry) -> WindowStats:
        """Add an observation and return the window as of its timestamp."""
        while True:
            part = self._partition(subject)
            with part.lock:
                if part.retired:
                    continue
                self._evict(part, entry.observed_at)
                kept = [e for e in part.entries if e.origin_id != entry.origin_id]
                if len(kept) != len(part.entries):
                    part.entries.clear()
                    part.entries.extend(kept)
                part.entries.append(entry)
                # out-of-order arrivals keep the deque sorted for eviction
                if len(part.entries) > 1 and part.entries[-2].observed_at > entry.observed_at:
                    ordered = sorted(part.entries, key=lambda e: e.observed_at)
                    part.entries.clear()
                    part.entries.extend(ordered)
                return self._stats(part)

    def lookup(self, subject: str, now: datetime) -> WindowStats:
        with self._registry_lock:
            part = self._partitions.get(subject)
        if part is None:
            return WindowStats(count=0, max_severity=0.0, severities=[])
        with part.lock:
            self._evict(part, now)
            return self._stats(part)

    def purge_idle(self, now: datetime) -> int:
        """Drop partitions whose entries have all expired. Returns the count."""
        with self._registry_lock:
            subjects = list(self._partitions.items())

        removed = 0
        for subject, part in subjects:
            # lock order is registry -> partition, never the reverse
            with self._registry_lock, part.lock:
                self._evict(part, now)
                if part.entries or self._partitions.get(subject) is not part:
                    continue
                part.retired = True
                del self._partitions[subject]
                removed += 1
        return removed

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._partitions)
