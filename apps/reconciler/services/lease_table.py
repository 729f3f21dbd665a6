from __future__ import annotations

import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from typing import Callable, Dict, Iterator, List, Optional

from filelock import FileLock, Timeout
from prometheus_client import Gauge

logger = logging.getLogger("podsentry.leases")

LEASES_HELD = Gauge(
    "podsentry_leases_held",
    "Number of subject leases currently held by reconciler workers",
)


@dataclass(frozen=True)
class Lease:
    subject: str
    holder: str
    acquired_at: float
    expires_at: float


class LeaseTable:
    """
    Per-subject mutual exclusion for reconciler workers.

    - At most one holder per subject at any instant
    - Leases expire after `ttl_seconds` so a crashed holder does not block a
      subject forever; holders renew while they work
    - Optionally backed by a JSON file shared between processes. Every
      operation takes an OS-level lock on `<path>.lock`, re-reads the file,
      applies its change and rewrites it atomically, so processes sharing
      the path exclude each other as well as their own workers

    Expiry uses wall-clock time because persisted leases must survive a
    process restart.
    """

    def __init__(
        self,
        ttl_seconds: float = 60.0,
        path: Optional[str] = None,
        clock: Callable[[], float] = time.time,
        lock_timeout_seconds: float = 10.0,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.path = path
        self._clock = clock
        self._lock = threading.Lock()
        self._leases: Dict[str, Lease] = {}
        self._file_lock: Optional[FileLock] = None
        if path:
            directory = os.path.dirname(path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            self._file_lock = FileLock(path + ".lock", timeout=lock_timeout_seconds)
            self._load()

    def _load(self) -> None:
        if not self.path or not os.path.exists(self.path):
            self._leases = {}
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            leases = {}
            for item in raw.get("leases", []):
                lease = Lease(**item)
                leases[lease.subject] = lease
            self._leases = leases
        except (OSError, ValueError, TypeError) as exc:
            logger.warning("Ignoring unreadable lease table %s: %s", self.path, exc)
            self._leases = {}
        LEASES_HELD.set(len(self._leases))

    def _persist(self) -> None:
        if not self.path:
            return
        tmp_path = self.path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump({"leases": [asdict(l) for l in self._leases.values()]}, f)
        os.replace(tmp_path, self.path)

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Hold the in-process lock and, when file-backed, the file lock with fresh state."""
        with self._lock:
            if self._file_lock is None:
                yield
                return
            with self._file_lock:
                self._load()
                yield

    def acquire(self, subject: str, holder: str) -> bool:
        """Take or re-take the subject's lease; False if someone else holds it."""
        try:
            with self._locked():
                now = self._clock()
                current = self._leases.get(subject)
                if current is not None and current.holder != holder and current.expires_at > now:
                    return False
                if current is not None and current.holder != holder:
                    logger.warning(
                        "Taking over expired lease on %s from %s", subject, current.holder
                    )
                self._leases[subject] = Lease(
                    subject=subject,
                    holder=holder,
                    acquired_at=now,
                    expires_at=now + self.ttl_seconds,
                )
                self._persist()
                LEASES_HELD.set(len(self._leases))
                return True
        except Timeout:
            logger.warning("Lease file %s is locked; cannot acquire %s", self.path, subject)
            return False

    def renew(self, subject: str, holder: str) -> bool:
        """Extend a lease still held by `holder`; False once it was lost or taken over."""
        try:
            with self._locked():
                current = self._leases.get(subject)
                if current is None or current.holder != holder:
                    return False
                now = self._clock()
                self._leases[subject] = Lease(
                    subject=subject,
                    holder=holder,
                    acquired_at=current.acquired_at,
                    expires_at=now + self.ttl_seconds,
                )
                self._persist()
                return True
        except Timeout:
            logger.warning("Lease file %s is locked; cannot renew %s", self.path, subject)
            return False

    def release(self, subject: str, holder: str) -> bool:
        try:
            with self._locked():
                current = self._leases.get(subject)
                if current is None or current.holder != holder:
                    return False
                del self._leases[subject]
                self._persist()
                LEASES_HELD.set(len(self._leases))
                return True
        except Timeout:
            # The lease simply runs out at expires_at.
            logger.warning("Lease file %s is locked; cannot release %s", self.path, subject)
            return False

    def holder_of(self, subject: str) -> Optional[str]:
        current = None
        for lease in self.snapshot():
            if lease.subject == subject:
                current = lease
        return current.holder if current is not None else None

    def snapshot(self) -> List[Lease]:
        """Unexpired leases; the last known state if the file stays locked."""
        try:
            with self._locked():
                leases = list(self._leases.values())
        except Timeout:
            logger.warning("Lease file %s is locked; reporting cached leases", self.path)
            with self._lock:
                leases = list(self._leases.values())
        now = self._clock()
        return [l for l in leases if l.expires_at > now]
