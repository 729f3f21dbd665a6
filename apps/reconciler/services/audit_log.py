from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from opentelemetry import trace
from prometheus_client import Counter, Gauge

from ..models.action_models import Outcome, PlanState, RemediationPlan
from ..models.audit_models import AuditEntry, AuditKind
from ..models.signal_models import ThreatSignal, utcnow
from ..models.verdict_models import Verdict

logger = logging.getLogger("podsentry.audit")
tracer = trace.get_tracer(__name__)

AUDIT_ENTRIES_TOTAL = Counter(
    "podsentry_audit_entries_total",
    "Total audit log entries appended",
    ["kind"],
)

AUDIT_LAST_SEQ = Gauge(
    "podsentry_audit_last_seq",
    "Sequence number of the most recent audit entry",
)


class AuditLog:
    """
    Append-only, totally ordered record of signals, verdicts, plans and
    outcomes.

    - JSONL format: one entry per line, `seq` strictly increasing
    - Sequence assignment and the write happen under one lock, so concurrent
      writers (ingestion sources, reconciler workers) never interleave or
      reorder entries
    - Without a path the log is kept in memory only (tests, dry runs)
    - An existing file is loaded on start and the sequence resumes from it
    """

    def __init__(
        self,
        log_path: Optional[str] = None,
        fsync: bool = False,
        retention_seconds: Optional[float] = None,
    ) -> None:
        self.log_path = log_path
        self.fsync = fsync
        self.retention_seconds = retention_seconds

        self._lock = threading.Lock()
        self._entries: List[AuditEntry] = []
        self._seq = 0

        if log_path:
            directory = os.path.dirname(log_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            self._load()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _load(self) -> None:
        if not self.log_path or not os.path.exists(self.log_path):
            return

        skipped = 0
        with open(self.log_path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = AuditEntry.model_validate_json(line)
                except ValueError:
                    # torn tail write after a crash; keep going
                    skipped += 1
                    continue
                if entry.seq <= self._seq:
                    skipped += 1
                    continue
                self._entries.append(entry)
                self._seq = entry.seq

        AUDIT_LAST_SEQ.set(self._seq)
        logger.info(
            "Loaded audit log %s: entries=%d last_seq=%d skipped=%d",
            self.log_path,
            len(self._entries),
            self._seq,
            skipped,
        )

    # ------------------------------------------------------------------
    # Write API
    # ------------------------------------------------------------------

    @property
    def last_seq(self) -> int:
        with self._lock:
            return self._seq

    def append(
        self,
        kind: AuditKind,
        data: Dict[str, Any],
        subject: Optional[str] = None,
        ref_id: Optional[str] = None,
    ) -> AuditEntry:
        with self._lock:
            entry = AuditEntry(
                seq=self._seq + 1,
                kind=kind,
                subject=subject,
                ref_id=ref_id,
                recorded_at=utcnow(),
                data=data,
            )
            if self.log_path:
                with open(self.log_path, "a", encoding="utf-8") as f:
                    f.write(entry.model_dump_json() + "\n")
                    if self.fsync:
                        f.flush()
                        os.fsync(f.fileno())
            self._seq = entry.seq
            self._entries.append(entry)

        AUDIT_ENTRIES_TOTAL.labels(kind=kind.value).inc()
        AUDIT_LAST_SEQ.set(entry.seq)
        return entry

    def record_signal(self, signal: ThreatSignal) -> AuditEntry:
        return self.append(
            AuditKind.SIGNAL,
            signal.model_dump(mode="json"),
            subject=signal.subject.subject_key,
            ref_id=signal.id,
        )

    def record_verdict(self, verdict: Verdict) -> AuditEntry:
        return self.append(
            AuditKind.VERDICT,
            verdict.model_dump(mode="json"),
            subject=verdict.subject.subject_key,
            ref_id=verdict.id,
        )

    def record_plan(self, plan: RemediationPlan) -> AuditEntry:
        return self.append(
            AuditKind.PLAN,
            plan.model_dump(mode="json"),
            subject=plan.subject.subject_key,
            ref_id=plan.id,
        )

    def record_outcome(self, outcome: Outcome, subject: str) -> AuditEntry:
        return self.append(
            AuditKind.OUTCOME,
            outcome.model_dump(mode="json"),
            subject=subject,
            ref_id=outcome.id,
        )

    def record_plan_state(
        self,
        plan: RemediationPlan,
        state: PlanState,
        detail: Optional[str] = None,
    ) -> AuditEntry:
        return self.append(
            AuditKind.PLAN_STATE,
            {
                "plan_id": plan.id,
                "state": state.value,
                "decision": plan.decision.value,
                "idempotency_key": plan.idempotency_key,
                "detail": detail,
            },
            subject=plan.subject.subject_key,
            ref_id=plan.id,
        )

    def record_error(
        self,
        error_type: str,
        message: str,
        subject: Optional[str] = None,
        ref_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        return self.append(
            AuditKind.ERROR,
            {
                "error_type": error_type,
                "message": message,
                "context": context or {},
            },
            subject=subject,
            ref_id=ref_id,
        )

    def record_alert(
        self,
        message: str,
        subject: Optional[str] = None,
        ref_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        return self.append(
            AuditKind.ALERT,
            {"message": message, "context": context or {}},
            subject=subject,
            ref_id=ref_id,
        )

    # ------------------------------------------------------------------
    # Read API
    # ------------------------------------------------------------------

    def _snapshot(self) -> List[AuditEntry]:
        with self._lock:
            return list(self._entries)

    def replay(
        self,
        subject: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        since_seq: int = 0,
        kinds: Optional[Iterable[AuditKind]] = None,
        limit: Optional[int] = None,
    ) -> List[AuditEntry]:
        """
        Decision trail in sequence order, filtered by subject
        ("namespace/pod"), recorded_at range and/or sequence floor.
        """
        kind_set: Optional[Set[AuditKind]] = set(kinds) if kinds else None

        with tracer.start_as_current_span("audit.replay") as span:
            if subject:
                span.set_attribute("podsentry.subject", subject)

            result: List[AuditEntry] = []
            for entry in self._snapshot():
                if entry.seq <= since_seq:
                    continue
                if subject is not None and entry.subject != subject:
                    continue
                if since is not None and entry.recorded_at < since:
                    continue
                if until is not None and entry.recorded_at > until:
                    continue
                if kind_set is not None and entry.kind not in kind_set:
                    continue
                result.append(entry)
                if limit is not None and len(result) >= limit:
                    break

            span.set_attribute("podsentry.audit.count", len(result))
            return result

    def get_signal(self, signal_id: str) -> Optional[ThreatSignal]:
        for entry in reversed(self._snapshot()):
            if entry.kind == AuditKind.SIGNAL and entry.ref_id == signal_id:
                return ThreatSignal.model_validate(entry.data)
        return None

    def last_plan_state(self, plan_id: str) -> Optional[PlanState]:
        for entry in reversed(self._snapshot()):
            if entry.kind == AuditKind.PLAN_STATE and entry.ref_id == plan_id:
                return PlanState(entry.data["state"])
        return None

    def unevaluated_signals(self) -> List[ThreatSignal]:
        """
        Signals durably recorded but never followed by a verdict, in
        sequence order. These are the ones to resume after a crash.
        """
        entries = self._snapshot()
        evaluated = {
            e.data.get("signal_id")
            for e in entries
            if e.kind == AuditKind.VERDICT
        }
        pending: List[ThreatSignal] = []
        for entry in entries:
            if entry.kind == AuditKind.SIGNAL and entry.ref_id not in evaluated:
                pending.append(ThreatSignal.model_validate(entry.data))
        return pending

    def applied_plans(self) -> List[Tuple[str, str, str]]:
        """(subject, idempotency_key, decision) for every applied plan."""
        applied: List[Tuple[str, str, str]] = []
        for entry in self._snapshot():
            if entry.kind != AuditKind.PLAN_STATE:
                continue
            if entry.data.get("state") != PlanState.APPLIED.value:
                continue
            applied.append(
                (
                    entry.subject or "",
                    entry.data.get("idempotency_key", ""),
                    entry.data.get("decision", ""),
                )
            )
        return applied

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def compact(self, now: Optional[datetime] = None) -> int:
        """
        Drop entries older than the retention horizon. The file is rewritten
        atomically; sequence numbers of kept entries are unchanged and the
        newest entry is always kept.
        Returns the number of dropped entries.
        """
        if self.retention_seconds is None:
            return 0

        horizon = (now or utcnow()) - timedelta(seconds=self.retention_seconds)

        with self._lock:
            kept = [e for e in self._entries if e.recorded_at >= horizon]
            # the newest entry carries the sequence watermark across restarts
            if not kept and self._entries:
                kept = [self._entries[-1]]
            dropped = len(self._entries) - len(kept)
            if dropped == 0:
                return 0

            if self.log_path:
                tmp_path = self.log_path + ".tmp"
                with open(tmp_path, "w", encoding="utf-8") as f:
                    for entry in kept:
                        f.write(entry.model_dump_json() + "\n")
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.log_path)

            self._entries = kept

        logger.info("Audit log compacted: dropped=%d kept=%d", dropped, len(kept))
        return dropped
