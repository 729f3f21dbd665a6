import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

from apps.reconciler.models.signal_models import SignalSource, ThreatSignal, WorkloadRef
from apps.reconciler.policy.store import PolicyStore, default_policy_text
from apps.reconciler.services.audit_log import AuditLog
from apps.reconciler.services.cluster_client import InMemoryClusterClient
from apps.reconciler.services.risk_evaluator import RiskEvaluator
from apps.reconciler.services.signal_window import SignalWindowStore

NAMESPACE = "payments"
POD = "api-7d9c6b5f4-x2x8q"
SUBJECT_KEY = f"{NAMESPACE}/{POD}"
T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def run(coro):
    return asyncio.run(coro)


def make_signal(
    severity: float,
    resource_version: str = "100",
    payload: Any = None,
    source: SignalSource = SignalSource.RUNTIME_MONITOR,
    observed_at: Optional[datetime] = None,
    namespace: str = NAMESPACE,
    pod: str = POD,
    **kwargs: Any,
) -> ThreatSignal:
    if payload is None:
        raw = b""
    elif isinstance(payload, bytes):
        raw = payload
    else:
        raw = json.dumps(payload).encode("utf-8")
    return ThreatSignal(
        source=source,
        subject=WorkloadRef(namespace=namespace, pod_name=pod, resource_version=resource_version),
        severity=severity,
        raw_payload=raw,
        observed_at=observed_at or T0,
        **kwargs,
    )


def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


class FakeClock:
    """Wall clock for lease tables; tests move `now` by hand."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def cluster():
    """Fake cluster with one Deployment-owned pod at resourceVersion 100."""
    c = InMemoryClusterClient()
    c.add_pod(NAMESPACE, POD)
    c.add_deployment(NAMESPACE, "api", 3)
    return c


@pytest.fixture
def audit_log():
    return AuditLog()


@pytest.fixture
def policy_store():
    store = PolicyStore(None, default_policy_text(0.6, 0.2))
    store.load_initial()
    return store


@pytest.fixture
def window_store():
    return SignalWindowStore(window_seconds=300, max_entries=32)


@pytest.fixture
def evaluator(policy_store, window_store):
    return RiskEvaluator(
        policy_store,
        window_store,
        low_severity_threshold=0.2,
        escalation_min_signals=2,
    )


def entries_of(audit_log: AuditLog, kind: str, subject: str = SUBJECT_KEY) -> list:
    return [e for e in audit_log.replay(subject=subject) if e.kind.value == kind]


def data_of(audit_log: AuditLog, kind: str, subject: str = SUBJECT_KEY) -> list:
    return [e.data for e in entries_of(audit_log, kind, subject)]
