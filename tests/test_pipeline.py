"""End-to-end: ingest -> evaluate -> plan -> reconcile against the in-memory cluster."""

import asyncio
from datetime import timedelta
from unittest.mock import MagicMock, patch

from apps.reconciler.config import Settings
from apps.reconciler.models.signal_models import RuntimeMonitorEvent, utcnow
from apps.reconciler.services.action_planner import QUARANTINE_LABEL, WATCH_LABEL
from apps.reconciler.services.pipeline import build_cluster_client, build_pipeline
from apps.reconciler.services.cluster_client import InMemoryClusterClient
from apps.reconciler.utils.naming import quarantine_policy_name

from conftest import NAMESPACE, POD, data_of, make_signal, run


def make_settings(**overrides):
    values = dict(
        CLUSTER_BACKEND="memory",
        RULE_SEVERITIES={
            "noisy_scan": 0.05,
            "terminal_shell_in_container": 0.3,
            "outbound_port_scan": 0.4,
            "crypto_miner_detected": 0.95,
        },
        QUARANTINE_THRESHOLD=0.6,
        LOW_SEVERITY_THRESHOLD=0.2,
        ESCALATION_MIN_SIGNALS=2,
        PLAN_TEMPLATE_VERSION="v1",
        BASE_BACKOFF_SECONDS=0.001,
        MAX_BACKOFF_SECONDS=0.01,
        POLICY_PATH=None,
        AUDIT_LOG_PATH=None,
        AUDIT_RETENTION_SECONDS=None,
        LEASE_TABLE_PATH=None,
        ALERT_WEBHOOK_URL=None,
    )
    values.update(overrides)
    return Settings(**values)


def event(rule_id, **kwargs):
    return RuntimeMonitorEvent(rule_id=rule_id, namespace=NAMESPACE, pod_name=POD, **kwargs)


async def settle(pipeline):
    await asyncio.wait_for(pipeline.drain(), timeout=5)


def test_memory_backend_builds_in_memory_cluster():
    assert isinstance(build_cluster_client(make_settings()), InMemoryClusterClient)


def test_kubernetes_request_timeout_fits_inside_apply_timeout():
    apis = (MagicMock(), MagicMock(), MagicMock())
    with patch("apps.reconciler.services.k8s_cluster.load_api_clients", return_value=apis):
        client = build_cluster_client(
            Settings(CLUSTER_BACKEND="kubernetes", APPLY_TIMEOUT_SECONDS=10)
        )

    # read plus write must both land before the reconciler gives up
    assert client.request_timeout * 2 <= 10


def test_high_severity_signal_quarantines_pod(cluster):
    async def scenario():
        pipeline = build_pipeline(make_settings(), cluster=cluster)
        await pipeline.start()
        await pipeline.ingestor.ingest_runtime_event(event("crypto_miner_detected"))
        await settle(pipeline)
        await pipeline.stop()
        return pipeline

    pipeline = run(scenario())

    assert cluster.pod_labels(NAMESPACE, POD)[QUARANTINE_LABEL] == "true"
    policy = cluster.network_policy(NAMESPACE, quarantine_policy_name(POD))
    assert policy is not None
    assert policy["deny_ingress"] is True

    verdicts = data_of(pipeline.audit_log, "verdict")
    assert [v["decision"] for v in verdicts] == ["quarantine"]
    states = [d["state"] for d in data_of(pipeline.audit_log, "plan_state")]
    assert states == ["pending", "applying", "applied"]


def test_low_severity_signal_changes_nothing(cluster):
    async def scenario():
        pipeline = build_pipeline(make_settings(), cluster=cluster)
        await pipeline.start()
        await pipeline.ingestor.ingest_runtime_event(event("noisy_scan"))
        await settle(pipeline)
        await pipeline.stop()
        return pipeline

    pipeline = run(scenario())

    assert cluster.calls == []
    assert [v["decision"] for v in data_of(pipeline.audit_log, "verdict")] == ["ignore"]
    assert data_of(pipeline.audit_log, "plan") == []


def test_repeated_moderate_signals_escalate_to_quarantine(cluster):
    async def scenario():
        pipeline = build_pipeline(make_settings(), cluster=cluster)
        await pipeline.start()
        await pipeline.ingestor.ingest_runtime_event(event("terminal_shell_in_container"))
        await pipeline.ingestor.ingest_runtime_event(event("outbound_port_scan"))
        await settle(pipeline)
        await pipeline.stop()
        return pipeline

    pipeline = run(scenario())

    labels = cluster.pod_labels(NAMESPACE, POD)
    assert labels[QUARANTINE_LABEL] == "true"

    verdicts = data_of(pipeline.audit_log, "verdict")
    assert verdicts[0]["decision"] == "watch"
    assert any(v["decision"] == "quarantine" and v["escalated"] for v in verdicts)

    applied = [
        d for d in data_of(pipeline.audit_log, "plan_state")
        if d["state"] == "applied" and d["decision"] == "quarantine"
    ]
    assert len(applied) == 1


def test_unevaluated_signals_are_recovered_on_start(cluster):
    async def scenario():
        pipeline = build_pipeline(make_settings(), cluster=cluster)
        pipeline.audit_log.record_signal(make_signal(0.95))
        await pipeline.start()
        await settle(pipeline)
        await pipeline.stop()
        return pipeline

    pipeline = run(scenario())

    assert cluster.pod_labels(NAMESPACE, POD)[QUARANTINE_LABEL] == "true"
    assert pipeline.audit_log.unevaluated_signals() == []


def test_restart_does_not_reapply_quarantine(cluster, tmp_path):
    settings = make_settings(AUDIT_LOG_PATH=str(tmp_path / "audit.jsonl"))

    async def scenario():
        pipeline = build_pipeline(settings, cluster=cluster)
        await pipeline.start()
        await pipeline.ingestor.ingest_runtime_event(event("crypto_miner_detected"))
        await settle(pipeline)
        await pipeline.stop()
        return pipeline

    run(scenario())
    calls_after_first = len(cluster.calls)

    restarted = run(scenario())

    assert len(cluster.calls) == calls_after_first
    last_states = [d["state"] for d in data_of(restarted.audit_log, "plan_state")][-2:]
    assert last_states == ["pending", "skipped"]


def test_watch_then_quarantine_keeps_both_labels_consistent(cluster):
    async def scenario():
        pipeline = build_pipeline(make_settings(ESCALATION_MIN_SIGNALS=5), cluster=cluster)
        await pipeline.start()
        await pipeline.ingestor.ingest_runtime_event(event("terminal_shell_in_container"))
        await settle(pipeline)
        await pipeline.ingestor.ingest_runtime_event(event("crypto_miner_detected"))
        await settle(pipeline)
        await pipeline.stop()

    run(scenario())

    labels = cluster.pod_labels(NAMESPACE, POD)
    assert labels[WATCH_LABEL] == "true"
    assert labels[QUARANTINE_LABEL] == "true"


def test_maintenance_compacts_audit_and_purges_windows(cluster):
    async def scenario():
        pipeline = build_pipeline(make_settings(AUDIT_RETENTION_SECONDS=60), cluster=cluster)
        await pipeline.start()
        await pipeline.ingestor.ingest_runtime_event(event("crypto_miner_detected"))
        await settle(pipeline)
        await pipeline.stop()
        return pipeline

    pipeline = run(scenario())
    last_seq = pipeline.audit_log.last_seq

    result = pipeline.run_maintenance(now=utcnow() + timedelta(hours=1))

    assert result == {"audit_entries_dropped": last_seq - 1, "windows_purged": 1}
    assert [e.seq for e in pipeline.audit_log.replay()] == [last_seq]
    assert len(pipeline.window_store) == 0


def test_stale_plan_for_unknown_signal_is_dropped(cluster):
    pipeline = build_pipeline(make_settings(), cluster=cluster)
    signal = make_signal(0.95)
    plan = pipeline.planner.plan(pipeline.evaluator.evaluate(signal))

    run(pipeline.on_stale_plan(plan, "101"))

    assert pipeline.ingestor.queue.empty()
