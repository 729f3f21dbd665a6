"""Reconciler loop: idempotence, retries, staleness, abandonment, preemption."""

import asyncio
import time

from apps.reconciler.models.action_models import PlanState
from apps.reconciler.models.audit_models import AuditKind
from apps.reconciler.models.signal_models import WorkloadRef
from apps.reconciler.models.verdict_models import Decision, Verdict
from apps.reconciler.services.action_planner import (
    QUARANTINE_LABEL,
    WATCH_LABEL,
    ActionPlanner,
)
from apps.reconciler.services.alerts import AlertSink
from apps.reconciler.services.cluster_client import ClusterResult, InMemoryClusterClient
from apps.reconciler.services.lease_table import LeaseTable
from apps.reconciler.services.reconciler import Reconciler

from conftest import NAMESPACE, POD, SUBJECT_KEY, FakeClock, data_of, run


def make_reconciler(cluster, audit_log, on_stale=None, lease_table=None, **kwargs):
    kwargs.setdefault("base_backoff_seconds", 0.001)
    kwargs.setdefault("max_backoff_seconds", 0.01)
    kwargs.setdefault("apply_timeout_seconds", 2.0)
    kwargs.setdefault("lease_retry_seconds", 0.001)
    return Reconciler(
        cluster=cluster,
        audit_log=audit_log,
        lease_table=lease_table or LeaseTable(ttl_seconds=30),
        alert_sink=AlertSink(audit_log),
        on_stale=on_stale,
        **kwargs,
    )


def plan_for(decision, resource_version="100", pod=POD, template="v1"):
    verdict = Verdict(
        signal_id="sig-1",
        subject=WorkloadRef(namespace=NAMESPACE, pod_name=pod, resource_version=resource_version),
        decision=decision,
        confidence=0.9,
    )
    return ActionPlanner(template).plan(verdict)


def outcomes_for(audit_log, plan, action_id=None):
    return [
        d for d in data_of(audit_log, "outcome", plan.subject.subject_key)
        if d["plan_id"] == plan.id and (action_id is None or d["action_id"] == action_id)
    ]


def states_for(audit_log, plan):
    return [
        d["state"] for d in data_of(audit_log, "plan_state", plan.subject.subject_key)
        if d["plan_id"] == plan.id
    ]


class SlowLabelCluster(InMemoryClusterClient):
    """First apply_label call blocks longer than the apply timeout."""

    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay
        self.slow_calls = 1

    def apply_label(self, namespace, pod_name, labels):
        if self.slow_calls:
            self.slow_calls -= 1
            time.sleep(self.delay)
            return ClusterResult.TRANSIENT_ERROR
        return super().apply_label(namespace, pod_name, labels)


class SlowCallsCluster(InMemoryClusterClient):
    """
    Every apply_label call takes `call_seconds` of lease-table time and
    checks whether another process could grab the subject meanwhile.
    """

    def __init__(self, clock, lease_table, call_seconds, takeover=False):
        super().__init__()
        self.clock = clock
        self.lease_table = lease_table
        self.call_seconds = call_seconds
        self.takeover = takeover
        self.intruder_wins = []

    def apply_label(self, namespace, pod_name, labels):
        self.clock.now += self.call_seconds
        won = self.lease_table.acquire(f"{namespace}/{pod_name}", "other-process")
        self.intruder_wins.append(won)
        if won and not self.takeover:
            self.lease_table.release(f"{namespace}/{pod_name}", "other-process")
        return super().apply_label(namespace, pod_name, labels)


class TestIdempotence:

    def test_second_identical_plan_is_skipped(self, cluster, audit_log):
        reconciler = make_reconciler(cluster, audit_log)
        first = plan_for(Decision.QUARANTINE)

        assert run(reconciler.process_plan(first)) == PlanState.APPLIED
        labels = cluster.pod_labels(NAMESPACE, POD)
        assert labels[QUARANTINE_LABEL] == "true"
        calls_after_first = len(cluster.calls)

        live = cluster.get_resource_version(NAMESPACE, POD).resource_version
        second = plan_for(Decision.QUARANTINE, resource_version=live)
        assert second.idempotency_key == first.idempotency_key

        assert run(reconciler.process_plan(second)) == PlanState.SKIPPED
        assert [o["status"] for o in outcomes_for(audit_log, second)] == ["skipped-noop"]
        assert len(cluster.calls) == calls_after_first

    def test_weaker_decision_after_stronger_is_skipped(self, cluster, audit_log):
        reconciler = make_reconciler(cluster, audit_log)
        run(reconciler.process_plan(plan_for(Decision.QUARANTINE)))

        live = cluster.get_resource_version(NAMESPACE, POD).resource_version
        watch = plan_for(Decision.WATCH, resource_version=live)

        assert run(reconciler.process_plan(watch)) == PlanState.SKIPPED
        assert WATCH_LABEL not in cluster.pod_labels(NAMESPACE, POD)

    def test_ledger_is_rebuilt_from_audit_log(self, cluster, audit_log):
        run(make_reconciler(cluster, audit_log).process_plan(plan_for(Decision.QUARANTINE)))

        restarted = make_reconciler(cluster, audit_log)
        assert restarted.load_ledger() == 1

        live = cluster.get_resource_version(NAMESPACE, POD).resource_version
        again = plan_for(Decision.QUARANTINE, resource_version=live)
        assert run(restarted.process_plan(again)) == PlanState.SKIPPED

    def test_unchanged_cluster_state_is_a_noop_outcome(self, cluster, audit_log):
        cluster.apply_label(NAMESPACE, POD, {WATCH_LABEL: "true"})
        live = cluster.get_resource_version(NAMESPACE, POD).resource_version
        plan = plan_for(Decision.WATCH, resource_version=live)

        assert run(make_reconciler(cluster, audit_log).process_plan(plan)) == PlanState.APPLIED
        assert [o["status"] for o in outcomes_for(audit_log, plan)] == ["skipped-noop"]


class TestRetries:

    def test_transient_failures_then_success(self, cluster, audit_log):
        cluster.fail_next(
            "apply_label",
            ClusterResult.TRANSIENT_ERROR,
            ClusterResult.CONFLICT,
            ClusterResult.TRANSIENT_ERROR,
        )
        reconciler = make_reconciler(cluster, audit_log)
        plan = plan_for(Decision.QUARANTINE)
        label_action = plan.steps[0]

        assert run(reconciler.process_plan(plan)) == PlanState.APPLIED

        outcomes = outcomes_for(audit_log, plan, label_action.id)
        assert [o["status"] for o in outcomes] == ["retrying", "retrying", "retrying", "applied"]
        assert [o["attempt"] for o in outcomes] == [1, 2, 3, 4]

        backoffs = [o["backoff_seconds"] for o in outcomes[:3]]
        assert all(b > 0 for b in backoffs)
        assert backoffs == sorted(backoffs)

        errors = [
            d for d in data_of(audit_log, "error")
            if d["error_type"] == "TransientClusterError"
        ]
        assert len(errors) == 3

    def test_retry_moves_plan_between_failed_and_applying(self, cluster, audit_log):
        cluster.fail_next(
            "apply_label", ClusterResult.TRANSIENT_ERROR, ClusterResult.TRANSIENT_ERROR
        )
        plan = plan_for(Decision.WATCH)

        assert run(make_reconciler(cluster, audit_log).process_plan(plan)) == PlanState.APPLIED
        assert states_for(audit_log, plan) == [
            "pending",
            "applying",
            "failed",
            "applying",
            "failed",
            "applying",
            "applied",
        ]

    def test_every_error_is_audited_before_its_retry(self, cluster, audit_log):
        cluster.fail_next("apply_label", ClusterResult.TRANSIENT_ERROR)
        plan = plan_for(Decision.WATCH)
        run(make_reconciler(cluster, audit_log).process_plan(plan))

        kinds = [e.kind for e in audit_log.replay(subject=SUBJECT_KEY)]
        error_at = kinds.index(AuditKind.ERROR)
        assert kinds[error_at + 1] == AuditKind.OUTCOME

    def test_retries_are_bounded_by_max_attempts(self, cluster, audit_log):
        cluster.fail_next("apply_label", *([ClusterResult.TRANSIENT_ERROR] * 5))
        reconciler = make_reconciler(cluster, audit_log, max_attempts=3)
        plan = plan_for(Decision.WATCH)

        assert run(reconciler.process_plan(plan)) == PlanState.ABANDONED
        statuses = [o["status"] for o in outcomes_for(audit_log, plan)]
        assert statuses == ["retrying", "retrying", "failed"]

        alerts = data_of(audit_log, "alert")
        assert alerts[0]["context"]["reason"] == "retries-exhausted"
        assert alerts[0]["context"]["attempts"] == 3

    def test_retries_are_bounded_by_total_duration(self, cluster, audit_log):
        cluster.fail_next("apply_label", *([ClusterResult.TRANSIENT_ERROR] * 10))
        reconciler = make_reconciler(
            cluster,
            audit_log,
            max_attempts=10,
            base_backoff_seconds=0.05,
            max_backoff_seconds=0.05,
            max_retry_duration_seconds=0.12,
        )
        plan = plan_for(Decision.WATCH)

        assert run(reconciler.process_plan(plan)) == PlanState.ABANDONED
        statuses = [o["status"] for o in outcomes_for(audit_log, plan)]
        assert statuses[-1] == "failed"
        assert len(statuses) < 10

    def test_timeouts_count_as_transient(self, audit_log):
        cluster = SlowLabelCluster(delay=0.3)
        cluster.add_pod(NAMESPACE, POD)
        reconciler = make_reconciler(cluster, audit_log, apply_timeout_seconds=0.05)
        plan = plan_for(Decision.WATCH)

        assert run(reconciler.process_plan(plan)) == PlanState.APPLIED
        statuses = [o["status"] for o in outcomes_for(audit_log, plan)]
        assert statuses == ["retrying", "applied"]
        assert "timed out" in outcomes_for(audit_log, plan)[0]["error"]


class TestPermanentFailures:

    def test_vanished_pod_abandons_without_retry(self, cluster, audit_log):
        cluster.delete_pod(NAMESPACE, POD)
        plan = plan_for(Decision.QUARANTINE)

        assert run(make_reconciler(cluster, audit_log).process_plan(plan)) == PlanState.ABANDONED
        assert "retrying" not in [o["status"] for o in outcomes_for(audit_log, plan)]
        assert states_for(audit_log, plan) == ["pending", "applying", "failed", "abandoned"]

        alerts = data_of(audit_log, "alert")
        assert len(alerts) == 1
        assert alerts[0]["context"]["reason"] == "not-found"

    def test_forbidden_mutation_abandons(self, cluster, audit_log):
        cluster.fail_next("apply_network_policy", ClusterResult.FORBIDDEN)
        plan = plan_for(Decision.QUARANTINE)

        assert run(make_reconciler(cluster, audit_log).process_plan(plan)) == PlanState.ABANDONED
        statuses = [o["status"] for o in outcomes_for(audit_log, plan)]
        assert statuses == ["applied", "failed"]
        errors = data_of(audit_log, "error")
        assert errors[0]["error_type"] == "PermanentClusterError"

    def test_abandoned_plan_is_not_in_the_ledger(self, cluster, audit_log):
        cluster.fail_next("apply_label", ClusterResult.REJECTED)
        reconciler = make_reconciler(cluster, audit_log)
        run(reconciler.process_plan(plan_for(Decision.WATCH)))

        retry = plan_for(Decision.WATCH)
        assert run(reconciler.process_plan(retry)) == PlanState.APPLIED


class TestStaleness:

    def test_moved_resource_version_drops_plan_and_reevaluates(self, cluster, audit_log):
        stale_calls = []

        async def on_stale(plan, live_version):
            stale_calls.append((plan.id, live_version))

        live = cluster.touch_pod(NAMESPACE, POD)
        plan = plan_for(Decision.QUARANTINE, resource_version="100")
        reconciler = make_reconciler(cluster, audit_log, on_stale=on_stale)

        assert run(reconciler.process_plan(plan)) == PlanState.STALE
        assert stale_calls == [(plan.id, live)]
        assert cluster.calls == []

        errors = data_of(audit_log, "error")
        assert errors[0]["error_type"] == "StaleStateError"
        assert errors[0]["context"] == {"expected": "100", "actual": live}

    def test_version_lookup_retries_transient_failures(self, cluster, audit_log):
        cluster.fail_next("get_resource_version", ClusterResult.TRANSIENT_ERROR)
        plan = plan_for(Decision.WATCH)
        assert run(make_reconciler(cluster, audit_log).process_plan(plan)) == PlanState.APPLIED

        retrying = [o for o in outcomes_for(audit_log, plan) if o["status"] == "retrying"]
        assert len(retrying) == 1
        assert retrying[0]["action_id"] is None


class TestWorkers:

    def test_stronger_plan_supersedes_pending_weaker_one(self, cluster, audit_log):
        async def scenario():
            reconciler = make_reconciler(cluster, audit_log)
            watch = plan_for(Decision.WATCH)
            quarantine = plan_for(Decision.QUARANTINE)
            reconciler.submit(watch)
            reconciler.submit(quarantine)
            assert reconciler.pending_count() == 1

            await reconciler.start()
            await asyncio.wait_for(reconciler.join(), timeout=5)
            await reconciler.stop()
            return reconciler, watch, quarantine

        reconciler, watch, quarantine = run(scenario())

        assert reconciler.plan_state(watch.id) == PlanState.SUPERSEDED
        assert reconciler.plan_state(quarantine.id) == PlanState.APPLIED
        assert [o["status"] for o in outcomes_for(audit_log, watch)] == ["superseded"]
        assert WATCH_LABEL not in cluster.pod_labels(NAMESPACE, POD)

    def test_stronger_plan_cancels_in_flight_retry(self, cluster, audit_log):
        cluster.fail_next("apply_label", ClusterResult.TRANSIENT_ERROR)

        async def scenario():
            reconciler = make_reconciler(
                cluster, audit_log, base_backoff_seconds=10.0, max_backoff_seconds=10.0
            )
            await reconciler.start()
            watch = plan_for(Decision.WATCH)
            reconciler.submit(watch)

            # wait until the watch plan is backing off
            for _ in range(500):
                if any(o["status"] == "retrying" for o in outcomes_for(audit_log, watch)):
                    break
                await asyncio.sleep(0.01)

            quarantine = plan_for(Decision.QUARANTINE)
            reconciler.submit(quarantine)
            await asyncio.wait_for(reconciler.join(), timeout=5)
            await reconciler.stop()
            return reconciler, watch, quarantine

        reconciler, watch, quarantine = run(scenario())

        assert reconciler.plan_state(watch.id) == PlanState.SUPERSEDED
        assert reconciler.plan_state(quarantine.id) == PlanState.APPLIED
        assert [o["status"] for o in outcomes_for(audit_log, watch)] == ["retrying", "superseded"]
        assert cluster.pod_labels(NAMESPACE, POD)[QUARANTINE_LABEL] == "true"

    def test_plans_for_one_subject_run_in_order(self, cluster, audit_log):
        async def scenario():
            reconciler = make_reconciler(cluster, audit_log, workers=4)
            quarantine = plan_for(Decision.QUARANTINE)
            watch = plan_for(Decision.WATCH)
            reconciler.submit(quarantine)
            reconciler.submit(watch)
            await reconciler.start()
            await asyncio.wait_for(reconciler.join(), timeout=5)
            await reconciler.stop()
            return reconciler, quarantine, watch

        reconciler, quarantine, watch = run(scenario())

        assert reconciler.plan_state(quarantine.id) == PlanState.APPLIED
        assert reconciler.plan_state(watch.id) == PlanState.SKIPPED

    def test_subjects_are_processed_concurrently(self, audit_log):
        cluster = InMemoryClusterClient()
        pods = [f"worker-{i}" for i in range(6)]
        versions = {pod: cluster.add_pod(NAMESPACE, pod) for pod in pods}

        async def scenario():
            reconciler = make_reconciler(cluster, audit_log, workers=3)
            plans = [
                plan_for(Decision.QUARANTINE, resource_version=versions[pod], pod=pod)
                for pod in pods
            ]
            for plan in plans:
                reconciler.submit(plan)
            await reconciler.start()
            assert reconciler.status()["workers"] == 3
            await asyncio.wait_for(reconciler.join(), timeout=5)
            await reconciler.stop()
            return reconciler, plans

        reconciler, plans = run(scenario())

        assert all(reconciler.plan_state(p.id) == PlanState.APPLIED for p in plans)
        for pod in pods:
            assert cluster.pod_labels(NAMESPACE, pod)[QUARANTINE_LABEL] == "true"
        assert reconciler.lease_table.snapshot() == []

    def test_empty_plans_are_not_queued(self, cluster, audit_log):
        reconciler = make_reconciler(cluster, audit_log)
        assert not reconciler.submit(plan_for(Decision.IGNORE))
        assert reconciler.pending_count() == 0

    def test_status_reports_queue_and_leases(self, cluster, audit_log):
        reconciler = make_reconciler(cluster, audit_log)
        reconciler.submit(plan_for(Decision.WATCH))
        status = reconciler.status()

        assert status["pending_plans"] == 1
        assert status["scheduled_subjects"] == [SUBJECT_KEY]
        assert status["running"] is False
        assert status["leases"] == []

    def test_finished_plans_are_not_kept_in_memory(self, audit_log):
        cluster = InMemoryClusterClient()
        pods = [f"batch-{i}" for i in range(20)]
        versions = {pod: cluster.add_pod(NAMESPACE, pod) for pod in pods}

        async def scenario():
            reconciler = make_reconciler(cluster, audit_log, workers=4)
            plans = [
                plan_for(Decision.WATCH, resource_version=versions[pod], pod=pod)
                for pod in pods
            ]
            for plan in plans:
                reconciler.submit(plan)
            assert reconciler.status()["tracked_plans"] == len(plans)

            await reconciler.start()
            await asyncio.wait_for(reconciler.join(), timeout=5)
            await reconciler.stop()
            return reconciler, plans

        reconciler, plans = run(scenario())

        assert reconciler.status()["tracked_plans"] == 0
        assert all(reconciler.plan_state(p.id) == PlanState.APPLIED for p in plans)
        assert reconciler.plan_state("no-such-plan") is None


class TestLeaseRenewal:

    def test_lease_is_renewed_across_slow_retries(self, audit_log):
        clock = FakeClock()
        leases = LeaseTable(ttl_seconds=60, clock=clock)
        cluster = SlowCallsCluster(clock, leases, call_seconds=45)
        cluster.add_pod(NAMESPACE, POD)
        cluster.fail_next(
            "apply_label", ClusterResult.TRANSIENT_ERROR, ClusterResult.TRANSIENT_ERROR
        )
        reconciler = make_reconciler(cluster, audit_log, lease_table=leases)
        plan = plan_for(Decision.WATCH)

        assert run(reconciler.process_plan(plan)) == PlanState.APPLIED
        # 135s of calls against a 60s lease, yet nobody else got in.
        assert cluster.intruder_wins == [False, False, False]
        assert cluster.pod_labels(NAMESPACE, POD)[WATCH_LABEL] == "true"

    def test_lost_lease_abandons_before_next_attempt(self, audit_log):
        clock = FakeClock()
        leases = LeaseTable(ttl_seconds=60, clock=clock)
        cluster = SlowCallsCluster(clock, leases, call_seconds=61, takeover=True)
        cluster.add_pod(NAMESPACE, POD)
        cluster.fail_next("apply_label", ClusterResult.TRANSIENT_ERROR)
        reconciler = make_reconciler(cluster, audit_log, lease_table=leases)
        plan = plan_for(Decision.QUARANTINE)

        assert run(reconciler.process_plan(plan)) == PlanState.ABANDONED
        assert cluster.calls == [("apply_label", SUBJECT_KEY)]
        assert QUARANTINE_LABEL not in cluster.pod_labels(NAMESPACE, POD)
        assert leases.holder_of(SUBJECT_KEY) == "other-process"

        statuses = [o["status"] for o in outcomes_for(audit_log, plan)]
        assert statuses == ["retrying", "failed"]
        alerts = data_of(audit_log, "alert")
        assert alerts[0]["context"]["reason"] == "lease-lost"
