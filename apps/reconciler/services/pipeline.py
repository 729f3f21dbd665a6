from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime
from typing import Dict, Optional

from opentelemetry import trace
from prometheus_client import Counter

from ..config import Settings
from ..models.action_models import RemediationPlan
from ..models.signal_models import ThreatSignal, utcnow
from ..policy.store import PolicyStore, default_policy_text
from .action_planner import ActionPlanner
from .alerts import AlertSink
from .audit_log import AuditLog
from .classifier_client import ClassifierClient
from .cluster_client import ClusterClient, InMemoryClusterClient
from .ingestor import AlertIngestor
from .lease_table import LeaseTable
from .reconciler import Reconciler
from .risk_evaluator import RiskEvaluator
from .signal_window import SignalWindowStore

logger = logging.getLogger("podsentry.pipeline")
tracer = trace.get_tracer(__name__)

PIPELINE_SIGNALS_TOTAL = Counter(
    "podsentry_pipeline_signals_total",
    "Signals taken through evaluation and planning",
    ["result"],  # planned | no_action | error
)


class ThreatPipeline:
    """
    ingestor -> evaluator -> planner -> reconciler

    One consumer task drains the ingest stream. Evaluation and planning
    are synchronous, so nothing else runs between taking a signal off the
    stream and submitting its plan, which keeps per-subject order intact
    all the way to the reconciler.
    """

    def __init__(
        self,
        settings: Settings,
        cluster: ClusterClient,
        audit_log: AuditLog,
        policy_store: PolicyStore,
        window_store: SignalWindowStore,
        ingestor: AlertIngestor,
        evaluator: RiskEvaluator,
        planner: ActionPlanner,
        reconciler: Reconciler,
    ) -> None:
        self.settings = settings
        self.cluster = cluster
        self.audit_log = audit_log
        self.policy_store = policy_store
        self.window_store = window_store
        self.ingestor = ingestor
        self.evaluator = evaluator
        self.planner = planner
        self.reconciler = reconciler
        self._consumer_task: Optional[asyncio.Task] = None
        self._maintenance_task: Optional[asyncio.Task] = None
        self.maintenance_interval_seconds = 60.0

        reconciler.on_stale = self.on_stale_plan

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._consumer_task is not None:
            return
        logger.info("Starting threat pipeline")
        self.reconciler.load_ledger()
        await self.reconciler.start()
        self.ingestor.recover()
        self._consumer_task = asyncio.create_task(self._consume())
        self._maintenance_task = asyncio.create_task(self._maintenance())

    async def stop(self) -> None:
        if self._consumer_task is not None:
            logger.info("Stopping threat pipeline")
        for task in (self._consumer_task, self._maintenance_task):
            if task is None:
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._consumer_task = None
        self._maintenance_task = None
        await self.reconciler.stop()

    async def drain(self) -> None:
        """Wait until every queued signal and plan has been handled."""
        while True:
            await self.ingestor.join()
            await self.reconciler.join()
            if self.ingestor.queue.empty() and self.reconciler.queue.empty():
                return

    # ------------------------------------------------------------------
    # Core logic
    # ------------------------------------------------------------------

    async def _consume(self) -> None:
        async for signal in self.ingestor.stream():
            try:
                self.process_signal(signal)
            except Exception:  # noqa: BLE001
                PIPELINE_SIGNALS_TOTAL.labels(result="error").inc()
                logger.exception("Pipeline: unhandled error while processing signal %s", signal.id)
                self.audit_log.record_error(
                    "PipelineError",
                    f"Signal {signal.id} could not be evaluated",
                    subject=signal.subject.subject_key,
                    ref_id=signal.id,
                )

    async def _maintenance(self) -> None:
        while True:
            await asyncio.sleep(self.maintenance_interval_seconds)
            try:
                self.run_maintenance()
            except Exception:  # noqa: BLE001
                logger.exception("Pipeline: maintenance pass failed")

    def run_maintenance(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Apply audit retention and forget idle subject windows."""
        now = now or utcnow()
        dropped = self.audit_log.compact(now)
        purged = self.window_store.purge_idle(now)
        if dropped or purged:
            logger.info(
                "Maintenance: dropped %d audit entries, purged %d idle window(s)",
                dropped,
                purged,
            )
        return {"audit_entries_dropped": dropped, "windows_purged": purged}

    def process_signal(self, signal: ThreatSignal) -> Optional[RemediationPlan]:
        with tracer.start_as_current_span("podsentry.pipeline.process_signal") as span:
            span.set_attribute("podsentry.signal.id", signal.id)
            span.set_attribute("podsentry.subject", signal.subject.subject_key)

            verdict = self.evaluator.evaluate(signal)
            self.audit_log.record_verdict(verdict)

            plan = self.planner.plan(verdict)
            if plan.is_empty:
                PIPELINE_SIGNALS_TOTAL.labels(result="no_action").inc()
                span.set_attribute("podsentry.plan.submitted", False)
                return None

            self.audit_log.record_plan(plan)
            self.reconciler.submit(plan)
            PIPELINE_SIGNALS_TOTAL.labels(result="planned").inc()
            span.set_attribute("podsentry.plan.submitted", True)
            return plan

    async def on_stale_plan(self, plan: RemediationPlan, live_version: str) -> None:
        signal = self.audit_log.get_signal(plan.signal_id)
        if signal is None:
            logger.error(
                "Stale plan %s references unknown signal %s; cannot re-evaluate",
                plan.id,
                plan.signal_id,
            )
            return
        self.ingestor.requeue(signal, live_version)


def build_cluster_client(settings: Settings) -> ClusterClient:
    if settings.CLUSTER_BACKEND == "memory":
        logger.warning("CLUSTER_BACKEND=memory: remediation runs against an in-memory cluster")
        return InMemoryClusterClient()

    from .k8s_cluster import KubernetesClusterClient

    # At most two API round trips per operation; each must finish inside the apply timeout.
    return KubernetesClusterClient(request_timeout=settings.APPLY_TIMEOUT_SECONDS / 2)


def build_pipeline(
    settings: Settings,
    cluster: Optional[ClusterClient] = None,
    classifier: Optional[ClassifierClient] = None,
) -> ThreatPipeline:
    """Wire a pipeline from settings; `cluster` and `classifier` may be injected."""
    if cluster is None:
        cluster = build_cluster_client(settings)
    audit_log = AuditLog(
        log_path=settings.AUDIT_LOG_PATH,
        fsync=settings.AUDIT_FSYNC,
        retention_seconds=settings.AUDIT_RETENTION_SECONDS,
    )

    policy_store = PolicyStore(
        settings.POLICY_PATH,
        default_policy_text(settings.QUARANTINE_THRESHOLD, settings.LOW_SEVERITY_THRESHOLD),
    )
    policy_store.load_initial()

    window_store = SignalWindowStore(
        window_seconds=settings.ESCALATION_WINDOW_SECONDS,
        max_entries=settings.WINDOW_MAX_ENTRIES,
    )

    if classifier is None:
        classifier = ClassifierClient(
            base_url=settings.CLASSIFIER_URL,
            timeout_seconds=settings.CLASSIFIER_TIMEOUT_SECONDS,
        )

    ingestor = AlertIngestor(
        cluster=cluster,
        audit_log=audit_log,
        rule_severities=settings.RULE_SEVERITIES,
        default_severity=settings.RULE_DEFAULT_SEVERITY,
        score_min=settings.CLASSIFIER_SCORE_MIN,
        score_max=settings.CLASSIFIER_SCORE_MAX,
        classifier=classifier,
        max_stale_requeues=settings.MAX_STALE_REQUEUES,
    )

    evaluator = RiskEvaluator(
        policy_store=policy_store,
        window_store=window_store,
        low_severity_threshold=settings.LOW_SEVERITY_THRESHOLD,
        escalation_min_signals=settings.ESCALATION_MIN_SIGNALS,
    )

    planner = ActionPlanner(template_version=settings.PLAN_TEMPLATE_VERSION)

    reconciler = Reconciler(
        cluster=cluster,
        audit_log=audit_log,
        lease_table=LeaseTable(
            ttl_seconds=settings.LEASE_TTL_SECONDS,
            path=settings.LEASE_TABLE_PATH,
        ),
        alert_sink=AlertSink(audit_log, webhook_url=settings.ALERT_WEBHOOK_URL),
        workers=settings.RECONCILER_WORKERS,
        max_attempts=settings.MAX_ATTEMPTS,
        base_backoff_seconds=settings.BASE_BACKOFF_SECONDS,
        max_backoff_seconds=settings.MAX_BACKOFF_SECONDS,
        max_retry_duration_seconds=settings.MAX_RETRY_DURATION_SECONDS,
        apply_timeout_seconds=settings.APPLY_TIMEOUT_SECONDS,
    )

    return ThreatPipeline(
        settings=settings,
        cluster=cluster,
        audit_log=audit_log,
        policy_store=policy_store,
        window_store=window_store,
        ingestor=ingestor,
        evaluator=evaluator,
        planner=planner,
        reconciler=reconciler,
    )
