from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

from opentelemetry import trace
from prometheus_client import Counter, Gauge

from ..errors import ClassifierError, ValidationError
from ..models.signal_models import (
    ClassifierScore,
    FeatureScoreRequest,
    RuntimeMonitorEvent,
    SignalSource,
    ThreatSignal,
    WorkloadRef,
    utcnow,
)
from .audit_log import AuditLog
from .classifier_client import ClassifierClient
from .cluster_client import ClusterClient, ClusterResult

logger = logging.getLogger("podsentry.ingestor")
tracer = trace.get_tracer(__name__)

SIGNALS_INGESTED_TOTAL = Counter(
    "podsentry_signals_ingested_total",
    "Signals accepted by the ingestor",
    ["source"],
)

SIGNALS_REJECTED_TOTAL = Counter(
    "podsentry_signals_rejected_total",
    "Inbound events rejected by the ingestor",
    ["source", "reason"],
)

SIGNALS_REQUEUED_TOTAL = Counter(
    "podsentry_signals_requeued_total",
    "Superseding signals created for stale plans",
    ["result"],  # requeued | limit_reached
)

INGEST_QUEUE_DEPTH = Gauge(
    "podsentry_ingest_queue_depth",
    "Signals waiting for evaluation",
)


class AlertIngestor:
    """
    Turns runtime-monitor rule matches and classifier scores into
    ThreatSignals.

    - Validates and normalizes severity into [0, 1]
    - Resolves the pod's resourceVersion when the event did not carry one
    - Write-ahead: the signal is in the audit log before it is queued
    - Rejections are logged, counted and audited; they are never retried
    """

    def __init__(
        self,
        cluster: ClusterClient,
        audit_log: AuditLog,
        rule_severities: Optional[Dict[str, float]] = None,
        default_severity: float = 0.5,
        score_min: float = 0.0,
        score_max: float = 1.0,
        classifier: Optional[ClassifierClient] = None,
        max_stale_requeues: int = 3,
    ) -> None:
        self.cluster = cluster
        self.audit_log = audit_log
        self.rule_severities = dict(rule_severities or {})
        self.default_severity = default_severity
        self.score_min = score_min
        self.score_max = score_max
        self.classifier = classifier
        self.max_stale_requeues = max_stale_requeues
        self.queue: "asyncio.Queue[ThreatSignal]" = asyncio.Queue()

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    async def ingest_runtime_event(self, event: RuntimeMonitorEvent) -> ThreatSignal:
        source = SignalSource.RUNTIME_MONITOR
        with tracer.start_as_current_span("podsentry.ingest.runtime") as span:
            span.set_attribute("podsentry.signal.rule_id", event.rule_id)

            severity = self.rule_severities.get(event.rule_id, self.default_severity)
            if not 0.0 <= severity <= 1.0:
                self._reject(
                    source,
                    "severity-out-of-range",
                    f"Configured severity {severity} for rule {event.rule_id} is outside [0, 1]",
                    {"rule_id": event.rule_id},
                )

            subject = await self._resolve_subject(
                source, event.namespace, event.pod_name, event.resource_version
            )

            signal = ThreatSignal(
                source=source,
                subject=subject,
                severity=severity,
                raw_payload=event.raw_arguments.encode("utf-8"),
                observed_at=event.time or utcnow(),
                rule_id=event.rule_id,
            )
            span.set_attribute("podsentry.subject", subject.subject_key)
            return self._accept(signal)

    async def ingest_classifier_score(self, score: ClassifierScore) -> ThreatSignal:
        source = SignalSource.CLASSIFIER
        with tracer.start_as_current_span("podsentry.ingest.classifier") as span:
            span.set_attribute("podsentry.signal.model_version", score.model_version)
            span.set_attribute("podsentry.signal.raw_score", score.score)

            severity = self.scale_score(score.score)
            if not 0.0 <= severity <= 1.0:
                self._reject(
                    source,
                    "score-out-of-range",
                    f"Classifier score {score.score} scales to {severity:.3f}, outside [0, 1]",
                    {
                        "score": score.score,
                        "score_min": self.score_min,
                        "score_max": self.score_max,
                        "model_version": score.model_version,
                    },
                )

            subject = await self._resolve_subject(
                source, score.namespace, score.pod_name, score.resource_version
            )

            payload = {
                "score": score.score,
                "model_version": score.model_version,
                "features": score.features,
            }
            signal = ThreatSignal(
                source=source,
                subject=subject,
                severity=severity,
                raw_payload=json.dumps(payload, sort_keys=True, default=str).encode("utf-8"),
                model_version=score.model_version,
            )
            span.set_attribute("podsentry.subject", subject.subject_key)
            return self._accept(signal)

    async def score_features(self, request: FeatureScoreRequest) -> ThreatSignal:
        """Ask the classifier to score features, then ingest its answer."""
        if self.classifier is None:
            raise ClassifierError("No classifier configured")

        subject = await self._resolve_subject(
            SignalSource.CLASSIFIER,
            request.namespace,
            request.pod_name,
            request.resource_version,
        )
        try:
            result = await self.classifier.evaluate(subject, request.features)
        except ClassifierError as exc:
            logger.error("Classifier scoring failed for %s: %s", subject.subject_key, exc)
            self.audit_log.record_error(
                "ClassifierError",
                str(exc),
                subject=subject.subject_key,
                context={"features": request.features},
            )
            raise

        return await self.ingest_classifier_score(
            ClassifierScore(
                namespace=subject.namespace,
                pod_name=subject.pod_name,
                resource_version=subject.resource_version,
                score=result.score,
                model_version=result.model_version,
                features=request.features,
            )
        )

    def scale_score(self, raw: float) -> float:
        return (raw - self.score_min) / (self.score_max - self.score_min)

    # ------------------------------------------------------------------
    # Stale plans and crash recovery
    # ------------------------------------------------------------------

    def requeue(self, signal: ThreatSignal, resource_version: str) -> Optional[ThreatSignal]:
        """
        Re-issue a signal against the subject's live resourceVersion after
        its plan went stale. Returns None once the requeue limit is reached.
        """
        if signal.generation >= self.max_stale_requeues:
            SIGNALS_REQUEUED_TOTAL.labels(result="limit_reached").inc()
            message = (
                f"Signal {signal.id} on {signal.subject.subject_key} went stale "
                f"{signal.generation + 1} time(s); giving up on re-evaluation"
            )
            logger.error(message)
            self.audit_log.record_error(
                "StaleRequeueLimit",
                message,
                subject=signal.subject.subject_key,
                ref_id=signal.id,
                context={
                    "origin_id": signal.root_id,
                    "generation": signal.generation,
                    "resource_version": resource_version,
                },
            )
            return None

        superseding = ThreatSignal(
            source=signal.source,
            subject=signal.subject.with_version(resource_version),
            severity=signal.severity,
            raw_payload=signal.raw_payload,
            observed_at=signal.observed_at,
            rule_id=signal.rule_id,
            model_version=signal.model_version,
            supersedes=signal.id,
            origin_id=signal.root_id,
            generation=signal.generation + 1,
        )
        SIGNALS_REQUEUED_TOTAL.labels(result="requeued").inc()
        logger.info(
            "Re-queued signal %s as %s against resourceVersion=%s (generation %d)",
            signal.id,
            superseding.id,
            resource_version,
            superseding.generation,
        )
        return self._accept(superseding)

    def recover(self) -> int:
        """Queue every audited signal that never received a verdict."""
        pending = self.audit_log.unevaluated_signals()
        for signal in pending:
            self.queue.put_nowait(signal)
        INGEST_QUEUE_DEPTH.set(self.queue.qsize())
        if pending:
            logger.info("Recovered %d unevaluated signal(s) from audit log", len(pending))
        return len(pending)

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    async def stream(self) -> AsyncIterator[ThreatSignal]:
        """
        Lazy, unbounded stream of signals in write-ahead order. An item is
        marked done when the consumer asks for the next one.
        """
        while True:
            signal = await self.queue.get()
            INGEST_QUEUE_DEPTH.set(self.queue.qsize())
            try:
                yield signal
            finally:
                self.queue.task_done()

    async def join(self) -> None:
        await self.queue.join()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _accept(self, signal: ThreatSignal) -> ThreatSignal:
        # No await between the audit append and the enqueue: queue order is
        # audit order.
        self.audit_log.record_signal(signal)
        self.queue.put_nowait(signal)
        SIGNALS_INGESTED_TOTAL.labels(source=signal.source.value).inc()
        INGEST_QUEUE_DEPTH.set(self.queue.qsize())
        logger.debug(
            "Accepted signal %s from %s for %s severity=%.2f",
            signal.id,
            signal.source.value,
            signal.subject.subject_key,
            signal.severity,
        )
        return signal

    def _reject(
        self,
        source: SignalSource,
        reason: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        subject: Optional[str] = None,
    ) -> None:
        SIGNALS_REJECTED_TOTAL.labels(source=source.value, reason=reason).inc()
        logger.warning("Rejected %s event (%s): %s", source.value, reason, message)
        self.audit_log.record_error(
            "ValidationError",
            message,
            subject=subject,
            context={"source": source.value, "reason": reason, **(context or {})},
        )
        raise ValidationError(message)

    async def _resolve_subject(
        self,
        source: SignalSource,
        namespace: Optional[str],
        pod_name: Optional[str],
        resource_version: Optional[str],
    ) -> WorkloadRef:
        if not namespace or not pod_name:
            self._reject(
                source,
                "missing-subject",
                "Event does not identify a pod (namespace and pod_name are required)",
                {"namespace": namespace, "pod_name": pod_name},
            )

        subject_key = f"{namespace}/{pod_name}"
        if resource_version:
            return WorkloadRef(
                namespace=namespace,
                pod_name=pod_name,
                resource_version=resource_version,
            )

        lookup = await asyncio.to_thread(self.cluster.get_resource_version, namespace, pod_name)
        if lookup.result == ClusterResult.NOT_FOUND:
            self._reject(
                source,
                "pod-not-found",
                f"Pod {subject_key} not found",
                subject=subject_key,
            )
        if not lookup.result.ok or not lookup.resource_version:
            self._reject(
                source,
                "unresolvable-subject",
                f"Could not resolve resourceVersion for {subject_key}: {lookup.result.value}",
                subject=subject_key,
            )

        return WorkloadRef(
            namespace=namespace,
            pod_name=pod_name,
            resource_version=lookup.resource_version,
        )
