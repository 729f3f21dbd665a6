import asyncio
import contextlib
import logging
import random
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

from opentelemetry import trace
from prometheus_client import Counter, Gauge, Histogram

from ..errors import PermanentClusterError, StaleStateError, TransientClusterError
from ..models.action_models import (
    ApplyNetworkPolicy,
    LabelPod,
    Outcome,
    OutcomeStatus,
    PlanState,
    RemediationPlan,
    ScaleDeployment,
)
from ..models.verdict_models import Decision
from .alerts import AlertSink
from .audit_log import AuditLog
from .cluster_client import ClusterClient, ClusterResult, VersionLookup
from .lease_table import LeaseTable

logger = logging.getLogger("podsentry.reconciler")
tracer = trace.get_tracer(__name__)

# --------------------------------------------------------------------------
# Prometheus metrics
# --------------------------------------------------------------------------

RECONCILER_PLANS_TOTAL = Counter(
    "podsentry_reconciler_plans_total",
    "Remediation plans reaching a terminal state",
    ["decision", "state"],
)

RECONCILER_OUTCOMES_TOTAL = Counter(
    "podsentry_reconciler_outcomes_total",
    "Per-action outcomes recorded by the reconciler",
    ["kind", "status"],
)

RECONCILER_RETRIES_TOTAL = Counter(
    "podsentry_reconciler_retries_total",
    "Retries scheduled after transient cluster failures",
    ["kind"],
)

RECONCILER_STALE_PLANS_TOTAL = Counter(
    "podsentry_reconciler_stale_plans_total",
    "Plans dropped because the subject's resourceVersion moved on",
)

RECONCILER_QUEUE_DEPTH = Gauge(
    "podsentry_reconciler_queue_depth",
    "Plans waiting for a reconciler worker",
)

RECONCILER_PLAN_DURATION_SECONDS = Histogram(
    "podsentry_reconciler_plan_duration_seconds",
    "Time from plan submission to terminal state",
    buckets=(0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300),
)

VERSION_CHECK = "resource-version-check"

StaleCallback = Callable[[RemediationPlan, str], Awaitable[Any]]


@dataclass
class _InFlight:
    plan: RemediationPlan
    holder: str
    cancel: asyncio.Event = field(default_factory=asyncio.Event)


class _Superseded(Exception):
    """Internal: a stronger plan for the same subject cancelled this one."""
    pass


class _Abandon(Exception):
    """Internal: the plan cannot be completed without a human."""

    def __init__(self, reason: str, attempts: int, error: Optional[str]) -> None:
        super().__init__(reason)
        self.reason = reason
        self.attempts = attempts
        self.error = error


def _raise_for_result(result: ClusterResult, what: str) -> None:
    if result.ok:
        return
    if result.retryable:
        raise TransientClusterError(f"{what}: {result.value}", status=result.value)
    raise PermanentClusterError(f"{what}: {result.value}", status=result.value)


class Reconciler:
    """
    Drives RemediationPlans to the cluster.

    Guarantees:
      - plans for one subject run in submission order, one at a time
        (per-subject FIFO plus a lease held by the worker)
      - plans for different subjects run concurrently on `workers` tasks
      - an idempotency key that already reached `applied` is never applied
        again; weaker decisions on a subject that already holds a stronger
        one collapse to `skipped-noop`
      - the subject's resourceVersion is checked before the first mutation;
        a mismatch drops the plan as stale and hands it to `on_stale`
      - transient failures retry with non-decreasing exponential backoff,
        bounded by `max_attempts` and `max_retry_duration_seconds`
      - permanent failures and exhausted retries abandon the plan and
        raise an alert
      - the subject lease is renewed before every attempt; a plan whose
        lease was taken over is abandoned as `lease-lost`

    Cluster calls run in a worker thread bounded by `apply_timeout_seconds`.
    A thread that outlives the timeout cannot be cancelled and may still
    land its write; the Kubernetes client's own request timeout is set
    below the apply timeout so this is rare, and every mutation is
    idempotent so the retry converges on the same state.

    Every transition and outcome goes to the audit log before the next
    step starts.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        audit_log: AuditLog,
        lease_table: LeaseTable,
        alert_sink: AlertSink,
        on_stale: Optional[StaleCallback] = None,
        workers: int = 4,
        max_attempts: int = 5,
        base_backoff_seconds: float = 0.5,
        max_backoff_seconds: float = 30.0,
        max_retry_duration_seconds: float = 300.0,
        apply_timeout_seconds: float = 10.0,
        lease_retry_seconds: float = 0.5,
        holder_prefix: str = "reconciler",
    ) -> None:
        self.cluster = cluster
        self.audit_log = audit_log
        self.lease_table = lease_table
        self.alert_sink = alert_sink
        self.on_stale = on_stale

        self.workers = max(1, workers)
        self.max_attempts = max(1, max_attempts)
        self.base_backoff_seconds = base_backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.max_retry_duration_seconds = max_retry_duration_seconds
        self.apply_timeout_seconds = apply_timeout_seconds
        self.lease_retry_seconds = lease_retry_seconds
        self.holder_prefix = holder_prefix

        # Subject keys with pending plans; each key is queued at most once.
        self.queue: "asyncio.Queue[str]" = asyncio.Queue()
        self._pending: Dict[str, Deque[RemediationPlan]] = {}
        self._scheduled: Set[str] = set()
        self._in_flight: Dict[str, _InFlight] = {}
        self._submitted_at: Dict[str, float] = {}

        # Idempotency ledger
        self._applied_keys: Set[str] = set()
        self._applied_rank: Dict[str, int] = {}

        # Non-terminal plans only; finished plans are looked up in the audit log
        self._states: Dict[str, PlanState] = {}
        self._worker_tasks: List[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def load_ledger(self) -> int:
        """Rebuild the idempotency ledger from `applied` audit entries."""
        count = 0
        for subject, key, decision in self.audit_log.applied_plans():
            if not key:
                continue
            self._applied_keys.add(key)
            try:
                rank = Decision(decision).rank
            except ValueError:
                continue
            self._applied_rank[subject] = max(self._applied_rank.get(subject, -1), rank)
            count += 1
        if count:
            logger.info("Reconciler: restored %d applied plan(s) from audit log", count)
        return count

    async def start(self) -> None:
        if self._worker_tasks:
            return
        logger.info("Starting reconciler with %d worker(s)", self.workers)
        for i in range(self.workers):
            holder = f"{self.holder_prefix}-{i}"
            self._worker_tasks.append(asyncio.create_task(self._worker(holder)))
        RECONCILER_QUEUE_DEPTH.set(self.pending_count())

    async def stop(self) -> None:
        if not self._worker_tasks:
            return
        logger.info("Stopping reconciler workers")
        for task in self._worker_tasks:
            task.cancel()
        for task in self._worker_tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._worker_tasks = []

    async def join(self) -> None:
        """Wait until every submitted plan has reached a terminal state."""
        await self.queue.join()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, plan: RemediationPlan) -> bool:
        """
        Queue a plan behind earlier plans for the same subject.

        A stronger decision supersedes weaker plans still waiting and
        cancels a weaker plan that is backing off between retries.
        Synchronous so callers keep per-subject submission order.
        """
        if plan.is_empty:
            return False

        subject = plan.subject.subject_key
        rank = plan.decision.rank
        self._set_state(plan, PlanState.PENDING)
        self._submitted_at[plan.id] = time.time()

        pending = self._pending.setdefault(subject, deque())
        weaker = [p for p in pending if p.decision.rank < rank]
        for old in weaker:
            pending.remove(old)
            self._supersede(old, by=plan)

        in_flight = self._in_flight.get(subject)
        if in_flight is not None and in_flight.plan.decision.rank < rank:
            logger.info(
                "Plan %s (%s) preempts in-flight plan %s (%s) on %s",
                plan.id,
                plan.decision.value,
                in_flight.plan.id,
                in_flight.plan.decision.value,
                subject,
            )
            in_flight.cancel.set()

        pending.append(plan)
        if subject not in self._scheduled:
            self._scheduled.add(subject)
            self.queue.put_nowait(subject)

        RECONCILER_QUEUE_DEPTH.set(self.pending_count())
        return True

    def _supersede(self, plan: RemediationPlan, by: RemediationPlan) -> None:
        detail = f"superseded by plan {by.id} ({by.decision.value})"
        self._record_outcome(plan, None, OutcomeStatus.SUPERSEDED, 0, error=detail)
        self._finish(plan, PlanState.SUPERSEDED, detail)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _worker(self, holder: str) -> None:
        while True:
            subject = await self.queue.get()
            try:
                await self._drain_subject(subject, holder)
            except Exception:  # noqa: BLE001
                logger.exception("Reconciler: unhandled error while draining %s", subject)
            finally:
                self.queue.task_done()
                RECONCILER_QUEUE_DEPTH.set(self.pending_count())

    async def _drain_subject(self, subject: str, holder: str) -> None:
        if not self.lease_table.acquire(subject, holder):
            # Another process holds the subject; come back later.
            logger.debug(
                "Lease on %s held by %s, retrying in %.1fs",
                subject,
                self.lease_table.holder_of(subject),
                self.lease_retry_seconds,
            )
            await asyncio.sleep(self.lease_retry_seconds)
            self.queue.put_nowait(subject)
            return

        try:
            pending = self._pending.get(subject)
            while pending:
                plan = pending.popleft()
                await self._process(plan, holder)
                if pending and not self.lease_table.renew(subject, holder):
                    # Requeued below; the rest waits for the lease again.
                    logger.warning("Lease on %s lost by %s between plans", subject, holder)
                    break
        finally:
            self.lease_table.release(subject, holder)
            # No await since the last empty check: a plan submitted meanwhile
            # would have found the subject still scheduled.
            if self._pending.get(subject):
                self.queue.put_nowait(subject)
            else:
                self._pending.pop(subject, None)
                self._scheduled.discard(subject)

    async def process_plan(self, plan: RemediationPlan, holder: str = "direct") -> PlanState:
        """
        Run one plan to a terminal state outside the worker pool, holding
        the subject lease for the duration. Returns the final state.
        """
        subject = plan.subject.subject_key
        while not self.lease_table.acquire(subject, holder):
            await asyncio.sleep(self.lease_retry_seconds)
        try:
            if plan.id not in self._states:
                self._set_state(plan, PlanState.PENDING)
                self._submitted_at[plan.id] = time.time()
            return await self._process(plan, holder)
        finally:
            self.lease_table.release(subject, holder)

    # ------------------------------------------------------------------
    # Core logic
    # ------------------------------------------------------------------

    async def _process(self, plan: RemediationPlan, holder: str) -> PlanState:
        subject = plan.subject.subject_key
        in_flight = _InFlight(plan=plan, holder=holder)
        self._in_flight[subject] = in_flight

        with tracer.start_as_current_span("podsentry.reconcile") as span:
            span.set_attribute("podsentry.plan.id", plan.id)
            span.set_attribute("podsentry.plan.decision", plan.decision.value)
            span.set_attribute("podsentry.subject", subject)
            try:
                state = await self._reconcile(plan, in_flight)
            finally:
                if self._in_flight.get(subject) is in_flight:
                    del self._in_flight[subject]
            span.set_attribute("podsentry.plan.state", state.value)
            return state

    async def _reconcile(self, plan: RemediationPlan, in_flight: _InFlight) -> PlanState:
        subject = plan.subject.subject_key

        if self._already_satisfied(plan):
            detail = "idempotency key already applied"
            if plan.idempotency_key not in self._applied_keys:
                detail = "stronger decision already applied"
            logger.info("Plan %s on %s skipped: %s", plan.id, subject, detail)
            self._record_outcome(plan, None, OutcomeStatus.SKIPPED_NOOP, 0, error=None)
            return self._finish(plan, PlanState.SKIPPED, detail)

        self._set_state(plan, PlanState.APPLYING)
        started = time.monotonic()

        try:
            await self._check_version(plan, in_flight, started)
            for action in plan.steps:
                if in_flight.cancel.is_set():
                    raise _Superseded()
                await self._apply_action(plan, action, in_flight, started)
        except StaleStateError as exc:
            return await self._handle_stale(plan, exc)
        except _Superseded:
            detail = "preempted by a stronger plan"
            logger.info("Plan %s on %s %s", plan.id, subject, detail)
            self._record_outcome(plan, None, OutcomeStatus.SUPERSEDED, 0, error=detail)
            return self._finish(plan, PlanState.SUPERSEDED, detail)
        except _Abandon as exc:
            self._set_state(plan, PlanState.FAILED, exc.error)
            await self.alert_sink.plan_abandoned(
                plan, reason=exc.reason, attempts=exc.attempts, error=exc.error
            )
            return self._finish(plan, PlanState.ABANDONED, exc.reason)

        self._applied_keys.add(plan.idempotency_key)
        self._applied_rank[subject] = max(self._applied_rank.get(subject, -1), plan.decision.rank)
        logger.info(
            "Plan %s applied on %s (%s, %d step(s))",
            plan.id,
            subject,
            plan.decision.value,
            len(plan.steps),
        )
        return self._finish(plan, PlanState.APPLIED)

    def _already_satisfied(self, plan: RemediationPlan) -> bool:
        if plan.idempotency_key in self._applied_keys:
            return True
        applied_rank = self._applied_rank.get(plan.subject.subject_key, -1)
        return applied_rank > plan.decision.rank

    async def _handle_stale(self, plan: RemediationPlan, exc: StaleStateError) -> PlanState:
        logger.warning("%s; dropping plan %s", exc, plan.id)
        RECONCILER_STALE_PLANS_TOTAL.inc()
        self.audit_log.record_error(
            "StaleStateError",
            str(exc),
            subject=plan.subject.subject_key,
            ref_id=plan.id,
            context={"expected": exc.expected, "actual": exc.actual},
        )
        state = self._finish(plan, PlanState.STALE, f"live resourceVersion={exc.actual}")
        if self.on_stale is not None:
            try:
                await self.on_stale(plan, exc.actual)
            except Exception:  # noqa: BLE001
                logger.exception("Re-evaluation hook failed for stale plan %s", plan.id)
        return state

    # ------------------------------------------------------------------
    # Cluster calls with retries
    # ------------------------------------------------------------------

    async def _check_version(
        self, plan: RemediationPlan, in_flight: _InFlight, started: float
    ) -> None:
        subject = plan.subject
        holder: Dict[str, Optional[str]] = {}

        def lookup() -> ClusterResult:
            found: VersionLookup = self.cluster.get_resource_version(
                subject.namespace, subject.pod_name
            )
            holder["version"] = found.resource_version
            return found.result

        await self._with_retries(plan, None, VERSION_CHECK, lookup, in_flight, started)

        live = holder.get("version")
        if live is not None and live != subject.resource_version:
            raise StaleStateError(subject.subject_key, subject.resource_version, live)

    async def _apply_action(
        self, plan: RemediationPlan, action: Any, in_flight: _InFlight, started: float
    ) -> None:
        if isinstance(action, LabelPod):
            call = lambda: self.cluster.apply_label(  # noqa: E731
                action.namespace, action.pod_name, dict(action.labels)
            )
        elif isinstance(action, ApplyNetworkPolicy):
            call = lambda: self.cluster.apply_network_policy(  # noqa: E731
                action.namespace,
                action.policy_name,
                dict(action.pod_selector),
                deny_ingress=action.deny_ingress,
                deny_egress_except_dns=action.deny_egress_except_dns,
            )
        elif isinstance(action, ScaleDeployment):
            call = lambda: self.cluster.scale_deployment(  # noqa: E731
                action.namespace, action.deployment, action.replicas
            )
        else:
            raise _Abandon("unsupported-action", 0, f"unknown action {action!r}")

        await self._with_retries(plan, action.id, action.kind, call, in_flight, started)

    async def _with_retries(
        self,
        plan: RemediationPlan,
        action_id: Optional[str],
        kind: str,
        call: Callable[[], ClusterResult],
        in_flight: _InFlight,
        started: float,
    ) -> ClusterResult:
        subject = plan.subject.subject_key
        previous_backoff = 0.0
        attempt = 0

        while True:
            attempt += 1
            if not self.lease_table.renew(subject, in_flight.holder):
                logger.error(
                    "Lease lost: plan=%s kind=%s subject=%s holder=%s attempt=%d",
                    plan.id,
                    kind,
                    subject,
                    in_flight.holder,
                    attempt,
                )
                if action_id is not None:
                    self._record_outcome(
                        plan, action_id, OutcomeStatus.FAILED, attempt - 1, "lease lost"
                    )
                raise _Abandon("lease-lost", attempt - 1, "lease lost before attempt")

            try:
                try:
                    result = await asyncio.wait_for(
                        asyncio.to_thread(call), timeout=self.apply_timeout_seconds
                    )
                except asyncio.TimeoutError:
                    raise TransientClusterError(
                        f"{kind} timed out after {self.apply_timeout_seconds:.1f}s",
                        status="timeout",
                    ) from None
                _raise_for_result(result, kind)

            except PermanentClusterError as exc:
                logger.error(
                    "Permanent failure: plan=%s kind=%s subject=%s attempt=%d error=%s",
                    plan.id,
                    kind,
                    subject,
                    attempt,
                    exc,
                )
                self._record_error(plan, exc, kind, attempt)
                if action_id is not None:
                    self._record_outcome(plan, action_id, OutcomeStatus.FAILED, attempt, str(exc))
                raise _Abandon(exc.status or "permanent-error", attempt, str(exc)) from exc

            except Exception as exc:  # noqa: BLE001
                if not isinstance(exc, TransientClusterError):
                    logger.exception("Unexpected error from cluster client during %s", kind)
                self._record_error(plan, exc, kind, attempt)

                elapsed = time.monotonic() - started
                backoff = self._compute_backoff(attempt - 1, previous_backoff)
                if attempt >= self.max_attempts or elapsed + backoff > self.max_retry_duration_seconds:
                    logger.error(
                        "Retries exhausted: plan=%s kind=%s subject=%s attempts=%d elapsed=%.1fs",
                        plan.id,
                        kind,
                        subject,
                        attempt,
                        elapsed,
                    )
                    if action_id is not None:
                        self._record_outcome(
                            plan, action_id, OutcomeStatus.FAILED, attempt, str(exc)
                        )
                    raise _Abandon("retries-exhausted", attempt, str(exc)) from exc

                logger.warning(
                    "Transient failure: plan=%s kind=%s subject=%s attempt=%d/%d "
                    "error=%s; retrying in %.2fs",
                    plan.id,
                    kind,
                    subject,
                    attempt,
                    self.max_attempts,
                    exc,
                    backoff,
                )
                RECONCILER_RETRIES_TOTAL.labels(kind=kind).inc()
                self._record_outcome(
                    plan,
                    action_id,
                    OutcomeStatus.RETRYING,
                    attempt,
                    str(exc),
                    backoff_seconds=backoff,
                )
                previous_backoff = backoff
                self._set_state(plan, PlanState.FAILED, str(exc))

                if await self._wait_or_cancelled(in_flight, backoff):
                    raise _Superseded() from exc
                self._set_state(plan, PlanState.APPLYING, f"retry attempt {attempt + 1}")
                continue

            if action_id is not None:
                status = (
                    OutcomeStatus.SKIPPED_NOOP
                    if result == ClusterResult.UNCHANGED
                    else OutcomeStatus.APPLIED
                )
                self._record_outcome(plan, action_id, status, attempt, None)
                RECONCILER_OUTCOMES_TOTAL.labels(kind=kind, status=status.value).inc()
            return result

    def _compute_backoff(self, attempt: int, previous: float) -> float:
        base = min(self.max_backoff_seconds, self.base_backoff_seconds * (2 ** attempt))
        jitter = random.uniform(0, base * 0.2)
        # jitter must never make the next wait shorter than the last one
        return max(previous, base + jitter)

    @staticmethod
    async def _wait_or_cancelled(in_flight: _InFlight, delay: float) -> bool:
        try:
            await asyncio.wait_for(in_flight.cancel.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _set_state(
        self, plan: RemediationPlan, state: PlanState, detail: Optional[str] = None
    ) -> None:
        if state.terminal:
            self._states.pop(plan.id, None)
        else:
            self._states[plan.id] = state
        self.audit_log.record_plan_state(plan, state, detail)

    def _finish(
        self, plan: RemediationPlan, state: PlanState, detail: Optional[str] = None
    ) -> PlanState:
        self._set_state(plan, state, detail)
        RECONCILER_PLANS_TOTAL.labels(decision=plan.decision.value, state=state.value).inc()
        submitted = self._submitted_at.pop(plan.id, None)
        if submitted is not None:
            RECONCILER_PLAN_DURATION_SECONDS.observe(time.time() - submitted)
        return state

    def _record_outcome(
        self,
        plan: RemediationPlan,
        action_id: Optional[str],
        status: OutcomeStatus,
        attempt: int,
        error: Optional[str],
        backoff_seconds: Optional[float] = None,
    ) -> Outcome:
        outcome = Outcome(
            plan_id=plan.id,
            action_id=action_id,
            status=status,
            attempt=attempt,
            error=error,
            backoff_seconds=backoff_seconds,
        )
        self.audit_log.record_outcome(outcome, subject=plan.subject.subject_key)
        return outcome

    def _record_error(
        self, plan: RemediationPlan, exc: BaseException, kind: str, attempt: int
    ) -> None:
        self.audit_log.record_error(
            type(exc).__name__,
            str(exc),
            subject=plan.subject.subject_key,
            ref_id=plan.id,
            context={"kind": kind, "attempt": attempt},
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def plan_state(self, plan_id: str) -> Optional[PlanState]:
        state = self._states.get(plan_id)
        if state is None:
            state = self.audit_log.last_plan_state(plan_id)
        return state

    def pending_count(self) -> int:
        return sum(len(q) for q in self._pending.values())

    def status(self) -> Dict[str, Any]:
        return {
            "workers": len(self._worker_tasks),
            "running": bool(self._worker_tasks),
            "pending_plans": self.pending_count(),
            "scheduled_subjects": sorted(self._scheduled),
            "in_flight": {
                subject: {
                    "plan_id": f.plan.id,
                    "decision": f.plan.decision.value,
                }
                for subject, f in self._in_flight.items()
            },
            "tracked_plans": len(self._states),
            "applied_keys": len(self._applied_keys),
            "leases": [
                {"subject": l.subject, "holder": l.holder, "expires_at": l.expires_at}
                for l in self.lease_table.snapshot()
            ],
        }
