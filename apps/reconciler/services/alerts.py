from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
from prometheus_client import Counter

from ..models.action_models import RemediationPlan
from .audit_log import AuditLog

# Dedicated logger so abandoned plans can be routed apart from retry noise.
alert_logger = logging.getLogger("podsentry.alerts")
logger = logging.getLogger("podsentry.reconciler.alerts")

ABANDONED_PLANS_TOTAL = Counter(
    "podsentry_abandoned_plans_total",
    "Plans abandoned and requiring human intervention",
    ["decision", "reason"],
)

ALERT_DELIVERY_FAILURES_TOTAL = Counter(
    "podsentry_alert_delivery_failures_total",
    "Alert webhook deliveries that failed",
)


class AlertSink:
    """
    Surfaces abandoned plans as actionable alerts:
      - ERROR on the `podsentry.alerts` logger
      - `alert` entry in the audit log
      - Prometheus counter
      - optional JSON webhook (ALERT_WEBHOOK_URL)
    """

    def __init__(
        self,
        audit_log: AuditLog,
        webhook_url: Optional[str] = None,
        timeout_seconds: float = 3.0,
    ) -> None:
        self.audit_log = audit_log
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds

    async def plan_abandoned(
        self,
        plan: RemediationPlan,
        reason: str,
        attempts: int,
        error: Optional[str] = None,
    ) -> Dict[str, Any]:
        message = (
            f"Remediation plan {plan.id} ({plan.decision.value}) for "
            f"{plan.subject.subject_key} abandoned: {reason}; human intervention required"
        )
        context = {
            "plan_id": plan.id,
            "verdict_id": plan.verdict_id,
            "signal_id": plan.signal_id,
            "decision": plan.decision.value,
            "idempotency_key": plan.idempotency_key,
            "reason": reason,
            "attempts": attempts,
            "error": error,
        }

        alert_logger.error(message)
        ABANDONED_PLANS_TOTAL.labels(decision=plan.decision.value, reason=reason).inc()
        self.audit_log.record_alert(
            message,
            subject=plan.subject.subject_key,
            ref_id=plan.id,
            context=context,
        )

        if self.webhook_url:
            await self._deliver({"message": message, "subject": plan.subject.subject_key, **context})

        return context

    async def _deliver(self, body: Dict[str, Any]) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                resp = await client.post(self.webhook_url, json=body)
            if resp.status_code >= 400:
                raise httpx.HTTPStatusError(
                    f"Alert webhook HTTP {resp.status_code}",
                    request=resp.request,
                    response=resp,
                )
        except httpx.HTTPError as exc:
            ALERT_DELIVERY_FAILURES_TOTAL.inc()
            logger.error("Failed to deliver alert to %s: %s", self.webhook_url, exc)
            self.audit_log.record_error(
                "AlertDeliveryError",
                str(exc),
                subject=body.get("subject"),
                ref_id=body.get("plan_id"),
            )
