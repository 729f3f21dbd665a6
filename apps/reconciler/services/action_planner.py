from __future__ import annotations

import hashlib
import logging
from typing import Callable, Dict, List

from opentelemetry import trace

from ..models.action_models import (
    ApplyNetworkPolicy,
    LabelPod,
    RemediationPlan,
    ScaleDeployment,
)
from ..models.signal_models import WorkloadRef
from ..models.verdict_models import Decision, Verdict
from ..utils.naming import deployment_from_pod_name, quarantine_policy_name

logger = logging.getLogger("podsentry.planner")
tracer = trace.get_tracer(__name__)

QUARANTINE_LABEL = "podsentry.io/quarantine"
QUARANTINE_ID_LABEL = "podsentry.io/quarantine-id"
WATCH_LABEL = "podsentry.io/watch"


def idempotency_key(subject: WorkloadRef, decision: Decision) -> str:
    """sha256 over (namespace, pod name, decision); the version is excluded."""
    material = "\x00".join([subject.namespace, subject.pod_name, decision.value])
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def quarantine_id(subject: WorkloadRef) -> str:
    # label values are capped at 63 chars; pod names are not
    return hashlib.sha256(subject.subject_key.encode("utf-8")).hexdigest()[:16]


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

def _quarantine_v1(subject: WorkloadRef) -> List:
    qid = quarantine_id(subject)
    return [
        LabelPod(
            namespace=subject.namespace,
            pod_name=subject.pod_name,
            labels={QUARANTINE_LABEL: "true", QUARANTINE_ID_LABEL: qid},
        ),
        ApplyNetworkPolicy(
            namespace=subject.namespace,
            pod_name=subject.pod_name,
            policy_name=quarantine_policy_name(subject.pod_name),
            pod_selector={QUARANTINE_ID_LABEL: qid},
            deny_ingress=True,
            deny_egress_except_dns=True,
        ),
    ]


def _watch_v1(subject: WorkloadRef) -> List:
    return [
        LabelPod(
            namespace=subject.namespace,
            pod_name=subject.pod_name,
            labels={WATCH_LABEL: "true"},
        ),
    ]


def _quarantine_v2(subject: WorkloadRef) -> List:
    steps = _quarantine_v1(subject)
    deployment = deployment_from_pod_name(subject.pod_name)
    if deployment is not None:
        steps.append(
            ScaleDeployment(
                namespace=subject.namespace,
                deployment=deployment,
                replicas=0,
            )
        )
    return steps


TEMPLATES: Dict[str, Dict[Decision, Callable[[WorkloadRef], List]]] = {
    "v1": {
        Decision.QUARANTINE: _quarantine_v1,
        Decision.WATCH: _watch_v1,
        Decision.IGNORE: lambda subject: [],
    },
    "v2": {
        Decision.QUARANTINE: _quarantine_v2,
        Decision.WATCH: _watch_v1,
        Decision.IGNORE: lambda subject: [],
    },
}


class ActionPlanner:
    """
    Verdict -> RemediationPlan using a fixed, versioned template.

    Pure: never talks to the cluster, so the same verdict always yields the
    same steps and the same idempotency key.
    """

    def __init__(self, template_version: str = "v1") -> None:
        if template_version not in TEMPLATES:
            raise ValueError(
                f"Unknown plan template version {template_version!r}; "
                f"expected one of {sorted(TEMPLATES)}"
            )
        self.template_version = template_version

    def plan(self, verdict: Verdict) -> RemediationPlan:
        with tracer.start_as_current_span("podsentry.plan") as span:
            template = TEMPLATES[self.template_version][verdict.decision]
            steps = template(verdict.subject)

            plan = RemediationPlan(
                verdict_id=verdict.id,
                signal_id=verdict.signal_id,
                subject=verdict.subject,
                decision=verdict.decision,
                steps=steps,
                idempotency_key=idempotency_key(verdict.subject, verdict.decision),
                template_version=self.template_version,
            )

            span.set_attribute("podsentry.plan.id", plan.id)
            span.set_attribute("podsentry.plan.decision", plan.decision.value)
            span.set_attribute("podsentry.plan.steps", len(plan.steps))
            logger.debug(
                "Planned %d step(s) for %s decision=%s key=%s",
                len(plan.steps),
                verdict.subject.subject_key,
                verdict.decision.value,
                plan.idempotency_key[:12],
            )
            return plan
