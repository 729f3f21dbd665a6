"""
Pydantic models for remediation actions, plans and outcomes.

These models are used across:
  - Action Planner (verdict -> plan)
  - Reconciler Loop (plan -> cluster mutations -> outcomes)
  - Audit Log records and the /v1/audit API
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .signal_models import WorkloadRef, utcnow
from .verdict_models import Decision


def _new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Actions (tagged variant on `kind`)
# ---------------------------------------------------------------------------

class LabelPod(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["label_pod"] = "label_pod"
    id: str = Field(default_factory=_new_id)
    namespace: str
    pod_name: str
    labels: Dict[str, str]


class ApplyNetworkPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["apply_network_policy"] = "apply_network_policy"
    id: str = Field(default_factory=_new_id)
    namespace: str
    pod_name: str
    policy_name: str
    pod_selector: Dict[str, str]
    deny_ingress: bool = True
    deny_egress_except_dns: bool = True


class ScaleDeployment(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["scale_deployment"] = "scale_deployment"
    id: str = Field(default_factory=_new_id)
    namespace: str
    deployment: str
    replicas: int = Field(..., ge=0)


Action = Annotated[
    Union[LabelPod, ApplyNetworkPolicy, ScaleDeployment],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------

class PlanState(str, Enum):
    PENDING = "pending"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"
    ABANDONED = "abandoned"
    STALE = "stale"
    SUPERSEDED = "superseded"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (
            PlanState.APPLIED,
            PlanState.ABANDONED,
            PlanState.STALE,
            PlanState.SUPERSEDED,
            PlanState.SKIPPED,
        )


class RemediationPlan(BaseModel):
    """
    Idempotent set of desired-state mutations for one Verdict.

    `idempotency_key` depends only on (namespace, pod_name, decision), so
    re-evaluating the same subject never yields a second set of mutations.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    verdict_id: str
    signal_id: str
    subject: WorkloadRef
    decision: Decision
    steps: List[Action] = Field(default_factory=list)
    idempotency_key: str
    template_version: str = "v1"
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_empty(self) -> bool:
        return not self.steps


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

class OutcomeStatus(str, Enum):
    APPLIED = "applied"
    SKIPPED_NOOP = "skipped-noop"
    FAILED = "failed"
    RETRYING = "retrying"
    SUPERSEDED = "superseded"


class Outcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    plan_id: str
    action_id: Optional[str] = None
    status: OutcomeStatus
    attempt: int = Field(0, ge=0)
    timestamp: datetime = Field(default_factory=utcnow)
    error: Optional[str] = None
    backoff_seconds: Optional[float] = None
