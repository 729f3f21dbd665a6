"""
Pydantic models for threat signals.

Inbound shapes:
  - RuntimeMonitorEvent  rule match from the runtime security monitor
  - ClassifierScore      anomaly score callback from the classifier service
  - FeatureScoreRequest  raw features to be scored by the classifier

Canonical shape:
  - ThreatSignal         normalized, immutable observation about one pod
"""

from __future__ import annotations

import base64
import binascii
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


def _new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SignalSource(str, Enum):
    RUNTIME_MONITOR = "runtime-monitor"
    CLASSIFIER = "classifier"


class WorkloadRef(BaseModel):
    """
    Exact cluster object version a signal pertains to.

    `subject_key` ignores the version: it names the pod, not the snapshot.
    """
    model_config = ConfigDict(frozen=True)

    namespace: str = Field(..., min_length=1)
    pod_name: str = Field(..., min_length=1)
    resource_version: str = Field(..., min_length=1)

    @property
    def subject_key(self) -> str:
        return f"{self.namespace}/{self.pod_name}"

    def with_version(self, resource_version: str) -> "WorkloadRef":
        return WorkloadRef(
            namespace=self.namespace,
            pod_name=self.pod_name,
            resource_version=resource_version,
        )


class ThreatSignal(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    source: SignalSource
    subject: WorkloadRef
    severity: float = Field(..., ge=0.0, le=1.0)
    raw_payload: bytes = b""
    observed_at: datetime = Field(default_factory=utcnow)

    rule_id: Optional[str] = None
    model_version: Optional[str] = None

    # Supersede chain for signals re-queued after a stale plan.
    supersedes: Optional[str] = None
    origin_id: Optional[str] = None
    generation: int = Field(0, ge=0)

    @property
    def root_id(self) -> str:
        return self.origin_id or self.id

    @field_validator("raw_payload", mode="before")
    @classmethod
    def _decode_payload(cls, value: Any) -> Any:
        # Audit records carry the payload base64 encoded.
        if isinstance(value, str):
            try:
                return base64.b64decode(value.encode("ascii"), validate=True)
            except (binascii.Error, UnicodeEncodeError):
                return value.encode("utf-8")
        return value

    @field_serializer("raw_payload", when_used="json")
    def _encode_payload(self, value: bytes) -> str:
        return base64.b64encode(value).decode("ascii")


# ---------------------------------------------------------------------------
# Inbound schemas
# ---------------------------------------------------------------------------

class RuntimeMonitorEvent(BaseModel):
    """
    Rule match from the runtime monitor (Falco-style), e.g.:

      {
        "rule_id": "terminal_shell_in_container",
        "namespace": "payments",
        "pod_name": "api-7d9c6b5f4-x2x8q",
        "container_id": "3f2a...",
        "priority": "Warning",
        "raw_arguments": "{\"proc.cmdline\": \"bash -i\", \"user.name\": \"root\"}"
      }

    `raw_arguments` is kept opaque; the risk evaluator parses it.
    """
    rule_id: str = Field(..., min_length=1)
    namespace: Optional[str] = None
    pod_name: Optional[str] = None
    container_id: Optional[str] = None
    resource_version: Optional[str] = None
    priority: Optional[str] = None
    raw_arguments: str = ""
    time: Optional[datetime] = None


class ClassifierScore(BaseModel):
    """Score callback from the anomaly classifier."""
    namespace: Optional[str] = None
    pod_name: Optional[str] = None
    resource_version: Optional[str] = None
    score: float
    model_version: str = Field(..., min_length=1)
    features: Dict[str, Any] = Field(default_factory=dict)


class FeatureScoreRequest(BaseModel):
    """Features to be scored by the classifier before ingestion."""
    namespace: str = Field(..., min_length=1)
    pod_name: str = Field(..., min_length=1)
    resource_version: Optional[str] = None
    features: Dict[str, Any] = Field(default_factory=dict)
