from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .signal_models import WorkloadRef, utcnow


class Decision(str, Enum):
    IGNORE = "ignore"
    WATCH = "watch"
    QUARANTINE = "quarantine"

    @property
    def rank(self) -> int:
        return _RANKS[self]

    def escalated(self) -> "Decision":
        if self is Decision.IGNORE:
            return Decision.WATCH
        return Decision.QUARANTINE


_RANKS = {
    Decision.IGNORE: 0,
    Decision.WATCH: 1,
    Decision.QUARANTINE: 2,
}


class Verdict(BaseModel):
    """
    Policy decision for exactly one ThreatSignal. Produced once, never mutated.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    signal_id: str
    subject: WorkloadRef
    decision: Decision
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasons: List[str] = Field(default_factory=list)
    matched_rule: Optional[str] = None
    escalated: bool = False
    created_at: datetime = Field(default_factory=utcnow)
