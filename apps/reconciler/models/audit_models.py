from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class AuditKind(str, Enum):
    SIGNAL = "signal"
    VERDICT = "verdict"
    PLAN = "plan"
    OUTCOME = "outcome"
    PLAN_STATE = "plan_state"
    ERROR = "error"
    ALERT = "alert"


class AuditEntry(BaseModel):
    """
    One line of the audit log.

    `seq` is the total order. `recorded_at` is informational only; ordering
    never relies on wall-clock time.
    """
    model_config = ConfigDict(frozen=True)

    seq: int = Field(..., ge=1)
    kind: AuditKind
    subject: Optional[str] = None
    ref_id: Optional[str] = None
    recorded_at: datetime
    data: Dict[str, Any] = Field(default_factory=dict)
