from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query, Request

from ..models.audit_models import AuditKind

router = APIRouter(
    prefix="/audit",
    tags=["audit"],
)


@router.get("")
def get_audit_trail(
    request: Request,
    namespace: Optional[str] = None,
    pod: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    since_seq: int = Query(0, ge=0),
    kind: Optional[List[AuditKind]] = Query(None),
    limit: int = Query(500, ge=1, le=10000),
) -> Dict[str, Any]:
    """
    Decision trail in sequence order.

    `namespace` + `pod` select one subject; `namespace` alone selects every
    pod in it.
    """
    if pod and not namespace:
        raise HTTPException(status_code=422, detail="pod filter requires namespace")

    audit_log = request.app.state.pipeline.audit_log
    subject = f"{namespace}/{pod}" if namespace and pod else None

    entries = audit_log.replay(
        subject=subject,
        since=since,
        until=until,
        since_seq=since_seq,
        kinds=kind,
        limit=None if namespace and not pod else limit,
    )
    if namespace and not pod:
        prefix = f"{namespace}/"
        entries = [e for e in entries if (e.subject or "").startswith(prefix)][:limit]

    return {
        "count": len(entries),
        "last_seq": audit_log.last_seq,
        "entries": [e.model_dump(mode="json") for e in entries],
    }
