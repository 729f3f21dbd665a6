from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Dict

from fastapi import APIRouter, HTTPException, Request

logger = logging.getLogger("podsentry.api")

router = APIRouter(tags=["reconciler"])


@router.get("/reconciler/status")
def reconciler_status(request: Request) -> Dict[str, Any]:
    pipeline = request.app.state.pipeline
    status = pipeline.reconciler.status()
    status["ingest_queue_depth"] = pipeline.ingestor.queue.qsize()
    status["policy"] = {
        "source": pipeline.policy_store.source,
        "rules": [r.name for r in pipeline.policy_store.get_rules()],
    }
    status["audit_last_seq"] = pipeline.audit_log.last_seq
    return status


@router.post("/policies/reload")
def reload_policies(request: Request) -> Dict[str, Any]:
    """Re-read POLICY_PATH; on failure the last good rule set stays active."""
    result = request.app.state.pipeline.policy_store.reload()
    if not result.ok:
        logger.warning("Policy reload rejected: %s", result.error)
        raise HTTPException(status_code=422, detail=asdict(result))
    return asdict(result)
