from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, HTTPException, Request, status
from opentelemetry import trace

from ..errors import ClassifierError, ValidationError
from ..models.signal_models import (
    ClassifierScore,
    FeatureScoreRequest,
    RuntimeMonitorEvent,
    ThreatSignal,
)

logger = logging.getLogger("podsentry.signals")
tracer = trace.get_tracer(__name__)

router = APIRouter(
    prefix="/signals",
    tags=["signals"],
)


def _accepted(signal: ThreatSignal) -> Dict[str, Any]:
    return {
        "accepted": True,
        "signal_id": signal.id,
        "source": signal.source.value,
        "subject": signal.subject.subject_key,
        "resource_version": signal.subject.resource_version,
        "severity": signal.severity,
    }


# ------------------------------------------------------------------------------
# POST /signals/runtime
# ------------------------------------------------------------------------------
@router.post(
    "/runtime",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Ingest a runtime-monitor rule match.",
    response_description="Signal durably recorded and queued for evaluation.",
)
async def ingest_runtime(event: RuntimeMonitorEvent, request: Request) -> Dict[str, Any]:
    """
    Webhook for the runtime monitor.

    Returns 202 once the signal is in the audit log; evaluation and
    remediation happen asynchronously.
    """
    pipeline = request.app.state.pipeline
    with tracer.start_as_current_span("signals.ingest_runtime") as span:
        span.set_attribute("podsentry.signal.rule_id", event.rule_id)
        try:
            signal = await pipeline.ingestor.ingest_runtime_event(event)
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail=str(exc))
        except Exception as exc:
            logger.exception("Failed to ingest runtime event")
            span.record_exception(exc)
            raise HTTPException(
                status_code=500,
                detail=f"Error processing runtime event: {exc}",
            )
        return _accepted(signal)


# ------------------------------------------------------------------------------
# POST /signals/classifier
# ------------------------------------------------------------------------------
@router.post(
    "/classifier",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Ingest an anomaly classifier score.",
)
async def ingest_classifier(score: ClassifierScore, request: Request) -> Dict[str, Any]:
    pipeline = request.app.state.pipeline
    with tracer.start_as_current_span("signals.ingest_classifier") as span:
        span.set_attribute("podsentry.signal.model_version", score.model_version)
        try:
            signal = await pipeline.ingestor.ingest_classifier_score(score)
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail=str(exc))
        except Exception as exc:
            logger.exception("Failed to ingest classifier score")
            span.record_exception(exc)
            raise HTTPException(
                status_code=500,
                detail=f"Error processing classifier score: {exc}",
            )
        return _accepted(signal)


# ------------------------------------------------------------------------------
# POST /signals/features
# ------------------------------------------------------------------------------
@router.post(
    "/features",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Score features with the classifier, then ingest the result.",
)
async def ingest_features(body: FeatureScoreRequest, request: Request) -> Dict[str, Any]:
    pipeline = request.app.state.pipeline
    with tracer.start_as_current_span("signals.ingest_features") as span:
        span.set_attribute("podsentry.subject", f"{body.namespace}/{body.pod_name}")
        try:
            signal = await pipeline.ingestor.score_features(body)
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail=str(exc))
        except ClassifierError as exc:
            span.record_exception(exc)
            raise HTTPException(status_code=502, detail=str(exc))
        except Exception as exc:
            logger.exception("Failed to score features")
            span.record_exception(exc)
            raise HTTPException(
                status_code=500,
                detail=f"Error scoring features: {exc}",
            )
        return _accepted(signal)
