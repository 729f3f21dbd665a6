from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from ..errors import ClassifierError
from ..models.signal_models import WorkloadRef


@dataclass
class ClassifierResult:
    score: float
    model_version: str
    # Raw classifier response for debugging
    raw: Optional[Dict[str, Any]] = None


class ClassifierClient:
    """
    HTTP client for the anomaly classifier's scoring interface.

    The classifier is opaque: podsentry sends a feature vector for one pod
    and gets back a raw score plus the model version that produced it.

      POST {CLASSIFIER_URL}/v1/score
        {"namespace": ..., "pod_name": ..., "resource_version": ..., "features": {...}}
      -> {"score": 0.93, "model_version": "iforest-2024-05"}

    In Kubernetes you can set:
      CLASSIFIER_URL=http://podsentry-classifier:8501
    """

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8501",
        timeout_seconds: float = 3.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def score(self, ref: WorkloadRef, features: Dict[str, Any]) -> float:
        return (await self.evaluate(ref, features)).score

    async def evaluate(self, ref: WorkloadRef, features: Dict[str, Any]) -> ClassifierResult:
        url = f"{self.base_url}/v1/score"
        body = {
            "namespace": ref.namespace,
            "pod_name": ref.pod_name,
            "resource_version": ref.resource_version,
            "features": features,
        }

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds, transport=self._transport
            ) as client:
                resp = await client.post(url, json=body)
        except httpx.HTTPError as exc:  # network, timeout, DNS, etc.
            raise ClassifierError(f"Classifier unreachable: {exc}") from exc

        content_type = (resp.headers.get("content-type") or "").lower()
        if resp.status_code >= 400:
            raise ClassifierError(f"Classifier HTTP {resp.status_code}: {resp.text[:200]}")
        if "application/json" not in content_type:
            raise ClassifierError(f"Classifier returned non-JSON: {resp.text[:200]}")

        try:
            data = resp.json()
        except ValueError as exc:
            raise ClassifierError(f"Invalid JSON from classifier: {exc}") from exc

        if not isinstance(data, dict):
            raise ClassifierError(f"Unexpected classifier response: {data!r}")

        raw_score = data.get("score")
        if isinstance(raw_score, bool) or not isinstance(raw_score, (int, float)):
            raise ClassifierError(f"Classifier response has no numeric score: {data}")
        if math.isnan(raw_score) or math.isinf(raw_score):
            raise ClassifierError(f"Classifier returned a non-finite score: {raw_score}")

        return ClassifierResult(
            score=float(raw_score),
            model_version=str(data.get("model_version") or "unknown"),
            raw=data,
        )
