"""
Cluster mutation capability used by the ingestor and the reconciler.

Remediation never shells out to kubectl: every mutation goes through a
ClusterClient so it can be audited and replaced by a fake in tests.
"""

from __future__ import annotations

import abc
import itertools
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple


class ClusterResult(str, Enum):
    SUCCESS = "success"
    UNCHANGED = "unchanged"  # desired state already present, no-op success
    CONFLICT = "conflict"
    NOT_FOUND = "not-found"
    FORBIDDEN = "forbidden"
    REJECTED = "rejected"  # request refused as invalid (400/422), permanent
    TRANSIENT_ERROR = "transient-error"

    @property
    def ok(self) -> bool:
        return self in (ClusterResult.SUCCESS, ClusterResult.UNCHANGED)

    @property
    def retryable(self) -> bool:
        return self in (ClusterResult.CONFLICT, ClusterResult.TRANSIENT_ERROR)


@dataclass(frozen=True)
class VersionLookup:
    result: ClusterResult
    resource_version: Optional[str] = None


class ClusterClient(abc.ABC):
    """
    Abstract cluster control plane.

    Implementations must be safe to call from worker threads and must make
    every mutation idempotent: re-applying state that is already present
    returns UNCHANGED, not an error.
    """

    @abc.abstractmethod
    def get_resource_version(self, namespace: str, pod_name: str) -> VersionLookup:
        ...

    @abc.abstractmethod
    def apply_label(
        self, namespace: str, pod_name: str, labels: Dict[str, str]
    ) -> ClusterResult:
        ...

    @abc.abstractmethod
    def apply_network_policy(
        self,
        namespace: str,
        policy_name: str,
        pod_selector: Dict[str, str],
        deny_ingress: bool = True,
        deny_egress_except_dns: bool = True,
    ) -> ClusterResult:
        ...

    @abc.abstractmethod
    def scale_deployment(
        self, namespace: str, deployment: str, replicas: int
    ) -> ClusterResult:
        ...


# ---------------------------------------------------------------------------
# In-memory implementation (tests and CLUSTER_BACKEND=memory)
# ---------------------------------------------------------------------------

@dataclass
class _Pod:
    labels: Dict[str, str] = field(default_factory=dict)
    resource_version: int = 1


class InMemoryClusterClient(ClusterClient):
    """
    Thread-safe fake cluster.

    Every effective mutation bumps the pod's resourceVersion, like the real
    API server. `fail_next(...)` scripts failures for the next calls of an
    operation, and `calls` records every mutation request in order.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pods: Dict[Tuple[str, str], _Pod] = {}
        self._policies: Dict[Tuple[str, str], Dict[str, object]] = {}
        self._deployments: Dict[Tuple[str, str], int] = {}
        self._scripted: Dict[str, List[ClusterResult]] = {}
        self._version_counter = itertools.count(100)
        self.calls: List[Tuple[str, str]] = []

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------

    def add_pod(
        self,
        namespace: str,
        pod_name: str,
        labels: Optional[Dict[str, str]] = None,
    ) -> str:
        with self._lock:
            pod = _Pod(labels=dict(labels or {}), resource_version=next(self._version_counter))
            self._pods[(namespace, pod_name)] = pod
            return str(pod.resource_version)

    def delete_pod(self, namespace: str, pod_name: str) -> None:
        with self._lock:
            self._pods.pop((namespace, pod_name), None)

    def touch_pod(self, namespace: str, pod_name: str) -> str:
        """Simulate an unrelated update (e.g. status change)."""
        with self._lock:
            pod = self._pods[(namespace, pod_name)]
            pod.resource_version = next(self._version_counter)
            return str(pod.resource_version)

    def add_deployment(self, namespace: str, name: str, replicas: int) -> None:
        with self._lock:
            self._deployments[(namespace, name)] = replicas

    def fail_next(self, operation: str, *results: ClusterResult) -> None:
        with self._lock:
            self._scripted.setdefault(operation, []).extend(results)

    def pod_labels(self, namespace: str, pod_name: str) -> Dict[str, str]:
        with self._lock:
            return dict(self._pods[(namespace, pod_name)].labels)

    def network_policy(self, namespace: str, name: str) -> Optional[Dict[str, object]]:
        with self._lock:
            policy = self._policies.get((namespace, name))
            return dict(policy) if policy is not None else None

    def deployment_replicas(self, namespace: str, name: str) -> Optional[int]:
        with self._lock:
            return self._deployments.get((namespace, name))

    def _scripted_failure(self, operation: str) -> Optional[ClusterResult]:
        queue = self._scripted.get(operation)
        if queue:
            return queue.pop(0)
        return None

    # ------------------------------------------------------------------
    # ClusterClient
    # ------------------------------------------------------------------

    def get_resource_version(self, namespace: str, pod_name: str) -> VersionLookup:
        with self._lock:
            scripted = self._scripted_failure("get_resource_version")
            if scripted is not None:
                return VersionLookup(result=scripted)
            pod = self._pods.get((namespace, pod_name))
            if pod is None:
                return VersionLookup(result=ClusterResult.NOT_FOUND)
            return VersionLookup(
                result=ClusterResult.SUCCESS,
                resource_version=str(pod.resource_version),
            )

    def apply_label(
        self, namespace: str, pod_name: str, labels: Dict[str, str]
    ) -> ClusterResult:
        with self._lock:
            self.calls.append(("apply_label", f"{namespace}/{pod_name}"))
            scripted = self._scripted_failure("apply_label")
            if scripted is not None:
                return scripted
            pod = self._pods.get((namespace, pod_name))
            if pod is None:
                return ClusterResult.NOT_FOUND
            if all(pod.labels.get(k) == v for k, v in labels.items()):
                return ClusterResult.UNCHANGED
            pod.labels.update(labels)
            pod.resource_version = next(self._version_counter)
            return ClusterResult.SUCCESS

    def apply_network_policy(
        self,
        namespace: str,
        policy_name: str,
        pod_selector: Dict[str, str],
        deny_ingress: bool = True,
        deny_egress_except_dns: bool = True,
    ) -> ClusterResult:
        with self._lock:
            self.calls.append(("apply_network_policy", f"{namespace}/{policy_name}"))
            scripted = self._scripted_failure("apply_network_policy")
            if scripted is not None:
                return scripted
            desired = {
                "pod_selector": dict(pod_selector),
                "deny_ingress": deny_ingress,
                "deny_egress_except_dns": deny_egress_except_dns,
            }
            key = (namespace, policy_name)
            if self._policies.get(key) == desired:
                return ClusterResult.UNCHANGED
            self._policies[key] = desired
            return ClusterResult.SUCCESS

    def scale_deployment(
        self, namespace: str, deployment: str, replicas: int
    ) -> ClusterResult:
        with self._lock:
            self.calls.append(("scale_deployment", f"{namespace}/{deployment}"))
            scripted = self._scripted_failure("scale_deployment")
            if scripted is not None:
                return scripted
            key = (namespace, deployment)
            if key not in self._deployments:
                return ClusterResult.NOT_FOUND
            if self._deployments[key] == replicas:
                return ClusterResult.UNCHANGED
            self._deployments[key] = replicas
            return ClusterResult.SUCCESS
