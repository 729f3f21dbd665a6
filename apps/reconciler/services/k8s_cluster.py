from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from kubernetes import config
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api, NetworkingV1Api
from kubernetes.config.config_exception import ConfigException
from opentelemetry import trace
from prometheus_client import Counter, Histogram
from urllib3.exceptions import HTTPError

from .cluster_client import ClusterClient, ClusterResult, VersionLookup

logger = logging.getLogger("podsentry.k8s")
tracer = trace.get_tracer(__name__)

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "podsentry"

DNS_PORTS = ({"protocol": "UDP", "port": 53}, {"protocol": "TCP", "port": 53})

# -------------------------------------------------------------------------
# Prometheus metrics for Kubernetes operations
# -------------------------------------------------------------------------

K8S_API_CALLS_TOTAL = Counter(
    "podsentry_k8s_api_calls_total",
    "Total Kubernetes API calls from the reconciler",
    ["verb", "resource", "namespace"],
)

K8S_API_ERRORS_TOTAL = Counter(
    "podsentry_k8s_api_errors_total",
    "Total failed Kubernetes API calls from the reconciler",
    ["verb", "resource", "namespace", "result"],
)

K8S_API_LATENCY_SECONDS = Histogram(
    "podsentry_k8s_api_latency_seconds",
    "Latency of Kubernetes API calls from the reconciler",
    ["verb", "resource", "namespace"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)


def classify_api_exception(exc: ApiException) -> ClusterResult:
    status = exc.status or 0
    if status == 404:
        return ClusterResult.NOT_FOUND
    if status in (401, 403):
        return ClusterResult.FORBIDDEN
    if status == 409:
        return ClusterResult.CONFLICT
    if status == 429 or status >= 500 or status == 0:
        return ClusterResult.TRANSIENT_ERROR
    return ClusterResult.REJECTED


class _CallFailed(Exception):
    def __init__(self, result: ClusterResult) -> None:
        super().__init__(result.value)
        self.result = result


def build_network_policy(
    namespace: str,
    policy_name: str,
    pod_selector: Dict[str, str],
    deny_ingress: bool,
    deny_egress_except_dns: bool,
) -> Dict[str, Any]:
    """
    Isolation policy for the selected pods: no ingress at all, and egress
    only to DNS (UDP/TCP 53) so the pod can still resolve names.
    """
    policy_types: List[str] = []
    spec: Dict[str, Any] = {"podSelector": {"matchLabels": dict(pod_selector)}}
    if deny_ingress:
        policy_types.append("Ingress")
        spec["ingress"] = []
    if deny_egress_except_dns:
        policy_types.append("Egress")
        spec["egress"] = [{"ports": [dict(p) for p in DNS_PORTS]}]
    spec["policyTypes"] = policy_types

    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "NetworkPolicy",
        "metadata": {
            "name": policy_name,
            "namespace": namespace,
            "labels": {MANAGED_BY_LABEL: MANAGED_BY_VALUE},
        },
        "spec": spec,
    }


def _policy_fingerprint(spec: Dict[str, Any]) -> Tuple[Any, ...]:
    """
    Comparable summary of a NetworkPolicy spec. Accepts both the camelCase
    body we send and the snake_case `to_dict()` form the client returns.
    """
    selector = spec.get("podSelector") or spec.get("pod_selector") or {}
    match_labels = selector.get("matchLabels") or selector.get("match_labels") or {}
    policy_types = spec.get("policyTypes") or spec.get("policy_types") or []
    ingress = spec.get("ingress") or []
    egress = spec.get("egress") or []

    egress_ports = sorted(
        (str(port.get("protocol") or "TCP"), str(port.get("port")))
        for rule in egress
        for port in (rule.get("ports") or [])
    )
    return (
        tuple(sorted(match_labels.items())),
        tuple(sorted(policy_types)),
        len(ingress),
        tuple(egress_ports),
    )


def load_api_clients() -> Tuple[CoreV1Api, AppsV1Api, NetworkingV1Api]:
    """ServiceAccount config inside the cluster, KUBECONFIG otherwise."""
    try:
        config.load_incluster_config()
        logger.info("Using in-cluster Kubernetes configuration")
    except ConfigException:
        logger.warning("Not running in a cluster, falling back to kubeconfig")
        config.load_kube_config()
    return CoreV1Api(), AppsV1Api(), NetworkingV1Api()


class KubernetesClusterClient(ClusterClient):
    """
    ClusterClient backed by the official Kubernetes Python client.

    Every mutation reads current state first and returns UNCHANGED when the
    desired state is already present. API errors are mapped onto
    ClusterResult; nothing here raises for an HTTP-level failure.
    """

    def __init__(
        self,
        core_v1: Optional[CoreV1Api] = None,
        apps_v1: Optional[AppsV1Api] = None,
        networking_v1: Optional[NetworkingV1Api] = None,
        request_timeout: float = 10.0,
    ) -> None:
        if core_v1 is None or apps_v1 is None or networking_v1 is None:
            core_v1, apps_v1, networking_v1 = load_api_clients()
        self.core_v1 = core_v1
        self.apps_v1 = apps_v1
        self.networking_v1 = networking_v1
        self.request_timeout = request_timeout

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _call(
        self,
        verb: str,
        resource: str,
        namespace: str,
        fn: Callable[..., Any],
        /,
        **kwargs: Any,
    ) -> Any:
        labels = {"verb": verb, "resource": resource, "namespace": namespace}
        start = time.time()
        try:
            return fn(_request_timeout=self.request_timeout, **kwargs)
        except ApiException as exc:
            result = classify_api_exception(exc)
            K8S_API_ERRORS_TOTAL.labels(result=result.value, **labels).inc()
            if result != ClusterResult.NOT_FOUND:
                logger.error(
                    "Kubernetes %s %s in %s failed: status=%s reason=%s",
                    verb,
                    resource,
                    namespace,
                    exc.status,
                    exc.reason,
                )
            raise _CallFailed(result) from exc
        except HTTPError as exc:
            K8S_API_ERRORS_TOTAL.labels(
                result=ClusterResult.TRANSIENT_ERROR.value, **labels
            ).inc()
            logger.error(
                "Kubernetes %s %s in %s transport error: %s", verb, resource, namespace, exc
            )
            raise _CallFailed(ClusterResult.TRANSIENT_ERROR) from exc
        finally:
            K8S_API_CALLS_TOTAL.labels(**labels).inc()
            K8S_API_LATENCY_SECONDS.labels(**labels).observe(time.time() - start)

    # ------------------------------------------------------------------
    # ClusterClient
    # ------------------------------------------------------------------

    def get_resource_version(self, namespace: str, pod_name: str) -> VersionLookup:
        with tracer.start_as_current_span("k8s.get_resource_version") as span:
            span.set_attribute("podsentry.k8s.namespace", namespace)
            span.set_attribute("podsentry.k8s.pod", pod_name)
            try:
                pod = self._call(
                    "read", "pod", namespace,
                    self.core_v1.read_namespaced_pod,
                    name=pod_name, namespace=namespace,
                )
            except _CallFailed as failed:
                span.set_attribute("podsentry.k8s.result", failed.result.value)
                return VersionLookup(result=failed.result)

            version = pod.metadata.resource_version
            span.set_attribute("podsentry.k8s.resource_version", version or "")
            return VersionLookup(result=ClusterResult.SUCCESS, resource_version=version)

    def apply_label(
        self, namespace: str, pod_name: str, labels: Dict[str, str]
    ) -> ClusterResult:
        with tracer.start_as_current_span("k8s.apply_label") as span:
            span.set_attribute("podsentry.k8s.namespace", namespace)
            span.set_attribute("podsentry.k8s.pod", pod_name)
            try:
                pod = self._call(
                    "read", "pod", namespace,
                    self.core_v1.read_namespaced_pod,
                    name=pod_name, namespace=namespace,
                )
                current = pod.metadata.labels or {}
                if all(current.get(k) == v for k, v in labels.items()):
                    span.set_attribute("podsentry.k8s.result", ClusterResult.UNCHANGED.value)
                    return ClusterResult.UNCHANGED

                self._call(
                    "patch", "pod", namespace,
                    self.core_v1.patch_namespaced_pod,
                    name=pod_name,
                    namespace=namespace,
                    body={"metadata": {"labels": dict(labels)}},
                )
            except _CallFailed as failed:
                span.set_attribute("podsentry.k8s.result", failed.result.value)
                return failed.result

            logger.info("Labeled pod %s/%s with %s", namespace, pod_name, labels)
            span.set_attribute("podsentry.k8s.result", ClusterResult.SUCCESS.value)
            return ClusterResult.SUCCESS

    def apply_network_policy(
        self,
        namespace: str,
        policy_name: str,
        pod_selector: Dict[str, str],
        deny_ingress: bool = True,
        deny_egress_except_dns: bool = True,
    ) -> ClusterResult:
        body = build_network_policy(
            namespace, policy_name, pod_selector, deny_ingress, deny_egress_except_dns
        )
        with tracer.start_as_current_span("k8s.apply_network_policy") as span:
            span.set_attribute("podsentry.k8s.namespace", namespace)
            span.set_attribute("podsentry.k8s.network_policy", policy_name)
            try:
                try:
                    existing = self._call(
                        "read", "networkpolicy", namespace,
                        self.networking_v1.read_namespaced_network_policy,
                        name=policy_name, namespace=namespace,
                    )
                except _CallFailed as failed:
                    if failed.result != ClusterResult.NOT_FOUND:
                        raise
                    existing = None

                if existing is None:
                    self._call(
                        "create", "networkpolicy", namespace,
                        self.networking_v1.create_namespaced_network_policy,
                        namespace=namespace, body=body,
                    )
                else:
                    current_spec = existing.spec.to_dict() if existing.spec is not None else {}
                    if _policy_fingerprint(current_spec) == _policy_fingerprint(body["spec"]):
                        span.set_attribute("podsentry.k8s.result", ClusterResult.UNCHANGED.value)
                        return ClusterResult.UNCHANGED
                    body["metadata"]["resourceVersion"] = existing.metadata.resource_version
                    self._call(
                        "replace", "networkpolicy", namespace,
                        self.networking_v1.replace_namespaced_network_policy,
                        name=policy_name, namespace=namespace, body=body,
                    )
            except _CallFailed as failed:
                span.set_attribute("podsentry.k8s.result", failed.result.value)
                return failed.result

            logger.info(
                "Applied NetworkPolicy %s/%s selector=%s", namespace, policy_name, pod_selector
            )
            span.set_attribute("podsentry.k8s.result", ClusterResult.SUCCESS.value)
            return ClusterResult.SUCCESS

    def scale_deployment(
        self, namespace: str, deployment: str, replicas: int
    ) -> ClusterResult:
        with tracer.start_as_current_span("k8s.scale_deployment") as span:
            span.set_attribute("podsentry.k8s.namespace", namespace)
            span.set_attribute("podsentry.k8s.deployment", deployment)
            span.set_attribute("podsentry.k8s.replicas", replicas)
            try:
                scale = self._call(
                    "read", "deployment_scale", namespace,
                    self.apps_v1.read_namespaced_deployment_scale,
                    name=deployment, namespace=namespace,
                )
                if scale.spec is not None and scale.spec.replicas == replicas:
                    span.set_attribute("podsentry.k8s.result", ClusterResult.UNCHANGED.value)
                    return ClusterResult.UNCHANGED

                self._call(
                    "patch_scale", "deployment", namespace,
                    self.apps_v1.patch_namespaced_deployment_scale,
                    name=deployment,
                    namespace=namespace,
                    body={"spec": {"replicas": replicas}},
                )
            except _CallFailed as failed:
                span.set_attribute("podsentry.k8s.result", failed.result.value)
                return failed.result

            logger.info("Scaled deployment %s/%s to %d", namespace, deployment, replicas)
            span.set_attribute("podsentry.k8s.result", ClusterResult.SUCCESS.value)
            return ClusterResult.SUCCESS
