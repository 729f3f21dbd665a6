"""
Naming helpers for podsentry-managed Kubernetes objects.

Pods created by a Deployment are named:

    <deployment>-<replicaset-hash>-<pod-hash>
    api-7d9c6b5f4-x2x8q  ->  api

The pod-template hash uses the "safe" alphabet Kubernetes uses for
generated names (no vowels, no ambiguous characters).
"""

import hashlib
import re
from typing import Optional

_SAFE_ALPHABET = "bcdfghjklmnpqrstvwxz2456789"
_DEPLOYMENT_POD_RE = re.compile(
    rf"^(?P<deployment>[a-z0-9]([-a-z0-9]*[a-z0-9])?)"
    rf"-[{_SAFE_ALPHABET}]{{6,10}}-[{_SAFE_ALPHABET}]{{5}}$"
)

MAX_NAME_LENGTH = 63


def deployment_from_pod_name(pod_name: str) -> Optional[str]:
    """
    Owning Deployment name derived from a pod name, or None when the pod
    name does not follow the Deployment/ReplicaSet pattern.
    """
    match = _DEPLOYMENT_POD_RE.match(pod_name)
    if not match:
        return None
    return match.group("deployment")


def quarantine_policy_name(pod_name: str) -> str:
    """
    NetworkPolicy name for one quarantined pod. Long pod names are
    truncated and suffixed with a short hash so the name stays unique and
    within the 63 character limit.
    """
    name = f"podsentry-quarantine-{pod_name}"
    if len(name) <= MAX_NAME_LENGTH:
        return name
    digest = hashlib.sha256(pod_name.encode("utf-8")).hexdigest()[:8]
    return f"{name[:MAX_NAME_LENGTH - 9].rstrip('-')}-{digest}"
