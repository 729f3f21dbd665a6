"""
Error taxonomy for the podsentry reconciler.

  - ValidationError        malformed/unresolvable signal; dropped, never retried
  - TransientClusterError  timeout, conflict, rate limit; retried with backoff
  - PermanentClusterError  subject gone, forbidden; plan abandoned immediately
  - StaleStateError        resourceVersion moved on; signal re-evaluated
"""

from __future__ import annotations

from typing import Optional


class ReconcilerError(Exception):
    """Base class for every podsentry error."""
    pass


class ValidationError(ReconcilerError):
    """
    Raised by the ingestor when an inbound event cannot be turned into a
    ThreatSignal (missing subject, unknown pod, severity out of range).
    """
    pass


class TransientClusterError(ReconcilerError):
    """Raised for cluster failures that are worth retrying."""

    def __init__(self, message: str, status: Optional[str] = None) -> None:
        super().__init__(message)
        self.status = status


class PermanentClusterError(ReconcilerError):
    """Raised for cluster failures that no retry will fix."""

    def __init__(self, message: str, status: Optional[str] = None) -> None:
        super().__init__(message)
        self.status = status


class StaleStateError(ReconcilerError):
    """
    Raised when the subject's live resourceVersion differs from the one the
    plan was computed against.
    """

    def __init__(self, subject: str, expected: str, actual: str) -> None:
        super().__init__(
            f"Stale plan for {subject}: expected resourceVersion={expected}, live={actual}"
        )
        self.subject = subject
        self.expected = expected
        self.actual = actual


class PolicyParseError(ReconcilerError):
    """Raised when a policy document cannot be parsed."""
    pass


class ClassifierError(ReconcilerError):
    """
    Raised when the classifier scoring service returns an invalid response
    or cannot be reached.
    """
    pass
