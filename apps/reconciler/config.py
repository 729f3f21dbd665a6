import json
import os
from typing import Any, Dict, Optional


def _env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


def _env_int(name: str, default: str) -> int:
    return int(os.getenv(name, default))


def _env_optional(name: str) -> Optional[str]:
    value = os.getenv(name)
    return value or None


def _env_rule_severities() -> Dict[str, float]:
    raw = os.getenv("RULE_SEVERITIES", "")
    if not raw.strip():
        return {}
    data = json.loads(raw)
    return {str(k): float(v) for k, v in data.items()}


class Settings:
    """
    Centralized podsentry configuration.

    Backed by environment variables so thresholds, retry bounds and the
    cluster backend can be tuned per environment without code changes.
    Keyword overrides win over the environment (used by tests and local
    runs):

        Settings(MAX_ATTEMPTS=3, CLUSTER_BACKEND="memory")

    Severity thresholds, window length and retry bounds are deployment
    choices; the defaults below are a sensible starting point only.
    """

    def __init__(self, **overrides: Any) -> None:
        # ------------------------------------------------------------------
        # Base service settings
        # ------------------------------------------------------------------
        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
        self.OTEL_ENDPOINT: Optional[str] = _env_optional("OTEL_EXPORTER_OTLP_ENDPOINT")
        self.CLUSTER_BACKEND: str = os.getenv("CLUSTER_BACKEND", "kubernetes").lower()

        # ------------------------------------------------------------------
        # Ingestion
        # ------------------------------------------------------------------
        self.RULE_SEVERITIES: Dict[str, float] = _env_rule_severities()
        self.RULE_DEFAULT_SEVERITY: float = _env_float("RULE_DEFAULT_SEVERITY", "0.5")
        self.CLASSIFIER_SCORE_MIN: float = _env_float("CLASSIFIER_SCORE_MIN", "0.0")
        self.CLASSIFIER_SCORE_MAX: float = _env_float("CLASSIFIER_SCORE_MAX", "1.0")
        self.CLASSIFIER_URL: str = os.getenv(
            "CLASSIFIER_URL", "http://127.0.0.1:8501"
        ).rstrip("/")
        self.CLASSIFIER_TIMEOUT_SECONDS: float = _env_float("CLASSIFIER_TIMEOUT_SECONDS", "3.0")
        self.MAX_STALE_REQUEUES: int = _env_int("MAX_STALE_REQUEUES", "3")

        # ------------------------------------------------------------------
        # Risk evaluation
        # ------------------------------------------------------------------
        self.POLICY_PATH: Optional[str] = _env_optional("POLICY_PATH")
        self.LOW_SEVERITY_THRESHOLD: float = _env_float("LOW_SEVERITY_THRESHOLD", "0.2")
        self.QUARANTINE_THRESHOLD: float = _env_float("QUARANTINE_THRESHOLD", "0.6")
        self.ESCALATION_WINDOW_SECONDS: float = _env_float("ESCALATION_WINDOW_SECONDS", "300")
        self.ESCALATION_MIN_SIGNALS: int = _env_int("ESCALATION_MIN_SIGNALS", "2")
        self.WINDOW_MAX_ENTRIES: int = _env_int("WINDOW_MAX_ENTRIES", "32")

        # ------------------------------------------------------------------
        # Planning
        # ------------------------------------------------------------------
        self.PLAN_TEMPLATE_VERSION: str = os.getenv("PLAN_TEMPLATE_VERSION", "v1")

        # ------------------------------------------------------------------
        # Reconciler
        # ------------------------------------------------------------------
        self.RECONCILER_WORKERS: int = _env_int("RECONCILER_WORKERS", "4")
        self.MAX_ATTEMPTS: int = _env_int("MAX_ATTEMPTS", "5")
        self.BASE_BACKOFF_SECONDS: float = _env_float("BASE_BACKOFF_SECONDS", "0.5")
        self.MAX_BACKOFF_SECONDS: float = _env_float("MAX_BACKOFF_SECONDS", "30")
        self.MAX_RETRY_DURATION_SECONDS: float = _env_float("MAX_RETRY_DURATION_SECONDS", "300")
        self.APPLY_TIMEOUT_SECONDS: float = _env_float("APPLY_TIMEOUT_SECONDS", "10")
        self.LEASE_TTL_SECONDS: float = _env_float("LEASE_TTL_SECONDS", "60")
        self.LEASE_TABLE_PATH: Optional[str] = _env_optional("LEASE_TABLE_PATH")
        self.ALERT_WEBHOOK_URL: Optional[str] = _env_optional("ALERT_WEBHOOK_URL")

        # ------------------------------------------------------------------
        # Audit log
        # ------------------------------------------------------------------
        self.AUDIT_LOG_PATH: Optional[str] = _env_optional("AUDIT_LOG_PATH")
        retention = _env_optional("AUDIT_RETENTION_SECONDS")
        self.AUDIT_RETENTION_SECONDS: Optional[float] = (
            float(retention) if retention is not None else None
        )
        self.AUDIT_FSYNC: bool = os.getenv("AUDIT_FSYNC", "false").lower() in (
            "1", "true", "yes", "y",
        )

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown setting: {key}")
            setattr(self, key, value)

        self._clamp()

    def _clamp(self) -> None:
        # Misconfiguration is clamped rather than crashing the service.
        self.LOW_SEVERITY_THRESHOLD = min(max(self.LOW_SEVERITY_THRESHOLD, 0.0), 1.0)
        self.QUARANTINE_THRESHOLD = min(max(self.QUARANTINE_THRESHOLD, 0.0), 1.0)
        if self.QUARANTINE_THRESHOLD < self.LOW_SEVERITY_THRESHOLD:
            self.QUARANTINE_THRESHOLD = self.LOW_SEVERITY_THRESHOLD
        if self.CLASSIFIER_SCORE_MAX <= self.CLASSIFIER_SCORE_MIN:
            self.CLASSIFIER_SCORE_MAX = self.CLASSIFIER_SCORE_MIN + 1.0
        self.ESCALATION_MIN_SIGNALS = max(2, self.ESCALATION_MIN_SIGNALS)
        self.WINDOW_MAX_ENTRIES = max(self.ESCALATION_MIN_SIGNALS, self.WINDOW_MAX_ENTRIES)
        self.MAX_ATTEMPTS = max(1, self.MAX_ATTEMPTS)
        self.RECONCILER_WORKERS = max(1, self.RECONCILER_WORKERS)
        if self.MAX_BACKOFF_SECONDS < self.BASE_BACKOFF_SECONDS:
            self.MAX_BACKOFF_SECONDS = self.BASE_BACKOFF_SECONDS
        # The lease is renewed before every attempt, so it must outlive one
        # timed-out call plus the longest jittered backoff.
        min_lease_ttl = (
            self.APPLY_TIMEOUT_SECONDS
            + self.MAX_BACKOFF_SECONDS
            + 0.2 * self.BASE_BACKOFF_SECONDS
            + 1.0
        )
        self.LEASE_TTL_SECONDS = max(self.LEASE_TTL_SECONDS, min_lease_ttl)
        if self.CLUSTER_BACKEND not in ("kubernetes", "memory"):
            self.CLUSTER_BACKEND = "kubernetes"


settings = Settings()
