from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from opentelemetry import trace
from prometheus_client import Counter

from ..models.signal_models import ThreatSignal
from ..models.verdict_models import Decision, Verdict
from ..policy.model import Rule
from ..policy.store import PolicyStore
from .signal_window import SignalWindowStore, WindowEntry, WindowStats

logger = logging.getLogger("podsentry.evaluator")
tracer = trace.get_tracer(__name__)

VERDICTS_TOTAL = Counter(
    "podsentry_verdicts_total",
    "Verdicts produced by the risk evaluator",
    ["decision", "escalated"],
)

REASON_LOW_SEVERITY = "below-low-severity-threshold"
REASON_PARSE_FAILURE = "payload-parse-failure"
REASON_NO_MATCH = "no-matching-rule"

_MISSING = object()


class PayloadParseError(Exception):
    pass


def parse_payload(raw: bytes) -> Dict[str, Any]:
    """
    Decode an opaque signal payload into a JSON object. Empty payloads are
    an empty object; anything else that is not a JSON object is an error.
    """
    if not raw or not raw.strip():
        return {}
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise PayloadParseError(str(exc)) from exc
    if not isinstance(data, dict):
        raise PayloadParseError(f"expected a JSON object, got {type(data).__name__}")
    return data


def _payload_value(payload: Dict[str, Any], path: str) -> Any:
    # Runtime monitors use flat dotted keys ("proc.cmdline"); try those first.
    if path in payload:
        return payload[path]
    node: Any = payload
    for part in path.split("."):
        if not isinstance(node, dict) or part not in node:
            return _MISSING
        node = node[part]
    return node


def _compare(left: Any, op: str, right: Any) -> bool:
    if left is _MISSING or left is None:
        return op == "!=" and right is not None
    if op in ("==", "!="):
        if isinstance(right, float) and not isinstance(left, bool):
            try:
                equal = float(left) == right
            except (TypeError, ValueError):
                equal = False
        else:
            equal = str(left) == str(right)
        return equal if op == "==" else not equal
    try:
        lhs = float(left)
        rhs = float(right)
    except (TypeError, ValueError):
        return False
    if op == ">":
        return lhs > rhs
    if op == "<":
        return lhs < rhs
    if op == ">=":
        return lhs >= rhs
    if op == "<=":
        return lhs <= rhs
    return False


def _noisy_or(severities: List[float]) -> float:
    remaining = 1.0
    for s in severities:
        remaining *= 1.0 - s
    return min(1.0, max(0.0, 1.0 - remaining))


class RiskEvaluator:
    """
    ThreatSignal + policy set -> Verdict.

    Order of evaluation:
      1. severity below the low threshold -> ignore (history is not consulted
         and the signal does not enter the window)
      2. unparseable payload -> watch with "payload-parse-failure"
      3. record in the subject's window
      4. first matching rule (priority desc, then registration order)
      5. escalate one step when the window holds enough signals, unless a
         rule explicitly chose ignore

    Never raises on bad input; the window store is the only state and is
    injected by the caller.
    """

    def __init__(
        self,
        policy_store: PolicyStore,
        window_store: SignalWindowStore,
        low_severity_threshold: float = 0.2,
        escalation_min_signals: int = 2,
    ) -> None:
        self.policy_store = policy_store
        self.window_store = window_store
        self.low_severity_threshold = low_severity_threshold
        self.escalation_min_signals = escalation_min_signals

    # ------------------------------------------------------------------
    # Field resolution
    # ------------------------------------------------------------------

    def _resolve(
        self,
        field: str,
        signal: ThreatSignal,
        payload: Dict[str, Any],
        stats: WindowStats,
    ) -> Any:
        if field == "signal.severity":
            return signal.severity
        if field == "signal.source":
            return signal.source.value
        if field == "signal.rule_id":
            return signal.rule_id
        if field == "subject.namespace":
            return signal.subject.namespace
        if field == "window.count":
            return stats.count
        if field == "window.max_severity":
            return stats.max_severity
        if field.startswith("payload."):
            return _payload_value(payload, field[len("payload."):])
        return _MISSING

    def _matches(
        self,
        rule: Rule,
        signal: ThreatSignal,
        payload: Dict[str, Any],
        stats: WindowStats,
    ) -> bool:
        return all(
            _compare(self._resolve(c.field, signal, payload, stats), c.op, c.value)
            for c in rule.conditions
        )

    def match_rule(
        self,
        signal: ThreatSignal,
        payload: Dict[str, Any],
        stats: WindowStats,
    ) -> Optional[Rule]:
        for rule in self.policy_store.get_rules():
            if self._matches(rule, signal, payload, stats):
                return rule
        return None

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, signal: ThreatSignal) -> Verdict:
        with tracer.start_as_current_span("podsentry.evaluate") as span:
            span.set_attribute("podsentry.signal.id", signal.id)
            span.set_attribute("podsentry.signal.source", signal.source.value)
            span.set_attribute("podsentry.signal.severity", signal.severity)
            span.set_attribute("podsentry.subject", signal.subject.subject_key)

            decision, confidence, reasons, rule_name, escalated = self._decide(signal)

            verdict = Verdict(
                signal_id=signal.id,
                subject=signal.subject,
                decision=decision,
                confidence=round(confidence, 6),
                reasons=reasons,
                matched_rule=rule_name,
                escalated=escalated,
            )

            span.set_attribute("podsentry.verdict.decision", decision.value)
            span.set_attribute("podsentry.verdict.escalated", escalated)
            VERDICTS_TOTAL.labels(
                decision=decision.value, escalated=str(escalated).lower()
            ).inc()
            logger.info(
                "Verdict %s for %s (signal=%s severity=%.2f confidence=%.2f reasons=%s)",
                decision.value,
                signal.subject.subject_key,
                signal.id,
                signal.severity,
                verdict.confidence,
                reasons,
            )
            return verdict

    def _decide(
        self, signal: ThreatSignal
    ) -> Tuple[Decision, float, List[str], Optional[str], bool]:
        severity_reason = f"severity={signal.severity:.2f}"

        if signal.severity < self.low_severity_threshold:
            return (
                Decision.IGNORE,
                1.0 - signal.severity,
                [REASON_LOW_SEVERITY, severity_reason],
                None,
                False,
            )

        subject = signal.subject.subject_key
        entry = WindowEntry(
            origin_id=signal.root_id,
            severity=signal.severity,
            observed_at=signal.observed_at,
        )

        try:
            payload = parse_payload(signal.raw_payload)
        except PayloadParseError as exc:
            logger.warning(
                "Unparseable payload for signal %s on %s: %s", signal.id, subject, exc
            )
            self.window_store.record(subject, entry)
            return (
                Decision.WATCH,
                signal.severity,
                [REASON_PARSE_FAILURE, severity_reason],
                None,
                False,
            )

        stats = self.window_store.record(subject, entry)

        rule = self.match_rule(signal, payload, stats)
        if rule is None:
            decision = Decision.IGNORE
            reasons = [REASON_NO_MATCH, severity_reason]
            rule_name = None
        else:
            decision = rule.decision
            reasons = [f"rule:{rule.name}", severity_reason]
            rule_name = rule.name

        confidence = signal.severity if decision != Decision.IGNORE else 1.0 - signal.severity

        explicit_ignore = rule is not None and rule.decision == Decision.IGNORE
        if (
            stats.count >= self.escalation_min_signals
            and decision != Decision.QUARANTINE
            and not explicit_ignore
        ):
            previous = decision
            decision = decision.escalated()
            confidence = _noisy_or(stats.severities)
            reasons.append(
                f"escalated:{previous.value}->{decision.value} "
                f"({stats.count} signals in window)"
            )
            return decision, confidence, reasons, rule_name, True

        return decision, confidence, reasons, rule_name, False
