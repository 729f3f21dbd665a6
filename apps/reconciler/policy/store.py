from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from typing import List, Optional

from ..errors import PolicyParseError
from .model import Rule
from .parser import parse_rules

logger = logging.getLogger("podsentry.policy")


def default_policy_text(quarantine_threshold: float, watch_threshold: float) -> str:
    return f"""
RULE "quarantine_high_severity":
  WHEN signal.severity >= {quarantine_threshold}
  THEN quarantine
  PRIORITY 100

RULE "watch_elevated_severity":
  WHEN signal.severity >= {watch_threshold}
  THEN watch
  PRIORITY 10
"""


@dataclass(frozen=True)
class ReloadResult:
    ok: bool
    rule_count: int
    source: str
    error: Optional[str] = None


def order_rules(rules: List[Rule]) -> List[Rule]:
    """Evaluation order: priority descending, then registration order."""
    return sorted(rules, key=lambda r: (-r.priority, r.order))


class PolicyStore:
    """
    Active rule set, swapped atomically on reload.

    - Parse first, swap only if the parse succeeded
    - On failure keep the last known good rules
    - Without a policy path the built-in default policy is used
    """

    def __init__(self, policy_path: Optional[str], default_text: str) -> None:
        self._policy_path = policy_path
        self._default_text = default_text
        self._lock = threading.Lock()
        self._rules: List[Rule] = []

    @property
    def source(self) -> str:
        return self._policy_path or "<built-in>"

    def get_rules(self) -> List[Rule]:
        with self._lock:
            return list(self._rules)

    def set_rules(self, rules: List[Rule]) -> None:
        with self._lock:
            self._rules = order_rules(rules)

    def load_initial(self) -> ReloadResult:
        result = self.reload()
        if not result.ok and not self.get_rules():
            # a broken file at startup must not leave the evaluator rule-less
            logger.error(
                "Policy load failed (%s), falling back to built-in default policy",
                result.error,
            )
            self.set_rules(parse_rules(self._default_text))
        return result

    def reload(self) -> ReloadResult:
        try:
            if self._policy_path is None:
                text = self._default_text
            else:
                if not os.path.exists(self._policy_path):
                    return ReloadResult(
                        ok=False,
                        rule_count=len(self.get_rules()),
                        source=self.source,
                        error=f"Policy file not found: {self._policy_path}",
                    )
                with open(self._policy_path, "r", encoding="utf-8") as f:
                    text = f.read()

            new_rules = parse_rules(text)
        except (OSError, PolicyParseError) as e:
            logger.warning("Policy reload from %s failed: %s", self.source, e)
            return ReloadResult(
                ok=False,
                rule_count=len(self.get_rules()),
                source=self.source,
                error=str(e),
            )

        self.set_rules(new_rules)
        logger.info("Loaded %d policy rules from %s", len(new_rules), self.source)
        return ReloadResult(ok=True, rule_count=len(new_rules), source=self.source)
