from __future__ import annotations

from typing import List

from lark import Lark, Transformer
from lark.exceptions import LarkError

from ..errors import PolicyParseError
from ..models.verdict_models import Decision
from .grammar import DSL_GRAMMAR
from .model import Condition, Rule

_PARSER = Lark(DSL_GRAMMAR, start="start", parser="lalr")


def _strip_quotes(s: str) -> str:
    if s.startswith('"') and s.endswith('"'):
        return s[1:-1]
    return s


class _DSLTransformer(Transformer):
    def start(self, items):
        return list(items)

    def string(self, s):
        return _strip_quotes(str(s[0]))

    def number(self, n):
        return float(n[0])

    def condition(self, items):
        field, op, value = items
        return Condition(field=str(field), op=str(op), value=value)

    def condition_list(self, items):
        return list(items)

    def ignore(self, _):
        return Decision.IGNORE

    def watch(self, _):
        return Decision.WATCH

    def quarantine(self, _):
        return Decision.QUARANTINE

    def rule(self, items):
        name = _strip_quotes(str(items[0]))
        conditions = items[1]
        decision = items[2]
        priority = int(float(items[3]))
        return Rule(name=name, conditions=conditions, decision=decision, priority=priority)


def parse_rules(text: str) -> List[Rule]:
    """
    Parse a policy document into rules, numbered in document order.

    Raises PolicyParseError on any syntax error or duplicate rule name.
    """
    try:
        tree = _PARSER.parse(text)
        result = _DSLTransformer().transform(tree)
    except LarkError as exc:
        raise PolicyParseError(f"Invalid policy document: {exc}") from exc

    if isinstance(result, Rule):
        result = [result]

    rules: List[Rule] = []
    seen = set()
    for order, rule in enumerate(r for r in result if isinstance(r, Rule)):
        if rule.name in seen:
            raise PolicyParseError(f"Duplicate rule name: {rule.name}")
        seen.add(rule.name)
        rules.append(
            Rule(
                name=rule.name,
                conditions=rule.conditions,
                decision=rule.decision,
                priority=rule.priority,
                order=order,
            )
        )
    return rules
