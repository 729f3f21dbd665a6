from dataclasses import dataclass
from typing import List, Union

from ..models.verdict_models import Decision


@dataclass(frozen=True)
class Condition:
    field: str
    op: str
    value: Union[str, float]


@dataclass(frozen=True)
class Rule:
    name: str
    conditions: List[Condition]
    decision: Decision
    priority: int
    # position in the source document, second tie-break after priority
    order: int = 0
