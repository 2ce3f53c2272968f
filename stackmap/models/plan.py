from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class Step:
    action: Action
    address: str
    resource_type: str
    before: Optional[Dict[str, Any]] = None    # declared attributes last applied
    after: Optional[Dict[str, Any]] = None     # declared attributes wanted now
    changed: List[str] = field(default_factory=list)
    replace: bool = False
    reason: str = ""

    @property
    def step_id(self) -> str:
        return f"{self.action.value}:{self.address}"

    def to_dict(self) -> dict:
        return {
            "action": self.action.value,
            "address": self.address,
            "resource_type": self.resource_type,
            "changed": self.changed,
            "replace": self.replace,
            "reason": self.reason,
        }


@dataclass
class Plan:
    steps: List[Step] = field(default_factory=list)
    # (earlier step_id, later step_id); every pair must run in this order
    edges: List[Tuple[str, str]] = field(default_factory=list)
    destroy: bool = False
    # unchanged resources whose recorded dependencies must be rewritten
    refresh: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.steps and not self.refresh

    def _addresses(self, action: Action) -> List[str]:
        return [s.address for s in self.steps if s.action == action]

    @property
    def creates(self) -> List[str]:
        return self._addresses(Action.CREATE)

    @property
    def updates(self) -> List[str]:
        return self._addresses(Action.UPDATE)

    @property
    def deletes(self) -> List[str]:
        return self._addresses(Action.DELETE)

    @property
    def replacements(self) -> List[str]:
        return [s.address for s in self.steps if s.action == Action.CREATE and s.replace]

    def order(self) -> List[str]:
        return [s.step_id for s in self.steps]

    def position(self, action: Action, address: str) -> int:
        return self.order().index(f"{action.value}:{address}")

    def predecessors(self) -> Dict[str, List[str]]:
        preds: Dict[str, List[str]] = {s.step_id: [] for s in self.steps}
        for before, after in self.edges:
            preds[after].append(before)
        return preds

    def counts(self) -> Dict[str, int]:
        return {
            "create": len(self.creates) - len(self.replacements),
            "update": len(self.updates),
            "replace": len(self.replacements),
            "delete": len(self.deletes) - len(self.replacements),
        }

    def to_dict(self) -> dict:
        return {
            "destroy": self.destroy,
            "summary": self.counts(),
            "steps": [s.to_dict() for s in self.steps],
            "edges": [list(e) for e in self.edges],
            "refresh": self.refresh,
        }
