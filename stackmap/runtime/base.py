"""
Contract between the executor and whatever materialises resources.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

Outputs = Dict[str, Any]


class Runtime(ABC):
    """
    One implementation per backend. Every call handles a single resource and
    either returns its outputs or raises TransientRuntimeError /
    FatalRuntimeError.

    ``create`` must adopt an object that already exists under the same name
    and ``delete`` must succeed when the object is already gone, so that a
    re-run after a crash converges instead of failing.
    """

    name = "runtime"
    prefixes: tuple = ()

    def handles(self, resource_type: str) -> bool:
        return resource_type.startswith(self.prefixes)

    @abstractmethod
    def create(self, resource_type: str, name: str, attributes: Dict[str, Any]) -> Outputs:
        ...

    @abstractmethod
    def read(self, resource_type: str, name: str, outputs: Outputs) -> Optional[Outputs]:
        """Return current outputs, or None when the object does not exist."""

    @abstractmethod
    def update(
        self,
        resource_type: str,
        name: str,
        attributes: Dict[str, Any],
        outputs: Outputs,
        changed: List[str],
    ) -> Outputs:
        ...

    @abstractmethod
    def delete(self, resource_type: str, name: str, outputs: Outputs, attributes: Dict[str, Any]) -> None:
        ...


def as_list(val: Any) -> List[Any]:
    """Blocks may arrive as one mapping or a list of them."""
    if val is None:
        return []
    if isinstance(val, list):
        return val
    return [val]


def as_mapping(val: Any, key_field: str = "label", value_field: str = "value") -> Dict[str, str]:
    """
    Labels and similar maps may be written as a plain mapping or as
    ``{label = "...", value = "..."}`` blocks.
    """
    if isinstance(val, dict) and key_field not in val:
        return {str(k): str(v) for k, v in val.items()}
    result: Dict[str, str] = {}
    for item in as_list(val):
        if isinstance(item, dict) and key_field in item:
            result[str(item[key_field])] = str(item.get(value_field, ""))
    return result
