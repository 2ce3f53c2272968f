from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple


class EdgeKind(str, Enum):
    REFERENCE = "reference"    # ${type.name.attr} inside an attribute
    EXPLICIT  = "explicit"     # depends_on


@dataclass(frozen=True)
class ResourceType:
    name: str
    outputs: FrozenSet[str]
    mutable: FrozenSet[str] = frozenset()
    sensitive_outputs: FrozenSet[str] = frozenset()


RESOURCE_TYPES: Dict[str, ResourceType] = {
    "docker_image": ResourceType(
        "docker_image", frozenset({"id", "image_id", "name"}), frozenset({"keep_locally"}),
    ),
    "docker_network": ResourceType(
        "docker_network", frozenset({"id", "name"}),
    ),
    "docker_volume": ResourceType(
        "docker_volume", frozenset({"id", "name", "mountpoint"}),
    ),
    "docker_container": ResourceType(
        "docker_container", frozenset({"id", "name"}), frozenset({"restart", "must_run"}),
    ),
    "random_password": ResourceType(
        "random_password", frozenset({"id", "result"}),
        sensitive_outputs=frozenset({"result"}),
    ),
    "random_string": ResourceType(
        "random_string", frozenset({"id", "result"}),
    ),
}


def split_address(address: str) -> Tuple[str, str]:
    resource_type, _, name = address.partition(".")
    return resource_type, name


@dataclass(frozen=True)
class Reference:
    target: str                  # address of the resource depended on
    kind: EdgeKind
    attribute: Optional[str] = None   # output read from the target, if any
    path: Optional[str] = None        # attribute path in the source carrying it

    @property
    def top_level_key(self) -> Optional[str]:
        if not self.path:
            return None
        return self.path.split(".", 1)[0].split("[", 1)[0]


@dataclass
class Declaration:
    resource_type: str     # e.g. "docker_container", "random_password"
    name: str              # logical name in the declaration file
    attributes: Dict[str, Any] = field(default_factory=dict)
    source_format: str = ""      # "terraform", "yaml"
    source_file: str = ""
    depends_on: List[str] = field(default_factory=list)
    references: List[Reference] = field(default_factory=list)
    index: int = 0

    @property
    def address(self) -> str:
        return f"{self.resource_type}.{self.name}"

    @property
    def type_info(self) -> Optional[ResourceType]:
        return RESOURCE_TYPES.get(self.resource_type)

    def dependency_addresses(self) -> List[str]:
        seen: List[str] = []
        for ref in self.references:
            if ref.target not in seen:
                seen.append(ref.target)
        return seen
