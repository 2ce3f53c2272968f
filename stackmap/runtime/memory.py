"""
In-memory stand-in for the Docker runtime, used for rehearsals
(``--runtime memory``) and by the test suite.
"""
import hashlib
import itertools
import threading
from typing import Any, Dict, List, Optional, Tuple

from stackmap.runtime.base import Outputs, Runtime


class MemoryRuntime(Runtime):
    name = "memory"
    prefixes = ("docker_",)

    def __init__(self):
        self.objects: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str]] = []
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def _record(self, action: str, resource_type: str, name: str) -> None:
        with self._lock:
            self.calls.append((action, f"{resource_type}.{name}"))

    def _outputs(self, resource_type: str, name: str, attributes: Dict[str, Any]) -> Outputs:
        seq = next(self._ids)
        object_id = hashlib.sha256(f"{resource_type}:{name}:{seq}".encode()).hexdigest()[:12]
        object_name = str(attributes.get("name", name))
        outputs: Outputs = {"id": object_id, "name": object_name}
        if resource_type == "docker_image":
            outputs["image_id"] = f"sha256:{object_id}"
        if resource_type == "docker_volume":
            outputs["mountpoint"] = f"/var/lib/docker/volumes/{object_name}/_data"
        return outputs

    def create(self, resource_type: str, name: str, attributes: Dict[str, Any]) -> Outputs:
        self._record("create", resource_type, name)
        key = (resource_type, str(attributes.get("name", name)))
        with self._lock:
            existing = self.objects.get(key)
            if existing is not None:
                return dict(existing["outputs"])
            outputs = self._outputs(resource_type, name, attributes)
            self.objects[key] = {"attributes": dict(attributes), "outputs": outputs}
            return dict(outputs)

    def read(self, resource_type: str, name: str, outputs: Outputs) -> Optional[Outputs]:
        key = (resource_type, str(outputs.get("name", name)))
        with self._lock:
            existing = self.objects.get(key)
            return dict(existing["outputs"]) if existing else None

    def update(
        self,
        resource_type: str,
        name: str,
        attributes: Dict[str, Any],
        outputs: Outputs,
        changed: List[str],
    ) -> Outputs:
        self._record("update", resource_type, name)
        key = (resource_type, str(outputs.get("name", name)))
        with self._lock:
            existing = self.objects.setdefault(key, {"attributes": {}, "outputs": dict(outputs)})
            for attr in changed:
                if attr in attributes:
                    existing["attributes"][attr] = attributes[attr]
                else:
                    existing["attributes"].pop(attr, None)
            return dict(existing["outputs"])

    def delete(self, resource_type: str, name: str, outputs: Outputs, attributes: Dict[str, Any]) -> None:
        self._record("delete", resource_type, name)
        key = (resource_type, str(outputs.get("name", name)))
        with self._lock:
            self.objects.pop(key, None)
