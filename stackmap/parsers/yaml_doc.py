"""
Native YAML declarations::

    resources:
      docker_volume:
        data:
          name: app-data
      docker_container:
        app:
          image: ${docker_image.app.image_id}
          depends_on: [docker_volume.data]
"""
import os
from typing import Any, List

import yaml
from rich.console import Console

from stackmap.detect import detect_format
from stackmap.errors import DeclarationError
from stackmap.models.resource import Declaration

console = Console(stderr=True)


def _as_list(val: Any) -> List[Any]:
    if val is None:
        return []
    if isinstance(val, list):
        return val
    return [val]


def parse_file(filepath: str) -> List[Declaration]:
    declarations: List[Declaration] = []

    try:
        with open(filepath) as fh:
            docs = list(yaml.safe_load_all(fh))
    except (OSError, yaml.YAMLError) as exc:
        raise DeclarationError(filepath, str(exc)) from exc

    for doc in docs:
        if not isinstance(doc, dict):
            continue

        resources = doc.get("resources") or {}
        if not isinstance(resources, dict):
            raise DeclarationError(filepath, "'resources' must be a mapping of type -> name -> attributes")

        for resource_type, instances in resources.items():
            if not isinstance(instances, dict):
                console.print(
                    f"[yellow]Warning:[/yellow] skipping '{resource_type}' in {filepath}: expected a mapping"
                )
                continue
            for name, props in instances.items():
                props = dict(props or {})
                depends_on = [str(d) for d in _as_list(props.pop("depends_on", None))]
                declarations.append(Declaration(
                    resource_type=str(resource_type),
                    name=str(name),
                    attributes=props,
                    source_format="yaml",
                    source_file=filepath,
                    depends_on=depends_on,
                    index=len(declarations),
                ))

    return declarations


def parse_directory(path: str) -> List[Declaration]:
    declarations: List[Declaration] = []

    if os.path.isfile(path):
        if detect_format(path) == "yaml":
            declarations.extend(parse_file(path))
        return declarations

    for root, _, files in sorted(os.walk(path)):
        for fname in sorted(files):
            fpath = os.path.join(root, fname)
            if detect_format(fpath) == "yaml":
                declarations.extend(parse_file(fpath))

    return declarations
