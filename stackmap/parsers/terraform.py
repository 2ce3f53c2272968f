import os
from typing import Any, Dict, List

import hcl2
from rich.console import Console

from stackmap.detect import detect_format
from stackmap.errors import DeclarationError
from stackmap.models.resource import Declaration

console = Console(stderr=True)

# Terraform meta-arguments that are not resource attributes
_META_ARGS = {"depends_on", "lifecycle", "provider", "count", "for_each", "provisioner", "connection"}
_UNSUPPORTED_META = {"count", "for_each"}


def _strip_quotes(val: str) -> str:
    # Newer python-hcl2 releases keep the quotes around string literals
    if len(val) >= 2 and val[0] == '"' and val[-1] == '"':
        return val[1:-1]
    return val


def _unwrap(val: Any) -> Any:
    """
    python-hcl2 wraps single-element blocks in a list.
    Recursively unwrap single-element lists that contain dicts.
    """
    if isinstance(val, list):
        if len(val) == 1 and isinstance(val[0], dict):
            return _unwrap(val[0])
        return [_unwrap(v) for v in val]
    if isinstance(val, dict):
        return {
            _strip_quotes(k): _unwrap(v)
            for k, v in val.items()
            if not (isinstance(k, str) and k.startswith("__"))
        }
    if isinstance(val, str):
        return _strip_quotes(val)
    return val


def _as_list(val: Any) -> List[Any]:
    if val is None:
        return []
    if isinstance(val, list):
        return val
    return [val]


def _declaration(resource_type: str, name: str, raw_props: Any, filepath: str, index: int) -> Declaration:
    props = _unwrap(raw_props) if isinstance(raw_props, dict) else {}
    if not isinstance(props, dict):
        props = {}

    for meta in _UNSUPPORTED_META & set(props):
        console.print(
            f"[yellow]Warning:[/yellow] '{meta}' on {resource_type}.{name} is not supported and is ignored"
        )

    return Declaration(
        resource_type=_strip_quotes(resource_type),
        name=_strip_quotes(name),
        attributes={k: v for k, v in props.items() if k not in _META_ARGS},
        source_format="terraform",
        source_file=filepath,
        depends_on=[d for d in _as_list(props.get("depends_on")) if isinstance(d, str)],
        index=index,
    )


def parse_file(filepath: str) -> List[Declaration]:
    declarations: List[Declaration] = []
    try:
        with open(filepath) as fh:
            data = hcl2.load(fh)
    except Exception as exc:
        # python-hcl2 surfaces lark errors of many types
        raise DeclarationError(filepath, str(exc)) from exc

    for resource_block in data.get("resource", []):
        for resource_type, instances in resource_block.items():
            # hcl2 may wrap the block in a list
            instance_maps: List[Dict[str, Any]] = [
                m for m in _as_list(instances) if isinstance(m, dict)
            ]
            for instance_map in instance_maps:
                for name, raw_props in instance_map.items():
                    declarations.append(
                        _declaration(resource_type, name, raw_props, filepath, len(declarations))
                    )

    return declarations


def parse_directory(path: str) -> List[Declaration]:
    declarations: List[Declaration] = []

    if os.path.isfile(path):
        if detect_format(path) == "terraform":
            declarations.extend(parse_file(path))
        return declarations

    for root, _, files in sorted(os.walk(path)):
        for fname in sorted(files):
            fpath = os.path.join(root, fname)
            if detect_format(fpath) == "terraform":
                declarations.extend(parse_file(fpath))

    return declarations
