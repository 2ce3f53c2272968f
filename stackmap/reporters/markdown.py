"""
Markdown + Mermaid plan report generator.
"""
import re
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Optional

from jinja2 import Environment

from stackmap import __version__
from stackmap.graph import ResourceGraph
from stackmap.models.plan import Action, Plan
from stackmap.models.resource import Declaration, EdgeKind

_ACTION_ICON = {
    "create": "+",
    "update": "~",
    "replace": "-/+",
    "delete": "-",
}

_SUBGRAPHS = {
    "docker_network": "Networking",
    "docker_volume": "Storage",
    "docker_image": "Images",
    "docker_container": "Containers",
    "random_password": "Secrets",
    "random_string": "Secrets",
}

_ACTION_STYLE = {
    "create": "fill:#88cc00,color:#000",
    "update": "fill:#ffcc00,color:#000",
    "replace": "fill:#ff8800,color:#fff",
    "delete": "fill:#ff4444,color:#fff",
}


def _sanitize_node_id(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_]", "_", name)


def _node_shape(decl: Declaration) -> str:
    label = decl.address
    sg = _SUBGRAPHS.get(decl.resource_type, "Other")
    if sg == "Storage":
        return f"[({label})]"
    if sg == "Networking":
        return f"{{{label}}}"
    if sg == "Secrets":
        return f"[/{label}/]"
    if sg == "Images":
        return f"([{label}])"
    return f"[{label}]"


def planned_actions(plan: Optional[Plan]) -> Dict[str, str]:
    """Address -> create/update/replace/delete."""
    actions: Dict[str, str] = {}
    if plan is None:
        return actions
    for step in plan.steps:
        if step.replace:
            actions[step.address] = "replace"
        else:
            actions.setdefault(step.address, step.action.value)
    return actions


def build_mermaid(graph: ResourceGraph, plan: Optional[Plan] = None) -> str:
    actions = planned_actions(plan)

    subgraphs: Dict[str, List[Declaration]] = defaultdict(list)
    for decl in graph.declarations:
        subgraphs[_SUBGRAPHS.get(decl.resource_type, "Other")].append(decl)

    lines = ["flowchart LR"]
    for sg_name in ["Images", "Networking", "Storage", "Secrets", "Containers", "Other"]:
        members = subgraphs.get(sg_name, [])
        if not members:
            continue
        lines.append(f"    subgraph {sg_name}")
        for decl in members:
            lines.append(f"        {_sanitize_node_id(decl.address)}{_node_shape(decl)}")
        lines.append("    end")

    # Arrows point from a resource to what it needs
    for dep, dependent in graph.graph.edges:
        kinds = graph.edge_kinds(dep, dependent)
        label = "ref" if EdgeKind.REFERENCE in kinds else "depends_on"
        lines.append(f"    {_sanitize_node_id(dependent)} -->|{label}| {_sanitize_node_id(dep)}")

    for address, action in actions.items():
        if address in graph:
            lines.append(f"    style {_sanitize_node_id(address)} {_ACTION_STYLE[action]}")

    return "\n".join(lines)


_TEMPLATE = """\
# Stack Plan

**Generated:** {{ generated }}
**Source:** {{ source }}
**Tool:** stackmap v{{ version }}

---

## Summary

{% if plan.is_empty %}
No changes. The applied state matches the declarations.
{% else %}
Plan: **{{ counts["create"] }}** to create, **{{ counts["update"] }}** to update in place, **{{ counts["replace"] }}** to replace, **{{ counts["delete"] }}** to delete.
{% endif %}

---

## Planned Steps

| # | Action | Resource | Changed | Reason |
|---|--------|----------|---------|--------|
{% for s in plan.steps %}| {{ loop.index }} | {{ icon[s.action.value] }} {{ s.action.value }}{% if s.replace %} (replace){% endif %} | `{{ s.address }}` | {{ s.changed | join(", ") }} | {{ s.reason }} |
{% endfor %}
{% if plan.refresh %}
Dependency records refreshed without changes: {% for a in plan.refresh %}`{{ a }}`{% if not loop.last %}, {% endif %}{% endfor %}
{% endif %}

---

## Declared Resources

| # | Resource | Type | Depends on | Source |
|---|----------|------|------------|--------|
{% for d in declarations %}| {{ loop.index }} | `{{ d.name }}` | `{{ d.resource_type }}` | {{ deps[d.address] | join(", ") }} | {{ d.source_file }} |
{% endfor %}

---

## Dependency Graph

```mermaid
{{ mermaid }}
```
"""


def build_report(plan: Plan, graph: ResourceGraph, source_path: str) -> str:
    env = Environment(autoescape=False)
    template = env.from_string(_TEMPLATE)

    counts = plan.counts()
    return template.render(
        generated=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
        source=source_path,
        version=__version__,
        plan=plan,
        counts=counts,
        icon={a.value: _ACTION_ICON[a.value] for a in Action},
        declarations=graph.declarations,
        deps={d.address: graph.dependencies(d.address) for d in graph.declarations},
        mermaid=build_mermaid(graph, plan),
    )
