"""
Planner: compares the resource graph with the applied-state snapshot and
produces an ordered list of create / update / delete steps.

Ordering constraints between steps are kept as explicit edges so the
executor can run unrelated steps side by side.
"""
import logging
from typing import Dict, Iterable, List, Optional, Set, Tuple

import networkx as nx

from stackmap.errors import PlanError
from stackmap.graph import ResourceGraph
from stackmap.models.plan import Action, Plan, Step
from stackmap.models.resource import RESOURCE_TYPES, split_address
from stackmap.state import Snapshot, normalize

logger = logging.getLogger(__name__)

MutableTable = Dict[str, Iterable[str]]


def _default_mutable() -> MutableTable:
    return {name: info.mutable for name, info in RESOURCE_TYPES.items()}


def diff_attributes(before: dict, after: dict) -> List[str]:
    """Top-level keys whose value differs, in declaration order."""
    before = normalize(before or {})
    after = normalize(after or {})
    changed = [k for k in after if before.get(k) != after[k]]
    changed += [k for k in before if k not in after]
    return changed


class _Decision:
    __slots__ = ("action", "changed", "reason")

    def __init__(self, action: str, changed: Optional[List[str]] = None, reason: str = ""):
        self.action = action            # "create", "update", "replace", "delete"
        self.changed = changed or []
        self.reason = reason


def _decide(graph: ResourceGraph, snapshot: Snapshot, mutable: MutableTable) -> Dict[str, _Decision]:
    decisions: Dict[str, _Decision] = {}

    # Topological order so a dependency's decision is known before its dependents
    for address in graph.creation_order():
        decl = graph.get(address)
        entry = snapshot.get(address)
        if entry is None:
            decisions[address] = _Decision("create", reason="not in state")
            continue

        changed = diff_attributes(entry.get("attributes", {}), decl.attributes)
        reasons = []
        if changed:
            reasons.append("attributes changed")

        for dep in graph.dependencies(address):
            upstream = decisions.get(dep)
            if upstream is None or upstream.action not in ("create", "replace"):
                continue
            # The referenced output will only be known after the dependency applies
            keys = [k for k in graph.referencing_keys(dep, address) if k not in changed]
            if keys:
                changed.extend(keys)
                reasons.append(f"{dep} is {'replaced' if upstream.action == 'replace' else 'created'}")

        if not changed:
            continue

        allowed = set(mutable.get(decl.resource_type, ()))
        immutable = [k for k in changed if k not in allowed]
        action = "replace" if immutable else "update"
        if immutable:
            reasons.append("immutable: " + ", ".join(immutable))
        decisions[address] = _Decision(action, changed, "; ".join(reasons))

    for address in snapshot:
        if address not in graph:
            decisions[address] = _Decision("delete", reason="no longer declared")

    return decisions


def _steps_for(address: str, decision: _Decision, graph: ResourceGraph, snapshot: Snapshot) -> List[Step]:
    resource_type, _ = split_address(address)
    entry = snapshot.get(address) or {}
    before = entry.get("attributes")
    after = graph.get(address).attributes if address in graph else None

    def step(action: Action, replace: bool = False) -> Step:
        return Step(
            action=action,
            address=address,
            resource_type=resource_type,
            before=before,
            after=after,
            changed=list(decision.changed),
            replace=replace,
            reason=decision.reason,
        )

    if decision.action == "create":
        return [step(Action.CREATE)]
    if decision.action == "update":
        return [step(Action.UPDATE)]
    if decision.action == "replace":
        return [step(Action.DELETE, replace=True), step(Action.CREATE, replace=True)]
    return [step(Action.DELETE)]


def _sort_key(graph: ResourceGraph, snapshot: Snapshot):
    state_order = {address: i for i, address in enumerate(snapshot)}
    offset = len(graph)

    def key(step_id: str) -> Tuple[int, int]:
        action, _, address = step_id.partition(":")
        if address in graph:
            index = graph.get(address).index
        else:
            index = offset + state_order.get(address, 0)
        return (0 if action == Action.DELETE.value else 1, index)

    return key


def _ordered(step_graph: nx.DiGraph, key) -> List[str]:
    try:
        return list(nx.lexicographical_topological_sort(step_graph, key=key))
    except nx.NetworkXUnfeasible:
        cycle = [u for u, _ in nx.find_cycle(step_graph)]
        raise PlanError("No valid order for planned changes: " + " -> ".join(cycle + cycle[:1])) from None


def plan(graph: ResourceGraph, snapshot: Snapshot, mutable_attributes: Optional[MutableTable] = None) -> Plan:
    """
    Compute the steps that move the applied state to the declared graph.

    Raises PlanError when the ordering constraints cannot be satisfied.
    """
    mutable = mutable_attributes if mutable_attributes is not None else _default_mutable()
    decisions = _decide(graph, snapshot, mutable)

    steps: Dict[str, Step] = {}
    step_graph = nx.DiGraph()
    for address, decision in decisions.items():
        for s in _steps_for(address, decision, graph, snapshot):
            steps[s.step_id] = s
            step_graph.add_node(s.step_id)

    def find(action: Action, address: str) -> Optional[str]:
        step_id = f"{action.value}:{address}"
        return step_id if step_id in steps else None

    def forward(address: str) -> Optional[str]:
        return find(Action.CREATE, address) or find(Action.UPDATE, address)

    # Dependencies are created/updated before their dependents
    for dep, dependent in graph.graph.edges:
        before, after = forward(dep), forward(dependent)
        if before and after:
            step_graph.add_edge(before, after)

    for address, decision in decisions.items():
        delete = find(Action.DELETE, address)
        if delete is None:
            continue
        if decision.action == "replace":
            step_graph.add_edge(delete, find(Action.CREATE, address))

        dependents: Set[str] = set(snapshot.dependents(address))
        if address in graph:
            dependents.update(graph.dependents(address))
        for dependent in dependents:
            dependent_delete = find(Action.DELETE, dependent)
            if dependent_delete:
                step_graph.add_edge(dependent_delete, delete)
                continue
            dependent_update = find(Action.UPDATE, dependent)
            still_references = dependent in graph and address in graph.dependencies(dependent)
            if dependent_update and not still_references:
                step_graph.add_edge(dependent_update, delete)

    order = _ordered(step_graph, _sort_key(graph, snapshot))
    refresh = [
        address for address in graph.creation_order()
        if address in snapshot
        and address not in decisions
        and sorted(snapshot.dependencies(address)) != sorted(graph.dependencies(address))
    ]

    result = Plan(
        steps=[steps[step_id] for step_id in order],
        edges=sorted(step_graph.edges, key=lambda e: (order.index(e[0]), order.index(e[1]))),
        refresh=refresh,
    )
    logger.debug("planned %d step(s): %s", len(result.steps), result.counts())
    return result


def plan_destroy(snapshot: Snapshot, targets: Optional[Iterable[str]] = None) -> Plan:
    """
    Delete every resource in state, or the ``targets`` together with
    everything that depends on them. Dependents are always deleted first.
    """
    if targets:
        selected: Set[str] = set()
        pending = list(targets)
        for address in pending:
            if address not in snapshot:
                raise PlanError(f"'{address}' is not in state")
        while pending:
            address = pending.pop()
            if address in selected:
                continue
            selected.add(address)
            pending.extend(snapshot.dependents(address))
    else:
        selected = set(snapshot)

    state_order = {address: i for i, address in enumerate(snapshot)}
    step_graph = nx.DiGraph()
    steps: Dict[str, Step] = {}
    for address in selected:
        entry = snapshot.get(address) or {}
        resource_type, _ = split_address(address)
        s = Step(
            action=Action.DELETE,
            address=address,
            resource_type=resource_type,
            before=entry.get("attributes"),
            reason="destroy",
        )
        steps[s.step_id] = s
        step_graph.add_node(s.step_id)

    for address in selected:
        for dependent in snapshot.dependents(address):
            if dependent in selected:
                step_graph.add_edge(f"delete:{dependent}", f"delete:{address}")

    # Reverse declaration order when nothing else decides
    order = _ordered(step_graph, lambda step_id: -state_order.get(step_id.partition(":")[2], 0))
    return Plan(
        steps=[steps[step_id] for step_id in order],
        edges=sorted(step_graph.edges, key=lambda e: (order.index(e[0]), order.index(e[1]))),
        destroy=True,
    )
