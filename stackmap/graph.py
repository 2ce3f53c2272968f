"""
Resource graph builder.

Turns parsed declarations into a directed acyclic graph whose edges point
from a dependency to the resource that depends on it.
"""
import dataclasses
from typing import Dict, Iterable, List, Optional

import networkx as nx

from stackmap import interpolate
from stackmap.errors import (
    CycleError,
    DuplicateResourceError,
    UnresolvedReferenceError,
    UnsupportedResourceError,
)
from stackmap.models.resource import RESOURCE_TYPES, Declaration, EdgeKind, Reference


class ResourceGraph:
    def __init__(self, declarations: List[Declaration], graph: nx.DiGraph):
        self._declarations = {d.address: d for d in declarations}
        self.graph = graph

    def __contains__(self, address: str) -> bool:
        return address in self._declarations

    def __len__(self) -> int:
        return len(self._declarations)

    @property
    def declarations(self) -> List[Declaration]:
        return list(self._declarations.values())

    def get(self, address: str) -> Declaration:
        return self._declarations[address]

    def dependencies(self, address: str) -> List[str]:
        return sorted(self.graph.predecessors(address), key=self._index)

    def dependents(self, address: str) -> List[str]:
        return sorted(self.graph.successors(address), key=self._index)

    def edge_kinds(self, dependency: str, dependent: str) -> set:
        if not self.graph.has_edge(dependency, dependent):
            return set()
        return set(self.graph.edges[dependency, dependent]["kinds"])

    def referencing_keys(self, dependency: str, dependent: str) -> List[str]:
        """Top-level attribute keys of ``dependent`` that interpolate ``dependency``."""
        keys: List[str] = []
        for ref in self.get(dependent).references:
            if ref.target == dependency and ref.kind == EdgeKind.REFERENCE:
                key = ref.top_level_key
                if key and key not in keys:
                    keys.append(key)
        return keys

    def creation_order(self) -> List[str]:
        return list(nx.lexicographical_topological_sort(self.graph, key=self._index))

    def _index(self, address: str) -> int:
        return self._declarations[address].index


def _resolve_references(decl: Declaration, known: Dict[str, Declaration]) -> List[Reference]:
    refs: List[Reference] = []

    for found in interpolate.scan(decl.attributes):
        target = known.get(found.address)
        if target is None:
            raise UnresolvedReferenceError(decl.address, found.address)
        info = RESOURCE_TYPES[target.resource_type]
        if found.attribute and found.attribute not in info.outputs:
            raise UnresolvedReferenceError(
                decl.address,
                f"{found.address}.{found.attribute}",
                f"'{target.resource_type}' has no output '{found.attribute}'",
            )
        refs.append(Reference(found.address, EdgeKind.REFERENCE, found.attribute, found.path))

    for entry in decl.depends_on:
        address = interpolate.parse_dependency(entry)
        if address is None:
            raise UnresolvedReferenceError(decl.address, entry, "not a resource address")
        if address not in known:
            raise UnresolvedReferenceError(decl.address, address)
        refs.append(Reference(address, EdgeKind.EXPLICIT))

    return refs


def build(declarations: Iterable[Declaration]) -> ResourceGraph:
    """
    Validate declarations and derive their dependency edges.

    Raises DuplicateResourceError, UnsupportedResourceError,
    UnresolvedReferenceError or CycleError. Input declarations are not
    modified; the graph holds copies carrying their resolved references.
    """
    known: Dict[str, Declaration] = {}
    for decl in declarations:
        if decl.address in known:
            raise DuplicateResourceError(decl.address, known[decl.address].source_file, decl.source_file)
        if decl.resource_type not in RESOURCE_TYPES:
            raise UnsupportedResourceError(decl.address)
        known[decl.address] = decl

    resolved: List[Declaration] = []
    graph = nx.DiGraph()
    for decl in known.values():
        graph.add_node(decl.address)

    for decl in known.values():
        refs = _resolve_references(decl, known)
        resolved.append(dataclasses.replace(decl, references=refs))
        for ref in refs:
            if ref.target == decl.address:
                raise CycleError([decl.address])
            if graph.has_edge(ref.target, decl.address):
                edge = graph.edges[ref.target, decl.address]
                edge["kinds"].add(ref.kind)
                if ref.path:
                    edge["paths"].append(ref.path)
            else:
                graph.add_edge(
                    ref.target, decl.address,
                    kinds={ref.kind}, paths=[ref.path] if ref.path else [],
                )

    cycle = _find_cycle(graph)
    if cycle:
        raise CycleError(cycle)

    return ResourceGraph(resolved, graph)


def _find_cycle(graph: nx.DiGraph) -> Optional[List[str]]:
    try:
        edges = nx.find_cycle(graph)
    except nx.NetworkXNoCycle:
        return None
    # Edges run dependency -> dependent; report as "depends on" chain
    return list(reversed([u for u, _ in edges]))
