# src/teliclens/vfg/graph_diff.py
"""Compare an expected (ground-truth) graph with an actual one."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List

from .model import Edge, Graph


@dataclass(frozen=True)
class GraphDiff:
    missing_nodes: List[str] = field(default_factory=list)   # in expected, not in actual
    extra_nodes: List[str] = field(default_factory=list)     # in actual, not in expected
    missing_edges: List[str] = field(default_factory=list)
    extra_edges: List[str] = field(default_factory=list)
    summary: str = ""

    @property
    def matches(self) -> bool:
        return not (self.missing_nodes or self.extra_nodes or self.missing_edges or self.extra_edges)

    def to_dict(self) -> Dict[str, object]:
        return {
            "missingNodes": list(self.missing_nodes),
            "extraNodes": list(self.extra_nodes),
            "missingEdges": list(self.missing_edges),
            "extraEdges": list(self.extra_edges),
            "summary": self.summary,
        }


def _edge_key(e: Edge) -> str:
    return f"{e.source}->{e.target}"


def diff_graphs(expected: Graph, actual: Graph) -> GraphDiff:
    expected_ids = {n.id for n in expected.nodes}
    actual_ids = {n.id for n in actual.nodes}
    expected_edges = {_edge_key(e) for e in expected.edges}
    actual_edges = {_edge_key(e) for e in actual.edges}

    missing_nodes = [n.id for n in expected.nodes if n.id not in actual_ids]
    extra_nodes = [n.id for n in actual.nodes if n.id not in expected_ids]
    missing_edges = [_edge_key(e) for e in expected.edges if _edge_key(e) not in actual_edges]
    extra_edges = [_edge_key(e) for e in actual.edges if _edge_key(e) not in expected_edges]

    total = len(missing_nodes) + len(extra_nodes) + len(missing_edges) + len(extra_edges)
    if total == 0:
        summary = "Graphs match"
    else:
        parts = [f"Found {total} differences:\n"]
        for items, label in (
            (missing_nodes, "missing nodes"),
            (extra_nodes, "extra nodes"),
            (missing_edges, "missing edges"),
            (extra_edges, "extra edges"),
        ):
            if items:
                parts.append(f"  - {len(items)} {label}\n")
        summary = "".join(parts)

    return GraphDiff(
        missing_nodes=missing_nodes,
        extra_nodes=extra_nodes,
        missing_edges=missing_edges,
        extra_edges=extra_edges,
        summary=summary,
    )
