# src/teliclens/vfg/consistency.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Sequence, Set, Tuple

from loguru import logger

from .model import Edge, EdgeType, Node, VariableKind

SANITIZER_MARKERS: Tuple[str, ...] = ("sanitize", "encrypt", "validate")

_CHECKED_EDGE_TYPES = frozenset({EdgeType.FLOW.value, EdgeType.DEPENDENCY.value})


@dataclass(frozen=True)
class ConsistencyReport:
    orphan_defs: List[str] = field(default_factory=list)
    orphan_uses: List[str] = field(default_factory=list)
    unreachable_flows: List[str] = field(default_factory=list)
    trust_boundary_violations: List[str] = field(default_factory=list)
    missing_nodes: List[str] = field(default_factory=list)
    summary: str = ""

    @property
    def issue_count(self) -> int:
        return (
            len(self.orphan_defs)
            + len(self.orphan_uses)
            + len(self.unreachable_flows)
            + len(self.trust_boundary_violations)
            + len(self.missing_nodes)
        )

    @property
    def is_consistent(self) -> bool:
        return self.issue_count == 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "orphanDefs": list(self.orphan_defs),
            "orphanUses": list(self.orphan_uses),
            "unreachableFlows": list(self.unreachable_flows),
            "trustBoundaryViolations": list(self.trust_boundary_violations),
            "missingNodes": list(self.missing_nodes),
            "summary": self.summary,
        }


def is_sanitized(reason: str) -> bool:
    low = (reason or "").lower()
    return any(m in low for m in SANITIZER_MARKERS)


def find_reachable_nodes(start_id: str, incoming: Mapping[str, Sequence[str]]) -> List[str]:
    """Backward BFS over incoming edges; the start node is part of the result."""
    visited: Set[str] = set()
    order: List[str] = []
    queue = deque([start_id])
    while queue:
        current = queue.popleft()
        if current in visited:
            continue
        visited.add(current)
        order.append(current)
        for parent in incoming.get(current, ()):
            if parent not in visited:
                queue.append(parent)
    return order


def _summarize(report_lists: Dict[str, List[str]], variable_count: int) -> str:
    issues = sum(len(v) for v in report_lists.values())
    if issues == 0:
        return f"All {variable_count} variables are consistent. No data flow issues detected."
    lines = [f"Found {issues} consistency issues across {variable_count} variables:\n"]
    for key, label in (
        ("orphan_defs", "orphan definitions"),
        ("orphan_uses", "orphan uses"),
        ("unreachable_flows", "unreachable flows"),
        ("trust_boundary_violations", "trust boundary violations"),
        ("missing_nodes", "missing nodes"),
    ):
        if report_lists[key]:
            lines.append(f"  - {len(report_lists[key])} {label}\n")
    return "".join(lines)


def check_variable_consistency(nodes: Iterable[Node], edges: Iterable[Edge]) -> ConsistencyReport:
    """
    Run the five structural/security checks over a (filtered) graph.

    Only variable nodes and flow/dependency edges take part in checks 1-4; the
    missing-node check covers every edge against every node passed in. Nothing
    here raises on a defect: every finding is a report entry.
    """
    nodes = list(nodes)
    edges = list(edges)
    variables = [n for n in nodes if n.is_variable and n.variable_info is not None]
    var_edges = [e for e in edges if e.type in _CHECKED_EDGE_TYPES]

    by_id: Dict[str, Node] = {}
    for n in nodes:
        by_id.setdefault(n.id, n)
    var_by_id: Dict[str, Node] = {}
    for n in variables:
        var_by_id.setdefault(n.id, n)

    outgoing: Dict[str, List[str]] = {}
    incoming: Dict[str, List[str]] = {}
    for e in var_edges:
        outgoing.setdefault(e.source, []).append(e.target)
        incoming.setdefault(e.target, []).append(e.source)

    found: Dict[str, List[str]] = {
        "orphan_defs": [],
        "orphan_uses": [],
        "unreachable_flows": [],
        "trust_boundary_violations": [],
        "missing_nodes": [],
    }

    # 1. defined, never used, nothing flows out
    for n in variables:
        info = n.variable_info
        if info.is_def and not info.is_use and not outgoing.get(n.id):
            found["orphan_defs"].append(f"{n.id} ({n.label} in {info.scope})")

    # 2. used, never defined, nothing flows in; any same-named def anywhere excuses it
    defined_names: Dict[str, Set[str]] = {}
    for n in variables:
        if n.variable_info.is_def:
            defined_names.setdefault(n.variable_info.symbol_name, set()).add(n.id)
    for n in variables:
        info = n.variable_info
        if info.is_use and not info.is_def and not incoming.get(n.id):
            others = defined_names.get(info.symbol_name, set()) - {n.id}
            if not others:
                found["orphan_uses"].append(f"{n.id} ({n.label} in {info.scope})")

    # 3. no same-named def among backward-reachable ancestors
    for n in variables:
        info = n.variable_info
        if not info.is_use or info.kind is VariableKind.PARAMETER:
            continue
        reachable = find_reachable_nodes(n.id, incoming)
        has_def = False
        for anc_id in reachable:
            anc = var_by_id.get(anc_id)
            if anc is not None and anc.variable_info.is_def and anc.variable_info.symbol_name == info.symbol_name:
                has_def = True
                break
        if not has_def:
            file = n.location.file if n.location is not None else ""
            line = n.location.start_line if n.location is not None else 0
            found["unreachable_flows"].append(f"{n.id} ({n.label} at {file}:{line})")

    # 4. boundary crossings must carry a sanitizer in their reason
    for e in var_edges:
        src, dst = by_id.get(e.source), by_id.get(e.target)
        crosses = e.trust_boundary or (src is not None and src.trust_boundary) or (dst is not None and dst.trust_boundary)
        if crosses and not is_sanitized(e.reason):
            found["trust_boundary_violations"].append(
                f"{e.source} → {e.target} (crosses trust boundary without sanitization)"
            )

    # 5. referential integrity
    for e in edges:
        if e.source not in by_id:
            found["missing_nodes"].append(f"{e.source} (referenced in edge but missing node)")
        if e.target not in by_id:
            found["missing_nodes"].append(f"{e.target} (referenced in edge but missing node)")

    summary = _summarize(found, len(variables))
    report = ConsistencyReport(summary=summary, **found)
    logger.debug("consistency check: {} issues over {} variables", report.issue_count, len(variables))
    return report
