# src/teliclens/vfg/clustering.py
"""
Zoom-level clustering of the variable graph.

  0  variables   (identity)
  1  functions   variables folded into their cluster (parent function) nodes
  2  files       functions and variables folded into file nodes
  3  intents     only intent nodes and intent-level edges survive

Every aggregated edge is keyed by its ordered (source, target) pair; the first
edge seen for a key decides the aggregate's label and reason.
"""

from __future__ import annotations

import dataclasses
from enum import IntEnum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from loguru import logger

from .model import (
    GLOBAL_SCOPE,
    Edge,
    EdgeType,
    Graph,
    Node,
    NodeType,
    SourceLocation,
    VariableKind,
)


class ZoomLevel(IntEnum):
    VARIABLE = 0
    FUNCTION = 1
    FILE = 2
    INTENT = 3


_FUNCTION_LIKE = frozenset({NodeType.FUNCTION.value, NodeType.VARIABLE.value})
_INTENT_EDGES = frozenset({EdgeType.SUPPORTS_INTENT.value, EdgeType.UNDERMINES_INTENT.value})


def _index(nodes: Sequence[Node]) -> Dict[str, Node]:
    by_id: Dict[str, Node] = {}
    for n in nodes:
        by_id.setdefault(n.id, n)
    return by_id


def _with_count(desc: str, count: int, unit: str) -> str:
    return f"{desc} [{count} {unit}]".strip()


def _union(*groups: Iterable[str]) -> Tuple[str, ...]:
    seen: Dict[str, None] = {}
    for g in groups:
        for item in g:
            seen.setdefault(item, None)
    return tuple(seen)


def _member_io(n: Node) -> Tuple[Tuple[str, ...], Tuple[str, ...]]:
    """Inputs/outputs a variable contributes to its cluster."""
    inputs, outputs = n.inputs, n.outputs
    info = n.variable_info
    if info is not None:
        if info.kind is VariableKind.PARAMETER:
            inputs = _union(inputs, (info.symbol_name,))
        elif info.kind is VariableKind.RETURN:
            outputs = _union(outputs, (info.symbol_name,))
    return inputs, outputs


def _cluster_label(key: str) -> str:
    # func:<file>:<function>
    return key.rsplit(":", 1)[-1] if key.startswith("func:") else key


# ==============================================================================
# Level 1: variables -> functions
# ==============================================================================


def cluster_variables_into_functions(nodes: Sequence[Node], edges: Sequence[Edge]) -> Graph:
    variables = [n for n in nodes if n.is_variable]
    others = [n for n in nodes if not n.is_variable]

    by_cluster: Dict[str, List[Node]] = {}
    for v in variables:
        by_cluster.setdefault(v.cluster_id or GLOBAL_SCOPE, []).append(v)

    def folded(base: Node, members: List[Node]) -> Node:
        ins: List[Tuple[str, ...]] = [base.inputs]
        outs: List[Tuple[str, ...]] = [base.outputs]
        for m in members:
            i, o = _member_io(m)
            ins.append(i)
            outs.append(o)
        return dataclasses.replace(
            base,
            description=_with_count(base.description, len(members), "variables"),
            inputs=_union(*ins),
            outputs=_union(*outs),
            member_count=len(members),
            cluster_level=int(ZoomLevel.FUNCTION),
        )

    out_nodes: List[Node] = []
    covered = set()
    for n in others:
        members = by_cluster.get(n.id)
        if members:
            covered.add(n.id)
            out_nodes.append(folded(n, members))
        else:
            out_nodes.append(n)

    for key, members in by_cluster.items():
        if key in covered:
            continue
        covered.add(key)
        first = members[0]
        lines = [m.location.start_line for m in members if m.location is not None]
        base = Node(
            id=key,
            label=_cluster_label(key),
            type=NodeType.FUNCTION.value,
            location=SourceLocation(
                file=first.location.file,
                start_line=min(lines),
                end_line=max(lines),
            ) if first.location is not None else None,
        )
        out_nodes.append(folded(base, members))

    by_id = _index(nodes)
    new_edges: Dict[Tuple[str, str], Edge] = {}
    for e in edges:
        src, dst = by_id.get(e.source), by_id.get(e.target)
        if src is None or dst is None:
            continue
        if src.is_variable and dst.is_variable:
            sc, tc = src.cluster_id or GLOBAL_SCOPE, dst.cluster_id or GLOBAL_SCOPE
            if sc == tc or (sc, tc) in new_edges:
                continue
            new_edges[(sc, tc)] = Edge(
                source=sc,
                target=tc,
                type=EdgeType.FLOW.value,
                label=f"data flow ({e.label or 'variables'})",
                reason="Aggregated from variable flows",
            )
        else:
            new_edges.setdefault(e.key, e)

    return Graph(nodes=out_nodes, edges=list(new_edges.values()))


# ==============================================================================
# Level 2: functions -> files
# ==============================================================================


def _file_of(n: Node) -> Optional[str]:
    return n.location.file if n.location is not None and n.location.file else None


def _member_files(members: Sequence[Node]) -> Dict[str, str]:
    """
    File path per function/variable id. Variables follow the function node that covers
    their cluster; a covering node without a location takes its first member's file.
    """
    functions = {n.id: n for n in members if n.type == NodeType.FUNCTION.value}
    covering: Dict[str, str] = {}
    for n in members:
        if n.is_variable and n.cluster_id in functions:
            path = _file_of(n)
            if path is not None:
                covering.setdefault(n.cluster_id, path)

    paths: Dict[str, str] = {}
    for n in members:
        if n.id in paths:
            continue
        if n.is_variable and n.cluster_id in functions:
            owner = functions[n.cluster_id]
            paths[n.id] = _file_of(owner) or covering.get(owner.id) or "unknown"
        elif n.id in functions:
            paths[n.id] = _file_of(n) or covering.get(n.id) or "unknown"
        else:
            paths[n.id] = _file_of(n) or "unknown"
    return paths


def cluster_functions_into_files(nodes: Sequence[Node], edges: Sequence[Edge]) -> Graph:
    functions = [n for n in nodes if n.type in _FUNCTION_LIKE]
    others = [n for n in nodes if n.type not in _FUNCTION_LIKE]

    path_of = _member_files(functions)

    by_file: Dict[str, List[Node]] = {}
    for f in functions:
        by_file.setdefault(path_of[f.id], []).append(f)

    file_nodes: Dict[str, Node] = {}
    for n in others:
        if n.type == NodeType.FILE.value:
            file_nodes.setdefault(n.id, n)

    file_node_for: Dict[str, str] = {}
    for path, members in by_file.items():
        existing: Optional[Node] = None
        for fn in file_nodes.values():
            if (fn.location is not None and fn.location.file == path) or fn.label == path:
                existing = fn
                break
        if existing is not None:
            file_nodes[existing.id] = dataclasses.replace(
                existing,
                description=_with_count(existing.description, len(members), "functions"),
                member_count=len(members),
                cluster_level=int(ZoomLevel.FILE),
            )
            file_node_for[path] = existing.id
        else:
            fid = f"file:{path}"
            file_nodes[fid] = Node(
                id=fid,
                label=path,
                type=NodeType.FILE.value,
                description=f"{len(members)} functions",
                location=SourceLocation(file=path, start_line=1, end_line=1),
                member_count=len(members),
                cluster_level=int(ZoomLevel.FILE),
            )
            file_node_for[path] = fid

    by_id = _index(nodes)
    new_edges: Dict[Tuple[str, str], Edge] = {}
    for e in edges:
        src, dst = by_id.get(e.source), by_id.get(e.target)
        if src is None or dst is None:
            continue
        if src.type in _FUNCTION_LIKE and dst.type in _FUNCTION_LIKE:
            sf, tf = path_of[src.id], path_of[dst.id]
            if sf == tf:
                continue
            key = (file_node_for[sf], file_node_for[tf])
            if key in new_edges:
                continue
            new_edges[key] = Edge(
                source=key[0],
                target=key[1],
                type=EdgeType.DEPENDENCY.value,
                label="file dependency",
                reason="Aggregated from function dependencies",
            )
        else:
            new_edges.setdefault(e.key, e)

    out_nodes = list(file_nodes.values()) + [n for n in others if n.type != NodeType.FILE.value]
    return Graph(nodes=out_nodes, edges=list(new_edges.values()))


# ==============================================================================
# Level 3: files -> intents
# ==============================================================================


def cluster_files_into_intents(nodes: Sequence[Node], edges: Sequence[Edge]) -> Graph:
    intents = [n for n in nodes if n.type == NodeType.INTENT.value]
    by_id = _index(nodes)

    serving: Dict[str, Dict[str, None]] = {}
    for e in edges:
        if e.type == EdgeType.SERVES_INTENT.value:
            serving.setdefault(e.target, {})[e.source] = None

    out_nodes = []
    for it in intents:
        count = len(serving.get(it.id, {}))
        out_nodes.append(
            dataclasses.replace(
                it,
                description=_with_count(it.description, count, "components"),
                member_count=count,
                cluster_level=int(ZoomLevel.INTENT),
            )
        )

    def keep(e: Edge) -> bool:
        if e.type in _INTENT_EDGES:
            return True
        if e.type == EdgeType.SERVES_INTENT.value:
            tgt = by_id.get(e.target)
            return tgt is not None and tgt.type == NodeType.INTENT.value
        return False

    return Graph(nodes=out_nodes, edges=[e for e in edges if keep(e)])


# ==============================================================================
# Public entry points
# ==============================================================================


def cluster(nodes: Sequence[Node], edges: Sequence[Edge], level: int) -> Graph:
    """Coarsen a graph to the given zoom level (0-3). Pure; inputs are not mutated."""
    try:
        zoom = ZoomLevel(int(level))
    except ValueError:
        raise ValueError(f"zoom level must be 0-3, got {level!r}") from None

    if zoom is ZoomLevel.VARIABLE:
        result = Graph(nodes=list(nodes), edges=list(edges))
    elif zoom is ZoomLevel.FUNCTION:
        result = cluster_variables_into_functions(nodes, edges)
    elif zoom is ZoomLevel.FILE:
        result = cluster_functions_into_files(nodes, edges)
    else:
        result = cluster_files_into_intents(nodes, edges)

    logger.debug(
        "level {} ({}): {} nodes / {} edges -> {} nodes / {} edges",
        int(zoom), zoom.name.lower(), len(nodes), len(edges), len(result.nodes), len(result.edges),
    )
    return result


def zoom_level_for_width(width: float) -> ZoomLevel:
    """Wider viewport (zoomed out further) means a coarser level."""
    if width < 1000:
        return ZoomLevel.VARIABLE
    if width < 2000:
        return ZoomLevel.FUNCTION
    if width < 4000:
        return ZoomLevel.FILE
    return ZoomLevel.INTENT


def merge_variable_nodes(existing: Sequence[Node], variables: Sequence[Node]) -> List[Node]:
    """
    Attach variable nodes to an existing function/file graph: a variable whose parent
    function appears in a function node's label is re-pointed at that node, then the
    two lists are concatenated and de-duplicated by ID (first wins).
    """
    functions = [n for n in existing if n.type == NodeType.FUNCTION.value]
    adopted: List[Node] = []
    for v in variables:
        parent = v.variable_info.parent_function if v.variable_info is not None else None
        if parent:
            for f in functions:
                if parent in f.label:
                    v = dataclasses.replace(v, cluster_id=f.id)
                    break
        adopted.append(v)

    merged: List[Node] = []
    seen = set()
    for n in list(existing) + adopted:
        if n.id in seen:
            continue
        seen.add(n.id)
        merged.append(n)
    return merged
