# src/teliclens/vfg/boundaries.py
from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Tuple

from loguru import logger

from .model import Edge, Node

# Substrings of symbol names that denote sinks/sources crossing a trust boundary:
# storage, network, process execution and credential stores
DEFAULT_MARKERS: Tuple[str, ...] = (
    "database",
    "query",
    "sql",
    "fetch",
    "request",
    "http",
    "socket",
    "subprocess",
    "exec",
    "eval",
    "credential",
    "secret",
    "keychain",
    "vault",
    "token",
)


@dataclass(frozen=True)
class BoundaryConfig:
    markers: Tuple[str, ...] = DEFAULT_MARKERS
    explicit_ids: FrozenSet[str] = frozenset()


def is_boundary_name(name: str, markers: Iterable[str] = DEFAULT_MARKERS) -> bool:
    low = name.lower()
    return any(m.lower() in low for m in markers)


def mark_trust_boundaries(nodes: Iterable[Node], cfg: BoundaryConfig = BoundaryConfig()) -> List[Node]:
    """
    Return a new node list in which matching variable nodes carry trust_boundary=True.
    Nodes already flagged stay flagged; non-variable nodes are only flagged by explicit ID.
    """
    out: List[Node] = []
    marked = 0
    for n in nodes:
        hit = n.id in cfg.explicit_ids
        if not hit and n.is_variable and n.variable_info is not None:
            hit = is_boundary_name(n.variable_info.symbol_name, cfg.markers)
        if hit and not n.trust_boundary:
            n = dataclasses.replace(n, trust_boundary=True)
            marked += 1
        out.append(n)
    logger.debug("marked {} trust-boundary nodes", marked)
    return out


def mark_boundary_edges(edges: Iterable[Edge], cfg: BoundaryConfig = BoundaryConfig()) -> List[Edge]:
    """Flag flow edges whose value passed through a sink/source call (e.g. database.findUser)."""
    out: List[Edge] = []
    for e in edges:
        if e.via and not e.trust_boundary and is_boundary_name(e.via, cfg.markers):
            e = dataclasses.replace(e, trust_boundary=True)
        out.append(e)
    return out
