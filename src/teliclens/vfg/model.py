# src/teliclens/vfg/model.py
"""
Graph model shared by the extractor, checker and clusterer.

Two layers live here:
  - observations (VariableSymbol, FlowEdge) as emitted per file by the extractor
  - canonical graph (Node, Edge) keyed by string IDs, which is what the checker,
    clusterer and any rendering layer consume; its dict form uses camelCase keys
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class VariableKind(str, Enum):
    PARAMETER = "parameter"
    LOCAL = "local"
    RETURN = "return"
    FIELD = "field"
    GLOBAL = "global"


class FlowKind(str, Enum):
    ASSIGNMENT = "assignment"
    RETURN = "return"
    PARAMETER_ARGUMENT = "parameter-argument"
    DEF_USE = "def-use"


class DataType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"
    FUNCTION = "function"
    UNKNOWN = "unknown"


class NodeType(str, Enum):
    VARIABLE = "variable"
    FUNCTION = "function"
    FILE = "file"
    INTENT = "intent"
    DATA = "data"


class EdgeType(str, Enum):
    FLOW = "flow"
    DEPENDENCY = "dependency"
    SERVES_INTENT = "serves_intent"
    SUPPORTS_INTENT = "supports_intent"
    UNDERMINES_INTENT = "undermines_intent"


GLOBAL_SCOPE = "global"


# ---- Observations --------------------------------------------------------------


@dataclass(frozen=True)
class VariableSymbol:
    name: str
    scope: str
    kind: VariableKind
    file: str
    line: int
    is_def: bool = False
    is_use: bool = False
    parent_function: Optional[str] = None
    data_type: Optional[DataType] = None


@dataclass(frozen=True)
class FlowEdge:
    """Directed flow between two canonical variable IDs."""
    source: str
    target: str
    kind: FlowKind
    reason: str = ""
    trust_boundary: bool = False
    via: Optional[str] = None  # callee the value passed through, if any


@dataclass
class ExtractionResult:
    variables: List[VariableSymbol] = field(default_factory=list)
    flows: List[FlowEdge] = field(default_factory=list)

    def extend(self, other: "ExtractionResult") -> None:
        self.variables.extend(other.variables)
        self.flows.extend(other.flows)


# ---- Canonical graph -------------------------------------------------------------


@dataclass(frozen=True)
class SourceLocation:
    file: str
    start_line: int
    end_line: int

    def to_dict(self) -> Dict[str, Any]:
        return {"file": self.file, "startLine": self.start_line, "endLine": self.end_line}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SourceLocation":
        start = int(d.get("startLine", 0) or 0)
        return cls(file=str(d.get("file", "")), start_line=start, end_line=int(d.get("endLine", start) or start))


def _enum_or(enum_cls, value, default):
    # unrecognised values fall back to `default`
    try:
        return enum_cls(value)
    except ValueError:
        return default


@dataclass(frozen=True)
class VariableInfo:
    symbol_name: str
    scope: str
    kind: VariableKind
    is_def: bool = False
    is_use: bool = False
    data_type: Optional[DataType] = None
    parent_function: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "symbolName": self.symbol_name,
            "scope": self.scope,
            "kind": self.kind.value,
        }
        if self.data_type is not None:
            out["dataType"] = self.data_type.value
        out["isDef"] = self.is_def
        out["isUse"] = self.is_use
        if self.parent_function is not None:
            out["parentFunction"] = self.parent_function
        return out

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "VariableInfo":
        dt = d.get("dataType")
        return cls(
            symbol_name=str(d.get("symbolName", "")),
            scope=str(d.get("scope", GLOBAL_SCOPE)),
            kind=_enum_or(VariableKind, d.get("kind"), VariableKind.LOCAL),
            is_def=bool(d.get("isDef", False)),
            is_use=bool(d.get("isUse", False)),
            data_type=_enum_or(DataType, dt, DataType.UNKNOWN) if dt else None,
            parent_function=d.get("parentFunction"),
        )


# Keys handled explicitly by Node/Edge codecs; anything else is carried in `extra`
_NODE_KEYS = frozenset({
    "id", "label", "type", "description", "location", "variableInfo", "clusterId",
    "clusterLevel", "inputs", "outputs", "memberCount", "trustBoundary",
})
_EDGE_KEYS = frozenset({"source", "target", "type", "label", "reason", "trustBoundary", "via"})


@dataclass(frozen=True)
class Node:
    id: str
    label: str
    type: str
    description: str = ""
    location: Optional[SourceLocation] = None
    variable_info: Optional[VariableInfo] = None
    cluster_id: Optional[str] = None
    cluster_level: Optional[int] = None
    inputs: Tuple[str, ...] = ()
    outputs: Tuple[str, ...] = ()
    member_count: Optional[int] = None
    trust_boundary: bool = False
    extra: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def is_variable(self) -> bool:
        return self.type == NodeType.VARIABLE.value

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"id": self.id, "label": self.label, "type": self.type}
        if self.description:
            out["description"] = self.description
        if self.location is not None:
            out["location"] = self.location.to_dict()
        if self.variable_info is not None:
            out["variableInfo"] = self.variable_info.to_dict()
        if self.cluster_id is not None:
            out["clusterId"] = self.cluster_id
        if self.cluster_level is not None:
            out["clusterLevel"] = self.cluster_level
        if self.inputs:
            out["inputs"] = list(self.inputs)
        if self.outputs:
            out["outputs"] = list(self.outputs)
        if self.member_count is not None:
            out["memberCount"] = self.member_count
        if self.trust_boundary:
            out["trustBoundary"] = True
        for k, v in self.extra.items():
            out.setdefault(k, v)
        return out

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Node":
        loc = d.get("location")
        vinfo = d.get("variableInfo")
        level = d.get("clusterLevel")
        count = d.get("memberCount")
        return cls(
            id=str(d["id"]),
            label=str(d.get("label", d["id"])),
            type=str(d.get("type", NodeType.VARIABLE.value)),
            description=str(d.get("description", "") or ""),
            location=SourceLocation.from_dict(loc) if isinstance(loc, dict) else None,
            variable_info=VariableInfo.from_dict(vinfo) if isinstance(vinfo, dict) else None,
            cluster_id=d.get("clusterId"),
            cluster_level=int(level) if level is not None else None,
            inputs=tuple(d.get("inputs") or ()),
            outputs=tuple(d.get("outputs") or ()),
            member_count=int(count) if count is not None else None,
            trust_boundary=bool(
                d.get("trustBoundary", False)
                or (isinstance(vinfo, dict) and vinfo.get("trustBoundary", False))
            ),
            extra={k: v for k, v in d.items() if k not in _NODE_KEYS},
        )


@dataclass(frozen=True)
class Edge:
    source: str
    target: str
    type: str = EdgeType.FLOW.value
    label: str = ""
    reason: str = ""
    trust_boundary: bool = False
    via: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def key(self) -> Tuple[str, str]:
        return self.source, self.target

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "source": self.source,
            "target": self.target,
            "type": self.type,
            "label": self.label,
            "reason": self.reason,
        }
        if self.trust_boundary:
            out["trustBoundary"] = True
        if self.via is not None:
            out["via"] = self.via
        for k, v in self.extra.items():
            out.setdefault(k, v)
        return out

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Edge":
        return cls(
            source=str(d["source"]),
            target=str(d["target"]),
            type=str(d.get("type", EdgeType.FLOW.value)),
            label=str(d.get("label", "") or ""),
            reason=str(d.get("reason", "") or ""),
            trust_boundary=bool(d.get("trustBoundary", False)),
            via=d.get("via"),
            extra={k: v for k, v in d.items() if k not in _EDGE_KEYS},
        )


@dataclass(frozen=True)
class Graph:
    nodes: List[Node] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)

    def node_ids(self) -> frozenset:
        return frozenset(n.id for n in self.nodes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Graph":
        return cls(
            nodes=[Node.from_dict(n) for n in d.get("nodes", [])],
            edges=[Edge.from_dict(e) for e in d.get("edges", [])],
        )
