# src/teliclens/vfg/identity.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from .model import (
    GLOBAL_SCOPE,
    DataType,
    Edge,
    EdgeType,
    FlowEdge,
    Node,
    NodeType,
    SourceLocation,
    VariableInfo,
    VariableKind,
    VariableSymbol,
)

# Higher wins when observations of one variable disagree on kind
_KIND_PRECEDENCE: Dict[VariableKind, int] = {
    VariableKind.PARAMETER: 4,
    VariableKind.RETURN: 3,
    VariableKind.FIELD: 2,
    VariableKind.GLOBAL: 1,
    VariableKind.LOCAL: 0,
}

Key = Tuple[str, str, str]


def variable_id(file: str, scope: str, name: str) -> str:
    return f"var:{file}:{scope}:{name}"


def cluster_id(file: str, parent_function: Optional[str]) -> str:
    return f"func:{file}:{parent_function or GLOBAL_SCOPE}"


@dataclass
class _Record:
    name: str
    scope: str
    file: str
    kind: VariableKind
    line: int
    is_def: bool
    is_use: bool
    data_type: Optional[DataType]
    data_type_line: int

    def absorb(self, s: VariableSymbol) -> None:
        self.is_def = self.is_def or s.is_def
        self.is_use = self.is_use or s.is_use
        self.line = min(self.line, s.line)
        if _KIND_PRECEDENCE[s.kind] > _KIND_PRECEDENCE[self.kind]:
            self.kind = s.kind
        if s.data_type is not None:
            cand = (s.line, s.data_type.value)
            cur = (self.data_type_line, self.data_type.value) if self.data_type is not None else None
            if cur is None or cand < cur:
                self.data_type = s.data_type
                self.data_type_line = s.line

    def freeze(self) -> VariableSymbol:
        return VariableSymbol(
            name=self.name,
            scope=self.scope,
            kind=self.kind,
            file=self.file,
            line=self.line,
            is_def=self.is_def,
            is_use=self.is_use,
            parent_function=None if self.scope == GLOBAL_SCOPE else self.scope,
            data_type=self.data_type,
        )


class SymbolTable:
    """
    Arena of merged symbols: records live in a list addressed by integer handle,
    and a dict maps the canonical (file, scope, name) key to that handle.

    Merging is idempotent and order-independent per attribute; record order is the
    order in which keys were first observed.
    """

    def __init__(self) -> None:
        self._arena: List[_Record] = []
        self._index: Dict[Key, int] = {}

    def add(self, s: VariableSymbol) -> int:
        key: Key = (s.file, s.scope, s.name)
        handle = self._index.get(key)
        if handle is None:
            handle = len(self._arena)
            self._arena.append(
                _Record(
                    name=s.name,
                    scope=s.scope,
                    file=s.file,
                    kind=s.kind,
                    line=s.line,
                    is_def=s.is_def,
                    is_use=s.is_use,
                    data_type=s.data_type,
                    data_type_line=s.line,
                )
            )
            self._index[key] = handle
        else:
            self._arena[handle].absorb(s)
        return handle

    def extend(self, symbols: Iterable[VariableSymbol]) -> "SymbolTable":
        for s in symbols:
            self.add(s)
        return self

    def handle(self, file: str, scope: str, name: str) -> Optional[int]:
        return self._index.get((file, scope, name))

    def get(self, handle: int) -> VariableSymbol:
        return self._arena[handle].freeze()

    def __len__(self) -> int:
        return len(self._arena)

    def __iter__(self) -> Iterator[VariableSymbol]:
        for rec in self._arena:
            yield rec.freeze()


def merge_symbols(symbols: Iterable[VariableSymbol]) -> List[VariableSymbol]:
    """One symbol per (file, scope, name), flags OR-ed."""
    return list(SymbolTable().extend(symbols))


def symbol_to_node(s: VariableSymbol) -> Node:
    return Node(
        id=variable_id(s.file, s.scope, s.name),
        label=s.name,
        type=NodeType.VARIABLE.value,
        description=f"{s.kind.value} in {s.scope}",
        location=SourceLocation(file=s.file, start_line=s.line, end_line=s.line),
        variable_info=VariableInfo(
            symbol_name=s.name,
            scope=s.scope,
            kind=s.kind,
            is_def=s.is_def,
            is_use=s.is_use,
            data_type=s.data_type,
            parent_function=s.parent_function,
        ),
        cluster_id=cluster_id(s.file, s.parent_function),
        cluster_level=0,
    )


def variables_to_nodes(symbols: Iterable[VariableSymbol]) -> List[Node]:
    """Merge observations and render one canonical variable node per identity key."""
    return [symbol_to_node(s) for s in merge_symbols(symbols)]


def flows_to_edges(flows: Iterable[FlowEdge]) -> List[Edge]:
    return [
        Edge(
            source=f.source,
            target=f.target,
            type=EdgeType.FLOW.value,
            label=f.kind.value,
            reason=f.reason,
            trust_boundary=f.trust_boundary,
            via=f.via,
        )
        for f in flows
    ]
