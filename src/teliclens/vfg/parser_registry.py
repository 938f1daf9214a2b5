# src/teliclens/vfg/parser_registry.py
from __future__ import annotations

import concurrent.futures as futures
import dataclasses
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional, Tuple, Union

from loguru import logger

from ..core.config import env_int, feature_enabled
from .discovery import (
    Anomaly,
    AnomalyKind,
    AnomalySink,
    Language,
    Severity,
    SourceFile,
)

# ==============================================================================
# Language-neutral syntax tree
# ==============================================================================


@dataclass
class SyntaxNode:
    """
    One node of a parsed tree.

    `field` is the role the node plays in its parent (tree-sitter field name or the
    libcst attribute it was reached through); `text` is only populated for leaves.
    Line numbers are 1-based and inclusive.
    """
    type: str
    line_start: int
    line_end: int
    field: Optional[str] = None
    text: Optional[str] = None
    named: bool = True
    children: List["SyntaxNode"] = dataclasses.field(default_factory=list)  # `field` is shadowed here

    def child_by_field(self, name: str) -> Optional["SyntaxNode"]:
        for ch in self.children:
            if ch.field == name:
                return ch
        return None

    def children_by_field(self, name: str) -> List["SyntaxNode"]:
        return [ch for ch in self.children if ch.field == name]

    def named_children(self) -> List["SyntaxNode"]:
        return [ch for ch in self.children if ch.named]


@dataclass(frozen=True)
class DriverInfo:
    language: Language
    grammar_name: str
    grammar_sha: str   # pin exact grammar build
    version: str       # driver version (semantic)


@dataclass
class SyntaxTree:
    root: SyntaxNode
    file: str
    language: Language
    error_count: int = 0
    driver: Optional[DriverInfo] = None


class TraversalEventKind(str, Enum):
    ENTER = "enter"
    EXIT = "exit"


@dataclass(frozen=True)
class TraversalEvent:
    kind: TraversalEventKind
    node: SyntaxNode
    parent: Optional[SyntaxNode]


def walk(tree: Union[SyntaxTree, SyntaxNode]) -> Iterator[TraversalEvent]:
    """
    Balanced ENTER/EXIT traversal in source order. Uses an explicit stack so deep
    trees do not hit the recursion limit.
    """
    root = tree.root if isinstance(tree, SyntaxTree) else tree
    # (node, parent, entered)
    stack: List[Tuple[SyntaxNode, Optional[SyntaxNode], bool]] = [(root, None, False)]
    while stack:
        node, parent, entered = stack.pop()
        if entered:
            yield TraversalEvent(TraversalEventKind.EXIT, node, parent)
            continue
        yield TraversalEvent(TraversalEventKind.ENTER, node, parent)
        stack.append((node, parent, True))
        for ch in reversed(node.children):
            stack.append((ch, node, False))


# ==============================================================================
# Driver contract and typed errors
# ==============================================================================


class ParserError(Exception):
    """
    Rich driver error propagated to the registry.
    """
    def __init__(
        self,
        code: str,
        message: str,
        *,
        line_start: Optional[int] = None,
        detail: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.line_start = line_start
        self.detail = detail or ""


@dataclass(frozen=True)
class ParseFailure:
    """Typed, returned parse failure. The registry never raises for a bad file."""
    file: str
    code: str
    message: str
    detail: str = ""

    def describe(self) -> str:
        out = f"{self.code}: {self.message}"
        if self.detail:
            out += f" | {self.detail}"
        return out


ParseResult = Union[SyntaxTree, ParseFailure]


class ParserDriver:
    """
    Language-specific parser driver interface.

    Implementations MUST be thread-safe for concurrent parse calls and:
      - Return a non-empty DriverInfo with grammar_sha/version populated.
      - Implement parse(source) returning a SyntaxTree; on irrecoverable error,
        raise ParserError rather than returning a misleading tree.
    """

    def info(self) -> DriverInfo:
        raise NotImplementedError

    def parse(self, source: SourceFile) -> SyntaxTree:
        raise NotImplementedError


# ==============================================================================
# Registry config
# ==============================================================================


def _default_max_workers() -> int:
    return max(1, env_int("parse.max_workers", 4))


def _default_strict() -> bool:
    return feature_enabled("parse.strict", False)


@dataclass(frozen=True)
class ParseConfig:
    """
    Orchestration-level controls. Separate from DiscoveryConfig.
    """
    max_workers: int = field(default_factory=_default_max_workers)
    strict: bool = field(default_factory=_default_strict)  # syntax errors become ParseFailure
    enable_langs: frozenset = frozenset(
        {Language.PY, Language.JS, Language.TS, Language.JSX, Language.TSX}
    )


def default_drivers() -> Dict[Language, ParserDriver]:
    """Language → driver bindings for every supported language."""
    from .python_driver import PythonLibCstDriver
    from .ts_driver import TSTreeSitterDriver

    drivers: Dict[Language, ParserDriver] = {Language.PY: PythonLibCstDriver()}
    for lang in (Language.JS, Language.TS, Language.JSX, Language.TSX):
        drivers[lang] = TSTreeSitterDriver(lang)
    return drivers


# ==============================================================================
# Registry
# ==============================================================================


class ParserRegistry:
    """
    Owns language → driver bindings and turns every outcome (tree, syntax errors,
    missing tooling, unknown language) into a returned value plus an anomaly.
    """

    def __init__(
        self,
        drivers: Optional[Dict[Language, ParserDriver]] = None,
        cfg: Optional[ParseConfig] = None,
        anomaly_sink: Optional[AnomalySink] = None,
    ) -> None:
        self._drivers = dict(drivers) if drivers is not None else default_drivers()
        self._cfg = cfg or ParseConfig()
        self._sink = anomaly_sink if anomaly_sink is not None else AnomalySink()

    @property
    def sink(self) -> AnomalySink:
        return self._sink

    # ---- public API -----------------------------------------------------------

    def parse(self, source: SourceFile) -> ParseResult:
        """Parse one source. Never raises; failures come back as ParseFailure."""
        lang = source.lang
        drv = self._resolve_driver(source.name, lang)
        if drv is None:
            return ParseFailure(
                file=source.name,
                code="NO_DRIVER",
                message=f"No parser driver for language {lang.value}",
            )

        start = time.perf_counter()
        try:
            tree = drv.parse(source)
        except ParserError as e:
            kind = AnomalyKind.TOOL_MISSING if e.code in ("LIB_DEP_MISSING", "GRAMMAR_LOAD_FAILED") else AnomalyKind.PARSE_FAILED
            failure = ParseFailure(file=source.name, code=e.code, message=e.message, detail=e.detail)
            self._sink.emit(Anomaly(path=source.name, kind=kind, severity=Severity.WARN, detail=failure.describe(), line=e.line_start))
            return failure
        except Exception as e:
            failure = ParseFailure(file=source.name, code="PARSE_ERROR", message=f"{type(e).__name__}: {e}")
            self._sink.emit(Anomaly(path=source.name, kind=AnomalyKind.PARSE_FAILED, severity=Severity.WARN, detail=failure.describe()))
            return failure

        elapsed = time.perf_counter() - start
        logger.debug("parsed {} ({}) in {:.1f} ms", source.name, lang.value, elapsed * 1000)

        if tree.error_count:
            detail = f"Found {tree.error_count} syntax errors"
            if self._cfg.strict:
                self._sink.emit(Anomaly(path=source.name, kind=AnomalyKind.PARSE_FAILED, severity=Severity.WARN, detail=f"SYNTAX_ERRORS: {detail}"))
                return ParseFailure(file=source.name, code="SYNTAX_ERRORS", message=detail)
            self._sink.emit(Anomaly(path=source.name, kind=AnomalyKind.SYNTAX_ERRORS, severity=Severity.WARN, detail=f"{detail}; using best-effort tree"))
        return tree

    def parse_many(
        self,
        sources: Iterable[SourceFile],
        max_workers: Optional[int] = None,
    ) -> Iterator[Tuple[SourceFile, ParseResult]]:
        """
        Parse independently in a thread pool and yield (source, result) pairs in the
        exact order of the input iterable.
        """
        items = list(sources)
        workers = max(1, max_workers if max_workers is not None else self._cfg.max_workers)
        if workers == 1 or len(items) <= 1:
            for src in items:
                yield src, self.parse(src)
            return

        with futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="teliclens-parse") as pool:
            for src, result in zip(items, pool.map(self.parse, items)):
                yield src, result

    # ---- internals ------------------------------------------------------------

    def _resolve_driver(self, path: str, lang: Language) -> Optional[ParserDriver]:
        if lang is Language.UNKNOWN:
            self._sink.emit(
                Anomaly(
                    path=path,
                    kind=AnomalyKind.LANG_UNKNOWN,
                    severity=Severity.WARN,
                    detail="No parser driver for unknown language",
                )
            )
            return None
        if lang not in self._cfg.enable_langs or lang not in self._drivers:
            self._sink.emit(
                Anomaly(
                    path=path,
                    kind=AnomalyKind.SKIPPED_BY_RULE,
                    severity=Severity.INFO,
                    detail=f"Language {lang.value} disabled or no driver available",
                )
            )
            return None
        return self._drivers[lang]
