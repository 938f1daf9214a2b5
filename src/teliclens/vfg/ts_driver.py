# src/teliclens/vfg/ts_driver.py
from __future__ import annotations

import hashlib
import importlib
import threading
from typing import List, Optional, Tuple

from .discovery import Language, SourceFile
from .parser_registry import (
    DriverInfo,
    ParserDriver,
    ParserError,
    SyntaxNode,
    SyntaxTree,
)

# -----------------------------------------------------------------------------
# Optional deps & grammar loaders
# -----------------------------------------------------------------------------

_TS_IMPORT_ERROR: Optional[Exception] = None
try:
    import tree_sitter as _ts  # type: ignore
except ImportError as e:  # pragma: no cover
    _TS_IMPORT_ERROR = e
    _ts = None  # type: ignore


# grammar name → (module, factory attribute)
_GRAMMAR_MODULES = {
    "javascript": ("tree_sitter_javascript", "language"),
    "typescript": ("tree_sitter_typescript", "language_typescript"),
    "tsx": ("tree_sitter_typescript", "language_tsx"),
}


def _load_language(name: str) -> Optional[Tuple[object, str, str]]:
    """
    Obtain a tree-sitter Language object from the individual grammar wheels.
    Returns (language_obj, grammar_name, version_string) or None.
    """
    spec = _GRAMMAR_MODULES.get(name)
    if spec is None or _ts is None:
        return None
    mod_name, factory = spec
    try:
        mod = importlib.import_module(mod_name)
    except ImportError:
        return None
    raw = getattr(mod, factory)()
    # Modern wheels hand out a PyCapsule; wrap into tree_sitter.Language
    lang_obj = raw if isinstance(raw, _ts.Language) else _ts.Language(raw)
    version = getattr(mod, "__version__", "unknown")
    return lang_obj, f"tree-sitter-{name}", version


# -----------------------------------------------------------------------------
# JS/TS driver (Tree-sitter)
# -----------------------------------------------------------------------------

class TSTreeSitterDriver(ParserDriver):
    """
    Tree-sitter driver for JavaScript/TypeScript (JS/TS/JSX/TSX).

    Guarantees:
      - Deterministic conversion to SyntaxNode trees in source order, with field names.
      - Partial/error trees are surfaced: ERROR/MISSING nodes are kept in the tree and
        counted in SyntaxTree.error_count; the registry decides whether that is fatal.
      - Lazy initialization so import/setup errors are consistently surfaced via info()/parse.
    """

    MAX_SOURCE_BYTES = 100 * 1024 * 1024  # 100 MiB

    def __init__(self, lang: Language) -> None:
        self._lang = lang
        self._init_error: Optional[ParserError] = None
        self._language = None
        self._info: Optional[DriverInfo] = None
        self._lock = threading.Lock()

        if _TS_IMPORT_ERROR is not None or _ts is None:
            self._init_error = ParserError(
                code="LIB_DEP_MISSING",
                message="tree_sitter import failed",
                detail=repr(_TS_IMPORT_ERROR),
            )

    # ---- public API -----------------------------------------------------------

    def info(self) -> DriverInfo:
        if self._init_error:
            raise self._init_error
        if self._info is None:
            self._setup()
        return self._info  # type: ignore[return-value]

    def parse(self, source: SourceFile) -> SyntaxTree:
        info = self.info()

        raw = source.content.encode("utf-8")
        if len(raw) > self.MAX_SOURCE_BYTES:
            raise ParserError(
                code="PARSE_ERROR",
                message=f"Source exceeds maximum size ({self.MAX_SOURCE_BYTES} bytes)",
                detail=f"Source size: {len(raw)} bytes",
            )

        # Parsers are cheap; one per call keeps concurrent parses independent
        parser = _ts.Parser(self._language)
        try:
            ts_tree = parser.parse(raw)
        except Exception as e:
            raise ParserError(code="PARSE_ERROR", message="Tree-sitter parse failed", detail=str(e))

        root, errors = self._convert(ts_tree.root_node, raw)
        return SyntaxTree(root=root, file=source.name, language=self._lang, error_count=errors, driver=info)

    # ---- internals ------------------------------------------------------------

    @staticmethod
    def _make_node(n, field_name: Optional[str], raw: bytes) -> SyntaxNode:
        leaf = n.child_count == 0
        return SyntaxNode(
            type=n.type,
            field=field_name,
            text=raw[n.start_byte:n.end_byte].decode("utf-8", errors="replace") if leaf else None,
            line_start=n.start_point[0] + 1,
            line_end=n.end_point[0] + 1,
            named=n.is_named,
        )

    def _convert(self, ts_root, raw: bytes) -> Tuple[SyntaxNode, int]:
        """
        Cursor walk (no recursion) that mirrors the tree-sitter tree into SyntaxNodes.
        Returns (root, syntax_error_count).
        """
        errors = 0
        cursor = ts_root.walk()
        top = self._make_node(cursor.node, None, raw)
        if ts_root.type == "ERROR":
            errors += 1
        parents: List[SyntaxNode] = [top]

        if not cursor.goto_first_child():
            return top, errors

        while True:
            node = cursor.node
            if node.type == "ERROR" or node.is_missing:
                errors += 1
            sn = self._make_node(node, cursor.field_name, raw)
            parents[-1].children.append(sn)

            if cursor.goto_first_child():
                parents.append(sn)
                continue

            while not cursor.goto_next_sibling():
                if not cursor.goto_parent():
                    return top, errors
                parents.pop()
                if not parents:
                    return top, errors

    def _setup(self) -> None:
        """Lazy initialization of the grammar and driver info."""
        with self._lock:
            if self._info is not None:
                return
            primary_name = self._select_grammar_name(self._lang)
            loaded = self._load_language_with_fallbacks(primary_name, self._lang)
            if loaded is None:
                raise ParserError(
                    code="GRAMMAR_LOAD_FAILED",
                    message=f"Could not load grammar: {primary_name}",
                    detail="Tried tree_sitter_javascript / tree_sitter_typescript wheels; none matched",
                )
            lang_obj, grammar_name, version = loaded

            # Smoke test: parse an empty buffer to ensure language is accepted
            try:
                _ts.Parser(lang_obj).parse(b"")
            except Exception as e:
                raise ParserError(
                    code="PARSER_INIT_FAILED",
                    message="Tree-sitter parser smoke test failed",
                    detail=str(e),
                )

            grammar_sha = hashlib.blake2b(
                f"{grammar_name}:{version}".encode("utf-8"), digest_size=20
            ).hexdigest()
            self._language = lang_obj
            self._info = DriverInfo(
                language=self._lang,
                grammar_name=grammar_name,
                grammar_sha=grammar_sha,
                version=version,
            )

    @staticmethod
    def _select_grammar_name(lang: Language) -> str:
        grammar_map = {
            Language.JS: "javascript",
            Language.TS: "typescript",
            Language.TSX: "tsx",
            Language.JSX: "javascript",  # JS grammar handles JSX
        }
        return grammar_map.get(lang, "javascript")

    @staticmethod
    def _load_language_with_fallbacks(primary_name: str, lang: Language):
        res = _load_language(primary_name)
        if res is not None:
            if lang == Language.JSX:
                lang_obj, gname, version = res
                return lang_obj, gname + "+jsx", version
            return res

        # TSX fallback to TS grammar
        if lang == Language.TSX:
            res = _load_language("typescript")
            if res is not None:
                lang_obj, gname, version = res
                return lang_obj, gname + "+tsx", version
        return None
