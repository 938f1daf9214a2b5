# src/teliclens/vfg/python_driver.py
from __future__ import annotations

import dataclasses
import hashlib
from typing import List, Optional, Tuple

from .discovery import Language, SourceFile
from .parser_registry import (
    DriverInfo,
    ParserDriver,
    ParserError,
    SyntaxNode,
    SyntaxTree,
)

# Third-party (lossless Python CST)
try:
    import libcst as cst
    from libcst.metadata import CodeRange, MetadataWrapper, PositionProvider
except ImportError as e:  # pragma: no cover - exercised in integration
    _LIBCST_IMPORT_ERROR: Optional[Exception] = e
else:
    _LIBCST_IMPORT_ERROR = None


def _trivia_types() -> Tuple[type, ...]:
    # Whitespace and punctuation carry no names; they are not mirrored into the tree
    return (
        cst.SimpleWhitespace,
        cst.ParenthesizedWhitespace,
        cst.EmptyLine,
        cst.TrailingWhitespace,
        cst.Newline,
        cst.Comment,
        cst.LeftParen,
        cst.RightParen,
        cst.LeftSquareBracket,
        cst.RightSquareBracket,
        cst.LeftCurlyBrace,
        cst.RightCurlyBrace,
        cst.Comma,
        cst.Semicolon,
        cst.AssignEqual,
        cst.Colon,
        cst.Dot,
    )


class PythonLibCstDriver(ParserDriver):
    """
    Python parser using libcst for a lossless Concrete Syntax Tree with precise
    positions. The CST is mirrored into SyntaxNodes whose `field` is the libcst
    attribute the child hangs off (e.g. FunctionDef.params, Assign.value).

    Children are ordered by source position, falling back to attribute order for
    nodes without PositionProvider entries.
    """

    def __init__(self) -> None:
        grammar_name = "libcst-python"
        version = self._libcst_version()
        grammar_sha = hashlib.blake2b(
            f"{grammar_name}:{version}".encode("utf-8"), digest_size=20
        ).hexdigest()
        self._info = DriverInfo(
            language=Language.PY, grammar_name=grammar_name, grammar_sha=grammar_sha, version=version
        )

    def info(self) -> DriverInfo:
        if _LIBCST_IMPORT_ERROR is not None:
            raise ParserError(
                code="LIB_DEP_MISSING",
                message="libcst import failed",
                detail=repr(_LIBCST_IMPORT_ERROR),
            )
        return self._info

    def parse(self, source: SourceFile) -> SyntaxTree:
        info = self.info()

        # Parse & attach metadata once; cache the provider map
        try:
            wrapper = MetadataWrapper(cst.parse_module(source.content))
            positions = wrapper.resolve(PositionProvider)
            module = wrapper.module  # use metadata-annotated node
        except cst.ParserSyntaxError as e:
            raise ParserError(
                code="PARSE_ERROR",
                message="libcst.parse_module failed",
                line_start=e.raw_line,
                detail=str(e),
            )
        except Exception as e:
            raise ParserError(code="PARSE_ERROR", message="libcst.parse_module failed", detail=str(e))

        root = self._convert(module, positions, source.content)
        return SyntaxTree(root=root, file=source.name, language=Language.PY, error_count=0, driver=info)

    # ---- internals ------------------------------------------------------------

    def _convert(self, module: "cst.Module", positions, text: str) -> SyntaxNode:
        trivia = _trivia_types()
        last_line = max(1, len(text.splitlines()))

        def lines_of(n: "cst.CSTNode", fallback: Tuple[int, int]) -> Tuple[int, int]:
            rng: Optional[CodeRange] = positions.get(n)
            if rng is None:
                return fallback
            return rng.start.line, max(rng.start.line, rng.end.line)

        def node_children(n: "cst.CSTNode") -> List[Tuple[str, "cst.CSTNode"]]:
            out: List[Tuple[str, "cst.CSTNode"]] = []
            for f in dataclasses.fields(n):
                value = getattr(n, f.name, None)
                if isinstance(value, cst.CSTNode):
                    if not isinstance(value, trivia):
                        out.append((f.name, value))
                elif isinstance(value, (list, tuple)):
                    for item in value:
                        if isinstance(item, cst.CSTNode) and not isinstance(item, trivia):
                            out.append((f.name, item))
            return out

        def make(n: "cst.CSTNode", field_name: Optional[str], fallback: Tuple[int, int]) -> SyntaxNode:
            ls, le = lines_of(n, fallback)
            value = getattr(n, "value", None)
            return SyntaxNode(
                type=type(n).__name__,
                field=field_name,
                text=value if isinstance(value, str) else None,
                line_start=ls,
                line_end=le,
            )

        root = make(module, None, (1, last_line))
        # Iterative DFS with explicit stack: (cst node, its mirror)
        stack: List[Tuple["cst.CSTNode", SyntaxNode]] = [(module, root)]
        while stack:
            node, mirror = stack.pop()
            kids = node_children(node)

            keyed = []
            for idx, (fname, ch) in enumerate(kids):
                rng = positions.get(ch)
                key = (rng.start.line, rng.start.column, idx) if rng is not None else (1_000_000_000, 0, idx)
                keyed.append((key, fname, ch))
            keyed.sort(key=lambda t: t[0])

            for _, fname, ch in keyed:
                sn = make(ch, fname, (mirror.line_start, mirror.line_end))
                mirror.children.append(sn)
                stack.append((ch, sn))
        return root

    @staticmethod
    def _libcst_version() -> str:
        try:
            import libcst
            return getattr(libcst, "__version__", "unknown")
        except ImportError:
            return "unknown"
