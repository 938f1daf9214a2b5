import sys
import threading
import time
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "src"))

from teliclens.core.config import feature_enabled
from teliclens.vfg.discovery import AnomalyKind, AnomalySink, Language, SourceFile
from teliclens.vfg.extractor import extract_variables
from teliclens.vfg.parser_registry import (
    DriverInfo,
    ParseConfig,
    ParseFailure,
    ParserDriver,
    ParserError,
    ParserRegistry,
    SyntaxNode,
    SyntaxTree,
    TraversalEventKind,
    walk,
)
from teliclens.vfg.ts_driver import TSTreeSitterDriver


_INFO = DriverInfo(language=Language.PY, grammar_name="fake", grammar_sha="0" * 40, version="0")


class _EchoDriver(ParserDriver):
    """Returns a one-node tree; later inputs finish first to shake out ordering bugs."""

    def __init__(self):
        self.threads = set()

    def info(self):
        return _INFO

    def parse(self, source):
        self.threads.add(threading.get_ident())
        time.sleep(0.01 * (5 - int(source.name[1])))
        root = SyntaxNode(type="Module", line_start=1, line_end=1, text=source.name)
        return SyntaxTree(root=root, file=source.name, language=Language.PY, driver=_INFO)


class _FailingDriver(ParserDriver):
    def __init__(self, code):
        self.code = code

    def info(self):
        return _INFO

    def parse(self, source):
        raise ParserError(self.code, "boom", line_start=3, detail="from test")


class _CrashingDriver(ParserDriver):
    def info(self):
        return _INFO

    def parse(self, source):
        raise RuntimeError("unexpected")


def _tree():
    leaf_a = SyntaxNode(type="Name", line_start=1, line_end=1, text="a")
    leaf_b = SyntaxNode(type="Name", line_start=2, line_end=2, text="b")
    inner = SyntaxNode(type="Block", line_start=1, line_end=2, children=[leaf_a, leaf_b])
    return SyntaxNode(type="Module", line_start=1, line_end=2, children=[inner])


def test_walk_yields_balanced_enter_exit_in_source_order():
    events = [(ev.kind, ev.node.type, ev.node.text) for ev in walk(_tree())]
    assert events == [
        (TraversalEventKind.ENTER, "Module", None),
        (TraversalEventKind.ENTER, "Block", None),
        (TraversalEventKind.ENTER, "Name", "a"),
        (TraversalEventKind.EXIT, "Name", "a"),
        (TraversalEventKind.ENTER, "Name", "b"),
        (TraversalEventKind.EXIT, "Name", "b"),
        (TraversalEventKind.EXIT, "Block", None),
        (TraversalEventKind.EXIT, "Module", None),
    ]


def test_walk_reports_parents():
    parents = {ev.node.text: ev.parent.type for ev in walk(_tree()) if ev.node.text}
    assert parents == {"a": "Block", "b": "Block"}


def test_walk_handles_deep_trees_without_recursion():
    root = node = SyntaxNode(type="Expr", line_start=1, line_end=1)
    for _ in range(5000):
        child = SyntaxNode(type="Expr", line_start=1, line_end=1)
        node.children.append(child)
        node = child
    assert sum(1 for _ in walk(root)) == 2 * 5001


def test_syntax_node_field_lookup():
    name = SyntaxNode(type="identifier", line_start=1, line_end=1, field="name", text="f")
    punct = SyntaxNode(type="(", line_start=1, line_end=1, named=False)
    fn = SyntaxNode(type="function_declaration", line_start=1, line_end=1, children=[name, punct])
    assert fn.child_by_field("name") is name
    assert fn.child_by_field("body") is None
    assert fn.named_children() == [name]


def test_syntax_node_children_default_to_a_fresh_list():
    a = SyntaxNode(type="Module", line_start=1, line_end=1)
    b = SyntaxNode(type="Module", line_start=1, line_end=1)
    a.children.append(b)
    assert b.children == []
    assert b.field is None


def test_registry_keeps_an_empty_caller_sink():
    sink = AnomalySink()
    registry = ParserRegistry(drivers={}, anomaly_sink=sink)
    assert registry.sink is sink

    registry.parse(SourceFile(name="a.py", content="x = 1\n"))
    assert [a.kind for a in sink.items()] == [AnomalyKind.SKIPPED_BY_RULE]


@pytest.mark.parametrize(
    "code,kind",
    [
        ("LIB_DEP_MISSING", AnomalyKind.TOOL_MISSING),
        ("GRAMMAR_LOAD_FAILED", AnomalyKind.TOOL_MISSING),
        ("PARSE_ERROR", AnomalyKind.PARSE_FAILED),
    ],
)
def test_driver_errors_become_failures_and_anomalies(code, kind):
    sink = AnomalySink()
    registry = ParserRegistry(drivers={Language.PY: _FailingDriver(code)}, anomaly_sink=sink)
    result = registry.parse(SourceFile(name="x.py", content=""))

    assert isinstance(result, ParseFailure)
    assert result.code == code
    assert result.describe() == f"{code}: boom | from test"
    (anomaly,) = sink.items()
    assert anomaly.kind is kind
    assert anomaly.line == 3


def test_unexpected_driver_exception_is_contained():
    sink = AnomalySink()
    registry = ParserRegistry(drivers={Language.PY: _CrashingDriver()}, anomaly_sink=sink)
    result = registry.parse(SourceFile(name="x.py", content=""))
    assert isinstance(result, ParseFailure)
    assert "RuntimeError" in result.message
    assert extract_variables(result).variables == []


def test_unknown_language_and_disabled_language():
    sink = AnomalySink()
    registry = ParserRegistry(
        drivers={Language.PY: _EchoDriver()},
        cfg=ParseConfig(enable_langs=frozenset({Language.PY})),
        anomaly_sink=sink,
    )
    unknown = registry.parse(SourceFile(name="notes.txt", content="hello"))
    disabled = registry.parse(SourceFile(name="app.js", content="let a = 1;"))

    assert isinstance(unknown, ParseFailure) and unknown.code == "NO_DRIVER"
    assert isinstance(disabled, ParseFailure) and disabled.code == "NO_DRIVER"
    assert [a.kind for a in sink.items()] == [AnomalyKind.LANG_UNKNOWN, AnomalyKind.SKIPPED_BY_RULE]


def test_parse_many_preserves_input_order():
    driver = _EchoDriver()
    registry = ParserRegistry(drivers={Language.PY: driver})
    sources = [SourceFile(name=f"m{i}.py", content="") for i in range(5)]
    results = list(registry.parse_many(sources, max_workers=4))
    assert [src.name for src, _ in results] == [s.name for s in sources]
    assert [tree.root.text for _, tree in results] == [s.name for s in sources]


def test_parse_many_single_worker_runs_inline():
    driver = _EchoDriver()
    registry = ParserRegistry(drivers={Language.PY: driver})
    sources = [SourceFile(name=f"m{i}.py", content="") for i in range(3)]
    list(registry.parse_many(sources, max_workers=1))
    assert driver.threads == {threading.get_ident()}


BROKEN_TS = "function broken( {\n  return 1;\n"


def test_best_effort_tree_on_syntax_errors():
    sink = AnomalySink()
    registry = ParserRegistry(
        drivers={Language.TS: TSTreeSitterDriver(Language.TS)},
        cfg=ParseConfig(strict=False),
        anomaly_sink=sink,
    )
    tree = registry.parse(SourceFile(name="broken.ts", content=BROKEN_TS))
    assert isinstance(tree, SyntaxTree)
    assert tree.error_count > 0
    assert [a.kind for a in sink.items()] == [AnomalyKind.SYNTAX_ERRORS]


def test_strict_mode_turns_syntax_errors_into_failures():
    sink = AnomalySink()
    registry = ParserRegistry(
        drivers={Language.TS: TSTreeSitterDriver(Language.TS)},
        cfg=ParseConfig(strict=True),
        anomaly_sink=sink,
    )
    result = registry.parse(SourceFile(name="broken.ts", content=BROKEN_TS))
    assert isinstance(result, ParseFailure)
    assert result.code == "SYNTAX_ERRORS"
    assert extract_variables(result).flows == []


def test_strict_mode_from_environment(monkeypatch):
    monkeypatch.setenv("TELICLENS_PARSE_STRICT", "yes")
    monkeypatch.setenv("TELICLENS_PARSE_MAX_WORKERS", "2")
    feature_enabled.cache_clear()
    try:
        cfg = ParseConfig()
        assert cfg.strict is True
        assert cfg.max_workers == 2
    finally:
        feature_enabled.cache_clear()


def test_tree_sitter_driver_info_and_fields():
    driver = TSTreeSitterDriver(Language.TSX)
    info = driver.info()
    assert info.language is Language.TSX
    assert len(info.grammar_sha) == 40

    tree = driver.parse(SourceFile(name="c.tsx", content="const el = <div>{name}</div>;\n"))
    assert tree.error_count == 0
    declarator = next(ev.node for ev in walk(tree) if ev.node.type == "variable_declarator")
    assert declarator.child_by_field("name").text == "el"
