import shutil
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "src"))

from teliclens.vfg import api
from teliclens.vfg.api import AnalysisConfig, analyze_path, analyze_sources, build_variable_graph
from teliclens.vfg.clustering import cluster
from teliclens.vfg.discovery import AnomalyKind, AnomalySink, SourceFile
from teliclens.vfg.graph_diff import diff_graphs
from teliclens.vfg.model import Graph

FIXTURES = Path(__file__).resolve().parent / "fixtures"


def _fixture(name: str) -> SourceFile:
    return SourceFile(name=name, content=(FIXTURES / name).read_text(encoding="utf-8"), language="typescript")


def _vid(file, scope, name):
    return f"var:{file}:{scope}:{name}"


def test_vulnerable_login_findings():
    result = analyze_sources([_fixture("vulnerable_auth.ts")])
    report = result.report
    scope = "authenticateUser"

    assert (
        f"{_vid('vulnerable_auth.ts', scope, 'sanitizedPassword')} (sanitizedPassword in {scope})"
        in report.orphan_defs
    )
    assert (
        f"{_vid('vulnerable_auth.ts', scope, 'username')} → {_vid('vulnerable_auth.ts', scope, 'user')}"
        " (crosses trust boundary without sanitization)"
    ) in report.trust_boundary_violations
    assert not report.is_consistent
    assert report.summary.startswith("Found ")


def test_safe_login_has_sanitized_database_path():
    result = analyze_sources([_fixture("safe_auth.ts")])
    graph = result.graph

    params = {
        n.variable_info.symbol_name
        for n in graph.nodes
        if n.variable_info is not None and n.variable_info.kind.value == "parameter"
    }
    assert {"username", "password"} <= params
    assert any(e.type == "flow" for e in graph.edges)

    to_db = [e for e in graph.edges if e.via == "database.findUser"]
    assert len(to_db) == 1
    assert to_db[0].trust_boundary
    assert to_db[0].source == _vid("safe_auth.ts", "authenticateUser", "sanitizedUsername")

    violations = result.report.trust_boundary_violations
    assert not [v for v in violations if "authenticateUser:user " in v or "authenticateUser:username " in v]


def test_network_sink_stays_traceable_at_level_zero():
    code = (
        "export function report(secret: string) {\n"
        "  const response = fetch(secret);\n"
        "  return response;\n"
        "}\n"
    )
    graph = build_variable_graph([SourceFile(name="net.ts", content=code)])
    level0 = cluster(graph.nodes, graph.edges, 0)
    edge = next(
        e for e in level0.edges
        if e.source == _vid("net.ts", "report", "secret") and e.target == _vid("net.ts", "report", "response")
    )
    assert edge.type == "flow"
    assert edge.reason == "secret assigned to response via fetch()"
    assert edge.trust_boundary


def test_referential_soundness_modulo_missing_nodes():
    result = analyze_sources([_fixture("vulnerable_auth.ts"), _fixture("safe_auth.ts")])
    ids = result.graph.node_ids()
    reported = {entry.split(" ", 1)[0] for entry in result.report.missing_nodes}
    for e in result.graph.edges:
        assert e.source in ids or e.source in reported
        assert e.target in ids or e.target in reported


def test_runs_are_deterministic():
    sources = [_fixture("vulnerable_auth.ts"), _fixture("safe_auth.ts")]
    first = analyze_sources(sources, AnalysisConfig())
    second = analyze_sources(sources, AnalysisConfig())
    assert first.graph.to_dict() == second.graph.to_dict()
    assert first.report == second.report


def test_bad_file_does_not_abort_the_run():
    sources = [
        SourceFile(name="broken.py", content="def broken(:\n"),
        SourceFile(name="ok.py", content="def ok(value):\n    result = value\n    return result\n"),
    ]
    result = analyze_sources(sources)
    assert result.files_total == 2
    assert result.files_parsed == 1
    assert [a.kind for a in result.anomalies] == [AnomalyKind.PARSE_FAILED]
    assert _vid("ok.py", "ok", "result") in result.graph.node_ids()


def test_extraction_exception_becomes_anomaly(monkeypatch):
    real = api.extract_variables

    def flaky(parsed, cfg=None):
        if parsed.file == "bad.js":
            raise RuntimeError("adapter exploded")
        return real(parsed, cfg)

    monkeypatch.setattr(api, "extract_variables", flaky)
    sink = AnomalySink()
    graph = build_variable_graph(
        [SourceFile(name="bad.js", content="let alpha = 1;"), SourceFile(name="good.js", content="let beta = 2;")],
        sink=sink,
    )
    (anomaly,) = sink.items()
    assert anomaly.kind is AnomalyKind.EXTRACT_FAILED
    assert anomaly.path == "bad.js"
    assert "adapter exploded" in anomaly.detail
    assert [n.id for n in graph.nodes] == ["var:good.js:global:beta"]


def test_noise_filter_and_boundary_marking_are_optional():
    src = [SourceFile(name="n.js", content="function f(tmp) { const i = 0; const dbQuery = tmp; }\n")]
    filtered = build_variable_graph(src)
    raw = build_variable_graph(src, AnalysisConfig(filter_noise=False, mark_boundaries=False))

    assert "var:n.js:f:tmp" not in filtered.node_ids()
    assert {"var:n.js:f:tmp", "var:n.js:f:i"} <= raw.node_ids()
    assert any(n.trust_boundary for n in filtered.nodes)
    assert not any(n.trust_boundary for n in raw.nodes)


def test_to_dict_uses_camel_case_shapes():
    result = analyze_sources([_fixture("vulnerable_auth.ts")])
    out = result.to_dict()
    assert set(out) == {"nodes", "edges", "report", "anomalies", "stats"}
    assert set(out["report"]) == {
        "orphanDefs", "orphanUses", "unreachableFlows", "trustBoundaryViolations", "missingNodes", "summary",
    }
    assert out["stats"]["filesTotal"] == 1
    variable = next(n for n in out["nodes"] if n["type"] == "variable")
    assert {"symbolName", "scope", "kind", "isDef", "isUse"} <= set(variable["variableInfo"])


def test_analyze_path_discovers_sources(tmp_path):
    shutil.copy(FIXTURES / "safe_auth.ts", tmp_path / "safe_auth.ts")
    (tmp_path / "node_modules").mkdir()
    (tmp_path / "node_modules" / "dep.js").write_text("let x = 1;\n", encoding="utf-8")

    result = analyze_path(tmp_path)
    assert result.files_total == 1
    assert all(n.location.file == "safe_auth.ts" for n in result.graph.nodes)
    assert [a.kind for a in result.anomalies] == [AnomalyKind.SKIPPED_BY_RULE]

    single = analyze_path(tmp_path / "safe_auth.ts", check=False)
    assert single.report is None
    assert single.graph.node_ids() == result.graph.node_ids()


def test_graph_diff_against_ground_truth():
    expected = build_variable_graph([_fixture("safe_auth.ts")])
    assert diff_graphs(expected, expected).matches
    assert diff_graphs(expected, expected).summary == "Graphs match"

    actual = Graph(nodes=expected.nodes[1:], edges=expected.edges[:-1])
    diff = diff_graphs(expected, actual)
    assert diff.missing_nodes == [expected.nodes[0].id]
    assert len(diff.missing_edges) == 1
    assert diff.extra_nodes == [] and diff.extra_edges == []
    assert "missing nodes" in diff.summary
    assert diff.summary.startswith("Found 2 differences:")

    reverse = diff_graphs(actual, expected)
    assert reverse.extra_nodes == [expected.nodes[0].id]
    assert reverse.to_dict()["extraEdges"] == reverse.extra_edges


def test_discovery_anomalies_reach_the_result(tmp_path):
    (tmp_path / "blob.js").write_bytes(b"\x00\x01binary")
    (tmp_path / "ok.js").write_text("let kept = 1;\n", encoding="utf-8")

    result = analyze_path(tmp_path, check=False)
    assert [(a.path, a.kind) for a in result.anomalies] == [("blob.js", AnomalyKind.BINARY_FILE)]
    assert result.files_total == 1


def test_empty_caller_sink_receives_parse_failures():
    sink = AnomalySink()
    build_variable_graph([SourceFile(name="broken.py", content="def broken(:\n")], sink=sink)
    assert [a.kind for a in sink.items()] == [AnomalyKind.PARSE_FAILED]
