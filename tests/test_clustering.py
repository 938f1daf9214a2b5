import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "src"))

from teliclens.vfg.clustering import ZoomLevel, cluster, merge_variable_nodes, zoom_level_for_width
from teliclens.vfg.identity import symbol_to_node
from teliclens.vfg.model import Edge, Node, SourceLocation, VariableKind, VariableSymbol


def _var(name, scope, file="auth.ts", kind=VariableKind.LOCAL, line=1):
    return symbol_to_node(
        VariableSymbol(name=name, scope=scope, kind=kind, file=file, line=line, is_def=True, parent_function=scope)
    )


def _vid(name, scope, file="auth.ts"):
    return f"var:{file}:{scope}:{name}"


@pytest.fixture
def graph():
    nodes = [
        _var("username", "login", kind=VariableKind.PARAMETER, line=2),
        _var("user", "login", line=3),
        _var("return_user", "login", kind=VariableKind.RETURN, line=4),
        _var("name", "lookup", kind=VariableKind.PARAMETER, line=8),
        _var("rows", "fetchRows", file="db.ts", line=2),
        Node(
            id="func:auth.ts:login",
            label="login",
            type="function",
            description="Authenticates a user",
            location=SourceLocation("auth.ts", 1, 5),
        ),
        Node(id="intent:secure-login", label="Secure login", type="intent", description="Only verified users"),
        Node(id="intent:audit", label="Audit", type="intent"),
    ]
    edges = [
        Edge(_vid("username", "login"), _vid("user", "login"), label="assignment"),
        Edge(_vid("user", "login"), _vid("name", "lookup"), label="parameter-argument", reason="first"),
        Edge(_vid("user", "login"), _vid("name", "lookup"), label="assignment", reason="second"),
        Edge(_vid("name", "lookup"), _vid("rows", "fetchRows", "db.ts"), label="assignment"),
        Edge("func:auth.ts:login", "intent:secure-login", type="serves_intent"),
        Edge("intent:secure-login", "intent:audit", type="supports_intent"),
        Edge("func:auth.ts:login", "func:auth.ts:logout", type="dependency"),
    ]
    return nodes, edges


def test_level_zero_is_identity(graph):
    nodes, edges = graph
    result = cluster(nodes, edges, 0)
    assert result.nodes == nodes
    assert result.edges == edges


def test_level_one_folds_variables_into_functions(graph):
    nodes, edges = graph
    result = cluster(nodes, edges, ZoomLevel.FUNCTION)
    by_id = {n.id: n for n in result.nodes}

    assert not any(n.type == "variable" for n in result.nodes)
    login = by_id["func:auth.ts:login"]
    assert login.description == "Authenticates a user [3 variables]"
    assert login.member_count == 3
    assert login.inputs == ("username",)
    assert login.outputs == ("return_user",)
    assert login.cluster_level == 1

    lookup = by_id["func:auth.ts:lookup"]
    assert lookup.type == "function"
    assert lookup.label == "lookup"
    assert lookup.member_count == 1
    assert by_id["func:db.ts:fetchRows"].location.file == "db.ts"

    agg = [e for e in result.edges if e.source == "func:auth.ts:login" and e.target == "func:auth.ts:lookup"]
    assert len(agg) == 1
    assert agg[0].label == "data flow (parameter-argument)"
    assert agg[0].reason == "Aggregated from variable flows"
    assert ("func:auth.ts:lookup", "func:db.ts:fetchRows") in {e.key for e in result.edges}
    assert ("func:auth.ts:login", "intent:secure-login") in {e.key for e in result.edges}
    # intra-function flows disappear
    assert not any(e.source == e.target for e in result.edges)


def test_level_two_folds_into_files(graph):
    nodes, edges = graph
    result = cluster(nodes, edges, 2)
    by_id = {n.id: n for n in result.nodes}

    assert by_id["file:auth.ts"].member_count == 5
    assert by_id["file:auth.ts"].description == "5 functions"
    assert by_id["file:db.ts"].member_count == 1
    file_edges = [e for e in result.edges if e.type == "dependency" and e.source.startswith("file:")]
    assert [(e.source, e.target) for e in file_edges] == [("file:auth.ts", "file:db.ts")]
    assert file_edges[0].label == "file dependency"
    assert file_edges[0].reason == "Aggregated from function dependencies"
    # edges between two functions of one file are dropped
    assert ("func:auth.ts:login", "func:auth.ts:logout") not in {e.key for e in result.edges}


def test_level_two_reuses_existing_file_node(graph):
    nodes, edges = graph
    existing = Node(id="mod-auth", label="auth.ts", type="file", description="Auth module")
    result = cluster(nodes + [existing], edges, 2)
    by_id = {n.id: n for n in result.nodes}
    assert "file:auth.ts" not in by_id
    assert by_id["mod-auth"].description == "Auth module [5 functions]"
    assert ("mod-auth", "file:db.ts") in {e.key for e in result.edges}


def test_level_three_keeps_intents_only(graph):
    nodes, edges = graph
    result = cluster(nodes, edges, 3)
    assert [n.id for n in result.nodes] == ["intent:secure-login", "intent:audit"]
    assert result.nodes[0].description == "Only verified users [1 components]"
    assert result.nodes[0].member_count == 1
    assert result.nodes[1].member_count == 0
    assert {e.type for e in result.edges} == {"serves_intent", "supports_intent"}


def test_coarsening_is_monotonic(graph):
    nodes, edges = graph
    sizes = [len(cluster(nodes, edges, level).nodes) for level in range(4)]
    assert sizes == sorted(sizes, reverse=True)


def test_clustering_does_not_mutate_input(graph):
    nodes, edges = graph
    before = [n.to_dict() for n in nodes]
    for level in range(4):
        cluster(nodes, edges, level)
    assert [n.to_dict() for n in nodes] == before


@pytest.mark.parametrize("level", [-1, 4, "two"])
def test_invalid_level_is_a_caller_error(graph, level):
    nodes, edges = graph
    with pytest.raises(ValueError):
        cluster(nodes, edges, level)


@pytest.mark.parametrize(
    "width,level",
    [(0, 0), (999, 0), (1000, 1), (1999, 1), (2000, 2), (3999, 2), (4000, 3), (10_000, 3)],
)
def test_zoom_level_for_width(width, level):
    assert zoom_level_for_width(width) == level


def test_merge_variable_nodes_repoints_and_dedupes():
    fn = Node(id="fn-7", label="login()", type="function")
    username = _var("username", "login", kind=VariableKind.PARAMETER)
    loose = _var("cfg", "global")
    merged = merge_variable_nodes([fn], [username, username, loose])
    assert [n.id for n in merged] == ["fn-7", username.id, loose.id]
    assert merged[1].cluster_id == "fn-7"
    assert merged[2].cluster_id == loose.cluster_id


def test_unlocated_function_node_takes_its_members_file():
    handler = Node(id="fn-handler", label="handler()", type="function")
    variables = [_var("req", "handler", file="a.ts", kind=VariableKind.PARAMETER), _var("body", "handler", file="a.ts")]
    nodes = merge_variable_nodes([handler], variables)
    edges = [Edge(_vid("req", "handler", "a.ts"), _vid("body", "handler", "a.ts"))]

    assert [n.id for n in cluster(nodes, edges, 1).nodes] == ["fn-handler"]
    level2 = cluster(nodes, edges, 2)
    assert [n.id for n in level2.nodes] == ["file:a.ts"]
    assert level2.nodes[0].member_count == 3
