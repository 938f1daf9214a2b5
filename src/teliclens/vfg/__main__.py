# src/teliclens/vfg/__main__.py
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from .api import AnalysisConfig, analyze_path
from .clustering import cluster
from .consistency import ConsistencyReport, check_variable_consistency
from .model import Graph


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="teliclens-vfg",
        description="Extract a variable-level data-flow graph, check it and cluster it by zoom level.",
    )
    p.add_argument("path", nargs="?", type=Path, help="source file or directory to analyze")
    p.add_argument("--level", type=int, default=0, choices=range(4), help="zoom level 0-3 (default 0)")
    p.add_argument("--check", action="store_true", help="run the consistency checker")
    p.add_argument("--no-filter", action="store_true", help="keep low-signal variables")
    p.add_argument("--format", choices=("json", "table"), default="json")
    p.add_argument("--graph", type=Path, help="load a node/edge JSON graph instead of extracting")
    p.add_argument("--verbose", "-v", action="store_true", help="debug logging on stderr")
    return p


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "WARNING")


def _load_graph(path: Path) -> Graph:
    data = json.loads(path.read_text(encoding="utf-8"))
    return Graph.from_dict(data)


# ----------------------------- rendering --------------------------------------

def _render_json(graph: Graph, report: Optional[ConsistencyReport], anomalies: List[Dict[str, Any]]) -> str:
    out: Dict[str, Any] = graph.to_dict()
    if report is not None:
        out["report"] = report.to_dict()
    if anomalies:
        out["anomalies"] = anomalies
    return json.dumps(out, indent=2, ensure_ascii=False)


def _render_tables(console: Console, graph: Graph, report: Optional[ConsistencyReport]) -> None:
    nodes = Table(title=f"Nodes ({len(graph.nodes)})")
    for col in ("id", "type", "label", "description"):
        nodes.add_column(col)
    for n in graph.nodes:
        label = f"[red]{n.label}[/red]" if n.trust_boundary else n.label
        nodes.add_row(n.id, n.type, label, n.description)
    console.print(nodes)

    edges = Table(title=f"Edges ({len(graph.edges)})")
    for col in ("source", "target", "type", "label", "reason"):
        edges.add_column(col)
    for e in graph.edges:
        edges.add_row(e.source, e.target, e.type, e.label, e.reason)
    console.print(edges)

    if report is None:
        return
    findings = Table(title="Consistency")
    findings.add_column("category")
    findings.add_column("finding")
    for category, items in report.to_dict().items():
        if category == "summary":
            continue
        for item in items:
            findings.add_row(category, item)
    if findings.row_count:
        console.print(findings)
    console.print(report.summary.rstrip())


# ----------------------------- entry point ------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Returns 0 on success, 1 when --check reports issues, 2 on usage errors."""
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    if args.graph is None and args.path is None:
        parser.error("either PATH or --graph is required")

    anomalies: List[Dict[str, Any]] = []
    if args.graph is not None:
        graph = _load_graph(args.graph)
        report = check_variable_consistency(graph.nodes, graph.edges) if args.check else None
    else:
        if not args.path.exists():
            parser.error(f"no such file or directory: {args.path}")
        cfg = AnalysisConfig(filter_noise=not args.no_filter)
        result = analyze_path(args.path, cfg, check=args.check)
        graph, report = result.graph, result.report
        anomalies = [a.to_dict() for a in result.anomalies]

    view = cluster(graph.nodes, graph.edges, args.level)

    if args.format == "table":
        _render_tables(Console(), view, report)
    else:
        sys.stdout.write(_render_json(view, report, anomalies) + "\n")

    if report is not None and not report.is_consistent:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
