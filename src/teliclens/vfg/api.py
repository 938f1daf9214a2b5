# src/teliclens/vfg/api.py
from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from loguru import logger

from .boundaries import BoundaryConfig, mark_boundary_edges, mark_trust_boundaries
from .consistency import ConsistencyReport, check_variable_consistency
from .discovery import (
    Anomaly,
    AnomalyKind,
    AnomalySink,
    DiscoveryConfig,
    Severity,
    SourceFile,
    discover_files,
    load_source,
)
from .extractor import ExtractorConfig, extract_variables
from .identity import flows_to_edges, variables_to_nodes
from .model import ExtractionResult, Graph
from .noise import NoiseFilterConfig, filter_meaningful_variables
from .parser_registry import ParseConfig, ParserRegistry, SyntaxTree


@dataclass(frozen=True)
class AnalysisConfig:
    """Execution knobs for one analysis run."""
    parse: ParseConfig = field(default_factory=ParseConfig)
    extractor: ExtractorConfig = field(default_factory=ExtractorConfig)
    noise: NoiseFilterConfig = field(default_factory=NoiseFilterConfig)
    boundaries: BoundaryConfig = field(default_factory=BoundaryConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    filter_noise: bool = True
    mark_boundaries: bool = True


@dataclass(frozen=True)
class AnalysisResult:
    graph: Graph
    report: Optional[ConsistencyReport]
    anomalies: List[Anomaly]
    files_total: int = 0
    files_parsed: int = 0
    wall_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = self.graph.to_dict()
        if self.report is not None:
            out["report"] = self.report.to_dict()
        out["anomalies"] = [a.to_dict() for a in self.anomalies]
        out["stats"] = {
            "filesTotal": self.files_total,
            "filesParsed": self.files_parsed,
            "wallMs": self.wall_ms,
        }
        return out


def _extract_all(
    sources: Iterable[SourceFile],
    cfg: AnalysisConfig,
    registry: ParserRegistry,
    sink: AnomalySink,
) -> Tuple[ExtractionResult, int, int]:
    """Parse (possibly concurrently) and extract per file, concatenated in input order."""
    combined = ExtractionResult()
    files_total = 0
    files_parsed = 0
    for src, parsed in registry.parse_many(sources, cfg.parse.max_workers):
        files_total += 1
        if isinstance(parsed, SyntaxTree):
            files_parsed += 1
        try:
            combined.extend(extract_variables(parsed, cfg.extractor))
        except Exception as e:
            logger.error("extraction failed for {}: {}", src.name, e)
            sink.emit(
                Anomaly(
                    path=src.name,
                    kind=AnomalyKind.EXTRACT_FAILED,
                    severity=Severity.ERROR,
                    detail=f"extract-exception:{type(e).__name__}:{e}",
                )
            )
    return combined, files_total, files_parsed


def build_variable_graph(
    sources: Iterable[SourceFile],
    cfg: Optional[AnalysisConfig] = None,
    *,
    registry: Optional[ParserRegistry] = None,
    sink: Optional[AnomalySink] = None,
) -> Graph:
    """
    Extract → identity merge → noise filter → trust-boundary marking.
    Anomalies go to `sink` (or the registry's sink).
    """
    cfg = cfg or AnalysisConfig()
    if sink is None:
        sink = registry.sink if registry is not None else AnomalySink()
    registry = registry or ParserRegistry(cfg=cfg.parse, anomaly_sink=sink)
    graph, _, _ = _build(sources, cfg, registry, sink)
    return graph


def _build(
    sources: Iterable[SourceFile],
    cfg: AnalysisConfig,
    registry: ParserRegistry,
    sink: AnomalySink,
) -> Tuple[Graph, int, int]:
    extracted, files_total, files_parsed = _extract_all(sources, cfg, registry, sink)

    nodes = variables_to_nodes(extracted.variables)
    edges = flows_to_edges(extracted.flows)
    if cfg.filter_noise:
        nodes = filter_meaningful_variables(nodes, cfg.noise)
    if cfg.mark_boundaries:
        nodes = mark_trust_boundaries(nodes, cfg.boundaries)
        edges = mark_boundary_edges(edges, cfg.boundaries)
    return Graph(nodes=nodes, edges=edges), files_total, files_parsed


def analyze_sources(
    sources: Iterable[SourceFile],
    cfg: Optional[AnalysisConfig] = None,
    *,
    registry: Optional[ParserRegistry] = None,
    check: bool = True,
) -> AnalysisResult:
    """
    One analysis run over a set of in-memory sources. A bad file never aborts the
    run: it degrades to an empty extraction plus an anomaly.
    """
    cfg = cfg or AnalysisConfig()
    start = time.time()
    sink = registry.sink if registry is not None else AnomalySink()
    registry = registry or ParserRegistry(cfg=cfg.parse, anomaly_sink=sink)

    graph, files_total, files_parsed = _build(sources, cfg, registry, sink)
    report = check_variable_consistency(graph.nodes, graph.edges) if check else None

    wall_ms = int((time.time() - start) * 1000)
    logger.info(
        "analyzed {} files ({} parsed): {} nodes, {} edges, {} issues in {} ms",
        files_total,
        files_parsed,
        len(graph.nodes),
        len(graph.edges),
        report.issue_count if report is not None else 0,
        wall_ms,
    )
    return AnalysisResult(
        graph=graph,
        report=report,
        anomalies=sink.drain(),
        files_total=files_total,
        files_parsed=files_parsed,
        wall_ms=wall_ms,
    )


def analyze_path(
    root: Path,
    cfg: Optional[AnalysisConfig] = None,
    *,
    check: bool = True,
) -> AnalysisResult:
    """Discover sources under a directory (or take a single file) and analyze them."""
    cfg = cfg or AnalysisConfig()
    root = Path(root)
    sink = AnomalySink()

    if root.is_file():
        sources = [SourceFile(name=root.name, content=root.read_text(encoding="utf-8", errors="replace"))]
    else:
        sources = []
        for fm in discover_files(root, cfg.discovery, sink=sink):
            src = load_source(fm, sink)
            if src is not None:
                sources.append(src)

    registry = ParserRegistry(cfg=cfg.parse, anomaly_sink=sink)
    return analyze_sources(sources, cfg, registry=registry, check=check)
