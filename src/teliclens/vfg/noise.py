# src/teliclens/vfg/noise.py
"""Noise filter: drop low-signal variable nodes before checking and clustering."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import FrozenSet, Iterable, List

from loguru import logger

from .model import Node, VariableKind

_TMP_RE = re.compile(r"^tmp\d*$")
_TEMP_RE = re.compile(r"^temp\d*$")
_LOWER_RE = re.compile(r"^[a-z]$")


@dataclass(frozen=True)
class NoiseFilterConfig:
    loop_counters: FrozenSet[str] = frozenset({"i", "j", "k"})
    always_keep: FrozenSet[VariableKind] = frozenset(
        {VariableKind.PARAMETER, VariableKind.RETURN, VariableKind.FIELD, VariableKind.GLOBAL}
    )
    min_local_length: int = 3


def is_noise_name(name: str, cfg: NoiseFilterConfig = NoiseFilterConfig()) -> bool:
    if name.startswith("_") and len(name) < 3:
        return True
    if _TMP_RE.match(name) or _TEMP_RE.match(name):
        return True
    if name in cfg.loop_counters:
        return True
    if len(name) == 1 and not _LOWER_RE.match(name):
        return True
    return False


def is_meaningful(node: Node, cfg: NoiseFilterConfig = NoiseFilterConfig()) -> bool:
    """Drop rules first, then kind retention. Non-variable nodes are always kept."""
    if not node.is_variable:
        return True
    info = node.variable_info
    name = info.symbol_name if info is not None else ""
    if is_noise_name(name, cfg):
        return False
    if info is None:
        return False
    if info.kind in cfg.always_keep:
        return True
    return info.kind is VariableKind.LOCAL and len(name) >= cfg.min_local_length


def filter_meaningful_variables(nodes: Iterable[Node], cfg: NoiseFilterConfig = NoiseFilterConfig()) -> List[Node]:
    """Return a new node list; edges are never touched here."""
    nodes = list(nodes)
    kept = [n for n in nodes if is_meaningful(n, cfg)]
    logger.debug("noise filter kept {} of {} nodes", len(kept), len(nodes))
    return kept
