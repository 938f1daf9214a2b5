# src/teliclens/vfg/discovery.py
from __future__ import annotations

import fnmatch
import hashlib
import os
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from loguru import logger

# ---- Anomaly model ------------------------------------------------------------


class AnomalyKind(str, Enum):
    PARSE_FAILED = "PARSE_FAILED"
    SYNTAX_ERRORS = "SYNTAX_ERRORS"
    TOOL_MISSING = "TOOL_MISSING"      # parser dependency not importable
    EXTRACT_FAILED = "EXTRACT_FAILED"
    LANG_UNKNOWN = "LANG_UNKNOWN"
    BINARY_FILE = "BINARY_FILE"
    ENCODING_ERROR = "ENCODING_ERROR"
    IO_ERROR = "IO_ERROR"
    SKIPPED_BY_RULE = "SKIPPED_BY_RULE"
    TOO_LARGE = "TOO_LARGE"


class Severity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


@dataclass(frozen=True)
class Anomaly:
    """
    Immutable record of something that went wrong (or was skipped) for one file.
    Anomalies are data: the run continues after emitting one.
    """
    path: str
    kind: AnomalyKind
    severity: Severity
    detail: str = ""
    line: Optional[int] = None
    ts_ms: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_dict(self) -> Dict:
        return {
            "path": self.path,
            "kind": self.kind.value,
            "severity": self.severity.value,
            "detail": self.detail,
            "line": self.line,
        }


class AnomalySink:
    """
    Thread-safe anomaly collector.

    - emit(): add an anomaly, update counters, log it
    - drain(): atomically return & clear buffered anomalies
    - items(): snapshot without clearing
    - counters(): snapshot of counters by kind/severity
    """

    __slots__ = ("_lock", "_buffer", "_counts")

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buffer: List[Anomaly] = []
        self._counts: Dict[str, int] = {"total": 0}

    def emit(self, anomaly: Anomaly) -> None:
        with self._lock:
            self._buffer.append(anomaly)
            self._counts["total"] += 1
            for key in (f"kind:{anomaly.kind.value}", f"sev:{anomaly.severity.value}"):
                self._counts[key] = self._counts.get(key, 0) + 1

        if anomaly.severity is Severity.ERROR:
            logger.error("{}: {} {}", anomaly.path, anomaly.kind.value, anomaly.detail)
        elif anomaly.severity is Severity.WARN:
            logger.warning("{}: {} {}", anomaly.path, anomaly.kind.value, anomaly.detail)
        else:
            logger.debug("{}: {} {}", anomaly.path, anomaly.kind.value, anomaly.detail)

    def extend(self, anomalies: Iterable[Anomaly]) -> None:
        for a in anomalies:
            self.emit(a)

    def drain(self) -> List[Anomaly]:
        with self._lock:
            out = self._buffer
            self._buffer = []
            return out

    def items(self) -> Tuple[Anomaly, ...]:
        with self._lock:
            return tuple(self._buffer)

    def counters(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)


# ---- Source model -------------------------------------------------------------


class Language(str, Enum):
    PY = "py"
    JS = "js"
    TS = "ts"
    JSX = "jsx"
    TSX = "tsx"
    UNKNOWN = "unknown"


_HINT_ALIASES: Dict[str, Language] = {
    "py": Language.PY,
    "python": Language.PY,
    "js": Language.JS,
    "javascript": Language.JS,
    "jsx": Language.JSX,
    "ts": Language.TS,
    "typescript": Language.TS,
    "tsx": Language.TSX,
}


def _ext_language(path: str) -> Language:
    p = path.lower()
    if p.endswith(".py"):
        return Language.PY
    if p.endswith(".cjs") or p.endswith(".mjs") or p.endswith(".js"):
        return Language.JS
    if p.endswith(".ts"):
        return Language.TS
    if p.endswith(".tsx"):
        return Language.TSX
    if p.endswith(".jsx"):
        return Language.JSX
    return Language.UNKNOWN


def resolve_language(name: str, hint: Optional[str] = None) -> Language:
    """
    Language for a file: an explicit hint wins, otherwise the file extension.
    A .tsx/.jsx extension refines a generic "typescript"/"javascript" hint.
    """
    by_ext = _ext_language(name)
    if hint:
        lang = _HINT_ALIASES.get(hint.strip().lower())
        if lang is not None:
            if lang is Language.TS and by_ext is Language.TSX:
                return Language.TSX
            if lang is Language.JS and by_ext is Language.JSX:
                return Language.JSX
            return lang
    return by_ext


@dataclass(frozen=True)
class SourceFile:
    """One unit of analysis input: (file name, source text, language hint)."""
    name: str
    content: str
    language: str = ""

    @property
    def lang(self) -> Language:
        return resolve_language(self.name, self.language)


@dataclass(frozen=True)
class FileMeta:
    path: str                 # root-relative posix path
    real_path: str            # resolved absolute path
    blob_sha: str             # content hash (BLAKE2b)
    size_bytes: int
    is_text: bool
    encoding: Optional[str]
    lang: Language


@dataclass(frozen=True)
class DiscoveryConfig:
    max_file_size_bytes: int = 5 * 1024 * 1024
    include_globs: Tuple[str, ...] = ()
    exclude_globs: Tuple[str, ...] = (
        ".git/**",
        ".hg/**",
        ".svn/**",
        "node_modules/**",
        "dist/**",
        "build/**",
        "out/**",
        ".venv/**",
        "__pycache__/**",
        "*.min.js",
        "*.bundle.js",
        "*.d.ts",
    )
    enable_langs: frozenset = frozenset(
        {Language.PY, Language.JS, Language.TS, Language.JSX, Language.TSX}
    )
    sample_bytes_for_heuristics: int = 64 * 1024


# ---- Utility helpers ----------------------------------------------------------


def _posix_relpath(p: Path, root: Path) -> str:
    return p.resolve().relative_to(root.resolve()).as_posix()


def _matches_any(path: str, patterns: Sequence[str]) -> bool:
    return any(fnmatch.fnmatch(path, pat) for pat in patterns)


_BOMS: Tuple[Tuple[bytes, str], ...] = (
    (b"\xef\xbb\xbf", "utf-8-sig"),
    (b"\xff\xfe", "utf-16-le"),
    (b"\xfe\xff", "utf-16-be"),
)


def _detect_bom(data: bytes) -> Optional[str]:
    for sig, name in _BOMS:
        if data.startswith(sig):
            return name
    return None


def _is_binary_sample(sample: bytes) -> bool:
    if not sample:
        return False
    if b"\x00" in sample:
        return True
    ctrl = sum(1 for b in sample if (b < 32 and b not in (9, 10, 11, 12, 13)))
    return ctrl / max(1, len(sample)) > 0.02


# ---- Discovery core -----------------------------------------------------------


def discover_files(
    root: Path,
    cfg: Optional[DiscoveryConfig] = None,
    sink: Optional[AnomalySink] = None,
) -> Iterator[FileMeta]:
    """
    Walk a directory and yield FileMeta records for files in an enabled language.
    Every skip produces an anomaly record. Ordering is lexicographic and deterministic.
    """
    cfg = cfg or DiscoveryConfig()
    if sink is None:
        sink = AnomalySink()
    root = Path(root).resolve()
    if not root.exists() or not root.is_dir():
        raise NotADirectoryError(f"Discovery root not found or not a directory: {root}")

    for path in _iter_paths_lex(root, sink):
        posix_rel = _posix_relpath(path, root)
        if cfg.include_globs and not _matches_any(posix_rel, cfg.include_globs):
            continue
        if _matches_any(posix_rel, cfg.exclude_globs):
            sink.emit(Anomaly(path=posix_rel, kind=AnomalyKind.SKIPPED_BY_RULE, severity=Severity.INFO, detail="Matched exclude_globs"))
            continue

        lang = _ext_language(posix_rel)
        if lang not in cfg.enable_langs:
            # Unsupported extensions are not analysis candidates; no anomaly needed
            continue

        try:
            raw = path.read_bytes()
        except OSError as e:
            sink.emit(Anomaly(path=posix_rel, kind=AnomalyKind.IO_ERROR, severity=Severity.WARN, detail=f"Read failed: {e}"))
            continue

        if len(raw) > cfg.max_file_size_bytes:
            sink.emit(Anomaly(path=posix_rel, kind=AnomalyKind.TOO_LARGE, severity=Severity.INFO, detail=f"File exceeds size budget ({len(raw)} bytes)"))
            continue

        sample = raw[: cfg.sample_bytes_for_heuristics]
        is_text = not _is_binary_sample(sample)
        if not is_text:
            sink.emit(Anomaly(path=posix_rel, kind=AnomalyKind.BINARY_FILE, severity=Severity.INFO, detail="Binary detected by content"))

        yield FileMeta(
            path=posix_rel,
            real_path=str(path),
            blob_sha=hashlib.blake2b(raw, digest_size=20).hexdigest(),
            size_bytes=len(raw),
            is_text=is_text,
            encoding=(_detect_bom(sample) or "utf-8") if is_text else None,
            lang=lang,
        )


def load_source(fm: FileMeta, sink: Optional[AnomalySink] = None) -> Optional[SourceFile]:
    """Read a discovered file into a SourceFile; None (plus an anomaly) when unreadable."""
    if sink is None:
        sink = AnomalySink()
    if not fm.is_text:
        return None
    try:
        raw = Path(fm.real_path).read_bytes()
    except OSError as e:
        sink.emit(Anomaly(path=fm.path, kind=AnomalyKind.IO_ERROR, severity=Severity.WARN, detail=f"Read failed: {e}"))
        return None
    try:
        text = raw.decode(fm.encoding or "utf-8", errors="strict")
    except UnicodeDecodeError as e:
        sink.emit(Anomaly(path=fm.path, kind=AnomalyKind.ENCODING_ERROR, severity=Severity.WARN, detail=str(e)))
        text = raw.decode(fm.encoding or "utf-8", errors="replace")
    return SourceFile(name=fm.path, content=text, language=fm.lang.value)


def _iter_paths_lex(root: Path, sink: AnomalySink) -> Iterator[Path]:
    """
    Deterministic lexicographic directory walk. Symlinked directories are not followed.
    """
    stack: List[Path] = [root]
    seen: Set[str] = set()

    while stack:
        cur = stack.pop()
        try:
            entries = sorted(os.scandir(cur), key=lambda e: e.name)
        except OSError as e:
            sink.emit(Anomaly(path=_posix_relpath(cur, root), kind=AnomalyKind.IO_ERROR, severity=Severity.WARN, detail=f"Dir read failed: {e}"))
            continue

        subdirs: List[Path] = []
        for entry in entries:
            try:
                is_dir = entry.is_dir(follow_symlinks=False)
                is_file = entry.is_file(follow_symlinks=False)
            except OSError:
                continue
            p = Path(entry.path)
            if is_dir:
                key = str(p.resolve())
                if key not in seen:
                    seen.add(key)
                    subdirs.append(p)
            elif is_file:
                yield p

        # Push in reverse so directories are visited in ascending order
        stack.extend(reversed(subdirs))
