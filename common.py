"""
Shared code for hashcheck scan and verify: constants, types, tree walking, reporting.
"""

import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path, PurePath
from typing import Dict, Iterable, List, Optional, Set

from algorithms import AlgorithmId


DEFAULT_ALGORITHM = "sha256"
DEFAULT_CHUNK_SIZE = 8 * 1024 * 1024
FAST_WINDOW_SIZE = 100 * 1024 * 1024
PROGRESS_EVERY = 1000
DEFAULT_BENCHMARK_MB = 100
LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


@dataclass(frozen=True)
class DigestResult:
    """Output of one algorithm over one input."""
    algorithm: AlgorithmId
    digest: bytes

    @property
    def hexdigest(self) -> str:
        return self.digest.hex()


@dataclass(frozen=True)
class FileRecord:
    """One hashed file from a directory scan."""
    path: Path
    rel_path: str
    size: int
    digests: Dict[AlgorithmId, DigestResult]
    sampled: bool = False
    fast: bool = False

    def hexdigest(self, algo: AlgorithmId) -> str:
        return self.digests[algo].hexdigest


def setup_logging(log_file: Optional[Path] = None, verbose: bool = False) -> None:
    """Log to stderr, and to log_file when given.

    --verbose lowers the console threshold to DEBUG; the log file always gets
    DEBUG records so a failed run can be diagnosed after the fact.
    """
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    handlers: List[logging.Handler] = [console]

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(
            log_file, mode='w', encoding='utf-8', errors='backslashreplace'
        )
        file_handler.setLevel(logging.DEBUG)
        handlers.append(file_handler)

    logging.basicConfig(
        level=logging.DEBUG if (verbose or log_file) else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
    )


def printable_path(path: object) -> str:
    """Text form of a path that can be written to any UTF-8 stream.

    Undecodable filename bytes are shown as \\xNN instead of raising.
    """
    return os.fsencode(str(path)).decode('utf-8', 'backslashreplace')


def relative_key(file_path: Path, root: Path) -> str:
    """Root-relative path with '/' separators, as stored in a hash database."""
    return PurePath(os.path.relpath(file_path, root)).as_posix()


def iter_files(root: Path, warnings: Optional[List[str]] = None) -> Iterable[Path]:
    """Iterate through regular files under root without following symlinks.

    Symlinks and special files (fifos, sockets, devices) are skipped and
    reported through ``warnings``.
    """
    stack = [root]
    while stack:
        current = stack.pop()
        try:
            with os.scandir(current) as entries:
                for entry in entries:
                    try:
                        if entry.is_symlink():
                            _skip(warnings, f"Skipping symlink {entry.path}")
                        elif entry.is_dir(follow_symlinks=False):
                            stack.append(Path(entry.path))
                        elif entry.is_file(follow_symlinks=False):
                            yield Path(entry.path)
                        else:
                            _skip(warnings, f"Skipping special file {entry.path}")
                    except OSError as exc:
                        _skip(warnings, f"Skipping entry {entry.path}: {exc}")
        except OSError as exc:
            _skip(warnings, f"Skipping directory {current}: {exc}")


def _skip(warnings: Optional[List[str]], message: str) -> None:
    logging.warning(message)
    if warnings is not None:
        warnings.append(message)


def excluded_path_set(paths: Iterable[Optional[Path]]) -> Set[str]:
    """Resolved string forms of output files that a scan must not hash."""
    return {str(Path(p).resolve()) for p in paths if p is not None}


def build_report(
    root: Path,
    db_path: Path,
    algorithm: AlgorithmId,
    fast: bool,
    stats: Dict[str, int],
    run_started: int,
    run_finished: int,
    mode: str,
    details: Optional[Dict[str, object]],
) -> Dict[str, object]:
    """Build JSON-compatible report."""
    report: Dict[str, object] = {
        "run_started": datetime.fromtimestamp(run_started).isoformat(),
        "run_finished": datetime.fromtimestamp(run_finished).isoformat(),
        "duration_seconds": run_finished - run_started,
        "root": str(root),
        "db": str(db_path),
        "algorithm": algorithm.value,
        "hash_mode": "fast" if fast else "full",
        "mode": mode,
        "stats": stats,
    }
    if details:
        report.update(details)
    return report


def write_report(report: Dict[str, object], report_path: Path) -> None:
    """Write report as indented JSON with sorted keys, non-ASCII escaped."""
    report_path.parent.mkdir(parents=True, exist_ok=True)
    with report_path.open('w', encoding='utf-8') as handle:
        json.dump(report, handle, indent=2, sort_keys=True)
        handle.write("\n")
    logging.info(f"Report written to {printable_path(report_path)}")
