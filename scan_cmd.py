"""
Scan command: walk a directory tree, hash every regular file, write the hash database.
"""

import logging
import os
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Set

from algorithms import AlgorithmId
from common import (
    FAST_WINDOW_SIZE,
    PROGRESS_EVERY,
    FileRecord,
    build_report,
    excluded_path_set,
    iter_files,
    relative_key,
)
from digest import digest_file
from hashdb import HashDatabase, database_from_records, write_database


@dataclass
class ScanResult:
    """Database built by a scan plus everything that went wrong along the way."""
    database: HashDatabase
    errors: List[Dict[str, str]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    stats: Dict[str, int] = field(default_factory=dict)

    @property
    def partial(self) -> bool:
        return bool(self.errors)


def default_workers() -> int:
    return os.cpu_count() or 1


def hash_file_record(
    file_path: Path,
    root: Path,
    algorithms: Iterable[AlgorithmId],
    fast: bool = False,
    window: int = FAST_WINDOW_SIZE,
) -> FileRecord:
    """Hash one file into a FileRecord. OSError propagates to the caller."""
    size, sampled, digests = digest_file(file_path, algorithms, fast=fast, window=window)
    return FileRecord(
        path=file_path,
        rel_path=relative_key(file_path, root),
        size=size,
        digests=digests,
        sampled=sampled,
        fast=fast,
    )


def _candidate_files(
    root: Path,
    excluded_paths: Set[str],
    stats: Dict[str, int],
    warnings: Optional[List[str]],
) -> Iterator[Path]:
    for file_path in iter_files(root, warnings):
        if str(file_path) in excluded_paths:
            stats["excluded"] += 1
            continue
        stats["scanned"] += 1
        yield file_path


def iter_file_records(
    root: Path,
    algorithm: AlgorithmId,
    fast: bool = False,
    parallel: bool = False,
    workers: Optional[int] = None,
    errors: Optional[List[Dict[str, str]]] = None,
    warnings: Optional[List[str]] = None,
    exclude: Iterable[Optional[Path]] = (),
    stats: Optional[Dict[str, int]] = None,
    window: int = FAST_WINDOW_SIZE,
) -> Iterator[FileRecord]:
    """Yield a FileRecord for every regular file under root.

    Files that fail to hash are appended to ``errors`` and skipped. In parallel
    mode at most ``workers * 2`` files are in flight at once and records arrive
    in completion order.
    """
    root = Path(root).resolve()
    if stats is None:
        stats = {}
    for key in ("scanned", "excluded", "hashed", "sampled", "errors"):
        stats.setdefault(key, 0)
    excluded_paths = excluded_path_set(exclude)
    processed = 0
    last_progress_log = 0

    def record_error(file_path: Path, exc: OSError) -> None:
        stats["errors"] += 1
        logging.warning(f"Failed to hash {file_path}: {exc}")
        if errors is not None:
            errors.append({"path": relative_key(file_path, root), "error": str(exc)})

    def tick(record: Optional[FileRecord]) -> None:
        nonlocal processed, last_progress_log
        processed += 1
        if record is not None:
            stats["hashed"] += 1
            if record.sampled:
                stats["sampled"] += 1
        if processed - last_progress_log >= PROGRESS_EVERY:
            logging.info(
                f"Progress: scanned={stats['scanned']}, hashed={stats['hashed']}, "
                f"errors={stats['errors']}"
            )
            last_progress_log = processed

    files = _candidate_files(root, excluded_paths, stats, warnings)

    if not parallel:
        for file_path in files:
            try:
                record = hash_file_record(file_path, root, [algorithm], fast=fast, window=window)
            except OSError as exc:
                record_error(file_path, exc)
                tick(None)
                continue
            tick(record)
            yield record
        return

    workers = workers or default_workers()
    max_pending = workers * 2
    logging.info(f"Using {workers} worker threads for hashing")
    with ThreadPoolExecutor(max_workers=workers) as executor:
        pending: Dict[Future, Path] = {}

        def drain(block_until: str) -> Iterator[FileRecord]:
            done, _ = wait(pending, return_when=block_until)
            for future in done:
                file_path = pending.pop(future)
                try:
                    record = future.result()
                except OSError as exc:
                    record_error(file_path, exc)
                    tick(None)
                    continue
                tick(record)
                yield record

        for file_path in files:
            future = executor.submit(
                hash_file_record, file_path, root, [algorithm], fast, window
            )
            pending[future] = file_path
            if len(pending) >= max_pending:
                yield from drain(FIRST_COMPLETED)

        while pending:
            yield from drain(FIRST_COMPLETED)


def scan_directory(
    root: Path,
    algorithm: AlgorithmId,
    fast: bool = False,
    parallel: bool = False,
    workers: Optional[int] = None,
    exclude: Iterable[Optional[Path]] = (),
    window: int = FAST_WINDOW_SIZE,
) -> ScanResult:
    """Scan root into an in-memory HashDatabase."""
    errors: List[Dict[str, str]] = []
    warnings: List[str] = []
    stats: Dict[str, int] = {}
    records = iter_file_records(
        root,
        algorithm,
        fast=fast,
        parallel=parallel,
        workers=workers,
        errors=errors,
        warnings=warnings,
        exclude=exclude,
        stats=stats,
        window=window,
    )
    database = database_from_records(records, algorithm, fast=fast)
    database.partial = bool(errors)
    stats["warnings"] = len(warnings)
    errors.sort(key=lambda item: item["path"])
    return ScanResult(database=database, errors=errors, warnings=warnings, stats=stats)


def scan_files(
    root: Path,
    db_path: Path,
    algorithm: AlgorithmId,
    fast: bool = False,
    parallel: bool = False,
    workers: Optional[int] = None,
    report_path: Optional[Path] = None,
    window: int = FAST_WINDOW_SIZE,
) -> Dict[str, object]:
    """Scan root, write the hash database to db_path and return a report.

    The database is written even when some files failed; it is then marked
    partial in its header.
    """
    root = Path(root).resolve()
    run_started = int(time.time())
    result = scan_directory(
        root,
        algorithm,
        fast=fast,
        parallel=parallel,
        workers=workers,
        exclude=(db_path, Path(str(db_path) + ".tmp"), report_path),
        window=window,
    )
    write_database(result.database, db_path)
    run_finished = int(time.time())

    stats = result.stats
    logging.info(
        f"Scan summary: {stats['scanned']} files scanned | hashed: {stats['hashed']} "
        f"(sampled: {stats['sampled']}) | excluded: {stats['excluded']} | "
        f"warnings: {stats['warnings']} | errors: {stats['errors']}"
    )
    if result.partial:
        logging.warning(
            f"Scan incomplete: {stats['errors']} file(s) could not be hashed; "
            f"{db_path} is marked partial"
        )

    details: Dict[str, object] = {
        "status": "partial" if result.partial else "complete",
        "entries": len(result.database),
        "errors": result.errors,
        "warnings": result.warnings,
    }
    if parallel:
        details["workers"] = workers or default_workers()
    return build_report(
        root=root,
        db_path=db_path,
        algorithm=algorithm,
        fast=fast,
        stats=stats,
        run_started=run_started,
        run_finished=run_finished,
        mode="scan",
        details=details,
    )
