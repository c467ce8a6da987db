"""
Verify command: re-hash a directory and compare it to a stored hash database.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from common import FAST_WINDOW_SIZE, build_report, printable_path
from errors import ModeMismatchError
from hashdb import HashDatabase, read_database
from scan_cmd import default_workers, iter_file_records


@dataclass(frozen=True)
class VerificationReport:
    """Classification of every path seen in the database or on disk.

    unchanged, modified, missing and new are pairwise disjoint. Files that
    exist on disk but could not be read are listed in errors only.
    """
    unchanged: FrozenSet[str] = frozenset()
    modified: FrozenSet[str] = frozenset()
    missing: FrozenSet[str] = frozenset()
    new: FrozenSet[str] = frozenset()
    errors: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not (self.modified or self.missing or self.new or self.errors)

    def counts(self) -> Dict[str, int]:
        return {
            "unchanged": len(self.unchanged),
            "modified": len(self.modified),
            "missing": len(self.missing),
            "new": len(self.new),
            "errors": len(self.errors),
        }


def check_mode(database: HashDatabase, fast: Optional[bool]) -> None:
    """Raise ModeMismatchError if a requested mode disagrees with the database."""
    if fast is None or fast == database.fast:
        return
    requested = "fast" if fast else "full"
    raise ModeMismatchError(
        f"Cannot compare {requested}-mode digests against a {database.mode}-mode database"
    )


def verify_database(
    database: HashDatabase,
    root: Path,
    parallel: bool = False,
    workers: Optional[int] = None,
    fast: Optional[bool] = None,
    exclude: Iterable[Optional[Path]] = (),
    window: int = FAST_WINDOW_SIZE,
) -> VerificationReport:
    """Re-scan root with the database's algorithm and mode and classify every path."""
    check_mode(database, fast)
    if database.partial:
        logging.warning(
            "Database is marked partial; files that failed during the scan will show as new"
        )

    errors: List[Dict[str, str]] = []
    warnings: List[str] = []
    unchanged = set()
    modified = set()
    new = set()
    seen = set()

    records = iter_file_records(
        root,
        database.algorithm,
        fast=database.fast,
        parallel=parallel,
        workers=workers,
        errors=errors,
        warnings=warnings,
        exclude=exclude,
        window=window,
    )
    for record in records:
        if record.fast != database.fast:
            raise ModeMismatchError(
                f"{record.rel_path}: hashed in {'fast' if record.fast else 'full'} mode "
                f"but database is {database.mode} mode"
            )
        seen.add(record.rel_path)
        expected = database.entries.get(record.rel_path)
        if expected is None:
            new.add(record.rel_path)
            logging.debug(f"New file: {record.rel_path}")
        elif expected == record.hexdigest(database.algorithm):
            unchanged.add(record.rel_path)
        else:
            modified.add(record.rel_path)
            logging.debug(f"Modified: {record.rel_path}")

    error_map = {item["path"]: item["error"] for item in errors}
    missing = {
        rel_path
        for rel_path in database.entries
        if rel_path not in seen and rel_path not in error_map
    }

    return VerificationReport(
        unchanged=frozenset(unchanged),
        modified=frozenset(modified),
        missing=frozenset(missing),
        new=frozenset(new),
        errors=dict(sorted(error_map.items())),
        warnings=warnings,
    )


def format_verification(report: VerificationReport) -> str:
    """Render the four path lists (and any errors) as labelled sections."""
    sections = [
        ("Unchanged", sorted(report.unchanged)),
        ("Modified", sorted(report.modified)),
        ("Missing", sorted(report.missing)),
        ("New", sorted(report.new)),
    ]
    lines: List[str] = []
    for label, paths in sections:
        lines.append(f"{label} ({len(paths)}):")
        lines.extend(f"  {printable_path(path)}" for path in paths)
    if report.errors:
        lines.append(f"Errors ({len(report.errors)}):")
        lines.extend(
            f"  {printable_path(path)}: {printable_path(message)}"
            for path, message in report.errors.items()
        )
    return "\n".join(lines)


def verify_files(
    root: Path,
    db_path: Path,
    parallel: bool = False,
    workers: Optional[int] = None,
    fast: Optional[bool] = None,
    report_path: Optional[Path] = None,
    window: int = FAST_WINDOW_SIZE,
) -> Tuple[VerificationReport, Dict[str, object]]:
    """Verify root against the database at db_path.

    Returns the VerificationReport and a JSON-compatible report dict.
    """
    root = Path(root).resolve()
    run_started = int(time.time())
    database = read_database(db_path)
    logging.info(
        f"Verifying {root} against {db_path} "
        f"({len(database)} entries, {database.algorithm.value}, {database.mode} mode)"
    )
    if database.fast:
        logging.info("Fast mode: changes outside the sampled windows are not detected")

    result = verify_database(
        database,
        root,
        parallel=parallel,
        workers=workers,
        fast=fast,
        exclude=(db_path, report_path),
        window=window,
    )
    run_finished = int(time.time())

    stats = result.counts()
    stats["db_entries"] = len(database)
    stats["warnings"] = len(result.warnings)
    logging.info(
        f"Completed: unchanged={stats['unchanged']}, modified={stats['modified']}, "
        f"missing={stats['missing']}, new={stats['new']}, errors={stats['errors']}"
    )

    details: Dict[str, object] = {
        "unchanged": sorted(result.unchanged),
        "modified": sorted(result.modified),
        "missing": sorted(result.missing),
        "new": sorted(result.new),
        "errors": [{"path": p, "error": e} for p, e in result.errors.items()],
        "warnings": result.warnings,
        "db_partial": database.partial,
    }
    if parallel:
        details["workers"] = workers or default_workers()
    report = build_report(
        root=root,
        db_path=db_path,
        algorithm=database.algorithm,
        fast=database.fast,
        stats=stats,
        run_started=run_started,
        run_finished=run_finished,
        mode="verify",
        details=details,
    )
    return result, report
