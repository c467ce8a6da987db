"""
Plain-text hash database: the persisted contract between scan and verify.

Layout (UTF-8, '\\n' line endings)::

    #hashcheck v1 algorithm=sha256 mode=full status=complete
    a.txt<TAB>sha256<TAB><hex digest>
    nested/b.txt<TAB>sha256<TAB><hex digest>

Paths are root-relative with '/' separators. Backslash, tab, CR and LF in a
path are written as \\\\, \\t, \\r and \\n, and filename bytes that are not
valid UTF-8 as \\xNN. Records are sorted by path so two scans of an unchanged
tree produce byte-identical files.
"""

import logging
import os
import string
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from algorithms import AlgorithmId, get_info, resolve
from common import FileRecord
from errors import DatabaseParseError, InvalidArgumentsError, ModeMismatchError


HEADER_MAGIC = "#hashcheck"
FORMAT_VERSION = "v1"
FIELD_SEPARATOR = "\t"

_ESCAPES = {"\\": "\\\\", "\t": "\\t", "\r": "\\r", "\n": "\\n"}
_UNESCAPES = {"\\": "\\", "t": "\t", "r": "\r", "n": "\n"}
_HEX_DIGITS = set(string.hexdigits.lower())
_RAW_BYTE_LOW = 0xDC80
_RAW_BYTE_HIGH = 0xDCFF


@dataclass
class HashDatabase:
    """Path -> hex digest mapping for one algorithm and one hashing mode."""
    algorithm: AlgorithmId
    fast: bool = False
    entries: Dict[str, str] = field(default_factory=dict)
    partial: bool = False

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, rel_path: object) -> bool:
        return rel_path in self.entries

    @property
    def mode(self) -> str:
        return "fast" if self.fast else "full"

    def paths(self) -> Set[str]:
        return set(self.entries)


def escape_path(rel_path: str) -> str:
    """Escape a path for one record line.

    Undecodable filename bytes, which os.fsdecode carries as lone surrogates
    U+DC80..U+DCFF, are written as \\xNN so the database stays valid UTF-8.
    """
    out: List[str] = []
    for ch in rel_path:
        if ch in _ESCAPES:
            out.append(_ESCAPES[ch])
        elif _RAW_BYTE_LOW <= ord(ch) <= _RAW_BYTE_HIGH:
            out.append(f"\\x{ord(ch) - 0xDC00:02x}")
        else:
            out.append(ch)
    return "".join(out)


def unescape_path(text: str) -> str:
    """Reverse escape_path. Raises ValueError on a dangling or unknown escape."""
    out: List[str] = []
    chars = iter(text)
    for ch in chars:
        if ch != "\\":
            out.append(ch)
            continue
        nxt = next(chars, None)
        if nxt is None:
            raise ValueError("dangling backslash at end of path")
        if nxt == "x":
            digits = next(chars, "") + next(chars, "")
            if len(digits) != 2 or not set(digits) <= _HEX_DIGITS:
                raise ValueError(
                    f"'\\x' must be followed by two lowercase hex digits, got '{digits}'"
                )
            value = int(digits, 16)
            if value < 0x80:
                raise ValueError(f"'\\x{digits}' is not an undecodable byte")
            out.append(chr(0xDC00 + value))
            continue
        if nxt not in _UNESCAPES:
            raise ValueError(f"unknown escape sequence '\\{nxt}'")
        out.append(_UNESCAPES[nxt])
    return "".join(out)


def database_from_records(
    records: Iterable[FileRecord],
    algorithm: AlgorithmId,
    fast: bool = False,
    partial: bool = False,
) -> HashDatabase:
    """Collect scan records, in any arrival order, into a path-sorted database."""
    entries: Dict[str, str] = {}
    for record in records:
        if record.fast != fast:
            raise ModeMismatchError(
                f"{record.rel_path}: {'fast' if record.fast else 'full'}-mode digest "
                f"cannot be stored in a {'fast' if fast else 'full'}-mode database"
            )
        if record.rel_path in entries:
            raise ValueError(f"Duplicate path in scan results: {record.rel_path}")
        entries[record.rel_path] = record.hexdigest(algorithm)
    return HashDatabase(
        algorithm=algorithm,
        fast=fast,
        entries=dict(sorted(entries.items())),
        partial=partial,
    )


def format_header(database: HashDatabase) -> str:
    status = "partial" if database.partial else "complete"
    return (
        f"{HEADER_MAGIC} {FORMAT_VERSION} algorithm={database.algorithm.value} "
        f"mode={database.mode} status={status}"
    )


def format_database(database: HashDatabase) -> str:
    """Serialize a database to its text form, records sorted by path."""
    lines = [format_header(database)]
    algo_name = database.algorithm.value
    for rel_path in sorted(database.entries):
        lines.append(
            FIELD_SEPARATOR.join((escape_path(rel_path), algo_name, database.entries[rel_path]))
        )
    return "\n".join(lines) + "\n"


def write_database(database: HashDatabase, dest: Path) -> None:
    """Write the database to dest, replacing any existing file in one step."""
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = dest.with_name(dest.name + ".tmp")
    try:
        with tmp_path.open('w', encoding='utf-8', newline='\n') as handle:
            handle.write(format_database(database))
        os.replace(tmp_path, dest)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()
    logging.info(f"Wrote {len(database)} entries to {dest}")


def _parse_header(line: str, source: Optional[str]) -> HashDatabase:
    tokens = line.split(" ")
    if tokens[0] != HEADER_MAGIC:
        raise DatabaseParseError(1, f"missing '{HEADER_MAGIC}' header", source)
    if len(tokens) < 2 or tokens[1] != FORMAT_VERSION:
        found = tokens[1] if len(tokens) > 1 else "none"
        raise DatabaseParseError(1, f"unsupported database version '{found}'", source)

    fields: Dict[str, str] = {}
    for token in tokens[2:]:
        key, sep, value = token.partition("=")
        if not sep or not key or not value:
            raise DatabaseParseError(1, f"malformed header field '{token}'", source)
        fields[key] = value

    if "algorithm" not in fields:
        raise DatabaseParseError(1, "header does not declare an algorithm", source)
    try:
        algorithm = resolve(fields["algorithm"])
    except InvalidArgumentsError as exc:
        raise DatabaseParseError(1, str(exc), source) from exc
    if fields["algorithm"] != algorithm.value:
        raise DatabaseParseError(
            1,
            f"header algorithm must be written as '{algorithm.value}', "
            f"got '{fields['algorithm']}'",
            source,
        )

    mode = fields.get("mode")
    if mode not in ("fast", "full"):
        raise DatabaseParseError(1, f"header mode must be 'fast' or 'full', got '{mode}'", source)
    status = fields.get("status", "complete")
    if status not in ("complete", "partial"):
        raise DatabaseParseError(1, f"unknown header status '{status}'", source)

    return HashDatabase(algorithm=algorithm, fast=mode == "fast", partial=status == "partial")


def parse_database(lines: Iterable[str], source: Optional[str] = None) -> HashDatabase:
    """Parse database lines (without line terminators). Fails on the first bad line."""
    database: Optional[HashDatabase] = None
    expected_len = 0
    entries: Dict[str, str] = {}

    for line_no, line in enumerate(lines, start=1):
        if line.endswith("\r"):
            line = line[:-1]
        if database is None:
            database = _parse_header(line, source)
            expected_len = get_info(database.algorithm).digest_size * 2
            continue

        if not line:
            raise DatabaseParseError(line_no, "empty line", source)
        fields = line.split(FIELD_SEPARATOR)
        if len(fields) != 3:
            raise DatabaseParseError(
                line_no, f"expected 3 tab-separated fields, found {len(fields)}", source
            )
        raw_path, algo_name, digest = fields
        try:
            rel_path = unescape_path(raw_path)
        except ValueError as exc:
            raise DatabaseParseError(line_no, f"bad path: {exc}", source) from exc
        if not rel_path:
            raise DatabaseParseError(line_no, "empty path", source)
        if algo_name != database.algorithm.value:
            raise DatabaseParseError(
                line_no,
                f"algorithm '{algo_name}' does not match header algorithm "
                f"'{database.algorithm.value}'",
                source,
            )
        if len(digest) != expected_len or not set(digest) <= _HEX_DIGITS:
            raise DatabaseParseError(
                line_no, f"invalid {algo_name} digest '{digest}'", source
            )
        if rel_path in entries:
            raise DatabaseParseError(line_no, f"duplicate path '{rel_path}'", source)
        entries[rel_path] = digest

    if database is None:
        raise DatabaseParseError(1, "database is empty", source)
    database.entries = dict(sorted(entries.items()))
    return database


def read_database(source: Path) -> HashDatabase:
    """Read and strictly parse a database file.

    Raises FileNotFoundError/OSError if unreadable, DatabaseParseError if malformed.
    """
    source = Path(source)
    raw_lines = source.read_bytes().split(b"\n")
    if raw_lines and raw_lines[-1] == b"":
        raw_lines.pop()

    def decoded() -> Iterable[str]:
        for line_no, raw in enumerate(raw_lines, start=1):
            try:
                yield raw.decode('utf-8')
            except UnicodeDecodeError as exc:
                raise DatabaseParseError(line_no, f"invalid UTF-8: {exc}", str(source)) from exc

    database = parse_database(decoded(), source=str(source))
    logging.debug(
        f"Loaded {len(database)} entries from {source} "
        f"({database.algorithm.value}, {database.mode})"
    )
    return database
