#!/usr/bin/env python3
"""
Unit tests for scanning, the hash database format, verification and the CLI.
"""

import hashlib
import json
import logging
import os
import sys
from pathlib import Path

import pytest

import scan_cmd
from algorithms import AlgorithmId
from common import DigestResult, FileRecord, setup_logging, write_report
from errors import DatabaseParseError, ModeMismatchError
from hashcheck import main
from hashdb import (
    HashDatabase,
    database_from_records,
    format_database,
    parse_database,
    read_database,
    write_database,
)
from scan_cmd import iter_file_records, scan_directory, scan_files
from verify_cmd import format_verification, verify_database, verify_files


logging.basicConfig(level=logging.WARNING)


def _write_file(path: Path, content: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _make_tree(root: Path) -> None:
    _write_file(root / "a.txt", b"alpha")
    _write_file(root / "b.txt", b"beta" * 100)
    _write_file(root / "c.txt", b"gamma" * 1000)
    _write_file(root / "nested" / "d.txt", b"delta")
    _write_file(root / "nested" / "deep" / "e.txt", b"epsilon" * 500)


def _assert_partition(result, database: HashDatabase, disk_paths: set) -> None:
    sets = [result.unchanged, result.modified, result.missing, result.new]
    for i, left in enumerate(sets):
        for right in sets[i + 1:]:
            assert not (left & right)
    assert result.unchanged | result.modified | result.missing == database.paths()
    assert result.unchanged | result.modified | result.new == disk_paths


def test_scan_and_verify_hello_world_scenario(tmp_path: Path):
    root = tmp_path / "root"
    db_path = tmp_path / "hashes.txt"
    _write_file(root / "a.txt", b"hello")
    _write_file(root / "b.txt", b"world")

    report = scan_files(root=root, db_path=db_path, algorithm=AlgorithmId.SHA256)
    assert report["status"] == "complete"
    assert report["entries"] == 2

    database = read_database(db_path)
    assert database.algorithm == AlgorithmId.SHA256
    assert database.entries == {
        "a.txt": _sha256(b"hello"),
        "b.txt": _sha256(b"world"),
    }

    (root / "b.txt").unlink()
    _write_file(root / "c.txt", b"new")

    result, verify_report = verify_files(root=root, db_path=db_path)
    assert result.missing == {"b.txt"}
    assert result.new == {"c.txt"}
    assert result.unchanged == {"a.txt"}
    assert result.modified == frozenset()
    assert verify_report["stats"]["missing"] == 1
    assert verify_report["missing"] == ["b.txt"]


def test_database_file_layout(tmp_path: Path):
    root = tmp_path / "root"
    db_path = tmp_path / "hashes.txt"
    _write_file(root / "z.txt", b"last")
    _write_file(root / "dir" / "a.txt", b"first")

    scan_files(root=root, db_path=db_path, algorithm=AlgorithmId.SHA256)

    lines = db_path.read_text(encoding="utf-8").splitlines()
    assert lines[0] == "#hashcheck v1 algorithm=sha256 mode=full status=complete"
    assert lines[1] == f"dir/a.txt\tsha256\t{_sha256(b'first')}"
    assert lines[2] == f"z.txt\tsha256\t{_sha256(b'last')}"
    assert len(lines) == 3


def test_round_trip_preserves_scan_result(tmp_path: Path):
    root = tmp_path / "root"
    db_path = tmp_path / "hashes.txt"
    _make_tree(root)

    result = scan_directory(root, AlgorithmId.BLAKE3)
    write_database(result.database, db_path)
    loaded = read_database(db_path)

    assert loaded == result.database
    assert set(loaded.entries) == {
        "a.txt",
        "b.txt",
        "c.txt",
        "nested/d.txt",
        "nested/deep/e.txt",
    }


def test_parallel_and_sequential_scans_write_identical_databases(tmp_path: Path):
    root = tmp_path / "root"
    db_single = tmp_path / "single.txt"
    db_multi = tmp_path / "multi.txt"
    _make_tree(root)
    for i in range(40):
        _write_file(root / "many" / f"f{i:02d}.bin", os.urandom(100 + i))

    report_single = scan_files(root=root, db_path=db_single, algorithm=AlgorithmId.SHA256)
    report_multi = scan_files(
        root=root,
        db_path=db_multi,
        algorithm=AlgorithmId.SHA256,
        parallel=True,
        workers=4,
    )

    assert db_single.read_bytes() == db_multi.read_bytes()
    assert report_single["stats"]["hashed"] == report_multi["stats"]["hashed"] == 45
    assert report_multi.get("workers") == 4
    assert "workers" not in report_single


def test_parallel_records_consumed_exactly_once(tmp_path: Path):
    root = tmp_path / "root"
    for i in range(30):
        _write_file(root / f"f{i}.txt", str(i).encode())

    records = list(iter_file_records(root, AlgorithmId.MD5, parallel=True, workers=2))
    paths = [record.rel_path for record in records]
    assert len(paths) == len(set(paths)) == 30


def test_verify_fresh_database_is_all_unchanged(tmp_path: Path):
    root = tmp_path / "root"
    db_path = tmp_path / "hashes.txt"
    _make_tree(root)

    scan_files(root=root, db_path=db_path, algorithm=AlgorithmId.SHA3_256)
    result, _ = verify_files(root=root, db_path=db_path)

    assert result.clean
    assert len(result.unchanged) == 5
    assert not result.modified and not result.missing and not result.new


def test_verify_classifies_every_change_kind(tmp_path: Path):
    root = tmp_path / "root"
    db_path = tmp_path / "hashes.txt"
    _make_tree(root)
    scan_files(root=root, db_path=db_path, algorithm=AlgorithmId.SHA256)

    _write_file(root / "a.txt", b"modified")
    (root / "nested" / "d.txt").unlink()
    _write_file(root / "nested" / "added.txt", b"added")

    database = read_database(db_path)
    result = verify_database(database, root, parallel=True, workers=3)

    assert result.modified == {"a.txt"}
    assert result.missing == {"nested/d.txt"}
    assert result.new == {"nested/added.txt"}
    assert result.unchanged == {"b.txt", "c.txt", "nested/deep/e.txt"}
    disk_paths = {"a.txt", "b.txt", "c.txt", "nested/deep/e.txt", "nested/added.txt"}
    _assert_partition(result, database, disk_paths)

    rendered = format_verification(result)
    assert "Modified (1):\n  a.txt" in rendered
    assert "Missing (1):\n  nested/d.txt" in rendered
    assert "New (1):\n  nested/added.txt" in rendered


def test_database_is_portable_across_roots(tmp_path: Path):
    source = tmp_path / "source"
    copy = tmp_path / "elsewhere" / "copy"
    db_path = tmp_path / "hashes.txt"
    _make_tree(source)
    _make_tree(copy)

    scan_files(root=source, db_path=db_path, algorithm=AlgorithmId.SHA256)
    result, _ = verify_files(root=copy, db_path=db_path)
    assert result.clean
    assert len(result.unchanged) == 5


def test_database_inside_root_is_not_scanned(tmp_path: Path):
    root = tmp_path / "root"
    db_path = root / "hashes.txt"
    report_path = root / "scan.json"
    _write_file(root / "a.txt", b"alpha")

    report = scan_files(
        root=root, db_path=db_path, algorithm=AlgorithmId.SHA256, report_path=report_path
    )
    assert report["stats"]["hashed"] == 1
    assert read_database(db_path).paths() == {"a.txt"}

    result, _ = verify_files(root=root, db_path=db_path)
    assert result.unchanged == {"a.txt"}
    assert not result.new


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks not supported")
def test_symlinks_are_skipped_with_warning(tmp_path: Path):
    root = tmp_path / "root"
    _write_file(root / "real.txt", b"real")
    try:
        os.symlink(root / "real.txt", root / "link.txt")
    except OSError:
        pytest.skip("cannot create symlinks here")

    result = scan_directory(root, AlgorithmId.SHA256)
    assert result.database.paths() == {"real.txt"}
    assert len(result.warnings) == 1
    assert "link.txt" in result.warnings[0]
    assert not result.partial


def test_unreadable_file_gives_partial_database(tmp_path: Path, monkeypatch):
    root = tmp_path / "root"
    db_path = tmp_path / "hashes.txt"
    _write_file(root / "good.txt", b"good")
    _write_file(root / "bad.txt", b"bad")

    real_digest_file = scan_cmd.digest_file

    def flaky_digest_file(file_path, *args, **kwargs):
        if Path(file_path).name == "bad.txt":
            raise PermissionError(13, "Permission denied", str(file_path))
        return real_digest_file(file_path, *args, **kwargs)

    monkeypatch.setattr(scan_cmd, "digest_file", flaky_digest_file)

    report = scan_files(root=root, db_path=db_path, algorithm=AlgorithmId.SHA256)
    assert report["status"] == "partial"
    assert report["stats"]["errors"] == 1
    assert report["errors"][0]["path"] == "bad.txt"

    database = read_database(db_path)
    assert database.partial
    assert database.paths() == {"good.txt"}
    assert db_path.read_text(encoding="utf-8").startswith(
        "#hashcheck v1 algorithm=sha256 mode=full status=partial\n"
    )

    result, _ = verify_files(root=root, db_path=db_path)
    assert result.unchanged == {"good.txt"}
    assert "bad.txt" in result.errors
    assert not result.new and not result.missing


def test_database_listed_file_unreadable_at_verify_is_an_error(tmp_path: Path, monkeypatch, capsys):
    root = tmp_path / "root"
    db_path = tmp_path / "hashes.txt"
    _write_file(root / "good.txt", b"good")
    _write_file(root / "locked.txt", b"locked")
    scan_files(root=root, db_path=db_path, algorithm=AlgorithmId.SHA256)
    assert read_database(db_path).paths() == {"good.txt", "locked.txt"}

    real_digest_file = scan_cmd.digest_file

    def locked_digest_file(file_path, *args, **kwargs):
        if Path(file_path).name == "locked.txt":
            raise PermissionError(13, "Permission denied", str(file_path))
        return real_digest_file(file_path, *args, **kwargs)

    monkeypatch.setattr(scan_cmd, "digest_file", locked_digest_file)

    result, report = verify_files(root=root, db_path=db_path)
    assert "locked.txt" in result.errors
    assert "Permission denied" in result.errors["locked.txt"]
    assert result.unchanged == {"good.txt"}
    assert result.missing == frozenset()
    assert result.modified == frozenset()
    assert result.new == frozenset()
    assert report["stats"]["errors"] == 1

    with pytest.raises(SystemExit) as excinfo:
        main(["verify", "-b", str(db_path), "-d", str(root), "-p", "--workers", "2"])
    assert excinfo.value.code == 1
    out = capsys.readouterr().out
    assert "Missing (0):" in out
    assert "Errors (1):\n  locked.txt: " in out


def _non_utf8_file(root: Path) -> Path:
    if os.name == "nt" or sys.getfilesystemencoding().lower() not in ("utf-8", "utf8"):
        pytest.skip("needs a POSIX filesystem with UTF-8 file names")
    path = root / os.fsdecode(b"bad\xff.txt")
    try:
        _write_file(path, b"raw name")
    except (OSError, UnicodeError):
        pytest.skip("filesystem rejects file names that are not valid UTF-8")
    return path


def test_non_utf8_filename_scans_and_verifies(tmp_path: Path):
    root = tmp_path / "root"
    db_path = tmp_path / "hashes.txt"
    _write_file(root / "ok.txt", b"ok")
    _non_utf8_file(root)
    raw_name = os.fsdecode(b"bad\xff.txt")

    report = scan_files(root=root, db_path=db_path, algorithm=AlgorithmId.SHA256)
    assert report["status"] == "complete"
    assert not (tmp_path / "hashes.txt.tmp").exists()

    text = db_path.read_text(encoding="utf-8")
    assert f"bad\\xff.txt\tsha256\t{_sha256(b'raw name')}\n" in text

    database = read_database(db_path)
    assert database.paths() == {"ok.txt", raw_name}

    result, _ = verify_files(root=root, db_path=db_path)
    assert result.unchanged == {"ok.txt", raw_name}
    assert result.clean
    assert "  bad\\xff.txt" in format_verification(result)


def test_cli_non_utf8_filename(tmp_path: Path, capsys):
    root = tmp_path / "root"
    db_path = tmp_path / "hashes.txt"
    report_path = tmp_path / "scan.json"
    _non_utf8_file(root)

    with pytest.raises(SystemExit) as excinfo:
        main(["scan", "-d", str(root), "-o", str(db_path), "--report", str(report_path)])
    assert excinfo.value.code == 0
    assert json.loads(report_path.read_text(encoding="utf-8"))["entries"] == 1

    with pytest.raises(SystemExit) as excinfo:
        main(["verify", "-b", str(db_path), "-d", str(root)])
    assert excinfo.value.code == 0
    assert "Unchanged (1):\n  bad\\xff.txt" in capsys.readouterr().out


def test_failed_database_write_removes_temp_file(tmp_path: Path):
    db_path = tmp_path / "hashes.txt"
    database = HashDatabase(algorithm=AlgorithmId.MD5, entries={"lone\ud800.txt": "0" * 32})

    with pytest.raises(UnicodeEncodeError):
        write_database(database, db_path)
    assert not db_path.exists()
    assert not (tmp_path / "hashes.txt.tmp").exists()


def test_fast_mode_database_reapplies_sampling(tmp_path: Path):
    root = tmp_path / "root"
    db_path = tmp_path / "hashes.txt"
    data = bytearray(os.urandom(1000))
    _write_file(root / "big.bin", bytes(data))
    _write_file(root / "small.bin", b"small")

    report = scan_files(
        root=root, db_path=db_path, algorithm=AlgorithmId.SHA256, fast=True, window=100
    )
    assert report["stats"]["sampled"] == 1
    database = read_database(db_path)
    assert database.fast
    assert database.entries["big.bin"] == _sha256(
        bytes(data[0:100] + data[450:550] + data[900:1000])
    )
    assert database.entries["small.bin"] == _sha256(b"small")

    # Outside the sampled windows: a documented blind spot.
    data[200] ^= 0xFF
    _write_file(root / "big.bin", bytes(data))
    result, _ = verify_files(root=root, db_path=db_path, window=100)
    assert result.unchanged == {"big.bin", "small.bin"}

    data[0] ^= 0xFF
    _write_file(root / "big.bin", bytes(data))
    result, _ = verify_files(root=root, db_path=db_path, window=100)
    assert result.modified == {"big.bin"}


def test_mode_mismatch_is_a_hard_error(tmp_path: Path):
    root = tmp_path / "root"
    _write_file(root / "a.txt", b"alpha")
    fast_db = HashDatabase(algorithm=AlgorithmId.SHA256, fast=True, entries={})

    with pytest.raises(ModeMismatchError):
        verify_database(fast_db, root, fast=False)

    record = FileRecord(
        path=root / "a.txt",
        rel_path="a.txt",
        size=5,
        digests={AlgorithmId.SHA256: DigestResult(AlgorithmId.SHA256, hashlib.sha256(b"alpha").digest())},
        fast=True,
    )
    with pytest.raises(ModeMismatchError):
        database_from_records([record], AlgorithmId.SHA256, fast=False)


def test_paths_with_special_characters_round_trip():
    database = HashDatabase(
        algorithm=AlgorithmId.MD5,
        entries={
            "tab\there.txt": "0" * 32,
            "back\\slash.txt": "1" * 32,
            "line\nbreak.txt": "2" * 32,
            "raw\udcff.txt": "3" * 32,
            "literal\\x41.txt": "4" * 32,
        },
    )
    text = format_database(database)
    assert len(text.splitlines()) == 6
    assert "raw\\xff.txt\tmd5" in text
    assert "literal\\\\x41.txt\tmd5" in text
    parsed = parse_database(text.splitlines())
    assert parsed.entries == database.entries


@pytest.mark.parametrize(
    "lines, line_no, message",
    [
        ([], 1, "empty"),
        (["sha256 database"], 1, "header"),
        (["#hashcheck v9 algorithm=sha256 mode=full"], 1, "version"),
        (["#hashcheck v1 algorithm=nope mode=full"], 1, "Unknown hash algorithm"),
        (["#hashcheck v1 algorithm=sha256 mode=quick"], 1, "mode"),
        (["#hashcheck v1 algorithm=sha256 mode=full", "a.txt\tsha256"], 2, "3 tab-separated"),
        (
            ["#hashcheck v1 algorithm=sha256 mode=full", f"a.txt\tmd5\t{'0' * 64}"],
            2,
            "does not match header",
        ),
        (["#hashcheck v1 algorithm=sha256 mode=full", "a.txt\tsha256\txyz"], 2, "invalid"),
        (
            [
                "#hashcheck v1 algorithm=sha256 mode=full",
                f"a.txt\tsha256\t{'0' * 64}",
                f"a.txt\tsha256\t{'1' * 64}",
            ],
            3,
            "duplicate",
        ),
        (["#hashcheck v1 algorithm=sha256 mode=full", ""], 2, "empty line"),
        (["#hashcheck v1 algorithm=sha256 mode=full", f"bad\\q\tsha256\t{'0' * 64}"], 2, "escape"),
        (["#hashcheck v1 algorithm=SHA-256 mode=full"], 1, "must be written as .sha256."),
        (["#hashcheck v1 algorithm=sha256 mode=full", f"bad\\x4\tsha256\t{'0' * 64}"], 2, "two lowercase hex"),
        (["#hashcheck v1 algorithm=sha256 mode=full", f"bad\\x41\tsha256\t{'0' * 64}"], 2, "not an undecodable byte"),
    ],
)
def test_parse_database_rejects_malformed_lines(lines, line_no, message):
    with pytest.raises(DatabaseParseError, match=message) as excinfo:
        parse_database(lines)
    assert excinfo.value.line_no == line_no


def test_read_database_reports_file_and_line(tmp_path: Path):
    db_path = tmp_path / "hashes.txt"
    db_path.write_text(
        "#hashcheck v1 algorithm=sha256 mode=full status=complete\n"
        f"a.txt\tsha256\t{_sha256(b'a')}\n"
        "garbage\n",
        encoding="utf-8",
    )
    with pytest.raises(DatabaseParseError) as excinfo:
        read_database(db_path)
    assert excinfo.value.line_no == 3
    assert f"{db_path}:3" in str(excinfo.value)


def test_read_database_missing_file(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        read_database(tmp_path / "absent.txt")


def test_cli_scan_then_verify(tmp_path: Path, capsys):
    root = tmp_path / "root"
    db_path = tmp_path / "hashes.txt"
    report_path = tmp_path / "verify.json"
    _make_tree(root)

    with pytest.raises(SystemExit) as excinfo:
        main(["scan", "-d", str(root), "-a", "SHA-256", "-o", str(db_path), "-p"])
    assert excinfo.value.code == 0

    with pytest.raises(SystemExit) as excinfo:
        main(["verify", "-b", str(db_path), "-d", str(root), "--report", str(report_path)])
    assert excinfo.value.code == 0
    out = capsys.readouterr().out
    assert "Unchanged (5):" in out
    assert "Modified (0):" in out

    report = json.loads(report_path.read_text(encoding="utf-8"))
    assert report["mode"] == "verify"
    assert report["stats"]["unchanged"] == 5

    (root / "a.txt").unlink()
    with pytest.raises(SystemExit) as excinfo:
        main(["verify", "-b", str(db_path), "-d", str(root)])
    assert excinfo.value.code == 1
    assert "Missing (1):\n  a.txt" in capsys.readouterr().out


def test_cli_verify_mode_mismatch_exits_nonzero(tmp_path: Path):
    root = tmp_path / "root"
    db_path = tmp_path / "hashes.txt"
    _write_file(root / "a.txt", b"alpha")
    scan_files(root=root, db_path=db_path, algorithm=AlgorithmId.SHA256)

    with pytest.raises(SystemExit) as excinfo:
        main(["verify", "-b", str(db_path), "-d", str(root), "--mode", "fast"])
    assert excinfo.value.code == 1


def test_cli_hash_multiple_algorithms_and_patterns(tmp_path: Path, capsys):
    _write_file(tmp_path / "one.txt", b"hello")
    _write_file(tmp_path / "two.txt", b"world")

    with pytest.raises(SystemExit) as excinfo:
        main(["hash", "-f", str(tmp_path / "*.txt"), "-a", "sha256", "-a", "md5"])
    assert excinfo.value.code == 0

    lines = capsys.readouterr().out.splitlines()
    assert lines == [
        f"{_sha256(b'hello')}  {tmp_path / 'one.txt'}  [sha256]",
        f"{hashlib.md5(b'hello').hexdigest()}  {tmp_path / 'one.txt'}  [md5]",
        f"{_sha256(b'world')}  {tmp_path / 'two.txt'}  [sha256]",
        f"{hashlib.md5(b'world').hexdigest()}  {tmp_path / 'two.txt'}  [md5]",
    ]


def test_cli_hash_writes_output_file(tmp_path: Path):
    _write_file(tmp_path / "one.txt", b"hello")
    out_path = tmp_path / "out" / "digests.txt"

    with pytest.raises(SystemExit) as excinfo:
        main(["hash", "-f", str(tmp_path / "one.txt"), "-o", str(out_path)])
    assert excinfo.value.code == 0
    assert out_path.read_text(encoding="utf-8") == (
        f"{_sha256(b'hello')}  {tmp_path / 'one.txt'}  [sha256]\n"
    )


@pytest.mark.parametrize(
    "argv",
    [
        ["hash", "-f", "whatever.txt", "-a", "whirlpool"],
        ["hash", "-f", "definitely-missing-file.txt"],
        ["hash", "-f", "no-such-dir/*.nothing"],
    ],
)
def test_cli_errors_exit_nonzero(argv):
    with pytest.raises(SystemExit) as excinfo:
        main(argv)
    assert excinfo.value.code == 1


@pytest.mark.parametrize(
    "argv",
    [
        ["scan", "-d", ".", "-o", "hashes.txt", "-p", "--workers", "-1"],
        ["scan", "-d", ".", "-o", "hashes.txt", "-p", "--workers", "0"],
        ["verify", "-b", "hashes.txt", "-d", ".", "-p", "--workers", "0"],
        ["verify", "-b", "hashes.txt", "-d", ".", "--workers", "two"],
        ["benchmark", "-s", "0"],
    ],
)
def test_cli_rejects_counts_below_one(argv, capsys):
    with pytest.raises(SystemExit) as excinfo:
        main(argv)
    assert excinfo.value.code == 2
    err = capsys.readouterr().err
    assert "must be at least 1" in err or "invalid integer value" in err


def test_setup_logging_file_gets_debug_records(tmp_path: Path):
    log_path = tmp_path / "logs" / "run.log"
    root_logger = logging.getLogger()
    saved_handlers, saved_level = root_logger.handlers[:], root_logger.level
    root_logger.handlers = []
    try:
        setup_logging(log_path, verbose=False)
        console, file_handler = root_logger.handlers
        assert console.level == logging.INFO
        assert file_handler.level == logging.DEBUG
        root_logger.removeHandler(console)
        logging.debug("only in the file")
        logging.info("odd name x\udcff")
    finally:
        for handler in root_logger.handlers:
            handler.close()
        root_logger.handlers = saved_handlers
        root_logger.setLevel(saved_level)

    text = log_path.read_text(encoding="utf-8")
    assert "DEBUG - only in the file" in text
    assert "INFO - odd name x\\udcff" in text


def test_write_report_escapes_undecodable_paths(tmp_path: Path):
    report_path = tmp_path / "out" / "report.json"
    write_report({"new": ["raw\udcff.txt"], "mode": "verify"}, report_path)

    text = report_path.read_text(encoding="utf-8")
    assert text.endswith("}\n")
    assert "raw\\udcff.txt" in text
    assert json.loads(text) == {"mode": "verify", "new": ["raw\udcff.txt"]}


def test_cli_verify_malformed_database_exits_nonzero(tmp_path: Path):
    root = tmp_path / "root"
    root.mkdir()
    db_path = tmp_path / "hashes.txt"
    db_path.write_text("not a database\n", encoding="utf-8")

    with pytest.raises(SystemExit) as excinfo:
        main(["verify", "-b", str(db_path), "-d", str(root)])
    assert excinfo.value.code == 1


def test_cli_list(capsys):
    with pytest.raises(SystemExit) as excinfo:
        main(["list"])
    assert excinfo.value.code == 0
    out = capsys.readouterr().out
    assert "blake3" in out
    assert "sha3-256" in out
