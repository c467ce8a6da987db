#!/usr/bin/env python3
"""
hashcheck – cryptographic hashing and directory integrity verification.

Commands:
  hash       Digest one or more files (wildcards allowed) with one or more algorithms.
  scan       Hash every file under a directory and write a plain-text hash database.
  verify     Re-hash a directory and report unchanged, modified, missing and new files.
  benchmark  Measure digest throughput of every algorithm.
  list       Show supported algorithms.

Use --help for full options and examples.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from algorithms import format_algorithm_table, list_algorithms, resolve, resolve_many
from benchmark_cmd import format_benchmark, run_benchmark
from common import (
    DEFAULT_ALGORITHM,
    DEFAULT_BENCHMARK_MB,
    printable_path,
    setup_logging,
    write_report,
)
from digest import digest_file
from errors import HashCheckError
from scan_cmd import scan_files
from verify_cmd import format_verification, verify_files
from wildcard import expand_patterns


def _add_logging_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--log',
        type=Path,
        help='Write log output to this file',
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose (debug) logging',
    )


def positive_int(value: str) -> int:
    """argparse type for counts that must be at least 1."""
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer value: '{value}'")
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='hashcheck',
        description='Compute cryptographic hashes, scan directories into a hash '
                    'database, and verify directories against it.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  hashcheck hash -f file.txt -a sha256
  hashcheck hash -f "*.iso" -a sha256 -a blake3 --fast
  hashcheck scan -d /path/to/dir -a sha256 -o hashes.txt
  hashcheck scan -d /path/to/dir -o hashes.txt --parallel --report scan.json
  hashcheck verify -b hashes.txt -d /path/to/dir
  hashcheck benchmark -s 50
  hashcheck list
        """,
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    hash_parser = subparsers.add_parser('hash', help='Compute hash(es) for files')
    hash_parser.add_argument(
        '-f', '--file',
        dest='files',
        action='append',
        required=True,
        help='File or wildcard pattern to hash. Repeatable.',
    )
    hash_parser.add_argument(
        '-a', '--algorithm',
        dest='algorithms',
        action='append',
        help=f'Hash algorithm; repeat for several in one pass (default: {DEFAULT_ALGORITHM})',
    )
    hash_parser.add_argument(
        '-o', '--output',
        type=Path,
        help='Write digests to this file instead of stdout',
    )
    hash_parser.add_argument(
        '-F', '--fast',
        action='store_true',
        help='Fast mode: hash only the first, middle and last 100 MB of large files',
    )
    _add_logging_args(hash_parser)

    scan_parser = subparsers.add_parser('scan', help='Scan a directory into a hash database')
    scan_parser.add_argument(
        '-d', '--directory',
        type=Path,
        required=True,
        help='Directory to scan recursively',
    )
    scan_parser.add_argument(
        '-a', '--algorithm',
        default=DEFAULT_ALGORITHM,
        help=f'Hash algorithm (default: {DEFAULT_ALGORITHM})',
    )
    scan_parser.add_argument(
        '-o', '--output',
        type=Path,
        required=True,
        help='Hash database file to write',
    )
    scan_parser.add_argument(
        '-p', '--parallel',
        action='store_true',
        help='Hash files on a pool of worker threads',
    )
    scan_parser.add_argument(
        '-F', '--fast',
        action='store_true',
        help='Fast mode: hash only the first, middle and last 100 MB of large files',
    )
    scan_parser.add_argument(
        '--workers',
        type=positive_int,
        help='Worker threads for --parallel (default: CPU count)',
    )
    scan_parser.add_argument(
        '--report',
        type=Path,
        help='Also write a JSON report to this path',
    )
    _add_logging_args(scan_parser)

    verify_parser = subparsers.add_parser('verify', help='Verify a directory against a hash database')
    verify_parser.add_argument(
        '-b', '--database',
        type=Path,
        required=True,
        help='Hash database file',
    )
    verify_parser.add_argument(
        '-d', '--directory',
        type=Path,
        required=True,
        help='Directory to verify',
    )
    verify_parser.add_argument(
        '-p', '--parallel',
        action='store_true',
        help='Hash files on a pool of worker threads',
    )
    verify_parser.add_argument(
        '--mode',
        choices=('fast', 'full'),
        help='Expected hashing mode; fail if the database was written in the other mode',
    )
    verify_parser.add_argument(
        '--workers',
        type=positive_int,
        help='Worker threads for --parallel (default: CPU count)',
    )
    verify_parser.add_argument(
        '--report',
        type=Path,
        help='Also write a JSON report to this path',
    )
    _add_logging_args(verify_parser)

    benchmark_parser = subparsers.add_parser('benchmark', help='Benchmark hash algorithms')
    benchmark_parser.add_argument(
        '-s', '--size',
        dest='size_mb',
        type=positive_int,
        default=DEFAULT_BENCHMARK_MB,
        help=f'Size of test data in MB (default: {DEFAULT_BENCHMARK_MB})',
    )
    _add_logging_args(benchmark_parser)

    list_parser = subparsers.add_parser('list', help='List available hash algorithms')
    _add_logging_args(list_parser)

    return parser


def _check_directory(path: Path) -> Path:
    root = path.resolve()
    if not root.exists():
        logging.error(f"Directory does not exist: {root}")
        sys.exit(1)
    if not root.is_dir():
        logging.error(f"Path is not a directory: {root}")
        sys.exit(1)
    return root


def digest_lines(patterns: List[str], algorithm_names: List[str], fast: bool = False) -> List[str]:
    """One '<hex>  <path>  [<algorithm>]' line per file and algorithm, in file order."""
    algorithms = resolve_many(algorithm_names or [DEFAULT_ALGORITHM])
    lines: List[str] = []
    for file_path in expand_patterns(patterns):
        _, sampled, digests = digest_file(file_path, algorithms, fast=fast)
        for algo in algorithms:
            tag = f"{algo.value}, fast" if sampled else algo.value
            lines.append(f"{digests[algo].hexdigest}  {printable_path(file_path)}  [{tag}]")
    return lines


def run_hash(args: argparse.Namespace) -> int:
    lines = digest_lines(args.files, args.algorithms, fast=args.fast)
    text = "".join(f"{line}\n" for line in lines)
    if args.output:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_text(text, encoding='utf-8')
        logging.info(f"Digests written to {args.output}")
    else:
        sys.stdout.write(text)
    return 0


def run_scan(args: argparse.Namespace) -> int:
    root = _check_directory(args.directory)
    algorithm = resolve(args.algorithm)
    report = scan_files(
        root=root,
        db_path=args.output,
        algorithm=algorithm,
        fast=args.fast,
        parallel=args.parallel,
        workers=args.workers,
        report_path=args.report,
    )
    if args.report:
        write_report(report, args.report)
    return 1 if report["status"] == "partial" else 0


def run_verify(args: argparse.Namespace) -> int:
    root = _check_directory(args.directory)
    fast = None if args.mode is None else args.mode == 'fast'
    result, report = verify_files(
        root=root,
        db_path=args.database,
        parallel=args.parallel,
        workers=args.workers,
        fast=fast,
        report_path=args.report,
    )
    print(format_verification(result))
    if args.report:
        write_report(report, args.report)
    if result.modified or result.missing or result.errors:
        return 1
    return 0


def run_benchmark_cmd(args: argparse.Namespace) -> int:
    results = run_benchmark(args.size_mb)
    print(format_benchmark(results, args.size_mb))
    return 0


def run_list(args: argparse.Namespace) -> int:
    print(format_algorithm_table(list_algorithms()))
    return 0


COMMANDS = {
    'hash': run_hash,
    'scan': run_scan,
    'verify': run_verify,
    'benchmark': run_benchmark_cmd,
    'list': run_list,
}


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the script."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(getattr(args, 'log', None), getattr(args, 'verbose', False))

    try:
        code = COMMANDS[args.command](args)
    except HashCheckError as exc:
        logging.error(str(exc))
        sys.exit(1)
    except OSError as exc:
        logging.error(f"I/O error: {exc}")
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
