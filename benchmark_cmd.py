"""
Benchmark command: digest throughput per algorithm on synthetic data.
"""

import io
import logging
import time
from typing import Dict, Iterable, Optional

from algorithms import AlgorithmId, get_info
from common import DEFAULT_BENCHMARK_MB
from digest import digest_stream
from errors import InvalidArgumentsError


MIB = 1024 * 1024
BENCHMARK_PATTERN = b"The quick brown fox jumps over the lazy dog. "


def generate_test_data(size: int) -> bytes:
    """Repeat BENCHMARK_PATTERN up to exactly size bytes."""
    repeats = size // len(BENCHMARK_PATTERN) + 1
    return (BENCHMARK_PATTERN * repeats)[:size]


def measure_throughput(algo: AlgorithmId, data: bytes) -> Optional[float]:
    """MB/s for one full digest of data, or None if the timer saw zero elapsed time."""
    start = time.perf_counter()
    digest_stream([algo], io.BytesIO(data))
    elapsed = time.perf_counter() - start
    if elapsed <= 0:
        return None
    return (len(data) / MIB) / elapsed


def run_benchmark(
    size_mb: int = DEFAULT_BENCHMARK_MB,
    algorithms: Optional[Iterable[AlgorithmId]] = None,
) -> Dict[AlgorithmId, Optional[float]]:
    """Time every algorithm over the same size_mb buffer."""
    if size_mb < 1:
        raise InvalidArgumentsError(f"Benchmark size must be at least 1 MB, got {size_mb}")
    algos = list(algorithms) if algorithms is not None else list(AlgorithmId)

    logging.info(f"Generating {size_mb} MB of benchmark data")
    data = generate_test_data(size_mb * MIB)

    results: Dict[AlgorithmId, Optional[float]] = {}
    for algo in algos:
        results[algo] = measure_throughput(algo, data)
        logging.debug(f"{algo.value}: {results[algo]}")
    return results


def format_benchmark(results: Dict[AlgorithmId, Optional[float]], size_mb: int) -> str:
    lines = [f"Benchmark ({size_mb} MB per algorithm)", f"{'Algorithm':<14}{'Throughput':>16}"]
    lines.append("-" * len(lines[1]))
    for algo, throughput in results.items():
        shown = "unmeasured" if throughput is None else f"{throughput:.2f} MB/s"
        lines.append(f"{get_info(algo).label:<14}{shown:>16}")
    return "\n".join(lines)
