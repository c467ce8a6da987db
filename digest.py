"""
Digest engine: one pass over the input feeds every requested hasher.

Fast mode hashes only start/middle/end windows of large inputs. The windows
never overlap: the start and end windows keep their full size and the middle
window shrinks to fit the gap between them, so an input of up to three
windows is read in full and its fast digest equals its full digest.
"""

import os
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, List, Optional, Tuple

from algorithms import AlgorithmId, new_hasher
from common import DEFAULT_CHUNK_SIZE, FAST_WINDOW_SIZE, DigestResult


def sample_windows(size: int, window: int = FAST_WINDOW_SIZE) -> List[Tuple[int, int]]:
    """Return the (offset, length) byte ranges fast mode hashes, in hashing order."""
    if window <= 0:
        raise ValueError(f"window must be positive, got {window}")
    if size <= 0:
        return []
    if size <= window:
        return [(0, size)]

    end_offset = max(window, size - window)
    middle_offset = size // 2 - window // 2
    middle_start = max(window, middle_offset)
    middle_end = min(end_offset, middle_offset + window)

    windows = [(0, window)]
    if middle_end > middle_start:
        windows.append((middle_start, middle_end - middle_start))
    windows.append((end_offset, size - end_offset))
    return windows


def sampled_length(size: int, window: int = FAST_WINDOW_SIZE) -> int:
    """Number of bytes fast mode reads from an input of the given size."""
    return sum(length for _, length in sample_windows(size, window))


def _feed(
    hashers: Iterable[object],
    stream: BinaryIO,
    length: Optional[int],
    chunk_size: int,
) -> None:
    """Read length bytes (or to EOF when None) and update every hasher with each chunk."""
    hashers = list(hashers)
    if length is None:
        for chunk in iter(lambda: stream.read(chunk_size), b''):
            for hasher in hashers:
                hasher.update(chunk)
        return

    remaining = length
    while remaining > 0:
        chunk = stream.read(min(chunk_size, remaining))
        if not chunk:
            raise OSError(f"Unexpected end of input: {remaining} bytes short")
        for hasher in hashers:
            hasher.update(chunk)
        remaining -= len(chunk)


def digest_stream(
    algorithms: Iterable[AlgorithmId],
    stream: BinaryIO,
    fast: bool = False,
    window: int = FAST_WINDOW_SIZE,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> Dict[AlgorithmId, DigestResult]:
    """Compute digests of stream for every requested algorithm.

    Fast mode needs a seekable stream and hashes the whole stream's sample
    windows. Any OSError propagates; no partial results are returned.
    """
    hashers = {algo: new_hasher(algo) for algo in algorithms}
    if not hashers:
        raise ValueError("At least one algorithm is required")

    if fast:
        size = stream.seek(0, os.SEEK_END)
        for offset, length in sample_windows(size, window):
            stream.seek(offset)
            _feed(hashers.values(), stream, length, chunk_size)
    else:
        _feed(hashers.values(), stream, None, chunk_size)

    return {algo: DigestResult(algo, hasher.digest()) for algo, hasher in hashers.items()}


def digest_file(
    file_path: Path,
    algorithms: Iterable[AlgorithmId],
    fast: bool = False,
    window: int = FAST_WINDOW_SIZE,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> Tuple[int, bool, Dict[AlgorithmId, DigestResult]]:
    """Digest one file. Returns (size, sampled, digests)."""
    with Path(file_path).open('rb') as handle:
        size = os.fstat(handle.fileno()).st_size
        digests = digest_stream(algorithms, handle, fast=fast, window=window, chunk_size=chunk_size)
    sampled = fast and sampled_length(size, window) < size
    return size, sampled, digests
