"""
Supported digest algorithms: name resolution, static metadata and hasher construction.
"""

import hashlib
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List

import blake3

from errors import InvalidArgumentsError


class AlgorithmId(Enum):
    """Supported digest families. The value is the name stored in databases."""
    MD5 = "md5"
    SHA1 = "sha1"
    SHA256 = "sha256"
    SHA512 = "sha512"
    SHA3_256 = "sha3-256"
    SHA3_512 = "sha3-512"
    BLAKE2B_512 = "blake2b-512"
    BLAKE2S_256 = "blake2s-256"
    BLAKE3 = "blake3"


@dataclass(frozen=True)
class AlgorithmInfo:
    """Static metadata for one algorithm."""
    algorithm: AlgorithmId
    label: str
    digest_size: int
    post_quantum: bool

    @property
    def name(self) -> str:
        return self.algorithm.value


_INFO: Dict[AlgorithmId, AlgorithmInfo] = {
    info.algorithm: info
    for info in (
        AlgorithmInfo(AlgorithmId.MD5, "MD5", 16, False),
        AlgorithmInfo(AlgorithmId.SHA1, "SHA-1", 20, False),
        AlgorithmInfo(AlgorithmId.SHA256, "SHA-256", 32, True),
        AlgorithmInfo(AlgorithmId.SHA512, "SHA-512", 64, True),
        AlgorithmInfo(AlgorithmId.SHA3_256, "SHA3-256", 32, True),
        AlgorithmInfo(AlgorithmId.SHA3_512, "SHA3-512", 64, True),
        AlgorithmInfo(AlgorithmId.BLAKE2B_512, "BLAKE2b-512", 64, True),
        AlgorithmInfo(AlgorithmId.BLAKE2S_256, "BLAKE2s-256", 32, True),
        AlgorithmInfo(AlgorithmId.BLAKE3, "BLAKE3", 32, True),
    )
}

_HASHER_FACTORIES: Dict[AlgorithmId, Callable[[], object]] = {
    AlgorithmId.MD5: hashlib.md5,
    AlgorithmId.SHA1: hashlib.sha1,
    AlgorithmId.SHA256: hashlib.sha256,
    AlgorithmId.SHA512: hashlib.sha512,
    AlgorithmId.SHA3_256: hashlib.sha3_256,
    AlgorithmId.SHA3_512: hashlib.sha3_512,
    AlgorithmId.BLAKE2B_512: lambda: hashlib.blake2b(digest_size=64),
    AlgorithmId.BLAKE2S_256: lambda: hashlib.blake2s(digest_size=32),
    AlgorithmId.BLAKE3: blake3.blake3,
}

_EXTRA_ALIASES = {
    "sha2": AlgorithmId.SHA256,
    "sha3": AlgorithmId.SHA3_256,
    "blake2b": AlgorithmId.BLAKE2B_512,
    "blake2s": AlgorithmId.BLAKE2S_256,
}


def _normalize_name(name: str) -> str:
    """Lowercase and drop separators so 'SHA-256', 'sha_256' and 'sha256' compare equal."""
    return "".join(ch for ch in name.strip().lower() if ch not in "-_ ")


_ALIASES: Dict[str, AlgorithmId] = {_normalize_name(algo.value): algo for algo in AlgorithmId}
_ALIASES.update({_normalize_name(info.label): algo for algo, info in _INFO.items()})
_ALIASES.update(_EXTRA_ALIASES)


def resolve(name: str) -> AlgorithmId:
    """Resolve a user-supplied algorithm name to an AlgorithmId."""
    algo = _ALIASES.get(_normalize_name(name))
    if algo is None:
        supported = ", ".join(a.value for a in AlgorithmId)
        raise InvalidArgumentsError(
            f"Unknown hash algorithm '{name}' (supported: {supported})"
        )
    return algo


def resolve_many(names: List[str]) -> List[AlgorithmId]:
    """Resolve several names, dropping duplicates but keeping first-seen order."""
    resolved: List[AlgorithmId] = []
    for name in names:
        algo = resolve(name)
        if algo not in resolved:
            resolved.append(algo)
    return resolved


def get_info(algo: AlgorithmId) -> AlgorithmInfo:
    return _INFO[algo]


def list_algorithms() -> List[AlgorithmInfo]:
    """All algorithms in canonical (declaration) order."""
    return [_INFO[algo] for algo in AlgorithmId]


def new_hasher(algo: AlgorithmId):
    """Return a fresh incremental hasher with update()/digest()."""
    return _HASHER_FACTORIES[algo]()


def format_algorithm_table(infos: List[AlgorithmInfo]) -> str:
    """Render the algorithm listing as a fixed-width text table."""
    header = f"{'Algorithm':<14}{'Label':<14}{'Output':>17}  Post-quantum"
    lines = [header, "-" * len(header)]
    for info in infos:
        size = f"{info.digest_size * 8} bits ({info.digest_size} B)"
        lines.append(
            f"{info.name:<14}{info.label:<14}{size:>17}  {'yes' if info.post_quantum else 'no'}"
        )
    return "\n".join(lines)
