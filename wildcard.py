"""
Wildcard expansion for file arguments ('*', '?', '[...]', and '**' across directories).
"""

import glob
from pathlib import Path
from typing import List

from errors import InvalidArgumentsError


def contains_wildcard(s: str) -> bool:
    return any(ch in s for ch in "*?[")


def _check_brackets(pattern: str) -> None:
    in_bracket = False
    for ch in pattern:
        if ch == "[" and not in_bracket:
            in_bracket = True
        elif ch == "]" and in_bracket:
            in_bracket = False
    if in_bracket:
        raise InvalidArgumentsError(f"Invalid glob pattern '{pattern}': unclosed '['")


def expand_pattern(pattern: str) -> List[Path]:
    """Expand a pattern into matching file paths, sorted alphabetically.

    A pattern without wildcard characters is returned unchanged, whether or
    not it exists. A wildcard pattern that matches nothing is an error.
    """
    if not contains_wildcard(pattern):
        return [Path(pattern)]

    _check_brackets(pattern)
    matches = sorted(Path(p) for p in glob.glob(pattern, recursive=True) if Path(p).is_file())
    if not matches:
        raise InvalidArgumentsError(f"No files match pattern '{pattern}'")
    return matches


def expand_patterns(patterns: List[str]) -> List[Path]:
    """Expand several patterns, keeping the first occurrence of each path."""
    expanded: List[Path] = []
    seen = set()
    for pattern in patterns:
        for path in expand_pattern(pattern):
            if path not in seen:
                seen.add(path)
                expanded.append(path)
    return expanded
