"""
Exception types raised by hashcheck. I/O failures are plain OSError.
"""

from typing import Optional


class HashCheckError(Exception):
    """Base class for hashcheck errors that abort a command."""


class InvalidArgumentsError(HashCheckError):
    """Bad algorithm name, malformed pattern, or a pattern with no matches."""


class DatabaseParseError(HashCheckError):
    """A hash database could not be parsed."""

    def __init__(self, line_no: int, message: str, source: Optional[str] = None) -> None:
        self.line_no = line_no
        self.source = source
        self.message = message
        where = f"{source}:{line_no}" if source else f"line {line_no}"
        super().__init__(f"{where}: {message}")


class ModeMismatchError(HashCheckError):
    """A fast-mode digest was compared against a full-mode digest (or vice versa)."""
