"""
Errors raised while building or remapping source maps.
"""

from typing import Optional


class SourceMapError(Exception):
    """Base class for every source map failure of the optimize plugin."""

    def __init__(self, message: str, file_path: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.file_path = file_path

    def __str__(self) -> str:
        if self.file_path:
            return f"{self.file_path}: {self.message}"
        return self.message


class ParseError(SourceMapError):
    """An existing source map (or its JSON) is malformed.

    Recovered locally: the bad mapping is discarded.
    """


class DiffFailure(SourceMapError):
    """The before/after buffers of an artifact could not be aligned.

    Fatal for that artifact only.
    """


class ComposeInconsistency(SourceMapError):
    """A segment references a source, name or position the mapping does not have.

    Recovered by treating the offending segment as unmapped.
    """


class IOFailure(SourceMapError):
    """Reading or writing an artifact or its map failed."""

    def __init__(self, message: str, file_path: Optional[str] = None, cause: Optional[OSError] = None):
        super().__init__(message, file_path)
        self.cause = cause
