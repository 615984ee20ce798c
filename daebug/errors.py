"""Error taxonomy and typed outcomes returned at component boundaries."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

NOT_FOUND = "not_found"
INVALID_TRANSITION = "invalid_transition"
IO_ERROR = "io_error"
PARSE_ERROR = "parse_error"


class DaebugError(Exception):
    """Base class for errors raised by the log components."""


class LogParseError(DaebugError):
    """A page log could not be parsed into a document."""

    def __init__(self, message: str, *, line: Optional[int] = None) -> None:
        super().__init__(message)
        self.line = line


class LogWriteError(DaebugError):
    """Reading or persisting a page log failed after retrying."""


@dataclass(frozen=True)
class Outcome:
    """Result of a boundary operation: success or a classified failure."""

    ok: bool
    error: Optional[str] = None
    detail: str = ""

    @classmethod
    def success(cls) -> "Outcome":
        return cls(ok=True)

    @classmethod
    def failure(cls, error: str, detail: str = "") -> "Outcome":
        return cls(ok=False, error=error, detail=detail)
