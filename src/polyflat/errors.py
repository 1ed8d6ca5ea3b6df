# src/polyflat/errors.py
"""
Exception taxonomy for polyflat.

Every error carries the process exit status the CLI reports for it, so the
command line can tell read-side failures (255) from write-side ones (2).
"""
from __future__ import annotations

from .config import Config


class PolyflatError(Exception):
    """Base class for all polyflat failures."""

    exit_code: int = 1


class UsageError(PolyflatError):
    exit_code = Config.EXIT_USAGE


class InputReadError(PolyflatError, OSError):
    """The input path could not be opened or read."""

    exit_code = Config.EXIT_INPUT


class DecodeError(PolyflatError):
    """Input bytes are not an image we can decode into 16-bit RGB."""

    exit_code = Config.EXIT_INPUT


class OutputWriteError(PolyflatError, OSError):
    """The output path could not be created or written."""

    exit_code = Config.EXIT_OUTPUT


class SingularSystem(PolyflatError, ArithmeticError):
    """
    The least-squares system has no unique solution.

    Raised when the design matrix has fewer than six independent columns,
    e.g. an image only one or two pixels wide or tall.
    """

    exit_code = Config.EXIT_SINGULAR

    def __init__(self, message: str, *, rank: int | None = None):
        super().__init__(message)
        self.rank = rank


class UnknownFormat(PolyflatError, ValueError):
    """The writer has no encoder for the requested format tag."""

    exit_code = Config.EXIT_UNKNOWN_FORMAT

    def __init__(self, fmt: str):
        super().__init__("unknown image format")
        self.format = fmt
