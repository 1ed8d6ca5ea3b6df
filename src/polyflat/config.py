# src/polyflat/config.py
from __future__ import annotations

from dataclasses import dataclass


class Config:
    """Central configuration for polyflat."""

    # Surface model: [1, x, y, x^2, y^2, x*y]
    BASIS_SIZE = 6

    # Pixel contract: every channel is carried as 16-bit (0..65535)
    SAMPLE_MAX = 65535
    ALPHA_OPAQUE = 0xFFFF
    WIDEN_8_TO_16 = 257  # 0xAB -> 0xABAB

    # Writer
    JPEG_QUALITY = None  # None -> encoder default (75)
    TIFF_COMPRESSION = "zlib"  # deflate, TIFF tag value 8
    TIFF_PREDICTOR = True  # horizontal differencing
    WRITABLE_FORMATS = ("jpeg", "tiff")

    # Streamed normal equations: image rows folded in per block
    STREAM_BLOCK_ROWS = 256
    # Reciprocal condition number below which the 6x6 system counts as singular
    NORMAL_RCOND = 1e-12

    # Process exit status
    EXIT_OK = 0
    EXIT_USAGE = 1
    EXIT_OUTPUT = 2
    EXIT_SINGULAR = 3
    EXIT_UNKNOWN_FORMAT = 4
    EXIT_INPUT = 255


@dataclass(frozen=True)
class CorrectionOptions:
    """
    Per-run options.

    workers       -- >1 solves the three channels on a thread pool
    streaming     -- accumulate 6x6 normal equations instead of building
                     the full (W*H) x 6 design matrix
    strict_format -- an unknown output format is an error instead of a
                     warning that writes nothing
    """

    workers: int = 1
    streaming: bool = False
    strict_format: bool = False

    def __post_init__(self):
        if int(self.workers) < 1:
            raise ValueError(f"workers must be >= 1, got {self.workers}")
