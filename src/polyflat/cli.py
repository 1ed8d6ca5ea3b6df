# src/polyflat/cli.py
from __future__ import annotations

import argparse
import logging
import sys

from polyflat.config import Config, CorrectionOptions
from polyflat.errors import PolyflatError, UnknownFormat, UsageError
from polyflat.image_io import load_image, save_image
from polyflat.logging_config import setup_logging
from polyflat.surface_fit import correct_grid

log = logging.getLogger(__name__)


class _ArgumentParser(argparse.ArgumentParser):
    """argparse that reports bad arguments as UsageError instead of exiting 2."""

    def error(self, message):
        raise UsageError(message)


def build_parser() -> argparse.ArgumentParser:
    ap = _ArgumentParser(
        prog="polyflat",
        description="Fit a quadratic illumination surface to each colour channel and write it out.",
    )
    ap.add_argument("-input", "--input", dest="input", default="", help="input file")
    ap.add_argument("-output", "--output", dest="output", default="", help="output file")
    ap.add_argument(
        "-workers", "--workers",
        type=int,
        default=1,
        help="Solve the three channels on this many threads (default 1)."
    )
    ap.add_argument(
        "-streaming", "--streaming",
        action="store_true",
        default=False,
        help="Accumulate 6x6 normal equations instead of building the full design matrix."
    )
    ap.add_argument(
        "-strict", "--strict",
        action="store_true",
        default=False,
        help="Fail (exit 4) when the input format cannot be written back."
    )
    verbosity = ap.add_mutually_exclusive_group()
    verbosity.add_argument("-verbose", "--verbose", action="store_true", help="Debug logging")
    verbosity.add_argument("-quiet", "--quiet", action="store_true", help="Only warnings and errors")
    return ap


def _parse(parser: argparse.ArgumentParser, argv: list[str]) -> tuple[argparse.Namespace, CorrectionOptions]:
    args = parser.parse_args(argv)

    if not args.input:
        raise UsageError("missing input file name")
    if not args.output:
        raise UsageError("missing output file name")

    try:
        options = CorrectionOptions(
            workers=args.workers,
            streaming=bool(args.streaming),
            strict_format=bool(args.strict),
        )
    except ValueError as e:
        raise UsageError(str(e)) from e
    return args, options


def run(input_path: str, output_path: str, options: CorrectionOptions) -> int:
    """Load, fit, write. Returns the process exit status."""
    try:
        grid = load_image(input_path)
        output = correct_grid(grid, options)
        save_image(output, grid.format, output_path)
    except UnknownFormat as e:
        print(str(e), file=sys.stderr)
        if options.strict_format:
            return e.exit_code
        log.warning("Input format %r cannot be written back; no output produced", e.format)
        return Config.EXIT_OK
    except PolyflatError as e:
        print(str(e), file=sys.stderr)
        return e.exit_code
    return Config.EXIT_OK


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    parser = build_parser()

    try:
        args, options = _parse(parser, argv)
    except UsageError as e:
        print(str(e), file=sys.stderr)
        parser.print_help(sys.stderr)
        return e.exit_code

    if args.verbose:
        level = logging.DEBUG
    elif args.quiet:
        level = logging.WARNING
    else:
        level = logging.INFO
    setup_logging(level=level)

    return run(args.input, args.output, options)


if __name__ == "__main__":
    raise SystemExit(main())
