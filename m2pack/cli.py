"""Command line front end: list and extract Medieval II .pack archives."""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path

from m2pack import __version__
from m2pack.archive import ArchiveIndex, open_archive
from m2pack.errors import CorruptEntryError, DecompressionError, FormatError, InputError, PackError
from m2pack.extract import ExtractOptions, ExtractSummary, extract_archive


EXIT_OK = 0
EXIT_INPUT_ERROR = 10
EXIT_FORMAT_ERROR = 11
EXIT_IO_ERROR = 12
EXIT_CODEC_ERROR = 13

DEFAULT_VERBOSITY = 2
VERBOSITY_LEVELS = [logging.ERROR, logging.WARNING, logging.INFO, logging.DEBUG]


def configure_logging(verbosity: int) -> logging.Logger:
    log = logging.getLogger("m2pack")
    for handler in list(log.handlers):
        log.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    log.addHandler(handler)
    log.setLevel(VERBOSITY_LEVELS[min(max(verbosity, 0), len(VERBOSITY_LEVELS) - 1)])
    return log


def report_failure(log: logging.Logger, exc: Exception, archive: Path | None = None) -> int:
    if isinstance(exc, InputError):
        code = EXIT_INPUT_ERROR
    elif isinstance(exc, DecompressionError):
        code = EXIT_CODEC_ERROR
    elif isinstance(exc, (FormatError, CorruptEntryError)):
        code = EXIT_FORMAT_ERROR
    else:
        code = EXIT_IO_ERROR

    # Codec errors already name their archive.
    if archive is not None and not isinstance(exc, DecompressionError):
        log.error("%s: %s", archive.name, exc)
    else:
        log.error("%s", exc)
    return code


def check_inputs(packs: list[Path], dest: Path | None = None) -> None:
    for pack in packs:
        if not pack.exists():
            raise InputError(f"Input does not exist: {pack}")
        if not pack.is_file():
            raise InputError(f"Input is not a file: {pack}")
    if dest is not None and dest.exists() and not dest.is_dir():
        raise InputError(f"Output path exists and is not a directory: {dest}")


def format_listing(index: ArchiveIndex) -> list[str]:
    total = len(index)
    return [f"{index.name}: {entry.index + 1}/{total} ==> {entry.path}" for entry in index]


def cmd_list(args: argparse.Namespace, log: logging.Logger) -> int:
    check_inputs(args.packs)
    for path in args.packs:
        try:
            index = open_archive(path, log=log)
        except (PackError, OSError) as exc:
            return report_failure(log, exc, path)
        for line in format_listing(index):
            print(line)
    return EXIT_OK


def write_summary_json(path: Path, summaries: list[ExtractSummary]) -> None:
    out_json = json.dumps([summary.__dict__ for summary in summaries], indent=2)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(out_json, encoding="utf-8")


def cmd_extract(args: argparse.Namespace, log: logging.Logger) -> int:
    started = time.perf_counter()
    check_inputs(args.packs, dest=args.dest)

    # Parse everything up front so a bad archive aborts before any output.
    parsed: list[tuple[Path, ArchiveIndex]] = []
    for path in args.packs:
        try:
            parsed.append((path, open_archive(path, log=log)))
        except (PackError, OSError) as exc:
            return report_failure(log, exc, path)

    if not args.dest.exists():
        log.debug("Creating output directory: %s", args.dest)
        try:
            args.dest.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            return report_failure(log, exc)

    options = ExtractOptions(dest=args.dest, filter=args.filter, workers=args.parallel)
    summaries: list[ExtractSummary] = []
    for path, index in parsed:
        log.info("Extracting files from %s", index.name)
        try:
            summaries.append(extract_archive(index, path, options, log=log))
        except (PackError, OSError) as exc:
            return report_failure(log, exc, path)

    if args.summary_json:
        try:
            write_summary_json(args.summary_json, summaries)
        except OSError as exc:
            return report_failure(log, exc)

    log.info("==> Done! (%.3fs)", time.perf_counter() - started)
    return EXIT_OK


def positive_int(text: str) -> int:
    value = int(text)
    if value < 1:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {text}")
    return value


def build_parser() -> argparse.ArgumentParser:
    verbosity_help = "Log verbosity: 0 errors, 1 warnings, 2 progress, 3 debug."
    parser = argparse.ArgumentParser(prog="m2pack", description="Manipulate Medieval II: Total War .pack files.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--verbosity", type=int, metavar="LEVEL", default=DEFAULT_VERBOSITY, help=verbosity_help)

    # Lets --verbosity follow the subcommand too without clobbering the global value.
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--verbosity", type=int, metavar="LEVEL", default=argparse.SUPPRESS, help=verbosity_help)

    sub = parser.add_subparsers(dest="command", required=True)

    extract = sub.add_parser("extract", parents=[common], help="Extract files from pack")
    extract.add_argument("--dest", type=Path, default=Path("."), help="Output directory.")
    extract.add_argument("--filter", metavar="GLOB", default=None, help="Pattern for files to be extracted.")
    extract.add_argument("--parallel", type=positive_int, metavar="N", default=1, help="Number of extraction threads.")
    extract.add_argument("--summary-json", type=Path, default=None, help="Optional path for JSON summary output.")
    extract.add_argument("packs", metavar="PACK", type=Path, nargs="+", help="Pack files to unpack.")
    extract.set_defaults(func=cmd_extract)

    list_cmd = sub.add_parser("list", parents=[common], help="List files in pack")
    list_cmd.add_argument("packs", metavar="PACK", type=Path, nargs="+", help="Pack files to list.")
    list_cmd.set_defaults(func=cmd_list)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    log = configure_logging(args.verbosity)
    try:
        return args.func(args, log)
    except InputError as exc:
        return report_failure(log, exc)


if __name__ == "__main__":
    raise SystemExit(main())
