"""Command-line interface for the dependency probe."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace
from enum import IntEnum
from pathlib import Path
from typing import Optional

from scripts.depprobe import __version__
from scripts.depprobe.catalog import InputError
from scripts.depprobe.config import (
    ACCUMULATION_MODES,
    DEFAULT_CONFIG_PATH,
    ConfigError,
    ProbeConfig,
    load_config,
    split_folders,
    validate_config,
)
from scripts.depprobe.runner import execute
from scripts.depprobe.watcher import EXIT_INTERRUPTED


class ExitCode(IntEnum):
    """Process exit codes."""

    SUCCESS = 0
    CONFIG_ERROR = 1
    INTERRUPTED = EXIT_INTERRUPTED
    INPUT_ERROR = 3


def _get_config(config_path: Optional[str]) -> ProbeConfig:
    """Load config from an explicit path, else ./depprobe.yaml, else defaults."""
    if config_path:
        return load_config(config_path)
    return load_config(Path.cwd() / DEFAULT_CONFIG_PATH)


def _folders(values: Optional[list[str]]) -> list[str]:
    folders: list[str] = []
    for value in values or []:
        folders.extend(split_folders(value))
    return folders


def apply_overrides(config: ProbeConfig, args: argparse.Namespace) -> ProbeConfig:
    """Merge command-line values over the file configuration."""
    overrides: dict = {}
    if args.json:
        overrides["catalog"] = args.json
    if args.cache:
        overrides["cache"] = args.cache
    for attr in ("hardware", "tools", "built_in_libraries", "libraries"):
        folders = _folders(getattr(args, attr))
        if folders:
            overrides[attr] = folders
    if args.build_path:
        overrides["build_path"] = args.build_path
    if args.builder:
        overrides["builder"] = args.builder
    if args.timeout is not None:
        overrides["probe_timeout"] = args.timeout
    if args.accumulation:
        overrides["accumulation"] = args.accumulation
    if args.force:
        overrides["force"] = True
    if args.examples:
        overrides["examples"] = True
    if args.record_local_dependencies:
        overrides["record_local_dependencies"] = True
    if args.verbose:
        overrides["verbose"] = True
    return replace(config, **overrides)


def _configure_logging(verbose: bool, quiet: bool) -> None:
    if verbose and quiet:
        # contradictory flags cancel out
        verbose = quiet = False
    level = logging.DEBUG if verbose else logging.ERROR if quiet else logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="depprobe",
        description="Discover library dependencies by compiling a probe sketch against each library",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", "-c", help=f"Path to config file (default: {DEFAULT_CONFIG_PATH})")
    parser.add_argument("--json", help="Path of the library_index.json catalog to update")
    parser.add_argument("--cache", help="Path of the processed-libraries cache (default: cached_results.json)")
    parser.add_argument(
        "--hardware",
        action="append",
        help="A 'hardware' folder. Can be added multiple times",
    )
    parser.add_argument(
        "--tools",
        action="append",
        help="A 'tools' folder. Can be added multiple times",
    )
    parser.add_argument(
        "--built-in-libraries",
        dest="built_in_libraries",
        action="append",
        help="A built-in 'libraries' folder. These are low priority libraries",
    )
    parser.add_argument(
        "--libraries",
        action="append",
        help="A 'libraries' folder holding library-manager libraries",
    )
    parser.add_argument("--build-path", dest="build_path", help="Build path")
    parser.add_argument("--builder", help="Build pipeline executable (default: arduino-builder)")
    parser.add_argument("--timeout", type=float, help="Seconds before a single build is abandoned")
    parser.add_argument(
        "--accumulation",
        choices=ACCUMULATION_MODES,
        help="Reset discovered dependencies per library, or keep them for the session",
    )
    parser.add_argument("--force", action="store_true", help="Rebuild all dependencies from scratch")
    parser.add_argument("--examples", action="store_true", help="Also compile all the bundled examples")
    parser.add_argument(
        "--record-local-dependencies",
        dest="record_local_dependencies",
        action="store_true",
        help="Also store core/built-in dependencies in the catalog",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Print debugging output")
    parser.add_argument("--quiet", "-q", action="store_true", help="Only print errors")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = apply_overrides(_get_config(args.config), args)
        validate_config(config, args.config)
    except ConfigError as e:
        print(json.dumps(e.to_json()), file=sys.stderr)
        return ExitCode.CONFIG_ERROR

    _configure_logging(config.verbose, args.quiet)

    try:
        execute(config)
    except InputError as e:
        print(json.dumps(e.to_json()), file=sys.stderr)
        return ExitCode.INPUT_ERROR

    return ExitCode.SUCCESS


if __name__ == "__main__":
    sys.exit(main())
