"""Command line entry point: ``mocha-web [options] <glob ...>``."""

from __future__ import annotations

import argparse
import asyncio
import glob
import logging
import os
import sys
from typing import Any, Sequence

import structlog

from . import __version__
from .config import RunConfig, find_up, load_config
from .errors import BuildFailedError, MochaWebError, NoTestFilesError
from .runner import run_tests

logger = structlog.get_logger(__name__)

ESBUILD_CONFIG_NAMES = ["esbuild.config.js", "esbuild.config.mjs", "esbuild.config.cjs"]


def configure_logging(level: str | None = None) -> None:
    level_name = (level or os.getenv("LOG_LEVEL") or "INFO").strip().upper()
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level_name, logging.INFO)),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mocha-web",
        usage="%(prog)s [options] <glob ...>",
        description="Run mocha tests in a real browser, bundled with esbuild.",
    )
    parser.add_argument("globs", nargs="*", metavar="glob", help="test file globs")
    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-c", "--esbuild-config", metavar="<config file>", help="esbuild configuration file to bundle with")
    parser.add_argument(
        "-w", "--watch", action="store_true", help="never-closed, open browser, open-devtools, html-reporter session"
    )
    parser.add_argument("-l", "--list-files", action="store_true", help="list found test files")
    parser.add_argument("-t", "--timeout", type=int, metavar="<ms>", help="mocha timeout in ms (default: 2000)")
    parser.add_argument("-p", "--port", type=int, metavar="<number>", help="port to start the http server with (default: 3000)")
    parser.add_argument("-g", "--grep", metavar="<regexp>", help="regular expression to match test title")
    parser.add_argument(
        "-i", "--iterate", type=int, metavar="<number>", help="repeat each test a few times, regardless of outcome"
    )
    parser.add_argument("--reporter", metavar="<spec/html/dot/...>", help='mocha reporter to use (default: "spec")')
    parser.add_argument("--ui", metavar="<bdd|tdd|qunit|exports>", help="mocha user interface (default: bdd)")
    parser.add_argument("--config", metavar="<yaml file>", help="mocha-web YAML configuration file")
    return parser


def find_test_files(patterns: Sequence[str]) -> list[str]:
    """Expand globs into absolute, normalized paths, keeping argument order."""
    found: list[str] = []
    for pattern in patterns:
        for match in sorted(glob.glob(pattern, recursive=True)):
            if os.path.isfile(match):
                found.append(os.path.normpath(os.path.abspath(match)))
    return found


def build_run_config(args: argparse.Namespace) -> RunConfig:
    esbuild_config = args.esbuild_config or find_up(ESBUILD_CONFIG_NAMES)
    overrides: dict[str, Any] = {
        "preferred_port": args.port,
        "timeout": args.timeout,
        "grep": args.grep,
        "repeat": args.iterate,
        "ui": args.ui,
        "reporter": args.reporter,
        "bundler_config_path": str(esbuild_config) if esbuild_config else None,
        "keep_open": args.watch or None,
    }
    if args.watch:
        overrides["launch_options"] = {"headless": False, "args": ["--auto-open-devtools-for-tabs"]}
        overrides["context_options"] = {"no_viewport": True}
        if not args.reporter:
            overrides["reporter"] = "html"
    return load_config(args.config, **overrides)


async def _amain(args: argparse.Namespace) -> int:
    test_files = find_test_files(args.globs)
    if not test_files:
        raise NoTestFilesError()

    logger.info(f"Found {len(test_files)} test files in {os.getcwd()}")
    if args.list_files:
        for test_file in test_files:
            logger.info(f"- {test_file}")

    config = build_run_config(args)
    session = await run_tests(test_files, config)
    if session is not None:
        logger.info("Watching for changes; close the browser to exit", url=session.url)
        try:
            await session.wait_closed()
        finally:
            await session.close()
    return 0


def main(argv: Sequence[str] | None = None) -> None:
    configure_logging()
    args = build_parser().parse_args(argv)
    try:
        rc = asyncio.run(_amain(args))
    except KeyboardInterrupt:
        rc = 130
    except BuildFailedError as exc:
        for message in exc.messages:
            sys.stderr.write(message.format() + "\n")
        logger.error("Build failed", errors=len(exc.messages))
        rc = 1
    except MochaWebError as exc:
        logger.error(str(exc))
        rc = 1
    except Exception:
        logger.exception("Unexpected error")
        rc = 1
    sys.exit(int(rc))


if __name__ == "__main__":
    main()
