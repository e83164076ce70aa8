"""Command line interface for gauche-static."""

import argparse
import logging
import pathlib
import signal
import sys

from gauche_static.builder import BuildError, build_static_executable
from gauche_static.codegen import ModuleReadError
from gauche_static.config import ConfigError, RuntimeConfig, resolve_runtime_config
from gauche_static.trace import TraceCaptureError, TraceParseError

EXIT_USAGE: int = 2
EXIT_FAILURE: int = 1


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Configure the gauche-static logger.

    :param verbose: Verbosity count (0+).
    :param quiet: Quietness count (0+).
    :returns: Configured logger.
    """

    level: int = logging.INFO
    if quiet >= 2:
        level = logging.ERROR
    elif quiet >= 1:
        level = logging.WARNING
    elif verbose >= 1:
        level = logging.DEBUG

    logger: logging.Logger = logging.getLogger("gauche_static")
    logger.setLevel(level)
    logger.propagate = False

    handler: logging.Handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def _exit_on_sigterm(signum: int, frame: object) -> None:
    """Turn SIGTERM into ``SystemExit`` so pending cleanups run."""

    raise SystemExit(128 + signum)


def _build_parser() -> argparse.ArgumentParser:
    """Create the argument parser.

    :returns: Parser with help handled by :func:`main`.
    """

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="gauche-static",
        description="Build a self-contained executable from a Gauche script.",
        add_help=False,
    )
    parser.add_argument(
        "script",
        type=pathlib.Path,
        nargs="?",
        default=None,
        help="Path to the Gauche script to build.",
    )
    parser.add_argument(
        "-o",
        "--output",
        type=pathlib.Path,
        default=None,
        help="Output path for the executable (default: script name without extension).",
    )
    parser.add_argument(
        "--gosh",
        type=str,
        default=None,
        help="Path to the gosh interpreter to trace and link against.",
    )
    parser.add_argument(
        "--cc",
        type=str,
        default=None,
        help="C compiler to use instead of the one reported by gauche-config.",
    )
    parser.add_argument(
        "--emit-source",
        type=pathlib.Path,
        default=None,
        help="Write the generated C program to this path and stop before compiling.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable verbose logging.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Reduce logging. Pass twice to only show errors.",
    )
    parser.add_argument(
        "-h",
        "--help",
        action="store_true",
        help="Show this message and exit.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Run the gauche-static CLI.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    parser: argparse.ArgumentParser = _build_parser()
    ns = parser.parse_args(argv)
    if ns.help is True or ns.script is None:
        parser.print_help(file=sys.stderr)
        return EXIT_USAGE

    logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)
    signal.signal(signal.SIGTERM, _exit_on_sigterm)

    output_path: pathlib.Path
    if ns.output is not None:
        output_path = ns.output
    else:
        output_path = pathlib.Path.cwd() / ns.script.stem

    try:
        config: RuntimeConfig = resolve_runtime_config(
            interpreter_override=ns.gosh,
            compiler_override=ns.cc,
            logger=logger,
        )
        build_static_executable(
            script=ns.script,
            output_path=output_path,
            config=config,
            logger=logger,
            emit_source=ns.emit_source,
        )
    except (ConfigError, TraceCaptureError, TraceParseError, ModuleReadError, BuildError) as e:
        logger.error(f"gauche-static: error: {e}")
        return EXIT_FAILURE
    return 0
