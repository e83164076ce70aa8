"""Static executable builder.

This module implements the whole "script in, executable out" pipeline:

- It runs ``gosh`` once over the script with load tracing enabled and parses
  the trace into module and native extension loads.
- It rebuilds the load tree from the trace's indentation and orders the
  modules so that every module comes after everything it loaded.
- It generates a C program embedding those modules, compiles it against
  libgauche, and hands the result to ``statifier`` together with every shared
  library the image needs preloaded.

All intermediates live in a per-invocation temporary directory and the output
only appears once every step has succeeded.
"""

import contextlib
import logging
import os
import pathlib
import re
import subprocess
import tempfile
import time
from typing import Iterator, Sequence

from gauche_static.codegen import generate_program, write_program
from gauche_static.config import RuntimeConfig
from gauche_static.deps import LoadNode, build_forest, linearize, walk
from gauche_static.resolver import match_native_extension
from gauche_static.trace import LoadEvent, capture_trace, module_entries, native_extensions, parse_trace


class BuildError(RuntimeError):
    """Raised when an external build step fails."""


_LDD_RE: re.Pattern[str] = re.compile(r"^\s*(?P<name>\S+)\s+=>\s+(?P<path>.*?)(?:\s+\(0x[0-9a-fA-F]+\))?\s*$")
_NATIVE_SUFFIXES: tuple[str, ...] = (".so",)


def build_static_executable(
    *,
    script: pathlib.Path,
    output_path: pathlib.Path,
    config: RuntimeConfig,
    logger: logging.Logger | None = None,
    work_dir: pathlib.Path | None = None,
    emit_source: pathlib.Path | None = None,
) -> None:
    """Build a self-contained executable from a Gauche script.

    :param script: Script to build.
    :param output_path: Final executable path.
    :param config: Runtime configuration.
    :param logger: Optional logger for realtime build progress output.
    :param work_dir: Optional parent directory for the temporary build directory.
    :param emit_source: If given, write the generated C source here and stop
        before compiling.
    :raises BuildError: If an input is missing, the output would replace the
        script, or an external step fails.
    :raises TraceParseError: If the load trace is malformed.
    :raises ModuleReadError: If a traced module cannot be read.
    """

    if logger is None:
        logger = logging.getLogger("gauche_static")

    if script.is_file() is False:
        raise BuildError(f"Script does not exist: {script}")
    target: pathlib.Path = output_path if emit_source is None else emit_source
    if target.resolve() == script.resolve():
        raise BuildError(f"Refusing to overwrite the script {script}; choose another output path with -o.")

    t_total0: float = time.perf_counter()
    logger.info(f"gauche-static: script={script}")
    logger.info(f"gauche-static: output={output_path}")
    logger.info(f"gauche-static: interpreter={config.interpreter}")

    lines: list[str] = capture_trace(script=script, config=config, logger=logger)
    events: list[LoadEvent] = parse_trace(lines)

    forest: list[LoadNode] = build_forest(module_entries(events))
    if logger.isEnabledFor(logging.DEBUG) is True:
        for level, node in walk(forest):
            logger.debug(f"gauche-static: load tree {'  ' * level}{node.identifier}")

    order: list[str] = linearize(forest)
    natives: list[str] = native_extensions(events)
    logger.info(f"gauche-static: {len(order)} modules, {len(natives)} native extensions")
    _warn_shadowed_extensions(natives, logger)

    source: str = generate_program(order, natives, logger=logger)

    if emit_source is not None:
        emit_source.parent.mkdir(parents=True, exist_ok=True)
        write_program(emit_source, source)
        logger.info(f"gauche-static: wrote {emit_source}; skipping compile and link")
        return

    work_parent: str | None = None if work_dir is None else str(work_dir)
    with tempfile.TemporaryDirectory(prefix="gauche_static_build_", dir=work_parent) as td:
        build_root: pathlib.Path = pathlib.Path(td)
        source_path: pathlib.Path = build_root / "program.c"
        binary_path: pathlib.Path = build_root / "program"

        write_program(source_path, source)

        t_cc0: float = time.perf_counter()
        _compile(source_path=source_path, binary_path=binary_path, config=config, logger=logger)
        t_cc1: float = time.perf_counter()
        logger.info(f"gauche-static: compiled in {t_cc1 - t_cc0:.2f}s")

        host_libs: list[str] = list_shared_libraries(
            binary=pathlib.Path(config.interpreter),
            config=config,
            logger=logger,
        )
        preload: list[str] = _preload_set(host_libs, natives)
        logger.info(f"gauche-static: preloading {len(preload)} shared objects")

        output_path.parent.mkdir(parents=True, exist_ok=True)
        t_st0: float = time.perf_counter()
        with _pending_output(output_path) as staged:
            _statify(
                binary_path=binary_path,
                staged_path=staged,
                preload=preload,
                config=config,
                logger=logger,
            )
            # mkstemp creates the file 0600.
            staged.chmod(0o755)
            staged.replace(output_path)
        t_st1: float = time.perf_counter()
        out_size: int = output_path.stat().st_size
        logger.info(
            f"gauche-static: wrote {output_path} ({out_size / (1024 * 1024):.1f} MiB) in {t_st1 - t_st0:.2f}s"
        )

    t_total1: float = time.perf_counter()
    logger.info(f"gauche-static: done in {t_total1 - t_total0:.2f}s")


@contextlib.contextmanager
def _pending_output(output_path: pathlib.Path) -> Iterator[pathlib.Path]:
    """Reserve a unique staging path beside ``output_path``.

    The staged file is removed on exit unless it has been moved into place.

    :param output_path: Final output path.
    :returns: Context manager yielding the staging path.
    """

    fd, name = tempfile.mkstemp(prefix=f".{output_path.name}.", suffix=".tmp", dir=output_path.parent)
    os.close(fd)
    staged: pathlib.Path = pathlib.Path(name)
    try:
        yield staged
    finally:
        staged.unlink(missing_ok=True)


def _compile(
    *,
    source_path: pathlib.Path,
    binary_path: pathlib.Path,
    config: RuntimeConfig,
    logger: logging.Logger,
) -> None:
    """Compile the generated program against libgauche.

    :param source_path: Generated C source.
    :param binary_path: Output binary.
    :param config: Runtime configuration.
    :param logger: Logger for debug output.
    :raises BuildError: If the compiler fails.
    """

    cmd: list[str] = [
        *config.compiler,
        "-o",
        str(binary_path),
        *config.include_flags,
        str(source_path),
        *config.library_dir_flags,
        *config.library_flags,
    ]
    _run_tool(cmd, what="compiler", logger=logger)


def list_shared_libraries(
    *,
    binary: pathlib.Path,
    config: RuntimeConfig,
    logger: logging.Logger | None = None,
) -> list[str]:
    """List the shared libraries ``binary`` is linked against.

    :param binary: Executable to inspect.
    :param config: Runtime configuration (provides the ``ldd`` command).
    :param logger: Optional logger for debug output.
    :returns: Absolute library paths in ``ldd`` order.
    :raises BuildError: If ``ldd`` fails or a library is missing.
    """

    stdout: str = _run_tool([config.ldd, str(binary)], what="ldd", logger=logger, capture=True)
    return parse_ldd_output(stdout)


def parse_ldd_output(text: str) -> list[str]:
    """Extract library paths from ``name => /path (0x...)`` lines.

    :param text: ``ldd`` output.
    :returns: Absolute library paths.
    :raises BuildError: If a library is reported as not found.
    """

    libs: list[str] = []
    for line in text.splitlines():
        m = _LDD_RE.match(line)
        if m is None:
            continue
        path: str = m.group("path")
        if path == "not found":
            raise BuildError(f"ldd could not find shared library {m.group('name')}")
        if path.startswith("/") is True:
            libs.append(path)
    return libs


def _warn_shadowed_extensions(natives: Sequence[str], logger: logging.Logger) -> None:
    """Warn about extensions a by-name load would never reach.

    The generated executable returns the first table entry matching a load
    request, so of two extensions sharing a file name only the first is found.

    :param natives: Native extension paths in discovery order.
    :param logger: Logger for warnings.
    """

    for path in natives:
        stem: str = pathlib.PurePosixPath(path).stem
        hit: str | None = match_native_extension(stem, _NATIVE_SUFFIXES, natives)
        if hit is not None and hit != path:
            logger.warning(f"gauche-static: {path} is shadowed by {hit} for loads of {stem!r}")


def _preload_set(host_libs: Sequence[str], natives: Sequence[str]) -> list[str]:
    """Join host libraries and native extensions, dropping repeats.

    :param host_libs: Shared libraries of the interpreter.
    :param natives: Native extensions from the trace.
    :returns: Preload paths, host libraries first.
    """

    seen: set[str] = set()
    preload: list[str] = []
    for path in [*host_libs, *natives]:
        if path in seen:
            continue
        seen.add(path)
        preload.append(path)
    return preload


def _statify(
    *,
    binary_path: pathlib.Path,
    staged_path: pathlib.Path,
    preload: Sequence[str],
    config: RuntimeConfig,
    logger: logging.Logger,
) -> None:
    """Turn the compiled binary into a static image.

    :param binary_path: Compiled program.
    :param staged_path: Where the static image is written.
    :param preload: Shared objects mapped into the image.
    :param config: Runtime configuration.
    :param logger: Logger for debug output.
    :raises BuildError: If the static-image tool fails.
    """

    cmd: list[str] = [
        config.statifier,
        "--set=LD_BIND_NOW=1",
        f"--set=LD_PRELOAD={' '.join(preload)}",
        str(binary_path),
        str(staged_path),
    ]
    env: dict[str, str] = dict(os.environ)
    env["LD_BIND_NOW"] = "1"
    _run_tool(cmd, what="statifier", logger=logger, env=env)


def _run_tool(
    cmd: list[str],
    *,
    what: str,
    logger: logging.Logger | None,
    capture: bool = False,
    env: dict[str, str] | None = None,
) -> str:
    """Run an external build tool to completion.

    :param cmd: Command line.
    :param what: Short tool description for error messages.
    :param logger: Optional logger for debug output.
    :param capture: Capture and return stdout instead of inheriting it.
    :param env: Optional environment.
    :returns: Captured stdout (empty when not capturing).
    :raises BuildError: If the tool cannot be started or exits non-zero.
    """

    if logger is not None and logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"gauche-static: running {what}: {' '.join(cmd)}")

    try:
        proc = subprocess.run(cmd, check=False, capture_output=capture, text=True, env=env)
    except OSError as e:
        raise BuildError(f"Failed to run {what} ({cmd[0]}): {e}") from e
    if proc.returncode != 0:
        raise BuildError(f"{what} invocation failed (exit={proc.returncode}): {' '.join(cmd)}")
    return proc.stdout if capture is True else ""
