"""Load trace capture and parsing.

``gosh -fload-verbose`` reports every file it loads on stderr. Nested loads are
indented by one space per level after the ``;;`` marker. Native extensions may
appear at any indentation, but their nesting is ignored::

    ;;Loading /usr/share/gauche-0.98/0.9.15/lib/srfi/1.scm...
    ;; Loading /usr/share/gauche-0.98/0.9.15/lib/gauche/sequence.scm...
    ;; Dynamically Loading /usr/lib/gauche-0.98/0.9.15/x86_64-pc-linux-gnu/srfi-1.so...

This module runs the interpreter once over the user script and turns that
stream into :class:`LoadEvent` values.
"""

from dataclasses import dataclass
import logging
import pathlib
import re
import subprocess
import time
from typing import Iterable, Sequence

from gauche_static.config import RuntimeConfig

TEXT_MODULE: str = "module"
NATIVE_EXTENSION: str = "extension"

_NATIVE_RE: re.Pattern[str] = re.compile(r"^;; *Dynamically Loading (?P<path>.+?)\.\.\.$")
_MODULE_RE: re.Pattern[str] = re.compile(r"^;;(?P<indent> *)Loading (?P<path>.+?)\.\.\.$")

# Dereference every binding of every module so autoloaded names pull in the
# modules that define them, then leave before the script's main can run.
_SCAN_EXPR: str = (
    "(begin"
    " (for-each"
    "  (lambda (m)"
    "   (hash-table-for-each (module-table m)"
    "    (lambda (sym gloc) (guard (e (else #f)) (global-variable-ref m sym #f)))))"
    "  (all-modules))"
    " (exit 0))"
)


class TraceCaptureError(RuntimeError):
    """Raised when the interpreter cannot be run to capture a load trace."""


class TraceParseError(ValueError):
    """Raised when a trace line matches neither load pattern.

    :ivar lineno: 1-based line number of the offending line.
    :ivar line: Offending line content.
    """

    def __init__(self, lineno: int, line: str) -> None:
        super().__init__(f"Malformed load trace at line {lineno}: {line!r}")
        self.lineno: int = lineno
        self.line: str = line


@dataclass(frozen=True, slots=True)
class LoadEvent:
    """A single entry of the load trace.

    :ivar depth: Nesting level (always ``0`` for native extensions).
    :ivar kind: Either ``module`` or ``extension``.
    :ivar identifier: Path of the loaded file.
    """

    depth: int
    kind: str
    identifier: str


def capture_trace(
    *,
    script: pathlib.Path,
    config: RuntimeConfig,
    logger: logging.Logger | None = None,
) -> list[str]:
    """Run the interpreter over ``script`` with load tracing enabled.

    :param script: User script to trace.
    :param config: Runtime configuration.
    :param logger: Optional logger for progress output.
    :returns: Trace lines captured from the interpreter's stderr.
    :raises TraceCaptureError: If the interpreter cannot be started.
    """

    if logger is None:
        logger = logging.getLogger("gauche_static")

    cmd: list[str] = [
        config.interpreter,
        "-fload-verbose",
        "-l",
        str(script.resolve()),
        "-e",
        _SCAN_EXPR,
    ]
    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"gauche-static: running trace: {' '.join(cmd)}")

    t0: float = time.perf_counter()
    try:
        proc = subprocess.run(
            cmd,
            check=False,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
        )
    except OSError as e:
        raise TraceCaptureError(f"Failed to run {config.interpreter}: {e}") from e
    t1: float = time.perf_counter()

    if proc.returncode != 0:
        logger.warning(
            f"gauche-static: trace run exited with status {proc.returncode}; continuing with its trace"
        )

    lines: list[str] = proc.stderr.splitlines()
    logger.info(f"gauche-static: captured {len(lines)} trace lines in {t1 - t0:.2f}s")
    return lines


def parse_trace(lines: Iterable[str]) -> list[LoadEvent]:
    """Parse trace lines into load events, keeping their order.

    :param lines: Raw trace lines.
    :returns: Parsed events.
    :raises TraceParseError: On the first line matching neither pattern.
    """

    events: list[LoadEvent] = []
    for lineno, raw in enumerate(lines, start=1):
        line: str = raw.rstrip("\r\n")
        if line.strip() == "":
            continue

        m = _NATIVE_RE.match(line)
        if m is not None:
            events.append(LoadEvent(depth=0, kind=NATIVE_EXTENSION, identifier=m.group("path")))
            continue

        m = _MODULE_RE.match(line)
        if m is not None:
            events.append(
                LoadEvent(
                    depth=len(m.group("indent")),
                    kind=TEXT_MODULE,
                    identifier=m.group("path"),
                )
            )
            continue

        raise TraceParseError(lineno, line)

    return events


def module_entries(events: Sequence[LoadEvent]) -> list[tuple[int, str]]:
    """Select ``(depth, identifier)`` pairs of text module events.

    :param events: Parsed events.
    :returns: Leveled module identifiers in trace order.
    """

    return [(ev.depth, ev.identifier) for ev in events if ev.kind == TEXT_MODULE]


def native_extensions(events: Sequence[LoadEvent]) -> list[str]:
    """Select native extension paths, in discovery order.

    :param events: Parsed events.
    :returns: Extension paths (duplicates preserved).
    """

    return [ev.identifier for ev in events if ev.kind == NATIVE_EXTENSION]
