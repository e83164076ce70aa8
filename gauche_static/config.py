"""Runtime configuration helpers.

This module is intentionally small and "pragmatic":

- It locates the ``gosh`` interpreter and its ``gauche-config`` companion.
- It asks ``gauche-config`` for the compiler, include, library-dir and library
  flags needed to link a program against libgauche.
- It produces one immutable :class:`RuntimeConfig` that every build stage
  receives explicitly.
"""

from dataclasses import dataclass
import logging
import pathlib
import shlex
import shutil
import subprocess


class ConfigError(ValueError):
    """Raised when the Gauche installation cannot be resolved."""


@dataclass(frozen=True, slots=True)
class RuntimeConfig:
    """Build configuration for one Gauche installation.

    :ivar interpreter: Path to the ``gosh`` executable.
    :ivar compiler: Host C compiler command and the flags it must be run with.
    :ivar include_flags: ``-I`` flags for ``gauche.h``.
    :ivar library_dir_flags: ``-L`` flags for libgauche.
    :ivar library_flags: ``-l`` flags for libgauche and its system libraries.
    :ivar ldd: Link-dependency enumeration tool.
    :ivar statifier: Static-image tool.
    """

    interpreter: str
    compiler: tuple[str, ...]
    include_flags: tuple[str, ...]
    library_dir_flags: tuple[str, ...]
    library_flags: tuple[str, ...]
    ldd: str = "ldd"
    statifier: str = "statifier"


def resolve_runtime_config(
    *,
    interpreter_override: str | None,
    compiler_override: str | None,
    config_tool_override: str | None = None,
    logger: logging.Logger | None = None,
) -> RuntimeConfig:
    """Resolve user-supplied runtime arguments into a :class:`~RuntimeConfig`.

    :param interpreter_override: Optional explicit ``gosh`` path.
    :param compiler_override: Optional explicit C compiler command line
        (shell-split, so it may carry flags).
    :param config_tool_override: Optional explicit ``gauche-config`` path.
    :param logger: Optional logger for debug output.
    :returns: Resolved runtime config.
    :raises ConfigError: If the installation cannot be resolved.
    """

    if logger is None:
        logger = logging.getLogger("gauche_static")

    interpreter: str = _resolve_interpreter(interpreter_override)
    config_tool: str = _resolve_config_tool(
        interpreter=interpreter,
        config_tool_override=config_tool_override,
    )
    logger.debug(f"gauche-static: interpreter={interpreter} config_tool={config_tool}")

    compiler: tuple[str, ...]
    cc_words: list[str]
    if compiler_override is not None:
        cc_words = shlex.split(compiler_override)
    else:
        cc_words = _query_config_tool(config_tool, "--cc")
    if len(cc_words) == 0:
        raise ConfigError("C compiler command is empty; pass a compiler with --cc.")
    compiler = tuple(cc_words)

    return RuntimeConfig(
        interpreter=interpreter,
        compiler=compiler,
        include_flags=tuple(_query_config_tool(config_tool, "-I")),
        library_dir_flags=tuple(_query_config_tool(config_tool, "-L")),
        library_flags=tuple(_query_config_tool(config_tool, "-l")),
    )


def _resolve_interpreter(interpreter_override: str | None) -> str:
    """Resolve the ``gosh`` executable to an absolute path.

    :param interpreter_override: Optional explicit path or command name.
    :returns: Absolute interpreter path.
    :raises ConfigError: If the interpreter cannot be found.
    """

    candidate: str = "gosh" if interpreter_override is None else interpreter_override
    found: str | None = shutil.which(candidate)
    if found is None:
        raise ConfigError(f"Gauche interpreter not found: {candidate!r}")
    return str(pathlib.Path(found).resolve())


def _resolve_config_tool(*, interpreter: str, config_tool_override: str | None) -> str:
    """Resolve ``gauche-config``, preferring the one installed beside ``gosh``.

    :param interpreter: Absolute interpreter path.
    :param config_tool_override: Optional explicit path.
    :returns: Path or command name of the config tool.
    :raises ConfigError: If no config tool can be found.
    """

    if config_tool_override is not None:
        return config_tool_override

    sibling: pathlib.Path = pathlib.Path(interpreter).parent / "gauche-config"
    if sibling.is_file() is True:
        return str(sibling)

    found: str | None = shutil.which("gauche-config")
    if found is None:
        raise ConfigError(
            f"gauche-config not found next to {interpreter} or on PATH."
        )
    return found


def _query_config_tool(config_tool: str, flag: str) -> list[str]:
    """Run ``gauche-config <flag>`` and split its output into words.

    :param config_tool: Config tool path.
    :param flag: Query flag (e.g. ``-I``).
    :returns: Shell-split output words.
    :raises ConfigError: If the tool fails.
    """

    cmd: list[str] = [config_tool, flag]
    try:
        proc = subprocess.run(cmd, check=False, capture_output=True, text=True)
    except OSError as e:
        raise ConfigError(f"Failed to run {' '.join(cmd)}: {e}") from e
    if proc.returncode != 0:
        raise ConfigError(
            f"{' '.join(cmd)} failed (exit={proc.returncode}): {proc.stderr.strip()}"
        )
    return shlex.split(proc.stdout)
