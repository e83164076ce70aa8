"""Shared fixtures for gauche-static tests.

External tools (``gosh``, the C compiler, ``ldd``, ``statifier``) are replaced
by :class:`FakeToolchain`, which answers ``subprocess.run`` calls by tool name
and records every command it sees.
"""

from dataclasses import dataclass, field
import pathlib
import subprocess
import sys
from typing import Any

import pytest

project_root = pathlib.Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from gauche_static.config import RuntimeConfig  # noqa: E402

LDD_OUTPUT: str = (
    "\tlinux-vdso.so.1 (0x00007ffd4a5f2000)\n"
    "\tlibgauche-0.98.so.0 => /opt/gauche/lib/libgauche-0.98.so.0 (0x00007f1c2a000000)\n"
    "\tlibm.so.6 => /lib/x86_64-linux-gnu/libm.so.6 (0x00007f1c29f00000)\n"
    "\tlibc.so.6 => /lib/x86_64-linux-gnu/libc.so.6 (0x00007f1c29c00000)\n"
    "\t/lib64/ld-linux-x86-64.so.2 (0x00007f1c2a400000)\n"
)


@dataclass
class FakeToolchain:
    """Stand-in for every external tool the build runs.

    :ivar trace: stderr produced by the traced interpreter.
    :ivar ldd_output: stdout produced by ``ldd``.
    :ivar fail: Tool names that exit with status 1.
    :ivar calls: Every command seen, in order.
    :ivar envs: Environment passed with each command.
    """

    trace: str = ""
    ldd_output: str = LDD_OUTPUT
    fail: set[str] = field(default_factory=set)
    calls: list[list[str]] = field(default_factory=list)
    envs: list[dict[str, str] | None] = field(default_factory=list)

    def tools(self) -> list[str]:
        return [pathlib.Path(cmd[0]).name for cmd in self.calls]

    def command(self, tool: str) -> list[str]:
        for cmd in self.calls:
            if pathlib.Path(cmd[0]).name == tool:
                return cmd
        raise AssertionError(f"{tool} was never run")

    def run(self, cmd: list[str], **kwargs: Any) -> subprocess.CompletedProcess:
        self.calls.append(list(cmd))
        self.envs.append(kwargs.get("env"))
        tool: str = pathlib.Path(cmd[0]).name
        if tool in self.fail:
            return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="boom\n")
        if tool == "gosh":
            return subprocess.CompletedProcess(cmd, 0, stdout="", stderr=self.trace)
        if tool == "cc":
            out: pathlib.Path = pathlib.Path(cmd[cmd.index("-o") + 1])
            out.write_bytes(b"\x7fELF compiled")
            return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")
        if tool == "ldd":
            return subprocess.CompletedProcess(cmd, 0, stdout=self.ldd_output, stderr="")
        if tool == "statifier":
            pathlib.Path(cmd[-1]).write_bytes(b"\x7fELF static image")
            return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")
        raise AssertionError(f"unexpected command: {cmd}")


@pytest.fixture
def runtime_config() -> RuntimeConfig:
    return RuntimeConfig(
        interpreter="/opt/gauche/bin/gosh",
        compiler=("cc",),
        include_flags=("-I/opt/gauche/include",),
        library_dir_flags=("-L/opt/gauche/lib",),
        library_flags=("-lgauche-0.98", "-lpthread"),
    )


@pytest.fixture
def fake_toolchain(monkeypatch: pytest.MonkeyPatch) -> FakeToolchain:
    fake: FakeToolchain = FakeToolchain()
    monkeypatch.setattr(subprocess, "run", fake.run)
    return fake
