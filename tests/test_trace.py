"""Tests for load trace capture and parsing."""

import logging
import pathlib
import subprocess

import pytest

from gauche_static.config import RuntimeConfig
from gauche_static.trace import (
    NATIVE_EXTENSION,
    TEXT_MODULE,
    LoadEvent,
    TraceCaptureError,
    TraceParseError,
    capture_trace,
    module_entries,
    native_extensions,
    parse_trace,
)

SCENARIO: list[str] = [
    ";;Loading a...",
    ";; Loading b...",
    ";; Loading c...",
    ";;Loading d...",
    ";;Dynamically Loading /x/y.so...",
]


def test_parse_well_formed_trace():
    lines: list[str] = [
        ";;Loading /lib/gauche/srfi-13.scm...",
        "",
        ";;  Loading /lib/gauche/char-set.scm...",
        ";;Dynamically Loading /lib/gauche/srfi-13.so...",
        "   ",
        ";;Loading /home/u/hello.scm...",
    ]

    events: list[LoadEvent] = parse_trace(lines)

    assert len(events) == 4
    assert events == [
        LoadEvent(depth=0, kind=TEXT_MODULE, identifier="/lib/gauche/srfi-13.scm"),
        LoadEvent(depth=2, kind=TEXT_MODULE, identifier="/lib/gauche/char-set.scm"),
        LoadEvent(depth=0, kind=NATIVE_EXTENSION, identifier="/lib/gauche/srfi-13.so"),
        LoadEvent(depth=0, kind=TEXT_MODULE, identifier="/home/u/hello.scm"),
    ]


def test_parse_keeps_paths_with_spaces_and_dots():
    events: list[LoadEvent] = parse_trace([";;   Loading /opt/my libs/v1.2/util.scm...\r\n"])

    assert events == [LoadEvent(depth=3, kind=TEXT_MODULE, identifier="/opt/my libs/v1.2/util.scm")]


@pytest.mark.parametrize(
    "bad",
    [
        "*** ERROR: unbound variable: foo",
        ";;Loading ...",
        "Loading /lib/a.scm...",
        ";; Dynamically Loading /x/y.so",
        ";;Loading /lib/a.scm",
    ],
)
def test_malformed_line_is_fatal(bad):
    lines: list[str] = [";;Loading /lib/a.scm...", bad, ";;Loading /lib/b.scm..."]

    with pytest.raises(TraceParseError) as excinfo:
        parse_trace(lines)

    assert excinfo.value.lineno == 2
    assert excinfo.value.line == bad
    assert repr(bad) in str(excinfo.value)


def test_nested_native_extension_has_no_depth():
    events: list[LoadEvent] = parse_trace(
        [
            ";;Loading /lib/srfi/1.scm...",
            ";; Dynamically Loading /lib/srfi-1.so...",
            ";;   Dynamically Loading /lib/deep.so...",
            ";;Loading /home/u/hello.scm...",
        ]
    )

    assert events == [
        LoadEvent(depth=0, kind=TEXT_MODULE, identifier="/lib/srfi/1.scm"),
        LoadEvent(depth=0, kind=NATIVE_EXTENSION, identifier="/lib/srfi-1.so"),
        LoadEvent(depth=0, kind=NATIVE_EXTENSION, identifier="/lib/deep.so"),
        LoadEvent(depth=0, kind=TEXT_MODULE, identifier="/home/u/hello.scm"),
    ]
    assert module_entries(events) == [(0, "/lib/srfi/1.scm"), (0, "/home/u/hello.scm")]
    assert native_extensions(events) == ["/lib/srfi-1.so", "/lib/deep.so"]


def test_empty_trace():
    assert parse_trace([]) == []
    assert parse_trace(["", "  "]) == []


def test_split_scenario():
    events: list[LoadEvent] = parse_trace(SCENARIO)

    assert module_entries(events) == [(0, "a"), (1, "b"), (1, "c"), (0, "d")]
    assert native_extensions(events) == ["/x/y.so"]


def test_native_extensions_keep_duplicates_in_order():
    events: list[LoadEvent] = parse_trace(
        [
            ";;Dynamically Loading /x/b.so...",
            ";;Loading /lib/m.scm...",
            ";;Dynamically Loading /x/a.so...",
            ";;Dynamically Loading /x/b.so...",
        ]
    )

    assert native_extensions(events) == ["/x/b.so", "/x/a.so", "/x/b.so"]


def test_capture_trace_runs_interpreter(tmp_path, monkeypatch, runtime_config: RuntimeConfig):
    script: pathlib.Path = tmp_path / "hello.scm"
    script.write_text("(define (main args) 0)\n", encoding="utf-8")
    seen: dict[str, object] = {}

    def fake_run(cmd, **kwargs):
        seen["cmd"] = cmd
        seen["kwargs"] = kwargs
        return subprocess.CompletedProcess(cmd, 0, stdout="ignored\n", stderr="\n".join(SCENARIO) + "\n")

    monkeypatch.setattr(subprocess, "run", fake_run)

    lines: list[str] = capture_trace(script=script, config=runtime_config, logger=logging.getLogger("test"))

    cmd = seen["cmd"]
    assert cmd[0] == runtime_config.interpreter
    assert "-fload-verbose" in cmd
    assert cmd[cmd.index("-l") + 1] == str(script.resolve())
    assert "all-modules" in cmd[cmd.index("-e") + 1]
    assert seen["kwargs"]["stdin"] is subprocess.DEVNULL
    assert lines == SCENARIO


def test_capture_trace_warns_on_nonzero_exit(tmp_path, monkeypatch, caplog, runtime_config: RuntimeConfig):
    script: pathlib.Path = tmp_path / "s.scm"
    script.write_text("", encoding="utf-8")
    monkeypatch.setattr(
        subprocess,
        "run",
        lambda cmd, **kw: subprocess.CompletedProcess(cmd, 1, stdout="", stderr=";;Loading a...\n"),
    )

    with caplog.at_level(logging.WARNING, logger="test"):
        lines: list[str] = capture_trace(script=script, config=runtime_config, logger=logging.getLogger("test"))

    assert lines == [";;Loading a..."]
    assert "exited with status 1" in caplog.text


def test_capture_trace_missing_interpreter(tmp_path, monkeypatch, runtime_config: RuntimeConfig):
    script: pathlib.Path = tmp_path / "s.scm"
    script.write_text("", encoding="utf-8")

    def fake_run(cmd, **kwargs):
        raise FileNotFoundError(2, "No such file or directory", cmd[0])

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(TraceCaptureError):
        capture_trace(script=script, config=runtime_config)
