"""Tests for the psutil-backed orphan sweep."""

import os

import psutil

from vcmigrate.services.shutdown_reaper import ShutdownReaper

APP_START = 1_000_000.0
NOW = APP_START + 3600


class FakeProc:
    def __init__(self, pid, name, create_time, *, exe=None, cwd=None, cmdline=None, children=()):
        self.pid = pid
        self.info = {
            "pid": pid,
            "name": name,
            "exe": exe,
            "cwd": cwd,
            "cmdline": cmdline or [],
            "create_time": create_time,
        }
        self._children = list(children)
        self.killed = False
        self.kill_error = None

    def children(self, recursive=False):
        return self._children

    def kill(self):
        if self.kill_error is not None:
            raise self.kill_error
        self.killed = True


def _reaper(procs, tmp_path, **kwargs):
    kwargs.setdefault("recent_window_seconds", 300)
    return ShutdownReaper(
        ["pwsh", "powershell.exe"],
        tmp_path,
        process_iter=lambda attrs: iter(procs),
        **kwargs,
    )


def test_kills_interpreter_started_from_install_directory(tmp_path):
    child = FakeProc(9001, "conhost.exe", APP_START + 20)
    orphan = FakeProc(
        5001,
        "pwsh.exe",
        APP_START + 10,
        exe="/usr/bin/pwsh",
        cwd=str(tmp_path / "Scripts"),
        children=[child],
    )

    killed = _reaper([orphan], tmp_path).sweep_orphans(APP_START, now=NOW)

    assert killed == 1
    assert orphan.killed
    assert child.killed


def test_kills_recent_interpreter_outside_install_directory(tmp_path):
    recent = FakeProc(5002, "PowerShell.EXE", NOW - 60, cwd="/home/user")

    assert _reaper([recent], tmp_path).sweep_orphans(APP_START, now=NOW) == 1
    assert recent.killed


def test_leaves_preexisting_processes_alone(tmp_path):
    before_start = FakeProc(5003, "pwsh", APP_START - 120, cwd=str(tmp_path))
    within_grace = FakeProc(5004, "pwsh", APP_START - 10, cwd="/elsewhere")

    killed = _reaper([before_start, within_grace], tmp_path, grace_seconds=30).sweep_orphans(
        APP_START, now=APP_START + 1
    )

    assert killed == 1
    assert not before_start.killed
    assert within_grace.killed


def test_leaves_old_unrelated_interpreters_alone(tmp_path):
    old_shell = FakeProc(5005, "pwsh", APP_START + 5, cwd="/home/user", exe="/usr/bin/pwsh")

    assert _reaper([old_shell], tmp_path).sweep_orphans(APP_START, now=NOW) == 0
    assert not old_shell.killed


def test_ignores_other_executables_and_own_pid(tmp_path):
    other = FakeProc(5006, "python", NOW - 1, cwd=str(tmp_path))
    own = FakeProc(os.getpid(), "pwsh", NOW - 1, cwd=str(tmp_path))
    unknown_start = FakeProc(5007, "pwsh", None, cwd=str(tmp_path))

    assert _reaper([other, own, unknown_start], tmp_path).sweep_orphans(APP_START, now=NOW) == 0
    assert not other.killed and not own.killed and not unknown_start.killed


def test_processes_that_vanish_are_not_counted(tmp_path):
    gone = FakeProc(5008, "pwsh", NOW - 1)
    gone.kill_error = psutil.NoSuchProcess(5008)
    denied = FakeProc(5009, "pwsh", NOW - 1)
    denied.kill_error = psutil.AccessDenied(5009)
    live = FakeProc(5010, "pwsh", NOW - 1)

    killed = _reaper([gone, denied, live], tmp_path).sweep_orphans(APP_START, now=NOW)

    assert killed == 1
    assert live.killed


def test_excluded_pids_are_skipped(tmp_path):
    tracked = FakeProc(5011, "pwsh", NOW - 1)

    reaper = _reaper([tracked], tmp_path, exclude_pids=[5011])

    assert reaper.sweep_orphans(APP_START, now=NOW) == 0


def test_no_names_means_nothing_to_sweep(tmp_path):
    reaper = ShutdownReaper([], tmp_path, process_iter=lambda attrs: iter([FakeProc(1, "pwsh", NOW)]))

    assert reaper.sweep_orphans(APP_START, now=NOW) == 0


def test_only_processes_started_after_grace_window_are_swept(tmp_path):
    started_before = FakeProc(5012, "pwsh", NOW - 40, cwd=str(tmp_path))
    started_recently = FakeProc(5013, "pwsh", NOW - 2, cwd=str(tmp_path))

    killed = _reaper([started_before, started_recently], tmp_path, grace_seconds=30).sweep_orphans(
        NOW - 10, now=NOW
    )

    assert killed == 1
    assert not started_before.killed
    assert started_recently.killed
