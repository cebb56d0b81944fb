"""Last-resort sweep for PowerShell processes that escaped pool tracking.

After the pool has killed every handle it knows about, interpreter processes
can still be left behind, for example ones launched by a script itself. The
reaper looks for processes with a matching executable name that started
after the application (minus a grace window) and are either tied to the
installation directory or very recent. The heuristic is biased towards
leaving things alone: a missed orphan is preferable to killing a shell the
user opened before the application started.
"""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

import psutil

from ..core.config import settings

logger = logging.getLogger(__name__)

_ATTRS = ["pid", "name", "exe", "cwd", "cmdline", "create_time"]


def _normalize_name(name: Optional[str]) -> str:
    if not name:
        return ""
    lowered = name.strip().lower()
    if lowered.endswith(".exe"):
        lowered = lowered[:-4]
    return lowered


def _normalize_path(path: str) -> str:
    return os.path.normcase(os.path.normpath(path))


class ShutdownReaper:
    """Fingerprint-based orphan killer backed by psutil."""

    def __init__(
        self,
        executable_names: Sequence[str],
        install_directory: Path,
        *,
        grace_seconds: float = 30.0,
        recent_window_seconds: float = 300.0,
        exclude_pids: Optional[Iterable[int]] = None,
        process_iter: Optional[Callable[..., Iterable[Any]]] = None,
    ) -> None:
        self._names = {_normalize_name(name) for name in executable_names if name}
        self._install_directory = _normalize_path(str(install_directory))
        self._grace_seconds = grace_seconds
        self._recent_window_seconds = recent_window_seconds
        self._exclude_pids = set(exclude_pids or ())
        self._exclude_pids.add(os.getpid())
        self._process_iter = process_iter or psutil.process_iter

    @classmethod
    def from_settings(cls) -> "ShutdownReaper":
        return cls(
            settings.get_executable_names(),
            settings.get_install_directory(),
            grace_seconds=settings.reaper_grace_seconds,
            recent_window_seconds=settings.reaper_recent_window_seconds,
        )

    def _within_install_directory(self, candidate: Optional[str]) -> bool:
        if not candidate or not self._install_directory:
            return False
        normalized = _normalize_path(candidate)
        return normalized == self._install_directory or normalized.startswith(
            self._install_directory + os.sep
        )

    def _is_probable_orphan(self, info: Dict[str, Any], now: float) -> bool:
        paths: List[Optional[str]] = [info.get("exe"), info.get("cwd")]
        paths.extend(info.get("cmdline") or [])
        if any(self._within_install_directory(path) for path in paths):
            return True
        create_time = info.get("create_time") or 0.0
        return now - create_time <= self._recent_window_seconds

    @staticmethod
    def _kill_tree(proc: Any) -> bool:
        try:
            children = proc.children(recursive=True)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            children = []
        for child in children:
            try:
                child.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass
        try:
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied) as exc:
            logger.debug("Could not kill orphan PID %s: %s", getattr(proc, "pid", "?"), exc)
            return False
        return True

    def sweep_orphans(self, app_start_time: float, now: Optional[float] = None) -> int:
        """Kill probable orphan interpreter processes and return how many died.

        ``app_start_time`` and ``now`` are epoch seconds. Processes that
        started at or before ``app_start_time - grace_seconds`` are treated as
        pre-existing and never touched.
        """

        if not self._names:
            return 0

        current = time.time() if now is None else now
        cutoff = app_start_time - self._grace_seconds
        killed = 0

        for proc in self._process_iter(attrs=_ATTRS):
            info = getattr(proc, "info", None) or {}
            pid = info.get("pid", getattr(proc, "pid", None))
            if pid in self._exclude_pids:
                continue
            if _normalize_name(info.get("name")) not in self._names:
                continue

            create_time = info.get("create_time")
            if create_time is None or create_time <= cutoff:
                continue
            if not self._is_probable_orphan(info, current):
                continue

            if self._kill_tree(proc):
                killed += 1
                logger.info(
                    "Killed orphaned %s process (PID: %s, started %.0fs ago)",
                    info.get("name"),
                    pid,
                    current - create_time,
                )

        if killed:
            logger.warning("Shutdown reaper killed %d orphaned PowerShell process(es)", killed)
        return killed
