"""Lifecycle management for a single persistent PowerShell host process."""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import psutil

from ..core.models import ProcessHealth

logger = logging.getLogger(__name__)

_STREAMS = ("stdout", "stderr")


class ProcessServiceError(RuntimeError):
    """Base exception for PowerShell host process failures."""


class SpawnFailedError(ProcessServiceError):
    """Raised when a host process cannot be started or never becomes ready."""


class ProcessDiedError(ProcessServiceError):
    """Raised when the host process exits or its pipes break mid-conversation."""


class InvocationTimeoutError(ProcessServiceError):
    """Raised when a delimited response does not arrive in time."""


class PowerShellProcess:
    """One external interpreter process with line-oriented pipe access.

    Background tasks drain stdout and stderr into per-stream queues as soon as
    the process starts, so a chatty script can never fill a pipe and stall.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        executable: str,
        owner_session_id: str,
    ) -> None:
        self._process = process
        self.executable = executable
        self.owner_session_id = owner_session_id
        self.pid: Optional[int] = process.pid
        self.start_time = time.time()
        self._started_monotonic = time.monotonic()

        self._dead = False
        self._killed = False
        self._kill_lock = threading.Lock()

        self._queues: Dict[str, asyncio.Queue[Optional[str]]] = {
            name: asyncio.Queue() for name in _STREAMS
        }
        self._pump_tasks: List[asyncio.Task[None]] = []
        for name in _STREAMS:
            reader = getattr(process, name)
            if reader is None:
                self._queues[name].put_nowait(None)
                continue
            self._pump_tasks.append(
                asyncio.create_task(
                    self._pump(name, reader),
                    name=f"powershell-{self.pid}-{name}",
                )
            )

    def __repr__(self) -> str:
        return (
            f"PowerShellProcess(pid={self.pid}, session={self.owner_session_id}, "
            f"alive={self.is_alive()})"
        )

    @classmethod
    async def spawn(
        cls,
        executable: str,
        arguments: Sequence[str],
        owner_session_id: str,
        *,
        cwd: Optional[str] = None,
        startup_delay: float = 0.0,
        limit: int = 2**16,
    ) -> "PowerShellProcess":
        """Start ``executable`` with piped stdio or raise ``SpawnFailedError``."""

        kwargs = {}
        if os.name == "nt":
            kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW

        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                *arguments,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                limit=limit,
                **kwargs,
            )
        except (OSError, ValueError) as exc:
            raise SpawnFailedError(f"Unable to start {executable}: {exc}") from exc

        handle = cls(process, executable=executable, owner_session_id=owner_session_id)

        if startup_delay > 0:
            await asyncio.sleep(startup_delay)
        if process.returncode is not None:
            handle._dead = True
            raise SpawnFailedError(
                f"{executable} exited immediately with code {process.returncode}"
            )

        logger.info(
            "Started PowerShell host %s (PID: %s) for session %s",
            executable,
            handle.pid,
            owner_session_id,
        )
        return handle

    @classmethod
    async def spawn_first_available(
        cls,
        executables: Iterable[str],
        arguments: Sequence[str],
        owner_session_id: str,
        **kwargs,
    ) -> "PowerShellProcess":
        """Try each candidate executable in order and return the first that starts."""

        failures: List[str] = []
        for executable in executables:
            try:
                return await cls.spawn(executable, arguments, owner_session_id, **kwargs)
            except SpawnFailedError as exc:
                logger.debug("Could not start %s: %s", executable, exc)
                failures.append(str(exc))

        if not failures:
            raise SpawnFailedError("No PowerShell executables are configured")
        raise SpawnFailedError(
            "Failed to start any PowerShell executable: " + "; ".join(failures)
        )

    async def _pump(self, name: str, reader: asyncio.StreamReader) -> None:
        queue = self._queues[name]
        try:
            while True:
                try:
                    raw = await reader.readline()
                except ValueError:
                    # Line longer than the reader limit; the oversized chunk is dropped
                    logger.warning(
                        "Discarded oversized %s line from PowerShell host %s", name, self.pid
                    )
                    continue
                if not raw:
                    break
                queue.put_nowait(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
        except (ConnectionResetError, BrokenPipeError, OSError) as exc:
            logger.debug("%s pipe of PowerShell host %s closed: %s", name, self.pid, exc)
        finally:
            queue.put_nowait(None)

    def is_alive(self) -> bool:
        """Return True while the process is running and its pipes are healthy."""

        return not self._dead and not self._killed and self._process.returncode is None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    async def write_command(self, payload: str) -> None:
        """Write one request line to the interpreter's stdin."""

        if not self.is_alive():
            raise ProcessDiedError(f"PowerShell host {self.pid} is not running")

        stdin = self._process.stdin
        if stdin is None:
            self._dead = True
            raise ProcessDiedError(f"PowerShell host {self.pid} has no stdin pipe")

        try:
            stdin.write((payload + "\n").encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError, OSError) as exc:
            self._dead = True
            raise ProcessDiedError(
                f"Lost stdin pipe to PowerShell host {self.pid}: {exc}"
            ) from exc

    async def read_until_sentinel(
        self,
        sentinel: str,
        timeout: Optional[float] = None,
        *,
        stream: str = "stdout",
        on_line: Optional[Callable[[str], None]] = None,
    ) -> Tuple[List[str], str]:
        """Collect lines from ``stream`` until one starts with ``sentinel``.

        Returns the lines read before the sentinel together with the sentinel
        line itself. Raises ``InvocationTimeoutError`` if ``timeout`` elapses
        and ``ProcessDiedError`` if the stream reaches EOF first.
        """

        queue = self._queues[stream]
        deadline = None if timeout is None else time.monotonic() + timeout
        lines: List[str] = []

        while True:
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                raise InvocationTimeoutError(
                    f"Timed out waiting for {stream} sentinel from PowerShell host {self.pid}"
                )
            try:
                line = await asyncio.wait_for(queue.get(), remaining)
            except asyncio.TimeoutError as exc:
                raise InvocationTimeoutError(
                    f"Timed out waiting for {stream} sentinel from PowerShell host {self.pid}"
                ) from exc

            if line is None:
                # Leave the EOF marker in place for any later reader
                queue.put_nowait(None)
                self._dead = True
                raise ProcessDiedError(
                    f"PowerShell host {self.pid} closed {stream} "
                    f"(exit code {self._process.returncode})"
                )

            if line.strip().startswith(sentinel):
                return lines, line.strip()

            lines.append(line)
            if on_line is not None:
                on_line(line)

    def kill(self, include_descendants: bool = True) -> bool:
        """Forcefully terminate the process tree.

        Returns True only for the call that actually delivered the kill. Later
        calls, and calls on a process that already exited, return False.
        """

        with self._kill_lock:
            if self._killed:
                return False
            self._killed = True

        if self._process.returncode is not None:
            self._dead = True
            return False

        if include_descendants and self.pid is not None:
            try:
                children = psutil.Process(self.pid).children(recursive=True)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                children = []
            for child in children:
                try:
                    child.kill()
                except (psutil.NoSuchProcess, psutil.AccessDenied):
                    pass

        try:
            self._process.kill()
        except ProcessLookupError:
            self._dead = True
            return False

        self._dead = True
        logger.info(
            "Killed PowerShell host (PID: %s) for session %s", self.pid, self.owner_session_id
        )
        return True

    async def terminate(self, graceful_timeout: float = 5.0) -> bool:
        """Ask the interpreter to exit, then kill it if it does not comply."""

        if not self.is_alive():
            return self.kill()

        try:
            await self.write_command("exit")
            await asyncio.wait_for(self._process.wait(), graceful_timeout)
        except (ProcessDiedError, asyncio.TimeoutError):
            return self.kill()

        with self._kill_lock:
            if self._killed:
                return False
            self._killed = True
        self._dead = True
        logger.info(
            "PowerShell host (PID: %s) for session %s exited gracefully",
            self.pid,
            self.owner_session_id,
        )
        return True

    async def wait_closed(self, timeout: Optional[float] = None) -> Optional[int]:
        """Wait for the OS process to be reaped and the reader tasks to finish."""

        try:
            await asyncio.wait_for(self._process.wait(), timeout)
        except asyncio.TimeoutError:
            return None
        if self._pump_tasks:
            await asyncio.gather(*self._pump_tasks, return_exceptions=True)
        return self._process.returncode

    def health(self) -> ProcessHealth:
        """Return a psutil-backed health snapshot."""

        runtime = time.monotonic() - self._started_monotonic
        if not self.is_alive() or self.pid is None:
            return ProcessHealth(pid=self.pid, alive=False, runtime_seconds=runtime)

        try:
            proc = psutil.Process(self.pid)
            with proc.oneshot():
                status = proc.status()
                memory_mb = proc.memory_info().rss / (1024 * 1024)
        except psutil.NoSuchProcess:
            self._dead = True
            return ProcessHealth(pid=self.pid, alive=False, runtime_seconds=runtime)
        except psutil.AccessDenied:
            return ProcessHealth(pid=self.pid, alive=True, runtime_seconds=runtime)

        return ProcessHealth(
            pid=self.pid,
            alive=status != psutil.STATUS_ZOMBIE,
            status=status,
            runtime_seconds=runtime,
            memory_mb=round(memory_mb, 2),
        )
