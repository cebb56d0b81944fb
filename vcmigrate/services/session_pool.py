"""Pool of persistent PowerShell sessions keyed by target server and identity.

Each session owns exactly one host process and runs one invocation at a time.
Callers queue on a per-session FIFO lock; different sessions run in parallel.
A session whose invocation times out, is cancelled, or loses its process is
retired (killed and marked dead) so that a hung script can never poison the
next call. The next ``acquire_session`` for that key spawns a fresh process.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import (
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Hashable,
    List,
    Optional,
    Sequence,
    Set,
    Tuple,
)

from ..core.config import settings
from ..core.models import (
    ErrorKind,
    InvocationRequest,
    InvocationResult,
    SessionInfo,
    SessionState,
)
from .process_handle import (
    InvocationTimeoutError,
    PowerShellProcess,
    ProcessDiedError,
    ProcessServiceError,
    SpawnFailedError,
)
from .parameter_sanitizer import redact_text
from .script_builder import SESSION_BOOTSTRAP, Frame, format_output_preview, wrap_command

logger = logging.getLogger(__name__)

LOCAL_TARGET = "local"

ProcessFactory = Callable[[str], Awaitable[PowerShellProcess]]
OutputCallback = Callable[[str, str], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(eq=False)
class Session:
    """Binding between a target server/credential pair and one host process."""

    session_id: str
    target_server: str
    credential_identity: str
    process: PowerShellProcess
    state: SessionState = SessionState.IDLE
    created_at: datetime = field(default_factory=_utcnow)
    last_used_at: datetime = field(default_factory=_utcnow)
    gate: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def key(self) -> Tuple[str, str]:
        return SessionPool.session_key(self.target_server, self.credential_identity)

    def is_usable(self) -> bool:
        return self.state != SessionState.DEAD and self.process.is_alive()


@dataclass
class _FrameOutput:
    stdout: List[str]
    stderr: List[str]
    exit_code: Optional[int]


@dataclass
class _KeyedLockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class KeyedLocks:
    """Per-key asyncio locks that exist only while someone holds or awaits them."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: Dict[Hashable, _KeyedLockEntry] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _KeyedLockEntry()
                self._entries[key] = entry
            entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0 and self._entries.get(key) is entry:
                    del self._entries[key]


class SessionPool:
    """Owns every live host process and serializes access to each one."""

    def __init__(self, process_factory: Optional[ProcessFactory] = None) -> None:
        self._process_factory = process_factory or self._spawn_default_process
        self._state_lock = threading.Lock()
        self._sessions: Dict[Tuple[str, str], Session] = {}
        self._handles: Set[PowerShellProcess] = set()
        self._key_locks = KeyedLocks()

        self._started = False
        self._start_lock = asyncio.Lock()
        self._maintenance_task: Optional[asyncio.Task[None]] = None

        # Metrics
        self._spawned_total = 0
        self._completed_total = 0
        self._retired_total = 0

    @staticmethod
    def session_key(target_server: str, credential_identity: str = "") -> Tuple[str, str]:
        return (target_server.strip().lower(), credential_identity.strip())

    async def start(self) -> None:
        """Start the background loop that prunes exited sessions."""

        async with self._start_lock:
            if self._started:
                return
            interval = max(1.0, settings.process_cleanup_interval_seconds)
            self._maintenance_task = asyncio.create_task(
                self._maintenance_loop(interval),
                name="session-pool-maintenance",
            )
            self._started = True
            logger.info("Session pool started (cleanup interval %.0fs)", interval)

    async def stop(self) -> None:
        """Stop the maintenance loop. Sessions are left to ``cleanup_all_processes``."""

        async with self._start_lock:
            if not self._started:
                return
            task = self._maintenance_task
            self._maintenance_task = None
            self._started = False

        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        logger.info("Session pool stopped")

    async def _maintenance_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                pruned = self.prune_dead_sessions()
                if pruned:
                    logger.info("Pruned %d exited PowerShell session(s)", pruned)
            except Exception:  # pragma: no cover - defensive logging
                logger.exception("Session pool maintenance failed")

    async def _spawn_default_process(self, session_id: str) -> PowerShellProcess:
        return await PowerShellProcess.spawn_first_available(
            settings.get_powershell_executables_list(),
            settings.get_powershell_arguments_list(),
            session_id,
            cwd=str(settings.get_install_directory()),
            startup_delay=settings.process_startup_delay_seconds,
            limit=settings.stream_buffer_limit_bytes,
        )

    def _lookup_usable(self, key: Tuple[str, str]) -> Optional[Session]:
        with self._state_lock:
            session = self._sessions.get(key)
        if session is None:
            return None
        if session.is_usable():
            return session
        self._retire(session, reason="process no longer running")
        return None

    async def acquire_session(
        self, target_server: str, credential_identity: str = ""
    ) -> Session:
        """Return the live session for a key, spawning one if necessary.

        Concurrent callers for the same key serialize on the spawn so at most
        one process is ever created per key.
        """

        key = self.session_key(target_server, credential_identity)
        existing = self._lookup_usable(key)
        if existing is not None:
            return existing

        async with self._key_locks.hold(key):
            existing = self._lookup_usable(key)
            if existing is not None:
                return existing

            session = await self._create_session(target_server.strip(), credential_identity.strip())
            with self._state_lock:
                self._sessions[key] = session
            return session

    async def _create_session(self, target_server: str, credential_identity: str) -> Session:
        session_id = uuid.uuid4().hex
        process = await self._process_factory(session_id)
        with self._state_lock:
            self._handles.add(process)
            self._spawned_total += 1

        session = Session(
            session_id=session_id,
            target_server=target_server,
            credential_identity=credential_identity,
            process=process,
        )

        try:
            await asyncio.wait_for(
                self._execute_frame(session, SESSION_BOOTSTRAP),
                settings.process_startup_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            self._retire(session, reason="bootstrap timed out")
            raise SpawnFailedError(
                f"PowerShell host did not become ready within "
                f"{settings.process_startup_timeout_seconds:.0f}s"
            ) from exc
        except ProcessServiceError as exc:
            self._retire(session, reason="bootstrap failed")
            raise SpawnFailedError(f"PowerShell host did not become ready: {exc}") from exc
        except asyncio.CancelledError:
            self._retire(session, reason="bootstrap cancelled")
            raise

        logger.info(
            "Created PowerShell session %s for %s (PID: %s)",
            session_id,
            target_server,
            process.pid,
        )
        return session

    async def _execute_frame(
        self,
        session: Session,
        command: str,
        on_output: Optional[OutputCallback] = None,
    ) -> _FrameOutput:
        frame = Frame()
        process = session.process
        await process.write_command(wrap_command(command, frame))

        def _forward(stream: str) -> Optional[Callable[[str], None]]:
            if on_output is None:
                return None
            begun = False

            def _on_line(line: str) -> None:
                nonlocal begun
                if not begun:
                    begun = line.strip() == frame.begin_marker
                    return
                on_output(stream, line)

            return _on_line

        readers = [
            asyncio.ensure_future(
                process.read_until_sentinel(
                    frame.end_marker, stream=stream, on_line=_forward(stream)
                )
            )
            for stream in ("stdout", "stderr")
        ]
        try:
            (stdout_lines, stdout_sentinel), (stderr_lines, _) = await asyncio.gather(*readers)
        finally:
            for reader in readers:
                if not reader.done():
                    reader.cancel()
            for reader in readers:
                with suppress(asyncio.CancelledError, ProcessServiceError):
                    await reader

        return _FrameOutput(
            stdout=frame.payload_lines(stdout_lines),
            stderr=frame.payload_lines(stderr_lines),
            exit_code=frame.parse_exit_code(stdout_sentinel),
        )

    async def run_on_session(
        self,
        session: Session,
        request: InvocationRequest,
        *,
        command: str,
        log_line: str = "",
        cancel_event: Optional[asyncio.Event] = None,
        on_output: Optional[OutputCallback] = None,
        secrets: Sequence[str] = (),
    ) -> InvocationResult:
        """Execute ``command`` on ``session`` under the request's timeout.

        Invocations on one session run strictly in submission order. Time spent
        queued behind another invocation does not count against the timeout.
        Any of ``secrets`` echoed back by the interpreter is replaced with
        ``[REDACTED]`` before output is streamed, logged or returned.
        """

        if on_output is not None and secrets:
            forward = on_output

            def _redacted(stream: str, line: str) -> None:
                forward(stream, redact_text(line, secrets))

            on_output = _redacted

        def _result(kind: ErrorKind, message: str, started: Optional[float] = None) -> InvocationResult:
            duration = 0 if started is None else int((time.monotonic() - started) * 1000)
            return InvocationResult(
                success=False,
                script_id=request.script_id,
                duration_ms=duration,
                sanitized_log_line=log_line,
                session_id=session.session_id,
                error_kind=kind,
                error_message=message,
            )

        if cancel_event is not None and cancel_event.is_set():
            return _result(ErrorKind.CANCELLED, "Invocation cancelled before it started")

        if not await self._acquire_gate(session, cancel_event):
            return _result(ErrorKind.CANCELLED, "Invocation cancelled while queued")

        try:
            if not session.is_usable():
                self._retire(session, reason="process no longer running")
                return _result(
                    ErrorKind.PROCESS_DIED,
                    f"PowerShell session {session.session_id} is no longer running",
                )

            session.state = SessionState.BUSY
            timeout = request.timeout_seconds or settings.default_script_timeout_seconds
            started = time.monotonic()
            logger.debug(
                "Running %s on session %s (timeout %.0fs): %s",
                request.script_id,
                session.session_id,
                timeout,
                log_line,
            )

            execution = asyncio.ensure_future(self._execute_frame(session, command, on_output))
            waiters: Set[asyncio.Future] = {execution}
            cancel_waiter: Optional[asyncio.Future] = None
            if cancel_event is not None:
                cancel_waiter = asyncio.ensure_future(cancel_event.wait())
                waiters.add(cancel_waiter)

            try:
                done, _ = await asyncio.wait(
                    waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
                )
            except asyncio.CancelledError:
                await self._abandon(execution, cancel_waiter)
                self._retire(session, reason="caller task cancelled")
                raise

            if execution not in done:
                await self._abandon(execution, cancel_waiter)
                self._retire(session, reason=f"{request.script_id} abandoned")
                if cancel_waiter is not None and cancel_waiter in done:
                    return _result(ErrorKind.CANCELLED, "Invocation cancelled by caller", started)
                return _result(
                    ErrorKind.TIMEOUT,
                    f"{request.script_id} did not complete within {timeout:.0f}s",
                    started,
                )

            if cancel_waiter is not None:
                cancel_waiter.cancel()
                with suppress(asyncio.CancelledError):
                    await cancel_waiter

            try:
                output = execution.result()
            except (ProcessDiedError, InvocationTimeoutError) as exc:
                self._retire(session, reason=str(exc))
                return _result(ErrorKind.PROCESS_DIED, str(exc), started)

            duration_ms = int((time.monotonic() - started) * 1000)
            stdout = redact_text("\n".join(output.stdout), secrets)
            stderr = redact_text("\n".join(output.stderr), secrets)
            exit_code = output.exit_code
            success = exit_code == 0
            with self._state_lock:
                self._completed_total += 1

            logger.info(
                "%s finished on session %s in %dms (exit code %s)",
                request.script_id,
                session.session_id,
                duration_ms,
                exit_code,
            )
            if not success and stderr:
                logger.warning(
                    "%s stderr: %s", request.script_id, format_output_preview(stderr)
                )

            return InvocationResult(
                success=success,
                script_id=request.script_id,
                stdout_payload=stdout,
                stderr=stderr,
                exit_code=exit_code,
                duration_ms=duration_ms,
                sanitized_log_line=log_line,
                session_id=session.session_id,
                error_kind=None if success else ErrorKind.SCRIPT_ERROR,
                error_message=None
                if success
                else (format_output_preview(stderr) or f"Script exited with code {exit_code}"),
            )
        finally:
            if session.state == SessionState.BUSY:
                session.state = SessionState.IDLE
            session.last_used_at = _utcnow()
            session.gate.release()

    async def _acquire_gate(
        self, session: Session, cancel_event: Optional[asyncio.Event]
    ) -> bool:
        if cancel_event is None:
            await session.gate.acquire()
            return True

        acquire = asyncio.ensure_future(session.gate.acquire())
        cancelled = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({acquire, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            cancelled.cancel()
            if not acquire.cancel() and not acquire.cancelled():
                session.gate.release()
            raise

        cancelled.cancel()
        with suppress(asyncio.CancelledError):
            await cancelled

        if acquire.done() and not acquire.cancelled():
            if cancel_event.is_set():
                session.gate.release()
                return False
            return True

        acquire.cancel()
        with suppress(asyncio.CancelledError):
            await acquire
        # The lock may have been granted between the wait and the cancel
        if acquire.done() and not acquire.cancelled():
            session.gate.release()
        return False

    @staticmethod
    async def _abandon(
        execution: asyncio.Future, cancel_waiter: Optional[asyncio.Future]
    ) -> None:
        for future in (execution, cancel_waiter):
            if future is not None and not future.done():
                future.cancel()
        for future in (execution, cancel_waiter):
            if future is None:
                continue
            with suppress(asyncio.CancelledError, ProcessServiceError):
                await future

    def _retire(self, session: Session, *, reason: str) -> bool:
        """Mark a session dead, forget it and kill its process (idempotent)."""

        session.state = SessionState.DEAD
        with self._state_lock:
            if self._sessions.get(session.key) is session:
                del self._sessions[session.key]
            was_tracked = session.process in self._handles
            self._handles.discard(session.process)
            if was_tracked:
                self._retired_total += 1

        if not was_tracked:
            return False

        logger.info(
            "Retiring PowerShell session %s (PID: %s): %s",
            session.session_id,
            session.process.pid,
            reason,
        )
        try:
            return session.process.kill()
        except Exception:  # pragma: no cover - defensive logging
            logger.debug("Kill failed for PID %s", session.process.pid, exc_info=True)
            return False

    async def discard_session(self, session: Session, *, graceful: bool = True) -> bool:
        """Tear down a session, asking the interpreter to exit first when ``graceful``."""

        session.state = SessionState.DEAD
        with self._state_lock:
            if self._sessions.get(session.key) is session:
                del self._sessions[session.key]
            was_tracked = session.process in self._handles
            self._handles.discard(session.process)

        if not was_tracked:
            return False
        if graceful:
            return await session.process.terminate(settings.graceful_exit_timeout_seconds)
        return session.process.kill()

    def prune_dead_sessions(self) -> int:
        """Forget sessions whose host process exited on its own."""

        with self._state_lock:
            candidates = [
                session
                for session in self._sessions.values()
                if session.state != SessionState.BUSY and not session.process.is_alive()
            ]
        for session in candidates:
            self._retire(session, reason="process exited")
        return len(candidates)

    def cleanup_all_processes(self) -> int:
        """Kill every tracked host process and return how many were killed.

        Safe to call repeatedly and never raises.
        """

        with self._state_lock:
            handles = list(self._handles)
            sessions = list(self._sessions.values())
            self._handles.clear()
            self._sessions.clear()

        for session in sessions:
            session.state = SessionState.DEAD

        killed = 0
        for handle in handles:
            try:
                if handle.kill():
                    killed += 1
            except Exception:  # pragma: no cover - defensive logging
                logger.debug("Failed to kill PowerShell host %s", handle.pid, exc_info=True)

        if handles:
            logger.info(
                "Cleaned up %d PowerShell process(es); %d required a kill", len(handles), killed
            )
        return killed

    def get_active_process_count(self) -> int:
        """Number of tracked host processes that are still running."""

        with self._state_lock:
            handles = list(self._handles)
        return sum(1 for handle in handles if handle.is_alive())

    def get_session(self, target_server: str, credential_identity: str = "") -> Optional[Session]:
        with self._state_lock:
            return self._sessions.get(self.session_key(target_server, credential_identity))

    def get_diagnostics(self) -> List[SessionInfo]:
        """Return a snapshot of every pooled session."""

        with self._state_lock:
            sessions = list(self._sessions.values())
        return [
            SessionInfo(
                session_id=session.session_id,
                target_server=session.target_server,
                credential_identity=session.credential_identity,
                state=session.state,
                created_at=session.created_at,
                last_used_at=session.last_used_at,
                process=session.process.health(),
            )
            for session in sessions
        ]

    def get_metrics(self) -> Dict[str, int]:
        with self._state_lock:
            return {
                "sessions": len(self._sessions),
                "tracked_processes": len(self._handles),
                "spawned_total": self._spawned_total,
                "completed_total": self._completed_total,
                "retired_total": self._retired_total,
            }
