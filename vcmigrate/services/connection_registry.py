"""Registry of authenticated vCenter connections held by pooled sessions.

Once ``Connect-VIServer`` succeeds inside a host process, the connection is
kept in a global PowerShell variable and reused by every later script for
that server, so scripts never pay the reconnection cost.

Migration scripts that read from one vCenter and write to another need both
connections inside the same process. Such a pair gets its own session,
registered under ``"<source> => <target>"``.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from ..core.config import settings
from ..core.models import (
    ConnectionInfo,
    Credentials,
    ErrorKind,
    InvocationRequest,
    InvocationResult,
    OutputFormat,
)
from .error_advisor import describe_failure
from .parameter_sanitizer import redact_text, sanitize_parameters, secret_values
from .process_handle import SpawnFailedError
from .script_builder import (
    CONNECTION_FAILED_MARKER,
    CONNECTION_SUCCESS_MARKER,
    SESSION_ID_MARKER,
    VERSION_MARKER,
    build_connect_script,
    build_connection_probe_script,
    build_disconnect_script,
)
from .session_pool import KeyedLocks, Session, SessionPool

logger = logging.getLogger(__name__)

CONNECT_SCRIPT_ID = "Connect-VIServer"
DISCONNECT_SCRIPT_ID = "Disconnect-VIServer"
PROBE_SCRIPT_ID = "Test-VIConnection"

PAIR_SEPARATOR = " => "

_AUXILIARY_TIMEOUT_SECONDS = 30.0


@dataclass
class _Connection:
    target_server: str
    credential_identity: str
    session: Session
    remote_session_id: Optional[str]
    server_version: Optional[str]
    connected_at: datetime
    servers: Tuple[str, ...] = ()

    def connected_servers(self) -> Tuple[str, ...]:
        return self.servers or (self.target_server,)

    def to_info(self) -> ConnectionInfo:
        return ConnectionInfo(
            target_server=self.target_server,
            credential_identity=self.credential_identity,
            session_id=self.session.session_id,
            remote_session_id=self.remote_session_id,
            server_version=self.server_version,
            connected_at=self.connected_at,
        )


@dataclass(frozen=True)
class ConnectionResult:
    """Outcome of ``get_or_establish``: a session or a classified failure."""

    success: bool
    session: Optional[Session] = None
    info: Optional[ConnectionInfo] = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    suggested_action: Optional[str] = None

    @classmethod
    def failure(cls, kind: ErrorKind, detail: Optional[str]) -> "ConnectionResult":
        message, action = describe_failure(kind, detail)
        return cls(success=False, error_kind=kind, error_message=message, suggested_action=action)


@dataclass(frozen=True)
class _Handshake:
    remote_session_id: Optional[str] = None
    server_version: Optional[str] = None
    failure: Optional[ConnectionResult] = None


def _normalize(target_server: str) -> str:
    return target_server.strip().lower()


def pair_target(source_server: str, target_server: str) -> str:
    """Registry name of the session connected to both servers of a migration."""

    return f"{source_server.strip()}{PAIR_SEPARATOR}{target_server.strip()}"


class ConnectionRegistry:
    """Maps vCenter servers to sessions that already hold a live connection."""

    def __init__(self, pool: SessionPool, *, bypass_module_check: Optional[bool] = None) -> None:
        self._pool = pool
        self._bypass_module_check = (
            settings.bypass_module_check if bypass_module_check is None else bypass_module_check
        )
        self._connections: Dict[str, _Connection] = {}
        self._lock = threading.Lock()
        self._target_locks = KeyedLocks()

    def _pop(self, key: str) -> Optional[_Connection]:
        with self._lock:
            return self._connections.pop(key, None)

    async def _reuse(self, key: str, identity: str, label: str) -> Optional[ConnectionResult]:
        """Return the stored connection for ``key`` or clear a stale one."""

        with self._lock:
            entry = self._connections.get(key)
        if entry is None:
            return None
        if entry.credential_identity == identity and entry.session.is_usable():
            return ConnectionResult(success=True, session=entry.session, info=entry.to_info())
        if entry.credential_identity != identity:
            logger.info(
                "Credential identity for %s changed; replacing existing connection", label
            )
            await self._disconnect_entry(self._pop(key))
        else:
            self._pop(key)
        return None

    async def get_or_establish(
        self, target_server: str, credentials: Credentials
    ) -> ConnectionResult:
        """Return a session authenticated to ``target_server``, connecting if needed."""

        key = _normalize(target_server)
        identity = credentials.identity.strip()

        async with self._target_locks.hold(key):
            reused = await self._reuse(key, identity, target_server)
            if reused is not None:
                return reused

            target = target_server.strip()
            try:
                session = await self._pool.acquire_session(target, identity)
            except SpawnFailedError as exc:
                logger.error("Could not start PowerShell for %s: %s", target, exc)
                return ConnectionResult.failure(ErrorKind.SPAWN_FAILED, str(exc))

            handshake = await self._connect_on(session, target, credentials)
            if handshake.failure is not None:
                return handshake.failure
            return self._register(key, target, identity, session, handshake)

    async def get_or_establish_pair(
        self,
        source_server: str,
        source_credentials: Credentials,
        target_server: str,
        target_credentials: Credentials,
    ) -> ConnectionResult:
        """Return one session authenticated to both ``source_server`` and ``target_server``.

        Source is connected first. If either connect fails the session is kept
        for a retry, exactly as for a single server.
        """

        label = pair_target(source_server, target_server)
        key = _normalize(label)
        identity = (
            f"{source_credentials.identity.strip()}|{target_credentials.identity.strip()}"
        )

        async with self._target_locks.hold(key):
            reused = await self._reuse(key, identity, label)
            if reused is not None:
                return reused

            try:
                session = await self._pool.acquire_session(label, identity)
            except SpawnFailedError as exc:
                logger.error("Could not start PowerShell for %s: %s", label, exc)
                return ConnectionResult.failure(ErrorKind.SPAWN_FAILED, str(exc))

            handshake = _Handshake()
            for server, credentials in (
                (source_server.strip(), source_credentials),
                (target_server.strip(), target_credentials),
            ):
                handshake = await self._connect_on(session, server, credentials)
                if handshake.failure is not None:
                    return handshake.failure
            return self._register(
                key,
                label,
                identity,
                session,
                handshake,
                servers=(source_server.strip(), target_server.strip()),
            )

    async def _connect_on(
        self, session: Session, target_server: str, credentials: Credentials
    ) -> _Handshake:
        identity = credentials.identity.strip()
        request = InvocationRequest(
            script_id=CONNECT_SCRIPT_ID,
            parameters={"Server": target_server, "User": identity, "Password": credentials.secret},
            timeout_seconds=settings.connect_timeout_seconds,
            target_server=target_server,
            output_format=OutputFormat.TEXT,
        )
        command = build_connect_script(
            target_server,
            identity,
            credentials.secret.get_secret_value(),
            import_modules=not self._bypass_module_check,
        )
        secrets = secret_values(request.parameters)
        log_line = sanitize_parameters(request.parameters)
        logger.info("Connecting to vCenter %s (%s)", target_server, log_line)

        result = await self._pool.run_on_session(
            session, request, command=command, log_line=log_line, secrets=secrets
        )
        return self._interpret_connect_result(target_server, result, secrets)

    def _interpret_connect_result(
        self,
        target_server: str,
        result: InvocationResult,
        secrets: List[str],
    ) -> _Handshake:
        if result.error_kind in (ErrorKind.TIMEOUT, ErrorKind.PROCESS_DIED, ErrorKind.CANCELLED):
            logger.error(
                "Connection to %s failed: %s", target_server, result.error_message
            )
            return _Handshake(failure=ConnectionResult.failure(result.error_kind, result.error_message))

        remote_session_id: Optional[str] = None
        version: Optional[str] = None
        succeeded = False
        failure_message: Optional[str] = None
        for raw in result.stdout_payload.splitlines():
            line = raw.strip()
            if line.startswith(CONNECTION_FAILED_MARKER):
                failure_message = line[len(CONNECTION_FAILED_MARKER):].strip()
            elif line.startswith(CONNECTION_SUCCESS_MARKER):
                succeeded = True
            elif line.startswith(SESSION_ID_MARKER):
                remote_session_id = line[len(SESSION_ID_MARKER):].strip() or None
            elif line.startswith(VERSION_MARKER):
                version = line[len(VERSION_MARKER):].strip() or None

        if failure_message is not None or not succeeded:
            detail = redact_text(
                failure_message or result.stderr or "no CONNECTION_SUCCESS found", secrets
            )
            kind = ErrorKind.AUTHENTICATION_FAILED if failure_message else ErrorKind.INVALID_OUTPUT
            logger.error("PowerCLI connection error for %s: %s", target_server, detail)
            return _Handshake(failure=ConnectionResult.failure(kind, detail))

        return _Handshake(remote_session_id=remote_session_id, server_version=version)

    def _register(
        self,
        key: str,
        target_server: str,
        identity: str,
        session: Session,
        handshake: _Handshake,
        *,
        servers: Tuple[str, ...] = (),
    ) -> ConnectionResult:
        entry = _Connection(
            target_server=target_server,
            credential_identity=identity,
            session=session,
            remote_session_id=handshake.remote_session_id,
            server_version=handshake.server_version,
            connected_at=datetime.now(timezone.utc),
            servers=servers,
        )
        with self._lock:
            self._connections[key] = entry
        logger.info(
            "Connected to vCenter %s (version %s, session %s)",
            target_server,
            handshake.server_version or "unknown",
            handshake.remote_session_id or "unknown",
        )
        return ConnectionResult(success=True, session=session, info=entry.to_info())

    def get_established(self, target_server: str) -> Optional[Session]:
        """Return the connected session for ``target_server`` if it is still usable."""

        key = _normalize(target_server)
        with self._lock:
            entry = self._connections.get(key)
        if entry is None:
            return None
        if not entry.session.is_usable():
            self.invalidate(target_server)
            return None
        return entry.session

    def get_established_pair(self, source_server: str, target_server: str) -> Optional[Session]:
        return self.get_established(pair_target(source_server, target_server))

    def invalidate(self, target_server: str) -> bool:
        """Forget the connection without touching its process."""

        entry = self._pop(_normalize(target_server))
        if entry is not None:
            logger.info("Invalidated vCenter connection for %s", entry.target_server)
        return entry is not None

    def get_connection_info(self, target_server: str) -> Optional[ConnectionInfo]:
        with self._lock:
            entry = self._connections.get(_normalize(target_server))
        return entry.to_info() if entry else None

    def list_connections(self) -> List[ConnectionInfo]:
        with self._lock:
            entries = list(self._connections.values())
        return [entry.to_info() for entry in entries]

    async def verify(self, target_server: str) -> bool:
        """Probe ``IsConnected`` on the stored connection; invalidate if it fails."""

        session = self.get_established(target_server)
        if session is None:
            return False

        request = InvocationRequest(
            script_id=PROBE_SCRIPT_ID,
            timeout_seconds=_AUXILIARY_TIMEOUT_SECONDS,
            target_server=target_server,
            output_format=OutputFormat.TEXT,
        )
        result = await self._pool.run_on_session(
            session, request, command=build_connection_probe_script(target_server)
        )
        lines = [line.strip() for line in result.stdout_payload.splitlines() if line.strip()]
        connected = result.success and bool(lines) and lines[-1].lower() == "true"
        if not connected:
            logger.warning("vCenter connection for %s is no longer active", target_server)
            self.invalidate(target_server)
        return connected

    async def _disconnect_entry(self, entry: Optional[_Connection]) -> bool:
        if entry is None:
            return False
        session = entry.session
        if session.is_usable():
            request = InvocationRequest(
                script_id=DISCONNECT_SCRIPT_ID,
                timeout_seconds=_AUXILIARY_TIMEOUT_SECONDS,
                target_server=entry.target_server,
                output_format=OutputFormat.TEXT,
            )
            command = "\n".join(
                build_disconnect_script(server) for server in entry.connected_servers()
            )
            result = await self._pool.run_on_session(session, request, command=command)
            if not result.success:
                logger.warning(
                    "Disconnect-VIServer for %s did not complete cleanly: %s",
                    entry.target_server,
                    result.error_message,
                )
        await self._pool.discard_session(session, graceful=True)
        logger.info("Disconnected from vCenter %s", entry.target_server)
        return True

    async def disconnect(self, target_server: str) -> bool:
        """Close the connection for ``target_server`` and discard its session."""

        key = _normalize(target_server)
        async with self._target_locks.hold(key):
            return await self._disconnect_entry(self._pop(key))

    async def disconnect_all(self) -> int:
        """Disconnect every registered server. Failures are logged and skipped."""

        with self._lock:
            targets = [entry.target_server for entry in self._connections.values()]

        disconnected = 0
        for target in targets:
            try:
                if await self.disconnect(target):
                    disconnected += 1
            except Exception:  # pragma: no cover - defensive logging
                logger.exception("Failed to disconnect from %s", target)
        return disconnected
