"""Public entry point for running catalog scripts on persistent sessions."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from ..core.config import settings
from ..core.models import (
    Credentials,
    ErrorKind,
    InvocationRequest,
    InvocationResult,
    OutputFormat,
)
from .connection_registry import ConnectionRegistry, ConnectionResult, pair_target
from .error_advisor import describe_failure, looks_like_authentication_failure
from .invocation_log import InvocationLog
from .parameter_sanitizer import sanitize_parameters, secret_values
from .process_handle import SpawnFailedError
from .script_builder import (
    POWERCLI_PROBE_SCRIPT,
    PowerShellExpression,
    build_script_invocation,
    connection_variable_name,
    extract_json_payload,
    invalid_parameter_names,
)
from .session_pool import LOCAL_TARGET, OutputCallback, Session, SessionPool

logger = logging.getLogger(__name__)

AD_HOC_SCRIPT_ID = "ad-hoc"
POWERCLI_PROBE_ID = "Test-PowerCLIAvailability"


class ScriptInvoker:
    """Resolve a session, run a script on it and validate what comes back."""

    def __init__(
        self,
        pool: SessionPool,
        registry: ConnectionRegistry,
        invocation_log: Optional[InvocationLog] = None,
        *,
        scripts_directory: Optional[str] = None,
    ) -> None:
        self._pool = pool
        self._registry = registry
        self._log = invocation_log or InvocationLog()
        self._scripts_directory = Path(scripts_directory or settings.scripts_directory)
        self._powercli_available: Optional[bool] = None

    @property
    def powercli_available(self) -> Optional[bool]:
        return self._powercli_available

    def resolve_script(self, script_id: str) -> Optional[Path]:
        """Map a script id to a ``.ps1`` file inside the scripts directory."""

        name = script_id if script_id.lower().endswith(".ps1") else f"{script_id}.ps1"
        base = self._scripts_directory.expanduser().resolve()
        candidate = (base / name).resolve()
        if base not in candidate.parents:
            logger.warning("Rejected script id outside the scripts directory: %r", script_id)
            return None
        if not candidate.is_file():
            return None
        return candidate

    async def run(
        self,
        script_id: str,
        parameters: Optional[Mapping[str, Any]] = None,
        log_path: Optional[str] = None,
        timeout: Optional[float] = None,
        *,
        target_server: Optional[str] = None,
        credentials: Optional[Credentials] = None,
        output_format: OutputFormat = OutputFormat.JSON,
        cancel_event: Optional[asyncio.Event] = None,
        on_output: Optional[OutputCallback] = None,
    ) -> InvocationResult:
        """Run ``script_id`` with ``parameters`` and return a structured result."""

        request = InvocationRequest(
            script_id=script_id,
            parameters=dict(parameters or {}),
            log_path=log_path,
            timeout_seconds=timeout,
            target_server=target_server,
            output_format=output_format,
        )
        return await self.run_request(
            request,
            credentials=credentials,
            cancel_event=cancel_event,
            on_output=on_output,
        )

    async def run_request(
        self,
        request: InvocationRequest,
        *,
        credentials: Optional[Credentials] = None,
        cancel_event: Optional[asyncio.Event] = None,
        on_output: Optional[OutputCallback] = None,
    ) -> InvocationResult:
        log_line = sanitize_parameters(request.parameters)
        script_path, failure = self._prepare(request, log_line)
        if failure is not None:
            return self._record(request, failure)

        session, connection_variable, failure = await self._resolve_session(
            request, credentials, log_line
        )
        if failure is not None:
            return self._record(request, failure)

        command = build_script_invocation(
            str(script_path),
            self._script_parameters(request),
            request.log_path or self._log.default_script_log_path(request.script_id),
            connection_variable,
        )
        return await self._execute(
            session,
            request,
            command,
            log_line,
            secrets=secret_values(
                request.parameters, [credentials.secret] if credentials else ()
            ),
            cancel_event=cancel_event,
            on_output=on_output,
        )

    async def run_dual(
        self,
        script_id: str,
        parameters: Optional[Mapping[str, Any]] = None,
        log_path: Optional[str] = None,
        timeout: Optional[float] = None,
        *,
        source_server: str,
        target_server: str,
        source_credentials: Optional[Credentials] = None,
        target_credentials: Optional[Credentials] = None,
        output_format: OutputFormat = OutputFormat.JSON,
        cancel_event: Optional[asyncio.Event] = None,
        on_output: Optional[OutputCallback] = None,
    ) -> InvocationResult:
        """Run a migration script connected to both a source and a target vCenter.

        The script receives the two PowerCLI connections as ``-SourceVCenter``
        and ``-TargetVCenter``, and the target is pinned as the default server.
        Both connections live in one session dedicated to the pair. Supply
        credentials for both servers, or neither to reuse a pair that is
        already connected.
        """

        request = InvocationRequest(
            script_id=script_id,
            parameters=dict(parameters or {}),
            log_path=log_path,
            timeout_seconds=timeout,
            target_server=pair_target(source_server, target_server),
            output_format=output_format,
        )
        log_line = sanitize_parameters(request.parameters)
        script_path, failure = self._prepare(request, log_line)
        if failure is not None:
            return self._record(request, failure)

        if (source_credentials is None) != (target_credentials is None):
            return self._record(
                request,
                self._failure(
                    request,
                    ErrorKind.INVALID_PARAMETERS,
                    "Credentials must be supplied for both vCenter servers or for neither",
                    log_line,
                ),
            )

        if source_credentials is not None and target_credentials is not None:
            connection = await self._registry.get_or_establish_pair(
                source_server, source_credentials, target_server, target_credentials
            )
            if not connection.success:
                return self._record(request, self._connection_failure(request, connection, log_line))
            session = connection.session
        else:
            session = self._registry.get_established_pair(source_server, target_server)
            if session is None:
                return self._record(
                    request,
                    self._failure(
                        request,
                        ErrorKind.AUTHENTICATION_FAILED,
                        f"No authenticated connection to {request.target_server}; connect first",
                        log_line,
                    ),
                )

        arguments = self._script_parameters(request)
        arguments["SourceVCenter"] = PowerShellExpression(
            f"$global:{connection_variable_name(source_server)}"
        )
        arguments["TargetVCenter"] = PowerShellExpression(
            f"$global:{connection_variable_name(target_server)}"
        )
        command = build_script_invocation(
            str(script_path),
            arguments,
            request.log_path or self._log.default_script_log_path(request.script_id),
            connection_variable_name(target_server),
        )
        credential_secrets = [
            credentials.secret
            for credentials in (source_credentials, target_credentials)
            if credentials is not None
        ]
        return await self._execute(
            session,
            request,
            command,
            log_line,
            secrets=secret_values(request.parameters, credential_secrets),
            cancel_event=cancel_event,
            on_output=on_output,
        )

    def _prepare(
        self, request: InvocationRequest, log_line: str
    ) -> Tuple[Optional[Path], Optional[InvocationResult]]:
        script_path = self.resolve_script(request.script_id)
        if script_path is None:
            return None, self._failure(
                request,
                ErrorKind.SCRIPT_NOT_FOUND,
                f"Script '{request.script_id}' was not found in {self._scripts_directory}",
                log_line,
            )

        rejected = invalid_parameter_names(request.parameters)
        if rejected:
            return None, self._failure(
                request,
                ErrorKind.INVALID_PARAMETERS,
                "Invalid parameter name(s): " + ", ".join(rejected),
                log_line,
            )
        return script_path, None

    def _script_parameters(self, request: InvocationRequest) -> Dict[str, Any]:
        parameters = dict(request.parameters)
        if self._powercli_available and request.script_id in settings.get_powercli_scripts_list():
            parameters.setdefault("BypassModuleCheck", True)
        return parameters

    async def run_command(
        self,
        command: str,
        *,
        timeout: Optional[float] = None,
        script_id: str = AD_HOC_SCRIPT_ID,
        cancel_event: Optional[asyncio.Event] = None,
        on_output: Optional[OutputCallback] = None,
    ) -> InvocationResult:
        """Run an ad-hoc command on the local session and return its text output."""

        request = InvocationRequest(
            script_id=script_id,
            timeout_seconds=timeout,
            output_format=OutputFormat.TEXT,
        )
        session, _, failure = await self._resolve_session(request, None, "")
        if failure is not None:
            return self._record(request, failure)
        return await self._execute(
            session,
            request,
            command,
            "",
            cancel_event=cancel_event,
            on_output=on_output,
            require_output=False,
        )

    async def probe_powercli(self) -> bool:
        """Check whether the VMware.PowerCLI module is installed for the interpreter."""

        result = await self.run_command(
            POWERCLI_PROBE_SCRIPT,
            timeout=settings.connect_timeout_seconds,
            script_id=POWERCLI_PROBE_ID,
        )
        lines = [line.strip() for line in result.stdout_payload.splitlines() if line.strip()]
        available = result.success and bool(lines) and lines[-1].lower() == "true"
        self._powercli_available = available
        if available:
            logger.info("VMware.PowerCLI module is available")
        else:
            logger.warning("VMware.PowerCLI module was not found for the configured PowerShell")
        return available

    async def _resolve_session(
        self,
        request: InvocationRequest,
        credentials: Optional[Credentials],
        log_line: str,
    ) -> Tuple[Optional[Session], Optional[str], Optional[InvocationResult]]:
        target = request.target_server
        if not target:
            try:
                return await self._pool.acquire_session(LOCAL_TARGET), None, None
            except SpawnFailedError as exc:
                return None, None, self._failure(request, ErrorKind.SPAWN_FAILED, str(exc), log_line)

        if credentials is not None:
            connection = await self._registry.get_or_establish(target, credentials)
            if not connection.success:
                return None, None, self._connection_failure(request, connection, log_line)
            return connection.session, connection_variable_name(target), None

        session = self._registry.get_established(target)
        if session is None:
            return None, None, self._failure(
                request,
                ErrorKind.AUTHENTICATION_FAILED,
                f"No authenticated connection to {target}; connect first",
                log_line,
            )
        return session, connection_variable_name(target), None

    @staticmethod
    def _connection_failure(
        request: InvocationRequest, connection: ConnectionResult, log_line: str
    ) -> InvocationResult:
        return InvocationResult(
            success=False,
            script_id=request.script_id,
            sanitized_log_line=log_line,
            error_kind=connection.error_kind,
            error_message=connection.error_message,
            suggested_action=connection.suggested_action,
        )

    async def _execute(
        self,
        session: Session,
        request: InvocationRequest,
        command: str,
        log_line: str,
        *,
        cancel_event: Optional[asyncio.Event],
        on_output: Optional[OutputCallback],
        secrets: Sequence[str] = (),
        require_output: bool = True,
    ) -> InvocationResult:
        self._log.record_start(
            request.script_id,
            request.parameters,
            session_id=session.session_id,
            target_server=request.target_server,
        )
        result = await self._pool.run_on_session(
            session,
            request,
            command=command,
            log_line=log_line,
            cancel_event=cancel_event,
            on_output=on_output,
            secrets=secrets,
        )
        return self._record(request, self._finalize(request, result, require_output))

    def _finalize(
        self, request: InvocationRequest, result: InvocationResult, require_output: bool
    ) -> InvocationResult:
        if result.success:
            if require_output and not result.stdout_payload.strip():
                return self._with_advice(
                    result, ErrorKind.INVALID_OUTPUT, "Script produced no output"
                )
            if request.output_format == OutputFormat.JSON:
                payload = extract_json_payload(result.stdout_payload)
                if payload is None:
                    return self._with_advice(
                        result,
                        ErrorKind.INVALID_OUTPUT,
                        "Script output did not end with a JSON document",
                    )
                return result.model_copy(update={"json_payload": payload})
            return result

        kind = result.error_kind or ErrorKind.SCRIPT_ERROR
        detail = result.stderr or result.error_message or result.stdout_payload
        if (
            kind == ErrorKind.SCRIPT_ERROR
            and request.target_server
            and looks_like_authentication_failure(detail)
        ):
            logger.warning(
                "%s reported an authentication failure; dropping connection for %s",
                request.script_id,
                request.target_server,
            )
            self._registry.invalidate(request.target_server)
            kind = ErrorKind.AUTHENTICATION_FAILED
        return self._with_advice(result, kind, detail)

    @staticmethod
    def _with_advice(
        result: InvocationResult, kind: ErrorKind, detail: Optional[str]
    ) -> InvocationResult:
        message, action = describe_failure(kind, detail, result.script_id)
        return result.model_copy(
            update={
                "success": False,
                "error_kind": kind,
                "error_message": message,
                "suggested_action": action,
            }
        )

    def _failure(
        self,
        request: InvocationRequest,
        kind: ErrorKind,
        detail: str,
        log_line: str,
    ) -> InvocationResult:
        message, action = describe_failure(kind, detail, request.script_id)
        return InvocationResult(
            success=False,
            script_id=request.script_id,
            sanitized_log_line=log_line,
            error_kind=kind,
            error_message=message,
            suggested_action=action,
        )

    def _record(self, request: InvocationRequest, result: InvocationResult) -> InvocationResult:
        self._log.record_result(result, request.parameters, target_server=request.target_server)
        if result.success:
            logger.info("%s succeeded in %dms", result.script_id, result.duration_ms)
        elif result.cancelled:
            logger.info("%s cancelled (%s)", result.script_id, result.sanitized_log_line)
        else:
            logger.error(
                "%s failed [%s]: %s (parameters: %s)",
                result.script_id,
                result.error_kind.value if result.error_kind else "unknown",
                result.error_message,
                result.sanitized_log_line,
            )
        return result
