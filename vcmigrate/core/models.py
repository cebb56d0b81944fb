"""Data models for the application."""
import re
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator
from typing import Optional, Dict, Any, List
from datetime import datetime
from enum import Enum


# Script parameter names are emitted unquoted as "-Name", so only identifiers pass
PARAMETER_NAME_PATTERN = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


class SessionState(str, Enum):
    """Lifecycle state of a pooled PowerShell session."""
    IDLE = "idle"
    BUSY = "busy"
    DEAD = "dead"


class OutputFormat(str, Enum):
    """Expected shape of a script's primary stdout payload."""
    JSON = "json"
    TEXT = "text"


class ErrorKind(str, Enum):
    """Failure taxonomy reported on invocation and connection results."""
    SPAWN_FAILED = "spawn_failed"
    PROCESS_DIED = "process_died"
    TIMEOUT = "timeout"
    AUTHENTICATION_FAILED = "authentication_failed"
    INVALID_OUTPUT = "invalid_output"
    CANCELLED = "cancelled"
    SCRIPT_NOT_FOUND = "script_not_found"
    SCRIPT_ERROR = "script_error"
    INVALID_PARAMETERS = "invalid_parameters"


class Credentials(BaseModel):
    """Opaque identity/secret pair supplied by the host's credential store."""

    model_config = ConfigDict(frozen=True)

    identity: str
    secret: SecretStr


class InvocationRequest(BaseModel):
    """A single script invocation. Immutable once submitted."""

    model_config = ConfigDict(frozen=True)

    script_id: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    log_path: Optional[str] = None
    timeout_seconds: Optional[float] = None  # None selects the configured default
    target_server: Optional[str] = None  # None runs on the local session
    output_format: OutputFormat = OutputFormat.JSON

    @field_validator("parameters", mode="before")
    @classmethod
    def _copy_parameters(cls, value: Any) -> Dict[str, Any]:
        # Detach from the caller's mapping so later mutation cannot leak in
        if value is None:
            return {}
        return dict(value)


class InvocationResult(BaseModel):
    """Outcome of one invocation. Produced once and never mutated."""

    model_config = ConfigDict(frozen=True)

    success: bool
    script_id: str
    stdout_payload: str = ""
    json_payload: Optional[Any] = None
    stderr: str = ""
    exit_code: Optional[int] = None
    duration_ms: int = 0
    sanitized_log_line: str = ""
    session_id: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    suggested_action: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.error_kind == ErrorKind.CANCELLED


class ConnectionInfo(BaseModel):
    """Details of an authenticated vCenter connection held by a session."""

    target_server: str
    credential_identity: str
    session_id: str
    remote_session_id: Optional[str] = None
    server_version: Optional[str] = None
    connected_at: datetime


class ProcessHealth(BaseModel):
    """Point-in-time health of a PowerShell host process."""

    pid: Optional[int] = None
    alive: bool
    status: Optional[str] = None
    runtime_seconds: float = 0.0
    memory_mb: Optional[float] = None


class SessionInfo(BaseModel):
    """Diagnostic snapshot of a pooled session."""

    session_id: str
    target_server: str
    credential_identity: str
    state: SessionState
    created_at: datetime
    last_used_at: datetime
    process: ProcessHealth


class DiagnosticsResponse(BaseModel):
    """Process manager diagnostics."""

    active_process_count: int
    sessions: List[SessionInfo] = Field(default_factory=list)
    connections: List[ConnectionInfo] = Field(default_factory=list)
    powercli_available: Optional[bool] = None
    metrics: Dict[str, int] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    timestamp: datetime
    active_process_count: int = 0


class ConnectionRequest(BaseModel):
    """Request to establish a persistent vCenter connection."""

    server: str
    username: str
    password: SecretStr


class ConnectionResponse(BaseModel):
    """Result of a connection attempt."""

    success: bool
    connection: Optional[ConnectionInfo] = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    suggested_action: Optional[str] = None


class ScriptRunRequest(BaseModel):
    """Request body for running a catalog script."""

    parameters: Dict[str, Any] = Field(default_factory=dict)
    log_path: Optional[str] = None
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    target_server: Optional[str] = None
    source_server: Optional[str] = None  # set for scripts that migrate between two vCenters
    output_format: OutputFormat = OutputFormat.JSON

    @field_validator("parameters")
    @classmethod
    def _check_parameter_names(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        invalid = [name for name in value if not PARAMETER_NAME_PATTERN.fullmatch(name)]
        if invalid:
            raise ValueError(f"Invalid parameter name(s): {', '.join(map(repr, invalid))}")
        return value

    @model_validator(mode="after")
    def _source_requires_target(self) -> "ScriptRunRequest":
        if self.source_server and not self.target_server:
            raise ValueError("source_server requires target_server")
        return self


class PairConnectionRequest(BaseModel):
    """Request to connect one session to both vCenters of a migration."""

    source: ConnectionRequest
    target: ConnectionRequest


class ConnectionStatusResponse(BaseModel):
    """Outcome of probing a stored connection."""

    server: str
    connected: bool


class PowerCLIStatusResponse(BaseModel):
    """Whether the VMware.PowerCLI module is available to the interpreter."""

    available: bool
