"""PowerShell text generation and per-invocation output framing.

Every request written to a persistent host process is a single stdin line.
The line decodes a base64 payload and dot-sources it, which sidesteps the
multi-line statement rules of ``-Command -``. The payload writes a begin
marker, runs the command, and finishes with an end marker carrying the exit
code. Markers go to both stdout and stderr so each stream can be read up to
a known boundary without depending on the other.
"""

from __future__ import annotations

import base64
import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional

from ..core.models import PARAMETER_NAME_PATTERN

logger = logging.getLogger(__name__)

FRAME_PREFIX = "__VCMIGRATE_FRAME__"

CONNECTION_SUCCESS_MARKER = "CONNECTION_SUCCESS"
CONNECTION_FAILED_MARKER = "CONNECTION_FAILED:"
SESSION_ID_MARKER = "SESSION_ID:"
VERSION_MARKER = "VERSION:"
MODULES_LOADED_MARKER = "MODULES_LOADED"

# First frame sent to every new host process.
SESSION_BOOTSTRAP = "\n".join(
    [
        "[Console]::OutputEncoding = [System.Text.Encoding]::UTF8",
        "$OutputEncoding = [System.Text.Encoding]::UTF8",
        "$ProgressPreference = 'SilentlyContinue'",
        "$ConfirmPreference = 'None'",
        "Write-Output \"READY:$PID\"",
    ]
)

POWERCLI_PROBE_SCRIPT = (
    "if (Get-Module -ListAvailable -Name 'VMware.PowerCLI') { 'true' } else { 'false' }"
)


class InvalidParameterError(ValueError):
    """Raised when a parameter name cannot be passed to a script safely."""


class PowerShellExpression(str):
    """A parameter value emitted verbatim, such as a variable reference."""


@dataclass(frozen=True)
class Frame:
    """Begin/end markers delimiting one invocation on a shared pipe."""

    token: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def begin_marker(self) -> str:
        return f"{FRAME_PREFIX}:BEGIN:{self.token}"

    @property
    def end_marker(self) -> str:
        return f"{FRAME_PREFIX}:END:{self.token}"

    def parse_exit_code(self, sentinel_line: Optional[str]) -> Optional[int]:
        """Extract the exit code appended to the stdout end marker."""

        if not sentinel_line:
            return None
        remainder = sentinel_line.strip()[len(self.end_marker):].lstrip(":").strip()
        try:
            return int(remainder)
        except ValueError:
            logger.debug("Unparseable exit code in frame trailer: %r", sentinel_line)
            return None

    def payload_lines(self, lines: Iterable[str]) -> List[str]:
        """Return the lines that follow this frame's begin marker.

        Anything earlier was emitted after a previous frame closed (stray
        prompts, late background output) and does not belong to this call.
        """

        collected = list(lines)
        for index, line in enumerate(collected):
            if line.strip() == self.begin_marker:
                stale = collected[:index]
                if stale:
                    logger.debug(
                        "Discarding %d stale line(s) ahead of frame %s",
                        len(stale),
                        self.token,
                    )
                return collected[index + 1 :]
        logger.debug("Frame %s begin marker not observed; keeping all output", self.token)
        return collected


def ps_quote(value: str) -> str:
    """Return a single-quoted PowerShell literal."""

    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def connection_variable_name(target_server: str) -> str:
    """Global variable holding the VIServer connection for a target."""

    slug = re.sub(r"[^0-9A-Za-z]", "_", target_server.strip().lower())
    return f"VIConnection_{slug}"


def _render_frame(command: str, frame: Frame) -> str:
    begin = ps_quote(frame.begin_marker)
    end = ps_quote(frame.end_marker)
    lines = [
        "$ErrorActionPreference = 'Continue'",
        "$global:LASTEXITCODE = 0",
        "$__vcmExit = 0",
        f"[Console]::Out.WriteLine({begin}); [Console]::Out.Flush()",
        f"[Console]::Error.WriteLine({begin}); [Console]::Error.Flush()",
        "try {",
        "    & {",
        "        " + command.replace("\n", "\n        "),
        "    } 2>&1 | ForEach-Object {",
        "        if ($_ -is [System.Management.Automation.ErrorRecord]) {",
        "            [Console]::Error.WriteLine(($_ | Out-String).TrimEnd())",
        "        } elseif ($_ -is [string]) {",
        "            [Console]::Out.WriteLine($_)",
        "        } else {",
        "            $_ | Out-String -Stream -Width 4096 | ForEach-Object { [Console]::Out.WriteLine($_) }",
        "        }",
        "    }",
        "    if ($LASTEXITCODE -ne $null) { $__vcmExit = $LASTEXITCODE }",
        "} catch {",
        "    $__vcmExit = 1",
        "    [Console]::Error.WriteLine(($_ | Out-String).TrimEnd())",
        "}",
        "if ($__vcmExit -eq $null) { $__vcmExit = 0 }",
        f"[Console]::Out.WriteLine({end} + ':' + $__vcmExit); [Console]::Out.Flush()",
        f"[Console]::Error.WriteLine({end}); [Console]::Error.Flush()",
    ]
    return "\n".join(lines)


def wrap_command(command: str, frame: Frame) -> str:
    """Embed ``command`` in framing boilerplate and encode it as one stdin line."""

    script = _render_frame(command, frame)
    encoded = base64.b64encode(script.encode("utf-8")).decode("ascii")
    return (
        ". ([ScriptBlock]::Create([System.Text.Encoding]::UTF8.GetString("
        f"[System.Convert]::FromBase64String('{encoded}'))))"
    )


def is_valid_parameter_name(name: Any) -> bool:
    return isinstance(name, str) and PARAMETER_NAME_PATTERN.fullmatch(name) is not None


def invalid_parameter_names(parameters: Optional[Mapping[Any, Any]]) -> List[str]:
    """Return the names in ``parameters`` that are not plain identifiers."""

    return [repr(name) for name in (parameters or {}) if not is_valid_parameter_name(name)]


def _render_argument(name: str, value: Any) -> List[str]:
    flag = f"-{name}"
    if isinstance(value, PowerShellExpression):
        return [flag, str(value)]
    if isinstance(value, bool):
        return [f"{flag}:${'true' if value else 'false'}"]
    if isinstance(value, (int, float)):
        return [flag, str(value)]
    if isinstance(value, (list, tuple, dict)):
        return [flag, ps_quote(json.dumps(value, default=str))]
    if hasattr(value, "get_secret_value"):
        return [flag, ps_quote(str(value.get_secret_value()))]
    return [flag, ps_quote(str(value))]


def build_script_invocation(
    script_path: str,
    parameters: Optional[Mapping[str, Any]] = None,
    log_path: Optional[str] = None,
    connection_variable: Optional[str] = None,
) -> str:
    """Construct the PowerShell invocation for a script path.

    Raises ``InvalidParameterError`` for any parameter name that is not a
    plain identifier, since names are emitted unquoted.
    """

    args: List[str] = []
    has_log_path = False
    for key, value in (parameters or {}).items():
        if not is_valid_parameter_name(key):
            raise InvalidParameterError(f"Invalid script parameter name: {key!r}")
        if value is None:
            continue
        if str(key).lower() == "logpath":
            has_log_path = True
        args.extend(_render_argument(key, value))

    if log_path and not has_log_path:
        args.extend(["-LogPath", ps_quote(log_path)])

    invocation = f"& {ps_quote(script_path)}"
    if args:
        invocation = f"{invocation} {' '.join(args)}"

    if connection_variable:
        # Pin the session's default server so PowerCLI cmdlets target this connection
        pin = (
            f"if ($global:{connection_variable}) "
            f"{{ $global:DefaultVIServer = $global:{connection_variable} }}"
        )
        return f"{pin}\n{invocation}"
    return invocation


def build_connect_script(
    target_server: str,
    username: str,
    password: str,
    *,
    import_modules: bool = True,
) -> str:
    """Script that authenticates a PowerCLI connection inside the host process."""

    variable = connection_variable_name(target_server)
    server = ps_quote(target_server)
    lines: List[str] = []
    if import_modules:
        lines.extend(
            [
                "try {",
                "    Import-Module VMware.VimAutomation.Core -ErrorAction Stop | Out-Null",
                f"    Write-Output '{MODULES_LOADED_MARKER}:VMware.VimAutomation.Core'",
                "} catch {",
                f"    Write-Output ('{CONNECTION_FAILED_MARKER}' + 'PowerCLI module import failed: ' + $_.Exception.Message)",
                "    return",
                "}",
                "try {",
                "    Set-PowerCLIConfiguration -InvalidCertificateAction Ignore -Scope Session "
                "-ParticipateInCEIP $false -Confirm:$false | Out-Null",
                "} catch {",
                "    Write-Output ('DIAGNOSTIC: PowerCLI configuration skipped: ' + $_.Exception.Message)",
                "}",
            ]
        )
    lines.extend(
        [
            "try {",
            f"    $__vcmSecure = ConvertTo-SecureString {ps_quote(password)} -AsPlainText -Force",
            f"    $__vcmCredential = New-Object System.Management.Automation.PSCredential({ps_quote(username)}, $__vcmSecure)",
            f"    $global:{variable} = Connect-VIServer -Server {server} -Credential $__vcmCredential -Force -ErrorAction Stop",
            f"    Write-Output '{CONNECTION_SUCCESS_MARKER}'",
            f"    Write-Output ('{SESSION_ID_MARKER}' + $global:{variable}.SessionId)",
            f"    Write-Output ('{VERSION_MARKER}' + $global:{variable}.Version)",
            "} catch {",
            f"    Write-Output ('{CONNECTION_FAILED_MARKER}' + $_.Exception.Message)",
            "} finally {",
            "    $__vcmSecure = $null",
            "    $__vcmCredential = $null",
            "}",
        ]
    )
    return "\n".join(lines)


def build_connection_probe_script(target_server: str) -> str:
    """Script printing whether the stored connection is still authenticated."""

    variable = connection_variable_name(target_server)
    return (
        f"if ($global:{variable} -and $global:{variable}.IsConnected) "
        "{ 'true' } else { 'false' }"
    )


def build_disconnect_script(target_server: str) -> str:
    """Script closing and forgetting the stored connection."""

    variable = connection_variable_name(target_server)
    return "\n".join(
        [
            f"if ($global:{variable}) {{",
            "    try {",
            f"        Disconnect-VIServer -Server $global:{variable} -Force -Confirm:$false -ErrorAction Stop",
            "    } catch {",
            "        Write-Output ('DIAGNOSTIC: Disconnect-VIServer failed: ' + $_.Exception.Message)",
            "    }",
            f"    Remove-Variable -Name {ps_quote(variable)} -Scope Global -ErrorAction SilentlyContinue",
            "}",
            "Write-Output 'DISCONNECTED'",
        ]
    )


def extract_json_payload(stdout: str) -> Optional[Any]:
    """Return the final JSON document (object or array) printed on stdout.

    Scripts may print diagnostics before their result. The first line that
    opens a document parsing cleanly through to the end of output wins, so a
    pretty-printed document is returned whole rather than as a fragment.
    """

    lines = stdout.rstrip().splitlines()
    for index, line in enumerate(lines):
        stripped = line.lstrip()
        if not stripped or stripped[0] not in "{[":
            continue
        try:
            return json.loads("\n".join(lines[index:]))
        except ValueError:
            continue
    return None


def format_output_preview(output: str, *, max_length: int = 400) -> str:
    """Return a condensed single-line preview of command output."""

    if not output:
        return ""

    condensed = " ".join(output.split())
    if len(condensed) > max_length:
        return f"{condensed[: max_length - 3]}..."
    return condensed
