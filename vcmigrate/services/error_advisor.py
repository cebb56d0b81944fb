"""Human-readable explanations for invocation and connection failures."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from ..core.models import ErrorKind
from .parameter_sanitizer import SENSITIVE_NAME_FRAGMENTS

_MAX_DETAIL_LENGTH = 500

_SENSITIVE_WORD = r"\w*(?:" + "|".join(SENSITIVE_NAME_FRAGMENTS) + r")\w*"
_SECRET_VALUE = r"(?:'[^']*'|\"[^\"]*\"|\S+)"

# "-Password value" as echoed from a command line, then "password=value" style
_SECRET_PATTERNS = (
    re.compile(r"(-" + _SENSITIVE_WORD + r"\s+)" + _SECRET_VALUE, re.IGNORECASE),
    re.compile(r"(\b" + _SENSITIVE_WORD + r"\s*[=:]\s*)" + _SECRET_VALUE, re.IGNORECASE),
)


@dataclass(frozen=True)
class _Category:
    name: str
    patterns: Sequence[str]
    message: str
    action: str


# Checked in order; the first category whose pattern appears in the text wins.
_CATEGORIES: Tuple[_Category, ...] = (
    _Category(
        "certificate",
        ("certificate", "ssl", "tls", "trust relationship"),
        "The vCenter server's certificate was rejected.",
        "Verify PowerCLI InvalidCertificateAction is set to 'Ignore' or install the vCenter CA certificate.",
    ),
    _Category(
        "authentication",
        (
            "invalid credentials",
            "incorrect user name or password",
            "login failed",
            "authentication",
            "unauthorized",
            "incorrect password",
            "bad credentials",
            "cannot complete login",
        ),
        "Authentication failed. Please verify your username and password are correct.",
        "Verify the username and password, then reconnect.",
    ),
    _Category(
        "powercli",
        ("vmware.powercli", "vmware.vimautomation", "module 'vmware", "connect-viserver' is not recognized", "import-module"),
        "PowerCLI is not properly installed or configured. This is required for vCenter operations.",
        "Install the VMware.PowerCLI module for the PowerShell executable in use.",
    ),
    _Category(
        "permission",
        ("permission", "insufficient privileges", "not authorized", "access denied", "forbidden"),
        "You don't have sufficient permissions to perform this operation.",
        "Contact your vCenter administrator to grant the required privileges.",
    ),
    _Category(
        "network",
        (
            "could not connect",
            "connection refused",
            "network unreachable",
            "timed out",
            "timeout",
            "connection lost",
            "server not found",
            "no such host",
            "connection failed",
            "network",
        ),
        "Unable to reach the vCenter server.",
        "Check network connectivity, DNS and firewall settings for the vCenter server.",
    ),
    _Category(
        "not_found",
        ("does not exist", "file not found", "object not found", "resource not found", "not found"),
        "The requested resource could not be found. It may have been moved, deleted, or renamed.",
        "Refresh the inventory and confirm the object still exists.",
    ),
    _Category(
        "script",
        ("syntax error", "parse error", "execution policy", "cannot load", "parsererror"),
        "There was an error in the PowerShell script execution.",
        "Check the PowerShell execution policy and the script's parameters.",
    ),
)

_DEFAULTS = {
    ErrorKind.SPAWN_FAILED: (
        "PowerShell could not be started.",
        "Install PowerShell 7 (pwsh) or set POWERSHELL_EXECUTABLES to a valid interpreter path.",
    ),
    ErrorKind.PROCESS_DIED: (
        "The PowerShell session exited unexpectedly.",
        "Run the operation again; a new PowerShell session will be started.",
    ),
    ErrorKind.TIMEOUT: (
        "The operation took too long to complete and was cancelled.",
        "Retry the operation or increase the script timeout if the server is under load.",
    ),
    ErrorKind.AUTHENTICATION_FAILED: (
        "Authentication failed. Please verify your username and password are correct.",
        "Verify the username and password, then reconnect.",
    ),
    ErrorKind.INVALID_OUTPUT: (
        "The script did not return a usable result.",
        "Review the script log for errors printed before the result.",
    ),
    ErrorKind.CANCELLED: ("The operation was cancelled.", None),
    ErrorKind.SCRIPT_NOT_FOUND: (
        "The requested script is not installed.",
        "Reinstall the application or check the SCRIPTS_DIRECTORY setting.",
    ),
    ErrorKind.SCRIPT_ERROR: (
        "The PowerShell script reported an error.",
        "Review the technical details and the script log, then try again.",
    ),
    ErrorKind.INVALID_PARAMETERS: (
        "The script parameters were rejected.",
        "Use parameter names made of letters, digits and underscores only.",
    ),
}


def scrub_detail(detail: Optional[str]) -> str:
    """Mask inline password fragments and bound the text for display."""

    if not detail:
        return ""
    scrubbed = detail
    for pattern in _SECRET_PATTERNS:
        scrubbed = pattern.sub(r"\1***", scrubbed)
    if len(scrubbed) > _MAX_DETAIL_LENGTH:
        scrubbed = scrubbed[:_MAX_DETAIL_LENGTH] + "... (truncated)"
    return scrubbed


def classify(detail: Optional[str]) -> Optional[str]:
    """Return the name of the first failure category matching ``detail``."""

    if not detail:
        return None
    lowered = detail.lower()
    for category in _CATEGORIES:
        if any(pattern in lowered for pattern in category.patterns):
            return category.name
    return None


def looks_like_authentication_failure(detail: Optional[str]) -> bool:
    return classify(detail) == "authentication"


def describe_failure(
    kind: ErrorKind,
    detail: Optional[str] = None,
    script_id: Optional[str] = None,
) -> Tuple[str, Optional[str]]:
    """Return ``(message, suggested_action)`` for a failed operation."""

    message, action = _DEFAULTS.get(kind, ("The operation failed.", None))
    if kind == ErrorKind.CANCELLED:
        return message, action

    category_name = classify(detail)
    if category_name is not None and kind not in (
        ErrorKind.SPAWN_FAILED,
        ErrorKind.SCRIPT_NOT_FOUND,
        ErrorKind.INVALID_PARAMETERS,
    ):
        category = next(c for c in _CATEGORIES if c.name == category_name)
        message, action = category.message, category.action

    if script_id:
        message = f"{script_id}: {message}"
    scrubbed = scrub_detail(detail)
    if scrubbed:
        message = f"{message} ({scrubbed})"
    return message, action
