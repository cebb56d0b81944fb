"""Configuration validation utilities."""
from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from .config import (
    settings,
    set_config_validation_result,
    get_config_validation_result,
)


@dataclass
class ConfigIssue:
    """Represents a single configuration issue."""

    message: str
    hint: Optional[str] = None


@dataclass
class ConfigValidationResult:
    """Outcome of running configuration checks."""

    checked_at: datetime
    errors: List[ConfigIssue] = field(default_factory=list)
    warnings: List[ConfigIssue] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)


def _warn(result: ConfigValidationResult, message: str, hint: Optional[str] = None) -> None:
    result.warnings.append(ConfigIssue(message=message, hint=hint))


def _error(result: ConfigValidationResult, message: str, hint: Optional[str] = None) -> None:
    result.errors.append(ConfigIssue(message=message, hint=hint))


def _resolve_executable(candidate: str) -> Optional[str]:
    """Return the resolved path of an interpreter candidate if it exists."""

    if os.path.isabs(candidate) or os.sep in candidate:
        return candidate if Path(candidate).is_file() else None
    return shutil.which(candidate)


def run_config_checks(force: bool = False) -> ConfigValidationResult:
    """Validate configuration combinations and cache the result."""

    if not force:
        cached = get_config_validation_result()
        if cached is not None:
            return cached

    result = ConfigValidationResult(checked_at=datetime.now(timezone.utc))

    executables = settings.get_powershell_executables_list()
    if not executables:
        _error(
            result,
            "POWERSHELL_EXECUTABLES is empty.",
            "Set POWERSHELL_EXECUTABLES to a comma-separated list such as 'pwsh,powershell'.",
        )
    elif not any(_resolve_executable(candidate) for candidate in executables):
        _error(
            result,
            "None of the configured PowerShell executables could be found: "
            + ", ".join(executables),
            "Install PowerShell 7 (pwsh) or add its directory to PATH.",
        )

    if "-Command" not in settings.get_powershell_arguments_list():
        _warn(
            result,
            "POWERSHELL_ARGUMENTS does not include '-Command -'.",
            "Persistent sessions read commands from stdin; keep '-Command -' in the arguments.",
        )

    scripts_dir = Path(settings.scripts_directory).expanduser()
    if not scripts_dir.is_dir():
        _warn(
            result,
            f"SCRIPTS_DIRECTORY '{scripts_dir}' does not exist.",
            "Point SCRIPTS_DIRECTORY at the folder containing the migration .ps1 scripts.",
        )

    log_dir = Path(settings.log_directory).expanduser()
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        _error(
            result,
            f"LOG_DIRECTORY '{log_dir}' cannot be created: {exc}",
            "Choose a writable location for LOG_DIRECTORY.",
        )
    else:
        if not os.access(log_dir, os.W_OK):
            _error(
                result,
                f"LOG_DIRECTORY '{log_dir}' is not writable.",
                "Choose a writable location for LOG_DIRECTORY.",
            )

    for name in (
        "default_script_timeout_seconds",
        "connect_timeout_seconds",
        "process_startup_timeout_seconds",
        "graceful_exit_timeout_seconds",
        "process_cleanup_interval_seconds",
    ):
        if getattr(settings, name) <= 0:
            _error(
                result,
                f"{name.upper()} must be greater than zero.",
                f"Set {name.upper()} to a positive number of seconds.",
            )

    if settings.parameter_log_max_length < 16:
        _warn(
            result,
            "PARAMETER_LOG_MAX_LENGTH is very small; logged parameters will be hard to read.",
            "Use the default of 500 characters unless log size is a concern.",
        )

    if settings.bypass_module_check:
        _warn(
            result,
            "BYPASS_MODULE_CHECK is enabled.",
            "PowerCLI will not be imported before connecting; ensure it is auto-loaded.",
        )

    if settings.reaper_enabled and settings.reaper_grace_seconds < 0:
        _error(
            result,
            "REAPER_GRACE_SECONDS must not be negative.",
            "Use the default grace window of 30 seconds.",
        )

    set_config_validation_result(result)
    return result
