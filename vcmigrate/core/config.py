"""Configuration management using Pydantic settings."""

from pathlib import Path
from typing import List, Optional, TYPE_CHECKING

from pydantic_settings import BaseSettings


# Fully qualified install location used by PowerShell 7 on Windows. Tried when
# `pwsh` is not on PATH, before falling back to Windows PowerShell.
PWSH_WINDOWS_INSTALL_PATH = r"C:\Program Files\PowerShell\7\pwsh.exe"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application settings
    app_name: str = "vCenter Migration Orchestrator"
    debug: bool = False
    api_host: str = "127.0.0.1"
    api_port: int = 8765

    # PowerShell host process settings
    powershell_executables: str = f"pwsh,{PWSH_WINDOWS_INSTALL_PATH},powershell"
    powershell_arguments: str = "-NoProfile -NoExit -ExecutionPolicy Unrestricted -Command -"
    process_startup_delay_seconds: float = 0.1  # early-exit check after spawn
    process_startup_timeout_seconds: float = 30.0  # bootstrap frame must answer within this
    graceful_exit_timeout_seconds: float = 5.0  # wait after "exit" before killing
    process_cleanup_interval_seconds: float = 300.0  # prune exited sessions every 5 minutes
    stream_buffer_limit_bytes: int = 16 * 1024 * 1024  # longest single output line accepted

    # Script execution settings
    scripts_directory: str = "Scripts"
    default_script_timeout_seconds: float = 600.0  # 10 minutes
    connect_timeout_seconds: float = 120.0
    parameter_log_max_length: int = 500

    # PowerCLI settings
    bypass_module_check: bool = False
    powercli_scripts: str = ""  # Comma-separated script ids that accept -BypassModuleCheck

    # Logging settings
    log_directory: str = "Logs"

    # Orphan reaper settings
    install_directory: Optional[str] = None  # defaults to the current working directory
    reaper_enabled: bool = True
    reaper_grace_seconds: float = 30.0
    reaper_recent_window_seconds: float = 300.0

    class Config:
        env_file = ".env"
        case_sensitive = False

    def get_powershell_executables_list(self) -> List[str]:
        """Parse comma-separated executable candidates, preserving order."""
        if not self.powershell_executables:
            return []
        return [
            item.strip() for item in self.powershell_executables.split(",") if item.strip()
        ]

    def get_powershell_arguments_list(self) -> List[str]:
        """Split the interpreter argument string on whitespace."""
        return self.powershell_arguments.split()

    def get_powercli_scripts_list(self) -> List[str]:
        """Parse comma-separated PowerCLI script identifiers."""
        if not self.powercli_scripts:
            return []
        return [item.strip() for item in self.powercli_scripts.split(",") if item.strip()]

    def get_executable_names(self) -> List[str]:
        """Return bare interpreter process names used to fingerprint orphans."""

        names: List[str] = []
        for candidate in self.get_powershell_executables_list():
            # Windows paths are parsed by hand so this also works on POSIX hosts
            base = candidate.replace("\\", "/").rsplit("/", 1)[-1].lower()
            if base.endswith(".exe"):
                base = base[:-4]
            if base and base not in names:
                names.append(base)
        return names

    def get_install_directory(self) -> Path:
        """Resolve the installation directory used by the orphan reaper."""

        if self.install_directory:
            return Path(self.install_directory).expanduser().resolve()
        return Path.cwd().resolve()


settings = Settings()


if TYPE_CHECKING:  # pragma: no cover - imported for type checking only
    from .config_validation import ConfigValidationResult


_config_validation_result: Optional["ConfigValidationResult"] = None


def set_config_validation_result(result: "ConfigValidationResult") -> None:
    """Persist the configuration validation result for reuse."""

    global _config_validation_result
    _config_validation_result = result


def get_config_validation_result() -> Optional["ConfigValidationResult"]:
    """Return the cached configuration validation result, if available."""

    return _config_validation_result
