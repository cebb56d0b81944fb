"""Per-invocation audit log written to the PowerShell log directory."""

from __future__ import annotations

import json
import logging
import re
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from ..core.config import settings
from ..core.models import InvocationResult
from .parameter_sanitizer import redact_text, sanitize_mapping, secret_values

logger = logging.getLogger(__name__)


class InvocationLog:
    """Append-only JSON-lines log, one file per day.

    Entries carry sanitized parameters only. Write failures are reported as
    warnings and never interrupt the invocation being logged.
    """

    def __init__(self, log_directory: Optional[str] = None) -> None:
        base = Path(log_directory or settings.log_directory).expanduser()
        self.directory = base / "PowerShell"
        self._lock = threading.Lock()

    def current_path(self, now: Optional[datetime] = None) -> Path:
        stamp = (now or datetime.now()).strftime("%Y-%m-%d")
        return self.directory / f"powershell_{stamp}.log"

    def default_script_log_path(self, script_id: str, now: Optional[datetime] = None) -> str:
        """Log file handed to a script through its ``-LogPath`` parameter."""

        slug = re.sub(r"[^0-9A-Za-z._-]", "_", script_id) or "script"
        stamp = (now or datetime.now()).strftime("%Y-%m-%d")
        return str(self.directory.parent / "Scripts" / f"{slug}_{stamp}.log")

    def _write(self, entry: Dict[str, Any]) -> bool:
        entry.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        line = json.dumps(entry, default=str)
        try:
            with self._lock:
                self.directory.mkdir(parents=True, exist_ok=True)
                with self.current_path().open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
        except OSError as exc:
            logger.warning("Failed to write PowerShell invocation log: %s", exc)
            return False
        return True

    def record_start(
        self,
        script_id: str,
        parameters: Optional[Mapping[str, Any]],
        *,
        session_id: Optional[str] = None,
        target_server: Optional[str] = None,
    ) -> bool:
        """Record that an invocation is about to run."""

        return self._write(
            {
                "event": "started",
                "script_id": script_id,
                "session_id": session_id,
                "target_server": target_server,
                "parameters": sanitize_mapping(parameters),
            }
        )

    def record_result(
        self,
        result: InvocationResult,
        parameters: Optional[Mapping[str, Any]] = None,
        *,
        target_server: Optional[str] = None,
    ) -> bool:
        """Record the outcome of an invocation, including its diagnostics.

        Secret parameter values are masked wherever they appear in the
        captured stderr or the error message.
        """

        secrets = secret_values(parameters)
        return self._write(
            {
                "event": "completed",
                "script_id": result.script_id,
                "session_id": result.session_id,
                "target_server": target_server,
                "parameters": sanitize_mapping(parameters),
                "success": result.success,
                "exit_code": result.exit_code,
                "duration_ms": result.duration_ms,
                "error_kind": result.error_kind.value if result.error_kind else None,
                "error_message": redact_text(result.error_message, secrets) or None,
                "stderr": redact_text(result.stderr, secrets) or None,
            }
        )
