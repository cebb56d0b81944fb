import json
from datetime import datetime

from pydantic import SecretStr

from vcmigrate.core.models import ErrorKind, InvocationResult
from vcmigrate.services.invocation_log import InvocationLog


def _entries(log):
    return [json.loads(line) for line in log.current_path().read_text(encoding="utf-8").splitlines()]


def test_paths_are_dated_under_log_directory(tmp_path):
    log = InvocationLog(str(tmp_path))
    when = datetime(2024, 3, 9, 12, 0)

    assert log.current_path(when) == tmp_path / "PowerShell" / "powershell_2024-03-09.log"
    assert log.default_script_log_path("Get-Inventory", when) == str(
        tmp_path / "Scripts" / "Get-Inventory_2024-03-09.log"
    )
    assert log.default_script_log_path("../odd name", when).endswith("_odd_name_2024-03-09.log")


def test_entries_are_sanitized(tmp_path):
    log = InvocationLog(str(tmp_path))
    parameters = {"Server": "vc1.lab", "Password": SecretStr("hunter2"), "ApiToken": "abc"}

    assert log.record_start("Get-Inventory", parameters, session_id="s1", target_server="vc1.lab")
    assert log.record_result(
        InvocationResult(
            success=False,
            script_id="Get-Inventory",
            session_id="s1",
            exit_code=1,
            stderr="boom",
            error_kind=ErrorKind.SCRIPT_ERROR,
            error_message="Get-Inventory: failed",
        ),
        parameters,
        target_server="vc1.lab",
    )

    started, completed = _entries(log)
    assert started["event"] == "started"
    assert started["parameters"] == {
        "Server": "vc1.lab",
        "Password": "[REDACTED]",
        "ApiToken": "[REDACTED]",
    }
    assert completed["error_kind"] == "script_error"
    assert completed["exit_code"] == 1
    assert completed["stderr"] == "boom"
    assert "hunter2" not in log.current_path().read_text(encoding="utf-8")


def test_unwritable_directory_is_reported_not_raised(tmp_path, caplog):
    blocker = tmp_path / "file"
    blocker.write_text("", encoding="utf-8")
    log = InvocationLog(str(blocker))

    assert log.record_start("Get-Inventory", {}) is False
    assert "Failed to write PowerShell invocation log" in caplog.text


def test_secret_values_echoed_in_diagnostics_are_masked(tmp_path):
    log = InvocationLog(str(tmp_path))
    parameters = {"Server": "vc1.lab", "Password": SecretStr("hunter2"), "ApiToken": "s3cr3t-tok"}

    log.record_result(
        InvocationResult(
            success=False,
            script_id="Get-Inventory",
            stderr="A parameter cannot be found: -ApiToken 's3cr3t-tok' -Password 'hunter2'",
            error_kind=ErrorKind.SCRIPT_ERROR,
            error_message="Get-Inventory: failed for hunter2",
        ),
        parameters,
    )

    (entry,) = _entries(log)
    text = log.current_path().read_text(encoding="utf-8")
    assert "hunter2" not in text
    assert "s3cr3t-tok" not in text
    assert entry["stderr"].endswith("-Password '[REDACTED]'")
    assert entry["error_message"] == "Get-Inventory: failed for [REDACTED]"
