"""Tests for PowerShell text generation and frame handling."""

import base64
import re

import pytest

from vcmigrate.services.script_builder import (
    Frame,
    InvalidParameterError,
    PowerShellExpression,
    build_connect_script,
    build_connection_probe_script,
    build_disconnect_script,
    build_script_invocation,
    connection_variable_name,
    extract_json_payload,
    format_output_preview,
    invalid_parameter_names,
    ps_quote,
    wrap_command,
)


def _decode(line: str) -> str:
    encoded = re.search(r"FromBase64String\('([^']+)'\)", line).group(1)
    return base64.b64decode(encoded).decode("utf-8")


def test_ps_quote_doubles_single_quotes():
    assert ps_quote("O'Brien") == "'O''Brien'"


def test_build_script_invocation_renders_each_value_type():
    invocation = build_script_invocation(
        r"C:\App\Scripts\Get-Inventory.ps1",
        {
            "VCenterServer": "vc1.lab",
            "Force": True,
            "WhatIf": False,
            "Retries": 3,
            "Clusters": ["a", "b"],
            "Skipped": None,
        },
    )

    assert invocation.startswith(r"& 'C:\App\Scripts\Get-Inventory.ps1'")
    assert "-VCenterServer 'vc1.lab'" in invocation
    assert "-Force:$true" in invocation
    assert "-WhatIf:$false" in invocation
    assert "-Retries 3" in invocation
    assert """-Clusters '["a", "b"]'""" in invocation
    assert "Skipped" not in invocation


def test_build_script_invocation_appends_log_path_once():
    with_default = build_script_invocation("s.ps1", {}, log_path="C:/Logs/s.log")
    explicit = build_script_invocation("s.ps1", {"LogPath": "D:/mine.log"}, log_path="C:/Logs/s.log")

    assert with_default.endswith("-LogPath 'C:/Logs/s.log'")
    assert "D:/mine.log" in explicit
    assert "C:/Logs/s.log" not in explicit


def test_build_script_invocation_pins_default_server_for_connection():
    invocation = build_script_invocation(
        "s.ps1", {}, connection_variable=connection_variable_name("vc1.lab")
    )

    first_line, second_line = invocation.split("\n")
    assert "$global:DefaultVIServer = $global:VIConnection_vc1_lab" in first_line
    assert second_line == "& 's.ps1'"


def test_connection_variable_name_is_identifier_safe():
    assert connection_variable_name(" VC-01.Lab.Local ") == "VIConnection_vc_01_lab_local"


def test_wrap_command_is_a_single_line_with_markers():
    frame = Frame(token="abc123")

    line = wrap_command("Get-Process\nWrite-Output 'done'", frame)

    assert "\n" not in line
    script = _decode(line)
    assert frame.begin_marker in script
    assert frame.end_marker in script
    assert "        Get-Process\n        Write-Output 'done'" in script


def test_frame_parses_exit_code_from_trailer():
    frame = Frame(token="abc123")

    assert frame.parse_exit_code(f"{frame.end_marker}:0") == 0
    assert frame.parse_exit_code(f"{frame.end_marker}:17") == 17
    assert frame.parse_exit_code(frame.end_marker) is None
    assert frame.parse_exit_code(None) is None


def test_frame_payload_lines_discard_stale_output():
    frame = Frame(token="abc123")
    lines = ["PS> ", "late output from earlier call", frame.begin_marker, "result"]

    assert frame.payload_lines(lines) == ["result"]


def test_frames_are_unique():
    assert Frame().token != Frame().token


def test_extract_json_after_diagnostics():
    stdout = "DIAGNOSTIC: starting\n[INFO] connecting\n{\"vms\": 3}\n"

    assert extract_json_payload(stdout) == {"vms": 3}


def test_extract_multiline_json_array():
    stdout = "progress\n[\n  {\n    \"name\": \"vm1\"\n  }\n]"

    assert extract_json_payload(stdout) == [{"name": "vm1"}]


def test_extract_json_returns_last_document():
    assert extract_json_payload('{"a": 1}\n{"b": 2}') == {"b": 2}


def test_extract_json_rejects_trailing_text_and_empty_output():
    assert extract_json_payload('{"a": 1}\nDone.') is None
    assert extract_json_payload("") is None
    assert extract_json_payload("no json here") is None


def test_connect_script_escapes_credentials_and_optionally_imports():
    script = build_connect_script("vc1.lab", "admin@vsphere.local", "pa'ss")
    bypass = build_connect_script("vc1.lab", "admin@vsphere.local", "pa'ss", import_modules=False)

    assert "'pa''ss'" in script
    assert "Import-Module VMware.VimAutomation.Core" in script
    assert "Import-Module" not in bypass
    assert "$global:VIConnection_vc1_lab = Connect-VIServer -Server 'vc1.lab'" in bypass
    assert "CONNECTION_SUCCESS" in bypass


def test_probe_and_disconnect_scripts_reference_connection_variable():
    assert "$global:VIConnection_vc1_lab.IsConnected" in build_connection_probe_script("vc1.lab")
    assert "Disconnect-VIServer -Server $global:VIConnection_vc1_lab" in build_disconnect_script("vc1.lab")


def test_format_output_preview_condenses_whitespace():
    assert format_output_preview("a\n  b\tc") == "a b c"
    assert format_output_preview("x" * 10, max_length=8) == "xxxxx..."


@pytest.mark.parametrize(
    "name",
    ["X; Remove-Item C:\\ -Recurse #", "Name With Space", "1Leading", "-Dash", "Name\n", "", 42],
)
def test_build_script_invocation_rejects_names_that_are_not_identifiers(name):
    with pytest.raises(InvalidParameterError):
        build_script_invocation("s.ps1", {name: "value"})


def test_invalid_parameter_names_lists_only_offenders():
    assert invalid_parameter_names({"Cluster_1": "a", "_Private": "b", "a b": "c"}) == ["'a b'"]
    assert invalid_parameter_names(None) == []


def test_powershell_expression_values_are_emitted_verbatim():
    invocation = build_script_invocation(
        "s.ps1", {"SourceVCenter": PowerShellExpression("$global:VIConnection_vc1_lab")}
    )

    assert invocation == "& 's.ps1' -SourceVCenter $global:VIConnection_vc1_lab"
