"""Test configuration for the orchestration test suite."""

import os
import tempfile

import pytest

# Keep test runs away from the working directory and never sweep real processes.
# This must happen before any imports that instantiate Settings.
os.environ.setdefault("LOG_DIRECTORY", os.path.join(tempfile.gettempdir(), "vcmigrate-test-logs"))
os.environ.setdefault("REAPER_ENABLED", "false")

from vcmigrate.core import config as app_config  # noqa: E402

from fakes import FakeProcessFactory  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_config_validation_cache(monkeypatch):
    monkeypatch.setattr(app_config, "_config_validation_result", None, raising=False)


@pytest.fixture
def fake_factory():
    return FakeProcessFactory()


@pytest.fixture
def scripts_dir(tmp_path):
    directory = tmp_path / "scripts"
    directory.mkdir()
    for name in ("Get-Inventory", "Export-Configuration", "Test-Connectivity"):
        (directory / f"{name}.ps1").write_text("param()\n", encoding="utf-8")
    return directory
