"""Tests for FastAPI lifespan behaviour in main application."""

from datetime import datetime, timezone

from fastapi.testclient import TestClient

from vcmigrate import main
from vcmigrate.core import config as app_config, config_validation
from vcmigrate.services import container as container_module

from fakes import FakeProcessFactory, FakeReply


def _responder(command):
    if "Connect-VIServer" in command:
        return FakeReply(stdout=["CONNECTION_SUCCESS", "SESSION_ID:abc", "VERSION:8.0.2"])
    return FakeReply()


def _install_fake_services(monkeypatch):
    factory = FakeProcessFactory(_responder)
    built = {}

    def _build():
        services = container_module.build_services(process_factory=factory)
        built["services"] = services
        return services

    monkeypatch.setattr(main, "build_services", _build)
    return factory, built


def test_lifespan_builds_services_and_cleans_up(monkeypatch):
    factory, built = _install_fake_services(monkeypatch)

    with TestClient(main.app) as client:
        assert main.app.state.services is built["services"]
        response = client.post(
            "/api/v1/connections",
            json={"server": "vc1.lab", "username": "admin", "password": "pw"},
        )
        assert response.status_code == 200
        assert client.get("/healthz").json()["active_process_count"] == 1

    services = built["services"]
    assert main.app.state.services is None
    assert services.pool.get_active_process_count() == 0
    assert services.registry.list_connections() == []
    assert factory.created[0].terminated
    assert any("Disconnect-VIServer" in c for c in factory.created[0].user_commands)


def test_configuration_errors_do_not_block_startup(monkeypatch):
    """Misconfiguration is reported through the health endpoint instead of failing startup."""

    monkeypatch.setattr(app_config, "_config_validation_result", None, raising=False)
    _install_fake_services(monkeypatch)

    config_result = config_validation.ConfigValidationResult(checked_at=datetime.now(timezone.utc))
    config_result.errors.append(
        config_validation.ConfigIssue(message="no interpreter", hint="install pwsh")
    )
    app_config.set_config_validation_result(config_result)

    def _fake_run_checks():
        return config_result

    monkeypatch.setattr(main, "run_config_checks", _fake_run_checks)

    with TestClient(main.app) as client:
        body = client.get("/healthz").json()

    assert body["status"] == "config_error"


def test_reaper_runs_after_tracked_processes_are_killed(monkeypatch):
    factory, built = _install_fake_services(monkeypatch)
    calls = []

    class RecordingReaper:
        def sweep_orphans(self, app_start_time, now=None):
            calls.append(
                (app_start_time, built["services"].pool.get_active_process_count())
            )
            return 0

    def _build_with_reaper():
        services = container_module.build_services(process_factory=factory)
        services.reaper = RecordingReaper()
        built["services"] = services
        return services

    monkeypatch.setattr(main, "build_services", _build_with_reaper)

    with TestClient(main.app) as client:
        client.post(
            "/api/v1/connections",
            json={"server": "vc1.lab", "username": "admin", "password": "pw"},
        )

    assert calls == [(built["services"].started_at, 0)]
