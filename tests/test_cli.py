import json

import respx
from typer.testing import CliRunner

from signature_sdk.cli import app

runner = CliRunner()


def _env(monkeypatch):
    monkeypatch.setenv("SIGNATURE_BASE_URL", "https://api.test")
    monkeypatch.setenv("SIGNATURE_ACCESS_TOKEN", "tok")


@respx.mock
def test_health_command(monkeypatch):
    _env(monkeypatch)
    respx.get("https://api.test/api/v1/health").respond(
        200, json={"status": "healthy", "dependencies": {}, "metrics": {}}
    )
    result = runner.invoke(app, ["health"])
    assert result.exit_code == 0
    assert json.loads(result.stdout)["status"] == "healthy"


@respx.mock
def test_health_live_probe(monkeypatch):
    _env(monkeypatch)
    respx.get("https://api.test/api/v1/health/live").respond(200, json={"alive": True})
    result = runner.invoke(app, ["health", "--probe", "live"])
    assert result.exit_code == 0
    assert json.loads(result.stdout) == {"alive": True}


@respx.mock
def test_get_command_prints_payload(monkeypatch):
    _env(monkeypatch)
    respx.get("https://api.test/api/v1/envelopes").respond(200, json=[{"id": "e1"}])
    result = runner.invoke(app, ["get", "/api/v1/envelopes"])
    assert result.exit_code == 0
    assert json.loads(result.stdout) == [{"id": "e1"}]


@respx.mock
def test_api_error_exits_1(monkeypatch):
    _env(monkeypatch)
    respx.get("https://api.test/api/v1/auth/me").respond(403, json={"message": "forbidden"})
    result = runner.invoke(app, ["me"])
    assert result.exit_code == 1


def test_missing_configuration_exits_2(monkeypatch):
    monkeypatch.setenv("SIGNATURE_BASE_URL", "https://api.test")
    result = runner.invoke(app, ["me"])
    assert result.exit_code == 2


def test_unknown_probe_exits_2(monkeypatch):
    _env(monkeypatch)
    result = runner.invoke(app, ["health", "--probe", "deep"])
    assert result.exit_code == 2


@respx.mock
def test_malformed_payload_exits_1(monkeypatch):
    _env(monkeypatch)
    respx.get("https://api.test/api/v1/health").respond(200, json={"status": "weird"})
    result = runner.invoke(app, ["health"])
    assert result.exit_code == 1
    assert "Traceback" not in result.output
