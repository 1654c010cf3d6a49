import os

import pytest
from fastapi.testclient import TestClient

from cligate import config as config_module
from cligate.config import reload_config
from cligate.errors import ConfigError
from cligate.main import app
from cligate.runner import ExecutionOutcome

posix_only = pytest.mark.skipif(os.name != "posix", reason="requires echo on PATH")


@pytest.fixture(autouse=True)
def _restore_snapshot():
    saved = config_module._snapshot
    yield
    config_module._snapshot = saved


@pytest.fixture
def configure(tmp_path):
    def _configure(**overrides):
        env = {"WORKDIR": str(tmp_path / "work"), "DRY_RUN": "true"}
        env.update(overrides)
        return reload_config(env)

    return _configure


@pytest.fixture
def captured_runs(monkeypatch):
    calls = []

    def fake_run(request, cancel=None):
        calls.append(request)
        return ExecutionOutcome(exit_code=0, stdout="ok\n", stderr="")

    monkeypatch.setattr("cligate.main.runner.run", fake_run)
    return calls


@posix_only
def test_invoke_unrestricted_echo(configure):
    configure(ALLOWED_COMMANDS="")

    client = TestClient(app)
    response = client.post("/invoke", json={"args": ["echo", "hello", "world"]})

    assert response.status_code == 200
    body = response.json()
    assert body["exit_code"] == 0
    assert "hello world" in body["stdout"]
    assert body["truncated"] is False
    assert body["timed_out"] is False
    assert body["meta"]["bin"] == "echo"
    assert body["meta"]["subcommand"] == "echo"


def test_invoke_policy_rejection_spawns_nothing(configure, captured_runs):
    configure(ALLOWED_COMMANDS="execute")

    client = TestClient(app)
    response = client.post("/invoke", json={"args": ["build", "--flag"]})

    assert response.status_code == 403
    assert "build" in response.json()["detail"]
    assert captured_runs == []


@pytest.mark.parametrize(
    "body",
    [
        b"{not json",
        b'{"args": ["execute"], "cmd": "execute"}',
        b'{"workdir": "/tmp"}',
        b'{"cmd": "execute \\"open"}',
        b'{"args": ["execute"], "timeout_ms": 5}',
    ],
)
def test_invoke_malformed_payload_returns_400(configure, captured_runs, body):
    configure()

    client = TestClient(app)
    response = client.post("/invoke", content=body, headers={"Content-Type": "application/json"})

    assert response.status_code == 400
    assert response.json()["detail"]
    assert captured_runs == []


def test_invoke_namespace_policy(configure, captured_runs):
    configure(ALLOWED_NAMESPACES="token.x")
    client = TestClient(app)

    missing = client.post("/invoke", json={"args": ["execute", "--amount", "1"]})
    assert missing.status_code == 400

    denied = client.post("/invoke", json={"args": ["execute", "other.x/transfer"]})
    assert denied.status_code == 403

    allowed = client.post("/invoke", json={"args": ["execute", "Token.X/transfer", "5"]})
    assert allowed.status_code == 200
    assert captured_runs[0].args == ("execute", "Token.X/transfer", "5")


def test_invoke_injects_flags_and_builds_request(configure, captured_runs, tmp_path):
    configure(
        ENDPOINT_URL="https://rpc.example",
        CREDENTIAL="pk-secret",
        MAX_OUTPUT_BYTES="2048",
        EXEC_TIMEOUT_MS="5000",
    )

    client = TestClient(app)
    response = client.post(
        "/invoke",
        json={
            "cmd": "execute token.x/transfer $AMOUNT",
            "env": {"AMOUNT": "7"},
            "workdir": str(tmp_path / "custom"),
            "timeout_ms": 1500,
        },
    )

    assert response.status_code == 200
    request = captured_runs[0]
    assert request.bin_path == "echo"
    assert request.args == (
        "execute",
        "--private-key",
        "pk-secret",
        "--endpoint",
        "https://rpc.example",
        "token.x/transfer",
        "7",
    )
    assert request.workdir == str(tmp_path / "custom")
    assert request.timeout == 1.5
    assert request.max_output_bytes == 2048
    assert request.extra_env == {"AMOUNT": "7"}
    assert response.json()["meta"]["workdir"] == str(tmp_path / "custom")


def test_invoke_keeps_caller_supplied_credential(configure, captured_runs):
    configure(CREDENTIAL="pk-secret")

    client = TestClient(app)
    response = client.post("/invoke", json={"args": ["execute", "--private-key=mine", "token.x/t"]})

    assert response.status_code == 200
    assert captured_runs[0].args == ("execute", "--private-key=mine", "token.x/t")


def test_invoke_reports_timeout_as_outcome(configure, monkeypatch):
    configure()
    monkeypatch.setattr(
        "cligate.main.runner.run",
        lambda request, cancel=None: ExecutionOutcome(exit_code=124, stdout="partial", timed_out=True),
    )

    client = TestClient(app)
    response = client.post("/invoke", json={"args": ["execute", "a/b"]})

    assert response.status_code == 200
    body = response.json()
    assert body["timed_out"] is True
    assert body["exit_code"] == 124
    assert body["stdout"] == "partial"


def test_invoke_filters_excluded_lines(configure, monkeypatch):
    configure(STDOUT_EXCLUDE="Installation", STDERR_EXCLUDE="Failed to store")
    monkeypatch.setattr(
        "cligate.main.runner.run",
        lambda request, cancel=None: ExecutionOutcome(
            exit_code=0,
            stdout="Installation banner\nresult\n",
            stderr="Failed to store cache\nreal warning\n",
        ),
    )

    client = TestClient(app)
    body = client.post("/invoke", json={"args": ["execute", "a/b"]}).json()

    assert body["stdout"] == "result\n"
    assert body["stderr"] == "real warning\n"


def test_invoke_config_error_returns_500(monkeypatch, captured_runs):
    def broken_config():
        raise ConfigError("MAX_OUTPUT_BYTES must be an integer")

    monkeypatch.setattr("cligate.main.current_config", broken_config)

    client = TestClient(app)
    response = client.post("/invoke", json={"args": ["execute"]})

    assert response.status_code == 500
    assert "MAX_OUTPUT_BYTES" in response.json()["detail"]
    assert captured_runs == []


def test_invoke_unexpected_failure_returns_500(configure, monkeypatch):
    configure()

    def exploding_run(request, cancel=None):
        raise RuntimeError("boom")

    monkeypatch.setattr("cligate.main.runner.run", exploding_run)

    client = TestClient(app)
    response = client.post("/invoke", json={"args": ["execute", "a/b"]})

    assert response.status_code == 500
    assert "boom" in response.json()["detail"]


def test_invoke_via_query_string(configure, captured_runs):
    configure(ALLOWED_COMMANDS="")

    client = TestClient(app)
    response = client.get("/invoke", params={"args": "run,deploy --network testnet"})

    assert response.status_code == 200
    assert captured_runs[0].args == ("run", "deploy", "--network", "testnet")

    missing = client.get("/invoke")
    assert missing.status_code == 400


def test_version_reports_tool_version(configure, monkeypatch):
    configure(DRY_RUN="false", EXECUTABLE="/opt/tool")
    monkeypatch.setattr("cligate.main.tool_version", lambda bin_path: "4.2.0")

    client = TestClient(app)
    body = client.get("/version").json()

    assert body == {"bin": "/opt/tool", "version": "4.2.0"}


def test_tool_version_parses_second_field(monkeypatch):
    from cligate import main

    monkeypatch.setattr(main, "_versions", {})
    monkeypatch.setattr(
        "cligate.main.runner.run",
        lambda request, cancel=None: ExecutionOutcome(exit_code=0, stdout="tool 1.9.3\n"),
    )
    assert main.tool_version("/opt/tool") == "1.9.3"


def test_tool_version_retries_after_failure(monkeypatch):
    from cligate import main

    monkeypatch.setattr(main, "_versions", {})
    outcomes = [
        ExecutionOutcome(exit_code=1, stderr="not installed yet"),
        ExecutionOutcome(exit_code=0, stdout="tool 2.0.0\n"),
    ]
    calls = []

    def fake_run(request, cancel=None):
        calls.append(request)
        return outcomes[len(calls) - 1]

    monkeypatch.setattr("cligate.main.runner.run", fake_run)

    assert main.tool_version("/opt/tool") is None
    assert main.tool_version("/opt/tool") == "2.0.0"
    assert main.tool_version("/opt/tool") == "2.0.0"
    assert len(calls) == 2


def test_health():
    client = TestClient(app)
    assert client.get("/health").json() == {"status": "ok"}
