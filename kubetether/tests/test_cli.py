# SPDX-FileCopyrightText: Copyright (c) 2026, Kubetether Developers (See LICENSE for list)
# SPDX-License-Identifier: BSD 3-Clause License
import anyio
import pytest
import yaml
from typer.testing import CliRunner

from kubetether._exceptions import ValidationError
from kubetether._sessions import PortForwardSession, SessionStatus
from kubetether._store import FileSessionStore
from kubetether.cli import app, parse_ports, parse_resource

runner = CliRunner()


@pytest.fixture
def env(kubeconfig_file, tmp_path):
    return {
        "KUBETETHER_KUBECONFIG": str(kubeconfig_file),
        "KUBETETHER_STATE_FILE": str(tmp_path / "sessions.json"),
        "COLUMNS": "200",
    }


def test_help_default():
    result = runner.invoke(app, [])
    assert result.exit_code == 0
    assert "Usage:" in result.stdout


def test_contexts(env):
    result = runner.invoke(app, ["contexts"], env=env)
    assert result.exit_code == 0
    assert "prod" in result.stdout
    assert "staging" in result.stdout
    assert "https://staging.example.com:6443" in result.stdout


def test_check_unknown_context(env):
    result = runner.invoke(app, ["check", "nope"], env=env)
    assert result.exit_code == 1
    assert "not_found" in result.stdout


def test_check_unreachable_cluster(env, kubeconfig_dict, tmp_path):
    # Nothing listens on port 1, so the connection is refused straight away.
    kubeconfig_dict["clusters"][1]["cluster"]["server"] = "https://127.0.0.1:1"
    path = tmp_path / "unreachable"
    path.write_text(yaml.safe_dump(kubeconfig_dict))
    env["KUBETETHER_KUBECONFIG"] = str(path)
    env["KUBETETHER_TIMEOUT"] = "2"
    result = runner.invoke(app, ["-v", "check", "staging"], env=env)
    assert result.exit_code == 1
    assert "Unable to reach" in result.stdout


def test_invalid_timeout(env):
    env["KUBETETHER_TIMEOUT"] = "soon"
    result = runner.invoke(app, ["contexts"], env=env)
    assert result.exit_code == 1
    assert "KUBETETHER_TIMEOUT" in result.stdout


def test_sessions(env):
    session = PortForwardSession(
        context_name="prod",
        namespace="web",
        resource_type="service",
        resource_name="api",
        local_port=18080,
        remote_port=80,
        status=SessionStatus.FAILED,
        last_error="process restarted",
    )
    anyio.run(FileSessionStore(env["KUBETETHER_STATE_FILE"]).save, session)

    result = runner.invoke(app, ["sessions"], env=env)
    assert result.exit_code == 0
    assert session.id[:8] in result.stdout
    assert "web/service/api" in result.stdout
    assert "process restarted" in result.stdout

    result = runner.invoke(app, ["sessions", "staging"], env=env)
    assert result.exit_code == 0
    assert session.id[:8] not in result.stdout


@pytest.mark.parametrize(
    "args",
    [
        ["prod", "deploy/web", "8080:80"],
        ["prod", "web", "8080:80"],
        ["prod", "pod/api-0", "local:80"],
        ["nope", "pod/api-0", "8080:80"],
    ],
)
def test_forward_invalid(env, args):
    result = runner.invoke(app, ["forward", *args], env=env)
    assert result.exit_code == 1
    assert "error" in result.stdout


def test_parse_resource():
    assert parse_resource("svc/web") == ("service", "web")
    assert parse_resource("Pods/api-0") == ("pod", "api-0")
    with pytest.raises(ValidationError):
        parse_resource("api-0")
    with pytest.raises(ValidationError):
        parse_resource("deployment/web")


def test_parse_ports():
    assert parse_ports("18080:80") == ("18080", "80")
    assert parse_ports("8080") == ("8080", "8080")
