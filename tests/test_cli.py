"""Tests for the apirun command line."""

import json
import logging
import os

import pytest
import yaml

import apirun.apirun as cli
from apirun.models import Response
from apirun.transport import Transport


class FakeTransport(Transport):
    def __init__(self, timeout=30, status=200):
        self.timeout = timeout
        self.status = status
        self.sent = []

    def send(self, resolved):
        self.sent.append(resolved)
        return Response(self.status, "OK", {"Content-Type": "application/json"}, json.dumps({"id": 1}))


def _write(path, data):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, sort_keys=False)


def _make_workspace(root, tests='test "ok", status == 200', post_script="set lastId = body.id"):
    _write(os.path.join(root, "environments", "development.yaml"), {
        "id": "development",
        "name": "Development",
        "isActive": True,
        "variables": {"baseUrl": "https://api.example.com"},
    })
    _write(os.path.join(root, "environments", "production.yaml"), {
        "id": "production",
        "name": "Production",
        "variables": {"baseUrl": "https://prod.example.com"},
    })
    _write(os.path.join(root, "collections", "users", "get-user.yaml"), {
        "name": "Get User",
        "url": "{{baseUrl}}/users/{{id}}",
        "pathVariables": {"id": "1"},
        "postScript": post_script,
        "tests": tests,
    })
    return root


@pytest.fixture(autouse=True)
def reset_logger():
    yield
    log = logging.getLogger("apirun")
    for handler in log.handlers[:]:
        log.removeHandler(handler)
        handler.close()


@pytest.fixture
def transports(monkeypatch):
    created = []

    def factory(timeout=30):
        transport = FakeTransport(timeout)
        created.append(transport)
        return transport

    monkeypatch.setattr(cli, "RequestsTransport", factory)
    return created


def test_run_writes_log_report_and_persists_environment(tmp_path, transports):
    root = _make_workspace(str(tmp_path))
    cli.main(["run", root])

    assert transports[0].sent[0].url == "https://api.example.com/users/1"
    assert os.listdir(os.path.join(root, "logs"))
    reports = os.listdir(os.path.join(root, "reports"))
    assert len(reports) == 1
    assert reports[0].startswith("report_") and reports[0].endswith(".html")
    with open(os.path.join(root, "environments", "development.yaml"), encoding="utf-8") as f:
        assert yaml.safe_load(f)["variables"]["lastId"] == "1"


def test_run_exits_with_error_when_a_test_fails(tmp_path, transports):
    root = _make_workspace(str(tmp_path), tests='test "created", status == 201')
    with pytest.raises(SystemExit) as exc_info:
        cli.main(["run", root, "--no-report"])
    assert exc_info.value.code == 1
    assert not os.path.exists(os.path.join(root, "reports"))


def test_run_with_other_environment(tmp_path, transports):
    root = _make_workspace(str(tmp_path))
    cli.main(["run", root, "--env", "production", "--no-report"])
    assert transports[0].sent[0].url == "https://prod.example.com/users/1"


def test_run_unknown_collection(tmp_path, transports):
    root = _make_workspace(str(tmp_path))
    with pytest.raises(SystemExit) as exc_info:
        cli.main(["run", root, "--collection", "orders"])
    assert exc_info.value.code == 1


def test_run_uses_collection_order_from_config(tmp_path, transports):
    root = _make_workspace(str(tmp_path))
    _write(os.path.join(root, "collections", "orders", "list.yaml"), {
        "name": "List Orders",
        "url": "{{baseUrl}}/orders",
    })
    with open(os.path.join(root, "config.yaml"), "w", encoding="utf-8") as f:
        f.write("COLLECTION_ORDER:\n  - orders\n")
    cli.main(["run", root, "--no-report"])
    assert [r.url for r in transports[0].sent] == ["https://api.example.com/orders"]


def test_missing_workspace(tmp_path, capsys):
    with pytest.raises(SystemExit) as exc_info:
        cli.main(["envs", str(tmp_path / "missing")])
    assert exc_info.value.code == 1
    assert "Workspace not found" in capsys.readouterr().out


def test_envs_lists_and_activates(tmp_path, capsys):
    root = _make_workspace(str(tmp_path))
    cli.main(["envs", root])
    out = capsys.readouterr().out
    assert "* Development (1 variables)" in out
    assert "  Production (1 variables)" in out

    cli.main(["envs", root, "--activate", "Production"])
    out = capsys.readouterr().out
    assert "* Production" in out
    assert "  Development" in out
    with open(os.path.join(root, "environments", "production.yaml"), encoding="utf-8") as f:
        assert yaml.safe_load(f)["isActive"] is True


def test_check_lists_variables(tmp_path, capsys):
    root = _make_workspace(str(tmp_path))
    cli.main(["check", root])
    out = capsys.readouterr().out
    assert "users (1 requests)" in out
    assert "Get User  variables: baseUrl, id" in out


def test_check_reports_script_errors(tmp_path, capsys):
    root = _make_workspace(str(tmp_path), tests='test "bad", status ==', post_script="let = 1")
    with pytest.raises(SystemExit) as exc_info:
        cli.main(["check", root])
    assert exc_info.value.code == 1
    out = capsys.readouterr().out
    assert "ERROR postScript: line 1:" in out
    assert "ERROR tests: line 1:" in out
    assert "2 script error(s) found." in out


def test_check_reports_oversized_scripts(tmp_path, capsys):
    root = _make_workspace(
        str(tmp_path),
        tests='test "big", body.id == ' + "9" * 5000,
        post_script="let x = " + "-" * 3000 + "1",
    )
    with pytest.raises(SystemExit) as exc_info:
        cli.main(["check", root])
    assert exc_info.value.code == 1
    out = capsys.readouterr().out
    assert "ERROR postScript: line 1: expression nested too deeply" in out
    assert "ERROR tests: line 1: number literal too long" in out
