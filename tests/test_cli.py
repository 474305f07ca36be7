"""Tests for the neotestdb CLI."""
from __future__ import annotations

import json
from pathlib import Path

import pytest
from rich.console import Console
from typer.testing import CliRunner, Result

from neotestdb import __version__, cli
from neotestdb.cli import app
from neotestdb.exit_codes import ExitCode

from conftest import READY_LINE, FakePopen, InstallFactory

runner = CliRunner()


@pytest.fixture(autouse=True)
def wide_consoles(monkeypatch: pytest.MonkeyPatch) -> None:
    """Render rich output without wrapping long temporary paths."""
    monkeypatch.setattr(cli, "console", Console(width=400, color_system=None))
    monkeypatch.setattr(cli, "err_console", Console(width=400, color_system=None, stderr=True))


@pytest.fixture
def cli_env(tmp_path: Path, install_root: Path) -> dict[str, str]:
    """Environment isolating the CLI from host configuration."""
    return {
        "NEOTESTDB_CONFIG_FILE": str(tmp_path / "absent.yml"),
        "NEOTESTDB_INSTALL_ROOT": str(install_root),
        "NEOTESTDB_LOGS_DIR": str(tmp_path / "logs"),
        "NEOTESTDB_REGISTER_EXIT_HOOK": "false",
    }


def _invoke(args: list[str], env: dict[str, str]) -> Result:
    return runner.invoke(app, args, env=env)


def _operations(tmp_path: Path) -> list[dict[str, object]]:
    path = tmp_path / "logs" / "operations.jsonl"
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_version_flag() -> None:
    """``--version`` prints the package version."""
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert f"neotestdb {__version__}" in result.stdout


def test_help_lists_commands() -> None:
    """The root help mentions each command."""
    result = runner.invoke(app, ["--help"])

    assert result.exit_code == 0
    for command in ("run", "configure", "info", "cleanup", "config"):
        assert command in result.stdout


def test_config_show_json(cli_env: dict[str, str], install_root: Path) -> None:
    """``config show --json`` renders the merged configuration."""
    result = _invoke(["config", "show", "--json"], cli_env)

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["install_root"] == str(install_root)
    assert payload["register_exit_hook"] is False
    assert payload["ports"] == {"http": 6363, "bolt": 6365}


def test_config_show_table(cli_env: dict[str, str]) -> None:
    """The table rendering flattens nested sections."""
    result = _invoke(["config", "show"], cli_env)

    assert result.exit_code == 0, result.output
    assert "ports.http" in result.stdout
    assert "timeouts.start" in result.stdout


def test_invalid_config_exits_with_validation_code(
    cli_env: dict[str, str], tmp_path: Path
) -> None:
    """A broken config file aborts every command with exit code 2."""
    bad = tmp_path / "bad.yml"
    bad.write_text("unknown: 1\n")
    cli_env["NEOTESTDB_CONFIG_FILE"] = str(bad)

    result = _invoke(["config", "show"], cli_env)

    assert result.exit_code == ExitCode.VALIDATION
    assert "Unknown configuration keys" in result.output


def test_info_json_for_v3(
    cli_env: dict[str, str], make_install: InstallFactory
) -> None:
    """``info`` reports paths and endpoints without modifying the install."""
    server_dir = make_install("3.5.35")
    conf = server_dir / "conf" / "neo4j.conf"
    before = conf.read_text()

    result = _invoke(["info", "-s", "3.5.35", "-p", "7575", "--json"], cli_env)

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["version"] == "3.5.35"
    assert payload["properties"] == str(conf.resolve())
    assert payload["installed"] is True
    assert payload["url"] == "http://localhost:7575"
    assert payload["bolt_url"] == "bolt://localhost:6365"
    assert payload["database"].endswith("graph.db.7575")
    assert conf.read_text() == before


def test_info_legacy_has_no_bolt(cli_env: dict[str, str]) -> None:
    """2.x layouts do not advertise a Bolt endpoint."""
    result = _invoke(["info", "--json"], cli_env)

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["version"] == "2.3.3"
    assert payload["installed"] is False
    assert "bolt_url" not in payload


def test_configure_patches_properties(
    cli_env: dict[str, str], make_install: InstallFactory, tmp_path: Path
) -> None:
    """``configure`` rewrites the server configuration for the port."""
    server_dir = make_install("2.3.3")

    result = _invoke(["configure", "--port", "7575"], cli_env)

    assert result.exit_code == 0, result.output
    assert "Configured" in result.stdout
    assert "http://localhost:7575" in result.stdout
    text = (server_dir / "conf" / "neo4j-server.properties").read_text()
    assert "org.neo4j.server.webserver.port=7575" in text
    assert "org.neo4j.server.database.location=data/graph.db.7575" in text

    (record,) = _operations(tmp_path)
    assert record["operation"] == "configure"
    steps = record["steps"]
    assert isinstance(steps, list)
    assert steps[0]["name"] == "properties.patch"


def test_configure_missing_install_is_environment_error(
    cli_env: dict[str, str], tmp_path: Path
) -> None:
    """A missing server configuration exits with the environment code."""
    result = _invoke(["configure", "--port", "7575"], cli_env)

    assert result.exit_code == ExitCode.ENVIRONMENT
    assert "not found" in result.output
    (record,) = _operations(tmp_path)
    result_record = record["result"]
    assert isinstance(result_record, dict)
    assert result_record["status"] == "error"
    assert result_record["rc"] == int(ExitCode.ENVIRONMENT)


def test_cleanup_removes_database(
    cli_env: dict[str, str], make_install: InstallFactory
) -> None:
    """``cleanup`` deletes the per-port database and is idempotent."""
    server_dir = make_install("2.3.3")
    database = server_dir / "data" / "graph.db.7575"
    database.mkdir(parents=True)
    conf = server_dir / "conf" / "neo4j-server.properties"
    before = conf.read_text()

    first = _invoke(["cleanup", "-p", "7575"], cli_env)
    second = _invoke(["cleanup", "-p", "7575"], cli_env)

    assert first.exit_code == 0, first.output
    assert "Removed" in first.stdout
    assert not database.exists()
    assert second.exit_code == 0
    assert "Nothing to remove" in second.stdout
    assert conf.read_text() == before


def test_run_until_interrupted(
    cli_env: dict[str, str],
    make_install: InstallFactory,
    fake_popen: type[FakePopen],
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    """``run`` starts the server, waits, and stops it on Ctrl+C."""
    make_install("2.3.3")
    fake_popen.startup_lines = [READY_LINE]

    def interrupt(instance: object) -> None:
        raise KeyboardInterrupt

    monkeypatch.setattr(cli, "_wait_while_running", interrupt)

    result = _invoke(["run", "-p", "7575", "--timeout", "5"], cli_env)

    assert result.exit_code == 0, result.output
    assert "Neo4j is running" in result.stdout
    assert "Neo4j stopped" in result.stdout
    (process,) = fake_popen.instances
    assert process.returncode == 0

    (record,) = _operations(tmp_path)
    result_record = record["result"]
    assert isinstance(result_record, dict)
    assert result_record["status"] == "success"
    assert [step["name"] for step in record["steps"]] == [  # type: ignore[union-attr]
        "properties.patch",
        "server.start",
        "server.stop",
    ]


def test_run_reports_start_failure(
    cli_env: dict[str, str],
    make_install: InstallFactory,
    fake_popen: type[FakePopen],
) -> None:
    """A server error during startup exits with the server code."""
    make_install("2.3.3")
    fake_popen.startup_lines = ["12:00 ERROR Address already in use"]

    result = _invoke(["run", "--timeout", "5"], cli_env)

    assert result.exit_code == ExitCode.SERVER
    assert "Start failed" in result.output


def test_run_reports_crash_while_running(
    cli_env: dict[str, str],
    make_install: InstallFactory,
    fake_popen: type[FakePopen],
) -> None:
    """A server that dies after becoming ready exits with the server code."""
    make_install("2.3.3")
    fake_popen.startup_lines = [READY_LINE]
    fake_popen.exit_after_startup = 1

    result = _invoke(["run", "--timeout", "5", "--json"], cli_env)

    assert result.exit_code == ExitCode.SERVER
    assert "Server failed" in result.output


def test_info_logs_requested_ports(
    cli_env: dict[str, str], make_install: InstallFactory, tmp_path: Path
) -> None:
    """The operation record for ``info`` carries every port argument."""
    make_install("3.5.35")

    result = _invoke(
        ["info", "-s", "3.5.35", "-p", "7575", "--bolt-port", "7687", "--json"], cli_env
    )

    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)["bolt_url"] == "bolt://localhost:7687"
    (record,) = _operations(tmp_path)
    args = record["args"]
    assert isinstance(args, dict)
    assert args["port"] == 7575
    assert args["bolt_port"] == 7687
