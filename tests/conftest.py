"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
import queue
import subprocess
import threading
from collections.abc import Callable
from pathlib import Path

import pytest

from neotestdb.config import AppConfig, load_config

LEGACY_PROPERTIES = """\
# Neo4j server configuration
org.neo4j.server.database.location=data/graph.db
#org.neo4j.server.webserver.address=0.0.0.0
org.neo4j.server.webserver.port=7474
org.neo4j.server.webserver.https.enabled=true
org.neo4j.server.webserver.https.port=7473
"""

V3_CONF = """\
# Neo4j configuration
#dbms.active_database=graph.db
#dbms.security.auth_enabled=false
dbms.connector.bolt.enabled=true
#dbms.connector.bolt.address=0.0.0.0:7687
# dbms.connector.bolt.listen_address=:7687
dbms.connector.http.enabled=true
dbms.connector.http.address=0.0.0.0:7474
# dbms.connector.http.listen_address=:7474
dbms.connector.https.enabled=true
"""

READY_LINE = "2024-01-01 00:00:00.000+0000 INFO  Remote interface available at http://localhost/"
SHUTDOWN_LINE = "2024-01-01 00:00:01.000+0000 INFO  Stopped."


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


InstallFactory = Callable[..., Path]


@pytest.fixture
def install_root(tmp_path: Path) -> Path:
    """Return the directory holding ``neo4j-community-*`` installs."""
    root = tmp_path / "bin"
    root.mkdir()
    return root


@pytest.fixture
def make_install(install_root: Path) -> InstallFactory:
    """Return a factory that lays out a fake server install for a version."""

    def _make(version: str, *, binary: str | None = "", properties: str | None = None) -> Path:
        server_dir = install_root / f"neo4j-community-{version}"
        conf_dir = server_dir / "conf"
        bin_dir = server_dir / "bin"
        conf_dir.mkdir(parents=True)
        bin_dir.mkdir()
        is_v3 = version.startswith("3")
        conf_name = "neo4j.conf" if is_v3 else "neo4j-server.properties"
        if properties is None:
            properties = V3_CONF if is_v3 else LEGACY_PROPERTIES
        (conf_dir / conf_name).write_text(properties, encoding="utf-8")
        if binary is not None:
            launcher = "neo4j.bat" if "win" in version else "neo4j"
            (bin_dir / launcher).write_text(binary, encoding="utf-8")
        return server_dir

    return _make


@pytest.fixture
def app_config(tmp_path: Path, install_root: Path) -> AppConfig:
    """Return an application config isolated from the host environment."""
    return load_config(
        config_file=tmp_path / "absent.yml",
        env={},
        overrides={"install_root": str(install_root), "register_exit_hook": False},
    )


class FakeStream:
    """Queue-backed stand-in for a text pipe."""

    def __init__(self) -> None:
        """Initialise an empty stream."""
        self._lines: queue.Queue[str] = queue.Queue()
        self.closed = False

    def feed(self, line: str) -> None:
        """Queue *line* for the reader."""
        self._lines.put(line + "\n")

    def finish(self) -> None:
        """Signal end of stream."""
        self._lines.put("")

    def readline(self) -> str:
        """Block until a line (or EOF) is available."""
        return self._lines.get()

    def close(self) -> None:
        """Mark the stream closed."""
        self.closed = True


class FakePopen:
    """Minimal ``subprocess.Popen`` replacement driven by the tests."""

    instances: list[FakePopen] = []
    startup_lines: list[str] = []
    exit_after_startup: int | None = None
    shutdown_on_signal = True
    stderr_on_signal: list[str] = []
    next_pid = 4242

    def __init__(self, args: object, **kwargs: object) -> None:
        """Record the invocation and replay any scripted startup output."""
        self.args = args
        self.kwargs = kwargs
        cls = type(self)
        self.pid = cls.next_pid + len(cls.instances)
        self.stdout = FakeStream()
        self.stderr = FakeStream()
        self.returncode: int | None = None
        self.signals: list[int] = []
        self._exited = threading.Event()
        cls.instances.append(self)
        for line in cls.startup_lines:
            self.stdout.feed(line)
        if cls.exit_after_startup is not None:
            self.exit(cls.exit_after_startup)

    def poll(self) -> int | None:
        """Return the exit code, if exited."""
        return self.returncode

    def wait(self, timeout: float | None = None) -> int | None:
        """Wait for :meth:`exit`."""
        if not self._exited.wait(timeout):
            raise subprocess.TimeoutExpired(self.args, timeout or 0)
        return self.returncode

    def send_signal(self, sig: int) -> None:
        """Record *sig*; optionally shut down like a well-behaved server."""
        self.signals.append(sig)
        for line in type(self).stderr_on_signal:
            self.stderr.feed(line)
        if type(self).shutdown_on_signal:
            self.stdout.feed(SHUTDOWN_LINE)
            self.exit(0)

    def kill(self) -> None:
        """Terminate immediately."""
        self.signals.append(-9)
        self.exit(-9)

    def exit(self, code: int) -> None:
        """Exit with *code* and close both streams."""
        if self.returncode is not None:
            return
        self.returncode = code
        self._exited.set()
        self.stdout.finish()
        self.stderr.finish()


@pytest.fixture
def fake_popen(monkeypatch: pytest.MonkeyPatch) -> type[FakePopen]:
    """Replace ``subprocess.Popen`` with a per-test :class:`FakePopen` subclass."""

    class _Popen(FakePopen):
        instances: list[FakePopen] = []
        startup_lines: list[str] = []

    monkeypatch.setattr("neotestdb.process.subprocess.Popen", _Popen)
    return _Popen
