"""pytest plugin providing a session-wide Neo4j server.

Enable it by installing neotestdb (it registers through the ``pytest11``
entry point) and request the ``neotestdb_instance`` fixture::

    def test_query(neotestdb_instance):
        driver = GraphDatabase.driver(neotestdb_instance.bolt_url)
"""
from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from .config import AppConfig, load_config
from .instance import ConnectionInfo, NeoTestDB


def pytest_addoption(parser: pytest.Parser) -> None:
    """Register command line options for the server fixture."""
    group = parser.getgroup("neotestdb", "throwaway Neo4j server")
    group.addoption(
        "--neotestdb-port",
        type=int,
        default=None,
        help="HTTP port for the neotestdb server (defaults to ports.http).",
    )
    group.addoption(
        "--neotestdb-bolt-port",
        type=int,
        default=None,
        help="Bolt port for 3.x servers (defaults to ports.bolt).",
    )
    group.addoption(
        "--neotestdb-version",
        default=None,
        help="Bundled server version to launch (defaults to default_version).",
    )
    group.addoption(
        "--neotestdb-config",
        default=None,
        help="Path to a neotestdb YAML config file.",
    )


def resolve_config(pytest_config: pytest.Config) -> AppConfig:
    """Load the application config honouring ``--neotestdb-config``."""
    config_file = pytest_config.getoption("--neotestdb-config")
    return load_config(config_file=Path(config_file) if config_file else None)


def build_instance(pytest_config: pytest.Config) -> NeoTestDB:
    """Construct the instance described by the command line options."""
    app_config = resolve_config(pytest_config)
    port = pytest_config.getoption("--neotestdb-port")
    return NeoTestDB(
        port if port is not None else app_config.ports.http,
        pytest_config.getoption("--neotestdb-version"),
        pytest_config.getoption("--neotestdb-bolt-port"),
        config=app_config,
    )


@pytest.fixture(scope="session")
def neotestdb_server(pytestconfig: pytest.Config) -> Iterator[NeoTestDB]:
    """Yield a started :class:`NeoTestDB`; stopped at the end of the session."""
    instance = build_instance(pytestconfig)
    instance.start()
    try:
        yield instance
    finally:
        instance.stop()


@pytest.fixture(scope="session")
def neotestdb_instance(neotestdb_server: NeoTestDB) -> ConnectionInfo:
    """Return connection details of the session server."""
    return neotestdb_server.connection_info()
