"""Filesystem layout and dialect of a bundled Neo4j community server."""
from __future__ import annotations

import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from packaging.version import InvalidVersion, Version


class LayoutError(ValueError):
    """Raised when a server version string cannot be used."""


@dataclass(frozen=True, slots=True)
class ServerDialect:
    """Version-specific file names and console markers."""

    properties_name: str
    ready_markers: tuple[str, ...]
    shutdown_markers: tuple[str, ...]
    databases_subdir: str | None = None

    def is_ready(self, line: str) -> bool:
        """Return whether *line* announces that the server accepts requests."""
        return any(marker in line for marker in self.ready_markers)

    def is_shutdown(self, line: str) -> bool:
        """Return whether *line* announces a completed shutdown."""
        return any(marker in line for marker in self.shutdown_markers)


# 2.x prints the first marker, 3.x the second; both are accepted everywhere.
READY_MARKERS = ("Remote interface ready and available", "Remote interface available")
SHUTDOWN_MARKERS = ("Successfully shutdown database", "Stopped.")

DIALECT_V3 = ServerDialect(
    properties_name="neo4j.conf",
    ready_markers=READY_MARKERS,
    shutdown_markers=SHUTDOWN_MARKERS,
    databases_subdir="data/databases",
)
DIALECT_LEGACY = ServerDialect(
    properties_name="neo4j-server.properties",
    ready_markers=READY_MARKERS,
    shutdown_markers=SHUTDOWN_MARKERS,
)

_LEADING_DIGITS = re.compile(r"^\s*v?(\d+)")


@dataclass(frozen=True, slots=True)
class ServerLayout:
    """Resolve paths for ``<install_root>/neo4j-community-<version>``."""

    version: str
    install_root: Path
    major: int = field(init=False)

    def __post_init__(self) -> None:
        """Normalise inputs and derive the major version."""
        normalized = self.version.strip()
        if not normalized:
            raise LayoutError("Server version must be a non-empty string.")
        object.__setattr__(self, "version", normalized)
        object.__setattr__(self, "install_root", self.install_root.expanduser().resolve())
        object.__setattr__(self, "major", parse_major(normalized))

    @property
    def is_v3(self) -> bool:
        """Return whether the server uses the 3.x configuration dialect."""
        return self.major == 3

    @property
    def is_windows(self) -> bool:
        """Return whether this is a Windows distribution of the server."""
        return "win" in self.version

    @property
    def dialect(self) -> ServerDialect:
        """Return the dialect matching the major version."""
        return DIALECT_V3 if self.is_v3 else DIALECT_LEGACY

    @property
    def server_dir(self) -> Path:
        """Return the install directory of this server version."""
        return self.install_root / f"neo4j-community-{self.version}"

    @property
    def binary(self) -> Path:
        """Return the console launcher script."""
        name = "neo4j.bat" if self.is_windows else "neo4j"
        return self.server_dir / "bin" / name

    @property
    def properties_path(self) -> Path:
        """Return the server configuration file."""
        return self.server_dir / "conf" / self.dialect.properties_name

    @staticmethod
    def database_location(port: int) -> str:
        """Return the database path written into the configuration."""
        return f"data/graph.db.{port}"

    def database_dir(self, port: int) -> Path:
        """Return the on-disk database directory used for *port*."""
        base = self.server_dir
        subdir = self.dialect.databases_subdir
        if subdir:
            base = base / subdir
        return base / self.database_location(port)

    def remove_database(self, port: int) -> bool:
        """Delete the database directory for *port*; return whether it existed."""
        safe_root = self.server_dir.resolve()
        target = self.database_dir(port).resolve()
        if target == safe_root or not target.is_relative_to(safe_root):
            raise LayoutError(f"Refusing to delete {target} outside {safe_root}.")
        if not target.exists():
            return False
        shutil.rmtree(target)
        return True


def parse_major(version: str) -> int:
    """Return the major component of a server version string.

    Distribution suffixes such as ``3.0.4-win`` are not PEP 440 versions, so
    the leading digits are used when :mod:`packaging` rejects the string.
    """
    try:
        return Version(version).major
    except InvalidVersion:
        match = _LEADING_DIGITS.match(version)
        if match is None:
            raise LayoutError(f"Cannot determine the major version of {version!r}.") from None
        return int(match.group(1))


__all__ = [
    "DIALECT_LEGACY",
    "DIALECT_V3",
    "LayoutError",
    "ServerDialect",
    "ServerLayout",
    "parse_major",
]
