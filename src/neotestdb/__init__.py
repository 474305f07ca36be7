"""neotestdb package bootstrap.

Exposes the lifecycle controller for throwaway Neo4j servers together with
lightweight metadata that packaging machinery relies upon.
"""
from __future__ import annotations

from .instance import (
    ConnectionInfo,
    InstanceCancelledError,
    InstanceConfigError,
    InstanceError,
    InstanceExitedError,
    InstanceSpawnError,
    InstanceState,
    InstanceStateError,
    InstanceTimeoutError,
    NeoTestDB,
    ServerError,
)

__all__ = [
    "ConnectionInfo",
    "InstanceCancelledError",
    "InstanceConfigError",
    "InstanceError",
    "InstanceExitedError",
    "InstanceSpawnError",
    "InstanceState",
    "InstanceStateError",
    "InstanceTimeoutError",
    "NeoTestDB",
    "ServerError",
    "__version__",
    "get_version",
]

# NOTE: The version is duplicated in ``pyproject.toml`` and managed by Hatch.
__version__ = "0.1.0"


def get_version() -> str:
    """Return the current package version."""
    return __version__
