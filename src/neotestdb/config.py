"""Configuration loader for neotestdb.

Configuration values are read from several sources, later sources winning:

1. Built-in defaults.
2. ``neotestdb.yml`` in the working directory (or an override path).
3. Environment variables prefixed with ``NEOTESTDB_``.
4. Explicit overrides supplied programmatically (CLI flags, pytest options).

Environment keys use double underscores to express nesting, e.g.::

    export NEOTESTDB_PORTS__HTTP=7474
    export NEOTESTDB_TIMEOUTS__START=300

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load neotestdb configuration. Install with "
        "`pip install neotestdb` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "NEOTESTDB_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

DEFAULT_CONFIG_FILE = "neotestdb.yml"
DEFAULT_VERSION = "2.3.3"
DEFAULT_HTTP_PORT = 6363
DEFAULT_BOLT_PORT = 6365


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PortsConfig:
    """Fallback ports used when an instance is created with a falsy port."""

    http: int = DEFAULT_HTTP_PORT
    bolt: int = DEFAULT_BOLT_PORT

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"http": self.http, "bolt": self.bolt}


@dataclass(frozen=True)
class TimeoutsConfig:
    """Seconds to wait for the ready and shutdown markers."""

    start: float = 120.0
    stop: float = 60.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"start": self.start, "stop": self.stop}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for neotestdb."""

    config_file: Path
    install_root: Path
    default_version: str
    logs_dir: Path | None
    binary_mode: int
    register_exit_hook: bool
    ports: PortsConfig
    timeouts: TimeoutsConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "install_root": str(self.install_root),
            "default_version": self.default_version,
            "logs_dir": str(self.logs_dir) if self.logs_dir is not None else None,
            "binary_mode": f"{self.binary_mode:04o}",
            "register_exit_hook": self.register_exit_hook,
            "ports": self.ports.to_dict(),
            "timeouts": self.timeouts.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": DEFAULT_CONFIG_FILE,
    "install_root": "bin",
    "default_version": DEFAULT_VERSION,
    "logs_dir": None,
    "binary_mode": "0755",
    "register_exit_hook": True,
    "ports": {
        "http": DEFAULT_HTTP_PORT,
        "bolt": DEFAULT_BOLT_PORT,
    },
    "timeouts": {
        "start": 120.0,
        "stop": 60.0,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_path = _determine_config_path(DEFAULT_CONFIG_FILE, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    ports = raw.get("ports")
    if ports is not None:
        ports_map = _as_dict(ports, "ports")
        unknown = set(ports_map.keys()) - {"http", "bolt"}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown ports configuration keys: {joined}.")

    timeouts = raw.get("timeouts")
    if timeouts is not None:
        timeouts_map = _as_dict(timeouts, "timeouts")
        unknown = set(timeouts_map.keys()) - {"start", "stop"}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown timeouts configuration keys: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    install_root = _to_path(raw.get("install_root"))

    logs_value = raw.get("logs_dir")
    logs_dir: Path | None = None
    if isinstance(logs_value, (str, Path)):
        if str(logs_value).strip():
            logs_dir = _to_path(logs_value)
    elif logs_value is not None:
        raise ConfigError("logs_dir must be a string, Path, or null.")

    default_version = str(raw.get("default_version") or DEFAULT_VERSION).strip()
    if not default_version:
        raise ConfigError("default_version must be a non-empty string.")

    ports_mapping = _as_dict(raw.get("ports"), "ports")
    ports = PortsConfig(
        http=_expect_port(ports_mapping.get("http"), "ports.http", default=DEFAULT_HTTP_PORT),
        bolt=_expect_port(ports_mapping.get("bolt"), "ports.bolt", default=DEFAULT_BOLT_PORT),
    )

    timeouts_mapping = _as_dict(raw.get("timeouts"), "timeouts")
    timeouts = TimeoutsConfig(
        start=_expect_positive_float(timeouts_mapping.get("start"), "timeouts.start", default=120.0),
        stop=_expect_positive_float(timeouts_mapping.get("stop"), "timeouts.stop", default=60.0),
    )

    return AppConfig(
        config_file=config_file,
        install_root=install_root,
        default_version=default_version,
        logs_dir=logs_dir,
        binary_mode=_parse_permission_mode(raw.get("binary_mode", "0755"), "binary_mode"),
        register_exit_hook=_expect_bool(
            raw.get("register_exit_hook"), "register_exit_hook", default=True
        ),
        ports=ports,
        timeouts=timeouts,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _parse_permission_mode(value: object, label: str) -> int:
    if value is None:
        raise ConfigError(f"{label} must be specified.")
    if isinstance(value, bool):
        raise ConfigError(f"{label} must be an octal integer string. Got boolean {value!r}.")
    if isinstance(value, int):
        mode = value
        if value > 0o777:
            # An unquoted 755 arrives as decimal; read its digits as octal.
            try:
                mode = int(str(value), 8)
            except ValueError as exc:
                raise ConfigError(f"{label} must be an octal integer string.") from exc
    elif isinstance(value, str):
        text = value.strip().lower()
        if not text:
            raise ConfigError(f"{label} must be an octal integer string.")
        if text.startswith("0o"):
            text = text[2:]
        try:
            mode = int(text, 8)
        except ValueError as exc:
            raise ConfigError(f"{label} must be an octal integer string.") from exc
    else:
        raise ConfigError(f"{label} must be an octal integer or string.")
    if mode < 0 or mode > 0o777:
        raise ConfigError(f"{label} must be between 0000 and 0777 inclusive.")
    return mode


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_port(value: object | None, label: str, *, default: int) -> int:
    port = _expect_int(value, label, default=default)
    if port < 1 or port > 65535:
        raise ConfigError(f"{label} must be between 1 and 65535. Got {port}.")
    return port


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "DEFAULT_BOLT_PORT",
    "DEFAULT_HTTP_PORT",
    "DEFAULT_VERSION",
    "PortsConfig",
    "TimeoutsConfig",
    "load_config",
]
