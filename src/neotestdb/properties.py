"""In-place editing of Neo4j ``.conf`` / ``.properties`` files.

The server ships its configuration as ``key=value`` lines where optional
settings are commented out (``#key=...`` or ``# key=...``). Setting a property
rewrites the first active line for the key, uncommenting the first commented
occurrence when no active line exists; every other line is preserved byte for
byte.
"""
from __future__ import annotations

import logging
import os
import re
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from .layout import ServerLayout

LOGGER = logging.getLogger(__name__)


class PropertiesError(RuntimeError):
    """Raised when the server configuration file cannot be read or written."""


@dataclass(frozen=True, slots=True)
class ServerProperties:
    """Textual patcher for a server configuration file."""

    path: Path

    @classmethod
    def for_layout(cls, layout: ServerLayout) -> ServerProperties:
        """Return the patcher for the configuration file of *layout*."""
        return cls(layout.properties_path)

    def read_text(self) -> str:
        """Return the raw file contents."""
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise PropertiesError(f"Server configuration not found: {self.path}") from exc
        except OSError as exc:
            raise PropertiesError(f"Failed to read {self.path}: {exc}") from exc

    def read(self) -> dict[str, str]:
        """Parse active ``key=value`` lines into a mapping (last line wins)."""
        values: dict[str, str] = {}
        for raw_line in self.read_text().splitlines():
            line = raw_line.strip()
            if not line or line.startswith(("#", "!")):
                continue
            key, sep, value = line.partition("=")
            if not sep:
                continue
            values[key.strip()] = value.strip()
        return values

    def get_property(self, name: str) -> str | None:
        """Return the active value for *name*, if any."""
        return self.read().get(name)

    def set_property(self, name: str, value: object) -> bool:
        """Set *name* to *value*; return whether a line for the key existed."""
        return self.set_properties({name: value})[name]

    def set_properties(self, values: Mapping[str, object]) -> dict[str, bool]:
        """Apply several properties with a single read and write."""
        text = self.read_text()
        applied: dict[str, bool] = {}
        for name, value in values.items():
            text, found = _patch(text, name, _format_value(value))
            applied[name] = found
            if not found:
                LOGGER.warning("Property %s not present in %s; left unchanged.", name, self.path)
        self._write_text(text)
        return applied

    def _write_text(self, text: str) -> None:
        directory = self.path.parent
        try:
            tmp_fd, tmp_name = tempfile.mkstemp(dir=str(directory), prefix=f".{self.path.name}.")
        except OSError as exc:
            raise PropertiesError(f"Failed to write {self.path}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8", newline="") as handle:
                handle.write(text)
            mode = self.path.stat().st_mode & 0o777
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise PropertiesError(f"Failed to write {self.path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


def _patch(text: str, name: str, value: str) -> tuple[str, bool]:
    key = re.escape(name)
    pattern = re.compile(rf"(?m)^([ \t]*){key}[ \t]*=[^\r\n]*")
    if pattern.search(text) is None:
        # "#key" and "# key" both collapse to "key" for the first commented line.
        text = re.sub(rf"(?m)^([ \t]*)#[ \t]?(?={key}[ \t]*=)", r"\1", text, count=1)
        if pattern.search(text) is None:
            return text, False
    replacement = f"{name}={value}"
    return pattern.sub(lambda match: match.group(1) + replacement, text, count=1), True


def _format_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


__all__ = ["PropertiesError", "ServerProperties"]
