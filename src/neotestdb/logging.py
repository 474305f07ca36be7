"""Structured operation log for neotestdb commands.

Every CLI command opens an :class:`OperationScope`; when the scope closes a
single JSON record describing the operation (arguments, target, steps and
result) is appended to ``operations.jsonl`` inside the configured log
directory. Logging is best effort: a missing or unwritable directory disables
the logger instead of failing the command.
"""
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG_NAME = "operations.jsonl"


class OperationScope:
    """Collects steps and the final result for a single operation."""

    def __init__(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise the scope for operation *name*."""
        self.name = name
        self.op_id = uuid.uuid4().hex
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.started_at = datetime.now(UTC)
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self._started = time.monotonic()

    def add_step(self, name: str, *, status: str, detail: object | None = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = _sanitize(detail)
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result("success", message, changed=changed, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] = (),
        errors: Sequence[str] = (),
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            context=context,
            warnings=list(warnings),
            errors=list(errors),
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            context=context,
            errors=list(errors) if errors else [message],
            rc=rc,
        )

    def to_record(self) -> dict[str, object]:
        """Return the JSON record describing this operation."""
        return {
            "op_id": self.op_id,
            "operation": self.name,
            "started_at": self.started_at.isoformat(),
            "duration_ms": int((time.monotonic() - self._started) * 1000),
            "pid": os.getpid(),
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "steps": self.steps,
            "result": self.result,
        }

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
        **extra: object,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message}
        if changed is not None:
            result["changed"] = changed
        for key, value in extra.items():
            if value is not None:
                result[key] = _sanitize(value)
        if context:
            result["context"] = _sanitize(dict(context))
        self.result = result


class StructuredLogger:
    """Append-only JSON-lines logger for CLI operations."""

    def __init__(self, log_dir: Path | None) -> None:
        """Prepare *log_dir*; a ``None`` directory disables logging."""
        self._log_dir = log_dir
        self._operations_log_path = (
            log_dir / OPERATIONS_LOG_NAME if log_dir is not None else None
        )
        self._enabled = False
        if log_dir is None:
            return
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Operation log disabled; cannot create %s: %s", log_dir, exc)
            return
        self._enabled = True

    @property
    def enabled(self) -> bool:
        """Return whether records are currently being written."""
        return self._enabled

    @contextmanager
    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Open an operation scope and persist its record on exit."""
        scope = OperationScope(name, args=args, target=target)
        try:
            yield scope
        except KeyboardInterrupt:
            if scope.result is None:
                scope.error("Interrupted.")
            raise
        except Exception as exc:
            if scope.result is None:
                scope.error(str(exc) or type(exc).__name__)
            raise
        finally:
            if scope.result is None:
                scope.success("Completed.")
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled or self._operations_log_path is None:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError as exc:
            LOGGER.warning("Operation log disabled after write failure: %s", exc)
            self._enabled = False


def _sanitize(value: object) -> object:
    """Return a JSON-safe rendition of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


__all__ = ["OperationScope", "StructuredLogger"]
