"""Lifecycle controller for a throwaway Neo4j server.

A :class:`NeoTestDB` owns one bundled community server. Constructing it
patches the server configuration (ports, database location, HTTPS and auth
disabled); :meth:`NeoTestDB.start` launches ``bin/neo4j console`` and waits
for the ready marker on stdout, :meth:`NeoTestDB.stop` signals the process and
waits for the shutdown marker or the process to close.

Only one start or stop can be pending at a time. The pending operation is a
:class:`concurrent.futures.Future` completed exactly once by the output
reader threads.
"""
from __future__ import annotations

import atexit
import functools
import logging
import os
import signal
import threading
from concurrent.futures import Future, InvalidStateError
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from enum import Enum
from types import TracebackType

from .config import AppConfig, load_config
from .layout import LayoutError, ServerLayout
from .process import ServerProcess
from .properties import ServerProperties

LOGGER = logging.getLogger(__name__)

ERROR_MARKER = " ERROR "


class InstanceError(RuntimeError):
    """Base class for server lifecycle failures."""


class InstanceConfigError(InstanceError):
    """Raised when an instance is constructed with invalid parameters."""


class InstanceStateError(InstanceError):
    """Raised when an operation is not valid in the current state."""


class InstanceSpawnError(InstanceError):
    """Raised when the server binary cannot be launched."""


class ServerError(InstanceError):
    """Raised when the server reports an error on stderr or stdout."""


class InstanceExitedError(InstanceError):
    """Raised when the server process exits unexpectedly."""

    def __init__(self, message: str, returncode: int | None = None) -> None:
        """Store the exit code alongside the message."""
        super().__init__(message)
        self.returncode = returncode


class InstanceTimeoutError(InstanceError, TimeoutError):
    """Raised when a ready or shutdown marker does not appear in time."""


class InstanceCancelledError(InstanceError):
    """Raised on a pending operation abandoned by ``kill`` or ``stop``."""


class InstanceState(str, Enum):
    """Lifecycle states of a managed server."""

    CONSTRUCTED = "constructed"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ConnectionInfo:
    """Connection details handed out once a server is up (or down)."""

    version: str
    pid: int | None
    port: int
    url: str
    bolt_port: int | None = None
    bolt_url: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation; bolt keys only for 3.x."""
        data: dict[str, object] = {
            "version": self.version,
            "pid": self.pid,
            "port": self.port,
            "url": self.url,
        }
        if self.bolt_port is not None:
            data["bolt_port"] = self.bolt_port
            data["bolt_url"] = self.bolt_url
        return data


@dataclass(slots=True)
class _PendingOperation:
    kind: str
    future: Future[ConnectionInfo]


class NeoTestDB:
    """Configure, start and stop one bundled Neo4j community server."""

    def __init__(
        self,
        port: int | str | None,
        version: str | None = None,
        bolt_port: int | str | None = None,
        *,
        config: AppConfig | None = None,
    ) -> None:
        """Patch the server configuration for *port* (and *bolt_port* on 3.x)."""
        if port is None:
            raise InstanceConfigError("NeoTestDB port is required.")
        self.config = config if config is not None else load_config()
        try:
            self.layout = ServerLayout(
                version if version is not None else self.config.default_version,
                self.config.install_root,
            )
        except LayoutError as exc:
            raise InstanceConfigError(str(exc)) from exc
        self.properties = ServerProperties.for_layout(self.layout)

        self._lock = threading.Lock()
        self._state = InstanceState.CONSTRUCTED
        self._pending: _PendingOperation | None = None
        self._process: ServerProcess | None = None
        self._generation = 0
        self._failure: InstanceError | None = None
        self._last_info: ConnectionInfo | None = None
        self._exit_hook_registered = False

        self.port = _coerce_port(port, "port") or self.config.ports.http
        self.bolt_port: int | None = None
        if self.layout.is_v3:
            self.bolt_port = _coerce_port(bolt_port, "bolt_port") or self.config.ports.bolt

        self.properties.set_properties(
            {
                **self._security_properties(),
                **self._port_properties(),
                **self._bolt_properties(),
            }
        )

    def __repr__(self) -> str:
        return (
            f"NeoTestDB(version={self.version!r}, port={self.port}, "
            f"bolt_port={self.bolt_port}, state={self._state.value})"
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def version(self) -> str:
        """Return the server version string."""
        return self.layout.version

    @property
    def state(self) -> InstanceState:
        """Return the current lifecycle state."""
        return self._state

    @property
    def pid(self) -> int | None:
        """Return the server process id while a process exists."""
        process = self._process
        return process.pid if process is not None else None

    @property
    def failure(self) -> InstanceError | None:
        """Return the last fatal error reported by the server, if any."""
        return self._failure

    def get_url(self) -> str:
        """Return the HTTP endpoint."""
        return f"http://localhost:{self.port}"

    def get_bolt_url(self) -> str | None:
        """Return the Bolt endpoint (3.x servers only)."""
        if self.bolt_port is None:
            return None
        return f"bolt://localhost:{self.bolt_port}"

    def connection_info(self) -> ConnectionInfo:
        """Return the connection descriptor for the current process."""
        return ConnectionInfo(
            version=self.version,
            pid=self.pid,
            port=self.port,
            url=self.get_url(),
            bolt_port=self.bolt_port,
            bolt_url=self.get_bolt_url(),
        )

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    def set_port(self, port: int | str | None) -> None:
        """Reassign the HTTP port (and database location) of an idle server."""
        self._require_idle("change the port")
        self.port = _coerce_port(port, "port") or self.config.ports.http
        self.properties.set_properties(self._port_properties())

    def set_bolt_port(self, bolt_port: int | str | None) -> None:
        """Reassign the Bolt port of an idle 3.x server; ignored otherwise."""
        if not self.layout.is_v3:
            return
        self._require_idle("change the bolt port")
        self.bolt_port = _coerce_port(bolt_port, "bolt_port") or self.config.ports.bolt
        self.properties.set_properties(self._bolt_properties())

    def _security_properties(self) -> dict[str, object]:
        if self.layout.is_v3:
            return {
                "dbms.connector.https.enabled": False,
                "dbms.security.auth_enabled": False,
            }
        return {"org.neo4j.server.webserver.https.enabled": False}

    def _port_properties(self) -> dict[str, object]:
        location = self.layout.database_location(self.port)
        if self.layout.is_v3:
            return {
                "dbms.connector.http.address": f"localhost:{self.port}",
                "dbms.connector.http.listen_address": f":{self.port}",
                "dbms.active_database": location,
            }
        return {
            "org.neo4j.server.webserver.port": self.port,
            "org.neo4j.server.database.location": location,
        }

    def _bolt_properties(self) -> dict[str, object]:
        if self.bolt_port is None:
            return {}
        return {
            "dbms.connector.bolt.address": f"localhost:{self.bolt_port}",
            "dbms.connector.bolt.listen_address": f":{self.bolt_port}",
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def begin_start(self) -> Future[ConnectionInfo]:
        """Launch the server; the future resolves on the ready marker."""
        future: Future[ConnectionInfo] = Future()
        spawn_error: InstanceSpawnError | None = None
        with self._lock:
            if not self._can_start():
                raise InstanceStateError(
                    f"Cannot start Neo4j {self.version} while {self._state.value}."
                )
            self._generation += 1
            generation = self._generation
            process = ServerProcess(
                [str(self.layout.binary), "console"],
                shell=self.layout.is_windows,
                on_stdout=functools.partial(self._handle_stdout, generation),
                on_stderr=functools.partial(self._handle_stderr, generation),
                on_close=functools.partial(self._handle_close, generation),
            )
            LOGGER.info("Starting Neo4j %s on port %s", self.version, self.port)
            # Observers block on the lock until the pending start is recorded.
            try:
                os.chmod(self.layout.binary, self.config.binary_mode)
                process.spawn()
            except OSError as exc:
                self._log_spawn_failure(exc)
                spawn_error = InstanceSpawnError(
                    f"Failed to launch {self.layout.binary}: {exc}"
                )
                self._failure = spawn_error
                self._process = None
                self._pending = None
                self._state = InstanceState.FAILED
            else:
                self._process = process
                self._pending = _PendingOperation("start", future)
                self._failure = None
                self._state = InstanceState.STARTING

        if spawn_error is not None:
            _settle(future, error=spawn_error)
            return future

        self._register_exit_hook()
        return future

    def begin_stop(self) -> Future[ConnectionInfo]:
        """Signal the server; the future resolves on the shutdown marker."""
        future: Future[ConnectionInfo] = Future()
        with self._lock:
            previous = self._last_info
            already_stopped = self._state is InstanceState.STOPPED and previous is not None
        if already_stopped:
            _settle(future, result=previous)
            return future

        info: ConnectionInfo | None = None
        with self._lock:
            if self._state in (InstanceState.CONSTRUCTED, InstanceState.STOPPED):
                raise InstanceStateError(f"Neo4j {self.version} has not been started.")
            if self._state is InstanceState.STOPPING:
                raise InstanceStateError(f"Neo4j {self.version} is already stopping.")

            abandoned = self._pending
            process = self._process
            if process is None or not process.running:
                self._pending = None
                self._state = InstanceState.STOPPED
                info = self._last_info = self.connection_info()
                process = None
            else:
                self._pending = _PendingOperation("stop", future)
                self._state = InstanceState.STOPPING

        if abandoned is not None:
            _settle(
                abandoned.future,
                error=InstanceCancelledError(
                    f"Stop requested before Neo4j {self.version} became ready."
                ),
            )
        if process is None:
            self._unregister_exit_hook()
            _settle(future, result=info)
            return future

        sig = signal.SIGTERM if self.layout.is_windows else _SIGHUP
        LOGGER.info("Stopping Neo4j %s (pid %s) with %s", self.version, process.pid, sig)
        process.send_signal(sig)
        return future

    def start(self, timeout: float | None = None) -> ConnectionInfo:
        """Start the server and block until it is ready."""
        wait = timeout if timeout is not None else self.config.timeouts.start
        future = self.begin_start()
        try:
            return future.result(timeout=wait)
        except FutureTimeoutError as exc:
            self.kill()
            raise InstanceTimeoutError(
                f"Neo4j {self.version} did not report ready within {wait:g}s."
            ) from exc
        except InstanceError:
            self.kill()
            raise

    def stop(self, timeout: float | None = None) -> ConnectionInfo:
        """Stop the server and block until shutdown is confirmed."""
        wait = timeout if timeout is not None else self.config.timeouts.stop
        future = self.begin_stop()
        try:
            return future.result(timeout=wait)
        except FutureTimeoutError as exc:
            self.kill()
            raise InstanceTimeoutError(
                f"Neo4j {self.version} did not shut down within {wait:g}s."
            ) from exc
        except InstanceError:
            self.kill()
            raise

    def kill(self) -> None:
        """Force-terminate the server and abandon any pending operation."""
        with self._lock:
            pending = self._pending
            process = self._process
            self._pending = None
            if self._state is not InstanceState.CONSTRUCTED:
                self._state = InstanceState.STOPPED
                self._last_info = self.connection_info()
        if process is not None and process.running:
            LOGGER.warning("Killing Neo4j %s (pid %s)", self.version, process.pid)
            process.kill()
        if pending is not None:
            _settle(
                pending.future,
                error=InstanceCancelledError(f"Neo4j {self.version} was killed."),
            )
        self._unregister_exit_hook()

    def cleanup(self) -> bool:
        """Delete the database directory of this port; return whether it existed."""
        process = self._process
        if process is not None and process.running:
            raise InstanceStateError("Cannot remove the database of a running server.")
        try:
            removed = self.layout.remove_database(self.port)
        except LayoutError as exc:
            raise InstanceError(str(exc)) from exc
        if removed:
            LOGGER.info("Removed database directory %s", self.layout.database_dir(self.port))
        return removed

    def __enter__(self) -> ConnectionInfo:
        return self.start()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        if self._state in (InstanceState.CONSTRUCTED, InstanceState.STOPPED):
            return
        self.stop()

    # ------------------------------------------------------------------
    # Output observers (run on reader threads)
    # ------------------------------------------------------------------
    def _handle_stdout(self, generation: int, line: str) -> None:
        if generation != self._generation:
            return
        if ERROR_MARKER in line:
            self._fail(generation, ServerError(line.strip()))
            return
        dialect = self.layout.dialect
        if dialect.is_ready(line):
            self._resolve(generation, "start", InstanceState.RUNNING)
        if dialect.is_shutdown(line):
            self._resolve(generation, "stop", InstanceState.STOPPED)

    def _handle_stderr(self, generation: int, line: str) -> None:
        if generation != self._generation:
            return
        self._fail(generation, ServerError(line.strip()))

    def _handle_close(self, generation: int, returncode: int | None) -> None:
        result: ConnectionInfo | None = None
        error: InstanceError | None = None
        with self._lock:
            if generation != self._generation:
                return
            pending = self._pending
            self._pending = None
            if self._state is InstanceState.STOPPING:
                self._state = InstanceState.STOPPED
                result = self._last_info = self.connection_info()
            elif self._state in (InstanceState.STARTING, InstanceState.RUNNING):
                error = InstanceExitedError(
                    f"Neo4j {self.version} exited with code {returncode}.",
                    returncode,
                )
                self._failure = error
                self._state = InstanceState.FAILED
        self._unregister_exit_hook()
        if error is not None:
            LOGGER.error("%s", error)
        if pending is None:
            return
        if result is not None and pending.kind == "stop":
            _settle(pending.future, result=result)
        else:
            _settle(
                pending.future,
                error=error or InstanceExitedError(
                    f"Neo4j {self.version} exited with code {returncode}.",
                    returncode,
                ),
            )

    def _resolve(self, generation: int, kind: str, state: InstanceState) -> None:
        with self._lock:
            pending = self._pending
            if generation != self._generation or pending is None or pending.kind != kind:
                return
            self._pending = None
            self._state = state
            info = self._last_info = self.connection_info()
        LOGGER.info("Neo4j %s is %s (pid %s)", self.version, state.value, info.pid)
        if kind == "stop":
            self._unregister_exit_hook()
        _settle(pending.future, result=info)

    def _fail(self, generation: int, error: InstanceError) -> None:
        with self._lock:
            if generation != self._generation:
                return
            pending = self._pending
            if self._state is InstanceState.STOPPED or (
                pending is None and self._state is not InstanceState.RUNNING
            ):
                LOGGER.debug("Ignoring output of settled Neo4j %s: %s", self.version, error)
                return
            self._pending = None
            self._failure = error
            self._state = InstanceState.FAILED
        LOGGER.error("Neo4j %s reported an error: %s", self.version, error)
        if pending is not None:
            _settle(pending.future, error=error)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _can_start(self) -> bool:
        if self._state in (InstanceState.CONSTRUCTED, InstanceState.STOPPED):
            return True
        # A failed server may be restarted once its process is gone.
        process = self._process
        return self._state is InstanceState.FAILED and (process is None or not process.running)

    def _require_idle(self, action: str) -> None:
        if not self._can_start():
            raise InstanceStateError(f"Cannot {action} while {self._state.value}.")

    def _log_spawn_failure(self, exc: OSError) -> None:
        binary = self.layout.binary
        try:
            details: object = binary.stat()
        except OSError:
            details = "missing"
        LOGGER.error("Failed to launch %s (%s): %s", binary, details, exc)

    def _register_exit_hook(self) -> None:
        if not self.config.register_exit_hook or self._exit_hook_registered:
            return
        atexit.register(self._on_host_exit)
        self._exit_hook_registered = True

    def _unregister_exit_hook(self) -> None:
        if not self._exit_hook_registered:
            return
        atexit.unregister(self._on_host_exit)
        self._exit_hook_registered = False

    def _on_host_exit(self) -> None:
        process = self._process
        if process is None or not process.running:
            return
        LOGGER.warning("Interpreter exiting; stopping Neo4j %s", self.version)
        try:
            self.stop()
        except InstanceError as exc:
            LOGGER.warning("Neo4j %s did not stop cleanly: %s", self.version, exc)


_SIGHUP = getattr(signal, "SIGHUP", signal.SIGTERM)


def _coerce_port(value: object, label: str) -> int:
    """Return *value* as a port number; falsy values map to ``0``."""
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise InstanceConfigError(f"{label} must be an integer, not {value!r}.")
    if isinstance(value, int):
        port = value
    elif isinstance(value, str):
        try:
            port = int(value.strip())
        except ValueError as exc:
            raise InstanceConfigError(f"Invalid {label}: {value!r}.") from exc
    else:
        raise InstanceConfigError(f"{label} must be an integer, not {type(value).__name__}.")
    if port < 0 or port > 65535:
        raise InstanceConfigError(f"{label} must be between 1 and 65535. Got {port}.")
    return port


def _settle(
    future: Future[ConnectionInfo],
    *,
    result: ConnectionInfo | None = None,
    error: BaseException | None = None,
) -> None:
    """Complete *future* once; later completions are ignored."""
    try:
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)  # type: ignore[arg-type]
    except InvalidStateError:
        LOGGER.debug("Ignoring completion of an already settled operation.")


__all__ = [
    "ConnectionInfo",
    "ERROR_MARKER",
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
]
