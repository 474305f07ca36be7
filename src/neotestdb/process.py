"""Child process wrapper that streams server output line by line."""
from __future__ import annotations

import logging
import subprocess
import threading
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import IO

LOGGER = logging.getLogger(__name__)

LineObserver = Callable[[str], None]
CloseObserver = Callable[[int | None], None]


class ServerProcess:
    """Spawn a command and forward its stdout/stderr lines to observers.

    Each stream is drained by a daemon thread. Once both streams reach EOF and
    the process has exited, ``on_close`` is called with the return code.
    Exceptions raised by observers are logged and never stop the readers.
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        on_stdout: LineObserver,
        on_stderr: LineObserver,
        on_close: CloseObserver,
        shell: bool = False,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
    ) -> None:
        """Prepare the command; nothing is executed until :meth:`spawn`."""
        self.command = list(command)
        self.shell = shell
        self.env = dict(env) if env is not None else None
        self.cwd = cwd
        self._on_stdout = on_stdout
        self._on_stderr = on_stderr
        self._on_close = on_close
        self._process: subprocess.Popen[str] | None = None
        self._threads: list[threading.Thread] = []

    @property
    def pid(self) -> int | None:
        """Return the child process id once spawned."""
        return self._process.pid if self._process is not None else None

    @property
    def running(self) -> bool:
        """Return whether the child has been spawned and not yet exited."""
        return self._process is not None and self._process.poll() is None

    def spawn(self) -> int:
        """Start the child process and its reader threads; return the pid."""
        if self._process is not None:
            raise RuntimeError("Process already spawned.")
        args: str | list[str] = self.command
        if self.shell:
            args = subprocess.list2cmdline(self.command)
        process = subprocess.Popen(  # noqa: S603
            args,
            shell=self.shell,  # noqa: S602 - Windows launchers are batch files
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
            bufsize=1,
            env=self.env,
            cwd=str(self.cwd) if self.cwd is not None else None,
        )
        self._process = process
        LOGGER.debug("Started process %s: %s", process.pid, self.command)

        readers = [
            self._start_thread("stdout", self._drain, process.stdout, self._on_stdout, "stdout"),
            self._start_thread("stderr", self._drain, process.stderr, self._on_stderr, "stderr"),
        ]
        self._start_thread("watch", self._watch, readers)
        return process.pid

    def send_signal(self, sig: int) -> None:
        """Deliver *sig* to the child if it is still running."""
        if self.running and self._process is not None:
            self._process.send_signal(sig)

    def kill(self) -> None:
        """Forcefully terminate the child."""
        if self.running and self._process is not None:
            self._process.kill()

    def poll(self) -> int | None:
        """Return the exit code, or ``None`` while running."""
        return self._process.poll() if self._process is not None else None

    def wait(self, timeout: float | None = None) -> int | None:
        """Wait for the child to exit and return its exit code."""
        if self._process is None:
            return None
        return self._process.wait(timeout=timeout)

    # ------------------------------------------------------------------
    def _start_thread(
        self,
        role: str,
        target: Callable[..., None],
        *args: object,
    ) -> threading.Thread:
        name = f"neotestdb-{self.pid}-{role}"
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)
        return thread

    def _drain(self, stream: IO[str] | None, observer: LineObserver, label: str) -> None:
        if stream is None:
            return
        try:
            for line in iter(stream.readline, ""):
                text = line.rstrip("\r\n")
                if not text.strip():
                    continue
                LOGGER.debug("[%s %s] %s", self.pid, label, text)
                try:
                    observer(text)
                except Exception:
                    LOGGER.exception("Observer failed while handling %s line.", label)
        except (OSError, ValueError) as exc:
            LOGGER.debug("Stopped reading %s of %s: %s", label, self.pid, exc)
        finally:
            stream.close()

    def _watch(self, readers: Sequence[threading.Thread]) -> None:
        for reader in readers:
            reader.join()
        returncode = self.wait()
        LOGGER.debug("Process %s closed with exit code %s", self.pid, returncode)
        try:
            self._on_close(returncode)
        except Exception:
            LOGGER.exception("Close observer failed for process %s.", self.pid)


__all__ = ["CloseObserver", "LineObserver", "ServerProcess"]
