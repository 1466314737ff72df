"""PTY session: one managed interactive process on a pseudo-terminal."""

from __future__ import annotations

import asyncio
import contextlib
import fcntl
import logging
import os
import pty
import shutil
import signal
import struct
import subprocess
import termios
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from agentspawn.errors import SpawnFailedError
from agentspawn.model import SessionConfig, SessionInfo, SessionState, SpawnTarget
from agentspawn.pty.exit_status import classify_exit

logger = logging.getLogger(__name__)

DEFAULT_SHUTDOWN_TIMEOUT = 5.0
DEFAULT_FINAL_MARGIN = 3.0

DataListener = Callable[["Session", bytes], None]
ExitListener = Callable[["Session", "int | None"], None]


def pid_alive(pid: int) -> bool:
    """Probe whether ``pid`` refers to a live process (signal 0)."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    return True


def _copy_terminal_size(fd: int) -> None:
    cols, rows = shutil.get_terminal_size()
    with contextlib.suppress(OSError):
        fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


@dataclass
class SessionHandle:
    """Live I/O for a running session.

    On a pseudo-terminal stdin, stdout and stderr share the master fd.
    """

    process: subprocess.Popen
    master_fd: int

    @property
    def pid(self) -> int:
        return self.process.pid

    def write(self, data: str | bytes) -> int:
        if isinstance(data, str):
            data = data.encode()
        return os.write(self.master_fd, data)


@dataclass
class Session:
    """A managed interactive process.

    State machine: ``STOPPED -> RUNNING -> {STOPPED, CRASHED}``. An exit of
    the process while ``RUNNING`` is a crash; ``stop()`` flips the state to
    ``STOPPED`` before any signal is sent, so concurrent readers never see
    the shutdown as a crash.

    The process runs in its own process group (start_new_session) so
    signals reach the whole tree. Output is delivered to ``on_data``
    listeners; exits to ``on_exit`` listeners. Listeners observe only.
    """

    config: SessionConfig
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    final_margin: float = DEFAULT_FINAL_MARGIN
    poll_interval: float = 0.1
    default_target: SpawnTarget = field(default_factory=SpawnTarget)

    _state: SessionState = field(default=SessionState.STOPPED, init=False)
    _pid: int = field(default=0, init=False)
    _pgid: int = field(default=0, init=False)
    _started_at: datetime | None = field(default=None, init=False)
    _exit_code: int | None = field(default=None, init=False)
    _proc: subprocess.Popen | None = field(default=None, init=False)
    _master_fd: int = field(default=-1, init=False)
    _exited: asyncio.Event | None = field(default=None, init=False)
    _exit_task: asyncio.Task[None] | None = field(default=None, init=False)
    _reading: bool = field(default=False, init=False)
    _data_listeners: list[DataListener] = field(default_factory=list, init=False)
    _exit_listeners: list[ExitListener] = field(default_factory=list, init=False)

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def pid(self) -> int:
        return self._pid

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    @property
    def target(self) -> SpawnTarget:
        return self.config.target or self.default_target

    def on_data(self, listener: DataListener) -> None:
        self._data_listeners.append(listener)

    def on_exit(self, listener: ExitListener) -> None:
        """Register ``listener(session, exit_code)``, called once per process exit."""
        self._exit_listeners.append(listener)

    async def start(self) -> None:
        """Spawn the target on a new PTY sized like the caller's terminal.

        Raises:
            SpawnFailedError: the process could not be started.
        """
        if self._state is SessionState.RUNNING:
            raise SpawnFailedError(self.name, "session is already running")
        self._cleanup()

        master_fd, slave_fd = pty.openpty()
        _copy_terminal_size(slave_fd)

        env = {**os.environ, **self.config.env}
        env.setdefault("TERM", "xterm-256color")

        argv = self.target.argv
        try:
            # Popen rather than os.fork: forking inside a running event loop
            # can deadlock on macOS
            proc = subprocess.Popen(
                argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
                env=env,
                cwd=self.config.working_directory,
            )
        except OSError as e:
            os.close(master_fd)
            raise SpawnFailedError(self.name, str(e)) from e
        finally:
            os.close(slave_fd)

        if not proc.pid:
            os.close(master_fd)
            raise SpawnFailedError(self.name, "process has no pid")

        self._proc = proc
        self._master_fd = master_fd
        self._pid = proc.pid
        try:
            self._pgid = os.getpgid(proc.pid)
        except ProcessLookupError:
            self._pgid = proc.pid
        self._state = SessionState.RUNNING
        self._started_at = datetime.now().astimezone()
        self._exit_code = None

        loop = asyncio.get_running_loop()
        self._exited = asyncio.Event()
        os.set_blocking(master_fd, False)
        loop.add_reader(master_fd, self._on_readable)
        self._reading = True
        self._exit_task = loop.create_task(self._watch_exit())

        logger.info(
            "Session %s started: pid=%d cwd=%s cmd=%s",
            self.name,
            self._pid,
            self.config.working_directory,
            " ".join(argv),
        )

    def _on_readable(self) -> None:
        try:
            data = os.read(self._master_fd, 4096)
        except BlockingIOError:
            return
        except OSError:
            # EIO once the slave side is gone
            data = b""

        if not data:
            self._stop_reading()
            return
        self._emit(data)

    def _drain_output(self) -> None:
        while self._master_fd >= 0:
            try:
                data = os.read(self._master_fd, 4096)
            except OSError:
                return
            if not data:
                return
            self._emit(data)

    def _emit(self, data: bytes) -> None:
        for listener in list(self._data_listeners):
            try:
                listener(self, data)
            except Exception:
                logger.exception("Error in data listener for session %s", self.name)

    def _stop_reading(self) -> None:
        if not self._reading:
            return
        self._reading = False
        with contextlib.suppress(Exception):
            asyncio.get_running_loop().remove_reader(self._master_fd)

    async def _watch_exit(self) -> None:
        proc = self._proc
        assert proc is not None
        while True:
            code = proc.poll()
            if code is not None:
                break
            await asyncio.sleep(self.poll_interval)
        self._handle_exit(code)

    def _handle_exit(self, code: int | None) -> None:
        self._exit_code = code
        if self._state is SessionState.RUNNING:
            self._state = SessionState.CRASHED
            status = classify_exit(code)
            logger.warning(
                "Session %s crashed: pid=%d %s (%s)",
                self.name,
                self._pid,
                status.reason,
                status.classification,
            )
            self._release_on_exit()
        else:
            logger.info("Session %s exited (code=%s)", self.name, code)

        if self._exited is not None:
            self._exited.set()

        for listener in list(self._exit_listeners):
            try:
                listener(self, code)
            except Exception:
                logger.exception("Error in exit listener for session %s", self.name)

    def _release_on_exit(self) -> None:
        """Deliver buffered output, then close the PTY and drop the process."""
        self._drain_output()
        # Called from the exit monitor itself, which must not cancel itself
        self._exit_task = None
        self._cleanup()

    def _probe_alive(self) -> bool:
        if self._proc is None or self._proc.poll() is not None:
            return False
        return pid_alive(self._pid)

    def _signal(self, sig: signal.Signals) -> None:
        try:
            os.killpg(self._pgid, sig)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self._pgid)
        except OSError as e:
            logger.warning("Error sending %s to session %s: %s", sig.name, self.name, e)

    def _force_kill(self) -> None:
        logger.warning(
            "Session %s did not exit within %.1fs, sending SIGKILL",
            self.name,
            self.shutdown_timeout,
        )
        self._signal(signal.SIGKILL)

    async def stop(self) -> None:
        """Stop the process: SIGTERM, then SIGKILL after ``shutdown_timeout``.

        Returns once the process exits, or unconditionally after
        ``shutdown_timeout + final_margin`` if no exit is ever observed.
        A no-op when already stopped.
        """
        if self._state is SessionState.STOPPED:
            return
        if self._proc is None:
            # Crashed; the process was released when it exited
            self._state = SessionState.STOPPED
            return

        self._state = SessionState.STOPPED

        if not self._probe_alive():
            if self._proc.returncode is not None:
                self._exit_code = self._proc.returncode
            self._cleanup()
            return

        loop = asyncio.get_running_loop()
        finished: asyncio.Future[None] = loop.create_future()

        def _finish() -> None:
            if not finished.done():
                finished.set_result(None)

        assert self._exited is not None
        exit_waiter = loop.create_task(self._exited.wait())
        exit_waiter.add_done_callback(lambda _: _finish())
        escalate = loop.call_later(self.shutdown_timeout, self._force_kill)
        deadline = loop.call_later(self.shutdown_timeout + self.final_margin, _finish)

        self._signal(signal.SIGTERM)
        try:
            await finished
        finally:
            escalate.cancel()
            deadline.cancel()
            exit_waiter.cancel()
            if not self._exited.is_set():
                logger.warning("Session %s: no exit observed, giving up waiting", self.name)
            self._cleanup()

        logger.info("Session %s stopped (code=%s)", self.name, self._exit_code)

    def _cleanup(self) -> None:
        self._stop_reading()
        if self._exit_task is not None and not self._exit_task.done():
            self._exit_task.cancel()
        self._exit_task = None
        if self._master_fd >= 0:
            with contextlib.suppress(OSError):
                os.close(self._master_fd)
            self._master_fd = -1
        self._proc = None

    def get_info(self) -> SessionInfo:
        return SessionInfo(
            name=self.name,
            pid=self._pid,
            state=self._state,
            started_at=self._started_at,
            working_directory=self.config.working_directory,
            exit_code=self._exit_code,
        )

    def get_handle(self) -> SessionHandle | None:
        """Live I/O while running; ``None`` otherwise."""
        if self._state is not SessionState.RUNNING or self._proc is None or self._master_fd < 0:
            return None
        return SessionHandle(process=self._proc, master_fd=self._master_fd)
