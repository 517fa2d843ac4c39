"""
Child process orchestration for ssh, docker-over-ssh and rsync.

Two classes of processes are handled here:

  1. Interactive handoff (ssh sessions, interactive script runs): the
     dashboard gives up the terminal through a TerminalHandoff guard, the
     child inherits the real stdin/stdout/stderr, and the guard restores the
     dashboard on every exit path (normal exit, Ctrl-C, spawn failure).

  2. Captured commands: run_sync() runs to completion with a bounded wait
     and returns exit code plus output; run_streaming() returns a
     StreamHandle whose reader thread delivers lines as they arrive until
     the process exits or cancel() is called.

Process Lifecycle:
  - Every child starts in its own session so cancel() can signal the whole
    process group (ssh plus anything it spawned locally)
  - cancel() sends SIGTERM, escalates to SIGKILL after a grace period and
    always waits for the child, so nothing is left as a zombie
  - The Orchestrator keeps a registry of live streams; active_streams() is
    what tests and shutdown use to verify nothing leaked

Remote commands are always wrapped in an ssh invocation built from the
resolved Host record (see ssh_args()). No host details live anywhere else.
"""

import logging
import os
import shlex
import signal
import subprocess
import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .errors import ProcessError
from .model import BATCH_SAFE_FLAGS, Host

logger = logging.getLogger(__name__)

DEFAULT_SSH_CONFIG = os.path.expanduser("~/.ssh/config")
SSH_CONNECTION_FAILED = 255
TERMINATE_GRACE = 2.0  # seconds between SIGTERM and SIGKILL
STREAM_BUFFER = 5000


@dataclass
class ProcessResult:
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def check(self, operation: str) -> "ProcessResult":
        """Raise ProcessError for a non-zero exit."""
        if self.ok:
            return self
        detail = (self.stderr or self.stdout).strip().splitlines()
        message = detail[-1] if detail else f"exit code {self.exit_code}"
        kind = "disconnect" if self.exit_code == SSH_CONNECTION_FAILED else "exit"
        raise ProcessError(f"{operation} failed: {message}", kind=kind,
                           exit_code=self.exit_code, stderr=self.stderr)


# ---------------------------------------------------------------------------
# Command line builders
# ---------------------------------------------------------------------------

def ssh_args(host: Host, config_path: Optional[str] = None, flags=None) -> List[str]:
    """Options that select and authenticate against host, without the destination."""
    args: List[str] = []
    if config_path and os.path.expanduser(config_path) != DEFAULT_SSH_CONFIG:
        args += ["-F", os.path.expanduser(config_path)]
    if host.user:
        args += ["-l", host.user]
    if host.port is not None:
        args += ["-p", str(host.port)]
    for key in host.identity_files:
        args += ["-i", os.path.expanduser(key)]
    if host.proxy_jump:
        args += ["-J", host.proxy_jump]
    args += list(host.ssh_flags if flags is None else flags)
    return args


def interactive_ssh_argv(host: Host, ssh_binary: str = "ssh",
                         config_path: Optional[str] = None) -> List[str]:
    """argv for an interactive session, starting the host's shell when set."""
    flags = list(host.ssh_flags)
    if host.shell and "-t" not in flags:
        flags.insert(0, "-t")
    argv = [ssh_binary] + ssh_args(host, config_path, flags) + [host.alias]
    if host.shell:
        argv.append(host.shell)
    return argv


def remote_argv(host: Host, command: str, ssh_binary: str = "ssh",
                config_path: Optional[str] = None, batch_mode: bool = True,
                connect_timeout: Optional[int] = None,
                extra_options: Optional[List[str]] = None,
                tty: bool = False) -> List[str]:
    """argv running command on host through ssh."""
    flags = [f for f in host.ssh_flags if f in BATCH_SAFE_FLAGS]
    if tty:
        flags.insert(0, "-t")
    argv = [ssh_binary] + ssh_args(host, config_path, flags)
    if batch_mode and not tty:
        argv += ["-o", "BatchMode=yes"]
    if connect_timeout:
        argv += ["-o", f"ConnectTimeout={int(connect_timeout)}"]
    for option in extra_options or []:
        argv += ["-o", option]
    argv += [host.alias, command]
    return argv


def rsync_argv(host: Host, local_path: str, remote_path: str, to_host: bool,
               compress: bool = False, rsync_binary: str = "rsync", ssh_binary: str = "ssh",
               config_path: Optional[str] = None, extra_args: Optional[List[str]] = None) -> List[str]:
    """rsync -av[z] -e 'ssh ...' src dest, direction chosen by to_host."""
    flags = [f for f in host.ssh_flags if f in BATCH_SAFE_FLAGS]
    transport = shlex.join([ssh_binary] + ssh_args(host, config_path, flags))
    remote = f"{host.alias}:{remote_path}"
    local = os.path.expanduser(local_path)
    argv = [rsync_binary, "-av"]
    if compress:
        argv.append("-z")
    argv += list(extra_args or [])
    argv += ["-e", transport]
    argv += [local, remote] if to_host else [remote, local]
    return argv


# ---------------------------------------------------------------------------
# Terminal handoff
# ---------------------------------------------------------------------------

class TerminalHandoff:
    """
    Scoped release of the terminal to a foreign process.

    terminal must provide suspend() (leave raw/alternate-screen mode) and
    resume() (re-enter it). resume() runs on every exit path of the block.
    """

    def __init__(self, terminal):
        self.terminal = terminal

    def __enter__(self) -> "TerminalHandoff":
        try:
            self.terminal.suspend()
        except Exception:
            self.terminal.resume()
            raise
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.terminal.resume()
        return False


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

def _terminate(proc: subprocess.Popen) -> None:
    """SIGTERM the process group, SIGKILL after a grace period, then reap."""
    if proc.poll() is not None:
        return
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except (ProcessLookupError, PermissionError):
        proc.terminate()
    try:
        proc.wait(timeout=TERMINATE_GRACE)
        return
    except subprocess.TimeoutExpired:
        logger.warning(f"pid {proc.pid} ignored SIGTERM, killing")
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        proc.kill()
    proc.wait()


class StreamHandle:
    """A running captured process whose output is consumed line by line."""

    def __init__(self, proc: subprocess.Popen, name: str,
                 on_line: Optional[Callable[[str], None]] = None,
                 on_exit: Optional[Callable[[Optional[int], bool], None]] = None,
                 on_close: Optional[Callable[["StreamHandle"], None]] = None):
        self.proc = proc
        self.name = name
        self.buffer: deque = deque(maxlen=STREAM_BUFFER)
        self.exit_code: Optional[int] = None
        self._on_line = on_line
        self._on_exit = on_exit
        self._on_close = on_close
        self._cancelled = threading.Event()
        self._finished = threading.Event()
        self._reader = threading.Thread(target=self._read, name=f"stream-{name}", daemon=True)
        self._reader.start()

    @property
    def pid(self) -> int:
        return self.proc.pid

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def running(self) -> bool:
        return not self._finished.is_set()

    def _read(self) -> None:
        try:
            for line in self.proc.stdout:
                if self._cancelled.is_set():
                    break
                line = line.rstrip("\n")
                self.buffer.append(line)
                if self._on_line:
                    self._on_line(line)
        except (OSError, ValueError) as e:
            # stdout closed underneath us by cancel()
            logger.debug(f"Stream {self.name} reader stopped: {e}")
        finally:
            if self._cancelled.is_set():
                _terminate(self.proc)
            self.exit_code = self.proc.wait()
            self.proc.stdout.close()
            logger.debug(f"Stream {self.name} finished with {self.exit_code}")
            try:
                if self._on_close:
                    self._on_close(self)
                if self._on_exit:
                    self._on_exit(self.exit_code, self._cancelled.is_set())
            finally:
                # wait() returns only once the callbacks have run
                self._finished.set()

    def cancel(self, timeout: float = TERMINATE_GRACE * 2) -> None:
        """Stop the process and reap it; safe to call more than once."""
        if self._cancelled.is_set() and self._finished.is_set():
            return
        self._cancelled.set()
        _terminate(self.proc)
        if threading.current_thread() is not self._reader:
            self._reader.join(timeout=timeout)

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        self._finished.wait(timeout)
        return self.exit_code


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class Orchestrator:
    """Spawns and supervises every child process of the dashboard."""

    def __init__(self, ssh_binary: str = "ssh", rsync_binary: str = "rsync",
                 ssh_config_path: Optional[str] = None, connect_timeout: Optional[int] = 10,
                 batch_mode: bool = True, extra_options: Optional[List[str]] = None,
                 command_timeout: Optional[float] = 30.0):
        self.ssh_binary = ssh_binary
        self.rsync_binary = rsync_binary
        self.ssh_config_path = ssh_config_path
        self.connect_timeout = connect_timeout
        self.batch_mode = batch_mode
        self.extra_options = list(extra_options or [])
        self.command_timeout = command_timeout
        self._streams: Dict[int, StreamHandle] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, manager) -> "Orchestrator":
        cfg = manager.get_config()
        return cls(ssh_binary=cfg.ssh.binary, rsync_binary=cfg.rsync.binary,
                   ssh_config_path=str(manager.get_ssh_config_path()),
                   connect_timeout=cfg.ssh.connect_timeout, batch_mode=cfg.ssh.batch_mode,
                   extra_options=cfg.ssh.extra_options,
                   command_timeout=cfg.docker.command_timeout)

    # Captured, run to completion

    def run_sync(self, cmd: str, args: List[str], timeout: Optional[float] = None,
                 input_text: Optional[str] = None) -> ProcessResult:
        """Run cmd to completion. Raises ProcessError on spawn failure or timeout."""
        argv = [cmd] + list(args)
        logger.debug(f"run_sync: {shlex.join(argv)}")
        try:
            proc = subprocess.run(
                argv,
                input=input_text,
                stdin=None if input_text is not None else subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=timeout,
                start_new_session=True,
            )
        except subprocess.TimeoutExpired:
            logger.error(f"Timed out after {timeout}s: {cmd}")
            raise ProcessError(f"{os.path.basename(cmd)} timed out after {timeout:g}s", kind="timeout")
        except OSError as e:
            logger.error(f"Failed to start {cmd}: {e}")
            raise ProcessError(f"Failed to start {cmd}: {e}", kind="spawn")
        return ProcessResult(proc.returncode, proc.stdout or "", proc.stderr or "")

    def run_remote(self, host: Host, command: str, timeout: Optional[float] = None) -> ProcessResult:
        argv = remote_argv(host, command, self.ssh_binary, self.ssh_config_path,
                           self.batch_mode, self.connect_timeout, self.extra_options)
        return self.run_sync(argv[0], argv[1:], timeout=timeout or self.command_timeout)

    def run_rsync(self, host: Host, local_path: str, remote_path: str, to_host: bool,
                  compress: bool = False, extra_args: Optional[List[str]] = None) -> ProcessResult:
        argv = rsync_argv(host, local_path, remote_path, to_host, compress,
                          self.rsync_binary, self.ssh_binary, self.ssh_config_path, extra_args)
        # transfers can take arbitrarily long
        return self.run_sync(argv[0], argv[1:], timeout=None)

    # Captured, streaming

    def run_streaming(self, cmd: str, args: List[str],
                      on_line: Optional[Callable[[str], None]] = None,
                      on_exit: Optional[Callable[[Optional[int], bool], None]] = None) -> StreamHandle:
        """Start cmd with stdout+stderr merged and deliver lines as they come."""
        argv = [cmd] + list(args)
        logger.debug(f"run_streaming: {shlex.join(argv)}")
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
                start_new_session=True,
            )
        except OSError as e:
            logger.error(f"Failed to start {cmd}: {e}")
            raise ProcessError(f"Failed to start {cmd}: {e}", kind="spawn")

        with self._lock:
            handle = StreamHandle(proc, os.path.basename(cmd), on_line, on_exit, self._forget)
            self._streams[proc.pid] = handle
        return handle

    def stream_remote(self, host: Host, command: str,
                      on_line: Optional[Callable[[str], None]] = None,
                      on_exit: Optional[Callable[[Optional[int], bool], None]] = None) -> StreamHandle:
        argv = remote_argv(host, command, self.ssh_binary, self.ssh_config_path,
                           self.batch_mode, self.connect_timeout, self.extra_options)
        return self.run_streaming(argv[0], argv[1:], on_line, on_exit)

    def _forget(self, handle: StreamHandle) -> None:
        with self._lock:
            self._streams.pop(handle.pid, None)

    def active_streams(self) -> int:
        with self._lock:
            return len(self._streams)

    def cancel_all(self) -> None:
        with self._lock:
            handles = list(self._streams.values())
        for handle in handles:
            handle.cancel()

    # Interactive

    def run_interactive(self, argv: List[str], terminal) -> int:
        """Give the terminal to argv until it exits. Returns its exit code."""
        logger.info(f"Interactive: {shlex.join(argv)}")
        with TerminalHandoff(terminal):
            try:
                proc = subprocess.Popen(argv)
            except OSError as e:
                logger.error(f"Failed to start {argv[0]}: {e}")
                raise ProcessError(f"Failed to start {argv[0]}: {e}", kind="spawn")
            while True:
                try:
                    code = proc.wait()
                    break
                except KeyboardInterrupt:
                    # the child got the same SIGINT; keep waiting for it
                    continue
        logger.info(f"Interactive process exited with {code}")
        return code

    def ssh_session(self, host: Host, terminal) -> int:
        return self.run_interactive(
            interactive_ssh_argv(host, self.ssh_binary, self.ssh_config_path), terminal)

    def remote_interactive(self, host: Host, command: str, terminal) -> int:
        argv = remote_argv(host, command, self.ssh_binary, self.ssh_config_path,
                           batch_mode=False, connect_timeout=self.connect_timeout,
                           extra_options=self.extra_options, tty=True)
        return self.run_interactive(argv, terminal)
