"""
Command execution for the reducer.

The Runtime is the only place where Commands turn into I/O. Results come
back as Events through a thread-safe queue that the main loop drains with
poll_events() between renders.

Threading model:
  - Registry writes go through one PersistWorker thread fed by a queue, so
    saves are serialized and applied in the order they were requested.
  - Remote reads, Docker actions, script writes and rsync runs each get a
    short-lived daemon thread.
  - Streams (logs, stats) are Orchestrator StreamHandles. Their lines are
    batched per stream id under a lock and handed out as one StreamChunk per
    poll; the final chunk and the StreamEnded event are queued together
    when the process exits, so a chunk never arrives after its end marker.
  - Interactive work (ssh sessions, interactive script runs) runs on the
    caller's thread, because it owns the terminal.

With run_inline=True every command runs synchronously on the caller's
thread, which is what the tests use.
"""

import logging
import os
import queue
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from . import docker_cli, scripts
from .config import DockerConfig, RsyncConfig
from .docker_cli import join_path, sort_entries
from .errors import ParseError, ProcessError, SshingError
from .events import (ActionCompleted, CancelStream, Command, CompletePath, DockerAction, Event,
                     ExecuteScript, FetchContainers, Fetched, FetchFailed, GenerateScript,
                     ListDirectory, ParseScript, PersistFailed, PersistRegistry, ProcessExited,
                     Quit, RegistryPersisted, RemoteFetch, RsyncFinished, RunRsync, ScriptExecuted,
                     ScriptSaved, SpawnSession, StartStream, StreamChunk, StreamEnded)
from .model import Container, FileEntry
from .orchestrator import Orchestrator, StreamHandle
from .store import ConfigStore, Registry

logger = logging.getLogger(__name__)

SCRIPT_TIMEOUT = 900.0  # seconds; a script run may pull images


class PersistWorker(threading.Thread):
    """Single writer for the registry files."""

    def __init__(self, store: ConfigStore, post: Callable[[Event], None]):
        super().__init__(daemon=True, name="persist")
        self.store = store
        self.post = post
        self.jobs: "queue.Queue[Optional[Registry]]" = queue.Queue()
        self.running = True

    def submit(self, registry: Registry) -> None:
        self.jobs.put(registry)

    def stop(self) -> None:
        """Finish queued saves, then exit."""
        self.jobs.put(None)

    def persist(self, registry: Registry) -> None:
        try:
            saved = self.store.save(registry)
        except SshingError as e:
            logger.error(f"Persist failed: {e}")
            self.post(PersistFailed(error=e.message))
            return
        self.post(RegistryPersisted(registry=saved))

    def run(self) -> None:
        while True:
            registry = self.jobs.get()
            if registry is None:
                break
            self.persist(registry)
        self.running = False


def complete_from(text: str, names: List[str]) -> Dict:
    """Completion of the last path component of text against directory names.

    names are the entries of text's directory, directories ending in '/'.
    Returns the prefix it was computed for, the completed text and the
    candidates (full paths in the same form as text).
    """
    head, sep, base = text.rpartition("/")
    prefix = head + sep
    show_hidden = base.startswith(".")
    matches = sorted(n for n in names
                     if n.startswith(base) and (show_hidden or not n.startswith(".")))
    candidates = [prefix + n for n in matches]
    completed = os.path.commonprefix(candidates) if candidates else text
    return {"prefix": text, "text": completed, "candidates": candidates}


def list_local(path: str) -> List[FileEntry]:
    """Local directory entries, sorted like the remote listing."""
    base = os.path.abspath(os.path.expanduser(path))
    entries = []
    with os.scandir(base) as it:
        for entry in it:
            try:
                is_dir = entry.is_dir()
                size = 0 if is_dir else entry.stat().st_size
            except OSError:
                is_dir, size = False, 0
            entries.append(FileEntry(name=entry.name, path=join_path(base, entry.name), is_dir=is_dir,
                                     is_script=not is_dir and scripts.is_script_name(entry.name),
                                     size=size))
    return sort_entries(base, entries)


def _local_names(text: str) -> List[str]:
    directory = os.path.dirname(os.path.expanduser(text)) or "."
    names = []
    with os.scandir(directory) as it:
        for entry in it:
            names.append(entry.name + "/" if entry.is_dir() else entry.name)
    return names


class Runtime:
    """Executes reducer commands and collects their result events."""

    def __init__(self, store: ConfigStore, orchestrator: Orchestrator, terminal=None,
                 docker: Optional[DockerConfig] = None, rsync: Optional[RsyncConfig] = None,
                 run_inline: bool = False):
        self.store = store
        self.orchestrator = orchestrator
        self.terminal = terminal
        self.docker = docker or DockerConfig()
        self.rsync = rsync or RsyncConfig()
        self.run_inline = run_inline
        self.events: "queue.Queue[Event]" = queue.Queue()

        self._lock = threading.Lock()
        self._streams: Dict[int, StreamHandle] = {}
        self._pending: Dict[int, List[str]] = {}
        self._closed = False

        self.writer = PersistWorker(store, self.post)
        if not run_inline:
            self.writer.start()

        self._handlers: Dict[type, Callable[[Command], None]] = {
            PersistRegistry: self._persist,
            SpawnSession: self._spawn_session,
            FetchContainers: self._background(self._fetch_containers),
            DockerAction: self._background(self._docker_action),
            RemoteFetch: self._background(self._remote_fetch),
            StartStream: self._start_stream,
            CancelStream: self._cancel_stream,
            ParseScript: self._background(self._parse_script),
            GenerateScript: self._background(self._generate_script),
            ExecuteScript: self._execute_script,
            ListDirectory: self._background(self._list_directory),
            CompletePath: self._background(self._complete_path),
            RunRsync: self._background(self._run_rsync),
            Quit: self._quit,
        }

    @classmethod
    def from_config(cls, manager, store: ConfigStore, orchestrator: Orchestrator,
                    terminal=None) -> "Runtime":
        cfg = manager.get_config()
        return cls(store, orchestrator, terminal, docker=cfg.docker, rsync=cfg.rsync)

    # Event plumbing

    def post(self, event: Event) -> None:
        self.events.put(event)

    def poll_events(self) -> List[Event]:
        """Buffered stream chunks first, then everything queued."""
        out: List[Event] = []
        with self._lock:
            for stream_id, lines in self._pending.items():
                if lines:
                    out.append(StreamChunk(stream_id, lines))
                    self._pending[stream_id] = []
        while True:
            try:
                out.append(self.events.get_nowait())
            except queue.Empty:
                break
        return out

    def execute(self, commands: List[Command]) -> None:
        for command in commands:
            handler = self._handlers.get(type(command))
            if handler is None:
                logger.error(f"No handler for command {type(command).__name__}")
                continue
            handler(command)

    def _background(self, job: Callable[[Command], None]) -> Callable[[Command], None]:
        def run(command: Command) -> None:
            if self.run_inline:
                job(command)
                return
            threading.Thread(target=job, args=(command,), daemon=True,
                             name=type(command).__name__).start()
        return run

    def shutdown(self) -> None:
        self._quit(Quit())

    @property
    def sudo(self) -> bool:
        return self.docker.use_sudo

    # Registry and sessions

    def _persist(self, command: PersistRegistry) -> None:
        if self.run_inline:
            self.writer.persist(command.registry)
        else:
            self.writer.submit(command.registry)

    def _spawn_session(self, command: SpawnSession) -> None:
        host = command.host
        try:
            code = self.orchestrator.ssh_session(host, self.terminal)
        except ProcessError as e:
            self.post(ProcessExited(host.alias, None, datetime.now(timezone.utc), error=e.message))
            return
        self.post(ProcessExited(host.alias, code, datetime.now(timezone.utc)))

    def _quit(self, command: Quit) -> None:
        if self._closed:
            return
        self._closed = True
        with self._lock:
            handles = list(self._streams.values())
            self._streams.clear()
            self._pending.clear()
        for handle in handles:
            handle.cancel()
        self.orchestrator.cancel_all()
        self.writer.stop()
        if self.writer.is_alive():
            self.writer.join(timeout=5.0)

    # Docker reads and actions

    def _fetch_containers(self, command: FetchContainers) -> None:
        host = command.host
        try:
            result = self.orchestrator.run_remote(host, docker_cli.ps_cmd(self.sudo)).check("docker ps")
        except ProcessError as e:
            self.post(FetchFailed("containers", host.alias, str(e)))
            return
        containers = docker_cli.parse_containers(result.stdout)
        try:
            found = self.orchestrator.run_remote(
                host, docker_cli.find_scripts_cmd(self.docker.scripts_root, self.docker.script_patterns))
            paths = docker_cli.parse_find(found.stdout)
        except ProcessError as e:
            logger.warning(f"Script discovery on {host.alias} failed: {e}")
            paths = []
        self.post(Fetched("containers", host.alias, {"containers": containers, "scripts": paths}))

    def _docker_action(self, command: DockerAction) -> None:
        name = command.container.name
        cmd = docker_cli.action_cmd(command.action, command.container, self.sudo)
        timeout = SCRIPT_TIMEOUT if command.action == "pull" else None
        try:
            result = self.orchestrator.run_remote(command.host, cmd, timeout=timeout)
        except ProcessError as e:
            self.post(ActionCompleted(command.action, name, False, e.message))
            return
        if not result.ok:
            logger.warning(f"docker {command.action} {name} failed: {result.stderr.strip()}")
        self.post(ActionCompleted(command.action, name, result.ok,
                                  (result.stderr or result.stdout).strip()))

    def _remote_fetch(self, command: RemoteFetch) -> None:
        host, kind, target = command.host, command.kind, command.target
        try:
            payload = self._read(host, kind, target, command.script_path)
        except (ProcessError, ValueError) as e:
            logger.warning(f"Fetching {kind} for {target} failed: {e}")
            self.post(FetchFailed(kind, target, str(e)))
            return
        self.post(Fetched(kind, target, payload))

    def _read(self, host, kind: str, target: str, script_path: Optional[str]):
        run = self.orchestrator.run_remote
        if kind == "processes":
            return docker_cli.parse_top(run(host, docker_cli.top_cmd(target, self.sudo)).check("docker top").stdout)
        if kind in ("inspect", "new_script"):
            output = run(host, docker_cli.inspect_cmd(target, self.sudo)).check("docker inspect").stdout
            details, data = docker_cli.parse_inspect(output)
            return details if kind == "inspect" else scripts.spec_from_inspect(data)
        if kind == "env":
            output = run(host, docker_cli.env_cmd(target, self.sudo)).check("docker exec env").stdout
            return docker_cli.parse_env(output, self._script_env_keys(host, script_path))
        if kind == "scripts":
            output = run(host, docker_cli.find_scripts_cmd(target, self.docker.script_patterns)).stdout
            return docker_cli.parse_find(output)
        raise ValueError(f"Unknown fetch kind {kind}")

    def _script_env_keys(self, host, script_path: Optional[str]) -> List[str]:
        if not script_path:
            return []
        try:
            text = self.orchestrator.run_remote(host, docker_cli.cat_cmd(script_path)).check("cat").stdout
            return list(scripts.parse(text).env)
        except (ProcessError, ParseError) as e:
            logger.debug(f"No env keys from {script_path}: {e}")
            return []

    # Streams

    def _start_stream(self, command: StartStream) -> None:
        sid = command.stream_id
        if command.kind == "logs":
            remote = docker_cli.logs_cmd(command.target, command.lines, command.follow, self.sudo)
        else:
            remote = docker_cli.stats_poll_cmd(command.target, self.docker.stats_interval, self.sudo)

        def on_line(line: str) -> None:
            with self._lock:
                if sid in self._pending:
                    self._pending[sid].append(line)

        def on_exit(code: Optional[int], cancelled: bool) -> None:
            with self._lock:
                lines = self._pending.pop(sid, None)
                self._streams.pop(sid, None)
                if lines is None or cancelled:
                    return
                if lines:
                    self.events.put(StreamChunk(sid, lines))
                self.events.put(StreamEnded(sid, code))

        with self._lock:
            self._pending[sid] = []
        try:
            handle = self.orchestrator.stream_remote(command.host, remote, on_line, on_exit)
        except ProcessError as e:
            with self._lock:
                self._pending.pop(sid, None)
            self.post(StreamEnded(sid, None, error=e.message))
            return
        with self._lock:
            if sid in self._pending:
                self._streams[sid] = handle

    def _cancel_stream(self, command: CancelStream) -> None:
        with self._lock:
            handle = self._streams.pop(command.stream_id, None)
            self._pending.pop(command.stream_id, None)
        if handle is not None:
            handle.cancel()

    def active_streams(self) -> int:
        with self._lock:
            return len(self._streams)

    # Scripts

    def _parse_script(self, command: ParseScript) -> None:
        try:
            result = self.orchestrator.run_remote(command.host, docker_cli.cat_cmd(command.path))
            result.check(f"reading {command.path}")
        except ProcessError as e:
            self.post(FetchFailed("script", command.path, str(e)))
            return
        self.post(Fetched("script", command.path, scripts.load_script(command.path, result.stdout)))

    def _generate_script(self, command: GenerateScript) -> None:
        text = scripts.generate(command.spec)
        try:
            self.orchestrator.run_remote(
                command.host, docker_cli.write_script_cmd(command.path, text, self.sudo)
            ).check(f"writing {command.path}")
        except ProcessError as e:
            logger.error(f"Writing {command.path} failed: {e}")
            self.post(ScriptSaved(command.path, False, e.message))
            return
        logger.info(f"Wrote {command.path} on {command.host.alias}")
        self.post(ScriptSaved(command.path, True))

    def _execute_script(self, command: ExecuteScript) -> None:
        if self.docker.interactive_scripts:
            # owns the terminal, so it cannot go to a worker thread
            self._run_script(command)
        else:
            self._background(self._run_script)(command)

    def _run_script(self, command: ExecuteScript) -> None:
        """Stop and remove the old container, then run the script."""
        host, path, name = command.host, command.path, command.container_name
        if name and command.container_exists:
            for step, action in (("stop", "stop"), ("remove", "remove")):
                cmd = docker_cli.action_cmd(action, Container("", name, "", ""), self.sudo)
                try:
                    result = self.orchestrator.run_remote(host, cmd)
                except ProcessError as e:
                    self.post(ScriptExecuted(path, False, step, e.message))
                    return
                if not result.ok:
                    logger.warning(f"docker {action} {name} failed before running {path}")
                    self.post(ScriptExecuted(path, False, step, result.stderr or result.stdout))
                    return

        run = docker_cli.run_script_cmd(path, self.sudo)
        try:
            if self.docker.interactive_scripts:
                code = self.orchestrator.remote_interactive(host, run, self.terminal)
                self.post(ScriptExecuted(path, code == 0, "run", f"exit code {code}"))
                return
            result = self.orchestrator.run_remote(host, run, timeout=SCRIPT_TIMEOUT)
        except ProcessError as e:
            self.post(ScriptExecuted(path, False, "run", e.message))
            return
        logger.info(f"{path} on {host.alias} exited with {result.exit_code}")
        self.post(ScriptExecuted(path, result.ok, "run", result.stdout + result.stderr))

    # Files and rsync

    def _list_directory(self, command: ListDirectory) -> None:
        try:
            if command.host is None:
                entries = list_local(command.path)
            else:
                result = self.orchestrator.run_remote(command.host, docker_cli.ls_cmd(command.path))
                result.check(f"listing {command.path}")
                entries = docker_cli.parse_listing(result.stdout, command.path)
        except (OSError, ProcessError) as e:
            self.post(FetchFailed("listing", command.path, str(e)))
            return
        self.post(Fetched("listing", command.path, entries))

    def _complete_path(self, command: CompletePath) -> None:
        try:
            if command.host is None:
                names = _local_names(command.text)
            else:
                output = self.orchestrator.run_remote(command.host,
                                                      docker_cli.complete_cmd(command.text)).stdout
                names = [os.path.basename(line.rstrip("/")) + ("/" if line.endswith("/") else "")
                         for line in output.splitlines() if line.strip()]
        except (OSError, ProcessError) as e:
            self.post(FetchFailed("completion", command.field, str(e)))
            return
        self.post(Fetched("completion", command.field, complete_from(command.text, names)))

    def _run_rsync(self, command: RunRsync) -> None:
        local = os.path.expanduser(command.local_path)
        try:
            result = self.orchestrator.run_rsync(command.host, local, command.remote_path,
                                                 command.to_host, command.compress,
                                                 self.rsync.extra_args)
        except ProcessError as e:
            self.post(RsyncFinished(False, e.message))
            return
        logger.info(f"rsync with {command.host.alias} exited with {result.exit_code}")
        self.post(RsyncFinished(result.ok, result.stdout + result.stderr))
