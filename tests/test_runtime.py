import os
import time
from unittest.mock import MagicMock, call

import pytest

from sshing.config import DockerConfig, RsyncConfig
from sshing.errors import ConfigError, ProcessError
from sshing.events import (ActionCompleted, CancelStream, CompletePath, DockerAction,
                           ExecuteScript, FetchContainers, Fetched, FetchFailed, GenerateScript,
                           ListDirectory, ParseScript, PersistFailed, PersistRegistry,
                           ProcessExited, Quit, RegistryPersisted, RemoteFetch, RsyncFinished,
                           RunRsync, ScriptExecuted, ScriptSaved, SpawnSession, StartStream,
                           StreamChunk, StreamEnded)
from sshing.model import Container, DeploymentSpec, Host
from sshing.orchestrator import Orchestrator, ProcessResult
from sshing.runtime import SCRIPT_TIMEOUT, PersistWorker, Runtime, complete_from, list_local
from sshing.store import Registry

HOST = Host(alias="web", hostname="10.0.0.1")


def ok(stdout=""):
    return ProcessResult(0, stdout, "")


def failed(stderr, code=1):
    return ProcessResult(code, "", stderr)


@pytest.fixture
def orchestrator():
    return MagicMock(spec=Orchestrator)


@pytest.fixture
def store():
    return MagicMock()


@pytest.fixture
def runtime(store, orchestrator):
    return Runtime(store, orchestrator, terminal=MagicMock(), run_inline=True)


def remote_commands(orchestrator):
    return [c.args[1] for c in orchestrator.run_remote.call_args_list]


# --- persistence ---

def test_persist_success(runtime, store):
    saved = Registry(hosts=[HOST])
    store.save.return_value = saved
    runtime.execute([PersistRegistry(Registry(hosts=[HOST]))])
    assert runtime.poll_events() == [RegistryPersisted(saved)]


def test_persist_failure(runtime, store):
    store.save.side_effect = ConfigError("disk full")
    runtime.execute([PersistRegistry(Registry())])
    assert runtime.poll_events() == [PersistFailed("disk full")]


def test_persist_worker_serializes_and_drains(store):
    order = []

    def save(registry):
        time.sleep(0.01)
        order.append(registry.tags[0])
        return registry

    store.save.side_effect = save
    events = []
    worker = PersistWorker(store, events.append)
    worker.start()
    for tag in ("a", "b", "c"):
        worker.submit(Registry(tags=[tag]))
    worker.stop()
    worker.join(timeout=5)
    assert not worker.is_alive()
    assert not worker.running
    assert order == ["a", "b", "c"]
    assert [type(e) for e in events] == [RegistryPersisted] * 3


# --- sessions ---

def test_spawn_session_reports_exit(runtime, orchestrator):
    orchestrator.ssh_session.return_value = 0
    runtime.execute([SpawnSession(HOST)])
    orchestrator.ssh_session.assert_called_once_with(HOST, runtime.terminal)
    [event] = runtime.poll_events()
    assert isinstance(event, ProcessExited)
    assert event.alias == "web"
    assert event.code == 0
    assert event.finished_at.tzinfo is not None


def test_spawn_failure_reports_error(runtime, orchestrator):
    orchestrator.ssh_session.side_effect = ProcessError("Failed to start ssh", kind="spawn")
    runtime.execute([SpawnSession(HOST)])
    [event] = runtime.poll_events()
    assert event.code is None
    assert event.error == "Failed to start ssh"


# --- docker ---

def test_fetch_containers_with_scripts(runtime, orchestrator):
    orchestrator.run_remote.side_effect = [
        ok("1|api|app:1|Up 2 hours|\n"),
        ok("/home/u/api/start.sh\n"),
    ]
    runtime.execute([FetchContainers(HOST)])
    [event] = runtime.poll_events()
    assert event.kind == "containers"
    assert event.target == "web"
    assert [c.name for c in event.payload["containers"]] == ["api"]
    assert event.payload["scripts"] == ["/home/u/api/start.sh"]


def test_fetch_containers_tolerates_script_discovery_failure(runtime, orchestrator):
    orchestrator.run_remote.side_effect = [ok("1|api|app:1|Up|\n"),
                                           ProcessError("timed out", kind="timeout")]
    runtime.execute([FetchContainers(HOST)])
    [event] = runtime.poll_events()
    assert event.payload["scripts"] == []


def test_fetch_containers_failure(runtime, orchestrator):
    orchestrator.run_remote.return_value = failed("bash: docker: command not found", 127)
    runtime.execute([FetchContainers(HOST)])
    [event] = runtime.poll_events()
    assert isinstance(event, FetchFailed)
    assert event.kind == "containers"
    assert "docker: command not found" in event.error


def test_docker_action_with_sudo(store, orchestrator):
    runtime = Runtime(store, orchestrator, docker=DockerConfig(use_sudo=True), run_inline=True)
    orchestrator.run_remote.return_value = ok()
    container = Container("1", "api", "app:1", "Up")
    runtime.execute([DockerAction(HOST, "pull", container)])
    orchestrator.run_remote.assert_called_once_with(HOST, "sudo docker pull app:1",
                                                    timeout=SCRIPT_TIMEOUT)
    assert runtime.poll_events() == [ActionCompleted("pull", "api", True, "")]


def test_docker_action_failure(runtime, orchestrator):
    orchestrator.run_remote.return_value = failed("Error: No such container: api")
    runtime.execute([DockerAction(HOST, "stop", Container("1", "api", "app:1", "Up"))])
    assert runtime.poll_events() == [
        ActionCompleted("stop", "api", False, "Error: No such container: api")]


def test_env_fetch_marks_script_keys(runtime, orchestrator):
    orchestrator.run_remote.side_effect = [
        ok("TZ=UTC\nHOSTNAME=abc\n"),
        ok("docker run -e TZ=UTC app\n"),
    ]
    runtime.execute([RemoteFetch(HOST, "env", "api", script_path="/srv/api/start.sh")])
    [event] = runtime.poll_events()
    assert {e.key: e.in_script for e in event.payload} == {"HOSTNAME": False, "TZ": True}
    assert remote_commands(orchestrator) == ["docker exec api env", "cat /srv/api/start.sh"]


def test_inspect_fetch_builds_new_script_spec(runtime, orchestrator):
    orchestrator.run_remote.return_value = ok(
        '[{"Name": "/api", "Config": {"Image": "app:1"}, "HostConfig": {}}]')
    runtime.execute([RemoteFetch(HOST, "new_script", "api")])
    [event] = runtime.poll_events()
    assert event.kind == "new_script"
    assert event.payload.image == "app:1"
    assert event.payload.name == "api"


def test_unparseable_fetch_fails(runtime, orchestrator):
    orchestrator.run_remote.return_value = ok("not json")
    runtime.execute([RemoteFetch(HOST, "inspect", "api")])
    [event] = runtime.poll_events()
    assert isinstance(event, FetchFailed)
    assert event.kind == "inspect"


# --- scripts ---

def test_parse_script(runtime, orchestrator):
    orchestrator.run_remote.return_value = ok("docker run -d --name api app:1\n")
    runtime.execute([ParseScript(HOST, "/srv/api/start.sh")])
    [event] = runtime.poll_events()
    assert isinstance(event, Fetched)
    assert (event.kind, event.target) == ("script", "/srv/api/start.sh")
    assert event.payload.spec.name == "api"
    assert event.payload.error is None


def test_generate_script_writes_remote_file(runtime, orchestrator):
    orchestrator.run_remote.return_value = ok()
    spec = DeploymentSpec(image="app:1", name="api", detach=True)
    runtime.execute([GenerateScript(HOST, "/srv/api/start.sh", spec)])
    [command] = remote_commands(orchestrator)
    assert command.startswith('mkdir -p "$(dirname /srv/api/start.sh)" && cat > /srv/api/start.sh')
    assert "IMAGE=app:1\n" in command
    assert runtime.poll_events() == [ScriptSaved("/srv/api/start.sh", True)]


def test_generate_script_failure(runtime, orchestrator):
    orchestrator.run_remote.return_value = failed("Permission denied")
    runtime.execute([GenerateScript(HOST, "/srv/api/start.sh", DeploymentSpec(image="x"))])
    [event] = runtime.poll_events()
    assert not event.ok
    assert "Permission denied" in event.error


def test_execute_script_stops_removes_then_runs(runtime, orchestrator):
    orchestrator.run_remote.return_value = ok("started\n")
    runtime.execute([ExecuteScript(HOST, "/srv/api/start.sh", "api", True)])
    assert remote_commands(orchestrator) == [
        "docker stop api",
        "docker rm -f api",
        'cd "$(dirname /srv/api/start.sh)" && bash /srv/api/start.sh',
    ]
    assert orchestrator.run_remote.call_args_list[-1] == call(
        HOST, 'cd "$(dirname /srv/api/start.sh)" && bash /srv/api/start.sh',
        timeout=SCRIPT_TIMEOUT)
    assert runtime.poll_events() == [ScriptExecuted("/srv/api/start.sh", True, "run", "started\n")]


def test_execute_script_without_existing_container(runtime, orchestrator):
    orchestrator.run_remote.return_value = ok()
    runtime.execute([ExecuteScript(HOST, "/srv/api/start.sh", "api", False)])
    assert len(remote_commands(orchestrator)) == 1


def test_execute_script_aborts_when_stop_fails(runtime, orchestrator):
    orchestrator.run_remote.return_value = failed("permission denied")
    runtime.execute([ExecuteScript(HOST, "/srv/api/start.sh", "api", True)])
    assert remote_commands(orchestrator) == ["docker stop api"]
    assert runtime.poll_events() == [
        ScriptExecuted("/srv/api/start.sh", False, "stop", "permission denied")]


def test_interactive_script_run(store, orchestrator):
    terminal = MagicMock()
    runtime = Runtime(store, orchestrator, terminal,
                      docker=DockerConfig(interactive_scripts=True), run_inline=True)
    orchestrator.remote_interactive.return_value = 2
    runtime.execute([ExecuteScript(HOST, "/srv/api/start.sh", None, False)])
    orchestrator.remote_interactive.assert_called_once()
    assert orchestrator.remote_interactive.call_args.args[2] is terminal
    [event] = runtime.poll_events()
    assert not event.ok
    assert event.output == "exit code 2"


# --- streams ---

def test_stream_lines_are_batched(runtime, orchestrator):
    handle = MagicMock()
    orchestrator.stream_remote.return_value = handle
    runtime.execute([StartStream(4, HOST, "logs", "api", 100, True)])
    host, command, on_line, on_exit = orchestrator.stream_remote.call_args.args
    assert command == "docker logs --tail 100 -f api 2>&1"
    assert runtime.active_streams() == 1

    on_line("one")
    on_line("two")
    assert runtime.poll_events() == [StreamChunk(4, ["one", "two"])]
    assert runtime.poll_events() == []

    on_line("three")
    on_exit(0, False)
    assert runtime.poll_events() == [StreamChunk(4, ["three"]), StreamEnded(4, 0)]
    assert runtime.active_streams() == 0


def test_cancelled_stream_is_silent(runtime, orchestrator):
    handle = MagicMock()
    orchestrator.stream_remote.return_value = handle
    runtime.execute([StartStream(1, HOST, "stats", "api")])
    _, command, on_line, on_exit = orchestrator.stream_remote.call_args.args
    assert command.startswith("while true; do docker stats")

    runtime.execute([CancelStream(1)])
    handle.cancel.assert_called_once()
    on_line("late")
    on_exit(-15, True)
    assert runtime.poll_events() == []
    assert runtime.active_streams() == 0


def test_stream_spawn_failure(runtime, orchestrator):
    orchestrator.stream_remote.side_effect = ProcessError("Failed to start ssh", kind="spawn")
    runtime.execute([StartStream(2, HOST, "logs", "api", 100)])
    assert runtime.poll_events() == [StreamEnded(2, None, error="Failed to start ssh")]
    assert runtime.active_streams() == 0


def _local_streams(orch, script):
    def stream_remote(host, command, on_line=None, on_exit=None):
        return orch.run_streaming("sh", ["-c", script], on_line, on_exit)
    return stream_remote


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


def test_real_stream_delivers_then_ends(store, mocker):
    orch = Orchestrator()
    mocker.patch.object(orch, "stream_remote", side_effect=_local_streams(orch, "echo a; echo b"))
    runtime = Runtime(store, orch, run_inline=True)
    runtime.execute([StartStream(1, HOST, "logs", "api", 10)])
    events = []
    assert _wait_for(lambda: events.extend(runtime.poll_events()) or
                     any(isinstance(e, StreamEnded) for e in events))
    lines = [line for e in events if isinstance(e, StreamChunk) for line in e.lines]
    assert lines == ["a", "b"]
    assert events[-1] == StreamEnded(1, 0)
    assert orch.active_streams() == 0


def test_real_stream_cancel_leaves_nothing_running(store, mocker):
    orch = Orchestrator()
    mocker.patch.object(orch, "stream_remote", side_effect=_local_streams(orch, "sleep 30"))
    runtime = Runtime(store, orch, run_inline=True)
    runtime.execute([StartStream(1, HOST, "logs", "api", 10, True),
                     StartStream(2, HOST, "stats", "api")])
    assert runtime.active_streams() == 2
    runtime.execute([CancelStream(1)])
    assert runtime.active_streams() == 1
    runtime.shutdown()
    assert runtime.active_streams() == 0
    assert orch.active_streams() == 0
    assert runtime.poll_events() == []


# --- files and rsync ---

def test_complete_from():
    assert complete_from("~/ap", ["apps/", "bin/"]) == \
        {"prefix": "~/ap", "text": "~/apps/", "candidates": ["~/apps/"]}
    result = complete_from("/tm", ["tmp/", "tmux.conf", ".tmux"])
    assert result["candidates"] == ["/tmp/", "/tmux.conf"]
    assert result["text"] == "/tm"
    assert complete_from("/x", ["a"])["candidates"] == []


def test_list_local(tmp_path):
    (tmp_path / "sub").mkdir()
    (tmp_path / "start.sh").write_text("docker run x\n")
    (tmp_path / "Notes.txt").write_text("hello")
    entries = list_local(str(tmp_path))
    assert [e.name for e in entries] == ["..", "sub", "Notes.txt", "start.sh"]
    assert entries[-1].is_script
    assert entries[-1].path == os.path.join(str(tmp_path), "start.sh")
    assert entries[2].size == 5


def test_list_directory_local_and_remote(runtime, orchestrator, tmp_path):
    (tmp_path / "a.txt").write_text("")
    runtime.execute([ListDirectory(None, str(tmp_path))])
    [event] = runtime.poll_events()
    assert event.kind == "listing"
    assert [e.name for e in event.payload] == ["..", "a.txt"]

    orchestrator.run_remote.return_value = ok("/home/deploy\n-rw-r--r-- 1 u u 3 Jan 1 00:00 b.sh\n")
    runtime.execute([ListDirectory(HOST, "~")])
    [event] = runtime.poll_events()
    assert event.target == "~"
    assert [(e.name, e.path) for e in event.payload] == [("..", "/home"), ("b.sh", "/home/deploy/b.sh")]
    assert remote_commands(orchestrator)[-1] == "cd ~ && pwd && ls -la | tail -n +2"


def test_list_missing_local_directory(runtime, tmp_path):
    runtime.execute([ListDirectory(None, str(tmp_path / "missing"))])
    [event] = runtime.poll_events()
    assert isinstance(event, FetchFailed)
    assert event.kind == "listing"


def test_complete_local_path(runtime, tmp_path):
    (tmp_path / "start.sh").write_text("")
    (tmp_path / "stuff").mkdir()
    runtime.execute([CompletePath(None, f"{tmp_path}/sta", "local")])
    [event] = runtime.poll_events()
    assert event.target == "local"
    assert event.payload["text"] == f"{tmp_path}/start.sh"


def test_complete_remote_path(runtime, orchestrator):
    orchestrator.run_remote.return_value = ok("/srv/apps/\n/srv/apt.log\n")
    runtime.execute([CompletePath(HOST, "/srv/ap", "remote")])
    [event] = runtime.poll_events()
    assert event.payload["candidates"] == ["/srv/apps/", "/srv/apt.log"]
    assert event.payload["text"] == "/srv/ap"


def test_run_rsync(store, orchestrator):
    runtime = Runtime(store, orchestrator, rsync=RsyncConfig(extra_args=["--delete"]),
                      run_inline=True)
    orchestrator.run_rsync.return_value = ok("sent 10 bytes\n")
    runtime.execute([RunRsync(HOST, "~/site", "/srv/site", True, False)])
    orchestrator.run_rsync.assert_called_once_with(
        HOST, os.path.expanduser("~/site"), "/srv/site", True, False, ["--delete"])
    assert runtime.poll_events() == [RsyncFinished(True, "sent 10 bytes\n")]


def test_shutdown_is_idempotent(runtime, orchestrator):
    runtime.execute([Quit()])
    runtime.shutdown()
    orchestrator.cancel_all.assert_called_once()
