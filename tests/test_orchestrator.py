import threading
import time
from unittest.mock import MagicMock

import pytest

from sshing.errors import ProcessError
from sshing.model import Host
from sshing.orchestrator import (
    Orchestrator,
    ProcessResult,
    TerminalHandoff,
    interactive_ssh_argv,
    remote_argv,
    rsync_argv,
    ssh_args,
)

HOST = Host(alias="web", hostname="10.0.0.1", user="deploy", port=2222,
            identity_files=("/keys/id_web",), proxy_jump="bastion", ssh_flags=("-A", "-v"))


def test_ssh_args_from_host_record():
    assert ssh_args(HOST) == ["-l", "deploy", "-p", "2222", "-i", "/keys/id_web",
                              "-J", "bastion", "-A", "-v"]


def test_ssh_args_adds_custom_config_file():
    args = ssh_args(Host(alias="a", hostname="h"), config_path="/tmp/alt_config")
    assert args == ["-F", "/tmp/alt_config"]


def test_interactive_argv_starts_preferred_shell():
    argv = interactive_ssh_argv(HOST.with_changes(shell="zsh"))
    assert argv[0] == "ssh"
    assert argv[-2:] == ["web", "zsh"]
    assert "-t" in argv


def test_interactive_argv_without_shell():
    argv = interactive_ssh_argv(Host(alias="a", hostname="h"))
    assert argv == ["ssh", "a"]


def test_remote_argv_drops_interactive_flags():
    argv = remote_argv(HOST, "docker ps", connect_timeout=5)
    assert "-v" not in argv
    assert "-A" in argv
    assert argv[-2:] == ["web", "docker ps"]
    assert "BatchMode=yes" in argv
    assert "ConnectTimeout=5" in argv


def test_remote_argv_with_tty_is_not_batch():
    argv = remote_argv(HOST, "bash start.sh", tty=True)
    assert argv.index("-t") < argv.index("-A")
    assert "BatchMode=yes" not in argv


def test_rsync_argv_direction():
    up = rsync_argv(HOST, "/tmp/site", "/srv/site", to_host=True, compress=True)
    assert up[:3] == ["rsync", "-av", "-z"]
    assert up[-2:] == ["/tmp/site", "web:/srv/site"]
    transport = up[up.index("-e") + 1]
    assert transport.startswith("ssh -l deploy -p 2222")

    down = rsync_argv(HOST, "/tmp/site", "/srv/site", to_host=False)
    assert down[-2:] == ["web:/srv/site", "/tmp/site"]
    assert "-z" not in down


def test_process_result_check():
    assert ProcessResult(0, "ok", "").check("x").stdout == "ok"
    with pytest.raises(ProcessError) as exc:
        ProcessResult(1, "", "boom\nError: no such container\n").check("docker stop")
    assert exc.value.message == "docker stop failed: Error: no such container"
    assert exc.value.kind == "exit"
    with pytest.raises(ProcessError) as exc:
        ProcessResult(255, "", "Connection refused").check("docker ps")
    assert exc.value.kind == "disconnect"


# --- run_sync ---

def test_run_sync_captures_output_and_exit_code():
    result = Orchestrator().run_sync("sh", ["-c", "echo out; echo err >&2; exit 3"])
    assert result.exit_code == 3
    assert result.stdout == "out\n"
    assert result.stderr == "err\n"
    assert not result.ok


def test_run_sync_passes_input():
    result = Orchestrator().run_sync("cat", [], input_text="hello")
    assert result.stdout == "hello"


def test_run_sync_timeout():
    with pytest.raises(ProcessError) as exc:
        Orchestrator().run_sync("sleep", ["5"], timeout=0.2)
    assert exc.value.kind == "timeout"


def test_run_sync_spawn_failure():
    with pytest.raises(ProcessError) as exc:
        Orchestrator().run_sync("/nonexistent/sshing-binary", [])
    assert exc.value.kind == "spawn"


def test_run_remote_uses_command_timeout(mocker):
    orch = Orchestrator(ssh_binary="ssh", command_timeout=12.0)
    run_sync = mocker.patch.object(orch, "run_sync", return_value=ProcessResult(0, "", ""))
    orch.run_remote(Host(alias="a", hostname="h"), "uptime")
    args, kwargs = run_sync.call_args
    assert args[0] == "ssh"
    assert args[1][-2:] == ["a", "uptime"]
    assert kwargs["timeout"] == 12.0


# --- streaming ---

def test_streaming_delivers_lines_then_exit():
    orch = Orchestrator()
    lines = []
    exits = []
    handle = orch.run_streaming("sh", ["-c", "echo one; echo two; exit 2"],
                                on_line=lines.append,
                                on_exit=lambda code, cancelled: exits.append((code, cancelled)))
    assert handle.wait(timeout=5) == 2
    assert lines == ["one", "two"]
    assert exits == [(2, False)]
    assert list(handle.buffer) == ["one", "two"]
    assert orch.active_streams() == 0


def test_cancel_stops_stream_and_reaps_child():
    orch = Orchestrator()
    exits = []
    handle = orch.run_streaming("sleep", ["30"],
                                on_exit=lambda code, cancelled: exits.append(cancelled))
    assert orch.active_streams() == 1
    start = time.monotonic()
    handle.cancel()
    assert time.monotonic() - start < 5
    assert not handle.running
    assert handle.proc.poll() is not None
    assert exits == [True]
    assert orch.active_streams() == 0
    # second cancel is a no-op
    handle.cancel()


def test_cancel_all():
    orch = Orchestrator()
    handles = [orch.run_streaming("sleep", ["30"]) for _ in range(3)]
    orch.cancel_all()
    assert all(not h.running for h in handles)
    assert orch.active_streams() == 0


def test_streaming_spawn_failure():
    with pytest.raises(ProcessError) as exc:
        Orchestrator().run_streaming("/nonexistent/sshing-binary", [])
    assert exc.value.kind == "spawn"


# --- terminal handoff ---

def test_handoff_resumes_on_error():
    terminal = MagicMock()
    with pytest.raises(RuntimeError):
        with TerminalHandoff(terminal):
            raise RuntimeError("child blew up")
    terminal.suspend.assert_called_once()
    terminal.resume.assert_called_once()


def test_handoff_resumes_when_suspend_fails():
    terminal = MagicMock()
    terminal.suspend.side_effect = RuntimeError("no tty")
    with pytest.raises(RuntimeError):
        with TerminalHandoff(terminal):
            pass
    terminal.resume.assert_called_once()


def test_run_interactive_returns_exit_code():
    terminal = MagicMock()
    assert Orchestrator().run_interactive(["sh", "-c", "exit 4"], terminal) == 4
    terminal.suspend.assert_called_once()
    terminal.resume.assert_called_once()


def test_run_interactive_spawn_failure_restores_terminal():
    terminal = MagicMock()
    with pytest.raises(ProcessError):
        Orchestrator().run_interactive(["/nonexistent/sshing-binary"], terminal)
    terminal.resume.assert_called_once()


def test_streams_from_several_threads_are_tracked():
    orch = Orchestrator()
    handles = []
    lock = threading.Lock()

    def start():
        h = orch.run_streaming("sh", ["-c", "echo hi"])
        with lock:
            handles.append(h)

    threads = [threading.Thread(target=start) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    for h in handles:
        assert h.wait(timeout=5) == 0
    assert orch.active_streams() == 0
