from dataclasses import replace

import pytest

from sshing.events import (ActionCompleted, CancelStream, DockerAction, ExecuteScript,
                           FetchContainers, Fetched, FetchFailed, GenerateScript, Key, ParseScript,
                           RemoteFetch, ScriptExecuted, ScriptSaved, StartStream, StreamChunk,
                           StreamEnded)
from sshing.model import (Container, ContainerDetails, DeploymentSpec, EnvEntry, Host, PortMapping,
                          ProcessInfo)
from sshing.modes import (DockerEnv, DockerInspect, DockerList, DockerLogs, DockerProcesses,
                          DockerStats, HostList, ScriptBrowser, ScriptEditor, ScriptViewer)
from sshing.scripts import load_script
from sshing.state import initial_state, reduce
from sshing.state_docker import HISTORY, find_list, with_list
from sshing.store import Registry

HOST = Host(alias="web", hostname="10.0.0.1")
CONTAINERS = [
    Container(id="1", name="api", image="app:1", status="Up"),
    Container(id="2", name="db", image="postgres:16", status="Down"),
]
API_SCRIPT = "#!/bin/bash\ndocker run -d --name api -e A=1 -p 8080:80 app:1\n"
STATS = "12.5%|100MiB / 1GiB|9.77%|1kB / 2kB|0B / 0B|7"


def press(state, *keys):
    commands = []
    for key in keys:
        state, cmds = reduce(state, Key(key))
        commands.extend(cmds)
    return state, commands


@pytest.fixture
def state():
    s = initial_state(Registry(hosts=[HOST]))
    s, cmds = press(s, "d")
    assert cmds == [FetchContainers(HOST)]
    payload = {"containers": CONTAINERS,
               "scripts": ["/srv/api/start.sh", "/srv/other/run.sh"]}
    s, _ = reduce(s, Fetched("containers", "web", payload))
    return s


def test_containers_loaded_and_scripts_associated(state):
    mode = state.mode
    assert isinstance(mode, DockerList)
    assert not mode.loading
    assert [c.name for c in mode.containers] == ["api", "db"]
    assert mode.scripts == {"api": "/srv/api/start.sh"}
    assert state.status == "2 containers on web"


def test_containers_for_other_host_ignored(state):
    s, _ = reduce(state, Fetched("containers", "elsewhere", {"containers": []}))
    assert s is state


def test_initial_fetch_failure_returns_to_host_list():
    s, _ = press(initial_state(Registry(hosts=[HOST])), "d")
    s, _ = reduce(s, FetchFailed("containers", "web", "docker: command not found"))
    assert isinstance(s.mode, HostList)
    assert s.status_error
    assert "docker: command not found" in s.status


def test_refresh_failure_keeps_list(state):
    s, cmds = press(state, "R")
    assert cmds == [FetchContainers(HOST)]
    s, _ = reduce(s, FetchFailed("containers", "web", "timed out"))
    assert isinstance(s.mode, DockerList)
    assert s.mode.error == "timed out"
    assert len(s.mode.containers) == 2


def test_lifecycle_action_and_busy_guard(state):
    s, cmds = press(state, "r")
    assert cmds == [DockerAction(HOST, "restart", CONTAINERS[0])]
    assert s.mode.busy == "restart"

    s2, cmds = press(s, "s")
    assert cmds == []
    assert s2.status == "Wait for restart to finish"

    s, cmds = reduce(s, ActionCompleted("restart", "api", True))
    assert s.mode.busy == ""
    assert s.mode.loading
    assert cmds == [FetchContainers(HOST)]
    assert s.status == "Restart api: done"


def test_failed_action_reports(state):
    s, _ = press(state, "S")
    s, _ = reduce(s, ActionCompleted("start", "api", False, "port is already allocated"))
    assert s.status_error
    assert s.status == "Start api failed: port is already allocated"


def test_remove_needs_confirmation(state):
    s, cmds = press(state, "j", "d")
    assert cmds == []
    assert s.mode.confirm == "remove"
    s, cmds = press(s, "n")
    assert s.mode.confirm is None
    assert cmds == []

    s, cmds = press(s, "X", "y")
    assert cmds == [DockerAction(HOST, "remove_with_image", CONTAINERS[1])]


def test_remove_targets_the_container_named_at_confirm_time(state):
    s, _ = press(state, "d")
    assert s.mode.confirm_target == "api"
    # a refresh reorders the list while the prompt is open
    s, _ = reduce(s, Fetched("containers", "web", {"containers": [CONTAINERS[1], CONTAINERS[0]]}))
    assert s.mode.current.name == "db"
    s, cmds = press(s, "y")
    assert cmds == [DockerAction(HOST, "remove", CONTAINERS[0])]
    assert s.mode.confirm is None


def test_remove_of_vanished_container_is_dropped(state):
    s, _ = press(state, "d")
    s, _ = reduce(s, Fetched("containers", "web", {"containers": [CONTAINERS[1]]}))
    s, cmds = press(s, "y")
    assert cmds == []
    assert s.status == "Container api no longer exists"
    assert s.status_error
    assert s.mode.confirm is None


def test_no_container_selected():
    s, _ = press(initial_state(Registry(hosts=[HOST])), "d")
    s, _ = reduce(s, Fetched("containers", "web", {"containers": []}))
    s, cmds = press(s, "l")
    assert cmds == []
    assert s.status == "No container selected"


def test_esc_returns_to_host_list(state):
    s, _ = press(state, "esc")
    assert isinstance(s.mode, HostList)


# --- logs ---

def test_logs_stream_lifecycle(state):
    s, cmds = press(state, "l")
    assert cmds == [StartStream(1, HOST, "logs", "api", 100, False)]
    assert isinstance(s.mode, DockerLogs)
    assert s.next_stream_id == 2

    s, _ = reduce(s, StreamChunk(1, ["one", "two"]))
    assert s.mode.lines == ("one", "two")
    # chunks of other streams are dropped
    s, _ = reduce(s, StreamChunk(7, ["stray"]))
    assert s.mode.lines == ("one", "two")

    s, cmds = press(s, "f")
    assert cmds == [CancelStream(1), StartStream(2, HOST, "logs", "api", 100, True)]
    assert s.mode.follow
    assert s.mode.lines == ()
    s, _ = reduce(s, StreamChunk(1, ["late"]))
    assert s.mode.lines == ()

    s, cmds = press(s, "m")
    assert cmds == [CancelStream(2), StartStream(3, HOST, "logs", "api", 500, True)]

    s, cmds = press(s, "esc")
    assert cmds == [CancelStream(3)]
    assert isinstance(s.mode, DockerList)


def test_logs_keep_line_count(state):
    s, _ = press(state, "l")
    s, _ = reduce(s, StreamChunk(1, [str(i) for i in range(150)]))
    assert len(s.mode.lines) == 100
    assert s.mode.lines[-1] == "149"


def test_logs_scroll_stays_put_while_lines_arrive(state):
    s, _ = press(state, "l")
    s, _ = reduce(s, StreamChunk(1, ["a", "b", "c", "d"]))
    s, _ = press(s, "k")
    assert s.mode.scroll == 1
    s, _ = reduce(s, StreamChunk(1, ["e", "f"]))
    assert s.mode.scroll == 3
    s, _ = press(s, "G")
    assert s.mode.at_bottom
    s, _ = reduce(s, StreamChunk(1, ["g"]))
    assert s.mode.scroll == 0


def test_logs_end_reports_exit_code(state):
    s, _ = press(state, "l")
    s, _ = reduce(s, StreamEnded(1, 1))
    assert not s.mode.running
    assert s.mode.error == "docker logs exited with code 1"


# --- stats ---

def test_stats_history_is_capped(state):
    s, cmds = press(state, "D")
    assert cmds == [StartStream(1, HOST, "stats", "api")]
    assert isinstance(s.mode, DockerStats)
    s, _ = reduce(s, StreamChunk(1, [STATS] * (HISTORY + 5) + ["garbage"]))
    assert len(s.mode.cpu_history) == HISTORY
    assert s.mode.current.cpu_percent == 12.5
    assert s.mode.mem_history[-1] == 9.77

    s, cmds = press(s, "r")
    assert cmds == [CancelStream(1), StartStream(2, HOST, "stats", "api")]
    assert s.mode.cpu_history == ()


def test_stats_stream_error(state):
    s, _ = press(state, "D")
    s, _ = reduce(s, StreamEnded(1, None, error="Failed to start ssh"))
    assert s.mode.error == "Failed to start ssh"
    s, cmds = press(s, "q")
    assert cmds == [CancelStream(1)]


# --- one-shot viewers ---

def test_processes_viewer(state):
    s, cmds = press(state, "T")
    assert cmds == [RemoteFetch(HOST, "processes", "api")]
    procs = [ProcessInfo("1", "root", "0.0", "0.1", "nginx")]
    s, _ = reduce(s, Fetched("processes", "api", procs))
    assert s.mode.processes == tuple(procs)
    assert not s.mode.loading

    s, _ = reduce(s, FetchFailed("processes", "api", "container not running"))
    assert s.mode.error == "container not running"
    s, _ = press(s, "esc")
    assert isinstance(s.mode, DockerList)


def test_inspect_viewer(state):
    s, _ = press(state, "I")
    assert isinstance(s.mode, DockerInspect)
    details = ContainerDetails(id="abc", name="api", image="app:1", status="running",
                               ports=["8080->80/tcp"], raw='{\n  "Id": "abc"\n}')
    s, _ = reduce(s, Fetched("inspect", "api", details))
    assert "Name:           api" in s.mode.lines
    assert "  8080->80/tcp" in s.mode.lines
    assert s.mode.lines[-1] == "}"
    s, _ = press(s, "G")
    assert s.mode.scroll == len(s.mode.lines) - 1


def test_env_viewer_search(state):
    s, cmds = press(state, "E")
    assert cmds == [RemoteFetch(HOST, "env", "api", script_path="/srv/api/start.sh")]
    entries = [EnvEntry("DB_PASSWORD", "x", secret=True), EnvEntry("TZ", "UTC", in_script=True)]
    s, _ = reduce(s, Fetched("env", "api", entries))
    assert isinstance(s.mode, DockerEnv)
    s, _ = press(s, "t", "z")
    assert s.mode.query == "tz"
    assert [e.key for e in s.mode.visible()] == ["TZ"]
    s, _ = press(s, "esc")
    assert s.mode.query == ""
    s, _ = press(s, "esc")
    assert isinstance(s.mode, DockerList)


def test_result_for_closed_viewer_is_ignored(state):
    s, _ = press(state, "T", "esc")
    s2, _ = reduce(s, Fetched("processes", "api", []))
    assert s2.mode == s.mode


# --- scripts ---

def test_edit_script_round_trip(state):
    s, cmds = press(state, "e")
    assert cmds == [ParseScript(HOST, "/srv/api/start.sh")]
    assert isinstance(s.mode, ScriptViewer)
    assert s.mode.open_editor

    s, _ = reduce(s, Fetched("script", "/srv/api/start.sh",
                             load_script("/srv/api/start.sh", API_SCRIPT)))
    assert isinstance(s.mode, ScriptEditor)
    assert s.mode.spec.env == {"A": "1"}

    s, _ = press(s, "a", "B", "=", "2", "enter")
    assert s.mode.spec.env == {"A": "1", "B": "2"}
    assert s.mode.cursor == 1

    s, _ = press(s, "tab", "a", "9", "0", "0", "0", ":", "9", "0", "0", "0", "enter")
    assert s.mode.spec.ports == [PortMapping("8080", "80"), PortMapping("9000", "9000")]

    s, cmds = press(s, "ctrl+s")
    assert s.mode.saving
    assert len(cmds) == 1 and isinstance(cmds[0], GenerateScript)
    assert cmds[0].path == "/srv/api/start.sh"
    assert cmds[0].spec.env == {"A": "1", "B": "2"}

    s, _ = reduce(s, ScriptSaved("/srv/api/start.sh", True))
    assert isinstance(s.mode, DockerList)
    assert s.status == "Saved /srv/api/start.sh"


def test_script_save_failure_keeps_editor(state):
    s, _ = press(state, "e")
    s, _ = reduce(s, Fetched("script", "/srv/api/start.sh",
                             load_script("/srv/api/start.sh", API_SCRIPT)))
    s, _ = press(s, "ctrl+s")
    s, _ = reduce(s, ScriptSaved("/srv/api/start.sh", False, "Permission denied"))
    assert isinstance(s.mode, ScriptEditor)
    assert not s.mode.saving
    assert s.mode.error == "Permission denied"


def test_script_editor_rejects_bad_item(state):
    s, _ = press(state, "e")
    s, _ = reduce(s, Fetched("script", "/srv/api/start.sh",
                             load_script("/srv/api/start.sh", API_SCRIPT)))
    s, _ = press(s, "tab", "a", "8", "0", ":", "enter")
    assert s.mode.input == "80:"
    assert "Invalid port mapping" in s.mode.error


def test_script_editor_delete_and_discard(state):
    s, _ = press(state, "e")
    s, _ = reduce(s, Fetched("script", "/srv/api/start.sh",
                             load_script("/srv/api/start.sh", API_SCRIPT)))
    s, _ = press(s, "d")
    assert s.mode.spec.env == {}
    s, cmds = press(s, "esc")
    assert cmds == []
    assert isinstance(s.mode, DockerList)
    assert s.status == "Script changes discarded"


def test_opaque_script_cannot_be_edited(state):
    s, _ = press(state, "e")
    text = "#!/bin/bash\ndocker compose up -d\n"
    s, _ = reduce(s, Fetched("script", "/srv/api/start.sh", load_script("/srv/api/start.sh", text)))
    assert isinstance(s.mode, ScriptViewer)
    assert s.status_error
    s, _ = press(s, "e")
    assert isinstance(s.mode, ScriptViewer)
    assert s.status.startswith("Cannot edit /srv/api/start.sh")


def test_script_needs_association(state):
    s, cmds = press(state, "j", "e")
    assert cmds == []
    assert s.status == "No script associated with db (press b to browse)"


def test_execute_script_and_abort(state):
    s, cmds = press(state, "x")
    assert cmds == [ExecuteScript(HOST, "/srv/api/start.sh", "api", True)]
    assert s.mode.busy == "script"

    s, cmds = reduce(s, ScriptExecuted("/srv/api/start.sh", False, "stop", "permission denied"))
    assert cmds == [FetchContainers(HOST)]
    assert s.mode.busy == ""
    assert s.status == "Aborted /srv/api/start.sh: stop failed: permission denied"


def test_execute_from_viewer(state):
    s, _ = press(state, "v")
    assert not s.mode.open_editor
    s, cmds = press(s, "x")
    assert cmds == [ExecuteScript(HOST, "/srv/api/start.sh", "api", True)]
    assert isinstance(s.mode, DockerList)


def test_script_browser_associates(state):
    s, cmds = press(state, "j", "b")
    assert cmds == [RemoteFetch(HOST, "scripts", "~")]
    assert isinstance(s.mode, ScriptBrowser)
    assert s.mode.container == "db"
    s, _ = reduce(s, Fetched("scripts", "~", ["/srv/api/start.sh", "/srv/db/run.sh"]))
    assert s.mode.scripts == ("/srv/api/start.sh", "/srv/db/run.sh")
    s, _ = press(s, "j", "enter")
    assert isinstance(s.mode, DockerList)
    assert s.mode.scripts["db"] == "/srv/db/run.sh"


def test_new_script_from_container(state):
    s, cmds = press(state, "n")
    assert cmds == [RemoteFetch(HOST, "new_script", "api")]
    assert s.mode.busy == "prepare"
    spec = DeploymentSpec(image="app:1", name="api", detach=True)
    s, _ = reduce(s, Fetched("new_script", "api", spec))
    assert isinstance(s.mode, ScriptEditor)
    assert s.mode.path == "~/api/start.sh"
    assert s.mode.parent.busy == ""


def test_find_and_update_list_through_viewer(state):
    s, _ = press(state, "T")
    assert find_list(s.mode) is s.mode.parent
    updated = with_list(s.mode, lambda dl: replace(dl, error="x"))
    assert updated.parent.error == "x"
    assert isinstance(updated, DockerProcesses)
