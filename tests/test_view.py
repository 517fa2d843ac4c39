from dataclasses import replace
from datetime import datetime, timezone

import pytest

from sshing.model import (Container, ContainerStats, DeploymentScript, DeploymentSpec, EnvEntry,
                          FileEntry, Host)
from sshing.modes import (DeleteConfirm, DockerEnv, DockerList, DockerLogs, DockerStats,
                          FileBrowser, HostEditor, RsyncMode, ScriptEditor, ScriptViewer, Search)
from sshing.state import initial_state
from sshing.store import Registry
from sshing.view import HINTS, MASK, NEVER, project

HOST = Host(alias="web", hostname="10.0.0.1", user="deploy", port=2222, tags=("prod", "eu"),
            last_used=datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc))
PARENT = DockerList(HOST, containers=(Container("1", "api", "app:1", "Up", "Up 1 hour"),
                                      Container("2", "job", "job:2", "Failed", "Exited (1)")),
                    loading=False, scripts={"api": "/srv/api/start.sh"})


@pytest.fixture
def state():
    registry = Registry(hosts=[HOST, Host(alias="lab", hostname="lab.local")],
                        tags=["prod", "eu"])
    return initial_state(registry)


def texts(rows):
    return [cell for row in rows for cell in row.cells]


def test_host_table(state):
    view = project(state)
    assert view.mode == "HostList"
    assert view.title == "Hosts (2/2) sorted by name"
    assert view.columns[0] == "Alias"
    lab, web = view.rows
    assert lab.cells[-1] == NEVER
    assert lab.style == "dim"
    assert web.cells[:5] == ("web", "10.0.0.1", "deploy", "2222", "prod, eu")
    assert view.selected == 0
    assert view.hints == HINTS[type(state.mode)]


def test_filters_show_in_title(state):
    s = replace(state, mode=Search(), search="we", tag_filter=("prod",))
    view = project(s)
    assert view.title.endswith("[tags: prod] [search: we]")
    assert view.prompt == "/we"
    assert len(view.rows) == 1


def test_empty_registry():
    view = project(initial_state(Registry()))
    assert view.rows == []
    assert view.selected is None
    assert view.body == ["No hosts yet. Press n to add one."]


def test_status_and_pending(state):
    s = replace(state, status="Save failed: disk full", status_error=True, persisting=True)
    view = project(s)
    assert view.status == "Save failed: disk full"
    assert view.status_error
    assert view.pending


def test_delete_prompt(state):
    view = project(replace(state, mode=DeleteConfirm("web")))
    assert view.prompt == "Delete host 'web'? (y/n)"


def test_editor_fields(state):
    draft = Host(alias="new", hostname="")
    mode = HostEditor(draft=draft, field=1, editing=True, buffer="10.0.", dirty=frozenset({"alias"}))
    view = project(replace(state, mode=mode))
    assert view.title == "New host"
    by_label = {f.label: f for f in view.fields}
    assert by_label["Host Alias"].dirty
    assert by_label["Hostname"].value == "10.0."
    assert by_label["Hostname"].editing
    assert by_label["Port"].value == "(22)"
    assert by_label["Tags"].value == "(none)"


def test_docker_list_confirm(state):
    view = project(replace(state, mode=replace(PARENT, confirm="remove_with_image",
                                               confirm_target="api", selected=1)))
    assert view.title == "Containers on web"
    assert view.prompt == "Remove api and its image? (y/n)"
    assert [r.style for r in view.rows] == ["up", "failed"]
    assert view.rows[0].cells[-1] == "/srv/api/start.sh"
    assert view.rows[1].cells[2] == "Exited (1)"


def test_docker_list_loading(state):
    view = project(replace(state, mode=DockerList(HOST)))
    assert view.pending
    assert view.body == []
    view = project(replace(state, mode=DockerList(HOST, loading=False)))
    assert view.body == ["No containers."]


def test_env_values_are_masked(state):
    mode = DockerEnv(PARENT, "api", (EnvEntry("API_TOKEN", "s3cret", secret=True),
                                     EnvEntry("TZ", "UTC", in_script=True)), loading=False)
    view = project(replace(state, mode=mode))
    assert "s3cret" not in texts(view.rows)
    assert view.rows[0].cells == ("API_TOKEN", MASK, "")
    assert view.rows[1].cells == ("TZ", "UTC", "script")


def test_env_filter(state):
    mode = DockerEnv(PARENT, "api", (EnvEntry("TZ", "UTC"), EnvEntry("HOME", "/root")),
                     query="tz", loading=False)
    view = project(replace(state, mode=mode))
    assert view.prompt == "Filter: tz"
    assert texts(view.rows)[0] == "TZ"
    assert len(view.rows) == 1


def test_logs_view(state):
    mode = DockerLogs(PARENT, "api", 3, lines=("a", "b", "c"), line_count=500, follow=True,
                      scroll=1, running=False)
    view = project(replace(state, mode=mode))
    assert view.title == "Logs api (follow, last 500, ended)"
    assert view.tail
    assert view.scroll == 1
    assert view.body == ["a", "b", "c"]


def test_stats_view(state):
    waiting = project(replace(state, mode=DockerStats(PARENT, "api", 1)))
    assert waiting.body == ["Waiting for samples..."]
    assert waiting.pending

    stats = ContainerStats(12.5, "100MiB / 1GiB", 9.75, "1kB / 2kB", "0B / 0B", "4")
    mode = DockerStats(PARENT, "api", 1, current=stats, cpu_history=(10.0, 12.5),
                       mem_history=(9.0, 9.75))
    view = project(replace(state, mode=mode))
    cpu, mem = view.charts
    assert (cpu.label, cpu.current, cpu.values) == ("CPU", "12.50%", (10.0, 12.5))
    assert mem.percent == 9.75
    assert "PIDs:      4" in view.body


def test_script_viewer_summary(state):
    spec = DeploymentSpec(image="app:1", name="api", env={"TZ": "UTC"})
    text = "docker run -d --name api -e TZ=UTC app:1\n"
    mode = ScriptViewer(PARENT, "api", "/srv/api/start.sh",
                        DeploymentScript("/srv/api/start.sh", spec, text), loading=False)
    view = project(replace(state, mode=mode))
    assert view.title == "/srv/api/start.sh"
    assert view.body[0] == "Image:    app:1"
    assert "Env:      TZ=UTC" in view.body
    assert view.body[-1] == text.strip()


def test_opaque_script_shows_text_only(state):
    spec = DeploymentSpec(opaque_text="echo hi\n")
    mode = ScriptViewer(PARENT, None, "/x.sh", DeploymentScript("/x.sh", spec, "echo hi\n"),
                        loading=False)
    assert project(replace(state, mode=mode)).body == ["echo hi"]


def test_script_editor_prompt(state):
    spec = DeploymentSpec(image="app:1", env={"TZ": "UTC", "DEBUG": None})
    mode = ScriptEditor(PARENT, "api", "/srv/api/start.sh", spec, input="LANG=C")
    view = project(replace(state, mode=mode))
    assert view.tabs == ("env", "ports", "volumes", "network")
    assert texts(view.rows) == ["TZ=UTC", "DEBUG"]
    assert view.prompt == "Add env: LANG=C"
    assert view.body == ["Image: app:1"]


def test_rsync_view(state):
    mode = RsyncMode(HOST, local_path="/tm", remote_path="/srv", to_host=False, editing=True)
    view = project(replace(state, mode=mode))
    assert view.prompt == "local: /tm"
    values = {f.label: f.value for f in view.fields}
    assert values["Direction"] == "remote -> local"
    assert values["Remote path (web)"] == "/srv"
    assert view.fields[0].editing


def test_file_browser_rows(state):
    entries = (FileEntry("..", "/", True), FileEntry("srv", "/srv", True),
               FileEntry("start.sh", "/start.sh", False, is_script=True, size=42))
    mode = FileBrowser(None, "/home", RsyncMode(HOST), entries=entries, loading=False)
    view = project(replace(state, mode=mode))
    assert view.title == "local:/home"
    assert [r.cells for r in view.rows] == [("..", ""), ("srv/", ""), ("start.sh", "42")]
    assert view.rows[2].style == "marked"
