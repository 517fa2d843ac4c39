"""
Docker modes: container list, viewers and deployment scripts.

All of these work against the host DockerList was opened for. Every viewer
keeps the DockerList it came from as its parent and returns to it on
Esc/q. Modes that own a stream (DockerLogs, DockerStats) emit CancelStream
whenever they are left or restarted; chunks from any other stream id are
dropped, so late output from a cancelled stream can never leak into a new
viewer.
"""

import copy
import logging
import posixpath
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from .docker_cli import next_log_lines, parse_stats_line
from .errors import ParseError
from .events import (ActionCompleted, CancelStream, Command, DockerAction, ExecuteScript,
                     FetchContainers, Fetched, FetchFailed, GenerateScript, ListDirectory,
                     ParseScript, RemoteFetch, ScriptExecuted, ScriptSaved, StartStream,
                     StreamChunk, StreamEnded)
from .model import ContainerDetails, DeploymentSpec
from .modes import (SCRIPT_TABS, AppState, DockerEnv, DockerInspect, DockerList, DockerLogs,
                    DockerProcesses, DockerStats, FileBrowser, HostList, ScriptBrowser, ScriptEditor,
                    ScriptViewer, clamp, edit_buffer, fail, info, navigate)
from .scripts import parse_env, parse_port, parse_volume

logger = logging.getLogger(__name__)

Result = Tuple[AppState, List[Command]]

HISTORY = 60
LIFECYCLE_KEYS = {"p": "pull", "r": "restart", "s": "stop", "S": "start"}
CONFIRM_KEYS = {"d": "remove", "X": "remove_with_image"}
VIEW_KEYS = ("l", "D", "T", "I", "E", "v", "e", "n", "x")
ACTION_LABELS = {
    "pull": "Pulling image for",
    "restart": "Restarting",
    "stop": "Stopping",
    "start": "Starting",
    "remove": "Removing",
    "remove_with_image": "Removing (with image)",
}

NAV = ("j", "k", "up", "down", "g", "G", "ctrl+d", "ctrl+u")
KEYBINDINGS: Dict[type, Tuple[str, ...]] = {
    DockerList: NAV + ("p", "r", "s", "S", "d", "X", "l", "D", "T", "I", "E", "b", "v", "e",
                       "n", "x", "R", "esc", "q", "y", "enter"),
    DockerLogs: NAV + ("pgup", "pgdn", "f", "m", "r", "esc", "q"),
    DockerStats: ("r", "esc", "q"),
    DockerProcesses: ("j", "k", "g", "G", "r", "esc", "q"),
    DockerInspect: NAV + ("r", "esc", "q"),
    DockerEnv: ("up", "down", "ctrl+d", "ctrl+u", "pgup", "pgdn", "a", "j", "q", "backspace", "esc"),
    ScriptBrowser: ("j", "k", "g", "G", "enter", "f", "r", "esc", "q"),
    ScriptViewer: NAV + ("e", "x", "esc", "q"),
    ScriptEditor: ("tab", "backtab", "j", "k", "up", "down", "a", "enter", "d", "ctrl+s", "esc",
                   "q", "backspace"),
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def find_list(mode: Any) -> Optional[DockerList]:
    """The DockerList a mode belongs to, however deep."""
    if isinstance(mode, DockerList):
        return mode
    if isinstance(mode, FileBrowser):
        return find_list(mode.return_to)
    parent = getattr(mode, "parent", None)
    return parent if isinstance(parent, DockerList) else None


def with_list(mode: Any, update: Callable[[DockerList], DockerList]) -> Any:
    """Return mode with its DockerList replaced by update(list)."""
    if isinstance(mode, DockerList):
        return update(mode)
    if isinstance(mode, FileBrowser):
        return replace(mode, return_to=with_list(mode.return_to, update))
    if isinstance(getattr(mode, "parent", None), DockerList):
        return replace(mode, parent=update(mode.parent))
    return mode


def _refresh(state: AppState, docker_list: DockerList) -> Result:
    mode = replace(docker_list, loading=True, error="")
    return replace(state, mode=mode), [FetchContainers(docker_list.host)]


def _start_logs(state: AppState, parent: DockerList, container: str, line_count: int,
                follow: bool, cancel: Optional[int] = None) -> Result:
    sid = state.next_stream_id
    mode = DockerLogs(parent=parent, container=container, stream_id=sid,
                      line_count=line_count, follow=follow)
    commands: List[Command] = [CancelStream(cancel)] if cancel is not None else []
    commands.append(StartStream(sid, parent.host, "logs", container, line_count, follow))
    return replace(state, mode=mode, next_stream_id=sid + 1), commands


def _start_stats(state: AppState, parent: DockerList, container: str,
                 cancel: Optional[int] = None) -> Result:
    sid = state.next_stream_id
    commands: List[Command] = [CancelStream(cancel)] if cancel is not None else []
    commands.append(StartStream(sid, parent.host, "stats", container))
    mode = DockerStats(parent=parent, container=container, stream_id=sid)
    return replace(state, mode=mode, next_stream_id=sid + 1), commands


def _execute(state: AppState, parent: DockerList, container: Optional[str], path: str) -> Result:
    if parent.busy:
        return fail(state, f"Wait for {parent.busy} to finish", mode=parent), []
    exists = container is not None and any(c.name == container for c in parent.containers)
    mode = replace(parent, busy="script")
    return info(state, f"Running {path}...", mode=mode), \
        [ExecuteScript(parent.host, path, container, exists)]


def _open_script(state: AppState, parent: DockerList, container: Optional[str], path: str,
                 edit: bool) -> Result:
    mode = ScriptViewer(parent=parent, container=container, path=path, open_editor=edit)
    return replace(state, mode=mode), [ParseScript(parent.host, path)]


def inspect_lines(details: ContainerDetails) -> Tuple[str, ...]:
    lines = [
        f"ID:             {details.id}",
        f"Name:           {details.name}",
        f"Image:          {details.image}",
        f"Status:         {details.status}",
    ]
    if details.health:
        lines.append(f"Health:         {details.health}")
    lines += [
        f"Created:        {details.created}",
        f"Started:        {details.started}",
        f"IP address:     {details.ip_address or '-'}",
        f"Restart policy: {details.restart_policy or '-'}",
        f"Networks:       {', '.join(details.networks) or '-'}",
        "Ports:",
    ]
    lines += [f"  {p}" for p in details.ports] or ["  -"]
    lines.append("Mounts:")
    lines += [f"  {m}" for m in details.mounts] or ["  -"]
    if details.labels:
        lines.append("Labels:")
        lines += [f"  {k}={v}" for k, v in sorted(details.labels.items())]
    if details.raw:
        lines += ["", "Raw:"] + details.raw.splitlines()
    return tuple(lines)


# ---------------------------------------------------------------------------
# DockerList
# ---------------------------------------------------------------------------

def docker_list_key(state: AppState, mode: DockerList, key: str) -> Result:
    container = mode.current

    if mode.confirm:
        cleared = replace(mode, confirm=None, confirm_target="")
        if key in ("y", "Y", "enter"):
            action, name = mode.confirm, mode.confirm_target
            target = next((c for c in mode.containers if c.name == name), None)
            if target is None:
                return fail(state, f"Container {name} no longer exists", mode=cleared), []
            return info(state, f"{ACTION_LABELS[action]} {name}...",
                        mode=replace(cleared, busy=action)), \
                [DockerAction(mode.host, action, target)]
        if key in ("n", "N", "esc"):
            return info(state, "Cancelled", mode=cleared), []
        return state, []

    if key in ("esc", "q"):
        return replace(state, mode=HostList()), []
    if key == "R":
        return _refresh(state, mode)
    moved = navigate(key, mode.selected, len(mode.containers), state.settings.page_size)
    if moved is not None:
        return replace(state, mode=replace(mode, selected=moved)), []
    if key == "b":
        browser = ScriptBrowser(parent=mode, container=container.name if container else None)
        root = state.settings.scripts_root
        return replace(state, mode=browser), [RemoteFetch(mode.host, "scripts", root)]

    if key not in LIFECYCLE_KEYS and key not in CONFIRM_KEYS and key not in VIEW_KEYS:
        return state, []
    if container is None:
        return fail(state, "No container selected"), []
    name = container.name

    if key in LIFECYCLE_KEYS or key in CONFIRM_KEYS or key in ("n", "x"):
        if mode.busy:
            return fail(state, f"Wait for {mode.busy} to finish"), []
    if key in LIFECYCLE_KEYS:
        action = LIFECYCLE_KEYS[key]
        return info(state, f"{ACTION_LABELS[action]} {name}...", mode=replace(mode, busy=action)), \
            [DockerAction(mode.host, action, container)]
    if key in CONFIRM_KEYS:
        return replace(state, mode=replace(mode, confirm=CONFIRM_KEYS[key], confirm_target=name)), []
    if key == "l":
        return _start_logs(state, mode, name, state.settings.default_log_lines, follow=False)
    if key == "D":
        return _start_stats(state, mode, name)
    if key == "T":
        return replace(state, mode=DockerProcesses(parent=mode, container=name)), \
            [RemoteFetch(mode.host, "processes", name)]
    if key == "I":
        return replace(state, mode=DockerInspect(parent=mode, container=name)), \
            [RemoteFetch(mode.host, "inspect", name)]
    if key == "E":
        return replace(state, mode=DockerEnv(parent=mode, container=name)), \
            [RemoteFetch(mode.host, "env", name, script_path=mode.scripts.get(name))]
    if key == "n":
        return info(state, f"Preparing script for {name}...", mode=replace(mode, busy="prepare")), \
            [RemoteFetch(mode.host, "new_script", name)]

    path = mode.scripts.get(name)
    if path is None:
        return fail(state, f"No script associated with {name} (press b to browse)"), []
    if key in ("v", "e"):
        return _open_script(state, mode, name, path, edit=key == "e")
    return _execute(state, mode, name, path)


# ---------------------------------------------------------------------------
# Viewers
# ---------------------------------------------------------------------------

def _scroll_up_from_bottom(key: str, scroll: int, length: int, page: int) -> Optional[int]:
    """Log scrolling where scroll counts lines above the newest one."""
    top = max(0, length - 1)
    if key in ("k", "up"):
        return min(scroll + 1, top)
    if key in ("j", "down"):
        return max(scroll - 1, 0)
    if key in ("ctrl+u", "pgup"):
        return min(scroll + page, top)
    if key in ("ctrl+d", "pgdn"):
        return max(scroll - page, 0)
    if key == "g":
        return top
    if key == "G":
        return 0
    return None


def logs_key(state: AppState, mode: DockerLogs, key: str) -> Result:
    if key in ("esc", "q"):
        return replace(state, mode=mode.parent), [CancelStream(mode.stream_id)]
    if key == "f":
        follow = not mode.follow
        state = info(state, "Following logs" if follow else "Stopped following")
        return _start_logs(state, mode.parent, mode.container, mode.line_count, follow,
                           cancel=mode.stream_id)
    if key == "m":
        lines = next_log_lines(mode.line_count)
        state = info(state, f"Showing last {lines} lines")
        return _start_logs(state, mode.parent, mode.container, lines, mode.follow,
                           cancel=mode.stream_id)
    if key == "r":
        return _start_logs(state, mode.parent, mode.container, mode.line_count, mode.follow,
                           cancel=mode.stream_id)
    scroll = _scroll_up_from_bottom(key, mode.scroll, len(mode.lines), state.settings.page_size)
    if scroll is not None:
        return replace(state, mode=replace(mode, scroll=scroll)), []
    return state, []


def stats_key(state: AppState, mode: DockerStats, key: str) -> Result:
    if key in ("esc", "q"):
        return replace(state, mode=mode.parent), [CancelStream(mode.stream_id)]
    if key == "r":
        return _start_stats(state, mode.parent, mode.container, cancel=mode.stream_id)
    return state, []


def processes_key(state: AppState, mode: DockerProcesses, key: str) -> Result:
    if key in ("esc", "q"):
        return replace(state, mode=mode.parent), []
    if key == "r":
        return replace(state, mode=replace(mode, loading=True, error="")), \
            [RemoteFetch(mode.parent.host, "processes", mode.container)]
    moved = navigate(key, mode.selected, len(mode.processes), state.settings.page_size)
    if moved is not None:
        return replace(state, mode=replace(mode, selected=moved)), []
    return state, []


def inspect_key(state: AppState, mode: DockerInspect, key: str) -> Result:
    if key in ("esc", "q"):
        return replace(state, mode=mode.parent), []
    if key == "r":
        return replace(state, mode=replace(mode, loading=True, error="")), \
            [RemoteFetch(mode.parent.host, "inspect", mode.container)]
    moved = navigate(key, mode.scroll, len(mode.lines), state.settings.page_size)
    if moved is not None:
        return replace(state, mode=replace(mode, scroll=moved)), []
    return state, []


def env_key(state: AppState, mode: DockerEnv, key: str) -> Result:
    if key == "esc":
        if mode.query:
            return replace(state, mode=replace(mode, query="", scroll=0)), []
        return replace(state, mode=mode.parent), []
    if key in ("up", "down", "ctrl+d", "ctrl+u", "pgup", "pgdn"):
        moved = navigate(key, mode.scroll, len(mode.visible()), state.settings.page_size)
        return replace(state, mode=replace(mode, scroll=moved)), []
    text = edit_buffer(key, mode.query)
    if text is None:
        return state, []
    return replace(state, mode=replace(mode, query=text, scroll=0)), []


# ---------------------------------------------------------------------------
# Scripts
# ---------------------------------------------------------------------------

def associate(state: AppState, parent: DockerList, container: Optional[str], path: str) -> Result:
    if container is None:
        return _open_script(state, parent, None, path, edit=False)
    scripts = dict(parent.scripts)
    scripts[container] = path
    return info(state, f"Associated {path} with {container}",
                mode=replace(parent, scripts=scripts)), []


def script_browser_key(state: AppState, mode: ScriptBrowser, key: str) -> Result:
    host = mode.parent.host
    if key in ("esc", "q"):
        return replace(state, mode=mode.parent), []
    if key == "r":
        return replace(state, mode=replace(mode, loading=True, error="")), \
            [RemoteFetch(host, "scripts", state.settings.scripts_root)]
    if key == "f":
        root = state.settings.scripts_root
        browser = FileBrowser(host=host, path=root, return_to=mode, purpose="script")
        return replace(state, mode=browser), [ListDirectory(host, root)]
    if key == "enter":
        if not mode.scripts:
            return fail(state, "No scripts found"), []
        path = mode.scripts[clamp(mode.selected, len(mode.scripts))]
        return associate(state, mode.parent, mode.container, path)
    moved = navigate(key, mode.selected, len(mode.scripts), state.settings.page_size)
    if moved is not None:
        return replace(state, mode=replace(mode, selected=moved)), []
    return state, []


def script_viewer_key(state: AppState, mode: ScriptViewer, key: str) -> Result:
    if key in ("esc", "q"):
        return replace(state, mode=mode.parent), []
    script = mode.script
    if key == "e":
        if script is None or script.spec is None:
            return fail(state, "Script is not loaded yet"), []
        if script.spec.is_opaque:
            return fail(state, f"Cannot edit {mode.path}: {script.error}"), []
        editor = ScriptEditor(parent=mode.parent, container=mode.container, path=mode.path,
                              spec=copy.deepcopy(script.spec))
        return replace(state, mode=editor), []
    if key == "x":
        return _execute(state, mode.parent, mode.container, mode.path)
    length = len(script.text.splitlines()) if script else 0
    moved = navigate(key, mode.scroll, length, state.settings.page_size)
    if moved is not None:
        return replace(state, mode=replace(mode, scroll=moved)), []
    return state, []


def editor_items(spec: DeploymentSpec, tab: str) -> List[str]:
    if tab == "env":
        return [k if v is None else f"{k}={v}" for k, v in spec.env.items()]
    if tab == "ports":
        return [p.to_arg() for p in spec.ports]
    if tab == "volumes":
        return [v.to_arg() for v in spec.volumes]
    return [spec.network]


def _commit_item(spec: DeploymentSpec, tab: str, index: Optional[int], text: str) -> DeploymentSpec:
    """Apply one typed item to a copy of spec. Raises ValueError/ParseError."""
    spec = copy.deepcopy(spec)
    text = text.strip()
    if tab == "network":
        spec.network = text or "default"
        return spec
    if not text:
        raise ValueError("Value cannot be empty")
    if tab == "env":
        key, value = parse_env(text)
        if not key or any(c.isspace() for c in key):
            raise ValueError(f"Invalid variable name '{key}'")
        items = list(spec.env.items())
        if index is None:
            items = [(k, v) for k, v in items if k != key] + [(key, value)]
        else:
            items = [(key, value) if i == index else (k, v)
                     for i, (k, v) in enumerate(items) if i == index or k != key]
        spec.env = dict(items)
        return spec
    target = spec.ports if tab == "ports" else spec.volumes
    item = parse_port(text) if tab == "ports" else parse_volume(text)
    if index is None:
        target.append(item)
    else:
        target[index] = item
    return spec


def _delete_item(spec: DeploymentSpec, tab: str, index: int) -> DeploymentSpec:
    spec = copy.deepcopy(spec)
    if tab == "env":
        keys = list(spec.env)
        if 0 <= index < len(keys):
            del spec.env[keys[index]]
    elif tab == "ports" and 0 <= index < len(spec.ports):
        del spec.ports[index]
    elif tab == "volumes" and 0 <= index < len(spec.volumes):
        del spec.volumes[index]
    elif tab == "network":
        spec.network = "default"
    return spec


def script_editor_key(state: AppState, mode: ScriptEditor, key: str) -> Result:
    if mode.saving:
        return state, []
    tab = mode.tab_name
    items = editor_items(mode.spec, tab)

    if mode.input is not None:
        if key == "esc":
            return replace(state, mode=replace(mode, input=None, input_index=None, error="")), []
        if key == "enter":
            try:
                spec = _commit_item(mode.spec, tab, mode.input_index, mode.input)
            except (ValueError, ParseError) as e:
                return replace(state, mode=replace(mode, error=str(e))), []
            cursor = mode.cursor if mode.input_index is not None else len(editor_items(spec, tab)) - 1
            return replace(state, mode=replace(mode, spec=spec, input=None, input_index=None,
                                               error="", cursor=max(cursor, 0))), []
        text = edit_buffer(key, mode.input)
        if text is None:
            return state, []
        return replace(state, mode=replace(mode, input=text)), []

    if key in ("esc", "q"):
        return info(state, "Script changes discarded", mode=mode.parent), []
    if key == "ctrl+s":
        return info(state, f"Saving {mode.path}...", mode=replace(mode, saving=True, error="")), \
            [GenerateScript(mode.parent.host, mode.path, copy.deepcopy(mode.spec))]
    if key in ("tab", "backtab"):
        step = 1 if key == "tab" else -1
        return replace(state, mode=replace(mode, tab=(mode.tab + step) % len(SCRIPT_TABS),
                                           cursor=0, error="")), []
    if key == "a":
        if tab == "network":
            return replace(state, mode=replace(mode, input=mode.spec.network, input_index=0)), []
        return replace(state, mode=replace(mode, input="", input_index=None)), []
    if key == "enter" and items:
        index = clamp(mode.cursor, len(items))
        return replace(state, mode=replace(mode, input=items[index], input_index=index)), []
    if key == "d" and items:
        spec = _delete_item(mode.spec, tab, clamp(mode.cursor, len(items)))
        cursor = clamp(mode.cursor, len(editor_items(spec, tab)))
        return replace(state, mode=replace(mode, spec=spec, cursor=cursor)), []
    moved = navigate(key, mode.cursor, len(items), state.settings.page_size)
    if moved is not None:
        return replace(state, mode=replace(mode, cursor=moved)), []
    return state, []


# ---------------------------------------------------------------------------
# Completion events
# ---------------------------------------------------------------------------

def _auto_associate(scripts: Dict[str, str], containers, paths: List[str]) -> Dict[str, str]:
    """Keep explicit associations; match the rest by the script's directory name."""
    result = dict(scripts)
    for container in containers:
        if container.name in result:
            continue
        for path in paths:
            if posixpath.basename(posixpath.dirname(path)) == container.name:
                result[container.name] = path
                break
    return result


def on_fetched(state: AppState, event: Fetched) -> Result:
    mode = state.mode
    kind = event.kind

    if kind == "containers":
        docker_list = find_list(mode)
        if docker_list is None or docker_list.host.alias != event.target:
            return state, []
        containers = tuple(event.payload.get("containers", ()))
        scripts = _auto_associate(docker_list.scripts, containers, event.payload.get("scripts", []))

        def update(dl: DockerList) -> DockerList:
            return replace(dl, containers=containers, loading=False, error="", scripts=scripts,
                           selected=clamp(dl.selected, len(containers)))
        message = f"{len(containers)} containers on {event.target}"
        return info(state, message, mode=with_list(mode, update)), []

    if kind == "new_script":
        docker_list = find_list(mode)
        if not isinstance(mode, DockerList) or docker_list.busy != "prepare":
            return state, []
        root = state.settings.scripts_root.rstrip("/") or "/"
        path = f"{root}/{event.target}/start.sh"
        editor = ScriptEditor(parent=replace(mode, busy=""), container=event.target, path=path,
                              spec=event.payload)
        return info(state, f"New script {path}", mode=editor), []

    if kind == "processes" and isinstance(mode, DockerProcesses) and mode.container == event.target:
        processes = tuple(event.payload)
        return replace(state, mode=replace(mode, processes=processes, loading=False,
                                           selected=clamp(mode.selected, len(processes)))), []
    if kind == "inspect" and isinstance(mode, DockerInspect) and mode.container == event.target:
        lines = inspect_lines(event.payload)
        return replace(state, mode=replace(mode, details=event.payload, lines=lines, loading=False,
                                           scroll=clamp(mode.scroll, len(lines)))), []
    if kind == "env" and isinstance(mode, DockerEnv) and mode.container == event.target:
        return replace(state, mode=replace(mode, entries=tuple(event.payload), loading=False)), []
    if kind == "scripts" and isinstance(mode, ScriptBrowser):
        scripts = tuple(event.payload)
        selected = 0
        current = mode.parent.scripts.get(mode.container) if mode.container else None
        if current in scripts:
            selected = scripts.index(current)
        return info(state, f"{len(scripts)} scripts found",
                    mode=replace(mode, scripts=scripts, loading=False, selected=selected)), []
    if kind == "script" and isinstance(mode, ScriptViewer) and mode.path == event.target:
        script = event.payload
        viewer = replace(mode, script=script, loading=False, error=script.error or "")
        if mode.open_editor and script.spec is not None and not script.spec.is_opaque:
            editor = ScriptEditor(parent=mode.parent, container=mode.container, path=mode.path,
                                  spec=copy.deepcopy(script.spec))
            return replace(state, mode=editor), []
        if script.error:
            return fail(state, f"Could not parse {mode.path}: {script.error}",
                        mode=replace(viewer, open_editor=False)), []
        return replace(state, mode=viewer), []
    return state, []


def on_fetch_failed(state: AppState, event: FetchFailed) -> Result:
    mode = state.mode
    message = f"{event.kind} {event.target} failed: {event.error}"

    if event.kind == "containers":
        docker_list = find_list(mode)
        if docker_list is None:
            return fail(state, message), []
        if isinstance(mode, DockerList) and not mode.containers and mode.loading:
            return fail(state, f"Docker on {mode.host.alias}: {event.error}", mode=HostList()), []
        return fail(state, message, mode=with_list(
            mode, lambda dl: replace(dl, loading=False, error=event.error))), []

    if event.kind == "new_script":
        return fail(state, message, mode=with_list(mode, lambda dl: replace(dl, busy=""))), []

    owners = {
        "processes": DockerProcesses,
        "inspect": DockerInspect,
        "env": DockerEnv,
        "scripts": ScriptBrowser,
        "script": ScriptViewer,
    }
    owner = owners.get(event.kind)
    if owner is not None and isinstance(mode, owner):
        return fail(state, message, mode=replace(mode, loading=False, error=event.error)), []
    return fail(state, message), []


def on_action_completed(state: AppState, event: ActionCompleted) -> Result:
    docker_list = find_list(state.mode)
    label = event.action.replace("_", " ")
    if event.ok:
        state = info(state, f"{label.capitalize()} {event.target}: done")
    else:
        state = fail(state, f"{label.capitalize()} {event.target} failed: {event.message}")
    if docker_list is None:
        return state, []
    mode = with_list(state.mode, lambda dl: replace(dl, busy="", loading=True))
    return replace(state, mode=mode), [FetchContainers(docker_list.host)]


def on_stream_chunk(state: AppState, event: StreamChunk) -> Result:
    mode = state.mode
    if isinstance(mode, DockerLogs) and mode.stream_id == event.stream_id:
        lines = (mode.lines + tuple(event.lines))[-mode.line_count:]
        scroll = mode.scroll
        if not mode.at_bottom:
            # keep the viewed lines in place while new ones arrive below
            scroll = min(scroll + len(event.lines), max(0, len(lines) - 1))
        return replace(state, mode=replace(mode, lines=lines, scroll=scroll)), []
    if isinstance(mode, DockerStats) and mode.stream_id == event.stream_id:
        current = mode.current
        cpu, mem = list(mode.cpu_history), list(mode.mem_history)
        for line in event.lines:
            stats = parse_stats_line(line)
            if stats is None:
                continue
            current = stats
            cpu.append(stats.cpu_percent)
            mem.append(stats.mem_percent)
        return replace(state, mode=replace(mode, current=current, error="",
                                           cpu_history=tuple(cpu[-HISTORY:]),
                                           mem_history=tuple(mem[-HISTORY:]))), []
    return state, []


def on_stream_ended(state: AppState, event: StreamEnded) -> Result:
    mode = state.mode
    if isinstance(mode, DockerLogs) and mode.stream_id == event.stream_id:
        error = event.error or (f"docker logs exited with code {event.code}" if event.code else "")
        return replace(state, mode=replace(mode, running=False, error=error)), []
    if isinstance(mode, DockerStats) and mode.stream_id == event.stream_id:
        error = event.error or f"Stats stream ended (code {event.code})"
        return replace(state, mode=replace(mode, error=error)), []
    return state, []


def on_script_saved(state: AppState, event: ScriptSaved) -> Result:
    mode = state.mode
    if not isinstance(mode, ScriptEditor) or mode.path != event.path:
        if event.ok:
            return info(state, f"Saved {event.path}"), []
        return fail(state, f"Saving {event.path} failed: {event.error}"), []
    if not event.ok:
        return fail(state, f"Saving {event.path} failed: {event.error}",
                    mode=replace(mode, saving=False, error=event.error)), []
    parent = mode.parent
    if mode.container:
        scripts = dict(parent.scripts)
        scripts[mode.container] = mode.path
        parent = replace(parent, scripts=scripts)
    return info(state, f"Saved {event.path}", mode=parent), []


def on_script_executed(state: AppState, event: ScriptExecuted) -> Result:
    if event.ok:
        state = info(state, f"Ran {event.path}")
    elif event.step == "run":
        last = event.output.strip().splitlines()[-1:] or [""]
        state = fail(state, f"{event.path} failed: {last[0]}")
    else:
        state = fail(state, f"Aborted {event.path}: {event.step} failed: {event.output.strip()}")
    docker_list = find_list(state.mode)
    if docker_list is None:
        return state, []
    mode = with_list(state.mode, lambda dl: replace(dl, busy="", loading=True))
    return replace(state, mode=mode), [FetchContainers(docker_list.host)]


KEY_HANDLERS = {
    DockerList: docker_list_key,
    DockerLogs: logs_key,
    DockerStats: stats_key,
    DockerProcesses: processes_key,
    DockerInspect: inspect_key,
    DockerEnv: env_key,
    ScriptBrowser: script_browser_key,
    ScriptViewer: script_viewer_key,
    ScriptEditor: script_editor_key,
}

EVENT_HANDLERS = {
    ActionCompleted: on_action_completed,
    StreamChunk: on_stream_chunk,
    StreamEnded: on_stream_ended,
    ScriptSaved: on_script_saved,
    ScriptExecuted: on_script_executed,
}
