"""
View model projection.

project(state) turns an AppState into a ViewState: a flat, read-only
description of what the screen shows (title, table, text body, form
fields, input prompt, charts, key hints and status). The curses renderer in
ui.py only ever reads ViewState, never AppState, so everything the user
sees is decided here and can be tested without a terminal.

Conventions:
  - rows carry display strings only; `style` is a hint (up, down, failed,
    marked, dim, new) the renderer maps to colors.
  - `scroll` is a top index, except when `tail` is set (logs), where it
    counts lines up from the newest one.
  - secrets never reach the view: masked env values are replaced here.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from .model import SHELL_OPTIONS, SSH_FLAG_OPTIONS, Host
from .modes import (EDITOR_FIELDS, EDITOR_LABELS, SCRIPT_TABS, STRUCTURED_FIELDS, AppState,
                    DeleteConfirm, DockerEnv, DockerInspect, DockerList, DockerLogs,
                    DockerProcesses, DockerStats, FileBrowser, FlagSelector, Help, HostEditor,
                    HostList, KeySelector, RsyncMode, ScriptBrowser, ScriptEditor, ScriptViewer,
                    Search, ShellSelector, TagEditor, TagFilter)
from .state_docker import editor_items
from .state_editor import field_text, flag_options, tag_options
from .state_rsync import field_value

MASK = "********"
NEVER = "never"


@dataclass
class Row:
    cells: Tuple[str, ...]
    style: str = ""


@dataclass
class FormField:
    label: str
    value: str
    active: bool = False
    editing: bool = False
    dirty: bool = False


@dataclass
class Chart:
    label: str
    values: Tuple[float, ...]
    current: str
    percent: float = 0.0


@dataclass
class ViewState:
    mode: str
    title: str
    columns: Tuple[str, ...] = ()
    rows: List[Row] = field(default_factory=list)
    selected: Optional[int] = None
    body: List[str] = field(default_factory=list)
    scroll: int = 0
    tail: bool = False
    fields: List[FormField] = field(default_factory=list)
    tabs: Tuple[str, ...] = ()
    active_tab: int = 0
    charts: List[Chart] = field(default_factory=list)
    prompt: str = ""
    hints: str = ""
    status: str = ""
    status_error: bool = False
    pending: bool = False
    error: str = ""


HINTS = {
    HostList: "enter connect | n new | e edit | D delete | d docker | r rsync | / search | "
              "t tags | s sort | ? help | q quit",
    Search: "type to filter | enter keep | esc clear",
    TagFilter: "space toggle | c clear | enter apply | esc cancel",
    DeleteConfirm: "y confirm | n cancel",
    Help: "any key to close",
    HostEditor: "j/k move | enter edit | ctrl+s save | esc cancel",
    KeySelector: "space toggle | esc back",
    FlagSelector: "space toggle | esc back",
    ShellSelector: "space select | esc back",
    TagEditor: "space toggle | a new tag | x remove from pool | esc back",
    DockerList: "p pull | r restart | s stop | S start | d rm | X rm+image | l logs | D stats | "
                "T top | I inspect | E env | b scripts | v view | e edit | n new | x run | "
                "R refresh | q back",
    DockerLogs: "j/k scroll | G bottom | f follow | m lines | r refetch | q back",
    DockerStats: "r restart | q back",
    DockerProcesses: "j/k move | r refresh | q back",
    DockerInspect: "j/k scroll | r refresh | q back",
    DockerEnv: "type to filter | up/down scroll | esc clear/back",
    ScriptBrowser: "enter associate | f browse files | r rescan | q back",
    ScriptViewer: "j/k scroll | e edit | x execute | q back",
    ScriptEditor: "tab switch | a add | enter edit | d delete | ctrl+s save | esc discard",
    RsyncMode: "j/k field | i edit | tab complete | r direction | z compress | b browse | "
               "space run | q back",
    FileBrowser: "enter open/select | space select dir | backspace up | esc cancel",
}

HELP_LINES = [
    "Hosts",
    "  j/k, g/G, ctrl+d/ctrl+u   move",
    "  enter / space             connect over ssh",
    "  n / e / D                 new / edit / delete host",
    "  /                         search alias, hostname, user, note and tags",
    "  t                         filter by tags (hosts with any selected tag)",
    "  s                         cycle sort: name, hostname, last-used, user, tags",
    "  esc                       clear search and tag filter",
    "  d                         docker containers on the host",
    "  r                         rsync to or from the host",
    "  q                         quit",
    "",
    "Host editor",
    "  enter edits a field or opens its selector, ctrl+s saves, esc cancels.",
    "  Tags removed from the pool are removed from every host on save.",
    "",
    "Docker",
    "  p/r/s/S pull, restart, stop, start; d/X remove (asks first)",
    "  l logs, D stats, T processes, I inspect, E environment",
    "  b browse scripts, v/e view or edit, n new script, x run script",
]


def _last_used(host: Host) -> str:
    if host.last_used is None:
        return NEVER
    return host.last_used.astimezone().strftime("%Y-%m-%d %H:%M")


def _status_style(status: str) -> str:
    return {"Up": "up", "Down": "down", "Failed": "failed"}.get(status, "")


# ---------------------------------------------------------------------------
# Host modes
# ---------------------------------------------------------------------------

def _host_table(state: AppState) -> ViewState:
    hosts = state.visible_hosts()
    title = f"Hosts ({len(hosts)}/{len(state.registry.hosts)}) sorted by {state.sort_by}"
    if state.tag_filter:
        title += f" [tags: {', '.join(state.tag_filter)}]"
    if state.search:
        title += f" [search: {state.search}]"
    rows = [
        Row((h.alias, h.hostname, h.user or "", str(h.port or ""), ", ".join(h.tags),
             _last_used(h)), style="dim" if h.last_used is None else "")
        for h in hosts
    ]
    return ViewState(mode="HostList", title=title,
                     columns=("Alias", "Hostname", "User", "Port", "Tags", "Last used"),
                     rows=rows, selected=state.selected if hosts else None,
                     pending=state.persisting or state.session is not None)


def project_host_list(state: AppState, mode: HostList) -> ViewState:
    view = _host_table(state)
    if not state.registry.hosts:
        view.body = ["No hosts yet. Press n to add one."]
    return view


def project_search(state: AppState, mode: Search) -> ViewState:
    view = _host_table(state)
    view.mode = "Search"
    view.prompt = f"/{state.search}"
    return view


def project_delete(state: AppState, mode: DeleteConfirm) -> ViewState:
    view = _host_table(state)
    view.mode = "DeleteConfirm"
    view.prompt = f"Delete host '{mode.alias}'? (y/n)"
    return view


def project_tag_filter(state: AppState, mode: TagFilter) -> ViewState:
    tags = state.registry.tags
    rows = [Row(("[x]" if t in mode.selected else "[ ]", t), style="marked" if t in mode.selected else "")
            for t in tags]
    return ViewState(mode="TagFilter", title="Filter by tags", rows=rows,
                     selected=mode.cursor if tags else None,
                     body=[] if tags else ["The tag pool is empty."])


def project_help(state: AppState, mode: Help) -> ViewState:
    return ViewState(mode="Help", title="Help", body=list(HELP_LINES))


def _editor_fields(editor: HostEditor) -> List[FormField]:
    fields = []
    for idx, name in enumerate(EDITOR_FIELDS):
        active = idx == editor.field
        if active and editor.editing:
            value = editor.buffer
        else:
            value = field_text(editor.draft, name)
            if name == "port" and not value:
                value = "(22)"
            if name in STRUCTURED_FIELDS and not value:
                value = "(none)"
        fields.append(FormField(label=EDITOR_LABELS[name], value=value, active=active,
                                editing=active and editor.editing, dirty=name in editor.dirty))
    return fields


def project_editor(state: AppState, mode: HostEditor) -> ViewState:
    title = f"Edit {mode.original_alias}" if mode.original_alias else "New host"
    return ViewState(mode="HostEditor", title=title, fields=_editor_fields(mode),
                     pending=mode.saving, error=mode.error)


def _selector(name: str, title: str, options: List[Tuple[str, str]], chosen, cursor: int) -> ViewState:
    rows = [Row(("[x]" if value in chosen else "[ ]", value, desc),
                style="marked" if value in chosen else "")
            for value, desc in options]
    return ViewState(mode=name, title=title, rows=rows, selected=cursor if rows else None)


def project_key_selector(state: AppState, mode: KeySelector) -> ViewState:
    options = [(k, "") for k in mode.options]
    return _selector("KeySelector", "Identity files", options, mode.editor.draft.identity_files,
                     mode.cursor)


def project_flag_selector(state: AppState, mode: FlagSelector) -> ViewState:
    descriptions = dict(SSH_FLAG_OPTIONS)
    options = [(f, descriptions.get(f, "")) for f in flag_options(mode.editor)]
    return _selector("FlagSelector", "SSH flags", options, mode.editor.draft.ssh_flags, mode.cursor)


def project_shell_selector(state: AppState, mode: ShellSelector) -> ViewState:
    chosen = (mode.editor.draft.shell,) if mode.editor.draft.shell else ()
    return _selector("ShellSelector", "Remote shell", list(SHELL_OPTIONS), chosen, mode.cursor)


def project_tag_editor(state: AppState, mode: TagEditor) -> ViewState:
    editor = mode.editor
    options = tag_options(state, editor)
    rows = []
    for tag in options:
        chosen = tag in editor.draft.tags
        note = "new" if tag in editor.new_tags else ""
        rows.append(Row(("[x]" if chosen else "[ ]", tag, note),
                        style="new" if note else ("marked" if chosen else "")))
    view = ViewState(mode="TagEditor", title="Tags", rows=rows,
                     selected=mode.cursor if rows else None, error=mode.error)
    if editor.removed_tags:
        view.body = [f"Removed on save: {', '.join(editor.removed_tags)}"]
    if mode.input is not None:
        view.prompt = f"New tag: {mode.input}"
    return view


# ---------------------------------------------------------------------------
# Docker modes
# ---------------------------------------------------------------------------

def project_docker_list(state: AppState, mode: DockerList) -> ViewState:
    rows = [
        Row((c.name, c.image, c.status_text or c.status, ", ".join(c.ports),
             mode.scripts.get(c.name, "")), style=_status_style(c.status))
        for c in mode.containers
    ]
    view = ViewState(mode="DockerList", title=f"Containers on {mode.host.alias}",
                     columns=("Name", "Image", "Status", "Ports", "Script"), rows=rows,
                     selected=mode.selected if rows else None,
                     pending=mode.loading or bool(mode.busy), error=mode.error)
    if not rows and not mode.loading:
        view.body = ["No containers."]
    if mode.confirm:
        what = " and its image" if mode.confirm == "remove_with_image" else ""
        view.prompt = f"Remove {mode.confirm_target}{what}? (y/n)"
    return view


def project_logs(state: AppState, mode: DockerLogs) -> ViewState:
    flags = ["follow" if mode.follow else "snapshot", f"last {mode.line_count}"]
    if not mode.running:
        flags.append("ended")
    return ViewState(mode="DockerLogs", title=f"Logs {mode.container} ({', '.join(flags)})",
                     body=list(mode.lines), scroll=mode.scroll, tail=True,
                     pending=mode.running and not mode.lines, error=mode.error)


def project_stats(state: AppState, mode: DockerStats) -> ViewState:
    view = ViewState(mode="DockerStats", title=f"Stats {mode.container}",
                     pending=mode.current is None and not mode.error, error=mode.error)
    stats = mode.current
    if stats is None:
        view.body = ["Waiting for samples..."]
        return view
    view.body = [
        f"Memory:    {stats.mem_usage}",
        f"Net I/O:   {stats.net_io}",
        f"Block I/O: {stats.block_io}",
        f"PIDs:      {stats.pids}",
    ]
    view.charts = [
        Chart("CPU", mode.cpu_history, f"{stats.cpu_percent:.2f}%", stats.cpu_percent),
        Chart("Memory", mode.mem_history, f"{stats.mem_percent:.2f}%", stats.mem_percent),
    ]
    return view


def project_processes(state: AppState, mode: DockerProcesses) -> ViewState:
    rows = [Row((p.pid, p.user, p.cpu, p.mem, p.command)) for p in mode.processes]
    return ViewState(mode="DockerProcesses", title=f"Processes {mode.container}",
                     columns=("PID", "User", "%CPU", "%MEM", "Command"), rows=rows,
                     selected=mode.selected if rows else None, pending=mode.loading,
                     error=mode.error)


def project_inspect(state: AppState, mode: DockerInspect) -> ViewState:
    return ViewState(mode="DockerInspect", title=f"Inspect {mode.container}",
                     body=list(mode.lines), scroll=mode.scroll, pending=mode.loading,
                     error=mode.error)


def project_env(state: AppState, mode: DockerEnv) -> ViewState:
    rows = [Row((e.key, MASK if e.secret else e.value, "script" if e.in_script else ""),
                style="marked" if e.in_script else "")
            for e in mode.visible()]
    return ViewState(mode="DockerEnv", title=f"Environment {mode.container}",
                     columns=("Key", "Value", "Defined in"), rows=rows,
                     selected=mode.scroll if rows else None, prompt=f"Filter: {mode.query}",
                     pending=mode.loading, error=mode.error)


def project_script_browser(state: AppState, mode: ScriptBrowser) -> ViewState:
    current = mode.parent.scripts.get(mode.container) if mode.container else None
    rows = [Row((path,), style="marked" if path == current else "") for path in mode.scripts]
    title = f"Scripts for {mode.container}" if mode.container else "Scripts"
    view = ViewState(mode="ScriptBrowser", title=title, rows=rows,
                     selected=mode.selected if rows else None, pending=mode.loading,
                     error=mode.error)
    if not rows and not mode.loading:
        view.body = ["No scripts found. Press f to browse the filesystem."]
    return view


def spec_summary(spec) -> List[str]:
    lines = [f"Image:    {spec.image}", f"Name:     {spec.name or '-'}",
             f"Network:  {spec.network}", f"Restart:  {spec.restart or '-'}"]
    lines += [f"Port:     {p.to_arg()}" for p in spec.ports]
    lines += [f"Volume:   {v.to_arg()}" for v in spec.volumes]
    lines += [f"Env:      {k}" + ("" if v is None else f"={v}") for k, v in spec.env.items()]
    if spec.extra_args:
        lines.append(f"Options:  {' '.join(spec.extra_args)}")
    if spec.command:
        lines.append(f"Command:  {' '.join(spec.command)}")
    return lines


def project_script_viewer(state: AppState, mode: ScriptViewer) -> ViewState:
    view = ViewState(mode="ScriptViewer", title=mode.path, scroll=mode.scroll,
                     pending=mode.loading, error=mode.error)
    script = mode.script
    if script is None:
        return view
    view.body = script.text.splitlines()
    if script.spec is not None and not script.spec.is_opaque:
        view.body = spec_summary(script.spec) + ["", "-" * 40, ""] + view.body
    return view


def project_script_editor(state: AppState, mode: ScriptEditor) -> ViewState:
    rows = [Row((item,)) for item in editor_items(mode.spec, mode.tab_name)]
    view = ViewState(mode="ScriptEditor", title=f"Edit {mode.path}", tabs=SCRIPT_TABS,
                     active_tab=mode.tab, rows=rows, selected=mode.cursor if rows else None,
                     body=[f"Image: {mode.spec.image}"], pending=mode.saving, error=mode.error)
    if mode.input is not None:
        action = "Add" if mode.input_index is None else "Edit"
        view.prompt = f"{action} {mode.tab_name}: {mode.input}"
    return view


# ---------------------------------------------------------------------------
# Rsync modes
# ---------------------------------------------------------------------------

def project_rsync(state: AppState, mode: RsyncMode) -> ViewState:
    fields = [
        FormField("Local path", mode.local_path, active=mode.field == 0,
                  editing=mode.editing and mode.field == 0),
        FormField(f"Remote path ({mode.host.alias})", mode.remote_path, active=mode.field == 1,
                  editing=mode.editing and mode.field == 1),
        FormField("Direction", "local -> remote" if mode.to_host else "remote -> local"),
        FormField("Compress", "yes" if mode.compress else "no"),
    ]
    view = ViewState(mode="RsyncMode", title=f"rsync with {mode.host.alias}", fields=fields,
                     body=list(mode.output), tail=True, pending=mode.running, error=mode.error)
    if mode.editing:
        view.prompt = f"{mode.field_name}: {field_value(mode)}"
    return view


def project_file_browser(state: AppState, mode: FileBrowser) -> ViewState:
    rows = []
    for entry in mode.entries:
        name = entry.name + "/" if entry.is_dir and entry.name != ".." else entry.name
        size = "" if entry.is_dir else str(entry.size)
        rows.append(Row((name, size), style="marked" if entry.is_script else ""))
    where = mode.host.alias if mode.host else "local"
    return ViewState(mode="FileBrowser", title=f"{where}:{mode.path}", columns=("Name", "Size"),
                     rows=rows, selected=mode.selected if rows else None, pending=mode.loading,
                     error=mode.error)


PROJECTORS: Dict[type, Callable] = {
    HostList: project_host_list,
    Search: project_search,
    DeleteConfirm: project_delete,
    TagFilter: project_tag_filter,
    Help: project_help,
    HostEditor: project_editor,
    KeySelector: project_key_selector,
    FlagSelector: project_flag_selector,
    ShellSelector: project_shell_selector,
    TagEditor: project_tag_editor,
    DockerList: project_docker_list,
    DockerLogs: project_logs,
    DockerStats: project_stats,
    DockerProcesses: project_processes,
    DockerInspect: project_inspect,
    DockerEnv: project_env,
    ScriptBrowser: project_script_browser,
    ScriptViewer: project_script_viewer,
    ScriptEditor: project_script_editor,
    RsyncMode: project_rsync,
    FileBrowser: project_file_browser,
}


def project(state: AppState) -> ViewState:
    """Build the view of the active mode, with status and key hints."""
    view = PROJECTORS[type(state.mode)](state, state.mode)
    view.hints = HINTS[type(state.mode)]
    view.status = state.status
    view.status_error = state.status_error
    return view
