"""
Application state and the per-mode data carried by it.

AppState.mode holds exactly one of the mode dataclasses below. Each mode
carries everything its screen needs, including where Esc goes: selector
modes hold the HostEditor they came from, Docker viewers hold the
DockerList they were opened from, FileBrowser holds the mode it returns to.

States are treated as immutable values. Handlers build new ones with
dataclasses.replace() and never modify the state they were given.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from .model import (Container, ContainerDetails, ContainerStats, DeploymentScript, DeploymentSpec,
                    EnvEntry, FileEntry, Host, ProcessInfo, sort_hosts)
from .store import Registry

PAGE = 10

EDITOR_FIELDS = ("alias", "hostname", "user", "port", "identity_files", "proxy_jump",
                 "ssh_flags", "shell", "tags", "note")
EDITOR_LABELS = {
    "alias": "Host Alias",
    "hostname": "Hostname",
    "user": "User",
    "port": "Port",
    "identity_files": "Identity Files",
    "proxy_jump": "ProxyJump",
    "ssh_flags": "SSH Flags",
    "shell": "Shell",
    "tags": "Tags",
    "note": "Note",
}
# Fields edited through a selector instead of a text buffer
STRUCTURED_FIELDS = ("identity_files", "ssh_flags", "shell", "tags")

SCRIPT_TABS = ("env", "ports", "volumes", "network")


@dataclass
class Settings:
    """Values the reducer needs from the app config."""
    default_log_lines: int = 100
    scripts_root: str = "~"
    page_size: int = PAGE
    local_home: str = "~"
    rsync_compress: bool = False


# ---------------------------------------------------------------------------
# Host modes
# ---------------------------------------------------------------------------

@dataclass
class HostList:
    pass


@dataclass
class Help:
    pass


@dataclass
class Search:
    pass


@dataclass
class TagFilter:
    selected: Tuple[str, ...] = ()
    cursor: int = 0


@dataclass
class DeleteConfirm:
    alias: str


@dataclass
class HostEditor:
    draft: Host
    original_alias: Optional[str] = None  # None for a new host
    field: int = 0
    buffer: str = ""
    editing: bool = False
    dirty: FrozenSet[str] = frozenset()
    new_tags: Tuple[str, ...] = ()  # pool additions made in TagEditor
    removed_tags: Tuple[str, ...] = ()  # pool removals, cascaded on save
    saving: bool = False
    error: str = ""

    @property
    def field_name(self) -> str:
        return EDITOR_FIELDS[self.field]


@dataclass
class KeySelector:
    editor: HostEditor
    options: Tuple[str, ...] = ()
    cursor: int = 0


@dataclass
class FlagSelector:
    editor: HostEditor
    cursor: int = 0


@dataclass
class ShellSelector:
    editor: HostEditor
    cursor: int = 0


@dataclass
class TagEditor:
    editor: HostEditor
    cursor: int = 0
    input: Optional[str] = None  # text of a new tag being typed
    error: str = ""


# ---------------------------------------------------------------------------
# Docker modes
# ---------------------------------------------------------------------------

@dataclass
class DockerList:
    host: Host
    containers: Tuple[Container, ...] = ()
    selected: int = 0
    loading: bool = True
    confirm: Optional[str] = None  # remove / remove_with_image awaiting y/n
    confirm_target: str = ""  # name of the container the confirm applies to
    busy: str = ""  # action in flight
    scripts: Dict[str, str] = field(default_factory=dict)  # container name -> script path
    error: str = ""

    @property
    def current(self) -> Optional[Container]:
        if 0 <= self.selected < len(self.containers):
            return self.containers[self.selected]
        return None


@dataclass
class DockerLogs:
    parent: DockerList
    container: str
    stream_id: int
    lines: Tuple[str, ...] = ()
    line_count: int = 100
    follow: bool = False
    scroll: int = 0  # lines scrolled up from the newest line
    running: bool = True
    error: str = ""

    @property
    def at_bottom(self) -> bool:
        return self.scroll == 0


@dataclass
class DockerStats:
    parent: DockerList
    container: str
    stream_id: int
    current: Optional[ContainerStats] = None
    cpu_history: Tuple[float, ...] = ()
    mem_history: Tuple[float, ...] = ()
    error: str = ""


@dataclass
class DockerProcesses:
    parent: DockerList
    container: str
    processes: Tuple[ProcessInfo, ...] = ()
    selected: int = 0
    loading: bool = True
    error: str = ""


@dataclass
class DockerInspect:
    parent: DockerList
    container: str
    details: Optional[ContainerDetails] = None
    lines: Tuple[str, ...] = ()
    scroll: int = 0
    loading: bool = True
    error: str = ""


@dataclass
class DockerEnv:
    parent: DockerList
    container: str
    entries: Tuple[EnvEntry, ...] = ()
    query: str = ""
    scroll: int = 0
    loading: bool = True
    error: str = ""

    def visible(self) -> List[EnvEntry]:
        q = self.query.lower()
        return [e for e in self.entries if q in e.key.lower() or q in e.value.lower()]


@dataclass
class ScriptBrowser:
    parent: DockerList
    container: Optional[str]
    scripts: Tuple[str, ...] = ()
    selected: int = 0
    loading: bool = True
    error: str = ""


@dataclass
class ScriptViewer:
    parent: DockerList
    container: Optional[str]
    path: str
    script: Optional[DeploymentScript] = None
    scroll: int = 0
    loading: bool = True
    open_editor: bool = False  # switch to ScriptEditor once parsed
    error: str = ""


@dataclass
class ScriptEditor:
    parent: DockerList
    container: Optional[str]
    path: str
    spec: DeploymentSpec
    tab: int = 0
    cursor: int = 0
    input: Optional[str] = None  # item text being typed
    input_index: Optional[int] = None  # None when adding a new item
    saving: bool = False
    error: str = ""

    @property
    def tab_name(self) -> str:
        return SCRIPT_TABS[self.tab]


# ---------------------------------------------------------------------------
# Rsync + file browser
# ---------------------------------------------------------------------------

@dataclass
class RsyncMode:
    host: Host
    local_path: str = ""
    remote_path: str = ""
    to_host: bool = True
    compress: bool = False
    field: int = 0  # 0 local, 1 remote
    editing: bool = False
    running: bool = False
    output: Tuple[str, ...] = ()
    error: str = ""

    @property
    def field_name(self) -> str:
        return "local" if self.field == 0 else "remote"


@dataclass
class FileBrowser:
    host: Optional[Host]  # None browses the local filesystem
    path: str
    return_to: Any  # RsyncMode or ScriptBrowser
    purpose: str = "rsync"  # rsync, script
    entries: Tuple[FileEntry, ...] = ()
    selected: int = 0
    loading: bool = True
    error: str = ""

    @property
    def current(self) -> Optional[FileEntry]:
        if 0 <= self.selected < len(self.entries):
            return self.entries[self.selected]
        return None


MODE_TYPES = (
    HostList, HostEditor, KeySelector, FlagSelector, ShellSelector, TagEditor, DeleteConfirm,
    Search, TagFilter, Help, DockerList, DockerLogs, DockerStats, DockerProcesses, DockerInspect,
    DockerEnv, ScriptBrowser, ScriptViewer, ScriptEditor, RsyncMode, FileBrowser,
)


# ---------------------------------------------------------------------------
# AppState
# ---------------------------------------------------------------------------

@dataclass
class AppState:
    registry: Registry = field(default_factory=Registry)
    mode: Any = field(default_factory=HostList)
    sort_by: str = "name"
    search: str = ""
    tag_filter: Tuple[str, ...] = ()
    selected: int = 0
    status: str = ""
    status_error: bool = False
    session: Optional[str] = None  # alias while an interactive session owns the terminal
    persisting: bool = False
    next_stream_id: int = 1
    available_keys: Tuple[str, ...] = ()
    settings: Settings = field(default_factory=Settings)
    running: bool = True

    def visible_hosts(self) -> List[Host]:
        hosts = [h for h in self.registry.hosts
                 if h.matches_search(self.search) and h.has_any_tag(self.tag_filter)]
        return sort_hosts(hosts, self.sort_by)

    def current_host(self) -> Optional[Host]:
        hosts = self.visible_hosts()
        if 0 <= self.selected < len(hosts):
            return hosts[self.selected]
        return None


# ---------------------------------------------------------------------------
# Helpers shared by the handlers
# ---------------------------------------------------------------------------

def info(state: AppState, message: str, **changes) -> AppState:
    return replace(state, status=message, status_error=False, **changes)


def fail(state: AppState, message: str, **changes) -> AppState:
    return replace(state, status=message, status_error=True, **changes)


def clamp(index: int, length: int) -> int:
    if length <= 0:
        return 0
    return max(0, min(index, length - 1))


def navigate(key: str, index: int, length: int, page: int = PAGE) -> Optional[int]:
    """Common list movement keys. Returns the new index or None if key is not one."""
    if key in ("j", "down"):
        return clamp(index + 1, length)
    if key in ("k", "up"):
        return clamp(index - 1, length)
    if key in ("g", "home"):
        return 0
    if key in ("G", "end"):
        return clamp(length - 1, length)
    if key in ("ctrl+d", "pgdn"):
        return clamp(index + page, length)
    if key in ("ctrl+u", "pgup"):
        return clamp(index - page, length)
    return None


def edit_buffer(key: str, buffer: str) -> Optional[str]:
    """Apply a text-editing key. Returns None if key does not edit text."""
    if key == "backspace":
        return buffer[:-1]
    if key == "space":
        return buffer + " "
    if len(key) == 1 and key.isprintable():
        return buffer + key
    return None
