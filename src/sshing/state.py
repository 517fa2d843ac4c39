"""
The application state machine.

reduce(state, event) -> (state, [commands]) is the only way the dashboard's
state changes. It is a pure function: it never performs I/O, never reads
the clock and never mutates the state it is given. Everything slow is
requested through a Command; the runtime executes it and feeds the result
back in as an Event.

Dispatch:
  - Key events go to the handler of the active mode (KEY_HANDLERS). While an
    interactive session owns the terminal, keys are ignored.
  - Completion events (persist results, fetch results, stream chunks...)
    go to the module owning the modes that asked for them.
  - Anything a mode does not handle is a no-op, so every (mode, key) pair
    has a defined result.

Mode handlers live in:
  - state.py: HostList, Search, TagFilter, DeleteConfirm, Help
  - state_editor.py: HostEditor and its selectors
  - state_docker.py: Docker list, viewers and deployment scripts
  - state_rsync.py: RsyncMode and FileBrowser
"""

import logging
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Tuple

from . import state_docker, state_editor, state_rsync
from .events import (Command, Event, FetchContainers, Fetched, FetchFailed, Key, PersistFailed,
                     PersistRegistry, ProcessExited, Quit, RegistryPersisted, SpawnSession)
from .model import Host, next_sort
from .modes import (AppState, DeleteConfirm, DockerList, Help, HostEditor, HostList, RsyncMode,
                    Search, Settings, TagFilter, clamp, edit_buffer, fail, info, navigate)
from .store import Registry

logger = logging.getLogger(__name__)

Result = Tuple[AppState, List[Command]]

NAV_KEYS = ("j", "k", "up", "down", "g", "G", "ctrl+d", "ctrl+u", "pgup", "pgdn")

# Documented keys per mode. Keys not listed are no-ops.
KEYBINDINGS: Dict[type, Tuple[str, ...]] = {
    HostList: NAV_KEYS + ("enter", "space", "n", "e", "D", "d", "r", "/", "t", "s", "esc", "?", "q"),
    Help: ("esc", "q", "?", "enter"),
    Search: ("a", "z", "1", "space", "backspace", "up", "down", "enter", "esc"),
    TagFilter: ("j", "k", "up", "down", "space", "c", "enter", "esc"),
    DeleteConfirm: ("y", "Y", "enter", "n", "N", "esc"),
}
KEYBINDINGS.update(state_editor.KEYBINDINGS)
KEYBINDINGS.update(state_docker.KEYBINDINGS)
KEYBINDINGS.update(state_rsync.KEYBINDINGS)


def initial_state(registry: Registry, settings: Optional[Settings] = None,
                  available_keys=()) -> AppState:
    return AppState(registry=registry, settings=settings or Settings(),
                    available_keys=tuple(available_keys))


def reduce(state: AppState, event: Event) -> Result:
    """Compute the next state and the commands to run for one event."""
    if isinstance(event, Key):
        if state.session is not None:
            return state, []
        handler = KEY_HANDLERS.get(type(state.mode))
        if handler is None:
            logger.error(f"No key handler for mode {type(state.mode).__name__}")
            return replace(state, mode=HostList()), []
        return handler(state, state.mode, event.key)

    handler = EVENT_HANDLERS.get(type(event))
    if handler is None:
        return state, []
    return handler(state, event)


# ---------------------------------------------------------------------------
# HostList
# ---------------------------------------------------------------------------

def _require_host(state: AppState) -> Optional[Host]:
    return state.current_host()


def host_list_key(state: AppState, mode: HostList, key: str) -> Result:
    hosts = state.visible_hosts()
    moved = navigate(key, state.selected, len(hosts), state.settings.page_size)
    if moved is not None:
        return replace(state, selected=moved), []

    if key == "q":
        return replace(state, running=False), [Quit()]
    if key == "?":
        return replace(state, mode=Help()), []
    if key == "/":
        return replace(state, mode=Search()), []
    if key == "t":
        return replace(state, mode=TagFilter(selected=state.tag_filter)), []
    if key == "s":
        sort_by = next_sort(state.sort_by)
        return info(state, f"Sorted by {sort_by}", sort_by=sort_by, selected=0), []
    if key == "esc":
        if state.search or state.tag_filter:
            return info(state, "Filters cleared", search="", tag_filter=(), selected=0), []
        return state, []
    if key == "n":
        return replace(state, mode=HostEditor(draft=Host(alias=""), editing=True)), []

    host = _require_host(state)
    if key in ("enter", "space", "e", "D", "d", "r") and host is None:
        return fail(state, "No host selected"), []
    if key in ("enter", "space"):
        return info(state, f"Connecting to {host.alias}...", session=host.alias), [SpawnSession(host)]
    if key == "e":
        return replace(state, mode=HostEditor(draft=host, original_alias=host.alias)), []
    if key == "D":
        if state.persisting:
            return fail(state, "A save is still in progress"), []
        return replace(state, mode=DeleteConfirm(alias=host.alias)), []
    if key == "d":
        mode = DockerList(host=host)
        return info(state, f"Loading containers on {host.alias}...", mode=mode), [FetchContainers(host)]
    if key == "r":
        return replace(state, mode=RsyncMode(host=host, compress=state.settings.rsync_compress)), []
    return state, []


def help_key(state: AppState, mode: Help, key: str) -> Result:
    return replace(state, mode=HostList()), []


def search_key(state: AppState, mode: Search, key: str) -> Result:
    if key == "enter":
        return replace(state, mode=HostList()), []
    if key == "esc":
        return replace(state, mode=HostList(), search="", selected=0), []
    if key in ("up", "down"):
        moved = navigate(key, state.selected, len(state.visible_hosts()))
        return replace(state, selected=moved), []
    text = edit_buffer(key, state.search)
    if text is None:
        return state, []
    return replace(state, search=text, selected=0), []


def tag_filter_key(state: AppState, mode: TagFilter, key: str) -> Result:
    tags = state.registry.tags
    if key == "esc":
        return replace(state, mode=HostList()), []
    if key == "enter":
        selected = tuple(t for t in mode.selected if t in tags)
        message = f"Filtering by {', '.join(selected)}" if selected else "Tag filter cleared"
        return info(state, message, mode=HostList(), tag_filter=selected, selected=0), []
    if key == "c":
        return replace(state, mode=replace(mode, selected=())), []
    if key == "space" and tags:
        tag = tags[clamp(mode.cursor, len(tags))]
        chosen = tuple(t for t in mode.selected if t != tag) if tag in mode.selected \
            else mode.selected + (tag,)
        return replace(state, mode=replace(mode, selected=chosen)), []
    if key in ("j", "k", "up", "down"):
        return replace(state, mode=replace(mode, cursor=navigate(key, mode.cursor, len(tags)))), []
    return state, []


def delete_key(state: AppState, mode: DeleteConfirm, key: str) -> Result:
    if key in ("n", "N", "esc"):
        return info(state, "Delete cancelled", mode=HostList()), []
    if key in ("y", "Y", "enter"):
        registry = state.registry.copy()
        registry.remove_host(mode.alias)
        return info(state, f"Deleting {mode.alias}...", mode=HostList(), persisting=True), \
            [PersistRegistry(registry)]
    return state, []


# ---------------------------------------------------------------------------
# Registry and session events
# ---------------------------------------------------------------------------

def on_persisted(state: AppState, event: RegistryPersisted) -> Result:
    state = replace(state, registry=event.registry, persisting=False)
    mode = state.mode
    if isinstance(mode, HostEditor) and mode.saving:
        state = info(state, f"Saved {mode.draft.alias}", mode=HostList())
        aliases = [h.alias for h in state.visible_hosts()]
        if mode.draft.alias in aliases:
            state = replace(state, selected=aliases.index(mode.draft.alias))
        return state, []
    selected = clamp(state.selected, len(state.visible_hosts()))
    return info(state, "Changes saved", selected=selected), []


def on_persist_failed(state: AppState, event: PersistFailed) -> Result:
    mode = state.mode
    message = f"Save failed: {event.error}"
    if isinstance(mode, HostEditor) and mode.saving:
        # the draft stays editable
        return fail(state, message, persisting=False,
                    mode=replace(mode, saving=False, error=event.error)), []
    return fail(state, message, persisting=False), []


def on_process_exited(state: AppState, event: ProcessExited) -> Result:
    state = replace(state, session=None)
    if event.error:
        return fail(state, f"ssh {event.alias} failed: {event.error}"), []
    if event.code is None or event.code == 255:
        return fail(state, f"Connection to {event.alias} failed"), []
    # the session ran, whatever its last command returned
    if event.code != 0:
        state = fail(state, f"Session on {event.alias} exited with code {event.code}")
    else:
        state = info(state, f"Disconnected from {event.alias}")
    if state.persisting:
        return state, []
    registry = state.registry.copy()
    if not registry.mark_used(event.alias, event.finished_at):
        return state, []
    return replace(state, persisting=True), [PersistRegistry(registry)]


KEY_HANDLERS: Dict[type, Callable] = {
    HostList: host_list_key,
    Help: help_key,
    Search: search_key,
    TagFilter: tag_filter_key,
    DeleteConfirm: delete_key,
}
KEY_HANDLERS.update(state_editor.KEY_HANDLERS)
KEY_HANDLERS.update(state_docker.KEY_HANDLERS)
KEY_HANDLERS.update(state_rsync.KEY_HANDLERS)


def on_fetched(state: AppState, event: Fetched) -> Result:
    if event.kind in state_rsync.FETCH_KINDS:
        return state_rsync.on_fetched(state, event)
    return state_docker.on_fetched(state, event)


def on_fetch_failed(state: AppState, event: FetchFailed) -> Result:
    if event.kind in state_rsync.FETCH_KINDS:
        return state_rsync.on_fetch_failed(state, event)
    return state_docker.on_fetch_failed(state, event)


EVENT_HANDLERS: Dict[type, Callable] = {
    RegistryPersisted: on_persisted,
    PersistFailed: on_persist_failed,
    ProcessExited: on_process_exited,
    Fetched: on_fetched,
    FetchFailed: on_fetch_failed,
}
EVENT_HANDLERS.update(state_docker.EVENT_HANDLERS)
EVENT_HANDLERS.update(state_rsync.EVENT_HANDLERS)
