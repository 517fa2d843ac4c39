"""
Rsync mode and the file browser.

RsyncMode edits a local and a remote path, a direction and a compression
flag, then hands the transfer to the runtime. FileBrowser walks either the
local filesystem (host None) or a remote one over ssh; it is also used by
the script browser to pick a deployment script by hand.
"""

import logging
import posixpath
from dataclasses import replace
from typing import Dict, List, Tuple

from . import state_docker
from .events import (Command, CompletePath, Fetched, FetchFailed, ListDirectory, RsyncFinished,
                     RunRsync)
from .docker_cli import join_path
from .modes import (AppState, FileBrowser, HostList, RsyncMode, ScriptBrowser, edit_buffer, fail,
                    info, navigate)

logger = logging.getLogger(__name__)

Result = Tuple[AppState, List[Command]]

FETCH_KINDS = ("listing", "completion")
OUTPUT_LINES = 200

KEYBINDINGS: Dict[type, Tuple[str, ...]] = {
    RsyncMode: ("j", "k", "up", "down", "i", "enter", "r", "z", "b", "space", "esc", "q",
                "tab", "backspace"),
    FileBrowser: ("j", "k", "g", "G", "ctrl+d", "ctrl+u", "enter", "space", "backspace", "esc", "q"),
}


def field_value(mode: RsyncMode) -> str:
    return mode.local_path if mode.field == 0 else mode.remote_path


def _set_field(mode: RsyncMode, value: str, field_name: str = "") -> RsyncMode:
    if (field_name or mode.field_name) == "local":
        return replace(mode, local_path=value)
    return replace(mode, remote_path=value)


def _browse_start(state: AppState, mode: RsyncMode) -> str:
    value = field_value(mode).strip()
    if not value:
        return state.settings.local_home if mode.field == 0 else "~"
    if value.endswith("/"):
        return value.rstrip("/") or "/"
    return posixpath.dirname(value) or value


def rsync_key(state: AppState, mode: RsyncMode, key: str) -> Result:
    if mode.running:
        return state, []

    if mode.editing:
        if key in ("enter", "esc"):
            return replace(state, mode=replace(mode, editing=False)), []
        if key == "tab":
            host = mode.host if mode.field == 1 else None
            return state, [CompletePath(host, field_value(mode), mode.field_name)]
        text = edit_buffer(key, field_value(mode))
        if text is None:
            return state, []
        return replace(state, mode=_set_field(mode, text)), []

    if key in ("esc", "q"):
        return replace(state, mode=HostList()), []
    if key in ("j", "k", "up", "down"):
        return replace(state, mode=replace(mode, field=1 - mode.field)), []
    if key in ("i", "enter"):
        return replace(state, mode=replace(mode, editing=True, error="")), []
    if key == "r":
        to_host = not mode.to_host
        direction = "local -> remote" if to_host else "remote -> local"
        return info(state, f"Direction: {direction}", mode=replace(mode, to_host=to_host)), []
    if key == "z":
        compress = not mode.compress
        return info(state, f"Compression {'on' if compress else 'off'}",
                    mode=replace(mode, compress=compress)), []
    if key == "b":
        host = mode.host if mode.field == 1 else None
        path = _browse_start(state, mode)
        browser = FileBrowser(host=host, path=path, return_to=mode, purpose="rsync")
        return replace(state, mode=browser), [ListDirectory(host, path)]
    if key == "space":
        local, remote = mode.local_path.strip(), mode.remote_path.strip()
        if not local or not remote:
            return fail(state, "Both local and remote paths are required",
                        mode=replace(mode, error="Both paths are required")), []
        src, dst = (local, f"{mode.host.alias}:{remote}") if mode.to_host \
            else (f"{mode.host.alias}:{remote}", local)
        logger.info(f"rsync {src} -> {dst}")
        return info(state, f"Syncing {src} -> {dst}...",
                    mode=replace(mode, running=True, output=(), error="")), \
            [RunRsync(mode.host, local, remote, mode.to_host, mode.compress)]
    return state, []


# ---------------------------------------------------------------------------
# FileBrowser
# ---------------------------------------------------------------------------

def _open(state: AppState, mode: FileBrowser, path: str) -> Result:
    browser = replace(mode, path=path, entries=(), selected=0, loading=True, error="")
    return replace(state, mode=browser), [ListDirectory(mode.host, path)]


def _choose(state: AppState, mode: FileBrowser, path: str, is_dir: bool) -> Result:
    target = mode.return_to
    if isinstance(target, RsyncMode):
        field_name = "local" if mode.host is None else "remote"
        return info(state, f"Selected {path}", mode=_set_field(target, path, field_name)), []
    if isinstance(target, ScriptBrowser):
        if is_dir:
            return fail(state, "Select a script file"), []
        return state_docker.associate(state, target.parent, target.container, path)
    return replace(state, mode=target), []


def file_browser_key(state: AppState, mode: FileBrowser, key: str) -> Result:
    if key in ("esc", "q"):
        return replace(state, mode=mode.return_to), []
    if key == "backspace":
        parent = next((e.path for e in mode.entries if e.name == ".."), None)
        return _open(state, mode, parent or join_path(mode.path, ".."))
    if key == "space":
        return _choose(state, mode, mode.path, is_dir=True)
    if key == "enter":
        entry = mode.current
        if entry is None:
            return state, []
        if entry.is_dir:
            return _open(state, mode, entry.path)
        return _choose(state, mode, entry.path, is_dir=False)
    moved = navigate(key, mode.selected, len(mode.entries), state.settings.page_size)
    if moved is not None:
        return replace(state, mode=replace(mode, selected=moved)), []
    return state, []


# ---------------------------------------------------------------------------
# Completion events
# ---------------------------------------------------------------------------

def on_fetched(state: AppState, event: Fetched) -> Result:
    mode = state.mode
    if event.kind == "listing":
        if isinstance(mode, FileBrowser) and mode.path == event.target:
            entries = tuple(event.payload)
            return replace(state, mode=replace(mode, entries=entries, loading=False,
                                               selected=0, error="")), []
        return state, []

    # completion: payload carries the prefix it was computed for
    if not isinstance(mode, RsyncMode) or not mode.editing or mode.field_name != event.target:
        return state, []
    payload = event.payload
    if field_value(mode) != payload["prefix"]:
        return state, []
    candidates = payload["candidates"]
    if not candidates:
        return fail(state, "No completions"), []
    mode = _set_field(mode, payload["text"])
    if len(candidates) > 1:
        shown = ", ".join(posixpath.basename(c.rstrip("/")) for c in candidates[:8])
        return info(state, f"{len(candidates)} matches: {shown}", mode=mode), []
    return replace(state, mode=mode), []


def on_fetch_failed(state: AppState, event: FetchFailed) -> Result:
    mode = state.mode
    if event.kind == "listing" and isinstance(mode, FileBrowser) and mode.path == event.target:
        return fail(state, f"Cannot list {event.target}: {event.error}",
                    mode=replace(mode, loading=False, error=event.error)), []
    return fail(state, f"{event.kind} failed: {event.error}"), []


def on_rsync_finished(state: AppState, event: RsyncFinished) -> Result:
    mode = state.mode
    if not isinstance(mode, RsyncMode):
        return (info(state, "rsync finished") if event.ok else fail(state, "rsync failed")), []
    output = tuple(event.output.splitlines()[-OUTPUT_LINES:])
    if event.ok:
        return info(state, "rsync finished", mode=replace(mode, running=False, output=output)), []
    last = output[-1] if output else "rsync failed"
    return fail(state, f"rsync failed: {last}",
                mode=replace(mode, running=False, output=output, error=last)), []


KEY_HANDLERS = {
    RsyncMode: rsync_key,
    FileBrowser: file_browser_key,
}

EVENT_HANDLERS = {
    RsyncFinished: on_rsync_finished,
}
