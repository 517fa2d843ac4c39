"""
HostEditor and its selector modes.

The editor works on a draft copy of a Host. Text fields are edited in a
buffer (field-edit sub-mode) and applied to the draft on Enter/Tab;
structured fields open a selector that works on the same draft and hands
it back on Esc. Nothing reaches the registry until ctrl+s, which cascades
pending tag-pool changes, validates and emits a single PersistRegistry.
"""

import logging
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from .errors import ConfigError
from .events import Command, PersistRegistry
from .model import SHELLS, SSH_FLAGS, Host, toggled
from .modes import (EDITOR_FIELDS, AppState, FlagSelector, HostEditor, HostList,
                    KeySelector, ShellSelector, TagEditor, clamp, edit_buffer, fail, info, navigate)
from .store import validate

logger = logging.getLogger(__name__)

Result = Tuple[AppState, List[Command]]

# Flags that cannot be combined; selecting one drops the others.
EXCLUSIVE_FLAGS = (("-v", "-vv", "-vvv"), ("-4", "-6"))

SELECTOR_KEYS = ("j", "k", "up", "down", "space", "enter", "esc")
KEYBINDINGS: Dict[type, Tuple[str, ...]] = {
    HostEditor: ("j", "k", "up", "down", "tab", "backtab", "enter", "ctrl+s", "esc",
                 "a", "backspace", "space"),
    KeySelector: SELECTOR_KEYS,
    FlagSelector: SELECTOR_KEYS,
    ShellSelector: SELECTOR_KEYS,
    TagEditor: SELECTOR_KEYS + ("a", "n", "i", "x", "backspace"),
}


def field_text(host: Host, name: str) -> str:
    """Display/edit text of one editor field."""
    value = getattr(host, name)
    if name in ("identity_files", "tags"):
        return ", ".join(value)
    if name == "ssh_flags":
        return " ".join(value)
    if value is None:
        return ""
    return str(value)


def _apply_buffer(editor: HostEditor) -> Tuple[HostEditor, str]:
    """Write the buffer into the draft. Returns (editor, error)."""
    name = editor.field_name
    text = editor.buffer.strip()
    if name == "port":
        if not text:
            value = None
        elif text.isdigit():
            value = int(text)
        else:
            return editor, "Port must be a number"
    elif name in ("user", "proxy_jump"):
        value = text or None
    else:
        value = text

    if getattr(editor.draft, name) == value:
        return replace(editor, editing=False, buffer="", error=""), ""
    return replace(editor, draft=editor.draft.with_changes(**{name: value}), editing=False,
                   buffer="", error="", dirty=editor.dirty | {name}), ""


def _move(editor: HostEditor, delta: int) -> HostEditor:
    return replace(editor, field=(editor.field + delta) % len(EDITOR_FIELDS))


def _open_field(state: AppState, editor: HostEditor) -> Result:
    name = editor.field_name
    if name == "identity_files":
        options = tuple(state.available_keys) + tuple(
            k for k in editor.draft.identity_files if k not in state.available_keys)
        if not options:
            return fail(state, "No keys found in ~/.ssh"), []
        return replace(state, mode=KeySelector(editor=editor, options=options)), []
    if name == "ssh_flags":
        return replace(state, mode=FlagSelector(editor=editor)), []
    if name == "shell":
        cursor = SHELLS.index(editor.draft.shell) if editor.draft.shell in SHELLS else 0
        return replace(state, mode=ShellSelector(editor=editor, cursor=cursor)), []
    if name == "tags":
        return replace(state, mode=TagEditor(editor=editor)), []
    buffer = field_text(editor.draft, name)
    return replace(state, mode=replace(editor, editing=True, buffer=buffer, error="")), []


def save_draft(state: AppState, editor: HostEditor) -> Result:
    """Cascade tag-pool edits, validate and emit one persist for everything."""
    if state.persisting:
        return fail(state, "A save is still in progress"), []
    registry = state.registry.copy()
    try:
        for tag in editor.removed_tags:
            if tag in registry.tags:
                registry.remove_tag(tag)
        for tag in editor.new_tags:
            if tag not in registry.tags:
                registry.add_tag(tag)
    except ConfigError as e:
        return fail(state, str(e), mode=replace(editor, error=str(e))), []

    draft = editor.draft.with_changes(alias=editor.draft.alias.strip())
    result = validate(draft, registry, editor.original_alias)
    if not result.ok:
        message = "; ".join(result.errors)
        return fail(state, message, mode=replace(editor, draft=draft, error=message)), []

    registry.upsert_host(draft, editor.original_alias)
    logger.info(f"Saving host {draft.alias}")
    mode = replace(editor, draft=draft, saving=True, error="")
    return info(state, f"Saving {draft.alias}...", mode=mode, persisting=True), \
        [PersistRegistry(registry)]


def editor_key(state: AppState, editor: HostEditor, key: str) -> Result:
    if editor.saving:
        return state, []

    if editor.editing:
        if key == "esc":
            return replace(state, mode=replace(editor, editing=False, buffer="", error="")), []
        if key in ("enter", "tab", "backtab", "ctrl+s"):
            applied, error = _apply_buffer(editor)
            if error:
                return fail(state, error, mode=replace(editor, error=error)), []
            if key == "tab":
                applied = _move(applied, 1)
            elif key == "backtab":
                applied = _move(applied, -1)
            elif key == "ctrl+s":
                return save_draft(state, applied)
            return replace(state, mode=applied), []
        text = edit_buffer(key, editor.buffer)
        if text is None:
            return state, []
        return replace(state, mode=replace(editor, buffer=text)), []

    if key == "esc":
        return info(state, "Edit cancelled", mode=HostList()), []
    if key == "ctrl+s":
        return save_draft(state, editor)
    if key == "enter":
        return _open_field(state, editor)
    if key in ("j", "down", "tab"):
        return replace(state, mode=_move(editor, 1)), []
    if key in ("k", "up", "backtab"):
        return replace(state, mode=_move(editor, -1)), []
    return state, []


# ---------------------------------------------------------------------------
# Selectors
# ---------------------------------------------------------------------------

def _back(state: AppState, editor: HostEditor) -> Result:
    return replace(state, mode=editor), []


def _toggle_field(editor: HostEditor, name: str, value: str) -> HostEditor:
    current = getattr(editor.draft, name)
    updated = toggled(current, value)
    if name == "ssh_flags" and value in updated:
        for group in EXCLUSIVE_FLAGS:
            if value in group:
                updated = tuple(f for f in updated if f == value or f not in group)
    return replace(editor, draft=editor.draft.with_changes(**{name: updated}),
                   dirty=editor.dirty | {name})


def key_selector_key(state: AppState, mode: KeySelector, key: str) -> Result:
    if key == "esc":
        return _back(state, mode.editor)
    if key in ("space", "enter") and mode.options:
        option = mode.options[clamp(mode.cursor, len(mode.options))]
        return replace(state, mode=replace(mode, editor=_toggle_field(mode.editor, "identity_files", option))), []
    moved = navigate(key, mode.cursor, len(mode.options))
    if moved is not None:
        return replace(state, mode=replace(mode, cursor=moved)), []
    return state, []


def flag_options(editor: HostEditor) -> List[str]:
    return SSH_FLAGS + [f for f in editor.draft.ssh_flags if f not in SSH_FLAGS]


def flag_selector_key(state: AppState, mode: FlagSelector, key: str) -> Result:
    options = flag_options(mode.editor)
    if key == "esc":
        return _back(state, mode.editor)
    if key in ("space", "enter"):
        flag = options[clamp(mode.cursor, len(options))]
        return replace(state, mode=replace(mode, editor=_toggle_field(mode.editor, "ssh_flags", flag))), []
    moved = navigate(key, mode.cursor, len(options))
    if moved is not None:
        return replace(state, mode=replace(mode, cursor=moved)), []
    return state, []


def shell_selector_key(state: AppState, mode: ShellSelector, key: str) -> Result:
    if key == "esc":
        return _back(state, mode.editor)
    if key in ("space", "enter"):
        shell = SHELLS[clamp(mode.cursor, len(SHELLS))]
        chosen: Optional[str] = None if mode.editor.draft.shell == shell else shell
        editor = replace(mode.editor, draft=mode.editor.draft.with_changes(shell=chosen),
                         dirty=mode.editor.dirty | {"shell"})
        return replace(state, mode=replace(mode, editor=editor)), []
    moved = navigate(key, mode.cursor, len(SHELLS))
    if moved is not None:
        return replace(state, mode=replace(mode, cursor=moved)), []
    return state, []


def tag_options(state: AppState, editor: HostEditor) -> List[str]:
    """The pool as the editor sees it: pending additions in, pending removals out."""
    pool = list(state.registry.tags) + [t for t in editor.new_tags if t not in state.registry.tags]
    return [t for t in pool if t not in editor.removed_tags]


def tag_editor_key(state: AppState, mode: TagEditor, key: str) -> Result:
    options = tag_options(state, mode.editor)

    if mode.input is not None:
        if key == "esc":
            return replace(state, mode=replace(mode, input=None, error="")), []
        if key == "enter":
            name = mode.input.strip()
            if not name:
                return replace(state, mode=replace(mode, error="Tag name cannot be empty")), []
            if any(c.isspace() for c in name):
                return replace(state, mode=replace(mode, error="Tag names cannot contain spaces")), []
            if name in options:
                return replace(state, mode=replace(mode, error=f"Tag '{name}' already exists")), []
            editor = mode.editor
            editor = replace(editor,
                             new_tags=editor.new_tags + (name,),
                             removed_tags=tuple(t for t in editor.removed_tags if t != name),
                             draft=editor.draft.with_changes(tags=editor.draft.tags + (name,)),
                             dirty=editor.dirty | {"tags"})
            cursor = len(tag_options(state, editor)) - 1
            return replace(state, mode=replace(mode, editor=editor, input=None, error="", cursor=cursor)), []
        text = edit_buffer(key, mode.input)
        if text is None:
            return state, []
        return replace(state, mode=replace(mode, input=text)), []

    if key == "esc":
        return _back(state, mode.editor)
    if key in ("a", "n", "i"):
        return replace(state, mode=replace(mode, input="", error="")), []
    if not options:
        return state, []
    tag = options[clamp(mode.cursor, len(options))]
    if key in ("space", "enter"):
        return replace(state, mode=replace(mode, editor=_toggle_field(mode.editor, "tags", tag))), []
    if key == "x":
        editor = mode.editor
        if tag in editor.new_tags:
            editor = replace(editor, new_tags=tuple(t for t in editor.new_tags if t != tag))
        else:
            editor = replace(editor, removed_tags=editor.removed_tags + (tag,))
        editor = replace(editor, draft=editor.draft.with_changes(
            tags=tuple(t for t in editor.draft.tags if t != tag)), dirty=editor.dirty | {"tags"})
        cursor = clamp(mode.cursor, len(options) - 1)
        return info(state, f"Tag '{tag}' will be removed on save",
                    mode=replace(mode, editor=editor, cursor=cursor)), []
    moved = navigate(key, mode.cursor, len(options))
    if moved is not None:
        return replace(state, mode=replace(mode, cursor=moved)), []
    return state, []


KEY_HANDLERS = {
    HostEditor: editor_key,
    KeySelector: key_selector_key,
    FlagSelector: flag_selector_key,
    ShellSelector: shell_selector_key,
    TagEditor: tag_editor_key,
}
