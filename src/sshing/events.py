"""
Event and command vocabulary of the reducer.

Events flow into reduce(); commands flow out of it and are executed by the
runtime, whose results come back as events. Both are plain dataclasses so
reducer tests can compare them directly.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional

from .model import DeploymentSpec, Host
from .store import Registry


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@dataclass
class Event:
    pass


@dataclass
class Key(Event):
    """A key press, normalized by the UI (e.g. 'j', 'enter', 'ctrl+d')."""
    key: str


@dataclass
class RegistryPersisted(Event):
    registry: Registry


@dataclass
class PersistFailed(Event):
    error: str


@dataclass
class ProcessExited(Event):
    """The interactive ssh session ended."""
    alias: str
    code: Optional[int]
    finished_at: datetime
    error: str = ""


@dataclass
class Fetched(Event):
    """A remote or local read completed. kind names what was read."""
    kind: str
    target: str
    payload: Any


@dataclass
class FetchFailed(Event):
    kind: str
    target: str
    error: str


@dataclass
class ActionCompleted(Event):
    action: str
    target: str
    ok: bool
    message: str = ""


@dataclass
class StreamChunk(Event):
    stream_id: int
    lines: List[str]


@dataclass
class StreamEnded(Event):
    stream_id: int
    code: Optional[int]
    error: str = ""


@dataclass
class ScriptSaved(Event):
    path: str
    ok: bool
    error: str = ""


@dataclass
class ScriptExecuted(Event):
    path: str
    ok: bool
    step: str  # stop, remove, run
    output: str = ""


@dataclass
class RsyncFinished(Event):
    ok: bool
    output: str = ""


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@dataclass
class Command:
    pass


@dataclass
class PersistRegistry(Command):
    registry: Registry


@dataclass
class SpawnSession(Command):
    """Hand the terminal to an interactive ssh session."""
    host: Host


@dataclass
class FetchContainers(Command):
    host: Host


@dataclass
class DockerAction(Command):
    host: Host
    action: str
    container: Any  # model.Container


@dataclass
class RemoteFetch(Command):
    """Run a read-only remote command and parse its output by kind."""
    host: Host
    kind: str  # processes, inspect, env, scripts
    target: str
    script_path: Optional[str] = None


@dataclass
class StartStream(Command):
    stream_id: int
    host: Host
    kind: str  # logs, stats
    target: str
    lines: int = 0
    follow: bool = False


@dataclass
class CancelStream(Command):
    stream_id: int


@dataclass
class ParseScript(Command):
    host: Host
    path: str


@dataclass
class GenerateScript(Command):
    host: Host
    path: str
    spec: DeploymentSpec


@dataclass
class ExecuteScript(Command):
    host: Host
    path: str
    container_name: Optional[str]
    container_exists: bool


@dataclass
class ListDirectory(Command):
    host: Optional[Host]  # None for the local filesystem
    path: str


@dataclass
class CompletePath(Command):
    host: Optional[Host]
    text: str
    field: str


@dataclass
class RunRsync(Command):
    host: Host
    local_path: str
    remote_path: str
    to_host: bool
    compress: bool


@dataclass
class Quit(Command):
    pass
