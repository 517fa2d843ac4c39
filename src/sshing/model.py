"""
Data models for sshing.

This module defines the dataclasses shared by the store, the script engine,
the reducer and the view projection.

Data Classes:
  - Host: One SSH host entry (connection fields + metadata fields)
  - Container: Live snapshot row from `docker ps -a` on a remote host
  - PortMapping / VolumeMount: Pieces of a deployment spec
  - DeploymentSpec: Structured form of a deployment script
  - DeploymentScript: A remote script path plus its parsed spec
  - ContainerStats / ProcessInfo / ContainerDetails: Viewer payloads
  - EnvEntry: One environment variable read from a running container
  - FileEntry: One row of a directory listing (local or remote)

Key Points:
  - Host is frozen; the reducer replaces hosts instead of mutating them so
    drafts can never leak into the registry by aliasing.
  - Set-like host fields (identity files, flags, tags) are tuples that keep
    insertion order and never contain duplicates.
  - Container records are never persisted.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

DEFAULT_SSH_PORT = 22

# Fixed vocabulary of flags a host may carry, with a short description each.
SSH_FLAG_OPTIONS: List[Tuple[str, str]] = [
    ("-t", "Force pseudo-terminal allocation"),
    ("-A", "Enable agent forwarding"),
    ("-X", "Enable X11 forwarding"),
    ("-Y", "Enable trusted X11 forwarding"),
    ("-C", "Enable compression"),
    ("-v", "Verbose mode"),
    ("-vv", "More verbose"),
    ("-vvv", "Maximum verbosity"),
    ("-N", "Do not execute a remote command"),
    ("-f", "Go to background before command execution"),
    ("-q", "Quiet mode"),
    ("-4", "Use IPv4 addresses only"),
    ("-6", "Use IPv6 addresses only"),
]
SSH_FLAGS = [flag for flag, _ in SSH_FLAG_OPTIONS]

# Flags that are safe on non-interactive, captured ssh invocations.
BATCH_SAFE_FLAGS = ("-A", "-C", "-4", "-6", "-q", "-X", "-Y")

SHELL_OPTIONS: List[Tuple[str, str]] = [
    ("bash", "Bourne Again Shell"),
    ("zsh", "Z Shell"),
    ("fish", "Friendly Interactive Shell"),
    ("sh", "POSIX shell"),
    ("ksh", "Korn Shell"),
    ("tcsh", "TENEX C Shell"),
    ("dash", "Debian Almquist Shell"),
]
SHELLS = [name for name, _ in SHELL_OPTIONS]

SORT_ORDER = ("name", "hostname", "last-used", "user", "tags")


@dataclass(frozen=True)
class Host:
    alias: str
    hostname: str = ""
    user: Optional[str] = None
    port: Optional[int] = None
    identity_files: Tuple[str, ...] = ()
    proxy_jump: Optional[str] = None
    ssh_flags: Tuple[str, ...] = ()
    shell: Optional[str] = None
    tags: Tuple[str, ...] = ()
    note: str = ""
    last_used: Optional[datetime] = None

    @property
    def effective_port(self) -> int:
        return self.port if self.port is not None else DEFAULT_SSH_PORT

    def with_changes(self, **changes) -> "Host":
        return replace(self, **changes)

    def matches_search(self, query: str) -> bool:
        """Case-insensitive match over alias, hostname, user, note and tags."""
        if not query:
            return True
        q = query.lower()
        haystack = [self.alias, self.hostname, self.user or "", self.note]
        haystack.extend(self.tags)
        return any(q in value.lower() for value in haystack)

    def has_any_tag(self, tags) -> bool:
        if not tags:
            return True
        return any(t in self.tags for t in tags)


def sort_hosts(hosts: List[Host], sort_by: str) -> List[Host]:
    """Return hosts ordered by one of SORT_ORDER."""
    if sort_by == "hostname":
        return sorted(hosts, key=lambda h: (h.hostname.lower(), h.alias.lower()))
    if sort_by == "last-used":
        # Most recent first, never-used hosts last (by alias)
        used = sorted((h for h in hosts if h.last_used), key=lambda h: h.last_used, reverse=True)
        unused = sorted((h for h in hosts if not h.last_used), key=lambda h: h.alias.lower())
        return used + unused
    if sort_by == "user":
        return sorted(hosts, key=lambda h: ((h.user or "").lower(), h.alias.lower()))
    if sort_by == "tags":
        return sorted(hosts, key=lambda h: (not h.tags, ",".join(h.tags).lower(), h.alias.lower()))
    return sorted(hosts, key=lambda h: h.alias.lower())


def next_sort(sort_by: str) -> str:
    idx = SORT_ORDER.index(sort_by) if sort_by in SORT_ORDER else -1
    return SORT_ORDER[(idx + 1) % len(SORT_ORDER)]


def toggled(items: Tuple[str, ...], value: str) -> Tuple[str, ...]:
    """Flip membership of value, keeping the order of the remaining items."""
    if value in items:
        return tuple(i for i in items if i != value)
    return items + (value,)


@dataclass
class Container:
    id: str
    name: str
    image: str
    status: str  # Up, Down, Failed
    status_text: str = ""
    ports: List[str] = field(default_factory=list)


@dataclass
class PortMapping:
    host_port: str
    container_port: str
    protocol: str = "tcp"
    host_ip: str = ""

    def to_arg(self) -> str:
        if self.host_ip:
            spec = f"{self.host_ip}:{self.host_port}:{self.container_port}"
        elif self.host_port:
            spec = f"{self.host_port}:{self.container_port}"
        else:
            spec = self.container_port
        if self.protocol and self.protocol != "tcp":
            spec = f"{spec}/{self.protocol}"
        return spec


@dataclass
class VolumeMount:
    host_path: str
    container_path: str
    mode: str = ""

    def to_arg(self) -> str:
        spec = f"{self.host_path}:{self.container_path}" if self.host_path else self.container_path
        if self.mode:
            spec = f"{spec}:{self.mode}"
        return spec


@dataclass
class DeploymentSpec:
    image: str = ""
    env: Dict[str, Optional[str]] = field(default_factory=dict)
    ports: List[PortMapping] = field(default_factory=list)
    volumes: List[VolumeMount] = field(default_factory=list)
    network: str = "default"
    name: Optional[str] = None
    restart: Optional[str] = None
    detach: bool = False
    subcommand: str = "run"
    extra_args: List[str] = field(default_factory=list)
    command: List[str] = field(default_factory=list)
    # Set when the script could not be parsed; generate() returns it verbatim.
    opaque_text: Optional[str] = None

    @property
    def is_opaque(self) -> bool:
        return self.opaque_text is not None


@dataclass
class DeploymentScript:
    path: str
    spec: Optional[DeploymentSpec] = None
    text: str = ""
    error: Optional[str] = None


@dataclass
class ContainerStats:
    cpu_percent: float = 0.0
    mem_usage: str = "--"
    mem_percent: float = 0.0
    net_io: str = "--"
    block_io: str = "--"
    pids: str = "--"


@dataclass
class ProcessInfo:
    pid: str
    user: str
    cpu: str
    mem: str
    command: str


@dataclass
class ContainerDetails:
    id: str = ""
    name: str = ""
    image: str = ""
    status: str = ""
    created: str = ""
    started: str = ""
    ip_address: str = ""
    networks: List[str] = field(default_factory=list)
    ports: List[str] = field(default_factory=list)
    mounts: List[str] = field(default_factory=list)
    restart_policy: str = ""
    health: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    env: List[str] = field(default_factory=list)
    raw: str = ""


@dataclass
class EnvEntry:
    key: str
    value: str
    secret: bool = False
    in_script: bool = False


@dataclass
class FileEntry:
    name: str
    path: str
    is_dir: bool
    is_script: bool = False
    size: int = 0
