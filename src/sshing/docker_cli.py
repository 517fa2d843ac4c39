"""
Docker CLI vocabulary: remote command strings and output parsers.

Every function here is pure. Builders return a shell command line to be
executed on the remote host through ssh (see orchestrator.remote_argv);
parsers turn the captured stdout of those commands into model objects.
"""

import json
import logging
import shlex
from typing import Dict, Iterable, List, Optional, Tuple

from .model import Container, ContainerDetails, ContainerStats, EnvEntry, FileEntry, ProcessInfo
from .scripts import is_script_name, is_secret_key

logger = logging.getLogger(__name__)

PS_FORMAT = "{{.ID}}|{{.Names}}|{{.Image}}|{{.Status}}|{{.Ports}}"
STATS_FORMAT = "{{.CPUPerc}}|{{.MemUsage}}|{{.MemPerc}}|{{.NetIO}}|{{.BlockIO}}|{{.PIDs}}"
TOP_FIELDS = "pid,user,%cpu,%mem,comm"
LOG_LINE_STEPS = (100, 500, 1000, 5000, 50000)
SKIP_DIRS = ("node_modules", ".git", "vendor")


def _docker(sudo: bool) -> str:
    return "sudo docker" if sudo else "docker"


def q(value: str) -> str:
    return shlex.quote(value)


def next_log_lines(current: int) -> int:
    if current in LOG_LINE_STEPS:
        return LOG_LINE_STEPS[(LOG_LINE_STEPS.index(current) + 1) % len(LOG_LINE_STEPS)]
    return LOG_LINE_STEPS[0]


# ---------------------------------------------------------------------------
# Command builders
# ---------------------------------------------------------------------------

def ps_cmd(sudo: bool = False) -> str:
    return f"{_docker(sudo)} ps -a --format {q(PS_FORMAT)}"


def action_cmd(action: str, container: Container, sudo: bool = False) -> str:
    """Command line for one DockerList lifecycle action."""
    docker = _docker(sudo)
    name = q(container.name)
    if action in ("start", "stop", "restart"):
        return f"{docker} {action} {name}"
    if action == "pull":
        return f"{docker} pull {q(container.image)}"
    if action == "remove":
        return f"{docker} rm -f {name}"
    if action == "remove_with_image":
        return f"{docker} rm -f -v {name} && {docker} rmi {q(container.image)}"
    raise ValueError(f"Unknown docker action: {action}")


def logs_cmd(name: str, lines: int, follow: bool = False, sudo: bool = False) -> str:
    follow_flag = " -f" if follow else ""
    return f"{_docker(sudo)} logs --tail {int(lines)}{follow_flag} {q(name)} 2>&1"


def stats_cmd(name: str, sudo: bool = False) -> str:
    return f"{_docker(sudo)} stats --no-stream --format {q(STATS_FORMAT)} {q(name)}"


def stats_poll_cmd(name: str, interval: int, sudo: bool = False) -> str:
    """Remote loop printing one stats line every interval seconds."""
    return f"while true; do {stats_cmd(name, sudo)} || exit 1; sleep {int(interval)}; done"


def top_cmd(name: str, sudo: bool = False) -> str:
    return f"{_docker(sudo)} top {q(name)} -o {TOP_FIELDS}"


def inspect_cmd(name: str, sudo: bool = False) -> str:
    return f"{_docker(sudo)} inspect {q(name)}"


def env_cmd(name: str, sudo: bool = False) -> str:
    return f"{_docker(sudo)} exec {q(name)} env"


def find_scripts_cmd(root: str, patterns: Iterable[str]) -> str:
    names = " -o ".join(f"-name {q(p)}" for p in patterns)
    skips = " ".join(f"! -path {q('*/' + d + '/*')}" for d in SKIP_DIRS)
    return f"find {_remote_path(root)} -type f \\( {names} \\) {skips} 2>/dev/null"


def cat_cmd(path: str) -> str:
    return f"cat {_remote_path(path)}"


def write_script_cmd(path: str, text: str, sudo: bool = False) -> str:
    """Heredoc write-back of a script, then make it executable."""
    delimiter = "SSHING_EOF"
    while delimiter in text.splitlines():
        delimiter += "_"
    target = _remote_path(path)
    body = text if text.endswith("\n") else text + "\n"
    if sudo:
        write = f"sudo mkdir -p \"$(dirname {target})\" && sudo tee {target} >/dev/null"
        chmod = f"sudo chmod +x {target}"
    else:
        write = f"mkdir -p \"$(dirname {target})\" && cat > {target}"
        chmod = f"chmod +x {target}"
    return f"{write} << '{delimiter}'\n{body}{delimiter}\n{chmod}"


def run_script_cmd(path: str, sudo: bool = False) -> str:
    target = _remote_path(path)
    runner = "sudo bash" if sudo else "bash"
    return f"cd \"$(dirname {target})\" && {runner} {target}"


def ls_cmd(path: str) -> str:
    """Print the resolved directory, then its `ls -la` lines without the total line."""
    return f"cd {_remote_path(path)} && pwd && ls -la | tail -n +2"


def complete_cmd(prefix: str) -> str:
    """List remote entries starting with prefix, directories suffixed with /."""
    return f"ls -1dp {_remote_path(prefix)}* 2>/dev/null"


def _remote_path(path: str) -> str:
    # Leave a leading ~ unquoted so the remote shell expands it
    if path == "~":
        return "~"
    if path.startswith("~/"):
        return "~/" + q(path[2:]) if path[2:] else "~/"
    return q(path)


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------

def status_of(text: str) -> str:
    """Collapse a `docker ps` status string to Up, Down or Failed."""
    lower = text.strip().lower()
    if lower.startswith("up"):
        return "Failed" if "unhealthy" in lower or "restarting" in lower else "Up"
    if lower.startswith("exited"):
        code = lower.partition("(")[2].partition(")")[0].strip()
        return "Down" if code in ("", "0", "130", "137", "143") else "Failed"
    if "restarting" in lower or "dead" in lower:
        return "Failed"
    return "Down"


def parse_ports(text: str) -> List[str]:
    """'0.0.0.0:8096->8080/tcp, :::8096->8080/tcp' -> ['8096->8080/tcp']"""
    result: List[str] = []
    for entry in (e.strip() for e in text.split(",")):
        if not entry:
            continue
        if "->" in entry:
            left, _, right = entry.partition("->")
            entry = f"{left.rsplit(':', 1)[-1]}->{right}"
        if entry not in result:
            result.append(entry)
    return result


def parse_containers(output: str) -> List[Container]:
    containers = []
    for line in output.splitlines():
        parts = line.strip().split("|")
        if len(parts) < 4:
            continue
        containers.append(Container(
            id=parts[0],
            name=parts[1],
            image=parts[2],
            status=status_of(parts[3]),
            status_text=parts[3],
            ports=parse_ports(parts[4]) if len(parts) > 4 else [],
        ))
    return containers


def _percent(value: str) -> float:
    try:
        return float(value.strip().rstrip("%"))
    except ValueError:
        return 0.0


def parse_stats_line(line: str) -> Optional[ContainerStats]:
    parts = line.strip().split("|")
    if len(parts) < 6:
        return None
    return ContainerStats(
        cpu_percent=_percent(parts[0]),
        mem_usage=parts[1].strip(),
        mem_percent=_percent(parts[2]),
        net_io=parts[3].strip(),
        block_io=parts[4].strip(),
        pids=parts[5].strip(),
    )


def parse_top(output: str) -> List[ProcessInfo]:
    processes = []
    for line in output.splitlines()[1:]:
        parts = line.split()
        if len(parts) >= 5:
            processes.append(ProcessInfo(pid=parts[0], user=parts[1], cpu=parts[2],
                                         mem=parts[3], command=" ".join(parts[4:])))
    return processes


def parse_inspect(output: str) -> Tuple[ContainerDetails, Dict]:
    """Summarize `docker inspect` JSON. Raises ValueError on bad output."""
    data = json.loads(output)
    if isinstance(data, list):
        if not data:
            raise ValueError("docker inspect returned no objects")
        data = data[0]
    state = data.get("State") or {}
    config = data.get("Config") or {}
    host_config = data.get("HostConfig") or {}
    network_settings = data.get("NetworkSettings") or {}
    networks = network_settings.get("Networks") or {}

    ports = []
    for container_port, bindings in (network_settings.get("Ports") or {}).items():
        for binding in bindings or []:
            entry = f"{binding.get('HostPort', '')}->{container_port}"
            if entry not in ports:
                ports.append(entry)
        if not bindings:
            ports.append(container_port)

    mounts = []
    for mount in data.get("Mounts") or []:
        source = mount.get("Source") or mount.get("Name") or ""
        mode = "ro" if mount.get("RW") is False else "rw"
        mounts.append(f"{source}:{mount.get('Destination', '')}:{mode}")

    ip = network_settings.get("IPAddress") or ""
    if not ip:
        ip = next((n.get("IPAddress") for n in networks.values() if n.get("IPAddress")), "")

    details = ContainerDetails(
        id=(data.get("Id") or "")[:12],
        name=(data.get("Name") or "").lstrip("/"),
        image=config.get("Image", ""),
        status=state.get("Status", ""),
        created=data.get("Created", ""),
        started=state.get("StartedAt", ""),
        ip_address=ip,
        networks=sorted(networks),
        ports=ports,
        mounts=mounts,
        restart_policy=(host_config.get("RestartPolicy") or {}).get("Name", ""),
        health=(state.get("Health") or {}).get("Status", ""),
        labels=dict(config.get("Labels") or {}),
        env=list(config.get("Env") or []),
        raw=json.dumps(data, indent=2),
    )
    return details, data


def parse_env(output: str, script_keys: Iterable[str] = ()) -> List[EnvEntry]:
    known = set(script_keys)
    entries = []
    for line in output.splitlines():
        key, eq, value = line.partition("=")
        if not eq or not key:
            continue
        entries.append(EnvEntry(key=key, value=value, secret=is_secret_key(key),
                                in_script=key in known))
    return sorted(entries, key=lambda e: e.key)


def parse_find(output: str) -> List[str]:
    return sorted({line.strip() for line in output.splitlines() if line.strip()})


def join_path(base: str, name: str) -> str:
    if name == "..":
        if base in ("/", ""):
            return "/"
        trimmed = base.rstrip("/")
        if trimmed == "~" or trimmed.endswith("/.."):
            # left for the remote shell to resolve
            return f"{trimmed}/.."
        return trimmed.rsplit("/", 1)[0] or "/"
    return f"{base.rstrip('/')}/{name}"


def sort_entries(base: str, entries: List[FileEntry]) -> List[FileEntry]:
    """Parent entry first, then directories, then files (case-insensitive)."""
    entries = sorted(entries, key=lambda e: (not e.is_dir, e.name.lower()))
    if base not in ("/", ""):
        entries.insert(0, FileEntry(name="..", path=join_path(base, ".."), is_dir=True))
    return entries


def parse_ls(output: str, base: str) -> List[FileEntry]:
    """Parse `ls -la` lines (without the total line) into sorted entries."""
    entries = []
    for line in output.splitlines():
        parts = line.split(None, 8)
        if len(parts) < 9:
            continue
        perms, name = parts[0], parts[8]
        if name in (".", ".."):
            continue
        if perms.startswith("l") and " -> " in name:
            name = name.split(" -> ", 1)[0]
        is_dir = perms.startswith("d")
        try:
            size = int(parts[4])
        except ValueError:
            size = 0
        entries.append(FileEntry(name=name, path=join_path(base, name), is_dir=is_dir,
                                 is_script=not is_dir and is_script_name(name), size=size))
    return sort_entries(base, entries)


def parse_listing(output: str, requested: str) -> List[FileEntry]:
    """Parse `ls_cmd` output. Entry paths are built on the directory the remote resolved."""
    resolved, _, rest = output.partition("\n")
    base = resolved.strip() or requested
    return parse_ls(rest, base)
