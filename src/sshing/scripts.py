"""
Deployment script engine.

A deployment script is a small shell script whose real content is one
`docker run` (or `docker create`) invocation. This module reads such a
script into a DeploymentSpec and writes a spec back out as a canonical
script, so containers can be edited as structured data.

Parsing:
  - Backslash line continuations are joined into logical lines
  - Plain `NAME=value` / `export NAME=value` assignments are collected and
    substituted into `$NAME` / `${NAME}` references in --name and the image
  - The first `docker run|create` (also `docker container run|create`,
    optionally behind `sudo`) is the launch command
  - -e/--env, -p/--publish, -v/--volume, --network/--net, --name,
    --restart and -d are read into fields; every other option is kept
    verbatim in extra_args, arguments after the image go to command

Generation:
  - Shebang, NAME/IMAGE variables, a stop/remove-if-exists guard
  - The docker command with env sorted by key and ports/volumes in
    insertion order, one option per continuation line

parse(generate(spec)) == spec holds for every spec the editor can build.
Scripts that cannot be parsed are loaded as opaque specs that regenerate
to their original text.
"""

import logging
import re
import shlex
from typing import Any, Dict, List, Optional, Tuple

from .errors import ParseError
from .model import DeploymentScript, DeploymentSpec, PortMapping, VolumeMount

logger = logging.getLogger(__name__)

SECRET_MARKERS = ("PASSWORD", "SECRET", "TOKEN", "KEY", "CREDENTIAL", "PRIVATE")

_ASSIGN_RE = re.compile(r'^([A-Za-z_][A-Za-z0-9_]*)=(.*)$', re.DOTALL)
_VAR_RE = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)')
_SAFE_RE = re.compile(r'^[A-Za-z0-9_@%+=:,./-]+$')

# docker run options that take a separate value argument
_VALUE_OPTIONS = {
    "-a", "-c", "-h", "-l", "-m", "-u", "-w",
    "--add-host", "--annotation", "--attach", "--blkio-weight", "--blkio-weight-device",
    "--cap-add", "--cap-drop", "--cgroup-parent", "--cgroupns", "--cidfile",
    "--cpu-period", "--cpu-quota", "--cpu-rt-period", "--cpu-rt-runtime", "--cpu-shares",
    "--cpus", "--cpuset-cpus", "--cpuset-mems", "--device", "--device-cgroup-rule",
    "--device-read-bps", "--device-read-iops", "--device-write-bps", "--device-write-iops",
    "--dns", "--dns-option", "--dns-search", "--domainname", "--entrypoint", "--env-file",
    "--expose", "--gpus", "--group-add", "--health-cmd", "--health-interval",
    "--health-retries", "--health-start-period", "--health-timeout", "--hostname", "--ip",
    "--ip6", "--ipc", "--isolation", "--kernel-memory", "--label", "--label-file", "--link",
    "--link-local-ip", "--log-driver", "--log-opt", "--mac-address", "--memory",
    "--memory-reservation", "--memory-swap", "--memory-swappiness", "--mount",
    "--network-alias", "--oom-score-adj", "--pid", "--pids-limit", "--platform", "--pull",
    "--runtime", "--security-opt", "--shm-size", "--stop-signal", "--stop-timeout",
    "--storage-opt", "--sysctl", "--tmpfs", "--ulimit", "--user", "--userns", "--uts",
    "--volume-driver", "--volumes-from", "--workdir",
}


def is_secret_key(key: str) -> bool:
    upper = key.upper()
    return any(marker in upper for marker in SECRET_MARKERS)


def is_script_name(name: str) -> bool:
    return name.endswith(".sh") or name.startswith("start")


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _logical_lines(text: str) -> List[Tuple[int, str]]:
    """Join backslash continuations; returns (first physical line no, text)."""
    result = []
    buf: List[str] = []
    start = 0
    for line_no, raw in enumerate(text.splitlines(), start=1):
        if not buf:
            start = line_no
        stripped = raw.rstrip()
        if stripped.endswith("\\") and not stripped.endswith("\\\\"):
            buf.append(stripped[:-1])
            continue
        buf.append(raw)
        result.append((start, " ".join(part.strip() for part in buf)))
        buf = []
    if buf:
        result.append((start, " ".join(part.strip() for part in buf)))
    return result


def _substitute(token: str, variables: Dict[str, str]) -> str:
    def repl(m):
        name = m.group(1) or m.group(2)
        return variables.get(name, m.group(0))
    return _VAR_RE.sub(repl, token)


def _tokens(line_no: int, line: str) -> List[str]:
    try:
        return shlex.split(line, comments=True)
    except ValueError as e:
        raise ParseError(f"Cannot tokenize script: {e}", line_no=line_no, line=line)


def _docker_args(tokens: List[str]) -> Optional[Tuple[str, List[str]]]:
    """Return (subcommand, options...) when tokens are a docker run/create call."""
    idx = 0
    while idx < len(tokens) and tokens[idx] in ("sudo", "exec", "-E"):
        idx += 1
    rest = tokens[idx:]
    if len(rest) < 2 or rest[0].rsplit("/", 1)[-1] != "docker":
        return None
    if rest[1] in ("run", "create"):
        return rest[1], rest[2:]
    if rest[1] == "container" and len(rest) > 2 and rest[2] in ("run", "create"):
        return rest[2], rest[3:]
    return None


def parse_port(value: str, line_no: int = 0, line: str = "") -> PortMapping:
    spec, _, proto = value.partition("/")
    parts = spec.rsplit(":", 2)
    if len(parts) == 1:
        mapping = PortMapping(host_port="", container_port=parts[0])
    elif len(parts) == 2:
        mapping = PortMapping(host_port=parts[0], container_port=parts[1])
    else:
        mapping = PortMapping(host_ip=parts[0], host_port=parts[1], container_port=parts[2])
    if not mapping.container_port:
        raise ParseError(f"Invalid port mapping '{value}'", line_no=line_no, line=line or value)
    mapping.protocol = proto or "tcp"
    return mapping


def parse_volume(value: str, line_no: int = 0, line: str = "") -> VolumeMount:
    parts = value.split(":")
    if len(parts) == 1:
        return VolumeMount(host_path="", container_path=parts[0])
    if len(parts) == 2:
        return VolumeMount(host_path=parts[0], container_path=parts[1])
    if len(parts) == 3:
        return VolumeMount(host_path=parts[0], container_path=parts[1], mode=parts[2])
    raise ParseError(f"Invalid volume mount '{value}'", line_no=line_no, line=line or value)


def parse_env(value: str) -> Tuple[str, Optional[str]]:
    key, eq, val = value.partition("=")
    return key, (val if eq else None)


def _apply_options(spec: DeploymentSpec, args: List[str], variables: Dict[str, str],
                   line_no: int, line: str) -> None:
    # only NAME and image references are expanded; everything else stays literal
    i = 0
    while i < len(args):
        arg = args[i]
        if arg == "--":
            i += 1
            break
        if not arg.startswith("-") or arg == "-":
            break

        if arg.startswith("--"):
            name, eq, inline = arg.partition("=")
        elif len(arg) > 2 and "-" + arg[1] in ("-e", "-p", "-v"):
            name, eq, inline = "-" + arg[1], "=", arg[2:]
        else:
            name, eq, inline = arg, "", ""

        def value() -> str:
            nonlocal i
            if eq:
                return inline
            if i + 1 >= len(args):
                raise ParseError(f"Option {name} is missing its value", line_no=line_no, line=line)
            i += 1
            return args[i]

        if name in ("-e", "--env"):
            key, val = parse_env(value())
            spec.env.pop(key, None)
            spec.env[key] = val
        elif name in ("-p", "--publish"):
            spec.ports.append(parse_port(value(), line_no, line))
        elif name in ("-v", "--volume"):
            spec.volumes.append(parse_volume(value(), line_no, line))
        elif name in ("--network", "--net"):
            spec.network = value()
        elif name == "--name":
            spec.name = _substitute(value(), variables)
        elif name == "--restart":
            spec.restart = value()
        elif name in ("-d", "--detach"):
            spec.detach = True
        elif not arg.startswith("--") and len(arg) > 2 and "d" in arg[1:]:
            # combined short booleans such as -dit
            spec.detach = True
            spec.extra_args.append("-" + arg[1:].replace("d", ""))
        elif name in _VALUE_OPTIONS and not eq:
            spec.extra_args.append(arg)
            spec.extra_args.append(value())
        else:
            spec.extra_args.append(arg)
        i += 1

    if i >= len(args):
        raise ParseError("No image reference found in docker command", line_no=line_no, line=line)
    spec.image = _substitute(args[i], variables)
    spec.command = list(args[i + 1:])


def parse(script_text: str) -> DeploymentSpec:
    """Read a deployment script into a DeploymentSpec. Raises ParseError."""
    variables: Dict[str, str] = {}
    for line_no, line in _logical_lines(script_text):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        tokens = _tokens(line_no, line)
        if not tokens:
            continue

        assigns = tokens[1:] if tokens[0] in ("export", "readonly", "local") else tokens
        if assigns and all(_ASSIGN_RE.match(t) for t in assigns):
            for tok in assigns:
                key, val = _ASSIGN_RE.match(tok).groups()
                variables[key] = _substitute(val, variables)
            continue

        found = _docker_args(tokens)
        if found is None:
            continue
        subcommand, args = found
        spec = DeploymentSpec(subcommand=subcommand)
        _apply_options(spec, args, variables, line_no, line)
        return spec

    raise ParseError("No 'docker run' or 'docker create' command found")


def load_script(path: str, text: str) -> DeploymentScript:
    """Parse leniently: an unreadable script becomes an opaque spec."""
    try:
        return DeploymentScript(path=path, spec=parse(text), text=text)
    except ParseError as e:
        logger.warning(f"Treating {path} as opaque: {e}")
        spec = DeploymentSpec(extra_args=[text], opaque_text=text)
        return DeploymentScript(path=path, spec=spec, text=text, error=str(e))


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

def quote(value: str) -> str:
    """Shell-quote a value, keeping $VAR references expandable."""
    if value and _SAFE_RE.match(value):
        return value
    if "$" in value:
        escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("`", "\\`")
        return f'"{escaped}"'
    return shlex.quote(value)


def generate(spec: DeploymentSpec, use_sudo: bool = False) -> str:
    """Emit the canonical script for spec."""
    if spec.is_opaque:
        return spec.opaque_text

    docker = "sudo docker" if use_sudo else "docker"
    out = ["#!/bin/bash", ""]
    if spec.name:
        out.append(f"NAME={quote(spec.name)}")
    out.append(f"IMAGE={quote(spec.image)}")
    out.append("")
    if spec.name:
        out.append(f'{docker} stop "$NAME" >/dev/null 2>&1 || true')
        out.append(f'{docker} rm "$NAME" >/dev/null 2>&1 || true')
        out.append("")

    head = f"{docker} {spec.subcommand}"
    if spec.detach and spec.subcommand == "run":
        head += " -d"
    options: List[str] = []
    if spec.name:
        options.append('--name "$NAME"')
    if spec.restart:
        options.append(f"--restart {quote(spec.restart)}")
    if spec.network and spec.network != "default":
        options.append(f"--network {quote(spec.network)}")
    for key in sorted(spec.env):
        val = spec.env[key]
        options.append(f"-e {quote(key if val is None else f'{key}={val}')}")
    for port in spec.ports:
        options.append(f"-p {quote(port.to_arg())}")
    for vol in spec.volumes:
        options.append(f"-v {quote(vol.to_arg())}")
    if spec.extra_args:
        options.append(" ".join(quote(a) for a in spec.extra_args))
    image = '"$IMAGE"'
    if spec.command:
        image += " " + " ".join(quote(a) for a in spec.command)
    options.append(image)

    out.append(" \\\n  ".join([head] + options))
    if spec.subcommand == "create" and spec.name:
        out.append(f'{docker} start "$NAME"')
    return "\n".join(out) + "\n"


def spec_from_inspect(data: Dict[str, Any]) -> DeploymentSpec:
    """Build a spec from one `docker inspect` object of a container."""
    config = data.get("Config") or {}
    host_config = data.get("HostConfig") or {}
    spec = DeploymentSpec(image=config.get("Image", ""), detach=True)
    name = (data.get("Name") or "").lstrip("/")
    spec.name = name or None

    for item in config.get("Env") or []:
        key, val = parse_env(item)
        if key != "PATH":
            spec.env[key] = val

    for container_port, bindings in (host_config.get("PortBindings") or {}).items():
        port, _, proto = container_port.partition("/")
        for binding in bindings or []:
            spec.ports.append(PortMapping(
                host_port=binding.get("HostPort", ""),
                container_port=port,
                protocol=proto or "tcp",
                host_ip=binding.get("HostIp", "") if binding.get("HostIp") not in ("0.0.0.0", "::") else "",
            ))

    for bind in host_config.get("Binds") or []:
        spec.volumes.append(parse_volume(bind))

    network = host_config.get("NetworkMode") or "default"
    spec.network = "default" if network == "bridge" else network
    restart = (host_config.get("RestartPolicy") or {}).get("Name") or ""
    if restart and restart != "no":
        spec.restart = restart
    return spec
