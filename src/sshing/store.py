"""
Host registry persistence: the SSH config file plus the metadata file.

The SSH config (~/.ssh/config) is authoritative for connection fields
(HostName, User, Port, IdentityFile, ProxyJump). The metadata file
(~/.ssh/sshing.yaml, YAML) holds what ssh itself has no place for: tags,
note, flags, preferred shell and last-used time, plus the global tag pool.
Both are merged by alias into a Registry.

Round-trip fidelity:
  - The config is kept as a document of raw lines split into a preamble and
    Host/Match blocks. Only single-alias, non-wildcard Host blocks are
    managed; everything else is written back verbatim.
  - A managed block whose connection fields did not change is written back
    byte for byte. A changed block has its managed directives regenerated
    at the position of the first one; comments and unknown directives stay.
  - Metadata entries for aliases that are not in the config are kept.

Writes are atomic (temp file in the same directory + os.replace) and the
SSH config ends up with mode 0600. The store caches the last document it
read or wrote; callers serialize saves.
"""

import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .errors import ConfigError
from .model import SSH_FLAGS, Host

logger = logging.getLogger(__name__)

METADATA_VERSION = "1.0"
MANAGED_KEYS = ("hostname", "user", "port", "identityfile", "proxyjump")
WILDCARD_CHARS = "*?!"

_DIRECTIVE_RE = re.compile(r'^(\s*)([A-Za-z][A-Za-z0-9]*)(?:\s*=\s*|\s+)(.*?)\s*$')
_EXCLUDED_KEY_FILES = {"config", "known_hosts", "known_hosts.old", "authorized_keys",
                       "environment", "sshing.yaml", "sshing.json"}


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

@dataclass
class Registry:
    """Hosts plus the global tag pool. Compared by hosts and tags only."""
    hosts: List[Host] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    # current alias -> alias the host had when loaded (renames)
    origins: Dict[str, str] = field(default_factory=dict, compare=False)

    def copy(self) -> "Registry":
        return Registry(hosts=list(self.hosts), tags=list(self.tags), origins=dict(self.origins))

    def find(self, alias: str) -> Optional[Host]:
        return next((h for h in self.hosts if h.alias == alias), None)

    def origin_of(self, alias: str) -> str:
        return self.origins.get(alias, alias)

    def add_tag(self, name: str) -> None:
        name = name.strip()
        if not name:
            raise ConfigError("Tag name cannot be empty")
        if any(c.isspace() for c in name):
            raise ConfigError(f"Tag '{name}' cannot contain whitespace")
        if name in self.tags:
            raise ConfigError(f"Tag '{name}' already exists")
        self.tags.append(name)

    def remove_tag(self, name: str) -> None:
        """Drop a tag from the pool and from every host carrying it."""
        if name not in self.tags:
            raise ConfigError(f"Tag '{name}' does not exist")
        self.tags.remove(name)
        self.hosts = [
            h.with_changes(tags=tuple(t for t in h.tags if t != name)) if name in h.tags else h
            for h in self.hosts
        ]

    def upsert_host(self, host: Host, original_alias: Optional[str] = None) -> None:
        key = original_alias or host.alias
        for idx, existing in enumerate(self.hosts):
            if existing.alias == key:
                self.hosts[idx] = host
                if key != host.alias:
                    self.origins[host.alias] = self.origins.pop(key, key)
                return
        self.hosts.append(host)

    def remove_host(self, alias: str) -> None:
        self.hosts = [h for h in self.hosts if h.alias != alias]
        self.origins.pop(alias, None)

    def mark_used(self, alias: str, when: datetime) -> bool:
        """Set last_used if it moves forward. Returns True when changed."""
        host = self.find(alias)
        if host is None:
            return False
        if host.last_used is not None and host.last_used >= when:
            return False
        self.upsert_host(host.with_changes(last_used=when))
        return True

    def tags_consistent(self) -> bool:
        pool = set(self.tags)
        return all(set(h.tags) <= pool for h in self.hosts)


@dataclass
class ValidationResult:
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def __bool__(self) -> bool:
        return self.ok


def validate(draft: Host, existing: Registry, original_alias: Optional[str] = None) -> ValidationResult:
    """Check a draft against the registry it is about to be saved into."""
    result = ValidationResult()
    own = original_alias  # None for a new host
    alias = draft.alias

    if not alias:
        result.errors.append("Alias cannot be empty")
    elif any(c.isspace() for c in alias):
        result.errors.append("Alias cannot contain whitespace")
    elif any(c in alias for c in WILDCARD_CHARS):
        result.errors.append("Alias cannot contain wildcard characters")
    elif any(h.alias == alias and h.alias != own for h in existing.hosts):
        result.errors.append(f"Alias '{alias}' already exists")

    if not draft.hostname.strip():
        result.errors.append("Hostname cannot be empty")

    if draft.port is not None and not 1 <= draft.port <= 65535:
        result.errors.append(f"Port {draft.port} is out of range (1-65535)")

    if draft.proxy_jump:
        known = {h.alias for h in existing.hosts if h.alias != own}
        for hop in (p.strip() for p in draft.proxy_jump.split(",")):
            if not hop:
                result.errors.append("ProxyJump contains an empty hop")
            elif hop == alias or hop == own:
                result.errors.append("ProxyJump cannot reference the host itself")
            elif _is_bare_alias(hop) and hop not in known:
                result.errors.append(f"ProxyJump host '{hop}' does not exist")

    unknown_tags = [t for t in draft.tags if t not in existing.tags]
    if unknown_tags:
        result.errors.append(f"Unknown tags: {', '.join(unknown_tags)}")

    unknown_flags = [f for f in draft.ssh_flags if f not in SSH_FLAGS]
    if unknown_flags:
        result.errors.append(f"Unsupported ssh flags: {' '.join(unknown_flags)}")

    return result


def _is_bare_alias(hop: str) -> bool:
    return not any(c in hop for c in "@:.")


# ---------------------------------------------------------------------------
# SSH config document
# ---------------------------------------------------------------------------

@dataclass
class HostBlock:
    header: str
    lines: List[str] = field(default_factory=list)
    alias: Optional[str] = None  # None for blocks this tool does not manage
    snapshot: Optional[Host] = None

    @property
    def indent(self) -> str:
        for raw in self.lines:
            m = _DIRECTIVE_RE.match(raw)
            if m and m.group(1):
                return m.group(1)
        return "    "


@dataclass
class SshConfigDocument:
    preamble: List[str] = field(default_factory=list)
    blocks: List[HostBlock] = field(default_factory=list)

    def managed_blocks(self) -> List[HostBlock]:
        return [b for b in self.blocks if b.alias is not None]

    def find(self, alias: str) -> Optional[HostBlock]:
        return next((b for b in self.blocks if b.alias == alias), None)


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1]
    return value


def _split_directive(raw: str) -> Tuple[Optional[str], str]:
    stripped = raw.strip()
    if not stripped or stripped.startswith("#"):
        return None, ""
    m = _DIRECTIVE_RE.match(raw.rstrip("\n"))
    if not m:
        return None, ""
    return m.group(2).lower(), m.group(3)


def parse_ssh_config(text: str, path: Optional[str] = None) -> SshConfigDocument:
    """Split config text into blocks and read the managed hosts out of them."""
    doc = SshConfigDocument()
    current: Optional[HostBlock] = None
    values: Dict[str, Any] = {}

    def finish(block: Optional[HostBlock]) -> None:
        if block is not None and block.alias is not None:
            block.snapshot = Host(
                alias=block.alias,
                hostname=values.get("hostname", ""),
                user=values.get("user"),
                port=values.get("port"),
                identity_files=tuple(values.get("identityfile", [])),
                proxy_jump=values.get("proxyjump"),
            )

    for line_no, raw in enumerate(text.splitlines(), start=1):
        raw = raw + "\n"
        key, value = _split_directive(raw)

        if key in ("host", "match"):
            finish(current)
            values = {}
            current = HostBlock(header=raw)
            doc.blocks.append(current)
            if key == "host":
                patterns = value.split()
                if (len(patterns) == 1
                        and not any(c in patterns[0] for c in WILDCARD_CHARS)
                        and doc.find(patterns[0]) is None):
                    current.alias = patterns[0]
            continue

        if current is None:
            doc.preamble.append(raw)
            continue

        current.lines.append(raw)
        if current.alias is None or key not in MANAGED_KEYS:
            continue

        value = _unquote(value)
        if key == "identityfile":
            values.setdefault("identityfile", []).append(value)
        elif key in values:
            continue  # ssh uses the first value it sees
        elif key == "port":
            try:
                port = int(value)
            except ValueError:
                port = -1
            if not 1 <= port <= 65535:
                raise ConfigError(
                    f"Invalid Port '{value}' for host {current.alias} on line {line_no}",
                    path=path, hint="Fix the Port directive in the SSH config")
            values["port"] = port
        else:
            values[key] = value

    finish(current)
    return doc


def _connection_fields(host: Host) -> Tuple:
    return (host.hostname, host.user, host.port, tuple(host.identity_files), host.proxy_jump)


def _directive_lines(host: Host, indent: str) -> List[str]:
    lines = []
    if host.hostname:
        lines.append(f"{indent}HostName {host.hostname}\n")
    if host.user:
        lines.append(f"{indent}User {host.user}\n")
    if host.port is not None:
        lines.append(f"{indent}Port {host.port}\n")
    for key in host.identity_files:
        value = f'"{key}"' if " " in key else key
        lines.append(f"{indent}IdentityFile {value}\n")
    if host.proxy_jump:
        lines.append(f"{indent}ProxyJump {host.proxy_jump}\n")
    return lines


def _rewrite_block(block: HostBlock, host: Host) -> List[str]:
    if host.alias == block.alias:
        header = block.header
    else:
        lead = block.header[:len(block.header) - len(block.header.lstrip())]
        header = f"{lead}Host {host.alias}\n"

    generated = _directive_lines(host, block.indent)
    body: List[str] = []
    inserted = False
    for raw in block.lines:
        key, _ = _split_directive(raw)
        if key in MANAGED_KEYS:
            if not inserted:
                body.extend(generated)
                inserted = True
            continue
        body.append(raw)
    if not inserted:
        pos = len(body)
        while pos > 0 and not body[pos - 1].strip():
            pos -= 1
        body[pos:pos] = generated
    return [header] + body


def render_ssh_config(doc: SshConfigDocument, registry: Registry) -> str:
    """Produce config text for the registry, reusing the document's blocks."""
    claims: Dict[int, Host] = {}
    placed = set()

    # Renamed hosts claim their original block first, then exact aliases.
    ordered = sorted(registry.hosts, key=lambda h: registry.origin_of(h.alias) == h.alias)
    for host in ordered:
        for candidate in (registry.origin_of(host.alias), host.alias):
            block = doc.find(candidate)
            if block is not None and id(block) not in claims:
                claims[id(block)] = host
                placed.add(host.alias)
                break

    out: List[str] = list(doc.preamble)
    for block in doc.blocks:
        if block.alias is None:
            out.append(block.header)
            out.extend(block.lines)
            continue
        host = claims.get(id(block))
        if host is None:
            logger.debug(f"Dropping deleted host block {block.alias}")
            continue
        if host.alias == block.alias and _connection_fields(host) == _connection_fields(block.snapshot):
            out.append(block.header)
            out.extend(block.lines)
        else:
            out.extend(_rewrite_block(block, host))

    for host in registry.hosts:
        if host.alias in placed:
            continue
        if out and out[-1].strip():
            out.append("\n")
        out.append(f"Host {host.alias}\n")
        out.extend(_directive_lines(host, "    "))

    return "".join(out)


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------

def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        try:
            ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"Ignoring unreadable last_used value {value!r}")
            return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _string_list(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    result: List[str] = []
    for item in value:
        item = str(item)
        if item not in result:
            result.append(item)
    return result


def _metadata_entry(host: Host) -> Dict[str, Any]:
    entry: Dict[str, Any] = {}
    if host.note:
        entry["note"] = host.note
    if host.tags:
        entry["tags"] = list(host.tags)
    if host.ssh_flags:
        entry["ssh_flags"] = list(host.ssh_flags)
    if host.shell:
        entry["shell"] = host.shell
    if host.last_used:
        entry["last_used"] = host.last_used.isoformat()
    return entry


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

def atomic_write(path: Path, text: str, mode: Optional[int] = None) -> None:
    """Write text to path through a temp file in the same directory."""
    target = Path(os.path.realpath(path))
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp_name, mode)
        os.replace(tmp_name, target)
    except OSError:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class ConfigStore:
    """Loads and saves the Registry. Not thread-safe; callers serialize saves."""

    def __init__(self, ssh_config_path: Path, metadata_path: Path,
                 legacy_metadata_path: Optional[Path] = None):
        self.ssh_config_path = Path(ssh_config_path)
        self.metadata_path = Path(metadata_path)
        self.legacy_metadata_path = Path(legacy_metadata_path) if legacy_metadata_path else None
        self._document = SshConfigDocument()
        self._orphans: Dict[str, Dict[str, Any]] = {}
        self._version = METADATA_VERSION

    @classmethod
    def from_config(cls, manager) -> "ConfigStore":
        return cls(manager.get_ssh_config_path(), manager.get_metadata_path(),
                   manager.get_legacy_metadata_path())

    def _read_text(self, path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigError(f"Cannot read {path}: {e}", path=str(path))

    def _read_metadata(self) -> Dict[str, Any]:
        path = self.metadata_path
        if not path.exists() and self.legacy_metadata_path and self.legacy_metadata_path.exists():
            # JSON is a subset of YAML, so the legacy file reads the same way
            path = self.legacy_metadata_path
            logger.info(f"Reading legacy metadata from {path}")
        text = self._read_text(path)
        if not text.strip():
            return {}
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigError(f"Metadata file {path} is not valid YAML: {e}", path=str(path),
                              hint="Fix or remove the metadata file")
        if data is None:
            return {}
        if not isinstance(data, dict) or not isinstance(data.get("hosts", {}) or {}, dict):
            raise ConfigError(f"Metadata file {path} has an unexpected structure", path=str(path))
        return data

    def load(self) -> Registry:
        """Read both files and merge them by alias."""
        doc = parse_ssh_config(self._read_text(self.ssh_config_path), str(self.ssh_config_path))
        meta = self._read_metadata()
        entries: Dict[str, Any] = meta.get("hosts") or {}
        self._version = str(meta.get("version", METADATA_VERSION))

        registry = Registry(tags=_string_list(meta.get("global_tags")))
        for block in doc.managed_blocks():
            entry = entries.get(block.alias) or {}
            if not isinstance(entry, dict):
                entry = {}
            shell = entry.get("shell") or None
            registry.hosts.append(block.snapshot.with_changes(
                note=str(entry.get("note") or ""),
                tags=tuple(_string_list(entry.get("tags"))),
                ssh_flags=tuple(_string_list(entry.get("ssh_flags"))),
                shell=str(shell) if shell else None,
                last_used=_parse_timestamp(entry.get("last_used")),
            ))

        # Older files have no pool; rebuild it from the host tags
        if not registry.tags:
            registry.tags = sorted({t for h in registry.hosts for t in h.tags})
        for host in registry.hosts:
            for tag in host.tags:
                if tag not in registry.tags:
                    logger.warning(f"Tag '{tag}' on {host.alias} missing from pool, adding it")
                    registry.tags.append(tag)

        self._document = doc
        aliases = {h.alias for h in registry.hosts}
        self._orphans = {k: v for k, v in entries.items() if k not in aliases}
        logger.info(f"Loaded {len(registry.hosts)} hosts and {len(registry.tags)} tags")
        return registry

    def save(self, registry: Registry) -> Registry:
        """Write the registry back and return it as now on disk.

        Raises ConfigError; files stay intact on failure.
        """
        config_text = render_ssh_config(self._document, registry)
        hosts_meta: Dict[str, Any] = dict(self._orphans)
        for host in registry.hosts:
            hosts_meta.pop(host.alias, None)
            entry = _metadata_entry(host)
            if entry:
                hosts_meta[host.alias] = entry
        metadata = {
            "version": self._version,
            "global_tags": list(registry.tags),
            "hosts": hosts_meta,
        }
        meta_text = yaml.safe_dump(metadata, default_flow_style=False, sort_keys=False,
                                   allow_unicode=True)
        try:
            atomic_write(self.ssh_config_path, config_text, mode=0o600)
            atomic_write(self.metadata_path, meta_text)
        except OSError as e:
            raise ConfigError(f"Failed to save configuration: {e}", path=str(e.filename or ""))

        self._document = parse_ssh_config(config_text, str(self.ssh_config_path))
        self._orphans = {k: v for k, v in hosts_meta.items() if registry.find(k) is None}
        logger.info(f"Saved {len(registry.hosts)} hosts to {self.ssh_config_path}")
        # renames are applied now
        return Registry(hosts=list(registry.hosts), tags=list(registry.tags))


def list_identity_keys(ssh_dir: Path) -> List[str]:
    """Private key candidates in ssh_dir, shown with a ~ prefix when under home."""
    try:
        entries = sorted(p for p in Path(ssh_dir).iterdir() if p.is_file())
    except OSError as e:
        logger.debug(f"Cannot list {ssh_dir}: {e}")
        return []
    home = str(Path.home())
    keys = []
    for p in entries:
        name = p.name
        if (name.startswith(".") or name.endswith(".pub") or name.endswith(".lock")
                or name in _EXCLUDED_KEY_FILES):
            continue
        full = str(p)
        if full.startswith(home + os.sep):
            full = "~" + full[len(home):]
        keys.append(full)
    return keys
