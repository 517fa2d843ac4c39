"""
Error kinds and the process exit code contract.

Every collaborator of the reducer (store, script engine, orchestrator)
raises one of these; the runtime turns them into failure events so the
dashboard never crashes on a recoverable condition.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional


class ExitCode(IntEnum):
    SUCCESS = 0
    CONFIG_ERROR = 3
    RUNTIME_ERROR = 4


@dataclass
class SshingError(Exception):
    message: str
    hint: str = field(default="", kw_only=True)

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message} Hint: {self.hint}"
        return self.message


@dataclass
class ConfigError(SshingError):
    """Malformed file, I/O failure or a rejected draft."""
    path: Optional[str] = field(default=None, kw_only=True)


@dataclass
class ProcessError(SshingError):
    """Spawn failure, non-zero exit, timeout or a dropped connection."""
    kind: str = field(default="exit", kw_only=True)  # spawn, exit, timeout, disconnect
    exit_code: Optional[int] = field(default=None, kw_only=True)
    stderr: str = field(default="", kw_only=True)


@dataclass
class ParseError(SshingError):
    """A deployment script that could not be read as a docker invocation."""
    line_no: int = field(default=0, kw_only=True)
    line: str = field(default="", kw_only=True)

    def __str__(self) -> str:
        base = super().__str__()
        if self.line_no:
            return f"{base} (line {self.line_no}: {self.line.strip()})"
        return base


def user_facing_error(operation: str, exc: Exception) -> str:
    return f"{operation} failed: {exc}"
