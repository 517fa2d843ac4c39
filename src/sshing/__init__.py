"""
sshing - A keyboard-driven terminal dashboard for SSH hosts.

This package manages the hosts in ~/.ssh/config together with a parallel
metadata file (tags, notes, flags, preferred shell, last-used time) and uses
them as the entry point into three external tools: interactive ssh sessions,
remote Docker container management over ssh, and rsync transfers.

Features:
  - Host list with search, tag filter and sort cycling
  - Host editor with key/flag/shell/tag selectors and validation
  - Remote Docker containers: lifecycle actions, logs, stats, processes,
    inspect, environment viewer
  - Deployment scripts: discovery, parsing into a structured spec, editing
    and regeneration, stop/remove/run execution
  - Rsync in both directions with path completion and a directory browser

Main Components:
  - store.py: SSH config + metadata persistence (the registry)
  - scripts.py: Deployment script parser and generator
  - orchestrator.py: Child processes, streaming and terminal handoff
  - state.py (+ state_editor/state_docker/state_rsync): Pure reducer
  - view.py: Read-only projection consumed by the renderer
  - runtime.py: Executes reducer commands and feeds results back as events
  - ui.py / main.py: Curses renderer and event loop

Usage:
  python -m sshing

Dependencies:
  - PyYAML>=6.0
  - Python 3.10+
  - ssh, rsync and (on the remote hosts) docker binaries
"""

import os
from pathlib import Path

__version__ = "0.1.0"


def get_log_path() -> str:
    """
    Get the log file path following XDG Base Directory spec.

    Returns XDG_DATA_HOME/sshing/logs/sshing.log with fallback to /tmp.
    Creates directory if it doesn't exist.
    """
    xdg_data_home = os.environ.get('XDG_DATA_HOME')
    if not xdg_data_home:
        xdg_data_home = Path.home() / '.local' / 'share'
    else:
        xdg_data_home = Path(xdg_data_home)

    log_dir = xdg_data_home / 'sshing' / 'logs'

    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        return str(log_dir / 'sshing.log')
    except (PermissionError, OSError):
        return '/tmp/sshing.log'
