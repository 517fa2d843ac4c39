"""
Main event loop and entry point for sshing.

This module wires the pieces together:
  - ConfigManager (config.py) for settings and file locations
  - ConfigStore (store.py) to load the host registry before curses starts
  - Orchestrator (orchestrator.py) and Runtime (runtime.py) to execute
    reducer commands
  - reduce() (state.py), project() (view.py) and draw() (ui.py)

Architecture:
  1. Configure logging, load the registry. A broken SSH config or metadata
     file is reported on stderr and the process exits with CONFIG_ERROR;
     the dashboard never starts on a registry it could not read.
  2. Main loop:
     - Drain runtime events into the reducer
     - Re-render only when the projected view changed
     - Poll one key (non-blocking, refresh_interval timeout) into the reducer
     - Execute the commands the reducer returns
  3. On quit, streams are cancelled and pending saves are flushed.

Thread Safety:
  - Only the main thread calls reduce() or touches curses
  - Worker threads talk to the loop through Runtime.poll_events()
"""

import curses
import logging
import os
import sys
from dataclasses import replace
from logging.handlers import RotatingFileHandler

from . import get_log_path
from .config import ConfigManager, config_manager
from .errors import ConfigError, ExitCode, user_facing_error
from .events import Event, Key
from .modes import AppState, Settings
from .orchestrator import Orchestrator
from .runtime import Runtime
from .state import initial_state, reduce
from .store import ConfigStore, list_identity_keys
from .ui import CursesTerminal, draw, init_colors, translate_key
from .view import project

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(manager: ConfigManager) -> None:
    """Rotating file log; nothing goes to the terminal curses owns."""
    cfg = manager.get_config().logging
    level = getattr(logging, cfg.level.upper(), logging.INFO)
    path = manager.get_log_path() or get_log_path()
    root = logging.getLogger()
    root.setLevel(level)
    try:
        handler = RotatingFileHandler(
            os.path.expanduser(path),
            maxBytes=cfg.max_size_mb * 1024 * 1024,
            backupCount=cfg.backup_count,
            encoding='utf-8',
        )
    except OSError as e:
        print(f"sshing: cannot open log file {path}: {e}", file=sys.stderr)
        return
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)


def settings_from(manager: ConfigManager) -> Settings:
    cfg = manager.get_config()
    return Settings(default_log_lines=cfg.docker.default_log_lines,
                    scripts_root=cfg.docker.scripts_root,
                    page_size=cfg.ui.page_size,
                    rsync_compress=cfg.rsync.compress)


def dispatch(state: AppState, event: Event, runtime: Runtime) -> AppState:
    state, commands = reduce(state, event)
    runtime.execute(commands)
    return state


def main(stdscr, store: ConfigStore, registry, manager: ConfigManager = config_manager):
    logger.info("Main started")
    curses.curs_set(0)
    stdscr.nodelay(True)
    stdscr.timeout(manager.get_refresh_interval())
    init_colors()

    terminal = CursesTerminal(stdscr)
    orchestrator = Orchestrator.from_config(manager)
    runtime = Runtime.from_config(manager, store, orchestrator, terminal)
    state = initial_state(registry, settings_from(manager),
                          list_identity_keys(manager.get_ssh_dir()))
    logger.info(f"Loaded {len(registry.hosts)} hosts")

    last_view = None
    try:
        while state.running:
            try:
                for event in runtime.poll_events():
                    state = dispatch(state, event, runtime)

                view = project(state)
                if view != last_view:
                    draw(stdscr, view)
                    last_view = view

                ch = stdscr.getch()
                if ch == curses.ERR:
                    continue
                if ch == curses.KEY_RESIZE:
                    stdscr.clear()
                    last_view = None
                    continue
                key = translate_key(ch)
                if key is None:
                    continue
                state = dispatch(state, Key(key), runtime)

            except KeyboardInterrupt:
                logger.info("KeyboardInterrupt caught, exiting...")
                break
            except Exception as e:
                logger.error(f"Error in main loop: {e}", exc_info=True)
                state = replace(state, status=f"Error: {e}", status_error=True)
    finally:
        runtime.shutdown()
        logger.info("Main stopped")


def run() -> None:
    """Console entry point."""
    setup_logging(config_manager)
    store = ConfigStore.from_config(config_manager)
    try:
        registry = store.load()
    except ConfigError as e:
        logger.error(f"Cannot load hosts: {e}")
        print(f"sshing: {user_facing_error('Loading hosts', e)}", file=sys.stderr)
        sys.exit(ExitCode.CONFIG_ERROR)

    # make Esc responsive
    os.environ.setdefault("ESCDELAY", "25")
    try:
        curses.wrapper(main, store, registry)
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logger.critical(f"Critical error: {e}", exc_info=True)
        print(f"Crash: {e}", file=sys.stderr)
        sys.exit(ExitCode.RUNTIME_ERROR)
    sys.exit(ExitCode.SUCCESS)


if __name__ == "__main__":
    run()
