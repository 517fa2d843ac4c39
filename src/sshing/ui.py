"""
Curses rendering of a ViewState.

This module is the only one that touches the terminal. It knows nothing
about modes or hosts: it draws whatever view.project() produced.

Screen regions:
  - Row 0: title bar
  - Row 1: tab bar (script editor), error line or loading indicator
  - Rows 2..h-3: form fields, charts, table and text body, in that order
  - Row h-2: input prompt, or the key hints of the mode
  - Row h-1: status message (red when it reports a failure)

Color Pairs (initialized in init_colors):
  1: White (default text)
  2: Green (Up containers, success)
  3: Red (errors, failed containers)
  4: Cyan (headers)
  5: Magenta (marked rows)
  6: Yellow (pending, new items)
  7: Black on cyan (title bar, selection)

Also provides CursesTerminal, the suspend/resume pair the orchestrator's
TerminalHandoff uses to give the terminal to ssh and bring it back.
"""

import curses
import logging
from typing import List, Optional

from .view import ViewState

logger = logging.getLogger(__name__)

SPARK_CHARS = "▁▂▃▄▅▆▇█"
MAX_COLUMN = 40

KEY_NAMES = {
    curses.KEY_UP: "up",
    curses.KEY_DOWN: "down",
    curses.KEY_LEFT: "left",
    curses.KEY_RIGHT: "right",
    curses.KEY_BACKSPACE: "backspace",
    curses.KEY_PPAGE: "pgup",
    curses.KEY_NPAGE: "pgdn",
    curses.KEY_HOME: "home",
    curses.KEY_END: "end",
    curses.KEY_BTAB: "backtab",
    curses.KEY_ENTER: "enter",
}
CONTROL_KEYS = {
    4: "ctrl+d",
    8: "backspace",
    9: "tab",
    10: "enter",
    13: "enter",
    19: "ctrl+s",
    21: "ctrl+u",
    27: "esc",
    32: "space",
    127: "backspace",
}


def translate_key(ch: int) -> Optional[str]:
    """Map a getch() code to the key names the reducer understands."""
    if ch in KEY_NAMES:
        return KEY_NAMES[ch]
    if ch in CONTROL_KEYS:
        return CONTROL_KEYS[ch]
    if 32 < ch < 127:
        return chr(ch)
    return None


def init_colors():
    curses.start_color()
    curses.use_default_colors()
    curses.init_pair(1, curses.COLOR_WHITE, -1)    # Default
    curses.init_pair(2, curses.COLOR_GREEN, -1)    # Success / Up
    curses.init_pair(3, curses.COLOR_RED, -1)      # Error / Failed
    curses.init_pair(4, curses.COLOR_CYAN, -1)     # Headers
    curses.init_pair(5, curses.COLOR_MAGENTA, -1)  # Marked
    curses.init_pair(6, curses.COLOR_YELLOW, -1)   # Pending / New
    curses.init_pair(7, curses.COLOR_BLACK, curses.COLOR_CYAN)  # Inverse Highlight


class CursesTerminal:
    """Suspends and restores the curses screen around interactive children."""

    def __init__(self, stdscr):
        self.stdscr = stdscr

    def suspend(self) -> None:
        curses.def_prog_mode()
        curses.endwin()

    def resume(self) -> None:
        curses.reset_prog_mode()
        curses.curs_set(0)
        self.stdscr.nodelay(True)
        self.stdscr.clearok(True)
        self.stdscr.refresh()


# --- Charts (sparkline/bar as in the stats dashboard) ---

def sparkline(values, width: int = 40) -> str:
    """Generate ASCII sparkline from numeric values."""
    if not values:
        return SPARK_CHARS[0] * width
    values = list(values)[-width:]
    min_val = min(values)
    max_val = max(values)
    range_val = max_val - min_val
    if range_val == 0:
        return SPARK_CHARS[3] * len(values)
    top = len(SPARK_CHARS) - 1
    return "".join(SPARK_CHARS[int((v - min_val) / range_val * top)] for v in values)


def bar(percent: float, width: int = 20) -> str:
    filled = int(max(0.0, min(percent, 100.0)) / 100 * width)
    return "█" * filled + "░" * (width - filled)


# --- Drawing ---

def _put(win, y: int, x: int, text: str, attr: int = 0) -> None:
    h, w = win.getmaxyx()
    if y < 0 or y >= h or x >= w:
        return
    try:
        win.addnstr(y, x, text, max(0, w - x - 1), attr)
    except curses.error:
        # writing into the last cell raises even when the text fits
        pass


def _row_attr(style: str, selected: bool) -> int:
    if selected:
        return curses.color_pair(7)
    return {
        "up": curses.color_pair(2),
        "down": curses.A_DIM,
        "failed": curses.color_pair(3),
        "marked": curses.color_pair(5),
        "new": curses.color_pair(6),
        "dim": curses.A_DIM,
    }.get(style, curses.A_NORMAL)


def draw_header(stdscr, width: int, view: ViewState) -> None:
    title = f" sshing | {view.title} "
    _put(stdscr, 0, 0, title.ljust(width), curses.color_pair(7) | curses.A_BOLD)
    if view.tabs:
        x = 2
        for idx, label in enumerate(view.tabs):
            if idx == view.active_tab:
                style = curses.color_pair(4) | curses.A_BOLD | curses.A_UNDERLINE
            else:
                style = curses.A_DIM
            _put(stdscr, 1, x, label.upper(), style)
            x += len(label) + 4
    elif view.error:
        _put(stdscr, 1, 1, f"ERROR: {view.error}", curses.color_pair(3) | curses.A_BOLD)
    elif view.pending:
        _put(stdscr, 1, 1, "Working...", curses.color_pair(6))


def draw_form(stdscr, y: int, bottom: int, width: int, view: ViewState) -> int:
    label_w = max((len(f.label) for f in view.fields), default=0) + 2
    for f in view.fields:
        if y >= bottom:
            break
        marker = "*" if f.dirty else " "
        value = f.value + ("_" if f.editing else "")
        attr = curses.color_pair(7) if f.active else curses.A_NORMAL
        if f.editing:
            attr = curses.color_pair(6) | curses.A_BOLD
        _put(stdscr, y, 1, f"{marker}{f.label:<{label_w}}", curses.color_pair(4))
        _put(stdscr, y, label_w + 3, value, attr)
        y += 1
    return y + 1


def draw_charts(stdscr, y: int, bottom: int, width: int, view: ViewState) -> int:
    spark_w = max(10, min(60, width - 40))
    for chart in view.charts:
        if y + 1 >= bottom:
            break
        _put(stdscr, y, 1, f"{chart.label:<8} {chart.current:>8}  {bar(chart.percent)}",
             curses.color_pair(4) | curses.A_BOLD)
        _put(stdscr, y + 1, 10, sparkline(chart.values, spark_w), curses.color_pair(2))
        y += 3
    return y


def _column_widths(view: ViewState, width: int) -> List[int]:
    count = max(len(view.columns), max((len(r.cells) for r in view.rows), default=0))
    widths = []
    for idx in range(count):
        cells = [r.cells[idx] for r in view.rows if idx < len(r.cells)]
        if idx < len(view.columns):
            cells.append(view.columns[idx])
        widths.append(min(MAX_COLUMN, max((len(c) for c in cells), default=0)))
    if widths:
        # last column takes what is left
        widths[-1] = max(widths[-1], width - sum(widths[:-1]) - count - 3)
    return widths


def draw_table(stdscr, y: int, bottom: int, width: int, view: ViewState) -> int:
    widths = _column_widths(view, width)

    def fmt(cells) -> str:
        return " ".join(f"{str(c)[:w]:<{w}}" for c, w in zip(cells, widths))

    if view.columns:
        _put(stdscr, y, 1, fmt(view.columns), curses.color_pair(4) | curses.A_BOLD)
        y += 1
    visible = max(1, bottom - y - (1 if view.body else 0))
    selected = view.selected if view.selected is not None else 0
    offset = max(0, selected - visible + 1)
    for idx, row in enumerate(view.rows[offset:offset + visible]):
        actual = offset + idx
        is_selected = view.selected is not None and actual == view.selected
        _put(stdscr, y, 1, fmt(row.cells).ljust(width - 3), _row_attr(row.style, is_selected))
        y += 1
    return y + (1 if view.rows else 0)


def draw_body(stdscr, y: int, bottom: int, width: int, view: ViewState) -> None:
    height = bottom - y
    if height <= 0:
        return
    lines = view.body
    if view.tail:
        end = max(0, len(lines) - view.scroll)
        start = max(0, end - height)
    else:
        start = max(0, min(view.scroll, len(lines) - 1))
        end = start + height
    for idx, line in enumerate(lines[start:end]):
        _put(stdscr, y + idx, 1, line.expandtabs(4))


def draw_footer(stdscr, width: int, height: int, view: ViewState) -> None:
    if view.prompt:
        _put(stdscr, height - 2, 0, f" {view.prompt}_", curses.color_pair(6) | curses.A_BOLD)
    else:
        _put(stdscr, height - 2, 0, f" {view.hints}", curses.A_DIM)
    if view.status:
        attr = curses.color_pair(3) | curses.A_BOLD if view.status_error else curses.color_pair(2)
        _put(stdscr, height - 1, 0, f" {view.status} ", attr)


def draw(stdscr, view: ViewState) -> None:
    """Render one frame."""
    stdscr.erase()
    h, w = stdscr.getmaxyx()
    if h < 8 or w < 30:
        _put(stdscr, 0, 0, "Terminal too small!")
        stdscr.noutrefresh()
        curses.doupdate()
        return
    try:
        draw_header(stdscr, w, view)
        top, bottom = 2, h - 2
        y = top
        if view.fields:
            y = draw_form(stdscr, y, bottom, w, view)
        if view.charts:
            y = draw_charts(stdscr, y, bottom, w, view)
        if view.rows or view.columns:
            y = draw_table(stdscr, y, bottom, w, view)
        if view.body:
            draw_body(stdscr, y, bottom, w, view)
        draw_footer(stdscr, w, h, view)
    except curses.error as e:
        logger.debug(f"Render error: {e}")
    stdscr.noutrefresh()
    curses.doupdate()
