"""
Terminal dashboard for the chain monitor.

Layout:
  +---------------- Gas statistics ----+---------------- Block time --------+
  | Gas limit / Gas used sparklines    | block time sparkline               |
  +------------------------------------+------------------------------------+
  | Console (newest line last)                                               |
  +--------------------------------------------------------------------------+

Repaints every ``refresh_interval`` seconds and immediately on SIGWINCH.
``q`` quits. The dashboard only reads aggregator snapshots.
"""

import asyncio
import logging
import os
import signal
import sys
import termios
import tty

from rich.console import Console, Group
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.text import Text

from monitor.aggregator import MetricsAggregator, Snapshot
from monitor.config import DashboardConfig
from monitor.errors import RenderInitError

log = logging.getLogger("render")

SPARK_BLOCKS = " ▁▂▃▄▅▆▇█"
QUIT_KEYS = (b"q", b"Q")

# Panel border rows/cols, plus one column of padding either side
BORDER_ROWS = 2
BORDER_COLS = 4


# ── Sparklines ───────────────────────────────────────────────────────────────

def sparkline_rows(values, width: int, height: int) -> list[str]:
    """Render ``values`` as ``height`` rows of block characters.

    Columns are scaled to the largest visible sample; only the newest
    ``width`` samples are drawn, oldest at the left.
    """
    if width <= 0 or height <= 0:
        return []
    recent = [max(int(v), 0) for v in list(values)[-width:]]
    top = max(recent) if recent else 0
    levels = height * 8
    scaled = [v * levels // top if top > 0 else 0 for v in recent]

    rows = []
    for r in range(height):
        floor = (height - 1 - r) * 8
        row = "".join(SPARK_BLOCKS[min(max(s - floor, 0), 8)] for s in scaled)
        rows.append(row.ljust(width))
    return rows


def sparkline(title: str | None, values, width: int, height: int, color: str) -> Text:
    text = Text()
    if title is not None:
        latest = values[-1] if values else "-"
        text.append(f"{title} ", style="bold white")
        text.append(f"{latest}\n", style=color)
    text.append("\n".join(sparkline_rows(values, width, height)), style=color)
    return text


# ── Dashboard ────────────────────────────────────────────────────────────────

class ConsolePanelHandler(logging.Handler):
    """Routes log records into the console panel while the display is open."""

    def __init__(self, aggregator: MetricsAggregator, level=logging.WARNING):
        super().__init__(level)
        self.aggregator = aggregator
        self.setFormatter(logging.Formatter("%(levelname)s [%(name)s] %(message)s"))

    def emit(self, record):
        try:
            self.aggregator.writeln(self.format(record))
        except Exception:
            self.handleError(record)


class Dashboard:
    """Full-screen view of a MetricsAggregator.

    Use as a context manager: entering opens the terminal (raises
    RenderInitError), leaving restores it.
    """

    def __init__(self, aggregator: MetricsAggregator, config: DashboardConfig | None = None,
                 console: Console | None = None, stdin=None):
        self.aggregator = aggregator
        self.config = config or aggregator.config
        self.console = console or Console()
        self.stdin = stdin if stdin is not None else sys.stdin

        self.live = None
        self._fd = None
        self._saved_tty = None
        self._panel_handler = None
        self._detached_handlers = []
        self._wake = None
        self._quit = False
        self._resized = False

    # -- layout ---------------------------------------------------------------

    def render(self, snapshot: Snapshot | None = None, width: int | None = None) -> Layout:
        snap = snapshot or self.aggregator.snapshot()
        cfg = self.config
        width = width or self.console.size.width
        inner = max(width // 2 - BORDER_COLS, 1)

        # Two titled sparklines share the gas panel
        gas_spark_h = max((cfg.gas_panel_height - BORDER_ROWS) // 2 - 1, 1)
        bt_spark_h = max(cfg.block_time_panel_height - BORDER_ROWS - 1, 1)

        gas = Group(
            sparkline("Gas limit", snap.gas_limit, inner, gas_spark_h, "cyan"),
            sparkline("Gas used", snap.gas_used, inner, gas_spark_h, "red"),
        )
        block_time = sparkline(None, snap.block_time, inner, bt_spark_h, "magenta")

        status = " [FAULTED]" if snap.faulted else ""
        console_panel = Panel(
            Text(snap.log_text),
            title=Text("Console" + status),
            title_align="left",
            border_style="red" if snap.faulted else "white",
        )

        right = Layout(name="right")
        right.split_column(
            Layout(
                Panel(block_time, title="Block time", title_align="left"),
                name="block_time",
                size=cfg.block_time_panel_height,
            ),
            Layout(Text(""), name="spacer"),
        )

        top = Layout(name="graphs", size=max(cfg.gas_panel_height, cfg.block_time_panel_height))
        top.split_row(
            Layout(Panel(gas, title="Gas statistics", title_align="left"), name="gas"),
            right,
        )

        root = Layout(name="root")
        root.split_column(
            top,
            Layout(console_panel, name="console", size=cfg.log_height),
            Layout(Text(""), name="fill"),
        )
        return root

    # -- terminal lifecycle ---------------------------------------------------

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def open(self):
        if not self.console.is_terminal:
            raise RenderInitError("stdout is not a terminal")
        try:
            self._fd = self.stdin.fileno()
            self._saved_tty = termios.tcgetattr(self._fd)
            tty.setcbreak(self._fd)
        except (OSError, ValueError, termios.error) as e:
            self._fd = None
            self._saved_tty = None
            raise RenderInitError(f"cannot configure terminal input: {e}") from e

        self._route_logging()
        self.live = Live(
            self.render(),
            console=self.console,
            screen=True,
            auto_refresh=False,
            redirect_stdout=False,
            redirect_stderr=False,
        )
        try:
            self.live.start()
        except Exception as e:
            self.close()
            raise RenderInitError(f"cannot open display: {e}") from e
        log.debug("Display open: %dx%d", self.console.size.width, self.console.size.height)

    def close(self):
        if self.live is not None:
            self.live.stop()
            self.live = None
        if self._saved_tty is not None:
            termios.tcsetattr(self._fd, termios.TCSADRAIN, self._saved_tty)
            self._saved_tty = None
        self._unroute_logging()

    def _route_logging(self):
        """Stop stderr handlers from drawing over the screen; show warnings in the panel."""
        root = logging.getLogger()
        for h in list(root.handlers):
            if type(h) is logging.StreamHandler and h.stream in (sys.stderr, sys.__stderr__):
                root.removeHandler(h)
                self._detached_handlers.append(h)
        self._panel_handler = ConsolePanelHandler(self.aggregator)
        root.addHandler(self._panel_handler)

    def _unroute_logging(self):
        root = logging.getLogger()
        if self._panel_handler is not None:
            root.removeHandler(self._panel_handler)
            self._panel_handler = None
        for h in self._detached_handlers:
            root.addHandler(h)
        self._detached_handlers = []

    # -- event loop -----------------------------------------------------------

    def repaint(self):
        if self.live is None:
            return
        if self._resized:
            self._resized = False
            log.debug("Resized to %dx%d", self.console.size.width, self.console.size.height)
        self.live.update(self.render(), refresh=True)

    def request_quit(self):
        self._quit = True
        if self._wake is not None:
            self._wake.set()

    def _on_input(self):
        try:
            data = os.read(self._fd, 64)
        except OSError as e:
            log.warning("stdin read failed: %s", e)
            data = b""
        if not data:
            # EOF on stdin; keep running, quit via signal only
            asyncio.get_running_loop().remove_reader(self._fd)
            return
        if any(k in data for k in QUIT_KEYS):
            self.request_quit()

    def _on_resize(self):
        self._resized = True
        self._wake.set()

    async def run(self):
        """Repaint until quit. Returns normally on ``q``."""
        loop = asyncio.get_running_loop()
        self._wake = asyncio.Event()
        loop.add_reader(self._fd, self._on_input)
        loop.add_signal_handler(signal.SIGWINCH, self._on_resize)
        try:
            while not self._quit:
                self.repaint()
                try:
                    await asyncio.wait_for(self._wake.wait(), self.config.refresh_interval)
                except asyncio.TimeoutError:
                    pass
                self._wake.clear()
        finally:
            loop.remove_reader(self._fd)
            loop.remove_signal_handler(signal.SIGWINCH)
        log.info("Quit requested")
