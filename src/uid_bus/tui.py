"""Textual TUI watching a discovery scan against simulated devices."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

import click
from textual import on, work
from textual.app import App, ComposeResult
from textual.containers import Vertical
from textual.message import Message
from textual.widgets import DataTable, Footer, Header, Label
from textual.worker import Worker

from .bus import TX, LoopbackBus
from .device import DeviceSimulator
from .discovery import scan_prefixes
from .protocol import (
    RESET_ALL,
    CollisionMode,
    Command,
    format_mute,
    format_unmute,
    is_valid_prefix,
    parse_line,
)


# ---------------------------------------------------------------------------
# Internal state
# ---------------------------------------------------------------------------


@dataclass
class DeviceState:
    uid: str
    found_at: datetime | None = None


# ---------------------------------------------------------------------------
# Messages (for cross-task communication)
# ---------------------------------------------------------------------------


class TrafficObserved(Message):
    """A line crossed the bus, or a read window closed empty."""

    def __init__(self, direction: str, line: str | None) -> None:
        super().__init__()
        self.direction = direction
        self.line = line


class UidFound(Message):
    def __init__(self, uid: str) -> None:
        super().__init__()
        self.uid = uid


# ---------------------------------------------------------------------------
# Main TUI app
# ---------------------------------------------------------------------------


class UidBusApp(App):
    """Main TUI application."""

    CSS = """
    Screen {
        background: $surface;
    }
    #device-list {
        height: 1fr;
        border: solid $primary;
    }
    #traffic {
        height: 2fr;
        border: solid $secondary;
    }
    #status {
        text-style: bold;
        padding: 0 1;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("s", "scan", "Scan"),
        ("r", "reset_all", "Reset all"),
    ]

    MAX_TRAFFIC_ROWS = 500

    def __init__(
        self,
        uids: list[str],
        prefixes: list[str],
        collision: CollisionMode | str = CollisionMode.EMPTY,
        seed: int | None = None,
        delay: float = 0.002,
    ) -> None:
        super().__init__()
        self.simulator = DeviceSimulator(uids, collision=collision, seed=seed)
        self._prefixes = prefixes
        self._bus = LoopbackBus(self.simulator, delay=delay)
        self._bus.add_listener(self._on_traffic)
        self._scan_worker: Worker[None] | None = None
        self.devices: dict[str, DeviceState] = {
            uid: DeviceState(uid=uid) for uid in self.simulator.uids
        }

    def compose(self) -> ComposeResult:
        yield Header()
        with Vertical():
            yield Label(f"Prefixes: {' '.join(self._prefixes)}", id="status")
            yield DataTable(id="device-list")
            yield DataTable(id="traffic")
        yield Footer()

    def on_mount(self) -> None:
        devices = self.query_one("#device-list", DataTable)
        devices.add_columns("UID", "State", "Found")
        devices.cursor_type = "row"
        traffic = self.query_one("#traffic", DataTable)
        traffic.add_columns("Time", "Dir", "Line")
        self._refresh_table()

    def _on_traffic(self, direction: str, line: str | None) -> None:
        self.post_message(TrafficObserved(direction, line))

    def _on_found(self, uid: str) -> None:
        self.post_message(UidFound(uid))

    def _refresh_table(self) -> None:
        table = self.query_one("#device-list", DataTable)
        table.clear()
        for uid, state in self.devices.items():
            table.add_row(
                uid,
                "muted" if self.simulator.is_muted(uid) else "active",
                state.found_at.strftime("%H:%M:%S") if state.found_at else "",
            )

    def on_traffic_observed(self, msg: TrafficObserved) -> None:
        table = self.query_one("#traffic", DataTable)
        if msg.direction == TX:
            arrow, text = "->", msg.line
        else:
            arrow = "<-"
            if msg.line is None:
                text = "(silence)"
            elif msg.line == "":
                text = "(collision)"
            else:
                text = msg.line
        table.add_row(datetime.now().strftime("%H:%M:%S.%f")[:-3], arrow, text)
        if table.row_count > self.MAX_TRAFFIC_ROWS:
            table.remove_row(next(iter(table.rows)))
        table.scroll_end(animate=False)
        if msg.direction == TX and parse_line(msg.line or "")[0] is not Command.PROBE:
            self._refresh_table()

    def on_uid_found(self, msg: UidFound) -> None:
        state = self.devices.get(msg.uid)
        if state is None:
            self.notify(f"Found {msg.uid}, which is not simulated", severity="warning")
            return
        state.found_at = datetime.now()
        self._refresh_table()

    @property
    def scanning(self) -> bool:
        return self._scan_worker is not None and not self._scan_worker.is_finished

    def _bus_idle(self) -> bool:
        # one exchange at a time: a control line mid-scan would swallow a reply
        if self.scanning:
            self.notify("Scan in progress", severity="warning")
            return False
        return True

    def action_scan(self) -> None:
        if not self._bus_idle():
            return
        for state in self.devices.values():
            state.found_at = None
        self._refresh_table()
        self._scan_worker = self._scan()

    @work(exclusive=True, thread=False)
    async def _scan(self) -> None:
        reports = await scan_prefixes(self._bus, self._prefixes, on_found=self._on_found)
        total = sum(len(r.found) for r in reports.values())
        probes = sum(r.probes for r in reports.values())
        self.notify(f"Scan complete: {total} uid(s) in {probes} probes")

    def action_reset_all(self) -> None:
        if self._bus_idle():
            self.run_worker(self._bus.send(RESET_ALL), exclusive=False)

    @on(DataTable.RowSelected, "#device-list")
    def toggle_mute(self, event: DataTable.RowSelected) -> None:
        uids = list(self.devices)
        idx = event.cursor_row
        if 0 <= idx < len(uids) and self._bus_idle():
            uid = uids[idx]
            line = format_unmute(uid) if self.simulator.is_muted(uid) else format_mute(uid)
            self.run_worker(self._bus.send(line), exclusive=False)


def main() -> None:
    """Entry point for uid-bus-tui."""

    @click.command()
    @click.argument("uids", nargs=-1, required=True)
    @click.option("--prefix", "prefixes", multiple=True, required=True, help="Vendor prefix to scan (repeatable)")
    @click.option(
        "--collision",
        type=click.Choice([mode.value for mode in CollisionMode]),
        default=CollisionMode.EMPTY.value,
        show_default=True,
    )
    @click.option("--seed", type=int, default=None)
    @click.option("--delay", default=0.002, show_default=True, type=float, help="Pause per read (s)")
    def _run(uids: tuple[str, ...], prefixes: tuple[str, ...], collision: str, seed: int | None, delay: float) -> None:
        bad = [p for p in prefixes if not is_valid_prefix(p)]
        if bad:
            raise click.ClickException(f"Invalid prefix(es): {', '.join(bad)}")
        app = UidBusApp(list(uids), list(prefixes), collision=collision, seed=seed, delay=delay)
        app.run()

    _run()
