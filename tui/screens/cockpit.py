"""Policy cockpit screen — 6 gauges + recent adjustments."""

from datetime import datetime, timezone

from textual.app import ComposeResult
from textual.containers import Grid, Vertical
from textual.css.query import NoMatches
from textual.screen import Screen
from textual.widgets import DataTable, Footer, Header, Label, Static

from tui.services.status_reader import (
    PolicyStatus,
    format_countdown,
    format_scaled,
    read_adjustments,
    read_policy_status,
)

REFRESH_INTERVAL_SEC = 3.0

ADJUSTMENT_COLUMNS = ("Epoch", "Time (UTC)", "Rate", "Index", "Target", "Delta")


class Gauge(Static):
    """Single metric gauge."""

    def __init__(self, label: str, value: str = "—", gauge_id: str = "") -> None:
        super().__init__(classes="gauge")
        self.gauge_label = label
        self.gauge_value = value
        self._gauge_id = gauge_id

    def compose(self) -> ComposeResult:
        yield Label(self.gauge_label, classes="gauge-label")
        yield Label(self.gauge_value, id=f"val-{self._gauge_id}", classes="gauge-value")


def _utc(ts: int) -> str:
    if not ts:
        return "—"
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def adjustment_row(record: dict) -> tuple:
    details = record.get("details") or {}
    return (
        str(record.get("epoch", "—")),
        _utc(record.get("timestamp_sec", 0)),
        format_scaled(record.get("exchange_rate")),
        format_scaled(record.get("price_index")),
        format_scaled(details.get("target_rate")),
        f"{record.get('requested_supply_adjustment', 0):+d}",
    )


class CockpitScreen(Screen):
    """Policy cockpit — epoch, window and supply for one state directory."""

    BINDINGS = [
        ("r", "refresh", "Refresh"),
        ("q", "quit", "Quit"),
    ]

    def __init__(self, status_dir: str = "") -> None:
        super().__init__()
        self.status_dir = status_dir
        self._status: PolicyStatus | None = None

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield Static(f"State dir: {self.status_dir}", id="cockpit-title")
            with Grid(id="cockpit-grid"):
                yield Gauge("Epoch", "—", "epoch")
                yield Gauge("Window", "—", "window")
                yield Gauge("Next Rebase In", "—", "next")
                yield Gauge("Supply", "—", "supply")
                yield Gauge("Last Delta", "—", "delta")
                yield Gauge("Last Rebase (UTC)", "—", "last")
            yield Static("", id="status-error")
            yield DataTable(id="adjustments")
        yield Footer()

    def on_mount(self) -> None:
        table = self.query_one("#adjustments", DataTable)
        table.add_columns(*ADJUSTMENT_COLUMNS)
        self._refresh()
        self.set_interval(REFRESH_INTERVAL_SEC, self._refresh)

    def _refresh(self) -> None:
        self._status = read_policy_status(self.status_dir)
        self._update_gauges()
        self._update_table()

    def _update_gauges(self) -> None:
        s = self._status
        if s is None:
            return

        delta = s.last_delta
        gauges = {
            "epoch": str(s.epoch),
            "window": s.window_phase,
            "next": format_countdown(s.seconds_to_next),
            "supply": f"{s.current_supply:,}",
            "delta": f"{delta:+d}" if delta is not None else "—",
            "last": _utc(s.last_rebase_timestamp_sec),
        }
        try:
            for gauge_id, value in gauges.items():
                self.query_one(f"#val-{gauge_id}", Label).update(value)
            error = f"[red]{s.error}[/red]" if s.error else ""
            self.query_one("#status-error", Static).update(error)
        except NoMatches:
            # Screen not composed yet
            return

    def _update_table(self) -> None:
        try:
            table = self.query_one("#adjustments", DataTable)
        except NoMatches:
            return
        table.clear()
        for record in read_adjustments(self.status_dir):
            table.add_row(*adjustment_row(record))

    def action_refresh(self) -> None:
        self._refresh()

    def action_quit(self) -> None:
        self.app.exit()
