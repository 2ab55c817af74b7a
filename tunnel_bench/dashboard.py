"""Interactive TUI dashboard for a running measurement."""

import logging
import threading
from typing import TYPE_CHECKING, Optional

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.widgets import DataTable, Footer, Header, RichLog, Static

from tunnel_bench.models import RunState
from tunnel_bench.report import Report

if TYPE_CHECKING:
    from tunnel_bench.measure import LoadMeasurer


def _human_bytes(n: int) -> str:
    """Format byte count as human-readable string."""
    if n < 1024:
        return f"{n} B"
    elif n < 1024 * 1024:
        return f"{n / 1024:.1f} KB"
    elif n < 1024 * 1024 * 1024:
        return f"{n / (1024 * 1024):.1f} MB"
    else:
        return f"{n / (1024 * 1024 * 1024):.1f} GB"


STATE_STYLES = {
    RunState.CONFIGURING: "dim",
    RunState.WARMING_UP: "yellow",
    RunState.MEASURING: "green",
    RunState.DRAINING: "yellow",
    RunState.REPORTING: "cyan",
    RunState.DONE: "cyan",
}


class LogHandler(logging.Handler):
    """Logging handler that sends records to the dashboard."""

    def __init__(self, dashboard_app: "MeasureDashboard"):
        super().__init__()
        self.dashboard = dashboard_app

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            try:
                self.dashboard.call_from_thread(self.dashboard.add_log, msg, record.levelno)
            except RuntimeError:
                # Already on the app's thread
                self.dashboard.add_log(msg, record.levelno)
        except Exception:
            self.handleError(record)


class StatsTable(DataTable):
    """Running statistics of the current run."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.cursor_type = "none"
        self.zebra_stripes = True

    def on_mount(self) -> None:
        self.add_columns("Metric", "Value")
        self.show_report(None)

    def show_report(self, report: Optional[Report]) -> None:
        self.clear()
        if report is None:
            self.add_row("Requests", "-")
            return

        self.add_row("Requests", str(report.total))
        self.add_row("Succeeded", f"[green]{report.successes}[/green]")
        failed = report.error_count
        self.add_row("Failed", f"[red]{failed}[/red]" if failed else "0")
        for error_class, count in sorted(report.errors.items()):
            self.add_row(f"  {error_class}", str(count))
        if report.warmup_samples:
            self.add_row("Warm-up samples", f"{report.warmup_samples} ({report.warmup_policy})")
        self.add_row("Elapsed", f"{report.wall_clock:.1f}s")
        self.add_row("Throughput", f"{report.throughput:.1f} req/s")
        self.add_row("Received", _human_bytes(report.bytes_received))
        lat = report.latency
        if lat is not None:
            self.add_row("p50 / p90 / p99", f"{lat.p50:.1f} / {lat.p90:.1f} / {lat.p99:.1f} ms")
            self.add_row("min / mean / max", f"{lat.min:.1f} / {lat.mean:.1f} / {lat.max:.1f} ms")


class LogPanel(Vertical):
    """A collapsible log panel."""

    def __init__(self, *children, **kwargs):
        super().__init__(*children, **kwargs)
        self._expanded = True

    def toggle(self) -> None:
        self._expanded = not self._expanded
        self.display = self._expanded


class MeasureDashboard(App):
    """Runs the measurer in a background thread and shows live progress.

    The app exits with the final Report once the run is done; pressing Q
    cancels the run, which still drains in-flight requests first.
    """

    TITLE = "tunnel-bench"
    CSS = """
    #logs_container {
        height: 30%;
        dock: bottom;
    }
    StatsTable {
        height: 1fr;
    }
    #main_content {
        height: 1fr;
    }
    """

    BINDINGS = [
        Binding("q", "stop_run", "Stop"),
        Binding("l", "toggle_logs", "Toggle logs"),
    ]

    def __init__(self, measurer: "LoadMeasurer", refresh_interval: float = 0.5, **kwargs):
        super().__init__(**kwargs)
        self.measurer = measurer
        self.refresh_interval = refresh_interval
        self.report: Optional[Report] = None
        self._log_handler: LogHandler = None
        self._run_thread: Optional[threading.Thread] = None

    def compose(self) -> ComposeResult:
        target = self.measurer.target
        workload = self.measurer.workload
        via = f" via {target.host_ip[0]}:{target.host_ip[1]}" if target.host_ip else ""
        yield Header()
        yield Vertical(
            Static(
                f"[bold cyan]{workload.endpoint.value.upper()} {target.url}{via}[/bold cyan] | "
                f"size {workload.size} | concurrency {workload.concurrency}",
                id="target_info",
            ),
            Static("Press [bold]Q[/bold] to stop the run, [bold]L[/bold] for logs", id="help"),
            Static("", id="state"),
            StatsTable(id="stats_table"),
            Static("", id="status"),
            LogPanel(
                Static("[bold]Logs[/bold] (press L to close)", id="logs_title"),
                RichLog(id="logs", markup=True, auto_scroll=True, highlight=True),
                id="logs_container",
            ),
            id="main_content",
        )
        yield Footer()

    def on_mount(self) -> None:
        logger = logging.getLogger("tunnel-bench")
        self._log_handler = LogHandler(self)
        self._log_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", "%H:%M:%S"))
        logger.addHandler(self._log_handler)
        # Console output would draw over the TUI; logs go to the panel instead
        logger.propagate = False

        self.set_interval(self.refresh_interval, self.refresh_stats)
        self._run_thread = threading.Thread(target=self._run_measurement, daemon=True, name="Measure-run")
        self._run_thread.start()

    def on_unmount(self) -> None:
        logger = logging.getLogger("tunnel-bench")
        logger.propagate = True
        if self._log_handler is not None:
            logger.removeHandler(self._log_handler)

    def add_log(self, message: str, level: int) -> None:
        log_widget = self.query_one("#logs", RichLog)
        if level >= logging.ERROR:
            message = f"[red]{message}[/red]"
        elif level >= logging.WARNING:
            message = f"[yellow]{message}[/yellow]"
        log_widget.write(message)

    def _run_measurement(self) -> None:
        """Run the benchmark (runs in background thread)."""
        try:
            report = self.measurer.run()
        except Exception as e:
            logging.getLogger("tunnel-bench").error(f"Benchmark error: {e}")
            report = None
        self.call_from_thread(self._on_run_finished, report)

    def _on_run_finished(self, report: Optional[Report]) -> None:
        self.report = report
        self.exit(report)

    def refresh_stats(self) -> None:
        state = self.measurer.state
        style = STATE_STYLES.get(state, "white")
        self.query_one("#state", Static).update(f"State: [{style}]{state.value}[/{style}]")
        self.query_one("#stats_table", StatsTable).show_report(self.measurer.snapshot())

    def action_stop_run(self) -> None:
        self.measurer.cancel()
        self.query_one("#status", Static).update("[yellow]Stopping: waiting for in-flight requests...[/yellow]")

    def action_toggle_logs(self) -> None:
        log_panel = self.query_one("#logs_container", LogPanel)
        log_panel.toggle()


def run_dashboard(measurer: "LoadMeasurer") -> Optional[Report]:
    """Run the dashboard app; returns the final report."""
    app = MeasureDashboard(measurer)
    return app.run()
