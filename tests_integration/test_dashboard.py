"""Integration tests for the measurement dashboard using Textual Pilot API."""

import asyncio
import logging
import threading
from unittest.mock import Mock

import pytest

from tunnel_bench.dashboard import LogPanel, MeasureDashboard, StatsTable
from tunnel_bench.models import ErrorClass, Phase, RunState, Sample, WorkloadConfig
from tunnel_bench.report import Report
from tunnel_bench.target import Target


def make_report():
    samples = [Sample(started_at=0.0, latency=0.01 * i, phase=Phase.MEASURE, status=200) for i in range(1, 11)]
    samples.append(Sample(started_at=0.0, latency=1.0, phase=Phase.MEASURE, error=ErrorClass.TIMEOUT))
    return Report.from_samples(samples, wall_clock=2.0, label="test")


def make_measurer(report=None, error=None):
    """A measurer whose run() blocks until cancel() is called."""
    stopped = threading.Event()
    measurer = Mock()
    measurer.target = Target.from_url("https://measure.foobar.tld:13133", host_ip="127.0.0.1:13133")
    measurer.workload = WorkloadConfig(concurrency=4, duration=30.0)
    measurer.state = RunState.MEASURING
    measurer.snapshot.return_value = report
    measurer.cancel.side_effect = stopped.set

    def run():
        if error is not None:
            raise error
        stopped.wait(10)
        return report

    measurer.run.side_effect = run
    return measurer


async def wait_for(condition, attempts=100):
    for _ in range(attempts):
        if condition():
            return True
        await asyncio.sleep(0.05)
    return condition()


@pytest.mark.asyncio
async def test_dashboard_compose_and_render():
    """Test that the dashboard can be composed and rendered without errors."""
    measurer = make_measurer(report=make_report())
    app = MeasureDashboard(measurer, refresh_interval=0.05)

    async with app.run_test() as pilot:
        await pilot.pause()
        assert measurer.run.called
        await pilot.press("q")


@pytest.mark.asyncio
async def test_dashboard_shows_running_stats():
    """Test that the stats table fills from measurer snapshots."""
    measurer = make_measurer(report=make_report())
    app = MeasureDashboard(measurer, refresh_interval=0.05)

    async with app.run_test() as pilot:
        table = app.query_one("#stats_table", StatsTable)
        assert await wait_for(lambda: table.row_count > 1)
        assert measurer.snapshot.called
        await pilot.press("q")


@pytest.mark.asyncio
async def test_dashboard_without_samples_yet():
    """Test that the dashboard works before the first sample arrives."""
    measurer = make_measurer(report=None)
    app = MeasureDashboard(measurer, refresh_interval=0.05)

    async with app.run_test() as pilot:
        await pilot.pause(0.2)
        assert app.query_one("#stats_table", StatsTable).row_count == 1
        await pilot.press("q")


@pytest.mark.asyncio
async def test_stop_key_cancels_and_returns_report():
    """Test pressing 'q' cancels the run and the app exits with the final report."""
    report = make_report()
    measurer = make_measurer(report=report)
    app = MeasureDashboard(measurer, refresh_interval=0.05)

    async with app.run_test() as pilot:
        await pilot.pause()
        await pilot.press("q")
        assert await wait_for(lambda: app.report is not None)

    measurer.cancel.assert_called()
    assert app.report is report
    assert app.return_value is report


@pytest.mark.asyncio
async def test_toggle_logs():
    """Test pressing 'l' hides and shows the log panel."""
    measurer = make_measurer(report=make_report())
    app = MeasureDashboard(measurer, refresh_interval=0.05)

    async with app.run_test() as pilot:
        panel = app.query_one("#logs_container", LogPanel)
        assert panel.display
        await pilot.press("l")
        await pilot.pause()
        assert not panel.display
        await pilot.press("l")
        await pilot.pause()
        assert panel.display
        await pilot.press("q")


@pytest.mark.asyncio
async def test_logs_go_to_panel_while_mounted():
    """Test the tunnel-bench logger is routed into the dashboard."""
    measurer = make_measurer(report=make_report())
    app = MeasureDashboard(measurer, refresh_interval=0.05)
    logger = logging.getLogger("tunnel-bench")
    app.add_log = Mock()

    async with app.run_test() as pilot:
        await pilot.pause()
        assert not logger.propagate
        logger.warning("tunnel dropped")
        assert await wait_for(lambda: app.add_log.called)
        message, level = app.add_log.call_args.args
        assert "tunnel dropped" in message
        assert level == logging.WARNING
        await pilot.press("q")

    assert logger.propagate


@pytest.mark.asyncio
async def test_failed_run_is_logged():
    """Test a run that raises is logged and ends the app without a report."""
    measurer = make_measurer(error=RuntimeError("boom"))
    app = MeasureDashboard(measurer, refresh_interval=0.05)
    app.add_log = Mock()

    def logged_error():
        return any("boom" in call.args[0] for call in app.add_log.call_args_list)

    async with app.run_test() as pilot:
        assert await wait_for(logged_error)

    assert app.report is None
