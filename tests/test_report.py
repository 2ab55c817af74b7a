"""Unit tests for report aggregation, JSON export and comparison."""

import random

import pytest

from tunnel_bench.errors import ConfigurationError
from tunnel_bench.models import ErrorClass, Phase, Sample, WarmupPolicy
from tunnel_bench.report import (
    LatencyStats,
    Report,
    comparison_rows,
    load_json,
    percentile,
    print_comparison,
    print_report,
    write_json,
)


def ok(latency, phase=Phase.MEASURE, size=100):
    return Sample(started_at=0.0, latency=latency, phase=phase, status=200, bytes_received=size)


def failed(error, phase=Phase.MEASURE, status=None):
    return Sample(started_at=0.0, latency=0.5, phase=phase, status=status, error=error)


class TestPercentile:
    """Tests for linear-interpolated percentiles."""

    def test_empty(self):
        assert percentile([], 50) == 0

    def test_single_value(self):
        assert percentile([7.0], 99) == 7.0

    def test_interpolates(self):
        values = [10.0, 20.0, 30.0, 40.0]
        assert percentile(values, 0) == 10.0
        assert percentile(values, 50) == pytest.approx(25.0)
        assert percentile(values, 100) == 40.0


class TestLatencyStats:
    """Tests for LatencyStats."""

    def test_converts_to_milliseconds(self):
        stats = LatencyStats.from_latencies([0.010, 0.020, 0.030])
        assert stats.count == 3
        assert stats.min == pytest.approx(10.0)
        assert stats.max == pytest.approx(30.0)
        assert stats.mean == pytest.approx(20.0)
        assert stats.p50 == pytest.approx(20.0)

    def test_no_latencies(self):
        assert LatencyStats.from_latencies([]) is None

    def test_order_independent(self):
        latencies = [random.Random(1).uniform(0.001, 1.0) for _ in range(200)]
        shuffled = list(latencies)
        random.Random(2).shuffle(shuffled)
        assert LatencyStats.from_latencies(latencies) == LatencyStats.from_latencies(shuffled)


class TestReportFromSamples:
    """Tests for Report.from_samples."""

    def test_counts_add_up(self):
        samples = [
            ok(0.01),
            ok(0.02),
            failed(ErrorClass.CONNECTION),
            failed(ErrorClass.TIMEOUT),
            failed(ErrorClass.HTTP, status=502),
        ]
        report = Report.from_samples(samples, wall_clock=2.0)
        assert report.total == 5
        assert report.successes == 2
        assert report.errors == {"connection": 1, "timeout": 1, "http": 1}
        assert report.total == report.successes + report.error_count
        assert report.status_codes == {200: 2, 502: 1}
        assert report.responses == 3
        assert report.bytes_received == 200

    def test_latency_and_throughput_use_successes_only(self):
        samples = [ok(0.01), ok(0.03), failed(ErrorClass.TIMEOUT)]
        report = Report.from_samples(samples, wall_clock=4.0)
        assert report.latency.count == 2
        assert report.latency.max == pytest.approx(30.0)
        assert report.throughput == pytest.approx(0.5)

    def test_no_successes(self):
        report = Report.from_samples([failed(ErrorClass.CONNECTION)] * 3, wall_clock=1.0)
        assert report.latency is None
        assert report.throughput == 0.0
        assert report.responses == 0

    def test_zero_wall_clock(self):
        report = Report.from_samples([], wall_clock=0.0)
        assert report.total == 0
        assert report.throughput == 0.0

    def test_discard_drops_warmup_samples(self):
        samples = [ok(5.0, phase=Phase.WARMUP), failed(ErrorClass.TLS, phase=Phase.WARMUP), ok(0.01)]
        report = Report.from_samples(samples, wall_clock=1.0, warmup_policy=WarmupPolicy.DISCARD)
        assert report.total == 1
        assert report.errors == {}
        assert report.warmup_samples == 2
        assert report.latency.max == pytest.approx(10.0)

    def test_exclude_counts_warmup_outcomes_only(self):
        samples = [ok(5.0, phase=Phase.WARMUP), failed(ErrorClass.TLS, phase=Phase.WARMUP), ok(0.01)]
        report = Report.from_samples(samples, wall_clock=1.0, warmup_policy=WarmupPolicy.EXCLUDE)
        assert report.total == 3
        assert report.successes == 2
        assert report.errors == {"tls": 1}
        # Warm-up latency stays out of the distribution and throughput
        assert report.latency.count == 1
        assert report.latency.max == pytest.approx(10.0)
        assert report.throughput == pytest.approx(1.0)
        assert report.warmup_policy == "exclude"

    def test_order_independent(self):
        samples = [ok(i / 1000) for i in range(1, 50)] + [failed(ErrorClass.CONNECTION)] * 5
        shuffled = list(samples)
        random.Random(3).shuffle(shuffled)
        assert Report.from_samples(samples, 1.0) == Report.from_samples(shuffled, 1.0)


class TestJson:
    """Tests for report persistence."""

    def test_write_then_load(self, tmp_path):
        report = Report.from_samples(
            [ok(0.01), failed(ErrorClass.HTTP, status=404)],
            wall_clock=1.5,
            label="sish",
            config={"url": "https://measure.example.com:443", "concurrency": 4},
        )
        path = tmp_path / "report.json"
        write_json(report, str(path))
        assert load_json(str(path)) == report

    def test_status_codes_stored_as_strings(self):
        report = Report.from_samples([ok(0.01)], wall_clock=1.0)
        assert report.to_dict()["status_codes"] == {"200": 1}

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_json(str(tmp_path / "missing.json"))

    def test_load_garbage(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError):
            load_json(str(path))


class TestPrinting:
    """Tests for table output."""

    def test_print_report(self, capsys):
        report = Report.from_samples(
            [ok(0.01), failed(ErrorClass.TIMEOUT)],
            wall_clock=1.0,
            label="sandhole",
            config={"url": "https://measure.foobar.tld:443", "endpoint": "get"},
        )
        print_report(report)
        out = capsys.readouterr().out
        assert "Benchmark report (sandhole)" in out
        assert "timeout" in out
        assert "https://measure.foobar.tld:443" in out

    def test_print_report_without_successes(self, capsys):
        print_report(Report.from_samples([failed(ErrorClass.CONNECTION)], wall_clock=1.0))
        assert "connection" in capsys.readouterr().out

    def test_comparison_rows(self):
        left = Report.from_samples([ok(0.010)] * 10, wall_clock=1.0)
        right = Report.from_samples([ok(0.020)] * 20, wall_clock=1.0)
        rows = {row[0]: row for row in comparison_rows(left, right)}
        assert rows["Throughput (req/s)"][1:] == [10.0, 20.0, "+100.0%"]
        assert rows["p50 ms"][3] == "+100.0%"
        assert rows["Errors"][3] == "-"

    def test_print_comparison(self, capsys):
        left = Report.from_samples([ok(0.01)], wall_clock=1.0, label="sish")
        right = Report.from_samples([ok(0.02)], wall_clock=1.0, label="sandhole")
        print_comparison(left, right)
        assert "sish vs sandhole" in capsys.readouterr().out
