"""Aggregate statistics for a measurement run, plus table printing and JSON export."""

import json
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Dict, Iterable, List, Optional

from tunnel_bench.errors import ConfigurationError
from tunnel_bench.models import Phase, Sample, WarmupPolicy


def percentile(sorted_list, p):
    """Linear-interpolated percentile of an already sorted list."""
    if not sorted_list:
        return 0
    k = (len(sorted_list) - 1) * p / 100
    f = int(k)
    c = f + 1
    if c >= len(sorted_list):
        return sorted_list[f]
    return sorted_list[f] + (k - f) * (sorted_list[c] - sorted_list[f])


@dataclass(frozen=True)
class LatencyStats:
    """Latency distribution in milliseconds."""

    count: int
    min: float
    max: float
    mean: float
    p50: float
    p90: float
    p99: float

    @classmethod
    def from_latencies(cls, latencies: Iterable[float]) -> Optional["LatencyStats"]:
        """Build from latencies in seconds; sorts, so input order is irrelevant."""
        values = sorted(lat * 1000 for lat in latencies)
        if not values:
            return None
        return cls(
            count=len(values),
            min=values[0],
            max=values[-1],
            mean=sum(values) / len(values),
            p50=percentile(values, 50),
            p90=percentile(values, 90),
            p99=percentile(values, 99),
        )


@dataclass(frozen=True)
class Report:
    """Statistics derived from the full sample set of one run.

    ``total == successes + sum(errors.values())`` always holds.
    ``responses`` counts samples that got an HTTP status back, successful
    or not.
    """

    total: int
    successes: int
    errors: Dict[str, int]
    status_codes: Dict[int, int]
    responses: int
    latency: Optional[LatencyStats]
    throughput: float
    wall_clock: float
    bytes_received: int
    warmup_samples: int = 0
    warmup_policy: str = WarmupPolicy.DISCARD.value
    label: Optional[str] = None
    config: Dict[str, object] = field(default_factory=dict)

    @property
    def error_count(self) -> int:
        return sum(self.errors.values())

    @classmethod
    def from_samples(
        cls,
        samples: List[Sample],
        wall_clock: float,
        warmup_policy: WarmupPolicy = WarmupPolicy.DISCARD,
        label: Optional[str] = None,
        config: Optional[Dict[str, object]] = None,
    ) -> "Report":
        measured = [s for s in samples if s.phase is Phase.MEASURE]
        warmup = [s for s in samples if s.phase is Phase.WARMUP]
        counted = measured + warmup if warmup_policy is WarmupPolicy.EXCLUDE else measured

        successes = sum(1 for s in counted if s.ok)
        errors = Counter(s.error.value for s in counted if s.error is not None)
        status_codes = Counter(s.status for s in counted if s.status is not None)
        measured_ok = [s for s in measured if s.ok]

        return cls(
            total=len(counted),
            successes=successes,
            errors=dict(errors),
            status_codes=dict(status_codes),
            responses=sum(status_codes.values()),
            latency=LatencyStats.from_latencies(s.latency for s in measured_ok),
            throughput=len(measured_ok) / wall_clock if wall_clock > 0 else 0.0,
            wall_clock=wall_clock,
            bytes_received=sum(s.bytes_received for s in counted),
            warmup_samples=len(warmup),
            warmup_policy=warmup_policy.value,
            label=label,
            config=dict(config or {}),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status_codes"] = {str(code): count for code, count in self.status_codes.items()}
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Report":
        data = dict(data)
        latency = data.pop("latency", None)
        data["status_codes"] = {int(code): count for code, count in data.get("status_codes", {}).items()}
        return cls(latency=LatencyStats(**latency) if latency else None, **data)


def write_json(report: Report, path: str) -> None:
    with open(path, "w") as f:
        json.dump(report.to_dict(), f, indent=2)


def load_json(path: str) -> Report:
    try:
        with open(path) as f:
            return Report.from_dict(json.load(f))
    except (OSError, ValueError, TypeError) as e:
        raise ConfigurationError(f"Cannot load report {path}: {e}") from e


# ---------------------------------------------------------------------------
# Table printing
# ---------------------------------------------------------------------------

def print_row(cols, widths):
    print("  " + " | ".join(str(c).ljust(w) for c, w in zip(cols, widths)))


def print_sep(widths):
    print("  " + "-+-".join("-" * w for w in widths))


def print_header(title):
    print()
    print("=" * 70)
    print(f"  {title}")
    print("=" * 70)


def _ms(value: Optional[float]) -> str:
    return "-" if value is None else f"{value:.1f}"


def print_report(report: Report) -> None:
    title = "Benchmark report"
    if report.label:
        title += f" ({report.label})"
    print_header(title)

    W = [22, 40]
    for key in ("url", "endpoint", "size", "concurrency"):
        if key in report.config:
            print_row([key.capitalize(), report.config[key]], W)
    print_row(["Requests", report.total], W)
    print_row(["Succeeded", report.successes], W)
    print_row(["Failed", report.error_count], W)
    for error_class, count in sorted(report.errors.items()):
        print_row([f"  {error_class}", count], W)
    if report.status_codes:
        codes = ", ".join(f"{code}: {count}" for code, count in sorted(report.status_codes.items()))
        print_row(["Status codes", codes], W)
    if report.warmup_samples:
        print_row(["Warm-up samples", f"{report.warmup_samples} ({report.warmup_policy})"], W)
    print_row(["Elapsed", f"{report.wall_clock:.2f}s"], W)
    print_row(["Throughput", f"{report.throughput:.1f} req/s"], W)
    print_row(["Received", f"{report.bytes_received} B"], W)

    lat = report.latency
    print()
    LW = [10, 10, 10, 10, 10, 10]
    print_row(["min ms", "mean ms", "p50 ms", "p90 ms", "p99 ms", "max ms"], LW)
    print_sep(LW)
    if lat is None:
        print_row(["-"] * 6, LW)
    else:
        print_row([_ms(lat.min), _ms(lat.mean), _ms(lat.p50), _ms(lat.p90), _ms(lat.p99), _ms(lat.max)], LW)


def _delta(left: Optional[float], right: Optional[float]) -> str:
    if left is None or right is None or left == 0:
        return "-"
    return f"{(right - left) / left * 100:+.1f}%"


def comparison_rows(left: Report, right: Report) -> List[List[object]]:
    """Metric rows comparing ``right`` against ``left``."""

    def lat(report, attr):
        return getattr(report.latency, attr) if report.latency else None

    rows = [["Throughput (req/s)", round(left.throughput, 1), round(right.throughput, 1),
             _delta(left.throughput, right.throughput)]]
    for attr in ("mean", "p50", "p90", "p99"):
        lv, rv = lat(left, attr), lat(right, attr)
        rows.append([f"{attr} ms", _ms(lv), _ms(rv), _delta(lv, rv)])
    rows.append(["Requests", left.total, right.total, _delta(left.total, right.total)])
    rows.append(["Errors", left.error_count, right.error_count, _delta(left.error_count, right.error_count)])
    return rows


def print_comparison(left: Report, right: Report) -> None:
    left_name = left.label or "A"
    right_name = right.label or "B"
    print_header(f"{left_name} vs {right_name}")
    W = [20, 14, 14, 10]
    print_row(["Metric", left_name, right_name, "Delta"], W)
    print_sep(W)
    for row in comparison_rows(left, right):
        print_row(row, W)
