"""Concurrent HTTPS load generation against a Target."""

import http.client
import logging
import os
import socket
import ssl
import threading
import time
from typing import List, Optional, Tuple

from tunnel_bench.models import (
    Endpoint,
    ErrorClass,
    Phase,
    RunState,
    Sample,
    WorkloadConfig,
)
from tunnel_bench.report import Report
from tunnel_bench.target import Target, TargetHTTPConnection, new_connection

logger = logging.getLogger("tunnel-bench")

CHUNK_SIZE = 65536


class ResponseMismatch(http.client.HTTPException):
    """The response body did not match what the endpoint promises."""


def classify_error(exc: BaseException) -> ErrorClass:
    """Map a request failure to its ErrorClass.

    The order is fixed so a given failure always lands in the same class:
    timeout, TLS, connection, then malformed HTTP.
    """
    if isinstance(exc, (TimeoutError, socket.timeout)):
        return ErrorClass.TIMEOUT
    if isinstance(exc, ssl.SSLError):
        return ErrorClass.TLS
    # refused, reset, unreachable, name resolution
    if isinstance(exc, OSError):
        return ErrorClass.CONNECTION
    return ErrorClass.PROTOCOL


def _arm_deadline(connection: TargetHTTPConnection, deadline: float) -> None:
    remaining = deadline - time.perf_counter()
    if remaining <= 0:
        raise TimeoutError("request deadline exceeded")
    connection.timeout = remaining
    if connection.sock is not None:
        connection.sock.settimeout(remaining)


class RequestDeadline:
    """Hard bound on one request, enforced from a timer thread.

    When the timer fires it shuts the connection's socket down, so a worker
    blocked on a slow peer fails at once. After ``__exit__`` the timer can
    no longer fire.
    """

    def __init__(self, connection: TargetHTTPConnection, timeout: float):
        self.connection = connection
        self.expired = False
        self._finished = False
        self._lock = threading.Lock()
        self._timer = threading.Timer(timeout, self._expire)
        self._timer.daemon = True

    def __enter__(self) -> "RequestDeadline":
        self._timer.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self._timer.cancel()
        with self._lock:
            self._finished = True

    def _expire(self) -> None:
        with self._lock:
            if self._finished:
                return
            self.expired = True
            self.connection.abort()


class RunControl:
    """Shared termination state for one run.

    Workers call ``acquire()`` before every request. It hands out the phase
    of the next request, or None once the run is over (deadline reached,
    request budget spent, or cancelled). It never interrupts a request that
    is already in flight.
    """

    def __init__(self, workload: WorkloadConfig, clock=time.monotonic):
        self.workload = workload
        self.clock = clock
        self.state = RunState.CONFIGURING
        self.issued = 0
        self.measured_issued = 0
        self.started_at: Optional[float] = None
        self.measure_started_at: Optional[float] = None
        self.drained_at: Optional[float] = None
        self._warmup_deadline = 0.0
        self._measure_deadline: Optional[float] = None
        self._budget = workload.request_budget
        self._cancelled = threading.Event()
        self._lock = threading.Lock()

    def _transition(self, state: RunState) -> None:
        logger.info(f"Run state: {self.state.value} -> {state.value}")
        self.state = state

    def start(self) -> None:
        with self._lock:
            now = self.clock()
            self.started_at = now
            self._warmup_deadline = now + self.workload.warmup
            if self.workload.warmup > 0:
                self._transition(RunState.WARMING_UP)
            else:
                self._enter_measuring()

    def _enter_measuring(self) -> None:
        self.measure_started_at = self._warmup_deadline
        if self.workload.duration is not None:
            self._measure_deadline = self._warmup_deadline + self.workload.duration
        self._transition(RunState.MEASURING)

    def _begin_draining(self) -> None:
        if self.state in (RunState.WARMING_UP, RunState.MEASURING):
            self._transition(RunState.DRAINING)

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Stop handing out new requests; in-flight ones still complete."""
        self._cancelled.set()
        with self._lock:
            self._begin_draining()

    def acquire(self) -> Optional[Phase]:
        with self._lock:
            if self._cancelled.is_set() or self.state not in (RunState.WARMING_UP, RunState.MEASURING):
                self._begin_draining()
                return None

            now = self.clock()
            if now < self._warmup_deadline:
                self.issued += 1
                return Phase.WARMUP

            if self.state is RunState.WARMING_UP:
                self._enter_measuring()
            if self._measure_deadline is not None and now >= self._measure_deadline:
                self._begin_draining()
                return None
            if self._budget is not None and self.measured_issued >= self._budget:
                self._begin_draining()
                return None

            self.issued += 1
            self.measured_issued += 1
            return Phase.MEASURE

    def finish_draining(self) -> float:
        """Mark every worker as exited; returns the measured wall-clock time."""
        with self._lock:
            self._begin_draining()
            self.drained_at = self.clock()
            self._transition(RunState.REPORTING)
            return self.elapsed(self.drained_at)

    def finish(self) -> None:
        with self._lock:
            self._transition(RunState.DONE)

    def elapsed(self, now: Optional[float] = None) -> float:
        """Seconds spent measuring so far (zero while warming up)."""
        if self.measure_started_at is None:
            return 0.0
        now = self.clock() if now is None else now
        return max(0.0, now - self.measure_started_at)


class SampleSink:
    """Thread-safe append-only store of samples for one run."""

    def __init__(self):
        self._lock = threading.Lock()
        self._samples: List[Sample] = []

    def record(self, sample: Sample) -> None:
        with self._lock:
            self._samples.append(sample)

    def snapshot(self) -> List[Sample]:
        with self._lock:
            return list(self._samples)

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)


class LoadMeasurer:
    """Drives ``workload.concurrency`` workers against ``target`` and reports.

    The resolver, TLS context and request payload are built once here and
    shared read-only by every worker. Each ``run()`` starts from an empty
    sample set.
    """

    def __init__(self, target: Target, workload: WorkloadConfig, label: Optional[str] = None):
        self.target = target
        self.workload = workload
        self.label = label
        self.resolver = target.build_resolver()
        self.ssl_context = target.build_ssl_context()
        if workload.endpoint is Endpoint.GET:
            self.payload = b""
        else:
            self.payload = os.urandom(workload.size)
        self.control: Optional[RunControl] = None
        self.sink: Optional[SampleSink] = None
        self._cancelled = threading.Event()

    @property
    def state(self) -> RunState:
        if self.control is None:
            return RunState.CONFIGURING
        return self.control.state

    def describe(self) -> dict:
        return {
            "url": self.target.url,
            "host_ip": ":".join(str(p) for p in self.target.host_ip) if self.target.host_ip else None,
            "endpoint": self.workload.endpoint.value,
            "size": self.workload.size,
            "concurrency": self.workload.concurrency,
            "requests": self.workload.requests,
            "duration": self.workload.duration,
            "warmup": self.workload.warmup,
            "timeout": self.workload.timeout,
            "keepalive": self.workload.keepalive,
        }

    def cancel(self) -> None:
        """Stop the current run, or the next one if it has not started yet."""
        self._cancelled.set()
        control = self.control
        if control is not None:
            control.cancel()

    def run(self) -> Report:
        control = RunControl(self.workload)
        sink = SampleSink()
        self.control, self.sink = control, sink
        if self._cancelled.is_set():
            control.cancel()

        logger.info(
            f"Starting benchmark: {self.workload.endpoint.value.upper()} {self.target.url} "
            f"(size={self.workload.size}, concurrency={self.workload.concurrency})"
        )
        control.start()
        threads = [
            threading.Thread(
                target=self._worker,
                args=(control, sink),
                name=f"Worker-{i}",
            )
            for i in range(self.workload.concurrency)
        ]
        for t in threads:
            t.start()

        try:
            self._join(threads)
        except KeyboardInterrupt:
            logger.info("Received interrupt signal, draining in-flight requests...")
            control.cancel()
            self._join(threads)

        wall_clock = control.finish_draining()
        report = Report.from_samples(
            sink.snapshot(),
            wall_clock,
            warmup_policy=self.workload.warmup_policy,
            label=self.label,
            config=self.describe(),
        )
        control.finish()
        self._cancelled.clear()
        logger.info(f"Benchmark finished in {wall_clock:.2f}s ({report.total} requests).")
        return report

    def snapshot(self) -> Optional[Report]:
        """Interim report over the samples recorded so far."""
        if self.control is None or self.sink is None:
            return None
        return Report.from_samples(
            self.sink.snapshot(),
            self.control.elapsed(),
            warmup_policy=self.workload.warmup_policy,
            label=self.label,
            config=self.describe(),
        )

    @staticmethod
    def _join(threads: List[threading.Thread]) -> None:
        for t in threads:
            while t.is_alive():
                t.join(timeout=0.2)

    def _worker(self, control: RunControl, sink: SampleSink) -> None:
        connection = None
        try:
            while True:
                phase = control.acquire()
                if phase is None:
                    break
                sample, connection = self._issue(connection, phase)
                sink.record(sample)
        finally:
            if connection is not None:
                connection.close()

    def _issue(
        self, connection: Optional[TargetHTTPConnection], phase: Phase
    ) -> Tuple[Sample, Optional[TargetHTTPConnection]]:
        """Send one request and return its sample and the connection to reuse."""
        started_at = time.time()
        t0 = time.perf_counter()
        deadline = t0 + self.workload.timeout
        guard = None
        try:
            if connection is None:
                connection = new_connection(self.target, self.resolver, self.ssl_context, self.workload.timeout)
            guard = RequestDeadline(connection, self.workload.timeout)
            with guard:
                status, received, will_close = self._exchange(connection, deadline)
        except Exception as e:
            if not isinstance(e, (OSError, http.client.HTTPException)):
                logger.warning(f"Unexpected request error: {type(e).__name__}: {e}", exc_info=True)
            error = ErrorClass.TIMEOUT if guard is not None and guard.expired else classify_error(e)
            return self._failure(started_at, t0, phase, error, f"{type(e).__name__}: {e}", connection), None

        if guard.expired:
            # Finished while the timer was already tearing the socket down
            return self._failure(started_at, t0, phase, ErrorClass.TIMEOUT, "request deadline exceeded", connection), None

        latency = time.perf_counter() - t0
        if will_close or not self.workload.keepalive:
            connection.close()
            connection = None

        error = None if 200 <= status < 300 else ErrorClass.HTTP
        sample = Sample(
            started_at=started_at,
            latency=latency,
            phase=phase,
            status=status,
            error=error,
            detail=None if error is None else f"HTTP {status}",
            bytes_received=received,
        )
        return sample, connection

    @staticmethod
    def _failure(
        started_at: float,
        t0: float,
        phase: Phase,
        error: ErrorClass,
        detail: str,
        connection: Optional[TargetHTTPConnection],
    ) -> Sample:
        latency = time.perf_counter() - t0
        logger.debug(f"Request failed ({error.value}): {detail}")
        if connection is not None:
            connection.close()
        return Sample(started_at=started_at, latency=latency, phase=phase, error=error, detail=detail)

    def _exchange(self, connection: TargetHTTPConnection, deadline: float) -> Tuple[int, int, bool]:
        endpoint = self.workload.endpoint
        path = self.target.base_path + endpoint.path(self.workload.size)
        headers = {"Connection": "keep-alive" if self.workload.keepalive else "close"}
        body = None if endpoint is Endpoint.GET else self.payload

        _arm_deadline(connection, deadline)
        connection.request(endpoint.method, path, body=body, headers=headers)
        _arm_deadline(connection, deadline)
        response = connection.getresponse()

        received = 0
        while True:
            _arm_deadline(connection, deadline)
            chunk = response.read(CHUNK_SIZE)
            if not chunk:
                break
            received += len(chunk)

        status = response.status
        if 200 <= status < 300:
            expected = self._expected_length()
            if expected is not None and received != expected:
                raise ResponseMismatch(f"expected {expected} bytes, got {received}")
        return status, received, response.will_close

    def _expected_length(self) -> Optional[int]:
        endpoint = self.workload.endpoint
        if endpoint is Endpoint.GET:
            return self.workload.size
        if endpoint is Endpoint.ECHO:
            return len(self.payload)
        return None
