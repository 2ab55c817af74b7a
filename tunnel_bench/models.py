"""Data types shared by the load measurer and its report."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from tunnel_bench.errors import ConfigurationError

DEFAULT_SIZE = 10_000_000
DEFAULT_CONCURRENCY = 1
DEFAULT_TIMEOUT = 30.0


class Endpoint(str, Enum):
    """Probe endpoint driven by each request."""

    GET = "get"
    POST = "post"
    ECHO = "echo"

    @property
    def method(self) -> str:
        return "GET" if self is Endpoint.GET else "POST"

    def path(self, size: int) -> str:
        if self is Endpoint.ECHO:
            return "/echo"
        return f"/{self.value}/{size}"


class WarmupPolicy(str, Enum):
    """What happens to samples started during warm-up.

    DISCARD drops them from every statistic. EXCLUDE keeps them in the
    outcome counts but leaves them out of latency and throughput.
    """

    DISCARD = "discard"
    EXCLUDE = "exclude"


class Phase(str, Enum):
    WARMUP = "warmup"
    MEASURE = "measure"


class ErrorClass(str, Enum):
    """Category of a failed request."""

    CONNECTION = "connection"
    TLS = "tls"
    TIMEOUT = "timeout"
    HTTP = "http"
    PROTOCOL = "protocol"


class RunState(str, Enum):
    CONFIGURING = "configuring"
    WARMING_UP = "warming-up"
    MEASURING = "measuring"
    DRAINING = "draining"
    REPORTING = "reporting"
    DONE = "done"


@dataclass(frozen=True)
class WorkloadConfig:
    """Shape of one measurement run.

    At most one of ``requests`` and ``duration`` may be set. When neither is
    set the run issues exactly ``concurrency`` requests, one per worker.
    """

    endpoint: Endpoint = Endpoint.GET
    size: int = DEFAULT_SIZE
    concurrency: int = DEFAULT_CONCURRENCY
    requests: Optional[int] = None
    duration: Optional[float] = None
    warmup: float = 0.0
    warmup_policy: WarmupPolicy = WarmupPolicy.DISCARD
    timeout: float = DEFAULT_TIMEOUT
    keepalive: bool = True

    def __post_init__(self):
        if self.concurrency < 1:
            raise ConfigurationError(f"Concurrency must be at least 1 (got {self.concurrency})")
        if self.requests is not None and self.duration is not None:
            raise ConfigurationError("Use either a request count or a duration, not both")
        if self.requests is not None and self.requests < 1:
            raise ConfigurationError(f"Request count must be at least 1 (got {self.requests})")
        if self.duration is not None and self.duration <= 0:
            raise ConfigurationError(f"Duration must be positive (got {self.duration})")
        if self.warmup < 0:
            raise ConfigurationError(f"Warm-up must not be negative (got {self.warmup})")
        if self.timeout <= 0:
            raise ConfigurationError(f"Timeout must be positive (got {self.timeout})")
        if self.size < 0:
            raise ConfigurationError(f"Size must not be negative (got {self.size})")

    @property
    def request_budget(self) -> Optional[int]:
        """Number of measured requests, or None for a duration-bounded run."""
        if self.duration is not None:
            return None
        if self.requests is not None:
            return self.requests
        return self.concurrency


@dataclass(frozen=True)
class Sample:
    """One terminal request outcome.

    ``latency`` is in seconds. A successful sample has a 2xx ``status`` and
    no ``error``; an HTTP failure has both a status and ``ErrorClass.HTTP``.
    """

    started_at: float
    latency: float
    phase: Phase
    status: Optional[int] = None
    error: Optional[ErrorClass] = None
    detail: Optional[str] = None
    bytes_received: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None
