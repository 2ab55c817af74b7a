"""Exceptions surfaced as process failures.

Per-request failures are never raised out of a worker; they are classified
into a Sample instead (see ``tunnel_bench.measure``).
"""


class TunnelBenchError(Exception):
    """Base class for errors that abort a probe or a measurement run."""


class ConfigurationError(TunnelBenchError):
    """Malformed address, unreadable key/certificate, or invalid workload."""


class TunnelBindingError(TunnelBenchError):
    """The tunnel server refused or lost the probe's forwarding binding."""
