"""Probe service and load measurer for benchmarking SSH reverse-tunnel servers."""

from tunnel_bench.__version__ import __version__

__all__ = ["__version__"]
