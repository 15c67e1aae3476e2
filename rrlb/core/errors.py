"""Error types shared by the Load Balancer service."""
from __future__ import annotations


class ConfigurationError(ValueError):
    """Raised when backends or settings are unusable; the process must not serve."""


class ListenerError(RuntimeError):
    """Raised when the listening socket cannot be bound or the server dies."""


class UpstreamTimeout(Exception):
    """The upstream call did not answer within the per-request timeout."""

    def __init__(self, elapsed_s: float):
        super().__init__(f"upstream did not respond within {elapsed_s:.1f}s")
        self.elapsed_s = elapsed_s
