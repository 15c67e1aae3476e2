"""Configuration for the Load Balancer service.

Provides strongly-typed settings using Pydantic and a loader from environment
variables with defaults suitable for local development.
"""

from __future__ import annotations

import os
from typing import Mapping, Optional

from pydantic import BaseModel, Field, ValidationError

from rrlb.core.errors import ConfigurationError

DEFAULT_BACKENDS = [
    "http://localhost:8081",
    "http://localhost:8082",
    "http://localhost:8083",
]

_TRUTHY = {"1", "true", "yes", "y", "on"}


class Settings(BaseModel):
    """Pydantic settings for the LB service."""
    host: str = "0.0.0.0"
    port: int = Field(8080, ge=0, le=65535)
    backends: list[str] = Field(default_factory=lambda: list(DEFAULT_BACKENDS))
    request_timeout_s: float = Field(5.0, gt=0)
    shutdown_grace_s: float = Field(5.0, ge=0)
    forward_hop_headers: bool = False
    metrics_port: Optional[int] = Field(None, ge=1, le=65535)


def _split_backends(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Load settings from environment variables and return a Settings object."""
    env = os.environ if environ is None else environ
    values: dict[str, object] = {}

    if env.get("HOST"):
        values["host"] = env["HOST"]
    if env.get("PORT"):
        values["port"] = env["PORT"]
    if env.get("BACKENDS"):
        values["backends"] = _split_backends(env["BACKENDS"])
    if env.get("REQUEST_TIMEOUT_S"):
        values["request_timeout_s"] = env["REQUEST_TIMEOUT_S"]
    if env.get("SHUTDOWN_GRACE_S"):
        values["shutdown_grace_s"] = env["SHUTDOWN_GRACE_S"]
    if env.get("FORWARD_HOP_HEADERS"):
        values["forward_hop_headers"] = env["FORWARD_HOP_HEADERS"].strip().lower() in _TRUTHY
    if env.get("METRICS_PORT"):
        values["metrics_port"] = env["METRICS_PORT"]

    try:
        return Settings(**values)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
