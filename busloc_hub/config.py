#!/usr/bin/env python3
"""Runtime configuration for busloc_hub."""

from __future__ import annotations

import dataclasses
import pathlib
from dataclasses import dataclass
from typing import Any, Dict, Optional

import yaml

from .models import KEEPALIVE_SECONDS, MAX_ARRIVALS_PER_STOP

ARRIVAL_SORTS = ("lexical", "service_day")


class ConfigError(ValueError):
    """Raised for an unreadable or invalid configuration file."""


@dataclass(frozen=True)
class HubConfig:
    db_path: str = "~/.cache/busloc/busloc.db"
    web_host: str = "0.0.0.0"
    web_port: int = 3000
    timezone: Optional[str] = None       # IANA name; None = host local time

    keepalive_seconds: float = KEEPALIVE_SECONDS
    subscriber_queue_size: int = 100

    max_arrivals: int = MAX_ARRIVALS_PER_STOP
    arrival_sort: str = "lexical"
    stale_after_minutes: Optional[int] = None

    # Optional STOMP heartbeat feed
    stomp_host: Optional[str] = None
    stomp_port: int = 61613
    stomp_user: Optional[str] = None
    stomp_password: Optional[str] = None
    stomp_destination: str = "/topic/busloc.heartbeat"

    status_every: int = 60

    def __post_init__(self) -> None:
        if self.arrival_sort not in ARRIVAL_SORTS:
            raise ConfigError(f"arrival_sort must be one of {ARRIVAL_SORTS}, got {self.arrival_sort!r}")
        if self.max_arrivals < 1:
            raise ConfigError("max_arrivals must be >= 1")
        if self.keepalive_seconds <= 0:
            raise ConfigError("keepalive_seconds must be > 0")
        if self.subscriber_queue_size < 1:
            raise ConfigError("subscriber_queue_size must be >= 1")
        if self.stale_after_minutes is not None and self.stale_after_minutes <= 0:
            raise ConfigError("stale_after_minutes must be > 0 when set")

    @property
    def resolved_db_path(self) -> str:
        return str(pathlib.Path(self.db_path).expanduser())

    def replace(self, **overrides: Any) -> "HubConfig":
        """Copy with the non-None overrides applied (CLI flags win over the file)."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return dataclasses.replace(self, **changes)


def load_config(path: Optional[str] = None) -> HubConfig:
    """
    Load a YAML mapping of HubConfig fields.

    A missing path returns the defaults. Unknown keys are rejected so typos
    do not silently fall back to a default.
    """
    if not path:
        return HubConfig()
    p = pathlib.Path(path).expanduser()
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except OSError as e:
        raise ConfigError(f"cannot read config {p}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {p}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"config {p} must be a mapping, got {type(data).__name__}")

    known = {f.name for f in dataclasses.fields(HubConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"unknown config keys in {p}: {', '.join(unknown)}")
    values: Dict[str, Any] = dict(data)
    try:
        return HubConfig(**values)
    except TypeError as e:
        raise ConfigError(str(e)) from e
