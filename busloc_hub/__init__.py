#!/usr/bin/env python3
"""busloc_hub - bus arrival prediction and live push for a fleet of driver tablets."""

__version__ = "0.1.0"

from .models import (
    Heartbeat, TimetableEntry, ArrivalEntry, StopArrivalRecord, DeviceState,
    time_to_minutes, minutes_to_time, now_minutes,
)
from .config import HubConfig, load_config
from .database import FleetDB
from .eta import EtaCalculator
from .sse import BroadcastChannel
from .ingest import HeartbeatIngestor

__all__ = [
    "Heartbeat", "TimetableEntry", "ArrivalEntry", "StopArrivalRecord", "DeviceState",
    "time_to_minutes", "minutes_to_time", "now_minutes",
    "HubConfig", "load_config", "FleetDB", "EtaCalculator", "BroadcastChannel",
    "HeartbeatIngestor",
]
