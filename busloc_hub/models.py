#!/usr/bin/env python3
"""Data models and helper functions for busloc_hub."""

from __future__ import annotations

import math
import re
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo


# Constants
MINUTES_PER_DAY = 24 * 60
MAX_ARRIVALS_PER_STOP = 3
KEEPALIVE_SECONDS = 30

EVENT_CONNECTED = "connected"
EVENT_ARRIVAL_UPDATED = "arrival_updated"


class BadHeartbeat(ValueError):
    """A heartbeat payload that cannot be turned into a Heartbeat."""


# Helper functions
def time_to_minutes(hhmm: Optional[str]) -> int:
    """Minute of day for an ``H:MM``/``HH:MM`` string, or -1 if there is no usable time."""
    s = (hhmm or "").strip()
    if not s:
        return -1
    parts = s.split(":")
    if len(parts) < 2 or not parts[0].isdigit() or not parts[1].isdigit():
        return -1
    # GTFS style HH:MM:SS is accepted, seconds are ignored
    return int(parts[0]) * 60 + int(parts[1])


def minutes_to_time(minutes: int) -> str:
    m = int(minutes) % MINUTES_PER_DAY
    return f"{m // 60:02d}:{m % 60:02d}"


def now_minutes(tz: Optional[str] = None, now: Optional[datetime] = None) -> int:
    # tz=None means the machine's local timezone; schedules must be authored in the same zone
    if now is None:
        now = datetime.now(ZoneInfo(tz)) if tz else datetime.now().astimezone()
    elif tz:
        now = now.astimezone(ZoneInfo(tz))
    return now.hour * 60 + now.minute


def round_half_up(x: Any) -> int:
    try:
        return int(math.floor(float(x) + 0.5))
    except (TypeError, ValueError, OverflowError):
        return 0


def now_ms() -> int:
    return int(time.time() * 1000)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def safe_int(x: Any) -> Optional[int]:
    try:
        return int(str(x).strip())
    except Exception:
        return None


_LEADING_INT_RE = re.compile(r"\s*([+-]?\d+)")


def leading_int(x: Any) -> Optional[int]:
    """Integer prefix of a string: "12abc" -> 12, "7.5" -> 7, "abc" -> None."""
    if x is None:
        return None
    m = _LEADING_INT_RE.match(str(x))
    return int(m.group(1)) if m else None


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p.capitalize() for p in rest)


def _opt_str(d: Dict[str, Any], key: str) -> Optional[str]:
    v = d.get(key)
    if v is None:
        return None
    v = str(v).strip()
    return v or None


# Dataclasses
@dataclass
class Heartbeat:
    device_id: str
    vehicle_no: Optional[str] = None     # display label, merge key when present
    driver_name: Optional[str] = None
    route_id: Optional[str] = None
    dia_id: Optional[str] = None         # integer schedule id, as reported
    delay_minutes: float = 0
    current_stop_id: Optional[str] = None

    @property
    def vehicle_key(self) -> str:
        return self.vehicle_no if self.vehicle_no is not None else self.device_id

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Heartbeat":
        """Build from a camelCase JSON body (HTTP or STOMP)."""
        if not isinstance(d, dict):
            raise BadHeartbeat("heartbeat must be a JSON object")
        device_id = _opt_str(d, "deviceId")
        if not device_id:
            raise BadHeartbeat("deviceId is required")
        delay = d.get("delayMinutes")
        if delay is None:
            delay = 0
        elif isinstance(delay, bool) or not isinstance(delay, (int, float)):
            try:
                delay = float(delay)
            except (TypeError, ValueError):
                raise BadHeartbeat(f"delayMinutes must be numeric, got {delay!r}")
        return cls(
            device_id=device_id,
            vehicle_no=_opt_str(d, "vehicleNo"),
            driver_name=_opt_str(d, "driverName"),
            route_id=_opt_str(d, "routeId"),
            dia_id=_opt_str(d, "diaId"),
            delay_minutes=delay,
            current_stop_id=_opt_str(d, "currentStopId"),
        )


@dataclass(frozen=True)
class TimetableEntry:
    stop_id: str
    stop_name: str = ""
    hhmm: str = ""                       # scheduled arrival, may be blank

    def display_name(self) -> str:
        return self.stop_name or self.stop_id

    def to_dict(self) -> Dict[str, Any]:
        return {"stopId": self.stop_id, "stopName": self.display_name(), "hhmm": self.hhmm}


@dataclass
class ArrivalEntry:
    vehicle_no: str
    scheduled_time: str
    estimated_time: str
    delay_minutes: int = 0
    is_approaching: bool = False
    approaching_desc: Optional[str] = None
    is_passed: bool = False
    updated_at: int = 0                  # epoch millis

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vehicleNo": self.vehicle_no,
            "scheduledTime": self.scheduled_time,
            "estimatedTime": self.estimated_time,
            "delayMinutes": self.delay_minutes,
            "isApproaching": self.is_approaching,
            "approachingDesc": self.approaching_desc,
            "isPassed": self.is_passed,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ArrivalEntry":
        return cls(
            vehicle_no=str(d.get("vehicleNo") or ""),
            scheduled_time=d.get("scheduledTime") or "",
            estimated_time=d.get("estimatedTime") or "",
            delay_minutes=safe_int(d.get("delayMinutes")) or 0,
            is_approaching=bool(d.get("isApproaching")),
            approaching_desc=d.get("approachingDesc"),
            is_passed=bool(d.get("isPassed")),
            updated_at=safe_int(d.get("updatedAt")) or 0,
        )


@dataclass
class StopArrivalRecord:
    route_id: str
    stop_id: str
    stop_name: str = ""
    arrivals: List[ArrivalEntry] = field(default_factory=list)
    updated_at: int = 0                  # epoch millis

    def to_dict(self) -> Dict[str, Any]:
        return {
            "routeId": self.route_id,
            "stopId": self.stop_id,
            "stopName": self.stop_name,
            "arrivals": [a.to_dict() for a in self.arrivals],
            "updatedAt": self.updated_at,
        }


@dataclass
class DeviceState:
    device_id: str
    service_date: Optional[str] = None
    route_id: Optional[str] = None
    dia_id: Optional[str] = None
    vehicle_no: Optional[str] = None
    driver_name: Optional[str] = None
    shift_confirmed: bool = False
    latitude: Optional[str] = None
    longitude: Optional[str] = None
    current_stop_id: Optional[str] = None
    current_stop_name: Optional[str] = None
    delay_minutes: int = 0
    last_passed_stop_id: Optional[str] = None
    last_passed_stop_name: Optional[str] = None
    last_passed_at: Optional[str] = None
    early_departure_warning: bool = False
    is_online: bool = False
    last_seen_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {_camel(k): v for k, v in asdict(self).items()}
