#!/usr/bin/env python3
"""Heartbeat and shift ingestion shared by the HTTP and STOMP front ends."""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional

from .database import FleetDB
from .eta import EtaCalculator
from .models import BadHeartbeat, Heartbeat, round_half_up, utc_now_iso

logger = logging.getLogger(__name__)

_SHIFT_REQUIRED = ("deviceId", "serviceDate", "routeId", "diaId", "vehicleNo", "driverName")


def _s(v: Any) -> Optional[str]:
    if v is None:
        return None
    v = str(v).strip()
    return v or None


class HeartbeatIngestor:
    """Stores device state for a heartbeat, then runs the ETA update as a best-effort side step."""

    def __init__(self, db: FleetDB, calculator: Optional[EtaCalculator] = None) -> None:
        self.db = db
        self.calculator = calculator
        self.heartbeat_count = 0
        self.eta_error_count = 0
        self.last_heartbeat_at: Optional[str] = None
        self._count_lock = threading.Lock()

    def record_heartbeat(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply a tablet heartbeat.

        Raises BadHeartbeat for a body without deviceId. A failing ETA
        update is logged and never turns into a failed heartbeat.
        """
        reported = Heartbeat.from_dict(body)
        delay = round_half_up(reported.delay_minutes)
        now = utc_now_iso()
        fields: Dict[str, Any] = {
            "latitude": _s(body.get("latitude")),
            "longitude": _s(body.get("longitude")),
            "current_stop_id": reported.current_stop_id,
            "current_stop_name": _s(body.get("currentStopName")),
            "delay_minutes": delay,
            "early_departure_warning": bool(body.get("earlyDepartureWarning", False)),
            "is_online": True,
            "last_seen_at": now,
        }
        if "lastPassedStopId" in body:
            fields["last_passed_stop_id"] = _s(body.get("lastPassedStopId"))
            fields["last_passed_stop_name"] = _s(body.get("lastPassedStopName"))
            fields["last_passed_at"] = now
        self.db.upsert_device_state(reported.device_id, **fields)

        with self._count_lock:
            self.heartbeat_count += 1
            self.last_heartbeat_at = now

        # Route, dia and vehicle come from the shift stored on the device, not the heartbeat
        state = self.db.get_device_state(reported.device_id)
        updated_stops = []
        if self.calculator is not None and state is not None and state.route_id and state.dia_id:
            hb = Heartbeat(
                device_id=reported.device_id,
                vehicle_no=state.vehicle_no,
                driver_name=state.driver_name,
                route_id=state.route_id,
                dia_id=state.dia_id,
                delay_minutes=reported.delay_minutes,
                current_stop_id=reported.current_stop_id,
            )
            try:
                updated_stops = self.calculator.update_arrivals_from_heartbeat(hb)
            except Exception:
                with self._count_lock:
                    self.eta_error_count += 1
                logger.exception(f"ETA: heartbeat ETA update failed for device {reported.device_id}")
        return {"success": True, "updatedStops": len(updated_stops)}

    def apply_shift(self, body: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(body, dict):
            raise BadHeartbeat("shift must be a JSON object")
        missing = [k for k in _SHIFT_REQUIRED if not _s(body.get(k))]
        if missing:
            raise BadHeartbeat(f"missing fields: {', '.join(missing)}")
        self.db.upsert_device_state(
            _s(body["deviceId"]),
            service_date=_s(body["serviceDate"]),
            route_id=_s(body["routeId"]),
            dia_id=_s(body["diaId"]),
            vehicle_no=_s(body["vehicleNo"]),
            driver_name=_s(body["driverName"]),
            shift_confirmed=bool(body.get("shiftConfirmed", False)),
            is_online=True,
            last_seen_at=utc_now_iso(),
        )
        logger.info(f"Shift applied: device={body['deviceId']} route={body['routeId']} dia={body['diaId']}")
        return {"success": True}
