#!/usr/bin/env python3
"""SQLite database persistence for busloc_hub."""

from __future__ import annotations

import json
import sqlite3
import threading
from typing import Any, Dict, Iterable, List, Optional

from .models import (
    ArrivalEntry, DeviceState, StopArrivalRecord, TimetableEntry, utc_now_iso
)

SCHEMA_VERSION = "1"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS stops (
    stop_id TEXT PRIMARY KEY,
    stop_name TEXT NOT NULL,
    stop_lat TEXT,
    stop_lon TEXT,
    route_id TEXT
);

CREATE TABLE IF NOT EXISTS dias (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    dia_name TEXT NOT NULL,
    dia_type TEXT NOT NULL DEFAULT 'weekday',
    route_id TEXT,
    is_active INTEGER NOT NULL DEFAULT 1
);
CREATE INDEX IF NOT EXISTS idx_dias_route ON dias(route_id);

CREATE TABLE IF NOT EXISTS dia_segments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    dia_id INTEGER NOT NULL,
    trip_id TEXT NOT NULL DEFAULT '',
    stop_id TEXT NOT NULL,
    stop_name TEXT,
    arrival_time TEXT,
    departure_time TEXT,
    stop_sequence INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_dia_segments_dia_seq ON dia_segments(dia_id, stop_sequence);

CREATE TABLE IF NOT EXISTS device_states (
    device_id TEXT PRIMARY KEY,
    service_date TEXT,
    route_id TEXT,
    dia_id TEXT,
    vehicle_no TEXT,
    driver_name TEXT,
    shift_confirmed INTEGER NOT NULL DEFAULT 0,
    latitude TEXT,
    longitude TEXT,
    current_stop_id TEXT,
    current_stop_name TEXT,
    delay_minutes INTEGER DEFAULT 0,
    last_passed_stop_id TEXT,
    last_passed_stop_name TEXT,
    last_passed_at TEXT,
    early_departure_warning INTEGER NOT NULL DEFAULT 0,
    is_online INTEGER NOT NULL DEFAULT 0,
    last_seen_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS public_arrivals (
    route_id TEXT NOT NULL,
    stop_id TEXT NOT NULL,
    stop_name TEXT NOT NULL,
    arrivals_json TEXT NOT NULL,
    updated_at INTEGER NOT NULL,
    PRIMARY KEY (route_id, stop_id)
);

CREATE TABLE IF NOT EXISTS meta_schema (
    name TEXT PRIMARY KEY,
    version TEXT,
    applied_at TEXT
);
"""

_DEVICE_COLUMNS = [
    "service_date", "route_id", "dia_id", "vehicle_no", "driver_name", "shift_confirmed",
    "latitude", "longitude", "current_stop_id", "current_stop_name", "delay_minutes",
    "last_passed_stop_id", "last_passed_stop_name", "last_passed_at",
    "early_departure_warning", "is_online", "last_seen_at",
]
_DEVICE_BOOLS = {"shift_confirmed", "early_departure_warning", "is_online"}


class FleetDB:
    """SQLite persistence for timetables, device state and the public per-stop arrival lists.

    Implements both the timetable lookup (``get_timetable``) and the arrival
    store (``get_arrivals`` / ``upsert_arrivals``) used by the ETA calculator.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.path, check_same_thread=False, timeout=30.0)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._conn.execute("PRAGMA busy_timeout=5000;")
        self._conn.execute("PRAGMA temp_store=MEMORY;")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock, self._conn:
            self._conn.executescript(SCHEMA_SQL)
            self._conn.execute(
                "INSERT OR REPLACE INTO meta_schema(name, version, applied_at) VALUES (?,?,?)",
                ("busloc", SCHEMA_VERSION, utc_now_iso()),
            )

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _q(self, sql: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, tuple(params)).fetchall()

    # ------------------------------------------------------------
    # Timetable
    # ------------------------------------------------------------
    def add_stop(self, stop_id: str, stop_name: str, stop_lat: str | None = None,
                 stop_lon: str | None = None, route_id: str | None = None) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO stops(stop_id, stop_name, stop_lat, stop_lon, route_id)
                VALUES (?,?,?,?,?)
                ON CONFLICT(stop_id) DO UPDATE SET
                    stop_name=excluded.stop_name,
                    stop_lat=COALESCE(excluded.stop_lat, stops.stop_lat),
                    stop_lon=COALESCE(excluded.stop_lon, stops.stop_lon),
                    route_id=COALESCE(excluded.route_id, stops.route_id)
                """,
                (stop_id, stop_name, stop_lat, stop_lon, route_id),
            )

    def add_dia(self, dia_name: str, route_id: str | None, dia_type: str = "weekday",
                segments: Iterable[Dict[str, Any]] = ()) -> int:
        """
        Insert a dia (one scheduled run) and its stop segments.

        ``segments`` are dicts with stopId, optional stopName, arrivalTime,
        departureTime, tripId; their order is the stop sequence.
        """
        with self._lock, self._conn:
            cur = self._conn.execute(
                "INSERT INTO dias(dia_name, dia_type, route_id) VALUES (?,?,?)",
                (dia_name, dia_type, route_id),
            )
            dia_id = int(cur.lastrowid)
            rows = []
            for seq, seg in enumerate(segments, start=1):
                rows.append((
                    dia_id, seg.get("tripId") or "", seg["stopId"], seg.get("stopName"),
                    seg.get("arrivalTime"), seg.get("departureTime") or seg.get("arrivalTime"), seq,
                ))
            self._conn.executemany(
                "INSERT INTO dia_segments(dia_id, trip_id, stop_id, stop_name, arrival_time, departure_time, stop_sequence) "
                "VALUES (?,?,?,?,?,?,?)",
                rows,
            )
        return dia_id

    def get_timetable(self, schedule_id: int, route_id: str) -> List[TimetableEntry]:
        rows = self._q(
            """
            SELECT ds.stop_id AS stop_id,
                   COALESCE(ds.stop_name, s.stop_name, ds.stop_id) AS stop_name,
                   COALESCE(ds.arrival_time, '') AS hhmm
            FROM dia_segments ds
            JOIN dias d ON d.id = ds.dia_id
            LEFT JOIN stops s ON s.stop_id = ds.stop_id
            WHERE ds.dia_id = ? AND d.route_id = ?
            ORDER BY ds.stop_sequence ASC
            """,
            (schedule_id, route_id),
        )
        return [TimetableEntry(stop_id=r["stop_id"], stop_name=r["stop_name"], hhmm=r["hhmm"]) for r in rows]

    # ------------------------------------------------------------
    # Public arrivals
    # ------------------------------------------------------------
    @staticmethod
    def _record_from_row(r: sqlite3.Row) -> StopArrivalRecord:
        arrivals = [ArrivalEntry.from_dict(a) for a in json.loads(r["arrivals_json"] or "[]")]
        return StopArrivalRecord(
            route_id=r["route_id"], stop_id=r["stop_id"], stop_name=r["stop_name"],
            arrivals=arrivals, updated_at=r["updated_at"],
        )

    def get_arrivals(self, route_id: str, stop_id: str) -> Optional[StopArrivalRecord]:
        rows = self._q("SELECT * FROM public_arrivals WHERE route_id=? AND stop_id=?", (route_id, stop_id))
        return self._record_from_row(rows[0]) if rows else None

    def get_arrivals_by_route(self, route_id: str) -> List[StopArrivalRecord]:
        rows = self._q("SELECT * FROM public_arrivals WHERE route_id=? ORDER BY stop_id", (route_id,))
        return [self._record_from_row(r) for r in rows]

    def upsert_arrivals(self, record: StopArrivalRecord) -> None:
        arrivals_json = json.dumps([a.to_dict() for a in record.arrivals], separators=(',', ':'), ensure_ascii=False)
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO public_arrivals(route_id, stop_id, stop_name, arrivals_json, updated_at)
                VALUES (?,?,?,?,?)
                ON CONFLICT(route_id, stop_id) DO UPDATE SET
                    stop_name=excluded.stop_name,
                    arrivals_json=excluded.arrivals_json,
                    updated_at=excluded.updated_at
                """,
                (record.route_id, record.stop_id, record.stop_name, arrivals_json, record.updated_at),
            )

    # ------------------------------------------------------------
    # Device state
    # ------------------------------------------------------------
    def upsert_device_state(self, device_id: str, **fields: Any) -> None:
        """Insert or partially update one device row; only the given columns change."""
        unknown = set(fields) - set(_DEVICE_COLUMNS)
        if unknown:
            raise ValueError(f"unknown device_state columns: {sorted(unknown)}")
        cols = list(fields)
        values = [int(bool(fields[c])) if c in _DEVICE_BOOLS else fields[c] for c in cols]
        now = utc_now_iso()
        assignments = ", ".join([f"{c}=excluded.{c}" for c in cols] + ["updated_at=excluded.updated_at"])
        placeholders = ",".join("?" * (len(cols) + 2))
        with self._lock, self._conn:
            self._conn.execute(
                f"INSERT INTO device_states(device_id, {', '.join(cols + ['updated_at'])}) VALUES ({placeholders}) "
                f"ON CONFLICT(device_id) DO UPDATE SET {assignments}",
                [device_id] + values + [now],
            )

    @staticmethod
    def _device_from_row(r: sqlite3.Row) -> DeviceState:
        d = {k: r[k] for k in r.keys()}
        for k in _DEVICE_BOOLS:
            d[k] = bool(d[k])
        d["delay_minutes"] = d["delay_minutes"] or 0
        return DeviceState(**d)

    def get_device_state(self, device_id: str) -> Optional[DeviceState]:
        rows = self._q("SELECT * FROM device_states WHERE device_id=?", (device_id,))
        return self._device_from_row(rows[0]) if rows else None

    def get_all_device_states(self) -> List[DeviceState]:
        rows = self._q("SELECT * FROM device_states ORDER BY updated_at DESC")
        return [self._device_from_row(r) for r in rows]

    def get_public_bus_positions(self) -> List[Dict[str, Any]]:
        # No driver name, device id or call state leaves through this view
        rows = self._q(
            """
            SELECT route_id, vehicle_no, latitude, longitude, current_stop_name,
                   delay_minutes, last_passed_stop_name, updated_at
            FROM device_states
            WHERE is_online = 1
            ORDER BY updated_at DESC
            """
        )
        return [
            {
                "routeId": r["route_id"],
                "vehicleNo": r["vehicle_no"],
                "latitude": r["latitude"],
                "longitude": r["longitude"],
                "currentStopName": r["current_stop_name"],
                "delayMinutes": r["delay_minutes"] or 0,
                "lastPassedStopName": r["last_passed_stop_name"],
                "updatedAt": r["updated_at"],
            }
            for r in rows
        ]
