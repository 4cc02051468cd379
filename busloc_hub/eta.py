#!/usr/bin/env python3
"""
Arrival prediction for busloc_hub.

On every heartbeat the calculator walks the vehicle's timetable, works out
which stops it has passed, shifts the remaining scheduled times by the
reported delay and merges that vehicle's estimate into each stop's public
arrival list (at most ``max_arrivals`` entries, one per vehicle, earliest
first). One ``arrival_updated`` event is broadcast per heartbeat.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Sequence, Tuple

from .models import (
    EVENT_ARRIVAL_UPDATED, MAX_ARRIVALS_PER_STOP, MINUTES_PER_DAY,
    ArrivalEntry, Heartbeat, StopArrivalRecord, TimetableEntry,
    leading_int, minutes_to_time, now_minutes, now_ms, round_half_up, time_to_minutes,
)

logger = logging.getLogger(__name__)

SortKey = Callable[[ArrivalEntry], Any]


class TimetableProvider(Protocol):
    def get_timetable(self, schedule_id: int, route_id: str) -> Sequence[TimetableEntry]: ...


class ArrivalStore(Protocol):
    def get_arrivals(self, route_id: str, stop_id: str) -> Optional[StopArrivalRecord]: ...

    def upsert_arrivals(self, record: StopArrivalRecord) -> None: ...


class Broadcaster(Protocol):
    def broadcast(self, event: str, payload: Any) -> int: ...


# ------------------------------------------------------------
# Ordering of a stop's arrival list
# ------------------------------------------------------------
def lexical_time_key(entry: ArrivalEntry) -> str:
    # Plain HH:MM string order; "00:05" sorts before "23:58" after a midnight wrap
    return entry.estimated_time


def service_day_time_key(reference_minutes: int, lookback: int = 12 * 60) -> SortKey:
    """
    Order estimates on a timeline anchored ``lookback`` minutes before the reference.

    A time that looks earlier than the window start is taken to be after
    midnight, so "00:05" sorts after "23:58" when the clock reads 23:50.
    """
    start = (reference_minutes - lookback) % MINUTES_PER_DAY

    def key(entry: ArrivalEntry) -> int:
        m = time_to_minutes(entry.estimated_time)
        if m < 0:
            return 2 * MINUTES_PER_DAY
        return (m - start) % MINUTES_PER_DAY

    return key


def approaching_description(delay: int) -> str:
    if delay > 0:
        return f"Arriving soon (about {delay} min late)"
    return "Arriving soon (on time)"


def find_passed_index(timetable: Sequence[TimetableEntry], current_minutes: int, delay: int,
                      current_stop_id: Optional[str] = None) -> int:
    """
    Index of the last stop treated as visited, or -1.

    A ``current_stop_id`` hint overrides the clock entirely. Otherwise this
    is a single forward pass that stops at the first future estimate, so an
    out-of-order timetable is not searched past that point.
    """
    if current_stop_id:
        for i, stop in enumerate(timetable):
            if stop.stop_id == current_stop_id:
                return i
        return -1

    passed = -1
    for i, stop in enumerate(timetable):
        scheduled = time_to_minutes(stop.hhmm)
        if scheduled < 0:
            continue
        if scheduled + delay <= current_minutes:
            passed = i
        else:
            break
    return passed


def merge_arrivals(existing: Sequence[ArrivalEntry], entry: ArrivalEntry, *,
                   limit: int = MAX_ARRIVALS_PER_STOP,
                   sort_key: SortKey = lexical_time_key,
                   stale_before_ms: Optional[int] = None) -> List[ArrivalEntry]:
    """Replace-or-append ``entry`` by vehicle, drop passed (and stale) entries, sort, truncate."""
    merged = list(existing)
    for i, a in enumerate(merged):
        if a.vehicle_no == entry.vehicle_no:
            merged[i] = entry
            break
    else:
        merged.append(entry)

    active = [a for a in merged if not a.is_passed]
    if stale_before_ms is not None:
        active = [a for a in active if a is entry or a.updated_at >= stale_before_ms]
    active.sort(key=sort_key)
    return active[:limit]


class KeyedLocks:
    """One lock per key, created on first use."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}

    @contextmanager
    def hold(self, key: Tuple[str, str]) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            yield

    def __len__(self) -> int:
        return len(self._locks)


class EtaCalculator:
    """Turns heartbeats into per-stop arrival predictions and broadcasts the change."""

    def __init__(
        self,
        timetable: TimetableProvider,
        store: ArrivalStore,
        channel: Optional[Broadcaster] = None,
        *,
        clock: Optional[Callable[[], int]] = None,
        ms_clock: Callable[[], int] = now_ms,
        max_arrivals: int = MAX_ARRIVALS_PER_STOP,
        arrival_sort: str = "lexical",
        stale_after_minutes: Optional[int] = None,
        timezone: Optional[str] = None,
    ) -> None:
        self.timetable = timetable
        self.store = store
        self.channel = channel
        self.clock = clock or (lambda: now_minutes(timezone))
        self.ms_clock = ms_clock
        self.max_arrivals = max_arrivals
        self.arrival_sort = arrival_sort
        self.stale_after_minutes = stale_after_minutes
        self._stop_locks = KeyedLocks()

    def _sort_key(self, current_minutes: int) -> SortKey:
        if self.arrival_sort == "service_day":
            return service_day_time_key(current_minutes)
        return lexical_time_key

    def update_arrivals_from_heartbeat(self, hb: Heartbeat) -> List[str]:
        """
        Recompute and store arrival predictions for every timed stop of the run.

        Returns the updated stop ids. Heartbeats without a route, without a
        numeric dia id, or whose timetable is empty are ignored. Errors from
        the timetable or the store propagate to the caller.
        """
        if not hb.route_id or not hb.dia_id:
            return []
        schedule_id = leading_int(hb.dia_id)
        if schedule_id is None:
            logger.debug(f"ETA: ignoring non-numeric diaId {hb.dia_id!r} from {hb.device_id}")
            return []

        timetable = list(self.timetable.get_timetable(schedule_id, hb.route_id))
        if not timetable:
            return []

        current = self.clock()
        delay = round_half_up(hb.delay_minutes or 0)
        vehicle_no = hb.vehicle_key
        passed_idx = find_passed_index(timetable, current, delay, hb.current_stop_id)
        sort_key = self._sort_key(current)

        stale_before = None
        if self.stale_after_minutes:
            stale_before = self.ms_clock() - self.stale_after_minutes * 60_000

        updated: List[str] = []
        for i, stop in enumerate(timetable):
            if not stop.stop_id:
                continue
            scheduled = time_to_minutes(stop.hhmm)
            if scheduled < 0:
                continue

            is_passed = i <= passed_idx
            is_approaching = not is_passed and i == passed_idx + 1
            ts = self.ms_clock()
            entry = ArrivalEntry(
                vehicle_no=vehicle_no,
                scheduled_time=stop.hhmm,
                estimated_time=minutes_to_time(scheduled + delay),
                delay_minutes=delay,
                is_approaching=is_approaching,
                approaching_desc=approaching_description(delay) if is_approaching else None,
                is_passed=is_passed,
                updated_at=ts,
            )

            with self._stop_locks.hold((hb.route_id, stop.stop_id)):
                existing = self.store.get_arrivals(hb.route_id, stop.stop_id)
                arrivals = merge_arrivals(
                    existing.arrivals if existing else [],
                    entry,
                    limit=self.max_arrivals,
                    sort_key=sort_key,
                    stale_before_ms=stale_before,
                )
                self.store.upsert_arrivals(StopArrivalRecord(
                    route_id=hb.route_id,
                    stop_id=stop.stop_id,
                    stop_name=stop.display_name(),
                    arrivals=arrivals,
                    updated_at=ts,
                ))
            updated.append(stop.stop_id)

        if updated and self.channel is not None:
            self.channel.broadcast(EVENT_ARRIVAL_UPDATED, {
                "routeId": hb.route_id,
                "vehicleNo": vehicle_no,
                "delayMinutes": delay,
                "updatedStops": updated,
                "ts": self.ms_clock(),
            })
        logger.debug(
            f"ETA: {vehicle_no} route={hb.route_id} dia={schedule_id} delay={delay} "
            f"passed_idx={passed_idx} stops={len(updated)}"
        )
        return updated
