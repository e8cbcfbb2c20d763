"""
Arrival/departure history caches

TripHistoryCache keeps the events of each trip instance (trip, service day,
start time); StopHistoryCache keeps the events seen at each stop per service
day. Both are shared across worker threads and lock per key.
"""

import bisect
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Hashable, Iterable, Optional

from transit_predictor.config import HistoricalAverageSettings
from transit_predictor.timeutils import ServiceClock

logger = logging.getLogger(__name__)


def _optional_int(value) -> Optional[int]:
    return None if value is None else int(value)


@dataclass(frozen=True)
class ArrivalDepartureEvent:
    vehicle_id: str
    time: int
    is_arrival: bool
    stop_id: str
    stop_path_index: int
    trip_id: str
    trip_start_time: int
    route_id: Optional[str] = None
    block_id: Optional[str] = None
    direction_id: Optional[str] = None
    service_id: Optional[str] = None
    trip_index: Optional[int] = None
    gtfs_stop_seq: Optional[int] = None
    freq_start_time: Optional[int] = None
    scheduled_time: Optional[int] = None
    avl_time: Optional[int] = None

    @property
    def is_departure(self) -> bool:
        return not self.is_arrival

    @property
    def sort_key(self) -> tuple[int, int]:
        # Arrival before departure at the same instant
        return self.time, 0 if self.is_arrival else 1

    @classmethod
    def from_record(cls, record) -> "ArrivalDepartureEvent":
        """Build from an ArrivalDeparture row or any object with the same attributes"""
        return cls(
            vehicle_id=record.vehicle_id,
            time=int(record.time),
            is_arrival=bool(record.is_arrival),
            stop_id=record.stop_id,
            stop_path_index=int(record.stop_path_index),
            trip_id=record.trip_id,
            trip_start_time=int(record.trip_start_time or 0),
            route_id=record.route_id,
            block_id=record.block_id,
            direction_id=record.direction_id,
            service_id=record.service_id,
            trip_index=_optional_int(record.trip_index),
            gtfs_stop_seq=_optional_int(record.gtfs_stop_seq),
            freq_start_time=_optional_int(record.freq_start_time),
            scheduled_time=_optional_int(record.scheduled_time),
            avl_time=_optional_int(record.avl_time),
        )


@dataclass(frozen=True)
class TripKey:
    trip_id: str
    service_date: int
    start_time: int


@dataclass(frozen=True)
class StopArrivalDepartureCacheKey:
    stop_id: str
    service_date: int


class KeyedLocks:
    """A lock per key, created on first use"""

    def __init__(self):
        self._locks: dict[Hashable, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, key: Hashable) -> threading.Lock:
        lock = self._locks.get(key)
        if lock is None:
            with self._guard:
                lock = self._locks.setdefault(key, threading.Lock())
        return lock

    def discard(self, key: Hashable):
        with self._guard:
            self._locks.pop(key, None)


def travel_time_filtered(departure: ArrivalDepartureEvent, arrival: ArrivalDepartureEvent,
                         settings: HistoricalAverageSettings) -> bool:
    """True if the departure->arrival duration is outside the sanity bounds"""
    duration = arrival.time - departure.time
    return not settings.min_travel_time_msec < duration < settings.max_travel_time_msec


def dwell_time_filtered(arrival: ArrivalDepartureEvent, departure: ArrivalDepartureEvent,
                        settings: HistoricalAverageSettings) -> bool:
    duration = departure.time - arrival.time
    return not settings.min_dwell_time_msec <= duration < settings.max_dwell_time_msec


class TripHistoryCache:
    def __init__(self, clock: ServiceClock):
        self.clock = clock
        self._events: dict[TripKey, list[ArrivalDepartureEvent]] = {}
        self._locks = KeyedLocks()

    def key_for(self, event: ArrivalDepartureEvent) -> TripKey:
        service_date = self.clock.service_day_start(event.time, event.trip_start_time)
        return TripKey(event.trip_id, service_date, event.trip_start_time)

    def put_arrival_departure(self, event: ArrivalDepartureEvent) -> bool:
        """Store the event; returns False if it was already in the history"""
        key = self.key_for(event)
        with self._locks.lock_for(key):
            events = self._events.setdefault(key, [])
            if event in events:
                return False
            bisect.insort(events, event, key=lambda e: e.sort_key)
            return True

    def get_trip_history(self, key: TripKey) -> list[ArrivalDepartureEvent]:
        events = self._events.get(key)
        if events is None:
            return []
        with self._locks.lock_for(key):
            return list(events)

    def keys(self) -> list[TripKey]:
        return list(self._events.keys())

    @staticmethod
    def find_previous_departure_event(events: Iterable[ArrivalDepartureEvent],
                                      current: ArrivalDepartureEvent) -> Optional[ArrivalDepartureEvent]:
        """Departure of the same vehicle from the stop before current's stop"""
        for event in events:
            if (
                event.is_departure
                and current.is_arrival
                and event.vehicle_id == current.vehicle_id
                and event.stop_path_index == current.stop_path_index - 1
            ):
                return event
        return None

    @staticmethod
    def find_previous_arrival_event(events: Iterable[ArrivalDepartureEvent],
                                    current: ArrivalDepartureEvent) -> Optional[ArrivalDepartureEvent]:
        """Arrival of the same vehicle at current's stop, for a departure event"""
        for event in events:
            if (
                event.is_arrival
                and current.is_departure
                and event.vehicle_id == current.vehicle_id
                and event.stop_id == current.stop_id
                and event.stop_path_index == current.stop_path_index
            ):
                return event
        return None

    def prune(self, older_than_ms: int) -> int:
        """Drop trip instances whose service day started before older_than_ms"""
        stale = [key for key in list(self._events) if key.service_date < older_than_ms]
        for key in stale:
            self._events.pop(key, None)
            self._locks.discard(key)
        return len(stale)

    def __len__(self):
        return len(self._events)


class StopHistoryCache:
    """Events per stop and service day, newest first"""

    def __init__(self, clock: ServiceClock):
        self.clock = clock
        self._events: dict[StopArrivalDepartureCacheKey, list[ArrivalDepartureEvent]] = \
            defaultdict(list)
        self._locks = KeyedLocks()

    def key_for(self, stop_id: str, time: int) -> StopArrivalDepartureCacheKey:
        return StopArrivalDepartureCacheKey(stop_id, self.clock.start_of_day(time))

    def put_arrival_departure(self, event: ArrivalDepartureEvent) -> StopArrivalDepartureCacheKey:
        key = self.key_for(event.stop_id, event.time)
        with self._locks.lock_for(key):
            events = self._events[key]
            if event not in events:
                # Stored oldest first; readers get the reversed copy
                bisect.insort(events, event, key=lambda e: e.sort_key)
        return key

    def get_stop_history(self, key: StopArrivalDepartureCacheKey) -> list[ArrivalDepartureEvent]:
        if key not in self._events:
            return []
        with self._locks.lock_for(key):
            return list(reversed(self._events[key]))

    def prune(self, older_than_ms: int) -> int:
        stale = [key for key in list(self._events) if key.service_date < older_than_ms]
        for key in stale:
            self._events.pop(key, None)
            self._locks.discard(key)
        return len(stale)

    def __len__(self):
        return len(self._events)
