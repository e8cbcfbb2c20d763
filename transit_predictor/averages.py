"""
Historical average travel and dwell times per stop path

Averages are maintained incrementally (count + running mean); they are never
recomputed from raw samples. Schedule-based trips are keyed by trip and stop
path. Frequency-based trips additionally bucket by the trip start time
(seconds after 02:00) rounded down to a configurable increment.
"""

import bisect
import logging
from dataclasses import dataclass
from typing import Optional

from transit_predictor.config import HistoricalAverageSettings
from transit_predictor.history import (
    ArrivalDepartureEvent,
    KeyedLocks,
    TripHistoryCache,
    dwell_time_filtered,
    travel_time_filtered,
)
from transit_predictor.timeutils import ServiceClock

logger = logging.getLogger(__name__)

# Frequency service day is considered to start at 2am
FREQUENCY_DAY_START_HOUR = 2


@dataclass(frozen=True)
class HistoricalAverage:
    count: int = 0
    average: float = 0.0

    def update(self, value: float) -> "HistoricalAverage":
        count = self.count + 1
        return HistoricalAverage(count, self.average + (value - self.average) / count)

    def merge(self, other: "HistoricalAverage") -> "HistoricalAverage":
        count = self.count + other.count
        if count == 0:
            return HistoricalAverage()
        average = (self.average * self.count + other.average * other.count) / count
        return HistoricalAverage(count, average)


@dataclass(frozen=True)
class StopPathCacheKey:
    """
    Key for per-stop-path data

    travel_time selects travel (True) or dwell (False) durations. start_time
    is only set for frequency-based trips (seconds after 02:00).
    """

    trip_id: str
    stop_path_index: int
    travel_time: bool = True
    start_time: Optional[int] = None


class ScheduleBasedHistoricalAverageCache:
    def __init__(self, trip_history: TripHistoryCache,
                 settings: Optional[HistoricalAverageSettings] = None):
        self.trip_history = trip_history
        self.settings = settings or HistoricalAverageSettings()
        self._averages: dict[StopPathCacheKey, HistoricalAverage] = {}
        self._locks = KeyedLocks()

    def get_average(self, key: StopPathCacheKey) -> Optional[HistoricalAverage]:
        return self._averages.get(key)

    def put_average(self, key: StopPathCacheKey, value: float) -> HistoricalAverage:
        with self._locks.lock_for(key):
            average = self._averages.get(key, HistoricalAverage()).update(value)
            self._averages[key] = average
            return average

    def put_arrival_departure(self, event: ArrivalDepartureEvent):
        if event.freq_start_time is not None:
            return

        events = self.trip_history.get_trip_history(self.trip_history.key_for(event))
        if event.is_arrival:
            previous = TripHistoryCache.find_previous_departure_event(events, event)
            if previous is not None and not travel_time_filtered(previous, event, self.settings):
                key = StopPathCacheKey(event.trip_id, event.stop_path_index, True)
                self.put_average(key, event.time - previous.time)
        else:
            previous = TripHistoryCache.find_previous_arrival_event(events, event)
            if previous is not None and not dwell_time_filtered(previous, event, self.settings):
                key = StopPathCacheKey(event.trip_id, event.stop_path_index, False)
                self.put_average(key, event.time - previous.time)

    def __len__(self):
        return len(self._averages)


class FrequencyBasedHistoricalAverageCache:
    def __init__(self, trip_history: TripHistoryCache, clock: ServiceClock,
                 settings: Optional[HistoricalAverageSettings] = None):
        self.trip_history = trip_history
        self.clock = clock
        self.settings = settings or HistoricalAverageSettings()
        # (trip, stop path, travel flag) -> sorted bucket start times and their averages
        self._bucket_times: dict[StopPathCacheKey, list[int]] = {}
        self._buckets: dict[tuple[StopPathCacheKey, int], HistoricalAverage] = {}
        self._locks = KeyedLocks()

    def seconds_from_day_start(self, epoch_ms: int) -> int:
        secs = self.clock.seconds_into_day(epoch_ms) - FREQUENCY_DAY_START_HOUR * 3600
        if secs < 0:
            secs += 24 * 3600
        return secs

    def bucket_start(self, secs: int) -> int:
        increment = self.settings.cache_increments_for_frequency_service
        return (secs // increment) * increment

    @staticmethod
    def _base_key(key: StopPathCacheKey) -> StopPathCacheKey:
        return StopPathCacheKey(key.trip_id, key.stop_path_index, key.travel_time)

    def get_average(self, key: StopPathCacheKey) -> Optional[HistoricalAverage]:
        """
        Average for the bucket at or after key.start_time, within one increment

        Returns None unless exactly one bucket falls in that window.
        """
        if key.start_time is None:
            return None
        base = self._base_key(key)
        times = self._bucket_times.get(base)
        if not times:
            return None
        with self._locks.lock_for(base):
            lo = bisect.bisect_left(times, key.start_time)
            hi = bisect.bisect_left(
                times, key.start_time + self.settings.cache_increments_for_frequency_service
            )
            if hi - lo != 1:
                return None
            return self._buckets.get((base, times[lo]))

    def put_average(self, key: StopPathCacheKey, value: float) -> HistoricalAverage:
        base = self._base_key(key)
        bucket = self.bucket_start(key.start_time)
        with self._locks.lock_for(base):
            times = self._bucket_times.setdefault(base, [])
            if bucket not in times:
                bisect.insort(times, bucket)
            average = self._buckets.get((base, bucket), HistoricalAverage()).update(value)
            self._buckets[(base, bucket)] = average
            return average

    def put_arrival_departure(self, event: ArrivalDepartureEvent):
        if event.freq_start_time is None:
            return

        start_secs = self.seconds_from_day_start(event.freq_start_time)
        events = [
            e
            for e in self.trip_history.get_trip_history(self.trip_history.key_for(event))
            if e.freq_start_time == event.freq_start_time
        ]
        if event.is_arrival:
            previous = TripHistoryCache.find_previous_departure_event(events, event)
            if previous is not None and not travel_time_filtered(previous, event, self.settings):
                key = StopPathCacheKey(event.trip_id, event.stop_path_index, True, start_secs)
                self.put_average(key, event.time - previous.time)
        else:
            previous = TripHistoryCache.find_previous_arrival_event(events, event)
            if previous is not None and not dwell_time_filtered(previous, event, self.settings):
                key = StopPathCacheKey(event.trip_id, event.stop_path_index, False, start_secs)
                self.put_average(key, event.time - previous.time)

    def lookup_key(self, trip_id: str, stop_path_index: int, travel_time: bool,
                   freq_start_time_ms: int) -> StopPathCacheKey:
        secs = self.bucket_start(self.seconds_from_day_start(freq_start_time_ms))
        return StopPathCacheKey(trip_id, stop_path_index, travel_time, secs)

    def __len__(self):
        return len(self._buckets)
