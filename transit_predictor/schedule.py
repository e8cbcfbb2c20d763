"""
In-memory schedule graph: blocks, trips, stop paths and segments

The graph is built once per configuration revision by the loader and never
mutated afterwards, so it can be shared freely between worker threads.
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from transit_predictor.geo import Location
from transit_predictor.timeutils import MS_PER_SEC, ServiceClock


@dataclass(frozen=True)
class Segment:
    start: Location
    end: Location

    @property
    def length(self) -> float:
        return self.start.distance(self.end)


@dataclass(eq=False)
class StopPath:
    """Path leading up to a stop, split into straight segments"""

    stop_path_id: str
    stop_id: str
    gtfs_stop_seq: int
    segments: list[Segment]
    wait_stop: bool = False
    layover: bool = False
    break_time_sec: Optional[int] = None

    def __post_init__(self):
        if not self.segments:
            raise ValueError(f"Stop path {self.stop_path_id} has no segments")

    @property
    def length(self) -> float:
        return sum(segment.length for segment in self.segments)

    @property
    def stop_location(self) -> Location:
        return self.segments[-1].end

    def length_before_segment(self, segment_index: int) -> float:
        return sum(segment.length for segment in self.segments[:segment_index])


@dataclass(eq=False)
class TripPattern:
    pattern_id: str
    route_id: str
    direction_id: Optional[str]
    stop_paths: list[StopPath]


@dataclass(frozen=True)
class ScheduleTime:
    arrival_time: Optional[int] = None
    departure_time: Optional[int] = None

    @property
    def time(self) -> Optional[int]:
        return self.departure_time if self.departure_time is not None else self.arrival_time


@dataclass(frozen=True)
class StopPathTravelTime:
    travel_time_msec: int
    stop_time_msec: int = 0


@dataclass(eq=False)
class Trip:
    trip_id: str
    route_id: str
    direction_id: Optional[str]
    service_id: str
    block_id: str
    pattern: TripPattern
    start_time: int
    end_time: Optional[int] = None
    schedule_times: list[ScheduleTime] = field(default_factory=list)
    travel_times: list[StopPathTravelTime] = field(default_factory=list)
    no_schedule: bool = False
    route_short_name: Optional[str] = None
    headsign: Optional[str] = None

    def __post_init__(self):
        num_paths = len(self.pattern.stop_paths)
        if self.schedule_times and len(self.schedule_times) != num_paths:
            raise ValueError(f"Trip {self.trip_id}: one schedule time per stop path required")
        if not self.travel_times:
            self.travel_times = self._travel_times_from_schedule()
        if len(self.travel_times) != num_paths:
            raise ValueError(f"Trip {self.trip_id}: one travel time per stop path required")
        if self.end_time is None:
            times = [st.time for st in self.schedule_times if st.time is not None]
            self.end_time = max(times) if times else self.start_time

    @property
    def stop_paths(self) -> list[StopPath]:
        return self.pattern.stop_paths

    @property
    def num_stop_paths(self) -> int:
        return len(self.pattern.stop_paths)

    def schedule_time(self, stop_path_index: int) -> Optional[ScheduleTime]:
        if not self.schedule_times:
            return None
        return self.schedule_times[stop_path_index]

    def _travel_times_from_schedule(self) -> list[StopPathTravelTime]:
        """
        Derive per-path travel and dwell times from the schedule

        Stops without a scheduled time are interpolated by distance between
        the surrounding timed stops.
        """
        num_paths = len(self.pattern.stop_paths)
        if not self.schedule_times:
            return [StopPathTravelTime(0, 0) for _ in range(num_paths)]

        arrivals, departures = self._interpolated_times()
        result = []
        for i in range(num_paths):
            travel = 0 if i == 0 else max(0, arrivals[i] - departures[i - 1]) * MS_PER_SEC
            dwell = max(0, departures[i] - arrivals[i]) * MS_PER_SEC
            result.append(StopPathTravelTime(int(travel), int(dwell)))
        return result

    def _interpolated_times(self) -> tuple[list[float], list[float]]:
        paths = self.pattern.stop_paths
        cumulative = []
        total = 0.0
        for path in paths:
            total += path.length
            cumulative.append(total)

        timed = [
            (i, st) for i, st in enumerate(self.schedule_times) if st.time is not None
        ]
        if not timed:
            zeros = [float(self.start_time)] * len(paths)
            return zeros, list(zeros)

        arrivals: list[float] = []
        departures: list[float] = []
        for i, st in enumerate(self.schedule_times):
            if st.time is not None:
                arr = st.arrival_time if st.arrival_time is not None else st.departure_time
                dep = st.departure_time if st.departure_time is not None else st.arrival_time
                arrivals.append(float(arr))
                departures.append(float(dep))
                continue
            before = [(j, t) for j, t in timed if j < i]
            after = [(j, t) for j, t in timed if j > i]
            if not before:
                value = float(after[0][1].time)
            elif not after:
                value = float(before[-1][1].time)
            else:
                j0, t0 = before[-1]
                j1, t1 = after[0]
                span = cumulative[j1] - cumulative[j0]
                frac = (cumulative[i] - cumulative[j0]) / span if span > 0 else 0.0
                value = t0.time + frac * (t1.time - t0.time)
            arrivals.append(value)
            departures.append(value)
        return arrivals, departures


@dataclass(eq=False)
class Block:
    """Trips a single vehicle serves during one service day"""

    block_id: str
    service_id: str
    trips: list[Trip]

    def __post_init__(self):
        if not self.trips:
            raise ValueError(f"Block {self.block_id} has no trips")

    @property
    def no_schedule(self) -> bool:
        return self.trips[0].no_schedule

    @property
    def start_time(self) -> int:
        return self.trips[0].start_time

    @property
    def end_time(self) -> int:
        return self.trips[-1].end_time

    @property
    def num_trips(self) -> int:
        return len(self.trips)

    @property
    def route_ids(self) -> set[str]:
        return {trip.route_id for trip in self.trips}

    def trip(self, trip_index: int) -> Optional[Trip]:
        if 0 <= trip_index < len(self.trips):
            return self.trips[trip_index]
        return None

    def num_stop_paths(self, trip_index: int) -> int:
        return self.trips[trip_index].num_stop_paths

    def num_segments(self, trip_index: int, stop_path_index: int) -> int:
        return len(self.trips[trip_index].stop_paths[stop_path_index].segments)

    def stop_path(self, trip_index: int, stop_path_index: int) -> StopPath:
        return self.trips[trip_index].stop_paths[stop_path_index]

    def is_wait_stop(self, trip_index: int, stop_path_index: int) -> bool:
        return self.stop_path(trip_index, stop_path_index).wait_stop

    def is_layover(self, trip_index: int, stop_path_index: int) -> bool:
        return self.stop_path(trip_index, stop_path_index).layover

    def is_active(self, time_of_day_secs: int, allowable_before_secs: int = 0,
                  allowable_after_secs: int = 0) -> bool:
        return (
            self.start_time - allowable_before_secs
            <= time_of_day_secs
            <= self.end_time + allowable_after_secs
        )

    def active_trip_indices(self, time_of_day_secs: int, allowable_before_secs: int = 0,
                            allowable_after_secs: int = 0) -> list[int]:
        return [
            i
            for i, trip in enumerate(self.trips)
            if trip.start_time - allowable_before_secs
            <= time_of_day_secs
            <= trip.end_time + allowable_after_secs
        ]


class ScheduleGraph:
    """Read-only schedule snapshot for one configuration revision"""

    def __init__(
        self,
        blocks: Iterable[Block],
        calendars: Sequence = (),
        calendar_dates: Sequence = (),
        config_rev: int = 0,
        timezone: str = "UTC",
    ):
        self.config_rev = config_rev
        self.clock = ServiceClock(timezone)
        self.calendars = list(calendars)
        self.calendar_dates = list(calendar_dates)
        self._blocks: dict[tuple[str, str], Block] = {}
        self._blocks_by_service: dict[str, list[Block]] = {}
        self._trips: dict[str, Trip] = {}
        for block in blocks:
            self._blocks[(block.service_id, block.block_id)] = block
            self._blocks_by_service.setdefault(block.service_id, []).append(block)
            for trip in block.trips:
                self._trips[trip.trip_id] = trip

    @property
    def blocks(self) -> list[Block]:
        return list(self._blocks.values())

    def get_block(self, service_id: str, block_id: str) -> Optional[Block]:
        return self._blocks.get((service_id, block_id))

    def find_block(self, block_id: str, service_ids: Iterable[str]) -> Optional[Block]:
        for service_id in service_ids:
            block = self._blocks.get((service_id, block_id))
            if block is not None:
                return block
        return None

    def get_trip(self, trip_id: str) -> Optional[Trip]:
        return self._trips.get(trip_id)

    def blocks_for_service_ids(self, service_ids: Iterable[str]) -> list[Block]:
        result = []
        for service_id in service_ids:
            result.extend(self._blocks_by_service.get(service_id, []))
        return result
