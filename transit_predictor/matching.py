"""
Spatial and temporal matching of AVL reports to block geometry

SpatialMatcher projects a report onto the segments of a block's trips and
keeps the closest segment per trip. TemporalMatcher then scores each
spatial match against the schedule to find the most plausible one.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from transit_predictor.config import CoreSettings
from transit_predictor.cursor import PositionCursor
from transit_predictor.deviation import ScheduleDeviation
from transit_predictor.geo import Location, project_onto_segment
from transit_predictor.schedule import Block, StopPath, Trip
from transit_predictor.timeutils import MS_PER_SEC, ServiceClock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpatialMatch:
    avl_time: int
    block: Block
    trip_index: int
    stop_path_index: int
    segment_index: int
    distance_to_segment: float
    distance_along_segment: float

    @property
    def cursor(self) -> PositionCursor:
        return PositionCursor(self.block, self.trip_index, self.stop_path_index, self.segment_index)

    @property
    def trip(self) -> Trip:
        return self.block.trips[self.trip_index]

    @property
    def stop_path(self) -> StopPath:
        return self.trip.stop_paths[self.stop_path_index]

    @property
    def distance_along_stop_path(self) -> float:
        return self.stop_path.length_before_segment(self.segment_index) + self.distance_along_segment

    @property
    def distance_remaining(self) -> float:
        return max(0.0, self.stop_path.length - self.distance_along_stop_path)

    @property
    def is_layover(self) -> bool:
        return self.stop_path.layover

    def for_block(self, block: Block, trip_index: int) -> "SpatialMatch":
        """Same geometric position on the same pattern, but for another block's trip"""
        return SpatialMatch(
            avl_time=self.avl_time,
            block=block,
            trip_index=trip_index,
            stop_path_index=self.stop_path_index,
            segment_index=self.segment_index,
            distance_to_segment=self.distance_to_segment,
            distance_along_segment=self.distance_along_segment,
        )

    def __str__(self):
        return (
            f"SpatialMatch(block={self.block.block_id}, trip={self.trip.trip_id}, "
            f"stop_path={self.stop_path_index}, segment={self.segment_index}, "
            f"dist={self.distance_to_segment:.1f}m)"
        )


class TemporalMatch:
    """A spatial match together with how early or late it makes the vehicle"""

    __slots__ = ("spatial_match", "deviation")

    def __init__(self, spatial_match: SpatialMatch, deviation: ScheduleDeviation):
        self.spatial_match = spatial_match
        self.deviation = deviation

    @property
    def avl_time(self) -> int:
        return self.spatial_match.avl_time

    @property
    def block(self) -> Block:
        return self.spatial_match.block

    @property
    def trip(self) -> Trip:
        return self.spatial_match.trip

    @property
    def trip_index(self) -> int:
        return self.spatial_match.trip_index

    @property
    def stop_path_index(self) -> int:
        return self.spatial_match.stop_path_index

    @property
    def stop_path(self) -> StopPath:
        return self.spatial_match.stop_path

    @property
    def cursor(self) -> PositionCursor:
        return self.spatial_match.cursor

    @property
    def is_layover(self) -> bool:
        return self.spatial_match.is_layover

    def less_than_or_equal_to(self, other: "TemporalMatch") -> bool:
        mine, theirs = self.cursor, other.cursor
        if mine.less_than(theirs):
            return True
        if mine == theirs:
            return (
                self.spatial_match.distance_along_segment
                <= other.spatial_match.distance_along_segment
            )
        return False

    def __repr__(self):
        return f"TemporalMatch({self.spatial_match}, deviation={self.deviation})"


class SpatialMatcher:
    def __init__(self, settings: Optional[CoreSettings] = None):
        self.settings = settings or CoreSettings()

    def best_match_for_trip(self, location: Location, avl_time: int, block: Block,
                            trip_index: int) -> Optional[SpatialMatch]:
        """Closest segment of one trip, if within the allowed distance"""
        best = None
        trip = block.trips[trip_index]
        for path_index, path in enumerate(trip.stop_paths):
            for seg_index, segment in enumerate(path.segments):
                distance, along = project_onto_segment(location, segment.start, segment.end)
                if distance > self.settings.max_distance_from_segment:
                    continue
                if best is None or distance < best.distance_to_segment:
                    best = SpatialMatch(
                        avl_time=avl_time,
                        block=block,
                        trip_index=trip_index,
                        stop_path_index=path_index,
                        segment_index=seg_index,
                        distance_to_segment=distance,
                        distance_along_segment=min(along, segment.length),
                    )
        return best

    def spatial_matches(self, location: Location, avl_time: int, block: Block,
                        trip_indices: Iterable[int],
                        exclude_layovers: bool = False) -> list[SpatialMatch]:
        matches = []
        for trip_index in trip_indices:
            match = self.best_match_for_trip(location, avl_time, block, trip_index)
            if match is None:
                continue
            if exclude_layovers and match.is_layover:
                continue
            matches.append(match)
        return matches


class TemporalMatcher:
    def __init__(self, clock: ServiceClock, settings: Optional[CoreSettings] = None):
        self.clock = clock
        self.settings = settings or CoreSettings()

    def scheduled_time_at_match(self, match: SpatialMatch) -> Optional[int]:
        """
        Epoch msec at which the schedule expects a vehicle at the match location

        Interpolated along the stop path between the previous stop's
        departure and this stop's arrival.
        """
        trip = match.trip
        if trip.no_schedule or not trip.schedule_times:
            return None

        path_index = match.stop_path_index
        current = trip.travel_times[path_index]
        if path_index == 0:
            sched_secs = trip.schedule_times[0].time
            if sched_secs is None:
                sched_secs = trip.start_time
            return self.clock.epoch_time(sched_secs, match.avl_time)

        # Departure from the previous stop, derived from the travel times so
        # that untimed stops are handled through interpolation.
        first = trip.schedule_times[0]
        first_arrival_secs = first.arrival_time if first.arrival_time is not None else first.time
        if first_arrival_secs is None:
            first_arrival_secs = trip.start_time
        prev_departure_secs = first_arrival_secs + sum(
            tt.travel_time_msec + tt.stop_time_msec for tt in trip.travel_times[:path_index]
        ) / MS_PER_SEC
        length = match.stop_path.length
        fraction = match.distance_along_stop_path / length if length > 0 else 1.0
        sched_secs = prev_departure_secs + fraction * current.travel_time_msec / MS_PER_SEC
        return self.clock.epoch_time(int(round(sched_secs)), match.avl_time)

    def deviation_for_match(self, match: SpatialMatch) -> ScheduleDeviation:
        sched_ms = self.scheduled_time_at_match(match)
        if sched_ms is None:
            return ScheduleDeviation(0, self.settings)
        return ScheduleDeviation(sched_ms - match.avl_time, self.settings)

    def best_temporal_match(self, spatial_matches: Sequence[SpatialMatch],
                            previous_match: Optional[TemporalMatch] = None,
                            allowable_early_secs: Optional[int] = None,
                            allowable_late_secs: Optional[int] = None) -> Optional[TemporalMatch]:
        """
        Best scoring match whose deviation is within the allowable bounds

        For no-schedule trips all matches score zero, so forward progress
        from previous_match (when given) decides between them.
        """
        best: Optional[TemporalMatch] = None
        for spatial in spatial_matches:
            deviation = self.deviation_for_match(spatial)
            if not deviation.is_within_bounds(allowable_early_secs, allowable_late_secs):
                logger.debug("Rejected %s, deviation %s out of bounds", spatial, deviation)
                continue
            candidate = TemporalMatch(spatial, deviation)
            if best is None:
                best = candidate
            elif deviation.better_than(best.deviation):
                best = candidate
            elif (
                previous_match is not None
                and spatial.trip.no_schedule
                and deviation.better_than_or_equal_to(best.deviation)
                and self._progress(previous_match, candidate) < self._progress(previous_match, best)
            ):
                best = candidate
        return best

    @staticmethod
    def _progress(previous: TemporalMatch, candidate: TemporalMatch) -> int:
        """Number of stop paths moved forward from previous to candidate"""
        prev_cursor = previous.cursor
        cand_cursor = candidate.cursor
        if cand_cursor.less_than(prev_cursor) and not cand_cursor.block.no_schedule:
            return 10**6
        diff = cand_cursor.stop_path_index - prev_cursor.stop_path_index
        if diff < 0:
            diff += cand_cursor.trip.num_stop_paths
        return diff
