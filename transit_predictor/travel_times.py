"""Expected travel and dwell times derived from each trip's travel times"""

from typing import Optional

from transit_predictor.config import CoreSettings
from transit_predictor.cursor import PositionCursor
from transit_predictor.matching import SpatialMatch
from transit_predictor.timeutils import MS_PER_SEC, ServiceClock


class TravelTimes:
    def __init__(self, clock: ServiceClock, settings: Optional[CoreSettings] = None):
        self.clock = clock
        self.settings = settings or CoreSettings()

    def travel_time_for_path(self, cursor: PositionCursor) -> int:
        return cursor.travel_times.travel_time_msec

    def stop_time_for_path(self, cursor: PositionCursor) -> int:
        return cursor.travel_times.stop_time_msec

    def travel_time_from_match_to_end_of_stop_path(self, match: SpatialMatch) -> int:
        path_time = match.trip.travel_times[match.stop_path_index].travel_time_msec
        length = match.stop_path.length
        if length <= 0:
            return 0
        return int(round(path_time * match.distance_remaining / length))

    def travel_time_from_trip_start_to_match(self, match: SpatialMatch) -> int:
        """Expected msec from leaving the trip's first stop to reaching the match"""
        travel_times = match.trip.travel_times
        total = 0
        for index in range(1, match.stop_path_index):
            total += travel_times[index].travel_time_msec + travel_times[index].stop_time_msec
        if match.stop_path_index > 0:
            length = match.stop_path.length
            fraction = match.distance_along_stop_path / length if length > 0 else 1.0
            total += int(round(travel_times[match.stop_path_index].travel_time_msec * fraction))
        return total

    def scheduled_departure_time(self, cursor: PositionCursor, reference_ms: int) -> int:
        """Epoch msec of the scheduled departure at the cursor's stop (reference_ms if unscheduled)"""
        sched = cursor.schedule_time
        if sched is None or sched.time is None:
            return reference_ms
        return self.clock.epoch_time(sched.time, reference_ms)

    def travel_time_as_crow_flies(self, distance_m: float) -> int:
        return int(distance_m / self.settings.crow_flies_speed_mps * MS_PER_SEC)

    def expected_travel_time_between_matches(self, start: SpatialMatch, end: SpatialMatch) -> int:
        """
        Expected msec to go from start to end along the block

        Includes dwell at intermediate stops. Returns a negative value if end
        lies before start on the same stop path.
        """
        def on_end_path(trip_index: int, stop_path_index: int) -> bool:
            # Trip index is not meaningful for looping no-schedule blocks
            if stop_path_index != end.stop_path_index:
                return False
            return start.block.no_schedule or trip_index == end.trip_index

        if on_end_path(start.trip_index, start.stop_path_index):
            path_time = start.trip.travel_times[start.stop_path_index].travel_time_msec
            length = start.stop_path.length
            if length <= 0:
                return 0
            along = end.distance_along_stop_path - start.distance_along_stop_path
            return int(round(path_time * along / length))

        total = self.travel_time_from_match_to_end_of_stop_path(start)
        cursor = start.cursor
        total += self.stop_time_for_path(cursor)
        # Bounded walk; no-schedule trips loop so the end may wrap around
        max_steps = sum(trip.num_stop_paths for trip in start.block.trips) + 1
        time_of_day = self.clock.seconds_into_day(start.avl_time)
        for _ in range(max_steps):
            cursor.increment_stop_path(time_of_day)
            if cursor.past_end_of_block(time_of_day):
                break
            if on_end_path(cursor.trip_index, cursor.stop_path_index):
                path_time = self.travel_time_for_path(cursor)
                length = end.stop_path.length
                fraction = end.distance_along_stop_path / length if length > 0 else 1.0
                return total + int(round(path_time * fraction))
            total += self.travel_time_for_path(cursor) + self.stop_time_for_path(cursor)
        return total
