"""
Position of a vehicle within its block

A PositionCursor points at (trip, stop path, segment) inside a Block. It can
only be constructed at a valid position; the out-of-range states "past end
of block" and "before beginning of block" are reached solely by moving it.
"""

from typing import Optional

from transit_predictor.schedule import Block, ScheduleTime, StopPath, StopPathTravelTime, Trip


class PositionCursor:
    __slots__ = ("block", "trip_index", "stop_path_index", "segment_index")

    def __init__(self, block: Block, trip_index: int, stop_path_index: int, segment_index: int):
        if block is None:
            raise ValueError("PositionCursor requires a block")

        trip = block.trip(trip_index)
        if trip is None:
            raise IndexError(
                f"Trip index {trip_index} out of range for block {block.block_id} "
                f"with {block.num_trips} trips"
            )
        if not 0 <= stop_path_index < trip.num_stop_paths:
            raise IndexError(
                f"Stop path index {stop_path_index} out of range for trip {trip.trip_id} "
                f"with {trip.num_stop_paths} stop paths"
            )
        num_segments = len(trip.stop_paths[stop_path_index].segments)
        if not 0 <= segment_index < num_segments:
            raise IndexError(
                f"Segment index {segment_index} out of range for stop path "
                f"{trip.stop_paths[stop_path_index].stop_path_id} with {num_segments} segments"
            )

        self.block = block
        self.trip_index = trip_index
        self.stop_path_index = stop_path_index
        self.segment_index = segment_index

    def clone(self) -> "PositionCursor":
        copy = object.__new__(PositionCursor)
        copy.block = self.block
        copy.trip_index = self.trip_index
        copy.stop_path_index = self.stop_path_index
        copy.segment_index = self.segment_index
        return copy

    # Accessors

    @property
    def trip(self) -> Optional[Trip]:
        return self.block.trip(self.trip_index)

    @property
    def stop_path(self) -> StopPath:
        return self.block.stop_path(self.trip_index, self.stop_path_index)

    @property
    def segment(self):
        return self.stop_path.segments[self.segment_index]

    @property
    def schedule_time(self) -> Optional[ScheduleTime]:
        return self.trip.schedule_time(self.stop_path_index)

    @property
    def travel_times(self) -> StopPathTravelTime:
        return self.trip.travel_times[self.stop_path_index]

    def previous_stop_path(self, count: int = 1) -> Optional[StopPath]:
        """Stop path `count` paths earlier in the same trip, or None"""
        index = self.stop_path_index - count
        if index < 0:
            return None
        return self.block.stop_path(self.trip_index, index)

    # Movement

    def _num_stop_paths(self) -> int:
        return self.block.num_stop_paths(self.trip_index)

    def _num_segments(self) -> int:
        return self.block.num_segments(self.trip_index, self.stop_path_index)

    def _next_trip(self, time_of_day_secs: int):
        # No-schedule blocks loop over the same trip until it has ended
        self.stop_path_index = 0
        if not self.block.no_schedule:
            self.trip_index += 1
        elif time_of_day_secs > self.trip.end_time:
            self.trip_index += 1

    def increment(self, time_of_day_secs: int = 0) -> "PositionCursor":
        self.segment_index += 1
        if self.segment_index >= self._num_segments():
            self.segment_index = 0
            self.stop_path_index += 1
            if self.stop_path_index >= self._num_stop_paths():
                self._next_trip(time_of_day_secs)
        return self

    def increment_stop_path(self, time_of_day_secs: int = 0) -> "PositionCursor":
        self.segment_index = 0
        self.stop_path_index += 1
        if self.stop_path_index >= self._num_stop_paths():
            self._next_trip(time_of_day_secs)
        return self

    def _previous_path(self):
        self.stop_path_index -= 1
        if self.stop_path_index < 0:
            if not self.block.no_schedule:
                self.trip_index -= 1
            if self.trip_index >= 0:
                self.stop_path_index = self._num_stop_paths() - 1
        if self.trip_index >= 0:
            self.segment_index = self._num_segments() - 1

    def decrement(self) -> "PositionCursor":
        self.segment_index -= 1
        if self.segment_index < 0:
            self._previous_path()
        return self

    def decrement_stop_path(self) -> "PositionCursor":
        self._previous_path()
        return self

    # Ordering

    def less_than(self, other: "PositionCursor") -> bool:
        return (self.trip_index, self.stop_path_index, self.segment_index) < (
            other.trip_index,
            other.stop_path_index,
            other.segment_index,
        )

    def is_earlier_stop_path_than(self, other: "PositionCursor") -> bool:
        if self.block.no_schedule:
            return self.stop_path_index < other.stop_path_index
        return (self.trip_index, self.stop_path_index) < (other.trip_index, other.stop_path_index)

    # Boundaries

    def past_end_of_block(self, time_of_day_secs: int = 0) -> bool:
        trip = self.block.trip(self.trip_index)
        if trip is None:
            return True
        if trip.no_schedule:
            return time_of_day_secs > trip.end_time
        return False

    def before_beginning_of_block(self) -> bool:
        return self.trip_index < 0

    def at_end_of_block(self) -> bool:
        return (
            self.trip_index == self.block.num_trips - 1
            and self.stop_path_index == self._num_stop_paths() - 1
            and self.segment_index == self._num_segments() - 1
        )

    def at_beginning_of_trip(self) -> bool:
        return self.stop_path_index == 0 and self.segment_index == 0

    def at_end_of_trip(self) -> bool:
        return self.stop_path_index == self._num_stop_paths() - 1

    def at_end_of_stop_path(self) -> bool:
        return self.segment_index == self._num_segments() - 1

    def is_layover(self) -> bool:
        return self.at_end_of_stop_path() and self.block.is_layover(
            self.trip_index, self.stop_path_index
        )

    def is_wait_stop(self) -> bool:
        return self.block.is_wait_stop(self.trip_index, self.stop_path_index)

    def __eq__(self, other):
        if not isinstance(other, PositionCursor):
            return NotImplemented
        return (
            self.block is other.block
            and self.trip_index == other.trip_index
            and self.stop_path_index == other.stop_path_index
            and self.segment_index == other.segment_index
        )

    def __hash__(self):
        return hash((id(self.block), self.trip_index, self.stop_path_index, self.segment_index))

    def __repr__(self):
        return (
            f"PositionCursor(block={self.block.block_id}, trip={self.trip_index}, "
            f"stop_path={self.stop_path_index}, segment={self.segment_index})"
        )
