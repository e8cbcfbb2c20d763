"""
Per-vehicle state and the registry that owns it

Each VehicleStatus carries its own re-entrant lock. The whole
match-and-predict cycle for a vehicle runs while holding that lock, so
updates for one vehicle are serialized while different vehicles proceed in
parallel. Readers (monitoring, API) may look at a status without the lock and
accept a slightly stale view.
"""

import threading
from collections import deque
from dataclasses import dataclass
from typing import Optional

from transit_predictor.deviation import ScheduleDeviation
from transit_predictor.geo import Location, haversine_distance
from transit_predictor.matching import TemporalMatch
from transit_predictor.schedule import Block, Trip


@dataclass(frozen=True)
class AvlReport:
    vehicle_id: str
    lat: float
    lon: float
    time: int
    assignment_id: Optional[str] = None
    heading: Optional[float] = None
    speed: Optional[float] = None
    for_sched_based_preds: bool = False

    @property
    def location(self) -> Location:
        return Location(self.lat, self.lon)

    def distance_to(self, other: "AvlReport") -> float:
        return haversine_distance(self.lat, self.lon, other.lat, other.lon)


class AssignmentMethod:
    AUTO_ASSIGNER = "auto_assigner"
    AVL_FEED = "avl_feed"


class VehicleStatus:
    def __init__(self, vehicle_id: str, avl_history_size: int = 20):
        self.vehicle_id = vehicle_id
        self.lock = threading.RLock()
        self.avl_history: deque[AvlReport] = deque(maxlen=avl_history_size)
        self.match: Optional[TemporalMatch] = None
        self.block: Optional[Block] = None
        self.assignment_id: Optional[str] = None
        self.assignment_method: Optional[str] = None
        self.assignment_time: Optional[int] = None
        self.predictable = False
        self.bad_assignments_in_a_row = 0
        self.real_time_sched_adh: Optional[ScheduleDeviation] = None
        self.is_delayed = False
        self.holding_time = None
        self.canceled = False
        self.predictions: list = []
        self.trip_counter = 0
        self._trip_start_times: dict[int, int] = {}

    @property
    def avl_report(self) -> Optional[AvlReport]:
        return self.avl_history[-1] if self.avl_history else None

    def set_avl_report(self, report: AvlReport):
        self.avl_history.append(report)

    def previous_avl_report(self, min_distance_m: float) -> Optional[AvlReport]:
        """Most recent earlier report at least min_distance_m from the current one"""
        current = self.avl_report
        if current is None:
            return None
        for report in reversed(list(self.avl_history)[:-1]):
            if report.distance_to(current) >= min_distance_m:
                return report
        return None

    @property
    def for_sched_based_preds(self) -> bool:
        report = self.avl_report
        return report is not None and report.for_sched_based_preds

    @property
    def trip(self) -> Optional[Trip]:
        return self.match.trip if self.match is not None else None

    @property
    def route_id(self) -> Optional[str]:
        trip = self.trip
        return trip.route_id if trip is not None else None

    @property
    def block_id(self) -> Optional[str]:
        return self.block.block_id if self.block is not None else None

    def set_match(self, match: Optional[TemporalMatch]):
        self.match = match

    def set_block(self, block: Block, assignment_method: str, assignment_id: str, time: int):
        if self.block is not block:
            self.trip_counter = 0
            self._trip_start_times.clear()
        self.block = block
        self.assignment_method = assignment_method
        self.assignment_id = assignment_id
        self.assignment_time = time
        self.predictable = True
        self.bad_assignments_in_a_row = 0

    def unset_block(self):
        self.block = None
        self.match = None
        self.assignment_id = None
        self.assignment_method = None
        self.predictable = False
        self.real_time_sched_adh = None
        self.predictions = []

    def put_trip_start_time(self, trip_counter: int, start_time: int):
        self._trip_start_times[trip_counter] = start_time

    def trip_start_time(self, trip_counter: int) -> Optional[int]:
        return self._trip_start_times.get(trip_counter)

    def to_dict(self) -> dict:
        """Snapshot for the monitoring API"""
        report = self.avl_report
        match = self.match
        return {
            "vehicle_id": self.vehicle_id,
            "predictable": self.predictable,
            "block_id": self.block_id,
            "trip_id": match.trip.trip_id if match else None,
            "route_id": self.route_id,
            "stop_path_index": match.stop_path_index if match else None,
            "assignment_method": self.assignment_method,
            "schedule_deviation_msec": (
                self.real_time_sched_adh.msec if self.real_time_sched_adh else None
            ),
            "schedule_deviation": str(self.real_time_sched_adh) if self.real_time_sched_adh else None,
            "is_delayed": self.is_delayed,
            "canceled": self.canceled,
            "last_avl_time": report.time if report else None,
            "lat": report.lat if report else None,
            "lon": report.lon if report else None,
        }

    def __repr__(self):
        return f"VehicleStatus({self.vehicle_id}, block={self.block_id}, predictable={self.predictable})"


class VehicleStatusRegistry:
    """Concurrent map of vehicle ID to its VehicleStatus"""

    def __init__(self, avl_history_size: int = 20):
        self._statuses: dict[str, VehicleStatus] = {}
        self._lock = threading.Lock()
        self.avl_history_size = avl_history_size

    def get_status(self, vehicle_id: str) -> VehicleStatus:
        """Return the vehicle's status, creating it on first use"""
        status = self._statuses.get(vehicle_id)
        if status is not None:
            return status
        with self._lock:
            status = self._statuses.get(vehicle_id)
            if status is None:
                status = VehicleStatus(vehicle_id, self.avl_history_size)
                self._statuses[vehicle_id] = status
            return status

    def find_status(self, vehicle_id: str) -> Optional[VehicleStatus]:
        return self._statuses.get(vehicle_id)

    def statuses(self) -> list[VehicleStatus]:
        with self._lock:
            return list(self._statuses.values())

    def vehicles_for_block(self, block_id: str) -> list[VehicleStatus]:
        return [status for status in self.statuses() if status.block_id == block_id]

    def __len__(self):
        return len(self._statuses)
