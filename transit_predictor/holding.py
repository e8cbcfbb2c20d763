"""
Holding times: how long a vehicle should wait at a control stop

The prediction engine calls a HoldingTimeGenerator when a vehicle's
predicted arrival at a stop is close enough; the result is stored in the
HoldingTimeCache and on the VehicleStatus.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HoldingTime:
    vehicle_id: str
    stop_id: str
    trip_id: str
    route_id: Optional[str]
    arrival_time: int
    holding_time: int
    creation_time: int
    arrival_prediction_used: bool = True

    @property
    def hold_msec(self) -> int:
        return max(0, self.holding_time - self.arrival_time)


@dataclass(frozen=True)
class HoldingTimeCacheKey:
    stop_id: str
    vehicle_id: str
    trip_id: str


class HoldingTimeCache:
    def __init__(self):
        self._holding_times: dict[HoldingTimeCacheKey, HoldingTime] = {}
        self._lock = threading.Lock()

    def put_holding_time(self, holding_time: HoldingTime):
        key = HoldingTimeCacheKey(holding_time.stop_id, holding_time.vehicle_id, holding_time.trip_id)
        with self._lock:
            self._holding_times[key] = holding_time

    def get_holding_time(self, key: HoldingTimeCacheKey) -> Optional[HoldingTime]:
        return self._holding_times.get(key)

    def __len__(self):
        return len(self._holding_times)


class HoldingTimeGenerator:
    """Generates no holding times"""

    def generate_holding_time(self, status, prediction, now: int) -> Optional[HoldingTime]:
        return None


class ScheduleHoldingTimeGenerator(HoldingTimeGenerator):
    """Hold vehicles at wait stops until the scheduled departure"""

    def __init__(self, travel_times):
        self.travel_times = travel_times

    def generate_holding_time(self, status, prediction, now: int) -> Optional[HoldingTime]:
        if status.match is None:
            return None

        cursor = prediction.cursor
        if cursor is None or not cursor.is_wait_stop():
            return None

        scheduled = self.travel_times.scheduled_departure_time(cursor, prediction.prediction_time)
        holding_time = HoldingTime(
            vehicle_id=status.vehicle_id,
            stop_id=prediction.stop_id,
            trip_id=prediction.trip_id,
            route_id=prediction.route_id,
            arrival_time=prediction.prediction_time,
            holding_time=max(prediction.prediction_time, scheduled),
            creation_time=now,
            arrival_prediction_used=prediction.is_arrival,
        )
        logger.debug("Generated %s", holding_time)
        return holding_time
