"""
Kalman filter travel time prediction

The filter combines the travel time the previous vehicle just experienced
on a stop path with the travel times observed on the same trip over recent
days. The filter error from one prediction is cached per stop path and used
as the prior for the next one.
"""

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from transit_predictor.history import KeyedLocks


@dataclass(frozen=True)
class KalmanErrorCacheKey:
    trip_id: str
    stop_path_index: int


@dataclass(frozen=True)
class KalmanPredictionResult:
    result: float
    filter_error: float


@dataclass(frozen=True)
class TravelTimeDetails:
    """A departure/arrival pair and the travel time between them"""

    departure_time: int
    arrival_time: int
    vehicle_id: Optional[str] = None
    departure_stop_id: Optional[str] = None
    arrival_stop_id: Optional[str] = None
    trip_id: Optional[str] = None
    stop_path_index: Optional[int] = None

    @property
    def travel_time(self) -> int:
        return self.arrival_time - self.departure_time

    @classmethod
    def from_events(cls, departure, arrival) -> "TravelTimeDetails":
        return cls(
            departure_time=departure.time,
            arrival_time=arrival.time,
            vehicle_id=arrival.vehicle_id,
            departure_stop_id=departure.stop_id,
            arrival_stop_id=arrival.stop_id,
            trip_id=arrival.trip_id,
            stop_path_index=arrival.stop_path_index,
        )


class KalmanErrorCache:
    def __init__(self):
        self._errors: dict[KalmanErrorCacheKey, float] = {}
        self._locks = KeyedLocks()

    def get_error(self, key: KalmanErrorCacheKey) -> Optional[float]:
        return self._errors.get(key)

    def put_error(self, key: KalmanErrorCacheKey, error: float):
        with self._locks.lock_for(key):
            self._errors[key] = error

    def __len__(self):
        return len(self._errors)


class KalmanPrediction:
    def predict(self, last_vehicle_duration: float, historical_durations: Sequence[float],
                last_prediction_error: float) -> KalmanPredictionResult:
        """
        One predict/update step

        Args:
            last_vehicle_duration: travel time (msec) the previous vehicle took
            historical_durations: travel times (msec) on the same path on recent days
            last_prediction_error: filter error from the previous prediction

        Returns:
            KalmanPredictionResult with the predicted duration and new filter error
        """
        durations = np.asarray(historical_durations, dtype=float)
        if durations.size == 0:
            raise ValueError("Kalman prediction requires historical durations")

        average = float(durations.mean())
        variance = float(durations.var())
        denominator = last_prediction_error + 2 * variance
        if denominator == 0:
            gain = 0.5
        else:
            gain = (last_prediction_error + variance) / denominator
        loop_gain = 1 - gain

        result = loop_gain * last_vehicle_duration + gain * average
        return KalmanPredictionResult(result=result, filter_error=variance * gain)
