"""
Prediction engine

Starting from a vehicle's current match, walks forward through its block one
stop at a time and produces an arrival or departure prediction for each
stop, using a TravelTimeStrategy for per-path travel and dwell times.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from transit_predictor.bias import BiasAdjuster, NoBiasAdjuster
from transit_predictor.config import Settings
from transit_predictor.cursor import PositionCursor
from transit_predictor.holding import HoldingTimeCache, HoldingTimeCacheKey, HoldingTimeGenerator
from transit_predictor.sinks import ResultsSink
from transit_predictor.strategies import TravelTimeStrategy
from transit_predictor.timeutils import MS_PER_SEC, ServiceClock
from transit_predictor.travel_times import TravelTimes

logger = logging.getLogger(__name__)

# Upper bound on stops visited in one walk through a block
MAX_STOPS_PER_GENERATION = 2000


def current_time_ms() -> int:
    return int(time.time() * MS_PER_SEC)


@dataclass
class Prediction:
    vehicle_id: str
    stop_id: str
    gtfs_stop_seq: int
    trip_id: str
    route_id: str
    block_id: str
    trip_start_time: int
    prediction_time: int
    actual_prediction_time: int
    avl_time: int
    creation_time: int
    is_arrival: bool
    at_end_of_trip: bool = False
    affected_by_wait_stop: bool = False
    is_delayed: bool = False
    late_and_subsequent_trip_so_uncertain: bool = False
    sched_based_pred: bool = False
    schedule_deviation_msec: Optional[int] = None
    freq_start_time: Optional[int] = None
    trip_counter: int = 0
    cursor: Optional[PositionCursor] = field(default=None, repr=False, compare=False)

    @property
    def dedupe_key(self) -> tuple:
        return self.block_id, self.vehicle_id, self.stop_id, self.route_id

    def to_dict(self) -> dict:
        return {
            "vehicle_id": self.vehicle_id,
            "stop_id": self.stop_id,
            "gtfs_stop_seq": self.gtfs_stop_seq,
            "trip_id": self.trip_id,
            "route_id": self.route_id,
            "block_id": self.block_id,
            "prediction_time": self.prediction_time,
            "avl_time": self.avl_time,
            "is_arrival": self.is_arrival,
            "affected_by_wait_stop": self.affected_by_wait_stop,
            "is_delayed": self.is_delayed,
            "late_and_subsequent_trip_so_uncertain": self.late_and_subsequent_trip_so_uncertain,
            "sched_based_pred": self.sched_based_pred,
        }


class PredictionEngine:
    def __init__(
        self,
        strategy: TravelTimeStrategy,
        travel_times: TravelTimes,
        clock: ServiceClock,
        settings: Optional[Settings] = None,
        bias_adjuster: Optional[BiasAdjuster] = None,
        holding_generator: Optional[HoldingTimeGenerator] = None,
        holding_cache: Optional[HoldingTimeCache] = None,
        sink: Optional[ResultsSink] = None,
        now: Optional[Callable[[], int]] = None,
    ):
        self.strategy = strategy
        self.travel_times = travel_times
        self.clock = clock
        self.settings = settings or Settings()
        self.bias_adjuster = bias_adjuster or NoBiasAdjuster()
        self.holding_generator = holding_generator
        self.holding_cache = holding_cache
        self.sink = sink or ResultsSink()
        self.now = now or current_time_ms

    def generate(self, status) -> list[Prediction]:
        """
        Predictions for the stops ahead of the vehicle

        The walk stops at the end of the block or, unless the vehicle is
        flagged for schedule based predictions, once predictions pass the
        max prediction horizon.
        """
        match = status.match
        if match is None or status.avl_report is None:
            return []

        settings = self.settings.prediction
        avl_time = status.avl_report.time
        now = self.now()
        block = match.block
        cursor = match.cursor
        sched_based = status.for_sched_based_preds
        day_start = self.clock.service_day_start(avl_time, block.start_time)

        prediction_time = avl_time + self.strategy.travel_time_from_match_to_end_of_stop_path(
            match.spatial_match, status
        )

        lateness = status.real_time_sched_adh
        late_so_mark_subsequent_trips = lateness is not None and lateness.is_later_than(
            settings.max_late_cutoff_preds_for_next_trips_secs
        )
        current_trip_index = cursor.trip_index
        horizon = avl_time + settings.max_prediction_time_secs * MS_PER_SEC

        affected_by_wait_stop = False
        trip_counter = status.trip_counter
        new_predictions: list[Prediction] = []
        boundary_predictions: dict[tuple, Prediction] = {}

        for _ in range(MAX_STOPS_PER_GENERATION):
            if not sched_based and prediction_time >= horizon:
                break

            if cursor.is_wait_stop():
                affected_by_wait_stop = True
            late_uncertain = late_so_mark_subsequent_trips and cursor.trip_index > current_trip_index

            prediction = self.prediction_for_stop(
                status,
                prediction_time,
                cursor.clone(),
                affected_by_wait_stop,
                late_uncertain,
                trip_counter,
                day_start,
                now,
            )
            self._maybe_generate_holding_time(status, prediction, now)

            if not sched_based and prediction.prediction_time > horizon:
                break

            last_stop_of_non_sched_trip = block.no_schedule and cursor.at_end_of_trip()
            if last_stop_of_non_sched_trip:
                trip_counter += 1
                status.put_trip_start_time(trip_counter, prediction.prediction_time)

            if not last_stop_of_non_sched_trip and prediction.prediction_time > now:
                if cursor.at_end_of_trip() or cursor.at_beginning_of_trip():
                    self._add_boundary_prediction(boundary_predictions, prediction)
                else:
                    new_predictions.append(prediction)

            prediction_time = prediction.actual_prediction_time
            if prediction.is_arrival:
                prediction_time += self.strategy.stop_time_for_path(cursor, status, trip_counter)
                prediction_time = self._apply_holding_time(status, prediction, prediction_time)

            time_of_day = (prediction_time - day_start) // MS_PER_SEC
            cursor.increment_stop_path(time_of_day)
            if cursor.past_end_of_block(time_of_day):
                break
            if not last_stop_of_non_sched_trip:
                prediction_time += self.strategy.travel_time_for_path(cursor, status, trip_counter)
        else:
            logger.warning(
                "Vehicle %s: stopped generating predictions after %d stops",
                status.vehicle_id,
                MAX_STOPS_PER_GENERATION,
            )

        predictions = new_predictions + list(boundary_predictions.values())
        predictions.sort(key=lambda p: p.prediction_time)
        return predictions

    @staticmethod
    def _add_boundary_prediction(boundary_predictions: dict, prediction: Prediction):
        # The last stop of one trip is often the first stop of the next
        existing = boundary_predictions.get(prediction.dedupe_key)
        if existing is None:
            boundary_predictions[prediction.dedupe_key] = prediction
        elif prediction.trip_start_time > existing.trip_start_time:
            logger.warning(
                "Replacing prediction for stop %s of trip %s with one for later trip %s",
                existing.stop_id,
                existing.trip_id,
                prediction.trip_id,
            )
            boundary_predictions[prediction.dedupe_key] = prediction

    def _break_time_msec(self, cursor: PositionCursor) -> int:
        break_secs = cursor.stop_path.break_time_sec
        if break_secs is None:
            break_secs = self.settings.core.default_break_time_sec
        return break_secs * MS_PER_SEC

    def prediction_for_stop(
        self,
        status,
        prediction_time: int,
        cursor: PositionCursor,
        affected_by_wait_stop: bool,
        late_uncertain: bool,
        trip_counter: int,
        day_start: int,
        now: int,
    ) -> Prediction:
        """
        Prediction for the stop at the end of the cursor's stop path

        prediction_time is the expected arrival at the stop. The returned
        prediction's actual_prediction_time is what the next stop's travel
        time is added to; for wait stops using the exact schedule time it can
        differ from the published prediction_time.
        """
        avl_report = status.avl_report
        avl_time = avl_report.time
        prediction_time = avl_time + self.bias_adjuster.adjust_prediction(prediction_time - avl_time)

        use_arrival = self.settings.prediction.use_arrival_predictions_for_normal_stops
        is_wait_stop = cursor.is_wait_stop()

        def make(user_time: int, actual_time: int, is_arrival: bool) -> Prediction:
            return self._build_prediction(
                status, cursor, user_time, actual_time, is_arrival, affected_by_wait_stop,
                late_uncertain, trip_counter, day_start, now,
            )

        if (cursor.at_end_of_trip() or use_arrival) and not is_wait_stop:
            return make(prediction_time, prediction_time, True)

        stop_time = self.strategy.stop_time_for_path(cursor, status, trip_counter)
        if not is_wait_stop:
            departure = prediction_time + stop_time
            return make(departure, departure, False)

        # Vehicle may first need to get to the wait stop
        deadheading = False
        arrival_time = prediction_time
        distance = avl_report.location.distance(cursor.stop_path.stop_location)
        crow_flies_arrival = avl_time + self.travel_times.travel_time_as_crow_flies(distance)
        if crow_flies_arrival > arrival_time:
            arrival_time = crow_flies_arrival
            deadheading = True

        scheduled_departure = self.travel_times.scheduled_departure_time(cursor, arrival_time)
        break_msec = self._break_time_msec(cursor)
        expected_departure = max(arrival_time + stop_time, scheduled_departure)
        if not deadheading and expected_departure < prediction_time + break_msec:
            expected_departure = prediction_time + break_msec

        if self.settings.prediction.use_exact_sched_time_for_wait_stops:
            user_time = max(arrival_time, scheduled_departure)
            if not deadheading:
                user_time = max(user_time, prediction_time + break_msec)
            return make(user_time, expected_departure, False)

        return make(expected_departure, expected_departure, False)

    def _build_prediction(self, status, cursor: PositionCursor, user_time: int, actual_time: int,
                          is_arrival: bool, affected_by_wait_stop: bool, late_uncertain: bool,
                          trip_counter: int, day_start: int, now: int) -> Prediction:
        trip = cursor.trip
        stop_path = cursor.stop_path
        if trip.no_schedule:
            freq_start_time = status.trip_start_time(trip_counter)
            trip_start = freq_start_time if freq_start_time is not None else day_start
        else:
            freq_start_time = None
            trip_start = day_start + trip.start_time * MS_PER_SEC
        deviation = status.real_time_sched_adh
        return Prediction(
            vehicle_id=status.vehicle_id,
            stop_id=stop_path.stop_id,
            gtfs_stop_seq=stop_path.gtfs_stop_seq,
            trip_id=trip.trip_id,
            route_id=trip.route_id,
            block_id=cursor.block.block_id,
            trip_start_time=trip_start,
            prediction_time=int(user_time),
            actual_prediction_time=int(actual_time),
            avl_time=status.avl_report.time,
            creation_time=now,
            is_arrival=is_arrival,
            at_end_of_trip=cursor.at_end_of_trip(),
            affected_by_wait_stop=affected_by_wait_stop,
            is_delayed=status.is_delayed,
            late_and_subsequent_trip_so_uncertain=late_uncertain,
            sched_based_pred=status.for_sched_based_preds,
            schedule_deviation_msec=deviation.msec if deviation is not None else None,
            freq_start_time=freq_start_time,
            trip_counter=trip_counter,
            cursor=cursor,
        )

    def _maybe_generate_holding_time(self, status, prediction: Prediction, now: int):
        holding = self.settings.holding
        if not holding.enabled or self.holding_generator is None:
            return
        delta = prediction.prediction_time - now
        if not 0 < delta < holding.generate_holding_time_when_prediction_within_msec:
            return

        holding_time = self.holding_generator.generate_holding_time(status, prediction, now)
        if holding_time is None:
            return
        if self.holding_cache is not None:
            self.holding_cache.put_holding_time(holding_time)
        status.holding_time = holding_time
        self.sink.write_holding_time(holding_time)

    def _apply_holding_time(self, status, prediction: Prediction, prediction_time: int) -> int:
        if not self.settings.holding.use_holding_time_in_prediction or self.holding_cache is None:
            return prediction_time
        holding_time = self.holding_cache.get_holding_time(
            HoldingTimeCacheKey(prediction.stop_id, status.vehicle_id, prediction.trip_id)
        )
        if holding_time is None:
            return prediction_time
        return max(prediction_time, holding_time.holding_time)
