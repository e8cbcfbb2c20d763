"""
Travel and dwell time strategies used by the prediction engine

Each strategy answers three questions for a position in a block: how long
to travel the stop path, how long to dwell at its stop, and how long to
get from a match to the end of its stop path. Advanced strategies delegate
to a fallback strategy whenever they lack the data they need:

    kalman             -> default
    historical_average -> last_vehicle -> default   (travel time)
    historical_average -> default                   (dwell time)
    last_vehicle       -> default

Strategies are built from the configured PredictionMethod through
build_strategy().
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

from transit_predictor.averages import (
    FrequencyBasedHistoricalAverageCache,
    ScheduleBasedHistoricalAverageCache,
    StopPathCacheKey,
)
from transit_predictor.config import PredictionMethod, Settings
from transit_predictor.cursor import PositionCursor
from transit_predictor.events import PredictionEvent, PredictionEventType
from transit_predictor.history import (
    ArrivalDepartureEvent,
    StopHistoryCache,
    TripHistoryCache,
    TripKey,
    travel_time_filtered,
)
from transit_predictor.kalman import (
    KalmanErrorCache,
    KalmanErrorCacheKey,
    KalmanPrediction,
    TravelTimeDetails,
)
from transit_predictor.matching import SpatialMatch
from transit_predictor.sinks import ResultsSink
from transit_predictor.timeutils import MS_PER_SEC, ServiceClock
from transit_predictor.travel_times import TravelTimes

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StopPathPrediction:
    """Travel or dwell time a strategy predicted for one stop path"""

    vehicle_id: str
    creation_time: int
    prediction_msec: float
    trip_id: str
    stop_path_index: int
    algorithm: str
    travel_time: bool = True


class StopPathPredictionCache:
    """Most recent stop path predictions per (trip, stop path), bounded per key"""

    def __init__(self, max_per_key: int = 500):
        self.max_per_key = max_per_key
        self._predictions: dict[tuple[str, int], deque] = {}
        self._lock = threading.Lock()

    def put_prediction(self, prediction: StopPathPrediction):
        key = (prediction.trip_id, prediction.stop_path_index)
        with self._lock:
            self._predictions.setdefault(key, deque(maxlen=self.max_per_key)).append(prediction)

    def get_predictions(self, trip_id: str, stop_path_index: int) -> list[StopPathPrediction]:
        with self._lock:
            return list(self._predictions.get((trip_id, stop_path_index), ()))


@dataclass
class StrategyContext:
    """Shared collaborators handed to every strategy"""

    settings: Settings
    clock: ServiceClock
    travel_times: TravelTimes
    trip_history: TripHistoryCache
    stop_history: StopHistoryCache
    schedule_averages: ScheduleBasedHistoricalAverageCache
    frequency_averages: FrequencyBasedHistoricalAverageCache
    kalman_errors: KalmanErrorCache
    sink: ResultsSink
    stop_path_predictions: Optional[StopPathPredictionCache] = None
    now: Callable[[], int] = None

    def record_stop_path_prediction(self, status, cursor: PositionCursor, value: float,
                                    algorithm: str, travel_time: bool = True):
        if not self.settings.prediction.store_travel_time_stop_path_predictions:
            return
        if self.stop_path_predictions is None:
            return
        self.stop_path_predictions.put_prediction(
            StopPathPrediction(
                vehicle_id=status.vehicle_id,
                creation_time=self.now(),
                prediction_msec=value,
                trip_id=cursor.trip.trip_id,
                stop_path_index=cursor.stop_path_index,
                algorithm=algorithm,
                travel_time=travel_time,
            )
        )


class TravelTimeStrategy:
    """Common interface; answers from the trip's schedule-derived travel times"""

    method = PredictionMethod.DEFAULT

    def __init__(self, context: StrategyContext):
        self.context = context

    @property
    def travel_times(self) -> TravelTimes:
        return self.context.travel_times

    def travel_time_for_path(self, cursor: PositionCursor, status, trip_counter: int = 0) -> int:
        return self.travel_times.travel_time_for_path(cursor)

    def stop_time_for_path(self, cursor: PositionCursor, status, trip_counter: int = 0) -> int:
        return self.travel_times.stop_time_for_path(cursor)

    def travel_time_from_match_to_end_of_stop_path(self, match: SpatialMatch, status) -> int:
        return self.travel_times.travel_time_from_match_to_end_of_stop_path(match)


class ScheduleStrategy(TravelTimeStrategy):
    """Schedule-derived travel and dwell times, the last resort of every chain"""


def find_match_in_list(events: list[ArrivalDepartureEvent],
                       departure: ArrivalDepartureEvent) -> Optional[ArrivalDepartureEvent]:
    """Arrival of the same vehicle on the same trip as departure"""
    for event in events:
        if (
            event.is_arrival
            and event.vehicle_id == departure.vehicle_id
            and event.trip_id == departure.trip_id
        ):
            return event
    return None


class LastVehicleStrategy(TravelTimeStrategy):
    """Travel time the most recent other vehicle took between the same two stops"""

    method = PredictionMethod.LAST_VEHICLE

    def __init__(self, context: StrategyContext, fallback: TravelTimeStrategy):
        super().__init__(context)
        self.fallback = fallback

    def last_vehicle_travel_time(self, cursor: PositionCursor, status) -> Optional[TravelTimeDetails]:
        if cursor.at_beginning_of_trip() or status.match is None:
            return None
        previous_path = cursor.previous_stop_path()
        if previous_path is None:
            return None

        as_of = status.match.avl_time
        stop_history = self.context.stop_history
        current_stop_list = stop_history.get_stop_history(
            stop_history.key_for(previous_path.stop_id, as_of)
        )
        next_stop_list = stop_history.get_stop_history(
            stop_history.key_for(cursor.stop_path.stop_id, as_of)
        )
        if not current_stop_list or not next_stop_list:
            return None

        direction_id = status.trip.direction_id if status.trip else None
        max_age = self.context.settings.averages.last_vehicle_max_age_secs * MS_PER_SEC
        for departure in current_stop_list:
            if (
                not departure.is_departure
                or departure.vehicle_id == status.vehicle_id
                or departure.time > as_of
                or as_of - departure.time > max_age
                or (direction_id is not None and departure.direction_id != direction_id)
            ):
                continue

            arrival = find_match_in_list(next_stop_list, departure)
            if arrival is None:
                return None
            details = TravelTimeDetails.from_events(departure, arrival)
            if details.travel_time > 0:
                return details

            self.context.sink.write_prediction_event(
                PredictionEvent(
                    time=as_of,
                    event_type=PredictionEventType.TRAVELTIME_EXCEPTION,
                    description=f"{arrival} : {departure}",
                    vehicle_id=status.vehicle_id,
                    stop_id=cursor.stop_path.stop_id,
                    trip_id=cursor.trip.trip_id,
                    route_id=cursor.trip.route_id,
                    reference_vehicle_id=arrival.vehicle_id,
                    arrival_stop_id=arrival.stop_id,
                    departure_stop_id=departure.stop_id,
                    arrival_time=arrival.time,
                    departure_time=departure.time,
                )
            )
            logger.warning(
                "Non-positive travel time %d msec between %s and %s, discarded",
                details.travel_time,
                departure.stop_id,
                arrival.stop_id,
            )
            return None
        return None

    def travel_time_for_path(self, cursor: PositionCursor, status, trip_counter: int = 0) -> int:
        details = self.last_vehicle_travel_time(cursor, status)
        if details is not None:
            logger.debug("Using last vehicle travel time %s for %s", details, cursor)
            self.context.record_stop_path_prediction(
                status, cursor, details.travel_time, "LAST VEHICLE"
            )
            return details.travel_time
        return self.fallback.travel_time_for_path(cursor, status, trip_counter)

    def stop_time_for_path(self, cursor: PositionCursor, status, trip_counter: int = 0) -> int:
        # Another vehicle's dwell says little about this one
        return self.fallback.stop_time_for_path(cursor, status, trip_counter)


class HistoricalAverageStrategy(TravelTimeStrategy):
    method = PredictionMethod.HISTORICAL_AVERAGE

    def __init__(self, context: StrategyContext, travel_fallback: TravelTimeStrategy,
                 stop_fallback: TravelTimeStrategy):
        super().__init__(context)
        self.travel_fallback = travel_fallback
        self.stop_fallback = stop_fallback

    def _average(self, cursor: PositionCursor, status, travel_time: bool, trip_counter: int):
        trip = cursor.trip
        if trip.no_schedule:
            start = status.trip_start_time(trip_counter)
            if start is None:
                return None
            key = self.context.frequency_averages.lookup_key(
                trip.trip_id, cursor.stop_path_index, travel_time, start
            )
            average = self.context.frequency_averages.get_average(key)
        else:
            key = StopPathCacheKey(trip.trip_id, cursor.stop_path_index, travel_time)
            average = self.context.schedule_averages.get_average(key)

        if average is None or average.count < self.context.settings.averages.min_days:
            return None
        return average

    def travel_time_for_path(self, cursor: PositionCursor, status, trip_counter: int = 0) -> int:
        average = self._average(cursor, status, True, trip_counter)
        if average is not None:
            self.context.record_stop_path_prediction(
                status, cursor, average.average, "TRIP HISTORIC AVERAGE"
            )
            return int(round(average.average))
        return self.travel_fallback.travel_time_for_path(cursor, status, trip_counter)

    def stop_time_for_path(self, cursor: PositionCursor, status, trip_counter: int = 0) -> int:
        average = self._average(cursor, status, False, trip_counter)
        if average is not None:
            self.context.record_stop_path_prediction(
                status, cursor, average.average, "TRIP HISTORIC AVERAGE", travel_time=False
            )
            return int(round(average.average))
        return self.stop_fallback.stop_time_for_path(cursor, status, trip_counter)


class KalmanStrategy(TravelTimeStrategy):
    """
    Kalman filter over the last vehicle's travel time and recent days' history

    Needs both a last vehicle observation and at least min_days of history
    for the same trip and stop path; otherwise the fallback value is used
    unchanged.
    """

    method = PredictionMethod.KALMAN

    def __init__(self, context: StrategyContext, last_vehicle: LastVehicleStrategy,
                 fallback: TravelTimeStrategy):
        super().__init__(context)
        self.last_vehicle = last_vehicle
        self.fallback = fallback
        self.kalman = KalmanPrediction()

    def last_days_times(self, cursor: PositionCursor, status) -> list[TravelTimeDetails]:
        """Travel times on this stop path for the same trip on previous days"""
        settings = self.context.settings.kalman
        clock = self.context.clock
        trip = cursor.trip
        day = clock.service_day_start(status.match.avl_time, trip.start_time)

        times = []
        for _ in range(settings.max_days_to_search):
            if len(times) >= settings.max_days:
                break
            day = clock.start_of_day(clock.previous_day(day))
            events = self.context.trip_history.get_trip_history(
                TripKey(trip.trip_id, day, trip.start_time)
            )
            arrival = next(
                (e for e in events if e.is_arrival and e.stop_path_index == cursor.stop_path_index),
                None,
            )
            if arrival is None:
                continue
            departure = TripHistoryCache.find_previous_departure_event(events, arrival)
            if departure is None:
                continue
            if travel_time_filtered(departure, arrival, self.context.settings.averages):
                continue
            times.append(TravelTimeDetails.from_events(departure, arrival))
        return times

    def travel_time_for_path(self, cursor: PositionCursor, status, trip_counter: int = 0) -> int:
        alternative = self.fallback.travel_time_for_path(cursor, status, trip_counter)
        if status.match is None:
            return alternative

        last_vehicle = self.last_vehicle.last_vehicle_travel_time(cursor, status)
        if last_vehicle is None:
            return alternative

        settings = self.context.settings.kalman
        history = self.last_days_times(cursor, status)
        if len(history) < settings.min_days:
            logger.debug(
                "Kalman has %d of %d required days for %s, using fallback",
                len(history),
                settings.min_days,
                cursor,
            )
            return alternative

        previous_key = KalmanErrorCacheKey(last_vehicle.trip_id, last_vehicle.stop_path_index)
        last_error = self.context.kalman_errors.get_error(previous_key)
        if last_error is None:
            last_error = settings.initial_error_value

        try:
            result = self.kalman.predict(
                last_vehicle.travel_time, [t.travel_time for t in history], last_error
            )
        except ValueError:
            logger.exception("Kalman prediction failed for %s", cursor)
            return alternative

        key = KalmanErrorCacheKey(cursor.trip.trip_id, cursor.stop_path_index)
        self.context.kalman_errors.put_error(key, result.filter_error)
        self._check_variation(cursor, status, result.result, alternative)
        self.context.record_stop_path_prediction(status, cursor, result.result, "KALMAN")
        return int(round(result.result))

    def _check_variation(self, cursor: PositionCursor, status, kalman_result: float,
                         alternative: int):
        if alternative <= 0:
            return
        settings = self.context.settings.kalman
        percentage_difference = abs(100 * ((kalman_result - alternative) / alternative))
        if (percentage_difference * alternative) / 100 <= settings.threshold_for_difference_event_log_msec:
            return
        if percentage_difference <= settings.percentage_prediction_method_difference:
            return

        description = (
            f"Kalman prediction {int(kalman_result)} msec differs from alternative "
            f"{alternative} msec by {percentage_difference:.1f}%"
        )
        self.context.sink.write_prediction_event(
            PredictionEvent(
                time=status.match.avl_time,
                event_type=PredictionEventType.PREDICTION_VARIATION,
                description=description,
                vehicle_id=status.vehicle_id,
                stop_id=cursor.stop_path.stop_id,
                trip_id=cursor.trip.trip_id,
                route_id=cursor.trip.route_id,
            )
        )

    def stop_time_for_path(self, cursor: PositionCursor, status, trip_counter: int = 0) -> int:
        return self.fallback.stop_time_for_path(cursor, status, trip_counter)

    def travel_time_from_match_to_end_of_stop_path(self, match: SpatialMatch, status) -> int:
        if not self.context.settings.kalman.use_kalman_for_partial_stop_paths:
            return self.fallback.travel_time_from_match_to_end_of_stop_path(match, status)

        full_time = self.travel_time_for_path(match.cursor, status, status.trip_counter)
        length = match.stop_path.length
        if length <= 0:
            return 0
        return int(round(full_time * (match.distance_remaining / length)))


def _build_default(context: StrategyContext) -> TravelTimeStrategy:
    return ScheduleStrategy(context)


def _build_last_vehicle(context: StrategyContext) -> TravelTimeStrategy:
    return LastVehicleStrategy(context, ScheduleStrategy(context))


def _build_historical_average(context: StrategyContext) -> TravelTimeStrategy:
    default = ScheduleStrategy(context)
    return HistoricalAverageStrategy(context, LastVehicleStrategy(context, default), default)


def _build_kalman(context: StrategyContext) -> TravelTimeStrategy:
    default = ScheduleStrategy(context)
    return KalmanStrategy(context, LastVehicleStrategy(context, default), default)


STRATEGY_BUILDERS: dict[PredictionMethod, Callable[[StrategyContext], TravelTimeStrategy]] = {
    PredictionMethod.DEFAULT: _build_default,
    PredictionMethod.LAST_VEHICLE: _build_last_vehicle,
    PredictionMethod.HISTORICAL_AVERAGE: _build_historical_average,
    PredictionMethod.KALMAN: _build_kalman,
}


def build_strategy(method: PredictionMethod, context: StrategyContext) -> TravelTimeStrategy:
    try:
        builder = STRATEGY_BUILDERS[PredictionMethod(method)]
    except (KeyError, ValueError):
        raise ValueError(f"Unknown prediction method: {method!r}") from None
    return builder(context)
