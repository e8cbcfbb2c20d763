"""
TransitCore: the facade that ties matching, assignment and prediction together

One instance owns the schedule graph, every shared cache and the vehicle
registry. AVL reports can be handled inline with match_and_predict() or
handed to the worker pool with submit(); either way the work for a single
vehicle runs under that vehicle's lock.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Iterable, Optional

from sqlalchemy.orm import sessionmaker

from transit_predictor.auto_assign import AutoAssignRateLimiter, AutoBlockAssigner
from transit_predictor.averages import (
    FrequencyBasedHistoricalAverageCache,
    ScheduleBasedHistoricalAverageCache,
)
from transit_predictor.bias import create_bias_adjuster
from transit_predictor.config import Settings
from transit_predictor.deviation import ScheduleDeviation
from transit_predictor.events import VehicleEvent, VehicleEventType
from transit_predictor.history import ArrivalDepartureEvent, StopHistoryCache, TripHistoryCache
from transit_predictor.holding import HoldingTimeCache, ScheduleHoldingTimeGenerator
from transit_predictor.kalman import KalmanErrorCache
from transit_predictor.matching import SpatialMatcher, TemporalMatch, TemporalMatcher
from transit_predictor.prediction import Prediction, PredictionEngine, current_time_ms
from transit_predictor.repository import load_arrival_departures
from transit_predictor.schedule import Block, ScheduleGraph
from transit_predictor.service_days import ActiveBlocksProvider, ServiceDayResolver
from transit_predictor.sinks import MemorySink, ResultsSink
from transit_predictor.strategies import StopPathPredictionCache, StrategyContext, build_strategy
from transit_predictor.timeutils import MS_PER_DAY
from transit_predictor.travel_times import TravelTimes
from transit_predictor.vehicle_status import (
    AssignmentMethod,
    AvlReport,
    VehicleStatus,
    VehicleStatusRegistry,
)

logger = logging.getLogger(__name__)


class TransitCore:
    def __init__(
        self,
        graph: ScheduleGraph,
        settings: Optional[Settings] = None,
        sink: Optional[ResultsSink] = None,
        session_factory: Optional[sessionmaker] = None,
        now: Optional[Callable[[], int]] = None,
    ):
        self.graph = graph
        self.settings = settings or Settings()
        self.sink = sink if sink is not None else MemorySink()
        self.session_factory = session_factory
        self.now = now or current_time_ms
        self.clock = graph.clock

        core = self.settings.core
        self.resolver = ServiceDayResolver(graph, core)
        self.blocks_provider = ActiveBlocksProvider(graph, self.resolver, core)
        self.registry = VehicleStatusRegistry(core.avl_history_size)

        self.trip_history = TripHistoryCache(self.clock)
        self.stop_history = StopHistoryCache(self.clock)
        self.schedule_averages = ScheduleBasedHistoricalAverageCache(
            self.trip_history, self.settings.averages
        )
        self.frequency_averages = FrequencyBasedHistoricalAverageCache(
            self.trip_history, self.clock, self.settings.averages
        )
        self.kalman_errors = KalmanErrorCache()
        self.holding_cache = HoldingTimeCache()
        self.stop_path_predictions = StopPathPredictionCache(
            self.settings.prediction.max_stop_path_predictions_per_trip
        )

        self.travel_times = TravelTimes(self.clock, core)
        self.spatial_matcher = SpatialMatcher(core)
        self.temporal_matcher = TemporalMatcher(self.clock, core)
        self.rate_limiter = AutoAssignRateLimiter(
            self.settings.auto_assign.min_time_between_auto_assigning_secs
        )

        self.context = StrategyContext(
            settings=self.settings,
            clock=self.clock,
            travel_times=self.travel_times,
            trip_history=self.trip_history,
            stop_history=self.stop_history,
            schedule_averages=self.schedule_averages,
            frequency_averages=self.frequency_averages,
            kalman_errors=self.kalman_errors,
            sink=self.sink,
            stop_path_predictions=self.stop_path_predictions,
            now=self.now,
        )
        self.strategy = build_strategy(self.settings.prediction.method, self.context)
        self.engine = PredictionEngine(
            self.strategy,
            self.travel_times,
            self.clock,
            settings=self.settings,
            bias_adjuster=create_bias_adjuster(self.settings.bias),
            holding_generator=ScheduleHoldingTimeGenerator(self.travel_times),
            holding_cache=self.holding_cache,
            sink=self.sink,
            now=self.now,
        )
        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()
        logger.info(
            "Transit core ready: %d blocks, prediction method %s",
            len(graph.blocks),
            self.settings.prediction.method.value,
        )

    # Vehicle state

    def get_status(self, vehicle_id: str) -> Optional[VehicleStatus]:
        return self.registry.find_status(vehicle_id)

    def _vehicle_event(self, status: VehicleStatus, event_type: str, description: str,
                       became_unpredictable: bool = False):
        match = status.match
        event = VehicleEvent(
            time=status.avl_report.time if status.avl_report else self.now(),
            vehicle_id=status.vehicle_id,
            event_type=event_type,
            description=description,
            predictable=status.predictable,
            became_unpredictable=became_unpredictable,
            block_id=status.block_id,
            trip_id=match.trip.trip_id if match else None,
            route_id=status.route_id,
        )
        self.sink.write_vehicle_event(event)

    def _make_unpredictable(self, status: VehicleStatus, event_type: str, description: str):
        logger.info("Vehicle %s made unpredictable: %s", status.vehicle_id, description)
        self._vehicle_event(status, event_type, description, became_unpredictable=True)
        status.unset_block()

    # AVL processing

    def submit(self, report: AvlReport) -> Future:
        """Queue a report on the worker pool"""
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.settings.worker_threads, thread_name_prefix="avl-worker"
                )
            return self._executor.submit(self.match_and_predict, report.vehicle_id, report)

    def match_and_predict(self, vehicle_id: str,
                          report: AvlReport) -> tuple[Optional[TemporalMatch], list[Prediction]]:
        """
        Process one AVL report for a vehicle

        Args:
            vehicle_id: Vehicle the report belongs to
            report: The AVL report

        Returns:
            (match, predictions). The match is None when the vehicle could not
            be matched to a block; predictions is empty in that case. Errors
            are logged and the report is dropped.
        """
        status = self.registry.get_status(vehicle_id)
        with status.lock:
            try:
                return self._process_avl_report(status, report)
            except Exception:
                logger.exception("Error processing AVL report for vehicle %s: %s", vehicle_id, report)
                return None, []

    def _process_avl_report(self, status: VehicleStatus,
                            report: AvlReport) -> tuple[Optional[TemporalMatch], list[Prediction]]:
        status.set_avl_report(report)

        new_assignment = (
            report.assignment_id is not None and report.assignment_id != status.assignment_id
        )
        if new_assignment:
            match = self._match_to_assignment(status, report)
        elif status.predictable:
            match = self._match_to_existing_block(status, report)
        else:
            match = self._auto_assign(status)

        if match is None or not status.predictable:
            return None, []

        status.real_time_sched_adh = ScheduleDeviation(match.deviation.msec, self.settings.core)
        if match.block.no_schedule:
            # Start of the loop the vehicle is on now
            elapsed = self.travel_times.travel_time_from_trip_start_to_match(match.spatial_match)
            status.put_trip_start_time(status.trip_counter, match.avl_time - elapsed)
        predictions = self.engine.generate(status)
        status.predictions = predictions
        self.sink.write_predictions(predictions)

        if self._at_end_of_block(match):
            self._make_unpredictable(
                status, VehicleEventType.END_OF_BLOCK, f"Vehicle reached end of block {match.block.block_id}"
            )
        return match, predictions

    def _at_end_of_block(self, match: TemporalMatch) -> bool:
        return (
            match.cursor.at_end_of_block()
            and match.spatial_match.distance_remaining <= self.settings.core.max_distance_from_segment
        )

    def _match_to_existing_block(self, status: VehicleStatus,
                                 report: AvlReport) -> Optional[TemporalMatch]:
        block = status.block
        previous = status.match
        if block.no_schedule:
            trip_indices = list(range(block.num_trips))
        else:
            first = previous.trip_index if previous is not None else 0
            trip_indices = list(range(first, min(first + 2, block.num_trips)))

        spatial = self.spatial_matcher.spatial_matches(report.location, report.time, block, trip_indices)
        match = self.temporal_matcher.best_temporal_match(spatial, previous_match=previous)
        if match is not None:
            status.set_match(match)
            status.bad_assignments_in_a_row = 0
            return match

        status.bad_assignments_in_a_row += 1
        logger.info(
            "Vehicle %s no match to block %s (%d in a row)",
            status.vehicle_id,
            block.block_id,
            status.bad_assignments_in_a_row,
        )
        if status.bad_assignments_in_a_row > self.settings.core.max_bad_matches_in_a_row:
            self._make_unpredictable(
                status,
                VehicleEventType.NO_MATCH,
                f"No match to block {block.block_id} for {status.bad_assignments_in_a_row} reports",
            )
        return None

    def _match_to_assignment(self, status: VehicleStatus,
                             report: AvlReport) -> Optional[TemporalMatch]:
        service_ids = self.resolver.service_ids(report.time)
        block = self.graph.find_block(report.assignment_id, service_ids)
        if block is None:
            logger.warning(
                "Vehicle %s assigned to block %s which is not in service (service ids %s)",
                status.vehicle_id,
                report.assignment_id,
                service_ids,
            )
            if status.predictable:
                self._make_unpredictable(
                    status, VehicleEventType.ASSIGNMENT_CHANGED,
                    f"Assignment {report.assignment_id} is not a valid block",
                )
            return None

        match = self._initial_match(block, report)
        if match is None:
            logger.info("Vehicle %s could not be matched to assigned block %s", status.vehicle_id, block.block_id)
            if status.predictable:
                self._make_unpredictable(
                    status, VehicleEventType.NO_MATCH, f"No match to assigned block {block.block_id}"
                )
            return None

        status.set_block(block, AssignmentMethod.AVL_FEED, report.assignment_id, report.time)
        status.set_match(match)
        self._vehicle_event(
            status, VehicleEventType.PREDICTABLE, f"Matched to assigned block {block.block_id}"
        )
        return match

    def _initial_match(self, block: Block, report: AvlReport) -> Optional[TemporalMatch]:
        core = self.settings.core
        time_of_day = self.blocks_provider.time_of_day_for_block(block, report.time)
        trip_indices = block.active_trip_indices(
            time_of_day,
            core.allowable_early_seconds_for_initial_matching,
            core.allowable_late_seconds_for_initial_matching,
        )
        if not trip_indices and block.no_schedule:
            trip_indices = list(range(block.num_trips))
        spatial = self.spatial_matcher.spatial_matches(report.location, report.time, block, trip_indices)
        return self.temporal_matcher.best_temporal_match(
            spatial,
            allowable_early_secs=core.allowable_early_seconds_for_initial_matching,
            allowable_late_secs=core.allowable_late_seconds_for_initial_matching,
        )

    def _assigner(self, status: VehicleStatus) -> AutoBlockAssigner:
        return AutoBlockAssigner(
            status,
            self.registry,
            self.blocks_provider,
            self.spatial_matcher,
            self.temporal_matcher,
            self.travel_times,
            self.rate_limiter,
            self.settings.auto_assign,
            self.settings.core,
        )

    def _auto_assign(self, status: VehicleStatus) -> Optional[TemporalMatch]:
        match = self._assigner(status).auto_assign_vehicle_to_block_if_enabled()
        if match is None:
            return None
        status.set_block(match.block, AssignmentMethod.AUTO_ASSIGNER, match.block.block_id,
                         status.avl_report.time)
        status.set_match(match)
        self._vehicle_event(
            status, VehicleEventType.PREDICTABLE, f"Auto assigned to block {match.block.block_id}"
        )
        return match

    def auto_assign(self, vehicle_id: str) -> Optional[TemporalMatch]:
        """
        Try to auto assign a vehicle that is not currently predictable

        Returns the match if exactly one block fits, otherwise None. A vehicle
        that is already predictable keeps its assignment.
        """
        status = self.registry.find_status(vehicle_id)
        if status is None:
            return None
        with status.lock:
            if status.predictable:
                return status.match
            return self._auto_assign(status)

    # Historical data

    def process_arrival_departure(self, event: ArrivalDepartureEvent):
        """
        Feed one arrival/departure into the history and average caches

        Returns False for an event already seen; averages only count each
        observation once.
        """
        # Averages read the trip history, so it is updated first
        if not self.trip_history.put_arrival_departure(event):
            logger.debug("Ignoring duplicate %s", event)
            return False
        self.stop_history.put_arrival_departure(event)
        self.schedule_averages.put_arrival_departure(event)
        self.frequency_averages.put_arrival_departure(event)
        return True

    def backfill_history(self, start_ms: int, end_ms: int,
                         events: Optional[Iterable[ArrivalDepartureEvent]] = None,
                         route_id: Optional[str] = None) -> int:
        """
        Populate the caches from historical arrivals/departures

        Events are taken from the given iterable, or loaded from the database
        through session_factory when none are given. Returns the number of
        events processed.
        """
        if events is None:
            if self.session_factory is None:
                raise ValueError("backfill_history needs events or a session factory")
            db = self.session_factory()
            try:
                ordered = load_arrival_departures(db, start_ms, end_ms, route_id)
            finally:
                db.close()
        else:
            ordered = sorted(
                (e for e in events if start_ms <= e.time < end_ms and (not route_id or e.route_id == route_id)),
                key=lambda e: e.sort_key,
            )

        failures = 0
        for event in ordered:
            try:
                self.process_arrival_departure(event)
            except Exception:
                failures += 1
                logger.exception("Failed to process %s during backfill", event)

        logger.info("Backfilled %d arrivals/departures (%d failed)", len(ordered) - failures, failures)
        return len(ordered) - failures

    def prune_history(self, now_ms: Optional[int] = None) -> int:
        """Drop trip and stop history older than max_days_to_keep_history"""
        now_ms = now_ms if now_ms is not None else self.now()
        cutoff = now_ms - self.settings.averages.max_days_to_keep_history * MS_PER_DAY
        removed = self.trip_history.prune(cutoff) + self.stop_history.prune(cutoff)
        if removed:
            logger.info("Pruned %d history entries older than %d", removed, cutoff)
        return removed

    def shutdown(self, wait: bool = True):
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)
