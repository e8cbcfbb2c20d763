"""
Automatic block assignment for vehicles that report without an assignment

A vehicle is assigned only when exactly one active, available block matches
both its current AVL report and an earlier report far enough away to show
it is actually moving along that block.
"""

import logging
import threading
from typing import Optional

from transit_predictor.config import AutoAssignSettings, CoreSettings
from transit_predictor.deviation import ScheduleDeviation
from transit_predictor.matching import SpatialMatch, SpatialMatcher, TemporalMatch, TemporalMatcher
from transit_predictor.schedule import Block
from transit_predictor.service_days import ActiveBlocksProvider
from transit_predictor.timeutils import MS_PER_SEC
from transit_predictor.travel_times import TravelTimes
from transit_predictor.vehicle_status import AvlReport, VehicleStatus, VehicleStatusRegistry

logger = logging.getLogger(__name__)


class AutoAssignRateLimiter:
    """Tracks when each vehicle was last considered for auto assignment"""

    def __init__(self, min_time_between_secs: int):
        self.min_time_between_secs = min_time_between_secs
        self._last_attempt: dict[str, int] = {}
        self._lock = threading.Lock()

    def too_recent(self, vehicle_id: str, avl_time: int) -> bool:
        """
        True if the vehicle was evaluated less than the minimum interval ago

        The attempt time is only recorded when the vehicle is eligible, so a
        vehicle reporting often cannot push its own next attempt out forever.
        """
        with self._lock:
            last = self._last_attempt.get(vehicle_id)
            if last is None:
                self._last_attempt[vehicle_id] = avl_time
                return False
            elapsed_secs = (avl_time - last) / MS_PER_SEC
            if elapsed_secs < self.min_time_between_secs:
                logger.debug(
                    "Vehicle %s was auto assign evaluated %.1fs ago, less than %ds",
                    vehicle_id,
                    elapsed_secs,
                    self.min_time_between_secs,
                )
                return True
            self._last_attempt[vehicle_id] = avl_time
            return False

    def clear(self, vehicle_id: str):
        with self._lock:
            self._last_attempt.pop(vehicle_id, None)


class AutoBlockAssigner:
    """One auto assignment attempt for one vehicle"""

    def __init__(
        self,
        status: VehicleStatus,
        registry: VehicleStatusRegistry,
        blocks_provider: ActiveBlocksProvider,
        spatial_matcher: SpatialMatcher,
        temporal_matcher: TemporalMatcher,
        travel_times: TravelTimes,
        rate_limiter: AutoAssignRateLimiter,
        settings: Optional[AutoAssignSettings] = None,
        core_settings: Optional[CoreSettings] = None,
    ):
        self.status = status
        self.registry = registry
        self.blocks_provider = blocks_provider
        self.spatial_matcher = spatial_matcher
        self.temporal_matcher = temporal_matcher
        self.travel_times = travel_times
        self.rate_limiter = rate_limiter
        self.settings = settings or AutoAssignSettings()
        self.core_settings = core_settings or CoreSettings()
        # trip pattern ID -> match (None when the pattern has no match)
        self._spatial_match_cache: dict[str, Optional[SpatialMatch]] = {}

    @property
    def vehicle_id(self) -> str:
        return self.status.vehicle_id

    @property
    def avl_report(self) -> AvlReport:
        return self.status.avl_report

    def previous_avl_report(self) -> Optional[AvlReport]:
        return self.status.previous_avl_report(self.settings.min_distance_from_current_report)

    def _within_bounds(self, deviation: ScheduleDeviation) -> bool:
        return deviation.is_within_bounds(
            self.settings.allowable_early_seconds, self.settings.allowable_late_seconds
        )

    def is_block_unassigned(self, block_id: str) -> bool:
        """No vehicle holds the block, other than ones only used for schedule based predictions"""
        for other in self.registry.vehicles_for_block(block_id):
            if other.vehicle_id == self.vehicle_id:
                continue
            if not other.for_sched_based_preds:
                return False
        return True

    def blocks_to_examine(self) -> list[Block]:
        result = []
        for block in self.blocks_provider.active_blocks(self.avl_report.time):
            if block.no_schedule or not self.settings.exclusive_block_assignments:
                result.append(block)
            elif self.is_block_unassigned(block.block_id):
                result.append(block)
        return result

    def _active_trip_indices(self, block: Block, avl_time: int) -> list[int]:
        time_of_day = self.blocks_provider.time_of_day_for_block(block, avl_time)
        return block.active_trip_indices(
            time_of_day,
            self.core_settings.allowable_early_seconds,
            self.core_settings.allowable_late_seconds,
        )

    def spatial_matches(self, report: AvlReport, block: Block) -> list[SpatialMatch]:
        """Non-layover spatial matches, evaluating each trip pattern only once per attempt"""
        matches = []
        for trip_index in self._active_trip_indices(block, report.time):
            pattern_id = block.trips[trip_index].pattern.pattern_id
            if pattern_id in self._spatial_match_cache:
                cached = self._spatial_match_cache[pattern_id]
                if cached is not None:
                    matches.append(cached.for_block(block, trip_index))
                continue

            found = self.spatial_matcher.spatial_matches(
                report.location, report.time, block, [trip_index], exclude_layovers=True
            )
            self._spatial_match_cache[pattern_id] = found[0] if found else None
            matches.extend(found)
        return matches

    def spatial_matches_without_cache(self, report: AvlReport, block: Block) -> list[SpatialMatch]:
        return self.spatial_matcher.spatial_matches(
            report.location,
            report.time,
            block,
            self._active_trip_indices(block, report.time),
            exclude_layovers=True,
        )

    def best_temporal_match(self, report: AvlReport, block: Block,
                            use_cache: bool) -> Optional[TemporalMatch]:
        if use_cache:
            spatial = self.spatial_matches(report, block)
        else:
            spatial = self.spatial_matches_without_cache(report, block)
        match = self.temporal_matcher.best_temporal_match(spatial)
        # Auto assign bounds are tighter than the ones used for normal matching
        if match is not None and not self._within_bounds(match.deviation):
            logger.info(
                "Vehicle %s best match for block %s has deviation %s outside auto assign bounds",
                self.vehicle_id,
                block.block_id,
                match.deviation,
            )
            return None
        return match

    def best_schedule_match(self, block: Block) -> Optional[TemporalMatch]:
        """Best match for a schedule based block, requiring forward progress"""
        current = self.best_temporal_match(self.avl_report, block, use_cache=True)
        if current is None:
            logger.debug("Vehicle %s no temporal match for block %s", self.vehicle_id, block.block_id)
            return None

        previous_report = self.previous_avl_report()
        previous = self.best_temporal_match(previous_report, block, use_cache=False)
        if previous is None:
            logger.debug(
                "Vehicle %s previous report does not match block %s", self.vehicle_id, block.block_id
            )
            return None

        if not previous.less_than_or_equal_to(current):
            logger.debug(
                "Vehicle %s previous match %s is after current match %s for block %s",
                self.vehicle_id,
                previous,
                current,
                block.block_id,
            )
            return None
        return current

    def best_no_schedule_match(self, block: Block) -> Optional[TemporalMatch]:
        """
        Best match for a frequency based block

        Compares the actual time between the two reports with the expected
        travel time between each pair of spatial matches.
        """
        previous_report = self.previous_avl_report()
        current_matches = self.spatial_matches_without_cache(self.avl_report, block)
        previous_matches = self.spatial_matches_without_cache(previous_report, block)
        elapsed = self.avl_report.time - previous_report.time

        best: Optional[TemporalMatch] = None
        for previous in previous_matches:
            for current in current_matches:
                expected = self.travel_times.expected_travel_time_between_matches(previous, current)
                deviation = ScheduleDeviation(expected - elapsed, self.core_settings)
                if not self._within_bounds(deviation):
                    continue
                if best is None or deviation.better_than(best.deviation):
                    best = TemporalMatch(current, deviation)
        return best

    def determine_matches(self) -> list[TemporalMatch]:
        blocks = self.blocks_to_examine()
        if not blocks:
            logger.info("No currently active blocks to assign vehicle %s to", self.vehicle_id)
            return []
        logger.info("Vehicle %s examining %d blocks for matches", self.vehicle_id, len(blocks))

        matches = []
        for block in blocks:
            if block.no_schedule:
                match = self.best_no_schedule_match(block)
            else:
                match = self.best_schedule_match(block)
            if match is not None:
                logger.debug("Vehicle %s valid match %s", self.vehicle_id, match)
                matches.append(match)
        return matches

    def auto_assign_vehicle_to_block_if_enabled(self) -> Optional[TemporalMatch]:
        """
        The single block the vehicle can be assigned to, or None

        Returns None when auto assignment is disabled, the vehicle was
        evaluated too recently, it has not moved far enough to judge, or the
        number of matching blocks is not exactly one.
        """
        if not self.settings.enabled:
            return None
        if self.avl_report is None:
            return None
        if self.rate_limiter.too_recent(self.vehicle_id, self.avl_report.time):
            return None
        if self.previous_avl_report() is None:
            logger.debug(
                "Vehicle %s has no previous report at least %.0fm away, not auto assigning",
                self.vehicle_id,
                self.settings.min_distance_from_current_report,
            )
            return None

        logger.info("Determining possible auto assignment for %s", self.avl_report)
        matches = self.determine_matches()
        if not matches:
            logger.info("Found no valid matches for vehicle %s", self.vehicle_id)
            return None
        if len(matches) > 1:
            logger.info(
                "Found multiple matches (%d) for vehicle %s, not assigning: %s",
                len(matches),
                self.vehicle_id,
                [m.block.block_id for m in matches],
            )
            return None

        logger.info("Found single valid match for vehicle %s: %s", self.vehicle_id, matches[0])
        return matches[0]
