"""
Service day resolution: which service IDs, and so which blocks, are active

Calendars come from the schedule graph (Calendar / CalendarDate rows).
"""

import logging
import threading
from collections import OrderedDict
from typing import Optional

from transit_predictor.config import CoreSettings
from transit_predictor.schedule import Block, ScheduleGraph
from transit_predictor.timeutils import SEC_PER_DAY

logger = logging.getLogger(__name__)


class ServiceDayResolver:
    def __init__(self, graph: ScheduleGraph, settings: Optional[CoreSettings] = None):
        self.graph = graph
        self.clock = graph.clock
        self.settings = settings or CoreSettings()
        # Keyed by start-of-day epoch msec, oldest inserted day evicted first
        self._cache: OrderedDict[int, list[str]] = OrderedDict()
        self._lock = threading.Lock()
        self._dates_by_day: dict[str, list] = {}
        for calendar_date in graph.calendar_dates:
            self._dates_by_day.setdefault(calendar_date.date, []).append(calendar_date)

    def active_calendars(self, epoch_ms: int) -> list:
        """
        Calendars whose date range covers the day of epoch_ms

        When none do, the calendars sharing the latest end date are used so
        that an expired feed keeps running. That is logged as a configuration
        problem unless the day is before those calendars even started.
        """
        day = self.clock.date_str(epoch_ms)
        active = [c for c in self.graph.calendars if c.start_date <= day <= c.end_date]
        if active or not self.graph.calendars:
            return active

        max_end_date = max(c.end_date for c in self.graph.calendars)
        fallback = [c for c in self.graph.calendars if c.end_date == max_end_date]
        earliest_start = min(c.start_date for c in fallback)
        if earliest_start <= day:
            logger.error(
                "No calendar active for %s; all calendars expired. Using calendars "
                "with latest end date %s: %s",
                day,
                max_end_date,
                [c.service_id for c in fallback],
            )
        return fallback

    def _compute_service_ids(self, epoch_ms: int) -> list[str]:
        weekday = self.clock.weekday(epoch_ms)
        service_ids = [
            calendar.service_id
            for calendar in self.active_calendars(epoch_ms)
            if calendar.runs_on_weekday(weekday)
        ]

        for calendar_date in self._dates_by_day.get(self.clock.date_str(epoch_ms), []):
            if calendar_date.is_addition:
                if calendar_date.service_id not in service_ids:
                    service_ids.append(calendar_date.service_id)
            elif calendar_date.service_id in service_ids:
                service_ids.remove(calendar_date.service_id)
        return service_ids

    def service_ids_for_day(self, epoch_ms: int) -> list[str]:
        """Service IDs active on the day containing epoch_ms (cached per day)"""
        day_start = self.clock.start_of_day(epoch_ms)
        with self._lock:
            cached = self._cache.get(day_start)
        if cached is not None:
            return list(cached)

        service_ids = self._compute_service_ids(epoch_ms)
        with self._lock:
            self._cache[day_start] = service_ids
            while len(self._cache) > self.settings.max_cached_service_days:
                self._cache.popitem(last=False)
        return list(service_ids)

    def previous_day_service_ids(self, epoch_ms: int) -> list[str]:
        """The previous day's service IDs early in the morning, otherwise none"""
        threshold_secs = self.settings.minutes_into_morning_to_include_previous_service_ids * 60
        if self.clock.seconds_into_day(epoch_ms) > threshold_secs:
            return []
        return self.service_ids_for_day(self.clock.previous_day(epoch_ms))

    def service_ids(self, epoch_ms: int) -> list[str]:
        """
        Service IDs for the instant, including the previous day's early in the morning

        Blocks from the previous service day can still be running shortly
        after midnight.
        """
        service_ids = self.service_ids_for_day(epoch_ms)
        for service_id in self.previous_day_service_ids(epoch_ms):
            if service_id not in service_ids:
                service_ids.append(service_id)
        return service_ids


class ActiveBlocksProvider:
    """Blocks that are in service, within the allowable early/late window"""

    def __init__(self, graph: ScheduleGraph, resolver: ServiceDayResolver,
                 settings: Optional[CoreSettings] = None):
        self.graph = graph
        self.resolver = resolver
        self.settings = settings or CoreSettings()

    def active_blocks(self, epoch_ms: int) -> list[Block]:
        clock = self.graph.clock
        time_of_day = clock.seconds_into_day(epoch_ms)
        today = self.resolver.service_ids_for_day(epoch_ms)
        yesterday = self.resolver.previous_day_service_ids(epoch_ms)

        result = []
        for block in self.graph.blocks_for_service_ids(dict.fromkeys(today + yesterday)):
            if block.service_id in today and block.is_active(
                time_of_day,
                self.settings.allowable_early_seconds,
                self.settings.allowable_late_seconds,
            ):
                result.append(block)
            elif block.service_id in yesterday and block.is_active(
                time_of_day + SEC_PER_DAY,
                self.settings.allowable_early_seconds,
                self.settings.allowable_late_seconds,
            ):
                result.append(block)
        return result

    def time_of_day_for_block(self, block: Block, epoch_ms: int) -> int:
        """Seconds into the block's own service day (may exceed 24h)"""
        time_of_day = self.graph.clock.seconds_into_day(epoch_ms)
        if time_of_day < block.start_time - self.settings.allowable_early_seconds and \
                block.end_time > SEC_PER_DAY:
            return time_of_day + SEC_PER_DAY
        return time_of_day
