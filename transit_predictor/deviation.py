"""
Schedule deviation: how early or late a vehicle is

Positive values mean early, negative values mean late. Being early is worse
for riders than being late by the same amount (they miss the bus), so
comparisons weight early values by the configured early-to-late ratio.
"""

from typing import Optional

from transit_predictor.config import CoreSettings
from transit_predictor.timeutils import MS_PER_SEC, elapsed_str


class ScheduleDeviation:
    __slots__ = ("msec", "settings")

    def __init__(self, msec: int, settings: Optional[CoreSettings] = None):
        self.msec = int(msec)
        self.settings = settings or CoreSettings()

    @property
    def early_to_late_ratio(self) -> float:
        return self.settings.early_to_late_ratio

    @property
    def is_early(self) -> bool:
        return self.msec > 0

    @property
    def is_late(self) -> bool:
        return self.msec < 0

    def add_time(self, late_msec: int) -> "ScheduleDeviation":
        """
        Accumulate additional lateness

        Lateness adds directly; an early vehicle only loses the ratio-scaled
        share of the time.
        """
        if self.msec < 0:
            self.msec -= late_msec
        else:
            self.msec += int(late_msec / self.early_to_late_ratio)
        return self

    def is_earlier_than(self, secs: int) -> bool:
        return self.msec > secs * MS_PER_SEC

    def is_later_than(self, secs: int) -> bool:
        return -self.msec > secs * MS_PER_SEC

    def is_within_bounds(self, allowable_early_secs: Optional[int] = None,
                         allowable_late_secs: Optional[int] = None) -> bool:
        if allowable_early_secs is None:
            allowable_early_secs = self.settings.allowable_early_seconds
        if allowable_late_secs is None:
            allowable_late_secs = self.settings.allowable_late_seconds
        return not self.is_earlier_than(allowable_early_secs) and not self.is_later_than(
            allowable_late_secs
        )

    def is_within_bounds_for_initial_matching(self) -> bool:
        return self.is_within_bounds(
            self.settings.allowable_early_seconds_for_initial_matching,
            self.settings.allowable_late_seconds_for_initial_matching,
        )

    @property
    def abs_adjusted_msec(self) -> int:
        """Magnitude with early values penalized by the early-to-late ratio"""
        if self.msec > 0:
            return int(round(self.msec * self.early_to_late_ratio))
        return -self.msec

    def better_than(self, other: Optional["ScheduleDeviation"]) -> bool:
        if other is None:
            return True
        return self.abs_adjusted_msec < other.abs_adjusted_msec

    def better_than_or_equal_to(self, other: Optional["ScheduleDeviation"]) -> bool:
        if other is None:
            return True
        return self.abs_adjusted_msec <= other.abs_adjusted_msec

    def __eq__(self, other):
        if not isinstance(other, ScheduleDeviation):
            return NotImplemented
        return self.msec == other.msec

    def __hash__(self):
        return hash(self.msec)

    def __repr__(self):
        return f"ScheduleDeviation({self.msec})"

    def __str__(self):
        if self.msec > 0:
            return f"{elapsed_str(self.msec)} (early)"
        if self.msec == 0:
            return f"{elapsed_str(self.msec)} (on time)"
        return f"{elapsed_str(-self.msec)} (late)"
