"""
ScheduleDeviation tests

Run with: pytest tests/test_deviation.py
"""

from transit_predictor.config import CoreSettings
from transit_predictor.deviation import ScheduleDeviation


def test_early_and_late():
    """Test sign convention: positive is early"""
    early = ScheduleDeviation(60_000)
    late = ScheduleDeviation(-60_000)
    assert early.is_early and not early.is_late
    assert late.is_late and not late.is_early
    assert early.is_earlier_than(59)
    assert not early.is_earlier_than(60)
    assert late.is_later_than(59)
    assert not late.is_later_than(60)


def test_within_bounds_defaults():
    """Test bounds default to the configured allowable early/late"""
    settings = CoreSettings(allowable_early_seconds=900, allowable_late_seconds=5400)
    assert ScheduleDeviation(900_000, settings).is_within_bounds()
    assert not ScheduleDeviation(900_001, settings).is_within_bounds()
    assert ScheduleDeviation(-5_400_000, settings).is_within_bounds()
    assert not ScheduleDeviation(-5_400_001, settings).is_within_bounds()


def test_within_explicit_bounds():
    """Test explicit bounds override the defaults"""
    deviation = ScheduleDeviation(-400_000)
    assert deviation.is_within_bounds()
    assert not deviation.is_within_bounds(180, 300)


def test_within_bounds_for_initial_matching():
    """Test initial matching uses its own window"""
    settings = CoreSettings(
        allowable_early_seconds_for_initial_matching=600,
        allowable_late_seconds_for_initial_matching=1200,
    )
    assert ScheduleDeviation(600_000, settings).is_within_bounds_for_initial_matching()
    assert not ScheduleDeviation(700_000, settings).is_within_bounds_for_initial_matching()
    assert not ScheduleDeviation(-1_300_000, settings).is_within_bounds_for_initial_matching()


def test_early_penalized_by_ratio():
    """Test early deviations weigh more than late ones of the same size"""
    settings = CoreSettings(early_to_late_ratio=3.0)
    early = ScheduleDeviation(60_000, settings)
    late = ScheduleDeviation(-120_000, settings)
    assert early.abs_adjusted_msec == 180_000
    assert late.abs_adjusted_msec == 120_000
    assert late.better_than(early)
    assert not early.better_than(late)


def test_better_than_none():
    """Test any deviation beats a missing one"""
    deviation = ScheduleDeviation(-1)
    assert deviation.better_than(None)
    assert deviation.better_than_or_equal_to(None)


def test_better_than_or_equal_to_ties():
    """Test ties only count for the non-strict comparison"""
    a = ScheduleDeviation(-30_000)
    b = ScheduleDeviation(-30_000)
    assert not a.better_than(b)
    assert a.better_than_or_equal_to(b)
    assert a == b


def test_add_time():
    """Test lateness accumulates fully when late and scaled when early"""
    settings = CoreSettings(early_to_late_ratio=3.0)
    assert ScheduleDeviation(-60_000, settings).add_time(30_000).msec == -90_000
    assert ScheduleDeviation(60_000, settings).add_time(30_000).msec == 70_000


def test_string_form():
    """Test human readable rendering"""
    assert str(ScheduleDeviation(310_000)) == "5m 10s (early)"
    assert str(ScheduleDeviation(0)) == "0s (on time)"
    assert str(ScheduleDeviation(-45_000)) == "45s (late)"
