"""
Auto assignment tests

A vehicle reporting without an assignment is assigned only when exactly one
available block matches both its current report and an earlier report far
enough away.

Run with: pytest tests/test_auto_assign.py
"""

import logging

import pytest

from transit_predictor.auto_assign import AutoAssignRateLimiter
from transit_predictor.config import Settings
from transit_predictor.core import TransitCore
from transit_predictor.events import VehicleEventType
from transit_predictor.schedule import Block
from transit_predictor.vehicle_status import AssignmentMethod


def _drive(core, manual_clock, report):
    manual_clock.time = report.time
    return core.match_and_predict(report.vehicle_id, report)


def test_rate_limiter_first_attempt_allowed(at):
    """Test the first attempt for a vehicle is never too recent"""
    limiter = AutoAssignRateLimiter(30)
    assert not limiter.too_recent("V1", at(28800))


def test_rate_limiter_only_records_eligible_attempts(at):
    """Test rejected attempts do not push the next allowed attempt out"""
    limiter = AutoAssignRateLimiter(30)
    assert not limiter.too_recent("V1", at(28800))
    assert limiter.too_recent("V1", at(28820))
    assert not limiter.too_recent("V1", at(28835))
    assert limiter.too_recent("V1", at(28850))

    limiter.clear("V1")
    assert not limiter.too_recent("V1", at(28851))


def test_auto_assign_after_two_reports(core, manual_clock, report_at, sink):
    """Test a vehicle moving along a single active block gets assigned to it"""
    match, predictions = _drive(core, manual_clock, report_at("V1", 0.004, 28920))
    assert match is None
    assert predictions == []

    match, predictions = _drive(core, manual_clock, report_at("V1", 0.006, 28980))
    assert match is not None
    assert match.block.block_id == "B1"
    assert match.trip.trip_id == "T1"
    assert predictions

    status = core.get_status("V1")
    assert status.predictable
    assert status.assignment_method == AssignmentMethod.AUTO_ASSIGNER
    assert status.assignment_id == "B1"
    assert [e.event_type for e in sink.vehicle_events] == [VehicleEventType.PREDICTABLE]


def test_auto_assign_too_recent(core, manual_clock, report_at):
    """Test a second attempt inside the minimum interval is skipped"""
    _drive(core, manual_clock, report_at("V1", 0.004, 28920))
    match, predictions = _drive(core, manual_clock, report_at("V1", 0.006, 28930))

    assert match is None
    assert predictions == []
    assert not core.get_status("V1").predictable


def test_auto_assign_needs_movement(core, manual_clock, report_at):
    """Test a vehicle that has barely moved is not assigned"""
    _drive(core, manual_clock, report_at("V1", 0.004, 28920))
    match, _ = _drive(core, manual_clock, report_at("V1", 0.0045, 28980))

    assert match is None
    assert not core.get_status("V1").predictable


def test_auto_assign_disabled(graph, report_at, manual_clock):
    """Test nothing is assigned when auto assignment is turned off"""
    settings = Settings()
    settings.auto_assign.enabled = False
    core = TransitCore(graph, settings, now=manual_clock)

    _drive(core, manual_clock, report_at("V1", 0.004, 28920))
    match, _ = _drive(core, manual_clock, report_at("V1", 0.006, 28980))
    assert match is None


def test_exclusive_block_already_taken(core, manual_clock, report_at):
    """Test a block held by another vehicle is not offered for auto assignment"""
    match, _ = _drive(core, manual_clock, report_at("V0", 0.005, 28950, assignment_id="B1"))
    assert match is not None

    _drive(core, manual_clock, report_at("V1", 0.004, 28920))
    match, _ = _drive(core, manual_clock, report_at("V1", 0.006, 28980))
    assert match is None
    assert not core.get_status("V1").predictable


def test_block_held_for_schedule_based_predictions_is_available(core, manual_clock, report_at):
    """Test vehicles only used for schedule based predictions do not hold a block"""
    _drive(core, manual_clock, report_at("V0", 0.005, 28950, assignment_id="B1", for_sched_based_preds=True))

    _drive(core, manual_clock, report_at("V1", 0.004, 28920))
    match, _ = _drive(core, manual_clock, report_at("V1", 0.006, 28980))
    assert match is not None
    assert match.block.block_id == "B1"


def test_non_exclusive_assignment(graph, report_at, manual_clock):
    """Test blocks can be shared when exclusive assignments are turned off"""
    settings = Settings()
    settings.auto_assign.exclusive_block_assignments = False
    core = TransitCore(graph, settings, now=manual_clock)

    _drive(core, manual_clock, report_at("V0", 0.005, 28950, assignment_id="B1"))
    _drive(core, manual_clock, report_at("V1", 0.004, 28920))
    match, _ = _drive(core, manual_clock, report_at("V1", 0.006, 28980))
    assert match is not None


def test_ambiguous_blocks_not_assigned(make_graph, make_pattern, make_trip, report_at, manual_clock):
    """Test two equally good blocks mean no assignment"""
    pattern = make_pattern("outbound")
    graph = make_graph(
        Block("B1", "WKDY", [make_trip("T1", pattern, 8 * 3600, block_id="B1")]),
        Block("B2", "WKDY", [make_trip("T9", pattern, 8 * 3600, block_id="B2")]),
    )
    core = TransitCore(graph, Settings(), now=manual_clock)

    _drive(core, manual_clock, report_at("V1", 0.004, 28920))
    match, _ = _drive(core, manual_clock, report_at("V1", 0.006, 28980))
    assert match is None


def test_auto_assign_outside_tighter_bounds(core, manual_clock, report_at):
    """Test a vehicle late beyond the auto assign window is left unassigned"""
    # Ten minutes behind schedule: fine for normal matching, too late to auto assign
    _drive(core, manual_clock, report_at("V1", 0.004, 28920 + 600))
    match, _ = _drive(core, manual_clock, report_at("V1", 0.006, 28980 + 600))
    assert match is None


def test_auto_assign_no_schedule_block(make_graph, make_pattern, make_frequency_trip, report_at, manual_clock):
    """Test frequency based blocks are matched by comparing expected and elapsed travel time"""
    trip = make_frequency_trip("F_T1", make_pattern("outbound"), 6 * 3600, 10 * 3600)
    graph = make_graph(Block("F1", "WKDY", [trip]))
    core = TransitCore(graph, Settings(), now=manual_clock)

    _drive(core, manual_clock, report_at("V1", 0.004, 28800))
    match, predictions = _drive(core, manual_clock, report_at("V1", 0.006, 28860))

    assert match is not None
    assert match.block.block_id == "F1"
    assert match.deviation.msec == 0
    assert predictions


def test_auto_assign_operation(core, manual_clock, report_at):
    """Test auto_assign() on a known and an unknown vehicle"""
    assert core.auto_assign("UNKNOWN") is None

    _drive(core, manual_clock, report_at("V1", 0.004, 28920))
    # Rate limiter saw the first report; wait past the minimum interval
    manual_clock.time += 60_000
    core.get_status("V1").set_avl_report(report_at("V1", 0.006, 28980))

    match = core.auto_assign("V1")
    assert match is not None
    assert core.get_status("V1").predictable
    # Already predictable: the current match is returned unchanged
    assert core.auto_assign("V1") is match


@pytest.mark.parametrize("lon", [0.004, 0.006])
def test_single_report_never_assigns(core, manual_clock, report_at, lon):
    """Test one report alone is not enough evidence"""
    match, _ = _drive(core, manual_clock, report_at("V1", lon, 28920))
    assert match is None


def test_backward_progress_not_assigned(core, manual_clock, report_at, caplog):
    """Test reports that move backwards along the block are not assigned"""
    # Both reports are within the auto assign bounds on their own
    _drive(core, manual_clock, report_at("V1", 0.006, 28920))
    with caplog.at_level(logging.DEBUG, logger="transit_predictor.auto_assign"):
        match, _ = _drive(core, manual_clock, report_at("V1", 0.004, 28980))

    assert match is None
    assert not core.get_status("V1").predictable
    assert "is after current match" in caplog.text


def test_no_schedule_elapsed_time_mismatch(make_graph, make_pattern, make_frequency_trip, report_at, manual_clock):
    """Test a frequency block is rejected when the time between reports is far from the expected travel time"""
    trip = make_frequency_trip("F_T1", make_pattern("outbound"), 6 * 3600, 10 * 3600)
    core = TransitCore(make_graph(Block("F1", "WKDY", [trip])), Settings(), now=manual_clock)

    # 60s of expected travel took 10 minutes
    _drive(core, manual_clock, report_at("V1", 0.004, 28800))
    match, predictions = _drive(core, manual_clock, report_at("V1", 0.006, 28800 + 600))

    assert match is None
    assert predictions == []
    assert not core.get_status("V1").predictable
