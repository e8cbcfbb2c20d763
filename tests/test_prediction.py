"""
Prediction engine tests

Block B1 runs outbound T1 at 08:00 (A 08:00, B 08:05, C 08:10, D 08:15) and
outbound T2 at 09:00. Unless stated otherwise V1 reports halfway between A
and B at 08:02:30, exactly on schedule.

Run with: pytest tests/test_prediction.py
"""

import pytest

from transit_predictor.config import BiasAdjusterType, PredictionMethod, Settings
from transit_predictor.core import TransitCore
from transit_predictor.cursor import PositionCursor
from transit_predictor.holding import HoldingTime
from transit_predictor.schedule import Block


def _predict(core, manual_clock, report):
    manual_clock.time = report.time
    return core.match_and_predict(report.vehicle_id, report)


def _summary(predictions):
    return [(p.trip_id, p.stop_id, p.is_arrival) for p in predictions]


def test_predictions_within_horizon(core, manual_clock, report_at, at):
    """Test arrivals for the rest of the trip within the default 30 minute horizon"""
    match, predictions = _predict(core, manual_clock, report_at("V1", 0.005, 28950, assignment_id="B1"))

    assert match.deviation.msec == 0
    assert _summary(predictions) == [("T1", "B", True), ("T1", "C", True), ("T1", "D", True)]
    assert [p.prediction_time for p in predictions] == [at(29100), at(29400), at(29700)]
    assert all(p.avl_time == at(28950) for p in predictions)
    assert all(p.creation_time == at(28950) for p in predictions)
    assert predictions[-1].at_end_of_trip
    assert not any(p.affected_by_wait_stop for p in predictions)


def test_predictions_into_next_trip(core, settings, manual_clock, report_at, at):
    """Test the wait stop of the next trip is predicted at its scheduled departure"""
    settings.prediction.max_prediction_time_secs = 7200
    _, predictions = _predict(core, manual_clock, report_at("V1", 0.005, 28950, assignment_id="B1"))

    assert _summary(predictions) == [
        ("T1", "B", True),
        ("T1", "C", True),
        ("T2", "A", False),
        ("T2", "B", True),
        ("T2", "C", True),
        ("T2", "D", True),
    ]
    by_stop = {(p.trip_id, p.stop_id): p for p in predictions}
    assert by_stop[("T2", "A")].prediction_time == at(32400)
    assert by_stop[("T2", "A")].affected_by_wait_stop
    assert by_stop[("T2", "D")].prediction_time == at(33300)
    assert not by_stop[("T1", "C")].affected_by_wait_stop


def test_boundary_stop_deduplicated(make_graph, make_pattern, make_trip, manual_clock, report_at, at):
    """Test the last stop of one trip and the first stop of the next give one prediction"""
    block = Block("B1", "WKDY", [
        make_trip("T1", make_pattern("outbound"), 8 * 3600),
        make_trip("T3", make_pattern("inbound"), 30000),
    ])
    core = TransitCore(make_graph(block), Settings(), now=manual_clock)

    _, predictions = _predict(core, manual_clock, report_at("V1", 0.005, 28950, assignment_id="B1"))

    at_d = [p for p in predictions if p.stop_id == "D"]
    assert len(at_d) == 1
    assert at_d[0].trip_id == "T3"
    assert not at_d[0].is_arrival
    assert at_d[0].prediction_time == at(30000)
    assert _summary(predictions) == [
        ("T1", "B", True),
        ("T1", "C", True),
        ("T3", "D", False),
        ("T3", "C", True),
        ("T3", "B", True),
    ]


def test_late_vehicle_marks_subsequent_trips(core, settings, manual_clock, report_at, at):
    """Test predictions for later trips are flagged when the vehicle is running late"""
    settings.prediction.max_prediction_time_secs = 7200
    settings.prediction.max_late_cutoff_preds_for_next_trips_secs = 60

    match, predictions = _predict(core, manual_clock, report_at("V1", 0.005, 29070, assignment_id="B1"))

    assert match.deviation.msec == -120_000
    assert predictions[0].prediction_time == at(29220)
    assert predictions[0].schedule_deviation_msec == -120_000
    for prediction in predictions:
        assert prediction.late_and_subsequent_trip_so_uncertain == (prediction.trip_id == "T2")


def test_past_predictions_dropped(core, manual_clock, report_at, at):
    """Test predictions that are already in the past are not returned"""
    report = report_at("V1", 0.005, 28950, assignment_id="B1")
    manual_clock.time = at(29200)
    _, predictions = core.match_and_predict("V1", report)

    assert [p.stop_id for p in predictions] == ["C", "D"]
    assert all(p.creation_time == at(29200) for p in predictions)


def test_schedule_based_predictions_ignore_horizon(core, manual_clock, report_at, at):
    """Test vehicles flagged for schedule based predictions predict to the end of the block"""
    _, predictions = _predict(
        core, manual_clock, report_at("V1", 0.005, 28950, assignment_id="B1", for_sched_based_preds=True)
    )

    assert len(predictions) == 6
    assert predictions[-1].prediction_time == at(33300)
    assert all(p.sched_based_pred for p in predictions)


def test_departure_predictions_for_normal_stops(core, settings, manual_clock, report_at, at):
    """Test departures are predicted when arrival predictions are turned off"""
    settings.prediction.use_arrival_predictions_for_normal_stops = False
    _, predictions = _predict(core, manual_clock, report_at("V1", 0.005, 28950, assignment_id="B1"))

    # Last stop of a trip is always an arrival
    assert _summary(predictions) == [("T1", "B", False), ("T1", "C", False), ("T1", "D", True)]


@pytest.fixture
def matched_status(core, manual_clock, report_at):
    _predict(core, manual_clock, report_at("V1", 0.005, 28950, assignment_id="B1"))
    return core.get_status("V1")


def _wait_stop_prediction(core, status, at, prediction_secs, trip_index=1):
    cursor = PositionCursor(status.match.block, trip_index, 0, 0)
    return core.engine.prediction_for_stop(
        status, at(prediction_secs), cursor, True, False, 0, at(0), at(28950)
    )


def test_wait_stop_waits_for_schedule(core, matched_status, at):
    """Test a vehicle arriving early at a wait stop leaves after dwelling and not before the schedule"""
    prediction = _wait_stop_prediction(core, matched_status, at, 32350)

    assert not prediction.is_arrival
    assert prediction.prediction_time == at(32450)
    assert prediction.actual_prediction_time == at(32450)


def test_wait_stop_exact_schedule_time(core, settings, matched_status, at):
    """Test the published time can be the exact scheduled departure"""
    settings.prediction.use_exact_sched_time_for_wait_stops = True
    prediction = _wait_stop_prediction(core, matched_status, at, 32350)

    assert prediction.prediction_time == at(32400)
    assert prediction.actual_prediction_time == at(32450)


def test_wait_stop_break_time(core, settings, matched_status, at):
    """Test drivers get their break at a wait stop"""
    settings.core.default_break_time_sec = 600
    prediction = _wait_stop_prediction(core, matched_status, at, 32350)
    assert prediction.prediction_time == at(32950)


def test_wait_stop_break_skipped_when_deadheading(core, settings, matched_status, at):
    """Test no break is added when the vehicle still has to drive to the wait stop"""
    settings.core.default_break_time_sec = 600
    # T1's first stop is behind the vehicle: it would have to drive back to A
    prediction = _wait_stop_prediction(core, matched_status, at, 28960, trip_index=0)

    assert at(28960) < prediction.prediction_time < at(28960 + 600)


def test_wait_stop_deadhead_into_next_service_day(core, settings, matched_status, at):
    """Test the scheduled departure is taken on the day the vehicle actually reaches the wait stop"""
    # About 15.5 hours to drive back to A: it gets there late in the evening
    settings.core.crow_flies_speed_mps = 0.01
    prediction = _wait_stop_prediction(core, matched_status, at, 32350)

    assert prediction.prediction_time == at(32400 + 24 * 3600)


def test_frequency_block_predictions(make_graph, make_pattern, make_frequency_trip, manual_clock, report_at, at):
    """Test no-schedule blocks loop and skip the duplicated last stop of each loop"""
    trip = make_frequency_trip("F_T1", make_pattern("outbound"), 6 * 3600, 10 * 3600)
    core = TransitCore(make_graph(Block("F1", "WKDY", [trip])), Settings(), now=manual_clock)

    _, predictions = _predict(core, manual_clock, report_at("V1", 0.004, 28800, assignment_id="F1"))

    assert [p.stop_id for p in predictions] == ["B", "C", "B", "C", "A"]
    assert predictions[0].prediction_time == at(28980)
    status = core.get_status("V1")
    # 2 minutes into the A to B path, so the current loop left A at 07:58
    assert status.trip_start_time(0) == at(28680)
    assert predictions[0].freq_start_time == at(28680)
    assert status.trip_start_time(1) == at(29580)
    assert predictions[2].freq_start_time == at(29580)
    assert predictions[-1].freq_start_time == at(30480)


def test_frequency_block_uses_loop_average(make_graph, make_pattern, make_frequency_trip, manual_clock,
                                           report_at, at):
    """Test frequency averages are looked up by the start time of the current loop"""
    trip = make_frequency_trip("F_T1", make_pattern("outbound"), 6 * 3600, 10 * 3600)
    settings = Settings()
    settings.prediction.method = PredictionMethod.HISTORICAL_AVERAGE
    core = TransitCore(make_graph(Block("F1", "WKDY", [trip])), settings, now=manual_clock)
    key = core.frequency_averages.lookup_key("F_T1", 2, True, at(28680))
    for _ in range(settings.averages.min_days):
        core.frequency_averages.put_average(key, 123_000)

    _, predictions = _predict(core, manual_clock, report_at("V1", 0.004, 28800, assignment_id="F1"))

    assert [p.stop_id for p in predictions[:2]] == ["B", "C"]
    assert predictions[0].prediction_time == at(28980)
    assert predictions[1].prediction_time == at(28980) + 123_000


def test_bias_adjustment_applied(graph, manual_clock, report_at, at):
    """Test the configured bias adjuster shortens predicted durations"""
    settings = Settings()
    settings.bias.adjuster = BiasAdjusterType.LINEAR
    core = TransitCore(graph, settings, now=manual_clock)

    _, predictions = _predict(core, manual_clock, report_at("V1", 0.005, 28950, assignment_id="B1"))
    # 150s ahead: 0.9% shorter
    assert predictions[0].prediction_time == pytest.approx(at(28950) + 148_650, abs=1)


def test_holding_time_generated_for_wait_stop(core, settings, manual_clock, report_at, at, sink):
    """Test a holding time is produced when a wait stop prediction is close enough"""
    settings.holding.enabled = True
    settings.holding.generate_holding_time_when_prediction_within_msec = 3_600_000

    _predict(core, manual_clock, report_at("V1", 0.005, 28950, assignment_id="B1"))

    assert len(sink.holding_times) == 1
    holding = sink.holding_times[0]
    assert holding.stop_id == "A"
    assert holding.trip_id == "T2"
    assert holding.holding_time == at(32400)
    assert core.get_status("V1").holding_time == holding
    assert len(core.holding_cache) == 1


def test_holding_time_delays_following_stops(core, settings, manual_clock, report_at, at):
    """Test a cached holding time at a stop pushes back the predictions after it"""
    settings.holding.use_holding_time_in_prediction = True
    core.holding_cache.put_holding_time(HoldingTime(
        vehicle_id="V1", stop_id="C", trip_id="T1", route_id="R1",
        arrival_time=at(29400), holding_time=at(29500), creation_time=at(28950),
    ))

    _, predictions = _predict(core, manual_clock, report_at("V1", 0.005, 28950, assignment_id="B1"))

    # The arrival at C itself is unchanged
    assert [p.prediction_time for p in predictions] == [at(29100), at(29400), at(29800)]


def test_holding_time_ignored_unless_enabled(core, manual_clock, report_at, at):
    """Test cached holding times only affect predictions when configured to"""
    core.holding_cache.put_holding_time(HoldingTime(
        vehicle_id="V1", stop_id="C", trip_id="T1", route_id="R1",
        arrival_time=at(29400), holding_time=at(29500), creation_time=at(28950),
    ))

    _, predictions = _predict(core, manual_clock, report_at("V1", 0.005, 28950, assignment_id="B1"))
    assert predictions[-1].prediction_time == at(29700)


def test_prediction_to_dict(core, manual_clock, report_at):
    """Test the API representation of a prediction"""
    _, predictions = _predict(core, manual_clock, report_at("V1", 0.005, 28950, assignment_id="B1"))
    data = predictions[0].to_dict()

    assert data["stop_id"] == "B"
    assert data["trip_id"] == "T1"
    assert data["block_id"] == "B1"
    assert data["is_arrival"] is True
    assert "cursor" not in data
