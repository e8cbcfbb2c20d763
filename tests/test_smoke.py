"""
Smoke tests for the Transit Predictor

Quick tests that verify critical paths are working.
These should run fast (<10s) and fail fast if something is fundamentally broken.

Run with: pytest -m smoke
"""

import pytest
from sqlalchemy import text

from transit_predictor.models import PredictionRecord


@pytest.mark.smoke
def test_database_connection(db_session):
    """Test that database connection works"""
    result = db_session.execute(text("SELECT 1")).scalar()
    assert result == 1


@pytest.mark.smoke
def test_database_can_create_and_query_prediction(db_session, at):
    """Test basic database insert and query"""
    db_session.add(PredictionRecord(
        vehicle_id="SMOKE1", stop_id="A", trip_id="T1", prediction_time=at(28800),
        avl_time=at(28700), creation_time=at(28700), is_arrival=False,
    ))
    db_session.commit()

    queried = db_session.query(PredictionRecord).filter_by(vehicle_id="SMOKE1").first()
    assert queried is not None
    assert queried.stop_id == "A"


@pytest.mark.smoke
def test_api_server_responds(client):
    """Test that API server starts and responds"""
    response = client.get("/")
    assert response.status_code == 200


@pytest.mark.smoke
def test_core_predicts(core, manual_clock, report_at):
    """Test one AVL report with an assignment yields predictions"""
    report = report_at("V1", 0.005, 28950, assignment_id="B1")
    manual_clock.time = report.time
    match, predictions = core.match_and_predict("V1", report)

    assert match is not None
    assert predictions
