"""
Kalman filter tests

Run with: pytest tests/test_kalman.py
"""

import pytest

from transit_predictor.kalman import (
    KalmanErrorCache,
    KalmanErrorCacheKey,
    KalmanPrediction,
    TravelTimeDetails,
)


def test_predict_blends_last_vehicle_and_history():
    """Test the gain weighs the history average against the last vehicle"""
    result = KalmanPrediction().predict(120, [100, 200], 1000)

    # mean 150, variance 2500, gain 3500 / 6000
    assert result.result == pytest.approx(137.5)
    assert result.filter_error == pytest.approx(2500 * 3500 / 6000)


def test_predict_zero_variance_and_error():
    """Test the gain falls back to one half when nothing is known"""
    result = KalmanPrediction().predict(100, [200, 200, 200], 0)
    assert result.result == pytest.approx(150.0)
    assert result.filter_error == 0


def test_predict_without_history_raises():
    """Test an empty history is rejected"""
    with pytest.raises(ValueError):
        KalmanPrediction().predict(100, [], 100)


def test_error_cache():
    """Test errors are stored per trip and stop path"""
    cache = KalmanErrorCache()
    key = KalmanErrorCacheKey("T1", 2)
    assert cache.get_error(key) is None

    cache.put_error(key, 12.5)
    cache.put_error(key, 7.0)
    assert cache.get_error(key) == 7.0
    assert cache.get_error(KalmanErrorCacheKey("T1", 3)) is None
    assert len(cache) == 1


def test_travel_time_details():
    """Test travel time is arrival minus departure"""
    details = TravelTimeDetails(departure_time=1_000, arrival_time=301_000)
    assert details.travel_time == 300_000
