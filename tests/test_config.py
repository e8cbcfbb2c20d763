"""
Configuration tests: defaults and TRANSIT_* environment overrides

Run with: pytest tests/test_config.py
"""

import pytest

from transit_predictor.config import (
    BiasAdjusterType,
    PredictionMethod,
    Settings,
    env_bool,
)


def test_defaults():
    """Test default settings match the documented values"""
    settings = Settings()
    assert settings.core.early_to_late_ratio == 3.0
    assert settings.core.max_bad_matches_in_a_row == 2
    assert settings.auto_assign.allowable_early_seconds == 180
    assert settings.auto_assign.allowable_late_seconds == 300
    assert settings.prediction.method == PredictionMethod.DEFAULT
    assert settings.prediction.max_prediction_time_secs == 1800
    assert settings.bias.adjuster == BiasAdjusterType.NONE
    assert settings.holding.enabled is False


def test_from_env(monkeypatch):
    """Test values are read from TRANSIT_ environment variables"""
    monkeypatch.setenv("TRANSIT_PREDICTION_METHOD", "KALMAN")
    monkeypatch.setenv("TRANSIT_MAX_PREDICTION_TIME_SECS", "3600")
    monkeypatch.setenv("TRANSIT_EARLY_TO_LATE_RATIO", "2.5")
    monkeypatch.setenv("TRANSIT_AUTO_ASSIGN_ENABLED", "no")
    monkeypatch.setenv("TRANSIT_BIAS_ADJUSTER", "linear")
    monkeypatch.setenv("TRANSIT_WORKER_THREADS", " 8 ")

    settings = Settings.from_env()
    assert settings.prediction.method == PredictionMethod.KALMAN
    assert settings.prediction.max_prediction_time_secs == 3600
    assert settings.core.early_to_late_ratio == 2.5
    assert settings.auto_assign.enabled is False
    assert settings.bias.adjuster == BiasAdjusterType.LINEAR
    assert settings.worker_threads == 8


def test_blank_value_uses_default(monkeypatch):
    """Test an empty variable falls back to the default"""
    monkeypatch.setenv("TRANSIT_MAX_BAD_MATCHES_IN_A_ROW", "  ")
    assert Settings.from_env().core.max_bad_matches_in_a_row == 2


@pytest.mark.parametrize(
    "name,value,message",
    [
        ("TRANSIT_MAX_PREDICTION_TIME_SECS", "half an hour", "must be an integer"),
        ("TRANSIT_EARLY_TO_LATE_RATIO", "three", "must be a number"),
        ("TRANSIT_HOLDING_ENABLED", "maybe", "must be a boolean"),
        ("TRANSIT_PREDICTION_METHOD", "crystal_ball", "must be one of"),
    ],
)
def test_invalid_values_raise(monkeypatch, name, value, message):
    """Test invalid environment values are rejected with the variable name"""
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError, match=message) as excinfo:
        Settings.from_env()
    assert name in str(excinfo.value)


@pytest.mark.parametrize("value,expected", [("1", True), ("TRUE", True), ("off", False), ("0", False)])
def test_env_bool(monkeypatch, value, expected):
    """Test accepted boolean spellings"""
    monkeypatch.setenv("TRANSIT_FLAG", value)
    assert env_bool("FLAG", not expected) is expected
