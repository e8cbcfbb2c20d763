"""
Runtime configuration for the matching and prediction core

Values come from environment variables (optionally via a .env file) and are
grouped into small dataclasses so each component only receives the settings
it reads. Every variable is prefixed with TRANSIT_.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

ENV_PREFIX = "TRANSIT_"


class PredictionMethod(str, Enum):
    """Travel/dwell time strategy used by the prediction engine"""

    DEFAULT = "default"
    LAST_VEHICLE = "last_vehicle"
    HISTORICAL_AVERAGE = "historical_average"
    KALMAN = "kalman"


class BiasAdjusterType(str, Enum):
    NONE = "none"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


def _getenv(name: str) -> Optional[str]:
    value = os.getenv(ENV_PREFIX + name)
    if value is None or value.strip() == "":
        return None
    return value.strip()


def env_int(name: str, default: int) -> int:
    value = _getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {value!r}") from None


def env_float(name: str, default: float) -> float:
    value = _getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {value!r}") from None


def env_bool(name: str, default: bool) -> bool:
    value = _getenv(name)
    if value is None:
        return default
    if value.lower() in ("1", "true", "yes", "on"):
        return True
    if value.lower() in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"{ENV_PREFIX}{name} must be a boolean, got {value!r}")


def env_enum(name: str, enum_cls, default):
    value = _getenv(name)
    if value is None:
        return default
    try:
        return enum_cls(value.lower())
    except ValueError:
        choices = ", ".join(member.value for member in enum_cls)
        raise ValueError(f"{ENV_PREFIX}{name} must be one of: {choices}") from None


@dataclass
class CoreSettings:
    """Matching and schedule adherence settings"""

    early_to_late_ratio: float = 3.0
    allowable_early_seconds: int = 15 * 60
    allowable_late_seconds: int = 90 * 60
    allowable_early_seconds_for_initial_matching: int = 10 * 60
    allowable_late_seconds_for_initial_matching: int = 20 * 60
    max_distance_from_segment: float = 60.0
    max_bad_matches_in_a_row: int = 2
    minutes_into_morning_to_include_previous_service_ids: int = 4 * 60
    max_cached_service_days: int = 14
    avl_history_size: int = 20
    crow_flies_speed_mps: float = 10.0
    default_break_time_sec: int = 0

    @classmethod
    def from_env(cls) -> "CoreSettings":
        return cls(
            early_to_late_ratio=env_float("EARLY_TO_LATE_RATIO", cls.early_to_late_ratio),
            allowable_early_seconds=env_int("ALLOWABLE_EARLY_SECONDS", cls.allowable_early_seconds),
            allowable_late_seconds=env_int("ALLOWABLE_LATE_SECONDS", cls.allowable_late_seconds),
            allowable_early_seconds_for_initial_matching=env_int(
                "ALLOWABLE_EARLY_SECONDS_FOR_INITIAL_MATCHING",
                cls.allowable_early_seconds_for_initial_matching,
            ),
            allowable_late_seconds_for_initial_matching=env_int(
                "ALLOWABLE_LATE_SECONDS_FOR_INITIAL_MATCHING",
                cls.allowable_late_seconds_for_initial_matching,
            ),
            max_distance_from_segment=env_float(
                "MAX_DISTANCE_FROM_SEGMENT", cls.max_distance_from_segment
            ),
            max_bad_matches_in_a_row=env_int("MAX_BAD_MATCHES_IN_A_ROW", cls.max_bad_matches_in_a_row),
            minutes_into_morning_to_include_previous_service_ids=env_int(
                "MINUTES_INTO_MORNING_TO_INCLUDE_PREVIOUS_SERVICE_IDS",
                cls.minutes_into_morning_to_include_previous_service_ids,
            ),
            max_cached_service_days=env_int("MAX_CACHED_SERVICE_DAYS", cls.max_cached_service_days),
            avl_history_size=env_int("AVL_HISTORY_SIZE", cls.avl_history_size),
            crow_flies_speed_mps=env_float("CROW_FLIES_SPEED_MPS", cls.crow_flies_speed_mps),
            default_break_time_sec=env_int("DEFAULT_BREAK_TIME_SEC", cls.default_break_time_sec),
        )


@dataclass
class AutoAssignSettings:
    enabled: bool = True
    min_time_between_auto_assigning_secs: int = 30
    min_distance_from_current_report: float = 100.0
    exclusive_block_assignments: bool = True
    allowable_early_seconds: int = 3 * 60
    allowable_late_seconds: int = 5 * 60

    @classmethod
    def from_env(cls) -> "AutoAssignSettings":
        return cls(
            enabled=env_bool("AUTO_ASSIGN_ENABLED", cls.enabled),
            min_time_between_auto_assigning_secs=env_int(
                "MIN_TIME_BETWEEN_AUTO_ASSIGNING_SECS", cls.min_time_between_auto_assigning_secs
            ),
            min_distance_from_current_report=env_float(
                "MIN_DISTANCE_FROM_CURRENT_REPORT", cls.min_distance_from_current_report
            ),
            exclusive_block_assignments=env_bool(
                "EXCLUSIVE_BLOCK_ASSIGNMENTS", cls.exclusive_block_assignments
            ),
            allowable_early_seconds=env_int(
                "AUTO_ASSIGN_ALLOWABLE_EARLY_SECONDS", cls.allowable_early_seconds
            ),
            allowable_late_seconds=env_int(
                "AUTO_ASSIGN_ALLOWABLE_LATE_SECONDS", cls.allowable_late_seconds
            ),
        )


@dataclass
class HistoricalAverageSettings:
    """Bounds and thresholds shared by the averages, Kalman and last-vehicle data"""

    min_days: int = 3
    min_travel_time_msec: int = 0
    max_travel_time_msec: int = 60 * 60 * 1000
    min_dwell_time_msec: int = 0
    max_dwell_time_msec: int = 30 * 60 * 1000
    cache_increments_for_frequency_service: int = 180 * 60
    last_vehicle_max_age_secs: int = 60 * 60
    max_days_to_keep_history: int = 30

    @classmethod
    def from_env(cls) -> "HistoricalAverageSettings":
        return cls(
            min_days=env_int("HISTORICAL_AVERAGE_MIN_DAYS", cls.min_days),
            min_travel_time_msec=env_int("MIN_TRAVEL_TIME_MSEC", cls.min_travel_time_msec),
            max_travel_time_msec=env_int("MAX_TRAVEL_TIME_MSEC", cls.max_travel_time_msec),
            min_dwell_time_msec=env_int("MIN_DWELL_TIME_MSEC", cls.min_dwell_time_msec),
            max_dwell_time_msec=env_int("MAX_DWELL_TIME_MSEC", cls.max_dwell_time_msec),
            cache_increments_for_frequency_service=env_int(
                "CACHE_INCREMENTS_FOR_FREQUENCY_SERVICE", cls.cache_increments_for_frequency_service
            ),
            last_vehicle_max_age_secs=env_int(
                "LAST_VEHICLE_MAX_AGE_SECS", cls.last_vehicle_max_age_secs
            ),
            max_days_to_keep_history=env_int(
                "MAX_DAYS_TO_KEEP_HISTORY", cls.max_days_to_keep_history
            ),
        )


@dataclass
class KalmanSettings:
    min_days: int = 3
    max_days: int = 3
    max_days_to_search: int = 30
    initial_error_value: float = 100.0
    percentage_prediction_method_difference: float = 50.0
    threshold_for_difference_event_log_msec: int = 60 * 1000
    use_kalman_for_partial_stop_paths: bool = True

    @classmethod
    def from_env(cls) -> "KalmanSettings":
        return cls(
            min_days=env_int("KALMAN_MIN_DAYS", cls.min_days),
            max_days=env_int("KALMAN_MAX_DAYS", cls.max_days),
            max_days_to_search=env_int("KALMAN_MAX_DAYS_TO_SEARCH", cls.max_days_to_search),
            initial_error_value=env_float("KALMAN_INITIAL_ERROR_VALUE", cls.initial_error_value),
            percentage_prediction_method_difference=env_float(
                "PERCENTAGE_PREDICTION_METHOD_DIFFERENCE",
                cls.percentage_prediction_method_difference,
            ),
            threshold_for_difference_event_log_msec=env_int(
                "THRESHOLD_FOR_DIFFERENCE_EVENT_LOG_MSEC",
                cls.threshold_for_difference_event_log_msec,
            ),
            use_kalman_for_partial_stop_paths=env_bool(
                "USE_KALMAN_FOR_PARTIAL_STOP_PATHS", cls.use_kalman_for_partial_stop_paths
            ),
        )


@dataclass
class BiasSettings:
    adjuster: BiasAdjusterType = BiasAdjusterType.NONE
    linear_rate: float = 0.0006
    linear_updown: int = -1
    exponential_a: float = 0.5
    exponential_b: float = 1.1
    exponential_c: float = -0.5
    exponential_updown: int = -1

    @classmethod
    def from_env(cls) -> "BiasSettings":
        return cls(
            adjuster=env_enum("BIAS_ADJUSTER", BiasAdjusterType, cls.adjuster),
            linear_rate=env_float("LINEAR_BIAS_RATE", cls.linear_rate),
            linear_updown=env_int("LINEAR_BIAS_UPDOWN", cls.linear_updown),
            exponential_a=env_float("EXPONENTIAL_BIAS_A", cls.exponential_a),
            exponential_b=env_float("EXPONENTIAL_BIAS_B", cls.exponential_b),
            exponential_c=env_float("EXPONENTIAL_BIAS_C", cls.exponential_c),
            exponential_updown=env_int("EXPONENTIAL_BIAS_UPDOWN", cls.exponential_updown),
        )


@dataclass
class PredictionSettings:
    method: PredictionMethod = PredictionMethod.DEFAULT
    max_prediction_time_secs: int = 30 * 60
    use_arrival_predictions_for_normal_stops: bool = True
    use_exact_sched_time_for_wait_stops: bool = False
    max_late_cutoff_preds_for_next_trips_secs: int = 2**31 - 1
    store_travel_time_stop_path_predictions: bool = False
    max_stop_path_predictions_per_trip: int = 500

    @classmethod
    def from_env(cls) -> "PredictionSettings":
        return cls(
            method=env_enum("PREDICTION_METHOD", PredictionMethod, cls.method),
            max_prediction_time_secs=env_int("MAX_PREDICTION_TIME_SECS", cls.max_prediction_time_secs),
            use_arrival_predictions_for_normal_stops=env_bool(
                "USE_ARRIVAL_PREDICTIONS_FOR_NORMAL_STOPS",
                cls.use_arrival_predictions_for_normal_stops,
            ),
            use_exact_sched_time_for_wait_stops=env_bool(
                "USE_EXACT_SCHED_TIME_FOR_WAIT_STOPS", cls.use_exact_sched_time_for_wait_stops
            ),
            max_late_cutoff_preds_for_next_trips_secs=env_int(
                "MAX_LATE_CUTOFF_PREDS_FOR_NEXT_TRIPS_SECS",
                cls.max_late_cutoff_preds_for_next_trips_secs,
            ),
            store_travel_time_stop_path_predictions=env_bool(
                "STORE_TRAVEL_TIME_STOP_PATH_PREDICTIONS",
                cls.store_travel_time_stop_path_predictions,
            ),
            max_stop_path_predictions_per_trip=env_int(
                "MAX_STOP_PATH_PREDICTIONS_PER_TRIP", cls.max_stop_path_predictions_per_trip
            ),
        )


@dataclass
class HoldingSettings:
    enabled: bool = False
    generate_holding_time_when_prediction_within_msec: int = 0
    use_holding_time_in_prediction: bool = False

    @classmethod
    def from_env(cls) -> "HoldingSettings":
        return cls(
            enabled=env_bool("HOLDING_ENABLED", cls.enabled),
            generate_holding_time_when_prediction_within_msec=env_int(
                "GENERATE_HOLDING_TIME_WHEN_PREDICTION_WITHIN_MSEC",
                cls.generate_holding_time_when_prediction_within_msec,
            ),
            use_holding_time_in_prediction=env_bool(
                "USE_HOLDING_TIME_IN_PREDICTION", cls.use_holding_time_in_prediction
            ),
        )


@dataclass
class Settings:
    """All settings for one TransitCore instance"""

    core: CoreSettings = field(default_factory=CoreSettings)
    auto_assign: AutoAssignSettings = field(default_factory=AutoAssignSettings)
    prediction: PredictionSettings = field(default_factory=PredictionSettings)
    averages: HistoricalAverageSettings = field(default_factory=HistoricalAverageSettings)
    kalman: KalmanSettings = field(default_factory=KalmanSettings)
    bias: BiasSettings = field(default_factory=BiasSettings)
    holding: HoldingSettings = field(default_factory=HoldingSettings)
    worker_threads: int = 4

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            core=CoreSettings.from_env(),
            auto_assign=AutoAssignSettings.from_env(),
            prediction=PredictionSettings.from_env(),
            averages=HistoricalAverageSettings.from_env(),
            kalman=KalmanSettings.from_env(),
            bias=BiasSettings.from_env(),
            holding=HoldingSettings.from_env(),
            worker_threads=env_int("WORKER_THREADS", cls.worker_threads),
        )
