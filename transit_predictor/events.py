"""Event records emitted by the core for monitoring and offline analysis"""

from dataclasses import dataclass
from typing import Optional


class VehicleEventType:
    """Descriptions used when logging notable changes in a vehicle's state"""

    PREDICTABLE = "Predictable"
    NO_MATCH = "No match"
    END_OF_BLOCK = "End of block"
    ASSIGNMENT_CHANGED = "Assignment Changed"


class PredictionEventType:
    TRAVELTIME_EXCEPTION = "Travel time exception"
    PREDICTION_VARIATION = "Prediction variation"


@dataclass(frozen=True)
class VehicleEvent:
    time: int
    vehicle_id: str
    event_type: str
    description: str
    predictable: bool
    became_unpredictable: bool = False
    block_id: Optional[str] = None
    trip_id: Optional[str] = None
    route_id: Optional[str] = None


@dataclass(frozen=True)
class PredictionEvent:
    """
    Anomalous travel time or disagreement between prediction methods

    For travel time exceptions the departure/arrival pair that produced the
    bad value is recorded so the data can be inspected later.
    """

    time: int
    event_type: str
    description: str
    vehicle_id: Optional[str] = None
    stop_id: Optional[str] = None
    trip_id: Optional[str] = None
    route_id: Optional[str] = None
    reference_vehicle_id: Optional[str] = None
    departure_stop_id: Optional[str] = None
    arrival_stop_id: Optional[str] = None
    departure_time: Optional[int] = None
    arrival_time: Optional[int] = None
