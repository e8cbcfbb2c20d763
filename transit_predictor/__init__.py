"""
Transit Predictor

Matches AVL reports to scheduled blocks and generates arrival/departure
predictions for the stops ahead of each vehicle.
"""

from transit_predictor.config import Settings
from transit_predictor.core import TransitCore
from transit_predictor.vehicle_status import AvlReport

__version__ = "1.0.0"

__all__ = ["AvlReport", "Settings", "TransitCore", "__version__"]
