"""
FastAPI application for monitoring the transit predictor

Exposes the in-memory state of a running TransitCore (vehicle assignments,
schedule adherence, current predictions) and the predictions stored in the
database by DatabaseSink.
"""

import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from transit_predictor import __version__
from transit_predictor.core import TransitCore
from transit_predictor.database import get_db
from transit_predictor.models import PredictionRecord

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Transit Predictor API",
    description="Monitoring API for vehicle matching and arrival predictions",
    version=__version__,
)

# Enable CORS for dashboard development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_core: Optional[TransitCore] = None


def set_core(core: Optional[TransitCore]):
    """Register the TransitCore instance the endpoints report on"""
    global _core
    _core = core
    if core is not None:
        logger.info("Monitoring API attached to transit core (%d blocks)", len(core.graph.blocks))


def get_core() -> TransitCore:
    """FastAPI dependency returning the running TransitCore"""
    if _core is None:
        raise HTTPException(status_code=503, detail="Transit core is not running")
    return _core


@app.get("/")
async def root():
    """API root - health check"""
    return {
        "status": "ok",
        "name": "Transit Predictor API",
        "version": __version__,
        "core_running": _core is not None,
        "docs": "/docs",
    }


@app.get("/api/vehicles")
async def get_vehicles(predictable_only: bool = False, core: TransitCore = Depends(get_core)):
    """
    Get the current state of every vehicle the core has seen

    Args:
        predictable_only: Only include vehicles currently assigned to a block

    Returns:
        List of vehicle status snapshots
    """
    statuses = core.registry.statuses()
    if predictable_only:
        statuses = [s for s in statuses if s.predictable]
    return [s.to_dict() for s in sorted(statuses, key=lambda s: s.vehicle_id)]


@app.get("/api/vehicles/{vehicle_id}")
async def get_vehicle(vehicle_id: str, core: TransitCore = Depends(get_core)):
    """
    Get the current state of one vehicle

    Args:
        vehicle_id: Vehicle identifier

    Returns:
        Vehicle status snapshot including assignment and schedule adherence
    """
    status = core.get_status(vehicle_id)
    if status is None:
        raise HTTPException(status_code=404, detail=f"Vehicle {vehicle_id} not found")
    return status.to_dict()


@app.get("/api/vehicles/{vehicle_id}/predictions")
async def get_vehicle_predictions(vehicle_id: str, core: TransitCore = Depends(get_core)):
    """
    Get the latest predictions generated for a vehicle

    Returns:
        Predictions ordered by predicted time
    """
    status = core.get_status(vehicle_id)
    if status is None:
        raise HTTPException(status_code=404, detail=f"Vehicle {vehicle_id} not found")
    return {
        "vehicle_id": vehicle_id,
        "predictions": [p.to_dict() for p in status.predictions],
    }


@app.get("/api/stops/{stop_id}/predictions")
async def get_stop_predictions(stop_id: str, limit: int = 20, db: Session = Depends(get_db)):
    """
    Get the most recently stored predictions for a stop

    Args:
        stop_id: Stop identifier
        limit: Maximum number of predictions to return (default: 20)

    Returns:
        Stored predictions, newest creation time first
    """
    if limit <= 0:
        raise HTTPException(status_code=400, detail="limit must be positive")

    rows = (
        db.query(PredictionRecord)
        .filter(PredictionRecord.stop_id == stop_id)
        .order_by(PredictionRecord.creation_time.desc(), PredictionRecord.prediction_time)
        .limit(limit)
        .all()
    )
    return {
        "stop_id": stop_id,
        "predictions": [
            {
                "vehicle_id": r.vehicle_id,
                "trip_id": r.trip_id,
                "route_id": r.route_id,
                "prediction_time": r.prediction_time,
                "is_arrival": r.is_arrival,
                "avl_time": r.avl_time,
                "creation_time": r.creation_time,
            }
            for r in rows
        ],
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
