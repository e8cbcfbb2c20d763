"""
Database access for historical arrivals/departures

Reads go through pandas so rows can be ordered and cleaned up as a frame
before being turned into ArrivalDepartureEvent objects for cache backfill.
"""

import logging
from typing import Iterable, Optional

import pandas as pd
from sqlalchemy import select
from sqlalchemy.orm import Session

from transit_predictor.history import ArrivalDepartureEvent
from transit_predictor.models import ArrivalDeparture

logger = logging.getLogger(__name__)


def load_arrival_departures(
    db: Session, start_ms: int, end_ms: int, route_id: Optional[str] = None
) -> list[ArrivalDepartureEvent]:
    """
    Load arrivals/departures with start_ms <= time < end_ms in replay order

    Args:
        db: Database session
        start_ms: Start of the range (epoch msec, inclusive)
        end_ms: End of the range (epoch msec, exclusive)
        route_id: Only load events for this route (optional)

    Returns:
        Events ordered by time, arrivals before departures at the same time
    """
    stmt = select(ArrivalDeparture).where(
        ArrivalDeparture.time >= start_ms, ArrivalDeparture.time < end_ms
    )
    if route_id:
        stmt = stmt.where(ArrivalDeparture.route_id == route_id)

    df = pd.read_sql(stmt, db.connection())
    if df.empty:
        logger.info("No arrivals/departures between %d and %d", start_ms, end_ms)
        return []

    df = df.sort_values(["time", "is_arrival", "id"], ascending=[True, False, True], kind="mergesort")
    df["is_arrival"] = df["is_arrival"].astype(bool)
    # NaN from nullable integer columns becomes None
    df = df.astype(object).where(df.notna(), None)

    events = [ArrivalDepartureEvent.from_record(row) for row in df.itertuples(index=False)]
    logger.info("Loaded %d arrivals/departures for backfill", len(events))
    return events


def save_arrival_departures(db: Session, events: Iterable[ArrivalDepartureEvent],
                            config_rev: int = 0) -> int:
    rows = [
        ArrivalDeparture(
            config_rev=config_rev,
            vehicle_id=e.vehicle_id,
            time=e.time,
            avl_time=e.avl_time,
            is_arrival=e.is_arrival,
            stop_id=e.stop_id,
            gtfs_stop_seq=e.gtfs_stop_seq,
            stop_path_index=e.stop_path_index,
            scheduled_time=e.scheduled_time,
            trip_id=e.trip_id,
            trip_index=e.trip_index,
            trip_start_time=e.trip_start_time,
            freq_start_time=e.freq_start_time,
            block_id=e.block_id,
            route_id=e.route_id,
            service_id=e.service_id,
            direction_id=e.direction_id,
        )
        for e in events
    ]
    db.add_all(rows)
    db.commit()
    return len(rows)
