"""
Where the core publishes its results

MemorySink keeps everything in lists (tests, monitoring). DatabaseSink
writes rows through SQLAlchemy sessions; a failed write is rolled back and
logged so ingestion keeps going.
"""

import logging
import threading
from typing import Iterable

from sqlalchemy.orm import sessionmaker

from transit_predictor.events import PredictionEvent, VehicleEvent
from transit_predictor.holding import HoldingTime
from transit_predictor.models import HoldingTimeRecord, PredictionEventRecord, PredictionRecord

logger = logging.getLogger(__name__)


class ResultsSink:
    """Base sink: discards everything"""

    def write_predictions(self, predictions: Iterable):
        pass

    def write_prediction_event(self, event: PredictionEvent):
        pass

    def write_vehicle_event(self, event: VehicleEvent):
        pass

    def write_holding_time(self, holding_time: HoldingTime):
        pass


class MemorySink(ResultsSink):
    def __init__(self):
        self._lock = threading.Lock()
        self.predictions: list = []
        self.prediction_events: list[PredictionEvent] = []
        self.vehicle_events: list[VehicleEvent] = []
        self.holding_times: list[HoldingTime] = []

    def write_predictions(self, predictions: Iterable):
        with self._lock:
            self.predictions.extend(predictions)

    def write_prediction_event(self, event: PredictionEvent):
        with self._lock:
            self.prediction_events.append(event)

    def write_vehicle_event(self, event: VehicleEvent):
        with self._lock:
            self.vehicle_events.append(event)

    def write_holding_time(self, holding_time: HoldingTime):
        with self._lock:
            self.holding_times.append(holding_time)


class DatabaseSink(ResultsSink):
    def __init__(self, session_factory: sessionmaker, config_rev: int = 0):
        self.session_factory = session_factory
        self.config_rev = config_rev

    def _write(self, rows: list, what: str):
        if not rows:
            return
        db = self.session_factory()
        try:
            db.add_all(rows)
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("Failed to store %d %s", len(rows), what)
        finally:
            db.close()

    def write_predictions(self, predictions: Iterable):
        rows = [
            PredictionRecord(
                config_rev=self.config_rev,
                vehicle_id=p.vehicle_id,
                stop_id=p.stop_id,
                gtfs_stop_seq=p.gtfs_stop_seq,
                trip_id=p.trip_id,
                route_id=p.route_id,
                block_id=p.block_id,
                prediction_time=p.prediction_time,
                avl_time=p.avl_time,
                creation_time=p.creation_time,
                is_arrival=p.is_arrival,
                affected_by_wait_stop=p.affected_by_wait_stop,
                sched_based_pred=p.sched_based_pred,
                late_and_subsequent_trip_so_uncertain=p.late_and_subsequent_trip_so_uncertain,
            )
            for p in predictions
        ]
        self._write(rows, "predictions")

    def write_prediction_event(self, event: PredictionEvent):
        row = PredictionEventRecord(
            event_type=event.event_type,
            time=event.time,
            vehicle_id=event.vehicle_id,
            description=event.description,
            stop_id=event.stop_id,
            trip_id=event.trip_id,
            route_id=event.route_id,
            reference_vehicle_id=event.reference_vehicle_id,
            arrival_stop_id=event.arrival_stop_id,
            departure_stop_id=event.departure_stop_id,
            arrival_time=event.arrival_time,
            departure_time=event.departure_time,
        )
        self._write([row], "prediction events")

    def write_vehicle_event(self, event: VehicleEvent):
        logger.info("Vehicle %s: %s (%s)", event.vehicle_id, event.event_type, event.description)

    def write_holding_time(self, holding_time: HoldingTime):
        row = HoldingTimeRecord(
            vehicle_id=holding_time.vehicle_id,
            stop_id=holding_time.stop_id,
            trip_id=holding_time.trip_id,
            route_id=holding_time.route_id,
            arrival_time=holding_time.arrival_time,
            holding_time=holding_time.holding_time,
            creation_time=holding_time.creation_time,
            arrival_prediction_used=holding_time.arrival_prediction_used,
        )
        self._write([row], "holding times")
