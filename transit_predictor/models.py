from datetime import datetime

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Float, Index, Integer, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class Calendar(Base):
    """Service calendar for one service_id (weekday flags plus validity range)"""

    __tablename__ = "calendar"

    id = Column(Integer, primary_key=True, autoincrement=True)
    config_rev = Column(Integer, nullable=False, default=0)
    service_id = Column(String, nullable=False, index=True)
    monday = Column(Integer, nullable=False)  # 0 or 1
    tuesday = Column(Integer, nullable=False)
    wednesday = Column(Integer, nullable=False)
    thursday = Column(Integer, nullable=False)
    friday = Column(Integer, nullable=False)
    saturday = Column(Integer, nullable=False)
    sunday = Column(Integer, nullable=False)
    start_date = Column(String, nullable=False)  # YYYYMMDD
    end_date = Column(String, nullable=False)  # YYYYMMDD
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (Index("idx_calendar_rev_service", "config_rev", "service_id"),)

    def runs_on_weekday(self, weekday: int) -> bool:
        """True if the calendar's flag for weekday (0=Monday) is set"""
        flags = (
            self.monday,
            self.tuesday,
            self.wednesday,
            self.thursday,
            self.friday,
            self.saturday,
            self.sunday,
        )
        return bool(flags[weekday])


class CalendarDate(Base):
    """Service exception for one date"""

    __tablename__ = "calendar_dates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    config_rev = Column(Integer, nullable=False, default=0)
    service_id = Column(String, nullable=False, index=True)
    date = Column(String, nullable=False, index=True)  # YYYYMMDD
    exception_type = Column(Integer, nullable=False)  # 1=added, 2=removed
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (Index("idx_calendar_dates_service_date", "service_id", "date"),)

    @property
    def is_addition(self) -> bool:
        return self.exception_type == 1


class ArrivalDeparture(Base):
    """
    Historical arrival or departure of a vehicle at a stop

    Written by the arrival/departure detector and read back to backfill the
    historical caches. Times are epoch milliseconds.
    """

    __tablename__ = "arrivals_departures"

    id = Column(Integer, primary_key=True, autoincrement=True)
    config_rev = Column(Integer, nullable=False, default=0)
    vehicle_id = Column(String, nullable=False, index=True)
    time = Column(BigInteger, nullable=False, index=True)
    avl_time = Column(BigInteger)
    is_arrival = Column(Boolean, nullable=False)
    stop_id = Column(String, nullable=False)
    gtfs_stop_seq = Column(Integer)
    stop_path_index = Column(Integer, nullable=False)
    stop_path_length = Column(Float)
    scheduled_time = Column(BigInteger)
    trip_id = Column(String, nullable=False)
    trip_index = Column(Integer)
    trip_start_time = Column(Integer)  # seconds into service day
    freq_start_time = Column(BigInteger)  # epoch msec, frequency service only
    block_id = Column(String)
    route_id = Column(String, index=True)
    route_short_name = Column(String)
    service_id = Column(String)
    direction_id = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_ad_trip_time", "trip_id", "time"),
        Index("idx_ad_stop_time", "stop_id", "time"),
    )


class PredictionRecord(Base):
    """Stop prediction as published to consumers"""

    __tablename__ = "predictions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    config_rev = Column(Integer, nullable=False, default=0)
    vehicle_id = Column(String, nullable=False, index=True)
    stop_id = Column(String, nullable=False)
    gtfs_stop_seq = Column(Integer)
    trip_id = Column(String, nullable=False)
    route_id = Column(String, index=True)
    block_id = Column(String)
    prediction_time = Column(BigInteger, nullable=False)
    avl_time = Column(BigInteger, nullable=False)
    creation_time = Column(BigInteger, nullable=False)
    is_arrival = Column(Boolean, nullable=False)
    affected_by_wait_stop = Column(Boolean, default=False)
    sched_based_pred = Column(Boolean, default=False)
    late_and_subsequent_trip_so_uncertain = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (Index("idx_predictions_stop_time", "stop_id", "prediction_time"),)


class PredictionEventRecord(Base):
    """Anomalous travel time or prediction disagreement kept for offline analysis"""

    __tablename__ = "prediction_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String, nullable=False, index=True)
    time = Column(BigInteger, nullable=False)
    vehicle_id = Column(String, index=True)
    description = Column(String)
    stop_id = Column(String)
    trip_id = Column(String)
    route_id = Column(String)
    reference_vehicle_id = Column(String)
    arrival_stop_id = Column(String)
    departure_stop_id = Column(String)
    arrival_time = Column(BigInteger)
    departure_time = Column(BigInteger)
    created_at = Column(DateTime, default=datetime.utcnow)


class HoldingTimeRecord(Base):
    """Time a vehicle is asked to hold at a control stop"""

    __tablename__ = "holding_times"

    id = Column(Integer, primary_key=True, autoincrement=True)
    vehicle_id = Column(String, nullable=False, index=True)
    stop_id = Column(String, nullable=False)
    trip_id = Column(String)
    route_id = Column(String)
    arrival_time = Column(BigInteger)
    holding_time = Column(BigInteger, nullable=False)
    creation_time = Column(BigInteger, nullable=False)
    arrival_prediction_used = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
