"""
Time helpers shared by the schedule, matching and prediction code

Epoch times are milliseconds. Schedule times are seconds into the service
day and may exceed 24 hours for service running past midnight.
"""

from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

MS_PER_SEC = 1000
MS_PER_MIN = 60 * MS_PER_SEC
MS_PER_HOUR = 60 * MS_PER_MIN
MS_PER_DAY = 24 * MS_PER_HOUR
SEC_PER_DAY = 24 * 60 * 60


def elapsed_str(msec: int) -> str:
    """Human readable duration such as '5m 10s'"""
    secs = round(abs(msec) / MS_PER_SEC)
    minutes, seconds = divmod(secs, 60)
    sign = "-" if msec < 0 else ""
    if minutes:
        return f"{sign}{minutes}m {seconds}s"
    return f"{sign}{seconds}s"


class ServiceClock:
    """Converts between epoch milliseconds and agency-local service-day times"""

    def __init__(self, timezone: str = "UTC"):
        self.timezone = ZoneInfo(timezone)

    def to_datetime(self, epoch_ms: int) -> datetime:
        return datetime.fromtimestamp(epoch_ms / MS_PER_SEC, tz=self.timezone)

    def to_epoch_ms(self, dt: datetime) -> int:
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=self.timezone)
        return int(round(dt.timestamp() * MS_PER_SEC))

    def local_date(self, epoch_ms: int) -> date:
        return self.to_datetime(epoch_ms).date()

    def start_of_day(self, epoch_ms: int) -> int:
        """Epoch msec of local midnight for the day containing epoch_ms"""
        day = self.local_date(epoch_ms)
        return self.to_epoch_ms(datetime(day.year, day.month, day.day, tzinfo=self.timezone))

    def seconds_into_day(self, epoch_ms: int) -> int:
        return (epoch_ms - self.start_of_day(epoch_ms)) // MS_PER_SEC

    def weekday(self, epoch_ms: int) -> int:
        return self.local_date(epoch_ms).weekday()

    def date_str(self, epoch_ms: int) -> str:
        """Local date as YYYYMMDD, the format used by the calendar tables"""
        return self.local_date(epoch_ms).strftime("%Y%m%d")

    def previous_day(self, epoch_ms: int) -> int:
        """Same local time-of-day one calendar day earlier"""
        dt = self.to_datetime(epoch_ms) - timedelta(days=1)
        return self.to_epoch_ms(dt.replace(tzinfo=None))

    def epoch_time(self, seconds_into_day: int, reference_ms: int) -> int:
        """
        Epoch msec for a schedule time, on the service day nearest reference_ms

        A schedule time more than 12 hours away from the reference's time of
        day is assumed to belong to the adjacent day.
        """
        day_start = self.start_of_day(reference_ms)
        epoch = day_start + seconds_into_day * MS_PER_SEC
        delta = epoch - reference_ms
        if delta > MS_PER_DAY // 2:
            epoch -= MS_PER_DAY
        elif delta < -(MS_PER_DAY // 2):
            epoch += MS_PER_DAY
        return epoch

    def service_day_start(self, epoch_ms: int, trip_start_secs: int) -> int:
        """
        Start of the service day a trip instance belongs to

        Events from trips that began the previous evening (or whose start
        time is past 24:00) are attributed to the previous service day.
        """
        day_start = self.start_of_day(epoch_ms)
        if self.seconds_into_day(epoch_ms) + SEC_PER_DAY // 2 < trip_start_secs:
            return self.start_of_day(day_start - MS_PER_HOUR)
        return day_start
