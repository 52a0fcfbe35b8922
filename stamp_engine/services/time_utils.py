from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo


def utcnow() -> datetime:
    """Naive UTC, the convention of every TIMESTAMP column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _as_utc_aware(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=ZoneInfo("UTC"))
    return dt.astimezone(ZoneInfo("UTC"))


def _to_utc_naive(dt: datetime) -> datetime:
    return _as_utc_aware(dt).replace(tzinfo=None)


def local_date(now_utc: datetime, tz_name: str) -> date:
    return _as_utc_aware(now_utc).astimezone(ZoneInfo(tz_name)).date()


def local_day_bounds_utc(now_utc: datetime, tz_name: str) -> tuple[datetime, datetime]:
    """[start, end) of the calendar day containing `now_utc` in `tz_name`, as naive UTC."""
    tz = ZoneInfo(tz_name)
    day = local_date(now_utc, tz_name)
    start_local = datetime.combine(day, time.min, tzinfo=tz)
    end_local = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return _to_utc_naive(start_local), _to_utc_naive(end_local)


def local_month_start_utc(now_utc: datetime, tz_name: str) -> datetime:
    tz = ZoneInfo(tz_name)
    day = local_date(now_utc, tz_name)
    start_local = datetime.combine(day.replace(day=1), time.min, tzinfo=tz)
    return _to_utc_naive(start_local)
