import math
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional, Tuple

DATE_PARAM_FORMAT = '%Y-%m-%d'
END_OF_DAY = time(23, 59, 59, 999000)


def parse_date_param(value: Optional[str]) -> Optional[date]:
    """
    Parse a YYYY-MM-DD request parameter

    Returns:
        The date, or None for an empty value

    Raises:
        ValueError: If the value is not in YYYY-MM-DD format
    """
    if not value:
        return None
    return datetime.strptime(value, DATE_PARAM_FORMAT).date()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an Azure DevOps timestamp into an aware UTC datetime

    Naive values are taken as UTC. Anything unparseable gives None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def start_of_day(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def end_of_day(day: date) -> datetime:
    return datetime.combine(day, END_OF_DAY, tzinfo=timezone.utc)


def calculate_projected_end_date(pending_hours: float, weekly_load: float,
                                 today: Optional[date] = None) -> Tuple[Optional[date], int]:
    """
    Project when pending work finishes at a given weekly load

    Work is spread over five business days a week; weekends are skipped.

    Args:
        pending_hours: Hours still to be done
        weekly_load: Hours per week assigned to the work
        today: Reference date, defaults to the current date

    Returns:
        tuple: (end_date, required_work_days), (None, 0) when nothing can be projected
    """
    if weekly_load <= 0 or pending_hours <= 0:
        return None, 0

    daily_load = weekly_load / 5
    required_work_days = math.ceil(pending_hours / daily_load)

    current = today or date.today()
    work_days = 0
    while work_days < required_work_days:
        current += timedelta(days=1)
        # Monday is 0, Saturday 5, Sunday 6
        if current.weekday() < 5:
            work_days += 1

    return current, required_work_days
