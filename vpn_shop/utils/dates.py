import calendar
import math
from datetime import datetime, timedelta
from typing import Optional


def add_months(value: datetime, months: int) -> datetime:
    """Календарное прибавление месяцев с прижатием дня к концу месяца (31.01 + 1 = 28/29.02)."""

    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def days_left(end_date: datetime, now: Optional[datetime] = None) -> int:
    """Оставшиеся дни с округлением вверх: 2 дня и 1 час дают 3."""

    seconds = (end_date - (now or datetime.utcnow())).total_seconds()
    return math.ceil(seconds / 86400)


def period_days(start: datetime, end: datetime) -> int:
    """Длина периода в целых днях с округлением вверх, не меньше одного дня."""

    return max(1, math.ceil((end - start) / timedelta(days=1)))


def to_epoch_seconds(value: datetime) -> int:
    return calendar.timegm(value.utctimetuple())


def from_epoch_seconds(value: int) -> datetime:
    return datetime(1970, 1, 1) + timedelta(seconds=int(value))
