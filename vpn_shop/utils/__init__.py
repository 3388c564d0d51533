from .dates import add_months, days_left, period_days, to_epoch_seconds

__all__ = [
    'add_months',
    'days_left',
    'period_days',
    'to_epoch_seconds',
]
