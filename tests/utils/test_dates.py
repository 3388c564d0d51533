from datetime import datetime

from vpn_shop.utils.dates import add_months, days_left, period_days


def test_add_months_clamps_to_month_end():
    assert add_months(datetime(2025, 1, 31, 10, 0), 1) == datetime(2025, 2, 28, 10, 0)
    assert add_months(datetime(2024, 1, 31), 1) == datetime(2024, 2, 29)
    assert add_months(datetime(2025, 11, 15), 3) == datetime(2026, 2, 15)
    assert add_months(datetime(2025, 3, 31), 12) == datetime(2026, 3, 31)


def test_days_left_rounds_up():
    now = datetime(2025, 1, 1, 12, 0)

    assert days_left(datetime(2025, 1, 3, 13, 0), now) == 3
    assert days_left(datetime(2025, 1, 2, 12, 0), now) == 1
    assert days_left(datetime(2025, 1, 1, 11, 0), now) == 0


def test_period_days():
    assert period_days(datetime(2025, 1, 31), datetime(2025, 2, 28)) == 28
    assert period_days(datetime(2025, 1, 1), datetime(2025, 1, 1, 1)) == 1
