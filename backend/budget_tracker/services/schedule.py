"""Next-run date calculation for recurrence rules.

Everything here works at day granularity and has no side effects, so the
engine and the rule endpoints share one definition of "when is this due".

Calendar arithmetic is pinned as follows:

* adding months or years clamps to the last day of the target month
  (Jan 31 + 1 month is Feb 29 in 2024; Feb 29 2024 + 1 year is Feb 28 2025);
* a cycle day of month that the month does not have rolls forward by the
  excess days (day 31 of June is July 1).
"""
from __future__ import annotations

from calendar import monthrange
from datetime import date, datetime, timedelta

from ..schemas import Frequency


def ensure_day(value: date | datetime | str | None) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def add_months(base: date, months: int) -> date:
    total_month = (base.month - 1) + months
    year = base.year + total_month // 12
    month = (total_month % 12) + 1
    return base.replace(year=year, month=month, day=min(base.day, monthrange(year, month)[1]))


def js_weekday(day: date) -> int:
    """Weekday numbered 0=Sunday .. 6=Saturday."""
    return (day.weekday() + 1) % 7


def day_of_month(year: int, month: int, cycle_day: int) -> date:
    return date(year, month, 1) + timedelta(days=cycle_day - 1)


def _frequency_value(frequency: Frequency | str | None) -> str:
    if isinstance(frequency, Frequency):
        return frequency.value
    return str(frequency or "").upper()


def compute_next_run(
    frequency: Frequency | str,
    start_date: date | datetime,
    last_run_at: date | datetime | None = None,
    cycle_day_of_month: int | None = None,
    cycle_day_of_week: int | None = None,
    today: date | datetime | None = None,
) -> date:
    now = ensure_day(today) or date.today()
    last = ensure_day(last_run_at)
    base = last or ensure_day(start_date) or now
    freq = _frequency_value(frequency)

    if freq == Frequency.daily.value:
        if last:
            return base + timedelta(days=1)
        return now + timedelta(days=1) if base <= now else base

    if freq == Frequency.weekly.value:
        if last:
            return base + timedelta(days=7)
        if cycle_day_of_week is not None:
            offset = cycle_day_of_week - js_weekday(now)
            if offset < 0 or (offset == 0 and base <= now):
                offset += 7
            return now + timedelta(days=offset)
        return now + timedelta(days=7) if base <= now else base

    if freq == Frequency.monthly.value:
        if last:
            return add_months(base, 1)
        if cycle_day_of_month is not None:
            candidate = day_of_month(now.year, now.month, cycle_day_of_month)
            if candidate < now or (candidate == now and base < now):
                following = add_months(now.replace(day=1), 1)
                candidate = day_of_month(following.year, following.month, cycle_day_of_month)
            return candidate
        return add_months(now, 1) if base <= now else base

    if freq == Frequency.yearly.value:
        if last:
            return add_months(base, 12)
        return add_months(now, 12) if base <= now else base

    return now + timedelta(days=1)
