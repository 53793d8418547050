# recurrence.py
import calendar
from dataclasses import dataclass
from datetime import timedelta

from models import RepeatInterval


def add_months(value, months=1):
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_date(interval, from_):
    """
    Next execution instant after `from_` for the given repeat interval.
    NONE returns `from_` unchanged; callers must not re-arm in that case.
    """
    interval = RepeatInterval(interval)
    if interval is RepeatInterval.DAILY:
        return from_ + timedelta(days=1)
    if interval is RepeatInterval.WEEKLY:
        return from_ + timedelta(days=7)
    if interval is RepeatInterval.MONTHLY:
        return add_months(from_, 1)
    return from_


def should_continue(current, max_=None):
    if max_ is None:
        return True
    return current < max_


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    backoff_base: float = 2
    initial_delay_seconds: float = 60
    max_delay_seconds: float = 3600

    def delay(self, attempt):
        """Backoff before retry number `attempt` (1-based)."""
        seconds = self.initial_delay_seconds * (self.backoff_base ** max(attempt - 1, 0))
        return timedelta(seconds=min(seconds, self.max_delay_seconds))

    def exhausted(self, attempt):
        return attempt > self.max_retries

    @classmethod
    def from_config(cls, db):
        return cls(
            max_retries=int(db.get_config("max_retries", default="3")),
            backoff_base=float(db.get_config("backoff_base", default="2")),
            initial_delay_seconds=float(db.get_config("backoff_initial_seconds", default="60")),
            max_delay_seconds=float(db.get_config("backoff_max_seconds", default="3600")),
        )
