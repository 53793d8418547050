from datetime import datetime, timedelta, timezone

import pytest

from dispatcher import InMemoryJobDispatcher
from models import FeePreset
from outbox import Outbox
from recurrence import RetryPolicy
from schedule_store import ScheduleStore
from service import PaymentService
from storage import Storage
from submitter import SubmitResult

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class FakeSubmitter:
    """Plays back queued results (or raises queued exceptions); confirms once the queue is empty."""

    def __init__(self, results=None, on_submit=None):
        self.results = list(results or [])
        self.on_submit = on_submit
        self.calls = []

    def submit(self, to_address, amount, token, memo=None, fee_preset=FeePreset.NORMAL):
        self.calls.append((to_address, amount, token, memo, fee_preset))
        if self.on_submit:
            self.on_submit(to_address)
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return SubmitResult.confirmed(f"sig-{len(self.calls)}")

    @property
    def addresses(self):
        return [c[0] for c in self.calls]


@pytest.fixture
def db(tmp_path):
    storage = Storage(str(tmp_path / "payments.db"))
    yield storage
    storage.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def submitter():
    return FakeSubmitter()


@pytest.fixture
def schedules(db):
    return ScheduleStore(db)


@pytest.fixture
def outbox(db):
    return Outbox(db)


@pytest.fixture
def dispatcher(clock):
    return InMemoryJobDispatcher(clock=clock)


@pytest.fixture
def retry_policy():
    return RetryPolicy(max_retries=3, backoff_base=2, initial_delay_seconds=60, max_delay_seconds=3600)


@pytest.fixture
def service(schedules, outbox, dispatcher, submitter, retry_policy, clock):
    return PaymentService(schedules, outbox, dispatcher, submitter=submitter, retry_policy=retry_policy,
                          outbox_max_retries=5, clock=clock)
