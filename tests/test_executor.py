from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import FakeSubmitter, T0
from dispatcher import job_name_for_schedule
from executor import ExecutionOutcome, PaymentExecutor
from models import PaymentStatus, RepeatInterval, ScheduledPayment
from submitter import SubmitResult


@pytest.fixture
def make_executor(schedules, dispatcher, retry_policy, clock):
    def _make(submitter):
        return PaymentExecutor(schedules, dispatcher, submitter, retry_policy=retry_policy, clock=clock)
    return _make


@pytest.fixture
def create(schedules, dispatcher):
    def _create(interval=RepeatInterval.DAILY, max_executions=None, start=T0):
        payment = ScheduledPayment(recipient_address="dest", amount=Decimal("2"), token="SOL",
                                   start_date=start, repeat_interval=interval, max_executions=max_executions)
        schedules.create(payment)
        dispatcher.enqueue(job_name_for_schedule(payment.id), 0, target_id=payment.id)
        return payment
    return _create


def test_one_time_payment_completes_after_success(create, make_executor, schedules, dispatcher):
    payment = create(interval=RepeatInterval.NONE)
    assert make_executor(FakeSubmitter()).run(payment.id) is ExecutionOutcome.COMPLETED

    loaded = schedules.get(payment.id)
    assert loaded.status is PaymentStatus.COMPLETED
    assert loaded.current_executions == 1
    assert loaded.last_executed_at == T0
    assert dispatcher.get(job_name_for_schedule(payment.id)) is None


def test_recurring_success_rearms_next_occurrence(create, make_executor, schedules, dispatcher, clock):
    payment = create(interval=RepeatInterval.WEEKLY)
    clock.advance(minutes=3)
    assert make_executor(FakeSubmitter()).run(payment.id) is ExecutionOutcome.RESCHEDULED

    loaded = schedules.get(payment.id)
    assert loaded.current_executions == 1
    assert loaded.next_execution_date == T0 + timedelta(days=7)
    job = dispatcher.get(job_name_for_schedule(payment.id))
    assert job.run_at == T0 + timedelta(days=7)
    assert job.attempt == 0


def test_bounded_schedule_stops_after_max(create, make_executor, schedules, dispatcher, clock):
    payment = create(interval=RepeatInterval.DAILY, max_executions=3)
    submitter = FakeSubmitter()
    executor = make_executor(submitter)

    outcomes = []
    for _ in range(3):
        outcomes.append(executor.run(payment.id))
        clock.advance(days=1)
    assert outcomes == [ExecutionOutcome.RESCHEDULED, ExecutionOutcome.RESCHEDULED, ExecutionOutcome.COMPLETED]

    loaded = schedules.get(payment.id)
    assert loaded.status is PaymentStatus.COMPLETED
    assert loaded.current_executions == 3
    assert dispatcher.list_pending() == []

    # a late duplicate firing does nothing
    assert executor.run(payment.id) is ExecutionOutcome.SKIPPED
    assert schedules.get(payment.id).current_executions == 3
    assert len(submitter.calls) == 3


def test_limit_already_reached_completes_without_submitting(create, make_executor, schedules):
    payment = create(max_executions=1)
    schedules.increment_executions(payment.id)
    submitter = FakeSubmitter()
    assert make_executor(submitter).run(payment.id) is ExecutionOutcome.COMPLETED
    assert submitter.calls == []
    assert schedules.get(payment.id).status is PaymentStatus.COMPLETED


def test_transient_failure_then_success_counts_once(create, make_executor, schedules, dispatcher, clock):
    payment = create(interval=RepeatInterval.WEEKLY)
    executor = make_executor(FakeSubmitter([SubmitResult.transient("rate limited")]))
    name = job_name_for_schedule(payment.id)

    assert executor.run(payment.id) is ExecutionOutcome.RETRY_SCHEDULED
    loaded = schedules.get(payment.id)
    assert loaded.current_executions == 0
    assert loaded.next_execution_date == T0
    job = dispatcher.get(name)
    assert job.attempt == 1
    assert job.run_at == T0 + timedelta(seconds=60)

    clock.advance(seconds=60)
    assert executor.run(payment.id, attempt=job.attempt) is ExecutionOutcome.RESCHEDULED
    loaded = schedules.get(payment.id)
    assert loaded.current_executions == 1
    assert loaded.next_execution_date == T0 + timedelta(days=7)
    assert dispatcher.get(name).attempt == 0


def test_backoff_grows_between_retries(create, make_executor, dispatcher):
    payment = create()
    executor = make_executor(FakeSubmitter([SubmitResult.transient("timeout")] * 2))
    name = job_name_for_schedule(payment.id)
    executor.run(payment.id, attempt=0)
    first = dispatcher.get(name).run_at
    executor.run(payment.id, attempt=1)
    second = dispatcher.get(name).run_at
    assert second - first == timedelta(seconds=60)
    assert dispatcher.get(name).attempt == 2


def test_exhausted_retries_fail_the_schedule(create, make_executor, schedules, dispatcher):
    payment = create()
    submitter = FakeSubmitter([SubmitResult.transient("timeout")] * 4)
    executor = make_executor(submitter)

    outcomes = [executor.run(payment.id, attempt=n) for n in range(4)]
    assert outcomes[:3] == [ExecutionOutcome.RETRY_SCHEDULED] * 3
    assert outcomes[3] is ExecutionOutcome.FAILED

    loaded = schedules.get(payment.id)
    assert loaded.status is PaymentStatus.FAILED
    assert loaded.failure_reason == "Max retries exceeded: timeout"
    assert loaded.current_executions == 0
    assert loaded.next_execution_date == T0
    assert dispatcher.get(job_name_for_schedule(payment.id)) is None


def test_permanent_failure_is_terminal(create, make_executor, schedules, dispatcher):
    payment = create()
    executor = make_executor(FakeSubmitter([SubmitResult.permanent("invalid recipient")]))
    assert executor.run(payment.id) is ExecutionOutcome.FAILED

    loaded = schedules.get(payment.id)
    assert loaded.status is PaymentStatus.FAILED
    assert loaded.failure_reason == "Rejected: invalid recipient"
    assert dispatcher.get(job_name_for_schedule(payment.id)) is None


def test_auth_required_pauses_instead_of_retrying(create, make_executor, schedules, dispatcher):
    payment = create()
    executor = make_executor(FakeSubmitter([SubmitResult.auth_required()]))
    assert executor.run(payment.id) is ExecutionOutcome.AUTH_REQUIRED

    loaded = schedules.get(payment.id)
    assert loaded.status is PaymentStatus.PENDING
    assert loaded.paused
    assert loaded.paused_reason == "auth_required"
    assert loaded.current_executions == 0
    assert dispatcher.get(job_name_for_schedule(payment.id)) is None


def test_submitter_exception_is_transient(create, make_executor, schedules):
    payment = create()
    executor = make_executor(FakeSubmitter([TimeoutError("no response")]))
    assert executor.run(payment.id) is ExecutionOutcome.RETRY_SCHEDULED
    assert schedules.get(payment.id).status is PaymentStatus.PENDING


def test_missing_or_paused_schedules_are_skipped(create, make_executor, schedules):
    submitter = FakeSubmitter()
    executor = make_executor(submitter)
    assert executor.run("missing") is ExecutionOutcome.SKIPPED

    payment = create()
    schedules.set_paused(payment.id, True)
    assert executor.run(payment.id) is ExecutionOutcome.SKIPPED
    assert submitter.calls == []


def test_early_firing_waits_for_next_execution_date(create, make_executor, dispatcher, clock):
    payment = create(start=T0 + timedelta(hours=2))
    submitter = FakeSubmitter()
    assert make_executor(submitter).run(payment.id) is ExecutionOutcome.DEFERRED
    assert submitter.calls == []
    assert dispatcher.get(job_name_for_schedule(payment.id)).run_at == T0 + timedelta(hours=2)


def test_cancel_observed_before_submission(create, make_executor, schedules):
    payment = create()
    schedules.update_status(payment.id, PaymentStatus.CANCELLED)
    submitter = FakeSubmitter()
    assert make_executor(submitter).run(payment.id) is ExecutionOutcome.SKIPPED
    assert submitter.calls == []
    assert schedules.get(payment.id).current_executions == 0


def test_cancel_during_submission_is_not_counted_or_rearmed(create, make_executor, schedules, dispatcher):
    payment = create(interval=RepeatInterval.WEEKLY)
    name = job_name_for_schedule(payment.id)

    def cancel_mid_flight(_address):
        dispatcher.cancel(name)
        schedules.update_status(payment.id, PaymentStatus.CANCELLED)

    executor = make_executor(FakeSubmitter(on_submit=cancel_mid_flight))
    assert executor.run(payment.id) is ExecutionOutcome.SKIPPED

    loaded = schedules.get(payment.id)
    assert loaded.status is PaymentStatus.CANCELLED
    assert loaded.current_executions == 0
    assert dispatcher.get(name) is None
