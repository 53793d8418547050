# executor.py
import enum
import logging
from datetime import datetime, timedelta, timezone

import recurrence
from dispatcher import SCHEDULE_JOB, job_name_for_schedule
from errors import PaymentsError
from models import JobConstraints, PaymentStatus, RepeatInterval
from recurrence import RetryPolicy
from submitter import SubmitErrorKind, SubmitResult

logger = logging.getLogger(__name__)


class ExecutionOutcome(str, enum.Enum):
    SKIPPED = "skipped"
    DEFERRED = "deferred"
    RESCHEDULED = "rescheduled"
    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    AUTH_REQUIRED = "auth_required"


class PaymentExecutor:
    """
    Runs one firing of a schedule's job. Only a successful submission moves
    current_executions and next_execution_date; failed attempts are retried
    through the dispatcher with the attempt counter carried in the job.
    """

    def __init__(self, schedules, dispatcher, submitter, retry_policy=None, clock=None,
                 constraints=None):
        self.schedules = schedules
        self.dispatcher = dispatcher
        self.submitter = submitter
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.constraints = constraints or JobConstraints(requires_network=True)

    def _log_transition(self, schedule_id, old_state, new_state, extra=""):
        logger.info("Schedule %s: %s → %s %s", schedule_id, old_state, new_state, extra)

    def run(self, schedule_id, attempt=0):
        try:
            return self._run(schedule_id, attempt)
        except PaymentsError as e:
            # Schedule changed underneath us (cancelled, removed); nothing left to do for this firing
            logger.warning("Schedule %s: firing abandoned: %s", schedule_id, e)
            return ExecutionOutcome.SKIPPED

    def _run(self, schedule_id, attempt):
        now = self.clock()
        payment = self.schedules.get(schedule_id)
        if payment is None or payment.status is not PaymentStatus.PENDING or payment.paused:
            logger.info("Schedule %s: job fired but schedule is %s, skipping", schedule_id,
                        "missing" if payment is None else ("paused" if payment.paused else payment.status.value))
            return ExecutionOutcome.SKIPPED

        name = job_name_for_schedule(schedule_id)
        if not recurrence.should_continue(payment.current_executions, payment.max_executions):
            self.schedules.update_status(schedule_id, PaymentStatus.COMPLETED)
            self.dispatcher.cancel(name)
            self._log_transition(schedule_id, "pending", "completed",
                                 f"(executions={payment.current_executions}/{payment.max_executions})")
            return ExecutionOutcome.COMPLETED

        if payment.next_execution_date > now:
            # Fired early (e.g. a stale job from before a restart): wait for the real date
            self.dispatcher.enqueue(name, payment.next_execution_date - now, self.constraints,
                                    kind=SCHEDULE_JOB, target_id=schedule_id, attempt=attempt)
            return ExecutionOutcome.DEFERRED

        result = self._submit(payment)
        if result.ok:
            return self._on_success(payment, now, result)
        if result.error_kind is SubmitErrorKind.TRANSIENT:
            return self._on_transient(payment, attempt, result)
        if result.error_kind is SubmitErrorKind.AUTH_REQUIRED:
            self.schedules.set_paused(schedule_id, True, reason="auth_required")
            self.dispatcher.cancel(name)
            logger.warning("Schedule %s: wallet authorization required, paused until resumed", schedule_id)
            return ExecutionOutcome.AUTH_REQUIRED
        return self._fail(payment, f"Rejected: {result.error}")

    def _submit(self, payment):
        try:
            return self.submitter.submit(
                payment.recipient_address,
                payment.amount,
                payment.token,
                payment.memo,
            )
        except Exception as e:
            logger.exception("Schedule %s: submitter raised", payment.id)
            return SubmitResult.transient(f"{type(e).__name__}: {e}")

    def _on_success(self, payment, now, result):
        executions = payment.current_executions + 1
        complete = (
            payment.repeat_interval is RepeatInterval.NONE
            or not recurrence.should_continue(executions, payment.max_executions)
        )
        name = job_name_for_schedule(payment.id)
        if complete:
            self.schedules.record_success(payment.id, now, complete=True, **self._expected(payment))
            self.dispatcher.cancel(name)
            self._log_transition(payment.id, "pending", "completed",
                                 f"(executions={executions}, confirmation={result.confirmation})")
            return ExecutionOutcome.COMPLETED

        next_at = recurrence.next_date(payment.repeat_interval, payment.next_execution_date)
        self.schedules.record_success(payment.id, now, next_date=next_at, **self._expected(payment))
        delay = max(next_at - now, timedelta(0))
        self.dispatcher.enqueue(name, delay, self.constraints, kind=SCHEDULE_JOB,
                                target_id=payment.id, attempt=0)
        self._log_transition(payment.id, "pending", "pending",
                             f"(executions={executions}, next={next_at.isoformat()}, confirmation={result.confirmation})")
        return ExecutionOutcome.RESCHEDULED

    @staticmethod
    def _expected(payment):
        # A second run of the same occurrence must not be counted again
        return {"expected_next_date": payment.next_execution_date,
                "expected_executions": payment.current_executions}

    def _on_transient(self, payment, attempt, result):
        next_attempt = attempt + 1
        if self.retry_policy.exhausted(next_attempt):
            return self._fail(payment, f"Max retries exceeded: {result.error}")
        delay = self.retry_policy.delay(next_attempt)
        self.dispatcher.enqueue(job_name_for_schedule(payment.id), delay, self.constraints,
                                kind=SCHEDULE_JOB, target_id=payment.id, attempt=next_attempt)
        logger.warning("Schedule %s: transient failure (attempt=%s, retry_in=%ss, error=%s)",
                       payment.id, next_attempt, int(delay.total_seconds()), result.error)
        return ExecutionOutcome.RETRY_SCHEDULED

    def _fail(self, payment, reason):
        self.schedules.update_status(payment.id, PaymentStatus.FAILED, failure_reason=reason)
        self.dispatcher.cancel(job_name_for_schedule(payment.id))
        self._log_transition(payment.id, "pending", "failed", f"({reason})")
        return ExecutionOutcome.FAILED
