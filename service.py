# service.py
"""
Operations exposed to the CLI and the dashboard. Every public method
returns a Result; errors raised by the stores are caught here and never
cross this boundary.
"""
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation

from dispatcher import (
    KEEP,
    OUTBOX_DRAIN_JOB,
    OUTBOX_DRAIN_NAME,
    REPLACE,
    SCHEDULE_JOB,
    SqliteJobDispatcher,
    job_name_for_schedule,
)
from drainer import DEFAULT_OUTBOX_MAX_RETRIES, OutboxDrainer
from errors import InvalidTransitionError, NotFoundError, PaymentsError, Result, ValidationError
from executor import PaymentExecutor
from models import FeePreset, JobConstraints, PaymentStatus, PendingTransaction, RepeatInterval, ScheduledPayment
from outbox import Outbox
from recurrence import RetryPolicy
from schedule_store import ScheduleStore
from submitter import CommandSubmitter, SubmitErrorKind

logger = logging.getLogger(__name__)

NETWORK = JobConstraints(requires_network=True)


def _parse_amount(amount):
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount).strip())
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"invalid amount: {amount!r}") from e
    if not value.is_finite() or value <= 0:
        raise ValidationError(f"amount must be greater than zero, got {amount}")
    return value


def _require_text(value, field_name):
    if value is None or not str(value).strip():
        raise ValidationError(f"{field_name} is required")
    return str(value).strip()


def _as_utc(value):
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class PaymentService:
    def __init__(self, schedules, outbox, dispatcher, submitter=None, retry_policy=None,
                 outbox_max_retries=DEFAULT_OUTBOX_MAX_RETRIES, clock=None):
        self.schedules = schedules
        self.outbox = outbox
        self.dispatcher = dispatcher
        self.submitter = submitter
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.executor = None
        self.drainer = None
        if submitter is not None:
            self.executor = PaymentExecutor(schedules, dispatcher, submitter,
                                            retry_policy=self.retry_policy, clock=self.clock,
                                            constraints=NETWORK)
            self.drainer = OutboxDrainer(outbox, submitter, max_retries=outbox_max_retries)

    @classmethod
    def from_storage(cls, db, submitter=None, clock=None):
        """Wire the sqlite-backed components, reading retry settings from the config table."""
        if submitter is None:
            submitter = CommandSubmitter.from_config(db)
        return cls(
            ScheduleStore(db),
            Outbox(db),
            SqliteJobDispatcher(db, clock=clock),
            submitter=submitter,
            retry_policy=RetryPolicy.from_config(db),
            outbox_max_retries=int(db.get_config("outbox_max_retries", default=str(DEFAULT_OUTBOX_MAX_RETRIES))),
            clock=clock,
        )

    # ---------------- Schedules ----------------
    def create_scheduled_payment(self, recipient_address, amount, token, memo=None, start_date=None,
                                 repeat_interval=RepeatInterval.NONE, max_executions=None,
                                 recipient_name=None):
        try:
            now = self.clock()
            payment = ScheduledPayment(
                recipient_address=_require_text(recipient_address, "recipient address"),
                recipient_name=recipient_name or None,
                amount=_parse_amount(amount),
                token=_require_text(token, "token"),
                memo=memo or None,
                start_date=_as_utc(start_date) if start_date else now,
                repeat_interval=self._parse_interval(repeat_interval),
                max_executions=self._parse_max_executions(max_executions),
                created_at=now,
            )
            self.schedules.create(payment)
            self._arm(payment, now)
            return Result.success(payment)
        except PaymentsError as e:
            logger.warning("Schedule rejected: %s", e)
            return Result.failure(e)

    def cancel_payment(self, payment_id):
        try:
            self._get_or_raise(payment_id)
            # Job first, then status, so an in-flight firing still sees CANCELLED when it loads the record
            self.dispatcher.cancel(job_name_for_schedule(payment_id))
            self.schedules.update_status(payment_id, PaymentStatus.CANCELLED)
            return Result.success(self.schedules.get(payment_id))
        except PaymentsError as e:
            return Result.failure(e)

    def pause_payment(self, payment_id):
        try:
            payment = self._get_or_raise(payment_id)
            if payment.status is not PaymentStatus.PENDING:
                raise InvalidTransitionError(f"schedule {payment_id} is {payment.status.value}")
            self.dispatcher.cancel(job_name_for_schedule(payment_id))
            self.schedules.set_paused(payment_id, True, reason="paused by user")
            logger.info("Schedule %s paused", payment_id)
            return Result.success(self.schedules.get(payment_id))
        except PaymentsError as e:
            return Result.failure(e)

    def resume_payment(self, payment_id):
        try:
            payment = self._get_or_raise(payment_id)
            if payment.status is not PaymentStatus.PENDING:
                raise InvalidTransitionError(f"schedule {payment_id} is {payment.status.value}")
            self.schedules.set_paused(payment_id, False)
            self._arm(payment, self.clock())
            logger.info("Schedule %s resumed", payment_id)
            return Result.success(self.schedules.get(payment_id))
        except PaymentsError as e:
            return Result.failure(e)

    def dismiss_payment(self, payment_id):
        try:
            self.schedules.dismiss(payment_id)
            return Result.success(self.schedules.get(payment_id))
        except PaymentsError as e:
            return Result.failure(e)

    def get_schedule(self, payment_id):
        try:
            return Result.success(self._get_or_raise(payment_id))
        except PaymentsError as e:
            return Result.failure(e)

    def list_active_schedules(self):
        return Result.success(self.schedules.list_visible())

    def list_schedules(self, include_all=False, status=None):
        """Active schedules by default; every schedule (optionally one status) with include_all."""
        if not include_all:
            return self.list_active_schedules()
        try:
            return Result.success(self.schedules.list_all(status=status))
        except ValueError:
            return Result.failure(ValidationError(f"unknown status: {status}"))

    def run_schedule(self, payment_id, attempt=0):
        """Fire a schedule's job now (used by workers)."""
        if self.executor is None:
            return Result.failure(ValidationError("no submitter configured (set submit_command)"))
        return Result.success(self.executor.run(payment_id, attempt=attempt))

    # ---------------- Outbox ----------------
    def enqueue_outbox_transaction(self, to_address, amount, memo=None, fee_preset=FeePreset.NORMAL,
                                   token="SOL"):
        try:
            tx = PendingTransaction(
                to_address=_require_text(to_address, "destination address"),
                amount=_parse_amount(amount),
                memo=memo or None,
                fee_preset=self._parse_fee_preset(fee_preset),
                token=_require_text(token, "token"),
                created_at=self.clock(),
            )
            self.outbox.enqueue(tx)
            self.dispatcher.enqueue(OUTBOX_DRAIN_NAME, 0, NETWORK, kind=OUTBOX_DRAIN_JOB, policy=KEEP)
            return Result.success(tx.id)
        except PaymentsError as e:
            return Result.failure(e)

    def send_or_queue(self, to_address, amount, memo=None, fee_preset=FeePreset.NORMAL, token="SOL"):
        """Submit right away; a transient failure parks the transfer in the outbox instead."""
        if self.submitter is None:
            return self.enqueue_outbox_transaction(to_address, amount, memo, fee_preset, token)
        try:
            to_address = _require_text(to_address, "destination address")
            value = _parse_amount(amount)
            preset = self._parse_fee_preset(fee_preset)
            token = _require_text(token, "token")
        except PaymentsError as e:
            return Result.failure(e)

        result, error = None, None
        try:
            result = self.submitter.submit(to_address, value, token, memo, fee_preset=preset)
        except Exception as e:
            logger.exception("Immediate send to %s raised, queueing", to_address)
            error = f"{type(e).__name__}: {e}"
        if result is not None and result.ok:
            return Result.success({"status": "sent", "confirmation": result.confirmation})
        if result is None or result.error_kind is SubmitErrorKind.TRANSIENT:
            queued = self.enqueue_outbox_transaction(to_address, value, memo, preset, token)
            if not queued.ok:
                return queued
            logger.info("Send to %s deferred to outbox %s (%s)", to_address, queued.value,
                        result.error if result is not None else error)
            return Result.success({"status": "queued", "outbox_id": queued.value})
        return Result.failure(result.to_error())

    def remove_outbox_transaction(self, tx_id):
        try:
            self.outbox.remove(tx_id)
            return Result.success(tx_id)
        except PaymentsError as e:
            return Result.failure(e)

    def list_outbox(self):
        return Result.success(self.outbox.list())

    def drain_outbox(self, attempt=0):
        if self.drainer is None:
            return Result.failure(ValidationError("no submitter configured (set submit_command)"))
        report = self.drainer.drain()
        if report.retryable:
            delay = self.retry_policy.delay(attempt + 1)
            self.dispatcher.enqueue(OUTBOX_DRAIN_NAME, delay, NETWORK, kind=OUTBOX_DRAIN_JOB,
                                    attempt=attempt + 1, policy=REPLACE)
        return Result.success(report)

    def on_connectivity_regained(self):
        if self.outbox.list():
            self.dispatcher.enqueue(OUTBOX_DRAIN_NAME, 0, NETWORK, kind=OUTBOX_DRAIN_JOB, policy=REPLACE)

    # ---------------- Recovery ----------------
    def rearm_missing_jobs(self):
        """Give every runnable schedule (and a non-empty outbox) a pending job; returns how many were armed."""
        now = self.clock()
        armed = 0
        for payment in self.schedules.list_active():
            if payment.paused or self.dispatcher.get(job_name_for_schedule(payment.id)) is not None:
                continue
            self._arm(payment, now)
            armed += 1
        if self.outbox.list() and self.dispatcher.get(OUTBOX_DRAIN_NAME) is None:
            self.dispatcher.enqueue(OUTBOX_DRAIN_NAME, 0, NETWORK, kind=OUTBOX_DRAIN_JOB)
            armed += 1
        if armed:
            logger.info("Re-armed %s job(s)", armed)
        return armed

    # ---------------- Helpers ----------------
    def _arm(self, payment, now):
        delay = max(payment.next_execution_date - now, timedelta(0))
        self.dispatcher.enqueue(job_name_for_schedule(payment.id), delay, NETWORK,
                                kind=SCHEDULE_JOB, target_id=payment.id)

    def _get_or_raise(self, payment_id):
        payment = self.schedules.get(payment_id)
        if payment is None:
            raise NotFoundError("schedule", payment_id)
        return payment

    @staticmethod
    def _parse_interval(value):
        try:
            return value if isinstance(value, RepeatInterval) else RepeatInterval(str(value).lower())
        except ValueError as e:
            raise ValidationError(f"unknown repeat interval: {value}") from e

    @staticmethod
    def _parse_max_executions(value):
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"max executions must be an integer, got {value!r}")
        if value < 1:
            raise ValidationError("max executions must be at least 1")
        return value

    @staticmethod
    def _parse_fee_preset(value):
        if isinstance(value, FeePreset):
            return value
        try:
            return FeePreset[str(value).upper()]
        except KeyError as e:
            raise ValidationError(f"unknown fee preset: {value}") from e
