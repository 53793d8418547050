# schedule_store.py
import logging
from datetime import datetime, timezone
from decimal import Decimal

from errors import InvalidTransitionError, NotFoundError, ValidationError
from models import PaymentStatus, RepeatInterval, ScheduledPayment
from storage import from_iso, to_iso

logger = logging.getLogger(__name__)


class ScheduleStore:
    """
    Owns the scheduled_payments table. Every mutation is a single guarded
    UPDATE on one row, so readers never observe a half-applied change and
    writers to different ids never wait on each other's read-modify-write.
    """

    def __init__(self, db):
        self.db = db

    def _now(self):
        return datetime.now(timezone.utc)

    # ---------------- Create / read ----------------
    def create(self, payment):
        now = to_iso(self._now())
        self.db.conn.execute("""
            INSERT INTO scheduled_payments (
                id, recipient_address, recipient_name, amount, token, memo,
                start_date, next_execution_date, repeat_interval, max_executions,
                current_executions, status, last_executed_at, failure_reason,
                paused, paused_reason, dismissed, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            payment.id, payment.recipient_address, payment.recipient_name,
            str(payment.amount), payment.token, payment.memo,
            to_iso(payment.start_date), to_iso(payment.next_execution_date),
            payment.repeat_interval.value, payment.max_executions,
            payment.current_executions, payment.status.value,
            to_iso(payment.last_executed_at), payment.failure_reason,
            int(payment.paused), payment.paused_reason, int(payment.dismissed),
            to_iso(payment.created_at), now,
        ))
        logger.info("Schedule %s created (%s %s every %s)", payment.id, payment.amount,
                    payment.token, payment.repeat_interval.value)
        return payment.id

    def get(self, payment_id):
        cur = self.db.conn.cursor()
        cur.execute("SELECT * FROM scheduled_payments WHERE id=?", (payment_id,))
        row = cur.fetchone()
        return self._row_to_payment(row) if row else None

    def list_active(self):
        cur = self.db.conn.cursor()
        cur.execute("SELECT * FROM scheduled_payments WHERE status='pending' ORDER BY next_execution_date")
        return [self._row_to_payment(r) for r in cur.fetchall()]

    def list_visible(self):
        """Pending schedules plus failed ones nobody has dismissed yet."""
        cur = self.db.conn.cursor()
        cur.execute("""
            SELECT * FROM scheduled_payments
            WHERE status='pending' OR (status='failed' AND dismissed=0)
            ORDER BY next_execution_date
        """)
        return [self._row_to_payment(r) for r in cur.fetchall()]

    def list_all(self, status=None):
        cur = self.db.conn.cursor()
        if status:
            cur.execute("SELECT * FROM scheduled_payments WHERE status=? ORDER BY created_at",
                        (PaymentStatus(status).value,))
        else:
            cur.execute("SELECT * FROM scheduled_payments ORDER BY created_at")
        return [self._row_to_payment(r) for r in cur.fetchall()]

    # ---------------- Mutations ----------------
    def update_status(self, payment_id, status, failure_reason=None):
        status = PaymentStatus(status)
        if not status.terminal:
            raise InvalidTransitionError(f"cannot move schedule {payment_id} back to {status.value}")
        reason = failure_reason if status is PaymentStatus.FAILED else None
        updated = self.db.conn.execute("""
            UPDATE scheduled_payments
            SET status=?, failure_reason=?, updated_at=?
            WHERE id=? AND status='pending'
        """, (status.value, reason, to_iso(self._now()), payment_id)).rowcount
        if updated != 1:
            self._diagnose(payment_id, f"transition to {status.value}")
        logger.info("Schedule %s: pending → %s%s", payment_id, status.value,
                    f" ({reason})" if reason else "")

    def increment_executions(self, payment_id):
        updated = self.db.conn.execute("""
            UPDATE scheduled_payments
            SET current_executions=current_executions + 1, updated_at=?
            WHERE id=? AND status='pending'
              AND (max_executions IS NULL OR current_executions < max_executions)
        """, (to_iso(self._now()), payment_id)).rowcount
        if updated != 1:
            self._diagnose(payment_id, "increment executions")

    def set_next_execution_date(self, payment_id, date):
        new_iso = to_iso(date)
        updated = self.db.conn.execute("""
            UPDATE scheduled_payments
            SET next_execution_date=?, updated_at=?
            WHERE id=? AND status='pending' AND next_execution_date <= ?
        """, (new_iso, to_iso(self._now()), payment_id, new_iso)).rowcount
        if updated != 1:
            self._diagnose(payment_id, "set next execution date")

    def record_success(self, payment_id, executed_at, next_date=None, complete=False,
                       expected_next_date=None, expected_executions=None):
        """
        Apply one successful execution as a single row update: bump the
        counter, stamp last_executed_at, then either advance the next date
        or complete the schedule.

        With expected_next_date/expected_executions (the values the caller
        loaded before submitting) the update only lands if no other run has
        recorded this occurrence first.
        """
        next_iso = to_iso(next_date)
        expected_iso = to_iso(expected_next_date)
        updated = self.db.conn.execute("""
            UPDATE scheduled_payments
            SET current_executions=current_executions + 1,
                last_executed_at=?,
                next_execution_date=COALESCE(?, next_execution_date),
                status=CASE WHEN ? THEN 'completed' ELSE status END,
                updated_at=?
            WHERE id=? AND status='pending'
              AND (max_executions IS NULL OR current_executions < max_executions)
              AND (? IS NULL OR next_execution_date <= ?)
              AND (? IS NULL OR next_execution_date = ?)
              AND (? IS NULL OR current_executions = ?)
        """, (to_iso(executed_at), next_iso, int(complete), to_iso(self._now()),
              payment_id, next_iso, next_iso, expected_iso, expected_iso,
              expected_executions, expected_executions)).rowcount
        if updated != 1:
            payment = self.get(payment_id)
            if payment is not None and payment.status is PaymentStatus.PENDING and (
                    (expected_iso is not None and to_iso(payment.next_execution_date) != expected_iso)
                    or (expected_executions is not None and payment.current_executions != expected_executions)):
                raise InvalidTransitionError(
                    f"execution of schedule {payment_id} due {expected_iso} was already recorded")
            self._diagnose(payment_id, "record execution")

    def set_paused(self, payment_id, paused, reason=None):
        updated = self.db.conn.execute("""
            UPDATE scheduled_payments
            SET paused=?, paused_reason=?, updated_at=?
            WHERE id=? AND status='pending'
        """, (int(paused), reason if paused else None, to_iso(self._now()), payment_id)).rowcount
        if updated != 1:
            self._diagnose(payment_id, "pause" if paused else "resume")

    def dismiss(self, payment_id):
        updated = self.db.conn.execute("""
            UPDATE scheduled_payments
            SET dismissed=1, updated_at=?
            WHERE id=? AND status!='pending'
        """, (to_iso(self._now()), payment_id)).rowcount
        if updated != 1:
            self._diagnose(payment_id, "dismiss")

    # ---------------- Helpers ----------------
    def _diagnose(self, payment_id, action):
        payment = self.get(payment_id)
        if payment is None:
            raise NotFoundError("schedule", payment_id)
        if action == "dismiss":
            raise InvalidTransitionError(f"cannot dismiss schedule {payment_id}: it is still pending")
        if payment.status is not PaymentStatus.PENDING:
            raise InvalidTransitionError(
                f"cannot {action} on schedule {payment_id}: status is {payment.status.value}")
        if action in ("increment executions", "record execution") and payment.bounded \
                and payment.current_executions >= payment.max_executions:
            raise InvalidTransitionError(
                f"cannot {action} on schedule {payment_id}: execution limit {payment.max_executions} reached")
        raise ValidationError(f"cannot {action} on schedule {payment_id}: next execution date cannot move backwards")

    @staticmethod
    def _row_to_payment(row):
        return ScheduledPayment(
            id=row["id"],
            recipient_address=row["recipient_address"],
            recipient_name=row["recipient_name"],
            amount=Decimal(row["amount"]),
            token=row["token"],
            memo=row["memo"],
            start_date=from_iso(row["start_date"]),
            next_execution_date=from_iso(row["next_execution_date"]),
            repeat_interval=RepeatInterval(row["repeat_interval"]),
            max_executions=row["max_executions"],
            current_executions=row["current_executions"],
            status=PaymentStatus(row["status"]),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
            last_executed_at=from_iso(row["last_executed_at"]),
            failure_reason=row["failure_reason"],
            paused=bool(row["paused"]),
            paused_reason=row["paused_reason"],
            dismissed=bool(row["dismissed"]),
        )
