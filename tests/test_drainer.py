from datetime import datetime, timedelta, timezone
from decimal import Decimal

from conftest import FakeSubmitter
from drainer import OutboxDrainer
from models import FeePreset, PendingTransaction
from submitter import SubmitResult

T = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


def _enqueue(outbox, address, minutes=0, retries=0):
    tx = PendingTransaction(to_address=address, amount=Decimal("1"), created_at=T + timedelta(minutes=minutes),
                            retries=retries, fee_preset=FeePreset.FAST)
    outbox.enqueue(tx)
    return tx


def test_successful_entries_are_removed(outbox):
    a = _enqueue(outbox, "A")
    submitter = FakeSubmitter()
    report = OutboxDrainer(outbox, submitter).drain()
    assert report.sent == [a.id]
    assert outbox.list() == []
    assert submitter.calls[0][4] is FeePreset.FAST


def test_failed_entry_keeps_its_place_and_is_retried_first(outbox):
    a = _enqueue(outbox, "A", minutes=0)
    b = _enqueue(outbox, "B", minutes=1)
    submitter = FakeSubmitter([SubmitResult.transient("offline"), SubmitResult.transient("offline")])
    drainer = OutboxDrainer(outbox, submitter)

    first = drainer.drain()
    assert first.failed == [a.id, b.id]
    assert outbox.get(a.id).retries == 1
    assert outbox.get(a.id).last_error == "offline"

    _enqueue(outbox, "C", minutes=2)
    submitter.calls.clear()
    second = drainer.drain()
    assert submitter.addresses == ["A", "B", "C"]
    assert len(second.sent) == 3
    assert outbox.list() == []


def test_permanent_failures_also_count_as_retries(outbox):
    a = _enqueue(outbox, "A")
    report = OutboxDrainer(outbox, FakeSubmitter([SubmitResult.permanent("insufficient funds")])).drain()
    assert report.failed == [a.id]
    assert outbox.get(a.id).retries == 1
    assert outbox.get(a.id).last_error == "insufficient funds"


def test_entries_added_during_a_pass_wait_for_the_next_one(outbox):
    def add_late(address):
        if address == "A":
            _enqueue(outbox, "late", minutes=10)

    submitter = FakeSubmitter(on_submit=add_late)
    _enqueue(outbox, "A")
    report = OutboxDrainer(outbox, submitter).drain()
    assert submitter.addresses == ["A"]
    assert len(report.sent) == 1
    assert [tx.to_address for tx in outbox.list()] == ["late"]


def test_entries_at_the_retry_ceiling_are_skipped(outbox):
    stuck = _enqueue(outbox, "stuck", minutes=0, retries=5)
    fresh = _enqueue(outbox, "fresh", minutes=1)
    submitter = FakeSubmitter()
    report = OutboxDrainer(outbox, submitter, max_retries=5).drain()
    assert submitter.addresses == ["fresh"]
    assert report.stuck == [stuck.id]
    assert report.sent == [fresh.id]
    assert outbox.get(stuck.id) is not None
    assert not report.retryable


def test_reaching_the_ceiling_is_reported(outbox):
    a = _enqueue(outbox, "A", retries=4)
    report = OutboxDrainer(outbox, FakeSubmitter([SubmitResult.transient("timeout")]), max_retries=5).drain()
    assert report.failed == [a.id]
    assert report.stuck == [a.id]
    assert not report.retryable


def test_auth_required_stops_the_pass_without_counting(outbox):
    a = _enqueue(outbox, "A", minutes=0)
    b = _enqueue(outbox, "B", minutes=1)
    submitter = FakeSubmitter([SubmitResult.auth_required()])
    report = OutboxDrainer(outbox, submitter).drain()
    assert report.auth_required
    assert submitter.addresses == ["A"]
    assert outbox.get(a.id).retries == 0
    assert outbox.get(b.id).retries == 0


def test_submitter_exception_is_a_retryable_failure(outbox):
    a = _enqueue(outbox, "A")
    report = OutboxDrainer(outbox, FakeSubmitter([ConnectionError("reset")])).drain()
    assert report.failed == [a.id]
    assert report.retryable
    assert "ConnectionError" in outbox.get(a.id).last_error


def test_entry_removed_mid_pass_is_reported_missing(outbox):
    def remove_b(address):
        if address == "A":
            outbox.remove(b.id)

    _enqueue(outbox, "A", minutes=0)
    b = _enqueue(outbox, "B", minutes=1)
    submitter = FakeSubmitter([SubmitResult.confirmed("ok"), SubmitResult.transient("offline")], on_submit=remove_b)
    report = OutboxDrainer(outbox, submitter).drain()
    assert report.missing == [b.id]
    assert outbox.list() == []
