# drainer.py
import logging
from dataclasses import dataclass, field
from typing import List

from errors import NotFoundError
from submitter import SubmitErrorKind, SubmitResult

logger = logging.getLogger(__name__)

DEFAULT_OUTBOX_MAX_RETRIES = 5


@dataclass
class DrainReport:
    sent: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    stuck: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    auth_required: bool = False

    @property
    def retryable(self):
        return not self.auth_required and any(tx_id not in self.stuck for tx_id in self.failed)


class OutboxDrainer:
    """
    Flushes the outbox through the submitter, oldest first. A pass works on
    the snapshot taken when it starts; anything enqueued meanwhile waits for
    the next pass. Failed entries keep their position and gain a retry;
    entries at the retry ceiling are left for an operator.
    """

    def __init__(self, outbox, submitter, max_retries=DEFAULT_OUTBOX_MAX_RETRIES):
        self.outbox = outbox
        self.submitter = submitter
        self.max_retries = max_retries

    def drain(self):
        report = DrainReport()
        snapshot = self.outbox.list()
        if snapshot:
            logger.info("Draining outbox (%s entries)", len(snapshot))

        for tx in snapshot:
            if self.max_retries is not None and tx.retries >= self.max_retries:
                report.stuck.append(tx.id)
                continue

            result = self._submit(tx)
            if result.ok:
                if self._remove(tx.id):
                    report.sent.append(tx.id)
                    logger.info("Outbox %s sent (confirmation=%s)", tx.id, result.confirmation)
                else:
                    report.missing.append(tx.id)
                continue

            if result.error_kind is SubmitErrorKind.AUTH_REQUIRED:
                report.auth_required = True
                logger.warning("Outbox drain stopped at %s: wallet authorization required", tx.id)
                break

            updated = self.outbox.increment_retries(tx.id, error=result.error)
            if updated is None:
                report.missing.append(tx.id)
                continue
            report.failed.append(tx.id)
            logger.warning("Outbox %s failed (%s, retries=%s, error=%s)", tx.id, result.error_kind.value,
                           updated.retries, result.error)
            if self.max_retries is not None and updated.retries >= self.max_retries:
                report.stuck.append(tx.id)
                logger.error("Outbox %s reached %s retries, needs manual action", tx.id, updated.retries)

        return report

    def _submit(self, tx):
        try:
            return self.submitter.submit(tx.to_address, tx.amount, tx.token, tx.memo, fee_preset=tx.fee_preset)
        except Exception as e:
            logger.exception("Outbox %s: submitter raised", tx.id)
            return SubmitResult.transient(f"{type(e).__name__}: {e}")

    def _remove(self, tx_id):
        try:
            self.outbox.remove(tx_id)
        except NotFoundError:
            # Removed by an operator while we were sending; the send still happened
            return False
        return True
