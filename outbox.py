# outbox.py
import logging
from datetime import datetime, timezone
from decimal import Decimal

from errors import NotFoundError
from models import FeePreset, PendingTransaction
from storage import from_iso, to_iso

logger = logging.getLogger(__name__)


class Outbox:
    """Durable FIFO of transfers waiting to reach the network."""

    def __init__(self, db):
        self.db = db

    def enqueue(self, tx):
        now = to_iso(datetime.now(timezone.utc))
        self.db.conn.execute("""
            INSERT INTO outbox (id, to_address, amount, token, memo, fee_preset, retries, last_error, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (tx.id, tx.to_address, str(tx.amount), tx.token, tx.memo, tx.fee_preset.name,
              tx.retries, tx.last_error, to_iso(tx.created_at), now))
        logger.info("Outbox %s enqueued (%s %s → %s, fee=%s)", tx.id, tx.amount, tx.token,
                    tx.to_address, tx.fee_preset.name)
        return tx.id

    def list(self):
        cur = self.db.conn.cursor()
        cur.execute("SELECT * FROM outbox ORDER BY created_at ASC, rowid ASC")
        return [self._row_to_tx(r) for r in cur.fetchall()]

    def get(self, tx_id):
        cur = self.db.conn.cursor()
        cur.execute("SELECT * FROM outbox WHERE id=?", (tx_id,))
        row = cur.fetchone()
        return self._row_to_tx(row) if row else None

    def remove(self, tx_id):
        deleted = self.db.conn.execute("DELETE FROM outbox WHERE id=?", (tx_id,)).rowcount
        if deleted != 1:
            raise NotFoundError("outbox entry", tx_id)
        logger.info("Outbox %s removed", tx_id)

    def increment_retries(self, tx_id, error=None):
        """Bump the retry counter in place; returns the updated entry or None if it is gone."""
        with self.db.transaction() as conn:
            updated = conn.execute("""
                UPDATE outbox SET retries=retries + 1, last_error=COALESCE(?, last_error), updated_at=?
                WHERE id=?
            """, (error, to_iso(datetime.now(timezone.utc)), tx_id)).rowcount
            if updated != 1:
                return None
            row = conn.execute("SELECT * FROM outbox WHERE id=?", (tx_id,)).fetchone()
        return self._row_to_tx(row)

    @staticmethod
    def _row_to_tx(row):
        return PendingTransaction(
            id=row["id"],
            to_address=row["to_address"],
            amount=Decimal(row["amount"]),
            token=row["token"],
            memo=row["memo"],
            fee_preset=FeePreset[row["fee_preset"]],
            retries=row["retries"],
            last_error=row["last_error"],
            created_at=from_iso(row["created_at"]),
        )
