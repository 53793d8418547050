# storage.py
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone

DEFAULT_DB_PATH = "payments.db"


def to_iso(value):
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value):
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Storage:
    """
    sqlite-backed persistence shared by the schedule store, the outbox and
    the job dispatcher. Each thread gets its own connection; WAL mode lets
    readers proceed while a writer holds the database.
    """

    def __init__(self, db_path=None):
        self.db_path = db_path or os.environ.get("PAYCTL_DB", DEFAULT_DB_PATH)
        self._local = threading.local()
        self._init_schema()

    @property
    def conn(self):
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None, check_same_thread=False)
            conn.row_factory = sqlite3.Row

            # Better concurrency for multiple workers
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            self._local.conn = conn
        return conn

    def close(self):
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    @contextmanager
    def transaction(self):
        """BEGIN IMMEDIATE ... COMMIT, rolled back if the block raises."""
        conn = self.conn
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    def _init_schema(self):
        # Scheduled payments table
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS scheduled_payments (
            id TEXT PRIMARY KEY,
            recipient_address TEXT NOT NULL,
            recipient_name TEXT,
            amount TEXT NOT NULL,
            token TEXT NOT NULL,
            memo TEXT,
            start_date TEXT NOT NULL,
            next_execution_date TEXT NOT NULL,
            repeat_interval TEXT NOT NULL,
            max_executions INTEGER,
            current_executions INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL,
            last_executed_at TEXT,
            failure_reason TEXT,
            paused INTEGER NOT NULL DEFAULT 0,
            paused_reason TEXT,
            dismissed INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)

        # Outbox table
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS outbox (
            id TEXT PRIMARY KEY,
            to_address TEXT NOT NULL,
            amount TEXT NOT NULL,
            token TEXT NOT NULL,
            memo TEXT,
            fee_preset TEXT NOT NULL,
            retries INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)

        # Jobs table
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS jobs (
            name TEXT PRIMARY KEY,
            kind TEXT NOT NULL,
            target_id TEXT,
            run_at TEXT NOT NULL,
            attempt INTEGER NOT NULL DEFAULT 0,
            requires_network INTEGER NOT NULL DEFAULT 1,
            generation INTEGER NOT NULL DEFAULT 1,
            worker_id TEXT,
            lease_until TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)

        # Config table
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS config (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)

        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_schedules_status ON scheduled_payments(status)")
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_outbox_created ON outbox(created_at)")
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_run_at ON jobs(run_at)")

    # ---------------- Config helpers ----------------
    def get_config(self, key, default=None):
        cur = self.conn.cursor()
        cur.execute("SELECT value FROM config WHERE key=?", (key,))
        row = cur.fetchone()
        return row["value"] if row else default

    def set_config(self, key, value):
        now = to_iso(datetime.now(timezone.utc))
        self.conn.execute("""
            INSERT INTO config (key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
        """, (key, str(value), now))

    def list_config(self):
        cur = self.conn.cursor()
        cur.execute("SELECT key, value, updated_at FROM config ORDER BY key")
        return cur.fetchall()
