# dispatcher.py
import abc
import copy
import logging
import threading
from datetime import datetime, timedelta, timezone

from models import Job, JobConstraints
from storage import from_iso, to_iso

logger = logging.getLogger(__name__)

REPLACE = "replace"
KEEP = "keep"

SCHEDULE_JOB = "schedule"
OUTBOX_DRAIN_JOB = "outbox_drain"
OUTBOX_DRAIN_NAME = "outbox:drain"


def job_name_for_schedule(schedule_id):
    return f"schedule:{schedule_id}"


def _as_delta(delay):
    if isinstance(delay, timedelta):
        return max(delay, timedelta(0))
    return timedelta(seconds=max(float(delay or 0), 0))


class JobDispatcher(abc.ABC):
    """
    Named, delayed, restart-surviving jobs. A name identifies at most one
    job: enqueueing under an existing name replaces it (or keeps it, with
    policy=KEEP). KEEP on a job that is running still owes it one more run
    once the current one finishes. Workers renew their lease while a job
    runs. The dispatcher never retries on its own; callers re-enqueue with
    their own backoff.
    """

    def __init__(self, clock=None):
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    @abc.abstractmethod
    def enqueue(self, name, delay, constraints=None, kind=SCHEDULE_JOB, target_id=None,
                attempt=0, policy=REPLACE):
        ...

    @abc.abstractmethod
    def cancel(self, name):
        ...

    @abc.abstractmethod
    def get(self, name):
        ...

    @abc.abstractmethod
    def list_pending(self):
        ...

    # ---------------- Worker side ----------------
    @abc.abstractmethod
    def claim_due(self, worker_id, network_available=True, lease_seconds=30):
        ...

    @abc.abstractmethod
    def renew(self, name, worker_id, lease_seconds=30):
        ...

    @abc.abstractmethod
    def finish(self, name, generation):
        ...

    @abc.abstractmethod
    def release(self, name, generation, delay=0):
        ...


class SqliteJobDispatcher(JobDispatcher):
    def __init__(self, db, clock=None):
        super().__init__(clock)
        self.db = db

    def enqueue(self, name, delay, constraints=None, kind=SCHEDULE_JOB, target_id=None,
                attempt=0, policy=REPLACE):
        constraints = constraints or JobConstraints()
        now = self.clock()
        run_at = to_iso(now + _as_delta(delay))
        now_iso = to_iso(now)
        with self.db.transaction() as conn:
            row = conn.execute("SELECT generation, lease_until FROM jobs WHERE name=?", (name,)).fetchone()
            if row and policy == KEEP and row["lease_until"] and row["lease_until"] > now_iso:
                # Running: a new generation makes finish() unlease it instead of deleting it
                conn.execute("UPDATE jobs SET generation=generation + 1, updated_at=? WHERE name=?", (now_iso, name))
                logger.info("Job %s is running, kept for another run", name)
            elif row and policy == KEEP:
                logger.debug("Job %s already pending, kept", name)
            elif row:
                # An in-flight lease survives the replace so the new run cannot overlap it
                conn.execute("""
                    UPDATE jobs
                    SET kind=?, target_id=?, run_at=?, attempt=?, requires_network=?,
                        generation=generation + 1, updated_at=?
                    WHERE name=?
                """, (kind, target_id, run_at, attempt, int(constraints.requires_network), now_iso, name))
                logger.info("Job %s replaced (run_at=%s, attempt=%s)", name, run_at, attempt)
            else:
                conn.execute("""
                    INSERT INTO jobs (name, kind, target_id, run_at, attempt, requires_network, generation, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
                """, (name, kind, target_id, run_at, attempt, int(constraints.requires_network), now_iso, now_iso))
                logger.info("Job %s enqueued (run_at=%s, attempt=%s)", name, run_at, attempt)
        return self.get(name)

    def cancel(self, name):
        deleted = self.db.conn.execute("DELETE FROM jobs WHERE name=?", (name,)).rowcount
        if deleted:
            logger.info("Job %s cancelled", name)
        return bool(deleted)

    def get(self, name):
        row = self.db.conn.execute("SELECT * FROM jobs WHERE name=?", (name,)).fetchone()
        return self._row_to_job(row) if row else None

    def list_pending(self):
        cur = self.db.conn.cursor()
        cur.execute("SELECT * FROM jobs ORDER BY run_at, created_at")
        return [self._row_to_job(r) for r in cur.fetchall()]

    def claim_due(self, worker_id, network_available=True, lease_seconds=30):
        """
        Atomically claim one job that is ready:
        - run_at <= now
        - lease is absent or expired
        - network-requiring jobs only while the network is reachable
        Preference: earliest run_at first, then oldest.
        """
        now = self.clock()
        now_iso = to_iso(now)
        lease_until = to_iso(now + timedelta(seconds=lease_seconds))
        with self.db.transaction() as conn:
            row = conn.execute("""
                SELECT name FROM jobs
                WHERE run_at <= ?
                AND (lease_until IS NULL OR lease_until <= ?)
                AND (requires_network = 0 OR ? = 1)
                ORDER BY run_at ASC, created_at ASC
                LIMIT 1
            """, (now_iso, now_iso, int(network_available))).fetchone()
            if not row:
                return None
            conn.execute("""
                UPDATE jobs SET worker_id=?, lease_until=?, updated_at=? WHERE name=?
            """, (worker_id, lease_until, now_iso, row["name"]))
            job = conn.execute("SELECT * FROM jobs WHERE name=?", (row["name"],)).fetchone()
        return self._row_to_job(job)

    def finish(self, name, generation):
        """Drop a job after its run, unless it was re-armed meanwhile, in which case just unlease it."""
        with self.db.transaction() as conn:
            deleted = conn.execute("DELETE FROM jobs WHERE name=? AND generation=?",
                                   (name, generation)).rowcount
            if not deleted:
                conn.execute("UPDATE jobs SET worker_id=NULL, lease_until=NULL WHERE name=?", (name,))

    def renew(self, name, worker_id, lease_seconds=30):
        lease_until = to_iso(self.clock() + timedelta(seconds=lease_seconds))
        renewed = self.db.conn.execute("""
            UPDATE jobs SET lease_until=? WHERE name=? AND worker_id=? AND lease_until IS NOT NULL
        """, (lease_until, name, worker_id)).rowcount
        return renewed == 1

    def release(self, name, generation, delay=0):
        run_at = to_iso(self.clock() + _as_delta(delay))
        with self.db.transaction() as conn:
            conn.execute("""
                UPDATE jobs SET run_at=CASE WHEN generation=? THEN ? ELSE run_at END,
                    worker_id=NULL, lease_until=NULL
                WHERE name=?
            """, (generation, run_at, name))

    @staticmethod
    def _row_to_job(row):
        return Job(
            name=row["name"],
            kind=row["kind"],
            target_id=row["target_id"],
            run_at=from_iso(row["run_at"]),
            attempt=row["attempt"],
            requires_network=bool(row["requires_network"]),
            generation=row["generation"],
            worker_id=row["worker_id"],
            lease_until=from_iso(row["lease_until"]),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )


class InMemoryJobDispatcher(JobDispatcher):
    """Process-local dispatcher with the same contract, for tests and dry runs."""

    def __init__(self, clock=None):
        super().__init__(clock)
        self._jobs = {}
        self._lock = threading.Lock()

    def enqueue(self, name, delay, constraints=None, kind=SCHEDULE_JOB, target_id=None,
                attempt=0, policy=REPLACE):
        constraints = constraints or JobConstraints()
        now = self.clock()
        with self._lock:
            existing = self._jobs.get(name)
            if existing and policy == KEEP:
                if existing.lease_until is not None and existing.lease_until > now:
                    existing.generation += 1
                    existing.updated_at = now
                return copy.copy(existing)
            job = Job(
                name=name,
                kind=kind,
                target_id=target_id,
                run_at=now + _as_delta(delay),
                attempt=attempt,
                requires_network=constraints.requires_network,
                generation=existing.generation + 1 if existing else 1,
                worker_id=existing.worker_id if existing else None,
                lease_until=existing.lease_until if existing else None,
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            self._jobs[name] = job
            return copy.copy(job)

    def cancel(self, name):
        with self._lock:
            return self._jobs.pop(name, None) is not None

    def get(self, name):
        with self._lock:
            job = self._jobs.get(name)
            return copy.copy(job) if job else None

    def list_pending(self):
        with self._lock:
            return sorted((copy.copy(j) for j in self._jobs.values()), key=lambda j: (j.run_at, j.created_at))

    def due(self, network_available=True):
        now = self.clock()
        return [
            j for j in self.list_pending()
            if j.run_at <= now
            and (j.lease_until is None or j.lease_until <= now)
            and (network_available or not j.requires_network)
        ]

    def claim_due(self, worker_id, network_available=True, lease_seconds=30):
        now = self.clock()
        with self._lock:
            ready = sorted(
                (j for j in self._jobs.values()
                 if j.run_at <= now
                 and (j.lease_until is None or j.lease_until <= now)
                 and (network_available or not j.requires_network)),
                key=lambda j: (j.run_at, j.created_at),
            )
            if not ready:
                return None
            job = ready[0]
            job.worker_id = worker_id
            job.lease_until = now + timedelta(seconds=lease_seconds)
            return copy.copy(job)

    def finish(self, name, generation):
        with self._lock:
            job = self._jobs.get(name)
            if job is None:
                return
            if job.generation == generation:
                del self._jobs[name]
            else:
                job.worker_id = None
                job.lease_until = None

    def renew(self, name, worker_id, lease_seconds=30):
        with self._lock:
            job = self._jobs.get(name)
            if job is None or job.lease_until is None or job.worker_id != worker_id:
                return False
            job.lease_until = self.clock() + timedelta(seconds=lease_seconds)
            return True

    def release(self, name, generation, delay=0):
        with self._lock:
            job = self._jobs.get(name)
            if job is None:
                return
            if job.generation == generation:
                job.run_at = self.clock() + _as_delta(delay)
            job.worker_id = None
            job.lease_until = None
