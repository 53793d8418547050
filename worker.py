# worker.py
import logging
import socket
import threading
import uuid
from contextlib import contextmanager

from dispatcher import OUTBOX_DRAIN_JOB, SCHEDULE_JOB

logger = logging.getLogger(__name__)


class NetworkProbe:
    """Reachability check: can we open a TCP connection to the submit endpoint?"""

    def __init__(self, host, port=443, timeout=3.0):
        self.host = host
        self.port = port
        self.timeout = timeout

    @classmethod
    def from_config(cls, db):
        host = db.get_config("probe_host")
        if not host:
            return None
        return cls(host, port=int(db.get_config("probe_port", default="443")))

    def __call__(self):
        try:
            with socket.create_connection((self.host, self.port), timeout=self.timeout):
                return True
        except OSError:
            return False


class Worker:
    def __init__(self, service, worker_id=None, lease_seconds=30, poll_interval=1.0, stop_event=None,
                 probe=None):
        self.service = service
        self.dispatcher = service.dispatcher
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.lease_seconds = lease_seconds
        self.poll_interval = poll_interval
        self.stop_event = stop_event  # threading.Event() passed in by CLI
        self.probe = probe
        self.online = None

    def run(self):
        while not (self.stop_event and self.stop_event.is_set()):
            if self.run_once() is None:
                if self.stop_event:
                    self.stop_event.wait(self.poll_interval)
                else:
                    return

    def run_once(self):
        """Claim and process at most one due job; returns it, or None when nothing was ready."""
        online = self._check_network()
        job = self.dispatcher.claim_due(self.worker_id, network_available=online,
                                        lease_seconds=self.lease_seconds)
        if not job:
            return None
        logger.info("Job %s claimed by %s (attempt=%s)", job.name, self.worker_id, job.attempt)
        with self._lease_kept(job):
            self._process_job(job)
        return job

    @contextmanager
    def _lease_kept(self, job):
        """Renew the job's lease every third of its length until the block exits."""
        done = threading.Event()

        def heartbeat():
            while not done.wait(self.lease_seconds / 3):
                if not self.dispatcher.renew(job.name, self.worker_id, self.lease_seconds):
                    logger.debug("Job %s no longer leased by %s, renewal stopped", job.name, self.worker_id)
                    return

        thread = threading.Thread(target=heartbeat, name=f"{self.worker_id}-lease", daemon=True)
        thread.start()
        try:
            yield
        finally:
            done.set()
            thread.join()

    def _check_network(self):
        online = self.probe() if self.probe else True
        if online and self.online is False:
            logger.info("Connectivity regained, scheduling outbox drain")
            self.service.on_connectivity_regained()
        elif not online and self.online is not False:
            logger.warning("Network unreachable, holding network-bound jobs")
        self.online = online
        return online

    def _process_job(self, job):
        try:
            if job.kind == SCHEDULE_JOB:
                result = self.service.run_schedule(job.target_id, attempt=job.attempt)
            elif job.kind == OUTBOX_DRAIN_JOB:
                result = self.service.drain_outbox(attempt=job.attempt)
            else:
                logger.error("Job %s has unknown kind %r, dropping it", job.name, job.kind)
                self.dispatcher.finish(job.name, job.generation)
                return
        except Exception:
            delay = self.service.retry_policy.delay(job.attempt + 1)
            logger.exception("Job %s crashed, retrying in %ss", job.name, int(delay.total_seconds()))
            self.dispatcher.release(job.name, job.generation, delay=delay)
            return

        if not result.ok:
            delay = self.service.retry_policy.delay(job.attempt + 1)
            logger.error("Job %s could not run (%s), retrying in %ss", job.name, result.error,
                         int(delay.total_seconds()))
            self.dispatcher.release(job.name, job.generation, delay=delay)
            return

        logger.info("Job %s finished: %s", job.name, result.value)
        self.dispatcher.finish(job.name, job.generation)
