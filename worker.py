# worker.py
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import asdict, dataclass

from errors import ConfigError
from graph import GraphClient
from models import DEAD, DONE, PUBLISHING, QUEUED
from publisher import PublishWorkflow
from retry_policy import BackoffPolicy

logger = logging.getLogger(__name__)

ERROR_TEXT_LIMIT = 1000
DEFAULT_RUN_LOCK_SECONDS = 3600


@dataclass
class RunResult:
    processed: int = 0
    published: int = 0
    failed: int = 0
    running: bool = False   # True: another run was already active, nothing done

    def to_dict(self):
        return asdict(self)


def describe_error(exc):
    text = f"{type(exc).__name__}: {exc}"
    if len(text) > ERROR_TEXT_LIMIT:
        text = text[: ERROR_TEXT_LIMIT - 3] + "..."
    return text


class Worker:
    """Claims due jobs and drives each through the publish workflow.

    Single flight holds at two levels: a thread lock for callers sharing this
    Worker, and a run lock row in the store for Workers in other processes
    (or with their own connection) on the same database.
    """

    def __init__(self, store, workflow, batch_size=10, concurrency=1, release_leases=True,
                 worker_id=None, run_lock_seconds=DEFAULT_RUN_LOCK_SECONDS):
        self.store = store
        self.workflow = workflow
        self.batch_size = batch_size
        self.concurrency = max(1, concurrency)
        self.release_leases = release_leases
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.run_lock_seconds = run_lock_seconds
        self._run_lock = threading.Lock()

    @property
    def running(self):
        return self._run_lock.locked()

    @contextmanager
    def _single_flight(self):
        acquired = self._run_lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                self._run_lock.release()

    @contextmanager
    def _store_run_lock(self):
        acquired = self.store.acquire_run_lock(self.worker_id, self.run_lock_seconds)
        try:
            yield acquired
        finally:
            if acquired:
                self.store.release_run_lock(self.worker_id)

    def run(self):
        """One tick. Returns immediately with running=True if a tick is active."""
        with self._single_flight() as acquired:
            if not acquired:
                logger.info("Run already in progress, skipping tick")
                return RunResult(running=True)
            with self._store_run_lock() as held:
                if not held:
                    logger.info("[%s] Run lock held by another worker, skipping tick", self.worker_id)
                    return RunResult(running=True)
                return self._run_once()

    def _run_once(self):
        if self.release_leases:
            released = self.store.release_expired()
            for key in released:
                self._log_transition(key, PUBLISHING, QUEUED, "(lease expired)")

        jobs = self.store.claim_due(self.batch_size)
        result = RunResult(processed=len(jobs))
        if not jobs:
            return result

        for job in jobs:
            self._log_transition(job.key, QUEUED, PUBLISHING)

        if self.concurrency == 1 or len(jobs) == 1:
            outcomes = [self._process_job(job) for job in jobs]
        else:
            with ThreadPoolExecutor(max_workers=min(self.concurrency, len(jobs)),
                                    thread_name_prefix="publish") as pool:
                outcomes = list(pool.map(self._process_job, jobs))

        result.published = sum(1 for ok in outcomes if ok is True)
        result.failed = sum(1 for ok in outcomes if ok is False)
        logger.info("Tick finished: processed=%d published=%d failed=%d",
                    result.processed, result.published, result.failed)
        return result

    def _process_job(self, job):
        if not self.store.acquire_run_lock(self.worker_id, self.run_lock_seconds):
            logger.warning("[%s] Run lock expired and was taken over while publishing", self.worker_id)
        # the lease counts from when work on this job starts, not from the batch claim
        if not self.store.renew_lease(job):
            logger.warning("[%s] Job %s is no longer publishing, skipped", self.worker_id, job.key[:12])
            return None

        # only workflow failures are recorded; store errors abort the tick
        try:
            published_id = self.workflow.publish(job.artifact_ref, job.caption)
        except Exception as e:
            error = describe_error(e)
            failed = self.store.mark_failed(job, error)
            if failed is not None:
                self._log_transition(job.key, PUBLISHING, failed.status,
                                     f"(attempts={failed.attempts}, retry_at={failed.publish_at}, error={error})",
                                     level=logging.ERROR if failed.status == DEAD else logging.WARNING)
            return False

        self.store.mark_done(job, published_id)
        self._log_transition(job.key, PUBLISHING, DONE, f"(published_id={published_id})")
        return True

    def _log_transition(self, key, old_state, new_state, extra="", level=logging.INFO):
        logger.log(level, "Job %s: %s → %s %s", key[:12], old_state, new_state, extra)

    def loop(self, stop_event=None, interval=60.0):
        """Tick every `interval` seconds until stop_event is set."""
        stop_event = stop_event or threading.Event()
        while not stop_event.is_set():
            try:
                self.run()
            except Exception:
                # the next tick retries; due-ness is recomputed from the store
                logger.exception("Tick failed")
            stop_event.wait(interval)


def build_worker(store, settings, http=None):
    """Wire a Worker from Settings: Graph client, workflow and job backoff."""
    missing = settings.missing_credentials()
    if missing:
        raise ConfigError(f"{' and '.join(missing)} must be set in the environment")
    store.backoff = BackoffPolicy(base=settings.backoff_base, ceiling=settings.backoff_ceiling)
    store.lease_seconds = settings.lease_seconds
    store.max_attempts = settings.max_attempts
    client = GraphClient(settings.ig_user_id, settings.ig_access_token,
                         base_url=settings.graph_api_base, http=http)
    workflow = PublishWorkflow(client, max_polls=settings.max_polls,
                               poll_interval=settings.poll_interval)
    return Worker(store, workflow, batch_size=settings.batch_size,
                  concurrency=settings.concurrency, run_lock_seconds=settings.run_lock_seconds)
