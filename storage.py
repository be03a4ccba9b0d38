# storage.py
import dataclasses
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timedelta

from errors import ValidationError
from idempotency import derive_key
from models import (
    DEAD, DONE, JOB_STATES, PUBLISHING, QUEUED, RETENTION,
    EnqueueResult, Job, parse_iso, to_iso, utcnow,
)
from retry_policy import JOB_BACKOFF

logger = logging.getLogger(__name__)

DEFAULT_LEASE_SECONDS = 900
RUN_LOCK = "scheduler"


class JobStore(ABC):
    """Keyed job collection with idempotent insert and transactional claim.

    Subclasses must make claim_due a compare-and-set on status so that two
    overlapping callers never both move the same job out of 'queued'.
    """

    def __init__(self, clock=None, backoff=JOB_BACKOFF,
                 lease_seconds=DEFAULT_LEASE_SECONDS, max_attempts=0):
        self.clock = clock or utcnow
        self.backoff = backoff
        self.lease_seconds = lease_seconds
        self.max_attempts = max_attempts   # 0 = retry forever

    def now(self) -> datetime:
        return self.clock()

    # ---------------- Operations ----------------
    @abstractmethod
    def enqueue(self, artifact_ref, caption, publish_at) -> EnqueueResult: ...

    @abstractmethod
    def claim_due(self, limit=10) -> list: ...

    @abstractmethod
    def mark_done(self, job, published_id=None): ...

    @abstractmethod
    def mark_failed(self, job, error): ...

    @abstractmethod
    def get(self, key): ...

    @abstractmethod
    def list_jobs(self, status=None, limit=None) -> list: ...

    @abstractmethod
    def release_expired(self, grace_seconds=0) -> list: ...

    @abstractmethod
    def retry_dead(self, key) -> bool: ...

    @abstractmethod
    def purge_expired(self) -> int: ...

    @abstractmethod
    def renew_lease(self, job) -> bool:
        """Re-stamp lease_until for a job still in 'publishing'; False if it left that state."""

    # ---------------- Run lock ----------------
    @abstractmethod
    def acquire_run_lock(self, owner, ttl_seconds, name=RUN_LOCK) -> bool:
        """Take (or extend) the named lock unless another owner holds an unexpired one."""

    @abstractmethod
    def release_run_lock(self, owner, name=RUN_LOCK) -> bool: ...

    def counts(self):
        totals = {state: 0 for state in JOB_STATES}
        for job in self.list_jobs():
            totals[job.status] = totals.get(job.status, 0) + 1
        return totals

    # ---------------- Shared rules ----------------
    def _new_job(self, artifact_ref, caption, publish_at):
        if isinstance(publish_at, datetime):
            publish_at = to_iso(publish_at)
        if not isinstance(artifact_ref, str) or not artifact_ref.strip():
            raise ValidationError("artifact_ref (image_url) is required")
        if not isinstance(caption, str) or not caption.strip():
            raise ValidationError("caption is required")
        if not isinstance(publish_at, str) or not publish_at.strip():
            raise ValidationError("publish_at is required (ISO-8601)")
        try:
            due = parse_iso(publish_at)
        except ValueError:
            raise ValidationError(
                f"invalid publish_at {publish_at!r} (use ISO-8601, e.g. 2030-01-01T00:00:00Z)"
            ) from None

        now = self.now()
        return Job(
            key=derive_key(artifact_ref, caption, publish_at),
            artifact_ref=artifact_ref,
            caption=caption,
            publish_at=to_iso(due),
            created_at=to_iso(now),
            updated_at=to_iso(now),
            expire_at=to_iso(now + RETENTION),
        )

    def _lease_until(self, now):
        return to_iso(now + timedelta(seconds=self.lease_seconds))

    def _apply_failure(self, job, error, now):
        """publishing -> queued (or dead) with backoff; publish_at never moves back."""
        job.attempts += 1
        job.last_error = error
        retry_at = to_iso(now + timedelta(seconds=self.backoff.delay(job.attempts)))
        job.publish_at = max(job.publish_at, retry_at)
        if self.max_attempts and job.attempts >= self.max_attempts:
            job.status = DEAD
        else:
            job.status = QUEUED
        job.lease_until = None
        job.updated_at = to_iso(now)
        return job


class Storage(JobStore):
    """SQLite-backed store; one connection shared by threads under a lock."""

    def __init__(self, db_path="queue.db", **kwargs):
        super().__init__(**kwargs)
        self.db_path = db_path
        # autocommit mode; transactions are opened explicitly
        self.conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()

        # Better concurrency for multiple processes
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        self.conn.execute("PRAGMA busy_timeout=5000;")

        self._init_schema()

    def _init_schema(self):
        # Jobs table
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS jobs (
            key TEXT PRIMARY KEY,
            artifact_ref TEXT NOT NULL,
            caption TEXT NOT NULL,
            publish_at TEXT NOT NULL,
            status TEXT NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            published_id TEXT,
            lease_until TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            expire_at TEXT
        )
        """)
        self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_jobs_status_publish_at ON jobs (status, publish_at)"
        )

        # Config table
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS config (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)

        # One row per named lock; shared by every process on this database
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS run_lock (
            name TEXT PRIMARY KEY,
            owner TEXT NOT NULL,
            acquired_at TEXT NOT NULL,
            expires_at TEXT NOT NULL
        )
        """)

    @contextmanager
    def _transaction(self):
        with self._lock:
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self.conn
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            self.conn.execute("COMMIT")

    def close(self):
        self.conn.close()

    # ---------------- Jobs ----------------
    def enqueue(self, artifact_ref, caption, publish_at):
        job = self._new_job(artifact_ref, caption, publish_at)
        with self._transaction() as conn:
            existing = conn.execute("SELECT status FROM jobs WHERE key=?", (job.key,)).fetchone()
            if existing is not None:
                logger.info("Job %s already exists (status=%s), not queued again", job.key, existing["status"])
                return EnqueueResult(queued=False, key=job.key)
            conn.execute("""
                INSERT INTO jobs (key, artifact_ref, caption, publish_at, status, attempts,
                                  created_at, updated_at, expire_at)
                VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?)
            """, (job.key, job.artifact_ref, job.caption, job.publish_at, QUEUED,
                  job.created_at, job.updated_at, job.expire_at))
        logger.info("Job %s queued (publish_at=%s)", job.key, job.publish_at)
        return EnqueueResult(queued=True, key=job.key)

    def claim_due(self, limit=10):
        """Claim up to `limit` due jobs, earliest publish_at first.

        Each candidate is re-read inside its own IMMEDIATE transaction and only
        moved to 'publishing' if it is still 'queued'; a job taken by another
        caller in the meantime is skipped.
        """
        if limit <= 0:
            return []
        now = self.now()
        now_iso = to_iso(now)
        with self._lock:
            candidates = self.conn.execute("""
                SELECT key FROM jobs
                WHERE status=? AND publish_at <= ?
                ORDER BY publish_at ASC
                LIMIT ?
            """, (QUEUED, now_iso, limit)).fetchall()

        claimed = []
        for candidate in candidates:
            with self._transaction() as conn:
                row = conn.execute("SELECT * FROM jobs WHERE key=?", (candidate["key"],)).fetchone()
                if row is None or row["status"] != QUEUED:
                    continue
                job = Job.from_row(row)
                job.status = PUBLISHING
                job.lease_until = self._lease_until(now)
                job.updated_at = now_iso
                conn.execute("""
                    UPDATE jobs SET status=?, lease_until=?, updated_at=?
                    WHERE key=? AND status=?
                """, (PUBLISHING, job.lease_until, now_iso, job.key, QUEUED))
            claimed.append(job)
        return claimed

    def mark_done(self, job, published_id=None):
        now_iso = to_iso(self.now())
        with self._transaction() as conn:
            conn.execute("""
                UPDATE jobs
                SET status=?, published_id=COALESCE(?, published_id), last_error=NULL,
                    lease_until=NULL, updated_at=?
                WHERE key=? AND status=?
            """, (DONE, published_id, now_iso, job.key, PUBLISHING))

    def mark_failed(self, job, error):
        now = self.now()
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE key=?", (job.key,)).fetchone()
            if row is None or row["status"] != PUBLISHING:
                return None
            failed = self._apply_failure(Job.from_row(row), error, now)
            conn.execute("""
                UPDATE jobs
                SET status=?, attempts=?, last_error=?, publish_at=?, lease_until=NULL, updated_at=?
                WHERE key=?
            """, (failed.status, failed.attempts, failed.last_error, failed.publish_at,
                  failed.updated_at, failed.key))
        return failed

    def get(self, key):
        with self._lock:
            row = self.conn.execute("SELECT * FROM jobs WHERE key=?", (key,)).fetchone()
        return Job.from_row(row) if row else None

    def list_jobs(self, status=None, limit=None):
        query = "SELECT * FROM jobs"
        params = []
        if status:
            query += " WHERE status=?"
            params.append(status)
        query += " ORDER BY created_at"
        if limit:
            query += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [Job.from_row(r) for r in rows]

    def counts(self):
        totals = {state: 0 for state in JOB_STATES}
        with self._lock:
            rows = self.conn.execute("SELECT status, COUNT(*) AS c FROM jobs GROUP BY status").fetchall()
        for row in rows:
            totals[row["status"]] = row["c"]
        return totals

    def release_expired(self, grace_seconds=0):
        now = self.now()
        cutoff = to_iso(now - timedelta(seconds=grace_seconds))
        with self._transaction() as conn:
            rows = conn.execute("""
                SELECT key FROM jobs
                WHERE status=? AND lease_until IS NOT NULL AND lease_until <= ?
            """, (PUBLISHING, cutoff)).fetchall()
            keys = [r["key"] for r in rows]
            if keys:
                conn.execute(f"""
                    UPDATE jobs SET status=?, lease_until=NULL, updated_at=?
                    WHERE key IN ({",".join("?" for _ in keys)})
                """, (QUEUED, to_iso(now), *keys))
        return keys

    def retry_dead(self, key):
        now_iso = to_iso(self.now())
        with self._transaction() as conn:
            updated = conn.execute("""
                UPDATE jobs
                SET status=?, attempts=0, last_error=NULL, lease_until=NULL,
                    publish_at=MAX(publish_at, ?), updated_at=?
                WHERE key=? AND status=?
            """, (QUEUED, now_iso, now_iso, key, DEAD)).rowcount
        return updated == 1

    def purge_expired(self):
        now_iso = to_iso(self.now())
        with self._transaction() as conn:
            deleted = conn.execute("""
                DELETE FROM jobs
                WHERE expire_at IS NOT NULL AND expire_at <= ? AND status != ?
            """, (now_iso, PUBLISHING)).rowcount
        return deleted

    def renew_lease(self, job):
        now = self.now()
        with self._transaction() as conn:
            updated = conn.execute("""
                UPDATE jobs SET lease_until=?, updated_at=?
                WHERE key=? AND status=?
            """, (self._lease_until(now), to_iso(now), job.key, PUBLISHING)).rowcount
        return updated == 1

    # ---------------- Run lock ----------------
    def acquire_run_lock(self, owner, ttl_seconds, name=RUN_LOCK):
        now = self.now()
        now_iso = to_iso(now)
        expires_at = to_iso(now + timedelta(seconds=ttl_seconds))
        with self._transaction() as conn:
            row = conn.execute("SELECT owner, expires_at FROM run_lock WHERE name=?", (name,)).fetchone()
            if row is not None and row["owner"] != owner and row["expires_at"] > now_iso:
                return False
            if row is not None and row["owner"] != owner:
                logger.warning("Run lock %s held by %s expired at %s, taking over",
                               name, row["owner"], row["expires_at"])
            conn.execute("""
                INSERT INTO run_lock (name, owner, acquired_at, expires_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    owner=excluded.owner, expires_at=excluded.expires_at,
                    acquired_at=CASE WHEN run_lock.owner = excluded.owner
                                     THEN run_lock.acquired_at ELSE excluded.acquired_at END
            """, (name, owner, now_iso, expires_at))
        return True

    def release_run_lock(self, owner, name=RUN_LOCK):
        with self._transaction() as conn:
            deleted = conn.execute(
                "DELETE FROM run_lock WHERE name=? AND owner=?", (name, owner)
            ).rowcount
        return deleted == 1

    # ---------------- Config helpers ----------------
    def get_config(self, key, default=None):
        with self._lock:
            row = self.conn.execute("SELECT value FROM config WHERE key=?", (key,)).fetchone()
        return row["value"] if row else default

    def set_config(self, key, value):
        now_iso = to_iso(self.now())
        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO config (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
            """, (key, str(value), now_iso))

    def list_config(self):
        with self._lock:
            rows = self.conn.execute("SELECT key, value, updated_at FROM config ORDER BY key").fetchall()
        return [dict(r) for r in rows]


class MemoryStorage(JobStore):
    """In-process store; a single mutex guards every compare-and-set."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._jobs = {}
        self._run_locks = {}   # name -> (owner, expires_at)
        self._lock = threading.Lock()

    def enqueue(self, artifact_ref, caption, publish_at):
        job = self._new_job(artifact_ref, caption, publish_at)
        with self._lock:
            if job.key in self._jobs:
                return EnqueueResult(queued=False, key=job.key)
            self._jobs[job.key] = job
        logger.info("Job %s queued (publish_at=%s)", job.key, job.publish_at)
        return EnqueueResult(queued=True, key=job.key)

    def claim_due(self, limit=10):
        if limit <= 0:
            return []
        now = self.now()
        now_iso = to_iso(now)
        with self._lock:
            due = sorted(
                (j for j in self._jobs.values() if j.status == QUEUED and j.publish_at <= now_iso),
                key=lambda j: j.publish_at,
            )
            keys = [j.key for j in due[:limit]]

        claimed = []
        for key in keys:
            with self._lock:
                job = self._jobs.get(key)
                if job is None or job.status != QUEUED:
                    continue
                job.status = PUBLISHING
                job.lease_until = self._lease_until(now)
                job.updated_at = now_iso
                claimed.append(dataclasses.replace(job))
        return claimed

    def mark_done(self, job, published_id=None):
        with self._lock:
            current = self._jobs.get(job.key)
            if current is None or current.status != PUBLISHING:
                return
            current.status = DONE
            if published_id is not None:
                current.published_id = published_id
            current.last_error = None
            current.lease_until = None
            current.updated_at = to_iso(self.now())

    def mark_failed(self, job, error):
        now = self.now()
        with self._lock:
            current = self._jobs.get(job.key)
            if current is None or current.status != PUBLISHING:
                return None
            self._apply_failure(current, error, now)
            return dataclasses.replace(current)

    def get(self, key):
        with self._lock:
            job = self._jobs.get(key)
            return dataclasses.replace(job) if job else None

    def list_jobs(self, status=None, limit=None):
        with self._lock:
            jobs = [dataclasses.replace(j) for j in self._jobs.values()
                    if status is None or j.status == status]
        jobs.sort(key=lambda j: j.created_at)
        return jobs[:limit] if limit else jobs

    def release_expired(self, grace_seconds=0):
        now = self.now()
        cutoff = to_iso(now - timedelta(seconds=grace_seconds))
        released = []
        with self._lock:
            for job in self._jobs.values():
                if job.status == PUBLISHING and job.lease_until and job.lease_until <= cutoff:
                    job.status = QUEUED
                    job.lease_until = None
                    job.updated_at = to_iso(now)
                    released.append(job.key)
        return released

    def retry_dead(self, key):
        now_iso = to_iso(self.now())
        with self._lock:
            job = self._jobs.get(key)
            if job is None or job.status != DEAD:
                return False
            job.status = QUEUED
            job.attempts = 0
            job.last_error = None
            job.publish_at = max(job.publish_at, now_iso)
            job.updated_at = now_iso
            return True

    def purge_expired(self):
        now_iso = to_iso(self.now())
        with self._lock:
            expired = [k for k, j in self._jobs.items()
                       if j.expire_at and j.expire_at <= now_iso and j.status != PUBLISHING]
            for key in expired:
                del self._jobs[key]
        return len(expired)

    def renew_lease(self, job):
        now = self.now()
        with self._lock:
            current = self._jobs.get(job.key)
            if current is None or current.status != PUBLISHING:
                return False
            current.lease_until = self._lease_until(now)
            current.updated_at = to_iso(now)
            return True

    def acquire_run_lock(self, owner, ttl_seconds, name=RUN_LOCK):
        now = self.now()
        with self._lock:
            holder = self._run_locks.get(name)
            if holder is not None and holder[0] != owner and holder[1] > to_iso(now):
                return False
            self._run_locks[name] = (owner, to_iso(now + timedelta(seconds=ttl_seconds)))
            return True

    def release_run_lock(self, owner, name=RUN_LOCK):
        with self._lock:
            holder = self._run_locks.get(name)
            if holder is None or holder[0] != owner:
                return False
            del self._run_locks[name]
            return True
