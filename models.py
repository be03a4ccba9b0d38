# models.py
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

# Job status
QUEUED = "queued"
PUBLISHING = "publishing"
DONE = "done"
DEAD = "dead"
JOB_STATES = (QUEUED, PUBLISHING, DONE, DEAD)

# RemoteArtifact status
CREATED = "created"
POLLING = "polling"
FINISHED = "finished"
ERROR = "error"
TIMEOUT = "timeout"

RETENTION = timedelta(days=30)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Fixed-width UTC ISO string; lexical order matches time order."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; a trailing Z and naive values mean UTC."""
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass
class Job:
    key: str
    artifact_ref: str
    caption: str
    publish_at: str
    status: str = QUEUED   # queued | publishing | done | dead
    attempts: int = 0
    last_error: Optional[str] = None
    published_id: Optional[str] = None
    lease_until: Optional[str] = None
    created_at: str = field(default_factory=lambda: to_iso(utcnow()))
    updated_at: str = field(default_factory=lambda: to_iso(utcnow()))
    expire_at: Optional[str] = None

    @classmethod
    def from_row(cls, row):
        return cls(**{name: row[name] for name in cls.__dataclass_fields__})

    def to_dict(self):
        return {name: getattr(self, name) for name in self.__dataclass_fields__}


@dataclass
class EnqueueResult:
    queued: bool
    key: str


@dataclass
class RemoteArtifact:
    creation_id: str
    status: str = CREATED   # created | polling | finished | error | timeout
    detail: Optional[str] = None
    polls: int = 0
