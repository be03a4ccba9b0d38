# publisher.py
"""Create -> poll -> publish workflow for a single image post.

The Graph API processes uploaded media asynchronously, and publishing a
container that is not FINISHED is rejected, so every publish goes through
the poll gate in wait_until_ready.
"""
import logging
import re
import time
from urllib.parse import urlsplit, urlunsplit

from errors import ContainerError, PollTimeout, PublishError
from models import CREATED, ERROR, FINISHED, POLLING, TIMEOUT, RemoteArtifact, utcnow
from retry_policy import HTTP_BACKOFF, retry_call

logger = logging.getLogger(__name__)

CAPTION_LIMIT = 2200

READY_CODES = {"FINISHED", "PUBLISHED"}
FAILED_CODES = {"ERROR", "EXPIRED"}

_TS_PARAM = re.compile(r"(?:^|&)ts=\d+(?:&|$)")


def truncate_caption(caption, limit=CAPTION_LIMIT):
    return (caption or "")[:limit]


def bust_cache(url, now=None):
    """Append ts=<epoch ms> so the remote side refetches the same image URL."""
    url = (url or "").strip()
    if not url:
        return url
    parts = urlsplit(url)
    if _TS_PARAM.search(parts.query):
        return url
    millis = int((now or utcnow()).timestamp() * 1000)
    query = f"{parts.query}&ts={millis}" if parts.query else f"ts={millis}"
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


class PublishWorkflow:
    def __init__(self, client, max_polls=20, poll_interval=3.0, retry=HTTP_BACKOFF,
                 sleep=time.sleep, clock=None):
        self.client = client
        self.max_polls = max_polls
        self.poll_interval = poll_interval
        self.retry = retry
        self.sleep = sleep
        self.clock = clock or utcnow

    def _call(self, label, fn, *args):
        return retry_call(lambda: fn(*args), policy=self.retry, sleep=self.sleep, label=label)

    def create_container(self, artifact_ref, caption):
        image_url = bust_cache(artifact_ref, self.clock())
        creation_id = self._call("create_container", self.client.create_container,
                                 image_url, truncate_caption(caption))
        logger.info("container=%s created for %s", creation_id, artifact_ref)
        return RemoteArtifact(creation_id=creation_id, status=CREATED)

    def wait_until_ready(self, artifact, max_polls=None, poll_interval=None):
        max_polls = self.max_polls if max_polls is None else max_polls
        poll_interval = self.poll_interval if poll_interval is None else poll_interval

        for poll in range(1, max_polls + 1):
            artifact.status = POLLING
            artifact.polls = poll
            code, detail = self._call("container_status", self.client.container_status,
                                      artifact.creation_id)
            code = (code or "").upper()
            artifact.detail = detail or code or None

            if code in READY_CODES:
                artifact.status = FINISHED
                logger.info("container=%s ready after %d poll(s)", artifact.creation_id, poll)
                return artifact
            if code in FAILED_CODES:
                artifact.status = ERROR
                raise ContainerError(
                    f"container {artifact.creation_id} failed: {code} {detail or ''}".strip()
                )

            logger.debug("container=%s status=%s (poll %d/%d)",
                         artifact.creation_id, code or "?", poll, max_polls)
            if poll < max_polls:
                self.sleep(poll_interval)

        artifact.status = TIMEOUT
        raise PollTimeout(
            f"container {artifact.creation_id} not ready after {max_polls} polls "
            f"(last status: {artifact.detail or 'unknown'})"
        )

    def finalize(self, artifact):
        if artifact.status != FINISHED:
            raise PublishError(
                f"container {artifact.creation_id} is {artifact.status}, cannot publish before it is finished"
            )
        published_id = self._call("publish_container", self.client.publish_container,
                                  artifact.creation_id)
        logger.info("container=%s published as %s", artifact.creation_id, published_id)
        return published_id

    def publish(self, artifact_ref, caption):
        artifact = self.create_container(artifact_ref, caption)
        self.wait_until_ready(artifact)
        return self.finalize(artifact)
