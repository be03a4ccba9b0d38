# retry_policy.py
import logging
import time
from dataclasses import dataclass

import httpx

from errors import RemoteAPIError

logger = logging.getLogger(__name__)

# Graph API error codes / subcodes that usually succeed on a later attempt
TRANSIENT_CODES = frozenset({1, 2, 4, 17, 32, 341, 613})
TRANSIENT_SUBCODES = frozenset({2207001, 2207003})


@dataclass(frozen=True)
class BackoffPolicy:
    base: float            # seconds
    ceiling: float         # seconds
    retries: int = 0       # extra attempts for retry_call

    def delay(self, attempt):
        """min(ceiling, base * 2^(attempt-1)) for attempt >= 1"""
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        # bounded exponent keeps the float finite for huge attempt counts
        return min(self.ceiling, self.base * (2 ** min(attempt - 1, 32)))


JOB_BACKOFF = BackoffPolicy(base=30.0, ceiling=15 * 60.0)
HTTP_BACKOFF = BackoffPolicy(base=0.3, ceiling=5.0, retries=2)


def is_transient(exc):
    if isinstance(exc, RemoteAPIError):
        if exc.status_code is not None and exc.status_code >= 500:
            return True
        return exc.code in TRANSIENT_CODES or exc.subcode in TRANSIENT_SUBCODES
    # connect/read timeouts, resets, DNS failures, dropped connections;
    # misconfiguration such as a bad scheme or proxy is terminal
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return True
    return isinstance(exc, (TimeoutError, ConnectionError))


def retry_call(fn, policy=HTTP_BACKOFF, sleep=time.sleep, label="call"):
    """Run fn(), retrying transient failures up to policy.retries times."""
    attempt = 1
    while True:
        try:
            return fn()
        except Exception as e:
            if attempt > policy.retries or not is_transient(e):
                raise
            delay = policy.delay(attempt)
            logger.warning("%s failed (attempt %d/%d), retrying in %.2fs: %s",
                           label, attempt, policy.retries + 1, delay, e)
            sleep(delay)
            attempt += 1
