"""
Per-user Redis lock so two detection runs for the same user never race on
subscription creation.
"""
import logging
import os
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

import redis
from redis.exceptions import LockError

from recurwatch.errors import DetectionAlreadyRunningError
from recurwatch.services.detection_config import DETECTION_TASK_TIME_LIMIT_SECONDS

logger = logging.getLogger(__name__)


class UserDetectionLock:
    """
    Advisory lock keyed on the user id.

    Key format: subscription_detection:{user_id}
    The TTL defaults to the Celery hard time limit, so a worker killed
    mid-run frees the lock no later than its task would have ended. Long
    reconciliations renew it through the callable yielded by hold().
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        ttl_seconds: Optional[float] = None,
        blocking_timeout_seconds: Optional[float] = None,
        client: Optional[redis.Redis] = None,
    ):
        self.redis_url = redis_url or os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else float(
            os.getenv("SUBSCRIPTION_LOCK_TTL_SECONDS", str(DETECTION_TASK_TIME_LIMIT_SECONDS))
        )
        self.blocking_timeout_seconds = (
            blocking_timeout_seconds
            if blocking_timeout_seconds is not None
            else float(os.getenv("SUBSCRIPTION_LOCK_BLOCKING_TIMEOUT_SECONDS", "5"))
        )
        self._redis = client

    @property
    def redis(self) -> redis.Redis:
        """Lazy-load Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url)
        return self._redis

    @staticmethod
    def key(user_id: str) -> str:
        return f"subscription_detection:{user_id}"

    @contextmanager
    def hold(self, user_id: str) -> Iterator[Callable[[], None]]:
        """
        Hold the lock for the duration of the block or raise DetectionAlreadyRunningError.

        Yields a renew() callable that resets the TTL. renew() raises
        DetectionAlreadyRunningError when the lock has expired and may
        belong to another run.
        """
        lock = self.redis.lock(self.key(user_id), timeout=self.ttl_seconds)
        blocking = self.blocking_timeout_seconds > 0
        acquired = lock.acquire(
            blocking=blocking,
            blocking_timeout=self.blocking_timeout_seconds if blocking else None,
        )
        if not acquired:
            raise DetectionAlreadyRunningError(user_id)

        def renew() -> None:
            try:
                lock.reacquire()
            except LockError as e:
                logger.error(f"[SUBSCRIPTION_LOCK] Lost {self.key(user_id)} mid-run")
                raise DetectionAlreadyRunningError(user_id) from e

        logger.debug(f"[SUBSCRIPTION_LOCK] Acquired {self.key(user_id)}")
        try:
            yield renew
        finally:
            try:
                lock.release()
            except LockError:
                logger.warning(
                    f"[SUBSCRIPTION_LOCK] {self.key(user_id)} expired before release"
                )
