"""
Storage backends for item exposure state shared across attempts.

Two kinds of data live here:
    - per-item administration counters, incremented atomically whenever an
      item is actually administered, plus a counter of completed attempts;
    - Sympson-Hetter control parameters k_item in (0, 1], read during item
      selection and written only by the out-of-band recalibration job.

Reads may be stale; exposure control is statistical, so a selection that
misses a concurrent increment is acceptable. Increments must not be lost.
"""
import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, Iterable, Mapping, Optional, Set

import redis

from cat_engine.core.errors import ExposureStoreError

logger = logging.getLogger(__name__)

# Control parameter for items that have never been recalibrated
DEFAULT_CONTROL_PARAMETER = 1.0


class ExposureStore(ABC):
    """
    Abstract interface for shared exposure bookkeeping.

    The session controller depends only on this interface, so the engine can
    run against an in-process store in tests and a shared store in
    production.
    """

    @abstractmethod
    def increment(self, item_id: str) -> int:
        """
        Atomically increment an item's administration counter.

        Args:
            item_id: Item that was administered

        Returns:
            The counter value after the increment

        Raises:
            ExposureStoreError: If the increment could not be applied
        """
        pass

    @abstractmethod
    def get_count(self, item_id: str) -> int:
        """Administration count for one item (0 if never administered)."""
        pass

    @abstractmethod
    def get_counts(self) -> Dict[str, int]:
        """Administration counts for every item seen by the store."""
        pass

    @abstractmethod
    def record_attempt(self, session_id: Optional[str] = None) -> int:
        """
        Record that an attempt has terminated.

        Args:
            session_id: Attempt being recorded. An attempt already recorded
                under the same id is not counted again.

        Returns:
            Total number of attempts recorded
        """
        pass

    @abstractmethod
    def attempt_count(self) -> int:
        """Total number of attempts recorded."""
        pass

    @abstractmethod
    def get_control_parameter(self, item_id: str) -> float:
        """Sympson-Hetter k for one item (DEFAULT_CONTROL_PARAMETER if unset)."""
        pass

    @abstractmethod
    def set_control_parameters(self, parameters: Mapping[str, float]) -> None:
        """
        Replace control parameters for the given items.

        Args:
            parameters: item_id -> k, each in (0, 1]

        Raises:
            ValueError: If any k is outside (0, 1]
        """
        pass

    @abstractmethod
    def clear(self) -> None:
        """Clear all counters and control parameters."""
        pass

    def get_control_parameters(self, item_ids: Iterable[str]) -> Dict[str, float]:
        """Control parameters for several items."""
        return {item_id: self.get_control_parameter(item_id) for item_id in item_ids}

    @staticmethod
    def _validate_control_parameters(parameters: Mapping[str, float]) -> None:
        for item_id, k in parameters.items():
            if not 0.0 < k <= 1.0:
                raise ValueError(
                    f"Control parameter for item {item_id} must be in (0, 1], got {k}"
                )


class InMemoryExposureStore(ExposureStore):
    """
    In-memory exposure store.

    Thread-safe with a lock around every counter update. Data is lost on
    process restart, and counts are not shared between worker processes;
    use RedisExposureStore for multi-worker deployments.
    """

    def __init__(self, control_parameters: Optional[Mapping[str, float]] = None):
        self._lock = threading.Lock()
        self._counts: Dict[str, int] = {}
        self._attempts = 0
        self._recorded_sessions: Set[str] = set()
        self._control_parameters: Dict[str, float] = {}
        if control_parameters:
            self.set_control_parameters(control_parameters)

    def increment(self, item_id: str) -> int:
        with self._lock:
            count = self._counts.get(item_id, 0) + 1
            self._counts[item_id] = count
            return count

    def get_count(self, item_id: str) -> int:
        with self._lock:
            return self._counts.get(item_id, 0)

    def get_counts(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)

    def record_attempt(self, session_id: Optional[str] = None) -> int:
        with self._lock:
            if session_id is not None:
                if session_id in self._recorded_sessions:
                    return self._attempts
                self._recorded_sessions.add(session_id)
            self._attempts += 1
            return self._attempts

    def attempt_count(self) -> int:
        with self._lock:
            return self._attempts

    def get_control_parameter(self, item_id: str) -> float:
        with self._lock:
            return self._control_parameters.get(item_id, DEFAULT_CONTROL_PARAMETER)

    def set_control_parameters(self, parameters: Mapping[str, float]) -> None:
        self._validate_control_parameters(parameters)
        with self._lock:
            self._control_parameters.update(parameters)

    def clear(self) -> None:
        with self._lock:
            self._counts.clear()
            self._attempts = 0
            self._recorded_sessions.clear()
            self._control_parameters.clear()


class RedisExposureStore(ExposureStore):
    """
    Redis exposure store for deployments with several workers.

    Layout under the key prefix:
        {prefix}count:{item_id}   INCR counter per item
        {prefix}attempts          INCR counter of finished attempts
        {prefix}attempt_ids       set of session ids already counted
        {prefix}k                 hash item_id -> control parameter

    Increments use INCR, which is atomic on the server. A failed increment is
    retried up to ``max_retries`` times before ExposureStoreError is raised.
    Read failures are logged and fall back to neutral values (count 0, k 1.0)
    so that item selection never fails on a store outage.
    """

    # Key prefix to namespace exposure data in Redis
    KEY_PREFIX = "cat:exposure:"

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        key_prefix: Optional[str] = None,
        max_retries: int = 3,
        connection_pool_size: int = 10,
        socket_timeout: float = 5.0,
        socket_connect_timeout: float = 5.0,
    ):
        """
        Initialize Redis exposure store with connection pooling.

        Args:
            redis_url: Redis connection URL
            key_prefix: Optional custom prefix (defaults to "cat:exposure:")
            max_retries: Attempts per increment before giving up
            connection_pool_size: Maximum number of connections in the pool
            socket_timeout: Timeout for socket operations in seconds
            socket_connect_timeout: Timeout for socket connections in seconds
        """
        if max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {max_retries}")

        self._key_prefix = key_prefix or self.KEY_PREFIX
        self._max_retries = max_retries

        self._pool = redis.ConnectionPool.from_url(
            redis_url,
            max_connections=connection_pool_size,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_connect_timeout,
            decode_responses=True,
        )
        self._redis = redis.Redis(connection_pool=self._pool)

        try:
            self._redis.ping()
            logger.info("Successfully connected to Redis for exposure tracking")
        except redis.ConnectionError as e:
            logger.warning(
                f"Could not connect to Redis on startup: {e}. "
                "Exposure counts will not be recorded until Redis is available."
            )

    def _count_key(self, item_id: str) -> str:
        return f"{self._key_prefix}count:{item_id}"

    @property
    def _attempts_key(self) -> str:
        return f"{self._key_prefix}attempts"

    @property
    def _attempt_ids_key(self) -> str:
        return f"{self._key_prefix}attempt_ids"

    @property
    def _control_key(self) -> str:
        return f"{self._key_prefix}k"

    def _incr_with_retry(self, key: str) -> int:
        last_error: Optional[Exception] = None
        for attempt in range(1, self._max_retries + 1):
            try:
                return int(self._redis.incr(key))
            except redis.RedisError as e:
                last_error = e
                logger.warning(
                    f"Redis INCR {key} failed (attempt {attempt}/{self._max_retries}): {e}"
                )
        raise ExposureStoreError(
            "Could not increment exposure counter",
            original_error=last_error,
            context={"key": key, "retries": self._max_retries},
        )

    def increment(self, item_id: str) -> int:
        return self._incr_with_retry(self._count_key(item_id))

    def get_count(self, item_id: str) -> int:
        try:
            value = self._redis.get(self._count_key(item_id))
        except redis.RedisError as e:
            logger.error(f"Redis error during get_count({item_id}): {e}")
            return 0
        return int(value) if value is not None else 0

    def get_counts(self) -> Dict[str, int]:
        prefix = self._count_key("")
        counts: Dict[str, int] = {}
        try:
            cursor: int = 0
            while True:
                cursor, keys = self._redis.scan(cursor, match=f"{prefix}*", count=100)
                if keys:
                    values = self._redis.mget(keys)
                    for key, value in zip(keys, values):
                        if value is not None:
                            counts[key[len(prefix) :]] = int(value)
                if cursor == 0:
                    break
        except redis.RedisError as e:
            logger.error(f"Redis error during get_counts(): {e}")
        return counts

    def record_attempt(self, session_id: Optional[str] = None) -> int:
        if session_id is not None:
            try:
                added = self._redis.sadd(self._attempt_ids_key, session_id)
            except redis.RedisError as e:
                logger.warning(
                    f"Redis SADD for attempt {session_id} failed, counting it anyway: {e}"
                )
            else:
                if not added:
                    return self.attempt_count()
        return self._incr_with_retry(self._attempts_key)

    def attempt_count(self) -> int:
        try:
            value = self._redis.get(self._attempts_key)
        except redis.RedisError as e:
            logger.error(f"Redis error during attempt_count(): {e}")
            return 0
        return int(value) if value is not None else 0

    def get_control_parameter(self, item_id: str) -> float:
        try:
            value = self._redis.hget(self._control_key, item_id)
        except redis.RedisError as e:
            logger.error(f"Redis error during get_control_parameter({item_id}): {e}")
            return DEFAULT_CONTROL_PARAMETER
        return float(value) if value is not None else DEFAULT_CONTROL_PARAMETER

    def get_control_parameters(self, item_ids: Iterable[str]) -> Dict[str, float]:
        ids = list(item_ids)
        if not ids:
            return {}
        try:
            values = self._redis.hmget(self._control_key, ids)
        except redis.RedisError as e:
            logger.error(f"Redis error during get_control_parameters(): {e}")
            return {item_id: DEFAULT_CONTROL_PARAMETER for item_id in ids}
        return {
            item_id: float(value) if value is not None else DEFAULT_CONTROL_PARAMETER
            for item_id, value in zip(ids, values)
        }

    def set_control_parameters(self, parameters: Mapping[str, float]) -> None:
        self._validate_control_parameters(parameters)
        if not parameters:
            return
        try:
            self._redis.hset(
                self._control_key,
                mapping={item_id: str(k) for item_id, k in parameters.items()},
            )
        except redis.RedisError as e:
            raise ExposureStoreError(
                "Could not write control parameters",
                original_error=e,
                context={"n_items": len(parameters)},
            ) from e

    def clear(self) -> None:
        """
        Clear all exposure keys.

        Only clears keys with the exposure prefix, not the entire database.
        """
        try:
            cursor: int = 0
            while True:
                cursor, keys = self._redis.scan(
                    cursor, match=f"{self._key_prefix}*", count=100
                )
                if keys:
                    self._redis.delete(*keys)
                if cursor == 0:
                    break
        except redis.RedisError as e:
            logger.error(f"Redis error during clear(): {e}")

    def is_connected(self) -> bool:
        try:
            self._redis.ping()
            return True
        except redis.RedisError:
            return False

    def close(self) -> None:
        """Close the Redis connection pool."""
        self._pool.disconnect()


def create_exposure_store(
    backend: str = "memory",
    redis_url: str = "redis://localhost:6379/0",
    key_prefix: Optional[str] = None,
    max_retries: int = 3,
) -> ExposureStore:
    """
    Build the exposure store named by configuration.

    Raises:
        ValueError: If the backend name is unknown.
    """
    if backend == "memory":
        return InMemoryExposureStore()
    if backend == "redis":
        return RedisExposureStore(
            redis_url=redis_url, key_prefix=key_prefix, max_retries=max_retries
        )
    raise ValueError(f"Unknown exposure store backend: {backend}")
