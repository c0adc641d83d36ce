# File: coshare_booking/infrastructure/locks.py
"""
Per-rule locks for recurrence rules

At most one generation run per rule at a time. The sweep never waits for a
rule whose lock is held; user edits (pause, resume, cancel) wait up to a
timeout. Two providers:
- InProcessRuleLockProvider: registry of threading.Lock per rule id
- RedisRuleLockProvider: redis-py distributed lock per rule id
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional
import logging
import threading

import redis
from redis.exceptions import LockError

from ..domain.exceptions import ConcurrentModification


class RuleLockTimeout(ConcurrentModification):
    """The lock of a recurrence rule could not be acquired in time"""

    def __init__(self, rule_id: str, timeout: Optional[float]):
        self.rule_id = rule_id
        self.timeout = timeout
        waited = f" within {timeout}s" if timeout else ""
        super().__init__(f"Recurrence rule {rule_id} is locked by another process{waited}")


class RuleLockProvider(ABC):
    """Abstract per-rule lock provider"""

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def try_acquire(self, rule_id: str, timeout: Optional[float] = None) -> Optional[Any]:
        """
        Acquire the lock of a rule
        timeout None or 0 means do not wait
        Returns: A handle for release(), or None if the lock is held elsewhere
        """
        pass

    @abstractmethod
    def release(self, handle: Any) -> None:
        pass

    @contextmanager
    def holding(self, rule_id: str, timeout: Optional[float] = None) -> Iterator[None]:
        """Hold the lock of a rule for the duration of the block"""
        handle = self.try_acquire(rule_id, timeout)
        if handle is None:
            raise RuleLockTimeout(rule_id, timeout)
        try:
            yield
        finally:
            self.release(handle)


class InProcessRuleLockProvider(RuleLockProvider):
    """Lock registry for a single process"""

    def __init__(self):
        super().__init__()
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, rule_id: str) -> threading.Lock:
        with self._registry_lock:
            if rule_id not in self._locks:
                self._locks[rule_id] = threading.Lock()
            return self._locks[rule_id]

    def try_acquire(self, rule_id: str, timeout: Optional[float] = None) -> Optional[threading.Lock]:
        lock = self._lock_for(rule_id)
        if timeout:
            acquired = lock.acquire(timeout=timeout)
        else:
            acquired = lock.acquire(blocking=False)

        if not acquired:
            self.logger.debug(f"Lock of rule {rule_id} is held")
            return None
        return lock

    def release(self, handle: threading.Lock) -> None:
        handle.release()


class RedisRuleLockProvider(RuleLockProvider):
    """
    Distributed lock per rule
    The lease expires on its own if a worker dies while holding it
    """

    def __init__(self, client: redis.Redis, key_prefix: str = "booking:recurrence-lock:",
                 lease_seconds: float = 300):
        super().__init__()
        self.client = client
        self.key_prefix = key_prefix
        self.lease_seconds = lease_seconds

    @classmethod
    def from_url(cls, redis_url: str, **kwargs) -> 'RedisRuleLockProvider':
        return cls(redis.Redis.from_url(redis_url), **kwargs)

    def try_acquire(self, rule_id: str, timeout: Optional[float] = None) -> Optional[Any]:
        lock = self.client.lock(f"{self.key_prefix}{rule_id}", timeout=self.lease_seconds)
        try:
            if timeout:
                acquired = lock.acquire(blocking=True, blocking_timeout=timeout)
            else:
                acquired = lock.acquire(blocking=False)
        except redis.RedisError as e:
            self.logger.error(f"Redis error locking rule {rule_id}: {e}", exc_info=True)
            raise

        if not acquired:
            self.logger.debug(f"Lock of rule {rule_id} is held")
            return None
        return lock

    def release(self, handle: Any) -> None:
        try:
            handle.release()
        except LockError as e:
            # The lease ran out before the work finished
            self.logger.warning(f"Lock {handle.name} expired before release: {e}")
