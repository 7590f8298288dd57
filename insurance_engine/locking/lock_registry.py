"""
Per-entity advisory locks with TTL.

A lock is set-if-absent: acquire() returns False immediately when the key is
held and unexpired, it never waits. Callers treat False as "skip this pass".
The TTL bounds how long a crashed holder can block an entity.

Usage:
    async with registry.hold(lock_key(contract_id)) as acquired:
        if not acquired:
            return None
        ...
"""
import threading
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Dict, Optional

from sqlalchemy.exc import IntegrityError

from insurance_engine.constants import LOCK_KEY_PREFIX, LOCK_TTL_SECONDS
from insurance_engine.monitoring.logger import get_logger
from insurance_engine.storage.db import Database
from insurance_engine.storage.repository import EntityLockModel

logger = get_logger(__name__)


def lock_key(contract_id: str) -> str:
    return f"{LOCK_KEY_PREFIX}:{contract_id}"


class LockRegistry(ABC):
    """Set-if-absent lock table keyed by string."""

    def __init__(self, default_ttl_seconds: int = LOCK_TTL_SECONDS):
        self.default_ttl_seconds = default_ttl_seconds

    @abstractmethod
    def acquire(self, key: str, ttl_seconds: Optional[int] = None) -> bool:
        """Take the lock if free or expired. Never blocks."""

    @abstractmethod
    def release(self, key: str) -> None:
        """Release the lock. Releasing a free key is a no-op."""

    @abstractmethod
    def is_locked(self, key: str) -> bool:
        """True while the key is held and unexpired."""

    @asynccontextmanager
    async def hold(self, key: str, ttl_seconds: Optional[int] = None) -> AsyncIterator[bool]:
        """
        Yield whether the lock was obtained; release on every exit path
        when it was.
        """
        acquired = self.acquire(key, ttl_seconds)
        if not acquired:
            logger.debug("LOCK_BUSY", key=key)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(key)


class InMemoryLockRegistry(LockRegistry):
    """Process-local lock table using monotonic-clock expiry."""

    def __init__(self, default_ttl_seconds: int = LOCK_TTL_SECONDS, clock=time.monotonic):
        super().__init__(default_ttl_seconds)
        self._clock = clock
        self._expiry: Dict[str, float] = {}
        self._mutex = threading.Lock()

    def acquire(self, key: str, ttl_seconds: Optional[int] = None) -> bool:
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        now = self._clock()
        with self._mutex:
            expires_at = self._expiry.get(key)
            if expires_at is not None and expires_at > now:
                return False
            if expires_at is not None:
                logger.warning("LOCK_EXPIRED_RECLAIMED", key=key)
            self._expiry[key] = now + ttl
            return True

    def release(self, key: str) -> None:
        with self._mutex:
            self._expiry.pop(key, None)

    def is_locked(self, key: str) -> bool:
        with self._mutex:
            expires_at = self._expiry.get(key)
            return expires_at is not None and expires_at > self._clock()


class SqlLockRegistry(LockRegistry):
    """
    Lock table in the shared database (entity_locks) for multi-node deployments.

    Acquisition is a primary-key insert; a duplicate key means held. Expired
    rows are deleted before the insert so a crashed holder does not block
    forever.
    """

    def __init__(self, db: Database, default_ttl_seconds: int = LOCK_TTL_SECONDS, owner: Optional[str] = None):
        super().__init__(default_ttl_seconds)
        self.db = db
        self.owner = owner or uuid.uuid4().hex

    def acquire(self, key: str, ttl_seconds: Optional[int] = None) -> bool:
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        now = datetime.now(timezone.utc)
        try:
            with self.db.get_session() as session:
                session.query(EntityLockModel).filter(
                    EntityLockModel.key == key,
                    EntityLockModel.expires_at <= now,
                ).delete(synchronize_session=False)
                session.add(EntityLockModel(
                    key=key,
                    owner=self.owner,
                    expires_at=now + timedelta(seconds=ttl),
                ))
        except IntegrityError:
            return False
        return True

    def release(self, key: str) -> None:
        with self.db.get_session() as session:
            session.query(EntityLockModel).filter(
                EntityLockModel.key == key,
                EntityLockModel.owner == self.owner,
            ).delete(synchronize_session=False)

    def is_locked(self, key: str) -> bool:
        now = datetime.now(timezone.utc)
        with self.db.get_session() as session:
            return session.query(EntityLockModel).filter(
                EntityLockModel.key == key,
                EntityLockModel.expires_at > now,
            ).first() is not None
