"""Single-flight execution lock backed by shared storage.

The lock is advisory and expiry-based: a record whose ``expires_at`` is in the
past is treated as abandoned and replaced by the next acquirer. No holder
identity is stored, so a caller can release a lock it no longer owns.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Protocol

import structlog

from healthwatch import db as dbm


logger = structlog.get_logger(__name__)

DEFAULT_LOCK_TIMEOUT_SECONDS = 30 * 60


@dataclass(frozen=True)
class LockRecord:
    lock_id: str
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class LockStore(Protocol):
    """Document-style storage with last-write-wins semantics."""

    async def get(self, lock_id: str) -> LockRecord | None: ...

    async def put(self, record: LockRecord) -> None: ...

    async def delete(self, lock_id: str) -> None: ...

    async def delete_expired(self, now: float) -> int: ...


class MemoryLockStore:
    """Process-local lock records; for a single worker or tests."""

    def __init__(self):
        self._records: dict[str, LockRecord] = {}

    async def get(self, lock_id: str) -> LockRecord | None:
        return self._records.get(lock_id)

    async def put(self, record: LockRecord) -> None:
        self._records[record.lock_id] = record

    async def delete(self, lock_id: str) -> None:
        self._records.pop(lock_id, None)

    async def delete_expired(self, now: float) -> int:
        expired = [lock_id for lock_id, record in self._records.items() if record.is_expired(now)]
        for lock_id in expired:
            del self._records[lock_id]
        return len(expired)


class SqliteLockStore:
    """Lock records kept in the ``locks`` table of the service database."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        dbm.ensure_schema(db_path)

    async def get(self, lock_id: str) -> LockRecord | None:
        return await asyncio.to_thread(self._get, lock_id)

    async def put(self, record: LockRecord) -> None:
        await asyncio.to_thread(self._put, record)

    async def delete(self, lock_id: str) -> None:
        await asyncio.to_thread(self._delete, lock_id)

    async def delete_expired(self, now: float) -> int:
        return await asyncio.to_thread(self._delete_expired, now)

    def _get(self, lock_id: str) -> LockRecord | None:
        conn = dbm.connect(self.db_path)
        try:
            row = conn.execute(
                "SELECT lock_id, created_at_ts, expires_at_ts FROM locks WHERE lock_id=?",
                (lock_id,),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return LockRecord(
            lock_id=str(row["lock_id"]),
            created_at=float(row["created_at_ts"]),
            expires_at=float(row["expires_at_ts"]),
        )

    def _put(self, record: LockRecord) -> None:
        conn = dbm.connect(self.db_path)
        try:
            conn.execute(
                "INSERT OR REPLACE INTO locks (lock_id, created_at_ts, expires_at_ts) VALUES (?, ?, ?)",
                (record.lock_id, record.created_at, record.expires_at),
            )
        finally:
            conn.close()

    def _delete(self, lock_id: str) -> None:
        conn = dbm.connect(self.db_path)
        try:
            conn.execute("DELETE FROM locks WHERE lock_id=?", (lock_id,))
        finally:
            conn.close()

    def _delete_expired(self, now: float) -> int:
        conn = dbm.connect(self.db_path)
        try:
            cur = conn.execute("DELETE FROM locks WHERE expires_at_ts <= ?", (now,))
            return int(cur.rowcount or 0)
        finally:
            conn.close()


class SingleFlightLock:
    """At most one live lock record per lock id; expired records self-heal."""

    def __init__(
        self,
        store: LockStore,
        timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        if timeout_seconds <= 0:
            raise ValueError("Lock timeout must be positive")
        self.store = store
        self.timeout_seconds = float(timeout_seconds)
        self._clock = clock

    async def acquire_lock(self, lock_id: str) -> bool:
        """Return True if the lock was taken, False if held or storage failed."""
        now = self._clock()
        try:
            existing = await self.store.get(lock_id)
            if existing is not None:
                if not existing.is_expired(now):
                    logger.info("Lock held", lock_id=lock_id, expires_at=existing.expires_at)
                    return False
                logger.warning("Replacing expired lock", lock_id=lock_id, expired_at=existing.expires_at)
                await self.store.delete(lock_id)

            # Racing acquirers on an expired record both get here; the store's
            # last write wins and both may believe they hold the lock.
            await self.store.put(
                LockRecord(lock_id=lock_id, created_at=now, expires_at=now + self.timeout_seconds)
            )
        except Exception as e:
            logger.error("Error acquiring lock", lock_id=lock_id, error=str(e))
            return False

        logger.info("Lock acquired", lock_id=lock_id)
        return True

    async def release_lock(self, lock_id: str) -> None:
        """Delete the lock record. Storage errors are logged, never raised."""
        try:
            await self.store.delete(lock_id)
            logger.info("Lock released", lock_id=lock_id)
        except Exception as e:
            logger.error("Error releasing lock", lock_id=lock_id, error=str(e))

    async def cleanup_expired_locks(self) -> int:
        """Delete all expired lock records and return how many were removed."""
        try:
            count = await self.store.delete_expired(self._clock())
        except Exception as e:
            logger.error("Error cleaning up expired locks", error=str(e))
            return 0
        if count > 0:
            logger.info("Cleaned up expired locks", count=count)
        return count
