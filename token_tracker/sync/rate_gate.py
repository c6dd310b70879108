"""Global pacing of explorer calls.

All processes that share one API key must stay under the provider's
calls-per-second budget together, so the gate serializes on a lock that
lives outside the process. Whoever holds the lock sleeps the full interval
before releasing it, so consecutive acquirers in any process are spaced by
at least that interval.

* PostgreSQL: an advisory lock held across a server-side ``pg_sleep``.
* SQLite: the file write lock of a small side database next to the main
  one. ``BEGIN IMMEDIATE`` blocks in SQLite's busy handler while another
  connection (in this process or any other) holds it.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import tempfile
import time
from pathlib import Path
from typing import Callable, Protocol

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from token_tracker.config import settings
from token_tracker.errors import ConfigError

logger = logging.getLogger(__name__)

# seconds a waiter may sit in SQLite's busy handler before giving up
SQLITE_LOCK_TIMEOUT = 120.0


def lock_key_for(credential: str) -> int:
    """Stable signed 64-bit advisory-lock key for a credential."""
    digest = hashlib.blake2b(credential.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


class ExclusiveDelay(Protocol):
    async def with_exclusive_delay(self, key: int, delay_seconds: float) -> None:
        """Acquire the named mutex, hold it for ``delay_seconds``, release."""
        ...


class PostgresExclusiveDelay:
    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def with_exclusive_delay(self, key: int, delay_seconds: float) -> None:
        async with self._engine.connect() as conn:
            async with conn.begin():
                # xact lock: released by the commit at the end of this block
                await conn.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": key})
                await conn.execute(text("SELECT pg_sleep(:delay)"), {"delay": delay_seconds})


class SqliteExclusiveDelay:
    """Mutex on the write lock of ``<prefix>-<key>.db``, one file per key."""

    def __init__(self, lock_prefix: Path, timeout: float = SQLITE_LOCK_TIMEOUT) -> None:
        self.lock_prefix = Path(lock_prefix)
        self.timeout = timeout
        self._engines: dict[int, AsyncEngine] = {}

    def lock_path(self, key: int) -> Path:
        return self.lock_prefix.with_name(
            f"{self.lock_prefix.name}-{key & 0xFFFFFFFFFFFFFFFF:016x}.db"
        )

    def _engine_for(self, key: int) -> AsyncEngine:
        engine = self._engines.get(key)
        if engine is None:
            engine = create_async_engine(
                f"sqlite+aiosqlite:///{self.lock_path(key)}",
                poolclass=NullPool,
                # driver manages no transactions; BEGIN/COMMIT below are ours
                isolation_level="AUTOCOMMIT",
                connect_args={"timeout": self.timeout},
            )
            self._engines[key] = engine
        return engine

    async def with_exclusive_delay(self, key: int, delay_seconds: float) -> None:
        async with self._engine_for(key).connect() as conn:
            await conn.exec_driver_sql("BEGIN IMMEDIATE")
            try:
                await asyncio.sleep(delay_seconds)
            finally:
                await conn.exec_driver_sql("COMMIT")

    async def dispose(self) -> None:
        for engine in self._engines.values():
            await engine.dispose()
        self._engines.clear()


class LocalExclusiveDelay:
    """In-process mutex. Only for tests and single-process tooling."""

    def __init__(self) -> None:
        self._locks: dict[int, asyncio.Lock] = {}

    async def with_exclusive_delay(self, key: int, delay_seconds: float) -> None:
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            await asyncio.sleep(delay_seconds)


def sqlite_lock_prefix(engine: AsyncEngine) -> Path:
    database = engine.url.database
    if not database or database == ":memory:":
        # nothing on disk to sit next to; every process still finds the same file
        return Path(tempfile.gettempdir()) / "token_tracker-rategate"
    path = Path(database).resolve()
    return path.with_name(f"{path.stem}-rategate")


def create_exclusive_delay(engine: AsyncEngine) -> ExclusiveDelay:
    dialect = engine.dialect.name
    if dialect == "postgresql":
        return PostgresExclusiveDelay(engine)
    if dialect == "sqlite":
        prefix = sqlite_lock_prefix(engine)
        logger.info("Explorer rate gate uses SQLite lock files at %s-*.db", prefix)
        return SqliteExclusiveDelay(prefix)
    raise ConfigError(f"No cross-process rate gate for database dialect {dialect!r}")


class Pacer:
    """Keeps successive ``wait()`` returns at least ``interval`` apart.

    Only sleeps for whatever part of the interval has not already elapsed
    since the previous ``wait()``.
    """

    def __init__(
        self,
        interval: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.interval = interval
        self._clock = clock
        self._last: float | None = None

    def remaining(self) -> float:
        if self._last is None:
            return 0.0
        return max(0.0, self.interval - (self._clock() - self._last))

    def mark(self) -> None:
        self._last = self._clock()

    async def wait(self) -> None:
        delay = self.remaining()
        if delay > 0:
            await asyncio.sleep(delay)
        self.mark()


class RateGate:
    def __init__(
        self,
        backend: ExclusiveDelay,
        credential: str | None = None,
        rps: int | None = None,
    ) -> None:
        self.backend = backend
        self.key = lock_key_for(credential if credential is not None else settings.upstream_api_key)
        self.interval = 1.0 / max(1, rps if rps is not None else settings.upstream_rps)
        self._fallback = Pacer(self.interval)

    async def acquire_slot(self) -> None:
        """Block until the next explorer call may be issued."""
        try:
            await self.backend.with_exclusive_delay(self.key, self.interval)
        except Exception as exc:
            logger.warning("Shared rate gate unavailable (%s); pacing locally", exc)
            await self._fallback.wait()
            return
        # keep the fallback's clock current in case the shared lock fails later
        self._fallback.mark()
