"""
Bounded durable FIFO buffer using async SQLite for readings awaiting upload.

Readings are written to the spool as soon as they are decoded. They leave it
only when the forwarder acknowledges them after a successful write, or when
the spool is full and the oldest reading is evicted to make room. The spool
survives process restarts because it is backed by a SQLite database file on
disk in WAL mode; ``:memory:`` gives a non-durable spool with the same
behaviour.

Operations:
- push(reading): INSERT a reading, evicting the oldest row when full.
- peek_batch(n): SELECT up to n oldest entries with their sequence numbers.
- ack(seqs): DELETE only the specified rows (confirmed by the sink).
- count(): number of pending readings.
- dropped: number of readings evicted under capacity pressure.

Sequence numbers are AUTOINCREMENT rowids, so they are strictly increasing
and never reused, even across restarts. New rows are appended and acked rows
are deleted in bulk; no row is rewritten in place.

An internal asyncio.Lock serialises every operation so the single producer
(device link) and single consumer (forwarder) can share one instance.

CHANGELOG:
- 2026-10-19: Add capacity bound with oldest-first eviction
- 2026-10-19: Store Reading JSON and return BufferedEntry models
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import aiosqlite

from aero_bridge.src.models import BufferedEntry, Reading

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"

_CREATE_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS spool (
    rowid INTEGER PRIMARY KEY AUTOINCREMENT,
    payload TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

_INSERT_SQL = """\
INSERT INTO spool (payload) VALUES (?);
"""

_PEEK_SQL = """\
SELECT rowid, payload
FROM spool
ORDER BY rowid ASC
LIMIT ?;
"""

_EVICT_OLDEST_SQL = """\
DELETE FROM spool
WHERE rowid IN (SELECT rowid FROM spool ORDER BY rowid ASC LIMIT ?);
"""

_COUNT_SQL = "SELECT COUNT(*) FROM spool;"


class Spool:
    """Bounded durable async FIFO queue of readings backed by SQLite.

    Args:
        path: Filesystem path for the SQLite database file, or ``":memory:"``.
              Accepts ``str`` or ``pathlib.Path``.
        capacity: Maximum number of pending readings. When full, :meth:`push`
              evicts the oldest entry before inserting.

    Raises:
        ValueError: If *capacity* is less than 1.

    Usage::

        async with Spool(path="/data/spool.db", capacity=1000) as spool:
            await spool.push(reading)
            entries = await spool.peek_batch(100)
            await spool.ack([entry.seq for entry in entries])
    """

    def __init__(self, path: str | Path, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"Spool capacity must be >= 1 (got {capacity})")
        self._path = str(path)
        self._capacity = capacity
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._count = 0
        self._dropped = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def dropped(self) -> int:
        """Readings evicted under capacity pressure since this spool was opened."""
        return self._dropped

    @property
    def durable(self) -> bool:
        return self._path != MEMORY_PATH

    async def open(self) -> None:
        """Open the SQLite connection and initialize the schema.

        Sets WAL journal mode for crash durability. If a persisted spool holds
        more rows than the configured capacity, the oldest surplus rows are
        evicted and counted as dropped.
        """
        self._db = await aiosqlite.connect(self._path)
        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.execute(_CREATE_TABLE_SQL)
        await self._db.commit()

        cursor = await self._db.execute(_COUNT_SQL)
        row = await cursor.fetchone()
        self._count = row[0]

        surplus = self._count - self._capacity
        if surplus > 0:
            logger.warning(
                "Spool holds %d readings but capacity is %d, evicting %d oldest",
                self._count,
                self._capacity,
                surplus,
            )
            await self._evict(surplus)
            await self._db.commit()
        elif self._count:
            logger.info("Spool reopened with %d pending readings", self._count)

    async def close(self) -> None:
        """Close the underlying SQLite connection.

        After calling close, no further operations should be performed
        on this Spool instance.
        """
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> Spool:
        """Enter async context manager: open the database."""
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Exit async context manager: close the database."""
        await self.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def push(self, reading: Reading) -> int:
        """Append a reading, evicting the oldest entry first if the spool is full.

        Eviction is not an error: it increments :attr:`dropped` and logs a
        warning.

        Args:
            reading: The reading to buffer.

        Returns:
            The sequence number assigned to the reading.
        """
        assert self._db is not None, "Spool not opened. Call open() or use async with."
        async with self._lock:
            if self._count >= self._capacity:
                await self._evict(self._count - self._capacity + 1)
            cursor = await self._db.execute(_INSERT_SQL, (reading.model_dump_json(),))
            await self._db.commit()
            self._count += 1
            return cursor.lastrowid

    async def peek_batch(self, max_count: int) -> list[BufferedEntry]:
        """Return up to *max_count* oldest pending entries without removing them.

        Results are ordered by sequence number (FIFO). Calling this again
        without an intervening :meth:`ack` returns the same entries.

        Args:
            max_count: Maximum number of entries to return.

        Returns:
            List of :class:`BufferedEntry`. Empty when the spool has no
            pending rows or max_count < 1.
        """
        assert self._db is not None, "Spool not opened. Call open() or use async with."
        if max_count < 1:
            return []
        async with self._lock:
            cursor = await self._db.execute(_PEEK_SQL, (max_count,))
            rows = await cursor.fetchall()
        return [
            BufferedEntry(seq=row[0], reading=Reading.model_validate_json(row[1]))
            for row in rows
        ]

    async def ack(self, seqs: list[int]) -> None:
        """Delete acknowledged entries from the spool.

        Only rows whose sequence number appears in *seqs* are removed.
        Unknown sequence numbers (already acked or evicted) are ignored.
        An empty list is a no-op.

        Args:
            seqs: Sequence numbers to delete.
        """
        assert self._db is not None, "Spool not opened. Call open() or use async with."
        if not seqs:
            return
        placeholders = ",".join("?" for _ in seqs)
        sql = f"DELETE FROM spool WHERE rowid IN ({placeholders});"  # noqa: S608
        async with self._lock:
            cursor = await self._db.execute(sql, list(seqs))
            await self._db.commit()
            self._count -= cursor.rowcount

    async def count(self) -> int:
        """Return the number of pending (unacknowledged) readings."""
        assert self._db is not None, "Spool not opened. Call open() or use async with."
        async with self._lock:
            return self._count

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _evict(self, n: int) -> None:
        """Delete the *n* oldest rows. Caller holds the lock (or is in open())."""
        assert self._db is not None
        cursor = await self._db.execute(_EVICT_OLDEST_SQL, (n,))
        evicted = cursor.rowcount
        self._count -= evicted
        self._dropped += evicted
        logger.warning(
            "Spool full (capacity=%d), evicted %d oldest reading(s), dropped total=%d",
            self._capacity,
            evicted,
            self._dropped,
        )
