"""Database utilities for tracking remote synchronization state."""

import logging
import time
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)


class SyncStateDB:
    """
    Persists the content hash last pushed to (or pulled from) the remote store.

    The hash lets the sync engine skip uploads of notes whose rendered bytes have
    not changed since the previous pass. Each note id has at most one row.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path

    async def initialize(self) -> None:
        """Create the schema if it doesn't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS note_sync_state (
                    note_id TEXT PRIMARY KEY,
                    content_hash TEXT NOT NULL,
                    last_synced REAL NOT NULL
                )
                """
            )
            await db.commit()
            logger.debug(f"Sync state database initialized at {self.db_path}")

    async def get_hash(self, note_id: str) -> str | None:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT content_hash FROM note_sync_state WHERE note_id = ?",
                (note_id,),
            ) as cursor:
                row = await cursor.fetchone()
                return row[0] if row else None

    async def set_hash(self, note_id: str, content_hash: str) -> None:
        """Record the hash of the bytes now known to be on the remote."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO note_sync_state (note_id, content_hash, last_synced)
                VALUES (?, ?, ?)
                ON CONFLICT(note_id) DO UPDATE SET
                    content_hash = excluded.content_hash,
                    last_synced = excluded.last_synced
                """,
                (note_id, content_hash, time.time()),
            )
            await db.commit()

    async def delete_hash(self, note_id: str) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM note_sync_state WHERE note_id = ?", (note_id,))
            await db.commit()

    async def get_all(self) -> dict[str, dict]:
        """
        Get the sync state of every tracked note.

        Returns:
            Mapping of note id to ``{"content_hash", "last_synced"}``
        """
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM note_sync_state ORDER BY note_id") as cursor:
                rows = await cursor.fetchall()
                return {
                    row["note_id"]: {
                        "content_hash": row["content_hash"],
                        "last_synced": row["last_synced"],
                    }
                    for row in rows
                }

    async def get_stats(self) -> dict:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT COUNT(*), MAX(last_synced) FROM note_sync_state"
            ) as cursor:
                count, last_synced = await cursor.fetchone()
                return {"total_tracked": count, "last_synced": last_synced}

    async def clear(self) -> None:
        """Forget all hashes so the next pass re-uploads every note."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM note_sync_state")
            await db.commit()
            logger.warning("Cleared all sync state")
