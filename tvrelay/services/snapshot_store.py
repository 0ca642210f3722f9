"""
SQLite persistence for the last good playlist snapshot.
Lets a restarted process serve stale channels while it refreshes.
"""
import aiosqlite
import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Any

from tvrelay.models.channel import PlaylistSnapshot

logger = logging.getLogger(__name__)

SNAPSHOT_KEY = "playlist:snapshot"


class SnapshotStore:
    """Async SQLite key/value store holding the playlist snapshot."""

    # A week: stale channels beat none after a long outage
    SNAPSHOT_TTL_SECONDS = 7 * 24 * 3600

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._ensure_directory()

    def _ensure_directory(self):
        """Create data directory if it doesn't exist."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

    async def initialize(self):
        """Create the cache table if it doesn't exist."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS cache (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    expires_at TIMESTAMP NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            await db.commit()

    async def get(self, key: str) -> Optional[Any]:
        """Get cached value if not expired."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT value FROM cache WHERE key = ? AND expires_at > ?",
                (key, datetime.utcnow().isoformat())
            )
            row = await cursor.fetchone()
            if row:
                return json.loads(row[0])
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int = 3600):
        """Set cached value with TTL."""
        expires_at = datetime.utcnow() + timedelta(seconds=ttl_seconds)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """INSERT OR REPLACE INTO cache (key, value, expires_at)
                   VALUES (?, ?, ?)""",
                (key, json.dumps(value), expires_at.isoformat())
            )
            await db.commit()

    async def load_snapshot(self) -> Optional[PlaylistSnapshot]:
        """Last persisted snapshot, or None if missing or unreadable."""
        try:
            payload = await self.get(SNAPSHOT_KEY)
            if payload is None:
                return None
            return PlaylistSnapshot.from_response(payload)
        except Exception as e:
            logger.warning(f"Could not load persisted playlist snapshot: {e}")
            return None

    async def save_snapshot(self, snapshot: PlaylistSnapshot):
        """Persist a snapshot; failures are logged, never raised."""
        try:
            await self.set(SNAPSHOT_KEY, snapshot.to_response(), ttl_seconds=self.SNAPSHOT_TTL_SECONDS)
            logger.info(f"Persisted playlist snapshot {snapshot.version_tag} ({snapshot.total_channels} channels)")
        except Exception as e:
            logger.warning(f"Could not persist playlist snapshot: {e}")
