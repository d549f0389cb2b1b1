"""
Persistence Layer for magnet-stream
SQLite-based storage for the engine choice and rotated debrid credentials.
"""

import asyncio
import aiosqlite
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from .exceptions import PersistenceError

logger = logging.getLogger(__name__)

ENGINE_KEY = "engine"
ENGINE_INSTANCES_KEY = "engine_instances"
DEBRID_CREDENTIALS_KEY = "debrid_credentials"


@dataclass
class DebridCredentials:
    """OAuth credential set for the debrid service."""
    access_token: str
    refresh_token: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    expires_at: Optional[float] = None

    @property
    def refreshable(self) -> bool:
        return bool(self.refresh_token and self.client_id and self.client_secret)


# SQL Schema
SCHEMA = """
CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at REAL NOT NULL
);
"""


class PersistenceManager:
    """
    Manages settings persistence to SQLite.
    Values are stored as JSON so callers can save any serializable object.
    """

    def __init__(self, db_path: str = "magnet_stream.db"):
        self.db_path = db_path
        self._lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self) -> None:
        """Create database and tables if they don't exist."""
        async with self._lock:
            if self._initialized:
                return

            db_dir = Path(self.db_path).parent
            if db_dir and str(db_dir) != ".":
                db_dir.mkdir(parents=True, exist_ok=True)

            try:
                async with aiosqlite.connect(self.db_path) as db:
                    await db.executescript(SCHEMA)
                    await db.commit()
            except aiosqlite.Error as e:
                raise PersistenceError("Failed to initialize database", details=str(e))

            self._initialized = True
            logger.info(f"Persistence initialized: {self.db_path}")

    async def close(self) -> None:
        """Close the persistence manager."""
        self._initialized = False

    # -------------------------------------------------------------------------
    # Generic settings
    # -------------------------------------------------------------------------

    async def get_setting(self, key: str, default: Any = None) -> Any:
        """Get a setting by key."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT value FROM settings WHERE key = ?", (key,)
            ) as cursor:
                row = await cursor.fetchone()
        if not row:
            return default
        try:
            return json.loads(row[0])
        except ValueError:
            logger.warning(f"Corrupt setting {key}, ignoring stored value")
            return default

    async def set_setting(self, key: str, value: Any) -> None:
        """Save or update a setting."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT OR REPLACE INTO settings (key, value, updated_at) VALUES (?, ?, ?)",
                (key, json.dumps(value), datetime.now().timestamp()),
            )
            await db.commit()

    async def delete_setting(self, key: str) -> None:
        """Delete a setting."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM settings WHERE key = ?", (key,))
            await db.commit()

    async def get_settings(self) -> Dict[str, Any]:
        """Get all settings."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT key, value FROM settings") as cursor:
                rows = await cursor.fetchall()
        result = {}
        for key, value in rows:
            try:
                result[key] = json.loads(value)
            except ValueError:
                continue
        return result

    # -------------------------------------------------------------------------
    # Engine choice
    # -------------------------------------------------------------------------

    async def save_engine_choice(self, engine: str, instances: int) -> None:
        await self.set_setting(ENGINE_KEY, engine)
        await self.set_setting(ENGINE_INSTANCES_KEY, instances)

    async def get_engine_choice(self) -> Optional[tuple]:
        """Persisted (engine, instances), or None if never chosen."""
        engine = await self.get_setting(ENGINE_KEY)
        if engine is None:
            return None
        instances = await self.get_setting(ENGINE_INSTANCES_KEY, 1)
        return engine, instances

    # -------------------------------------------------------------------------
    # Debrid credentials
    # -------------------------------------------------------------------------

    async def save_debrid_credentials(self, credentials: DebridCredentials) -> None:
        """Persist a (possibly rotated) debrid credential set."""
        await self.set_setting(DEBRID_CREDENTIALS_KEY, {
            "access_token": credentials.access_token,
            "refresh_token": credentials.refresh_token,
            "client_id": credentials.client_id,
            "client_secret": credentials.client_secret,
            "expires_at": credentials.expires_at,
        })

    async def get_debrid_credentials(self) -> Optional[DebridCredentials]:
        data = await self.get_setting(DEBRID_CREDENTIALS_KEY)
        if not data or not data.get("access_token"):
            return None
        return DebridCredentials(**data)

    async def clear_debrid_credentials(self) -> None:
        await self.delete_setting(DEBRID_CREDENTIALS_KEY)

    # -------------------------------------------------------------------------
    # Utility Operations
    # -------------------------------------------------------------------------

    async def get_stats(self) -> Dict:
        """Get database statistics."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT COUNT(*) FROM settings") as cursor:
                row = await cursor.fetchone()
        return {"settings": row[0] if row else 0}

    async def vacuum(self) -> None:
        """Optimize the database."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("VACUUM")
