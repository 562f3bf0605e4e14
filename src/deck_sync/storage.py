"""
ConfigurationStorage - SQLite persistence for grid configurations.

Stores:
- Configurations (grid size, metadata, buttons as a JSON document)
- Settings (the process-wide "current configuration" pointer)

The store loads everything once at startup and writes through on every
mutation; nothing is read back from disk afterwards.
"""

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from .models import Configuration

logger = logging.getLogger(__name__)

CURRENT_CONFIGURATION_KEY = "current_configuration_id"


class ConfigurationStorage:
    """
    SQLite storage for configurations.

    Tables:
    - configurations: One row per configuration, buttons serialized as JSON
    - settings: Key/value pairs
    """

    def __init__(self, db_path: str):
        """
        Initialize storage.

        Args:
            db_path: Path to SQLite database file (or ":memory:")
        """
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._writes = 0

        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    @property
    def db_path(self) -> str:
        return self._db_path

    async def initialize(self) -> None:
        """Open the database connection and create tables."""
        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row

        await self._db.executescript("""
            CREATE TABLE IF NOT EXISTS configurations (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                grid_rows INTEGER NOT NULL,
                grid_cols INTEGER NOT NULL,
                is_default INTEGER NOT NULL DEFAULT 0,
                buttons TEXT NOT NULL,  -- JSON array
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT
            );
        """)
        await self._db.commit()
        logger.info(f"Database initialized: {self._db_path}")

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    def _require_db(self) -> aiosqlite.Connection:
        if not self._db:
            raise RuntimeError("Database not initialized")
        return self._db

    async def load_configurations(self) -> list[Configuration]:
        """Load every stored configuration in creation order."""
        db = self._require_db()
        cursor = await db.execute("SELECT * FROM configurations ORDER BY created_at, id")
        rows = await cursor.fetchall()

        configurations = []
        for row in rows:
            configurations.append(
                Configuration.model_validate(
                    {
                        "id": row["id"],
                        "name": row["name"],
                        "description": row["description"],
                        "grid": {"rows": row["grid_rows"], "cols": row["grid_cols"]},
                        "buttons": json.loads(row["buttons"]),
                        "is_default": bool(row["is_default"]),
                        "updated_at": row["updated_at"],
                    }
                )
            )
        return configurations

    async def save_configuration(self, configuration: Configuration) -> None:
        """Insert or replace a configuration."""
        db = self._require_db()
        buttons_json = json.dumps(
            [button.model_dump(mode="json") for button in configuration.buttons]
        )
        now = datetime.now(UTC).isoformat()

        await db.execute(
            """
            INSERT INTO configurations (
                id, name, description, grid_rows, grid_cols,
                is_default, buttons, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                description = excluded.description,
                grid_rows = excluded.grid_rows,
                grid_cols = excluded.grid_cols,
                is_default = excluded.is_default,
                buttons = excluded.buttons,
                updated_at = excluded.updated_at
            """,
            (
                configuration.id,
                configuration.name,
                configuration.description,
                configuration.grid.rows,
                configuration.grid.cols,
                1 if configuration.is_default else 0,
                buttons_json,
                now,
                configuration.updated_at.isoformat(),
            ),
        )
        await db.commit()
        self._writes += 1

    async def delete_configuration(self, configuration_id: str) -> None:
        db = self._require_db()
        await db.execute("DELETE FROM configurations WHERE id = ?", (configuration_id,))
        await db.commit()
        self._writes += 1

    async def get_setting(self, key: str) -> str | None:
        db = self._require_db()
        cursor = await db.execute("SELECT value FROM settings WHERE key = ?", (key,))
        row = await cursor.fetchone()
        return row["value"] if row else None

    async def set_setting(self, key: str, value: str) -> None:
        db = self._require_db()
        await db.execute(
            """
            INSERT INTO settings (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, value),
        )
        await db.commit()
        self._writes += 1

    async def get_stats(self) -> dict[str, Any]:
        """Get storage statistics."""
        if not self._db:
            return {"configurations": 0, "writes": self._writes}
        cursor = await self._db.execute("SELECT COUNT(*) AS n FROM configurations")
        row = await cursor.fetchone()
        return {"configurations": row["n"], "writes": self._writes}
