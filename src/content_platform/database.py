# -*- coding: utf-8 -*-
"""
SQLite persistence for content, labels, tracking links and outbound messages.

The ``Database`` class is a thin transactional accessor: generic
``fetch_one``/``fetch_all``/``insert``/``update``/``execute`` helpers over a
single aiosqlite connection. Domain modules own their SQL.
"""
import logging
from pathlib import Path
from typing import Any, Iterable

import aiosqlite

from .errors import DuplicateKeyError, PersistenceError

logger = logging.getLogger(__name__)

# Database schema
SCHEMA = """
CREATE TABLE IF NOT EXISTS recipients (
    id TEXT PRIMARY KEY,
    company_id TEXT NOT NULL DEFAULT 'default',
    email TEXT DEFAULT '',
    first_name TEXT DEFAULT '',
    last_name TEXT DEFAULT '',
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS content (
    id TEXT PRIMARY KEY,
    company_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    content_type TEXT NOT NULL
        CHECK(content_type IN ('scorm', 'html', 'raw_html', 'landing', 'email', 'video')),
    status TEXT NOT NULL DEFAULT 'processing'
        CHECK(status IN ('processing', 'succeeded', 'failed')),

    -- Rendering
    content_url TEXT,
    content_preview TEXT,
    tags TEXT,
    difficulty INTEGER CHECK(difficulty IN (1, 2, 3)),

    -- Email specific
    email_subject TEXT,
    email_from_address TEXT,
    email_body_html TEXT,
    email_attachment_filename TEXT,
    email_attachment_content BLOB,

    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS content_tags (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    content_id TEXT NOT NULL REFERENCES content(id) ON DELETE CASCADE,
    tag_name TEXT NOT NULL,
    tag_type TEXT NOT NULL CHECK(tag_type IN ('interaction-tag', 'phishing-cue')),
    confidence_score REAL NOT NULL DEFAULT 1.0,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(content_id, tag_name, tag_type)
);

CREATE TABLE IF NOT EXISTS tracking_links (
    id TEXT PRIMARY KEY,
    recipient_id TEXT NOT NULL REFERENCES recipients(id),
    content_id TEXT NOT NULL REFERENCES content(id) ON DELETE CASCADE,
    launch_url TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK(status IN ('pending', 'viewed', 'passed', 'failed')),
    score INTEGER,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    viewed_at DATETIME,
    completed_at DATETIME
);

CREATE TABLE IF NOT EXISTS content_interactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tracking_link_id TEXT NOT NULL REFERENCES tracking_links(id) ON DELETE CASCADE,
    tag_name TEXT NOT NULL,
    interaction_type TEXT NOT NULL,
    interaction_value TEXT,
    success INTEGER,
    interaction_data TEXT,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS recipient_tag_scores (
    recipient_id TEXT NOT NULL,
    tag_name TEXT NOT NULL,
    score_count INTEGER NOT NULL DEFAULT 0,
    total_attempts INTEGER NOT NULL DEFAULT 0,
    last_updated DATETIME DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (recipient_id, tag_name)
);

CREATE TABLE IF NOT EXISTS outbound_messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tracking_link_id TEXT NOT NULL REFERENCES tracking_links(id) ON DELETE CASCADE,
    message_data TEXT NOT NULL,
    sent INTEGER NOT NULL DEFAULT 0,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    sent_at DATETIME
);

-- At most one unsent message per tracking link
CREATE UNIQUE INDEX IF NOT EXISTS idx_outbound_unsent
    ON outbound_messages(tracking_link_id) WHERE sent = 0;

CREATE INDEX IF NOT EXISTS idx_content_tags_content ON content_tags(content_id);
CREATE INDEX IF NOT EXISTS idx_tracking_links_content ON tracking_links(content_id);
CREATE INDEX IF NOT EXISTS idx_interactions_link ON content_interactions(tracking_link_id);
"""


class Database:
    """Async SQLite accessor. One instance per process, passed explicitly."""

    def __init__(self, db_path: Path | str):
        self._db_path = Path(db_path)
        self._db: aiosqlite.Connection | None = None
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        """Check if database is initialized."""
        return self._initialized

    @property
    def path(self) -> Path:
        return self._db_path

    async def initialize(self) -> None:
        """Open the connection and create the schema if needed."""
        if self._initialized:
            return

        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"Connecting to database: {self._db_path}")
        self._db = await aiosqlite.connect(self._db_path)

        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")

        await self._db.executescript(SCHEMA)
        await self._db.commit()
        self._initialized = True
        logger.info("Database initialized")

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None
            self._initialized = False
            logger.info("Database connection closed")

    def _connection(self) -> aiosqlite.Connection:
        if not self._db:
            raise RuntimeError("Database not initialized")
        return self._db

    async def fetch_one(self, query: str, params: Iterable[Any] = ()) -> dict[str, Any] | None:
        """Run a SELECT and return the first row as a dict, or None."""
        db = self._connection()
        try:
            async with db.execute(query, tuple(params)) as cursor:
                row = await cursor.fetchone()
                if row is None:
                    return None
                columns = [desc[0] for desc in cursor.description]
                return dict(zip(columns, row, strict=True))
        except aiosqlite.Error as e:
            raise PersistenceError(str(e)) from e

    async def fetch_all(self, query: str, params: Iterable[Any] = ()) -> list[dict[str, Any]]:
        """Run a SELECT and return every row as a dict."""
        db = self._connection()
        try:
            async with db.execute(query, tuple(params)) as cursor:
                rows = await cursor.fetchall()
                columns = [desc[0] for desc in cursor.description]
                return [dict(zip(columns, row, strict=True)) for row in rows]
        except aiosqlite.Error as e:
            raise PersistenceError(str(e)) from e

    async def insert(self, table: str, data: dict[str, Any]) -> int | None:
        """
        Insert one row.

        Returns:
            The rowid of the new row (meaningful for INTEGER PRIMARY KEY tables)

        Raises:
            DuplicateKeyError: a UNIQUE or PRIMARY KEY constraint was violated
            PersistenceError: any other database failure
        """
        columns = list(data.keys())
        placeholders = ", ".join(["?"] * len(columns))
        query = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"

        db = self._connection()
        try:
            cursor = await db.execute(query, list(data.values()))
            await db.commit()
        except aiosqlite.IntegrityError as e:
            await db.rollback()
            if "UNIQUE constraint failed" in str(e):
                raise DuplicateKeyError(f"Duplicate row in {table}: {e}") from e
            raise PersistenceError(f"Insert into {table} failed: {e}") from e
        except aiosqlite.Error as e:
            await db.rollback()
            raise PersistenceError(f"Insert into {table} failed: {e}") from e

        return cursor.lastrowid

    async def update(
            self,
            table: str,
            data: dict[str, Any],
            where: str,
            where_params: Iterable[Any] = (),
    ) -> int:
        """
        Update rows matching ``where``.

        Returns:
            Number of rows changed
        """
        sets = ", ".join(f"{column} = ?" for column in data)
        query = f"UPDATE {table} SET {sets} WHERE {where}"
        return await self.execute(query, [*data.values(), *where_params])

    async def execute(self, query: str, params: Iterable[Any] = ()) -> int:
        """Execute a write statement, commit, and return the affected row count."""
        db = self._connection()
        try:
            cursor = await db.execute(query, tuple(params))
            await db.commit()
        except aiosqlite.IntegrityError as e:
            await db.rollback()
            if "UNIQUE constraint failed" in str(e):
                raise DuplicateKeyError(str(e)) from e
            raise PersistenceError(str(e)) from e
        except aiosqlite.Error as e:
            await db.rollback()
            raise PersistenceError(str(e)) from e
        return cursor.rowcount
