"""SQLite persistence for session records with optimistic concurrency."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, List, Mapping, Optional

import aiosqlite

from ..errors import SessionExistsError, StorageError, VersionConflictError
from .models import Session, utc_now

DEFAULT_DB_PATH = Path("data/sessions.sqlite")
LOGGER = logging.getLogger(__name__)

_COLUMNS = (
    "project_id",
    "feature_id",
    "title",
    "session_dir",
    "status",
    "current_stage",
    "queue_position",
    "plan_validation_attempts",
    "plan_validation_context",
    "backout_reason",
    "backout_timestamp",
    "data_version",
    "created_at",
    "updated_at",
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    project_id TEXT NOT NULL,
    feature_id TEXT NOT NULL,
    title TEXT NOT NULL,
    session_dir TEXT NOT NULL,
    status TEXT NOT NULL,
    current_stage INTEGER NOT NULL,
    queue_position INTEGER,
    plan_validation_attempts INTEGER NOT NULL DEFAULT 0,
    plan_validation_context TEXT,
    backout_reason TEXT,
    backout_timestamp TEXT,
    data_version INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (project_id, feature_id)
);
CREATE INDEX IF NOT EXISTS idx_sessions_project_status
    ON sessions(project_id, status);
"""


def _as_iso(timestamp: Optional[datetime]) -> Optional[str]:
    """Serialise a timestamp to a timezone-aware ISO 8601 string."""
    if timestamp is None:
        return None
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat()


def _row_values(session: Session) -> tuple[Any, ...]:
    return (
        session.project_id,
        session.feature_id,
        session.title,
        session.session_dir,
        session.status.value,
        session.current_stage,
        session.queue_position,
        session.plan_validation_attempts,
        session.plan_validation_context,
        session.backout_reason.value if session.backout_reason else None,
        _as_iso(session.backout_timestamp),
        session.data_version,
        _as_iso(session.created_at),
        _as_iso(session.updated_at),
    )


def _session_from_row(row: Mapping[str, Any]) -> Session:
    return Session.model_validate({column: row[column] for column in _COLUMNS})


class SessionTransaction:
    """Read-modify-write operations sharing one ``BEGIN IMMEDIATE`` transaction."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def get(self, project_id: str, feature_id: str) -> Optional[Session]:
        cursor = await self._db.execute(
            f"SELECT {', '.join(_COLUMNS)} FROM sessions WHERE project_id=? AND feature_id=?",
            (project_id, feature_id),
        )
        row = await cursor.fetchone()
        await cursor.close()
        return _session_from_row(row) if row else None

    async def list_project(self, project_id: str) -> List[Session]:
        cursor = await self._db.execute(
            f"SELECT {', '.join(_COLUMNS)} FROM sessions WHERE project_id=? "
            "ORDER BY queue_position IS NULL, queue_position, created_at",
            (project_id,),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [_session_from_row(row) for row in rows]

    async def insert(self, session: Session) -> Session:
        placeholders = ", ".join("?" for _ in _COLUMNS)
        try:
            await self._db.execute(
                f"INSERT INTO sessions ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                _row_values(session),
            )
        except aiosqlite.IntegrityError as error:
            raise SessionExistsError(f"Session already exists: {session.key}") from error
        return session

    async def update(self, session: Session, expected_version: int) -> Session:
        """Write ``session`` only if the stored version is still ``expected_version``.

        Returns the stored copy with ``data_version`` bumped by one.
        """

        updated = session.model_copy(
            update={"data_version": expected_version + 1, "updated_at": utc_now()}
        )
        assignments = ", ".join(f"{column}=?" for column in _COLUMNS)
        cursor = await self._db.execute(
            f"UPDATE sessions SET {assignments} WHERE project_id=? AND feature_id=? AND data_version=?",
            (*_row_values(updated), session.project_id, session.feature_id, expected_version),
        )
        changed = cursor.rowcount
        await cursor.close()
        if changed != 1:
            current = await self.get(session.project_id, session.feature_id)
            actual = current.data_version if current else 0
            raise VersionConflictError(session.key, expected_version, actual)
        return updated


class SessionStore:
    """SQLite-backed session records for the stage machine."""

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH) -> None:
        self.db_path = Path(db_path)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "SessionStore":
        paths = config.get("paths") or {}
        db_path = paths.get("db_path")
        if db_path:
            return cls(Path(db_path))

        data_path = paths.get("data") or "data"
        return cls(Path(data_path) / "sessions.sqlite")

    async def init(self) -> None:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise StorageError(f"Unable to create database directory for {self.db_path}: {error}") from error
        async with aiosqlite.connect(self.db_path) as db:
            await db.executescript(_SCHEMA)
            await db.commit()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SessionTransaction]:
        """Serialise a read-modify-write against the session table.

        ``BEGIN IMMEDIATE`` takes the write lock up front so two writers can
        never both read the same queue state before updating it.
        """

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield SessionTransaction(db)
            except BaseException:
                await db.rollback()
                raise
            await db.commit()

    async def get(self, project_id: str, feature_id: str) -> Optional[Session]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            return await SessionTransaction(db).get(project_id, feature_id)

    async def list_project(self, project_id: str) -> List[Session]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            return await SessionTransaction(db).list_project(project_id)


__all__ = ["DEFAULT_DB_PATH", "SessionStore", "SessionTransaction"]
