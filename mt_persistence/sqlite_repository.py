"""
SQLite implementation of the job repository.

Uses aiosqlite for async operations. Status transitions are written with a
single conditional UPDATE so concurrent handlers for the same job cannot
both win.
"""

import json
from datetime import datetime
from typing import Any

import aiosqlite

from mt_common.errors import ConflictError, JobNotFoundError
from mt_common.models import (
    APIKey,
    Job,
    JobReport,
    JobUpdate,
    TestResult,
    User,
)
from mt_common.repository import JobRepository

JOB_COLUMNS = (
    "id, owner_id, artifact_ref, context, device_selection, status, "
    "provider_matrix_id, raw_results, report, failure_reason, duration, "
    "created_at, started_at, completed_at"
)


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_job(row: aiosqlite.Row) -> Job:
    raw_results = row["raw_results"]
    report = row["report"]
    return Job(
        id=row["id"],
        owner_id=row["owner_id"],
        artifact_ref=row["artifact_ref"],
        context=row["context"] or "",
        device_selection=json.loads(row["device_selection"]),
        status=row["status"],
        provider_matrix_id=row["provider_matrix_id"],
        raw_results=[TestResult.from_dict(r) for r in json.loads(raw_results)]
        if raw_results is not None
        else None,
        report=JobReport.from_dict(json.loads(report)) if report is not None else None,
        failure_reason=row["failure_reason"],
        duration=row["duration"],
        created_at=_from_iso(row["created_at"]),
        started_at=_from_iso(row["started_at"]),
        completed_at=_from_iso(row["completed_at"]),
    )


def _row_to_user(row: aiosqlite.Row) -> User:
    return User(
        id=row["id"],
        name=row["name"],
        email=row["email"],
        created_at=datetime.fromisoformat(row["created_at"]),
        is_active=bool(row["is_active"]),
    )


def _row_to_api_key(row: aiosqlite.Row) -> APIKey:
    return APIKey(
        id=row["id"],
        user_id=row["user_id"],
        key_hash=row["key_hash"],
        name=row["name"],
        created_at=datetime.fromisoformat(row["created_at"]),
        last_used_at=_from_iso(row["last_used_at"]),
        is_active=bool(row["is_active"]),
    )


class SQLiteJobRepository(JobRepository):
    """
    SQLite-based job storage implementation.

    Uses a single database file with multiple tables:
    - users: Stores user accounts
    - api_keys: Stores API keys (hashed) with foreign key to users
    - jobs: Stores job records; results and reports are JSON columns
    """

    def __init__(self, db_path: str = "mobiletester.db"):
        """
        Initialize the SQLite repository.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create database connection."""
        if self._connection is None:
            self._connection = await aiosqlite.connect(self.db_path)
            self._connection.row_factory = aiosqlite.Row
            await self._connection.execute("PRAGMA foreign_keys = ON")
        return self._connection

    async def initialize(self) -> None:
        """Create database tables if they don't exist."""
        conn = await self._get_connection()

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                email TEXT UNIQUE NOT NULL,
                created_at TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS api_keys (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                key_hash TEXT UNIQUE NOT NULL,
                name TEXT,
                created_at TEXT NOT NULL,
                last_used_at TEXT,
                is_active INTEGER NOT NULL DEFAULT 1,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            )
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_api_keys_key_hash
            ON api_keys(key_hash)
        """)

        # No foreign key on owner_id: owners may come from an external identity provider
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                artifact_ref TEXT NOT NULL,
                context TEXT,
                device_selection TEXT NOT NULL,
                status TEXT NOT NULL,
                provider_matrix_id TEXT,
                raw_results TEXT,
                report TEXT,
                failure_reason TEXT,
                duration INTEGER,
                created_at TEXT,
                started_at TEXT,
                completed_at TEXT
            )
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_owner_status
            ON jobs(owner_id, status)
        """)

        await conn.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def create_job(self, job: Job) -> None:
        conn = await self._get_connection()

        await conn.execute(
            f"""
            INSERT INTO jobs ({JOB_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job.id,
                job.owner_id,
                job.artifact_ref,
                job.context,
                json.dumps(list(job.device_selection)),
                job.status,
                job.provider_matrix_id,
                json.dumps([r.to_dict() for r in job.raw_results])
                if job.raw_results is not None
                else None,
                json.dumps(job.report.to_dict()) if job.report else None,
                job.failure_reason,
                job.duration,
                _to_iso(job.created_at),
                _to_iso(job.started_at),
                _to_iso(job.completed_at),
            ),
        )
        await conn.commit()

    async def get_job(self, job_id: str) -> Job | None:
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)
        )
        row = await cursor.fetchone()

        return _row_to_job(row) if row is not None else None

    async def conditional_update(
        self, job_id: str, expected_status: str, update: JobUpdate
    ) -> None:
        """
        Apply an update only if the job is still in the expected status.

        Write-once columns (provider_matrix_id, started_at) keep their first
        value even if a later update supplies another one.
        """
        conn = await self._get_connection()

        # Build dynamic SQL based on what's being updated
        updates = ["status = ?"]
        params: list[Any] = [update.status]

        if update.provider_matrix_id is not None:
            updates.append("provider_matrix_id = COALESCE(provider_matrix_id, ?)")
            params.append(update.provider_matrix_id)

        if update.started_at is not None:
            updates.append("started_at = COALESCE(started_at, ?)")
            params.append(update.started_at.isoformat())

        if update.raw_results is not None:
            updates.append("raw_results = ?")
            params.append(json.dumps([r.to_dict() for r in update.raw_results]))

        if update.report is not None:
            updates.append("report = ?")
            params.append(json.dumps(update.report.to_dict()))

        if update.failure_reason is not None:
            updates.append("failure_reason = ?")
            params.append(update.failure_reason)

        if update.duration is not None:
            updates.append("duration = ?")
            params.append(update.duration)

        if update.completed_at is not None:
            updates.append("completed_at = ?")
            params.append(update.completed_at.isoformat())

        params.extend([job_id, expected_status])

        sql = f"UPDATE jobs SET {', '.join(updates)} WHERE id = ? AND status = ?"
        cursor = await conn.execute(sql, params)
        await conn.commit()

        if cursor.rowcount == 0:
            current = await self.get_job(job_id)
            if current is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            raise ConflictError(
                f"Job {job_id} is {current.status}, expected {expected_status}"
            )

    async def list_user_jobs(
        self, owner_id: str, status: str | None = None, limit: int | None = None
    ) -> list[Job]:
        conn = await self._get_connection()

        sql = f"SELECT {JOB_COLUMNS} FROM jobs WHERE owner_id = ?"
        params: list[Any] = [owner_id]

        if status is not None:
            sql += " AND status = ?"
            params.append(status)

        sql += " ORDER BY created_at DESC"

        if limit is not None and limit > 0:
            sql += " LIMIT ?"
            params.append(limit)

        cursor = await conn.execute(sql, params)
        rows = await cursor.fetchall()

        return [_row_to_job(row) for row in rows]

    async def list_jobs(self, statuses: tuple[str, ...] | None = None) -> list[Job]:
        conn = await self._get_connection()

        sql = f"SELECT {JOB_COLUMNS} FROM jobs"
        params: list[Any] = []

        if statuses:
            sql += f" WHERE status IN ({', '.join('?' for _ in statuses)})"
            params.extend(statuses)

        sql += " ORDER BY created_at"

        cursor = await conn.execute(sql, params)
        rows = await cursor.fetchall()

        return [_row_to_job(row) for row in rows]

    async def delete_job(self, job_id: str) -> None:
        conn = await self._get_connection()

        cursor = await conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
        await conn.commit()

        if cursor.rowcount == 0:
            raise JobNotFoundError(f"Job {job_id} not found")

    # User management methods

    async def create_user(self, user: User) -> None:
        conn = await self._get_connection()

        await conn.execute(
            """
            INSERT INTO users (id, name, email, created_at, is_active)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                user.id,
                user.name,
                user.email,
                user.created_at.isoformat(),
                1 if user.is_active else 0,
            ),
        )
        await conn.commit()

    async def get_user(self, user_id: str) -> User | None:
        conn = await self._get_connection()

        cursor = await conn.execute(
            "SELECT id, name, email, created_at, is_active FROM users WHERE id = ?",
            (user_id,),
        )
        row = await cursor.fetchone()

        return _row_to_user(row) if row is not None else None

    async def get_user_by_email(self, email: str) -> User | None:
        conn = await self._get_connection()

        cursor = await conn.execute(
            "SELECT id, name, email, created_at, is_active FROM users WHERE email = ?",
            (email,),
        )
        row = await cursor.fetchone()

        return _row_to_user(row) if row is not None else None

    async def list_users(self) -> list[User]:
        conn = await self._get_connection()

        cursor = await conn.execute(
            "SELECT id, name, email, created_at, is_active FROM users ORDER BY created_at DESC"
        )
        rows = await cursor.fetchall()

        return [_row_to_user(row) for row in rows]

    async def update_user_active_status(self, user_id: str, is_active: bool) -> None:
        conn = await self._get_connection()

        await conn.execute(
            "UPDATE users SET is_active = ? WHERE id = ?",
            (1 if is_active else 0, user_id),
        )
        await conn.commit()

    # API key management methods

    async def create_api_key(self, api_key: APIKey) -> None:
        conn = await self._get_connection()

        await conn.execute(
            """
            INSERT INTO api_keys (id, user_id, key_hash, name, created_at, last_used_at, is_active)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                api_key.id,
                api_key.user_id,
                api_key.key_hash,
                api_key.name,
                api_key.created_at.isoformat(),
                _to_iso(api_key.last_used_at),
                1 if api_key.is_active else 0,
            ),
        )
        await conn.commit()

    async def get_api_key_by_hash(self, key_hash: str) -> APIKey | None:
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            SELECT id, user_id, key_hash, name, created_at, last_used_at, is_active
            FROM api_keys
            WHERE key_hash = ?
            """,
            (key_hash,),
        )
        row = await cursor.fetchone()

        return _row_to_api_key(row) if row is not None else None

    async def revoke_api_key(self, key_id: str) -> None:
        conn = await self._get_connection()

        cursor = await conn.execute(
            "UPDATE api_keys SET is_active = 0 WHERE id = ?", (key_id,)
        )
        await conn.commit()

        if cursor.rowcount == 0:
            raise KeyError(key_id)

    async def update_api_key_last_used(self, key_id: str, timestamp: datetime) -> None:
        conn = await self._get_connection()

        await conn.execute(
            "UPDATE api_keys SET last_used_at = ? WHERE id = ?",
            (timestamp.isoformat(), key_id),
        )
        await conn.commit()
