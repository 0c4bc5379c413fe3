"""PostgreSQL-backed storage with automatic table migration.

Terms:
- Migration: creating tables/indexes before normal reads/writes.
- JSONB: PostgreSQL JSON type used for logs, model lists, and result payloads.
- Row lock: `SELECT ... FOR UPDATE` keeps concurrent writers on the same row in order.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

from ..errors import AccountNotFound, PersistenceError
from ..models import (
    AccountRecord,
    LedgerEntry,
    LedgerEntryType,
    RunPurpose,
    RunRecord,
    RunStatus,
    TaskRecord,
    TaskStatus,
)
from .base import apply_run_update, apply_task_update

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS accounts (
        user_id TEXT PRIMARY KEY,
        points INTEGER NOT NULL DEFAULT 0,
        plan TEXT NOT NULL DEFAULT 'FREE',
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ledger_entries (
        entry_id UUID PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES accounts(user_id),
        amount INTEGER NOT NULL,
        balance INTEGER NOT NULL,
        entry_type TEXT NOT NULL
            CHECK (entry_type IN ('CONSUME', 'RECHARGE', 'REFUND', 'ADMIN_ADD', 'ADMIN_SUB')),
        description TEXT NOT NULL,
        operator_id TEXT,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_ledger_entries_user_created
    ON ledger_entries(user_id, created_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        task_id UUID PRIMARY KEY,
        owner_id TEXT NOT NULL REFERENCES accounts(user_id),
        prompt TEXT NOT NULL,
        mode TEXT NOT NULL CHECK (mode IN ('quick', 'deep')),
        selected_models JSONB NOT NULL DEFAULT '[]'::jsonb,
        status TEXT NOT NULL CHECK (status IN ('PENDING', 'RUNNING', 'COMPLETED', 'FAILED')),
        progress INTEGER NOT NULL DEFAULT 0 CHECK (progress BETWEEN 0 AND 100),
        logs JSONB NOT NULL DEFAULT '[]'::jsonb,
        cost_units INTEGER NOT NULL DEFAULT 0,
        quota_units INTEGER NOT NULL DEFAULT 0,
        points_units INTEGER NOT NULL DEFAULT 0,
        usage_date TEXT NOT NULL,
        result_json JSONB,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_tasks_owner_usage_date
    ON tasks(owner_id, usage_date)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_tasks_status
    ON tasks(status)
    """,
    """
    CREATE TABLE IF NOT EXISTS task_runs (
        run_id UUID PRIMARY KEY,
        task_id UUID NOT NULL REFERENCES tasks(task_id) ON DELETE CASCADE,
        model_key TEXT NOT NULL,
        provider TEXT NOT NULL,
        model_name TEXT NOT NULL,
        purpose TEXT NOT NULL CHECK (purpose IN ('MODEL', 'ANALYSIS')),
        status TEXT NOT NULL CHECK (status IN ('PENDING', 'RUNNING', 'SUCCEEDED', 'FAILED')),
        prompt TEXT NOT NULL,
        response_text TEXT,
        response_json JSONB,
        error TEXT,
        started_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL,
        CHECK (status <> 'FAILED' OR error IS NOT NULL)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_task_runs_task_id
    ON task_runs(task_id, created_at)
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_task_runs_model
    ON task_runs(task_id, model_key) WHERE purpose = 'MODEL'
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_task_runs_analysis
    ON task_runs(task_id) WHERE purpose = 'ANALYSIS'
    """,
)


class _PostgresTransaction:
    def __init__(self, storage: PostgresStorage, conn: Any) -> None:
        self._storage = storage
        self._conn = conn

    def lock_account(self, user_id: str) -> AccountRecord | None:
        row = self._conn.execute(
            "SELECT * FROM accounts WHERE user_id = %s FOR UPDATE",
            (user_id,),
        ).fetchone()
        return self._storage._row_to_account(row) if row else None

    def insert_account(self, user_id: str, *, plan: str = "FREE") -> AccountRecord:
        self._conn.execute(
            """
            INSERT INTO accounts (user_id, points, plan, created_at)
            VALUES (%s, 0, %s, %s)
            ON CONFLICT (user_id) DO NOTHING
            """,
            (user_id, plan, datetime.now(tz=UTC)),
        )
        row = self._conn.execute(
            "SELECT * FROM accounts WHERE user_id = %s FOR UPDATE",
            (user_id,),
        ).fetchone()
        return self._storage._row_to_account(row)

    def set_points(self, user_id: str, points: int) -> None:
        cursor = self._conn.execute(
            "UPDATE accounts SET points = %s WHERE user_id = %s",
            (points, user_id),
        )
        if cursor.rowcount == 0:
            raise AccountNotFound(user_id)

    def insert_ledger_entry(
        self,
        *,
        user_id: str,
        amount: int,
        balance: int,
        entry_type: LedgerEntryType,
        description: str,
        operator_id: str | None,
    ) -> LedgerEntry:
        row = self._conn.execute(
            """
            INSERT INTO ledger_entries (
                entry_id,
                user_id,
                amount,
                balance,
                entry_type,
                description,
                operator_id,
                created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                uuid.uuid4(),
                user_id,
                amount,
                balance,
                entry_type,
                description,
                operator_id,
                datetime.now(tz=UTC),
            ),
        ).fetchone()
        return self._storage._row_to_ledger_entry(row)

    def sum_quota_units(self, user_id: str, usage_date: str) -> int:
        row = self._conn.execute(
            """
            SELECT COALESCE(SUM(quota_units), 0) AS used
            FROM tasks
            WHERE owner_id = %s AND usage_date = %s
            """,
            (user_id, usage_date),
        ).fetchone()
        return int(row["used"]) if row else 0

    def insert_task(
        self,
        *,
        owner_id: str,
        prompt: str,
        mode: str,
        selected_models: list[str],
        cost_units: int,
        quota_units: int,
        points_units: int,
        usage_date: str,
        logs: list[str],
    ) -> TaskRecord:
        now = datetime.now(tz=UTC)
        json_wrapper = self._storage._json_wrapper
        row = self._conn.execute(
            """
            INSERT INTO tasks (
                task_id,
                owner_id,
                prompt,
                mode,
                selected_models,
                status,
                progress,
                logs,
                cost_units,
                quota_units,
                points_units,
                usage_date,
                result_json,
                created_at,
                updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                uuid.uuid4(),
                owner_id,
                prompt,
                mode,
                json_wrapper(list(selected_models)),
                "PENDING",
                0,
                json_wrapper(list(logs)),
                cost_units,
                quota_units,
                points_units,
                usage_date,
                None,
                now,
                now,
            ),
        ).fetchone()
        return self._storage._row_to_task(row)


class PostgresStorage:
    """Persist accounts, ledger entries, tasks, and runs in PostgreSQL."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("GEOSCAN_DATABASE_URL is required")
        self.database_url = database_url
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        with self._session() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)

    @contextmanager
    def transaction(self) -> Iterator[_PostgresTransaction]:
        with self._session() as conn:
            yield _PostgresTransaction(self, conn)

    def create_account(self, user_id: str, *, plan: str = "FREE") -> AccountRecord:
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO accounts (user_id, points, plan, created_at)
                VALUES (%s, 0, %s, %s)
                ON CONFLICT (user_id) DO NOTHING
                """,
                (user_id, plan, datetime.now(tz=UTC)),
            )
            row = conn.execute("SELECT * FROM accounts WHERE user_id = %s", (user_id,)).fetchone()
        return self._row_to_account(row)

    def get_account(self, user_id: str) -> AccountRecord | None:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM accounts WHERE user_id = %s", (user_id,)).fetchone()
        return self._row_to_account(row) if row else None

    def list_ledger_entries(self, user_id: str, *, limit: int | None = None) -> list[LedgerEntry]:
        query = "SELECT * FROM ledger_entries WHERE user_id = %s ORDER BY created_at DESC"
        params: tuple[Any, ...] = (user_id,)
        if limit is not None:
            query += " LIMIT %s"
            params = (user_id, limit)
        with self._session() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_ledger_entry(row) for row in rows]

    def get_task(self, task_id: str) -> TaskRecord | None:
        key = _parse_uuid(task_id)
        if key is None:
            return None
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM tasks WHERE task_id = %s",
                (key,),
            ).fetchone()
        return self._row_to_task(row) if row else None

    def list_tasks(self, owner_id: str) -> list[TaskRecord]:
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM tasks WHERE owner_id = %s ORDER BY created_at DESC",
                (owner_id,),
            ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def update_task(
        self,
        task_id: str,
        *,
        status: TaskStatus | None = None,
        progress: int | None = None,
        log: str | None = None,
        result: dict[str, Any] | None = None,
    ) -> TaskRecord:
        key = _parse_uuid(task_id)
        if key is None:
            raise KeyError(f"Task {task_id} does not exist")
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM tasks WHERE task_id = %s FOR UPDATE",
                (key,),
            ).fetchone()
            if row is None:
                raise KeyError(f"Task {task_id} does not exist")
            updated = apply_task_update(
                self._row_to_task(row),
                status=status,
                progress=progress,
                log=log,
                result=result,
                now=datetime.now(tz=UTC),
            )
            conn.execute(
                """
                UPDATE tasks
                SET status = %s,
                    progress = %s,
                    logs = %s,
                    result_json = %s,
                    updated_at = %s
                WHERE task_id = %s
                """,
                (
                    updated.status,
                    updated.progress,
                    self._json_wrapper(updated.logs),
                    self._json_wrapper(updated.result) if updated.result is not None else None,
                    updated.updated_at,
                    key,
                ),
            )
        return updated

    def create_run(
        self,
        *,
        task_id: str,
        model_key: str,
        provider: str,
        model_name: str,
        purpose: RunPurpose,
        status: RunStatus,
        prompt: str,
        error: str | None = None,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
    ) -> RunRecord:
        if status == "FAILED" and not error:
            raise ValueError("A FAILED run requires an error message")
        with self._session() as conn:
            row = conn.execute(
                """
                INSERT INTO task_runs (
                    run_id,
                    task_id,
                    model_key,
                    provider,
                    model_name,
                    purpose,
                    status,
                    prompt,
                    error,
                    started_at,
                    completed_at,
                    created_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    uuid.uuid4(),
                    task_id,
                    model_key,
                    provider,
                    model_name,
                    purpose,
                    status,
                    prompt,
                    error,
                    started_at,
                    completed_at,
                    datetime.now(tz=UTC),
                ),
            ).fetchone()
        return self._row_to_run(row)

    def update_run(
        self,
        run_id: str,
        *,
        status: RunStatus,
        response_text: str | None = None,
        response_json: dict[str, Any] | None = None,
        error: str | None = None,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
    ) -> RunRecord:
        key = _parse_uuid(run_id)
        if key is None:
            raise KeyError(f"Run {run_id} does not exist")
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM task_runs WHERE run_id = %s FOR UPDATE",
                (key,),
            ).fetchone()
            if row is None:
                raise KeyError(f"Run {run_id} does not exist")
            updated = apply_run_update(
                self._row_to_run(row),
                status=status,
                response_text=response_text,
                response_json=response_json,
                error=error,
                started_at=started_at,
                completed_at=completed_at,
            )
            conn.execute(
                """
                UPDATE task_runs
                SET status = %s,
                    response_text = %s,
                    response_json = %s,
                    error = %s,
                    started_at = %s,
                    completed_at = %s
                WHERE run_id = %s
                """,
                (
                    updated.status,
                    updated.response_text,
                    (
                        self._json_wrapper(updated.response_json)
                        if updated.response_json is not None
                        else None
                    ),
                    updated.error,
                    updated.started_at,
                    updated.completed_at,
                    key,
                ),
            )
        return updated

    def list_runs(self, task_id: str) -> list[RunRecord]:
        key = _parse_uuid(task_id)
        if key is None:
            return []
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM task_runs WHERE task_id = %s ORDER BY created_at ASC",
                (key,),
            ).fetchall()
        return [self._row_to_run(row) for row in rows]

    @contextmanager
    def _session(self) -> Iterator[Any]:
        """Yield a connection whose work commits on clean exit and rolls back on error.

        Driver errors surface as PersistenceError; domain errors raised inside
        the block propagate unchanged after the rollback.
        """
        try:
            with self._connect() as conn:
                yield conn
        except self._psycopg.Error as exc:
            raise PersistenceError(f"Database operation failed: {exc}") from exc

    def _connect(self) -> Any:
        """Open a psycopg connection that yields dict-like rows."""
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Jsonb
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Jsonb

    @staticmethod
    def _parse_json(raw: Any) -> Any:
        if isinstance(raw, str):
            return json.loads(raw)
        return raw

    @classmethod
    def _parse_json_optional(cls, raw: Any) -> dict[str, Any] | None:
        if raw is None:
            return None
        parsed = cls._parse_json(raw)
        if isinstance(parsed, dict):
            return parsed
        return None

    @classmethod
    def _parse_string_list(cls, raw: Any) -> list[str]:
        parsed = cls._parse_json(raw) if raw is not None else []
        if not isinstance(parsed, list):
            return []
        return [str(item) for item in parsed]

    @staticmethod
    def _parse_datetime(raw: Any) -> datetime | None:
        if raw is None:
            return None
        if isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @classmethod
    def _row_to_account(cls, row: Any) -> AccountRecord:
        return AccountRecord(
            user_id=str(row["user_id"]),
            points=int(row["points"]),
            plan=row["plan"],
            created_at=cls._parse_datetime(row["created_at"]),
        )

    @classmethod
    def _row_to_ledger_entry(cls, row: Any) -> LedgerEntry:
        return LedgerEntry(
            entry_id=str(row["entry_id"]),
            user_id=str(row["user_id"]),
            amount=int(row["amount"]),
            balance=int(row["balance"]),
            entry_type=row["entry_type"],
            description=row["description"],
            operator_id=row.get("operator_id"),
            created_at=cls._parse_datetime(row["created_at"]),
        )

    @classmethod
    def _row_to_task(cls, row: Any) -> TaskRecord:
        return TaskRecord(
            task_id=str(row["task_id"]),
            owner_id=str(row["owner_id"]),
            prompt=row["prompt"],
            mode=row["mode"],
            selected_models=cls._parse_string_list(row["selected_models"]),
            status=row["status"],
            progress=int(row["progress"]),
            logs=cls._parse_string_list(row["logs"]),
            cost_units=int(row["cost_units"]),
            quota_units=int(row["quota_units"]),
            points_units=int(row["points_units"]),
            usage_date=row["usage_date"],
            result=cls._parse_json_optional(row["result_json"]),
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )

    @classmethod
    def _row_to_run(cls, row: Any) -> RunRecord:
        return RunRecord(
            run_id=str(row["run_id"]),
            task_id=str(row["task_id"]),
            model_key=row["model_key"],
            provider=row["provider"],
            model_name=row["model_name"],
            purpose=row["purpose"],
            status=row["status"],
            prompt=row["prompt"],
            response_text=row["response_text"],
            response_json=cls._parse_json_optional(row["response_json"]),
            error=row["error"],
            started_at=cls._parse_datetime(row["started_at"]),
            completed_at=cls._parse_datetime(row["completed_at"]),
            created_at=cls._parse_datetime(row["created_at"]),
        )


def _parse_uuid(value: str) -> uuid.UUID | None:
    """Return the UUID form of an id, or None when it is not a valid UUID."""
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None
