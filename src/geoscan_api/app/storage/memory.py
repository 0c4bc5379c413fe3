"""In-memory storage backend for tests and local runs without PostgreSQL."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from ..errors import AccountNotFound
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


class _InMemoryTransaction:
    """Writes go straight to the store; the owning context restores on error."""

    def __init__(self, store: InMemoryStorage) -> None:
        self._store = store

    def lock_account(self, user_id: str) -> AccountRecord | None:
        account = self._store._accounts.get(user_id)
        return account.model_copy() if account else None

    def insert_account(self, user_id: str, *, plan: str = "FREE") -> AccountRecord:
        existing = self._store._accounts.get(user_id)
        if existing is not None:
            return existing.model_copy()
        account = AccountRecord(user_id=user_id, points=0, plan=plan, created_at=datetime.now(UTC))
        self._store._accounts[user_id] = account
        return account.model_copy()

    def set_points(self, user_id: str, points: int) -> None:
        account = self._store._accounts.get(user_id)
        if account is None:
            raise AccountNotFound(user_id)
        self._store._accounts[user_id] = account.model_copy(update={"points": points})

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
        entry = LedgerEntry(
            entry_id=str(uuid4()),
            user_id=user_id,
            amount=amount,
            balance=balance,
            entry_type=entry_type,
            description=description,
            operator_id=operator_id,
            created_at=datetime.now(UTC),
        )
        self._store._ledger.append(entry)
        return entry

    def sum_quota_units(self, user_id: str, usage_date: str) -> int:
        return sum(
            task.quota_units
            for task in self._store._tasks.values()
            if task.owner_id == user_id and task.usage_date == usage_date
        )

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
        now = datetime.now(UTC)
        record = TaskRecord(
            task_id=str(uuid4()),
            owner_id=owner_id,
            prompt=prompt,
            mode=mode,
            selected_models=list(selected_models),
            status="PENDING",
            progress=0,
            logs=list(logs),
            cost_units=cost_units,
            quota_units=quota_units,
            points_units=points_units,
            usage_date=usage_date,
            result=None,
            created_at=now,
            updated_at=now,
        )
        self._store._tasks[record.task_id] = record
        return record.model_copy(deep=True)


class InMemoryStorage:
    """Simple in-memory implementation; one re-entrant lock serializes all writes."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._accounts: dict[str, AccountRecord] = {}
        self._ledger: list[LedgerEntry] = []
        self._tasks: dict[str, TaskRecord] = {}
        self._runs: dict[str, RunRecord] = {}

    def migrate(self) -> None:
        return None

    @contextmanager
    def transaction(self) -> Iterator[_InMemoryTransaction]:
        with self._lock:
            accounts = dict(self._accounts)
            ledger_size = len(self._ledger)
            task_ids = set(self._tasks)
            try:
                yield _InMemoryTransaction(self)
            except BaseException:
                self._accounts = accounts
                del self._ledger[ledger_size:]
                for task_id in set(self._tasks) - task_ids:
                    del self._tasks[task_id]
                raise

    def create_account(self, user_id: str, *, plan: str = "FREE") -> AccountRecord:
        with self._lock:
            existing = self._accounts.get(user_id)
            if existing is not None:
                return existing.model_copy()
            account = AccountRecord(
                user_id=user_id,
                points=0,
                plan=plan,
                created_at=datetime.now(UTC),
            )
            self._accounts[user_id] = account
            return account.model_copy()

    def get_account(self, user_id: str) -> AccountRecord | None:
        with self._lock:
            account = self._accounts.get(user_id)
            return account.model_copy() if account else None

    def list_ledger_entries(self, user_id: str, *, limit: int | None = None) -> list[LedgerEntry]:
        with self._lock:
            entries = [entry for entry in reversed(self._ledger) if entry.user_id == user_id]
        return entries[:limit] if limit is not None else entries

    def get_task(self, task_id: str) -> TaskRecord | None:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.model_copy(deep=True) if task else None

    def list_tasks(self, owner_id: str) -> list[TaskRecord]:
        with self._lock:
            tasks = [task.model_copy(deep=True) for task in self._tasks.values() if task.owner_id == owner_id]
        return sorted(tasks, key=lambda task: task.created_at, reverse=True)

    def update_task(
        self,
        task_id: str,
        *,
        status: TaskStatus | None = None,
        progress: int | None = None,
        log: str | None = None,
        result: dict[str, Any] | None = None,
    ) -> TaskRecord:
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                raise KeyError(f"Task {task_id} does not exist")
            updated = apply_task_update(
                current,
                status=status,
                progress=progress,
                log=log,
                result=result,
                now=datetime.now(UTC),
            )
            self._tasks[task_id] = updated
            return updated.model_copy(deep=True)

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
        with self._lock:
            if task_id not in self._tasks:
                raise KeyError(f"Task {task_id} does not exist")
            record = RunRecord(
                run_id=str(uuid4()),
                task_id=task_id,
                model_key=model_key,
                provider=provider,
                model_name=model_name,
                purpose=purpose,
                status=status,
                prompt=prompt,
                error=error,
                started_at=started_at,
                completed_at=completed_at,
                created_at=datetime.now(UTC),
            )
            self._runs[record.run_id] = record
            return record.model_copy(deep=True)

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
        with self._lock:
            current = self._runs.get(run_id)
            if current is None:
                raise KeyError(f"Run {run_id} does not exist")
            updated = apply_run_update(
                current,
                status=status,
                response_text=response_text,
                response_json=response_json,
                error=error,
                started_at=started_at,
                completed_at=completed_at,
            )
            self._runs[run_id] = updated
            return updated.model_copy(deep=True)

    def list_runs(self, task_id: str) -> list[RunRecord]:
        with self._lock:
            runs = [run.model_copy(deep=True) for run in self._runs.values() if run.task_id == task_id]
        return sorted(runs, key=lambda run: run.created_at)
