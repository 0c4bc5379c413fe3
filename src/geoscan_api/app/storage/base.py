"""Storage interfaces for accounts, ledger, tasks, and runs."""

from __future__ import annotations

from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any, Protocol

from ..errors import InvalidTransition
from ..models import (
    TERMINAL_RUN_STATUSES,
    TERMINAL_TASK_STATUSES,
    AccountRecord,
    LedgerEntry,
    LedgerEntryType,
    RunPurpose,
    RunRecord,
    RunStatus,
    TaskRecord,
    TaskStatus,
    ensure_task_transition,
)


class StorageTransaction(Protocol):
    """Unit of work: every call commits together or not at all."""

    def lock_account(self, user_id: str) -> AccountRecord | None: ...

    def insert_account(self, user_id: str, *, plan: str = "FREE") -> AccountRecord: ...

    def set_points(self, user_id: str, points: int) -> None: ...

    def insert_ledger_entry(
        self,
        *,
        user_id: str,
        amount: int,
        balance: int,
        entry_type: LedgerEntryType,
        description: str,
        operator_id: str | None,
    ) -> LedgerEntry: ...

    def sum_quota_units(self, user_id: str, usage_date: str) -> int: ...

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
    ) -> TaskRecord: ...


class PipelineStorage(Protocol):
    def migrate(self) -> None: ...

    def transaction(self) -> AbstractContextManager[StorageTransaction]: ...

    def create_account(self, user_id: str, *, plan: str = "FREE") -> AccountRecord: ...

    def get_account(self, user_id: str) -> AccountRecord | None: ...

    def list_ledger_entries(self, user_id: str, *, limit: int | None = None) -> list[LedgerEntry]: ...

    def get_task(self, task_id: str) -> TaskRecord | None: ...

    def list_tasks(self, owner_id: str) -> list[TaskRecord]: ...

    def update_task(
        self,
        task_id: str,
        *,
        status: TaskStatus | None = None,
        progress: int | None = None,
        log: str | None = None,
        result: dict[str, Any] | None = None,
    ) -> TaskRecord: ...

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
    ) -> RunRecord: ...

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
    ) -> RunRecord: ...

    def list_runs(self, task_id: str) -> list[RunRecord]: ...


def apply_task_update(
    current: TaskRecord,
    *,
    status: TaskStatus | None,
    progress: int | None,
    log: str | None,
    result: dict[str, Any] | None,
    now: datetime,
) -> TaskRecord:
    """Return `current` with a partial update applied under lifecycle rules.

    Shared by every backend so the rules cannot drift:
    - terminal tasks are never written again (InvalidTransition);
    - status follows PENDING -> RUNNING -> COMPLETED|FAILED;
    - progress is clamped to [0, 100] and never decreases;
    - a terminal status forces progress to 100;
    - logs are append-only.
    """
    next_status = status if status is not None else current.status
    ensure_task_transition(current.status, next_status)

    next_progress = current.progress
    if progress is not None:
        next_progress = max(current.progress, min(100, max(0, int(progress))))
    if next_status in TERMINAL_TASK_STATUSES:
        next_progress = 100

    next_logs = list(current.logs)
    if log is not None:
        next_logs.append(log)

    return current.model_copy(
        update={
            "status": next_status,
            "progress": next_progress,
            "logs": next_logs,
            "result": result if result is not None else current.result,
            "updated_at": now,
        },
        deep=True,
    )


def apply_run_update(
    current: RunRecord,
    *,
    status: RunStatus,
    response_text: str | None,
    response_json: dict[str, Any] | None,
    error: str | None,
    started_at: datetime | None,
    completed_at: datetime | None,
) -> RunRecord:
    """Return `current` with a run update applied.

    A terminal run is never rewritten, FAILED requires an error message, and
    completed_at is never earlier than started_at.
    """
    if current.status in TERMINAL_RUN_STATUSES:
        raise InvalidTransition(f"Run {current.run_id} is terminal ({current.status})")
    next_error = error if error is not None else current.error
    if status == "FAILED" and not next_error:
        raise ValueError("A FAILED run requires an error message")
    next_started = started_at or current.started_at
    next_completed = completed_at or current.completed_at
    if next_started and next_completed and next_completed < next_started:
        next_completed = next_started
    return current.model_copy(
        update={
            "status": status,
            "response_text": response_text if response_text is not None else current.response_text,
            "response_json": response_json if response_json is not None else current.response_json,
            "error": next_error,
            "started_at": next_started,
            "completed_at": next_completed,
        },
        deep=True,
    )
