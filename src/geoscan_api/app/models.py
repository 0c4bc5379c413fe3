"""Pydantic models shared across API, ledger, pipeline stages, and storage.

Terms used in this file:
- Task: one user-submitted query and its lifecycle (status, progress, logs, result).
- Run: one provider invocation scoped to a task (purpose MODEL or ANALYSIS).
- Ledger entry: one immutable point movement with the post-operation balance.
- Terminal: COMPLETED or FAILED; the pipeline never writes a terminal task again.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from .errors import InvalidTransition

TaskStatus = Literal["PENDING", "RUNNING", "COMPLETED", "FAILED"]
TaskMode = Literal["quick", "deep"]
RunStatus = Literal["PENDING", "RUNNING", "SUCCEEDED", "FAILED"]
RunPurpose = Literal["MODEL", "ANALYSIS"]
LedgerEntryType = Literal["CONSUME", "RECHARGE", "REFUND", "ADMIN_ADD", "ADMIN_SUB"]
Plan = Literal["FREE", "PRO", "ENTERPRISE"]

TERMINAL_TASK_STATUSES: frozenset[str] = frozenset({"COMPLETED", "FAILED"})
TERMINAL_RUN_STATUSES: frozenset[str] = frozenset({"SUCCEEDED", "FAILED"})

# Allowed next states per current state. Terminal states map to nothing.
TASK_TRANSITIONS: dict[str, frozenset[str]] = {
    "PENDING": frozenset({"RUNNING"}),
    "RUNNING": frozenset({"COMPLETED", "FAILED"}),
    "COMPLETED": frozenset(),
    "FAILED": frozenset(),
}


def ensure_task_transition(current: str, target: str) -> None:
    """Raise InvalidTransition unless `current -> target` is a legal lifecycle step.

    Re-asserting the current non-terminal status is allowed so that progress/log
    updates can pass the status through unchanged.
    """
    if current in TERMINAL_TASK_STATUSES:
        raise InvalidTransition(f"Task is terminal ({current}); refusing update to {target}")
    if target == current:
        return
    if target not in TASK_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransition(f"Illegal task transition {current} -> {target}")


class AccountRecord(BaseModel):
    user_id: str
    points: int
    plan: Plan = "FREE"
    created_at: datetime


class LedgerEntry(BaseModel):
    """Immutable point movement. `balance` is the authoritative post-operation balance."""

    entry_id: str
    user_id: str
    amount: int
    balance: int
    entry_type: LedgerEntryType
    description: str
    operator_id: str | None = None
    created_at: datetime


class TaskRecord(BaseModel):
    """Canonical task record shape returned by API/storage."""

    task_id: str
    owner_id: str
    # Submitted verbatim; nothing in the pipeline rewrites it.
    prompt: str
    mode: TaskMode = "quick"
    selected_models: list[str] = Field(default_factory=list)
    status: TaskStatus = "PENDING"
    progress: int = Field(default=0, ge=0, le=100)
    logs: list[str] = Field(default_factory=list)
    cost_units: int = 0
    quota_units: int = 0
    points_units: int = 0
    usage_date: str
    result: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


class RunRecord(BaseModel):
    """One provider invocation for a task."""

    run_id: str
    task_id: str
    model_key: str
    provider: str
    model_name: str
    purpose: RunPurpose = "MODEL"
    status: RunStatus = "PENDING"
    prompt: str
    response_text: str | None = None
    response_json: dict[str, Any] | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime


class CreateTaskRequest(BaseModel):
    """Request body for POST /tasks."""

    prompt: str = Field(min_length=1)
    # Anything other than "deep" is treated as quick mode.
    mode: str = "quick"
    models: list[str] = Field(min_length=1)


class CreateTaskResponse(TaskRecord):
    remaining_points: int


class PointsSummary(BaseModel):
    balance: int
    entries: list[LedgerEntry] = Field(default_factory=list)


class RechargeRequest(BaseModel):
    amount: int = Field(gt=0)
    description: str | None = None


class RechargeResponse(BaseModel):
    user_id: str
    points: int
    entry: LedgerEntry


class ProviderTestRequest(BaseModel):
    provider: str | None = None


class ProviderTestResponse(BaseModel):
    success: bool
    provider: str
    model: str
    preview: str = ""
    error: str | None = None
