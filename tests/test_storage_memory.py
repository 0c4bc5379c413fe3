from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from geoscan_api.app.errors import InvalidTransition
from geoscan_api.app.models import TaskRecord
from geoscan_api.app.storage import InMemoryStorage


def _insert_task(storage: InMemoryStorage, owner_id: str = "alice") -> TaskRecord:
    storage.create_account(owner_id)
    with storage.transaction() as tx:
        return tx.insert_task(
            owner_id=owner_id,
            prompt="  keep my spacing  ",
            mode="quick",
            selected_models=["ChatGPT"],
            cost_units=1,
            quota_units=0,
            points_units=1,
            usage_date="2024-03-01",
            logs=["created"],
        )


def test_inserted_task_starts_pending_with_prompt_verbatim(storage: InMemoryStorage) -> None:
    task = _insert_task(storage)

    assert task.status == "PENDING"
    assert task.progress == 0
    assert task.prompt == "  keep my spacing  "
    assert storage.get_task(task.task_id) == task


def test_progress_is_monotone_and_logs_append(storage: InMemoryStorage) -> None:
    task = _insert_task(storage)

    storage.update_task(task.task_id, status="RUNNING", progress=40, log="a")
    updated = storage.update_task(task.task_id, progress=20, log="b")

    assert updated.progress == 40
    assert updated.logs == ["created", "a", "b"]
    assert storage.update_task(task.task_id, progress=500).progress == 100


def test_terminal_status_forces_full_progress_and_freezes_task(storage: InMemoryStorage) -> None:
    task = _insert_task(storage)
    storage.update_task(task.task_id, status="RUNNING", progress=10)

    final = storage.update_task(task.task_id, status="FAILED", result={"summary": ""})
    assert final.progress == 100

    with pytest.raises(InvalidTransition):
        storage.update_task(task.task_id, log="late")
    with pytest.raises(InvalidTransition):
        storage.update_task(task.task_id, status="COMPLETED")


def test_pending_cannot_jump_to_terminal(storage: InMemoryStorage) -> None:
    task = _insert_task(storage)
    with pytest.raises(InvalidTransition):
        storage.update_task(task.task_id, status="COMPLETED")


def test_run_rules(storage: InMemoryStorage) -> None:
    task = _insert_task(storage)

    with pytest.raises(ValueError):
        storage.create_run(
            task_id=task.task_id,
            model_key="ChatGPT",
            provider="ChatGPT",
            model_name="gpt-4o",
            purpose="MODEL",
            status="FAILED",
            prompt="p",
        )

    run = storage.create_run(
        task_id=task.task_id,
        model_key="ChatGPT",
        provider="ChatGPT",
        model_name="gpt-4o",
        purpose="MODEL",
        status="PENDING",
        prompt="p",
    )
    started = datetime.now(tz=UTC)
    storage.update_run(run.run_id, status="RUNNING", started_at=started)
    with pytest.raises(ValueError):
        storage.update_run(run.run_id, status="FAILED")

    done = storage.update_run(
        run.run_id,
        status="SUCCEEDED",
        response_text="answer",
        completed_at=started - timedelta(seconds=5),
    )
    assert done.completed_at == started
    with pytest.raises(InvalidTransition):
        storage.update_run(run.run_id, status="FAILED", error="late")


def test_failed_transaction_leaves_no_trace(storage: InMemoryStorage) -> None:
    storage.create_account("bob")

    with pytest.raises(RuntimeError):
        with storage.transaction() as tx:
            tx.set_points("bob", 9)
            tx.insert_ledger_entry(
                user_id="bob",
                amount=9,
                balance=9,
                entry_type="RECHARGE",
                description="x",
                operator_id=None,
            )
            tx.insert_task(
                owner_id="bob",
                prompt="p",
                mode="quick",
                selected_models=["a"],
                cost_units=1,
                quota_units=1,
                points_units=0,
                usage_date="2024-03-01",
                logs=[],
            )
            raise RuntimeError("abort")

    assert storage.get_account("bob").points == 0
    assert storage.list_ledger_entries("bob") == []
    assert storage.list_tasks("bob") == []


def test_sum_quota_units_is_per_owner_and_day(storage: InMemoryStorage) -> None:
    _insert_task(storage, "alice")
    storage.create_account("carol")
    with storage.transaction() as tx:
        tx.insert_task(
            owner_id="alice",
            prompt="p",
            mode="deep",
            selected_models=["a"],
            cost_units=2,
            quota_units=2,
            points_units=0,
            usage_date="2024-03-02",
            logs=[],
        )
        assert tx.sum_quota_units("alice", "2024-03-02") == 2
        assert tx.sum_quota_units("alice", "2024-03-01") == 0
        assert tx.sum_quota_units("carol", "2024-03-02") == 0
