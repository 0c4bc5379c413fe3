from __future__ import annotations

import os
import uuid
from concurrent.futures import ThreadPoolExecutor

import pytest

from geoscan_api.app.errors import InsufficientBalance, InvalidTransition
from geoscan_api.app.ledger import Ledger

pytestmark = pytest.mark.postgres

DATABASE_URL = os.getenv("GEOSCAN_TEST_DATABASE_URL", "")


@pytest.fixture
def pg_storage():
    if not DATABASE_URL:
        pytest.skip("GEOSCAN_TEST_DATABASE_URL is not set")
    pytest.importorskip("psycopg")
    from geoscan_api.app.storage import PostgresStorage

    storage = PostgresStorage(DATABASE_URL)
    storage.migrate()
    return storage


def _user() -> str:
    return f"pg-{uuid.uuid4().hex[:12]}"


def test_concurrent_debits_never_overdraw(pg_storage) -> None:
    ledger = Ledger(pg_storage)
    user_id = _user()
    ledger.open_account(user_id, opening_balance=5)

    def attempt(_: int) -> bool:
        try:
            ledger.debit(user_id, 1, "Run task: concurrent")
        except InsufficientBalance:
            return False
        return True

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(attempt, range(12)))

    assert results.count(True) == 5
    assert ledger.balance(user_id) == 0
    assert ledger.reconcile(user_id).consistent


def test_task_and_run_lifecycle_round_trip(pg_storage) -> None:
    user_id = _user()
    pg_storage.create_account(user_id)
    with pg_storage.transaction() as tx:
        task = tx.insert_task(
            owner_id=user_id,
            prompt="  spaced prompt ",
            mode="deep",
            selected_models=["ChatGPT", "Kimi"],
            cost_units=4,
            quota_units=1,
            points_units=3,
            usage_date="2024-03-01",
            logs=["created"],
        )
        assert tx.sum_quota_units(user_id, "2024-03-01") == 1

    loaded = pg_storage.get_task(task.task_id)
    assert loaded is not None
    assert loaded.prompt == "  spaced prompt "
    assert loaded.selected_models == ["ChatGPT", "Kimi"]

    pg_storage.update_task(task.task_id, status="RUNNING", progress=50, log="started")
    assert pg_storage.update_task(task.task_id, progress=10).progress == 50

    run = pg_storage.create_run(
        task_id=task.task_id,
        model_key="ChatGPT",
        provider="ChatGPT",
        model_name="gpt-4o",
        purpose="MODEL",
        status="RUNNING",
        prompt="p",
    )
    pg_storage.update_run(run.run_id, status="SUCCEEDED", response_text="answer", response_json={"model": "gpt-4o"})
    assert pg_storage.list_runs(task.task_id)[0].response_json == {"model": "gpt-4o"}

    final = pg_storage.update_task(task.task_id, status="COMPLETED", result={"summary": "done"})
    assert final.progress == 100
    assert final.logs == ["created", "started"]
    with pytest.raises(InvalidTransition):
        pg_storage.update_task(task.task_id, status="FAILED")


def test_rolled_back_transaction_leaves_no_ledger_entry(pg_storage) -> None:
    ledger = Ledger(pg_storage)
    user_id = _user()
    ledger.open_account(user_id, opening_balance=3)

    with pytest.raises(RuntimeError):
        with pg_storage.transaction() as tx:
            ledger.debit(user_id, 2, "Run task: rollback", tx=tx)
            raise RuntimeError("abort")

    assert ledger.balance(user_id) == 3
    assert [entry.entry_type for entry in ledger.recent_entries(user_id)] == ["RECHARGE"]


def test_malformed_ids_are_not_found(pg_storage) -> None:
    assert pg_storage.get_task("not-a-uuid") is None
    assert pg_storage.list_runs("not-a-uuid") == []
    with pytest.raises(KeyError):
        pg_storage.update_task("not-a-uuid", status="RUNNING")
    with pytest.raises(KeyError):
        pg_storage.update_run("not-a-uuid", status="SUCCEEDED")


def test_parse_uuid_accepts_only_valid_ids() -> None:
    from geoscan_api.app.storage.postgres import _parse_uuid

    key = uuid.uuid4()
    assert _parse_uuid(str(key)) == key
    assert _parse_uuid(key.hex) == key
    assert _parse_uuid("does-not-exist") is None
    assert _parse_uuid("") is None
