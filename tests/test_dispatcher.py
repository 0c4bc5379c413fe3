from __future__ import annotations

import threading
import time

from fakes import ScriptedClientFactory, make_config

from geoscan_api.app.dispatcher import FanoutDispatcher
from geoscan_api.app.errors import ProviderError
from geoscan_api.app.extractor import ContentExtractor
from geoscan_api.app.models import TaskRecord
from geoscan_api.app.storage import InMemoryStorage


def _running_task(storage: InMemoryStorage, models: list[str]) -> TaskRecord:
    storage.create_account("alice")
    with storage.transaction() as tx:
        task = tx.insert_task(
            owner_id="alice",
            prompt="Which agencies are best?",
            mode="quick",
            selected_models=models,
            cost_units=len(models),
            quota_units=0,
            points_units=len(models),
            usage_date="2024-03-01",
            logs=[],
        )
    return storage.update_task(task.task_id, status="RUNNING", progress=5)


def _dispatcher(storage: InMemoryStorage, fake_llm: ScriptedClientFactory, **kwargs) -> FanoutDispatcher:
    return FanoutDispatcher(
        storage=storage,
        client_factory=fake_llm,
        extractor=ContentExtractor(client_factory=fake_llm),
        **kwargs,
    )


def test_one_run_per_model_in_caller_order(
    storage: InMemoryStorage, fake_llm: ScriptedClientFactory
) -> None:
    models = ["Kimi", "Unknown", "ChatGPT", "Doubao"]
    task = _running_task(storage, models)
    fake_llm.script("Kimi", stream="kimi answer")
    fake_llm.script("ChatGPT", stream=ProviderError("HTTP 502"))

    outcomes = _dispatcher(storage, fake_llm, timeout_s=33.0).dispatch(
        task_id=task.task_id,
        prompt=task.prompt,
        selected_models=models,
        config=make_config(),
    )

    assert [outcome.model_key for outcome in outcomes] == models
    assert [outcome.succeeded for outcome in outcomes] == [True, False, False, False]
    assert outcomes[2].error == "HTTP 502"
    assert "No usable provider configuration for 'Unknown'" in (outcomes[1].error or "")

    runs = storage.list_runs(task.task_id)
    assert len(runs) == len(models)
    assert all(run.purpose == "MODEL" for run in runs)
    assert all(run.status in {"SUCCEEDED", "FAILED"} for run in runs)
    assert all(run.error for run in runs if run.status == "FAILED")
    by_key = {run.model_key: run for run in runs}
    assert by_key["Kimi"].response_text == "kimi answer"
    assert by_key["Kimi"].model_name == "moonshot-v1-8k"
    assert by_key["Kimi"].started_at <= by_key["Kimi"].completed_at

    stream_calls = fake_llm.calls_of("stream")
    assert sorted(call["provider"] for call in stream_calls) == ["ChatGPT", "Kimi"]
    for call in stream_calls:
        assert call["messages"] == [{"role": "user", "content": "Which agencies are best?"}]
        assert call["max_tokens"] == 4000
        assert call["temperature"] == 0.7
        assert call["timeout_s"] == 33.0


def test_unresolved_models_never_reach_the_network(
    storage: InMemoryStorage, fake_llm: ScriptedClientFactory
) -> None:
    task = _running_task(storage, ["Doubao"])

    outcomes = _dispatcher(storage, fake_llm).dispatch(
        task_id=task.task_id,
        prompt=task.prompt,
        selected_models=["Doubao"],
        config=make_config(),
    )

    assert outcomes[0].succeeded is False
    assert fake_llm.calls == []
    assert storage.list_runs(task.task_id)[0].status == "FAILED"


def test_unexpected_exception_fails_only_that_run(
    storage: InMemoryStorage, fake_llm: ScriptedClientFactory
) -> None:
    task = _running_task(storage, ["ChatGPT", "Kimi"])
    fake_llm.script("ChatGPT", stream=RuntimeError("socket closed"))
    fake_llm.script("Kimi", stream="fine")

    outcomes = _dispatcher(storage, fake_llm).dispatch(
        task_id=task.task_id,
        prompt=task.prompt,
        selected_models=["ChatGPT", "Kimi"],
        config=make_config(),
    )

    assert [outcome.succeeded for outcome in outcomes] == [False, True]
    assert outcomes[0].error == "socket closed"


def test_progress_stays_in_fanout_band_and_reaches_eighty(
    storage: InMemoryStorage, fake_llm: ScriptedClientFactory
) -> None:
    models = ["ChatGPT", "Kimi", "DeepSeek"]
    task = _running_task(storage, models)
    for key in models:
        fake_llm.script(key, stream=f"{key} answer")

    _dispatcher(storage, fake_llm).dispatch(
        task_id=task.task_id,
        prompt=task.prompt,
        selected_models=models,
        config=make_config(),
    )

    updated = storage.get_task(task.task_id)
    assert updated.progress == 80
    assert updated.status == "RUNNING"
    assert any(line.startswith("Calling ChatGPT") for line in updated.logs)


def test_calls_run_concurrently_with_bounded_workers(
    storage: InMemoryStorage, fake_llm: ScriptedClientFactory
) -> None:
    models = ["ChatGPT", "Kimi", "DeepSeek"]
    task = _running_task(storage, models)
    lock = threading.Lock()
    state = {"active": 0, "peak": 0}

    def slow_answer(messages: list[dict[str, str]]) -> str:
        with lock:
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
        time.sleep(0.05)
        with lock:
            state["active"] -= 1
        return "answer"

    for key in models:
        fake_llm.script(key, stream=slow_answer)

    outcomes = _dispatcher(storage, fake_llm, max_workers=2).dispatch(
        task_id=task.task_id,
        prompt=task.prompt,
        selected_models=models,
        config=make_config(),
    )

    assert all(outcome.succeeded for outcome in outcomes)
    assert 1 <= state["peak"] <= 2


def test_extraction_lands_in_platform_entry(
    storage: InMemoryStorage, fake_llm: ScriptedClientFactory
) -> None:
    task = _running_task(storage, ["ChatGPT"])
    fake_llm.script(
        "ChatGPT",
        stream="answer",
        extract='{"brands": ["Acme"], "sources": [{"title": "t", "url": "https://www.baidu.com/s"}]}',
    )

    outcome = _dispatcher(storage, fake_llm).dispatch(
        task_id=task.task_id,
        prompt=task.prompt,
        selected_models=["ChatGPT"],
        config=make_config(),
    )[0]

    entry = outcome.platform_entry()
    assert entry["engine"] == "ChatGPT:gpt-4o"
    assert entry["response"] == "answer"
    assert entry["brands"] == ["Acme"]
    assert entry["sources"][0]["site"] == "百度"
    run = storage.list_runs(task.task_id)[0]
    assert run.response_json["extraction"]["brands"] == ["Acme"]
