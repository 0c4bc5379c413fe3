from __future__ import annotations

import json
from collections.abc import Iterator
from pathlib import Path

import pytest
from fakes import BASE_CONFIG, ScriptedClientFactory
from fastapi.testclient import TestClient

from geoscan_api.app.ledger import Ledger
from geoscan_api.app.orchestrator import TaskPipeline
from geoscan_api.app.settings import Settings
from geoscan_api.app.storage import InMemoryStorage
from geoscan_api.main import create_app


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def ledger(storage: InMemoryStorage) -> Ledger:
    return Ledger(storage)


@pytest.fixture
def fake_llm() -> ScriptedClientFactory:
    return ScriptedClientFactory()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "config.json"
    path.write_text(json.dumps(BASE_CONFIG), encoding="utf-8")
    return path


@pytest.fixture
def settings(config_file: Path) -> Settings:
    return Settings(
        _env_file=None,
        database_url="",
        app_config_path=config_file,
        max_fanout_workers=4,
    )


@pytest.fixture
def pipeline(
    storage: InMemoryStorage,
    settings: Settings,
    fake_llm: ScriptedClientFactory,
    ledger: Ledger,
) -> TaskPipeline:
    return TaskPipeline(storage=storage, settings=settings, client_factory=fake_llm, ledger=ledger)


@pytest.fixture
def client(
    storage: InMemoryStorage,
    settings: Settings,
    fake_llm: ScriptedClientFactory,
) -> Iterator[TestClient]:
    app = create_app(storage=storage, settings_override=settings, client_factory=fake_llm)
    with TestClient(app) as test_client:
        yield test_client
