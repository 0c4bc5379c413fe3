from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from geoscan_api.app.app_config import AppConfig, BillingConfig, load_app_config
from geoscan_api.app.providers import resolve_provider


def test_load_reads_camel_case_file(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "defaultBaseUrl": " https://gw.example/v1 ",
                "defaultApiKey": "sk",
                "providers": {
                    "ChatGPT": {"model": "gpt-4o", "enabled": True},
                    "broken": "not-an-object",
                },
                "billing": {
                    "dailyUnitsByPlan": {"FREE": 5},
                    "searchMultiplier": {"deep": 3},
                    "modelUnitPrice": {"ChatGPT": 2},
                },
            }
        ),
        encoding="utf-8",
    )

    config = load_app_config(path)

    assert config.default_base_url == "https://gw.example/v1"
    assert list(config.providers) == ["ChatGPT"]
    assert config.billing.daily_units_by_plan == {"FREE": 5, "PRO": 100, "ENTERPRISE": 1000}
    assert config.billing.search_multiplier == {"quick": 1.0, "deep": 3.0}
    assert config.billing.model_unit_price == {"ChatGPT": 2.0}


def test_missing_or_invalid_file_yields_empty_config(tmp_path: Path) -> None:
    assert load_app_config(tmp_path / "absent.json") == AppConfig()

    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    assert load_app_config(broken) == AppConfig()

    wrong_shape = tmp_path / "list.json"
    wrong_shape.write_text("[1, 2]", encoding="utf-8")
    assert load_app_config(wrong_shape) == AppConfig()


def test_only_explicit_false_disables_provider() -> None:
    config = AppConfig.model_validate(
        {"providers": {"a": {"enabled": False}, "b": {"enabled": None}, "c": {}}}
    )
    assert [key for key, entry in config.providers.items() if entry.enabled] == ["b", "c"]


def test_legacy_layout_is_converted() -> None:
    config = AppConfig.model_validate(
        {
            "newApi": {
                "baseUrl": "https://legacy.example",
                "apiKey": "sk-legacy",
                "model": "legacy-model",
                "models": {"Kimi": {"model": "moonshot"}},
            }
        }
    )
    assert config.default_base_url == "https://legacy.example"
    assert config.default_model == "legacy-model"
    assert config.providers["Kimi"].model == "moonshot"


def test_snapshot_is_frozen() -> None:
    config = AppConfig.model_validate({"defaultApiKey": "sk"})
    with pytest.raises(ValidationError):
        config.default_api_key = "other"  # type: ignore[misc]


def test_bad_billing_values_keep_providers(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "defaultBaseUrl": "https://gw.example/v1",
                "defaultApiKey": "sk",
                "providers": {"ChatGPT": {"model": "gpt-4o"}},
                "billing": {
                    "dailyUnitsByPlan": {"FREE": 2.5, "PRO": "lots"},
                    "searchMultiplier": {"deep": None},
                    "modelUnitPrice": {"ChatGPT": None, "Kimi": True, "DeepSeek": 3},
                },
            }
        ),
        encoding="utf-8",
    )

    config = load_app_config(path)

    assert list(config.providers) == ["ChatGPT"]
    assert resolve_provider(config, "ChatGPT") is not None
    assert config.billing.daily_units_by_plan == {"FREE": 2, "PRO": 100, "ENTERPRISE": 1000}
    assert config.billing.search_multiplier == {"quick": 1.0, "deep": 2.0}
    assert config.billing.model_unit_price == {"DeepSeek": 3.0}


def test_non_object_billing_falls_back_to_defaults(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps({"defaultApiKey": "sk", "providers": {"Kimi": {}}, "billing": "x"}),
        encoding="utf-8",
    )

    config = load_app_config(path)

    assert list(config.providers) == ["Kimi"]
    assert config.billing == BillingConfig()
