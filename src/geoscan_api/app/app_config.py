"""Read-only snapshot of the external JSON configuration file.

The file is owned by an admin surface outside this service. The pipeline reads
it once per task submission into a frozen `AppConfig` and threads that snapshot
through every stage, so a concurrent admin edit can never be observed half-way
through a task.

Accepted shape (camelCase keys as written by the admin surface):

    {
      "defaultBaseUrl": "...", "defaultApiKey": "...", "defaultModel": "...",
      "providers": {"<key>": {"baseUrl": "", "apiKey": "", "model": "", "enabled": true}},
      "billing": {"dailyUnitsByPlan": {...}, "searchMultiplier": {...}, "modelUnitPrice": {...}}
    }

The older layout `{"newApi": {"baseUrl", "apiKey", "model", "models": {...}}}` is
also understood.
"""

from __future__ import annotations

import json
import logging
import math
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_MULTIPLIER: dict[str, float] = {"quick": 1.0, "deep": 2.0}
DEFAULT_DAILY_UNITS_BY_PLAN: dict[str, int] = {"FREE": 2, "PRO": 100, "ENTERPRISE": 1000}


class FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class ProviderEntry(FrozenModel):
    """Per-provider block; blank fields inherit from the global defaults."""

    base_url: str = Field(default="", alias="baseUrl")
    api_key: str = Field(default="", alias="apiKey")
    model: str = ""
    enabled: bool = True

    @field_validator("base_url", "api_key", "model", mode="before")
    @classmethod
    def _blank_to_empty(cls, value: Any) -> str:
        if not isinstance(value, str):
            return ""
        return value.strip()

    @field_validator("enabled", mode="before")
    @classmethod
    def _enabled_unless_false(cls, value: Any) -> bool:
        # Only an explicit `false` disables a provider.
        return value is not False


def _numeric_entries(value: Any) -> dict[str, float]:
    """Keep only entries whose value is a finite number; everything else is dropped."""
    if not isinstance(value, dict):
        return {}
    return {
        str(key): float(entry)
        for key, entry in value.items()
        if isinstance(entry, (int, float)) and not isinstance(entry, bool) and math.isfinite(entry)
    }


class BillingConfig(FrozenModel):
    """Pricing table. Configured entries are merged over the defaults; non-numeric ones are ignored."""

    daily_units_by_plan: dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_DAILY_UNITS_BY_PLAN), alias="dailyUnitsByPlan"
    )
    search_multiplier: dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_SEARCH_MULTIPLIER), alias="searchMultiplier"
    )
    model_unit_price: dict[str, float] = Field(default_factory=dict, alias="modelUnitPrice")

    @field_validator("daily_units_by_plan", mode="before")
    @classmethod
    def _merge_daily_unit_defaults(cls, value: Any) -> dict[str, int]:
        merged: dict[str, int] = dict(DEFAULT_DAILY_UNITS_BY_PLAN)
        for plan, units in _numeric_entries(value).items():
            merged[plan] = max(0, math.floor(units))
        return merged

    @field_validator("search_multiplier", mode="before")
    @classmethod
    def _merge_multiplier_defaults(cls, value: Any) -> dict[str, float]:
        merged: dict[str, float] = dict(DEFAULT_SEARCH_MULTIPLIER)
        merged.update(_numeric_entries(value))
        return merged

    @field_validator("model_unit_price", mode="before")
    @classmethod
    def _numeric_prices(cls, value: Any) -> dict[str, float]:
        return _numeric_entries(value)


class AppConfig(FrozenModel):
    default_base_url: str = Field(default="", alias="defaultBaseUrl")
    default_api_key: str = Field(default="", alias="defaultApiKey")
    default_model: str = Field(default="", alias="defaultModel")
    providers: dict[str, ProviderEntry] = Field(default_factory=dict)
    billing: BillingConfig = Field(default_factory=BillingConfig)

    @field_validator("default_base_url", "default_api_key", "default_model", mode="before")
    @classmethod
    def _blank_to_empty(cls, value: Any) -> str:
        if not isinstance(value, str):
            return ""
        return value.strip()

    @field_validator("providers", mode="before")
    @classmethod
    def _drop_non_objects(cls, value: Any) -> dict[str, Any]:
        if not isinstance(value, dict):
            return {}
        return {key: entry for key, entry in value.items() if isinstance(entry, dict)}

    @field_validator("billing", mode="before")
    @classmethod
    def _billing_object_or_default(cls, value: Any) -> Any:
        if isinstance(value, (dict, BillingConfig)):
            return value
        return {}

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_layout(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "newApi" not in data:
            return data
        legacy = data.get("newApi")
        if not isinstance(legacy, dict):
            return data
        converted = {key: value for key, value in data.items() if key != "newApi"}
        converted.setdefault("defaultBaseUrl", legacy.get("baseUrl"))
        converted.setdefault("defaultApiKey", legacy.get("apiKey"))
        converted.setdefault("defaultModel", legacy.get("model"))
        converted.setdefault("providers", legacy.get("models") or {})
        return converted


def load_app_config(path: Path) -> AppConfig:
    """Read the config file into a frozen snapshot.

    A missing file yields an empty config. An unreadable or invalid file is
    logged and also yields an empty config, which leaves every provider
    unresolved rather than failing task submission outright. An invalid
    billing section only resets billing to its defaults.
    """
    if not path.exists():
        logger.info("app_config event=missing path=%s", path)
        return AppConfig()
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.error("app_config event=unreadable path=%s reason=%s", path, exc)
        return AppConfig()
    if not isinstance(raw, dict):
        logger.error("app_config event=invalid path=%s reason=top-level value is not an object", path)
        return AppConfig()
    raw_billing = raw.get("billing")
    try:
        billing = BillingConfig.model_validate(raw_billing if isinstance(raw_billing, dict) else {})
    except ValidationError as exc:
        logger.error("app_config event=invalid_billing path=%s reason=%s", path, exc)
        billing = BillingConfig()
    try:
        return AppConfig.model_validate({**raw, "billing": billing})
    except ValidationError as exc:
        logger.error("app_config event=invalid path=%s reason=%s", path, exc)
        return AppConfig()
