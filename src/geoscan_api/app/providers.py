"""Provider registry: map a logical model key to usable endpoint credentials.

Resolution is a pure function of the frozen `AppConfig` snapshot. Layering is
explicit: provider block first, then the global default record for any blank
field. Nothing here performs I/O.
"""

from __future__ import annotations

from dataclasses import dataclass

from .app_config import AppConfig, ProviderEntry

FALLBACK_MODEL = "gpt-3.5-turbo"
AGGREGATOR_FALLBACK_MODEL = "deepseek-chat"


@dataclass(frozen=True, slots=True)
class ResolvedProvider:
    """Merged, immutable credentials for one provider call."""

    key: str
    provider: str
    base_url: str
    api_key: str
    model: str

    @property
    def engine(self) -> str:
        return f"{self.provider}:{self.model}"


def resolve_provider(
    config: AppConfig,
    model_key: str,
    *,
    fallback_model: str = FALLBACK_MODEL,
) -> ResolvedProvider | None:
    """Resolve a selected model key for dispatch.

    Order: exact enabled match, then case-insensitive match. Returns None when
    the key is absent, disabled, or still lacks baseUrl/apiKey after merging
    defaults. Never falls back to an unrelated provider.
    """
    match = _find_enabled(config, model_key)
    if match is None:
        return None
    provider_id, entry = match
    return _merge(
        config,
        model_key=model_key,
        provider_id=provider_id,
        entry=entry,
        inherit_model=True,
        fallback_model=fallback_model,
    )


def resolve_aggregator(
    config: AppConfig,
    aggregator_key: str,
    *,
    fallback_model: str = AGGREGATOR_FALLBACK_MODEL,
) -> ResolvedProvider | None:
    """Resolve the synthesis provider.

    Credentials inherit from the defaults, the model name does not. A blank
    model falls back to `fallback_model`.
    """
    match = _find_enabled(config, aggregator_key)
    if match is None:
        return None
    provider_id, entry = match
    return _merge(
        config,
        model_key=aggregator_key,
        provider_id=provider_id,
        entry=entry,
        inherit_model=False,
        fallback_model=fallback_model,
    )


def resolve_for_connectivity_test(
    config: AppConfig,
    model_key: str | None = None,
    *,
    fallback_model: str = FALLBACK_MODEL,
) -> ResolvedProvider | None:
    """Resolution used only by the admin connectivity check.

    Same as `resolve_provider`, plus a last resort: the first enabled provider
    that is usable after merging. Dispatch must never use this function.
    """
    if model_key:
        resolved = resolve_provider(config, model_key, fallback_model=fallback_model)
        if resolved is not None:
            return resolved
    for provider_id, entry in config.providers.items():
        if not entry.enabled:
            continue
        resolved = _merge(
            config,
            model_key=provider_id,
            provider_id=provider_id,
            entry=entry,
            inherit_model=True,
            fallback_model=fallback_model,
        )
        if resolved is not None:
            return resolved
    return None


def _find_enabled(config: AppConfig, model_key: str) -> tuple[str, ProviderEntry] | None:
    providers = config.providers
    exact = providers.get(model_key)
    if exact is not None and exact.enabled:
        return model_key, exact

    wanted = model_key.strip().lower()
    if not wanted:
        return None
    for provider_id, entry in providers.items():
        if provider_id.strip().lower() == wanted and entry.enabled:
            return provider_id, entry
    return None


def _merge(
    config: AppConfig,
    *,
    model_key: str,
    provider_id: str,
    entry: ProviderEntry,
    inherit_model: bool,
    fallback_model: str,
) -> ResolvedProvider | None:
    base_url = entry.base_url or config.default_base_url
    api_key = entry.api_key or config.default_api_key
    if not base_url or not api_key:
        return None
    model = entry.model
    if not model and inherit_model:
        model = config.default_model
    return ResolvedProvider(
        key=model_key,
        provider=provider_id,
        base_url=base_url,
        api_key=api_key,
        model=model or fallback_model,
    )
