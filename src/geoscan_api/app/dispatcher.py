from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .app_config import AppConfig
from .errors import ConfigurationError
from .extractor import ContentExtractor, ExtractionResult
from .llm import ChatClientFactory
from .providers import FALLBACK_MODEL, ResolvedProvider, resolve_provider
from .storage.base import PipelineStorage

logger = logging.getLogger(__name__)

FANOUT_PROGRESS_START = 10
FANOUT_PROGRESS_END = 80
MODEL_MAX_TOKENS = 4000
MODEL_TEMPERATURE = 0.7
EMPTY_RESPONSE_PLACEHOLDER = "No response from AI"


@dataclass(frozen=True, slots=True)
class ModelOutcome:
    """Terminal result of one MODEL run, in the shape the task result needs."""

    model_key: str
    run_id: str
    succeeded: bool
    engine: str
    response_text: str = ""
    error: str | None = None
    duration_ms: float = 0.0
    extraction: ExtractionResult = field(default_factory=ExtractionResult)

    def platform_entry(self) -> dict[str, Any]:
        if self.succeeded:
            response = self.response_text or EMPTY_RESPONSE_PLACEHOLDER
        else:
            response = f"Provider call failed: {self.error}"
        return {
            "engine": self.engine,
            "thinking": "",
            "response": response,
            "sources": [source.model_dump() for source in self.extraction.sources],
            "brands": list(self.extraction.brands),
            "succeeded": self.succeeded,
            "error": self.error,
        }


@dataclass(slots=True)
class _PendingCall:
    index: int
    model_key: str
    run_id: str
    provider: ResolvedProvider


class _ProgressTracker:
    """Maps completed-call count onto the 10-80 fan-out progress band."""

    def __init__(self, storage: PipelineStorage, task_id: str, total: int) -> None:
        self._storage = storage
        self._task_id = task_id
        self._total = max(1, total)
        self._done = 0
        self._lock = threading.Lock()

    def advance(self, log: str) -> None:
        with self._lock:
            self._done += 1
            span = FANOUT_PROGRESS_END - FANOUT_PROGRESS_START
            progress = FANOUT_PROGRESS_START + round(self._done * span / self._total)
            self._storage.update_task(self._task_id, progress=progress, log=log)


class FanoutDispatcher:
    """Send one prompt to every selected provider and record one MODEL run each."""

    def __init__(
        self,
        *,
        storage: PipelineStorage,
        client_factory: ChatClientFactory,
        extractor: ContentExtractor,
        timeout_s: float = 120.0,
        max_workers: int = 4,
        fallback_model: str = FALLBACK_MODEL,
    ) -> None:
        self.storage = storage
        self.client_factory = client_factory
        self.extractor = extractor
        self.timeout_s = timeout_s
        self.max_workers = max(1, max_workers)
        self.fallback_model = fallback_model

    def dispatch(
        self,
        *,
        task_id: str,
        prompt: str,
        selected_models: list[str],
        config: AppConfig,
    ) -> list[ModelOutcome]:
        """Run every selected model and return outcomes in caller order.

        Run rows are created up front in caller order. Unresolvable keys get a
        FAILED row immediately and never reach the network.
        """
        tracker = _ProgressTracker(self.storage, task_id, len(selected_models))
        outcomes: dict[int, ModelOutcome] = {}
        pending: list[_PendingCall] = []

        for index, model_key in enumerate(selected_models):
            try:
                provider = self._resolve(config, model_key)
            except ConfigurationError as exc:
                outcomes[index] = self._record_unresolved(
                    task_id=task_id,
                    prompt=prompt,
                    model_key=model_key,
                    message=str(exc),
                    tracker=tracker,
                )
                continue
            run = self.storage.create_run(
                task_id=task_id,
                model_key=model_key,
                provider=provider.provider,
                model_name=provider.model,
                purpose="MODEL",
                status="PENDING",
                prompt=prompt,
            )
            pending.append(
                _PendingCall(index=index, model_key=model_key, run_id=run.run_id, provider=provider)
            )

        if pending:
            workers = min(self.max_workers, len(pending))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fanout") as pool:
                futures: list[tuple[int, Future[ModelOutcome]]] = [
                    (
                        call.index,
                        pool.submit(self._call, task_id=task_id, prompt=prompt, call=call, tracker=tracker),
                    )
                    for call in pending
                ]
                for index, future in futures:
                    outcomes[index] = future.result()

        ordered = [outcomes[index] for index in range(len(selected_models))]
        logger.info(
            "fanout event=completed task_id=%s total=%d succeeded=%d",
            task_id,
            len(ordered),
            sum(1 for outcome in ordered if outcome.succeeded),
        )
        return ordered

    def _resolve(self, config: AppConfig, model_key: str) -> ResolvedProvider:
        provider = resolve_provider(config, model_key, fallback_model=self.fallback_model)
        if provider is None:
            raise ConfigurationError(
                f"No usable provider configuration for '{model_key}' "
                "(missing, disabled, or without baseUrl/apiKey)"
            )
        return provider

    def _record_unresolved(
        self,
        *,
        task_id: str,
        prompt: str,
        model_key: str,
        message: str,
        tracker: _ProgressTracker,
    ) -> ModelOutcome:
        now = datetime.now(tz=UTC)
        run = self.storage.create_run(
            task_id=task_id,
            model_key=model_key,
            provider=model_key,
            model_name="",
            purpose="MODEL",
            status="FAILED",
            prompt=prompt,
            error=message,
            started_at=now,
            completed_at=now,
        )
        logger.warning("fanout event=unresolved task_id=%s model_key=%s", task_id, model_key)
        tracker.advance(f"{model_key} skipped: provider not configured")
        return ModelOutcome(
            model_key=model_key,
            run_id=run.run_id,
            succeeded=False,
            engine=f"{model_key}:",
            error=message,
        )

    def _call(
        self,
        *,
        task_id: str,
        prompt: str,
        call: _PendingCall,
        tracker: _ProgressTracker,
    ) -> ModelOutcome:
        provider = call.provider
        started_perf = time.perf_counter()
        self.storage.update_run(call.run_id, status="RUNNING", started_at=datetime.now(tz=UTC))
        self.storage.update_task(task_id, log=f"Calling {call.model_key} ({provider.engine})...")
        logger.info(
            "fanout event=call_start task_id=%s model_key=%s engine=%s",
            task_id,
            call.model_key,
            provider.engine,
        )

        try:
            client = self.client_factory(provider)
            text = client.stream_completion(
                messages=[{"role": "user", "content": prompt}],
                max_tokens=MODEL_MAX_TOKENS,
                temperature=MODEL_TEMPERATURE,
                timeout_s=self.timeout_s,
            )
        except Exception as exc:  # noqa: BLE001
            message = str(exc) or exc.__class__.__name__
            self.storage.update_run(
                call.run_id,
                status="FAILED",
                error=message,
                completed_at=datetime.now(tz=UTC),
            )
            logger.warning(
                "fanout event=call_failed task_id=%s model_key=%s reason=%s",
                task_id,
                call.model_key,
                message,
            )
            tracker.advance(f"{call.model_key} failed: {message}")
            return ModelOutcome(
                model_key=call.model_key,
                run_id=call.run_id,
                succeeded=False,
                engine=provider.engine,
                error=message,
                duration_ms=_duration_ms(started_perf),
            )

        extraction = self.extractor.extract(provider=provider, prompt=prompt, content=text)
        self.storage.update_run(
            call.run_id,
            status="SUCCEEDED",
            response_text=text,
            response_json={
                "choices": [{"message": {"role": "assistant", "content": text}}],
                "model": provider.model,
                "stream": True,
                "extraction": extraction.model_dump(),
            },
            completed_at=datetime.now(tz=UTC),
        )
        logger.info(
            "fanout event=call_succeeded task_id=%s model_key=%s chars=%d extraction=%s",
            task_id,
            call.model_key,
            len(text),
            extraction.method,
        )
        tracker.advance(
            f"{call.model_key} finished: {len(extraction.brands)} brands, "
            f"{len(extraction.sources)} sources"
        )
        return ModelOutcome(
            model_key=call.model_key,
            run_id=call.run_id,
            succeeded=True,
            engine=provider.engine,
            response_text=text,
            duration_ms=_duration_ms(started_perf),
            extraction=extraction,
        )


def _duration_ms(started_perf: float) -> float:
    return round((time.perf_counter() - started_perf) * 1000, 2)
