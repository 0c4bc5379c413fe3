"""Task pipeline: billing-gated submission followed by a detached execution unit.

Terms:
- Submission: validate, price, debit, and insert the task in one transaction.
- Execution: fan-out, optional synthesis, then exactly one terminal write.
- Config snapshot: the frozen `AppConfig` captured at submission and passed to
  every later stage of the same task.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from .app_config import AppConfig, load_app_config
from .dispatcher import FanoutDispatcher, ModelOutcome
from .errors import AccountNotFound, InsufficientBalance, InvalidTransition, PersistenceError
from .extractor import ContentExtractor
from .ledger import Ledger
from .llm import ChatClientFactory, default_client_factory
from .models import TaskMode, TaskRecord, TaskStatus
from .pricing import ChargeSplit, calculate_cost_units, daily_limit_for, split_charge, usage_date_for
from .providers import resolve_provider
from .settings import Settings
from .storage.base import PipelineStorage
from .synthesis import SUMMARY_CHARS, SynthesisOutcome, SynthesisStage

logger = logging.getLogger(__name__)

START_PROGRESS = 5
FINALIZE_PROGRESS = 95
DEBIT_REASON_PROMPT_CHARS = 50


@dataclass(frozen=True, slots=True)
class SubmittedTask:
    task: TaskRecord
    remaining_points: int
    config: AppConfig


def normalize_mode(mode: str | None) -> TaskMode:
    """Anything other than "deep" runs in quick mode."""
    if isinstance(mode, str) and mode.strip().lower() == "deep":
        return "deep"
    return "quick"


def normalize_models(selected_models: list[str]) -> list[str]:
    """Trim keys, drop blanks, and de-duplicate while keeping caller order."""
    seen: set[str] = set()
    output: list[str] = []
    for raw in selected_models:
        if not isinstance(raw, str):
            continue
        key = raw.strip()
        if not key or key in seen:
            continue
        seen.add(key)
        output.append(key)
    return output


class TaskPipeline:
    """Owns task status transitions from submission to the terminal write."""

    def __init__(
        self,
        *,
        storage: PipelineStorage,
        settings: Settings,
        client_factory: ChatClientFactory = default_client_factory,
        config_loader: Callable[[], AppConfig] | None = None,
        ledger: Ledger | None = None,
    ) -> None:
        self.storage = storage
        self.settings = settings
        self.ledger = ledger or Ledger(storage)
        self._config_loader = config_loader or (
            lambda: load_app_config(self.settings.app_config_path)
        )
        extractor = ContentExtractor(
            client_factory=client_factory,
            model=settings.extractor_model,
            timeout_s=settings.extractor_timeout_s,
        )
        self.dispatcher = FanoutDispatcher(
            storage=storage,
            client_factory=client_factory,
            extractor=extractor,
            timeout_s=settings.provider_timeout_s,
            max_workers=settings.max_fanout_workers,
            fallback_model=settings.fallback_model,
        )
        self.synthesis = SynthesisStage(
            storage=storage,
            client_factory=client_factory,
            aggregator_key=settings.aggregator_key,
            fallback_model=settings.aggregator_model,
            timeout_s=settings.provider_timeout_s,
            chars_per_model=settings.digest_chars_per_model,
        )

    def load_config(self) -> AppConfig:
        return self._config_loader()

    def submit(
        self,
        *,
        owner_id: str,
        prompt: str,
        mode: str | None,
        selected_models: list[str],
        config: AppConfig | None = None,
        now: datetime | None = None,
    ) -> SubmittedTask:
        """Validate, bill, and create a PENDING task without touching any provider.

        Raises ValueError for an empty prompt or model list, AccountNotFound for
        an unknown owner, and InsufficientBalance when the points part of the
        cost exceeds the balance. Nothing is written in the error cases.
        """
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValueError("Prompt must not be empty")
        models = normalize_models(selected_models)
        if not models:
            raise ValueError("At least one model must be selected")
        task_mode = normalize_mode(mode)
        snapshot = config if config is not None else self.load_config()
        billing = snapshot.billing
        cost_units = calculate_cost_units(selected_models=models, mode=task_mode, billing=billing)
        usage_date = usage_date_for(now or datetime.now(tz=UTC), timezone=self.settings.usage_timezone)
        billable = any(
            resolve_provider(snapshot, key, fallback_model=self.settings.fallback_model) is not None
            for key in models
        )

        with self.storage.transaction() as tx:
            account = tx.lock_account(owner_id)
            if account is None:
                raise AccountNotFound(owner_id)
            if billable:
                split = split_charge(
                    cost_units=cost_units,
                    daily_limit=daily_limit_for(account.plan, billing),
                    used_quota_units=tx.sum_quota_units(owner_id, usage_date),
                )
            else:
                # None of the selected models can run, so the task is not charged.
                split = ChargeSplit(cost_units=0, quota_units=0, points_units=0)
            remaining_points = account.points
            if split.points_units > 0:
                try:
                    remaining_points = self.ledger.debit(
                        owner_id,
                        split.points_units,
                        f"Run task: {prompt[:DEBIT_REASON_PROMPT_CHARS]}",
                        tx=tx,
                    )
                except InsufficientBalance as exc:
                    raise InsufficientBalance(
                        user_id=owner_id,
                        required_points=split.points_units,
                        current_points=exc.current_points,
                        cost_units=split.cost_units,
                        quota_units=split.quota_units,
                    ) from exc
            task = tx.insert_task(
                owner_id=owner_id,
                prompt=prompt,
                mode=task_mode,
                selected_models=models,
                cost_units=split.cost_units,
                quota_units=split.quota_units,
                points_units=split.points_units,
                usage_date=usage_date,
                logs=[
                    f"Task created: mode={task_mode} models={', '.join(models)}",
                    f"Billing: cost={split.cost_units} units "
                    f"(daily quota {split.quota_units}, points {split.points_units})",
                    *([] if billable else ["No configured provider for the selected models; task is not billed"]),
                ],
            )

        logger.info(
            "task_submit event=created task_id=%s owner_id=%s mode=%s models=%d "
            "cost_units=%d quota_units=%d points_units=%d remaining_points=%d",
            task.task_id,
            owner_id,
            task_mode,
            len(models),
            split.cost_units,
            split.quota_units,
            split.points_units,
            remaining_points,
        )
        return SubmittedTask(task=task, remaining_points=remaining_points, config=snapshot)

    def run(self, task_id: str, config: AppConfig) -> TaskRecord:
        """Execute a PENDING task to a terminal state.

        PersistenceError propagates and leaves the task in its last persisted
        state. Any other unexpected failure marks the task FAILED.
        """
        task = self.storage.get_task(task_id)
        if task is None:
            raise KeyError(f"Task {task_id} does not exist")
        if task.status != "PENDING":
            raise InvalidTransition(f"Task {task_id} already started ({task.status})")

        try:
            return self._execute(task, config)
        except PersistenceError:
            logger.exception("task_run event=persistence_failed task_id=%s", task_id)
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("task_run event=crashed task_id=%s", task_id)
            return self._fail_unexpectedly(task_id, exc)

    def run_detached(self, task_id: str, config: AppConfig) -> None:
        """Entry point for background execution; failures are logged, never re-raised."""
        try:
            self.run(task_id, config)
        except (PersistenceError, InvalidTransition, KeyError) as exc:
            logger.error("task_run event=aborted task_id=%s reason=%s", task_id, exc)

    def _execute(self, task: TaskRecord, config: AppConfig) -> TaskRecord:
        task_id = task.task_id
        logger.info(
            "task_run event=start task_id=%s mode=%s models=%d",
            task_id,
            task.mode,
            len(task.selected_models),
        )
        self.storage.update_task(
            task_id,
            status="RUNNING",
            progress=START_PROGRESS,
            log=f"Task started: querying {len(task.selected_models)} model(s)",
        )

        outcomes = self.dispatcher.dispatch(
            task_id=task_id,
            prompt=task.prompt,
            selected_models=task.selected_models,
            config=config,
        )
        succeeded = sum(1 for outcome in outcomes if outcome.succeeded)
        if succeeded == 0:
            self.storage.update_task(
                task_id,
                log="All provider calls failed; check provider configuration and connectivity",
            )

        synthesis: SynthesisOutcome | None = None
        if task.mode == "deep":
            synthesis = self.synthesis.run(
                task_id=task_id,
                prompt=task.prompt,
                outcomes=outcomes,
                config=config,
            )

        self.storage.update_task(task_id, progress=FINALIZE_PROGRESS, log="Assembling results")
        result = assemble_result(outcomes, synthesis)
        final_status: TaskStatus = (
            "COMPLETED"
            if succeeded > 0 and (synthesis is None or synthesis.succeeded)
            else "FAILED"
        )
        final = self.storage.update_task(
            task_id,
            status=final_status,
            progress=100,
            result=result,
            log=f"Task {final_status.lower()}: {succeeded}/{len(outcomes)} model(s) succeeded",
        )
        logger.info(
            "task_run event=completed task_id=%s status=%s succeeded=%d total=%d analysis=%s",
            task_id,
            final_status,
            succeeded,
            len(outcomes),
            _analysis_status(synthesis),
        )
        return final

    def _fail_unexpectedly(self, task_id: str, exc: Exception) -> TaskRecord:
        current = self.storage.get_task(task_id)
        if current is None:
            raise KeyError(f"Task {task_id} does not exist") from exc
        if current.is_terminal:
            return current
        if current.status == "PENDING":
            self.storage.update_task(task_id, status="RUNNING")
        return self.storage.update_task(
            task_id,
            status="FAILED",
            log=f"Unexpected pipeline failure: {exc}",
        )


def assemble_result(
    outcomes: list[ModelOutcome],
    synthesis: SynthesisOutcome | None,
) -> dict[str, Any]:
    """Build the task result payload from fan-out outcomes and the optional synthesis."""
    platform_data = {outcome.model_key: outcome.platform_entry() for outcome in outcomes}

    sources: list[dict[str, Any]] = []
    seen_urls: set[str] = set()
    brands: list[str] = []
    for outcome in outcomes:
        for source in outcome.extraction.sources:
            if source.url in seen_urls:
                continue
            seen_urls.add(source.url)
            sources.append({**source.model_dump(), "id": len(sources) + 1, "model_key": outcome.model_key})
        for brand in outcome.extraction.brands:
            if brand not in brands:
                brands.append(brand)

    analysis: dict[str, Any] | None = None
    summary: str | None = None
    if synthesis is not None and synthesis.succeeded:
        analysis = dict(synthesis.analysis or {})
        summary = synthesis.summary
    if not summary:
        first = next((outcome for outcome in outcomes if outcome.succeeded and outcome.response_text.strip()), None)
        if first is not None:
            summary = first.response_text.strip()[:SUMMARY_CHARS]
            if analysis is not None:
                analysis["summary"] = summary

    return {
        "platform_data": platform_data,
        "sources": sources,
        "brands": brands,
        "summary": summary or "",
        "analysis": analysis,
        "analysis_status": _analysis_status(synthesis),
        "analysis_warning": synthesis.warning if synthesis is not None else None,
        "analysis_error": synthesis.error if synthesis is not None else None,
        "models_total": len(outcomes),
        "models_succeeded": sum(1 for outcome in outcomes if outcome.succeeded),
    }


def _analysis_status(synthesis: SynthesisOutcome | None) -> str:
    if synthesis is None:
        return "skipped"
    return "succeeded" if synthesis.succeeded else "failed"
