"""Deep-mode synthesis: one aggregator call over all successful model answers.

Terms:
- Digest: each successful answer, truncated and headed with its model key.
- Aggregator: the provider configured under `aggregator_key` (DeepSeek by default).
- Downgrade: the aggregator answered, but not with JSON; the raw text is kept
  as the analysis summary and the run still counts as successful.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .app_config import AppConfig
from .dispatcher import ModelOutcome
from .errors import ParseError
from .extractor import parse_json_object
from .llm import ChatClientFactory
from .providers import AGGREGATOR_FALLBACK_MODEL, resolve_aggregator
from .storage.base import PipelineStorage

logger = logging.getLogger(__name__)

SYNTHESIS_PROGRESS = 85
SYNTHESIS_MAX_TOKENS = 1400
SYNTHESIS_TEMPERATURE = 0.2
SUMMARY_CHARS = 140
RAW_SUMMARY_CHARS = 2000
NON_JSON_WARNING = "aggregator returned non-JSON, downgraded to text summary"
NO_OUTPUTS_ERROR = "No successful model outputs"

SYNTHESIS_SYSTEM_PROMPT = (
    "You are a market research and generative-engine-optimization analyst. "
    "Your output must be strict JSON."
)
REPORT_SCHEMA_LINES = (
    "{",
    '  "summary": string,',
    '  "sentiment": "Positive"|"Neutral"|"Mixed",',
    '  "topKeywords": string[],',
    '  "geoMetrics": { "brandMentionRate": number, "productBindingRate": number, '
    '"topRankingRate": number, "citationRate": number, "semanticConsistency": number },',
    '  "keywordExpansion": { "term": string, "volume": string, "difficulty": number, '
    '"intent": string }[],',
    '  "competitors": { "name": string, "url": string, "aiVisibility": number, '
    '"strengths": string[], "weaknesses": string[] }[],',
    '  "contentGaps": { "topic": string, "importance": "High"|"Medium"|"Low", '
    '"currentCoverage": number, "suggestion": string }[],',
    '  "geoTactics": { "title": string, "desc": string, "impact": "High"|"Medium"|"Low", '
    '"icon": string, "category": "Crawlable"|"Understandable"|"Citeable" }[],',
    '  "aiVisibilityBreakdown": { "engine": string, "score": number }[]',
    "}",
)


class SynthesisReport(BaseModel):
    """Aggregator JSON. Unknown keys are kept; mistyped known keys fall back to empty."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    summary: str = ""
    sentiment: str | None = None
    top_keywords: list[Any] = Field(default_factory=list, alias="topKeywords")
    geo_metrics: dict[str, Any] = Field(default_factory=dict, alias="geoMetrics")
    keyword_expansion: list[Any] = Field(default_factory=list, alias="keywordExpansion")
    competitors: list[Any] = Field(default_factory=list)
    content_gaps: list[Any] = Field(default_factory=list, alias="contentGaps")
    geo_tactics: list[Any] = Field(default_factory=list, alias="geoTactics")
    ai_visibility_breakdown: list[Any] = Field(default_factory=list, alias="aiVisibilityBreakdown")

    @field_validator("summary", mode="before")
    @classmethod
    def _text_or_empty(cls, value: Any) -> str:
        return value.strip() if isinstance(value, str) else ""

    @field_validator("sentiment", mode="before")
    @classmethod
    def _text_or_none(cls, value: Any) -> str | None:
        return value if isinstance(value, str) else None

    @field_validator(
        "top_keywords",
        "keyword_expansion",
        "competitors",
        "content_gaps",
        "geo_tactics",
        "ai_visibility_breakdown",
        mode="before",
    )
    @classmethod
    def _list_or_empty(cls, value: Any) -> list[Any]:
        return value if isinstance(value, list) else []

    @field_validator("geo_metrics", mode="before")
    @classmethod
    def _object_or_empty(cls, value: Any) -> dict[str, Any]:
        return value if isinstance(value, dict) else {}


@dataclass(frozen=True, slots=True)
class SynthesisOutcome:
    run_id: str
    succeeded: bool
    analysis: dict[str, Any] | None = None
    summary: str | None = None
    warning: str | None = None
    error: str | None = None


def build_digest(outcomes: list[ModelOutcome], *, chars_per_model: int) -> str:
    """Join successful answers as `【key】\\n<text>` blocks in caller order."""
    return "\n\n".join(
        f"【{outcome.model_key}】\n{outcome.response_text[:chars_per_model]}"
        for outcome in outcomes
        if outcome.succeeded
    )


def build_synthesis_prompt(prompt: str, digest: str) -> str:
    return "\n".join(
        [
            f"Query: {prompt}",
            "Produce an in-depth synthesis of the multi-model outputs below and return strict "
            "JSON (no markdown, no extra text).",
            "JSON fields:",
            *REPORT_SCHEMA_LINES,
            "",
            "Multi-model outputs:",
            digest,
        ]
    )


class SynthesisStage:
    """Create and complete the single ANALYSIS run of a deep-mode task."""

    def __init__(
        self,
        *,
        storage: PipelineStorage,
        client_factory: ChatClientFactory,
        aggregator_key: str = "DeepSeek",
        fallback_model: str = AGGREGATOR_FALLBACK_MODEL,
        timeout_s: float = 120.0,
        chars_per_model: int = 2000,
    ) -> None:
        self.storage = storage
        self.client_factory = client_factory
        self.aggregator_key = aggregator_key
        self.fallback_model = fallback_model
        self.timeout_s = timeout_s
        self.chars_per_model = chars_per_model

    def run(
        self,
        *,
        task_id: str,
        prompt: str,
        outcomes: list[ModelOutcome],
        config: AppConfig,
    ) -> SynthesisOutcome:
        digest = build_digest(outcomes, chars_per_model=self.chars_per_model)
        analysis_prompt = build_synthesis_prompt(prompt, digest)
        aggregator = resolve_aggregator(config, self.aggregator_key, fallback_model=self.fallback_model)

        if aggregator is None:
            message = f"Aggregator provider '{self.aggregator_key}' is not configured"
            return self._fail_without_call(
                task_id=task_id,
                provider=self.aggregator_key,
                model_name=self.fallback_model,
                prompt=analysis_prompt,
                message=message,
                log=f"Synthesis failed: {message}",
            )
        if not digest:
            return self._fail_without_call(
                task_id=task_id,
                provider=aggregator.provider,
                model_name=aggregator.model,
                prompt=analysis_prompt,
                message=NO_OUTPUTS_ERROR,
                log="Synthesis skipped: no successful model output",
            )

        run = self.storage.create_run(
            task_id=task_id,
            model_key=self.aggregator_key,
            provider=aggregator.provider,
            model_name=aggregator.model,
            purpose="ANALYSIS",
            status="RUNNING",
            prompt=analysis_prompt,
            started_at=datetime.now(tz=UTC),
        )
        self.storage.update_task(
            task_id,
            progress=SYNTHESIS_PROGRESS,
            log=f"Running cross-model synthesis with {aggregator.engine}...",
        )

        try:
            client = self.client_factory(aggregator)
            text = client.complete(
                messages=[
                    {"role": "system", "content": SYNTHESIS_SYSTEM_PROMPT},
                    {"role": "user", "content": analysis_prompt},
                ],
                max_tokens=SYNTHESIS_MAX_TOKENS,
                temperature=SYNTHESIS_TEMPERATURE,
                timeout_s=self.timeout_s,
            )
        except Exception as exc:  # noqa: BLE001
            message = str(exc) or exc.__class__.__name__
            self.storage.update_run(
                run.run_id,
                status="FAILED",
                error=message,
                completed_at=datetime.now(tz=UTC),
            )
            self.storage.update_task(task_id, log=f"Synthesis failed: {message}")
            logger.warning("synthesis event=call_failed task_id=%s reason=%s", task_id, message)
            return SynthesisOutcome(run_id=run.run_id, succeeded=False, error=message)

        try:
            report = _parse_report(text)
        except ParseError:
            return self._downgrade(task_id=task_id, run_id=run.run_id, text=text)

        analysis = report.model_dump(by_alias=True)
        self.storage.update_run(
            run.run_id,
            status="SUCCEEDED",
            response_text=text,
            response_json=analysis,
            completed_at=datetime.now(tz=UTC),
        )
        self.storage.update_task(task_id, log="Synthesis completed")
        logger.info("synthesis event=succeeded task_id=%s engine=%s", task_id, aggregator.engine)
        return SynthesisOutcome(
            run_id=run.run_id,
            succeeded=True,
            analysis=analysis,
            summary=report.summary[:SUMMARY_CHARS] or None,
        )

    def _downgrade(self, *, task_id: str, run_id: str, text: str) -> SynthesisOutcome:
        # Kept as-is for product review: non-JSON output still counts as a successful analysis.
        self.storage.update_run(
            run_id,
            status="SUCCEEDED",
            response_text=text,
            error=NON_JSON_WARNING,
            completed_at=datetime.now(tz=UTC),
        )
        self.storage.update_task(
            task_id,
            log="Synthesis completed with non-JSON output; downgraded to text summary",
        )
        logger.warning("synthesis event=downgraded task_id=%s chars=%d", task_id, len(text))
        return SynthesisOutcome(
            run_id=run_id,
            succeeded=True,
            analysis={"summary": text[:RAW_SUMMARY_CHARS]},
            summary=text.strip()[:SUMMARY_CHARS] or None,
            warning=NON_JSON_WARNING,
        )

    def _fail_without_call(
        self,
        *,
        task_id: str,
        provider: str,
        model_name: str,
        prompt: str,
        message: str,
        log: str,
    ) -> SynthesisOutcome:
        now = datetime.now(tz=UTC)
        run = self.storage.create_run(
            task_id=task_id,
            model_key=self.aggregator_key,
            provider=provider,
            model_name=model_name,
            purpose="ANALYSIS",
            status="FAILED",
            prompt=prompt,
            error=message,
            started_at=now,
            completed_at=now,
        )
        self.storage.update_task(task_id, log=log)
        logger.warning("synthesis event=not_attempted task_id=%s reason=%s", task_id, message)
        return SynthesisOutcome(run_id=run.run_id, succeeded=False, error=message)


def _parse_report(text: str) -> SynthesisReport:
    parsed = parse_json_object(text)
    try:
        return SynthesisReport.model_validate(parsed)
    except ValidationError as exc:
        raise ParseError(f"Aggregator JSON did not match the report shape: {exc}") from exc
