"""Content extraction: brands and cited sources from a model answer.

Primary path asks the same provider for strict JSON. When that call fails or
returns something unparseable, `parse_reference_sources` scans the answer for
a references section instead. `ContentExtractor.extract` never raises.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Literal
from urllib.parse import urlsplit

from pydantic import BaseModel, Field

from .errors import ParseError
from .llm import ChatClientFactory
from .providers import ResolvedProvider

logger = logging.getLogger(__name__)

SOURCE_ICON = "🌐"

# Second-level domain label -> display name.
SITE_NAMES: dict[str, str] = {
    "sohu": "搜狐",
    "baidu": "百度",
    "163": "网易",
    "jobui": "职友集",
    "iwanshang": "万商云集",
    "jsw": "金山网",
    "58": "58同城",
    "zhihu": "知乎",
    "juejin": "掘金",
}

REFERENCE_SECTION_PATTERN = re.compile(
    r"(?:参考资料|引用来源|参考链接|References|Sources)\s*[:：]?[ \t]*\n([\s\S]*?)(?:\n\s*\n|$)",
    re.IGNORECASE,
)
MARKDOWN_LINK_PATTERN = re.compile(r"\[([^\]]+)\]\((https?://[^)\s]+)\)")
FENCED_BLOCK_PATTERN = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
HOST_PREFIX_PATTERN = re.compile(r"^(?:www\.|m\.)")

EXTRACTION_SYSTEM_PROMPT = (
    "You are a content analysis assistant that extracts structured information from text."
)


class SourceRef(BaseModel):
    id: int
    title: str = ""
    url: str
    domain: str = ""
    site: str = ""
    icon: str = SOURCE_ICON


class ExtractionResult(BaseModel):
    brands: list[str] = Field(default_factory=list)
    sources: list[SourceRef] = Field(default_factory=list)
    method: Literal["model", "regex", "none"] = "none"


def parse_json_object(text: str) -> dict[str, Any]:
    """Locate a JSON object in model output.

    Tried in order: the whole text, the first fenced code block, then the span
    from the first `{` to the last `}`. Raises ParseError when none parse to an
    object.
    """
    if not isinstance(text, str) or not text.strip():
        raise ParseError("Empty model output")
    candidates = [text.strip()]
    fenced = FENCED_BLOCK_PATTERN.search(text)
    if fenced and fenced.group(1).strip():
        candidates.append(fenced.group(1).strip())
    first = text.find("{")
    last = text.rfind("}")
    if first >= 0 and last > first:
        candidates.append(text[first : last + 1].strip())

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    raise ParseError(f"No JSON object found in model output: {text[:200]!r}")


def domain_for(url: str) -> str:
    host = urlsplit(url).hostname or ""
    if not host:
        parts = url.split("/")
        host = parts[2] if len(parts) > 2 else ""
    return HOST_PREFIX_PATTERN.sub("", host.lower())


def site_name_for(domain: str) -> str:
    labels = [label for label in domain.split(".") if label]
    label = labels[-2] if len(labels) >= 2 else domain
    return SITE_NAMES.get(label, label)


def normalize_source(raw: Any, index: int) -> SourceRef | None:
    """Coerce one model-provided source into a `SourceRef`; None when it has no usable URL."""
    if not isinstance(raw, dict):
        return None
    url = raw.get("url")
    if not isinstance(url, str) or not url.strip():
        return None
    url = url.strip()
    domain = domain_for(url)
    site = raw.get("site") if isinstance(raw.get("site"), str) else ""
    title = raw.get("title") if isinstance(raw.get("title"), str) else ""
    return SourceRef(
        id=index,
        title=title.strip(),
        url=url,
        domain=domain,
        site=site.strip() or site_name_for(domain),
    )


def parse_reference_sources(content: str) -> list[SourceRef]:
    """Pull markdown links out of a references-style section.

    Pure function of `content`: the same input always yields the same list.
    """
    if not content:
        return []
    section = REFERENCE_SECTION_PATTERN.search(content)
    if section is None:
        return []
    sources: list[SourceRef] = []
    for line in section.group(1).splitlines():
        match = MARKDOWN_LINK_PATTERN.search(line)
        if match is None:
            continue
        url = match.group(2).strip()
        domain = domain_for(url)
        sources.append(
            SourceRef(
                id=len(sources) + 1,
                title=match.group(1).strip(),
                url=url,
                domain=domain,
                site=site_name_for(domain),
            )
        )
    return sources


class ContentExtractor:
    """Extract brands and sources, downgrading to the regex scan on any failure."""

    def __init__(
        self,
        *,
        client_factory: ChatClientFactory,
        model: str = "deepseek-chat",
        timeout_s: float = 60.0,
    ) -> None:
        self.client_factory = client_factory
        self.model = model
        self.timeout_s = timeout_s

    def extract(self, *, provider: ResolvedProvider, prompt: str, content: str) -> ExtractionResult:
        if not content or not content.strip():
            return ExtractionResult()
        try:
            return self._extract_with_model(provider=provider, prompt=prompt, content=content)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "extractor event=model_failed provider=%s reason=%s",
                provider.provider,
                exc,
            )
        try:
            return ExtractionResult(sources=parse_reference_sources(content), method="regex")
        except Exception:  # noqa: BLE001
            logger.exception("extractor event=regex_failed provider=%s", provider.provider)
            return ExtractionResult()

    def _extract_with_model(
        self,
        *,
        provider: ResolvedProvider,
        prompt: str,
        content: str,
    ) -> ExtractionResult:
        client = self.client_factory(provider)
        text = client.complete(
            messages=[
                {"role": "system", "content": EXTRACTION_SYSTEM_PROMPT},
                {"role": "user", "content": _build_extraction_prompt(prompt, content)},
            ],
            max_tokens=2000,
            temperature=0.1,
            timeout_s=self.timeout_s,
            model=self.model,
        )
        parsed = parse_json_object(text)

        raw_brands = parsed.get("brands") if isinstance(parsed.get("brands"), list) else []
        brands = [
            brand.strip()
            for brand in raw_brands
            if isinstance(brand, str) and brand.strip()
        ]
        raw_sources = parsed.get("sources") if isinstance(parsed.get("sources"), list) else []
        sources: list[SourceRef] = []
        for raw in raw_sources:
            source = normalize_source(raw, len(sources) + 1)
            if source is not None:
                sources.append(source)
        if not sources:
            sources = parse_reference_sources(content)
        return ExtractionResult(brands=brands, sources=sources, method="model")


def _build_extraction_prompt(prompt: str, content: str) -> str:
    return "\n".join(
        [
            "Analyze the AI answer below and extract the company/brand names and the reference links.",
            "",
            f"Original question: {prompt}",
            "",
            "AI answer:",
            content,
            "",
            "Return strict JSON only (no markdown code fences):",
            '{"brands": ["Company 1", "Company 2"], '
            '"sources": [{"title": "Title", "url": "https://...", "site": "Site name"}]}',
            "",
            "Rules:",
            "1. brands lists every company or brand named in the answer, using full names.",
            "2. sources lists every link in the answer's references section with title and URL.",
            "3. site is the display name of the URL's website (for example sohu.com -> 搜狐).",
        ]
    )
