"""Chat completions transport for OpenAI-compatible provider endpoints.

Every call takes an explicit `timeout_s`; there are no automatic retries. All
transport, HTTP, and payload failures surface as `ProviderError`.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable, Iterable
from typing import Any, Protocol
from urllib import error, request

from .errors import ProviderError
from .providers import ResolvedProvider

logger = logging.getLogger(__name__)

STREAM_DONE_MARKER = "[DONE]"


class ChatClient(Protocol):
    """Interface used by the dispatcher, extractor, and synthesis stages."""

    def stream_completion(
        self,
        *,
        messages: list[dict[str, str]],
        max_tokens: int,
        temperature: float,
        timeout_s: float,
        model: str | None = None,
    ) -> str: ...

    def complete(
        self,
        *,
        messages: list[dict[str, str]],
        max_tokens: int,
        temperature: float,
        timeout_s: float,
        model: str | None = None,
    ) -> str: ...


ChatClientFactory = Callable[[ResolvedProvider], ChatClient]


class OpenAICompatibleClient:
    """Small chat completions client built on urllib."""

    def __init__(self, *, base_url: str, api_key: str, model: str) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model

    @classmethod
    def for_provider(cls, provider: ResolvedProvider) -> OpenAICompatibleClient:
        return cls(base_url=provider.base_url, api_key=provider.api_key, model=provider.model)

    def stream_completion(
        self,
        *,
        messages: list[dict[str, str]],
        max_tokens: int,
        temperature: float,
        timeout_s: float,
        model: str | None = None,
    ) -> str:
        """Issue a streaming request and return the concatenated delta text."""
        payload = self._payload(
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
            model=model,
            stream=True,
        )
        req = self._build_request(payload)
        try:
            with request.urlopen(req, timeout=timeout_s) as response:
                return "".join(_iter_stream_deltas(response))
        except error.HTTPError as exc:
            raise self._http_error(exc) from exc
        except (error.URLError, TimeoutError, OSError) as exc:
            raise ProviderError(f"Provider request failed: {exc}") from exc

    def complete(
        self,
        *,
        messages: list[dict[str, str]],
        max_tokens: int,
        temperature: float,
        timeout_s: float,
        model: str | None = None,
    ) -> str:
        """Issue a non-streaming request and return the first choice's text."""
        payload = self._payload(
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
            model=model,
            stream=False,
        )
        response_json = self._request(payload, timeout_s=timeout_s)
        return self._extract_content(response_json)

    def _payload(
        self,
        *,
        messages: list[dict[str, str]],
        max_tokens: int,
        temperature: float,
        model: str | None,
        stream: bool,
    ) -> dict[str, Any]:
        return {
            "model": model or self.model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "stream": stream,
        }

    def _build_request(self, payload: dict[str, Any]) -> request.Request:
        url = f"{self.base_url}/chat/completions"
        if _trace_enabled():
            logger.warning(
                "LLM trace request model=%s url=%s stream=%s",
                payload.get("model"),
                url,
                payload.get("stream"),
            )
        return request.Request(
            url=url,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )

    def _request(self, payload: dict[str, Any], timeout_s: float) -> dict[str, Any]:
        req = self._build_request(payload)
        try:
            with request.urlopen(req, timeout=timeout_s) as response:
                body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            raise self._http_error(exc) from exc
        except (error.URLError, TimeoutError, OSError) as exc:
            raise ProviderError(f"Provider request failed: {exc}") from exc
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError as exc:
            raise ProviderError(f"Provider returned invalid JSON: {body[:200]}") from exc
        if not isinstance(parsed, dict):
            raise ProviderError(f"Provider returned unexpected payload: {body[:200]}")
        return parsed

    @staticmethod
    def _http_error(exc: error.HTTPError) -> ProviderError:
        raw_error = exc.read().decode("utf-8", errors="replace") if exc.fp else ""
        return ProviderError(
            f"Provider API request failed with HTTP {exc.code}: {raw_error[:500]}",
            status_code=exc.code,
        )

    @staticmethod
    def _extract_content(response_json: dict[str, Any]) -> str:
        choices = response_json.get("choices")
        if not isinstance(choices, list) or not choices:
            raise ProviderError(
                f"Provider response did not contain choices: {json.dumps(response_json)[:200]}"
            )

        message = choices[0].get("message", {}) if isinstance(choices[0], dict) else {}
        content = message.get("content", "")
        if content is None:
            return ""
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            text_segments: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        text_segments.append(text)
            return "".join(text_segments)
        raise ProviderError("Provider response content could not be parsed as text")


def _iter_stream_deltas(lines: Iterable[bytes]) -> Iterable[str]:
    """Yield `choices[0].delta.content` from server-sent event lines."""
    for raw_line in lines:
        line = raw_line.decode("utf-8", errors="replace").strip()
        if not line or not line.startswith("data:"):
            continue
        data = line[len("data:"):].strip()
        if data == STREAM_DONE_MARKER:
            break
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            continue
        if not isinstance(chunk, dict):
            continue
        if "error" in chunk:
            raise ProviderError(f"Provider stream error: {json.dumps(chunk['error'])[:300]}")
        choices = chunk.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            continue
        delta = choices[0].get("delta") or {}
        content = delta.get("content") if isinstance(delta, dict) else None
        if isinstance(content, str) and content:
            yield content


def default_client_factory(provider: ResolvedProvider) -> ChatClient:
    return OpenAICompatibleClient.for_provider(provider)


def _trace_enabled() -> bool:
    return os.getenv("GEOSCAN_LLM_TRACE", "0").strip() == "1"
