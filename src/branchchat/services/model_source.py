"""Upstream model boundary.

The streaming pipeline only needs two things from a provider: a token stream
for a prompt and model, or a final text. ``OpenRouterClient`` speaks the
OpenAI-compatible chat completions API; ``FallbackModelSource`` keeps the
service usable when no provider key is configured.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Protocol

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..domain.errors import UpstreamFailure


LOG = logging.getLogger("branchchat.llm")

DEFAULT_MODEL = "meta-llama/llama-3.3-8b-instruct:free"
SYSTEM_PROMPT = (
    "You are a helpful AI assistant in a chat application. Be concise, friendly, and helpful. "
    "If the conversation is collaborative with multiple users, acknowledge that context appropriately."
)


class ModelSource(Protocol):
    def stream(self, messages: List[Dict[str, str]], model: str) -> Iterator[str]: ...

    def complete(self, messages: List[Dict[str, str]], model: str) -> str: ...


@dataclass
class ModelSourceConfig:
    api_key: Optional[str]
    base_url: str = "https://openrouter.ai/api/v1"
    default_model: str = DEFAULT_MODEL
    connect_timeout: int = 3
    read_timeout: int = 60
    app_url: Optional[str] = None

    @staticmethod
    def from_env() -> "ModelSourceConfig":
        return ModelSourceConfig(
            api_key=os.getenv("OPENROUTER_API_KEY") or None,
            base_url=(os.getenv("OPENROUTER_BASE_URL") or "https://openrouter.ai/api/v1").rstrip("/"),
            default_model=os.getenv("BRANCHCHAT_DEFAULT_MODEL") or DEFAULT_MODEL,
            connect_timeout=int(os.getenv("BRANCHCHAT_LLM_CONNECT_TIMEOUT", "3")),
            read_timeout=int(os.getenv("BRANCHCHAT_LLM_READ_TIMEOUT", "60")),
            app_url=os.getenv("BRANCHCHAT_APP_URL") or None,
        )


def _build_session() -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=2,
        backoff_factor=0.5,
        status_forcelist=(500, 502, 503, 504),
        allowed_methods=frozenset(["POST", "GET"]),
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def _provider_details(exc: BaseException) -> Optional[str]:
    response = getattr(exc, "response", None)
    if response is None:
        return None
    parts = [f"Provider response: {getattr(response, 'status_code', '')} {getattr(response, 'reason', '') or ''}".strip()]
    try:
        body = response.text
    except Exception:
        body = None
    if body:
        parts.append(f"Body: {body[:500]}")
    return " | ".join(parts)


def classify_upstream_error(exc: BaseException) -> UpstreamFailure:
    """Map a provider or transport exception onto a coded ``UpstreamFailure``."""
    if isinstance(exc, UpstreamFailure):
        return exc
    details = _provider_details(exc)
    response = getattr(exc, "response", None)
    status_code = getattr(response, "status_code", None)
    text = f"{exc} {details or ''}".lower()

    if status_code == 429 or "rate limit" in text or "429" in text:
        return UpstreamFailure(
            "Rate Limit Exceeded",
            code="RATE_LIMIT",
            details=details or "Too many requests to the AI service",
            suggestion="Please wait a moment before sending another message",
            status_code=429,
        )
    if status_code == 402 or "quota" in text or "billing" in text:
        return UpstreamFailure(
            "Service Quota Exceeded",
            code="QUOTA_EXCEEDED",
            details=details or "API usage quota has been exceeded",
            suggestion="Please check your API key billing status or try again later",
            status_code=402,
        )
    if status_code in (401, 403) or "authentication" in text or "401" in text:
        return UpstreamFailure(
            "Authentication Error",
            code="AUTH_ERROR",
            details=details or "Invalid or expired API key",
            suggestion="Please check your API key configuration in Settings",
            status_code=401,
        )
    if "content policy" in text or "safety" in text:
        return UpstreamFailure(
            "Content Policy Violation",
            code="CONTENT_POLICY",
            details=details or "The request was rejected due to content policy",
            suggestion="Please modify your message to comply with content guidelines",
            status_code=400,
        )
    if isinstance(exc, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
        return UpstreamFailure(
            "Network Error",
            code="NETWORK_ERROR",
            details=str(exc),
            suggestion="Please check your connection and try again",
            status_code=503,
        )
    return UpstreamFailure(
        "Streaming Error",
        code="STREAM_ERROR",
        details=(details + " | " if details else "") + (str(exc) or "Failed to stream AI response"),
        suggestion="Please try again or contact support if the issue persists",
    )


class OpenRouterClient:
    def __init__(self, config: ModelSourceConfig, session: Optional[requests.Session] = None) -> None:
        self._config = config
        self._session = session or _build_session()

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._config.api_key}",
            "Content-Type": "application/json",
            "X-Title": "BranchChat",
        }
        if self._config.app_url:
            headers["HTTP-Referer"] = self._config.app_url
        return headers

    def _payload(self, messages: List[Dict[str, str]], model: str, stream: bool) -> Dict[str, Any]:
        return {
            "model": model or self._config.default_model,
            "messages": messages,
            "stream": stream,
            "temperature": 0.7,
        }

    def stream(self, messages: List[Dict[str, str]], model: str) -> Iterator[str]:
        LOG.debug("llm_stream", extra={"model": model, "base_url": self._config.base_url})
        with self._session.post(
            f"{self._config.base_url}/chat/completions",
            json=self._payload(messages, model, stream=True),
            headers=self._headers(),
            timeout=(self._config.connect_timeout, self._config.read_timeout),
            stream=True,
        ) as resp:
            resp.raise_for_status()
            for raw_line in resp.iter_lines():
                if not raw_line:
                    continue
                line = raw_line.decode("utf-8") if isinstance(raw_line, bytes) else raw_line
                if not line.startswith("data: "):
                    continue
                data = line[6:].strip()
                if data == "[DONE]":
                    break
                try:
                    parsed = json.loads(data)
                except json.JSONDecodeError:
                    continue
                if parsed.get("error"):
                    err = parsed["error"]
                    raise UpstreamFailure(
                        "Streaming Error",
                        code="STREAM_ERROR",
                        details=str(err.get("message") if isinstance(err, dict) else err),
                    )
                delta = (parsed.get("choices") or [{}])[0].get("delta") or {}
                token = delta.get("content") or ""
                if token:
                    yield token

    def complete(self, messages: List[Dict[str, str]], model: str) -> str:
        resp = self._session.post(
            f"{self._config.base_url}/chat/completions",
            json=self._payload(messages, model, stream=False),
            headers=self._headers(),
            timeout=(self._config.connect_timeout, self._config.read_timeout),
        )
        resp.raise_for_status()
        data = resp.json()
        choices = data.get("choices") or []
        content = ((choices[0].get("message") or {}).get("content") if choices else None) or ""
        if not content:
            raise UpstreamFailure("No response from AI", code="STREAM_ERROR")
        return content


class FallbackModelSource:
    """Deterministic replies used when no provider key is configured."""

    def complete(self, messages: List[Dict[str, str]], model: str) -> str:
        last_user = next((m["content"] for m in reversed(messages) if m.get("role") == "user"), "")
        snippet = last_user.strip()[:80]
        return (
            f"No AI provider is configured, so I can't answer \"{snippet}\" right now. "
            "Set OPENROUTER_API_KEY to enable model replies."
        )

    def stream(self, messages: List[Dict[str, str]], model: str) -> Iterator[str]:
        words = self.complete(messages, model).split(" ")
        for idx, word in enumerate(words):
            yield word if idx == len(words) - 1 else word + " "


_source: Optional[ModelSource] = None


def get_model_source() -> ModelSource:
    global _source
    if _source is not None:
        return _source
    config = ModelSourceConfig.from_env()
    if config.api_key:
        _source = OpenRouterClient(config)
    else:
        LOG.warning("llm_provider_unconfigured_using_fallback")
        _source = FallbackModelSource()
    return _source


def build_prompt_messages(history: List[Dict[str, str]], prompt: str) -> List[Dict[str, str]]:
    return [{"role": "system", "content": SYSTEM_PROMPT}, *history, {"role": "user", "content": prompt}]
