"""
Multi-provider LLM abstraction layer.

Supports: Anthropic (Claude), Google (Gemini) and any local
OpenAI-compatible server (LM Studio, Ollama ``/v1``).

Each provider exposes the same ``complete(prompt) -> text`` surface; the
advisory client decides which providers to try and in what order.

Usage:
    providers = build_configured_providers()
    text = await providers[0].complete("Analyze this market")
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import httpx

from config import settings

logger = logging.getLogger(__name__)


# ==================== DATA CLASSES ====================


@dataclass
class LLMMessage:
    """A single message in a chat conversation."""

    role: str  # "system", "user", "assistant"
    content: str


@dataclass
class TokenUsage:
    """Token usage for a single LLM call."""

    input_tokens: int
    output_tokens: int
    total_tokens: int


@dataclass
class LLMResponse:
    """Response from an LLM provider."""

    content: str
    usage: Optional[TokenUsage] = None
    model: str = ""
    provider: str = ""
    latency_ms: int = 0


# ==================== ENUMS ====================


class LLMProvider(str, Enum):
    """Supported LLM providers."""

    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    LOCAL = "local"


def _ensure_openai_compatible_base_url(base_url: Optional[str], default_base_url: str) -> str:
    """``http://host:1234`` and ``http://host:1234/v1/`` both become ``http://host:1234/v1``."""
    normalized = ((base_url or "").strip() or default_base_url).rstrip("/")
    if not normalized:
        return default_base_url
    return normalized if normalized.endswith("/v1") else f"{normalized}/v1"


def _safe_response_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {}


def _first_text(mapping: dict, keys: tuple[str, ...]) -> Optional[str]:
    for key in keys:
        value = mapping.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _extract_error_message(data: Any, fallback: str) -> str:
    """Best readable message from an error payload, else the raw body.

    Anthropic and OpenAI nest ``{"error": {"message": ...}}``, LM Studio
    sends ``{"error": "..."}`` and some proxies use a top-level ``detail``.
    """
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            found = _first_text(error, ("message", "detail", "error"))
            if found:
                return found
            if error:
                return json.dumps(error, default=str)
        elif isinstance(error, str) and error.strip():
            return error.strip()
        elif error is not None:
            return str(error)
        found = _first_text(data, ("message", "detail"))
        if found:
            return found
    elif isinstance(data, str) and data.strip():
        return data.strip()
    elif data:
        return str(data)
    return (fallback or "").strip() or "Unknown error"


_THINK_BLOCK = re.compile(r"<think>[\s\S]*?</think>", flags=re.IGNORECASE)
_JSON_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", flags=re.IGNORECASE)


def _parse_structured_json_content(content: Any) -> Any:
    """Decode the JSON object in a model reply.

    Reasoning models prefix answers with ``<think>`` blocks and chat models
    like markdown fences or a sentence of preamble; each shape is tried in
    turn: the whole text, the fenced body, then the outermost ``{...}``.
    """
    if isinstance(content, dict):
        return content

    text = _THINK_BLOCK.sub("", str(content or "")).strip()
    if not text:
        raise RuntimeError("LLM returned empty JSON content")

    candidates = [text]
    fenced = _JSON_FENCE.search(text)
    if fenced:
        candidates.append(fenced.group(1).strip())
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])

    last_error: Optional[json.JSONDecodeError] = None
    for candidate in dict.fromkeys(c for c in candidates if c):
        try:
            return json.loads(candidate)
        except json.JSONDecodeError as exc:
            last_error = exc
    raise RuntimeError(f"LLM returned invalid JSON: {last_error}") from last_error


# ==================== RETRY LOGIC ====================

_MAX_RETRIES = 3
_BASE_DELAY = 1.0  # seconds


async def _retry_with_backoff(
    coro_factory, max_retries: int = _MAX_RETRIES, base_delay: float = _BASE_DELAY
):
    """Await ``coro_factory()`` until it yields a non-throttled response.

    429 and 5xx responses and transport errors are retried with doubling
    delays; the final failure is raised. Other statuses are returned so the
    provider can turn the error body into a message.
    """
    for attempt in range(max_retries):
        last_attempt = attempt == max_retries - 1
        delay = base_delay * (2**attempt)
        try:
            response = await coro_factory()
        except httpx.RequestError as exc:
            if last_attempt:
                raise
            logger.warning(
                "LLM request failed (%s), retry %d/%d in %.1fs",
                exc, attempt + 1, max_retries - 1, delay,
            )
            await asyncio.sleep(delay)
            continue

        if response.status_code != 429 and response.status_code < 500:
            return response
        if last_attempt:
            raise httpx.HTTPStatusError(
                f"HTTP {response.status_code}", request=response.request, response=response
            )
        logger.warning(
            "LLM request returned %d, retry %d/%d in %.1fs",
            response.status_code, attempt + 1, max_retries - 1, delay,
        )
        await asyncio.sleep(delay)

    raise RuntimeError("max_retries must be at least 1")


# ==================== BASE PROVIDER ====================


class BaseLLMProvider(ABC):
    """One chat-completion backend.

    Subclasses build the request payload and pull text and usage out of the
    reply; posting, retries and error reporting live here.
    """

    provider: LLMProvider
    error_label: str = "LLM API error"
    model: str
    temperature: float = 0.0
    max_tokens: int = 2048
    system_prompt: Optional[str] = None
    timeout: float = 120.0

    @property
    def name(self) -> str:
        return self.provider.value

    @abstractmethod
    async def chat(
        self,
        messages: list[LLMMessage],
        model: str,
        temperature: float = 0.0,
        max_tokens: int = 4096,
    ) -> LLMResponse:
        """Send ``messages`` and return the assistant's reply."""

    async def _post_json(self, url: str, headers: dict[str, str], payload: dict) -> tuple[Any, int]:
        """POST with retries; returns (decoded body, latency ms) or raises on non-200."""
        started = time.monotonic()
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await _retry_with_backoff(
                lambda: client.post(url, headers=headers, json=payload)
            )
        latency_ms = int((time.monotonic() - started) * 1000)

        data = _safe_response_json(response)
        if response.status_code != 200:
            message = _extract_error_message(data, response.text)
            raise RuntimeError(f"{self.error_label} ({response.status_code}): {message}")
        return data, latency_ms

    def _response(self, content: str, usage: TokenUsage, model: str, latency_ms: int) -> LLMResponse:
        return LLMResponse(
            content=content,
            usage=usage,
            model=model,
            provider=self.provider.value,
            latency_ms=latency_ms,
        )

    async def complete(self, prompt: str) -> str:
        """Single-turn completion using the provider's configured model."""
        messages = []
        if self.system_prompt:
            messages.append(LLMMessage(role="system", content=self.system_prompt))
        messages.append(LLMMessage(role="user", content=prompt))
        response = await self.chat(
            messages,
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        if not (response.content or "").strip():
            raise RuntimeError(f"{self.name} returned an empty response")
        return response.content


# ==================== ANTHROPIC PROVIDER ====================


class AnthropicProvider(BaseLLMProvider):
    """Anthropic Messages API; the system prompt is a top-level field."""

    provider = LLMProvider.ANTHROPIC
    error_label = "Anthropic API error"
    base_url = "https://api.anthropic.com/v1"

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-5-20250929",
        max_tokens: int = 2048,
        timeout: float = 120.0,
    ):
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout

    async def chat(
        self,
        messages: list[LLMMessage],
        model: str,
        temperature: float = 0.0,
        max_tokens: int = 4096,
    ) -> LLMResponse:
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        payload: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": m.role, "content": m.content} for m in messages if m.role != "system"
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if system:
            payload["system"] = system

        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": "2023-06-01",
            "Content-Type": "application/json",
        }
        data, latency_ms = await self._post_json(f"{self.base_url}/messages", headers, payload)

        text = "\n".join(
            block.get("text", "") for block in data.get("content", []) if block.get("type") == "text"
        )
        usage_data = data.get("usage", {})
        prompt_tokens = usage_data.get("input_tokens", 0)
        completion_tokens = usage_data.get("output_tokens", 0)
        usage = TokenUsage(prompt_tokens, completion_tokens, prompt_tokens + completion_tokens)
        return self._response(text, usage, model, latency_ms)


# ==================== GOOGLE PROVIDER ====================


class GoogleProvider(BaseLLMProvider):
    """Gemini ``generateContent``; assistant turns use the ``model`` role."""

    provider = LLMProvider.GOOGLE
    error_label = "Google API error"
    base_url = "https://generativelanguage.googleapis.com/v1beta"

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.0-flash",
        max_tokens: int = 2048,
        timeout: float = 120.0,
    ):
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout

    async def chat(
        self,
        messages: list[LLMMessage],
        model: str,
        temperature: float = 0.0,
        max_tokens: int = 4096,
    ) -> LLMResponse:
        payload: dict[str, Any] = {
            "contents": [
                {"role": "user" if m.role == "user" else "model", "parts": [{"text": m.content}]}
                for m in messages
                if m.role != "system"
            ],
            "generationConfig": {"temperature": temperature, "maxOutputTokens": max_tokens},
        }
        system = [m.content for m in messages if m.role == "system"]
        if system:
            # Gemini accepts one system instruction; the last one wins
            payload["systemInstruction"] = {"parts": [{"text": system[-1]}]}

        url = f"{self.base_url}/models/{model}:generateContent?key={self.api_key}"
        data, latency_ms = await self._post_json(url, {"Content-Type": "application/json"}, payload)

        candidates = data.get("candidates", [])
        if not candidates:
            raise RuntimeError("Google API returned no candidates")
        parts = candidates[0].get("content", {}).get("parts", [])
        text = "\n".join(part["text"] for part in parts if "text" in part)

        meta = data.get("usageMetadata", {})
        usage = TokenUsage(
            input_tokens=meta.get("promptTokenCount", 0),
            output_tokens=meta.get("candidatesTokenCount", 0),
            total_tokens=meta.get("totalTokenCount", 0),
        )
        return self._response(text, usage, model, latency_ms)


# ==================== LOCAL (OPENAI-COMPATIBLE) PROVIDER ====================

LOCAL_SYSTEM_PROMPT = (
    "You are a professional prediction market trader analyzing markets on "
    "Polymarket. You MUST respond with ONLY valid JSON in the exact format "
    "requested. Do NOT include explanations, thinking, or extra text."
)


class LocalOpenAICompatibleProvider(BaseLLMProvider):
    """Local model served through an OpenAI-compatible ``/v1`` API.

    LM Studio and Ollama both accept any bearer token, so a placeholder is
    sent when no key is configured.
    """

    provider = LLMProvider.LOCAL
    error_label = "Local LLM error"

    def __init__(
        self,
        base_url: str = "http://localhost:1234/v1",
        model: str = "qwen3-8b",
        temperature: float = 0.3,
        max_tokens: int = 2000,
        api_key: Optional[str] = None,
        timeout: float = 120.0,
    ):
        self.base_url = _ensure_openai_compatible_base_url(base_url, "http://localhost:1234/v1")
        self.api_key = api_key or "lm-studio"
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.system_prompt = LOCAL_SYSTEM_PROMPT
        self.timeout = timeout

    async def chat(
        self,
        messages: list[LLMMessage],
        model: str,
        temperature: float = 0.0,
        max_tokens: int = 4096,
    ) -> LLMResponse:
        payload = {
            "model": model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        data, latency_ms = await self._post_json(f"{self.base_url}/chat/completions", headers, payload)

        choices = data.get("choices") or []
        if not choices:
            raise RuntimeError("Local LLM returned no choices")
        content = (choices[0].get("message") or {}).get("content") or ""

        usage_data = data.get("usage", {})
        usage = TokenUsage(
            input_tokens=usage_data.get("prompt_tokens", 0),
            output_tokens=usage_data.get("completion_tokens", 0),
            total_tokens=usage_data.get("total_tokens", 0),
        )
        return self._response(content, usage, model, latency_ms)


def build_configured_providers() -> list[BaseLLMProvider]:
    """Providers in fallback order, skipping any without configuration."""
    timeout = float(settings.ADVISORY_TIMEOUT_SECONDS)
    providers: list[BaseLLMProvider] = []
    if settings.ANTHROPIC_API_KEY:
        providers.append(
            AnthropicProvider(
                api_key=settings.ANTHROPIC_API_KEY,
                model=settings.ANTHROPIC_MODEL,
                max_tokens=settings.ANTHROPIC_MAX_TOKENS,
                timeout=timeout,
            )
        )
    if settings.GOOGLE_API_KEY:
        providers.append(
            GoogleProvider(
                api_key=settings.GOOGLE_API_KEY,
                model=settings.GOOGLE_MODEL,
                timeout=timeout,
            )
        )
    if settings.LOCAL_LLM_URL:
        providers.append(
            LocalOpenAICompatibleProvider(
                base_url=settings.LOCAL_LLM_URL,
                model=settings.LOCAL_LLM_MODEL,
                temperature=settings.LOCAL_LLM_TEMPERATURE,
                max_tokens=settings.LOCAL_LLM_MAX_TOKENS,
                timeout=timeout,
            )
        )
    if not providers:
        logger.warning("No advisory providers configured; markets will not be analyzed")
    return providers
