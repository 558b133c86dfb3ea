"""
BattleGym — LLM Provider Abstraction

Every simulated turn and every referee judgment goes through this interface.
Supports OpenAI and Anthropic Claude.

Includes retry with exponential backoff for transient errors (429, 503, 529).
Retries are transport-level only: a battle that still fails after them is a
unit failure and is not re-run.
"""

from __future__ import annotations

import asyncio
import contextlib
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import httpx
import structlog

if TYPE_CHECKING:
    from battlegym.config import LLMConfig

logger = structlog.get_logger()

_MAX_RETRIES = 2
_BASE_DELAY_S = 0.5
_RETRYABLE_STATUS_CODES = {429, 503, 529}


class Message:
    """A chat message."""

    def __init__(self, role: str, content: str) -> None:
        self.role = role
        self.content = content

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


class LLMResponse:
    """Response from an LLM call."""

    def __init__(
        self,
        text: str,
        model: str = "",
        input_tokens: int = 0,
        output_tokens: int = 0,
        finish_reason: str = "stop",
    ) -> None:
        self.text = text
        self.model = model
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.finish_reason = finish_reason

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class LLMProvider(ABC):
    """Abstract interface for LLM calls."""

    model: str

    @abstractmethod
    async def generate(
        self,
        system_prompt: str,
        messages: list[Message],
        max_tokens: int = 2000,
        temperature: float = 0.7,
        output_format: str | None = None,
    ) -> LLMResponse:
        """Full generation call. output_format="json" requests a JSON object."""
        ...

    async def evaluate(
        self,
        prompt: str,
        max_tokens: int = 800,
        temperature: float = 0.3,
        system_prompt: str = "You are an evaluator. Be precise and concise.",
    ) -> LLMResponse:
        """Short evaluation call returning JSON (lower temp, smaller output)."""
        return await self.generate(
            system_prompt=system_prompt,
            messages=[Message("user", prompt)],
            max_tokens=max_tokens,
            temperature=temperature,
            output_format="json",
        )

    @abstractmethod
    async def close(self) -> None:
        """Clean up resources."""
        ...


async def _post_with_retry(
    client: httpx.AsyncClient, path: str, payload: dict[str, Any],
) -> dict[str, Any]:
    """POST with exponential backoff on retryable status codes."""
    last_exc: Exception | None = None
    for attempt in range(_MAX_RETRIES + 1):
        try:
            response = await client.post(path, json=payload)
            if response.status_code in _RETRYABLE_STATUS_CODES and attempt < _MAX_RETRIES:
                delay = _BASE_DELAY_S * (2 ** attempt)
                # Respect Retry-After header if present
                retry_after = response.headers.get("retry-after")
                if retry_after:
                    with contextlib.suppress(ValueError):
                        delay = max(delay, float(retry_after))
                logger.warning(
                    "llm_retrying",
                    status=response.status_code,
                    attempt=attempt + 1,
                    delay_s=round(delay, 1),
                )
                await asyncio.sleep(delay)
                continue
            response.raise_for_status()
            return response.json()  # type: ignore[no-any-return]
        except httpx.TimeoutException as exc:
            last_exc = exc
            if attempt < _MAX_RETRIES:
                delay = _BASE_DELAY_S * (2 ** attempt)
                logger.warning(
                    "llm_timeout_retrying",
                    attempt=attempt + 1,
                    delay_s=round(delay, 1),
                )
                await asyncio.sleep(delay)
                continue
            raise
        except httpx.HTTPStatusError as exc:
            # Include API error details in the exception message
            body = ""
            with contextlib.suppress(Exception):
                body = exc.response.text[:500]
            raise httpx.HTTPStatusError(
                message=f"{exc.response.status_code}: {body}",
                request=exc.request,
                response=exc.response,
            ) from exc
    raise last_exc or RuntimeError("LLM request failed after retries")


class OpenAIProvider(LLMProvider):
    """OpenAI chat completions (gpt-4o, gpt-4o-mini)."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        base_url: str = "https://api.openai.com/v1",
        timeout_s: float = 60.0,
    ) -> None:
        self.model = model
        clean_key = api_key.strip()
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {clean_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout_s,
        )

    async def generate(
        self,
        system_prompt: str,
        messages: list[Message],
        max_tokens: int = 2000,
        temperature: float = 0.7,
        output_format: str | None = None,
    ) -> LLMResponse:
        # OpenAI uses system message inside the messages array
        all_messages: list[dict[str, str]] = []
        if system_prompt:
            all_messages.append({"role": "system", "content": system_prompt})
        for m in messages:
            content = m.content if m.content else " "  # OpenAI rejects empty content
            all_messages.append({"role": m.role, "content": content})

        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": all_messages,
        }
        if output_format == "json":
            payload["response_format"] = {"type": "json_object"}

        data = await _post_with_retry(self._client, "/chat/completions", payload)

        choices = data.get("choices", [])
        text = choices[0]["message"]["content"] if choices else ""
        usage = data.get("usage", {})

        return LLMResponse(
            text=text or "",
            model=data.get("model", self.model),
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
            finish_reason=choices[0].get("finish_reason", "stop") if choices else "stop",
        )

    async def close(self) -> None:
        await self._client.aclose()


class AnthropicProvider(LLMProvider):
    """Claude API provider."""

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-20250514",
        timeout_s: float = 60.0,
    ) -> None:
        self.model = model
        clean_key = api_key.strip()
        self._client = httpx.AsyncClient(
            base_url="https://api.anthropic.com/v1",
            headers={
                "x-api-key": clean_key,
                "anthropic-version": "2023-06-01",
                "content-type": "application/json",
            },
            timeout=timeout_s,
        )

    async def generate(
        self,
        system_prompt: str,
        messages: list[Message],
        max_tokens: int = 2000,
        temperature: float = 0.7,
        output_format: str | None = None,
    ) -> LLMResponse:
        system = system_prompt
        if output_format == "json":
            system = f"{system_prompt}\n\nRespond with a single JSON object and nothing else."
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "system": system,
            "messages": [m.to_dict() for m in messages],
        }

        data = await _post_with_retry(self._client, "/messages", payload)

        text = ""
        for block in data.get("content", []):
            if block.get("type") == "text":
                text += block.get("text", "")

        usage = data.get("usage", {})
        return LLMResponse(
            text=text,
            model=data.get("model", self.model),
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0),
            finish_reason=data.get("stop_reason", "stop"),
        )

    async def close(self) -> None:
        await self._client.aclose()


def create_llm_provider(config: LLMConfig, model: str) -> LLMProvider:
    """Factory to create the configured LLM provider bound to one model."""
    if config.provider == "openai":
        return OpenAIProvider(api_key=config.api_key, model=model, timeout_s=config.timeout_s)
    if config.provider == "anthropic":
        return AnthropicProvider(api_key=config.api_key, model=model, timeout_s=config.timeout_s)
    raise ValueError(f"Unknown LLM provider: {config.provider}")
