"""Model transports behind the decision provider.

- `X402ChatProvider`: pay-per-call chat endpoint; payment goes through the
  platform client's 402 layer, transient network failures are retried.
- `OpenRouterProvider`: OpenRouter SDK with preset routes and model fallback.

Both return the assistant text with markdown fences removed. Parsing the text
into a decision is not their job.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional

from src.agents.decision import strip_code_fences
from src.config import ConfigError, ModelSelection
from src.execution.errors import NetworkError, PlatformError, RateLimitError
from src.execution.retry import RetryPolicy
from Utils.openrouter import (
    OpenRouterConfigError,
    RoutedModel,
    RoutingConfig,
    preset_config,
    routed_chat_completion,
)


def _is_transport_error(exc: BaseException) -> bool:
    return isinstance(exc, (NetworkError, RateLimitError))


def extract_response_text(data: Any) -> str:
    """Pull assistant text out of the response shapes chat gateways return."""
    if isinstance(data, str):
        return data
    if isinstance(data, dict):
        content = data.get("content")
        if isinstance(content, str):
            return content
        choices = data.get("choices")
        if isinstance(choices, list) and choices:
            msg = (choices[0] or {}).get("message") or {}
            if isinstance(msg.get("content"), str):
                return msg["content"]
        if isinstance(content, list) and content and isinstance(content[0], dict):
            text = content[0].get("text")
            if isinstance(text, str):
                return text
        for key in ("response", "text"):
            if isinstance(data.get(key), str) and data[key]:
                return data[key]
    raise PlatformError(
        f"Unexpected response format from AI model API: {str(data)[:200]}",
        code="UNEXPECTED_RESPONSE",
    )


def _messages(system: str, prompt: str) -> List[Dict[str, str]]:
    return [{"role": "system", "content": system}, {"role": "user", "content": prompt}]


class X402ChatProvider:
    """Chat endpoint paid per call with an x402 USDC authorization."""

    name = "x402"

    def __init__(self, client: Any, selection: ModelSelection, *, retry: Optional[RetryPolicy] = None):
        self.client = client
        self.selection = selection
        self.model = selection.model
        self.retry = retry or RetryPolicy(max_attempts=3, is_retryable=_is_transport_error)

    def _call(self, body: Dict[str, Any]) -> Any:
        return self.retry.run(
            lambda: self.client.request_with_payment("POST", self.selection.api_url, body=body)
        )

    async def complete(self, system: str, prompt: str) -> str:
        body = {
            "model": self.model,
            "messages": _messages(system, prompt),
            "temperature": self.selection.temperature,
            "max_tokens": self.selection.max_tokens,
        }
        data = await asyncio.to_thread(self._call, body)
        return strip_code_fences(extract_response_text(data))


class OpenRouterProvider:
    """OpenRouter chat with preset or custom model routes."""

    name = "openrouter"

    def __init__(
        self,
        selection: ModelSelection,
        *,
        api_key: Optional[str] = None,
        send: Optional[Callable[..., Any]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.selection = selection
        self.api_key = api_key
        self.send = send
        self.clock = clock
        self.routing = self._routing_config(selection)
        self.model = self.routing.models[0].id
        self.last_attempts: List[Dict[str, Any]] = []

    @staticmethod
    def _routing_config(selection: ModelSelection) -> RoutingConfig:
        try:
            if selection.openrouter_models:
                roles = ["primary"] + ["fallback"] * (len(selection.openrouter_models) - 1)
                return RoutingConfig(
                    strategy=selection.openrouter_strategy,
                    max_retries_per_model=selection.max_retries_per_model,
                    models=[
                        RoutedModel(m, role, selection.temperature, selection.max_tokens)
                        for m, role in zip(selection.openrouter_models, roles)
                    ],
                )
            return preset_config(selection.openrouter_preset)
        except OpenRouterConfigError as e:
            raise ConfigError(str(e)) from e

    async def complete(self, system: str, prompt: str) -> str:
        res = await routed_chat_completion(
            _messages(system, prompt),
            self.routing,
            api_key=self.api_key,
            send=self.send,
            clock=self.clock,
        )
        self.model = res.model
        self.last_attempts = res.attempts
        return strip_code_fences(res.text)


def build_llm_provider(selection: ModelSelection, client: Any):
    if selection.provider == "openrouter":
        return OpenRouterProvider(selection)
    if selection.provider == "x402":
        return X402ChatProvider(client, selection)
    raise ConfigError(f"Unknown LLM provider {selection.provider!r}; expected x402 or openrouter")


__all__ = [
    "OpenRouterProvider",
    "X402ChatProvider",
    "build_llm_provider",
    "extract_response_text",
]
