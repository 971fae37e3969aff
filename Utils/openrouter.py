"""OpenRouter SDK helper.

Wraps the official OpenRouter Python SDK with:
- env-based configuration
- an async chat helper returning assistant text
- model presets and routing strategies (primary-fallback, cost-optimized, round-robin)
- per-model retries with fallback to the next model in the route

Strategy-neutral: this module only handles model I/O and routing.
"""

from __future__ import annotations

import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Sequence

from openrouter import OpenRouter

Message = Dict[str, Any]

# USD per 1M input/output tokens, used only to order cost-optimized routes.
MODEL_COSTS: Dict[str, Dict[str, float]] = {
    "openai/gpt-4o": {"input": 2.50, "output": 10.00},
    "openai/gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "openai/gpt-4-turbo": {"input": 10.00, "output": 30.00},
    "openai/gpt-4": {"input": 30.00, "output": 60.00},
    "anthropic/claude-3-opus": {"input": 15.00, "output": 75.00},
    "anthropic/claude-3.5-sonnet": {"input": 3.00, "output": 15.00},
    "anthropic/claude-3-haiku": {"input": 0.25, "output": 1.25},
    "google/gemini-pro-1.5": {"input": 2.50, "output": 7.50},
    "google/gemini-flash-1.5": {"input": 0.075, "output": 0.30},
    "meta-llama/llama-3.1-70b-instruct": {"input": 0.52, "output": 0.75},
    "meta-llama/llama-3.1-8b-instruct": {"input": 0.055, "output": 0.055},
    "mistralai/mistral-7b-instruct": {"input": 0.06, "output": 0.06},
}

ROLE_ORDER = ("primary", "fallback", "cheap")
ROUTING_STRATEGIES = ("primary-fallback", "cost-optimized", "round-robin")


class OpenRouterConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class RoutedModel:
    id: str
    role: str = "primary"
    temperature: float = 0.3
    max_tokens: int = 500


@dataclass(frozen=True)
class RoutingConfig:
    models: List[RoutedModel]
    strategy: str = "primary-fallback"
    max_retries_per_model: int = 2
    enable_fallback: bool = True

    def __post_init__(self):
        if not self.models:
            raise OpenRouterConfigError("Routing needs at least one model")
        if self.strategy not in ROUTING_STRATEGIES:
            raise OpenRouterConfigError(
                f"Unknown routing strategy {self.strategy!r}; expected one of {', '.join(ROUTING_STRATEGIES)}"
            )


def preset_config(preset: str) -> RoutingConfig:
    """Built-in model routes: cost-effective, balanced, premium."""
    if preset == "cost-effective":
        return RoutingConfig(
            strategy="cost-optimized",
            models=[
                RoutedModel("anthropic/claude-3-haiku", "primary"),
                RoutedModel("openai/gpt-4o-mini", "fallback"),
                RoutedModel("mistralai/mistral-7b-instruct", "cheap"),
            ],
        )
    if preset == "balanced":
        return RoutingConfig(
            strategy="primary-fallback",
            models=[
                RoutedModel("anthropic/claude-3.5-sonnet", "primary"),
                RoutedModel("openai/gpt-4o", "fallback"),
                RoutedModel("anthropic/claude-3-haiku", "cheap"),
            ],
        )
    if preset == "premium":
        return RoutingConfig(
            strategy="primary-fallback",
            max_retries_per_model=3,
            models=[
                RoutedModel("anthropic/claude-3-opus", "primary", max_tokens=1000),
                RoutedModel("openai/gpt-4", "fallback", max_tokens=1000),
                RoutedModel("anthropic/claude-3.5-sonnet", "fallback"),
            ],
        )
    raise OpenRouterConfigError(f"Unknown OpenRouter preset {preset!r}")


def route_models(
    cfg: RoutingConfig,
    *,
    clock: Callable[[], float] = time.time,
) -> List[RoutedModel]:
    """Order models for one call according to the routing strategy."""
    models = list(cfg.models)
    if cfg.strategy == "primary-fallback":
        ranked = [m for role in ROLE_ORDER for m in models if m.role == role]
        return ranked + [m for m in models if m.role not in ROLE_ORDER]
    if cfg.strategy == "cost-optimized":
        return sorted(models, key=lambda m: MODEL_COSTS.get(m.id, {}).get("input", 999.0))
    # round-robin
    offset = int(clock()) % len(models)
    return models[offset:] + models[:offset]


def _get_api_key(api_key: Optional[str] = None) -> str:
    key = api_key or os.getenv("OPENROUTER_API_KEY")
    if not key:
        raise OpenRouterConfigError(
            "OPENROUTER_API_KEY is not set. Provide api_key=... or set it in .env"
        )
    return key


@asynccontextmanager
async def openrouter_client_async(
    api_key: Optional[str] = None,
    timeout_s: Optional[float] = None,
) -> AsyncGenerator[OpenRouter, None]:
    """Yield a configured async-capable OpenRouter client."""
    key = _get_api_key(api_key)
    kwargs: Dict[str, Any] = {"api_key": key}
    if timeout_s is None:
        try:
            timeout_s = float(os.getenv("OPENROUTER_TIMEOUT_S", "").strip() or 0) or None
        except ValueError:
            timeout_s = None
    if timeout_s is not None:
        # OpenRouter SDK expects milliseconds.
        kwargs["timeout_ms"] = int(timeout_s * 1000)

    async with OpenRouter(**kwargs) as client:
        yield client


async def chat_completion_async(
    messages: List[Message],
    model: str,
    *,
    api_key: Optional[str] = None,
    **params: Any,
) -> str:
    """Single async chat completion; returns assistant text."""
    async with openrouter_client_async(api_key=api_key) as client:
        res = await client.chat.send_async(model=model, messages=messages, **params)
        try:
            return res.choices[0].message.content  # type: ignore[attr-defined]
        except Exception as e:  # pragma: no cover
            raise RuntimeError(f"Unexpected OpenRouter response shape: {res}") from e


SendFn = Callable[..., Any]


@dataclass
class RoutedCompletion:
    text: str
    model: str
    attempts: List[Dict[str, Any]] = field(default_factory=list)


async def routed_chat_completion(
    messages: List[Message],
    cfg: RoutingConfig,
    *,
    api_key: Optional[str] = None,
    send: Optional[SendFn] = None,
    clock: Callable[[], float] = time.time,
) -> RoutedCompletion:
    """Try each routed model up to `max_retries_per_model` times before moving on.

    With fallback disabled only the first routed model is tried.
    Raises the last error when every model fails.
    """
    send_fn = send or chat_completion_async
    route: Sequence[RoutedModel] = route_models(cfg, clock=clock)
    if not cfg.enable_fallback:
        route = route[:1]

    attempts: List[Dict[str, Any]] = []
    last_err: Optional[Exception] = None
    for m in route:
        for _ in range(max(1, cfg.max_retries_per_model)):
            try:
                text = await send_fn(
                    messages,
                    m.id,
                    api_key=api_key,
                    temperature=m.temperature,
                    max_tokens=m.max_tokens,
                )
                attempts.append({"model": m.id, "ok": True})
                return RoutedCompletion(text=text or "", model=m.id, attempts=attempts)
            except Exception as e:  # pylint: disable=broad-exception-caught
                attempts.append({"model": m.id, "ok": False, "error": str(e)})
                last_err = e
    assert last_err is not None
    raise last_err


__all__ = [
    "MODEL_COSTS",
    "OpenRouterConfigError",
    "RoutedCompletion",
    "RoutedModel",
    "RoutingConfig",
    "chat_completion_async",
    "openrouter_client_async",
    "preset_config",
    "route_models",
    "routed_chat_completion",
]
