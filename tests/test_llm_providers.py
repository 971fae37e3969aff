"""Model transport tests: x402 chat provider and OpenRouter routing.

Run:
  pytest tests/test_llm_providers.py

No network or DB required (fake client and fake send function).
"""

import asyncio
import os
import sys

import pytest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from src.agents.llm_providers import (  # noqa: E402
    OpenRouterProvider,
    X402ChatProvider,
    build_llm_provider,
    extract_response_text,
)
from src.config import ConfigError, ModelSelection  # noqa: E402
from src.execution.errors import NetworkError, PlatformError, PaymentVerificationError  # noqa: E402
from src.execution.retry import RetryPolicy  # noqa: E402
from Utils.openrouter import (  # noqa: E402
    OpenRouterConfigError,
    RoutedModel,
    RoutingConfig,
    preset_config,
    route_models,
    routed_chat_completion,
)


def run_async(coro):
    return asyncio.run(coro)


class FakePlatform:
    def __init__(self, replies):
        self.replies = list(replies)
        self.bodies = []

    def request_with_payment(self, method, endpoint, body=None, params=None):
        self.bodies.append((method, endpoint, body))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def _no_sleep_retry(**kw):
    kw.setdefault("max_attempts", 3)
    return RetryPolicy(sleep=lambda _s: None, is_retryable=lambda e: isinstance(e, NetworkError), **kw)


def test_extract_response_text_shapes():
    assert extract_response_text("plain") == "plain"
    assert extract_response_text({"content": "a"}) == "a"
    assert extract_response_text({"choices": [{"message": {"content": "b"}}]}) == "b"
    assert extract_response_text({"content": [{"type": "text", "text": "c"}]}) == "c"
    assert extract_response_text({"response": "d"}) == "d"
    assert extract_response_text({"text": "e"}) == "e"
    with pytest.raises(PlatformError) as exc:
        extract_response_text({"unexpected": True})
    assert exc.value.code == "UNEXPECTED_RESPONSE"


def test_x402_provider_posts_chat_and_strips_fences():
    platform = FakePlatform([{"content": '```json\n{"action":"wait"}\n```'}])
    selection = ModelSelection(api_url="https://ai.test/v1/chat", model="m1", max_tokens=321)
    provider = X402ChatProvider(platform, selection, retry=_no_sleep_retry())
    text = run_async(provider.complete("system", "prompt"))
    assert text == '{"action":"wait"}'
    method, endpoint, body = platform.bodies[0]
    assert (method, endpoint) == ("POST", "https://ai.test/v1/chat")
    assert body["model"] == "m1"
    assert body["max_tokens"] == 321
    assert body["messages"][1] == {"role": "user", "content": "prompt"}


def test_x402_provider_retries_network_errors_only():
    platform = FakePlatform([NetworkError("reset"), {"content": "ok"}])
    provider = X402ChatProvider(platform, ModelSelection(), retry=_no_sleep_retry())
    assert run_async(provider.complete("s", "p")) == "ok"
    assert len(platform.bodies) == 2

    failing = FakePlatform([PaymentVerificationError("Payment verification failed"), {"content": "never"}])
    provider = X402ChatProvider(failing, ModelSelection(), retry=_no_sleep_retry())
    with pytest.raises(PaymentVerificationError):
        run_async(provider.complete("s", "p"))
    assert len(failing.bodies) == 1


def test_route_models_strategies():
    models = [
        RoutedModel("openai/gpt-4o", "fallback"),
        RoutedModel("mistralai/mistral-7b-instruct", "cheap"),
        RoutedModel("anthropic/claude-3.5-sonnet", "primary"),
    ]
    pf = route_models(RoutingConfig(models=models, strategy="primary-fallback"))
    assert [m.role for m in pf] == ["primary", "fallback", "cheap"]

    co = route_models(RoutingConfig(models=models, strategy="cost-optimized"))
    assert co[0].id == "mistralai/mistral-7b-instruct"
    assert co[-1].id == "anthropic/claude-3.5-sonnet"

    rr = route_models(RoutingConfig(models=models, strategy="round-robin"), clock=lambda: 4.0)
    assert rr[0] is models[1]


def test_routing_config_validation():
    with pytest.raises(OpenRouterConfigError):
        RoutingConfig(models=[])
    with pytest.raises(OpenRouterConfigError):
        RoutingConfig(models=[RoutedModel("x")], strategy="random")
    with pytest.raises(OpenRouterConfigError):
        preset_config("luxury")
    assert preset_config("premium").max_retries_per_model == 3
    assert preset_config("cost-effective").strategy == "cost-optimized"


def test_routed_completion_falls_back_after_retries():
    calls = []

    async def send(messages, model, **params):
        calls.append(model)
        if model == "a":
            raise RuntimeError("model a overloaded")
        return "answer"

    cfg = RoutingConfig(models=[RoutedModel("a", "primary"), RoutedModel("b", "fallback")], max_retries_per_model=2)
    res = run_async(routed_chat_completion([{"role": "user", "content": "hi"}], cfg, send=send))
    assert res.text == "answer"
    assert res.model == "b"
    assert calls == ["a", "a", "b"]
    assert [a["ok"] for a in res.attempts] == [False, False, True]


def test_routed_completion_without_fallback_raises_last_error():
    async def send(messages, model, **params):
        raise RuntimeError(f"{model} down")

    cfg = RoutingConfig(
        models=[RoutedModel("a", "primary"), RoutedModel("b", "fallback")],
        max_retries_per_model=1,
        enable_fallback=False,
    )
    with pytest.raises(RuntimeError, match="a down"):
        run_async(routed_chat_completion([], cfg, send=send))


def test_openrouter_provider_custom_models():
    seen = []

    async def send(messages, model, **params):
        seen.append((model, params["temperature"], params["max_tokens"]))
        return "```\n{}\n```"

    selection = ModelSelection(
        provider="openrouter",
        openrouter_models=["x/one", "x/two"],
        temperature=0.1,
        max_tokens=99,
    )
    provider = OpenRouterProvider(selection, api_key="k", send=send)
    assert [m.role for m in provider.routing.models] == ["primary", "fallback"]
    assert run_async(provider.complete("s", "p")) == "{}"
    assert seen == [("x/one", 0.1, 99)]
    assert provider.model == "x/one"
    assert provider.last_attempts == [{"model": "x/one", "ok": True}]


def test_openrouter_provider_bad_preset_is_config_error():
    with pytest.raises(ConfigError):
        OpenRouterProvider(ModelSelection(provider="openrouter", openrouter_preset="luxury"))


def test_build_llm_provider():
    assert isinstance(build_llm_provider(ModelSelection(provider="x402"), object()), X402ChatProvider)
    assert isinstance(build_llm_provider(ModelSelection(provider="openrouter"), None), OpenRouterProvider)
    with pytest.raises(ConfigError):
        build_llm_provider(ModelSelection(provider="carrier-pigeon"), None)
