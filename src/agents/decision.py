"""Decision provider: prompt -> model -> validated Decision.

The parse pipeline treats model output as untrusted text. Each stage is total
(never raises) and stages compose left to right:

    strip_code_fences -> extract_json_object -> strip_trailing_commas -> parse

Transport failures from the model provider are *not* swallowed here; they
propagate to the runner, which records a failed cycle.
"""

from __future__ import annotations

import json
import re
from datetime import datetime
from typing import Any, Dict, Optional, Protocol, Sequence

from src.agents.prompt import SYSTEM_PROMPT, PromptContext, build_prompt, market_entries
from src.agents.schemas import VALID_ACTIONS, Decision, ExecutionResult
from src.config import RiskLimits
from src.data.mongo import LlmTimer
from src.portfolio.portfolio import Position

_FENCE_OPEN_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*")
_FENCE_CLOSE_RE = re.compile(r"\s*```$")
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_ACTION_RE = re.compile(r'"action"\s*:\s*"([^"]+)"')


def strip_code_fences(text: Optional[str]) -> str:
    s = (text or "").strip()
    if s.startswith("```"):
        s = _FENCE_OPEN_RE.sub("", s)
        s = _FENCE_CLOSE_RE.sub("", s)
    return s.strip()


def extract_json_object(text: str) -> Optional[str]:
    """First top-level brace-delimited object; None when there is no brace pair.

    Depth counting skips braces inside JSON strings. An object that never
    closes falls back to the span up to the last '}' so the later stages can
    still recover the action.
    """
    s = text or ""
    start = s.find("{")
    if start < 0:
        return None
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(s)):
        ch = s[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return s[start : i + 1]
    end = s.rfind("}")
    return s[start : end + 1] if end > start else None


def strip_trailing_commas(text: str) -> str:
    return _TRAILING_COMMA_RE.sub(r"\1", text)


def _recover_action(text: str, err: Exception) -> Decision:
    m = _ACTION_RE.search(text)
    if m and m.group(1).strip().lower() in VALID_ACTIONS:
        return Decision(
            action=m.group(1).strip().lower(),
            params={},
            reasoning="JSON parse error - using extracted action",
            confidence=0.5,
        )
    return Decision.wait("Parse error", f"Failed to parse AI response: {err}")


def parse_decision(text: Optional[str]) -> Decision:
    """Parse free-form model output into a Decision. Never raises."""
    try:
        s = strip_code_fences(text)
        raw_obj = extract_json_object(s)
        if raw_obj is None:
            return Decision.wait("Invalid response format", "No JSON found in AI response")
        cleaned = strip_trailing_commas(raw_obj)
        try:
            obj = json.loads(cleaned, strict=False)
        except ValueError as e:
            return _recover_action(cleaned, e)
        if not isinstance(obj, dict):
            return Decision.wait("Parse error", "AI response JSON is not an object")

        raw_action = obj.get("action")
        action = str(raw_action or "").strip().lower()
        if action not in VALID_ACTIONS:
            return Decision.wait("Invalid action", f"Invalid action: {raw_action}")

        params = obj.get("params")
        return Decision(
            action=action,
            params=params if isinstance(params, dict) else {},
            reasoning=str(obj.get("reasoning") or "No reasoning provided"),
            confidence=obj.get("confidence", 0.5),
        )
    except Exception as e:  # pylint: disable=broad-exception-caught
        return Decision.wait("Parse error", f"Failed to parse AI response: {e}")


class LlmProvider(Protocol):
    name: str
    model: str

    async def complete(self, system: str, prompt: str) -> str:
        ...


class DecisionProvider:
    """Builds the prompt from portfolio context, calls the model, parses the reply."""

    def __init__(
        self,
        provider: LlmProvider,
        *,
        risk: RiskLimits,
        mongo: Optional[Any] = None,
        agent_id: Optional[str] = None,
        run_id: Optional[str] = None,
    ):
        self.provider = provider
        self.risk = risk
        self.mongo = mongo
        self.agent_id = agent_id
        self.run_id = run_id
        self.last_prompt: Optional[str] = None
        self.last_response: Optional[str] = None

    async def _log_call(self, prompt: str, response: Any, timing: Dict[str, Any], error: Optional[str]) -> None:
        if self.mongo is None:
            return
        try:
            await self.mongo.log_llm_call(
                provider=self.provider.name,
                model=self.provider.model,
                messages=[{"role": "system", "content": SYSTEM_PROMPT}, {"role": "user", "content": prompt}],
                response=response,
                run_id=self.run_id,
                agent_id=self.agent_id,
                timing=timing,
                error={"message": error} if error else None,
            )
        except Exception:  # pylint: disable=broad-exception-caught
            pass

    def build_prompt(
        self,
        strategy: str,
        market: Sequence[Any],
        balance: int,
        positions: Sequence[Position],
        launched: Sequence[str],
        history: Sequence[ExecutionResult],
        *,
        blocked_actions: Optional[Dict[str, str]] = None,
        priority_order: Sequence[str] = (),
        market_note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> str:
        ctx = PromptContext(
            strategy=strategy,
            balance=balance,
            max_positions=self.risk.max_positions,
            max_position_size=self.risk.max_position_size,
            positions=list(positions),
            market=market_entries(market),
            launched_tokens=list(launched),
            history=list(history),
            blocked_actions=dict(blocked_actions or {}),
            priority_order=list(priority_order),
            market_note=market_note,
            now=now,
        )
        return build_prompt(ctx)

    async def call_model(self, prompt: str) -> str:
        """Send a rendered prompt to the model; transport errors propagate."""
        self.last_prompt = prompt
        timer = LlmTimer()
        try:
            text = await self.provider.complete(SYSTEM_PROMPT, prompt)
        except Exception as e:
            await self._log_call(prompt, None, timer.finish(), str(e))
            raise
        self.last_response = text
        await self._log_call(prompt, text, timer.finish(), None)
        return text

    async def complete(self, prompt: str) -> Decision:
        return parse_decision(await self.call_model(prompt))

    async def decide(
        self,
        strategy: str,
        market: Sequence[Any],
        balance: int,
        positions: Sequence[Position],
        launched: Sequence[str],
        history: Sequence[ExecutionResult],
        **prompt_kwargs: Any,
    ) -> Decision:
        prompt = self.build_prompt(strategy, market, balance, positions, launched, history, **prompt_kwargs)
        return await self.complete(prompt)


__all__ = [
    "DecisionProvider",
    "LlmProvider",
    "extract_json_object",
    "parse_decision",
    "strip_code_fences",
    "strip_trailing_commas",
]
