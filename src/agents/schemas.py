"""Pydantic contracts for agent decisions and cycle results.

Model output is schema-free text, so `Decision.params` stays a loose dict at
parse time; the per-action parameter records below are validated only at the
dispatch boundary.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ActionType(str, Enum):
    buy = "buy"
    sell = "sell"
    launch = "launch"
    discover = "discover"
    analyze = "analyze"
    wait = "wait"
    stop = "stop"


VALID_ACTIONS = frozenset(a.value for a in ActionType)


class ExecutionPhase(str, Enum):
    idle = "idle"
    fetching_market = "fetching_market"
    building_prompt = "building_prompt"
    calling_ai = "calling_ai"
    parsing_decision = "parsing_decision"
    executing_action = "executing_action"
    recording_result = "recording_result"
    waiting = "waiting"
    paused = "paused"
    error = "error"
    stopped = "stopped"


class Decision(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    action: ActionType = Field(..., description="One of the closed action set.")
    params: Dict[str, Any] = Field(default_factory=dict, description="Action-specific parameters.")
    reasoning: str = Field("No reasoning provided", description="Model rationale.")
    confidence: float = Field(0.5, ge=0.0, le=1.0, description="Conviction 0-1.")

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> float:
        try:
            f = float(v)
        except (TypeError, ValueError):
            return 0.5
        if f != f:  # NaN
            return 0.5
        return min(1.0, max(0.0, f))

    @classmethod
    def wait(cls, reason: str, reasoning: str, confidence: float = 0.0) -> "Decision":
        return cls(action=ActionType.wait, params={"reason": reason}, reasoning=reasoning, confidence=confidence)


# --- per-action parameters (validated at dispatch) -------------------------


class BuyParams(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    token_address: str = Field(..., alias="tokenAddress", min_length=1)
    usdc_amount: str = Field(..., alias="usdcAmount", description="Decimal USDC, e.g. '5.0'.")

    @field_validator("usdc_amount", mode="before")
    @classmethod
    def _as_str(cls, v: Any) -> str:
        return str(v).strip()


class SellParams(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    token_address: str = Field(..., alias="tokenAddress", min_length=1)
    token_amount: str = Field(..., alias="tokenAmount", description="Decimal tokens, e.g. '1.0'.")

    @field_validator("token_amount", mode="before")
    @classmethod
    def _as_str(cls, v: Any) -> str:
        return str(v).strip()


class LaunchParams(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., min_length=1)
    ticker: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    image: Optional[str] = None
    website: Optional[str] = None
    twitter: Optional[str] = None
    telegram: Optional[str] = None
    discord: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _accept_symbol(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("ticker") and data.get("symbol"):
            data = dict(data)
            data["ticker"] = data["symbol"]
        return data


class AnalyzeParams(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    token_address: str = Field(..., alias="tokenAddress", min_length=1)


# --- outcomes ---------------------------------------------------------------


class ActionOutcome(BaseModel):
    """Result of dispatching one decision; never an exception."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class ExecutionResult(BaseModel):
    """Record of one cycle, appended to the bounded execution history."""

    model_config = ConfigDict(use_enum_values=True)

    success: bool
    action: ActionType
    decision: Decision
    execution: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=_utc_now)
    finished_at: datetime = Field(default_factory=_utc_now)
    balance_before: Optional[int] = None
    balance_after: Optional[int] = None
    profit_loss: Optional[int] = None
    model_latency_s: Optional[float] = None
    cycle_time_s: Optional[float] = None


__all__ = [
    "ActionOutcome",
    "ActionType",
    "AnalyzeParams",
    "BuyParams",
    "Decision",
    "ExecutionPhase",
    "ExecutionResult",
    "LaunchParams",
    "SellParams",
    "VALID_ACTIONS",
]
