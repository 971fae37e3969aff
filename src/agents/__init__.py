"""Agent package: decision contracts, prompt rendering, model providers."""

from src.agents.schemas import (  # noqa: F401
    ActionOutcome,
    ActionType,
    Decision,
    ExecutionPhase,
    ExecutionResult,
)
