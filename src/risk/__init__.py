"""Risk & governance modules (non-LLM rule engine)."""

from .rules import ActionRules, RuleCheck  # noqa: F401
