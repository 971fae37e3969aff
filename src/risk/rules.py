"""Deterministic action rules: disabled actions, cooldowns, hourly caps.

Design:
- Rules are pure and deterministic given a clock (no DB/network).
- A blocked action is reported to the model as unavailable and, if the model
  picks it anyway, the runner downgrades the decision to `wait`.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from src.config import ActionPolicy

HOUR_S = 3600.0


@dataclass
class ActionTracker:
    last_executed_at: Optional[float] = None
    hour_started_at: float = 0.0
    executions_this_hour: int = 0


@dataclass(frozen=True)
class RuleCheck:
    allowed: bool
    reason: Optional[str] = None


class ActionRules:
    """Tracks per-action executions and answers whether an action is currently allowed."""

    def __init__(self, policies: Sequence[ActionPolicy], *, clock: Callable[[], float] = time.monotonic):
        self.policies: Dict[str, ActionPolicy] = {p.action: p for p in policies}
        self.clock = clock
        self._trackers: Dict[str, ActionTracker] = {}

    def _tracker(self, action: str) -> ActionTracker:
        t = self._trackers.get(action)
        if t is None:
            t = ActionTracker(hour_started_at=self.clock())
            self._trackers[action] = t
        return t

    def _roll_hour(self, t: ActionTracker, now: float) -> None:
        if now - t.hour_started_at > HOUR_S:
            t.executions_this_hour = 0
            t.hour_started_at = now

    def check(self, action: str) -> RuleCheck:
        policy = self.policies.get(action)
        if policy is None:
            return RuleCheck(True)
        if not policy.enabled:
            return RuleCheck(False, "Action is disabled")

        t = self._trackers.get(action)
        if t is None:
            return RuleCheck(True)
        now = self.clock()

        if policy.cooldown_s and t.last_executed_at is not None:
            elapsed = now - t.last_executed_at
            if elapsed < policy.cooldown_s:
                return RuleCheck(False, f"Cooldown: {policy.cooldown_s - elapsed:.0f}s remaining")

        if policy.max_per_hour is not None:
            self._roll_hour(t, now)
            if t.executions_this_hour >= policy.max_per_hour:
                return RuleCheck(False, f"Hourly limit reached ({policy.max_per_hour}/hr)")

        return RuleCheck(True)

    def record(self, action: str) -> None:
        if action not in self.policies:
            return
        now = self.clock()
        t = self._tracker(action)
        self._roll_hour(t, now)
        t.last_executed_at = now
        t.executions_this_hour += 1

    def blocked(self, actions: Sequence[str]) -> Dict[str, str]:
        """Map of action -> reason for every currently blocked action."""
        out: Dict[str, str] = {}
        for a in actions:
            res = self.check(a)
            if not res.allowed:
                out[a] = res.reason or "Unavailable"
        return out

    def priority_order(self) -> List[str]:
        ranked = [p for p in self.policies.values() if p.enabled and p.priority > 0]
        return [p.action for p in sorted(ranked, key=lambda p: p.priority)]


__all__ = ["ActionRules", "ActionTracker", "RuleCheck"]
