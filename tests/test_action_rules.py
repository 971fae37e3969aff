"""Action rule tests: disabled actions, cooldowns, hourly caps, priorities.

Run:
  pytest tests/test_action_rules.py

No network or DB required (clock is injected).
"""

import os
import sys

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from src.config import ActionPolicy  # noqa: E402
from src.risk.rules import ActionRules  # noqa: E402


class Clock:
    def __init__(self):
        self.t = 0.0

    def __call__(self):
        return self.t


def test_unconfigured_actions_are_always_allowed():
    rules = ActionRules([])
    rules.record("buy")
    assert rules.check("buy").allowed
    assert rules.blocked(["buy", "sell"]) == {}
    assert rules.priority_order() == []


def test_disabled_action():
    rules = ActionRules([ActionPolicy(action="launch", enabled=False, priority=1)])
    check = rules.check("launch")
    assert not check.allowed
    assert check.reason == "Action is disabled"
    assert rules.priority_order() == []


def test_cooldown_counts_down():
    clock = Clock()
    rules = ActionRules([ActionPolicy(action="buy", cooldown_s=120)], clock=clock)
    assert rules.check("buy").allowed
    rules.record("buy")
    clock.t = 30
    check = rules.check("buy")
    assert not check.allowed
    assert check.reason == "Cooldown: 90s remaining"
    clock.t = 121
    assert rules.check("buy").allowed


def test_hourly_cap_resets_after_an_hour():
    clock = Clock()
    rules = ActionRules([ActionPolicy(action="sell", max_per_hour=2)], clock=clock)
    rules.record("sell")
    clock.t = 10
    rules.record("sell")
    assert rules.blocked(["sell", "buy"]) == {"sell": "Hourly limit reached (2/hr)"}
    clock.t = 3601
    assert rules.check("sell").allowed


def test_priority_order():
    rules = ActionRules(
        [
            ActionPolicy(action="buy", priority=2),
            ActionPolicy(action="sell", priority=1),
            ActionPolicy(action="wait"),
        ]
    )
    assert rules.priority_order() == ["sell", "buy"]
