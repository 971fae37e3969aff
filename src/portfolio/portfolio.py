from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

from src.agents.schemas import ActionType, ExecutionResult
from src.data.mongo import utc_now

MAX_LAUNCHED_TRACKED = 10
MAX_HISTORY = 100


@dataclass
class Position:
    token_address: str
    amount: int  # token atomic units (18 decimals)
    usdc_invested: int  # USDC atomic units (6 decimals)
    entry_price: float = 0.0
    entry_time: datetime = field(default_factory=utc_now)
    status: str = "open"  # open | closed | partial

    def __post_init__(self):
        if self.amount < 0 or self.usdc_invested < 0:
            raise ValueError("Position amount and usdc_invested must be non-negative")

    def hold_time_s(self, now: Optional[datetime] = None) -> float:
        return ((now or utc_now()) - self.entry_time).total_seconds()


class PortfolioState:
    """
    Authoritative in-memory record for a single agent.
    Owned by that agent's runner; the decision step only reads `snapshot()`.
    """
    def __init__(self, balance: int = 0, max_history: int = MAX_HISTORY):
        self.balance = balance
        self.positions: List[Position] = []
        self.history: Deque[ExecutionResult] = deque(maxlen=max_history)
        self.launched_tokens: Deque[str] = deque(maxlen=MAX_LAUNCHED_TRACKED)
        self.total_profit_loss = 0
        self.win_count = 0
        self.loss_count = 0

    @property
    def open_positions(self) -> List[Position]:
        return [p for p in self.positions if p.status != "closed"]

    def open_positions_for(self, token_address: str) -> List[Position]:
        addr = token_address.lower()
        return [p for p in self.open_positions if p.token_address.lower() == addr]

    def add_position(self, token_address: str, amount: int, usdc_invested: int, entry_price: float = 0.0) -> Position:
        # Accumulation: a second buy of the same token is a separate position.
        pos = Position(
            token_address=token_address,
            amount=int(amount),
            usdc_invested=int(usdc_invested),
            entry_price=float(entry_price),
        )
        self.positions.append(pos)
        return pos

    def remove_one_for_asset(self, token_address: str) -> Optional[Position]:
        """Remove the earliest-created open position for the token (FIFO); None if there is none."""
        addr = (token_address or "").lower()
        for i, p in enumerate(self.positions):
            if p.status != "closed" and p.token_address.lower() == addr:
                removed = self.positions.pop(i)
                removed.status = "closed"
                return removed
        return None

    def record_launch(self, token_address: str) -> None:
        # Oldest entry drops out once the ring is full.
        self.launched_tokens.append(token_address.lower())

    def append_history(self, result: ExecutionResult) -> None:
        self.history.append(result)

    def apply_execution_result(self, result: ExecutionResult) -> None:
        if result.balance_before is None or result.balance_after is None:
            return
        delta = int(result.balance_after) - int(result.balance_before)
        self.total_profit_loss += delta
        if result.success and result.action in (ActionType.buy.value, ActionType.sell.value):
            if delta > 0:
                self.win_count += 1
            elif delta < 0:
                self.loss_count += 1

    def win_rate(self) -> float:
        """Win percentage, rounded, over counted trades."""
        total = self.win_count + self.loss_count
        if total == 0:
            return 0.0
        return round(self.win_count / total * 100.0, 2)

    def recent_history(self, n: int = 5) -> List[ExecutionResult]:
        if n <= 0:
            return []
        return list(self.history)[-n:]

    def snapshot(self) -> Dict[str, Any]:
        return {
            "balance": self.balance,
            "positions": [
                {
                    "token_address": p.token_address,
                    "amount": p.amount,
                    "usdc_invested": p.usdc_invested,
                    "entry_price": p.entry_price,
                    "entry_time": p.entry_time,
                    "status": p.status,
                }
                for p in self.open_positions
            ],
            "launched_tokens": list(self.launched_tokens),
            "total_profit_loss": self.total_profit_loss,
            "win_count": self.win_count,
            "loss_count": self.loss_count,
            "win_rate": self.win_rate(),
        }
