"""Prompt construction for the trading decision.

Pure and deterministic: given the same context, the same text comes out.
No network, no clock reads (the caller passes `now`).
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from src.agents.schemas import ExecutionResult
from src.portfolio.portfolio import Position

TAKE_PROFIT_PCT = 25.0
CUT_LOSS_PCT = -10.0
MARKET_TOP_N = 5
HISTORY_TAIL = 5

PROMPT_ACTIONS = ("launch", "buy", "sell", "discover", "analyze", "wait")

SYSTEM_PROMPT = (
    "You are an autonomous trading agent. "
    "Always respond with valid JSON as specified in the prompt."
)


@dataclass
class PromptContext:
    strategy: str
    balance: int
    max_positions: int
    max_position_size: int
    positions: Sequence[Position] = field(default_factory=list)
    market: Sequence[Dict[str, Any]] = field(default_factory=list)
    launched_tokens: Sequence[str] = field(default_factory=list)
    history: Sequence[ExecutionResult] = field(default_factory=list)
    blocked_actions: Dict[str, str] = field(default_factory=dict)
    priority_order: Sequence[str] = field(default_factory=list)
    market_note: Optional[str] = None
    now: Optional[datetime] = None


def _usdc(atomic: int) -> str:
    return f"{atomic / 1e6:.2f}"


def _find_token(market: Sequence[Dict[str, Any]], address: str) -> Optional[Dict[str, Any]]:
    addr = (address or "").lower()
    for t in market:
        if str(t.get("address", "")).lower() == addr:
            return t
    return None


def position_pnl_pct(pos: Position, price: Optional[str]) -> Optional[float]:
    """Unrealized P&L % from a per-token USDC price; None without a usable price."""
    if price is None or pos.usdc_invested <= 0:
        return None
    try:
        p = float(price)
    except (TypeError, ValueError):
        return None
    invested = pos.usdc_invested / 1e6
    value = (pos.amount / 1e18) * p
    return (value - invested) / invested * 100.0


def position_signal(pnl_pct: Optional[float]) -> str:
    if pnl_pct is None:
        return ""
    if pnl_pct >= TAKE_PROFIT_PCT:
        return "TAKE PROFIT"
    if pnl_pct <= CUT_LOSS_PCT:
        return "CUT LOSS"
    return ""


def market_entries(tokens: Sequence[Any], limit: int = 10) -> List[Dict[str, Any]]:
    """Normalize platform tokens (models or dicts) into prompt rows."""
    rows: List[Dict[str, Any]] = []
    for t in list(tokens)[:limit]:
        d = t.model_dump(by_alias=True) if hasattr(t, "model_dump") else dict(t)
        rows.append(
            {
                "address": d.get("address"),
                "name": d.get("name"),
                "symbol": d.get("ticker") or d.get("symbol"),
                "volume24h": d.get("volume24h"),
                "marketCap": d.get("marketCap"),
                "progress": d.get("progress"),
                "currentPrice": d.get("price") or d.get("currentPrice"),
            }
        )
    return rows


def _render_availability(ctx: PromptContext) -> str:
    lines = ["Available actions:"]
    n_pos = len(ctx.positions)
    for action in PROMPT_ACTIONS:
        reason = ctx.blocked_actions.get(action)
        if reason is None and action == "buy" and n_pos >= ctx.max_positions:
            reason = f"maximum positions reached ({ctx.max_positions}); sell first"
        if reason is None and action == "sell" and n_pos == 0:
            reason = "no open positions"
        lines.append(f"  - {action}: {'UNAVAILABLE (' + reason + ')' if reason else 'available'}")
    if ctx.priority_order:
        lines.append("")
        lines.append("Your configured priorities: " + " -> ".join(ctx.priority_order))
    return "\n".join(lines)


def _render_positions(ctx: PromptContext) -> str:
    lines = ["# YOUR CURRENT POSITIONS (review for SELL opportunities)"]
    for i, p in enumerate(ctx.positions, start=1):
        token = _find_token(ctx.market, p.token_address)
        label = (token or {}).get("name") or p.token_address[:10]
        hold_min = int(p.hold_time_s(ctx.now) // 60) if ctx.now else 0
        pnl = position_pnl_pct(p, (token or {}).get("currentPrice"))
        pnl_txt = f"{pnl:+.1f}% P&L" if pnl is not None else "P&L unknown (no current price)"
        signal = position_signal(pnl)
        lines.append(
            f"{i}. {label} ({p.token_address}) - {_usdc(p.usdc_invested)} USDC invested, "
            f"{p.amount / 1e18:.4f} tokens, {pnl_txt}, held {hold_min}min"
            + (f" [{signal}]" if signal else "")
        )
    lines.append("")
    lines.append(
        f"SELL REMINDER: positions marked TAKE PROFIT (>= +{TAKE_PROFIT_PCT:.0f}%) "
        f"or CUT LOSS (<= {CUT_LOSS_PCT:.0f}%) should be considered for selling."
    )
    return "\n".join(lines)


def _render_launched(ctx: PromptContext) -> str:
    owned = {p.token_address.lower() for p in ctx.positions}
    lines = ["# TOKENS YOU LAUNCHED"]
    for i, addr in enumerate(ctx.launched_tokens, start=1):
        token = _find_token(ctx.market, addr)
        name = (token or {}).get("name") or "Token"
        state = "you own this" if addr.lower() in owned else "you do NOT own this yet"
        lines.append(f"{i}. {name} ({addr}) - {state}")
    return "\n".join(lines)


def _render_history(ctx: PromptContext) -> str:
    lines = ["# RECENT HISTORY (most recent last)"]
    for r in list(ctx.history)[-HISTORY_TAIL:]:
        params = r.decision.params if r.decision else {}
        target = params.get("tokenAddress") or params.get("ticker") or params.get("reason") or ""
        if r.success:
            lines.append(f"- {r.action} {target}: OK")
        else:
            lines.append(f"- {r.action} {target}: FAILED ({r.error or 'unknown error'}) - do not repeat unchanged")
    return "\n".join(lines)


def _render_guidance(ctx: PromptContext) -> str:
    lines: List[str] = []
    if ctx.blocked_actions:
        blocked = ", ".join(sorted(ctx.blocked_actions))
        lines.append(f"- Blocked right now: {blocked}. Choose among the available actions.")
    owned = {p.token_address.lower() for p in ctx.positions}
    if any(a.lower() not in owned for a in ctx.launched_tokens):
        lines.append("- You launched a token you do not hold yet; buying it is still available.")
    if len(ctx.positions) >= ctx.max_positions:
        lines.append("- You are at the position limit: only sell, analyze, discover or wait can make progress.")
    if ctx.history and not list(ctx.history)[-1].success:
        lines.append("- Your last action failed. Adjust parameters or pick a different action.")
    lines.append("- Follow YOUR STRATEGY above; wait only if nothing fits it.")
    return "\n".join(lines)


def build_prompt(ctx: PromptContext) -> str:
    """Render the full decision prompt."""
    sections: List[str] = [
        "# YOUR STRATEGY (FOLLOW THIS)\n" + ctx.strategy.strip(),
        "# CURRENT STATE\n"
        f"- Balance: {_usdc(ctx.balance)} USDC\n"
        f"- Positions: {len(ctx.positions)}/{ctx.max_positions}\n"
        f"- Max position size: {_usdc(ctx.max_position_size)} USDC",
        "# ACTION AVAILABILITY\n" + _render_availability(ctx),
    ]
    if ctx.positions:
        sections.append(_render_positions(ctx))
    if ctx.launched_tokens:
        sections.append(_render_launched(ctx))

    market_rows = list(ctx.market)[:MARKET_TOP_N]
    market_txt = json.dumps(market_rows, indent=2) if market_rows else "No tokens available"
    if ctx.market_note:
        market_txt = f"{ctx.market_note}\n{market_txt}"
    sections.append("# MARKET DATA\n" + market_txt)

    if ctx.history:
        sections.append(_render_history(ctx))

    sections.append("# DECISION GUIDANCE\n" + _render_guidance(ctx))
    sections.append(
        "# AVAILABLE ACTIONS\n"
        "- launch: Create token {name, ticker, description}\n"
        '- buy: Buy tokens {tokenAddress, usdcAmount} - decimal USDC, e.g. "5.0"\n'
        '- sell: Sell tokens {tokenAddress, tokenAmount} - decimal tokens, e.g. "1.0"\n'
        "- discover: Find tokens {limit?, sortBy?}\n"
        "- analyze: Get token details {tokenAddress}\n"
        "- wait: Skip this cycle {reason}"
    )
    sections.append(
        "# RESPONSE (JSON ONLY)\n"
        '{"action":"...","params":{...},"reasoning":"explain your decision based on your strategy","confidence":0.85}'
    )
    return "\n\n".join(sections)


__all__ = [
    "PromptContext",
    "SYSTEM_PROMPT",
    "build_prompt",
    "market_entries",
    "position_pnl_pct",
    "position_signal",
]
