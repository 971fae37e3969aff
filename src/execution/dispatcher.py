"""Decision dispatcher: validated Decision -> platform action -> ActionOutcome.

Responsibilities:
- Validate per-action params at this boundary (model output is untrusted).
- Enforce risk limits (position count, max position size clamp, balance).
- Route buys/sells to the gasless or self-execute client path.
- Apply the resulting position changes to the agent's PortfolioState.

`dispatch` never raises; every failure becomes `ActionOutcome(success=False)`.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from pydantic import ValidationError

from src.agents.schemas import (
    ActionOutcome,
    ActionType,
    AnalyzeParams,
    BuyParams,
    Decision,
    LaunchParams,
    SellParams,
)
from src.config import RiskLimits
from src.execution.platform_client import MIN_SELL_AMOUNT, normalize_ticker
from src.execution.schemas import ExecutionMode
from src.portfolio.portfolio import PortfolioState

USDC_DECIMALS = 6
TOKEN_DECIMALS = 18
PLACEHOLDER_IMAGE_URL = "https://via.placeholder.com/400/000000/FFFFFF?text={ticker}"


def to_atomic(amount: Any, decimals: int) -> Optional[int]:
    """Decimal string -> floor(amount * 10**decimals); None for malformed or negative input."""
    try:
        d = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError):
        return None
    if not d.is_finite() or d < 0:
        return None
    return int((d * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN))


def _fail(error: str, **data: Any) -> ActionOutcome:
    return ActionOutcome(success=False, error=error, data=data)


class ExecutionDispatcher:
    def __init__(
        self,
        *,
        client: Any,
        portfolio: PortfolioState,
        risk: RiskLimits,
        mode: str = ExecutionMode.gasless.value,
        audit_mgr: Optional[Any] = None,
        agent_id: Optional[str] = None,
    ):
        self.client = client
        self.portfolio = portfolio
        self.risk = risk
        self.mode = mode
        self.audit_mgr = audit_mgr
        self.agent_id = agent_id

    def _audit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if not self.audit_mgr:
            return
        try:
            self.audit_mgr.emit(event_type, payload, agent_id=self.agent_id)
        except Exception:  # pylint: disable=broad-exception-caught
            pass

    @property
    def self_execute(self) -> bool:
        return self.mode == ExecutionMode.self_execute.value

    async def dispatch(self, decision: Decision) -> ActionOutcome:
        action = decision.action
        try:
            if action == ActionType.buy.value:
                return await self._buy(decision.params)
            if action == ActionType.sell.value:
                return await self._sell(decision.params)
            if action == ActionType.launch.value:
                return await self._launch(decision.params)
            if action == ActionType.analyze.value:
                return await self._analyze(decision.params)
            if action == ActionType.stop.value:
                return ActionOutcome(success=True, message="Stop requested", data={"action": action})
            return ActionOutcome(success=True, message="No action taken", data={"action": action})
        except Exception as e:  # pylint: disable=broad-exception-caught
            self._audit("dispatch_error", {"action": action, "error": str(e)})
            return _fail(str(e) or e.__class__.__name__, action=action)

    # ------------------------------------------------------------------
    # buy / sell
    # ------------------------------------------------------------------

    async def _buy(self, params: Dict[str, Any]) -> ActionOutcome:
        if not params.get("tokenAddress") or params.get("usdcAmount") in (None, ""):
            return _fail("Missing buy parameters")
        p = BuyParams.model_validate(params)

        max_positions = self.risk.max_positions
        if len(self.portfolio.open_positions) >= max_positions:
            return _fail(f"Maximum positions reached ({max_positions}). Sell existing positions first.")

        amount = to_atomic(p.usdc_amount, USDC_DECIMALS)
        if amount is None:
            return _fail(f"Invalid usdcAmount format: {p.usdc_amount}")

        if amount > self.risk.max_position_size:
            self._audit(
                "buy_clamped",
                {"requested": amount, "max_position_size": self.risk.max_position_size, "token": p.token_address},
            )
            amount = self.risk.max_position_size

        balance = int(self.portfolio.balance)
        if amount > balance:
            return _fail(f"Insufficient balance: trying to buy {amount} but only have {balance}")

        if self.self_execute:
            result = await asyncio.to_thread(self.client.buy_tokens_self_execute, p.token_address, amount)
        else:
            result = await asyncio.to_thread(self.client.buy_tokens, p.token_address, amount)

        try:
            entry_price = float(result.average_price_per_token or 0)
        except ValueError:
            entry_price = 0.0
        pos = self.portfolio.add_position(
            token_address=p.token_address,
            amount=int(result.token_amount or 0),
            usdc_invested=int(result.usdc_paid or amount),
            entry_price=entry_price,
        )
        self._audit(
            "position_opened",
            {"token": pos.token_address, "amount": str(pos.amount), "usdc_invested": str(pos.usdc_invested)},
        )
        return ActionOutcome(
            success=True,
            message=f"Bought {p.token_address} for {amount} USDC units",
            data=result.model_dump(by_alias=True),
        )

    async def _sell(self, params: Dict[str, Any]) -> ActionOutcome:
        if not params.get("tokenAddress") or params.get("tokenAmount") in (None, ""):
            return _fail("Missing sell parameters")
        p = SellParams.model_validate(params)

        amount = to_atomic(p.token_amount, TOKEN_DECIMALS)
        if amount is None:
            return _fail(f"Invalid tokenAmount format: {p.token_amount}")

        result = await self._sell_atomic(p.token_address, amount)
        removed = self.portfolio.remove_one_for_asset(p.token_address)
        self._audit(
            "position_closed",
            {"token": p.token_address, "tracked": removed is not None, "usdc_received": result.usdc_received},
        )
        return ActionOutcome(
            success=True,
            message=f"Sold {amount} units of {p.token_address}",
            data=result.model_dump(by_alias=True),
        )

    async def _sell_atomic(self, token_address: str, amount: int):
        if self.self_execute:
            return await asyncio.to_thread(self.client.sell_tokens_self_execute, token_address, amount)
        return await asyncio.to_thread(self.client.sell_tokens, token_address, amount)

    # ------------------------------------------------------------------
    # launch / analyze
    # ------------------------------------------------------------------

    async def _launch(self, params: Dict[str, Any]) -> ActionOutcome:
        try:
            p = LaunchParams.model_validate(params)
        except ValidationError:
            ticker = params.get("ticker") or params.get("symbol")
            return _fail(
                f"Missing launch parameters. Got: name={params.get('name')}, ticker={ticker}, "
                f"description={str(params.get('description') or '')[:20]}"
            )
        # Rejects before any platform call.
        ticker = normalize_ticker(p.ticker)
        image = p.image or PLACEHOLDER_IMAGE_URL.format(ticker=quote(ticker))

        result = await asyncio.to_thread(
            lambda: self.client.launch_token(
                name=p.name,
                ticker=ticker,
                description=p.description,
                image=image,
                website=p.website,
                twitter=p.twitter,
                telegram=p.telegram,
                discord=p.discord,
            )
        )
        if result.token_address:
            self.portfolio.record_launch(result.token_address)
        return ActionOutcome(
            success=True,
            message=f"Launched {ticker} at {result.token_address}",
            data=result.model_dump(by_alias=True),
        )

    async def _analyze(self, params: Dict[str, Any]) -> ActionOutcome:
        if not params.get("tokenAddress"):
            return _fail("Missing token address")
        p = AnalyzeParams.model_validate(params)
        info = await asyncio.to_thread(self.client.get_token_info, p.token_address)
        return ActionOutcome(success=True, message="Token analyzed", data={"tokenInfo": info.model_dump(by_alias=True)})

    # ------------------------------------------------------------------
    # manual cleanup
    # ------------------------------------------------------------------

    async def sell_all_positions(self) -> List[Dict[str, Any]]:
        """Sell every tracked open position; one result entry per position, never raises."""
        results: List[Dict[str, Any]] = []
        for pos in list(self.portfolio.open_positions):
            try:
                result = await self._sell_atomic(pos.token_address, pos.amount)
                self.portfolio.remove_one_for_asset(pos.token_address)
                results.append(
                    {"tokenAddress": pos.token_address, "success": True, "txHash": result.transaction_hash}
                )
            except Exception as e:  # pylint: disable=broad-exception-caught
                results.append({"tokenAddress": pos.token_address, "success": False, "error": str(e)})
        self._audit(
            "sell_all_positions",
            {"sold": sum(1 for r in results if r["success"]), "failed": sum(1 for r in results if not r["success"])},
        )
        return results

    async def sell_wallet_holdings(self, *, limit: int = 50) -> List[Dict[str, Any]]:
        """Sell on-chain balances of every discovered token, tracked or not.

        Covers a fresh process whose in-memory positions are empty. Dust below
        the minimum sellable amount is skipped.
        """
        token_list = await asyncio.to_thread(self.client.discover_tokens, limit=limit)
        results: List[Dict[str, Any]] = []
        for token in token_list.tokens:
            try:
                balance = int(await asyncio.to_thread(self.client.get_token_balance, token.address))
            except Exception as e:  # pylint: disable=broad-exception-caught
                results.append({"tokenAddress": token.address, "success": False, "error": str(e)})
                continue
            if balance < MIN_SELL_AMOUNT:
                continue
            try:
                result = await self._sell_atomic(token.address, balance)
                while self.portfolio.remove_one_for_asset(token.address) is not None:
                    pass
                results.append(
                    {
                        "tokenAddress": token.address,
                        "name": token.name,
                        "success": True,
                        "txHash": result.transaction_hash,
                        "usdcReceived": result.usdc_received,
                    }
                )
            except Exception as e:  # pylint: disable=broad-exception-caught
                results.append({"tokenAddress": token.address, "name": token.name, "success": False, "error": str(e)})
        self._audit("sell_wallet_holdings", {"attempted": len(results)})
        return results


__all__ = ["ExecutionDispatcher", "to_atomic"]
