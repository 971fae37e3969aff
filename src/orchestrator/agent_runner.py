"""Agent runner: one cooperative loop per agent.

Cycle pipeline:
  balance -> min-balance gate -> market snapshot -> prompt -> model -> parse
  -> action rules -> dispatch -> balance after -> record

Lifecycle: stopped -> running <-> paused -> stopped. `stop()` is cooperative;
the flag is observed at iteration boundaries and an in-flight cycle finishes.

Notes:
- Every cycle yields exactly one ExecutionResult, delivered to `on_execution`
  and then the dashboard, before the next sleep.
- Any exception escaping a cycle becomes a synthetic failed `wait` result;
  the loop sleeps a short cooldown and continues.
- Hooks run inline; each call has its own fault boundary.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from src.agents.decision import DecisionProvider, parse_decision
from src.agents.prompt import PROMPT_ACTIONS
from src.agents.schemas import ActionType, Decision, ExecutionPhase, ExecutionResult
from src.config import AgentConfig
from src.data.mongo import utc_now
from src.execution.dispatcher import ExecutionDispatcher
from src.execution.schemas import ExecutionMode
from src.portfolio.portfolio import PortfolioState
from src.risk.rules import ActionRules

INTERVAL_FAST = "fast"
INTERVAL_BASE = "base"
INTERVAL_SLOW = "slow"

MARKET_LIMIT = 10

Hook = Callable[..., Any]


@dataclass
class AgentHooks:
    on_start: Optional[Hook] = None
    on_stop: Optional[Hook] = None
    on_pause: Optional[Hook] = None
    on_resume: Optional[Hook] = None
    on_error: Optional[Hook] = None
    on_execution: Optional[Hook] = None
    on_phase_change: Optional[Hook] = None
    on_low_balance: Optional[Hook] = None
    on_decision: Optional[Hook] = None


@dataclass
class RunnerStatus:
    agent_id: str
    state: str = "stopped"  # stopped | running | paused | error
    phase: str = ExecutionPhase.idle.value
    execution_mode: Optional[str] = None
    balance: int = 0
    execution_count: int = 0
    open_positions: int = 0
    total_profit_loss: int = 0
    win_rate: float = 0.0
    interval_mode: str = INTERVAL_BASE
    current_interval_s: Optional[float] = None
    next_execution_at: Optional[float] = None
    last_action: Optional[str] = None
    last_error: Optional[str] = None
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    hook_failures: int = 0


def is_within_working_hours(hour: int, start: int, end: int) -> bool:
    """Inclusive hour window; start > end wraps past midnight."""
    if start <= end:
        return start <= hour <= end
    return hour >= start or hour <= end


class AgentRunner:
    def __init__(
        self,
        config: AgentConfig,
        *,
        client: Any,
        decision_provider: DecisionProvider,
        portfolio: Optional[PortfolioState] = None,
        dispatcher: Optional[ExecutionDispatcher] = None,
        rules: Optional[ActionRules] = None,
        hooks: Optional[AgentHooks] = None,
        mongo: Optional[Any] = None,
        audit_mgr: Optional[Any] = None,
        dashboard: Optional[Any] = None,
        run_manager: Optional[Any] = None,
        run_id: Optional[str] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        now: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.client = client
        self.decision_provider = decision_provider
        self.portfolio = portfolio or PortfolioState()
        self.audit_mgr = audit_mgr
        self.dispatcher = dispatcher or ExecutionDispatcher(
            client=client,
            portfolio=self.portfolio,
            risk=config.risk,
            audit_mgr=audit_mgr,
            agent_id=config.agent_id,
        )
        self.rules = rules or ActionRules(config.action_policies)
        self.hooks = hooks or AgentHooks()
        self.mongo = mongo
        self.dashboard = dashboard
        self.run_manager = run_manager
        self.run_id = run_id
        self.sleep = sleep
        self.clock = clock
        self.now = now

        self._running = False
        self._paused = False
        self._fast_until: Optional[float] = None
        self._last_control: Optional[str] = None
        self.status = RunnerStatus(agent_id=config.agent_id)

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_paused(self) -> bool:
        return self._paused

    async def _audit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if not self.audit_mgr:
            return
        await self.audit_mgr.log_safe(event_type, payload, agent_id=self.config.agent_id, run_id=self.run_id)

    async def _hook(self, name: str, *args: Any) -> None:
        fn = getattr(self.hooks, name, None)
        if fn is None:
            return
        try:
            res = fn(*args)
            if inspect.isawaitable(res):
                await res
        except Exception as e:  # pylint: disable=broad-exception-caught
            self.status.hook_failures += 1
            await self._audit("hook_error", {"hook": name, "error": str(e)})

    async def _set_phase(self, phase: ExecutionPhase, details: Optional[Dict[str, Any]] = None) -> None:
        self.status.phase = phase.value
        await self._hook("on_phase_change", phase.value, details or {})

    async def _notify_dashboard(self, method: str, *args: Any) -> None:
        if self.dashboard is None:
            return
        try:
            await getattr(self.dashboard, method)(*args)
        except Exception:  # pylint: disable=broad-exception-caught
            pass

    async def _persist(self, result: Optional[ExecutionResult] = None) -> None:
        if self.mongo is None:
            return
        try:
            if result is not None:
                await self.mongo.record_execution(result, agent_id=self.config.agent_id, run_id=self.run_id)
            if self.run_id:
                await self.mongo.upsert_agent_run(
                    run_id=self.run_id, agent_id=self.config.agent_id, status=self.get_status()
                )
        except Exception as e:  # pylint: disable=broad-exception-caught
            await self._audit("persist_error", {"error": str(e)})

    async def _fetch_balance(self) -> int:
        """USDC balance; the last known balance when every RPC fails."""
        try:
            balance = int(await asyncio.to_thread(self.client.get_usdc_balance))
        except Exception as e:  # pylint: disable=broad-exception-caught
            await self._audit("balance_fetch_failed", {"error": str(e), "fallback": self.portfolio.balance})
            return int(self.portfolio.balance)
        self.portfolio.balance = balance
        self.status.balance = balance
        return balance

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    async def resolve_execution_mode(self) -> str:
        mode = self.config.execution_mode
        eth_balance: Optional[int] = None
        if mode == ExecutionMode.auto.value:
            has_eth = await asyncio.to_thread(self.client.has_enough_eth_for_self_execute)
            mode = ExecutionMode.self_execute.value if has_eth else ExecutionMode.gasless.value
            try:
                eth_balance = int(await asyncio.to_thread(self.client.get_eth_balance))
            except Exception:  # pylint: disable=broad-exception-caught
                eth_balance = None
        self.dispatcher.mode = mode
        self.status.execution_mode = mode
        await self._audit(
            "execution_mode_selected",
            {"mode": mode, "configured": self.config.execution_mode, "eth_balance": eth_balance},
        )
        return mode

    async def start(self) -> None:
        if self._running:
            raise RuntimeError("Agent is already running")
        self._running = True
        self._paused = False
        self.status.state = "running"
        self.status.started_at = self.now()
        self.status.stopped_at = None
        try:
            await self.resolve_execution_mode()
        except Exception:
            self._running = False
            self.status.state = "stopped"
            raise

        await self._hook("on_start")
        await self._audit("agent_start", {"execution_mode": self.status.execution_mode, "name": self.config.name})
        await self._notify_dashboard("notify_start", self.get_status())
        await self._persist()
        await self._loop()

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._paused = False
        self.status.state = "stopped"
        self.status.phase = ExecutionPhase.stopped.value
        self.status.stopped_at = self.now()
        await self._hook("on_stop")
        await self._audit("agent_stop", {"execution_count": self.status.execution_count})
        await self._notify_dashboard("notify_stop", self.get_status())
        await self._persist()

    async def pause(self) -> None:
        if not self._running or self._paused:
            return
        self._paused = True
        self.status.state = "paused"
        self.status.phase = ExecutionPhase.paused.value
        await self._hook("on_pause")
        await self._audit("agent_pause", {})

    async def resume(self) -> None:
        if not self._running:
            raise RuntimeError("Agent is not running. Use start() instead.")
        if not self._paused:
            return
        self._paused = False
        self.status.state = "running"
        self.status.phase = ExecutionPhase.idle.value
        await self._hook("on_resume")
        await self._audit("agent_resume", {})

    def get_status(self) -> Dict[str, Any]:
        return asdict(self.status)

    async def sell_all_positions(self) -> List[Dict[str, Any]]:
        results = await self.dispatcher.sell_all_positions()
        self.status.open_positions = len(self.portfolio.open_positions)
        return results

    # ------------------------------------------------------------------
    # intervals
    # ------------------------------------------------------------------

    def _trigger_fast(self) -> None:
        dyn = self.config.cadence.dynamic_intervals
        if dyn is None:
            return
        self.status.interval_mode = INTERVAL_FAST
        self._fast_until = self.clock() + dyn.fast_mode_duration_s

    def _trigger_slow(self) -> None:
        if self.config.cadence.dynamic_intervals is None or self.status.interval_mode == INTERVAL_FAST:
            return
        self.status.interval_mode = INTERVAL_SLOW

    def adjust_interval(self, result: ExecutionResult) -> None:
        dyn = self.config.cadence.dynamic_intervals
        if dyn is None:
            return
        if result.success and result.action in (ActionType.launch.value, ActionType.buy.value, ActionType.sell.value):
            self._trigger_fast()
        elif self.status.interval_mode != INTERVAL_FAST:
            # Nothing is pending; start from base and let slow triggers apply.
            self.status.interval_mode = INTERVAL_BASE
        if self.portfolio.open_positions:
            self._trigger_slow()
        if int(self.portfolio.balance) < self.config.risk.min_balance * 2:
            self._trigger_slow()

    def current_interval_s(self) -> float:
        dyn = self.config.cadence.dynamic_intervals
        if dyn is None:
            return self.config.cadence.review_interval_s
        if self._fast_until is not None and self.clock() > self._fast_until:
            self._fast_until = None
            self.status.interval_mode = INTERVAL_BASE
        if self.status.interval_mode == INTERVAL_FAST:
            return dyn.fast_s
        if self.status.interval_mode == INTERVAL_SLOW:
            return dyn.slow_s
        return dyn.base_s

    # ------------------------------------------------------------------
    # loop
    # ------------------------------------------------------------------

    async def _apply_run_control(self) -> None:
        if self.run_manager is None or not self.run_id:
            return
        try:
            control = await self.run_manager.get_control(run_id=self.run_id)
        except Exception as e:  # pylint: disable=broad-exception-caught
            await self._audit("run_control_failed", {"error": str(e)})
            return
        if control is None or control == self._last_control:
            return
        self._last_control = control
        if control == "stopped":
            await self.stop()
        elif control == "paused":
            await self.pause()
        elif control == "running" and self._paused:
            await self.resume()

    def within_working_hours(self) -> bool:
        c = self.config.cadence
        return is_within_working_hours(self.now().hour, c.working_hours_start, c.working_hours_end)

    async def _loop(self) -> None:
        while self._running:
            await self._apply_run_control()
            if not self._running:
                break
            if self._paused:
                await self.sleep(self.config.cadence.paused_poll_s)
                continue
            if not self.within_working_hours():
                self._trigger_slow()
                await self.sleep(self.config.cadence.off_hours_poll_s)
                continue

            try:
                result = await self.run_cycle()
                await self.record(result)
            except Exception as e:  # pylint: disable=broad-exception-caught
                await self._handle_cycle_error(e)
                if self._running:
                    await self.sleep(self.config.cadence.error_cooldown_s)
                    if self._running:
                        self.status.state = "paused" if self._paused else "running"
                continue

            if result.action == ActionType.stop.value:
                await self.stop()
            if not self._running:
                break

            interval = self.current_interval_s()
            self.status.current_interval_s = interval
            self.status.next_execution_at = self.clock() + interval
            await self._set_phase(ExecutionPhase.waiting, {"interval_s": interval, "mode": self.status.interval_mode})
            await self.sleep(interval)

    async def run_once(self) -> ExecutionResult:
        """One full cycle with bookkeeping and error containment; no sleeping."""
        if self.status.execution_mode is None:
            await self.resolve_execution_mode()
        try:
            result = await self.run_cycle()
            await self.record(result)
            return result
        except Exception as e:  # pylint: disable=broad-exception-caught
            return await self._handle_cycle_error(e)

    async def run_cycle(self) -> ExecutionResult:
        started_at = self.now()
        t0 = time.perf_counter()

        await self._set_phase(ExecutionPhase.fetching_market)
        balance_before = await self._fetch_balance()

        min_balance = self.config.risk.min_balance
        if balance_before < min_balance:
            await self._hook("on_low_balance", balance_before)
            await self._audit("low_balance", {"balance": balance_before, "min_balance": min_balance})
            return ExecutionResult(
                success=False,
                action=ActionType.wait,
                decision=Decision.wait("Low balance", f"Balance {balance_before} is below minimum {min_balance}"),
                error="Low balance",
                started_at=started_at,
                finished_at=self.now(),
                balance_before=balance_before,
                cycle_time_s=time.perf_counter() - t0,
            )

        market_note: Optional[str] = None
        try:
            token_list = await asyncio.to_thread(
                self.client.discover_tokens, limit=MARKET_LIMIT, sort_by="launchTime", sort_order="desc"
            )
            tokens = list(token_list.tokens)
        except Exception as e:  # pylint: disable=broad-exception-caught
            tokens = []
            market_note = f"Market data unavailable this cycle ({e}). Prefer wait, analyze or managing existing positions."
            await self._audit("market_fetch_failed", {"error": str(e)})

        await self._set_phase(ExecutionPhase.building_prompt)
        candidate_actions = [a for a in PROMPT_ACTIONS if a != ActionType.wait.value]
        blocked = self.rules.blocked(candidate_actions)
        prompt = self.decision_provider.build_prompt(
            self.config.strategy,
            tokens,
            balance_before,
            self.portfolio.open_positions,
            list(self.portfolio.launched_tokens),
            self.portfolio.recent_history(5),
            blocked_actions=blocked,
            priority_order=self.rules.priority_order(),
            market_note=market_note,
            now=started_at,
        )

        await self._set_phase(ExecutionPhase.calling_ai, {"provider": self.decision_provider.provider.name})
        m0 = time.perf_counter()
        text = await self.decision_provider.call_model(prompt)
        model_latency_s = time.perf_counter() - m0

        await self._set_phase(ExecutionPhase.parsing_decision)
        decision = parse_decision(text)
        await self._hook("on_decision", decision)

        check = self.rules.check(decision.action)
        if not check.allowed:
            await self._audit("action_blocked", {"action": decision.action, "reason": check.reason})
            decision = Decision.wait(
                f"{decision.action} blocked: {check.reason}",
                f"Model chose {decision.action} but it is unavailable ({check.reason}). {decision.reasoning}",
                confidence=decision.confidence,
            )

        await self._set_phase(ExecutionPhase.executing_action, {"action": decision.action})
        outcome = await self.dispatcher.dispatch(decision)
        if outcome.success:
            self.rules.record(decision.action)

        await self._set_phase(ExecutionPhase.recording_result)
        balance_after = await self._fetch_balance()
        return ExecutionResult(
            success=outcome.success,
            action=decision.action,
            decision=decision,
            execution=outcome.model_dump(),
            error=outcome.error,
            started_at=started_at,
            finished_at=self.now(),
            balance_before=balance_before,
            balance_after=balance_after,
            profit_loss=balance_after - balance_before,
            model_latency_s=model_latency_s,
            cycle_time_s=time.perf_counter() - t0,
        )

    async def record(self, result: ExecutionResult) -> None:
        self.portfolio.append_history(result)
        self.portfolio.apply_execution_result(result)
        self.adjust_interval(result)

        s = self.status
        s.execution_count += 1
        s.last_action = result.action
        s.open_positions = len(self.portfolio.open_positions)
        s.total_profit_loss = self.portfolio.total_profit_loss
        s.win_rate = self.portfolio.win_rate()
        if not result.success and result.error:
            s.last_error = result.error

        await self._audit(
            "cycle_result",
            {
                "action": result.action,
                "success": result.success,
                "error": result.error,
                "profit_loss": result.profit_loss,
                "model_latency_s": result.model_latency_s,
                "cycle_time_s": result.cycle_time_s,
            },
        )
        await self._hook("on_execution", result)
        await self._notify_dashboard("notify_execution", result)
        await self._persist(result)

    async def _handle_cycle_error(self, exc: Exception) -> ExecutionResult:
        msg = str(exc) or exc.__class__.__name__
        self.status.state = "error"
        self.status.last_error = msg
        await self._set_phase(ExecutionPhase.error, {"error": msg})

        balance = int(self.portfolio.balance)
        result = ExecutionResult(
            success=False,
            action=ActionType.wait,
            decision=Decision(
                action=ActionType.wait,
                params={"reason": f"ERROR: {msg}"},
                reasoning=f"Execution failed: {msg}",
                confidence=0.0,
            ),
            error=msg,
            finished_at=self.now(),
            balance_before=balance,
            balance_after=balance,
        )
        self.portfolio.append_history(result)
        self.status.execution_count += 1
        self.status.last_action = result.action

        await self._audit("cycle_error", {"error": msg, "type": exc.__class__.__name__})
        await self._hook("on_execution", result)
        await self._hook("on_error", exc)
        await self._notify_dashboard("notify_error", msg)
        await self._persist(result)
        return result


__all__ = ["AgentHooks", "AgentRunner", "RunnerStatus", "is_within_working_hours"]
