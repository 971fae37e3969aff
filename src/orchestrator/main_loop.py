"""Process-level loop: wire components for an agent and run one or many runners.

Supports:
- run once (single cycle, no sleeping)
- run continuously until SIGINT/SIGTERM or a stop decision/control
- several agents side by side, each its own task with no shared state
"""

from __future__ import annotations

import asyncio
import signal
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence

from src.agents.decision import DecisionProvider
from src.agents.llm_providers import build_llm_provider
from src.config import AgentConfig
from src.data.audit import AuditContext, AuditManager
from src.data.mongo import MongoManager
from src.execution.platform_client import PlatformClient
from src.orchestrator.agent_runner import AgentHooks, AgentRunner
from src.orchestrator.dashboard import DashboardNotifier
from src.orchestrator.run_manager import RunManager

SHUTDOWN_GRACE_S = 15.0


async def _record_crash(runner: AgentRunner, exc: BaseException, crashed: Dict[str, BaseException]) -> None:
    agent_id = runner.config.agent_id
    crashed[agent_id] = exc
    if runner.audit_mgr is not None:
        await runner.audit_mgr.log_safe("agent_crashed", {"error": str(exc), "type": exc.__class__.__name__})


def build_agent_runner(
    cfg: AgentConfig,
    *,
    run_id: str,
    mongo: Optional[MongoManager] = None,
    hooks: Optional[AgentHooks] = None,
    execution_mode: Optional[str] = None,
    private_key: Optional[str] = None,
) -> AgentRunner:
    """Construct client, model provider and runner for one agent config.

    Configuration errors (missing key, bad chain) raise here, before any loop starts.
    """
    if execution_mode:
        cfg = replace(cfg, execution_mode=execution_mode)

    audit = AuditManager(mongo, ctx=AuditContext(run_id=run_id, agent_id=cfg.agent_id)) if mongo else None
    client = PlatformClient(
        platform=cfg.platform,
        chain=cfg.chain,
        private_key=private_key,
        audit_mgr=audit,
        agent_id=cfg.agent_id,
    )
    provider = build_llm_provider(cfg.model, client)
    decision_provider = DecisionProvider(
        provider, risk=cfg.risk, mongo=mongo, agent_id=cfg.agent_id, run_id=run_id
    )
    dashboard = DashboardNotifier(cfg.dashboard_url, cfg.agent_id) if cfg.dashboard_url else None
    return AgentRunner(
        cfg,
        client=client,
        decision_provider=decision_provider,
        hooks=hooks,
        mongo=mongo,
        audit_mgr=audit,
        dashboard=dashboard,
        run_manager=RunManager(mongo=mongo) if mongo else None,
        run_id=run_id,
    )


async def run_agents(runners: Sequence[AgentRunner]) -> Dict[str, BaseException]:
    """Run every runner as its own task until all stop or a signal arrives.

    A runner whose task dies is recorded and dropped; the others keep running.
    Returns the crashed agents keyed by agent id.
    """
    loop = asyncio.get_running_loop()
    for r in runners:
        if r.audit_mgr is not None:
            r.audit_mgr.bind_loop(loop)

    stop_event = asyncio.Event()

    def _request_stop(*_args: object) -> None:
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop)
        except (NotImplementedError, RuntimeError):
            signal.signal(sig, lambda *_a: loop.call_soon_threadsafe(_request_stop))

    by_task: Dict[asyncio.Task, AgentRunner] = {
        asyncio.create_task(r.start(), name=f"agent:{r.config.agent_id}"): r for r in runners
    }
    tasks: List[asyncio.Task] = list(by_task)
    crashed: Dict[str, BaseException] = {}
    waiter = asyncio.create_task(stop_event.wait())
    try:
        pending: Any = set(tasks)
        while pending and not stop_event.is_set():
            done, pending = await asyncio.wait(pending | {waiter}, return_when=asyncio.FIRST_COMPLETED)
            pending.discard(waiter)
            for t in done:
                if t is waiter or t.cancelled() or t.exception() is None:
                    continue
                await _record_crash(by_task[t], t.exception(), crashed)
    finally:
        for r in runners:
            await r.stop()
        # Stopped runners exit at their next iteration boundary; a sleeping one is cancelled after the grace period.
        _, still_running = await asyncio.wait(tasks, timeout=SHUTDOWN_GRACE_S) if tasks else (set(), set())
        for t in still_running:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        waiter.cancel()
    return crashed


async def run_once(runner: AgentRunner):
    if runner.audit_mgr is not None:
        runner.audit_mgr.bind_loop(asyncio.get_running_loop())
    return await runner.run_once()


__all__ = ["build_agent_runner", "run_agents", "run_once"]
