"""Run the autonomous launchpad trading agent.

Defaults:
- Base Sepolia (CHAIN_ID=84532) unless configured otherwise.
- Execution mode auto-detected from the wallet's ETH balance.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

from dotenv import load_dotenv

from src.config import ConfigError, EXECUTION_MODES, load_config
from src.data.mongo import MongoManager
from src.orchestrator.main_loop import build_agent_runner, run_agents, run_once
from src.orchestrator.run_manager import RUN_CONTROLS, RunManager, generate_run_id


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Autonomous launchpad trading agent")
    p.add_argument("--run-id", default=None, help="Run/session identifier (default: generated)")
    p.add_argument("--once", action="store_true", help="Run exactly one cycle and exit")
    p.add_argument("--sell-all", action="store_true", help="Sell every on-chain token holding and exit")
    p.add_argument("--status", action="store_true", help="Print the latest stored status for --run-id and exit")
    p.add_argument(
        "--set-run-control",
        default=None,
        choices=list(RUN_CONTROLS),
        help="Ask a running agent (by --run-id) to pause, resume or stop, then exit.",
    )
    p.add_argument("--db-name", default=os.getenv("MONGODB_DB", "agentpad"), help="MongoDB database name")
    p.add_argument("--no-audit", action="store_true", help="Run without MongoDB audit/persistence")
    p.add_argument(
        "--execution-mode",
        default=None,
        choices=list(EXECUTION_MODES),
        help="Override AGENT_EXECUTION_MODE",
    )
    return p


async def _amain() -> int:
    load_dotenv()
    args = _build_arg_parser().parse_args()

    try:
        cfg = load_config()
    except ConfigError as e:
        print(f"[ERROR] config: {e}", file=sys.stderr)
        return 2

    mongo = None
    if not args.no_audit:
        mongo = MongoManager(db_name=args.db_name, uri=cfg.mongodb_uri)
        await mongo.connect()
        await mongo.ensure_indexes()

    if args.set_run_control or args.status:
        if mongo is None or not args.run_id:
            print("[ERROR] --set-run-control/--status need --run-id and MongoDB", file=sys.stderr)
            return 2
        run_mgr = RunManager(mongo=mongo)
        if args.set_run_control:
            await run_mgr.set_control(run_id=args.run_id, control=args.set_run_control)
            print(f"[INFO] run_control_updated run_id={args.run_id} control={args.set_run_control}")
        else:
            print("[INFO] status:", await run_mgr.latest_status(run_id=args.run_id))
            for doc in await mongo.recent_executions(run_id=args.run_id, limit=5):
                print(
                    f"[INFO] cycle {doc.get('finished_at')} action={doc.get('action')} "
                    f"success={doc.get('success')} error={doc.get('error')}"
                )
        await mongo.close()
        return 0

    run_id = args.run_id or generate_run_id(prefix=cfg.agent_id)
    try:
        runner = build_agent_runner(cfg, run_id=run_id, mongo=mongo, execution_mode=args.execution_mode)
    except ConfigError as e:
        print(f"[ERROR] config: {e}", file=sys.stderr)
        return 2

    if mongo is not None:
        await RunManager(mongo=mongo).create_if_missing(run_id=run_id, agent_id=cfg.agent_id, cfg=cfg)

    print("[INFO] Starting launchpad agent")
    print(f"[INFO] run_id={run_id} agent_id={cfg.agent_id} wallet={runner.client.address}")
    print(f"[INFO] chain={cfg.chain.name} ({cfg.chain.chain_id}) rpc_urls={len(cfg.chain.rpc_urls)}")
    print(f"[INFO] llm_provider={cfg.model.provider} model={cfg.model.model}")
    print(f"[INFO] execution_mode={args.execution_mode or cfg.execution_mode}")
    print(f"[INFO] audit={'off' if mongo is None else args.db_name}")

    try:
        if args.sell_all:
            await runner.resolve_execution_mode()
            results = await runner.dispatcher.sell_wallet_holdings()
            print(f"[INFO] sell_all results={results}")
            return 0

        if args.once:
            result = await run_once(runner)
            print(
                f"[INFO] cycle action={result.action} success={result.success} "
                f"error={result.error} profit_loss={result.profit_loss}"
            )
            return 0

        crashed = await run_agents([runner])
        for agent_id, exc in crashed.items():
            print(f"[ERROR] agent_crashed agent_id={agent_id} error={exc!r}", file=sys.stderr)
        print(f"[INFO] stopped status={runner.get_status()['state']}")
        return 1 if crashed else 0
    finally:
        if mongo is not None:
            await mongo.close()


def main() -> None:
    raise SystemExit(asyncio.run(_amain()))


if __name__ == "__main__":
    main()
