"""Runner session lifecycle in MongoDB.

A session document in `agent_runs` lets an operator:
- see the latest status snapshot of a running agent
- request pause/resume/stop from another process (the runner polls `control`)
"""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

from src.data.mongo import MongoManager, jsonify
from src.data.schemas import AGENT_RUNS

RUN_CONTROLS = ("running", "paused", "stopped")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_run_id(*, prefix: str = "run") -> str:
    ts = _utc_now().strftime("%Y%m%d_%H%M%S")
    suffix = uuid4().hex[:8]
    return f"{prefix}_{ts}_{suffix}"


class RunManager:
    def __init__(self, *, mongo: MongoManager):
        self.mongo = mongo

    async def create_if_missing(self, *, run_id: str, agent_id: str, cfg: Any, control: str = "running") -> None:
        await self.mongo.connect()
        now = _utc_now()
        try:
            cfg_doc: Dict[str, Any] = asdict(cfg)
        except TypeError:
            cfg_doc = {"raw": str(cfg)}
        doc: Dict[str, Any] = {
            "run_id": run_id,
            "agent_id": agent_id,
            "control": control,
            "created_at": now,
            "updated_at": now,
            "config": jsonify(cfg_doc),
        }
        # Upsert so a restarted process never clobbers an existing session.
        await self.mongo.collection(AGENT_RUNS).update_one(
            {"run_id": run_id},
            {"$setOnInsert": doc},
            upsert=True,
        )

    async def get_control(self, *, run_id: str) -> Optional[str]:
        await self.mongo.connect()
        doc = await self.mongo.collection(AGENT_RUNS).find_one({"run_id": run_id})
        if not doc:
            return None
        control = doc.get("control")
        return str(control) if control is not None else None

    async def set_control(self, *, run_id: str, control: str) -> None:
        if control not in RUN_CONTROLS:
            raise ValueError(f"control must be one of {RUN_CONTROLS}, got {control!r}")
        await self.mongo.connect()
        await self.mongo.collection(AGENT_RUNS).update_one(
            {"run_id": run_id},
            {"$set": {"control": control, "updated_at": _utc_now()}},
            upsert=True,
        )

    async def latest_status(self, *, run_id: str) -> Optional[Dict[str, Any]]:
        await self.mongo.connect()
        return await self.mongo.collection(AGENT_RUNS).find_one({"run_id": run_id}, {"_id": 0})


__all__ = ["RUN_CONTROLS", "RunManager", "generate_run_id"]
