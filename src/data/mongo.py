"""MongoDB persistence for agent runs.

Four collections (see schemas.py): audit_log, llm_calls, executions and
agent_runs. Everything written here goes through `jsonify` first, so pydantic
models, dataclasses and oversized atomic amounts can be passed as-is.

Motor is async; callers await every method. `connect()` is lazy and cheap to
repeat.
"""

from __future__ import annotations

import os
import time
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import DESCENDING
from pymongo.errors import PyMongoError

from .schemas import AGENT_RUNS, AUDIT_LOG, COLLECTION_SPECS, EXECUTIONS, LLM_CALLS

# BSON integers are signed 64-bit.
_BSON_INT_MIN = -(2 ** 63)
_BSON_INT_MAX = 2 ** 63 - 1


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def jsonify(value: Any) -> Any:
    """Convert to BSON-safe types; token amounts beyond int64 become strings."""
    # pylint: disable=too-many-return-statements,broad-exception-caught
    if isinstance(value, Enum):
        return jsonify(value.value)
    if value is None or isinstance(value, (bool, str, float, datetime)):
        return value
    if isinstance(value, int):
        return value if _BSON_INT_MIN <= value <= _BSON_INT_MAX else str(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, bytes):
        return "0x" + value.hex()
    if isinstance(value, dict):
        return {str(k): jsonify(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [jsonify(v) for v in value]
    if hasattr(value, "model_dump"):
        try:
            return jsonify(value.model_dump())
        except Exception:
            return str(value)
    if is_dataclass(value) and not isinstance(value, type):
        return jsonify(asdict(value))
    try:
        return jsonify(vars(value))
    except TypeError:
        return str(value)


def _with_context(doc: Dict[str, Any], **context: Any) -> Dict[str, Any]:
    for key, val in context.items():
        if val:
            doc[key] = val
    return doc


class MongoManager:
    """Motor-backed store for audit events, model calls, cycle results and run snapshots."""

    def __init__(self, db_name: str = "agentpad", uri: Optional[str] = None):
        self.uri = uri or os.getenv("MONGODB_URI") or os.getenv("MONGODB_URL")
        if not self.uri:
            raise RuntimeError("MONGODB_URI (or MONGODB_URL) is not set in env.")
        self.db_name = db_name
        self.client: Optional[AsyncIOMotorClient] = None
        self.db: Optional[AsyncIOMotorDatabase] = None

    async def connect(self) -> AsyncIOMotorDatabase:
        if self.db is None:
            self.client = AsyncIOMotorClient(self.uri)
            self.db = self.client[self.db_name]
        return self.db

    async def close(self) -> None:
        if self.client is not None:
            self.client.close()
        self.client = None
        self.db = None

    def collection(self, name: str) -> AsyncIOMotorCollection:
        if self.db is None:
            raise RuntimeError("MongoManager not connected. Call await connect().")
        return self.db[name]

    async def ensure_indexes(self) -> None:
        """Create the indexes declared in schemas.py; existing ones are left alone."""
        await self.connect()
        for spec in COLLECTION_SPECS.values():
            for idx in spec.indexes:
                try:
                    await self.collection(spec.name).create_index(list(idx))
                except PyMongoError:
                    continue

    async def insert_one(self, collection: str, doc: Dict[str, Any]) -> str:
        await self.connect()
        res = await self.collection(collection).insert_one(jsonify(doc))
        return str(res.inserted_id)

    async def log_audit_event(
        self,
        event_type: str,
        payload: Dict[str, Any],
        *,
        run_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        trace_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        doc = {"timestamp": utc_now(), "event_type": event_type, "payload": payload}
        _with_context(doc, run_id=run_id, agent_id=agent_id, trace_id=trace_id, metadata=metadata)
        return await self.insert_one(AUDIT_LOG, doc)

    async def log_llm_call(
        self,
        *,
        provider: str,
        model: str,
        messages: Any,
        response: Any,
        run_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        timing: Optional[Dict[str, Any]] = None,
        error: Optional[Dict[str, Any]] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Store the full prompt and raw reply; a pointer event goes to audit_log."""
        doc = {
            "timestamp": utc_now(),
            "provider": provider,
            "model": model,
            "messages": messages,
            "response": response,
        }
        _with_context(doc, run_id=run_id, agent_id=agent_id, timing=timing, error=error, extra=extra)
        inserted_id = await self.insert_one(LLM_CALLS, doc)
        await self.log_audit_event(
            "llm_call",
            {"llm_call_ref": inserted_id, "ok": error is None},
            run_id=run_id,
            agent_id=agent_id,
            metadata={"provider": provider, "model": model, "timing": timing},
        )
        return inserted_id

    async def record_execution(self, result: Any, *, agent_id: str, run_id: Optional[str] = None) -> str:
        """Persist one cycle ExecutionResult."""
        doc = jsonify(result)
        doc["timestamp"] = utc_now()
        doc["agent_id"] = agent_id
        _with_context(doc, run_id=run_id)
        return await self.insert_one(EXECUTIONS, doc)

    async def recent_executions(
        self,
        *,
        run_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        limit: int = 10,
    ) -> List[Dict[str, Any]]:
        """Newest-first cycle results for a run or agent."""
        await self.connect()
        query = _with_context({}, run_id=run_id, agent_id=agent_id)
        cursor = self.collection(EXECUTIONS).find(query, {"_id": 0}).sort("timestamp", DESCENDING).limit(limit)
        return await cursor.to_list(length=limit)

    async def upsert_agent_run(self, *, run_id: str, agent_id: str, status: Dict[str, Any]) -> None:
        """Overwrite the run's status snapshot; the operator's `control` field is not touched."""
        await self.connect()
        doc = {"status": jsonify(status), "agent_id": agent_id, "updated_at": utc_now()}
        await self.collection(AGENT_RUNS).update_one({"run_id": run_id}, {"$set": doc}, upsert=True)


class LlmTimer:
    # pylint: disable=too-few-public-methods

    def __init__(self):
        self.start_s = time.perf_counter()

    def finish(self) -> Dict[str, Any]:
        return {"latency_s": time.perf_counter() - self.start_s}


__all__ = ["LlmTimer", "MongoManager", "jsonify", "utc_now"]
