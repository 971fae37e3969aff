"""Audit logging helpers.

MongoDB `audit_log` is the system of record for every decision and side effect.
`AuditManager` wraps `MongoManager.log_audit_event` so other modules don't need
to know collection details. Audit writes are best-effort: a failing sink must
never break a trading cycle.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

from src.data.mongo import MongoManager


@dataclass(frozen=True)
class AuditContext:
    run_id: Optional[str] = None
    agent_id: Optional[str] = None
    trace_id: Optional[str] = None


class AuditManager:
    """Thin wrapper around MongoManager for audit events."""

    def __init__(self, mongo: MongoManager, *, ctx: Optional[AuditContext] = None):
        self.mongo = mongo
        self.ctx = ctx or AuditContext()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending: Set[asyncio.Future] = set()
        self.failures = 0

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Remember the owning loop so worker threads can emit events."""
        self._loop = loop

    async def log(
        self,
        event_type: str,
        payload: Dict[str, Any],
        *,
        ctx: Optional[AuditContext] = None,
        run_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        trace_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        c = ctx or self.ctx
        return await self.mongo.log_audit_event(
            event_type,
            payload,
            run_id=run_id or c.run_id,
            agent_id=agent_id or c.agent_id,
            trace_id=trace_id or c.trace_id,
            metadata=metadata,
        )

    async def log_safe(self, event_type: str, payload: Dict[str, Any], **kwargs: Any) -> Optional[str]:
        try:
            return await self.log(event_type, payload, **kwargs)
        except Exception:  # pylint: disable=broad-exception-caught
            self.failures += 1
            return None

    def emit(self, event_type: str, payload: Dict[str, Any], **kwargs: Any) -> None:
        """Fire-and-forget from sync code, including worker threads."""
        coro = self.log_safe(event_type, payload, **kwargs)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            task = loop.create_task(coro)
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            return
        if self._loop is not None and self._loop.is_running():
            fut = asyncio.run_coroutine_threadsafe(coro, self._loop)
            self._pending.add(fut)  # type: ignore[arg-type]
            fut.add_done_callback(self._pending.discard)  # type: ignore[arg-type]
            return
        coro.close()


__all__ = ["AuditContext", "AuditManager"]
