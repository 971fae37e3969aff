"""Optional live dashboard notifier.

Posts runner events to `{dashboard_url}/agent/update`. Delivery is strictly
best-effort: short timeout, failures counted and otherwise ignored.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import requests

from src.data.mongo import jsonify

DASHBOARD_TIMEOUT_S = 2.0


class DashboardNotifier:
    def __init__(self, base_url: str, agent_id: str, *, session: Optional[requests.Session] = None):
        self.url = f"{base_url.rstrip('/')}/agent/update"
        self.agent_id = agent_id
        self.session = session or requests.Session()
        self.failures = 0

    def _post(self, event_type: str, data: Dict[str, Any]) -> None:
        try:
            self.session.post(
                self.url,
                json={"agentId": self.agent_id, "type": event_type, "data": jsonify(data)},
                timeout=DASHBOARD_TIMEOUT_S,
            )
        except requests.RequestException:
            self.failures += 1

    async def notify(self, event_type: str, data: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._post, event_type, data)

    async def notify_start(self, status: Dict[str, Any]) -> None:
        await self.notify("start", status)

    async def notify_stop(self, status: Dict[str, Any]) -> None:
        await self.notify("stop", status)

    async def notify_execution(self, result: Any) -> None:
        await self.notify("execution", result.model_dump() if hasattr(result, "model_dump") else dict(result))

    async def notify_error(self, message: str) -> None:
        await self.notify("error", {"message": message})


__all__ = ["DASHBOARD_TIMEOUT_S", "DashboardNotifier"]
