"""Dashboard notifier, run control, audit and multi-agent loop tests.

Run:
  pytest tests/test_orchestrator_support.py

No network or DB required (fake Mongo collections, fake HTTP session).
"""

import asyncio
import os
import sys

import pytest
import requests

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from src.agents.schemas import Decision, ExecutionResult  # noqa: E402
from src.data.audit import AuditContext, AuditManager  # noqa: E402
from src.data.mongo import MongoManager, jsonify  # noqa: E402
from src.orchestrator.dashboard import DASHBOARD_TIMEOUT_S, DashboardNotifier  # noqa: E402
from src.orchestrator.main_loop import run_agents  # noqa: E402
from src.orchestrator.run_manager import RunManager, generate_run_id  # noqa: E402


def run_async(coro):
    return asyncio.run(coro)


class FakeCollection:
    def __init__(self):
        self.docs = {}

    async def update_one(self, query, update, upsert=False):
        key = query["run_id"]
        doc = self.docs.get(key)
        if doc is None:
            if not upsert:
                return
            doc = dict(query)
            doc.update(update.get("$setOnInsert", {}))
            self.docs[key] = doc
        doc.update(update.get("$set", {}))

    async def find_one(self, query, projection=None):
        doc = self.docs.get(query["run_id"])
        return dict(doc) if doc else None


class FakeMongo:
    def __init__(self):
        self.collections = {}
        self.audit = []

    async def connect(self):
        return None

    def collection(self, name):
        return self.collections.setdefault(name, FakeCollection())

    async def log_audit_event(self, event_type, payload, **kw):
        self.audit.append((event_type, payload, kw))
        return str(len(self.audit))


class FailingMongo(FakeMongo):
    async def log_audit_event(self, event_type, payload, **kw):
        raise RuntimeError("mongo down")


class FakeSession:
    def __init__(self, fail=False):
        self.fail = fail
        self.posts = []

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, json, timeout))
        if self.fail:
            raise requests.ConnectionError("dashboard offline")


def test_dashboard_posts_events():
    session = FakeSession()
    dash = DashboardNotifier("http://dash.local/", "agent_1", session=session)
    result = ExecutionResult(success=True, action="wait", decision=Decision.wait("quiet", "nothing to do"))
    run_async(dash.notify_execution(result))
    run_async(dash.notify_error("boom"))

    url, body, timeout = session.posts[0]
    assert url == "http://dash.local/agent/update"
    assert timeout == DASHBOARD_TIMEOUT_S
    assert body["agentId"] == "agent_1"
    assert body["type"] == "execution"
    assert body["data"]["action"] == "wait"
    assert session.posts[1][1] == {"agentId": "agent_1", "type": "error", "data": {"message": "boom"}}


def test_dashboard_failures_are_counted_not_raised():
    dash = DashboardNotifier("http://dash.local", "agent_1", session=FakeSession(fail=True))
    run_async(dash.notify_start({"state": "running"}))
    assert dash.failures == 1


def test_run_control_round_trip():
    mongo = FakeMongo()
    mgr = RunManager(mongo=mongo)

    async def scenario():
        await mgr.create_if_missing(run_id="r1", agent_id="a1", cfg={"not": "a dataclass"})
        assert await mgr.get_control(run_id="r1") == "running"
        await mgr.set_control(run_id="r1", control="paused")
        assert await mgr.get_control(run_id="r1") == "paused"
        # A restart must not reset an operator's control request.
        await mgr.create_if_missing(run_id="r1", agent_id="a1", cfg={})
        assert await mgr.get_control(run_id="r1") == "paused"
        assert await mgr.get_control(run_id="missing") is None
        with pytest.raises(ValueError):
            await mgr.set_control(run_id="r1", control="sprinting")

    run_async(scenario())


def test_generate_run_id_prefix():
    rid = generate_run_id(prefix="agent_7")
    assert rid.startswith("agent_7_")
    assert rid != generate_run_id(prefix="agent_7")


def test_audit_manager_context_and_safety():
    mongo = FakeMongo()
    audit = AuditManager(mongo, ctx=AuditContext(run_id="r1", agent_id="a1"))
    run_async(audit.log_safe("cycle_result", {"action": "wait"}))
    event_type, payload, kw = mongo.audit[0]
    assert event_type == "cycle_result"
    assert kw["run_id"] == "r1" and kw["agent_id"] == "a1"

    broken = AuditManager(FailingMongo())
    assert run_async(broken.log_safe("x", {})) is None
    assert broken.failures == 1


def test_audit_emit_inside_running_loop():
    mongo = FakeMongo()
    audit = AuditManager(mongo)

    async def scenario():
        audit.emit("rpc_retry", {"attempt": 1}, agent_id="a1")
        await asyncio.sleep(0)
        await asyncio.sleep(0)

    run_async(scenario())
    assert mongo.audit[0][0] == "rpc_retry"
    # Without any loop the event is dropped quietly.
    audit.emit("dropped", {})
    assert len(mongo.audit) == 1


def test_jsonify_keeps_large_amounts_exact():
    big = 5 * 10**24
    assert jsonify({"amount": big, "small": 7, "raw": b"\x01"}) == {"amount": str(big), "small": 7, "raw": "0x01"}


class _StubRunner:
    def __init__(self, agent_id, cycles):
        self.config = type("Cfg", (), {"agent_id": agent_id})()
        self.audit_mgr = None
        self.cycles = cycles
        self.ran = 0
        self.stops = 0
        self._running = False

    async def start(self):
        self._running = True
        while self._running and self.ran < self.cycles:
            self.ran += 1
            await asyncio.sleep(0)
        self._running = False

    async def stop(self):
        self.stops += 1
        self._running = False


def test_run_agents_runs_each_runner_to_completion():
    a = _StubRunner("a", 3)
    b = _StubRunner("b", 5)
    run_async(run_agents([a, b]))
    assert (a.ran, b.ran) == (3, 5)
    assert a.stops == 1 and b.stops == 1


class _CrashingRunner(_StubRunner):
    async def start(self):
        raise RuntimeError("RPC down during auto-detect")


def test_run_agents_keeps_healthy_runner_when_another_crashes():
    healthy = _StubRunner("healthy", 50)
    broken = _CrashingRunner("broken", 0)
    mongo = FakeMongo()
    broken.audit_mgr = AuditManager(mongo, ctx=AuditContext(agent_id="broken"))

    crashed = run_async(run_agents([healthy, broken]))

    assert healthy.ran == 50
    assert list(crashed) == ["broken"]
    assert str(crashed["broken"]) == "RPC down during auto-detect"
    event_type, payload, kw = mongo.audit[0]
    assert event_type == "agent_crashed"
    assert payload["type"] == "RuntimeError"
    assert kw["agent_id"] == "broken"


class RecordingCollection:
    def __init__(self):
        self.inserted = []
        self.updates = []

    async def insert_one(self, doc):
        self.inserted.append(doc)
        return type("Res", (), {"inserted_id": len(self.inserted)})()

    async def update_one(self, query, update, upsert=False):
        self.updates.append((query, update, upsert))


def _store():
    mgr = MongoManager(uri="mongodb://unused")
    cols = {}
    mgr.db = type("Db", (), {"__getitem__": lambda self, name: cols.setdefault(name, RecordingCollection())})()
    return mgr, cols


def test_record_execution_and_run_snapshot():
    mgr, cols = _store()
    result = ExecutionResult(
        success=True,
        action="sell",
        decision=Decision(action="sell", params={"tokenAmount": "1.0"}),
        balance_before=5 * 10**6,
        balance_after=6 * 10**6,
    )

    async def scenario():
        await mgr.record_execution(result, agent_id="a1", run_id="r1")
        await mgr.upsert_agent_run(run_id="r1", agent_id="a1", status={"state": "running", "balance": 10**20})

    run_async(scenario())
    [doc] = cols["executions"].inserted
    assert doc["action"] == "sell"
    assert doc["agent_id"] == "a1" and doc["run_id"] == "r1"
    assert doc["balance_after"] == 6 * 10**6
    query, update, upsert = cols["agent_runs"].updates[0]
    assert query == {"run_id": "r1"} and upsert
    assert update["$set"]["status"] == {"state": "running", "balance": str(10**20)}
    assert "control" not in update["$set"]


def test_llm_call_is_mirrored_into_audit_log():
    mgr, cols = _store()

    async def scenario():
        return await mgr.log_llm_call(
            provider="x402",
            model="m",
            messages=[{"role": "user", "content": "hi"}],
            response=None,
            agent_id="a1",
            error={"message": "timeout"},
        )

    ref = run_async(scenario())
    assert ref == "1"
    assert cols["llm_calls"].inserted[0]["error"] == {"message": "timeout"}
    audit_doc = cols["audit_log"].inserted[0]
    assert audit_doc["event_type"] == "llm_call"
    assert audit_doc["payload"] == {"llm_call_ref": "1", "ok": False}
