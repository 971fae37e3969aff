"""Multi-endpoint RPC fallback tests with a scripted HTTP session.

Run:
  pytest tests/test_rpc_provider.py

No network or DB required.
"""

import os
import sys

import pytest
import requests

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from src.execution.errors import RpcError  # noqa: E402
from src.execution.retry import RetryPolicy  # noqa: E402
from src.execution.rpc_provider import (  # noqa: E402
    RobustRpcProvider,
    encode_call,
    parse_hex_int,
)


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"status {self.status_code}")


class ScriptedSession:
    """Per-url behaviour: a callable(body) -> FakeResponse, or an exception to raise."""

    def __init__(self, behaviour):
        self.behaviour = behaviour
        self.calls = []

    def post(self, url, json=None, timeout=None):
        self.calls.append((url, json["method"]))
        b = self.behaviour[url]
        if isinstance(b, Exception):
            raise b
        return b(json)


class FakeAudit:
    def __init__(self):
        self.events = []

    def emit(self, event_type, payload, **kw):
        self.events.append((event_type, payload))


def _provider(urls, session, max_attempts=2, audit=None):
    retry = RetryPolicy(max_attempts=max_attempts, jitter=0.0, sleep=lambda _s: None)
    return RobustRpcProvider(urls, retry=retry, session=session, audit_mgr=audit)


def test_primary_healthy():
    session = ScriptedSession({"http://a": lambda body: FakeResponse(payload={"result": "0x10"})})
    rpc = _provider(["http://a"], session)
    assert rpc.get_balance("0x0000000000000000000000000000000000000001") == 16
    assert session.calls == [("http://a", "eth_getBalance")]


def test_falls_back_to_secondary_when_primary_down():
    audit = FakeAudit()
    session = ScriptedSession(
        {
            "http://a": requests.ConnectionError("refused"),
            "http://b": lambda body: FakeResponse(payload={"result": "0x2a"}),
        }
    )
    rpc = _provider(["http://a", "http://b"], session, audit=audit)
    assert rpc.gas_price() == 42
    assert [c[0] for c in session.calls] == ["http://a", "http://a", "http://b"]
    assert rpc.current_url == "http://b"
    assert any(e[0] == "rpc_fallback" for e in audit.events)


def test_rate_limited_endpoint_rotates():
    session = ScriptedSession(
        {
            "http://a": lambda body: FakeResponse(status_code=429),
            "http://b": lambda body: FakeResponse(payload={"result": "0x1"}),
        }
    )
    rpc = _provider(["http://a", "http://b"], session, max_attempts=1)
    assert rpc.get_transaction_count("0x0000000000000000000000000000000000000001") == 1


def test_attempts_bounded_by_endpoints_times_retries():
    session = ScriptedSession(
        {
            "http://a": lambda body: FakeResponse(status_code=503),
            "http://b": requests.Timeout("slow"),
            "http://c": lambda body: FakeResponse(status_code=502),
        }
    )
    rpc = _provider(["http://a", "http://b", "http://c"], session, max_attempts=2)
    with pytest.raises(RpcError) as exc:
        rpc.gas_price()
    assert len(session.calls) == 6
    assert exc.value.attempts == 6
    assert exc.value.endpoints == 3
    assert "eth_gasPrice failed after 6 attempts across 3 RPCs" in str(exc.value)


def test_non_transient_error_is_not_retried():
    session = ScriptedSession(
        {
            "http://a": lambda body: FakeResponse(payload={"error": {"message": "execution reverted"}}),
            "http://b": lambda body: FakeResponse(payload={"result": "0x1"}),
        }
    )
    rpc = _provider(["http://a", "http://b"], session)
    with pytest.raises(RuntimeError, match="execution reverted"):
        rpc.call("eth_call", [{}, "latest"])
    assert len(session.calls) == 1


def test_requires_an_endpoint():
    with pytest.raises(ValueError):
        RobustRpcProvider([])


def test_encode_call_and_hex_parsing():
    data = encode_call("balanceOf(address)", ["address"], ["0x0000000000000000000000000000000000000001"])
    assert data.startswith("0x70a08231")
    assert len(data) == 2 + 8 + 64
    assert encode_call("name()") == "0x06fdde03"
    assert parse_hex_int("0x") == 0
    assert parse_hex_int(None) == 0
    assert parse_hex_int("0xff") == 255
    assert parse_hex_int(7) == 7
