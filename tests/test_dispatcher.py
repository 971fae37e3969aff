"""Decision dispatcher tests with a fake platform client.

Run:
  pytest tests/test_dispatcher.py

No network or DB required.
"""

import asyncio
import os
import sys

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from src.agents.schemas import Decision  # noqa: E402
from src.config import RiskLimits  # noqa: E402
from src.execution.dispatcher import ExecutionDispatcher, to_atomic  # noqa: E402
from src.execution.errors import PlatformError  # noqa: E402
from src.execution.schemas import (  # noqa: E402
    BuyResult,
    LaunchResult,
    SellResult,
    TokenInfo,
    TokenList,
)
from src.portfolio.portfolio import PortfolioState  # noqa: E402

TOKEN = "0x00000000000000000000000000000000000000aa"


def run_async(coro):
    return asyncio.run(coro)


class FakeClient:
    def __init__(self):
        self.calls = []
        self.fail_with = None
        self.balances = {}
        self.tokens = []

    def _record(self, name, /, *args, **kw):
        self.calls.append((name, args, kw))
        if self.fail_with is not None:
            raise self.fail_with

    def buy_tokens(self, token_address, usdc_amount):
        self._record("buy_tokens", token_address, usdc_amount)
        return BuyResult(
            tokenAddress=token_address,
            tokenAmount=str(usdc_amount * 10**12),
            usdcPaid=str(usdc_amount),
            averagePricePerToken="0.000001",
            transactionHash="0xbuy",
        )

    def buy_tokens_self_execute(self, token_address, usdc_amount):
        self._record("buy_tokens_self_execute", token_address, usdc_amount)
        return BuyResult(tokenAddress=token_address, tokenAmount="5", usdcPaid=str(usdc_amount))

    def sell_tokens(self, token_address, token_amount):
        self._record("sell_tokens", token_address, token_amount)
        return SellResult(tokenAddress=token_address, tokenAmount=str(token_amount), usdcReceived="900", transactionHash="0xsell")

    def sell_tokens_self_execute(self, token_address, token_amount):
        self._record("sell_tokens_self_execute", token_address, token_amount)
        return SellResult(tokenAddress=token_address, tokenAmount=str(token_amount))

    def launch_token(self, **kw):
        self._record("launch_token", **kw)
        return LaunchResult(tokenAddress="0xNEW", transactionHash="0xlaunch")

    def get_token_info(self, token_address):
        self._record("get_token_info", token_address)
        return TokenInfo(address=token_address, name="Alpha", ticker="ALP")

    def discover_tokens(self, **kw):
        self._record("discover_tokens", **kw)
        return TokenList(tokens=self.tokens)

    def get_token_balance(self, token_address):
        self._record("get_token_balance", token_address)
        return self.balances.get(token_address, 0)


def _dispatcher(balance=50_000_000, mode="gasless", **risk):
    client = FakeClient()
    portfolio = PortfolioState(balance=balance)
    limits = RiskLimits(**{"max_position_size": 10_000_000, "max_positions": 5, "min_balance": 10_000, **risk})
    return ExecutionDispatcher(client=client, portfolio=portfolio, risk=limits, mode=mode), client, portfolio


def _decision(action, **params):
    return Decision(action=action, params=params, reasoning="test", confidence=0.9)


def test_to_atomic():
    assert to_atomic("5.0", 6) == 5_000_000
    assert to_atomic("1.9999999", 6) == 1_999_999
    assert to_atomic(2, 18) == 2 * 10**18
    assert to_atomic("abc", 6) is None
    assert to_atomic("-1", 6) is None
    assert to_atomic("NaN", 6) is None
    assert to_atomic("Infinity", 6) is None


def test_buy_gasless_opens_position():
    d, client, portfolio = _dispatcher()
    out = run_async(d.dispatch(_decision("buy", tokenAddress=TOKEN, usdcAmount="5.0")))
    assert out.success
    assert client.calls[0][:2] == ("buy_tokens", (TOKEN, 5_000_000))
    [pos] = portfolio.open_positions
    assert pos.usdc_invested == 5_000_000
    assert pos.amount == 5_000_000 * 10**12
    assert out.data["transactionHash"] == "0xbuy"


def test_buy_self_execute_route():
    d, client, _ = _dispatcher(mode="self-execute")
    out = run_async(d.dispatch(_decision("buy", tokenAddress=TOKEN, usdcAmount="1")))
    assert out.success
    assert client.calls[0][0] == "buy_tokens_self_execute"


def test_buy_is_clamped_to_max_position_size_exactly():
    d, client, _ = _dispatcher(max_position_size=3_000_000)
    out = run_async(d.dispatch(_decision("buy", tokenAddress=TOKEN, usdcAmount="100")))
    assert out.success
    assert client.calls[0][1] == (TOKEN, 3_000_000)


def test_buy_rejections_make_no_platform_call():
    d, client, portfolio = _dispatcher(balance=1_000_000, max_positions=1)

    out = run_async(d.dispatch(_decision("buy", tokenAddress=TOKEN)))
    assert out.error == "Missing buy parameters"

    out = run_async(d.dispatch(_decision("buy", tokenAddress=TOKEN, usdcAmount="five")))
    assert out.error == "Invalid usdcAmount format: five"

    out = run_async(d.dispatch(_decision("buy", tokenAddress=TOKEN, usdcAmount="2.0")))
    assert out.error == "Insufficient balance: trying to buy 2000000 but only have 1000000"

    portfolio.add_position(TOKEN, amount=1, usdc_invested=1)
    out = run_async(d.dispatch(_decision("buy", tokenAddress=TOKEN, usdcAmount="0.5")))
    assert out.error == "Maximum positions reached (1). Sell existing positions first."

    assert client.calls == []


def test_sell_removes_earliest_position():
    d, client, portfolio = _dispatcher()
    first = portfolio.add_position(TOKEN, amount=10**18, usdc_invested=1_000_000)
    portfolio.add_position(TOKEN, amount=2 * 10**18, usdc_invested=2_000_000)
    out = run_async(d.dispatch(_decision("sell", tokenAddress=TOKEN, tokenAmount="1.5")))
    assert out.success
    assert client.calls[0][1] == (TOKEN, 15 * 10**17)
    assert first.status == "closed"
    assert [p.amount for p in portfolio.open_positions] == [2 * 10**18]


def test_sell_of_untracked_token_still_executes():
    d, client, portfolio = _dispatcher()
    out = run_async(d.dispatch(_decision("sell", tokenAddress=TOKEN, tokenAmount="1")))
    assert out.success
    assert portfolio.open_positions == []
    assert client.calls[0][0] == "sell_tokens"


def test_sell_validation():
    d, client, _ = _dispatcher()
    assert run_async(d.dispatch(_decision("sell", tokenAmount="1"))).error == "Missing sell parameters"
    assert run_async(d.dispatch(_decision("sell", tokenAddress=TOKEN, tokenAmount="x"))).error == (
        "Invalid tokenAmount format: x"
    )
    assert client.calls == []


def test_launch_normalizes_ticker_and_records_launch():
    d, client, portfolio = _dispatcher()
    out = run_async(d.dispatch(_decision("launch", name="Moon Cat", symbol="mcat", description="cats")))
    assert out.success
    name, _, kw = client.calls[0]
    assert name == "launch_token"
    assert kw["ticker"] == "MCAT"
    assert kw["image"].endswith("text=MCAT")
    assert list(portfolio.launched_tokens) == ["0xnew"]


def test_launch_rejects_bad_ticker_before_platform_call():
    d, client, portfolio = _dispatcher()
    out = run_async(d.dispatch(_decision("launch", name="Tiny", ticker="ab", description="short")))
    assert not out.success
    assert "Invalid ticker" in out.error
    assert client.calls == []
    assert list(portfolio.launched_tokens) == []


def test_launch_missing_fields():
    d, client, _ = _dispatcher()
    out = run_async(d.dispatch(_decision("launch", name="Only Name")))
    assert out.error.startswith("Missing launch parameters. Got: name=Only Name, ticker=None")
    assert client.calls == []


def test_analyze_and_passive_actions():
    d, client, _ = _dispatcher()
    out = run_async(d.dispatch(_decision("analyze", tokenAddress=TOKEN)))
    assert out.data["tokenInfo"]["name"] == "Alpha"
    assert run_async(d.dispatch(_decision("analyze"))).error == "Missing token address"
    assert run_async(d.dispatch(_decision("wait", reason="quiet"))).message == "No action taken"
    assert run_async(d.dispatch(_decision("discover"))).message == "No action taken"
    assert run_async(d.dispatch(_decision("stop"))).message == "Stop requested"


def test_platform_failure_becomes_failed_outcome():
    d, client, portfolio = _dispatcher()
    client.fail_with = PlatformError("Bonding curve migrated", code="MIGRATED")
    out = run_async(d.dispatch(_decision("buy", tokenAddress=TOKEN, usdcAmount="1")))
    assert not out.success
    assert out.error == "Bonding curve migrated"
    assert portfolio.open_positions == []


def test_sell_all_positions_reports_each():
    d, client, portfolio = _dispatcher()
    portfolio.add_position("0x1", amount=10, usdc_invested=1)
    portfolio.add_position("0x2", amount=20, usdc_invested=1)
    results = run_async(d.sell_all_positions())
    assert [r["success"] for r in results] == [True, True]
    assert portfolio.open_positions == []
    assert [c[1] for c in client.calls] == [("0x1", 10), ("0x2", 20)]


def test_sell_wallet_holdings_skips_dust():
    d, client, portfolio = _dispatcher()
    client.tokens = [TokenInfo(address="0xA", name="A"), TokenInfo(address="0xB", name="B")]
    client.balances = {"0xA": 5 * 10**18, "0xB": 10**10}
    portfolio.add_position("0xA", amount=1, usdc_invested=1)
    portfolio.add_position("0xA", amount=2, usdc_invested=1)
    results = run_async(d.sell_wallet_holdings())
    assert [r["tokenAddress"] for r in results] == ["0xA"]
    assert results[0]["usdcReceived"] == "900"
    assert portfolio.open_positions == []
    assert ("sell_tokens", ("0xA", 5 * 10**18), {}) in client.calls
