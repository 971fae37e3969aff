"""Multi-endpoint JSON-RPC provider with retry and fallback.

Every read/broadcast goes through `execute`, which retries transient failures
on the active endpoint and then rotates to the next one. The current-endpoint
pointer is per instance and only a best-effort affinity hint.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

import requests
from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_utils import keccak

from src.execution.errors import NetworkError, RateLimitError, RpcError
from src.execution.retry import RetryPolicy

T = TypeVar("T")


def encode_call(signature: str, arg_types: Sequence[str] = (), args: Sequence[Any] = ()) -> str:
    """ABI-encode a function call: 4-byte selector followed by the packed args."""
    selector = keccak(text=signature)[:4]
    encoded = abi_encode(list(arg_types), list(args)) if arg_types else b""
    return "0x" + (selector + encoded).hex()


def parse_hex_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    text = str(value or "0x0").strip()
    if text in ("0x", ""):
        return 0
    return int(text, 16) if text.lower().startswith("0x") else int(text)


def _decode_string(result: Any) -> str:
    data = bytes.fromhex(str(result)[2:]) if str(result).startswith("0x") else b""
    if not data:
        return ""
    return abi_decode(["string"], data)[0]


class RobustRpcProvider:
    """JSON-RPC client over requests with per-endpoint retry and endpoint fallback."""

    def __init__(
        self,
        rpc_urls: Sequence[str],
        *,
        retry: Optional[RetryPolicy] = None,
        session: Optional[requests.Session] = None,
        timeout_s: float = 30.0,
        audit_mgr: Optional[Any] = None,
        agent_id: Optional[str] = None,
    ):
        if not rpc_urls:
            raise ValueError("RobustRpcProvider requires at least one RPC url")
        self.rpc_urls: List[str] = list(rpc_urls)
        self.retry = retry or RetryPolicy(max_attempts=3, base_delay_s=1.0, max_delay_s=10.0)
        self.session = session or requests.Session()
        self.timeout_s = timeout_s
        self.audit_mgr = audit_mgr
        self.agent_id = agent_id
        self._current = 0
        self._request_id = 0

    @property
    def current_url(self) -> str:
        return self.rpc_urls[self._current % len(self.rpc_urls)]

    def _audit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if not self.audit_mgr:
            return
        try:
            self.audit_mgr.emit(event_type, payload, agent_id=self.agent_id)
        except Exception:  # pylint: disable=broad-exception-caught
            pass

    def execute(self, op_name: str, fn: Callable[[str], T]) -> T:
        """Run fn(url) against the endpoint list; at most N*R attempts in total."""
        n = len(self.rpc_urls)
        attempts = 0
        last_err: Optional[BaseException] = None

        for _ in range(n):
            url = self.current_url

            def _attempt() -> T:
                nonlocal attempts
                attempts += 1
                return fn(url)

            def _on_retry(attempt: int, err: BaseException, delay: float) -> None:
                self._audit(
                    "rpc_retry",
                    {"op": op_name, "url": url, "attempt": attempt + 1, "delay_s": delay, "error": str(err)},
                )

            try:
                return self.retry.run(_attempt, on_retry=_on_retry)
            except Exception as e:  # pylint: disable=broad-exception-caught
                if not self.retry.is_retryable(e):
                    raise
                last_err = e
                self._current = (self._current + 1) % n
                self._audit("rpc_fallback", {"op": op_name, "from": url, "to": self.current_url, "error": str(e)})

        raise RpcError(
            f"{op_name} failed after {attempts} attempts across {n} RPCs. Last error: {last_err}",
            attempts=attempts,
            endpoints=n,
        ) from last_err

    def _post(self, url: str, method: str, params: List[Any]) -> Any:
        self._request_id += 1
        body = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        try:
            resp = self.session.post(url, json=body, timeout=self.timeout_s)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise NetworkError(f"RPC network error at {url}: {e}") from e
        if resp.status_code == 429:
            raise RateLimitError(f"RPC rate limited (429) at {url}")
        if resp.status_code >= 500:
            raise NetworkError(f"RPC server error {resp.status_code} at {url}")
        resp.raise_for_status()
        payload = resp.json()
        err = payload.get("error") if isinstance(payload, dict) else None
        if err:
            msg = err.get("message") if isinstance(err, dict) else str(err)
            raise RuntimeError(f"RPC method {method} failed: {msg}")
        if not isinstance(payload, dict) or "result" not in payload:
            raise RuntimeError(f"RPC method {method} missing result")
        return payload["result"]

    def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        return self.execute(method, lambda url: self._post(url, method, list(params or [])))

    def eth_call(self, to: str, data: str) -> Any:
        return self.call("eth_call", [{"to": to, "data": data}, "latest"])

    def get_balance(self, address: str) -> int:
        return parse_hex_int(self.call("eth_getBalance", [address, "latest"]))

    def erc20_balance(self, token: str, owner: str) -> int:
        data = encode_call("balanceOf(address)", ["address"], [owner])
        return parse_hex_int(self.eth_call(token, data))

    def erc20_allowance(self, token: str, owner: str, spender: str) -> int:
        data = encode_call("allowance(address,address)", ["address", "address"], [owner, spender])
        return parse_hex_int(self.eth_call(token, data))

    def erc20_name(self, token: str) -> str:
        return _decode_string(self.eth_call(token, encode_call("name()")))

    def erc20_version(self, token: str) -> str:
        return _decode_string(self.eth_call(token, encode_call("version()")))

    def get_transaction_count(self, address: str) -> int:
        return parse_hex_int(self.call("eth_getTransactionCount", [address, "pending"]))

    def gas_price(self) -> int:
        return parse_hex_int(self.call("eth_gasPrice"))

    def estimate_gas(self, tx: Dict[str, Any]) -> int:
        return parse_hex_int(self.call("eth_estimateGas", [tx]))

    def send_raw_transaction(self, raw_tx_hex: str) -> str:
        return str(self.call("eth_sendRawTransaction", [raw_tx_hex]))

    def wait_for_receipt(
        self,
        tx_hash: str,
        *,
        timeout_s: float = 120.0,
        poll_s: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> Dict[str, Any]:
        """Poll for a mined receipt; raises on revert or timeout."""
        deadline = time.monotonic() + timeout_s
        while True:
            receipt = self.call("eth_getTransactionReceipt", [tx_hash])
            if receipt:
                if parse_hex_int(receipt.get("status", "0x1")) != 1:
                    raise RuntimeError(f"Transaction reverted: {tx_hash}")
                return receipt
            if time.monotonic() >= deadline:
                raise TimeoutError(f"Timed out waiting for receipt of {tx_hash}")
            sleep(poll_s)


__all__ = ["RobustRpcProvider", "encode_call", "parse_hex_int"]
