"""Trading platform client (launchpad REST API + on-chain self-execution).

Only this layer (and payment.py) ever touches the wallet key. Keep it
strategy-neutral: the dispatcher decides *what* to do, this client knows *how*
the platform and the bonding-curve contracts expect it.

Every call is synchronous (requests / JSON-RPC); async callers run it in a
worker thread so one agent's slow call never blocks another agent's loop.
"""

from __future__ import annotations

import os
import re
import time
from typing import Any, Callable, Dict, Optional, Sequence

import requests
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import to_checksum_address

from src.config import ChainConfig, ConfigError, PlatformConfig
from src.execution.errors import (
    ApiNotFoundError,
    ApprovalError,
    NetworkError,
    PaymentRequiredError,
    PaymentVerificationError,
    PlatformError,
    RateLimitError,
)
from src.execution.payment import (
    CLOCK_SKEW_S,
    AUTHORIZATION_VALIDITY_S,
    PAYMENT_HEADER,
    PaymentSigner,
    parse_payment_requirements,
    random_nonce,
    sign_transfer_authorization,
    split_signature,
)
from src.execution.rpc_provider import RobustRpcProvider, encode_call
from src.execution.schemas import (
    AgentRegistration,
    BuyQuote,
    BuyResult,
    LaunchResult,
    SelfExecuteAuthorization,
    SellQuote,
    SellResult,
    TokenInfo,
    TokenList,
)

# Smaller sells round to 0 USDC on the bonding curve and revert.
MIN_SELL_AMOUNT = 10 ** 16
# 0.001 ETH covers several Base transactions.
MIN_ETH_FOR_SELF_EXECUTE = 10 ** 15
DEFAULT_INITIAL_SUPPLY = "10000000000000000000000000"
TICKER_RE = re.compile(r"^[A-Z0-9]{3,10}$")
ALLOWANCE_RECHECK_DELAYS_S = (0.5, 1.0, 2.0)
MAX_RATE_LIMIT_RETRIES = 3

_BUY_SIG = "buyTokensWithUSDC(uint256,address,address,bytes32,uint256,uint8,bytes32,bytes32)"
_SELL_SIG = "sellTokensForUSDC(uint256,address,address,bytes32,uint256,uint8,bytes32,bytes32)"
_CURVE_ARG_TYPES = ["uint256", "address", "address", "bytes32", "uint256", "uint8", "bytes32", "bytes32"]


def load_private_key(private_key: Optional[str] = None) -> str:
    """Resolve the agent wallet key from explicit arg or environment."""
    key = private_key or os.getenv("AGENT_PRIVATE_KEY") or os.getenv("PRIVATE_KEY")
    if not key:
        raise ConfigError("Missing wallet key. Set AGENT_PRIVATE_KEY (or PRIVATE_KEY) in .env.")
    return key.strip()


def normalize_ticker(ticker: Any) -> str:
    t = str(ticker or "").strip().upper()
    if not TICKER_RE.match(t):
        raise PlatformError(
            f"Invalid ticker {ticker!r}: must be 3-10 uppercase letters or digits",
            code="INVALID_TICKER",
        )
    return t


def _hex32(value: str) -> bytes:
    raw = value[2:] if value.startswith("0x") else value
    return bytes.fromhex(raw.rjust(64, "0"))


def _json_body(resp: requests.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return {"message": resp.text}


def _error_message(data: Any, default: str) -> str:
    if isinstance(data, dict):
        for key in ("message", "error", "detail"):
            val = data.get(key)
            if isinstance(val, str) and val:
                return val
            if isinstance(val, dict) and isinstance(val.get("message"), str):
                return val["message"]
    return default


def _retry_after(resp: requests.Response, data: Any) -> Optional[float]:
    raw = resp.headers.get("Retry-After") if resp.headers else None
    if raw is None and isinstance(data, dict):
        raw = data.get("retryAfter")
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


class PlatformClient:
    """Launchpad API client with x402 payments and self-execute support."""

    def __init__(
        self,
        *,
        platform: PlatformConfig,
        chain: ChainConfig,
        private_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
        rpc: Optional[RobustRpcProvider] = None,
        audit_mgr: Optional[Any] = None,
        agent_id: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        key = load_private_key(private_key)
        try:
            self.account = Account.from_key(key)
        except Exception as e:  # pylint: disable=broad-exception-caught
            raise ConfigError(f"Invalid wallet private key: {e}") from e

        self.platform = platform
        self.chain = chain
        self.session = session or requests.Session()
        self.audit_mgr = audit_mgr
        self.agent_id = agent_id
        self.sleep = sleep
        self.clock = clock
        self.rpc = rpc or RobustRpcProvider(chain.rpc_urls, audit_mgr=audit_mgr, agent_id=agent_id)
        self.signer = PaymentSigner(
            self.account,
            chain_id=chain.chain_id,
            usdc_address=chain.usdc_address,
            rpc=self.rpc,
            clock=clock,
        )

    @property
    def address(self) -> str:
        return self.account.address

    def _audit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if not self.audit_mgr:
            return
        try:
            self.audit_mgr.emit(event_type, payload, agent_id=self.agent_id)
        except Exception:  # pylint: disable=broad-exception-caught
            pass

    def _url(self, endpoint: str) -> str:
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return f"{self.platform.api_root}/{endpoint.lstrip('/')}"

    # ------------------------------------------------------------------
    # Payment-retry request layer
    # ------------------------------------------------------------------

    def request_with_payment(
        self,
        method: str,
        endpoint: str,
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Send a request, paying once on 402 and backing off on 429.

        A second 402 after an authorization was attached is a verification
        failure, never another payment.
        """
        headers: Dict[str, str] = {"Content-Type": "application/json"}
        paid_amount: Optional[str] = None
        paid_asset: Optional[str] = None
        rate_limited = 0
        start = time.perf_counter()

        while True:
            try:
                resp = self.session.request(
                    method,
                    self._url(endpoint),
                    json=body,
                    params=params,
                    headers=dict(headers),
                    timeout=self.platform.timeout_s,
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                self._audit("platform_request", {"method": method, "endpoint": endpoint, "error": str(e)})
                raise NetworkError(f"Network error calling {method} {endpoint}: {e}") from e

            status = resp.status_code
            data = _json_body(resp)

            if 200 <= status < 300:
                self._audit(
                    "platform_request",
                    {
                        "method": method,
                        "endpoint": endpoint,
                        "status": status,
                        "paid": paid_amount is not None,
                        "latency_s": time.perf_counter() - start,
                    },
                )
                return data

            if status == 402:
                if paid_amount is not None:
                    asset_name = "USDC" if (paid_asset or "").lower() == self.chain.usdc_address.lower() else "tokens"
                    msg = _error_message(data, "payment rejected")
                    self._audit("payment_verification_failed", {"endpoint": endpoint, "error": msg})
                    raise PaymentVerificationError(
                        f"Payment verification failed: {msg}. "
                        f"Check your {asset_name} balance (required: {paid_amount})."
                    )
                requirements = parse_payment_requirements(data)
                if requirements is None:
                    raise PaymentRequiredError(
                        _error_message(data, "Payment required"),
                        payment_details=data if isinstance(data, dict) else None,
                    )
                headers[PAYMENT_HEADER] = self.signer.create_header(requirements)
                paid_amount = requirements.max_amount_required
                paid_asset = requirements.asset
                self._audit(
                    "payment_authorized",
                    {"endpoint": endpoint, "amount": paid_amount, "asset": paid_asset, "pay_to": requirements.pay_to},
                )
                continue

            if status == 429:
                retry_after = _retry_after(resp, data)
                rate_limited += 1
                if rate_limited > MAX_RATE_LIMIT_RETRIES:
                    raise RateLimitError(
                        f"Rate limited on {method} {endpoint} after {rate_limited} attempts",
                        retry_after=retry_after,
                    )
                delay = retry_after if retry_after is not None else float(2 ** (rate_limited - 1))
                self._audit("platform_rate_limited", {"endpoint": endpoint, "delay_s": delay})
                self.sleep(delay)
                continue

            if status == 404:
                raise ApiNotFoundError(f"API endpoint not found: {method} {endpoint}")

            code = data.get("code") if isinstance(data, dict) else None
            raise PlatformError(
                _error_message(data, f"Request failed with status {status}"),
                code=str(code) if code else None,
                status=status,
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def discover_tokens(
        self,
        *,
        page: int = 1,
        limit: int = 10,
        sort_by: str = "launchTime",
        sort_order: str = "desc",
    ) -> TokenList:
        data = self.request_with_payment(
            "GET",
            "/tokens",
            params={"page": page, "limit": limit, "sortBy": sort_by, "sortOrder": sort_order},
        )
        if isinstance(data, list):
            data = {"tokens": data}
        return TokenList.model_validate(data)

    def get_token_info(self, token_address: str) -> TokenInfo:
        return TokenInfo.model_validate(self.request_with_payment("GET", f"/tokens/{token_address}"))

    def get_buy_quote(self, token_address: str, usdc_amount: int) -> BuyQuote:
        data = self.request_with_payment(
            "GET", f"/tokens/{token_address}/quote", params={"usdcAmount": str(usdc_amount)}
        )
        return BuyQuote.model_validate(data)

    def get_sell_quote(self, token_address: str, token_amount: int) -> SellQuote:
        data = self.request_with_payment(
            "GET", f"/tokens/{token_address}/sell/quote", params={"tokenAmount": str(token_amount)}
        )
        return SellQuote.model_validate(data)

    def get_backend_address(self) -> str:
        data = self.request_with_payment("GET", "/tokens/backend-address")
        return str(data["address"])

    def get_usdc_balance(self) -> int:
        return self.rpc.erc20_balance(self.chain.usdc_address, self.address)

    def get_token_balance(self, token_address: str) -> int:
        return self.rpc.erc20_balance(token_address, self.address)

    def get_eth_balance(self) -> int:
        return self.rpc.get_balance(self.address)

    def has_enough_eth_for_self_execute(self) -> bool:
        return self.get_eth_balance() >= MIN_ETH_FOR_SELF_EXECUTE

    # ------------------------------------------------------------------
    # Gasless (platform-executed) actions
    # ------------------------------------------------------------------

    def launch_token(
        self,
        *,
        name: str,
        ticker: str,
        description: str,
        image: str,
        initial_supply: str = DEFAULT_INITIAL_SUPPLY,
        website: Optional[str] = None,
        twitter: Optional[str] = None,
        telegram: Optional[str] = None,
        discord: Optional[str] = None,
    ) -> LaunchResult:
        body: Dict[str, Any] = {
            "name": name,
            "ticker": normalize_ticker(ticker),
            "description": description,
            "image": image,
            "initialSupply": initial_supply,
        }
        for key, val in (("website", website), ("twitter", twitter), ("telegram", telegram), ("discord", discord)):
            if val:
                body[key] = val
        return LaunchResult.model_validate(self.request_with_payment("POST", "/tokens/launch", body))

    def buy_tokens(self, token_address: str, usdc_amount: int) -> BuyResult:
        data = self.request_with_payment(
            "POST", "/tokens/buy", {"tokenAddress": token_address, "usdcAmount": str(usdc_amount)}
        )
        return BuyResult.model_validate(data)

    def sell_tokens(self, token_address: str, token_amount: int) -> SellResult:
        """Gasless sell: sign an EIP-3009 transfer of the tokens to the platform signer."""
        amount = int(token_amount)
        if amount < MIN_SELL_AMOUNT:
            raise PlatformError(
                f"Amount too small to sell: {amount} (< 0.01 tokens). "
                f"Minimum sellable amount: {MIN_SELL_AMOUNT}.",
                code="AMOUNT_TOO_SMALL",
            )
        try:
            token_name = self.rpc.erc20_name(token_address)
        except Exception as e:  # pylint: disable=broad-exception-caught
            raise PlatformError(f"Failed to get token name for {token_address}: {e}") from e
        try:
            token_version = self.rpc.erc20_version(token_address) or "1"
        except Exception:  # pylint: disable=broad-exception-caught
            token_version = "1"

        backend = self.get_backend_address()
        valid_after = int(self.clock()) - CLOCK_SKEW_S
        valid_before = valid_after + AUTHORIZATION_VALIDITY_S
        nonce = random_nonce()
        signature = sign_transfer_authorization(
            self.account,
            chain_id=self.chain.chain_id,
            token=token_address,
            domain_name=token_name,
            domain_version=token_version,
            to=backend,
            value=amount,
            valid_after=valid_after,
            valid_before=valid_before,
            nonce=nonce,
        )
        data = self.request_with_payment(
            "POST",
            "/tokens/sell",
            {
                "tokenAddress": token_address,
                "tokenAmount": str(amount),
                "sellerAddress": self.address,
                "validAfter": str(valid_after),
                "validBefore": str(valid_before),
                "nonce": nonce,
                "signature": signature,
            },
        )
        return SellResult.model_validate(data)

    # ------------------------------------------------------------------
    # Self-execute (wallet-submitted) actions
    # ------------------------------------------------------------------

    def _check_authorization(self, auth: SelfExecuteAuthorization, party: Optional[str]) -> None:
        now = int(self.clock())
        if now > auth.expiry:
            raise PlatformError(
                f"Transaction signature expired. Expiry: {auth.expiry}, Current: {now}",
                code="SIGNATURE_EXPIRED",
            )
        if not party or party.lower() != self.address.lower():
            raise PlatformError(
                f"Address mismatch. Signature is for {party}, but wallet is {self.address}",
                code="ADDRESS_MISMATCH",
            )

    def send_transaction(self, to: str, data: str, *, value: int = 0) -> str:
        """Sign, broadcast and wait for a contract call; returns the tx hash."""
        to_cs = to_checksum_address(to)
        gas = self.rpc.estimate_gas({"from": self.address, "to": to_cs, "data": data})
        tx = {
            "to": to_cs,
            "data": data,
            "value": value,
            "chainId": self.chain.chain_id,
            "nonce": self.rpc.get_transaction_count(self.address),
            "gasPrice": self.rpc.gas_price(),
            "gas": int(gas * 1.2),
        }
        signed = self.account.sign_transaction(tx)
        raw_tx = getattr(signed, "raw_transaction", None)
        if raw_tx is None:
            raw_tx = getattr(signed, "rawTransaction")
        tx_hash = self.rpc.send_raw_transaction("0x" + bytes(raw_tx).hex())
        self.rpc.wait_for_receipt(tx_hash, sleep=self.sleep)
        self._audit("chain_tx_confirmed", {"to": to_cs, "tx_hash": tx_hash})
        return tx_hash

    def ensure_allowance(
        self,
        token: str,
        spender: str,
        amount: int,
        *,
        recheck_delays_s: Sequence[float] = ALLOWANCE_RECHECK_DELAYS_S,
    ) -> int:
        """Approve `spender` for `amount` if needed, then re-verify to ride out RPC lag."""
        current = self.rpc.erc20_allowance(token, self.address, spender)
        if current >= amount:
            return current

        data = encode_call("approve(address,uint256)", ["address", "uint256"], [to_checksum_address(spender), amount])
        try:
            self.send_transaction(token, data)
        except Exception as e:  # pylint: disable=broad-exception-caught
            raise ApprovalError(f"Token approval transaction failed: {e}", code="APPROVAL_FAILED") from e

        allowance = self.rpc.erc20_allowance(token, self.address, spender)
        for delay in recheck_delays_s:
            if allowance >= amount:
                break
            self.sleep(delay)
            allowance = self.rpc.erc20_allowance(token, self.address, spender)
        if allowance < amount:
            raise ApprovalError(
                f"Approval failed: allowance is {allowance}, needs {amount}. "
                f"Transaction confirmed but RPC state not updated after {len(recheck_delays_s)} retries.",
                code="ALLOWANCE_VERIFICATION_FAILED",
            )
        self._audit("allowance_verified", {"token": token, "spender": spender, "allowance": str(allowance)})
        return allowance

    def _curve_call(self, signature: str, auth: SelfExecuteAuthorization, amount: int, party: str) -> str:
        v, r, s = split_signature(auth.signature)
        return encode_call(
            signature,
            _CURVE_ARG_TYPES,
            [
                amount,
                to_checksum_address(party),
                to_checksum_address(auth.token_address),
                _hex32(auth.nonce),
                int(auth.expiry),
                v,
                _hex32(r),
                _hex32(s),
            ],
        )

    def buy_tokens_self_execute(self, token_address: str, usdc_amount: int) -> BuyResult:
        data = self.request_with_payment(
            "POST",
            "/tokens/buy/self-execute",
            {"tokenAddress": token_address, "usdcAmount": str(usdc_amount)},
        )
        auth = SelfExecuteAuthorization.model_validate(data)
        self._check_authorization(auth, auth.buyer_address)
        amount = int(auth.usdc_amount or usdc_amount)

        self.ensure_allowance(self.chain.usdc_address, auth.bonding_curve_address, amount)
        before = self.rpc.erc20_balance(auth.token_address, self.address)
        tx_hash = self.send_transaction(
            auth.bonding_curve_address,
            self._curve_call(_BUY_SIG, auth, amount, auth.buyer_address or self.address),
        )
        received = max(0, self.rpc.erc20_balance(auth.token_address, self.address) - before)
        avg_price = (amount / 1e6) / (received / 1e18) if received else 0.0
        return BuyResult(
            transaction_hash=tx_hash,
            buyer=self.address,
            token_address=auth.token_address,
            token_amount=str(received),
            usdc_paid=str(amount),
            average_price_per_token=f"{avg_price:.12f}",
        )

    def sell_tokens_self_execute(self, token_address: str, token_amount: int) -> SellResult:
        data = self.request_with_payment(
            "POST",
            "/tokens/sell/self-execute",
            {"tokenAddress": token_address, "tokenAmount": str(token_amount)},
        )
        auth = SelfExecuteAuthorization.model_validate(data)
        self._check_authorization(auth, auth.seller_address)
        amount = int(auth.token_amount or token_amount)

        self.ensure_allowance(auth.token_address, auth.bonding_curve_address, amount)
        before = self.get_usdc_balance()
        tx_hash = self.send_transaction(
            auth.bonding_curve_address,
            self._curve_call(_SELL_SIG, auth, amount, auth.seller_address or self.address),
        )
        received = max(0, self.get_usdc_balance() - before)
        avg_price = (received / 1e6) / (amount / 1e18) if amount else 0.0
        return SellResult(
            transaction_hash=tx_hash,
            seller=self.address,
            token_address=auth.token_address,
            token_amount=str(amount),
            usdc_received=str(received),
            average_price_per_token=f"{avg_price:.12f}",
        )

    # ------------------------------------------------------------------
    # Agent registry / hosted agent controls
    # ------------------------------------------------------------------

    def register_agent(
        self,
        *,
        agent_id: str,
        name: str,
        description: Optional[str] = None,
        website: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> AgentRegistration:
        timestamp = int(self.clock())
        message = (
            f"x402-launch: Register agent\nAgent ID: {agent_id}\n"
            f"Wallet: {self.address}\nTimestamp: {timestamp}"
        )
        signed = self.account.sign_message(encode_defunct(text=message))
        body = {
            "agentId": agent_id,
            "name": name,
            "description": description,
            "website": website,
            "imageUrl": image_url,
            "signature": "0x" + bytes(signed.signature).hex(),
        }
        return AgentRegistration.model_validate(self.request_with_payment("POST", "/agents/register", body))

    def get_agent_status(self, agent_id: str) -> Dict[str, Any]:
        return self.request_with_payment("GET", f"/agents/host/{agent_id}")

    def pause_agent(self, agent_id: str) -> Dict[str, Any]:
        return self.request_with_payment("POST", f"/agents/host/{agent_id}/pause", {"ownerAddress": self.address})

    def resume_agent(self, agent_id: str) -> Dict[str, Any]:
        return self.request_with_payment("POST", f"/agents/host/{agent_id}/resume", {"ownerAddress": self.address})

    def stop_agent(self, agent_id: str) -> Dict[str, Any]:
        return self.request_with_payment("POST", f"/agents/host/{agent_id}/stop", {"ownerAddress": self.address})


__all__ = [
    "MIN_ETH_FOR_SELF_EXECUTE",
    "MIN_SELL_AMOUNT",
    "PlatformClient",
    "load_private_key",
    "normalize_ticker",
]
