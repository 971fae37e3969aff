"""Payment authorizations for payment-gated (HTTP 402) endpoints.

A PaymentAuthorization is a single-use EIP-712 `TransferWithAuthorization`
signature over the asset named in the 402 body. It is created on demand,
carried base64-encoded in the `X-PAYMENT` header and never persisted.
"""

from __future__ import annotations

import base64
import json
import os
import time
from typing import Any, Callable, Dict, Optional, Tuple

from eth_account.signers.local import LocalAccount
from eth_utils import to_checksum_address
from pydantic import BaseModel, ConfigDict, Field

from src.execution.errors import PlatformError

PAYMENT_HEADER = "X-PAYMENT"
AUTHORIZATION_VALIDITY_S = 300
CLOCK_SKEW_S = 10

TRANSFER_WITH_AUTHORIZATION_TYPES: Dict[str, Any] = {
    "TransferWithAuthorization": [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "validAfter", "type": "uint256"},
        {"name": "validBefore", "type": "uint256"},
        {"name": "nonce", "type": "bytes32"},
    ]
}


class PaymentRequirements(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    scheme: str = "exact"
    network: Optional[str] = None
    max_amount_required: str = Field(..., alias="maxAmountRequired")
    pay_to: str = Field(..., alias="payTo")
    asset: str
    extra: Dict[str, Any] = Field(default_factory=dict)


class PaymentAuthorization(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    payer: str
    amount: str
    asset: str
    recipient: str
    nonce: str
    signature: str
    timestamp: int
    valid_after: int = Field(..., alias="validAfter")
    valid_before: int = Field(..., alias="validBefore")

    def encode(self) -> str:
        """Base64 JSON, the wire form of the X-PAYMENT header."""
        raw = json.dumps(self.model_dump(by_alias=True), separators=(",", ":"))
        return base64.b64encode(raw.encode("utf-8")).decode("ascii")

    @classmethod
    def decode(cls, header: str) -> "PaymentAuthorization":
        return cls.model_validate_json(base64.b64decode(header.encode("ascii")))


def parse_payment_requirements(body: Any) -> Optional[PaymentRequirements]:
    """Read the first accepted payment method from a 402 body, if any."""
    if not isinstance(body, dict):
        return None
    accepts = body.get("accepts")
    if not isinstance(accepts, list) or not accepts or not isinstance(accepts[0], dict):
        return None
    try:
        return PaymentRequirements.model_validate(accepts[0])
    except Exception:  # pylint: disable=broad-exception-caught
        return None


def random_nonce() -> str:
    return "0x" + os.urandom(32).hex()


def split_signature(signature: str) -> Tuple[int, str, str]:
    """Split a 65-byte hex signature into (v, r, s)."""
    sig = signature[2:] if signature.startswith("0x") else signature
    if len(sig) != 130:
        raise PlatformError(f"Invalid signature length: {len(sig)}", code="INVALID_SIGNATURE")
    r = "0x" + sig[0:64]
    s = "0x" + sig[64:128]
    v = int(sig[128:130], 16)
    if v < 27:
        v += 27
    return v, r, s


def sign_transfer_authorization(
    account: LocalAccount,
    *,
    chain_id: int,
    token: str,
    domain_name: str,
    domain_version: str,
    to: str,
    value: int,
    valid_after: int,
    valid_before: int,
    nonce: str,
) -> str:
    """EIP-3009 TransferWithAuthorization signature as 0x-prefixed hex."""
    domain = {
        "name": domain_name,
        "version": domain_version,
        "chainId": chain_id,
        "verifyingContract": to_checksum_address(token),
    }
    message = {
        "from": account.address,
        "to": to_checksum_address(to),
        "value": int(value),
        "validAfter": int(valid_after),
        "validBefore": int(valid_before),
        "nonce": bytes.fromhex(nonce[2:] if nonce.startswith("0x") else nonce),
    }
    signed = account.sign_typed_data(
        domain_data=domain,
        message_types=TRANSFER_WITH_AUTHORIZATION_TYPES,
        message_data=message,
    )
    return "0x" + bytes(signed.signature).hex()


class PaymentSigner:
    """Builds fresh payment authorizations for one wallet on one chain."""

    def __init__(
        self,
        account: LocalAccount,
        *,
        chain_id: int,
        usdc_address: str,
        rpc: Optional[Any] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.account = account
        self.chain_id = chain_id
        self.usdc_address = usdc_address
        self.rpc = rpc
        self.clock = clock

    def resolve_domain(self, requirements: PaymentRequirements) -> Tuple[str, str]:
        extra = requirements.extra or {}
        if extra.get("name"):
            return str(extra["name"]), str(extra.get("version") or "1")
        if self.rpc is not None:
            try:
                name = self.rpc.erc20_name(requirements.asset)
                try:
                    version = self.rpc.erc20_version(requirements.asset) or "1"
                except Exception:  # pylint: disable=broad-exception-caught
                    version = "1"
                if name:
                    return name, version
            except Exception:  # pylint: disable=broad-exception-caught
                pass
        if requirements.asset.lower() == self.usdc_address.lower():
            return "USDC", "2"
        return "Token", "1"

    def create_authorization(self, requirements: PaymentRequirements) -> PaymentAuthorization:
        """Sign a new single-use authorization; every call draws a fresh nonce."""
        timestamp = int(self.clock()) - CLOCK_SKEW_S
        valid_after = timestamp
        valid_before = timestamp + AUTHORIZATION_VALIDITY_S
        nonce = random_nonce()
        name, version = self.resolve_domain(requirements)
        signature = sign_transfer_authorization(
            self.account,
            chain_id=self.chain_id,
            token=requirements.asset,
            domain_name=name,
            domain_version=version,
            to=requirements.pay_to,
            value=int(requirements.max_amount_required),
            valid_after=valid_after,
            valid_before=valid_before,
            nonce=nonce,
        )
        return PaymentAuthorization(
            payer=self.account.address,
            amount=str(requirements.max_amount_required),
            asset=requirements.asset,
            recipient=requirements.pay_to,
            nonce=nonce,
            signature=signature,
            timestamp=timestamp,
            valid_after=valid_after,
            valid_before=valid_before,
        )

    def create_header(self, requirements: PaymentRequirements) -> str:
        return self.create_authorization(requirements).encode()


__all__ = [
    "PAYMENT_HEADER",
    "PaymentAuthorization",
    "PaymentRequirements",
    "PaymentSigner",
    "parse_payment_requirements",
    "sign_transfer_authorization",
    "split_signature",
]
