"""Platform-facing schemas (no LLM involvement).

These models mirror the trading platform's JSON payloads. They are permissive
(unknown keys ignored) because the platform adds fields over time; amounts stay
as atomic-unit strings exactly as the platform sends them.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ExecutionMode(str, Enum):
    gasless = "gasless"
    self_execute = "self-execute"
    auto = "auto"


class _PlatformModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class BondingCurveStatus(_PlatformModel):
    tokens_sold: Optional[str] = Field(None, alias="tokensSold")
    total_usdc_raised: Optional[str] = Field(None, alias="totalUSDCRaised")
    current_price: Optional[str] = Field(None, alias="currentPrice")
    progress: Optional[float] = None


class TokenInfo(_PlatformModel):
    address: str
    name: str = ""
    ticker: str = ""
    creator: Optional[str] = None
    price: str = "0"
    market_cap: str = Field("0", alias="marketCap")
    volume_24h: str = Field("0", alias="volume24h")
    progress: float = 0.0
    migrated: bool = False
    description: Optional[str] = None
    launch_time: Optional[int] = Field(None, alias="launchTime")
    price_movement: Optional[Dict[str, Any]] = Field(None, alias="priceMovement")


class TokenList(_PlatformModel):
    tokens: List[TokenInfo] = Field(default_factory=list)
    total: Optional[int] = None
    page: Optional[int] = None
    limit: Optional[int] = None


class LaunchResult(_PlatformModel):
    token_address: str = Field(..., alias="tokenAddress")
    bonding_curve_address: Optional[str] = Field(None, alias="bondingCurveAddress")
    transaction_hash: Optional[str] = Field(None, alias="transactionHash")


class BuyResult(_PlatformModel):
    transaction_hash: Optional[str] = Field(None, alias="transactionHash")
    buyer: Optional[str] = None
    token_address: str = Field(..., alias="tokenAddress")
    token_amount: str = Field("0", alias="tokenAmount")
    usdc_paid: str = Field("0", alias="usdcPaid")
    average_price_per_token: str = Field("0", alias="averagePricePerToken")
    bonding_curve_status: Optional[BondingCurveStatus] = Field(None, alias="bondingCurveStatus")


class SellResult(_PlatformModel):
    transaction_hash: Optional[str] = Field(None, alias="transactionHash")
    seller: Optional[str] = None
    token_address: str = Field(..., alias="tokenAddress")
    token_amount: str = Field("0", alias="tokenAmount")
    usdc_received: str = Field("0", alias="usdcReceived")
    average_price_per_token: str = Field("0", alias="averagePricePerToken")


class BuyQuote(_PlatformModel):
    token_address: str = Field(..., alias="tokenAddress")
    usdc_amount: str = Field(..., alias="usdcAmount")
    estimated_token_amount: str = Field("0", alias="estimatedTokenAmount")
    current_price_per_token: str = Field("0", alias="currentPricePerToken")
    progress: float = 0.0


class SellQuote(_PlatformModel):
    token_address: str = Field(..., alias="tokenAddress")
    token_amount: str = Field(..., alias="tokenAmount")
    estimated_usdc_amount: str = Field("0", alias="estimatedUsdcAmount")
    current_price_per_token: str = Field("0", alias="currentPricePerToken")
    progress: float = 0.0
    note: Optional[str] = None


class SelfExecuteAuthorization(_PlatformModel):
    """Platform-signed parameters for a wallet-submitted bonding-curve trade."""

    signature: str
    bonding_curve_address: str = Field(..., alias="bondingCurveAddress")
    token_address: str = Field(..., alias="tokenAddress")
    nonce: str
    expiry: int
    usdc_amount: Optional[str] = Field(None, alias="usdcAmount")
    token_amount: Optional[str] = Field(None, alias="tokenAmount")
    buyer_address: Optional[str] = Field(None, alias="buyerAddress")
    seller_address: Optional[str] = Field(None, alias="sellerAddress")


class AgentRegistration(_PlatformModel):
    agent_id: str = Field(..., alias="agentId")
    name: str = ""
    wallet_address: Optional[str] = Field(None, alias="walletAddress")
    registered_at: Optional[int] = Field(None, alias="registeredAt")
    status: Optional[str] = None


__all__ = [
    "AgentRegistration",
    "BondingCurveStatus",
    "BuyQuote",
    "BuyResult",
    "ExecutionMode",
    "LaunchResult",
    "SelfExecuteAuthorization",
    "SellQuote",
    "SellResult",
    "TokenInfo",
    "TokenList",
]
