"""Typed errors for the platform, payment and RPC layers.

Transport and construction errors are raised from here; dispatch converts
everything else into failed outcomes.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class PlatformError(RuntimeError):
    """Generic trading-platform failure carrying the platform's message/code."""

    def __init__(self, message: str, code: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status


class PaymentRequiredError(PlatformError):
    def __init__(self, message: str, payment_details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="PAYMENT_REQUIRED", status=402)
        self.payment_details = payment_details or {}


class PaymentVerificationError(PlatformError):
    def __init__(self, message: str):
        super().__init__(message, code="PAYMENT_VERIFICATION_FAILED", status=402)


class InsufficientBalanceError(PlatformError):
    def __init__(self, message: str):
        super().__init__(message, code="INSUFFICIENT_BALANCE")


class RateLimitError(PlatformError):
    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, code="RATE_LIMIT", status=429)
        self.retry_after = retry_after


class NetworkError(PlatformError):
    def __init__(self, message: str):
        super().__init__(message, code="NETWORK_ERROR")


class ApiNotFoundError(PlatformError):
    def __init__(self, message: str):
        super().__init__(message, code="API_NOT_FOUND", status=404)


class ApprovalError(PlatformError):
    pass


class RpcError(RuntimeError):
    """Aggregated failure after every RPC endpoint was exhausted."""

    def __init__(self, message: str, attempts: int = 0, endpoints: int = 0):
        super().__init__(message)
        self.attempts = attempts
        self.endpoints = endpoints


__all__ = [
    "ApiNotFoundError",
    "ApprovalError",
    "InsufficientBalanceError",
    "NetworkError",
    "PaymentRequiredError",
    "PaymentVerificationError",
    "PlatformError",
    "RateLimitError",
    "RpcError",
]
