from __future__ import annotations

from typing import Optional


class BuybackError(Exception):
    """Base class for every error raised by the feed and the treasury agent."""


class TransientError(BuybackError):
    """Timeouts, dropped connections, rate limits. Safe to retry."""


class RpcError(BuybackError):
    """A JSON-RPC error response that is not worth retrying."""

    def __init__(self, code: Optional[int], message: str):
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.message = message


class DataError(BuybackError):
    """Malformed payload: wire message, transaction or log shape."""


class ConfigError(BuybackError):
    """Missing or invalid configuration. Fatal at startup."""


class ExecutionError(BuybackError):
    """Transaction submission or confirmation failed for good."""

    def __init__(self, message: str, signature: Optional[str] = None):
        super().__init__(message)
        self.signature = signature


class CycleInProgressError(BuybackError):
    """A treasury cycle was requested while another one is still running."""
