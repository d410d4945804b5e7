"""
Error taxonomy shared by the engine, the gateway adapters and the HTTP layer.

Every error carries a machine-readable ``code`` and the HTTP status the API
maps it to, so callers can render actionable messages without parsing text.
"""
from __future__ import annotations

import re
from enum import Enum
from typing import Any, Dict, Optional


class TradingError(Exception):
    """Base class for all engine / gateway failures."""
    code = "trading_error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": self.code, "message": self.message}


class NotConnected(TradingError):
    code = "not_connected"
    status_code = 409

    def __init__(self, message: str = "Exchange not connected"):
        super().__init__(message)


class AuthReason(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    IP_NOT_WHITELISTED = "ip_not_whitelisted"
    INSUFFICIENT_PERMISSIONS = "insufficient_permissions"
    MISSING_PASSPHRASE = "missing_passphrase"
    UNKNOWN = "unknown"


AUTH_GUIDANCE: Dict[AuthReason, str] = {
    AuthReason.INVALID_CREDENTIALS:
        "Invalid API credentials. Please check your API key and secret.",
    AuthReason.IP_NOT_WHITELISTED:
        "IP address not whitelisted. Please add your server IP to the API whitelist.",
    AuthReason.INSUFFICIENT_PERMISSIONS:
        "Insufficient API permissions. Please enable trading and balance access.",
    AuthReason.MISSING_PASSPHRASE:
        "This exchange requires an API passphrase.",
    AuthReason.UNKNOWN:
        "Could not authenticate with the exchange.",
}


def classify_auth_failure(message: str) -> AuthReason:
    """Map a raw exchange error message onto a structured auth reason."""
    text = message or ""
    lowered = text.lower()
    if "invalid api" in lowered or "invalid key" in lowered or "api-key" in lowered:
        return AuthReason.INVALID_CREDENTIALS
    if "whitelist" in lowered or re.search(r"\bIP\b", text):
        return AuthReason.IP_NOT_WHITELISTED
    if "permission" in lowered:
        return AuthReason.INSUFFICIENT_PERMISSIONS
    return AuthReason.UNKNOWN


class AuthError(TradingError):
    code = "auth_error"
    status_code = 401

    def __init__(self, reason: AuthReason, detail: str = ""):
        self.reason = reason
        self.guidance = AUTH_GUIDANCE[reason]
        self.detail = detail
        super().__init__(self.guidance)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["reason"] = self.reason.value
        if self.detail:
            data["detail"] = self.detail
        return data


class AlreadyActive(TradingError):
    code = "already_active"
    status_code = 409

    def __init__(self, symbol: str):
        self.symbol = symbol
        super().__init__(f"A strategy is already active for {symbol}")


class NotActive(TradingError):
    code = "not_active"
    status_code = 404

    def __init__(self, symbol: str):
        self.symbol = symbol
        super().__init__(f"No active strategy for {symbol}")


class UnknownStrategy(TradingError):
    code = "unknown_strategy"
    status_code = 404

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Unknown strategy: {key}")


class InvalidLevel(TradingError):
    code = "invalid_level"
    status_code = 400

    def __init__(self, level: Any, max_levels: int):
        self.level = level
        self.max_levels = max_levels
        super().__init__(f"Ladder level {level!r} outside 1..{max_levels}")


class PositionTooSmall(TradingError):
    code = "position_too_small"
    status_code = 400

    def __init__(self, symbol: str, size: float, minimum: float):
        self.symbol = symbol
        self.size = size
        self.minimum = minimum
        super().__init__(f"Position size {size} too small for {symbol}. Min: {minimum}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(symbol=self.symbol, size=self.size, minimum=self.minimum)
        return data


class OrderFailed(TradingError):
    code = "order_failed"
    status_code = 502

    def __init__(self, symbol: str, reason: str, size: Optional[float] = None):
        self.symbol = symbol
        self.reason = reason
        self.size = size
        sized = f" (size {size})" if size is not None else ""
        super().__init__(f"Order Failed for {symbol}{sized}: {reason}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(symbol=self.symbol, size=self.size, reason=self.reason)
        return data


class CloseError(TradingError):
    code = "close_error"
    status_code = 502

    def __init__(self, symbol: str, reason: str):
        self.symbol = symbol
        self.reason = reason
        super().__init__(f"Failed to close position for {symbol}: {reason}")


class Exhausted(TradingError):
    """Ladder cap reached on a further loss; trading on the symbol stopped."""
    code = "exhausted"
    status_code = 409

    def __init__(self, symbol: str, level: int, closed: bool):
        self.symbol = symbol
        self.level = level
        self.closed = closed
        state = "position closed" if closed else "position close FAILED"
        super().__init__(f"Martingale ladder exhausted for {symbol} at level {level} ({state})")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(symbol=self.symbol, level=self.level, closed=self.closed)
        return data


class GatewayError(TradingError):
    """Exchange query failure (network, rate limit, timeout, bad response)."""
    code = "gateway_error"
    status_code = 502


class SessionBusy(TradingError):
    """Reconnect to a different exchange while strategies are still tracked."""
    code = "session_busy"
    status_code = 409
