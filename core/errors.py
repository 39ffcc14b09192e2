from __future__ import annotations

from typing import Any, Optional


class MonitorError(Exception):
    """Base for every error the monitor raises on purpose."""


# -----------------------------
# WATCHLIST (synchronous, user-facing)
# -----------------------------
class WatchlistError(MonitorError, ValueError):
    pass


class InvalidAddress(WatchlistError):
    def __init__(self, address: Any):
        super().__init__(f"Invalid Ethereum address: {address!r}")
        self.address = address


class AlreadyExists(WatchlistError):
    def __init__(self, address: str):
        super().__init__(f"The address exists in the list: {address}")
        self.address = address


class IndexOutOfRange(WatchlistError, IndexError):
    def __init__(self, index: int, size: int):
        super().__init__(f"Wallet index {index} out of range (list has {size})")
        self.index = index
        self.size = size


# -----------------------------
# CHAIN
# -----------------------------
class TransientFetchError(MonitorError):
    """RPC hiccup while reading a block. The block is skipped."""


# -----------------------------
# ACTIVITY FEED
# -----------------------------
class FeedError(MonitorError):
    pass


class TransientError(FeedError):
    pass


class RateLimited(TransientError):
    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class PermanentError(FeedError):
    pass


# -----------------------------
# RETRY
# -----------------------------
class RetryExhausted(MonitorError):
    def __init__(self, attempts: int, last_result: Any = None, last_error: Optional[BaseException] = None):
        reason = f"last error: {last_error}" if last_error else "no terminal result"
        super().__init__(f"gave up after {attempts} attempts ({reason})")
        self.attempts = attempts
        self.last_result = last_result
        self.last_error = last_error


class RetryAborted(MonitorError):
    def __init__(self, attempts: int):
        super().__init__(f"stopped before attempt {attempts + 1}")
        self.attempts = attempts


# -----------------------------
# NOTIFICATION
# -----------------------------
class DeliveryFailed(MonitorError):
    pass
