from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Any, FrozenSet, Optional, Tuple

from core.errors import InvalidAddress

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def is_valid_address(value: Any) -> bool:
    return isinstance(value, str) and bool(_ADDRESS_RE.match(value.strip()))


def normalize_address(value: Any) -> str:
    """Canonical (lower-cased) form of an EVM address, or InvalidAddress."""
    if not is_valid_address(value):
        raise InvalidAddress(value)
    return value.strip().lower()


def _lower(s: Optional[str]) -> str:
    return (s or "").lower()


class EventKind(str, enum.Enum):
    BUY = "Buy"
    SELL = "Sell"
    TRANSFER = "Transfer"


class LookupState(str, enum.Enum):
    IDLE = "idle"
    IN_FLIGHT = "in_flight"
    RESOLVED = "resolved"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class Block:
    number: int
    timestamp: int                       # unix seconds
    participants: FrozenSet[str]         # lower-cased tx from/to addresses


@dataclass(frozen=True)
class LookupKey:
    user_id: int
    address: str                         # canonical
    window: Tuple[int, int]              # (n, n) block range or (t0, t1) time range


@dataclass
class FeedRecord:
    """
    One activity row as a provider returns it, before classification.
    Providers flatten their own payloads into this shape.
    """
    tx_hash: str
    is_swap: bool
    from_address: str
    to_address: str
    token_address: str
    token_symbol: str
    token_name: str
    amount_formatted: str
    occurred_at: int                     # unix seconds (0 if the feed omits it)
    price_usd: Optional[float] = None
    market_cap: Optional[float] = None

    def __post_init__(self):
        self.from_address = _lower(self.from_address)
        self.to_address = _lower(self.to_address)
        self.token_address = _lower(self.token_address)

    def touches(self, wallet: str) -> bool:
        w = _lower(wallet)
        return self.from_address == w or self.to_address == w


@dataclass(frozen=True)
class Event:
    kind: EventKind
    wallet: str
    token_address: str
    token_symbol: str
    token_name: str
    amount_formatted: str
    occurred_at: int
    price_usd: Optional[float] = None
    market_cap: Optional[float] = None
    tx_hash: Optional[str] = None

    def identity(self) -> Tuple[Any, ...]:
        # tx hash when the feed gives one, else the closest equivalent
        base: Tuple[Any, ...] = (self.tx_hash,) if self.tx_hash else (self.occurred_at, self.amount_formatted)
        return base + (self.kind.value, self.token_address)
