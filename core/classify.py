from __future__ import annotations

from typing import Iterable, List

from core.models import Event, EventKind, FeedRecord


def classify_side(record: FeedRecord, wallet: str) -> EventKind:
    """
    Swaps: the watched wallet sending the leg means it sold that token,
    anything else is a buy. Non-swap activity is a plain transfer.
    """
    if not record.is_swap:
        return EventKind.TRANSFER
    if record.from_address == (wallet or "").lower():
        return EventKind.SELL
    return EventKind.BUY


def to_event(record: FeedRecord, wallet: str) -> Event:
    return Event(
        kind=classify_side(record, wallet),
        wallet=(wallet or "").lower(),
        token_address=record.token_address,
        token_symbol=record.token_symbol or "",
        token_name=record.token_name or "",
        amount_formatted=record.amount_formatted or "0",
        occurred_at=int(record.occurred_at or 0),
        price_usd=record.price_usd,
        market_cap=record.market_cap,
        tx_hash=record.tx_hash or None,
    )


def events_for_wallet(records: Iterable[FeedRecord], wallet: str) -> List[Event]:
    """Keep the wallet's own side of each record, in feed order."""
    return [to_event(r, wallet) for r in records if r.touches(wallet)]
