from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import requests

from core.models import Block, FeedRecord
from enrich.base import ActivityFeedProvider, to_float
from enrich.moralis import parse_timestamp


def _leg(item: Dict[str, Any], n: int, wallet: str, outgoing: bool) -> FeedRecord:
    p = f"token{n}_"
    return FeedRecord(
        tx_hash=item.get("tx_hash") or "",
        is_swap=True,
        from_address=wallet if outgoing else (item.get("to") or ""),
        to_address=(item.get("to") or "") if outgoing else wallet,
        token_address=item.get(p + "address") or "unknown",
        token_symbol=item.get(p + "symbol") or "TOKEN",
        token_name=item.get(p + "name") or "Unknown",
        amount_formatted=str(item.get(p + "amount") or "0"),
        occurred_at=parse_timestamp(item.get("timestamp")),
        price_usd=to_float(item.get(p + "price_usd")),
        market_cap=to_float(item.get(p + "market_cap")),
    )


def _next_page(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    data = payload.get("data") or {}
    paging = data.get("paging") if isinstance(data, dict) else None
    if not isinstance(paging, dict) or not paging.get("has_next_page"):
        return None
    return paging.get("next_object_id") or None


def parse_feed(payload: Any, wallet: str) -> List[FeedRecord]:
    """
    Expects payload like:
      { "status": "ok", "data": { "items": [ {"tx_type": "swap", ...} ], "paging": {...} } }
    Swaps carry token0 (sold) and token1 (bought) legs.
    """
    out: List[FeedRecord] = []
    if not isinstance(payload, dict):
        return out
    data = payload.get("data") or {}
    items = data.get("items") if isinstance(data, dict) else None
    w = (wallet or "").lower()

    for item in items or []:
        if not isinstance(item, dict):
            continue
        owner = (item.get("wallet") or w).lower()
        tx_type = (item.get("tx_type") or "").lower()

        if tx_type == "swap":
            out.append(_leg(item, 0, owner, outgoing=True))
            out.append(_leg(item, 1, owner, outgoing=False))
            continue

        out.append(
            FeedRecord(
                tx_hash=item.get("tx_hash") or "",
                is_swap=False,
                from_address=item.get("from") or "",
                to_address=item.get("to") or "",
                token_address=item.get("token_address") or "native",
                token_symbol=item.get("token_symbol") or "ETH",
                token_name=item.get("token_name") or "Unknown",
                amount_formatted=str(item.get("amount") or "0"),
                occurred_at=parse_timestamp(item.get("timestamp")),
                price_usd=to_float(item.get("token_price_usd")),
                market_cap=to_float(item.get("market_cap")),
            )
        )

    return out


class CieloFeedProvider(ActivityFeedProvider):
    """
    Wallet feed over a timestamp range:
      GET https://feed-api.cielo.finance/api/v1/feed
    """
    BASE = "https://feed-api.cielo.finance/api/v1"
    name = "cielo"
    range_kind = "time"

    def __init__(
        self,
        api_key: str,
        window_seconds: int = 0,
        chain: str = "ethereum",
        max_pages: int = 3,
        timeout: float = 20.0,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(timeout=timeout, session=session)
        self.api_key = api_key.strip()
        self.window_seconds = max(0, int(window_seconds))
        self.chain = chain
        self.max_pages = max_pages

    def window_for(self, block: Block) -> Tuple[int, int]:
        return (block.timestamp - self.window_seconds, block.timestamp)

    def query(self, address: str, lower: int, upper: int) -> List[FeedRecord]:
        params: Dict[str, Any] = {
            "wallet": address,
            "chains": self.chain,
            "from_timestamp": lower,
            "to_timestamp": upper,
        }
        headers = {"X-API-KEY": self.api_key, "Accept": "application/json"}

        records: List[FeedRecord] = []
        for _ in range(self.max_pages):
            payload = self._get_json(f"{self.BASE}/feed", params, headers)
            records.extend(parse_feed(payload, address))
            next_id = _next_page(payload)
            if not next_id:
                break
            params = dict(params, start_from=next_id)
        return records
