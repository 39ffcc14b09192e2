from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from core.models import FeedRecord
from enrich.base import ActivityFeedProvider

NATIVE_ADDR = "native"  # internal marker
SWAP_CATEGORY = "token swap"


def parse_timestamp(value: Any) -> int:
    """Moralis returns ISO-8601 strings like 2024-05-01T12:00:11.000Z."""
    if not value:
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    if str(value).strip().isdigit():
        return int(str(value).strip())
    try:
        return int(datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp())
    except ValueError:
        return 0


def parse_wallet_history(payload: Any) -> List[FeedRecord]:
    """
    Expects payload like:
      { "result": [ { "hash", "category", "block_timestamp",
                      "erc20_transfers": [...], "native_transfers": [...] } ] }
    """
    out: List[FeedRecord] = []
    if not isinstance(payload, dict):
        return out

    for entry in payload.get("result") or []:
        if not isinstance(entry, dict):
            continue
        tx_hash = entry.get("hash") or ""
        category = (entry.get("category") or "").lower()
        is_swap = category == SWAP_CATEGORY
        ts = parse_timestamp(entry.get("block_timestamp"))

        for t in entry.get("erc20_transfers") or []:
            if not isinstance(t, dict):
                continue
            out.append(
                FeedRecord(
                    tx_hash=tx_hash,
                    is_swap=is_swap,
                    from_address=t.get("from_address") or "",
                    to_address=t.get("to_address") or "",
                    token_address=t.get("address") or "unknown",
                    token_symbol=t.get("token_symbol") or "TOKEN",
                    token_name=t.get("token_name") or "Unknown",
                    amount_formatted=str(t.get("value_formatted") or t.get("value") or "0"),
                    occurred_at=ts,
                )
            )

        for n in entry.get("native_transfers") or []:
            if not isinstance(n, dict):
                continue
            out.append(
                FeedRecord(
                    tx_hash=tx_hash,
                    is_swap=is_swap,
                    from_address=n.get("from_address") or "",
                    to_address=n.get("to_address") or "",
                    token_address=NATIVE_ADDR,
                    token_symbol=n.get("token_symbol") or "ETH",
                    token_name="Ether",
                    amount_formatted=str(n.get("value_formatted") or n.get("value") or "0"),
                    occurred_at=ts,
                )
            )

    return out


class MoralisHistoryProvider(ActivityFeedProvider):
    """
    Wallet history over a block range:
      GET https://deep-index.moralis.io/api/v2.2/wallets/{address}/history
    """
    BASE = "https://deep-index.moralis.io/api/v2.2"
    name = "moralis"
    range_kind = "block"

    def __init__(
        self,
        api_key: str,
        chain: str = "eth",
        max_pages: int = 3,
        timeout: float = 20.0,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(timeout=timeout, session=session)
        self.api_key = api_key.strip()
        self.chain = chain
        self.max_pages = max_pages

    def query(self, address: str, lower: int, upper: int) -> List[FeedRecord]:
        url = f"{self.BASE}/wallets/{address}/history"
        params: Dict[str, Any] = {
            "chain": self.chain,
            "from_block": lower,
            "to_block": upper,
            "order": "ASC",
        }
        headers = {"X-API-Key": self.api_key, "Accept": "application/json"}

        records: List[FeedRecord] = []
        for _ in range(self.max_pages):
            payload = self._get_json(url, params, headers)
            records.extend(parse_wallet_history(payload))
            cursor = payload.get("cursor") if isinstance(payload, dict) else None
            if not cursor:
                break
            params = dict(params, cursor=cursor)
        return records
