from __future__ import annotations

from collections import defaultdict
from typing import Any, Dict, List, Optional, Set, Tuple

import requests

from core.errors import PermanentError, RateLimited, TransientError
from core.models import FeedRecord
from enrich.base import ActivityFeedProvider
from enrich.moralis import parse_timestamp

TRANSFER_CATEGORIES = ["external", "internal", "erc20"]


def _lower(s: str) -> str:
    return (s or "").lower()


def _asset_id(a: Dict[str, Any]) -> Tuple[str, str]:
    """
    Returns (address, symbol).
    For tokens: rawContract.address
    For native ETH transfers: address="native", symbol="ETH"
    """
    sym = (a.get("asset") or "").upper() or "UNKNOWN"
    raw = a.get("rawContract") or {}
    addr = (raw.get("address") or "").lower()
    if not addr and sym == "ETH":
        addr = "native"
    if not addr:
        addr = "unknown"
    return addr, sym


def _from(a: Dict[str, Any]) -> str:
    # asset-transfer API uses from/to, address-activity webhooks fromAddress/toAddress
    return _lower(a.get("from") or a.get("fromAddress") or "")


def _to(a: Dict[str, Any]) -> str:
    return _lower(a.get("to") or a.get("toAddress") or "")


def _is_swap(items: List[Dict[str, Any]], wallet: str) -> bool:
    """A tx is a swap when the wallet both sends and receives, in different assets."""
    sent: Set[Tuple[str, str]] = set()
    received: Set[Tuple[str, str]] = set()
    for a in items:
        if _from(a) == wallet:
            sent.add(_asset_id(a))
        if _to(a) == wallet:
            received.add(_asset_id(a))
    return bool(sent) and bool(received) and sent != received


def parse_asset_transfers(transfers: List[Dict[str, Any]], wallet: str) -> List[FeedRecord]:
    out: List[FeedRecord] = []
    w = _lower(wallet)

    # Group by tx hash, keep first-seen order
    by_hash: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    for a in transfers:
        if not isinstance(a, dict):
            continue
        h = a.get("hash")
        if not h:
            continue
        by_hash[h].append(a)

    for tx_hash, items in by_hash.items():
        swap = _is_swap(items, w)
        for a in items:
            addr, sym = _asset_id(a)
            meta = a.get("metadata") or {}
            out.append(
                FeedRecord(
                    tx_hash=tx_hash,
                    is_swap=swap,
                    from_address=_from(a),
                    to_address=_to(a),
                    token_address=addr,
                    token_symbol=sym,
                    token_name=sym,
                    amount_formatted=str(a.get("value") if a.get("value") is not None else "0"),
                    occurred_at=parse_timestamp(meta.get("blockTimestamp")),
                )
            )

    return out


class AlchemyTransfersProvider(ActivityFeedProvider):
    """
    Block-range lookups via JSON-RPC alchemy_getAssetTransfers, once with the
    wallet as sender and once as receiver.
    """
    name = "alchemy"
    range_kind = "block"

    def __init__(self, url: str, max_pages: int = 3, timeout: float = 20.0, session: Optional[requests.Session] = None):
        super().__init__(timeout=timeout, session=session)
        self.url = url.strip()
        self.max_pages = max_pages

    def _rpc(self, params: Dict[str, Any]) -> Dict[str, Any]:
        payload = {"jsonrpc": "2.0", "id": 1, "method": "alchemy_getAssetTransfers", "params": [params]}
        data = self._request("POST", self.url, json=payload)
        if not isinstance(data, dict):
            raise TransientError("alchemy: unexpected response")
        err = data.get("error")
        if err:
            code = (err or {}).get("code")
            msg = f"alchemy: {err}"
            if code == 429:
                raise RateLimited(msg)
            if code in (-32602, -32600):
                raise PermanentError(msg)
            raise TransientError(msg)
        return data.get("result") or {}

    def _transfers(self, side: str, address: str, lower: int, upper: int) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {
            "fromBlock": hex(lower),
            "toBlock": hex(upper),
            side: address,
            "category": TRANSFER_CATEGORIES,
            "withMetadata": True,
            "excludeZeroValue": True,
            "order": "asc",
        }
        out: List[Dict[str, Any]] = []
        for _ in range(self.max_pages):
            result = self._rpc(params)
            out.extend(result.get("transfers") or [])
            page_key = result.get("pageKey")
            if not page_key:
                break
            params = dict(params, pageKey=page_key)
        return out

    def query(self, address: str, lower: int, upper: int) -> List[FeedRecord]:
        seen: Set[str] = set()
        merged: List[Dict[str, Any]] = []
        for side in ("fromAddress", "toAddress"):
            for t in self._transfers(side, address, lower, upper):
                uid = t.get("uniqueId") or f"{t.get('hash')}:{_from(t)}:{_to(t)}:{_asset_id(t)}"
                if uid in seen:
                    continue
                seen.add(uid)
                merged.append(t)

        def block_of(t: Dict[str, Any]) -> int:
            try:
                return int(t.get("blockNum") or "0x0", 16)
            except (TypeError, ValueError):
                return 0

        merged.sort(key=block_of)
        return parse_asset_transfers(merged, address)
