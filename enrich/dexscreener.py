from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Any, Dict, Optional, Tuple

import requests

from core.models import Event
from enrich.base import to_float

logger = logging.getLogger(__name__)


class DexscreenerClient:
    """
    Official endpoints (docs):
      - GET https://api.dexscreener.com/token-pairs/v1/{chainId}/{tokenAddress}
      - Rate limit for pairs endpoints: 300 req/min

    Enrichment is best effort: errors and 429s come back as None.
    """
    BASE = "https://api.dexscreener.com"

    def __init__(self, chain_id: str = "ethereum", ttl_seconds: int = 45, timeout: float = 20.0,
                 session: Optional[requests.Session] = None):
        self.chain_id = chain_id
        self.ttl = ttl_seconds
        self.timeout = timeout
        self.cache: Dict[str, Tuple[float, Any]] = {}
        self.session = session or requests.Session()

    def _cache_get(self, key: str) -> Optional[Any]:
        item = self.cache.get(key)
        if not item:
            return None
        ts, val = item
        if (time.time() - ts) > self.ttl:
            self.cache.pop(key, None)
            return None
        return val

    def _cache_set(self, key: str, val: Any) -> None:
        self.cache[key] = (time.time(), val)

    def get_best_pair(self, token_address: str) -> Optional[Dict[str, Any]]:
        """
        Returns the pool/pair with highest liquidity.usd for this token.
        """
        token_address = (token_address or "").strip()
        if not token_address or not token_address.startswith("0x"):
            return None

        key = f"pairs:{self.chain_id}:{token_address}"
        cached = self._cache_get(key)
        if cached is not None:
            return cached

        url = f"{self.BASE}/token-pairs/v1/{self.chain_id}/{token_address}"
        try:
            r = self.session.get(url, timeout=self.timeout)
            if r.status_code == 429:
                # Rate limited: fail soft
                return None
            r.raise_for_status()
            pairs = r.json() or []
        except (requests.RequestException, ValueError) as e:
            logger.debug("Dexscreener lookup failed for %s: %s", token_address, e)
            return None

        if not isinstance(pairs, list) or not pairs:
            return None

        def liq_usd(p: Dict[str, Any]) -> float:
            liq = (p.get("liquidity") or {})
            return float(liq.get("usd") or 0.0)

        best = max(pairs, key=liq_usd)
        self._cache_set(key, best)
        return best

    def market_data(self, token_address: str) -> Tuple[Optional[float], Optional[float]]:
        """(price_usd, market_cap) for a token, either may be None."""
        pair = self.get_best_pair(token_address)
        if not pair:
            return None, None
        mcap = to_float(pair.get("marketCap"))
        if mcap is None:
            mcap = to_float(pair.get("fdv"))
        return to_float(pair.get("priceUsd")), mcap

    def enrich(self, ev: Event) -> Event:
        """Fill price / market cap the feed left empty."""
        if ev.price_usd is not None and ev.market_cap is not None:
            return ev
        price, mcap = self.market_data(ev.token_address)
        if price is None and mcap is None:
            return ev
        return replace(
            ev,
            price_usd=ev.price_usd if ev.price_usd is not None else price,
            market_cap=ev.market_cap if ev.market_cap is not None else mcap,
        )
