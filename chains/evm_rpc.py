from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Set

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from core.errors import TransientFetchError
from core.models import Block

logger = logging.getLogger(__name__)


def _hex_int(v: Any) -> int:
    if isinstance(v, int):
        return v
    return int(str(v or "0x0"), 16)


def participants_from_block(block: Dict[str, Any]) -> Set[str]:
    """Lower-cased from/to of every tx; contract creations have no `to`."""
    found: Set[str] = set()
    for tx in block.get("transactions") or []:
        if not isinstance(tx, dict):
            continue
        for k in ("from", "to"):
            v = tx.get(k)
            if isinstance(v, str) and v:
                found.add(v.lower())
    return found


class EvmBlockSource:
    """
    New-block feed over plain JSON-RPC.

    `subscribe()` polls eth_blockNumber and yields every block number up to
    `head - confirmations`, in order. A backlog longer than `max_backlog`
    is cut to its newest blocks and logged.
    """

    def __init__(
        self,
        rpc_url: str,
        poll_seconds: float = 4.0,
        confirmations: int = 1,
        max_backlog: int = 64,
        timeout: float = 20.0,
        session: Optional[requests.Session] = None,
    ):
        self.rpc_url = rpc_url.strip()
        self.poll_seconds = float(poll_seconds)
        self.confirmations = max(0, int(confirmations))
        self.max_backlog = max(1, int(max_backlog))
        self.timeout = timeout
        self._subscribed = False
        self._closed = asyncio.Event()

        if session is None:
            session = requests.Session()
            retries = Retry(
                total=2,
                connect=2,
                read=0,
                backoff_factor=0.5,
                status_forcelist=[502, 503, 504],
                allowed_methods=["POST"],
                raise_on_status=False,
            )
            adapter = HTTPAdapter(max_retries=retries)
            session.mount("https://", adapter)
            session.mount("http://", adapter)
        self.session = session

    def _rpc(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        try:
            r = self.session.post(self.rpc_url, json=payload, timeout=self.timeout)
            r.raise_for_status()
            data = r.json()
        except (requests.RequestException, ValueError) as e:
            raise TransientFetchError(f"{method}: {e}") from e
        if not isinstance(data, dict):
            raise TransientFetchError(f"{method}: unexpected response")
        if data.get("error"):
            raise TransientFetchError(f"{method}: {data['error']}")
        return data.get("result")

    def block_number(self) -> int:
        return _hex_int(self._rpc("eth_blockNumber", []))

    def fetch_participants(self, number: int) -> Block:
        raw = self._rpc("eth_getBlockByNumber", [hex(number), True])
        if not isinstance(raw, dict):
            raise TransientFetchError(f"block {number} not available yet")
        return Block(
            number=_hex_int(raw.get("number") or number),
            timestamp=_hex_int(raw.get("timestamp")),
            participants=frozenset(participants_from_block(raw)),
        )

    async def subscribe(self) -> AsyncIterator[int]:
        if self._subscribed:
            raise RuntimeError("block subscription already consumed")
        self._subscribed = True

        last: Optional[int] = None
        while not self._closed.is_set():
            try:
                head = await asyncio.to_thread(self.block_number)
            except TransientFetchError as e:
                logger.warning("Head poll failed: %s", e)
            else:
                target = head - self.confirmations
                if last is None:
                    first = target
                else:
                    first = last + 1
                    if target - first + 1 > self.max_backlog:
                        skip_to = target - self.max_backlog + 1
                        logger.warning("Block backlog too large, skipping %d..%d", first, skip_to - 1)
                        first = skip_to
                for n in range(first, target + 1):
                    if self._closed.is_set():
                        return
                    last = n
                    yield n
            try:
                await asyncio.wait_for(self._closed.wait(), timeout=self.poll_seconds)
            except asyncio.TimeoutError:
                pass

    def close(self) -> None:
        self._closed.set()
        self.session.close()
