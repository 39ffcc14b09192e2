"""Shared fakes for monitor tests. Nothing here touches the network."""

import threading
from typing import Any, Dict, List, Optional

import pytest
import requests

from core.errors import DeliveryFailed, TransientFetchError
from core.models import Block, FeedRecord
from core.retry import RetryPolicy
from core.watchlist import AddressWatchlist
from enrich.base import ActivityFeedProvider

WALLET_A = "0x" + "ab" * 20
WALLET_B = "0x" + "cd" * 20
COUNTERPARTY = "0x" + "11" * 20
ROUTER = "0x" + "22" * 20
TOKEN = "0x" + "33" * 20
WETH = "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2"


async def no_sleep(_seconds):
    return None


def swap_leg(wallet: str, outgoing: bool, tx_hash: str = "0xswap1", token: str = TOKEN,
             symbol: str = "PEPE", ts: int = 1_700_000_000) -> FeedRecord:
    return FeedRecord(
        tx_hash=tx_hash,
        is_swap=True,
        from_address=wallet if outgoing else ROUTER,
        to_address=ROUTER if outgoing else wallet,
        token_address=token,
        token_symbol=symbol,
        token_name="Pepe",
        amount_formatted="1000",
        occurred_at=ts,
    )


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, headers: Optional[Dict[str, str]] = None,
                 text: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.text = text

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code}")


class FakeSession:
    """Replays queued responses (or raises queued exceptions) and records calls."""

    def __init__(self, responses: Optional[List[Any]] = None):
        self.responses = list(responses or [])
        self.calls: List[Dict[str, Any]] = []

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def get(self, url, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self.request("POST", url, **kwargs)

    def close(self):
        pass


class FakeBlockSource:
    def __init__(self, blocks: Optional[Dict[int, Block]] = None, numbers: Optional[List[int]] = None):
        self.blocks = blocks or {}
        self.numbers = numbers or []
        self.closed = False

    async def subscribe(self):
        for n in self.numbers:
            yield n

    def fetch_participants(self, number: int) -> Block:
        block = self.blocks.get(number)
        if block is None:
            raise TransientFetchError(f"block {number} unavailable")
        return block

    def close(self):
        self.closed = True


class ScriptedProvider(ActivityFeedProvider):
    """
    Returns scripted results per call; the last entry repeats. Entries may be
    lists of records or exceptions.
    """
    name = "scripted"

    def __init__(self, script: Optional[List[Any]] = None):
        super().__init__(session=FakeSession())
        self.script = list(script or [[]])
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def query(self, address, lower, upper):
        with self._lock:
            self.calls.append((address, lower, upper))
            idx = min(len(self.calls) - 1, len(self.script) - 1)
            item = self.script[idx]
        if isinstance(item, Exception):
            raise item
        return list(item)


class RecordingSink:
    def __init__(self, fail_for: Optional[set] = None):
        self.sent: List[tuple] = []
        self.fail_for = fail_for or set()
        self._lock = threading.Lock()

    def notify(self, user_id, event):
        if user_id in self.fail_for:
            raise DeliveryFailed(f"chat {user_id} blocked the bot")
        with self._lock:
            self.sent.append((user_id, event))


@pytest.fixture
def watchlist():
    return AddressWatchlist()


@pytest.fixture
def fast_retry():
    return RetryPolicy(max_attempts=10, delay=1.0, sleep=no_sleep)
