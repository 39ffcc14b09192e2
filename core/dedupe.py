from __future__ import annotations

import threading
from collections import deque
from typing import Any, Deque, Dict, Set, Tuple

from core.models import Event, LookupKey, LookupState


class DedupWindow:
    """
    Remembers what each user has already been told about.

    Simple in-memory dedupe (one process; lost on restart). Identities are
    pruned oldest-first once `maxlen` is reached.
    """

    def __init__(self, maxlen: int = 50000):
        self._seen: Set[Tuple[Any, ...]] = set()
        self._seen_q: Deque[Tuple[Any, ...]] = deque()
        self._maxlen = maxlen
        self._last_ts: Dict[int, Dict[str, int]] = {}
        self._lock = threading.Lock()

    def _key(self, user_id: int, ev: Event) -> Tuple[Any, ...]:
        return (user_id, ev.wallet) + ev.identity()

    def last_notified(self, user_id: int, wallet: str) -> int:
        return self._last_ts.get(user_id, {}).get(wallet, 0)

    def should_notify(self, user_id: int, ev: Event) -> bool:
        """Check and record in one step. False means 'already reported'."""
        key = self._key(user_id, ev)
        with self._lock:
            if key in self._seen:
                return False
            # without a tx hash, anything older than the last report is a replay
            if not ev.tx_hash and ev.occurred_at < self.last_notified(user_id, ev.wallet):
                return False
            self._seen.add(key)
            self._seen_q.append(key)
            while len(self._seen_q) > self._maxlen:
                old = self._seen_q.popleft()
                self._seen.discard(old)
            self._roll_forward(user_id, ev.wallet, ev.occurred_at)
            return True

    def _roll_forward(self, user_id: int, wallet: str, ts: int) -> None:
        per_user = self._last_ts.setdefault(user_id, {})
        if ts > per_user.get(wallet, 0):
            per_user[wallet] = ts

    def forget(self, user_id: int, wallet: str) -> None:
        """Drop the last-notified timestamp of a wallet the user stopped watching."""
        with self._lock:
            self._last_ts.get(user_id, {}).pop(wallet.lower(), None)


class LookupRegistry:
    """
    In-flight set for lookup keys plus a bounded memory of resolved ones.

    `try_acquire` is a single check-and-set; callers on the event loop must not
    await between deciding and starting the lookup.
    """

    def __init__(self, remember: int = 10000):
        self._in_flight: Set[LookupKey] = set()
        self._settled: Dict[LookupKey, LookupState] = {}
        self._settled_q: Deque[LookupKey] = deque()
        self._remember = remember
        self._lock = threading.Lock()

    def try_acquire(self, key: LookupKey) -> bool:
        with self._lock:
            if key in self._in_flight:
                return False
            if self._settled.get(key) == LookupState.RESOLVED:
                return False
            self._in_flight.add(key)
            return True

    def release(self, key: LookupKey, state: LookupState) -> None:
        with self._lock:
            self._in_flight.discard(key)
            if key not in self._settled:
                self._settled_q.append(key)
            self._settled[key] = state
            while len(self._settled_q) > self._remember:
                self._settled.pop(self._settled_q.popleft(), None)

    def state_of(self, key: LookupKey) -> LookupState:
        with self._lock:
            if key in self._in_flight:
                return LookupState.IN_FLIGHT
            return self._settled.get(key, LookupState.IDLE)

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)
