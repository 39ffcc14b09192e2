from __future__ import annotations

import logging
import threading
from typing import Dict, Iterable, List, Tuple

from core.errors import AlreadyExists, IndexOutOfRange, WatchlistError
from core.models import normalize_address

logger = logging.getLogger(__name__)


class AddressWatchlist:
    """
    Per-user ordered list of watched addresses, in memory only.

    Writers are serialized per user. Readers get a tuple copy, so the monitor
    can iterate a snapshot while HTTP handlers edit the live list.
    """

    def __init__(self):
        self._lists: Dict[int, List[str]] = {}
        self._locks: Dict[int, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, user_id: int) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = self._locks[user_id] = threading.Lock()
                self._lists.setdefault(user_id, [])
            return lock

    def _existing_lock(self, user_id: int, index: int) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(user_id)
        if lock is None:
            raise IndexOutOfRange(index, 0)
        return lock

    def ensure_user(self, user_id: int) -> None:
        self._lock_for(int(user_id))

    def add(self, user_id: int, address: str) -> str:
        addr = normalize_address(address)
        with self._lock_for(user_id):
            wallets = self._lists[user_id]
            if addr in wallets:
                raise AlreadyExists(addr)
            wallets.append(addr)
        return addr

    def remove_at(self, user_id: int, index: int) -> str:
        with self._existing_lock(user_id, index):
            wallets = self._lists[user_id]
            if not 0 <= index < len(wallets):
                raise IndexOutOfRange(index, len(wallets))
            return wallets.pop(index)

    def replace_at(self, user_id: int, index: int, address: str) -> str:
        addr = normalize_address(address)
        with self._existing_lock(user_id, index):
            wallets = self._lists[user_id]
            if not 0 <= index < len(wallets):
                raise IndexOutOfRange(index, len(wallets))
            for i, existing in enumerate(wallets):
                if existing == addr and i != index:
                    raise AlreadyExists(addr)
            wallets[index] = addr
        return addr

    def snapshot(self, user_id: int) -> Tuple[str, ...]:
        lock = self._locks.get(user_id)
        if lock is None:
            return ()
        with lock:
            return tuple(self._lists.get(user_id, ()))

    def all_users(self) -> List[int]:
        with self._registry_lock:
            return list(self._lists.keys())

    def seed(self, pairs: Iterable[Tuple[int, str]]) -> int:
        """Bulk add (user, address) pairs; bad or duplicate entries are skipped."""
        added = 0
        for user_id, address in pairs:
            try:
                self.add(user_id, address)
                added += 1
            except WatchlistError as e:
                logger.warning("Skipping seed wallet for user %s: %s", user_id, e)
        return added
