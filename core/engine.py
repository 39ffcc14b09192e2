from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Set

from core.classify import events_for_wallet
from core.dedupe import DedupWindow, LookupRegistry
from core.errors import (
    DeliveryFailed,
    PermanentError,
    RetryAborted,
    RetryExhausted,
    TransientFetchError,
)
from core.models import Block, Event, FeedRecord, LookupKey, LookupState
from core.notifier import NotificationSink, OperatorAlerter
from core.retry import RetryPolicy, any_result
from core.watchlist import AddressWatchlist
from enrich.base import ActivityFeedProvider

logger = logging.getLogger(__name__)


def match_participants(watchlist: AddressWatchlist, participants: Iterable[str]) -> Dict[int, List[str]]:
    """user -> watched addresses that appear in the block (case-insensitive)."""
    parts = {p.lower() for p in participants if p}
    matches: Dict[int, List[str]] = {}
    for user_id in watchlist.all_users():
        hit = [a for a in watchlist.snapshot(user_id) if a.lower() in parts]
        if hit:
            matches[user_id] = hit
    return matches


class BlockMonitor:
    """
    Block-driven wallet activity monitor.

    One task consumes block numbers; every (user, wallet, window) match gets
    its own lookup task so a slow feed never holds up the next block.
    """

    def __init__(
        self,
        source,
        watchlist: AddressWatchlist,
        provider: ActivityFeedProvider,
        sink: NotificationSink,
        retry: Optional[RetryPolicy] = None,
        dedupe: Optional[DedupWindow] = None,
        registry: Optional[LookupRegistry] = None,
        operator: Optional[OperatorAlerter] = None,
        enricher=None,
        stop_on_empty: bool = False,
    ):
        self.source = source
        self.watchlist = watchlist
        self.provider = provider
        self.sink = sink
        self.retry = retry or RetryPolicy()
        self.dedupe = dedupe or DedupWindow()
        self.registry = registry or LookupRegistry()
        self.operator = operator or OperatorAlerter()
        self.enricher = enricher
        self.stop_on_empty = stop_on_empty

        self._tasks: Set[asyncio.Task] = set()
        self._reports: Set[asyncio.Task] = set()
        self._stop = asyncio.Event()

        # Summary counters
        self.summary = {
            "blocks": 0,
            "skipped_blocks": 0,
            "matches": 0,
            "lookups": 0,
            "resolved": 0,
            "exhausted": 0,
            "notified": 0,
            "dedupe": 0,
            "delivery_failed": 0,
            "exceptions": 0,
        }
        self.last_block: Optional[int] = None

    # -----------------------------
    # INGESTION
    # -----------------------------
    async def run(self) -> None:
        blocks = self.source.subscribe()
        try:
            async for number in blocks:
                if self._stop.is_set():
                    break
                try:
                    await self.process_block(number)
                except Exception:
                    self.summary["exceptions"] += 1
                    logger.exception("Block %s processing failed", number)
        finally:
            await blocks.aclose()

    async def process_block(self, number: int) -> List[LookupKey]:
        try:
            block = await asyncio.to_thread(self.source.fetch_participants, number)
        except TransientFetchError as e:
            self.summary["skipped_blocks"] += 1
            self._report(f"Block {number} skipped: {e}")
            return []

        self.summary["blocks"] += 1
        self.last_block = block.number
        return self.dispatch(block)

    def _report(self, text: str) -> None:
        """Operator alert off the ingestion path."""
        task = asyncio.create_task(asyncio.to_thread(self.operator.report, text))
        self._reports.add(task)
        task.add_done_callback(self._reports.discard)

    def dispatch(self, block: Block) -> List[LookupKey]:
        """Match one block against every watchlist and start lookups."""
        window = self.provider.window_for(block)
        started: List[LookupKey] = []

        for user_id, wallets in match_participants(self.watchlist, block.participants).items():
            for wallet in wallets:
                self.summary["matches"] += 1
                key = LookupKey(user_id=user_id, address=wallet, window=window)
                if self.start_lookup(key):
                    started.append(key)

        if started:
            logger.info("Block %s: %d lookup(s) started", block.number, len(started))
        return started

    # -----------------------------
    # LOOKUPS
    # -----------------------------
    def start_lookup(self, key: LookupKey) -> bool:
        if self._stop.is_set():
            return False
        if not self.registry.try_acquire(key):
            logger.debug("Lookup %s already in flight or resolved", key)
            return False
        self.summary["lookups"] += 1
        task = asyncio.create_task(self._lookup(key))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    def state_of(self, key: LookupKey) -> LookupState:
        return self.registry.state_of(key)

    def _terminal_for(self, key: LookupKey):
        if self.stop_on_empty:
            return any_result

        def has_own_activity(records: List[FeedRecord]) -> bool:
            return any(r.touches(key.address) for r in records or [])

        return has_own_activity

    async def _lookup(self, key: LookupKey) -> None:
        lower, upper = key.window
        state = LookupState.EXHAUSTED
        try:
            records = await self.retry.execute(
                lambda: asyncio.to_thread(self.provider.query, key.address, lower, upper),
                is_terminal=self._terminal_for(key),
                stop=self._stop,
            )
            events = events_for_wallet(records, key.address)
            state = LookupState.RESOLVED
            self.summary["resolved"] += 1
            await self._deliver(key, events)

        except RetryExhausted as e:
            self.summary["exhausted"] += 1
            logger.info("Lookup exhausted for %s: %s", key, e)
        except PermanentError as e:
            self.summary["exhausted"] += 1
            await asyncio.to_thread(
                self.operator.report, f"{self.provider.name} rejected lookup for {key.address}: {e}")
        except RetryAborted:
            logger.debug("Lookup %s stopped by shutdown", key)
        except Exception:
            self.summary["exceptions"] += 1
            logger.exception("Lookup %s failed", key)
        finally:
            self.registry.release(key, state)

    async def _deliver(self, key: LookupKey, events: List[Event]) -> None:
        for ev in events:
            if not self.dedupe.should_notify(key.user_id, ev):
                self.summary["dedupe"] += 1
                continue

            if self.enricher is not None:
                ev = await asyncio.to_thread(self.enricher.enrich, ev)

            try:
                await asyncio.to_thread(self.sink.notify, key.user_id, ev)
            except DeliveryFailed as e:
                # never retried
                self.summary["delivery_failed"] += 1
                logger.error("Delivery to %s failed: %s", key.user_id, e)
                continue
            self.summary["notified"] += 1

    def forget_wallet(self, user_id: int, wallet: str) -> None:
        self.dedupe.forget(user_id, wallet)

    # -----------------------------
    # SHUTDOWN
    # -----------------------------
    def stop(self) -> None:
        """In-flight lookups finish their current attempt and start no new one."""
        self._stop.set()

    @property
    def in_flight(self) -> int:
        return self.registry.in_flight_count

    async def drain(self, timeout: Optional[float] = None) -> None:
        pending = self._tasks | self._reports
        if pending:
            await asyncio.wait(pending, timeout=timeout)
