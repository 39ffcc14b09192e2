"""
Tests for BlockMonitor.

Covers:
- participant matching against every watchlist
- at-most-one lookup per key
- resolve / exhaust / permanent-error outcomes
- dedupe across replays of the same block
- failure isolation (bad blocks, failed delivery)
"""

import asyncio
import threading

import pytest

from core.dedupe import LookupRegistry
from core.engine import BlockMonitor, match_participants
from core.errors import PermanentError, TransientError
from core.models import Block, EventKind, LookupKey, LookupState
from core.retry import RetryPolicy
from enrich.cielo import CieloFeedProvider

from conftest import (
    COUNTERPARTY,
    ROUTER,
    WALLET_A,
    WALLET_B,
    FakeBlockSource,
    RecordingSink,
    ScriptedProvider,
    no_sleep,
    swap_leg,
)

USER_A = 101
USER_B = 202


def block(number, *participants, ts=1_700_000_000):
    return Block(number=number, timestamp=ts, participants=frozenset(p.lower() for p in participants))


def make_monitor(watchlist, provider, sink=None, source=None, retry=None, **kwargs):
    return BlockMonitor(
        source=source or FakeBlockSource(),
        watchlist=watchlist,
        provider=provider,
        sink=sink or RecordingSink(),
        retry=retry or RetryPolicy(max_attempts=10, sleep=no_sleep),
        **kwargs,
    )


class TestMatchParticipants:
    def test_intersection_is_case_insensitive(self, watchlist):
        watchlist.add(USER_A, WALLET_A.upper().replace("0X", "0x"))
        watchlist.add(USER_B, WALLET_B)
        watchlist.add(USER_B, WALLET_A)

        matches = match_participants(watchlist, {WALLET_A, COUNTERPARTY})

        assert matches == {USER_A: [WALLET_A], USER_B: [WALLET_A]}

    def test_order_independent(self, watchlist):
        watchlist.add(USER_A, WALLET_A)
        watchlist.add(USER_A, WALLET_B)
        m1 = match_participants(watchlist, [WALLET_B, WALLET_A])
        m2 = match_participants(watchlist, [WALLET_A.upper(), WALLET_B])
        assert {k: set(v) for k, v in m1.items()} == {k: set(v) for k, v in m2.items()} == {
            USER_A: {WALLET_A, WALLET_B}
        }

    def test_empty_watchlists_match_nothing(self, watchlist):
        watchlist.ensure_user(USER_A)
        assert match_participants(watchlist, {WALLET_A}) == {}


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_sell_is_notified_once_and_not_on_replay(self, watchlist):
        watchlist.add(USER_A, WALLET_A.upper().replace("0X", "0x"))
        source = FakeBlockSource(blocks={
            500: block(500, WALLET_A, ROUTER),
            501: block(501, WALLET_A, ROUTER),
        })
        provider = ScriptedProvider([[swap_leg(WALLET_A, outgoing=True)]])
        sink = RecordingSink()
        monitor = make_monitor(watchlist, provider, sink=sink, source=source)

        keys = await monitor.process_block(500)
        await monitor.drain()

        assert keys == [LookupKey(USER_A, WALLET_A, (500, 500))]
        assert provider.calls == [(WALLET_A, 500, 500)]
        assert len(sink.sent) == 1
        user, ev = sink.sent[0]
        assert user == USER_A
        assert ev.kind is EventKind.SELL
        assert monitor.state_of(keys[0]) is LookupState.RESOLVED

        # replay of the same key does nothing
        assert await monitor.process_block(500) == []
        await monitor.drain()
        assert len(sink.sent) == 1

    @pytest.mark.asyncio
    async def test_requery_of_same_activity_is_deduped(self, watchlist):
        watchlist.add(USER_A, WALLET_A)
        source = FakeBlockSource(blocks={500: block(500, WALLET_A)})
        provider = ScriptedProvider([[swap_leg(WALLET_A, outgoing=False)]])
        sink = RecordingSink()
        monitor = make_monitor(watchlist, provider, sink=sink, source=source)

        await monitor.process_block(500)
        await monitor.drain()
        monitor.registry = LookupRegistry()  # forget resolved keys
        await monitor.process_block(500)
        await monitor.drain()

        assert len(provider.calls) == 2
        assert len(sink.sent) == 1
        assert monitor.summary["dedupe"] == 1

    @pytest.mark.asyncio
    async def test_events_delivered_in_feed_order(self, watchlist):
        watchlist.add(USER_A, WALLET_A)
        source = FakeBlockSource(blocks={7: block(7, WALLET_A)})
        records = [
            swap_leg(WALLET_A, outgoing=True, token="0x" + "44" * 20, symbol="WETH"),
            swap_leg(COUNTERPARTY, outgoing=True, symbol="NOISE"),
            swap_leg(WALLET_A, outgoing=False, symbol="PEPE"),
        ]
        sink = RecordingSink()
        monitor = make_monitor(watchlist, ScriptedProvider([records]), sink=sink, source=source)

        await monitor.process_block(7)
        await monitor.drain()

        assert [(e.kind, e.token_symbol) for _, e in sink.sent] == [
            (EventKind.SELL, "WETH"),
            (EventKind.BUY, "PEPE"),
        ]

    @pytest.mark.asyncio
    async def test_two_users_watching_same_wallet_both_notified(self, watchlist):
        watchlist.add(USER_A, WALLET_A)
        watchlist.add(USER_B, WALLET_A)
        source = FakeBlockSource(blocks={9: block(9, WALLET_A)})
        sink = RecordingSink()
        monitor = make_monitor(watchlist, ScriptedProvider([[swap_leg(WALLET_A, outgoing=False)]]),
                               sink=sink, source=source)

        await monitor.process_block(9)
        await monitor.drain()

        assert sorted(u for u, _ in sink.sent) == [USER_A, USER_B]


class TestLookupOutcomes:
    @pytest.mark.asyncio
    async def test_second_start_for_in_flight_key_is_noop(self, watchlist):
        provider = ScriptedProvider([[swap_leg(WALLET_A, outgoing=True)]])
        monitor = make_monitor(watchlist, provider)
        key = LookupKey(USER_A, WALLET_A, (10, 10))

        assert monitor.start_lookup(key)
        assert monitor.state_of(key) is LookupState.IN_FLIGHT
        assert not monitor.start_lookup(key)
        await monitor.drain()

        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_empty_results_exhaust_without_notify(self, watchlist):
        watchlist.add(USER_A, WALLET_A)
        source = FakeBlockSource(blocks={11: block(11, WALLET_A)})
        provider = ScriptedProvider([[]])
        sink = RecordingSink()
        monitor = make_monitor(watchlist, provider, sink=sink, source=source)

        keys = await monitor.process_block(11)
        await monitor.drain()

        assert len(provider.calls) == 10
        assert sink.sent == []
        assert monitor.state_of(keys[0]) is LookupState.EXHAUSTED
        assert monitor.summary["exhausted"] == 1
        assert monitor.summary["exceptions"] == 0

    @pytest.mark.asyncio
    async def test_lagging_feed_resolves_on_later_attempt(self, watchlist):
        watchlist.add(USER_A, WALLET_A)
        source = FakeBlockSource(blocks={12: block(12, WALLET_A)})
        provider = ScriptedProvider([[], TransientError("502"), [swap_leg(WALLET_A, outgoing=False)]])
        sink = RecordingSink()
        monitor = make_monitor(watchlist, provider, sink=sink, source=source)

        await monitor.process_block(12)
        await monitor.drain()

        assert len(provider.calls) == 3
        assert len(sink.sent) == 1

    @pytest.mark.asyncio
    async def test_counterparty_only_rows_keep_retrying(self, watchlist):
        watchlist.add(USER_A, WALLET_A)
        source = FakeBlockSource(blocks={13: block(13, WALLET_A)})
        provider = ScriptedProvider([[swap_leg(COUNTERPARTY, outgoing=True)]])
        monitor = make_monitor(watchlist, provider, source=source,
                               retry=RetryPolicy(max_attempts=3, sleep=no_sleep))

        await monitor.process_block(13)
        await monitor.drain()

        assert len(provider.calls) == 3
        assert monitor.summary["exhausted"] == 1

    @pytest.mark.asyncio
    async def test_stop_on_empty_resolves_with_zero_events(self, watchlist):
        watchlist.add(USER_A, WALLET_A)
        source = FakeBlockSource(blocks={14: block(14, WALLET_A)})
        provider = ScriptedProvider([[]])
        sink = RecordingSink()
        monitor = make_monitor(watchlist, provider, sink=sink, source=source, stop_on_empty=True)

        keys = await monitor.process_block(14)
        await monitor.drain()

        assert len(provider.calls) == 1
        assert sink.sent == []
        assert monitor.state_of(keys[0]) is LookupState.RESOLVED

    @pytest.mark.asyncio
    async def test_permanent_error_abandons_key(self, watchlist):
        watchlist.add(USER_A, WALLET_A)
        source = FakeBlockSource(blocks={15: block(15, WALLET_A)})
        provider = ScriptedProvider([PermanentError("401 bad key")])
        monitor = make_monitor(watchlist, provider, source=source)

        keys = await monitor.process_block(15)
        await monitor.drain()

        assert len(provider.calls) == 1
        assert monitor.state_of(keys[0]) is LookupState.EXHAUSTED

    @pytest.mark.asyncio
    async def test_unexpected_provider_crash_is_contained(self, watchlist):
        watchlist.add(USER_A, WALLET_A)
        source = FakeBlockSource(blocks={16: block(16, WALLET_A)})
        provider = ScriptedProvider([KeyError("result")])
        monitor = make_monitor(watchlist, provider, source=source)

        keys = await monitor.process_block(16)
        await monitor.drain()

        assert monitor.summary["exceptions"] == 1
        assert monitor.state_of(keys[0]) is LookupState.EXHAUSTED


class TestFailureIsolation:
    @pytest.mark.asyncio
    async def test_failed_fetch_skips_block_and_loop_continues(self, watchlist):
        watchlist.add(USER_A, WALLET_A)
        source = FakeBlockSource(blocks={21: block(21, WALLET_A)}, numbers=[20, 21])
        sink = RecordingSink()
        monitor = make_monitor(watchlist, ScriptedProvider([[swap_leg(WALLET_A, outgoing=True)]]),
                               sink=sink, source=source)

        await monitor.run()
        await monitor.drain()

        assert monitor.summary["skipped_blocks"] == 1
        assert monitor.summary["blocks"] == 1
        assert monitor.last_block == 21
        assert len(sink.sent) == 1

    @pytest.mark.asyncio
    async def test_slow_operator_alert_does_not_hold_up_ingestion(self, watchlist):
        class SlowOperator:
            def __init__(self):
                self.release = threading.Event()
                self.reports = []

            def report(self, text):
                self.release.wait(5)
                self.reports.append(text)
                return True

        operator = SlowOperator()
        monitor = make_monitor(watchlist, ScriptedProvider(), operator=operator)

        assert await monitor.process_block(77) == []
        assert monitor.summary["skipped_blocks"] == 1
        assert operator.reports == []

        operator.release.set()
        await monitor.drain(5)
        assert len(operator.reports) == 1
        assert operator.reports[0].startswith("Block 77 skipped")

    @pytest.mark.asyncio
    async def test_delivery_failure_is_not_retried(self, watchlist):
        watchlist.add(USER_A, WALLET_A)
        watchlist.add(USER_B, WALLET_A)
        source = FakeBlockSource(blocks={22: block(22, WALLET_A)})
        sink = RecordingSink(fail_for={USER_A})
        monitor = make_monitor(watchlist, ScriptedProvider([[swap_leg(WALLET_A, outgoing=True)]]),
                               sink=sink, source=source)

        await monitor.process_block(22)
        await monitor.drain()

        assert [u for u, _ in sink.sent] == [USER_B]
        assert monitor.summary["delivery_failed"] == 1
        assert monitor.summary["notified"] == 1

    @pytest.mark.asyncio
    async def test_block_ingestion_does_not_wait_for_lookups(self, watchlist):
        watchlist.add(USER_A, WALLET_A)
        gate = asyncio.Event()

        async def slow_sleep(_):
            await gate.wait()

        source = FakeBlockSource(blocks={30: block(30, WALLET_A), 31: block(31, WALLET_A)})
        provider = ScriptedProvider([[]])
        monitor = make_monitor(watchlist, provider, source=source,
                               retry=RetryPolicy(max_attempts=2, sleep=slow_sleep))

        await monitor.process_block(30)
        keys = await monitor.process_block(31)

        assert keys == [LookupKey(USER_A, WALLET_A, (31, 31))]
        assert monitor.in_flight == 2
        gate.set()
        await monitor.drain()
        assert monitor.in_flight == 0


class TestShutdown:
    @pytest.mark.asyncio
    async def test_stop_ends_retries_and_rejects_new_lookups(self, watchlist):
        watchlist.add(USER_A, WALLET_A)
        source = FakeBlockSource(blocks={40: block(40, WALLET_A)})
        provider = ScriptedProvider([[]])
        monitor = None

        async def stop_during_wait(_):
            monitor.stop()

        monitor = make_monitor(watchlist, provider, source=source,
                               retry=RetryPolicy(max_attempts=10, sleep=stop_during_wait))

        keys = await monitor.process_block(40)
        await monitor.drain()

        assert len(provider.calls) == 1
        assert monitor.state_of(keys[0]) is LookupState.EXHAUSTED
        assert not monitor.start_lookup(LookupKey(USER_A, WALLET_A, (41, 41)))


class TestTimeWindowProvider:
    @pytest.mark.asyncio
    async def test_key_uses_timestamp_window(self, watchlist):
        watchlist.add(USER_A, WALLET_A)
        cielo = CieloFeedProvider("key", window_seconds=30)
        provider = ScriptedProvider([[swap_leg(WALLET_A, outgoing=False)]])
        provider.window_for = cielo.window_for
        source = FakeBlockSource(blocks={50: block(50, WALLET_A, ts=1_700_000_600)})
        monitor = make_monitor(watchlist, provider, source=source)

        keys = await monitor.process_block(50)
        await monitor.drain()

        assert keys[0].window == (1_700_000_570, 1_700_000_600)
        assert provider.calls == [(WALLET_A, 1_700_000_570, 1_700_000_600)]
