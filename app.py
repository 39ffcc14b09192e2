# app.py
import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel

from chains.evm_rpc import EvmBlockSource
from config import Settings, load_settings
from core.engine import BlockMonitor
from core.errors import AlreadyExists, IndexOutOfRange, InvalidAddress
from core.notifier import OperatorAlerter, TelegramNotifier
from core.retry import RetryPolicy
from core.telegram_client import TelegramClient
from core.watchlist import AddressWatchlist
from enrich.alchemy import AlchemyTransfersProvider
from enrich.base import ActivityFeedProvider
from enrich.cielo import CieloFeedProvider
from enrich.dexscreener import DexscreenerClient
from enrich.moralis import MoralisHistoryProvider
from logging_setup import configure_logging

logger = logging.getLogger(__name__)

DRAIN_SECONDS = 5.0

# ============================================================
# WIRING
# ============================================================


def build_provider(s: Settings) -> ActivityFeedProvider:
    if s.feed_provider == "alchemy":
        return AlchemyTransfersProvider(s.alchemy_url or s.rpc_url, timeout=s.request_timeout)
    if s.feed_provider == "cielo":
        return CieloFeedProvider(s.cielo_api_key, window_seconds=s.time_window_seconds, timeout=s.request_timeout)
    return MoralisHistoryProvider(s.moralis_api_key, chain=s.moralis_chain, timeout=s.request_timeout)


def build_monitor(s: Settings, watchlist: AddressWatchlist) -> BlockMonitor:
    telegram = TelegramClient(s.telegram_bot_token, timeout=s.request_timeout)
    source = EvmBlockSource(
        s.rpc_url,
        poll_seconds=s.block_poll_seconds,
        confirmations=s.confirmations,
        max_backlog=s.block_max_backlog,
        timeout=s.request_timeout,
    )
    retry = RetryPolicy(
        max_attempts=s.retry_max_attempts,
        delay=s.retry_delay_seconds,
        backoff=s.retry_backoff,
        max_delay=s.retry_max_delay_seconds,
    )
    return BlockMonitor(
        source=source,
        watchlist=watchlist,
        provider=build_provider(s),
        sink=TelegramNotifier(telegram),
        retry=retry,
        operator=OperatorAlerter(telegram, s.admin_chat_id, cooldown_seconds=s.operator_cooldown_seconds),
        enricher=DexscreenerClient(timeout=s.request_timeout) if s.enrich_dexscreener else None,
        stop_on_empty=s.stop_on_empty,
    )


# ============================================================
# HELPERS
# ============================================================


def _normalize_auth_header(value: str) -> str:
    v = (value or "").strip()
    if v.lower().startswith("bearer "):
        v = v[7:].strip()
    return v


class WalletIn(BaseModel):
    address: str


# ============================================================
# FASTAPI APP
# ============================================================


def create_app(
    watchlist: Optional[AddressWatchlist] = None,
    settings_loader: Callable[[], Settings] = load_settings,
    monitor_factory: Optional[Callable[[Settings, AddressWatchlist], BlockMonitor]] = build_monitor,
    auth_token: Optional[str] = None,
) -> FastAPI:
    watchlist = watchlist if watchlist is not None else AddressWatchlist()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        s = settings_loader()
        configure_logging(s.log_level)
        if app.state.auth_token is None:
            app.state.auth_token = s.api_auth_token
        seeded = watchlist.seed(s.watch_wallets)

        monitor = monitor_factory(s, watchlist) if monitor_factory else None
        task = None
        if monitor is not None:
            app.state.monitor = monitor
            task = asyncio.create_task(monitor.run())
            logger.info(
                "Monitor started (feed=%s, seeded wallets=%d, users=%d)",
                s.feed_provider, seeded, len(watchlist.all_users()),
            )

        try:
            yield
        finally:
            if monitor is not None:
                monitor.stop()
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
                await monitor.drain(DRAIN_SECONDS)
                monitor.source.close()
                monitor.provider.close()

    app = FastAPI(lifespan=lifespan)
    app.state.watchlist = watchlist
    app.state.monitor = None
    app.state.auth_token = auth_token

    def _check_auth(request: Request) -> None:
        token = app.state.auth_token
        if token:
            got = _normalize_auth_header(request.headers.get("Authorization", ""))
            if got != token:
                raise HTTPException(status_code=401, detail="Unauthorized")

    @app.get("/health")
    def health() -> Dict[str, Any]:
        monitor: Optional[BlockMonitor] = app.state.monitor
        out: Dict[str, Any] = {"ok": True, "users": len(watchlist.all_users())}
        if monitor is not None:
            out["feed"] = monitor.provider.name
            out["range"] = monitor.provider.range_kind
            out["last_block"] = monitor.last_block
            out["in_flight"] = monitor.in_flight
            out.update(monitor.summary)
        return out

    @app.post("/users/{user_id}")
    def register_user(user_id: int, request: Request):
        _check_auth(request)
        watchlist.ensure_user(user_id)
        return {"user_id": user_id, "wallets": list(watchlist.snapshot(user_id))}

    @app.get("/wallets/{user_id}")
    def list_wallets(user_id: int, request: Request):
        _check_auth(request)
        return {"user_id": user_id, "wallets": list(watchlist.snapshot(user_id))}

    @app.post("/wallets/{user_id}", status_code=201)
    def add_wallet(user_id: int, body: WalletIn, request: Request):
        _check_auth(request)
        try:
            addr = watchlist.add(user_id, body.address)
        except InvalidAddress as e:
            raise HTTPException(status_code=400, detail=str(e))
        except AlreadyExists as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"user_id": user_id, "address": addr, "wallets": list(watchlist.snapshot(user_id))}

    @app.put("/wallets/{user_id}/{index}")
    def edit_wallet(user_id: int, index: int, body: WalletIn, request: Request):
        _check_auth(request)
        try:
            addr = watchlist.replace_at(user_id, index, body.address)
        except InvalidAddress as e:
            raise HTTPException(status_code=400, detail=str(e))
        except AlreadyExists as e:
            raise HTTPException(status_code=409, detail=str(e))
        except IndexOutOfRange as e:
            raise HTTPException(status_code=404, detail=str(e))
        return {"user_id": user_id, "address": addr, "wallets": list(watchlist.snapshot(user_id))}

    @app.delete("/wallets/{user_id}/{index}")
    def remove_wallet(user_id: int, index: int, request: Request):
        _check_auth(request)
        try:
            removed = watchlist.remove_at(user_id, index)
        except IndexOutOfRange as e:
            raise HTTPException(status_code=404, detail=str(e))
        monitor: Optional[BlockMonitor] = app.state.monitor
        if monitor is not None:
            monitor.forget_wallet(user_id, removed)
        return {"user_id": user_id, "removed": removed, "wallets": list(watchlist.snapshot(user_id))}

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=load_settings().port)
