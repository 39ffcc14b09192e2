from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from core.errors import DeliveryFailed
from core.models import Event
from core.telegram_client import TelegramClient
from links import BANANA_GUN_BOT, dexscreener_token_link, explorer_tx_link

logger = logging.getLogger(__name__)

MAX_MSG_CHARS = 3500


class NotificationSink:
    """Delivers one finished Event to one user. Raises DeliveryFailed."""

    def notify(self, user_id: int, event: Event) -> None:
        raise NotImplementedError


def _fmt_usd(v: Optional[float]) -> str:
    if v is None:
        return ""
    if v >= 1:
        return f"${v:,.2f}"
    return f"${v:.8g}"


def _md(s: str) -> str:
    # legacy Markdown: escape what would open an entity
    for ch in ("_", "*", "`", "["):
        s = s.replace(ch, "\\" + ch)
    return s


def _fmt_time(ts: int) -> str:
    if not ts:
        return "unknown"
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def format_event(ev: Event, chain: str = "ethereum") -> str:
    lines = [
        f"New Transaction - {ev.kind.value}!",
        "Wallet:",
        f"`{ev.wallet}`",
        "Token Address:",
        f"`{ev.token_address}`",
        f"Token Name: {_md(ev.token_name)}",
        f"Token Symbol: {_md(ev.token_symbol)}",
        f"Amount: {_md(ev.amount_formatted)}",
    ]
    if ev.price_usd is not None:
        lines.append(f"Price: {_fmt_usd(ev.price_usd)}")
    if ev.market_cap is not None:
        lines.append(f"Market Cap: ${ev.market_cap:,.0f}")
    lines.append(f"Entry Time: {_fmt_time(ev.occurred_at)}")

    tx_link = explorer_tx_link(chain, ev.tx_hash or "")
    if tx_link:
        lines.append(f"Explorer: {tx_link}")

    msg = "\n".join(lines)
    return msg if len(msg) <= MAX_MSG_CHARS else msg[: MAX_MSG_CHARS - 1] + "…"


def event_buttons(ev: Event, chain: str = "ethereum") -> Dict[str, Any]:
    row: List[Dict[str, str]] = [{"text": "Buy on Banana Gun", "url": BANANA_GUN_BOT}]
    ds = dexscreener_token_link(chain, ev.token_address)
    if ds:
        row.append({"text": "Open on Dexscreener", "url": ds})
    return {"inline_keyboard": [row]}


class TelegramNotifier(NotificationSink):
    def __init__(self, telegram: TelegramClient, chain: str = "ethereum"):
        self.telegram = telegram
        self.chain = chain

    def notify(self, user_id: int, event: Event) -> None:
        try:
            self.telegram.send(
                user_id,
                format_event(event, self.chain),
                parse_mode="Markdown",
                reply_markup=event_buttons(event, self.chain),
            )
        except (requests.RequestException, RuntimeError, ValueError) as e:
            raise DeliveryFailed(f"telegram chat {user_id}: {e}") from e


class OperatorAlerter:
    """
    Operator channel: always logs, and when an admin chat is configured also
    sends a silent Telegram message, at most once per cooldown.
    """

    def __init__(self, telegram: Optional[TelegramClient] = None, chat_id: Optional[int] = None,
                 cooldown_seconds: float = 300.0, clock=time.time):
        self.telegram = telegram
        self.chat_id = chat_id
        self.cooldown = float(cooldown_seconds)
        self._clock = clock
        self._last_sent = 0.0
        self.suppressed = 0

    def report(self, text: str) -> bool:
        logger.warning("%s", text)
        if self.telegram is None or self.chat_id is None:
            return False

        now = self._clock()
        if now - self._last_sent < self.cooldown:
            self.suppressed += 1
            return False
        self._last_sent = now

        extra = f"\n(+{self.suppressed} suppressed)" if self.suppressed else ""
        self.suppressed = 0
        try:
            self.telegram.send(self.chat_id, f"⚠️ wallet monitor: {text}{extra}", silent=True)
        except (requests.RequestException, RuntimeError, ValueError) as e:
            logger.error("Operator alert delivery failed: %s", e)
            return False
        return True
