import os
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from dotenv import load_dotenv

FEED_PROVIDERS = ("moralis", "alchemy", "cielo")


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_float(name: str, default: float) -> float:
    return float(_env(name, str(default)) or default)


def _env_int(name: str, default: int) -> int:
    return int(_env(name, str(default)) or default)


def _env_bool(name: str, default: bool) -> bool:
    raw = _env(name).lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _required(name: str) -> str:
    v = _env(name)
    if not v:
        raise RuntimeError(f"Missing {name} in environment.")
    return v


def parse_watch_wallets(raw: str) -> List[Tuple[int, str]]:
    """
    WATCH_WALLETS="123:0xabc...,123:0xdef...,456:0x..." -> [(123, "0xabc..."), ...]
    """
    pairs: List[Tuple[int, str]] = []
    for item in raw.replace(" ", "").split(","):
        if not item:
            continue
        user, sep, addr = item.partition(":")
        if not sep:
            raise RuntimeError(f"WATCH_WALLETS entry must be user_id:address, got {item!r}")
        try:
            pairs.append((int(user), addr))
        except ValueError as e:
            raise RuntimeError(f"WATCH_WALLETS user id must be an integer: {item!r}") from e
    return pairs


@dataclass(frozen=True)
class Settings:
    telegram_bot_token: str
    rpc_url: str
    feed_provider: str = "moralis"
    admin_chat_id: Optional[int] = None

    moralis_api_key: str = ""
    moralis_chain: str = "eth"
    alchemy_url: str = ""
    cielo_api_key: str = ""
    time_window_seconds: int = 0

    block_poll_seconds: float = 4.0
    confirmations: int = 1
    block_max_backlog: int = 64

    retry_max_attempts: int = 10
    retry_delay_seconds: float = 1.0
    retry_backoff: float = 1.0
    retry_max_delay_seconds: float = 30.0
    stop_on_empty: bool = False

    enrich_dexscreener: bool = True
    operator_cooldown_seconds: float = 300.0
    watch_wallets: List[Tuple[int, str]] = field(default_factory=list)
    api_auth_token: str = ""

    log_level: str = "INFO"
    request_timeout: float = 20.0
    port: int = 8000


def load_settings(dotenv: bool = True) -> Settings:
    if dotenv:
        load_dotenv()

    provider = _env("FEED_PROVIDER", "moralis").lower()
    if provider not in FEED_PROVIDERS:
        raise RuntimeError(f"FEED_PROVIDER must be one of {', '.join(FEED_PROVIDERS)}, got {provider!r}")

    admin_raw = _env("ADMIN_CHAT_ID")
    try:
        admin_chat_id = int(admin_raw) if admin_raw else None
    except ValueError as e:
        raise RuntimeError("ADMIN_CHAT_ID must be an integer.") from e

    settings = Settings(
        telegram_bot_token=_required("TELEGRAM_BOT_TOKEN"),
        rpc_url=_required("RPC_URL"),
        feed_provider=provider,
        admin_chat_id=admin_chat_id,
        moralis_api_key=_env("MORALIS_API_KEY"),
        moralis_chain=_env("MORALIS_CHAIN", "eth"),
        alchemy_url=_env("ALCHEMY_URL"),
        cielo_api_key=_env("CIELO_API_KEY"),
        time_window_seconds=_env_int("TIME_WINDOW_SECONDS", 0),
        block_poll_seconds=_env_float("BLOCK_POLL_SECONDS", 4.0),
        confirmations=_env_int("CONFIRMATIONS", 1),
        block_max_backlog=_env_int("BLOCK_MAX_BACKLOG", 64),
        retry_max_attempts=_env_int("RETRY_MAX_ATTEMPTS", 10),
        retry_delay_seconds=_env_float("RETRY_DELAY_SECONDS", 1.0),
        retry_backoff=_env_float("RETRY_BACKOFF", 1.0),
        retry_max_delay_seconds=_env_float("RETRY_MAX_DELAY_SECONDS", 30.0),
        stop_on_empty=_env_bool("STOP_ON_EMPTY", False),
        enrich_dexscreener=_env_bool("ENRICH_DEXSCREENER", True),
        operator_cooldown_seconds=_env_float("OPERATOR_COOLDOWN_SECONDS", 300.0),
        watch_wallets=parse_watch_wallets(_env("WATCH_WALLETS")),
        api_auth_token=_env("API_AUTH_TOKEN"),
        log_level=_env("LOG_LEVEL", "INFO").upper(),
        request_timeout=_env_float("REQUEST_TIMEOUT", 20.0),
        port=_env_int("PORT", 8000),
    )

    # provider credentials
    if provider == "moralis" and not settings.moralis_api_key:
        raise RuntimeError("Missing MORALIS_API_KEY for FEED_PROVIDER=moralis.")
    if provider == "alchemy" and not (settings.alchemy_url or settings.rpc_url):
        raise RuntimeError("Missing ALCHEMY_URL for FEED_PROVIDER=alchemy.")
    if provider == "cielo" and not settings.cielo_api_key:
        raise RuntimeError("Missing CIELO_API_KEY for FEED_PROVIDER=cielo.")
    return settings
