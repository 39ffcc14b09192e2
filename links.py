from __future__ import annotations

BANANA_GUN_BOT = "https://t.me/BananaGunSniper_bot"


def explorer_tx_link(chain: str, tx_hash: str) -> str:
    if not tx_hash:
        return ""
    if chain == "ethereum":
        return f"https://etherscan.io/tx/{tx_hash}"
    if chain == "base":
        return f"https://basescan.org/tx/{tx_hash}"
    return ""


def dexscreener_token_link(chain: str, token_address: str) -> str:
    if not token_address or not token_address.startswith("0x"):
        return ""
    return f"https://dexscreener.com/{chain}/{token_address}"
