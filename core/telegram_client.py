from typing import Any, Dict, Optional

import requests


class TelegramClient:
    def __init__(self, bot_token: str, timeout: float = 20.0, session: Optional[requests.Session] = None):
        self.bot_token = bot_token.strip()
        self.base = f"https://api.telegram.org/bot{self.bot_token}"
        self.timeout = timeout
        self.session = session or requests.Session()

    def send(
        self,
        chat_id: int,
        text: str,
        silent: bool = False,
        parse_mode: Optional[str] = None,
        reply_markup: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "chat_id": int(chat_id),
            "text": text,
            "disable_notification": bool(silent),
            "disable_web_page_preview": True,
        }
        if parse_mode:
            body["parse_mode"] = parse_mode
        if reply_markup:
            body["reply_markup"] = reply_markup

        r = self.session.post(f"{self.base}/sendMessage", json=body, timeout=self.timeout)
        r.raise_for_status()
        data = r.json()
        if not data.get("ok"):
            raise RuntimeError(data)
        return data["result"]
