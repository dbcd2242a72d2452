from __future__ import annotations

import logging
from typing import Optional

import requests

from core.rpc import make_session

logger = logging.getLogger(__name__)

# Safety: cap extremely long messages
MAX_MSG_CHARS = 3500


def _truncate(s: str, n: int = MAX_MSG_CHARS) -> str:
    s = str(s or "")
    return s if len(s) <= n else s[: n - 1] + "…"


def _short_sig(sig: str) -> str:
    if not sig:
        return "?"
    sig = str(sig)
    if len(sig) <= 18:
        return sig
    return sig[:10] + "…" + sig[-6:]


class TelegramClient:
    API = "https://api.telegram.org"

    def __init__(self, bot_token: str, chat_id: int, session: Optional[requests.Session] = None, timeout: float = 20.0):
        self.chat_id = int(chat_id)
        self.timeout = float(timeout)
        self._url = f"{self.API}/bot{bot_token.strip()}/sendMessage"
        self.session = session or make_session(retries=2)

    def send(self, text: str, silent: bool = False) -> int:
        """Post one message; returns its Telegram message id."""
        payload = {
            "chat_id": self.chat_id,
            "text": _truncate(text),
            "disable_notification": bool(silent),
            "disable_web_page_preview": True,
        }
        r = self.session.post(self._url, json=payload, timeout=self.timeout)
        r.raise_for_status()
        body = r.json()
        if not body.get("ok"):
            raise RuntimeError(f"Telegram refused message: {body.get('description') or body}")
        return int((body.get("result") or {}).get("message_id") or 0)


class BuybackNotifier:
    """Best-effort operator messages. A failed send is logged, never raised."""

    def __init__(self, client: Optional[TelegramClient]):
        self.client = client

    @classmethod
    def from_settings(cls, bot_token: str, chat_id: Optional[int]) -> "BuybackNotifier":
        if not bot_token or chat_id is None:
            return cls(None)
        return cls(TelegramClient(bot_token, chat_id))

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def _send(self, text: str, silent: bool = False) -> None:
        if self.client is None:
            return
        try:
            self.client.send(text, silent=silent)
        except (requests.RequestException, RuntimeError, ValueError) as e:
            logger.warning("Telegram send failed: %s", e)

    def buyback_completed(self, signature: str, spent_sol: str, burned: str, link: str = "") -> None:
        lines = [
            "🔥 Buyback complete",
            f"Spent: {spent_sol} SOL",
            f"Burned: {burned}",
            f"Tx: {_short_sig(signature)}",
        ]
        if link:
            lines.append(link)
        self._send("\n".join(lines))

    def cycle_aborted(self, reason: str, signature: str = "") -> None:
        text = f"⚠️ Buyback cycle aborted\n{reason}"
        if signature:
            text += f"\nTx: {_short_sig(signature)}"
        self._send(text)
