"""monitoring/alerts.py

Operator alerts over Telegram.

Sent on:
- reconciliation failures (checkpoint not advanced)
- data-integrity warnings (inconsistent lifecycle transitions)
- all RPC providers exhausted

Design goals:
- Zero secrets in code (env vars only)
- Fail-safe (never crash the sync pipeline on alert failure)
- Strict timeouts
- Never block the event loop (AlertDispatcher sends from a worker thread)
"""

from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

import requests

logger = logging.getLogger(__name__)

ALERT_INFO = "INFO"
ALERT_WARNING = "WARNING"
ALERT_ERROR = "ERROR"
ALERT_CRITICAL = "CRITICAL"

_LEVEL_PREFIX = {
    ALERT_INFO: "[i]",
    ALERT_WARNING: "[!]",
    ALERT_ERROR: "[x]",
    ALERT_CRITICAL: "[!!!]",
}


@dataclass
class TelegramBot:
    """Telegram bot client for sending alerts.

    Attributes:
        token: Bot token from TELEGRAM_BOT_TOKEN env var.
        chat_id: Chat ID from TELEGRAM_CHAT_ID env var.
        timeout: Request timeout in seconds (default: 3).
    """

    token: str
    chat_id: str
    timeout: int = 3
    _session: Optional[requests.Session] = None

    @classmethod
    def from_env(cls, timeout: int = 3) -> "TelegramBot":
        token = os.getenv("TELEGRAM_BOT_TOKEN")
        chat_id = os.getenv("TELEGRAM_CHAT_ID")

        if not token or not chat_id:
            logger.warning("[TelegramBot] TELEGRAM_BOT_TOKEN or TELEGRAM_CHAT_ID not set, alerts are log-only")
            return cls(token="", chat_id="", timeout=timeout)

        return cls(token=token, chat_id=chat_id, timeout=timeout)

    @property
    def enabled(self) -> bool:
        return bool(self.token and self.chat_id)

    def _get_session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def send_message(self, text: str, level: str = ALERT_INFO) -> bool:
        """Send a message to the configured chat.

        Returns:
            True if sent successfully, False otherwise.
        """
        if not self.enabled:
            logger.info(f"[TelegramBot] Would send (disabled): {text[:80]}")
            return False

        payload = {
            "chat_id": self.chat_id,
            "text": f"{_LEVEL_PREFIX.get(level, '[i]')} {text}",
            "parse_mode": "Markdown",
            "disable_notification": level == ALERT_INFO,
        }
        url = f"https://api.telegram.org/bot{self.token}/sendMessage"

        try:
            response = self._get_session().post(url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            logger.debug(f"[TelegramBot] Sent: {text[:50]}")
            return True
        except requests.exceptions.Timeout:
            logger.warning(f"[TelegramBot] Timeout sending message: {text[:50]}")
            return False
        except requests.exceptions.RequestException as e:
            logger.warning(f"[TelegramBot] Request failed: {e}")
            return False


def compose_reconcile_failure_alert(contract_name: str, error: str, sync_status: Optional[Dict[str, Any]] = None) -> str:
    """Reconciliation failed; checkpoint kept, error counter bumped."""
    msg = f"*Reconciliation failed*\n- Contract: `{contract_name}`\n- Error: `{error[:300]}`"
    if sync_status:
        msg += (
            f"\n- Checkpoint: `{sync_status.get('last_synced_block')}`"
            f"\n- Consecutive errors: `{sync_status.get('sync_errors')}`"
        )
    return msg


def compose_inconsistency_alert(entity: str, source: str, message: str) -> str:
    """Lifecycle interpreter rejected a delta; cached value kept."""
    return (
        f"*Data integrity warning*\n- Entity: `{entity}`\n- Source: `{source}`\n- Detail: `{message}`"
    )


def compose_rpc_exhausted_alert(label: str, attempts: int, last_error: str) -> str:
    return f"*All RPC providers failed*\n- Call: `{label}`\n- Attempts: `{attempts}`\n- Last error: `{last_error[:300]}`"


def send_alert(text: str, level: str = ALERT_INFO, bot: Optional[TelegramBot] = None) -> bool:
    """Convenience function to send an alert.

    Args:
        text: Alert message.
        level: Alert level.
        bot: Optional TelegramBot instance (creates one from env if None).
    """
    if bot is None:
        bot = TelegramBot.from_env()
    return bot.send_message(text, level)


class AlertDispatcher:
    """Sends alerts from a background thread so callers on the event loop never block on Telegram.

    Usage:
        dispatcher = AlertDispatcher(TelegramBot.from_env())
        dispatcher.dispatch(text, ALERT_WARNING)   # returns immediately
        dispatcher.close()                         # drains the queue on shutdown
    """

    def __init__(self, bot: Optional[TelegramBot] = None, max_workers: int = 1):
        self.bot = bot if bot is not None else TelegramBot.from_env()
        self._pool: Optional[ThreadPoolExecutor] = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="alerts",
        )
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()

    def dispatch(self, text: str, level: str = ALERT_INFO) -> Optional[Future]:
        """Queue one alert; None once the dispatcher is closed."""
        with self._lock:
            if self._pool is None:
                logger.warning(f"[alerts] dispatcher closed, dropping alert: {text[:50]}")
                return None
            future = self._pool.submit(self._send, text, level)
            self._pending.add(future)
        future.add_done_callback(self._done)
        return future

    def _send(self, text: str, level: str) -> bool:
        try:
            return send_alert(text, level, bot=self.bot)
        except Exception as e:
            logger.error(f"[alerts] send failed: {e}")
            return False

    def _done(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for queued alerts; True when all of them finished."""
        with self._lock:
            pending = list(self._pending)
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def close(self) -> None:
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=True)
