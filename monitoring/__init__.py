"""monitoring/__init__.py

Operator alerts for the sync layer.

Submodules:
- alerts: Telegram bot client, non-blocking dispatcher and alert composers
"""

from .alerts import AlertDispatcher, TelegramBot, send_alert

__all__ = [
    "AlertDispatcher",
    "TelegramBot",
    "send_alert",
]
