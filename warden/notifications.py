"""Notification system for Telegram and Discord."""

import html
import socket
import logging
import requests
from typing import Optional
from datetime import datetime, timezone

from .config import NotificationConfig

logger = logging.getLogger(__name__)


class NotificationManager:
    """Best-effort operator notifications.

    Telegram is the primary channel: it returns message ids, which is what
    pinning needs. Discord, when configured, gets a copy of every message.
    Every failure is logged and swallowed.
    """

    TELEGRAM_API = "https://api.telegram.org/bot{token}/{method}"

    def __init__(self, config: NotificationConfig, timeout: int = 10):
        self.node_name = config.node_name
        self.discord_webhook = config.discord_webhook
        self.telegram_bot_token = config.telegram_bot_token
        self.telegram_chat_id = config.telegram_chat_id
        self.timeout = timeout
        self.host = socket.gethostname()

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')

    def _header(self, emoji: str, suffix: str = "") -> str:
        return f"{emoji} <b>{html.escape(self.node_name)}</b>{suffix}\nHost: {html.escape(self.host)}"

    # -- primitives -------------------------------------------------------

    def send(self, text: str) -> Optional[int]:
        """Send text to all channels; returns the Telegram message id, if any."""
        message_id = None
        if self.telegram_enabled:
            message_id = self._send_telegram(text)
        if self.discord_webhook:
            self._send_discord(text)
        return message_id

    def pin(self, message_id: int):
        self._telegram_call('pinChatMessage', {
            'chat_id': self.telegram_chat_id,
            'message_id': message_id,
            'disable_notification': False,
        })

    def unpin(self, message_id: int):
        self._telegram_call('unpinChatMessage', {
            'chat_id': self.telegram_chat_id,
            'message_id': message_id,
        })

    def _telegram_call(self, method: str, payload: dict) -> Optional[dict]:
        if not self.telegram_enabled:
            return None
        url = self.TELEGRAM_API.format(token=self.telegram_bot_token, method=method)
        try:
            response = requests.post(url, json=payload, timeout=self.timeout)
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"Telegram {method} failed: {e}")
            return None

        if not data.get('ok'):
            logger.warning(f"Telegram {method} failed: {data.get('description', response.status_code)}")
            return None
        return data

    def _send_telegram(self, text: str) -> Optional[int]:
        data = self._telegram_call('sendMessage', {
            'chat_id': self.telegram_chat_id,
            'text': text,
            'parse_mode': 'HTML',
            'disable_web_page_preview': True,
        })
        if not data:
            return None
        logger.info("Telegram notification sent successfully")
        return (data.get('result') or {}).get('message_id')

    def _send_discord(self, text: str):
        """Send notification to Discord webhook."""
        # Discord renders markdown, not HTML
        plain = text.replace('<b>', '**').replace('</b>', '**')
        try:
            payload = {
                "embeds": [{
                    "title": f"Canton Warden - {self.node_name}",
                    "description": html.unescape(plain),
                    "color": 3447003,
                    "timestamp": datetime.now(timezone.utc).isoformat()
                }]
            }
            response = requests.post(self.discord_webhook, json=payload, timeout=self.timeout)
            if response.status_code == 204:
                logger.info("Discord notification sent successfully")
            else:
                logger.warning(f"Discord notification failed: {response.status_code}")
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to send Discord notification: {e}")

    # -- messages ---------------------------------------------------------

    def send_health_alert(self, details: str) -> Optional[int]:
        message = f"{self._header('🚨')}\n\n{html.escape(details)}\nTime: {self._now()}"
        return self.send(message)

    def send_resolved(self) -> Optional[int]:
        message = f"{self._header('✅', ' - RESOLVED')}\nTime: {self._now()}"
        return self.send(message)

    def send_upgrade_success(self, old: str, new: str) -> Optional[int]:
        message = f"{self._header('✅')}\n\nUpgrade SUCCESS: {old} → {new}\nValidator: healthy"
        return self.send(message)

    def send_rolled_back(self, old: str, new: str, reason: str) -> Optional[int]:
        message = (f"{self._header('🔙')}\n\nUpgrade to {new} FAILED ({html.escape(reason)})\n"
                   f"Rolled back to {old} successfully")
        return self.send(message)

    def send_rollback_failed(self, old: str, new: str, reason: str) -> Optional[int]:
        message = (f"{self._header('❌')}\n\nUpgrade to {new} FAILED ({html.escape(reason)})\n"
                   f"Rollback to {old} FAILED - manual intervention required!\nTime: {self._now()}")
        return self.send(message)

    def send_manual_action(self, old: str, new: str) -> Optional[int]:
        message = (f"{self._header('⚠️')}\n\nMAJOR update available: {old} → {new}\n\n"
                   f"Manual upgrade required!")
        return self.send(message)

    def test_notifications(self):
        """Test both notification channels."""
        self.send(f"{self._header('🧪')}\n\nNotification system is working\nTime: {self._now()}")
        logger.info("Test notifications sent")
