"""
Telegram Bot service for admin alerts and user direct messages.
Uses aiogram v3 for async operations.
"""

import asyncio
import html
from typing import Any, Dict, Optional, Union

from aiogram import Bot
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.exceptions import (
    TelegramAPIError,
    TelegramBadRequest,
    TelegramForbiddenError,
    TelegramNetworkError,
    TelegramRetryAfter
)
import structlog

from licenseflow.core.config import Settings


logger = structlog.get_logger(__name__)


ALERT_TITLES = {
    "auto_confirmed": "✅ Order auto-confirmed",
    "manual_confirmation_required": "🕵️ Order needs manual confirmation",
    "validation_failed": "❌ Order validation failed",
}

SEVERITY_EMOJI = {
    "info": "ℹ️",
    "success": "✅",
    "warning": "⚠️",
    "error": "❌",
}


class TelegramBotService:
    """Service for Telegram Bot operations using aiogram v3."""

    def __init__(self, settings: Settings):
        """Initialize Telegram Bot service with aiogram."""
        self.bot: Optional[Bot] = None
        self.admin_chat_id = settings.telegram_admin_chat_id
        self.is_initialized = False

        if settings.telegram_bot_token:
            try:
                self.bot = Bot(
                    token=settings.telegram_bot_token,
                    default=DefaultBotProperties(
                        parse_mode=ParseMode.HTML,
                        link_preview_is_disabled=True
                    )
                )
                self.is_initialized = True
                logger.info("Telegram Bot service initialized")
            except Exception as e:
                logger.error("Failed to initialize Telegram Bot", error=str(e))
        else:
            logger.warning("Telegram Bot token not configured")

    def is_available(self) -> bool:
        """Check if Telegram Bot service is available."""
        return self.is_initialized and self.bot is not None

    async def close(self) -> None:
        if self.bot is not None:
            await self.bot.session.close()

    async def send_message(
        self,
        chat_id: Union[int, str],
        message: str,
        disable_notification: bool = False,
    ) -> bool:
        """
        Send a message to a Telegram chat.

        Args:
            chat_id: Telegram chat ID
            message: HTML message text
            disable_notification: Send silently

        Returns:
            bool: True if sent successfully
        """
        if not self.is_available():
            logger.warning("Telegram Bot not available for sending message")
            return False

        try:
            await self.bot.send_message(
                chat_id=chat_id,
                text=message,
                disable_notification=disable_notification,
            )
            logger.debug("Message sent successfully", chat_id=chat_id, message_length=len(message))
            return True

        except TelegramForbiddenError as e:
            logger.warning("Bot was blocked by user or chat", chat_id=chat_id, error=str(e))
            return False

        except TelegramBadRequest as e:
            logger.error("Bad request to Telegram API", chat_id=chat_id, error=str(e))
            return False

        except TelegramRetryAfter as e:
            logger.warning(
                "Rate limit hit, should retry after",
                chat_id=chat_id,
                retry_after=e.retry_after,
                error=str(e)
            )
            await asyncio.sleep(min(e.retry_after, 60))
            return False

        except TelegramNetworkError as e:
            logger.error("Network error sending message", chat_id=chat_id, error=str(e))
            return False

        except TelegramAPIError as e:
            logger.error("Telegram API error", chat_id=chat_id, error=str(e))
            return False

    async def send_admin_alert(self, kind: str, payload: Dict[str, Any]) -> bool:
        """Send a formatted alert to the configured admin chat."""
        if not self.admin_chat_id:
            logger.debug("Admin chat not configured, alert not sent", kind=kind)
            return False
        return await self.send_message(self.admin_chat_id, format_admin_alert(kind, payload))

    async def send_user_message(
        self,
        chat_id: Union[int, str],
        title: str,
        message: str,
        severity: str = "info"
    ) -> bool:
        emoji = SEVERITY_EMOJI.get(severity, SEVERITY_EMOJI["info"])
        text = f"{emoji} <b>{html.escape(title)}</b>\n\n{html.escape(message)}"
        return await self.send_message(chat_id, text)


def format_admin_alert(kind: str, payload: Dict[str, Any]) -> str:
    """Render an admin alert as Telegram HTML."""
    title = ALERT_TITLES.get(kind, f"🔔 {kind}")
    lines = [f"<b>{html.escape(title)}</b>", ""]
    for key, value in payload.items():
        if value is None or isinstance(value, (dict, list)):
            continue
        lines.append(f"<b>{html.escape(str(key))}:</b> <code>{html.escape(str(value))}</code>")
    return "\n".join(lines)
