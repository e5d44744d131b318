"""
Notification port used by the background jobs.

Jobs talk to a ``NotificationSink``; the production sink stores an in-app
notification and mirrors it to Telegram, admin alerts go to the admin chat.
Jobs always go through ``Notifier`` so a failing sink is logged and
swallowed and never reaches a committed financial transaction.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

import structlog

from licenseflow.core.database import Database
from licenseflow.models.notification import UserNotification
from licenseflow.models.user import User
from licenseflow.services.telegram_bot_service import TelegramBotService


logger = structlog.get_logger(__name__)


@dataclass
class UserNotice:
    """Payload for a user-facing notification."""
    type: str
    title: str
    message: str
    severity: str = "info"
    metadata: Dict[str, Any] = field(default_factory=dict)


class NotificationSink(Protocol):
    """Outbound notification port."""

    async def send_to_user(self, user_id: str, notice: UserNotice) -> None:
        ...

    async def send_admin_alert(self, kind: str, payload: Dict[str, Any]) -> None:
        ...


class RecordingNotificationSink:
    """Sink that keeps everything in memory, handy for tools and tests."""

    def __init__(self):
        self.user_notices: List[Tuple[str, UserNotice]] = []
        self.admin_alerts: List[Tuple[str, Dict[str, Any]]] = []

    async def send_to_user(self, user_id: str, notice: UserNotice) -> None:
        self.user_notices.append((user_id, notice))

    async def send_admin_alert(self, kind: str, payload: Dict[str, Any]) -> None:
        self.admin_alerts.append((kind, payload))

    def titles_for(self, user_id: str) -> List[str]:
        return [notice.title for uid, notice in self.user_notices if uid == user_id]

    def alert_kinds(self) -> List[str]:
        return [kind for kind, _ in self.admin_alerts]


class NotificationService:
    """
    Production sink.

    User notifications are stored in the notification center (own
    transaction) and, when the user linked Telegram, mirrored there.
    """

    def __init__(self, database: Database, telegram: Optional[TelegramBotService] = None):
        self.database = database
        self.telegram = telegram
        self.logger = logger.bind(service="notification_service")

    async def send_to_user(self, user_id: str, notice: UserNotice) -> None:
        async with self.database.session() as session:
            session.add(UserNotification(
                user_id=user_id,
                type=notice.type,
                title=notice.title,
                message=notice.message,
                severity=notice.severity,
                meta=notice.metadata,
            ))
            user = await session.get(User, user_id)
            chat_id = user.telegram_chat_id if user is not None else None

        if chat_id and self.telegram is not None and self.telegram.is_available():
            await self.telegram.send_user_message(chat_id, notice.title, notice.message, notice.severity)

        self.logger.debug("User notification stored", user_id=user_id, type=notice.type)

    async def send_admin_alert(self, kind: str, payload: Dict[str, Any]) -> None:
        self.logger.info("Admin alert", kind=kind, order_id=payload.get("id"))
        if self.telegram is not None and self.telegram.is_available():
            await self.telegram.send_admin_alert(kind, payload)


class Notifier:
    """Fire-and-forget wrapper: delivery errors are logged, never raised."""

    def __init__(self, sink: NotificationSink):
        self.sink = sink
        self.logger = logger.bind(service="notifier")

    async def user(self, user_id: str, notice: UserNotice) -> bool:
        try:
            await self.sink.send_to_user(user_id, notice)
            return True
        except Exception as e:
            self.logger.warning(
                "Failed to send user notification",
                user_id=user_id,
                type=notice.type,
                title=notice.title,
                error=str(e)
            )
            return False

    async def admin(self, kind: str, payload: Dict[str, Any]) -> bool:
        try:
            await self.sink.send_admin_alert(kind, payload)
            return True
        except Exception as e:
            self.logger.warning("Failed to send admin alert", kind=kind, error=str(e))
            return False
