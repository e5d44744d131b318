"""
Test notification delivery and the fire-and-forget notifier.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from licenseflow.models import UserNotification
from licenseflow.services.notification_service import NotificationService, Notifier, UserNotice
from licenseflow.services.telegram_bot_service import TelegramBotService, format_admin_alert

from conftest import fetch_all


NOTICE = UserNotice(
    type="earning",
    title="Daily earning processed",
    message="Your daily earning of $80 USDT for Starter has been processed",
    severity="success",
    metadata={"day": 1},
)


def fake_telegram():
    telegram = MagicMock()
    telegram.is_available.return_value = True
    telegram.send_user_message = AsyncMock(return_value=True)
    telegram.send_admin_alert = AsyncMock(return_value=True)
    return telegram


@pytest.mark.asyncio
async def test_user_notice_is_stored_and_mirrored(database, make_user):
    user = await make_user(telegram_chat_id="12345")
    telegram = fake_telegram()
    service = NotificationService(database, telegram)

    await service.send_to_user(user.id, NOTICE)

    stored = await fetch_all(database, UserNotification, UserNotification.user_id == user.id)
    assert len(stored) == 1
    assert stored[0].title == "Daily earning processed"
    assert stored[0].meta == {"day": 1}
    assert stored[0].is_read is False
    telegram.send_user_message.assert_awaited_once_with("12345", NOTICE.title, NOTICE.message, "success")


@pytest.mark.asyncio
async def test_user_without_telegram_only_gets_stored_notice(database, make_user):
    user = await make_user()
    telegram = fake_telegram()

    await NotificationService(database, telegram).send_to_user(user.id, NOTICE)

    assert len(await fetch_all(database, UserNotification)) == 1
    telegram.send_user_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_admin_alert_goes_to_telegram(database):
    telegram = fake_telegram()

    await NotificationService(database, telegram).send_admin_alert("auto_confirmed", {"id": "o-1"})

    telegram.send_admin_alert.assert_awaited_once_with("auto_confirmed", {"id": "o-1"})


@pytest.mark.asyncio
async def test_notifier_swallows_sink_errors():
    sink = MagicMock()
    sink.send_to_user = AsyncMock(side_effect=ConnectionError("down"))
    sink.send_admin_alert = AsyncMock(side_effect=ConnectionError("down"))
    notifier = Notifier(sink)

    assert await notifier.user("u-1", NOTICE) is False
    assert await notifier.admin("validation_failed", {"id": "o-1"}) is False


@pytest.mark.asyncio
async def test_telegram_without_token_is_unavailable(settings):
    service = TelegramBotService(settings)

    assert not service.is_available()
    assert await service.send_message("12345", "hello") is False
    assert await service.send_admin_alert("auto_confirmed", {"id": "o-1"}) is False


def test_admin_alert_format_escapes_values():
    text = format_admin_alert("validation_failed", {
        "id": "o-1",
        "error": "Amount mismatch <500>",
        "user_email": None,
        "validation_result": {"isValid": False},
    })

    assert text.startswith("<b>❌ Order validation failed</b>")
    assert "<code>Amount mismatch &lt;500&gt;</code>" in text
    assert "user_email" not in text
    assert "validation_result" not in text
