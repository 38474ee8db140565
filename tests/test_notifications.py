import json

import httpx
import pytest

from mataim_chat.chat.models import ViewerRole
from mataim_chat.services.notifications import NotificationService, preview


pytestmark = pytest.mark.anyio


def expo_client(tickets, requests, status_code=200):
    def handler(request):
        requests.append(request)
        return httpx.Response(status_code, json={"data": tickets})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_preview_truncates_long_bodies():
    assert preview("short", 50) == "short"
    assert preview("x" * 60, 50) == "x" * 50 + "..."


async def test_stores_row_for_recipient_role_and_pushes(gateway, settings):
    gateway.push_tokens["C1"] = ["ExponentPushToken[a]"]
    requests = []
    async with expo_client([{"status": "ok"}], requests) as http:
        service = NotificationService(gateway, settings, http=http)

        stored = await service.send_message_notification(
            "conv-1", "D1", "On my way", "Dana", ViewerRole.DRIVER, "C1", ViewerRole.CUSTOMER
        )

    assert stored
    table, row = gateway.notifications[0]
    assert table == "user_notifications"
    assert row["user_id"] == "C1"
    assert row["title"] == "💬 New message from Dana"
    assert row["body"] == "On my way"
    assert row["type"] == "message"
    assert row["data"]["screen"] == "/messages/conv-1"
    assert row["data"]["sender_type"] == "driver"

    assert len(requests) == 1
    assert str(requests[0].url) == settings.expo_push_url
    sent = json.loads(requests[0].content)
    assert sent[0]["to"] == "ExponentPushToken[a]"
    assert sent[0]["data"]["conversation_id"] == "conv-1"


async def test_restaurant_recipient_uses_restaurant_table(gateway, settings):
    service = NotificationService(gateway, settings)

    await service.send_message_notification(
        "conv-2", "C1", "x" * 80, "Carl", ViewerRole.CUSTOMER, "R1", ViewerRole.RESTAURANT
    )

    table, row = gateway.notifications[0]
    assert table == "restaurant_notifications"
    assert row["restaurant_id"] == "R1"
    assert row["body"] == "x" * 50 + "..."
    assert row["data"]["screen"] == "/(restaurant)/messages/conv-2"


async def test_self_notification_is_skipped(gateway, settings):
    service = NotificationService(gateway, settings)

    stored = await service.send_message_notification(
        "conv-1", "D1", "hi", "Dana", ViewerRole.DRIVER, "D1", ViewerRole.DRIVER
    )

    assert not stored
    assert gateway.notifications == []


async def test_store_failure_is_reported_not_raised(gateway, settings):
    gateway.fail_notification = True
    service = NotificationService(gateway, settings)

    stored = await service.send_message_notification(
        "conv-1", "D1", "hi", "Dana", ViewerRole.DRIVER, "C1", ViewerRole.CUSTOMER
    )

    assert not stored


async def test_unregistered_devices_are_deactivated(gateway, settings):
    gateway.push_tokens["C1"] = ["tok-ok", "tok-gone"]
    tickets = [
        {"status": "ok"},
        {"status": "error", "message": "not registered", "details": {"error": "DeviceNotRegistered"}},
    ]
    async with expo_client(tickets, []) as http:
        service = NotificationService(gateway, settings, http=http)
        accepted = await service.push("C1", "title", "body", {})

    assert accepted == 1
    assert gateway.deactivated == ["tok-gone"]


async def test_push_without_tokens_sends_nothing(gateway, settings):
    requests = []
    async with expo_client([], requests) as http:
        service = NotificationService(gateway, settings, http=http)
        assert await service.push("C1", "title", "body", {}) == 0

    assert requests == []


async def test_push_http_error_still_counts_as_stored(gateway, settings):
    gateway.push_tokens["C1"] = ["tok"]
    async with expo_client([], [], status_code=500) as http:
        service = NotificationService(gateway, settings, http=http)
        stored = await service.send_message_notification(
            "conv-1", "D1", "hi", "Dana", ViewerRole.DRIVER, "C1", ViewerRole.CUSTOMER
        )

    assert stored
    assert gateway.deactivated == []
