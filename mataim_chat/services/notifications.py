"""
Message notifications: an in-app notification row for the recipient plus an
Expo push to each of their active devices.

Delivery is fire-and-forget. A failed notification never fails the send
that triggered it, so every error here is logged and swallowed.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from mataim_chat.chat.errors import GatewayError
from mataim_chat.chat.gateway import ChatGateway
from mataim_chat.chat.models import ViewerRole
from mataim_chat.core.config import Settings, get_settings


logger = logging.getLogger(__name__)

NOTIFICATION_TABLES = {
    ViewerRole.CUSTOMER: ("user_notifications", "user_id"),
    ViewerRole.RESTAURANT: ("restaurant_notifications", "restaurant_id"),
    ViewerRole.DRIVER: ("driver_notifications", "driver_id"),
}

SCREEN_PATHS = {
    ViewerRole.CUSTOMER: "/messages/{conversation_id}",
    ViewerRole.RESTAURANT: "/(restaurant)/messages/{conversation_id}",
    ViewerRole.DRIVER: "/(driver)/messages/{conversation_id}",
}


def preview(body: str, limit: int) -> str:
    return f"{body[:limit]}..." if len(body) > limit else body


class NotificationService:
    def __init__(
        self,
        gateway: ChatGateway,
        settings: Optional[Settings] = None,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.gateway = gateway
        self.settings = settings or get_settings()
        self._http = http

    async def send_message_notification(
        self,
        conversation_id: str,
        sender_id: str,
        body: str,
        sender_name: str,
        sender_role: ViewerRole,
        recipient_id: str,
        recipient_role: ViewerRole,
    ) -> bool:
        """Returns True when the notification row was stored (pushes are best-effort)."""
        if not recipient_id:
            logger.error(f"notification_missing_recipient conversation={conversation_id}")
            return False

        if sender_id == recipient_id:
            logger.info(f"notification_skipped_self conversation={conversation_id}")
            return False

        title = f"💬 New message from {sender_name}"
        text = preview(body, self.settings.notification_preview_chars)
        data = {
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "sender_name": sender_name,
            "sender_type": sender_role.value,
            "message": body[:100],
            "action": "view_conversation",
            "screen": SCREEN_PATHS[recipient_role].format(conversation_id=conversation_id),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "recipient_id": recipient_id,
        }

        table, column = NOTIFICATION_TABLES[recipient_role]
        try:
            await self.gateway.insert_notification(
                table,
                {
                    column: recipient_id,
                    "title": title,
                    "body": text,
                    "type": "message",
                    "data": data,
                    "read": False,
                },
            )
        except GatewayError as e:
            logger.error(f"notification_store_failed table={table} recipient={recipient_id} error={e}")
            return False

        logger.info(f"notification_stored table={table} recipient={recipient_id}")

        try:
            await self.push(recipient_id, title, text, data)
        except Exception:
            logger.exception(f"notification_push_failed recipient={recipient_id}")

        return True

    async def push(self, user_id: str, title: str, body: str, data: dict[str, Any]) -> int:
        """Send an Expo push to every active token of `user_id`; returns how many were accepted."""
        try:
            tokens = await self.gateway.fetch_push_tokens(user_id)
        except GatewayError as e:
            logger.error(f"push_tokens_fetch_failed user={user_id} error={e}")
            return 0

        if not tokens:
            logger.info(f"push_no_tokens user={user_id}")
            return 0

        messages = [
            {
                "to": token,
                "sound": "default",
                "title": title,
                "body": body,
                "data": {**data, "_displayInForeground": True},
                "priority": "high",
                "channelId": "messages",
            }
            for token in tokens
        ]
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        }

        try:
            if self._http is not None:
                response = await self._http.post(
                    self.settings.expo_push_url, json=messages, headers=headers
                )
            else:
                async with httpx.AsyncClient(timeout=self.settings.http_timeout) as http:
                    response = await http.post(
                        self.settings.expo_push_url, json=messages, headers=headers
                    )
            response.raise_for_status()
            result = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"push_send_failed user={user_id} error={e}")
            return 0

        tickets = result.get("data") or []
        accepted = 0
        for token, ticket in zip(tokens, tickets):
            if ticket.get("status") == "ok":
                accepted += 1
                continue
            error = (ticket.get("details") or {}).get("error")
            if error == "DeviceNotRegistered" or "not registered" in (ticket.get("message") or ""):
                await self._deactivate(token)

        logger.info(f"push_sent user={user_id} tokens={len(tokens)} accepted={accepted}")
        return accepted

    async def _deactivate(self, token: str) -> None:
        try:
            await self.gateway.deactivate_push_token(token)
            logger.info("push_token_deactivated")
        except GatewayError as e:
            logger.warning(f"push_token_deactivate_failed error={e}")
