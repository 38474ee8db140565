import logging
from datetime import datetime
from typing import Any, Mapping, Optional

import httpx
from postgrest.exceptions import APIError
from supabase import AsyncClient

from .errors import ConversationNotFound, GatewayError
from .gateway import (
    ChatGateway,
    InsertCallback,
    StatusCallback,
    Subscription,
    SubscriptionStatus,
    conversation_from_row,
    message_from_row,
    record_from_payload,
)
from .models import Conversation, Message, MessageType, ViewerRole


logger = logging.getLogger(__name__)


CONVERSATION_SELECT = """
    *,
    customer:users!conversations_customer_id_fkey(
        id,
        full_name,
        profile_image_url,
        phone,
        email
    ),
    restaurant:restaurants!conversations_restaurant_id_fkey(
        id,
        restaurant_name,
        image_url,
        address
    ),
    driver:delivery_users!conversations_driver_id_fkey(
        id,
        vehicle_type,
        rating,
        users!inner(
            id,
            full_name,
            profile_image_url,
            phone
        )
    )
"""

MESSAGE_SELECT = """
    *,
    sender:users!messages_sender_id_fkey(
        id,
        full_name,
        profile_image_url
    )
"""


class SupabaseSubscription(Subscription):
    def __init__(self, client: AsyncClient, channel):
        self._client = client
        self._channel = channel
        self._closed = False

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._client.remove_channel(self._channel)
        except Exception as e:
            logger.warning(f"realtime_remove_channel_failed topic={self._channel.topic} error={e}")


class SupabaseChatGateway(ChatGateway):
    """ChatGateway backed by supabase-py's async client (PostgREST + Realtime)."""

    def __init__(self, client: AsyncClient):
        self.client = client

    async def _execute(self, action: str, query) -> Any:
        try:
            return await query.execute()
        except APIError as e:
            logger.error(f"supabase_error action={action} code={e.code} message={e.message}")
            raise GatewayError(action, e.message) from e
        except httpx.HTTPError as e:
            logger.error(f"supabase_network_error action={action} error={e}")
            raise GatewayError(action, str(e)) from e

    # conversations
    async def get_conversation(self, conversation_id: str) -> Conversation:
        res = await self._execute(
            "get_conversation",
            self.client.table("conversations")
            .select(CONVERSATION_SELECT)
            .eq("id", conversation_id)
            .limit(1),
        )
        if not res.data:
            raise ConversationNotFound(conversation_id)
        return conversation_from_row(res.data[0])

    async def find_conversation(self, pair: Mapping[ViewerRole, str]) -> Optional[str]:
        query = self.client.table("conversations").select("id")
        for role in ViewerRole:
            if role in pair:
                query = query.eq(role.column, pair[role])
            else:
                # a pair conversation never names the third role
                query = query.is_(role.column, "null")

        res = await self._execute("find_conversation", query.limit(1))
        if not res.data:
            return None
        return str(res.data[0]["id"])

    async def create_conversation(self, pair: Mapping[ViewerRole, str]) -> str:
        row = {role.column: party_id for role, party_id in pair.items()}
        row["is_active"] = True
        row["last_message_at"] = datetime.now().astimezone().isoformat()

        res = await self._execute(
            "create_conversation", self.client.table("conversations").insert(row)
        )
        if not res.data:
            raise GatewayError("create_conversation", "insert returned no row")
        return str(res.data[0]["id"])

    async def list_conversations(self, role: ViewerRole, party_id: str) -> list[Conversation]:
        res = await self._execute(
            "list_conversations",
            self.client.table("conversations")
            .select(CONVERSATION_SELECT)
            .eq(role.column, party_id)
            .order("last_message_at", desc=True),
        )
        return [conversation_from_row(row) for row in res.data or []]

    async def update_conversation_summary(
        self, conversation_id: str, last_message: str, at: datetime
    ) -> None:
        await self._execute(
            "update_conversation_summary",
            self.client.table("conversations")
            .update({"last_message": last_message, "last_message_at": at.isoformat()})
            .eq("id", conversation_id),
        )

    async def fetch_order_customer(self, order_id: str) -> Optional[str]:
        res = await self._execute(
            "fetch_order_customer",
            self.client.table("orders").select("customer_id").eq("id", order_id).limit(1),
        )
        if not res.data or not res.data[0].get("customer_id"):
            return None
        return str(res.data[0]["customer_id"])

    async def fetch_owner_phone(self, restaurant_id: str) -> Optional[str]:
        # restaurants share their id with the owning row in `users`
        res = await self._execute(
            "fetch_owner_phone",
            self.client.table("users").select("phone").eq("id", restaurant_id).limit(1),
        )
        if not res.data:
            return None
        return res.data[0].get("phone")

    # messages
    async def fetch_messages(self, conversation_id: str) -> list[Message]:
        res = await self._execute(
            "fetch_messages",
            self.client.table("messages")
            .select(MESSAGE_SELECT)
            .eq("conversation_id", conversation_id)
            .order("created_at", desc=False),
        )
        return [message_from_row(row) for row in res.data or []]

    async def fetch_message(self, message_id: str) -> Optional[Message]:
        res = await self._execute(
            "fetch_message",
            self.client.table("messages").select(MESSAGE_SELECT).eq("id", message_id).limit(1),
        )
        if not res.data:
            return None
        return message_from_row(res.data[0])

    async def insert_message(
        self,
        conversation_id: str,
        sender_id: str,
        body: str,
        message_type: MessageType,
    ) -> Message:
        res = await self._execute(
            "insert_message",
            self.client.table("messages").insert(
                {
                    "conversation_id": conversation_id,
                    "sender_id": sender_id,
                    "message": body,
                    "message_type": message_type.value,
                }
            ),
        )
        if not res.data:
            raise GatewayError("insert_message", "insert returned no row")

        row = res.data[0]
        # inserts cannot embed joins; re-read to pick up the sender profile
        try:
            complete = await self.fetch_message(str(row["id"]))
        except GatewayError:
            complete = None
        return complete or message_from_row(row)

    async def mark_messages_read(self, conversation_id: str, viewer_id: str) -> None:
        await self._execute(
            "mark_messages_read",
            self.client.rpc(
                "mark_conversation_messages_as_read",
                {"p_conversation_id": conversation_id, "p_user_id": viewer_id},
            ),
        )

    async def subscribe_messages(
        self,
        conversation_id: str,
        on_insert: InsertCallback,
        on_status: StatusCallback,
    ) -> Subscription:
        topic = f"messages-{conversation_id}"

        def _on_change(payload):
            record = record_from_payload(payload)
            if record is None:
                logger.warning(f"realtime_payload_without_record topic={topic}")
                return
            on_insert(record)

        def _on_status(state, error=None):
            try:
                status = SubscriptionStatus(getattr(state, "value", state))
            except ValueError:
                logger.debug(f"realtime_status_ignored topic={topic} state={state}")
                return
            on_status(status, error)

        channel = self.client.channel(topic)
        channel.on_postgres_changes(
            "INSERT",
            callback=_on_change,
            schema="public",
            table="messages",
            filter=f"conversation_id=eq.{conversation_id}",
        )
        try:
            await channel.subscribe(_on_status)
        except Exception as e:
            logger.error(f"realtime_subscribe_failed topic={topic} error={e}")
            raise GatewayError("subscribe_messages", str(e)) from e

        logger.info(f"realtime_subscribe topic={topic}")
        return SupabaseSubscription(self.client, channel)

    # notifications
    async def insert_notification(self, table: str, row: Mapping[str, Any]) -> Optional[dict]:
        res = await self._execute(
            "insert_notification", self.client.table(table).insert(dict(row))
        )
        return res.data[0] if res.data else None

    async def fetch_push_tokens(self, user_id: str) -> list[str]:
        res = await self._execute(
            "fetch_push_tokens",
            self.client.table("user_push_tokens")
            .select("expo_push_token")
            .eq("user_id", user_id)
            .eq("is_active", True),
        )
        return [row["expo_push_token"] for row in res.data or [] if row.get("expo_push_token")]

    async def deactivate_push_token(self, token: str) -> None:
        await self._execute(
            "deactivate_push_token",
            self.client.table("user_push_tokens")
            .update({"is_active": False})
            .eq("expo_push_token", token),
        )
