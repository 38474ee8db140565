import os
import itertools
from datetime import datetime, timedelta, timezone

import pytest

os.environ["PUBLIC_SUPABASE_URL"] = "https://test.supabase.co"
os.environ["SECRET_API_KEY"] = "test-key"
os.environ["SUPABASE_JWT_SECRET"] = "test-jwt-secret"
os.environ["CLOUDINARY_CLOUD_NAME"] = "test-cloud"
os.environ["CLOUDINARY_UPLOAD_PRESET"] = "test_preset"
os.environ["REALTIME_RETRY_DELAY"] = "0"

from mataim_chat.chat.errors import ConversationNotFound, GatewayError
from mataim_chat.chat.gateway import ChatGateway, Subscription, SubscriptionStatus
from mataim_chat.chat.models import (
    Conversation,
    CustomerProfile,
    DriverProfile,
    Message,
    RestaurantProfile,
    SenderProfile,
    ViewerContext,
    ViewerRole,
)
from mataim_chat.core.config import Settings


BASE_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def at(minute: int) -> datetime:
    return BASE_TIME + timedelta(minutes=minute)


def make_message(message_id, sender_id, minute=0, body=None, conversation_id="conv-1"):
    return Message(
        id=message_id,
        conversation_id=conversation_id,
        sender_id=sender_id,
        body=body or f"from {sender_id}",
        created_at=at(minute),
    )


def message_row(message_id, sender_id, minute=0, body=None, conversation_id="conv-1"):
    return {
        "id": message_id,
        "conversation_id": conversation_id,
        "sender_id": sender_id,
        "message": body or f"from {sender_id}",
        "message_type": "text",
        "created_at": at(minute).isoformat(),
        "is_read": False,
    }


class FakeSubscription(Subscription):
    def __init__(self, conversation_id, on_insert, on_status):
        self.conversation_id = conversation_id
        self.on_insert = on_insert
        self.on_status = on_status
        self.closed = False

    def push(self, row):
        if not self.closed:
            self.on_insert(row)

    def emit(self, status, error=None):
        self.on_status(status, error)

    async def close(self):
        self.closed = True
        # realtime reports CLOSED when a channel is removed
        self.on_status(SubscriptionStatus.CLOSED, None)


class FakeGateway(ChatGateway):
    """In-memory stand-in for the hosted backend."""

    def __init__(self):
        self.conversations: dict[str, Conversation] = {}
        self.messages: list[Message] = []
        self.orders: dict[str, str] = {}
        self.owner_phones: dict[str, str] = {}
        self.push_tokens: dict[str, list[str]] = {}

        self.notifications: list[tuple[str, dict]] = []
        self.deactivated: list[str] = []
        self.summaries: list[tuple[str, str]] = []
        self.read_marks: list[tuple[str, str]] = []
        self.subscriptions: list[FakeSubscription] = []

        # per-attempt subscribe outcomes; SUBSCRIBED once exhausted
        self.subscribe_plan: list[SubscriptionStatus] = []
        self.fail_insert = False
        self.fail_get_conversation = False
        self.fail_fetch_messages = False
        self.fail_summary = False
        self.fail_notification = False
        self.on_before_insert_return = None

        self._ids = itertools.count(1)

    # helpers for tests
    @property
    def subscription(self) -> FakeSubscription:
        return self.subscriptions[-1]

    def add_conversation(self, conversation: Conversation) -> Conversation:
        self.conversations[conversation.id] = conversation
        return conversation

    # conversations
    async def get_conversation(self, conversation_id):
        if self.fail_get_conversation:
            raise GatewayError("get_conversation", "boom")
        if conversation_id not in self.conversations:
            raise ConversationNotFound(conversation_id)
        return self.conversations[conversation_id]

    async def find_conversation(self, pair):
        for conversation in self.conversations.values():
            if all(conversation.party_id(role) == pair.get(role) for role in ViewerRole):
                return conversation.id
        return None

    async def create_conversation(self, pair):
        conversation_id = f"conv-new-{next(self._ids)}"
        self.conversations[conversation_id] = Conversation(
            id=conversation_id, **{role.column: party for role, party in pair.items()}
        )
        return conversation_id

    async def list_conversations(self, role, party_id):
        rows = [c for c in self.conversations.values() if c.party_id(role) == party_id]
        return sorted(rows, key=lambda c: c.last_message_at or BASE_TIME, reverse=True)

    async def update_conversation_summary(self, conversation_id, last_message, at):
        if self.fail_summary:
            raise GatewayError("update_conversation_summary", "boom")
        self.summaries.append((conversation_id, last_message))

    async def fetch_order_customer(self, order_id):
        return self.orders.get(order_id)

    async def fetch_owner_phone(self, restaurant_id):
        return self.owner_phones.get(restaurant_id)

    # messages
    async def fetch_messages(self, conversation_id):
        if self.fail_fetch_messages:
            raise GatewayError("fetch_messages", "boom")
        rows = [m for m in self.messages if m.conversation_id == conversation_id]
        return sorted(rows, key=lambda m: m.created_at)

    async def fetch_message(self, message_id):
        for message in self.messages:
            if message.id == message_id:
                return message.model_copy(
                    update={"sender": SenderProfile(id=message.sender_id, full_name="Joined")}
                )
        return None

    async def insert_message(self, conversation_id, sender_id, body, message_type):
        if self.fail_insert:
            raise GatewayError("insert_message", "network down")
        message = Message(
            id=f"m{next(self._ids)}",
            conversation_id=conversation_id,
            sender_id=sender_id,
            body=body,
            message_type=message_type,
            created_at=datetime.now(timezone.utc),
        )
        self.messages.append(message)
        if self.on_before_insert_return is not None:
            await self.on_before_insert_return(message)
        return message

    async def mark_messages_read(self, conversation_id, viewer_id):
        self.read_marks.append((conversation_id, viewer_id))

    async def subscribe_messages(self, conversation_id, on_insert, on_status):
        subscription = FakeSubscription(conversation_id, on_insert, on_status)
        self.subscriptions.append(subscription)
        attempt = len(self.subscriptions) - 1
        status = (
            self.subscribe_plan[attempt]
            if attempt < len(self.subscribe_plan)
            else SubscriptionStatus.SUBSCRIBED
        )
        subscription.emit(status)
        return subscription

    # notifications
    async def insert_notification(self, table, row):
        if self.fail_notification:
            raise GatewayError("insert_notification", "boom")
        self.notifications.append((table, dict(row)))
        return {"id": f"n{len(self.notifications)}", **row}

    async def fetch_push_tokens(self, user_id):
        return list(self.push_tokens.get(user_id, []))

    async def deactivate_push_token(self, token):
        self.deactivated.append(token)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings():
    return Settings(
        supabase_url="https://test.supabase.co",
        supabase_key="test-key",
        jwt_secret="test-jwt-secret",
        cloudinary_cloud_name="test-cloud",
        cloudinary_upload_preset="test_preset",
        realtime_max_retries=3,
        realtime_retry_delay=0,
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def driver_viewer():
    return ViewerContext(id="D1", role=ViewerRole.DRIVER, full_name="Dana Driver")


@pytest.fixture
def customer_viewer():
    return ViewerContext(id="C1", role=ViewerRole.CUSTOMER, full_name="Carl Customer")


@pytest.fixture
def restaurant_viewer():
    return ViewerContext(id="R1", role=ViewerRole.RESTAURANT, full_name="Rosa's")


@pytest.fixture
def customer_driver_conversation(gateway):
    return gateway.add_conversation(
        Conversation(
            id="conv-1",
            customer_id="C1",
            driver_id="D1",
            customer=CustomerProfile(id="C1", full_name="Carl Customer", phone="555-0101"),
            driver=DriverProfile(id="D1", full_name="Dana Driver", vehicle_type="bike", rating=4.8),
        )
    )


@pytest.fixture
def customer_restaurant_conversation(gateway):
    return gateway.add_conversation(
        Conversation(
            id="conv-2",
            customer_id="C1",
            restaurant_id="R1",
            customer=CustomerProfile(id="C1", full_name="Carl Customer"),
            restaurant=RestaurantProfile(id="R1", restaurant_name="Rosa's", image_url="https://img/r1.jpg"),
        )
    )


