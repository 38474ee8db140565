"""
Typed contract for the hosted backend, plus the row mappers that sit at its boundary.

Nothing above this module sees raw rows: every read goes through
`conversation_from_row` / `message_from_row`.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional

from .models import (
    Conversation,
    CustomerProfile,
    DriverProfile,
    Message,
    MessageType,
    RestaurantProfile,
    SenderProfile,
    ViewerRole,
)


logger = logging.getLogger(__name__)

Row = Mapping[str, Any]


class SubscriptionStatus(str, Enum):
    SUBSCRIBED = "SUBSCRIBED"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"
    CHANNEL_ERROR = "CHANNEL_ERROR"

    @property
    def is_failure(self) -> bool:
        return self is not SubscriptionStatus.SUBSCRIBED


InsertCallback = Callable[[Row], None]
StatusCallback = Callable[[SubscriptionStatus, Optional[Exception]], None]


class Subscription(ABC):
    @abstractmethod
    async def close(self) -> None: ...


class ChatGateway(ABC):
    """Everything a chat screen needs from the hosted store."""

    # conversations
    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Conversation: ...

    @abstractmethod
    async def find_conversation(self, pair: Mapping[ViewerRole, str]) -> Optional[str]: ...

    @abstractmethod
    async def create_conversation(self, pair: Mapping[ViewerRole, str]) -> str: ...

    @abstractmethod
    async def list_conversations(self, role: ViewerRole, party_id: str) -> list[Conversation]: ...

    @abstractmethod
    async def update_conversation_summary(
        self, conversation_id: str, last_message: str, at: datetime
    ) -> None: ...

    @abstractmethod
    async def fetch_order_customer(self, order_id: str) -> Optional[str]: ...

    @abstractmethod
    async def fetch_owner_phone(self, restaurant_id: str) -> Optional[str]: ...

    # messages
    @abstractmethod
    async def fetch_messages(self, conversation_id: str) -> list[Message]: ...

    @abstractmethod
    async def fetch_message(self, message_id: str) -> Optional[Message]: ...

    @abstractmethod
    async def insert_message(
        self,
        conversation_id: str,
        sender_id: str,
        body: str,
        message_type: MessageType,
    ) -> Message: ...

    @abstractmethod
    async def mark_messages_read(self, conversation_id: str, viewer_id: str) -> None: ...

    @abstractmethod
    async def subscribe_messages(
        self,
        conversation_id: str,
        on_insert: InsertCallback,
        on_status: StatusCallback,
    ) -> Subscription: ...

    # notifications
    @abstractmethod
    async def insert_notification(self, table: str, row: Mapping[str, Any]) -> Optional[dict]: ...

    @abstractmethod
    async def fetch_push_tokens(self, user_id: str) -> list[str]: ...

    @abstractmethod
    async def deactivate_push_token(self, token: str) -> None: ...


# Row mappers
def _one(value: Any) -> Optional[Row]:
    # PostgREST embeds to-one joins as an object, occasionally as a one-item list
    if isinstance(value, list):
        return value[0] if value else None
    if isinstance(value, Mapping):
        return value
    return None


def sender_from_row(row: Optional[Row]) -> Optional[SenderProfile]:
    row = _one(row)
    if not row or not row.get("id"):
        return None
    return SenderProfile(
        id=str(row["id"]),
        full_name=row.get("full_name"),
        profile_image_url=row.get("profile_image_url"),
    )


def message_from_row(row: Row) -> Message:
    """Map a `messages` row (optionally with a joined `sender`) to a Message."""
    try:
        body = row.get("message")
        if body is None:
            body = row.get("body", "")
        return Message(
            id=str(row["id"]),
            conversation_id=str(row["conversation_id"]),
            sender_id=str(row["sender_id"]),
            body=body or "",
            message_type=MessageType(row.get("message_type") or "text"),
            created_at=row["created_at"],
            is_read=bool(row.get("is_read", False)),
            sender=sender_from_row(row.get("sender")),
        )
    except (KeyError, ValueError, TypeError) as e:
        raise ValueError(f"malformed message row: {e}") from e


def conversation_from_row(row: Row) -> Conversation:
    """Map a `conversations` row (with optional joined profiles) to a Conversation."""
    customer = _one(row.get("customer"))
    restaurant = _one(row.get("restaurant"))
    driver = _one(row.get("driver"))

    driver_profile = None
    if driver and driver.get("id"):
        # delivery_users embeds its user row under `users`
        user = _one(driver.get("users")) or {}
        driver_profile = DriverProfile(
            id=str(driver["id"]),
            full_name=user.get("full_name"),
            profile_image_url=user.get("profile_image_url"),
            phone=user.get("phone"),
            vehicle_type=driver.get("vehicle_type"),
            rating=driver.get("rating"),
        )

    def _id(name: str) -> Optional[str]:
        value = row.get(name)
        return str(value) if value else None

    return Conversation(
        id=str(row["id"]),
        customer_id=_id("customer_id"),
        restaurant_id=_id("restaurant_id"),
        driver_id=_id("driver_id"),
        is_active=bool(row.get("is_active", True)),
        last_message=row.get("last_message"),
        last_message_at=row.get("last_message_at"),
        created_at=row.get("created_at"),
        customer=(
            CustomerProfile(
                id=str(customer["id"]),
                full_name=customer.get("full_name"),
                profile_image_url=customer.get("profile_image_url"),
                phone=customer.get("phone"),
                email=customer.get("email"),
            )
            if customer and customer.get("id")
            else None
        ),
        restaurant=(
            RestaurantProfile(
                id=str(restaurant["id"]),
                restaurant_name=restaurant.get("restaurant_name"),
                image_url=restaurant.get("image_url"),
                address=restaurant.get("address"),
            )
            if restaurant and restaurant.get("id")
            else None
        ),
        driver=driver_profile,
    )


def record_from_payload(payload: Any) -> Optional[Row]:
    """
    Pull the inserted row out of a realtime postgres_changes payload.

    Depending on the realtime client version the row sits under
    `data.record`, `new` or `record`.
    """
    if not isinstance(payload, Mapping):
        return None
    data = payload.get("data")
    if isinstance(data, Mapping) and isinstance(data.get("record"), Mapping):
        return data["record"]
    for key in ("new", "record"):
        if isinstance(payload.get(key), Mapping):
            return payload[key]
    return None
