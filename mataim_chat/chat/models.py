from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ViewerRole(str, Enum):
    CUSTOMER = "customer"
    RESTAURANT = "restaurant"
    DRIVER = "driver"

    @property
    def column(self) -> str:
        """Foreign-key column naming this role on a conversation row."""
        return f"{self.value}_id"

    @property
    def label(self) -> str:
        return self.value.capitalize()


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"


# Joined profiles
class SenderProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    full_name: Optional[str] = None
    profile_image_url: Optional[str] = None


class CustomerProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    full_name: Optional[str] = None
    profile_image_url: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class RestaurantProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    restaurant_name: Optional[str] = None
    image_url: Optional[str] = None
    address: Optional[str] = None


class DriverProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    full_name: Optional[str] = None
    profile_image_url: Optional[str] = None
    phone: Optional[str] = None
    vehicle_type: Optional[str] = None
    rating: Optional[float] = None


# Entities
class Conversation(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    customer_id: Optional[str] = None
    restaurant_id: Optional[str] = None
    driver_id: Optional[str] = None
    is_active: bool = True
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    customer: Optional[CustomerProfile] = None
    restaurant: Optional[RestaurantProfile] = None
    driver: Optional[DriverProfile] = None

    def party_id(self, role: ViewerRole) -> Optional[str]:
        return getattr(self, role.column)


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    conversation_id: str
    sender_id: str
    body: str
    message_type: MessageType = MessageType.TEXT
    created_at: datetime = Field(default_factory=utcnow)
    is_read: bool = False
    sender: Optional[SenderProfile] = None
    status: DeliveryStatus = DeliveryStatus.SENT

    @property
    def is_pending(self) -> bool:
        return self.status is DeliveryStatus.PENDING


class Participant(BaseModel):
    """The single other party a viewer is chatting with."""

    model_config = ConfigDict(frozen=True)

    id: str
    role: ViewerRole
    display_name: str
    avatar: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    vehicle_type: Optional[str] = None
    rating: Optional[float] = None

    @property
    def identity(self) -> tuple[str, ViewerRole]:
        return (self.id, self.role)


class ViewerContext(BaseModel):
    """Authenticated viewer, passed explicitly into every chat screen."""

    model_config = ConfigDict(frozen=True)

    id: str
    role: ViewerRole
    full_name: Optional[str] = None
    profile_image_url: Optional[str] = None
    email: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.full_name or self.role.label

    def as_sender(self) -> SenderProfile:
        return SenderProfile(id=self.id, full_name="You", profile_image_url=self.profile_image_url)


class ConversationTarget(BaseModel):
    """What a screen was opened with: a conversation id, or a counterpart to find-or-create with."""

    model_config = ConfigDict(frozen=True)

    conversation_id: Optional[str] = None
    counterpart_id: Optional[str] = None
    counterpart_role: Optional[ViewerRole] = None
    order_id: Optional[str] = None
