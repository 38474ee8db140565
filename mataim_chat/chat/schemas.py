from pydantic import BaseModel, Field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from .models import Message, Participant, ViewerRole


class ScreenState(str, Enum):
    UNINITIALIZED = "uninitialized"
    RESOLVING_CONVERSATION = "resolving_conversation"
    RESOLVING_PARTICIPANT = "resolving_participant"
    LOADING_MESSAGES = "loading_messages"
    SUBSCRIBED = "subscribed"
    RECONNECTING = "reconnecting"
    OFFLINE = "offline"
    FAILED = "failed"
    DISPOSED = "disposed"


BANNERS = {
    ScreenState.RECONNECTING: "Connecting…",
    ScreenState.OFFLINE: "Offline. Pull to refresh.",
}


class Alert(BaseModel):
    title: str
    message: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SendOutcome(BaseModel):
    ok: bool
    message: Optional[Message] = None
    error: Optional[str] = None
    # text to put back into the input after a failure
    restore_text: Optional[str] = None


# Screen view
class ChatView(BaseModel):
    state: ScreenState
    banner: Optional[str] = None
    conversation_id: Optional[str] = None
    participant: Optional[Participant] = None
    messages: List[Message]
    arrivals: List[str] = []
    alerts: List[Alert] = []
    error: Optional[str] = None


class OpenScreenModel(BaseModel):
    conversation_id: Optional[str] = None
    counterpart_id: Optional[str] = None
    counterpart_role: Optional[ViewerRole] = None
    order_id: Optional[str] = None


class OpenScreenResponseModel(BaseModel):
    screen_id: str
    view: ChatView


# Send messages
class SendMessageModel(BaseModel):
    content: str = Field(min_length=1, max_length=4000)


class SendMessageResponseModel(BaseModel):
    outcome: SendOutcome
    view: ChatView


# Find-or-create
class CreateConversationModel(BaseModel):
    counterpart_role: ViewerRole
    counterpart_id: str


class CreateConversationResponseModel(BaseModel):
    conversation_id: str
    is_new: bool


# Inbox
class ConversationSummary(BaseModel):
    id: str
    participant: Optional[Participant] = None
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None
    is_active: bool = True


class GetConversationsResponseModel(BaseModel):
    conversations: List[ConversationSummary]
