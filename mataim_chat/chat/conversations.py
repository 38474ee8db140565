import logging
from typing import Mapping

from .errors import GatewayError
from .gateway import ChatGateway
from .models import Conversation, ViewerContext, ViewerRole


logger = logging.getLogger(__name__)


class ConversationService:
    def __init__(self, gateway: ChatGateway):
        self.gateway = gateway

    async def get_or_create(self, pair: Mapping[ViewerRole, str]) -> tuple[str, bool]:
        """
        Find the conversation between exactly two parties, creating it on first contact.

        Returns `(conversation_id, is_new)`.
        """
        if len(pair) != 2 or not all(pair.values()):
            raise ValueError("A conversation needs exactly two parties with ids.")

        existing = await self.gateway.find_conversation(pair)
        if existing:
            return existing, False

        try:
            conversation_id = await self.gateway.create_conversation(pair)
        except GatewayError:
            # the other side may have created it concurrently
            existing = await self.gateway.find_conversation(pair)
            if existing:
                return existing, False
            raise

        parties = ",".join(f"{role.value}={party}" for role, party in pair.items())
        logger.info(f"conversation_created id={conversation_id} parties={parties}")
        return conversation_id, True

    async def open_with(
        self, viewer: ViewerContext, counterpart_role: ViewerRole, counterpart_id: str
    ) -> tuple[str, bool]:
        if counterpart_role is viewer.role:
            raise ValueError(f"A {viewer.role.value} cannot open a chat with another {counterpart_role.value}.")
        return await self.get_or_create({viewer.role: viewer.id, counterpart_role: counterpart_id})

    async def inbox(self, viewer: ViewerContext) -> list[Conversation]:
        return await self.gateway.list_conversations(viewer.role, viewer.id)
