import logging

from fastapi import APIRouter, Depends, File, HTTPException, Response, UploadFile

from mataim_chat.core.config import Settings, get_settings
from mataim_chat.core.dependencies import (
    get_gateway,
    get_media,
    get_notifier,
    get_registry,
    get_viewer,
)

from .controller import ChatController
from .conversations import ConversationService
from .errors import GatewayError, ParticipantResolutionError, ScreenNotFound
from .gateway import ChatGateway
from .models import ConversationTarget, ViewerContext, ViewerRole
from .participants import resolve_participant
from .registry import ScreenRegistry
from .schemas import (
    ChatView,
    ConversationSummary,
    CreateConversationModel,
    CreateConversationResponseModel,
    GetConversationsResponseModel,
    OpenScreenModel,
    OpenScreenResponseModel,
    SendMessageModel,
    SendMessageResponseModel,
)


logger = logging.getLogger(__name__)

MAX_IMAGE_BYTES = 10 * 1024 * 1024


def open_screen_for(
    viewer: ViewerContext,
    target: ConversationTarget,
    gateway: ChatGateway,
    notifier,
    media,
    settings: Settings,
) -> ChatController:
    return ChatController(
        gateway, viewer, target, notifier=notifier, media=media, settings=settings
    )


def build_chat_router(role: ViewerRole) -> APIRouter:
    """
    Chat endpoints for one viewer role.

    The three role bindings mount this under their own prefix; everything
    role-specific is derived from `role`.
    """
    router = APIRouter()

    def require_viewer(viewer: ViewerContext = Depends(get_viewer)) -> ViewerContext:
        if viewer.role is not role:
            raise HTTPException(
                status_code=403,
                detail=f"Only {role.value} accounts can use this chat.",
            )
        return viewer

    def lookup(registry: ScreenRegistry, screen_id: str, viewer: ViewerContext) -> ChatController:
        try:
            return registry.get(screen_id, viewer.id)
        except ScreenNotFound:
            raise HTTPException(status_code=404, detail="Chat screen not found")

    @router.get(
        "/conversations",
        response_model=GetConversationsResponseModel,
        status_code=200,
    )
    async def get_conversations(
        viewer: ViewerContext = Depends(require_viewer),
        gateway: ChatGateway = Depends(get_gateway),
    ):
        """
        Retrieve the viewer's conversations, most recent first.

        Each entry carries the resolved counterpart. Rows that do not name
        exactly one other party are listed without one.

        **Errors**
        - 401: Invalid or expired JWT
        - 403: Account role does not match this chat
        - 500: Database or unexpected server error
        """
        try:
            conversations = await ConversationService(gateway).inbox(viewer)
        except GatewayError:
            raise HTTPException(status_code=500, detail="Failed to fetch conversations")

        summaries = []
        for conversation in conversations:
            try:
                participant = resolve_participant(conversation, role)
            except ParticipantResolutionError as e:
                logger.warning(f"inbox_unresolved_conversation id={conversation.id} error={e}")
                participant = None

            summaries.append(
                ConversationSummary(
                    id=conversation.id,
                    participant=participant,
                    last_message=conversation.last_message,
                    last_message_at=conversation.last_message_at,
                    is_active=conversation.is_active,
                )
            )

        return {"conversations": summaries}

    @router.post(
        "/conversations",
        response_model=CreateConversationResponseModel,
        status_code=200,
    )
    async def get_or_create_conversation(
        data: CreateConversationModel,
        viewer: ViewerContext = Depends(require_viewer),
        gateway: ChatGateway = Depends(get_gateway),
    ):
        """
        Get or create the conversation between the viewer and one counterpart.

        **Input**
        - `counterpart_role`: customer, restaurant or driver (not the viewer's own role)
        - `counterpart_id`: id of the counterpart

        **Returns**
        - `conversation_id`, and `is_new` when it was just created

        **Errors**
        - 400: Counterpart has the viewer's own role
        - 500: Database error
        """
        try:
            conversation_id, is_new = await ConversationService(gateway).open_with(
                viewer, data.counterpart_role, data.counterpart_id
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except GatewayError:
            raise HTTPException(
                status_code=500, detail="Failed to create or fetch conversation."
            )

        return {"conversation_id": conversation_id, "is_new": is_new}

    @router.post(
        "/screens",
        response_model=OpenScreenResponseModel,
        status_code=201,
    )
    async def open_screen(
        data: OpenScreenModel,
        viewer: ViewerContext = Depends(require_viewer),
        gateway: ChatGateway = Depends(get_gateway),
        notifier=Depends(get_notifier),
        media=Depends(get_media),
        registry: ScreenRegistry = Depends(get_registry),
        settings: Settings = Depends(get_settings),
    ):
        """
        Open (mount) a chat screen.

        Pass either `conversation_id`, a counterpart (`counterpart_role` +
        `counterpart_id`) to find-or-create with, or an `order_id` to chat
        with that order's customer.

        Initialization problems do not fail the request: the returned view
        is in the `failed` state with an `error` text.
        """
        if not (data.conversation_id or data.counterpart_id or data.order_id):
            raise HTTPException(
                status_code=400,
                detail="Provide conversation_id, counterpart_id or order_id.",
            )

        controller = open_screen_for(
            viewer,
            ConversationTarget(**data.model_dump()),
            gateway,
            notifier,
            media,
            settings,
        )
        await controller.mount()
        screen_id = await registry.add(controller)

        return {"screen_id": screen_id, "view": controller.view()}

    @router.get("/screens/{screen_id}", response_model=ChatView, status_code=200)
    async def get_screen(
        screen_id: str,
        viewer: ViewerContext = Depends(require_viewer),
        registry: ScreenRegistry = Depends(get_registry),
    ):
        return lookup(registry, screen_id, viewer).view()

    @router.post("/screens/{screen_id}/focus", response_model=ChatView, status_code=200)
    async def focus_screen(
        screen_id: str,
        viewer: ViewerContext = Depends(require_viewer),
        registry: ScreenRegistry = Depends(get_registry),
    ):
        """Screen came into focus: reload conversation and messages."""
        controller = lookup(registry, screen_id, viewer)
        await controller.focus()
        return controller.view()

    @router.post(
        "/screens/{screen_id}/messages",
        response_model=SendMessageResponseModel,
        status_code=200,
    )
    async def send_message(
        screen_id: str,
        data: SendMessageModel,
        viewer: ViewerContext = Depends(require_viewer),
        registry: ScreenRegistry = Depends(get_registry),
    ):
        """
        Send a text message from an open screen.

        A failed send is reported in `outcome` (with the text to restore)
        and as an alert on the view, not as an HTTP error.
        """
        controller = lookup(registry, screen_id, viewer)
        outcome = await controller.send_text(data.content)
        return {"outcome": outcome, "view": controller.view()}

    @router.post(
        "/screens/{screen_id}/images",
        response_model=SendMessageResponseModel,
        status_code=200,
    )
    async def send_image(
        screen_id: str,
        file: UploadFile = File(...),
        viewer: ViewerContext = Depends(require_viewer),
        registry: ScreenRegistry = Depends(get_registry),
    ):
        controller = lookup(registry, screen_id, viewer)

        content = await file.read()
        if not content:
            raise HTTPException(status_code=400, detail="Empty file.")
        if len(content) > MAX_IMAGE_BYTES:
            raise HTTPException(status_code=413, detail="Image is too large.")

        filename = file.filename or f"chat-{viewer.id}.jpg"
        outcome = await controller.send_image(
            content, filename, file.content_type or "image/jpeg"
        )
        return {"outcome": outcome, "view": controller.view()}

    @router.delete("/screens/{screen_id}", status_code=204)
    async def close_screen(
        screen_id: str,
        viewer: ViewerContext = Depends(require_viewer),
        registry: ScreenRegistry = Depends(get_registry),
    ):
        """Screen unmounted: unsubscribe and drop its state."""
        try:
            await registry.close(screen_id, viewer.id)
        except ScreenNotFound:
            raise HTTPException(status_code=404, detail="Chat screen not found")
        return Response(status_code=204)

    return router
