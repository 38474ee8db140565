from fastapi import Depends, HTTPException

from mataim_chat.chat.gateway import ChatGateway
from mataim_chat.chat.models import ConversationTarget, ViewerContext, ViewerRole
from mataim_chat.chat.registry import ScreenRegistry
from mataim_chat.chat.routers import build_chat_router, open_screen_for
from mataim_chat.chat.schemas import OpenScreenResponseModel
from mataim_chat.core.config import Settings, get_settings
from mataim_chat.core.dependencies import (
    get_gateway,
    get_media,
    get_notifier,
    get_registry,
    get_viewer,
)


router = build_chat_router(ViewerRole.DRIVER)


@router.post(
    "/orders/{order_id}/screen",
    response_model=OpenScreenResponseModel,
    status_code=201,
)
async def open_order_chat(
    order_id: str,
    viewer: ViewerContext = Depends(get_viewer),
    gateway: ChatGateway = Depends(get_gateway),
    notifier=Depends(get_notifier),
    media=Depends(get_media),
    registry: ScreenRegistry = Depends(get_registry),
    settings: Settings = Depends(get_settings),
):
    """
    Open a chat with the customer of an order the driver is delivering.

    The conversation is found or created from the order's `customer_id`.
    """
    if viewer.role is not ViewerRole.DRIVER:
        raise HTTPException(status_code=403, detail="Only driver accounts can use this chat.")

    controller = open_screen_for(
        viewer, ConversationTarget(order_id=order_id), gateway, notifier, media, settings
    )
    await controller.mount()
    screen_id = await registry.add(controller)

    return {"screen_id": screen_id, "view": controller.view()}
