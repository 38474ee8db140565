from mataim_chat.chat.models import ViewerRole
from mataim_chat.chat.routers import build_chat_router


router = build_chat_router(ViewerRole.RESTAURANT)
