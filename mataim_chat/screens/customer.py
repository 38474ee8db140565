from mataim_chat.chat.models import ViewerRole
from mataim_chat.chat.routers import build_chat_router


# Customers talk to the restaurant of an order or to its driver.
router = build_chat_router(ViewerRole.CUSTOMER)
