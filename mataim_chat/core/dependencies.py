import jwt
import logging
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from mataim_chat.chat.gateway import ChatGateway
from mataim_chat.chat.models import ViewerContext, ViewerRole
from mataim_chat.chat.registry import ScreenRegistry
from mataim_chat.chat.supabase_gateway import SupabaseChatGateway
from mataim_chat.core.config import Settings, get_settings
from mataim_chat.core.supabase_client import get_supabase
from mataim_chat.services.media import CloudinaryUploader
from mataim_chat.services.notifications import NotificationService

logger = logging.getLogger(__name__)
security = HTTPBearer()


def verify_token(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    settings: Settings = Depends(get_settings),
) -> dict:
    token = credentials.credentials

    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            issuer=settings.jwt_issuer,
            options={"verify_aud": False},
            leeway=60,
        )
        return payload

    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")

    except jwt.InvalidTokenError as e:
        logger.warning(f"jwt_verification_failed error={e}")
        raise HTTPException(status_code=401, detail="Invalid token")


def get_viewer(payload: dict = Depends(verify_token)) -> ViewerContext:
    """Build the viewer context from Supabase JWT claims (`sub` + `user_metadata.user_type`)."""
    metadata = payload.get("user_metadata") or {}
    user_id = payload.get("sub")

    user_type = metadata.get("user_type")
    if not user_type:
        logger.warning(f"jwt_missing_user_type sub={user_id}")
        raise HTTPException(status_code=403, detail="Missing user type")

    try:
        role = ViewerRole(user_type)
    except ValueError:
        raise HTTPException(status_code=403, detail="Unsupported user type")

    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")

    return ViewerContext(
        id=str(user_id),
        role=role,
        full_name=metadata.get("full_name"),
        profile_image_url=metadata.get("profile_image_url"),
        email=payload.get("email"),
    )


async def get_gateway() -> ChatGateway:
    return SupabaseChatGateway(await get_supabase())


def get_notifier(
    gateway: ChatGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
) -> NotificationService:
    return NotificationService(gateway, settings)


def get_media(settings: Settings = Depends(get_settings)) -> CloudinaryUploader:
    return CloudinaryUploader(settings)


def get_registry(request: Request) -> ScreenRegistry:
    return request.app.state.screens
