import os
from functools import lru_cache

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from mataim_chat.utils.env_helper import env_float, env_int, env_none_or_str


load_dotenv()


class Settings(BaseModel):
    supabase_url: str | None = None
    supabase_key: str | None = None
    jwt_secret: str | None = None

    cloudinary_cloud_name: str | None = None
    cloudinary_upload_preset: str | None = None

    expo_push_url: str = "https://exp.host/--/api/v2/push/send"

    # Realtime resubscribe policy: linear backoff, bounded attempts
    realtime_max_retries: int = Field(default=3, ge=0)
    realtime_retry_delay: float = Field(default=2.0, ge=0)

    # Open screens nobody has touched for this long are disposed
    screen_idle_ttl: float = Field(default=1800.0, gt=0)

    notification_preview_chars: int = Field(default=50, gt=0)
    http_timeout: float = Field(default=15.0, gt=0)

    @property
    def jwt_issuer(self) -> str | None:
        if not self.supabase_url:
            return None
        return f"{self.supabase_url.rstrip('/')}/auth/v1"


def load_settings() -> Settings:
    """Build settings from the process environment (and `.env`)."""
    return Settings(
        supabase_url=env_none_or_str("PUBLIC_SUPABASE_URL"),
        supabase_key=env_none_or_str("SECRET_API_KEY"),
        jwt_secret=env_none_or_str("SUPABASE_JWT_SECRET"),
        cloudinary_cloud_name=env_none_or_str("CLOUDINARY_CLOUD_NAME"),
        cloudinary_upload_preset=env_none_or_str("CLOUDINARY_UPLOAD_PRESET"),
        expo_push_url=os.getenv("EXPO_PUSH_URL", "https://exp.host/--/api/v2/push/send"),
        realtime_max_retries=env_int("REALTIME_MAX_RETRIES", 3),
        realtime_retry_delay=env_float("REALTIME_RETRY_DELAY", 2.0),
        screen_idle_ttl=env_float("SCREEN_IDLE_TTL", 1800.0),
        notification_preview_chars=env_int("NOTIFICATION_PREVIEW_CHARS", 50),
        http_timeout=env_float("HTTP_TIMEOUT", 15.0),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
