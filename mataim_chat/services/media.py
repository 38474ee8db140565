import logging
import time
from typing import Optional

import httpx

from mataim_chat.chat.errors import UploadError
from mataim_chat.core.config import Settings, get_settings


logger = logging.getLogger(__name__)

CLOUDINARY_UPLOAD_URL = "https://api.cloudinary.com/v1_1/{cloud_name}/image/upload"


class CloudinaryUploader:
    """Unsigned image uploads to Cloudinary; returns the public `secure_url`."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self._http = http

    @property
    def upload_url(self) -> str:
        if not self.settings.cloudinary_cloud_name or not self.settings.cloudinary_upload_preset:
            raise UploadError("Cloudinary is not configured.")
        return CLOUDINARY_UPLOAD_URL.format(cloud_name=self.settings.cloudinary_cloud_name)

    async def upload(
        self,
        content: bytes,
        filename: str,
        content_type: str = "image/jpeg",
    ) -> str:
        if not content:
            raise UploadError("Refusing to upload an empty file.")

        url = self.upload_url
        files = {"file": (filename, content, content_type)}
        data = {"upload_preset": self.settings.cloudinary_upload_preset}

        started = time.monotonic()
        try:
            if self._http is not None:
                response = await self._http.post(url, files=files, data=data)
            else:
                async with httpx.AsyncClient(timeout=self.settings.http_timeout) as http:
                    response = await http.post(url, files=files, data=data)
        except httpx.HTTPError as e:
            logger.error(f"media_upload_network_error filename={filename} error={e}")
            raise UploadError("Upload failed.") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code >= 400:
            detail = (payload.get("error") or {}).get("message") or "Upload failed"
            logger.error(f"media_upload_rejected status={response.status_code} detail={detail}")
            raise UploadError(detail)

        secure_url = payload.get("secure_url")
        if not secure_url:
            raise UploadError("Upload response had no secure_url.")

        logger.info(
            f"media_upload_success filename={filename} bytes={len(content)} "
            f"elapsed={time.monotonic() - started:.2f}s"
        )
        return secure_url
