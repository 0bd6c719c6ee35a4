"""
Resolve uploaded image keys into something an upstream model can read.
"""

import base64
import io
import logging
import os
from typing import Optional

import aiofiles
from PIL import Image

from ..config import settings

logger = logging.getLogger(__name__)

_FORMAT_MIME = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "GIF": "image/gif",
    "WEBP": "image/webp",
}


def upload_path(file_key: str) -> str:
    """Absolute path of an uploaded file key, refusing keys that escape the upload dir."""
    root = os.path.abspath(settings.UPLOAD_DIR)
    path = os.path.abspath(os.path.join(root, file_key))
    if os.path.commonpath([root, path]) != root:
        raise ValueError(f"Invalid file key: {file_key}")
    return path


def sniff_mime_type(data: bytes) -> str:
    """Detect the image mime type from its bytes."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            return _FORMAT_MIME.get(img.format or "", "image/png")
    except (OSError, ValueError):
        return "image/png"


async def convert_image_url(file_key: str) -> Optional[str]:
    """
    Turn an upload key into an image URL for the model.

    With ``UPLOAD_PUBLIC_BASE_URL`` configured the public URL is returned,
    otherwise the file is inlined as a base64 data URI. Returns None when
    the file cannot be read.
    """
    if settings.UPLOAD_PUBLIC_BASE_URL:
        return f"{settings.UPLOAD_PUBLIC_BASE_URL.rstrip('/')}/{file_key}"

    try:
        async with aiofiles.open(upload_path(file_key), "rb") as f:
            data = await f.read()
    except (OSError, ValueError):
        logger.warning("Unable to read uploaded image %s", file_key, exc_info=True)
        return None

    b64_data = base64.b64encode(data).decode("utf-8")
    return f"data:{sniff_mime_type(data)};base64,{b64_data}"
