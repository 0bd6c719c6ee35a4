"""
File service for image uploads attached to chat prompts.
"""

import io
import logging
import os
import uuid
from pathlib import Path
from typing import Optional, Tuple

import aiofiles
from fastapi import UploadFile
from PIL import Image, UnidentifiedImageError

from ..config import settings

logger = logging.getLogger(__name__)


class FileService:
    """Stores uploads under ``<UPLOAD_DIR>/<user_id>/`` and hands out file keys."""

    def __init__(self, upload_dir: Optional[str] = None):
        self.upload_dir = Path(upload_dir or settings.UPLOAD_DIR)
        self.upload_dir.mkdir(parents=True, exist_ok=True)

    def _generate_filename(self, original_filename: Optional[str]) -> str:
        ext = Path(original_filename or "").suffix.lower()
        return f"{uuid.uuid4().hex}{ext}"

    def _verify_image(self, content: bytes) -> dict:
        try:
            with Image.open(io.BytesIO(content)) as img:
                width, height = img.width, img.height
                img.verify()
        except (UnidentifiedImageError, OSError, ValueError) as e:
            raise ValueError("Uploaded file is not a valid image") from e
        return {"width": width, "height": height}

    async def upload_file(self, file: UploadFile, user_id: int) -> Tuple[str, dict]:
        """
        Save an uploaded image and return (file_key, metadata).

        The file key is ``<user_id>/<filename>`` and is what chat requests
        reference in ``upload_file_keys``.
        """
        if file.content_type not in settings.ALLOWED_IMAGE_TYPES:
            raise ValueError(f"Unsupported file type: {file.content_type}")

        content = await file.read()
        if len(content) > settings.MAX_UPLOAD_SIZE:
            raise ValueError(f"File too large. Maximum size: {settings.MAX_UPLOAD_SIZE / (1024*1024):.1f}MB")

        metadata = self._verify_image(content)

        filename = self._generate_filename(file.filename)
        user_dir = self.upload_dir / str(user_id)
        user_dir.mkdir(parents=True, exist_ok=True)

        async with aiofiles.open(user_dir / filename, "wb") as f:
            await f.write(content)

        metadata.update({
            "original_filename": file.filename,
            "content_type": file.content_type,
            "size": len(content),
        })
        logger.info("Stored upload %s/%s (%d bytes)", user_id, filename, len(content))
        return f"{user_id}/{filename}", metadata

    def get_file_path(self, file_key: str) -> Optional[Path]:
        """Full path of a stored file, None when missing or outside the upload dir."""
        root = self.upload_dir.resolve()
        file_path = (root / file_key).resolve()
        if root not in file_path.parents:
            return None
        if file_path.exists() and file_path.is_file():
            return file_path
        return None

    async def delete_file(self, file_key: str) -> bool:
        file_path = self.get_file_path(file_key)
        if file_path is None:
            return False
        os.remove(file_path)
        return True

    def get_file_url(self, file_key: str, base_url: str) -> str:
        return f"{base_url}/api/files/{file_key}"
