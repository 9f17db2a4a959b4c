import logging
import os
import secrets
from typing import Optional

from fastapi import UploadFile

from . import config
from .errors import StorageUnavailable, ValidationFailed

logger = logging.getLogger(__name__)

PRODUCT_IMAGE_DIR = "products"


def sniff_image(head: bytes) -> Optional[str]:
    """Extension for a JPEG/PNG/WebP header, None for anything else."""
    if head.startswith(b"\xff\xd8\xff"):
        return "jpg"
    if head.startswith(b"\x89PNG\r\n\x1a\n"):
        return "png"
    if len(head) >= 12 and head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return "webp"
    return None


def save_product_image(upload: Optional[UploadFile]) -> str:
    if upload is None:
        raise ValidationFailed("image file is required")

    limit = config.MAX_IMAGE_BYTES
    content = upload.file.read(limit + 1)
    if not content:
        raise ValidationFailed("Uploaded file is empty")
    if len(content) > limit:
        raise ValidationFailed(f"Image must be at most {limit // (1024 * 1024)} MB")

    ext = sniff_image(content[:16])
    if ext is None:
        raise ValidationFailed("Only JPEG, PNG or WebP images are allowed")

    target_dir = os.path.join(config.UPLOAD_DIR, PRODUCT_IMAGE_DIR)
    filename = f"{secrets.token_hex(16)}.{ext}"
    try:
        os.makedirs(target_dir, exist_ok=True)
        with open(os.path.join(target_dir, filename), "wb") as fh:
            fh.write(content)
    except OSError as e:
        logger.error("storing upload %s failed: %s", filename, e)
        raise StorageUnavailable("Failed to store image") from e

    logger.info("stored product image %s (%d bytes)", filename, len(content))
    return f"/assets/{PRODUCT_IMAGE_DIR}/{filename}"
