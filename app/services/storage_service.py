import io
import logging
import os
import re
import uuid
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from app.core.config import settings

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
}


def safe_segment(value: str) -> str:
    """Make an owner id usable as a single path segment"""
    cleaned = re.sub(r"[^A-Za-z0-9_-]", "_", value or "")
    return cleaned.strip("_") or "anonymous"


class StorageService:
    """Durable illustration storage: S3 when configured, local disk otherwise"""

    def __init__(self, base_dir: Optional[str] = None, public_prefix: Optional[str] = None):
        self.base_dir = base_dir or settings.STORAGE_DIR
        self.public_prefix = (public_prefix or settings.STORAGE_URL_PREFIX).rstrip("/")
        self.bucket = settings.AWS_S3_BUCKET
        self.s3_client = None
        if all([
            settings.AWS_ACCESS_KEY_ID,
            settings.AWS_SECRET_ACCESS_KEY,
            settings.AWS_REGION,
            settings.AWS_S3_BUCKET
        ]):
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
                aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
                region_name=settings.AWS_REGION
            )

    def save_image(self, owner_id: str, data: bytes, extension: str = "png") -> str:
        """Persist image bytes under the owner's namespace and return a stable reference"""
        extension = extension.lower().lstrip(".")
        filename = f"{uuid.uuid4().hex}.{extension}"
        owner = safe_segment(owner_id)

        if self.s3_client:
            key = f"stories/{owner}/{filename}"
            try:
                self.s3_client.upload_fileobj(
                    io.BytesIO(data),
                    self.bucket,
                    key,
                    ExtraArgs={
                        'ContentType': CONTENT_TYPES.get(extension, "application/octet-stream"),
                        'ACL': 'public-read'
                    }
                )
            except (BotoCoreError, ClientError) as e:
                raise IOError(f"Error uploading to S3: {e}")
            return f"https://{self.bucket}.s3.{settings.AWS_REGION}.amazonaws.com/{key}"

        owner_dir = os.path.join(self.base_dir, owner)
        os.makedirs(owner_dir, exist_ok=True)
        with open(os.path.join(owner_dir, filename), "wb") as f:
            f.write(data)

        logger.debug(f"Saved illustration for {owner} as {filename}")
        return f"{self.public_prefix}/{owner}/{filename}"
