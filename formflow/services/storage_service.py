"""File storage for candidate uploads (resumes, attachments)."""

import io
import logging
import os
import uuid
from dataclasses import dataclass

import boto3
from botocore.client import BaseClient
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from formflow.core.config import settings
from formflow.services.exceptions import StorageUnavailableError

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================

ALLOWED_EXTENSIONS = {"pdf", "doc", "docx", "txt", "rtf", "odt", "png", "jpg", "jpeg"}


@dataclass(frozen=True)
class StoredFile:
    url: str
    storage_key: str


# =============================================================================
# Storage Backend
# =============================================================================

def _build_s3_config() -> Config | None:
    style = (settings.S3_URL_STYLE or "").strip().lower()
    if style in {"path", "virtual"}:
        return Config(s3={"addressing_style": style})
    return None


def _get_s3_client() -> BaseClient:
    """Get boto3 S3 client (supports S3-compatible endpoints)."""
    return boto3.client(
        "s3",
        region_name=settings.S3_REGION or None,
        aws_access_key_id=settings.AWS_ACCESS_KEY_ID or None,
        aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY or None,
        endpoint_url=settings.S3_ENDPOINT_URL.rstrip("/") or None,
        config=_build_s3_config(),
    )


def _s3_object_url(storage_key: str) -> str:
    if settings.S3_ENDPOINT_URL:
        return f"{settings.S3_ENDPOINT_URL.rstrip('/')}/{settings.S3_BUCKET}/{storage_key}"
    return f"https://{settings.S3_BUCKET}.s3.{settings.S3_REGION}.amazonaws.com/{storage_key}"


def _get_local_storage_path() -> str:
    """Get local storage directory path."""
    path = settings.LOCAL_STORAGE_PATH
    os.makedirs(path, exist_ok=True)
    return path


def file_extension(filename: str | None) -> str:
    if not filename or "." not in filename:
        return ""
    return filename.rsplit(".", 1)[-1].lower()


def is_allowed_extension(filename: str | None) -> bool:
    return file_extension(filename) in ALLOWED_EXTENSIONS


def build_storage_key(org_id: uuid.UUID, invitation_id: uuid.UUID, filename: str) -> str:
    """Random object name; the client filename is never used as a path."""
    return f"form-uploads/{org_id}/{invitation_id}/{uuid.uuid4().hex}.{file_extension(filename)}"


# =============================================================================
# File Operations
# =============================================================================

def store_file(data: bytes, metadata: dict[str, str]) -> StoredFile:
    """
    Store bytes on the configured backend and return where they live.

    ``metadata`` must carry ``storage_key``; ``content_type`` is optional.
    """
    storage_key = metadata["storage_key"]
    content_type = metadata.get("content_type") or "application/octet-stream"

    if settings.STORAGE_BACKEND == "s3":
        s3 = _get_s3_client()
        try:
            s3.upload_fileobj(
                io.BytesIO(data),
                settings.S3_BUCKET,
                storage_key,
                ExtraArgs={"ContentType": content_type},
            )
        except (BotoCoreError, ClientError) as e:
            logger.warning(f"S3 upload failed: {type(e).__name__}")
            raise StorageUnavailableError() from e
        return StoredFile(url=_s3_object_url(storage_key), storage_key=storage_key)

    # Local storage
    path = os.path.join(_get_local_storage_path(), storage_key)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)
    return StoredFile(url=f"/uploads/{storage_key}", storage_key=storage_key)
